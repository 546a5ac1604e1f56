import random

import pytest

from tg_kafka_bridge.domain.ports import Degraded, SourceUnavailable
from tg_kafka_bridge.services.reconnect_supervisor import (
    BackoffPolicy,
    ConnectionState,
    ReconnectSupervisor,
)


class FlakyTarget:
    def __init__(self, failures: int = 0):
        self.failures = failures
        self.calls = 0

    async def connect(self) -> None:
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise SourceUnavailable("connection refused")


def make_supervisor(target, sleep, clock, **kwargs):
    policy = kwargs.pop("policy", BackoffPolicy(base_s=0.1, multiplier=2.0, cap_s=2.0))
    return ReconnectSupervisor(
        target=target,
        name="source",
        policy=policy,
        sleep=sleep,
        clock=clock,
        **kwargs
    )


def test_backoff_grows_until_cap():
    policy = BackoffPolicy(base_s=0.1, multiplier=2.0, cap_s=2.0)

    assert [policy.delay(n) for n in range(7)] == pytest.approx(
        [0.1, 0.2, 0.4, 0.8, 1.6, 2.0, 2.0]
    )


def test_jitter_stays_within_bound():
    policy = BackoffPolicy(
        base_s=0.1, multiplier=2.0, cap_s=2.0, jitter_factor=0.5, rng=random.Random(7)
    )

    for attempt in range(8):
        base = policy.base_delay(attempt)
        for _ in range(20):
            delay = policy.delay(attempt)
            assert base <= delay <= base * 1.5


@pytest.mark.asyncio
async def test_first_connect_does_not_wait(sleep, clock):
    target = FlakyTarget()
    supervisor = make_supervisor(target, sleep, clock)

    await supervisor.ensure_connected()

    assert supervisor.state == ConnectionState.CONNECTED
    assert target.calls == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_five_disconnects_back_off_exponentially(sleep, clock):
    target = FlakyTarget()
    supervisor = make_supervisor(target, sleep, clock, stability_s=30.0)
    await supervisor.ensure_connected()

    for _ in range(5):
        supervisor.mark_disconnected(SourceUnavailable("lost"))
        assert supervisor.state == ConnectionState.DISCONNECTED
        await supervisor.ensure_connected()

    assert sleep.delays == pytest.approx([0.1, 0.2, 0.4, 0.8, 1.6])
    assert supervisor.attempt == 5
    assert supervisor.is_connected


@pytest.mark.asyncio
async def test_failed_connects_are_retried_with_backoff(sleep, clock):
    target = FlakyTarget(failures=5)
    supervisor = make_supervisor(target, sleep, clock)

    await supervisor.ensure_connected()

    assert target.calls == 6
    assert sleep.delays == pytest.approx([0.1, 0.2, 0.4, 0.8, 1.6])
    assert supervisor.is_connected


@pytest.mark.asyncio
async def test_ceiling_enters_degraded(sleep, clock):
    target = FlakyTarget(failures=100)
    supervisor = make_supervisor(target, sleep, clock, max_attempts=3)

    with pytest.raises(Degraded):
        await supervisor.ensure_connected()

    assert supervisor.state == ConnectionState.DEGRADED
    assert supervisor.is_degraded
    assert sleep.delays == pytest.approx([0.1, 0.2, 0.4])
    assert target.calls == 4

    # Terminal: no further connect attempts
    with pytest.raises(Degraded):
        await supervisor.ensure_connected()
    assert target.calls == 4

    supervisor.mark_disconnected(SourceUnavailable("still down"))
    assert supervisor.state == ConnectionState.DEGRADED


@pytest.mark.asyncio
async def test_attempts_reset_after_stable_connection(sleep, clock):
    target = FlakyTarget()
    supervisor = make_supervisor(target, sleep, clock, stability_s=30.0)
    await supervisor.ensure_connected()

    supervisor.mark_disconnected(SourceUnavailable("lost"))
    await supervisor.ensure_connected()
    supervisor.mark_disconnected(SourceUnavailable("lost"))
    await supervisor.ensure_connected()
    assert supervisor.attempt == 2

    clock.now += 31.0
    supervisor.mark_disconnected(SourceUnavailable("lost"))
    assert supervisor.attempt == 0
    await supervisor.ensure_connected()

    assert sleep.delays == pytest.approx([0.1, 0.2, 0.1])


@pytest.mark.asyncio
async def test_flapping_connection_keeps_backing_off(sleep, clock):
    target = FlakyTarget()
    supervisor = make_supervisor(target, sleep, clock, stability_s=30.0)
    await supervisor.ensure_connected()

    for _ in range(3):
        clock.now += 5.0
        supervisor.mark_disconnected(SourceUnavailable("lost"))
        await supervisor.ensure_connected()

    assert sleep.delays == pytest.approx([0.1, 0.2, 0.4])


@pytest.mark.asyncio
async def test_unexpected_connect_error_propagates(sleep, clock):
    class BrokenTarget:
        async def connect(self):
            raise RuntimeError("bug")

    supervisor = make_supervisor(BrokenTarget(), sleep, clock)

    with pytest.raises(RuntimeError):
        await supervisor.ensure_connected()
