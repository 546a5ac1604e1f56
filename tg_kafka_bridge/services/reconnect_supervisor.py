"""
Reconnect supervisor for tg-kafka-bridge.
Keeps a connection (update source or publish transport) alive with
bounded exponential backoff and jitter.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional, Protocol, Tuple, Type

from ..domain.ports import Degraded, PublishTransientFailure, SourceUnavailable
from ..telemetry.logger import MetricsLogger


logger = logging.getLogger(__name__)


@dataclass
class BackoffPolicy:
    """
    Exponential backoff: min(cap, base * multiplier^attempt) plus jitter
    drawn from [0, backoff * jitter_factor].
    """
    base_s: float = 0.1
    multiplier: float = 2.0
    cap_s: float = 30.0
    jitter_factor: float = 0.0
    rng: random.Random = field(default_factory=random.Random, repr=False)

    def base_delay(self, attempt: int) -> float:
        """Delay for a 0-based attempt, without jitter."""
        return min(self.cap_s, self.base_s * (self.multiplier ** attempt))

    def delay(self, attempt: int) -> float:
        """Delay for a 0-based attempt, jitter included."""
        backoff = self.base_delay(attempt)
        if self.jitter_factor <= 0:
            return backoff
        return backoff + self.rng.uniform(0, backoff * self.jitter_factor)


class Connectable(Protocol):
    async def connect(self) -> None: ...


class ConnectionState(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    RECONNECTING = "reconnecting"
    DEGRADED = "degraded"


# Errors that mean "try again later" rather than "bug"
TRANSIENT_ERRORS: Tuple[Type[BaseException], ...] = (
    SourceUnavailable,
    PublishTransientFailure,
    ConnectionError,
    OSError,
    asyncio.TimeoutError,
)


class ReconnectSupervisor:
    """
    State machine: connected -> disconnected -> reconnecting -> connected.

    Retries forever unless max_attempts > 0, in which case the supervisor
    becomes DEGRADED once the ceiling is reached and raises Degraded on
    every further use. The attempt counter only resets after a connection
    was held for `stability_s`, so a flapping peer keeps backing off.
    """

    def __init__(
        self,
        target: Connectable,
        name: str,
        policy: BackoffPolicy,
        max_attempts: int = 0,
        stability_s: float = 30.0,
        transient_errors: Tuple[Type[BaseException], ...] = TRANSIENT_ERRORS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        metrics: Optional[MetricsLogger] = None
    ):
        """
        Initialize reconnect supervisor.

        Args:
            target: Object exposing `async connect()`
            name: Name used in logs ("source", "transport")
            policy: Backoff policy
            max_attempts: Attempt ceiling, 0 for unlimited
            stability_s: How long a connection must last to count as recovered
            transient_errors: Exceptions from connect() that are retried
            sleep: Awaitable sleep, injectable for tests
            clock: Monotonic clock, injectable for tests
            metrics: Metrics logger
        """
        self.target = target
        self.name = name
        self.policy = policy
        self.max_attempts = max_attempts
        self.stability_s = stability_s
        self.transient_errors = transient_errors
        self._sleep = sleep
        self._clock = clock
        self._metrics = metrics or MetricsLogger()

        self._state = ConnectionState.DISCONNECTED
        self._attempt = 0
        self._connected_at: Optional[float] = None
        self._last_error: Optional[str] = None
        self._lock = asyncio.Lock()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def attempt(self) -> int:
        return self._attempt

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def is_degraded(self) -> bool:
        return self._state == ConnectionState.DEGRADED

    def mark_disconnected(self, error: Optional[BaseException] = None) -> None:
        """
        Record a connection loss.

        Args:
            error: The error that revealed the loss
        """
        if self._state == ConnectionState.DEGRADED:
            return

        now = self._clock()
        if (
            self._connected_at is not None
            and now - self._connected_at >= self.stability_s
        ):
            self._attempt = 0

        self._connected_at = None
        self._state = ConnectionState.DISCONNECTED
        self._last_error = str(error) if error else "connection lost"

        logger.warning(
            f"{self.name} disconnected: {self._last_error}",
            extra={
                "component": "reconnect_supervisor",
                "target": self.name,
                "attempt": self._attempt,
                "error": self._last_error
            }
        )

    async def ensure_connected(self) -> None:
        """
        Return once the target is connected, backing off between attempts.

        Raises:
            Degraded: If the attempt ceiling was exhausted
        """
        async with self._lock:
            while True:
                if self._state == ConnectionState.DEGRADED:
                    raise Degraded(
                        f"{self.name} degraded after {self._attempt} reconnect attempts: {self._last_error}"
                    )
                if self._state == ConnectionState.CONNECTED:
                    return

                if self._connected_at is None and self._last_error is not None:
                    await self._backoff()
                    if self._state == ConnectionState.DEGRADED:
                        continue

                self._state = ConnectionState.RECONNECTING
                try:
                    await self.target.connect()
                except self.transient_errors as e:
                    self._state = ConnectionState.DISCONNECTED
                    self._last_error = str(e)
                    logger.warning(
                        f"{self.name} connect failed: {e}",
                        extra={
                            "component": "reconnect_supervisor",
                            "target": self.name,
                            "attempt": self._attempt,
                            "error": str(e)
                        }
                    )
                    continue

                self._state = ConnectionState.CONNECTED
                self._connected_at = self._clock()
                logger.info(
                    f"{self.name} connected",
                    extra={
                        "component": "reconnect_supervisor",
                        "target": self.name,
                        "attempt": self._attempt
                    }
                )
                return

    async def _backoff(self) -> None:
        """Sleep for the current attempt, or go DEGRADED at the ceiling."""
        if self.max_attempts > 0 and self._attempt >= self.max_attempts:
            self._state = ConnectionState.DEGRADED
            logger.critical(
                f"{self.name} reconnect ceiling reached, entering degraded state",
                extra={
                    "component": "reconnect_supervisor",
                    "target": self.name,
                    "max_attempts": self.max_attempts,
                    "error": self._last_error
                }
            )
            return

        delay = self.policy.delay(self._attempt)
        self._metrics.log_reconnect(
            target=self.name,
            attempt=self._attempt,
            delay_ms=delay * 1000,
            error=self._last_error
        )
        self._attempt += 1
        await self._sleep(delay)
