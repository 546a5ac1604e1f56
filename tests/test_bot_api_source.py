import json

import httpx
import pytest

from tg_kafka_bridge.domain.dto import Checkpoint
from tg_kafka_bridge.domain.ports import SourceUnavailable

from fakes import BotApiStub, make_update, make_bot_api_source as make_source


async def collect(source):
    return [event async for event in source.poll()]


@pytest.mark.asyncio
async def test_connect_validates_token():
    stub = BotApiStub()
    source = make_source(stub)

    await source.connect()

    assert source.bot_username == "bridge_bot"
    assert stub.requests[0][0] == "getMe"
    await source.close()


@pytest.mark.asyncio
async def test_poll_yields_events_without_confirming_them():
    stub = BotApiStub([[make_update(100), make_update(101)], []])
    source = make_source(stub, limit=50)
    await source.connect()

    events = await collect(source)
    await collect(source)

    assert [e.external_id for e in events] == ["100", "101"]
    assert [e.checkpoint_token for e in events] == ["100", "101"]
    assert json.loads(events[0].payload) == make_update(100)
    assert source.last_seen == 101
    assert source.offset is None

    first, second = stub.update_params()
    assert "offset" not in first
    assert "offset" not in second
    assert first["limit"] == "50"
    assert first["timeout"] == "1"
    await source.close()


@pytest.mark.asyncio
async def test_offset_follows_confirmed_checkpoints_only():
    stub = BotApiStub([[make_update(100), make_update(101)], [make_update(101), make_update(102)], []])
    source = make_source(stub)
    await source.connect()

    await collect(source)
    source.confirm(Checkpoint(source_id="bot", sequence=1, token="100"))
    redelivered = await collect(source)
    source.confirm(Checkpoint(source_id="bot", sequence=3, token="102"))
    # An older checkpoint never moves the offset back
    source.confirm(Checkpoint(source_id="bot", sequence=1, token="100"))
    await collect(source)

    assert [e.external_id for e in redelivered] == ["102"]
    assert stub.offsets() == [None, 101, 103]
    await source.close()


@pytest.mark.asyncio
async def test_unconfirmed_backlog_pauses_between_polls(sleep):
    stub = BotApiStub([[make_update(1)], [make_update(1)]])
    source = make_source(stub, stale_poll_delay_s=0.25, sleep=sleep)
    await source.connect()

    assert len(await collect(source)) == 1
    assert await collect(source) == []
    assert sleep.delays == [0.25]
    await source.close()


@pytest.mark.asyncio
async def test_payload_encoding_is_canonical():
    update = make_update(7)
    reordered = dict(reversed(list(update.items())))
    first_source = make_source(BotApiStub([[update]]))
    second_source = make_source(BotApiStub([[reordered]]))
    await first_source.connect()
    await second_source.connect()

    first = (await collect(first_source))[0]
    second = (await collect(second_source))[0]

    assert first.payload == second.payload
    await first_source.close()
    await second_source.close()


@pytest.mark.asyncio
async def test_resume_keeps_skipping_updates_in_flight():
    stub = BotApiStub([[make_update(1), make_update(2)], [make_update(1), make_update(2), make_update(3)]])
    source = make_source(stub)
    await source.connect()

    await collect(source)
    source.resume_from(None)
    after_resume = await collect(source)

    assert [e.external_id for e in after_resume] == ["3"]
    assert stub.offsets() == [None, None]
    await source.close()


@pytest.mark.asyncio
async def test_resume_from_checkpoint_sets_offset():
    stub = BotApiStub([[]])
    source = make_source(stub, allowed_updates=["message"])
    source.resume_from(Checkpoint(source_id="bot", sequence=3, token="41"))
    await source.connect()

    await collect(source)

    params = stub.update_params()[0]
    assert params["offset"] == "42"
    assert json.loads(params["allowed_updates"]) == ["message"]
    await source.close()


def test_resume_from_rejects_foreign_token():
    source = make_source(BotApiStub())

    with pytest.raises(ValueError):
        source.resume_from(Checkpoint(source_id="bot", sequence=1, token="not-a-number"))


@pytest.mark.asyncio
async def test_malformed_update_is_skipped():
    stub = BotApiStub([[{"message": {}}, "garbage", make_update(5)]])
    source = make_source(stub)
    await source.connect()

    events = await collect(source)

    assert [e.external_id for e in events] == ["5"]
    assert source.malformed_count == 2
    await source.close()


@pytest.mark.asyncio
@pytest.mark.parametrize("response", [
    httpx.Response(500, text="oops"),
    httpx.Response(502, text="bad gateway"),
    httpx.Response(429, json={"ok": False, "description": "Too Many Requests"}),
    httpx.Response(409, json={"ok": False, "description": "Conflict"}),
    httpx.Response(401, json={"ok": False, "description": "Unauthorized"}),
    httpx.Response(400, json={"ok": False, "description": "Bad Request"}),
    httpx.Response(200, text="not json"),
])
async def test_error_answers_raise_source_unavailable(response):
    stub = BotApiStub([response])
    source = make_source(stub)
    await source.connect()

    with pytest.raises(SourceUnavailable):
        await collect(source)
    await source.close()


@pytest.mark.asyncio
async def test_network_error_raises_source_unavailable():
    stub = BotApiStub([httpx.ConnectError("connection refused")])
    source = make_source(stub)
    await source.connect()

    with pytest.raises(SourceUnavailable):
        await collect(source)
    await source.close()


@pytest.mark.asyncio
async def test_poll_before_connect_raises():
    source = make_source(BotApiStub())

    with pytest.raises(SourceUnavailable):
        await collect(source)
