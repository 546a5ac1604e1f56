import asyncio

import pytest

from tg_kafka_bridge.app import BridgeApplication
from tg_kafka_bridge.config import AppConfig

from fakes import FakeSource, make_bridge_service, make_event, wait_until


def make_app(monkeypatch):
    app = BridgeApplication(AppConfig(telegram={"bot_token": "1:a"}))
    source = FakeSource(polls=[[make_event(1)]])

    async def setup():
        service, transport, store = make_bridge_service(source)
        app.source = source
        app.transport = transport
        app.checkpoint_store = store
        app.pipeline = service.pipeline
        app.bridge_service = service

    monkeypatch.setattr(app, "setup", setup)
    monkeypatch.setattr(app, "_setup_signal_handlers", lambda: None)
    return app


@pytest.mark.asyncio
async def test_lifespan_releases_resources_once(monkeypatch):
    app = make_app(monkeypatch)

    async with app.lifespan():
        task = asyncio.create_task(app.run())
        await wait_until(lambda: app.bridge_service.is_running and app.checkpoint_store.saved)
        assert app._status() == "running"
        app.request_shutdown()
        await task

    assert app.source.close_calls == 1
    assert app.transport.close_calls == 1
    assert app.checkpoint_store.close_calls == 1
    assert app._status() == "stopped"


@pytest.mark.asyncio
async def test_run_requires_setup():
    app = BridgeApplication(AppConfig(telegram={"bot_token": "1:a"}))

    with pytest.raises(RuntimeError):
        await app.run()


@pytest.mark.asyncio
async def test_stats_include_checkpoint(monkeypatch):
    app = make_app(monkeypatch)

    async with app.lifespan():
        task = asyncio.create_task(app.run())
        await wait_until(lambda: app.bridge_service.is_running and app.checkpoint_store.saved)
        stats = await app.get_stats()
        app.request_shutdown()
        await task

    assert stats["status"] == "running"
    assert stats["checkpoint"]["token"] == "1"
    assert stats["bridge"]["total_acknowledged"] == 1
