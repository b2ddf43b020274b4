from __future__ import annotations

import asyncio

from fastapi.testclient import TestClient

from fakes import FakeClient, FakeEngine
from instant_replay.api import create_app
from instant_replay.capabilities import SOFTWARE_PAIR
from instant_replay.config import ReplayConfig, SourceSettings
from instant_replay.context import ReplayContext
from instant_replay.dispatcher import EventDispatcher
from instant_replay.errors import RuntimeFault
from instant_replay.events import LifecycleState
from instant_replay.server import ReplayServer


def _setup():
    engine = FakeEngine()
    config = ReplayConfig(source=SourceSettings(location="rtsp://camera.local/stream"))
    context = ReplayContext(config=config)
    context.server = ReplayServer(engine, config.server).configure("/replay", SOFTWARE_PAIR, "/tmp/store.h264")
    dispatcher = EventDispatcher(context)
    return engine, context, dispatcher


def test_healthz_reports_ok() -> None:
    _, context, dispatcher = _setup()
    client = TestClient(create_app(context, dispatcher))

    response = client.get("/healthz")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "state": "null"}


def test_healthz_reports_fault() -> None:
    _, context, dispatcher = _setup()
    context.fault = RuntimeFault("source", "Could not connect")
    client = TestClient(create_app(context, dispatcher))

    assert client.get("/healthz").json()["status"] == "error"


def test_status_snapshot() -> None:
    engine, context, dispatcher = _setup()
    engine.servers[0].emit("client-connected", FakeClient("10.1.1.1"))
    context.window.append(0, 1000)
    context.window.append(1_000_000_000, 3000)
    client = TestClient(create_app(context, dispatcher))

    payload = client.get("/status").json()

    assert payload["input"] == "rtsp://camera.local/stream"
    assert payload["stream_url"] == "rtsp://localhost:8554/replay"
    assert payload["codecs"] == {"backend": "software", "decoder": "avdec_h264", "encoder": "x264enc"}
    assert payload["buffer"]["fill_bytes"] == 4000
    assert payload["buffer"]["span_ns"] == 1_000_000_000
    assert [session["address"] for session in payload["sessions"]] == ["10.1.1.1"]
    assert payload["fault"] is None


def test_shutdown_posts_request() -> None:
    _, context, dispatcher = _setup()
    client = TestClient(create_app(context, dispatcher))

    response = client.post("/shutdown")

    assert response.status_code == 202
    asyncio.run(asyncio.wait_for(dispatcher.run(), timeout=5))
    assert dispatcher.state is LifecycleState.TERMINATED
    assert context.server.closed
