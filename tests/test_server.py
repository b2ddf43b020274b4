from __future__ import annotations

import pytest

from fakes import FakeClient, FakeEngine
from instant_replay.capabilities import SOFTWARE_PAIR, Backend, CodecPair
from instant_replay.config import EncoderSettings, ServerSettings
from instant_replay.errors import ConstructionError, ProtocolFault
from instant_replay.server import ReplayServer, SessionRegistry, build_launch

STORE = "/tmp/replay-buffer.h264"


def _configure(engine: FakeEngine, **settings):
    return ReplayServer(engine, ServerSettings(**settings)).configure("/replay", SOFTWARE_PAIR, STORE)


def test_launch_description_for_software_pair() -> None:
    launch = build_launch(STORE, SOFTWARE_PAIR, EncoderSettings())

    assert launch == (
        "( filesrc location=/tmp/replay-buffer.h264 ! h264parse ! avdec_h264 ! "
        "x264enc bitrate=4000 tune=zerolatency ! h264parse ! "
        "rtph264pay name=pay0 pt=96 config-interval=1 )"
    )


def test_launch_description_uses_hardware_pair() -> None:
    pair = CodecPair(Backend.VAAPI, "vaapih264dec", "vaapih264enc")

    launch = build_launch(STORE, pair, EncoderSettings(bitrate_kbps=6000))

    assert "! vaapih264dec ! vaapih264enc bitrate=6000 !" in launch


def test_factory_is_shared_with_rtcp_and_tcp_only() -> None:
    engine = FakeEngine()

    handle = _configure(engine, port=8600)

    factory = engine.factories[0]
    server = engine.servers[0]
    assert factory.shared is True
    assert factory.enable_rtcp is True
    assert factory.protocols == 0x4
    assert factory.eos_shutdown is False
    assert server.service == "8600"
    assert server.mounts.factories == {"/replay": factory}
    assert handle.mount_point == "/replay"


def test_allow_udp_adds_udp_transport() -> None:
    engine = FakeEngine()

    _configure(engine, allow_udp=True)

    assert engine.factories[0].protocols == 0x5


def test_disconnect_does_not_stop_shared_media() -> None:
    engine = FakeEngine()
    handle = _configure(engine)
    factory = engine.factories[0]
    server = engine.servers[0]

    first = FakeClient("10.0.0.2")
    server.emit("client-connected", first)
    media = factory.media_for_client()
    first.emit("teardown-request", object())
    first.emit("closed")
    media.client_left()

    second = FakeClient("10.0.0.3")
    server.emit("client-connected", second)
    again = factory.media_for_client()

    assert media.stopped is False
    assert again is media
    assert handle.media_configured == 1
    assert len(handle.sessions) == 1
    assert handle.sessions.faults == []


def test_close_without_teardown_is_a_session_fault() -> None:
    engine = FakeEngine()
    handle = _configure(engine)
    server = engine.servers[0]
    polite, abrupt = FakeClient("10.0.0.2"), FakeClient("10.0.0.3")
    server.emit("client-connected", polite)
    server.emit("client-connected", abrupt)

    abrupt.emit("closed")

    faults = handle.sessions.faults
    assert len(faults) == 1
    assert isinstance(faults[0], ProtocolFault)
    assert faults[0].session_id == "client-2"
    assert [session.address for session in handle.sessions.active()] == ["10.0.0.2"]


def test_attach_failure_raises() -> None:
    engine = FakeEngine()
    engine.attach_result = 0
    handle = _configure(engine)

    with pytest.raises(ConstructionError):
        handle.attach()


def test_close_admission_then_close_is_idempotent() -> None:
    engine = FakeEngine()
    handle = _configure(engine)
    handle.attach()

    handle.close_admission()
    assert engine.servers[0].mounts.factories == {}
    assert not handle.admission_open
    assert handle.attached

    handle.close()
    handle.close()

    assert engine.events == ["server:unmount", "server:detach"]
    assert engine.detached == [42]
    assert handle.closed


def test_registry_ignores_unknown_session() -> None:
    registry = SessionRegistry()

    assert registry.close("client-99") is None
    assert len(registry) == 0
