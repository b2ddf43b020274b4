from __future__ import annotations

import pytest

from fakes import ALL_PLUGINS, BASE_ELEMENTS, SOFTWARE_FEATURES, FakeEngine, FakePad
from instant_replay.capabilities import SOFTWARE_PAIR, CapabilityProber, select_codecs
from instant_replay.config import NANOSECONDS_PER_SECOND, ReplayConfig, RingBufferSettings, SourceSettings
from instant_replay.context import ReplayContext
from instant_replay.errors import ConstructionError
from instant_replay.events import LifecycleState, LinkOutcome, LinkRequest, SourceLinked
from instant_replay.pipeline import DynamicLinkResolver, PipelineBuilder

FRAME_NS = NANOSECONDS_PER_SECOND // 30


def _context(**source) -> ReplayContext:
    settings = SourceSettings(location="rtsp://camera.local/stream", **source)
    return ReplayContext(config=ReplayConfig(source=settings))


def _request(pad: FakePad) -> LinkRequest:
    return LinkRequest(pad_id=pad.name, media=pad.media, encoding=pad.encoding, pad=pad)


def test_build_configures_every_element() -> None:
    engine = FakeEngine()
    context = _context()

    handle = PipelineBuilder(engine, context).build()

    source = handle.element("source")
    assert source.properties == {
        "location": "rtsp://camera.local/stream",
        "latency": 2000,
        "protocols": 0x4,
        "buffer-mode": 1,
    }
    ring = handle.element("ring-buffer")
    assert ring.properties["max-size-time"] == 60 * 1_000_000_000
    assert handle.element("output").properties["location"] == "/tmp/replay-buffer.h264"
    assert handle.element("depay").linked_to is handle.element("parse")
    assert handle.element("parse").linked_to is ring
    assert ring.linked_to is handle.element("output")
    assert source.linked_to is None
    assert source.handler_count("pad-added") == 1


def test_credentials_are_applied() -> None:
    engine = FakeEngine()

    handle = PipelineBuilder(engine, _context(user="operator", password="secret")).build()

    source = handle.element("source")
    assert source.properties["user-id"] == "operator"
    assert source.properties["user-pw"] == "secret"


def test_missing_element_names_the_factory() -> None:
    engine = FakeEngine(missing={"rtph264depay"})

    with pytest.raises(ConstructionError) as excinfo:
        PipelineBuilder(engine, _context()).build()

    assert excinfo.value.missing == "rtph264depay"
    assert "rtph264depay" in str(excinfo.value)
    assert engine.states == []


def test_static_link_failure_releases_elements() -> None:
    engine = FakeEngine()
    engine.refuse_static_link = "h264parse"

    with pytest.raises(ConstructionError):
        PipelineBuilder(engine, _context()).build()

    assert engine.pipelines[0].elements == []
    assert engine.states == []


def test_resolver_links_video_pad_once() -> None:
    engine = FakeEngine()
    target = FakePad("depay:sink")
    outcomes = []
    resolver = DynamicLinkResolver(target, engine.link_pads, on_outcome=outcomes.append)
    pad = FakePad("recv_rtp_src_0_1_96", media="video", encoding="H264")

    assert resolver.resolve(_request(pad)) is LinkOutcome.LINKED
    assert resolver.resolve(_request(pad)) is LinkOutcome.ALREADY_LINKED
    assert target.peer is pad
    assert resolver.linked_pads == {pad.name}
    assert outcomes[0] == SourceLinked(pad_id=pad.name, outcome=LinkOutcome.LINKED)


def test_resolver_ignores_audio_pad() -> None:
    engine = FakeEngine()
    target = FakePad("depay:sink")
    resolver = DynamicLinkResolver(target, engine.link_pads)
    audio = FakePad("recv_rtp_src_1_2_97", media="audio", encoding="MPEG4-GENERIC")

    assert resolver.resolve(_request(audio)) is LinkOutcome.IGNORED
    assert target.peer is None


def test_resolver_compares_caps_case_insensitively() -> None:
    engine = FakeEngine()
    resolver = DynamicLinkResolver(FakePad("depay:sink"), engine.link_pads)
    pad = FakePad("src_0", media="VIDEO", encoding="h264")

    assert resolver.resolve(_request(pad)) is LinkOutcome.LINKED


def test_resolver_ignores_second_video_pad() -> None:
    engine = FakeEngine()
    target = FakePad("depay:sink")
    resolver = DynamicLinkResolver(target, engine.link_pads)
    first = FakePad("src_0", media="video", encoding="H264")
    second = FakePad("src_1", media="video", encoding="H264")

    resolver.resolve(_request(first))

    assert resolver.resolve(_request(second)) is LinkOutcome.IGNORED
    assert target.peer is first


def test_resolver_reports_failed_link() -> None:
    engine = FakeEngine(refuse_links={"src_0"})
    target = FakePad("depay:sink")
    resolver = DynamicLinkResolver(target, engine.link_pads)
    pad = FakePad("src_0", media="video", encoding="H264")

    assert resolver.resolve(_request(pad)) is LinkOutcome.FAILED
    assert resolver.linked_pads == set()


def test_pad_added_signal_reaches_resolver() -> None:
    engine = FakeEngine()
    posted = []
    handle = PipelineBuilder(engine, _context(), post=posted.append).build()
    pad = FakePad("recv_rtp_src_0", media="video", encoding="H264")

    handle.element("source").emit("pad-added", pad)
    handle.element("source").emit("pad-added", pad)

    depay_sink = handle.element("depay").get_static_pad("sink")
    assert depay_sink.peer is pad
    assert [item.outcome for item in posted] == [LinkOutcome.LINKED, LinkOutcome.ALREADY_LINKED]


def test_buffer_probe_feeds_window() -> None:
    engine = FakeEngine()
    context = _context()
    PipelineBuilder(engine, context).build()

    engine.push_buffer(0, 500)
    engine.push_buffer(None, 500)
    engine.push_buffer(1_000_000, 700)

    snapshot = context.window.snapshot()
    assert snapshot.buffer_count == 2
    assert snapshot.fill_bytes == 1200


def test_software_build_retains_last_thirty_seconds() -> None:
    engine = FakeEngine(features=BASE_ELEMENTS | SOFTWARE_FEATURES, plugins=ALL_PLUGINS)
    config = ReplayConfig(
        source=SourceSettings(location="rtsp://camera.local/stream"),
        buffer=RingBufferSettings(seconds=30),
        use_hardware_accel=False,
    ).validate()
    report = CapabilityProber(engine).probe()
    codecs = select_codecs(report, use_hardware=config.use_hardware_accel)
    context = ReplayContext(config=config, report=report, codecs=codecs)

    handle = PipelineBuilder(engine, context).build()
    for index in range(45 * 30 + 1):
        engine.push_buffer(index * FRAME_NS, 1000)

    assert codecs == SOFTWARE_PAIR
    assert handle.element("ring-buffer").get_property("max-size-time") == 30 * NANOSECONDS_PER_SECOND
    assert context.window.oldest_timestamp == 15 * 30 * FRAME_NS
    assert context.window.newest_timestamp == 45 * 30 * FRAME_NS
    assert context.window.snapshot().span_ns <= 30 * NANOSECONDS_PER_SECOND


def test_start_failure_raises() -> None:
    engine = FakeEngine()
    engine.set_state_ok = False
    handle = PipelineBuilder(engine, _context()).build()

    with pytest.raises(ConstructionError):
        handle.start()


def test_stop_is_idempotent() -> None:
    engine = FakeEngine()
    handle = PipelineBuilder(engine, _context()).build()
    handle.watch(lambda notification: None)
    handle.start()
    source = handle.element("source")

    handle.stop()
    handle.stop()

    assert handle.released
    assert handle.pipeline is None
    assert engine.states == [LifecycleState.PLAYING, LifecycleState.NULL]
    assert engine.monitors[0].stopped == 1
    assert source.handler_count() == 0
    assert engine.probes == {}
    assert handle.request_state(LifecycleState.PLAYING) is False
