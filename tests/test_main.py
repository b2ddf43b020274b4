from __future__ import annotations

import pytest

from fakes import ALL_PLUGINS, BASE_ELEMENTS, SOFTWARE_FEATURES, FakeEngine
from instant_replay.errors import ConfigurationError
from instant_replay.events import EndOfStream, ErrorMessage, LifecycleState
from instant_replay.main import parse_args, resolve_config, run

INPUT = ["-i", "rtsp://camera.local/stream"]


def _engine() -> FakeEngine:
    return FakeEngine(features=BASE_ELEMENTS | SOFTWARE_FEATURES, plugins=ALL_PLUGINS)


def _post_when_playing(engine: FakeEngine, notification) -> None:
    def _hook(state: LifecycleState) -> None:
        if state is LifecycleState.PLAYING:
            engine.monitors[0].post(notification)

    engine.on_set_state = _hook


def test_cli_flags_override_defaults() -> None:
    args = parse_args(INPUT + ["-b", "30", "-p", "9554", "-m", "/clip", "--no-hw", "--gpu", "1"])

    config = resolve_config(args)

    assert config.buffer.seconds == 30
    assert config.server.port == 9554
    assert config.server.mount_point == "/clip"
    assert config.use_hardware_accel is False
    assert config.gpu_id == 1


def test_cli_flags_override_config_file(tmp_path) -> None:
    path = tmp_path / "replay.yaml"
    path.write_text("source:\n  location: rtsp://file/stream\nbuffer:\n  seconds: 20\n", encoding="utf-8")

    config = resolve_config(parse_args(["--config", str(path), "-b", "45"]))

    assert config.source.location == "rtsp://file/stream"
    assert config.buffer.seconds == 45


def test_unknown_flag_is_configuration_error() -> None:
    with pytest.raises(ConfigurationError):
        parse_args(["--frobnicate"])


def test_missing_input_exits_1() -> None:
    assert run([], engine=_engine()) == 1


def test_bad_buffer_exits_1() -> None:
    assert run(INPUT + ["-b", "0"], engine=_engine()) == 1


def test_null_location_in_config_file_exits_1(tmp_path) -> None:
    path = tmp_path / "replay.yaml"
    path.write_text("source:\n  location: null\nserver:\n  port: null\n", encoding="utf-8")

    assert run(["--config", str(path)], engine=_engine()) == 1


def test_engine_unavailable_exits_1() -> None:
    assert run(INPUT, engine=FakeEngine(available=False)) == 1


def test_missing_element_exits_1() -> None:
    engine = _engine()
    engine.missing = {"queue2"}

    assert run(INPUT, engine=engine) == 1
    assert engine.loop_running is False


def test_end_of_stream_exits_0() -> None:
    engine = _engine()
    _post_when_playing(engine, EndOfStream())

    assert run(INPUT, engine=engine) == 0
    assert engine.states == [LifecycleState.PLAYING, LifecycleState.NULL]
    assert engine.detached == [42]
    assert engine.loop_running is False


def test_runtime_fault_exits_1_after_clean_shutdown() -> None:
    engine = _engine()
    _post_when_playing(engine, ErrorMessage(source="source", message="Could not open resource"))

    assert run(INPUT, engine=engine) == 1
    assert engine.states[-1] is LifecycleState.NULL
    assert engine.events[-1] == "server:detach"


def test_check_mode() -> None:
    assert run(["--check"], engine=_engine()) == 0
    assert run(["--check"], engine=FakeEngine(plugins=ALL_PLUGINS)) == 1
