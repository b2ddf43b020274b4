from __future__ import annotations

import pytest

from fakes import ALL_PLUGINS, SOFTWARE_FEATURES, FakeEngine, report_with
from instant_replay.capabilities import (
    SOFTWARE_PAIR,
    Backend,
    CapabilityProber,
    CapabilityReport,
    CodecPair,
    encoder_properties,
    select_codecs,
)
from instant_replay.config import EncoderSettings
from instant_replay.errors import EngineUnavailableError


def test_no_hardware_selects_software_pair() -> None:
    engine = FakeEngine(features=SOFTWARE_FEATURES, plugins=ALL_PLUGINS)

    report = CapabilityProber(engine).probe()
    pair = select_codecs(report)

    assert not report.hardware_available
    assert report.effective_decoder is Backend.SOFTWARE
    assert report.effective_encoder is Backend.SOFTWARE
    assert pair == CodecPair(Backend.SOFTWARE, "avdec_h264", "x264enc")
    assert not pair.is_hardware


def test_probe_order_is_fixed() -> None:
    engine = FakeEngine()

    CapabilityProber(engine).probe()

    assert engine.lookups == [
        "nvh264dec",
        "nvh264enc",
        "vaapih264dec",
        "vaapih264enc",
        "msdkh264dec",
        "msdkh264enc",
        "avdec_h264",
        "x264enc",
    ]


def test_probe_records_missing_plugins() -> None:
    engine = FakeEngine(features=SOFTWARE_FEATURES, plugins=ALL_PLUGINS - {"libav"})

    report = CapabilityProber(engine).probe()

    assert report.plugins_missing == ("libav",)
    assert "rtsp" in report.plugins_found


def test_probe_wraps_registry_failures() -> None:
    class BrokenRegistry:
        def has_feature(self, name: str) -> bool:
            raise OSError("registry gone")

        def has_plugin(self, name: str) -> bool:
            return False

    with pytest.raises(EngineUnavailableError):
        CapabilityProber(BrokenRegistry()).probe()


@pytest.mark.parametrize(
    "backends, expected",
    [
        ((Backend.NVIDIA, Backend.VAAPI, Backend.MSDK), Backend.NVIDIA),
        ((Backend.VAAPI, Backend.MSDK), Backend.VAAPI),
        ((Backend.MSDK,), Backend.MSDK),
        ((), Backend.SOFTWARE),
    ],
)
def test_priority_is_respected(backends, expected) -> None:
    report = report_with(*backends)

    assert select_codecs(report).backend is expected


def test_half_backend_is_never_mixed() -> None:
    # NVIDIA only decodes, VAAPI offers both halves.
    report = CapabilityReport(
        decoders=(Backend.NVIDIA, Backend.VAAPI),
        encoders=(Backend.VAAPI,),
    )

    pair = select_codecs(report)

    assert report.effective_decoder is Backend.NVIDIA
    assert pair == CodecPair(Backend.VAAPI, "vaapih264dec", "vaapih264enc")


def test_decoder_only_hardware_falls_back_to_software() -> None:
    report = CapabilityReport(decoders=(Backend.NVIDIA,), encoders=())

    assert select_codecs(report) == SOFTWARE_PAIR


def test_no_hw_forces_software() -> None:
    report = report_with(Backend.NVIDIA)

    assert select_codecs(report, use_hardware=False) == SOFTWARE_PAIR


def test_gpu_id_uses_device_elements_when_registered() -> None:
    engine = FakeEngine(
        features={"nvh264dec", "nvh264enc", "nvh264device1dec", "nvh264device1enc"},
    )

    report = CapabilityProber(engine, gpu_id=1).probe()
    pair = select_codecs(report, gpu_id=1)

    assert pair == CodecPair(Backend.NVIDIA, "nvh264device1dec", "nvh264device1enc")


def test_gpu_id_without_device_elements_uses_default_names() -> None:
    report = report_with(Backend.NVIDIA)

    pair = select_codecs(report, gpu_id=2)

    assert pair.decoder == "nvh264dec"
    assert pair.encoder == "nvh264enc"


def test_software_encoder_defaults() -> None:
    props = encoder_properties(SOFTWARE_PAIR, EncoderSettings())

    assert props == {"bitrate": 4000, "tune": "zerolatency"}


def test_nvidia_encoder_properties() -> None:
    pair = CodecPair(Backend.NVIDIA, "nvh264dec", "nvh264enc")
    settings = EncoderSettings(bitrate_kbps=8000, preset="low-latency-hq", keyframe_interval=30)

    props = encoder_properties(pair, settings)

    assert props == {"bitrate": 8000, "preset": "low-latency-hq", "gop-size": 30, "zerolatency": True}
