"""
Hardware capability detection and codec element selection.

The prober asks the media engine registry which H.264 decoder/encoder
features exist; the selector turns that report into the single codec pair used
for the lifetime of the process.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Optional, Protocol, Tuple

from .config import EncoderSettings
from .errors import EngineUnavailableError

LOG = logging.getLogger(__name__)


class Backend(str, Enum):
    """Codec backends in preference order."""

    NVIDIA = "nvidia"
    VAAPI = "vaapi"
    MSDK = "msdk"
    SOFTWARE = "software"


BACKEND_PRIORITY: Tuple[Backend, ...] = (
    Backend.NVIDIA,
    Backend.VAAPI,
    Backend.MSDK,
    Backend.SOFTWARE,
)

DECODERS: Dict[Backend, str] = {
    Backend.NVIDIA: "nvh264dec",
    Backend.VAAPI: "vaapih264dec",
    Backend.MSDK: "msdkh264dec",
    Backend.SOFTWARE: "avdec_h264",
}

ENCODERS: Dict[Backend, str] = {
    Backend.NVIDIA: "nvh264enc",
    Backend.VAAPI: "vaapih264enc",
    Backend.MSDK: "msdkh264enc",
    Backend.SOFTWARE: "x264enc",
}

REQUIRED_PLUGINS: Tuple[str, ...] = (
    "rtsp",
    "rtp",
    "rtpmanager",
    "coreelements",
    "playback",
    "videoparsersbad",
    "libav",
)


def nvidia_device_features(gpu_id: int) -> Tuple[str, str]:
    """nvcodec registers non-default GPUs under per-device feature names."""

    return f"nvh264device{gpu_id}dec", f"nvh264device{gpu_id}enc"


class Registry(Protocol):
    def has_feature(self, name: str) -> bool: ...

    def has_plugin(self, name: str) -> bool: ...


@dataclass(frozen=True)
class CapabilityReport:
    """
    Immutable result of a registry probe.

    ``decoders``/``encoders`` hold every backend that was found, in priority
    order; a missing backend is simply absent.
    """

    decoders: Tuple[Backend, ...] = ()
    encoders: Tuple[Backend, ...] = ()
    features: FrozenSet[str] = frozenset()
    plugins_found: Tuple[str, ...] = ()
    plugins_missing: Tuple[str, ...] = ()

    @property
    def effective_decoder(self) -> Backend:
        return self.decoders[0] if self.decoders else Backend.SOFTWARE

    @property
    def effective_encoder(self) -> Backend:
        return self.encoders[0] if self.encoders else Backend.SOFTWARE

    @property
    def hardware_available(self) -> bool:
        return any(backend is not Backend.SOFTWARE for backend in self.decoders + self.encoders)

    def supports(self, backend: Backend) -> bool:
        return backend in self.decoders and backend in self.encoders


@dataclass(frozen=True)
class CodecPair:
    backend: Backend
    decoder: str
    encoder: str

    @property
    def is_hardware(self) -> bool:
        return self.backend is not Backend.SOFTWARE


SOFTWARE_PAIR = CodecPair(Backend.SOFTWARE, DECODERS[Backend.SOFTWARE], ENCODERS[Backend.SOFTWARE])


class CapabilityProber:
    """Query the engine registry in a fixed order."""

    def __init__(self, registry: Registry, *, gpu_id: int = 0) -> None:
        self._registry = registry
        self._gpu_id = gpu_id

    def probe(self) -> CapabilityReport:
        try:
            features = set()
            decoders = []
            encoders = []
            for backend in BACKEND_PRIORITY:
                if self._registry.has_feature(DECODERS[backend]):
                    decoders.append(backend)
                    features.add(DECODERS[backend])
                if self._registry.has_feature(ENCODERS[backend]):
                    encoders.append(backend)
                    features.add(ENCODERS[backend])

            if self._gpu_id > 0:
                for name in nvidia_device_features(self._gpu_id):
                    if self._registry.has_feature(name):
                        features.add(name)

            found = []
            missing = []
            for plugin in REQUIRED_PLUGINS:
                (found if self._registry.has_plugin(plugin) else missing).append(plugin)
        except EngineUnavailableError:
            raise
        except Exception as exc:
            raise EngineUnavailableError(f"media engine registry query failed: {exc}") from exc

        report = CapabilityReport(
            decoders=tuple(decoders),
            encoders=tuple(encoders),
            features=frozenset(features),
            plugins_found=tuple(found),
            plugins_missing=tuple(missing),
        )
        if report.hardware_available:
            LOG.info(
                "Hardware codecs detected: decode=%s encode=%s",
                report.effective_decoder.value,
                report.effective_encoder.value,
            )
        else:
            LOG.warning("No hardware acceleration detected, will use software codecs")
        return report


def select_codecs(report: CapabilityReport, *, use_hardware: bool = True, gpu_id: int = 0) -> CodecPair:
    """
    Pick the decoder/encoder pair for this process.

    A hardware backend is only chosen when it provides both halves; decode and
    encode are never split across vendors.
    """

    if not use_hardware:
        return SOFTWARE_PAIR

    for backend in BACKEND_PRIORITY:
        if backend is Backend.SOFTWARE:
            break
        if not report.supports(backend):
            continue
        decoder, encoder = DECODERS[backend], ENCODERS[backend]
        if backend is Backend.NVIDIA and gpu_id > 0:
            device_decoder, device_encoder = nvidia_device_features(gpu_id)
            if device_decoder in report.features and device_encoder in report.features:
                decoder, encoder = device_decoder, device_encoder
            else:
                LOG.warning("GPU %d not exposed by nvcodec; using the default device.", gpu_id)
        return CodecPair(backend, decoder, encoder)

    return SOFTWARE_PAIR


def encoder_properties(pair: CodecPair, settings: EncoderSettings) -> Dict[str, object]:
    """Translate backend-neutral encoder settings into element properties."""

    props: Dict[str, object] = {"bitrate": int(settings.bitrate_kbps)}
    keyframes: Optional[int] = settings.keyframe_interval

    if pair.backend is Backend.NVIDIA:
        if settings.rate_control:
            props["rc-mode"] = settings.rate_control
        if settings.preset:
            props["preset"] = settings.preset
        if keyframes:
            props["gop-size"] = keyframes
        if settings.low_latency:
            props["zerolatency"] = True
    elif pair.backend is Backend.VAAPI:
        if settings.rate_control:
            props["rate-control"] = settings.rate_control
        if keyframes:
            props["keyframe-period"] = keyframes
    elif pair.backend is Backend.MSDK:
        if settings.rate_control:
            props["rate-control"] = settings.rate_control
        if keyframes:
            props["gop-size"] = keyframes
        if settings.low_latency:
            props["low-power"] = True
    else:
        if settings.low_latency:
            props["tune"] = "zerolatency"
        if settings.preset:
            props["speed-preset"] = settings.preset
        if keyframes:
            props["key-int-max"] = keyframes
    return props
