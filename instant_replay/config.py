"""
Configuration for the replay engine.

Values come from three layers, later layers winning: dataclass defaults, an
optional YAML file (``--config`` or ``$REPLAY_CONFIG``) and command line flags.
The YAML layer is validated with pydantic before it is merged.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError, validator

from .errors import ConfigurationError
from .utils.logging import resolve_level

CONFIG_ENV_VAR = "REPLAY_CONFIG"

NANOSECONDS_PER_SECOND = 1_000_000_000

# GstRTSPLowerTrans flag values understood by rtspsrc and the RTSP server.
LOWER_TRANSPORTS: Dict[str, int] = {
    "udp": 0x1,
    "udp-mcast": 0x2,
    "tcp": 0x4,
}

# rtspsrc "buffer-mode" enum values.
BUFFER_MODES: Dict[str, int] = {
    "none": 0,
    "slave": 1,
    "buffer": 2,
    "auto": 3,
    "synced": 4,
}


@dataclass
class SourceSettings:
    """Parameters applied to the ``rtspsrc`` ingest element."""

    location: str = ""
    latency_ms: int = 2000
    transport: str = "tcp"
    buffer_mode: str = "slave"
    user: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)

    @property
    def protocols(self) -> int:
        return LOWER_TRANSPORTS[self.transport]

    @property
    def buffer_mode_value(self) -> int:
        return BUFFER_MODES[self.buffer_mode]

    @property
    def has_credentials(self) -> bool:
        return bool(self.user)


@dataclass
class RingBufferSettings:
    """
    Bounds of the rolling buffer.

    ``seconds`` and ``max_bytes`` are independent; whichever is reached first
    causes the oldest data to be discarded.  ``temp_template`` selects a disk
    backed store, ``None`` keeps the ring in memory.
    """

    seconds: int = 60
    max_bytes: int = 1_000_000_000
    max_buffers: int = 0
    use_buffering: bool = True
    temp_template: Optional[str] = None
    store_path: str = "/tmp/replay-buffer.h264"

    @property
    def max_time_ns(self) -> int:
        return int(self.seconds) * NANOSECONDS_PER_SECOND


@dataclass
class EncoderSettings:
    """Re-encode parameters for the serving graph."""

    bitrate_kbps: int = 4000
    preset: Optional[str] = None
    rate_control: Optional[str] = None
    keyframe_interval: Optional[int] = None
    low_latency: bool = True


@dataclass
class ServerSettings:
    port: int = 8554
    mount_point: str = "/replay"
    address: str = "0.0.0.0"
    shared: bool = True
    enable_rtcp: bool = True
    enable_seek: bool = True
    allow_udp: bool = False


@dataclass
class ReplayConfig:
    """Top level configuration of a replay process."""

    source: SourceSettings = field(default_factory=SourceSettings)
    buffer: RingBufferSettings = field(default_factory=RingBufferSettings)
    encoder: EncoderSettings = field(default_factory=EncoderSettings)
    server: ServerSettings = field(default_factory=ServerSettings)
    use_hardware_accel: bool = True
    gpu_id: int = 0
    api_host: str = "127.0.0.1"
    api_port: Optional[int] = None
    log_level: str = "info"

    @property
    def stream_url(self) -> str:
        return f"rtsp://localhost:{self.server.port}{self.server.mount_point}"

    def validate(self) -> "ReplayConfig":
        problems: List[str] = []
        location = self.source.location.strip()
        if not location:
            problems.append("input RTSP URL is required (use -i or --input)")
        elif not location.startswith(("rtsp://", "rtsps://")):
            problems.append(f"input '{location}' is not an rtsp:// URL")
        if self.source.transport not in LOWER_TRANSPORTS:
            problems.append(
                f"transport must be one of {', '.join(sorted(LOWER_TRANSPORTS))}, "
                f"got '{self.source.transport}'"
            )
        if self.source.buffer_mode not in BUFFER_MODES:
            problems.append(f"unknown buffer mode '{self.source.buffer_mode}'")
        if self.source.latency_ms < 0:
            problems.append("latency must not be negative")
        if self.buffer.seconds <= 0:
            problems.append("buffer duration must be a positive number of seconds")
        if self.buffer.max_bytes <= 0:
            problems.append("ring buffer byte bound must be positive")
        if self.buffer.max_buffers < 0:
            problems.append("ring buffer buffer-count bound must not be negative")
        if not 0 < self.server.port < 65536:
            problems.append(f"port {self.server.port} is out of range")
        if not self.server.mount_point.startswith("/"):
            problems.append(f"mount point '{self.server.mount_point}' must start with '/'")
        if self.gpu_id < 0:
            problems.append("GPU id must not be negative")
        if self.encoder.bitrate_kbps <= 0:
            problems.append("encoder bitrate must be positive")
        if self.api_port is not None and not 0 < self.api_port < 65536:
            problems.append(f"API port {self.api_port} is out of range")
        try:
            resolve_level(self.log_level)
        except ValueError as exc:
            problems.append(str(exc))
        if problems:
            raise ConfigurationError("; ".join(problems))
        return self

    def banner_lines(self) -> List[str]:
        return [
            f"Input RTSP: {self.source.location}",
            f"Buffer Size: {self.buffer.seconds} seconds ({self.buffer.max_bytes} bytes max)",
            f"Output Port: {self.server.port}",
            f"Mount Point: {self.server.mount_point}",
            f"HW Accel: {'Enabled' if self.use_hardware_accel else 'Disabled'}",
        ]


# ------------------------------------------------------------------ file layer


class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid")


class SourceSection(_Section):
    location: Optional[str] = None
    latency_ms: Optional[int] = None
    transport: Optional[str] = None
    buffer_mode: Optional[str] = None
    user: Optional[str] = None
    password: Optional[str] = None

    @validator("transport", "buffer_mode", pre=True)
    def _lower(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower()
        return value


class BufferSection(_Section):
    seconds: Optional[int] = None
    max_bytes: Optional[int] = None
    max_buffers: Optional[int] = None
    use_buffering: Optional[bool] = None
    temp_template: Optional[str] = None
    store_path: Optional[str] = None


class EncoderSection(_Section):
    bitrate_kbps: Optional[int] = None
    preset: Optional[str] = None
    rate_control: Optional[str] = None
    keyframe_interval: Optional[int] = None
    low_latency: Optional[bool] = None


class ServerSection(_Section):
    port: Optional[int] = None
    mount_point: Optional[str] = None
    address: Optional[str] = None
    shared: Optional[bool] = None
    enable_rtcp: Optional[bool] = None
    enable_seek: Optional[bool] = None
    allow_udp: Optional[bool] = None


class ConfigFile(_Section):
    source: SourceSection = SourceSection()
    buffer: BufferSection = BufferSection()
    encoder: EncoderSection = EncoderSection()
    server: ServerSection = ServerSection()
    use_hardware_accel: Optional[bool] = None
    gpu_id: Optional[int] = None
    api_host: Optional[str] = None
    api_port: Optional[int] = None
    log_level: Optional[str] = None


def config_from_mapping(data: Dict[str, Any], base: Optional[ReplayConfig] = None) -> ReplayConfig:
    """
    Merge a raw mapping (as loaded from YAML) onto ``base``.

    Only keys present in ``data`` with a non-null value override the base
    values; an explicit null leaves the base value in place.
    """

    try:
        parsed = ConfigFile.model_validate(data or {})
    except ValidationError as exc:
        raise ConfigurationError(f"invalid configuration: {exc}") from None

    config = base or ReplayConfig()
    sections = {
        "source": parsed.source,
        "buffer": parsed.buffer,
        "encoder": parsed.encoder,
        "server": parsed.server,
    }
    updates: Dict[str, Any] = {}
    for name, section in sections.items():
        values = section.model_dump(exclude_unset=True, exclude_none=True)
        if values:
            updates[name] = replace(getattr(config, name), **values)
    updates.update(
        parsed.model_dump(exclude_unset=True, exclude_none=True, exclude=set(sections))
    )
    return replace(config, **updates)


def load_config_file(path: Union[str, Path]) -> ReplayConfig:
    config_path = Path(path).expanduser()
    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except FileNotFoundError:
        raise ConfigurationError(f"configuration file '{config_path}' does not exist") from None
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"configuration file '{config_path}' is not valid YAML: {exc}") from None
    if not isinstance(data, dict):
        raise ConfigurationError(f"configuration file '{config_path}' must contain a mapping")
    return config_from_mapping(data)


def default_config_path() -> Optional[Path]:
    value = os.environ.get(CONFIG_ENV_VAR)
    if not value:
        return None
    return Path(value).expanduser()
