"""
Instant replay engine.

Ingests a live H.264 RTSP stream, keeps the most recent window in a ring
buffer and re-serves it to RTSP clients, using hardware codecs when the media
engine offers a complete decoder/encoder pair.
"""

from __future__ import annotations

from .capabilities import Backend, CapabilityProber, CapabilityReport, CodecPair, select_codecs
from .config import ReplayConfig
from .context import ReplayContext
from .errors import (
    ConfigurationError,
    ConstructionError,
    EngineUnavailableError,
    NegotiationMismatch,
    ProtocolFault,
    ReplayError,
    RuntimeFault,
)

__version__ = "0.1.0"

__all__ = [
    "Backend",
    "CapabilityProber",
    "CapabilityReport",
    "CodecPair",
    "ConfigurationError",
    "ConstructionError",
    "EngineUnavailableError",
    "NegotiationMismatch",
    "ProtocolFault",
    "ReplayConfig",
    "ReplayContext",
    "ReplayError",
    "RuntimeFault",
    "select_codecs",
]
