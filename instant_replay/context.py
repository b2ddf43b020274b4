"""
Orchestration context.

A single :class:`ReplayContext` is created per process and handed to the
builder, the server and the dispatcher; it replaces module level handles for
the pipeline and the main loop.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

from .capabilities import SOFTWARE_PAIR, CapabilityReport, CodecPair
from .config import ReplayConfig
from .errors import RuntimeFault
from .ringbuffer import BufferWindow

if TYPE_CHECKING:  # pragma: no cover - typing aid
    from .pipeline import PipelineHandle
    from .server import ServerHandle


@dataclass
class ReplayContext:
    config: ReplayConfig
    report: Optional[CapabilityReport] = None
    codecs: CodecPair = SOFTWARE_PAIR
    pipeline: Optional["PipelineHandle"] = None
    server: Optional["ServerHandle"] = None
    fault: Optional[RuntimeFault] = None
    window: BufferWindow = field(init=False)

    def __post_init__(self) -> None:
        self.window = BufferWindow.from_settings(self.config.buffer)

    def describe(self) -> dict:
        return {
            "input": self.config.source.location,
            "stream_url": self.config.stream_url,
            "codecs": {
                "backend": self.codecs.backend.value,
                "decoder": self.codecs.decoder,
                "encoder": self.codecs.encoder,
            },
            "buffer": self.window.snapshot().to_dict(),
            "sessions": len(self.server.sessions) if self.server else 0,
            "fault": str(self.fault) if self.fault else None,
        }
