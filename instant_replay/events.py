"""
Notifications consumed by the event dispatcher.

Every asynchronous signal from the running graph (bus messages, pad
announcements) and from the process (signals, API commands) is turned into one
of these immutable records before it reaches the dispatcher queue.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from .errors import NegotiationMismatch

EXPECTED_MEDIA = "video"
EXPECTED_ENCODING = "H264"


class LifecycleState(str, Enum):
    NULL = "null"
    READY = "ready"
    PAUSED = "paused"
    PLAYING = "playing"
    ERROR = "error"
    TERMINATED = "terminated"

    @property
    def is_terminal(self) -> bool:
        return self in (LifecycleState.ERROR, LifecycleState.TERMINATED)


class LinkOutcome(str, Enum):
    LINKED = "linked"
    IGNORED = "ignored"
    ALREADY_LINKED = "already-linked"
    FAILED = "failed"


@dataclass(frozen=True)
class LinkRequest:
    """
    A source pad announced after the RTSP handshake.

    ``pad`` is the engine's own pad object; it is carried opaquely and only
    handed back to the engine for linking.
    """

    pad_id: str
    media: Optional[str]
    encoding: Optional[str]
    caps: str = ""
    pad: Any = field(default=None, compare=False, repr=False)

    def require(self, media: str = EXPECTED_MEDIA, encoding: str = EXPECTED_ENCODING) -> None:
        if (self.media or "").lower() != media.lower():
            raise NegotiationMismatch(f"pad {self.pad_id} carries '{self.media}', expected '{media}'")
        if (self.encoding or "").upper() != encoding.upper():
            raise NegotiationMismatch(
                f"pad {self.pad_id} is encoded as '{self.encoding}', expected '{encoding}'"
            )


@dataclass(frozen=True)
class ErrorMessage:
    source: str
    message: str
    debug: Optional[str] = None


@dataclass(frozen=True)
class WarningMessage:
    source: str
    message: str
    debug: Optional[str] = None


@dataclass(frozen=True)
class EndOfStream:
    source: str = "pipeline"


@dataclass(frozen=True)
class StateChanged:
    source: str
    old: Optional[LifecycleState]
    new: Optional[LifecycleState]
    pending: Optional[LifecycleState] = None
    from_pipeline: bool = False


@dataclass(frozen=True)
class Buffering:
    percent: int


@dataclass(frozen=True)
class SourceLinked:
    pad_id: str
    outcome: LinkOutcome
    detail: str = ""


@dataclass(frozen=True)
class ShutdownRequested:
    reason: str


Notification = Union[
    ErrorMessage,
    WarningMessage,
    EndOfStream,
    StateChanged,
    Buffering,
    SourceLinked,
    ShutdownRequested,
]
