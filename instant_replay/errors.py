"""
Error taxonomy for the replay engine.

Absence of a hardware backend is not represented here: it is a normal value
of :class:`instant_replay.capabilities.CapabilityReport`.
"""

from __future__ import annotations

from typing import Optional


class ReplayError(RuntimeError):
    """Base class for replay engine errors."""


class EngineUnavailableError(ReplayError):
    """Raised when the media engine or its plugin registry cannot be reached."""


class ConfigurationError(ReplayError):
    """Raised for invalid command line or configuration file values."""


class ConstructionError(ReplayError):
    """
    Raised when the ingest or serving graph cannot be assembled.

    ``missing`` names the element factory or plugin that was not available, if
    the failure was caused by one.
    """

    def __init__(self, message: str, *, missing: Optional[str] = None) -> None:
        super().__init__(message)
        self.missing = missing


class NegotiationMismatch(ReplayError):
    """Raised when an announced source pad does not carry the expected media."""


class RuntimeFault(ReplayError):
    """An error reported by a running pipeline element."""

    def __init__(self, source: str, message: str, debug: Optional[str] = None) -> None:
        super().__init__(f"{source}: {message}")
        self.source = source
        self.message = message
        self.debug = debug


class ProtocolFault(ReplayError):
    """A fault confined to a single RTSP client session."""

    def __init__(self, session_id: str, reason: str) -> None:
        super().__init__(f"session {session_id}: {reason}")
        self.session_id = session_id
        self.reason = reason
