"""
Ring buffer sizing and eviction contract.

The bytes themselves live inside ``queue2``; this module decides how that
element is configured and keeps a metadata-only model of the retained window
(timestamps and sizes, never payload) so the rest of the engine can reason
about what is currently replayable.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, Optional, Tuple

from .config import RingBufferSettings

LOG = logging.getLogger(__name__)

BOUND_TIME = "time"
BOUND_BYTES = "bytes"
BOUND_BUFFERS = "buffers"

# queue2 "max-size-bytes" is a guint; "ring-buffer-max-size" is a guint64.
MAX_GUINT = 0xFFFFFFFF


def queue2_properties(settings: RingBufferSettings) -> Dict[str, object]:
    """
    Property map for the ``queue2`` element acting as the ring buffer.

    ``temp-template`` is only set for a disk backed store; leaving it unset
    keeps the ring in memory.
    """

    props: Dict[str, object] = {
        "max-size-time": settings.max_time_ns,
        "max-size-bytes": min(int(settings.max_bytes), MAX_GUINT),
        "max-size-buffers": int(settings.max_buffers),
        "ring-buffer-max-size": int(settings.max_bytes),
        "use-buffering": bool(settings.use_buffering),
    }
    if settings.temp_template:
        props["temp-template"] = settings.temp_template
    return props


@dataclass(frozen=True)
class WindowSnapshot:
    retention_ns: int
    capacity_bytes: int
    fill_bytes: int
    buffer_count: int
    oldest_ns: Optional[int]
    newest_ns: Optional[int]
    buffering_percent: int
    last_eviction: Optional[str]

    @property
    def span_ns(self) -> int:
        if self.oldest_ns is None or self.newest_ns is None:
            return 0
        return self.newest_ns - self.oldest_ns

    def to_dict(self) -> dict:
        return {
            "retention_ns": self.retention_ns,
            "capacity_bytes": self.capacity_bytes,
            "fill_bytes": self.fill_bytes,
            "buffer_count": self.buffer_count,
            "oldest_ns": self.oldest_ns,
            "newest_ns": self.newest_ns,
            "span_ns": self.span_ns,
            "buffering_percent": self.buffering_percent,
            "last_eviction": self.last_eviction,
        }


class BufferWindow:
    """
    Logical view of the rolling buffer.

    ``append`` is called from the streaming thread for every buffer entering
    the ring; after each append the oldest entries are dropped until both the
    time bound and the byte bound hold again.  The bound that forced the most
    recent eviction is kept in ``last_eviction``.

    The time bound is measured from the highest timestamp seen.  A timestamp
    more than one retention window behind it is a discontinuity (source
    restart or reconnect) and restarts the window.
    """

    def __init__(self, retention_ns: int, capacity_bytes: int, *, max_buffers: int = 0) -> None:
        if retention_ns <= 0 or capacity_bytes <= 0:
            raise ValueError("retention and capacity must be positive")
        self.retention_ns = int(retention_ns)
        self.capacity_bytes = int(capacity_bytes)
        self.max_buffers = max(0, int(max_buffers))
        self._entries: Deque[Tuple[int, int]] = deque()
        self._fill_bytes = 0
        self._newest: Optional[int] = None
        self._discontinuities = 0
        self._buffering_percent = 0
        self._last_eviction: Optional[str] = None
        self._evicted_by: Dict[str, int] = {BOUND_TIME: 0, BOUND_BYTES: 0, BOUND_BUFFERS: 0}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: RingBufferSettings) -> "BufferWindow":
        return cls(settings.max_time_ns, settings.max_bytes, max_buffers=settings.max_buffers)

    # ------------------------------------------------------------------ writes

    def append(self, timestamp_ns: int, size: int) -> None:
        timestamp_ns = int(timestamp_ns)
        with self._lock:
            if self._newest is not None and self._newest - timestamp_ns > self.retention_ns:
                LOG.info(
                    "Timestamp discontinuity (%d ns -> %d ns), restarting buffer window",
                    self._newest,
                    timestamp_ns,
                )
                self._evicted_by[BOUND_TIME] += len(self._entries)
                self._last_eviction = BOUND_TIME
                self._discontinuities += 1
                self._entries.clear()
                self._fill_bytes = 0
                self._newest = None
            self._entries.append((timestamp_ns, int(size)))
            self._fill_bytes += int(size)
            if self._newest is None or timestamp_ns > self._newest:
                self._newest = timestamp_ns
            self._evict_locked()

    def observe_buffering(self, percent: int) -> None:
        with self._lock:
            self._buffering_percent = max(0, min(100, int(percent)))

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._fill_bytes = 0
            self._newest = None

    def _evict_locked(self) -> None:
        while self._entries:
            bound = self._exceeded_bound_locked()
            if bound is None:
                return
            _, size = self._entries.popleft()
            self._fill_bytes -= size
            if not self._entries:
                self._newest = None
            self._evicted_by[bound] += 1
            if bound != self._last_eviction:
                LOG.debug("Ring buffer evicting on %s bound", bound)
            self._last_eviction = bound

    def _exceeded_bound_locked(self) -> Optional[str]:
        # Byte bound is checked first: when both are exceeded at once the
        # store is full regardless of how much time it spans.
        if self._fill_bytes > self.capacity_bytes:
            return BOUND_BYTES
        if self.max_buffers and len(self._entries) > self.max_buffers:
            return BOUND_BUFFERS
        if self._newest - self._entries[0][0] > self.retention_ns:
            return BOUND_TIME
        return None

    # ------------------------------------------------------------------- reads

    @property
    def oldest_timestamp(self) -> Optional[int]:
        with self._lock:
            return self._entries[0][0] if self._entries else None

    @property
    def newest_timestamp(self) -> Optional[int]:
        with self._lock:
            return self._newest

    @property
    def fill_bytes(self) -> int:
        with self._lock:
            return self._fill_bytes

    @property
    def buffering_percent(self) -> int:
        with self._lock:
            return self._buffering_percent

    @property
    def last_eviction(self) -> Optional[str]:
        with self._lock:
            return self._last_eviction

    @property
    def discontinuities(self) -> int:
        with self._lock:
            return self._discontinuities

    def evictions(self, bound: str) -> int:
        with self._lock:
            return self._evicted_by[bound]

    def snapshot(self) -> WindowSnapshot:
        with self._lock:
            return WindowSnapshot(
                retention_ns=self.retention_ns,
                capacity_bytes=self.capacity_bytes,
                fill_bytes=self._fill_bytes,
                buffer_count=len(self._entries),
                oldest_ns=self._entries[0][0] if self._entries else None,
                newest_ns=self._newest,
                buffering_percent=self._buffering_percent,
                last_eviction=self._last_eviction,
            )
