"""
Runtime binding between the orchestration layer and GStreamer.
"""

from __future__ import annotations

from .gst_engine import BusMonitor, GstEngine, translate_message

__all__ = [
    "BusMonitor",
    "GstEngine",
    "translate_message",
]
