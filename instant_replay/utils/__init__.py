"""Utility helpers for the replay engine."""

from .logging import configure_logging, resolve_level

__all__ = ["configure_logging", "resolve_level"]
