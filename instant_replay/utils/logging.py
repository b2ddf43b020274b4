"""
Logging helpers for the replay engine.

Centralising log configuration keeps the rest of the modules focused on their
domain logic.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional, Union

DEFAULT_FORMAT = "[%(asctime)s] %(levelname)-8s %(name)s: %(message)s"


def resolve_level(level: Union[int, str]) -> int:
    """Accept either a numeric level or a name such as ``"debug"``."""

    if isinstance(level, int):
        return level
    value = logging.getLevelName(str(level).strip().upper())
    if isinstance(value, int):
        return value
    raise ValueError(f"Unknown log level '{level}'")


def configure_logging(level: Union[int, str] = logging.INFO, format: Optional[str] = None) -> None:
    """
    Ensure the root logger is configured exactly once.
    """

    numeric_level = resolve_level(level)
    root = logging.getLogger()
    if root.handlers:
        # Respect any user provided configuration, only adjust verbosity.
        root.setLevel(numeric_level)
        return

    logging.basicConfig(
        level=numeric_level,
        format=format or DEFAULT_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
