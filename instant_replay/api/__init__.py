"""HTTP status surface for a running replay process."""

from .server import create_app

__all__ = ["create_app"]
