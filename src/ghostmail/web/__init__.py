"""JSON API for a UI process."""

from .app import create_app

__all__ = ["create_app"]
