"""HTTP surface: worker trigger endpoint and process controls."""

from .app import create_app

__all__ = ["create_app"]
