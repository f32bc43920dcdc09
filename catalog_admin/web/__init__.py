"""Web interface for the catalog admin panel."""

from .server import create_app

__all__ = ["create_app"]
