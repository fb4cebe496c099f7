"""Self-hosted file sharing: keyed uploads, short links and expiring files."""

from .app import create_app

__all__ = ["create_app"]
