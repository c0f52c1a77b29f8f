"""HTTP adapter for sheetsage."""

from sheetsage.api.server import create_app

__all__ = ["create_app"]
