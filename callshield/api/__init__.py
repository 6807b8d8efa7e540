"""HTTP adapter for the callshield gateway."""

from callshield.api.app import create_app

__all__ = ["create_app"]
