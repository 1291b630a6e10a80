"""HTTP query service (FastAPI)."""

from .server import create_app
