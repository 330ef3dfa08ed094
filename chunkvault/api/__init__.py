"""HTTP API for chunkvault.

Authenticates requests, validates payload shapes and maps store and
sync results to JSON responses using FastAPI.
"""

from .app import API_PREFIX, create_app

__all__ = ["API_PREFIX", "create_app"]
