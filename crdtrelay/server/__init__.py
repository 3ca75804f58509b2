"""HTTP transport for the relay.

Exposes the sync coordinator over FastAPI.
"""

from .app import create_app

__all__ = ["create_app"]
