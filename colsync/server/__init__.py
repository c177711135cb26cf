"""HTTP interface for the sync protocol.

Serves push and pull on ``/api/sync`` using FastAPI.
"""

from .app import create_app

__all__ = ["create_app"]
