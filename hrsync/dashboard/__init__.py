"""Web API for the sync dashboard.

Exposes sync stats, operations and conflicts, and the sync and
resolve actions, using FastAPI.
"""

from .app import create_app

__all__ = ["create_app"]
