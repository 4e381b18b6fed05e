"""HTTP surface for the poll service.

Provides short poll, long poll, cancellation and change recording endpoints
using FastAPI.
"""

from .app import create_app

__all__ = ["create_app"]
