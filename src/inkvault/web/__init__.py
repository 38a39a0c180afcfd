"""REST API for Inkvault.

FastAPI application exposing health checks and embedding queue
administration endpoints.
"""

from __future__ import annotations

from inkvault.web.app import create_app
from inkvault.web.middleware import RequestLoggingMiddleware

__all__ = [
    "create_app",
    "RequestLoggingMiddleware",
]
