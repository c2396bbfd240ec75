"""Web interface for Storyloom.

This module provides the FastAPI service exposing projects, stories,
reservations, admission passes, routing and the liveness watchdog.
"""

from __future__ import annotations

from storyloom.web.app import create_app
from storyloom.web.middleware import RequestLoggingMiddleware

__all__ = [
    "create_app",
    "RequestLoggingMiddleware",
]
