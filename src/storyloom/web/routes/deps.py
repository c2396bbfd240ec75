"""Dependency injection helpers shared by the route modules."""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from storyloom.config import StoryloomConfig


def get_session_factory(request: Request) -> Callable[[], AsyncSession]:
    """Extract session factory from FastAPI app state.

    Args:
        request: Incoming FastAPI request.

    Returns:
        Callable that produces AsyncSession instances.
    """
    return request.app.state.session_factory


def get_config(request: Request) -> StoryloomConfig:
    """Extract the application configuration from FastAPI app state."""
    return request.app.state.config
