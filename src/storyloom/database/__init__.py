"""Database layer for Storyloom.

This module handles database connections, session management, and the
ORM models backing stories, projects and workers.

Public API:
    get_engine: Create an AsyncEngine from DatabaseConfig.
    get_session_factory: Create an async_sessionmaker from an engine.
    Base: SQLAlchemy declarative base for all models.
"""

from storyloom.database.connection import get_engine, get_session_factory
from storyloom.database.models import (
    Base,
    Complexity,
    Priority,
    Project,
    Story,
    StoryActivity,
    StoryNote,
    StoryStatus,
    TimestampMixin,
    Worker,
)

__all__ = [
    "get_engine",
    "get_session_factory",
    "Base",
    "TimestampMixin",
    "Project",
    "Story",
    "StoryNote",
    "StoryActivity",
    "StoryStatus",
    "Priority",
    "Complexity",
    "Worker",
]
