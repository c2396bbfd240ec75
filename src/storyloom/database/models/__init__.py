"""SQLAlchemy ORM models for Storyloom.

This module defines the database schema: projects (which own the story
namespace counter), stories with their notes and activity log, and the
worker directory.
"""

from storyloom.database.models.base import Base, TimestampMixin
from storyloom.database.models.project import Project
from storyloom.database.models.story import (
    ACTIVE_STATUSES,
    HOLDING_STATUSES,
    PARKED_STATUSES,
    Complexity,
    Priority,
    Story,
    StoryActivity,
    StoryNote,
    StoryStatus,
)
from storyloom.database.models.worker import Worker

__all__ = [
    "Base",
    "TimestampMixin",
    "Project",
    "Story",
    "StoryNote",
    "StoryActivity",
    "StoryStatus",
    "Priority",
    "Complexity",
    "HOLDING_STATUSES",
    "ACTIVE_STATUSES",
    "PARKED_STATUSES",
    "Worker",
]
