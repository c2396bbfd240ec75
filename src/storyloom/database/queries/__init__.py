"""Database query functions for Storyloom.

This module provides async query functions for all database entities:
- Project creation, lookup and settings
- Story lookup, single-row updates, notes and activity log
- Worker directory
"""

from storyloom.database.queries.project import (
    create_project,
    get_project,
    get_project_by_code,
    list_projects,
    require_project,
    update_project_settings,
)
from storyloom.database.queries.story import (
    add_note,
    get_story,
    get_story_by_short_id,
    last_note_times,
    list_activity,
    list_blocked_by,
    list_notes,
    list_stories,
    record_activity,
    require_story,
    short_id_exists,
    update_story,
)
from storyloom.database.queries.worker import get_worker, list_workers, upsert_worker

__all__ = [
    "create_project",
    "get_project",
    "get_project_by_code",
    "list_projects",
    "require_project",
    "update_project_settings",
    "add_note",
    "get_story",
    "get_story_by_short_id",
    "last_note_times",
    "list_activity",
    "list_blocked_by",
    "list_notes",
    "list_stories",
    "record_activity",
    "require_story",
    "short_id_exists",
    "update_story",
    "get_worker",
    "list_workers",
    "upsert_worker",
]
