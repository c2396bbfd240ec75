"""Initial schema for Storyloom.

Creates the projects, stories, story_notes, story_activity and workers
tables. Runs on PostgreSQL (native enums, JSONB) and SQLite.

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

STORY_STATUSES = (
    "ideas", "backlog", "in-design", "in-progress", "in-review", "done", "blocked", "cancelled",
)

json_type = sa.JSON().with_variant(JSONB(), "postgresql")


def _status() -> sa.Enum:
    return sa.Enum(*STORY_STATUSES, name="story_status", create_type=False)


def upgrade() -> None:
    bind = op.get_bind()
    story_status = sa.Enum(*STORY_STATUSES, name="story_status")
    story_status.create(bind, checkfirst=True)
    story_priority = sa.Enum("P0", "P1", "P2", "P3", name="story_priority")
    story_priority.create(bind, checkfirst=True)
    story_complexity = sa.Enum("S", "M", "L", "XL", name="story_complexity")
    story_complexity.create(bind, checkfirst=True)

    op.create_table(
        "projects",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("short_code", sa.Text(), nullable=False),
        sa.Column("story_counter", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("version_id", sa.Integer(), nullable=False),
        sa.Column("burst_mode", sa.Boolean(), nullable=True),
        sa.Column("max_parallel_stories", sa.Integer(), nullable=True),
        sa.Column("stale_threshold_minutes", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("short_code", name="uq_projects_short_code"),
    )

    op.create_table(
        "stories",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("short_id", sa.Text(), nullable=False, unique=True),
        sa.Column("project_id", sa.Uuid(), sa.ForeignKey("projects.id"), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("status", _status(), nullable=False),
        sa.Column("previous_status", _status(), nullable=True),
        sa.Column(
            "priority",
            sa.Enum("P0", "P1", "P2", "P3", name="story_priority", create_type=False),
            nullable=False,
        ),
        sa.Column(
            "complexity",
            sa.Enum("S", "M", "L", "XL", name="story_complexity", create_type=False),
            nullable=False,
        ),
        sa.Column("assigned_worker", sa.Text(), nullable=True),
        sa.Column("reserved_paths", json_type, nullable=False),
        sa.Column("tags", json_type, nullable=False),
        sa.Column("blocked_reason", sa.Text(), nullable=True),
        sa.Column("waiting_on_path", sa.Text(), nullable=True),
        sa.Column("waiting_on_story_id", sa.Uuid(), sa.ForeignKey("stories.id"), nullable=True),
        sa.Column("last_heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("heartbeat_worker", sa.Text(), nullable=True),
        sa.Column("heartbeat_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_stories_project_status", "stories", ["project_id", "status"])
    op.create_index("ix_stories_waiting_on", "stories", ["waiting_on_story_id"])

    op.create_table(
        "story_notes",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("story_id", sa.Uuid(), sa.ForeignKey("stories.id"), nullable=False),
        sa.Column("author", sa.Text(), nullable=False),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_story_notes_story_id", "story_notes", ["story_id"])

    op.create_table(
        "story_activity",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("story_id", sa.Uuid(), sa.ForeignKey("stories.id"), nullable=False),
        sa.Column("from_status", _status(), nullable=True),
        sa.Column("to_status", _status(), nullable=False),
        sa.Column("worker", sa.Text(), nullable=False),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_story_activity_story_id", "story_activity", ["story_id"])

    op.create_table(
        "workers",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("primary_tags", json_type, nullable=False),
        sa.Column("secondary_tags", json_type, nullable=False),
        sa.Column("tie_break_rank", sa.Integer(), nullable=False, server_default="100"),
        sa.Column("is_fallback", sa.Boolean(), nullable=False, server_default=sa.false()),
    )


def downgrade() -> None:
    op.drop_table("workers")
    op.drop_index("ix_story_activity_story_id", table_name="story_activity")
    op.drop_table("story_activity")
    op.drop_index("ix_story_notes_story_id", table_name="story_notes")
    op.drop_table("story_notes")
    op.drop_index("ix_stories_waiting_on", table_name="stories")
    op.drop_index("ix_stories_project_status", table_name="stories")
    op.drop_table("stories")
    op.drop_table("projects")

    bind = op.get_bind()
    sa.Enum(name="story_complexity").drop(bind, checkfirst=True)
    sa.Enum(name="story_priority").drop(bind, checkfirst=True)
    sa.Enum(name="story_status").drop(bind, checkfirst=True)
