"""Project model for Storyloom.

A project owns the story namespace: its ``short_code`` prefixes every
story short id and ``story_counter`` holds the last number handed out.
The counter row is versioned so that concurrent allocators racing on the
same namespace are serialised by optimistic concurrency control.
"""

from __future__ import annotations

from sqlalchemy import Boolean, Integer, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from storyloom.database.models.base import Base, TimestampMixin


class Project(TimestampMixin, Base):
    """A project whose backlog Storyloom schedules.

    Attributes:
        id: UUID primary key (from TimestampMixin).
        name: Human-readable project name.
        short_code: Namespace prefix for story short ids (e.g. ``SL``).
        story_counter: Highest story number allocated in this namespace.
        version_id: Optimistic-concurrency version, bumped on every update.
        burst_mode: Whether several stories may be admitted per pass, or
            None for the deployment default.
        max_parallel_stories: Per-project admission cap, or None for the
            deployment default.
        stale_threshold_minutes: Per-project staleness threshold, or None
            for the deployment default.
    """

    __tablename__ = "projects"

    name: Mapped[str] = mapped_column(Text, nullable=False)
    short_code: Mapped[str] = mapped_column(Text, nullable=False)
    story_counter: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    version_id: Mapped[int] = mapped_column(Integer, nullable=False)
    burst_mode: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    max_parallel_stories: Mapped[int | None] = mapped_column(Integer, nullable=True)
    stale_threshold_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)

    __table_args__ = (UniqueConstraint("short_code", name="uq_projects_short_code"),)

    __mapper_args__ = {"version_id_col": version_id}
