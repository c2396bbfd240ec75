"""Story model for Storyloom.

Defines the Story table with its status and priority enums, plus the
append-only note and activity tables hanging off it. Stories are never
deleted here; archival belongs to whoever owns the board.

A blocked story records what it is waiting for twice: as the structured
pair ``waiting_on_path``/``waiting_on_story_id`` that release logic reads,
and as the display string ``blocked_reason``
(``Waiting for file: <path> (held by <short_id>)``).
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import DateTime, Enum, ForeignKey, Index, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from storyloom.database.models.base import Base, PortableJSON, TimestampMixin, utcnow


class StoryStatus(str, enum.Enum):
    """Board column a story sits in."""

    ideas = "ideas"
    backlog = "backlog"
    in_design = "in-design"
    in_progress = "in-progress"
    in_review = "in-review"
    done = "done"
    blocked = "blocked"
    cancelled = "cancelled"


# Statuses whose reservations are considered held
HOLDING_STATUSES = frozenset({StoryStatus.in_progress, StoryStatus.in_design})

# Statuses the liveness watchdog inspects
ACTIVE_STATUSES = frozenset(
    {StoryStatus.in_design, StoryStatus.in_progress, StoryStatus.in_review}
)

# Statuses that require a reason and remember the status they interrupted
PARKED_STATUSES = frozenset({StoryStatus.blocked, StoryStatus.cancelled})


class Priority(str, enum.Enum):
    """Story priority, P0 highest."""

    P0 = "P0"
    P1 = "P1"
    P2 = "P2"
    P3 = "P3"

    @property
    def rank(self) -> int:
        """Numeric rank used for ordering (P0=0 ... P3=3)."""
        return int(self.value[1])


class Complexity(str, enum.Enum):
    """T-shirt size estimate."""

    S = "S"
    M = "M"
    L = "L"
    XL = "XL"


def _enum_type(enum_cls: type[enum.Enum], name: str) -> Enum:
    return Enum(
        enum_cls,
        name=name,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


class Story(TimestampMixin, Base):
    """A schedulable unit of work on a project board.

    Attributes:
        id: UUID primary key (from TimestampMixin).
        short_id: Sequential human id scoped to the project (``SL-14``).
        project_id: Owning project.
        title: One-line summary.
        description: Free-form description.
        status: Current board column.
        previous_status: Status to resume after blocked/cancelled.
        priority: P0..P3.
        complexity: T-shirt size.
        assigned_worker: Worker id currently assigned, if any.
        reserved_paths: Ordered glob patterns or literal paths claimed.
        tags: Capability tags used for routing.
        blocked_reason: Display reason, non-null iff blocked/cancelled.
        waiting_on_path: Path this story is blocked on.
        waiting_on_story_id: Story holding that path.
        last_heartbeat_at: Time of the last worker heartbeat.
        heartbeat_worker: Worker that sent the last heartbeat.
        heartbeat_message: Free text sent with the last heartbeat.
    """

    __tablename__ = "stories"

    short_id: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("projects.id"),
        nullable=False,
    )
    title: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[StoryStatus] = mapped_column(
        _enum_type(StoryStatus, "story_status"),
        nullable=False,
        default=StoryStatus.backlog,
    )
    previous_status: Mapped[StoryStatus | None] = mapped_column(
        _enum_type(StoryStatus, "story_status"),
        nullable=True,
    )
    priority: Mapped[Priority] = mapped_column(
        _enum_type(Priority, "story_priority"),
        nullable=False,
        default=Priority.P2,
    )
    complexity: Mapped[Complexity] = mapped_column(
        _enum_type(Complexity, "story_complexity"),
        nullable=False,
        default=Complexity.M,
    )
    assigned_worker: Mapped[str | None] = mapped_column(Text, nullable=True)
    reserved_paths: Mapped[list[str]] = mapped_column(
        PortableJSON,
        nullable=False,
        default=list,
    )
    tags: Mapped[list[str]] = mapped_column(
        PortableJSON,
        nullable=False,
        default=list,
    )
    blocked_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    waiting_on_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    waiting_on_story_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("stories.id"),
        nullable=True,
    )
    last_heartbeat_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    heartbeat_worker: Mapped[str | None] = mapped_column(Text, nullable=True)
    heartbeat_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_stories_project_status", "project_id", "status"),
        Index("ix_stories_waiting_on", "waiting_on_story_id"),
    )

    @property
    def priority_rank(self) -> int:
        return self.priority.rank


class StoryNote(Base):
    """An append-only note on a story.

    Attributes:
        id: UUID primary key.
        story_id: Story the note belongs to.
        author: Worker id, ``watchdog``, ``system`` or ``user``.
        text: Note body.
        created_at: When the note was written.
    """

    __tablename__ = "story_notes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    story_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("stories.id"),
        nullable=False,
        index=True,
    )
    author: Mapped[str] = mapped_column(Text, nullable=False)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )


class StoryActivity(Base):
    """An append-only record of a status change.

    Attributes:
        id: UUID primary key.
        story_id: Story that changed.
        from_status: Status before the change (None on creation).
        to_status: Status after the change.
        worker: Who made the change.
        note: Optional explanation.
        created_at: When the change happened.
    """

    __tablename__ = "story_activity"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    story_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("stories.id"),
        nullable=False,
        index=True,
    )
    from_status: Mapped[StoryStatus | None] = mapped_column(
        _enum_type(StoryStatus, "story_status"),
        nullable=True,
    )
    to_status: Mapped[StoryStatus] = mapped_column(
        _enum_type(StoryStatus, "story_status"),
        nullable=False,
    )
    worker: Mapped[str] = mapped_column(Text, nullable=False)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )
