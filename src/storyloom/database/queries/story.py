"""Story query functions for Storyloom.

Provides async functions for reading stories and for the single-row
writes every coordination component is built from: one UPDATE per story
change, one INSERT per note or activity record, each committed on its
own. Story creation lives in the allocator because it must share a
transaction with the namespace counter.
"""

from __future__ import annotations

from collections.abc import Collection, Iterable
from datetime import datetime
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from storyloom.database.models.base import ensure_utc
from storyloom.database.models.story import (
    Story,
    StoryActivity,
    StoryNote,
    StoryStatus,
)
from storyloom.exceptions import ContentionError, NotFoundError

logger = structlog.get_logger(__name__)


async def get_story(
    session: AsyncSession,
    story_id: UUID,
) -> Story | None:
    """Retrieve a story by ID.

    Args:
        session: Active async database session.
        story_id: UUID of the story to retrieve.

    Returns:
        The Story instance if found, None otherwise.
    """
    stmt = select(Story).where(Story.id == story_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_story_by_short_id(
    session: AsyncSession,
    short_id: str,
) -> Story | None:
    """Retrieve a story by its human-readable id (case-insensitive)."""
    stmt = select(Story).where(Story.short_id == short_id.strip().upper())
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def require_story(session: AsyncSession, short_id: str) -> Story:
    """Retrieve a story by short id or raise NotFoundError."""
    story = await get_story_by_short_id(session, short_id)
    if story is None:
        raise NotFoundError("story", short_id)
    return story


async def short_id_exists(session: AsyncSession, short_id: str) -> bool:
    """Return True if a story with exactly this short id exists."""
    stmt = select(Story.id).where(Story.short_id == short_id)
    result = await session.execute(stmt)
    return result.first() is not None


async def list_stories(
    session: AsyncSession,
    project_id: UUID | None = None,
    statuses: Collection[StoryStatus] | None = None,
) -> list[Story]:
    """List stories in creation order with optional filters.

    Creation order is the tie-break the scheduler preserves among stories
    of equal priority.

    Args:
        session: Active async database session.
        project_id: Optional project UUID to filter by.
        statuses: Optional set of statuses to include.

    Returns:
        List of matching Story instances.
    """
    stmt = select(Story)

    if project_id is not None:
        stmt = stmt.where(Story.project_id == project_id)

    if statuses is not None:
        stmt = stmt.where(Story.status.in_(list(statuses)))

    stmt = stmt.order_by(Story.created_at.asc(), Story.short_id.asc())
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_blocked_by(session: AsyncSession, holder: Story) -> list[Story]:
    """List blocked stories waiting on ``holder``.

    Matches the structured ``waiting_on_story_id`` reference and, for rows
    written before that column existed, a ``(held by <short_id>)`` marker
    in the blocked reason.
    """
    stmt = (
        select(Story)
        .where(
            Story.status == StoryStatus.blocked,
            or_(
                Story.waiting_on_story_id == holder.id,
                Story.blocked_reason.contains(f"(held by {holder.short_id})"),
            ),
        )
        .order_by(Story.created_at.asc())
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def update_story(
    session: AsyncSession,
    story: Story,
    values: dict[str, Any],
    expected_status: StoryStatus | None = None,
) -> Story:
    """Apply ``values`` to one story in a single UPDATE statement.

    Args:
        session: Active async database session.
        story: Story to update.
        values: Column values keyed by attribute name.
        expected_status: If given, the update only applies while the stored
            status still equals it.

    Returns:
        The story refreshed from the database.

    Raises:
        ContentionError: If ``expected_status`` no longer holds because a
            concurrent writer changed the story first.
    """
    stmt = update(Story).where(Story.id == story.id)
    if expected_status is not None:
        stmt = stmt.where(Story.status == expected_status)
    stmt = stmt.values(**values).execution_options(synchronize_session=False)

    result = await session.execute(stmt)
    if result.rowcount == 0:  # type: ignore[union-attr]
        # Nothing was written; end the transaction without expiring loaded rows
        await session.commit()
        raise ContentionError(
            f"Story {story.short_id} changed concurrently; reload and retry"
        )
    await session.commit()
    await session.refresh(story)

    logger.debug(
        "story_updated",
        short_id=story.short_id,
        fields=sorted(values),
    )
    return story


async def add_note(
    session: AsyncSession,
    story_id: UUID,
    author: str,
    text: str,
) -> StoryNote:
    """Append a note to a story.

    Args:
        session: Active async database session.
        story_id: UUID of the story.
        author: Who wrote the note.
        text: Note body.

    Returns:
        The persisted StoryNote.
    """
    note = StoryNote(story_id=story_id, author=author, text=text)
    session.add(note)
    await session.commit()

    logger.info("note_added", story_id=str(story_id), author=author)
    return note


async def list_notes(session: AsyncSession, story_id: UUID) -> list[StoryNote]:
    """List a story's notes oldest first."""
    stmt = (
        select(StoryNote)
        .where(StoryNote.story_id == story_id)
        .order_by(StoryNote.created_at.asc())
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def last_note_times(
    session: AsyncSession,
    story_ids: Iterable[UUID],
    authors: Collection[str] | None = None,
    exclude_authors: Collection[str] | None = None,
) -> dict[UUID, datetime]:
    """Return the newest note timestamp for each story that has notes.

    Args:
        session: Active async database session.
        story_ids: Stories to look up.
        authors: Only count notes by these authors.
        exclude_authors: Ignore notes by these authors.

    Returns:
        Mapping of story id to its most recent note's created_at (UTC).
    """
    ids = list(story_ids)
    if not ids:
        return {}

    stmt = (
        select(StoryNote.story_id, func.max(StoryNote.created_at))
        .where(StoryNote.story_id.in_(ids))
        .group_by(StoryNote.story_id)
    )
    if authors is not None:
        stmt = stmt.where(StoryNote.author.in_(list(authors)))
    if exclude_authors:
        stmt = stmt.where(StoryNote.author.not_in(list(exclude_authors)))
    result = await session.execute(stmt)
    return {story_id: ensure_utc(latest) for story_id, latest in result.all()}


async def record_activity(
    session: AsyncSession,
    story_id: UUID,
    from_status: StoryStatus | None,
    to_status: StoryStatus,
    worker: str,
    note: str | None = None,
) -> StoryActivity:
    """Append a status-change record to the story's activity log.

    Args:
        session: Active async database session.
        story_id: UUID of the story.
        from_status: Status before the change (None on creation).
        to_status: Status after the change.
        worker: Who made the change.
        note: Optional explanation.

    Returns:
        The persisted StoryActivity.
    """
    activity = StoryActivity(
        story_id=story_id,
        from_status=from_status,
        to_status=to_status,
        worker=worker,
        note=note,
    )
    session.add(activity)
    await session.commit()
    return activity


async def list_activity(session: AsyncSession, story_id: UUID) -> list[StoryActivity]:
    """List a story's activity records oldest first."""
    stmt = (
        select(StoryActivity)
        .where(StoryActivity.story_id == story_id)
        .order_by(StoryActivity.created_at.asc())
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())
