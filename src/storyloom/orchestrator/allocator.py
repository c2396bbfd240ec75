"""Sequential story id allocation.

Every project owns a namespace: its ``short_code`` plus a counter on the
project row. Allocating the next story id reads the counter, checks that
the candidate id is not already taken, then writes the incremented
counter and inserts the story in one transaction. The project row is
version-checked, so when two allocators race on the same namespace the
database rejects the loser's write and the loser retries with backoff.

Example:
    >>> allocator = StoryAllocator(session_factory, config.allocator)
    >>> story = await allocator.allocate("SL", StoryDraft(title="Add login"))
    >>> story.short_id
    'SL-1'
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

import structlog
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from storyloom.config import AllocatorConfig
from storyloom.database.models.project import Project
from storyloom.database.models.story import Complexity, Priority, Story, StoryStatus
from storyloom.database.queries.project import require_project
from storyloom.database.queries.story import record_activity, short_id_exists
from storyloom.exceptions import AllocationExhaustedError, ContentionError
from storyloom.orchestrator.path_matcher import validate_patterns
from storyloom.orchestrator.routing import normalise_tags

logger = structlog.get_logger(__name__)

SessionFactory = Callable[[], AsyncSession]

INITIAL_STATUSES = frozenset({StoryStatus.ideas, StoryStatus.backlog})


class StoryDraft(BaseModel):
    """Fields for a story that has not been allocated an id yet.

    Attributes:
        title: One-line summary.
        description: Free-form description.
        priority: P0..P3.
        complexity: S, M, L or XL.
        status: Initial status, ``backlog`` or ``ideas``.
        tags: Capability tags.
        reserved_paths: Initial file reservations.
        assigned_worker: Optional initial assignee.
    """

    title: str = Field(min_length=1)
    description: str = ""
    priority: Priority = Priority.P2
    complexity: Complexity = Complexity.M
    status: StoryStatus = StoryStatus.backlog
    tags: list[str] = Field(default_factory=list)
    reserved_paths: list[str] = Field(default_factory=list)
    assigned_worker: str | None = None

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: str) -> str:
        """Strip the title and reject blank ones."""
        v = v.strip()
        if not v:
            raise ValueError("Title must not be blank")
        return v

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: StoryStatus) -> StoryStatus:
        """Stories start in backlog or ideas."""
        if v not in INITIAL_STATUSES:
            raise ValueError(f"New stories start in backlog or ideas, not {v.value}")
        return v

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, v: list[str]) -> list[str]:
        """Normalise tags (unknown tags are kept and reported by routing)."""
        return normalise_tags(v)

    @field_validator("reserved_paths")
    @classmethod
    def validate_reserved_paths(cls, v: list[str]) -> list[str]:
        """Normalise reservation patterns."""
        return validate_patterns(v)


def _story_number(short_id: str) -> int:
    _, _, number = short_id.rpartition("-")
    return int(number) if number.isdigit() else 0


class StoryAllocator:
    """Allocates story ids and creates stories atomically.

    Attributes:
        session_factory: Callable that produces async database sessions.
        config: Retry policy.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        config: AllocatorConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the allocator.

        Args:
            session_factory: Callable returning new AsyncSession instances.
            config: Retry policy; defaults to AllocatorConfig().
            sleep: Coroutine used to wait between attempts.
        """
        self.session_factory = session_factory
        self.config = config or AllocatorConfig()
        self._sleep = sleep
        self._logger = logger.bind(component="StoryAllocator")

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retrying after the given 0-indexed attempt.

        Formula: base_delay_seconds * multiplier^attempt
        """
        return self.config.base_delay_seconds * (self.config.multiplier**attempt)

    async def allocate(
        self,
        short_code: str,
        draft: StoryDraft,
        worker: str = "system",
    ) -> Story:
        """Allocate the next id in a namespace and create the story.

        Args:
            short_code: Project namespace to allocate from.
            draft: Story fields.
            worker: Who is creating the story (recorded in the activity log).

        Returns:
            The created story, carrying its new ``short_id``.

        Raises:
            NotFoundError: If the project does not exist (never retried).
            AllocationExhaustedError: If every attempt lost a race.
        """
        story: Story | None = None
        for attempt in range(self.config.max_attempts):
            try:
                story = await self._attempt(short_code, draft)
                break
            except ContentionError as exc:
                self._logger.warning(
                    "allocation_retry",
                    short_code=short_code,
                    attempt=attempt + 1,
                    max_attempts=self.config.max_attempts,
                    error=str(exc),
                )
                if attempt + 1 < self.config.max_attempts:
                    await self._sleep(self.backoff_delay(attempt))

        if story is None:
            self._logger.error(
                "allocation_exhausted",
                short_code=short_code,
                attempts=self.config.max_attempts,
            )
            raise AllocationExhaustedError(short_code.upper(), self.config.max_attempts)

        self._logger.info(
            "story_created",
            short_id=story.short_id,
            status=story.status.value,
            priority=story.priority.value,
        )
        await self._record_creation(story, worker)
        return story

    async def _attempt(self, short_code: str, draft: StoryDraft) -> Story:
        async with self.session_factory() as session:
            project = await require_project(session, short_code)
            number = project.story_counter + 1
            candidate = f"{project.short_code}-{number}"

            if await self._id_taken(candidate):
                highest = max(number, await self._highest_number(project))
                await self._advance_counter(session, project, highest)
                raise ContentionError(
                    f"{candidate} already exists; counter moved to {highest}"
                )

            project.story_counter = number
            story = Story(
                short_id=candidate,
                project_id=project.id,
                title=draft.title,
                description=draft.description,
                status=draft.status,
                priority=draft.priority,
                complexity=draft.complexity,
                tags=list(draft.tags),
                reserved_paths=list(draft.reserved_paths),
                assigned_worker=draft.assigned_worker,
            )
            session.add(story)

            try:
                await session.commit()
            except (StaleDataError, IntegrityError) as exc:
                await session.rollback()
                raise ContentionError(f"Lost allocation race for {candidate}") from exc

            return story

    async def _id_taken(self, short_id: str) -> bool:
        # Read outside the allocation transaction
        async with self.session_factory() as session:
            return await short_id_exists(session, short_id)

    async def _highest_number(self, project: Project) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Story.short_id).where(Story.project_id == project.id)
            )
            return max((_story_number(sid) for sid in result.scalars()), default=0)

    async def _advance_counter(
        self,
        session: AsyncSession,
        project: Project,
        counter: int,
    ) -> None:
        project.story_counter = counter
        try:
            await session.commit()
        except (StaleDataError, IntegrityError):
            # Someone else moved the counter first; the retry rereads it
            await session.rollback()
            return
        self._logger.warning(
            "story_counter_drift_repaired",
            short_code=project.short_code,
            story_counter=counter,
        )

    async def _record_creation(self, story: Story, worker: str) -> None:
        try:
            async with self.session_factory() as session:
                await record_activity(
                    session,
                    story.id,
                    from_status=None,
                    to_status=story.status,
                    worker=worker,
                    note="Story created",
                )
        except SQLAlchemyError as exc:
            self._logger.warning(
                "creation_activity_failed",
                short_id=story.short_id,
                error=str(exc),
            )
