"""File reservation protocol for parallel stories.

Stories claim files by listing paths or glob patterns in
``reserved_paths``. Reservations only count while the story is being
worked on (``in-progress`` or ``in-design``). Coordination is expressed
entirely as story data, never as a runtime lock:

- **request** checks whether a path is held by another active story. If
  it is, the requester is moved to ``blocked`` with a structured
  waiting-on reference to the holder, and both stories get a note.
- **release** clears a story's reservations and resumes every story that
  was blocked on it whose path is now free. A waiter whose path is still
  covered by another holder is re-pointed at that holder instead.

Release works through the blocked stories one at a time and reports a
per-story outcome; a story whose block cannot be interpreted is skipped
with a diagnostic rather than failing the batch.

Example:
    >>> manager = ReservationManager(session_factory, config.reservations)
    >>> result = await manager.request("SL-4", "src/app.py")
    >>> result.outcome
    <RequestOutcome.BLOCKED: 'blocked'>
    >>> await manager.release("SL-2")
"""

from __future__ import annotations

import re
from collections.abc import Callable, Sequence
from enum import Enum
from typing import Protocol

import structlog
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from storyloom.config import ReservationConfig
from storyloom.database.models.story import HOLDING_STATUSES, PARKED_STATUSES, Story, StoryStatus
from storyloom.database.queries.story import (
    add_note,
    list_blocked_by,
    list_stories,
    require_story,
    update_story,
)
from storyloom.exceptions import ContentionError, MalformedStateError
from storyloom.orchestrator.path_matcher import matching_patterns, overlaps, validate_patterns
from storyloom.orchestrator.state_machine import (
    InvalidTransitionError,
    StoryStateMachine,
    WaitingOn,
)

logger = structlog.get_logger(__name__)

SessionFactory = Callable[[], AsyncSession]

BLOCKED_REASON_PATTERN = re.compile(r"^Waiting for file: (\S.*?) \(held by ([^()\s]+)\)$")


# ---------------------------------------------------------------------------
# Result models
# ---------------------------------------------------------------------------


class ReservationConflict(BaseModel):
    """Overlap between a story's reservations and one active holder.

    Attributes:
        holder: Short id of the holding story.
        holder_status: Status of the holding story.
        paths: Entries of the checked reservations that overlap the holder.
    """

    holder: str
    holder_status: StoryStatus
    paths: list[str]


class ReservationReport(BaseModel):
    """Reservations of one story with warnings and conflicts.

    Attributes:
        short_id: Story the report is about.
        reserved_paths: The story's reservations.
        high_conflict: Reservations that touch widely shared files.
        conflicts: Overlaps with active holders, one entry per holder.
    """

    short_id: str
    reserved_paths: list[str]
    high_conflict: list[str] = Field(default_factory=list)
    conflicts: list[ReservationConflict] = Field(default_factory=list)


class RequestOutcome(str, Enum):
    """Result of requesting a single path."""

    FREE = "free"
    BLOCKED = "blocked"


class RequestResult(BaseModel):
    """Outcome of a path request.

    Attributes:
        short_id: Requesting story.
        path: Path requested.
        outcome: FREE or BLOCKED.
        holder: Short id of the holding story when blocked.
        status: Requesting story's status after the request.
    """

    short_id: str
    path: str
    outcome: RequestOutcome
    holder: str | None = None
    status: StoryStatus


class ReleaseOutcome(str, Enum):
    """What release did with one blocked story."""

    UNBLOCKED = "unblocked"
    REASSIGNED = "reassigned"
    MALFORMED = "malformed"
    FAILED = "failed"


class ReleaseItem(BaseModel):
    """Per-story outcome of a release.

    Attributes:
        short_id: Blocked story that was examined.
        outcome: What happened to it.
        path: Path it was waiting on, if known.
        status: Its status afterwards.
        holder: New holder when the path is still held.
        detail: Diagnostic text for MALFORMED and FAILED outcomes.
    """

    short_id: str
    outcome: ReleaseOutcome
    path: str | None = None
    status: StoryStatus
    holder: str | None = None
    detail: str | None = None


class ReleaseResult(BaseModel):
    """Outcome of releasing a story's reservations.

    Attributes:
        short_id: Story whose reservations were released.
        released_paths: Reservations it held.
        items: One entry per story that was blocked on it.
    """

    short_id: str
    released_paths: list[str]
    items: list[ReleaseItem] = Field(default_factory=list)

    @property
    def unblocked(self) -> list[str]:
        return [i.short_id for i in self.items if i.outcome == ReleaseOutcome.UNBLOCKED]


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


class ReservationHolder(Protocol):
    """Anything that holds reservations: a Story row or a snapshot of one."""

    short_id: str
    status: StoryStatus
    reserved_paths: list[str]


def find_conflicts(
    paths: Sequence[str],
    holders: Sequence[ReservationHolder],
    exclude: str | None = None,
) -> list[ReservationConflict]:
    """Group overlaps between ``paths`` and each holder's reservations.

    Args:
        paths: Reservations being checked.
        holders: Stories whose reservations are held.
        exclude: Short id of a story to skip (normally the one being checked).

    Returns:
        One ReservationConflict per overlapping holder, in holder order.
    """
    conflicts: list[ReservationConflict] = []
    for holder in holders:
        if exclude is not None and holder.short_id == exclude:
            continue
        hits = overlaps(paths, holder.reserved_paths or [])
        if hits:
            conflicts.append(
                ReservationConflict(
                    holder=holder.short_id,
                    holder_status=holder.status,
                    paths=hits,
                )
            )
    return conflicts


def parse_blocked_reason(reason: str | None) -> tuple[str, str] | None:
    """Extract ``(path, holder_short_id)`` from a display reason.

    Returns:
        The pair, or None when the reason is not a file wait.
    """
    if not reason:
        return None
    match = BLOCKED_REASON_PATTERN.match(reason.strip())
    if match is None:
        return None
    return match.group(1), match.group(2)


def waiting_path(waiter: Story, holder: Story) -> str:
    """Return the path ``waiter`` is blocked on while ``holder`` holds it.

    Reads the structured waiting-on columns first and falls back to the
    display reason for rows that only carry the text form.

    Raises:
        MalformedStateError: If neither form yields a path for ``holder``.
    """
    if waiter.waiting_on_path and waiter.waiting_on_story_id == holder.id:
        return waiter.waiting_on_path

    parsed = parse_blocked_reason(waiter.blocked_reason)
    if parsed is None:
        raise MalformedStateError(
            waiter.short_id, f"unparseable blocked reason {waiter.blocked_reason!r}"
        )
    path, holder_short_id = parsed
    if holder_short_id.upper() != holder.short_id.upper():
        raise MalformedStateError(
            waiter.short_id,
            f"blocked reason names {holder_short_id}, not {holder.short_id}",
        )
    return path


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class ReservationManager:
    """Reads and writes story reservations and file-wait blocks.

    Attributes:
        session_factory: Callable that produces async database sessions.
        config: Reservation settings (high-conflict patterns).
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        config: ReservationConfig | None = None,
        state_machine: StoryStateMachine | None = None,
    ) -> None:
        """Initialize the reservation manager.

        Args:
            session_factory: Callable returning new AsyncSession instances.
            config: Reservation settings; defaults to ReservationConfig().
            state_machine: Transition helper; a new one is created if omitted.
        """
        self.session_factory = session_factory
        self.config = config or ReservationConfig()
        self.state_machine = state_machine or StoryStateMachine()
        self._logger = logger.bind(component="ReservationManager")

    def high_conflict(self, paths: Sequence[str]) -> list[str]:
        """Return the entries of ``paths`` that touch high-conflict files."""
        return [p for p in paths if matching_patterns(p, self.config.high_conflict_patterns)]

    async def _holders(self, session: AsyncSession, story: Story) -> list[Story]:
        return await list_stories(session, project_id=story.project_id, statuses=HOLDING_STATUSES)

    async def _report(self, session: AsyncSession, story: Story) -> ReservationReport:
        paths = list(story.reserved_paths or [])
        holders = await self._holders(session, story)
        return ReservationReport(
            short_id=story.short_id,
            reserved_paths=paths,
            high_conflict=self.high_conflict(paths),
            conflicts=find_conflicts(paths, holders, exclude=story.short_id),
        )

    async def set_reservations(self, short_id: str, paths: Sequence[str]) -> ReservationReport:
        """Replace a story's reservations and report warnings and overlaps.

        Overlaps with active holders are informational; the reservations
        are stored either way.

        Raises:
            NotFoundError: If the story does not exist.
            InvalidPatternError: If a pattern is blank.
        """
        normalised = validate_patterns(paths)
        async with self.session_factory() as session:
            story = await require_story(session, short_id)
            story = await update_story(session, story, {"reserved_paths": normalised})
            report = await self._report(session, story)

        self._logger.info(
            "reservations_set",
            short_id=report.short_id,
            paths=report.reserved_paths,
            high_conflict=report.high_conflict,
            conflict_count=len(report.conflicts),
        )
        return report

    async def check(self, short_id: str) -> ReservationReport:
        """Report a story's overlaps with every active holder."""
        async with self.session_factory() as session:
            story = await require_story(session, short_id)
            return await self._report(session, story)

    async def clear(self, short_id: str) -> list[str]:
        """Drop all of a story's reservations without resuming waiters.

        Returns:
            The reservations that were cleared.
        """
        async with self.session_factory() as session:
            story = await require_story(session, short_id)
            cleared = list(story.reserved_paths or [])
            await update_story(session, story, {"reserved_paths": []})

        self._logger.info("reservations_cleared", short_id=short_id, paths=cleared)
        return cleared

    async def request(
        self,
        short_id: str,
        path: str,
        worker: str | None = None,
    ) -> RequestResult:
        """Ask for a path; block the story if another active story holds it.

        A free path changes nothing. A held path moves the requester to
        ``blocked`` (remembering its previous status), records the holder
        as what it waits on, and notes the wait on both stories.

        Args:
            short_id: Requesting story.
            path: Literal path or pattern wanted.
            worker: Who is asking; defaults to the story's assignee.

        Returns:
            RequestResult with the outcome and holder.

        Raises:
            NotFoundError: If the story does not exist.
            InvalidPatternError: If the path is blank.
            InvalidTransitionError: If the story cannot be blocked.
            ContentionError: If the story changed concurrently.
        """
        (path,) = validate_patterns([path])
        async with self.session_factory() as session:
            story = await require_story(session, short_id)
            actor = worker or story.assigned_worker or "system"

            holder = next(
                (
                    h
                    for h in await self._holders(session, story)
                    if h.id != story.id and overlaps([path], h.reserved_paths or [])
                ),
                None,
            )
            if holder is None:
                self._logger.info("path_free", short_id=story.short_id, path=path)
                return RequestResult(
                    short_id=story.short_id,
                    path=path,
                    outcome=RequestOutcome.FREE,
                    status=story.status,
                )

            waiting_on = WaitingOn(path=path, holder_id=holder.id, holder_short_id=holder.short_id)
            story = await self.state_machine.transition(
                session,
                story,
                StoryStatus.blocked,
                worker=actor,
                waiting_on=waiting_on,
            )
            await add_note(
                session,
                story.id,
                author=actor,
                text=f"Requested {path}; held by {holder.short_id}. Waiting for release.",
            )
            await add_note(
                session,
                holder.id,
                author=actor,
                text=f"{story.short_id} is waiting for {path}. Release it when done.",
            )

        self._logger.info(
            "story_blocked",
            short_id=story.short_id,
            path=path,
            holder=holder.short_id,
        )
        return RequestResult(
            short_id=story.short_id,
            path=path,
            outcome=RequestOutcome.BLOCKED,
            holder=holder.short_id,
            status=story.status,
        )

    async def release(self, short_id: str, worker: str | None = None) -> ReleaseResult:
        """Release a story's reservations and resume stories waiting on it.

        Args:
            short_id: Story releasing its reservations.
            worker: Who is releasing; defaults to the story's assignee.

        Returns:
            ReleaseResult with one item per story that was waiting on it.

        Raises:
            NotFoundError: If the story does not exist.
        """
        async with self.session_factory() as session:
            story = await require_story(session, short_id)
            actor = worker or story.assigned_worker or "system"
            released = list(story.reserved_paths or [])
            story = await update_story(session, story, {"reserved_paths": []})

            waiters = await list_blocked_by(session, story)
            holders = [h for h in await self._holders(session, story) if h.id != story.id]

            items = [
                await self._resume(session, waiter, story, holders, actor)
                for waiter in waiters
            ]

        result = ReleaseResult(short_id=story.short_id, released_paths=released, items=items)
        self._logger.info(
            "reservations_released",
            short_id=story.short_id,
            paths=released,
            unblocked=result.unblocked,
            examined=len(items),
        )
        return result

    async def _resume(
        self,
        session: AsyncSession,
        waiter: Story,
        releaser: Story,
        holders: Sequence[Story],
        actor: str,
    ) -> ReleaseItem:
        try:
            path = waiting_path(waiter, releaser)
        except MalformedStateError as exc:
            self._logger.warning(
                "blocked_reason_malformed",
                short_id=waiter.short_id,
                reason=waiter.blocked_reason,
            )
            return ReleaseItem(
                short_id=waiter.short_id,
                outcome=ReleaseOutcome.MALFORMED,
                status=waiter.status,
                detail=str(exc),
            )

        try:
            still_held = next(
                (
                    h
                    for h in holders
                    if h.id != waiter.id and overlaps([path], h.reserved_paths or [])
                ),
                None,
            )
            if still_held is not None:
                waiting_on = WaitingOn(
                    path=path, holder_id=still_held.id, holder_short_id=still_held.short_id
                )
                waiter = await update_story(
                    session,
                    waiter,
                    {
                        "blocked_reason": waiting_on.render(),
                        "waiting_on_path": path,
                        "waiting_on_story_id": still_held.id,
                    },
                    expected_status=StoryStatus.blocked,
                )
                return ReleaseItem(
                    short_id=waiter.short_id,
                    outcome=ReleaseOutcome.REASSIGNED,
                    path=path,
                    status=waiter.status,
                    holder=still_held.short_id,
                )

            target = waiter.previous_status
            if target is None or target in PARKED_STATUSES:
                target = StoryStatus.in_progress
            message = f"File {path} released by {releaser.short_id}"
            waiter = await self.state_machine.transition(
                session, waiter, target, worker=actor, note=message
            )
            await add_note(session, waiter.id, author=actor, text=message)
        except (ContentionError, InvalidTransitionError) as exc:
            self._logger.warning(
                "unblock_failed",
                short_id=waiter.short_id,
                error=str(exc),
            )
            return ReleaseItem(
                short_id=waiter.short_id,
                outcome=ReleaseOutcome.FAILED,
                path=path,
                status=waiter.status,
                detail=str(exc),
            )

        self._logger.info(
            "story_unblocked",
            short_id=waiter.short_id,
            path=path,
            status=waiter.status.value,
        )
        return ReleaseItem(
            short_id=waiter.short_id,
            outcome=ReleaseOutcome.UNBLOCKED,
            path=path,
            status=waiter.status,
        )
