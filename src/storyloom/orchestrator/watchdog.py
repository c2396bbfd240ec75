"""Liveness watchdog for stories in flight.

A story in an active status (in-design, in-progress, in-review) is stale
when nothing has happened on it for longer than the threshold. Activity
is the latest of three timestamps:

- ``updatedAt``: the story row was last modified;
- ``heartbeat``: the assigned worker last sent a heartbeat;
- ``note``: the newest note, not counting the watchdog's own.

A story with none of these is treated as last active at the epoch. The
threshold comes from an explicit override, then the project row, then
the deployment SchedulerConfig.

Flagging appends a ``[WATCHDOG]`` note to each stale story. It is best
effort: a story already flagged since its last activity is skipped and a
failure on one story does not stop the others.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from datetime import datetime, timedelta, timezone
from enum import Enum

import structlog
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from storyloom.config import HeartbeatConfig, SchedulerConfig
from storyloom.database.models.base import ensure_utc, utcnow
from storyloom.database.models.project import Project
from storyloom.database.models.story import ACTIVE_STATUSES, Story, StoryStatus
from storyloom.database.queries.project import require_project
from storyloom.database.queries.story import (
    add_note,
    last_note_times,
    list_stories,
    require_story,
    update_story,
)
from storyloom.exceptions import ConfigInvalidError, StoryloomError

logger = structlog.get_logger(__name__)

SessionFactory = Callable[[], AsyncSession]

WATCHDOG_AUTHOR = "watchdog"

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Enums and Models
# ---------------------------------------------------------------------------


class ActivitySource(str, Enum):
    """Which timestamp supplied a story's last activity."""

    UPDATED_AT = "updatedAt"
    HEARTBEAT = "heartbeat"
    NOTE = "note"
    NONE = "none"


class ActivityInput(BaseModel):
    """Activity timestamps for one story.

    Attributes:
        short_id: Human-readable story id.
        title: One-line summary.
        status: Current status.
        assigned_worker: Current assignee.
        updated_at: Last row modification.
        last_heartbeat_at: Last worker heartbeat.
        last_note_at: Newest non-watchdog note.
        heartbeat_message: Message sent with the last heartbeat.
    """

    short_id: str
    title: str = ""
    status: StoryStatus
    assigned_worker: str | None = None
    updated_at: datetime | None = None
    last_heartbeat_at: datetime | None = None
    last_note_at: datetime | None = None
    heartbeat_message: str | None = None


class StaleStory(BaseModel):
    """A story that has gone quiet.

    Attributes:
        short_id: Human-readable story id.
        title: One-line summary.
        status: Current status.
        assigned_worker: Current assignee.
        last_activity: Time of the last recorded activity.
        activity_source: Which timestamp that was.
        minutes_since_activity: Elapsed minutes, rounded.
        heartbeat_message: Message sent with the last heartbeat.
    """

    short_id: str
    title: str
    status: StoryStatus
    assigned_worker: str | None
    last_activity: datetime
    activity_source: ActivitySource
    minutes_since_activity: int
    heartbeat_message: str | None = None


class WatchdogReport(BaseModel):
    """Result of a staleness scan.

    Attributes:
        threshold_minutes: Threshold applied.
        active_count: Active stories examined.
        stale: Stale stories, most stale first.
    """

    threshold_minutes: int
    active_count: int
    stale: list[StaleStory] = Field(default_factory=list)


class FlagResult(BaseModel):
    """Outcome of flagging one stale story.

    Attributes:
        short_id: Story flagged.
        flagged: Whether a note was written.
        skipped: Whether it was already flagged since its last activity.
        error: Failure message, if writing the note failed.
    """

    short_id: str
    flagged: bool = False
    skipped: bool = False
    error: str | None = None


class HeartbeatResult(BaseModel):
    """Outcome of a heartbeat.

    Attributes:
        short_id: Story the heartbeat was for.
        recorded: Whether it was stored.
        last_heartbeat_at: Stored heartbeat time after the call.
        seconds_until_next: When skipped, seconds until one would be stored.
    """

    short_id: str
    recorded: bool
    last_heartbeat_at: datetime | None = None
    seconds_until_next: int | None = None


# ---------------------------------------------------------------------------
# Pure staleness computation
# ---------------------------------------------------------------------------


def last_activity(item: ActivityInput) -> tuple[datetime, ActivitySource]:
    """Return the latest activity time of a story and where it came from.

    On equal timestamps the earlier source in updatedAt, heartbeat, note
    order is reported.
    """
    latest, source = EPOCH, ActivitySource.NONE
    for value, candidate in (
        (item.updated_at, ActivitySource.UPDATED_AT),
        (item.last_heartbeat_at, ActivitySource.HEARTBEAT),
        (item.last_note_at, ActivitySource.NOTE),
    ):
        value = ensure_utc(value)
        if value is not None and (source == ActivitySource.NONE or value > latest):
            latest, source = value, candidate
    return latest, source


def find_stale(
    items: Sequence[ActivityInput],
    threshold_minutes: int,
    now: datetime | None = None,
) -> list[StaleStory]:
    """Find active stories idle for longer than the threshold.

    Args:
        items: Stories with their activity timestamps.
        threshold_minutes: Idle minutes after which a story is stale.
        now: Reference time (defaults to the current UTC time).

    Returns:
        Stale stories, most stale first.

    Raises:
        ConfigInvalidError: If the threshold is not positive.
    """
    if threshold_minutes < 1:
        raise ConfigInvalidError(
            f"threshold_minutes must be at least 1, got {threshold_minutes}"
        )
    now = ensure_utc(now) or utcnow()
    threshold = timedelta(minutes=threshold_minutes)

    stale: list[tuple[timedelta, StaleStory]] = []
    for item in items:
        if item.status not in ACTIVE_STATUSES:
            continue
        latest, source = last_activity(item)
        elapsed = now - latest
        if elapsed <= threshold:
            continue
        stale.append(
            (
                elapsed,
                StaleStory(
                    short_id=item.short_id,
                    title=item.title,
                    status=item.status,
                    assigned_worker=item.assigned_worker,
                    last_activity=latest,
                    activity_source=source,
                    minutes_since_activity=round(elapsed.total_seconds() / 60),
                    heartbeat_message=item.heartbeat_message,
                ),
            )
        )

    stale.sort(key=lambda entry: (-entry[0], entry[1].short_id))
    return [story for _, story in stale]


def watchdog_note(story: StaleStory, threshold_minutes: int) -> str:
    """Render the diagnostic note written for a stale story."""
    return (
        f"[WATCHDOG] No activity for {story.minutes_since_activity} minutes "
        f"(last: {story.activity_source.value}). Threshold: {threshold_minutes} min."
    )


# ---------------------------------------------------------------------------
# Watchdog service
# ---------------------------------------------------------------------------


class LivenessWatchdog:
    """Scans stored stories for staleness and flags them.

    Attributes:
        session_factory: Callable that produces async database sessions.
        config: Deployment scheduling defaults (stale threshold).
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        config: SchedulerConfig | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.config = config or SchedulerConfig()
        self._logger = logger.bind(component="LivenessWatchdog")

    def resolve_threshold(self, project: Project, override: int | None = None) -> int:
        """Resolve the stale threshold: override, project row, then config.

        Raises:
            ConfigInvalidError: If the resolved threshold is not positive.
        """
        if override is not None:
            threshold = override
        else:
            threshold = project.stale_threshold_minutes or self.config.stale_threshold_minutes
        if threshold < 1:
            raise ConfigInvalidError(f"threshold_minutes must be at least 1, got {threshold}")
        return threshold

    async def scan(
        self,
        short_code: str,
        threshold_minutes: int | None = None,
        now: datetime | None = None,
    ) -> WatchdogReport:
        """Report a project's stale stories.

        Args:
            short_code: Project namespace.
            threshold_minutes: Explicit threshold override.
            now: Reference time (defaults to the current UTC time).

        Raises:
            NotFoundError: If the project does not exist.
            ConfigInvalidError: If the threshold is not positive.
        """
        async with self.session_factory() as session:
            project = await require_project(session, short_code)
            threshold = self.resolve_threshold(project, threshold_minutes)
            stories = await list_stories(
                session, project_id=project.id, statuses=ACTIVE_STATUSES
            )
            notes = await last_note_times(
                session, [s.id for s in stories], exclude_authors=[WATCHDOG_AUTHOR]
            )

        items = [
            ActivityInput(
                short_id=s.short_id,
                title=s.title,
                status=s.status,
                assigned_worker=s.assigned_worker,
                updated_at=ensure_utc(s.updated_at),
                last_heartbeat_at=ensure_utc(s.last_heartbeat_at),
                last_note_at=notes.get(s.id),
                heartbeat_message=s.heartbeat_message,
            )
            for s in stories
        ]
        report = WatchdogReport(
            threshold_minutes=threshold,
            active_count=len(items),
            stale=find_stale(items, threshold, now),
        )
        self._logger.info(
            "watchdog_scan",
            short_code=project.short_code,
            threshold_minutes=threshold,
            active_count=report.active_count,
            stale=[s.short_id for s in report.stale],
        )
        return report

    async def flag(self, report: WatchdogReport) -> list[FlagResult]:
        """Append a watchdog note to every stale story in ``report``.

        Returns:
            One FlagResult per stale story.
        """
        results: list[FlagResult] = []
        for stale in report.stale:
            try:
                async with self.session_factory() as session:
                    story = await require_story(session, stale.short_id)
                    flagged_at = (
                        await last_note_times(session, [story.id], authors=[WATCHDOG_AUTHOR])
                    ).get(story.id)
                    if flagged_at is not None and flagged_at >= stale.last_activity:
                        results.append(FlagResult(short_id=stale.short_id, skipped=True))
                        continue
                    await add_note(
                        session,
                        story.id,
                        author=WATCHDOG_AUTHOR,
                        text=watchdog_note(stale, report.threshold_minutes),
                    )
            except (SQLAlchemyError, StoryloomError) as exc:
                self._logger.warning(
                    "stale_story_flag_failed",
                    short_id=stale.short_id,
                    error=str(exc),
                )
                results.append(FlagResult(short_id=stale.short_id, error=str(exc)))
                continue

            self._logger.info(
                "stale_story_flagged",
                short_id=stale.short_id,
                minutes_since_activity=stale.minutes_since_activity,
                activity_source=stale.activity_source.value,
            )
            results.append(FlagResult(short_id=stale.short_id, flagged=True))
        return results


# ---------------------------------------------------------------------------
# Heartbeats
# ---------------------------------------------------------------------------


async def record_heartbeat(
    session: AsyncSession,
    short_id: str,
    worker: str,
    message: str | None = None,
    config: HeartbeatConfig | None = None,
    now: datetime | None = None,
) -> HeartbeatResult:
    """Record that a worker is still working on a story.

    Heartbeats closer than ``debounce_seconds`` to the stored one are
    skipped. A heartbeat does not touch the story's ``updated_at``.

    Args:
        session: Active async database session.
        short_id: Story the worker is on.
        worker: Worker sending the heartbeat.
        message: Optional progress message.
        config: Heartbeat settings; defaults to HeartbeatConfig().
        now: Heartbeat time (defaults to the current UTC time).

    Returns:
        HeartbeatResult saying whether it was stored.

    Raises:
        NotFoundError: If the story does not exist.
    """
    config = config or HeartbeatConfig()
    now = ensure_utc(now) or utcnow()
    story: Story = await require_story(session, short_id)

    previous = ensure_utc(story.last_heartbeat_at)
    if previous is not None:
        elapsed = (now - previous).total_seconds()
        if 0 <= elapsed < config.debounce_seconds:
            logger.debug("heartbeat_debounced", short_id=story.short_id, worker=worker)
            return HeartbeatResult(
                short_id=story.short_id,
                recorded=False,
                last_heartbeat_at=previous,
                seconds_until_next=int(config.debounce_seconds - elapsed) or 1,
            )

    story = await update_story(
        session,
        story,
        {
            "last_heartbeat_at": now,
            "heartbeat_worker": worker,
            "heartbeat_message": message,
            "updated_at": Story.updated_at,
        },
    )
    logger.info("heartbeat_recorded", short_id=story.short_id, worker=worker)
    return HeartbeatResult(
        short_id=story.short_id,
        recorded=True,
        last_heartbeat_at=ensure_utc(story.last_heartbeat_at),
    )
