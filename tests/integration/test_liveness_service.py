"""Integration tests for the liveness watchdog and heartbeats.

Tests cover:
- Stale detection from row updates, heartbeats and notes
- Threshold precedence (override, project, deployment default)
- Flagging with watchdog notes and skip-if-already-flagged
- Heartbeat debounce leaving updated_at untouched
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storyloom.config import HeartbeatConfig, StoryloomConfig
from storyloom.database.models import Project, Story, StoryStatus
from storyloom.database.models.base import ensure_utc, utcnow
from storyloom.database.queries.project import require_project, update_project_settings
from storyloom.database.queries.story import add_note, list_notes, require_story, update_story
from storyloom.exceptions import ConfigInvalidError, NotFoundError
from storyloom.orchestrator.watchdog import (
    WATCHDOG_AUTHOR,
    ActivitySource,
    LivenessWatchdog,
    record_heartbeat,
)

MakeStory = Callable[..., Awaitable[Story]]


async def _backdate(
    session_factory: async_sessionmaker[AsyncSession], short_id: str, minutes: int
) -> None:
    async with session_factory() as session:
        story = await require_story(session, short_id)
        await update_story(session, story, {"updated_at": utcnow() - timedelta(minutes=minutes)})


@pytest.mark.integration
class TestScan:
    """Tests for LivenessWatchdog.scan."""

    @pytest.mark.asyncio
    async def test_reports_idle_active_story(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        test_config: StoryloomConfig,
        make_story: MakeStory,
    ) -> None:
        story = await make_story("Busy", status=StoryStatus.in_progress, assigned_worker="w1")
        await make_story("Waiting")

        watchdog = LivenessWatchdog(session_factory, test_config.scheduler)
        report = await watchdog.scan(
            "AB", threshold_minutes=30, now=utcnow() + timedelta(minutes=40)
        )

        assert report.threshold_minutes == 30
        assert report.active_count == 1
        assert [s.short_id for s in report.stale] == [story.short_id]
        stale = report.stale[0]
        assert stale.activity_source == ActivitySource.UPDATED_AT
        assert stale.minutes_since_activity == 40
        assert stale.assigned_worker == "w1"

    @pytest.mark.asyncio
    async def test_recent_note_counts_as_activity(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        test_config: StoryloomConfig,
        make_story: MakeStory,
    ) -> None:
        story = await make_story("Noted", status=StoryStatus.in_review)
        await _backdate(session_factory, story.short_id, 60)
        async with session_factory() as session:
            await add_note(session, story.id, author="w1", text="still here")

        report = await LivenessWatchdog(session_factory, test_config.scheduler).scan("AB")

        assert report.active_count == 1
        assert report.stale == []

    @pytest.mark.asyncio
    async def test_watchdog_notes_do_not_count(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        test_config: StoryloomConfig,
        make_story: MakeStory,
    ) -> None:
        story = await make_story("Flagged", status=StoryStatus.in_design)
        await _backdate(session_factory, story.short_id, 60)
        async with session_factory() as session:
            await add_note(session, story.id, author=WATCHDOG_AUTHOR, text="[WATCHDOG] earlier")

        report = await LivenessWatchdog(session_factory, test_config.scheduler).scan("AB")

        assert [s.short_id for s in report.stale] == [story.short_id]
        assert report.stale[0].activity_source == ActivitySource.UPDATED_AT

    @pytest.mark.asyncio
    async def test_threshold_precedence(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        test_config: StoryloomConfig,
        make_story: MakeStory,
    ) -> None:
        story = await make_story("Slow", status=StoryStatus.in_progress)
        await _backdate(session_factory, story.short_id, 60)
        async with session_factory() as session:
            project = await require_project(session, "AB")
            await update_project_settings(session, project, stale_threshold_minutes=90)

        watchdog = LivenessWatchdog(session_factory, test_config.scheduler)

        project_report = await watchdog.scan("AB")
        assert project_report.threshold_minutes == 90
        assert project_report.stale == []

        override_report = await watchdog.scan("AB", threshold_minutes=45)
        assert override_report.threshold_minutes == 45
        assert [s.short_id for s in override_report.stale] == [story.short_id]

    @pytest.mark.asyncio
    async def test_invalid_threshold(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        test_config: StoryloomConfig,
        make_story: MakeStory,
    ) -> None:
        await make_story("Any", status=StoryStatus.in_progress)
        with pytest.raises(ConfigInvalidError):
            await LivenessWatchdog(session_factory, test_config.scheduler).scan(
                "AB", threshold_minutes=0
            )

    @pytest.mark.asyncio
    async def test_unknown_project(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        test_config: StoryloomConfig,
    ) -> None:
        with pytest.raises(NotFoundError):
            await LivenessWatchdog(session_factory, test_config.scheduler).scan("ZZ")


@pytest.mark.integration
class TestFlag:
    """Tests for LivenessWatchdog.flag."""

    @pytest.mark.asyncio
    async def test_flag_once_per_idle_period(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        test_config: StoryloomConfig,
        make_story: MakeStory,
    ) -> None:
        story = await make_story("Quiet", status=StoryStatus.in_progress)
        await _backdate(session_factory, story.short_id, 45)
        watchdog = LivenessWatchdog(session_factory, test_config.scheduler)

        first = await watchdog.flag(await watchdog.scan("AB", threshold_minutes=30))
        assert [(r.short_id, r.flagged, r.skipped) for r in first] == [
            (story.short_id, True, False)
        ]

        second = await watchdog.flag(await watchdog.scan("AB", threshold_minutes=30))
        assert [(r.short_id, r.flagged, r.skipped) for r in second] == [
            (story.short_id, False, True)
        ]

        async with session_factory() as session:
            notes = await list_notes(session, story.id)
        assert len(notes) == 1
        assert notes[0].author == WATCHDOG_AUTHOR
        assert notes[0].text.startswith("[WATCHDOG] No activity for 45 minutes")
        assert "Threshold: 30 min." in notes[0].text

    @pytest.mark.asyncio
    async def test_flag_does_not_touch_story(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        test_config: StoryloomConfig,
        make_story: MakeStory,
    ) -> None:
        story = await make_story("Quiet", status=StoryStatus.in_progress)
        await _backdate(session_factory, story.short_id, 45)
        async with session_factory() as session:
            before = (await require_story(session, story.short_id)).updated_at

        watchdog = LivenessWatchdog(session_factory, test_config.scheduler)
        await watchdog.flag(await watchdog.scan("AB", threshold_minutes=30))

        async with session_factory() as session:
            after = await require_story(session, story.short_id)
        assert ensure_utc(after.updated_at) == ensure_utc(before)
        assert after.status == StoryStatus.in_progress


@pytest.mark.integration
class TestHeartbeat:
    """Tests for record_heartbeat."""

    @pytest.mark.asyncio
    async def test_records_without_touching_updated_at(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        make_story: MakeStory,
    ) -> None:
        story = await make_story("Working", status=StoryStatus.in_progress)
        async with session_factory() as session:
            before = ensure_utc((await require_story(session, story.short_id)).updated_at)
            result = await record_heartbeat(session, story.short_id, "w1", message="halfway")

        assert result.recorded is True
        async with session_factory() as session:
            stored = await require_story(session, story.short_id)
        assert ensure_utc(stored.updated_at) == before
        assert stored.heartbeat_worker == "w1"
        assert stored.heartbeat_message == "halfway"
        assert ensure_utc(stored.last_heartbeat_at) == result.last_heartbeat_at

    @pytest.mark.asyncio
    async def test_debounces_rapid_heartbeats(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        make_story: MakeStory,
    ) -> None:
        story = await make_story("Working", status=StoryStatus.in_progress)
        config = HeartbeatConfig(debounce_seconds=30)
        now = utcnow()

        async with session_factory() as session:
            first = await record_heartbeat(session, story.short_id, "w1", config=config, now=now)
            second = await record_heartbeat(
                session, story.short_id, "w1", config=config, now=now + timedelta(seconds=10)
            )
            third = await record_heartbeat(
                session, story.short_id, "w1", config=config, now=now + timedelta(seconds=31)
            )

        assert first.recorded is True
        assert second.recorded is False
        assert second.seconds_until_next == 20
        assert third.recorded is True

    @pytest.mark.asyncio
    async def test_heartbeat_keeps_story_alive(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        test_config: StoryloomConfig,
        make_story: MakeStory,
    ) -> None:
        story = await make_story("Working", status=StoryStatus.in_progress)
        await _backdate(session_factory, story.short_id, 60)
        async with session_factory() as session:
            await record_heartbeat(session, story.short_id, "w1", message="compiling")

        watchdog = LivenessWatchdog(session_factory, test_config.scheduler)
        assert (await watchdog.scan("AB", threshold_minutes=30)).stale == []

        later = await watchdog.scan(
            "AB", threshold_minutes=30, now=utcnow() + timedelta(minutes=40)
        )
        assert [s.activity_source for s in later.stale] == [ActivitySource.HEARTBEAT]
        assert later.stale[0].heartbeat_message == "compiling"

    @pytest.mark.asyncio
    async def test_unknown_story(self, db_session: AsyncSession, project: Project) -> None:
        with pytest.raises(NotFoundError):
            await record_heartbeat(db_session, "AB-99", "w1")
