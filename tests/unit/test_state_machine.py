"""Unit tests for story status transitions.

Tests cover:
- Reason required for blocked and cancelled
- previous_status recorded on entry and cleared on exit
- Waiting-on references rendered into the blocked reason
- Rejected transitions
- Guarded update and activity recording
"""

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from storyloom.database.models.story import Story, StoryStatus
from storyloom.orchestrator.state_machine import (
    InvalidTransitionError,
    StoryStateMachine,
    WaitingOn,
    transition_values,
)


def _story(
    status: StoryStatus = StoryStatus.in_progress,
    previous: StoryStatus | None = None,
    reason: str | None = None,
) -> Story:
    return Story(
        id=uuid.uuid4(),
        short_id="SL-7",
        title="Add login",
        status=status,
        previous_status=previous,
        blocked_reason=reason,
    )


class TestWaitingOn:
    """Tests for the WaitingOn reference."""

    def test_render(self) -> None:
        waiting = WaitingOn(path="src/app.ts", holder_id=uuid.uuid4(), holder_short_id="SL-2")
        assert waiting.render() == "Waiting for file: src/app.ts (held by SL-2)"


class TestTransitionValues:
    """Tests for transition_values."""

    def test_block_requires_reason(self) -> None:
        with pytest.raises(InvalidTransitionError, match="reason is required"):
            transition_values(_story(), StoryStatus.blocked)

    def test_cancel_requires_non_blank_reason(self) -> None:
        with pytest.raises(InvalidTransitionError):
            transition_values(_story(), StoryStatus.cancelled, reason="   ")

    def test_block_records_previous_status(self) -> None:
        values = transition_values(_story(), StoryStatus.blocked, reason="Waiting on API keys")

        assert values["status"] == StoryStatus.blocked
        assert values["previous_status"] == StoryStatus.in_progress
        assert values["blocked_reason"] == "Waiting on API keys"
        assert values["waiting_on_path"] is None
        assert values["waiting_on_story_id"] is None

    def test_block_with_waiting_on_renders_reason(self) -> None:
        holder_id = uuid.uuid4()
        waiting = WaitingOn(path="x.ts", holder_id=holder_id, holder_short_id="SL-2")
        values = transition_values(_story(), StoryStatus.blocked, waiting_on=waiting)

        assert values["blocked_reason"] == "Waiting for file: x.ts (held by SL-2)"
        assert values["waiting_on_path"] == "x.ts"
        assert values["waiting_on_story_id"] == holder_id

    def test_leaving_blocked_clears_fields(self) -> None:
        story = _story(StoryStatus.blocked, StoryStatus.in_progress, "Waiting")
        values = transition_values(story, StoryStatus.in_progress)

        assert values == {
            "status": StoryStatus.in_progress,
            "previous_status": None,
            "blocked_reason": None,
            "waiting_on_path": None,
            "waiting_on_story_id": None,
        }

    def test_blocked_to_cancelled_keeps_original_previous_status(self) -> None:
        story = _story(StoryStatus.blocked, StoryStatus.in_design, "Waiting")
        values = transition_values(story, StoryStatus.cancelled, reason="Dropped")

        assert values["previous_status"] == StoryStatus.in_design
        assert values["blocked_reason"] == "Dropped"

    def test_same_status_rejected(self) -> None:
        with pytest.raises(InvalidTransitionError, match="status unchanged"):
            transition_values(_story(StoryStatus.backlog), StoryStatus.backlog)

    def test_waiting_on_only_for_blocked(self) -> None:
        waiting = WaitingOn(path="x.ts", holder_id=uuid.uuid4(), holder_short_id="SL-2")
        with pytest.raises(InvalidTransitionError):
            transition_values(_story(), StoryStatus.cancelled, reason="x", waiting_on=waiting)
        with pytest.raises(InvalidTransitionError):
            transition_values(_story(), StoryStatus.done, waiting_on=waiting)

    def test_free_movement_between_columns(self) -> None:
        values = transition_values(_story(StoryStatus.done), StoryStatus.backlog)
        assert values["status"] == StoryStatus.backlog

    def test_error_message_names_story(self) -> None:
        with pytest.raises(InvalidTransitionError) as exc_info:
            transition_values(_story(), StoryStatus.blocked)
        assert "SL-7" in str(exc_info.value)
        assert exc_info.value.current == StoryStatus.in_progress
        assert exc_info.value.target == StoryStatus.blocked


class TestStoryStateMachine:
    """Tests for StoryStateMachine.transition."""

    @pytest.mark.asyncio
    async def test_guarded_update_and_activity(self) -> None:
        story = _story()
        session = MagicMock()

        with (
            patch(
                "storyloom.orchestrator.state_machine.update_story",
                new=AsyncMock(return_value=story),
            ) as update_mock,
            patch(
                "storyloom.orchestrator.state_machine.record_activity",
                new=AsyncMock(),
            ) as activity_mock,
        ):
            result = await StoryStateMachine().transition(
                session, story, StoryStatus.blocked, worker="designer", reason="Need copy"
            )

        assert result is story
        args, kwargs = update_mock.call_args
        assert args[2]["status"] == StoryStatus.blocked
        assert kwargs["expected_status"] == StoryStatus.in_progress
        activity_kwargs = activity_mock.call_args.kwargs
        assert activity_kwargs["from_status"] == StoryStatus.in_progress
        assert activity_kwargs["to_status"] == StoryStatus.blocked
        assert activity_kwargs["worker"] == "designer"
        assert activity_kwargs["note"] == "Need copy"

    @pytest.mark.asyncio
    async def test_invalid_transition_writes_nothing(self) -> None:
        story = _story()
        with patch(
            "storyloom.orchestrator.state_machine.update_story", new=AsyncMock()
        ) as update_mock:
            with pytest.raises(InvalidTransitionError):
                await StoryStateMachine().transition(
                    MagicMock(), story, StoryStatus.blocked, worker="x"
                )
        update_mock.assert_not_called()

    @pytest.mark.asyncio
    async def test_extra_values_merged(self) -> None:
        story = _story(StoryStatus.backlog)
        with (
            patch(
                "storyloom.orchestrator.state_machine.update_story",
                new=AsyncMock(return_value=story),
            ) as update_mock,
            patch("storyloom.orchestrator.state_machine.record_activity", new=AsyncMock()),
        ):
            await StoryStateMachine().transition(
                MagicMock(),
                story,
                StoryStatus.in_progress,
                worker="lead-engineer",
                extra_values={"assigned_worker": "lead-engineer"},
            )
        assert update_mock.call_args.args[2]["assigned_worker"] == "lead-engineer"
