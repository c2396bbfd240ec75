"""Story status transitions for Storyloom.

Story statuses move freely between board columns, with one invariant
enforced here: a story is in ``blocked`` or ``cancelled`` exactly when it
carries a ``blocked_reason``. Entering either status requires a reason
and remembers the status it interrupted in ``previous_status``; leaving
clears the reason, the remembered status and any waiting-on reference.
Every change is appended to the story's activity log.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from storyloom.database.models.story import PARKED_STATUSES, Story, StoryStatus
from storyloom.database.queries.story import record_activity, update_story
from storyloom.exceptions import StoryloomError

logger = structlog.get_logger(__name__)


class InvalidTransitionError(StoryloomError):
    """Raised when a status change would break the story invariants.

    Attributes:
        current: The current story status.
        target: The attempted target status.
        short_id: The story that failed to transition.
    """

    def __init__(
        self,
        current: StoryStatus,
        target: StoryStatus,
        short_id: str | None = None,
        detail: str | None = None,
    ) -> None:
        self.current = current
        self.target = target
        self.short_id = short_id
        msg = f"Invalid transition from {current.value} to {target.value}"
        if short_id:
            msg += f" for story {short_id}"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


@dataclass(frozen=True)
class WaitingOn:
    """What a blocked story is waiting for."""

    path: str
    holder_id: UUID
    holder_short_id: str

    def render(self) -> str:
        """Render the display reason stored in ``blocked_reason``."""
        return f"Waiting for file: {self.path} (held by {self.holder_short_id})"


def transition_values(
    story: Story,
    target: StoryStatus,
    reason: str | None = None,
    waiting_on: WaitingOn | None = None,
) -> dict[str, Any]:
    """Compute the column values for moving ``story`` to ``target``.

    Args:
        story: Story in its current state.
        target: Status to move to.
        reason: Required when ``target`` is blocked or cancelled.
        waiting_on: Structured wait reference for file blocks; when given
            and ``reason`` is not, the reason is rendered from it.

    Returns:
        Mapping of attribute name to new value.

    Raises:
        InvalidTransitionError: If the story is already in ``target`` or a
            required reason is missing.
    """
    current = story.status
    if target == current:
        raise InvalidTransitionError(current, target, story.short_id, "status unchanged")

    if target in PARKED_STATUSES:
        if reason is None and waiting_on is not None:
            reason = waiting_on.render()
        if not reason or not reason.strip():
            raise InvalidTransitionError(
                current, target, story.short_id, "a reason is required"
            )
        if waiting_on is not None and target != StoryStatus.blocked:
            raise InvalidTransitionError(
                current, target, story.short_id, "only blocked stories wait on files"
            )
        # Moving between blocked and cancelled keeps the status to resume
        previous = story.previous_status if current in PARKED_STATUSES else current
        return {
            "status": target,
            "previous_status": previous,
            "blocked_reason": reason.strip(),
            "waiting_on_path": waiting_on.path if waiting_on else None,
            "waiting_on_story_id": waiting_on.holder_id if waiting_on else None,
        }

    if waiting_on is not None:
        raise InvalidTransitionError(
            current, target, story.short_id, "only blocked stories wait on files"
        )
    return {
        "status": target,
        "previous_status": None,
        "blocked_reason": None,
        "waiting_on_path": None,
        "waiting_on_story_id": None,
    }


class StoryStateMachine:
    """Applies status transitions to stored stories.

    Each transition is a single UPDATE guarded on the status the caller
    saw, followed by an activity record. A concurrent change to the same
    story surfaces as ``ContentionError`` instead of being overwritten.
    """

    def __init__(self) -> None:
        self._logger = logger.bind(component="StoryStateMachine")

    async def transition(
        self,
        session: AsyncSession,
        story: Story,
        target: StoryStatus,
        worker: str,
        reason: str | None = None,
        note: str | None = None,
        waiting_on: WaitingOn | None = None,
        extra_values: dict[str, Any] | None = None,
    ) -> Story:
        """Move a story to a new status.

        Args:
            session: Database session the story was loaded in.
            story: Story to transition.
            target: Status to move to.
            worker: Who is making the change (recorded in the activity log).
            reason: Reason for blocked/cancelled.
            note: Optional activity note.
            waiting_on: File-wait reference for blocked stories.
            extra_values: Further columns to change in the same UPDATE.

        Returns:
            The updated story.

        Raises:
            InvalidTransitionError: If the transition is not allowed.
            ContentionError: If the story changed concurrently.
        """
        from_status = story.status
        values = transition_values(story, target, reason, waiting_on)
        if extra_values:
            values.update(extra_values)

        story = await update_story(session, story, values, expected_status=from_status)
        await record_activity(
            session,
            story.id,
            from_status=from_status,
            to_status=target,
            worker=worker,
            note=note if note is not None else values["blocked_reason"],
        )

        self._logger.info(
            "story_transition",
            short_id=story.short_id,
            from_status=from_status.value,
            to_status=target.value,
            worker=worker,
        )
        return story
