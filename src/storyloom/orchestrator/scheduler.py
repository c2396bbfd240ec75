"""Admission scheduler for parallel stories.

Each admission pass decides which backlog stories may be handed to
workers now. Stories are taken in priority order (P0 first, creation
order within a priority). In serial mode only the top story is offered.
In burst mode stories are admitted greedily until the parallel cap is
reached:

- a story with no reservations is always admitted;
- a story whose reservations overlap an active holder, or a story already
  admitted earlier in the same pass, is queued with the conflicting
  holders and paths;
- otherwise it is admitted and its reservations join the working set.

The pass never backtracks: a conflicting high-priority story is queued,
not swapped for a lower-priority one, and backlog beyond the cap is left
for a later pass.

Precedence for ``burst_mode`` and ``max_parallel``: explicit override,
then the project row, then the deployment SchedulerConfig.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence

import structlog
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from storyloom.config import RoutingConfig, SchedulerConfig
from storyloom.database.models.project import Project
from storyloom.database.models.story import HOLDING_STATUSES, Priority, Story, StoryStatus
from storyloom.database.queries.project import require_project
from storyloom.database.queries.story import (
    get_story_by_short_id,
    list_stories,
    update_story,
)
from storyloom.exceptions import ConfigInvalidError, ContentionError
from storyloom.orchestrator.reservations import ReservationConflict, find_conflicts
from storyloom.orchestrator.routing import (
    fallback_worker_id,
    load_worker_profiles,
    route_story,
)

logger = structlog.get_logger(__name__)

SessionFactory = Callable[[], AsyncSession]


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class StorySnapshot(BaseModel):
    """The fields of a story an admission pass reads.

    Attributes:
        short_id: Human-readable story id.
        title: One-line summary.
        status: Status at snapshot time.
        priority: P0..P3.
        reserved_paths: Reservations at snapshot time.
        tags: Capability tags.
        assigned_worker: Current assignee, if any.
    """

    short_id: str
    title: str = ""
    status: StoryStatus = StoryStatus.backlog
    priority: Priority = Priority.P2
    reserved_paths: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    assigned_worker: str | None = None

    @classmethod
    def from_model(cls, story: Story) -> StorySnapshot:
        return cls(
            short_id=story.short_id,
            title=story.title,
            status=story.status,
            priority=story.priority,
            reserved_paths=list(story.reserved_paths or []),
            tags=list(story.tags or []),
            assigned_worker=story.assigned_worker,
        )


class QueuedStory(BaseModel):
    """A backlog story held back by reservation overlaps.

    Attributes:
        story: The queued story.
        conflicts: Overlaps per holder (active or admitted this pass).
    """

    story: StorySnapshot
    conflicts: list[ReservationConflict]

    @property
    def holders(self) -> list[str]:
        return [c.holder for c in self.conflicts]


class AdmissionPlan(BaseModel):
    """Result of one admission pass.

    Attributes:
        burst_mode: Whether the pass ran in burst mode.
        max_parallel: Admission cap used.
        active: Short ids of the holders considered.
        assignable: Stories admitted, in admission order.
        queued: Stories held back with their conflicts.
        unconsidered: Backlog left unscanned once the cap was reached.
    """

    burst_mode: bool
    max_parallel: int
    active: list[str] = Field(default_factory=list)
    assignable: list[StorySnapshot] = Field(default_factory=list)
    queued: list[QueuedStory] = Field(default_factory=list)
    unconsidered: list[str] = Field(default_factory=list)


class Assignment(BaseModel):
    """A worker assignment made after an admission pass.

    Attributes:
        short_id: Story assigned.
        worker: Worker it was assigned to.
        reason: Routing reason (matched, no_match, no_tags).
    """

    short_id: str
    worker: str
    reason: str


# ---------------------------------------------------------------------------
# Pure admission pass
# ---------------------------------------------------------------------------


def sort_backlog(backlog: Sequence[StorySnapshot]) -> list[StorySnapshot]:
    """Order stories by priority, keeping input order within a priority."""
    return sorted(backlog, key=lambda story: story.priority.rank)


def plan_admission(
    backlog: Sequence[StorySnapshot],
    active: Sequence[StorySnapshot],
    burst_mode: bool,
    max_parallel: int = 3,
) -> AdmissionPlan:
    """Run one greedy, priority-first admission pass.

    Args:
        backlog: Stories waiting in backlog, in creation order.
        active: Stories currently holding reservations.
        burst_mode: Admit several stories (True) or just the top one.
        max_parallel: Cap on stories admitted in this pass.

    Returns:
        AdmissionPlan with assignable, queued and unconsidered stories.

    Raises:
        ConfigInvalidError: If ``max_parallel`` is not positive.
    """
    if max_parallel < 1:
        raise ConfigInvalidError(f"max_parallel must be at least 1, got {max_parallel}")

    ordered = sort_backlog(backlog)
    plan = AdmissionPlan(
        burst_mode=burst_mode,
        max_parallel=max_parallel,
        active=[story.short_id for story in active],
    )

    if not burst_mode:
        plan.assignable = ordered[:1]
        plan.unconsidered = [story.short_id for story in ordered[1:]]
        return plan

    holders: list[StorySnapshot] = list(active)
    for index, candidate in enumerate(ordered):
        if len(plan.assignable) >= max_parallel:
            plan.unconsidered = [story.short_id for story in ordered[index:]]
            break

        if not candidate.reserved_paths:
            plan.assignable.append(candidate)
            continue

        conflicts = find_conflicts(candidate.reserved_paths, holders, exclude=candidate.short_id)
        if conflicts:
            plan.queued.append(QueuedStory(story=candidate, conflicts=conflicts))
            continue

        plan.assignable.append(candidate)
        holders.append(candidate)

    return plan


# ---------------------------------------------------------------------------
# Scheduler service
# ---------------------------------------------------------------------------


class AdmissionScheduler:
    """Runs admission passes against stored stories.

    Attributes:
        session_factory: Callable that produces async database sessions.
        config: Deployment scheduling defaults.
        routing_config: Weights used when assigning workers.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        config: SchedulerConfig | None = None,
        routing_config: RoutingConfig | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.config = config or SchedulerConfig()
        self.routing_config = routing_config or RoutingConfig()
        self._logger = logger.bind(component="AdmissionScheduler")

    def resolve_settings(
        self,
        project: Project,
        max_parallel: int | None = None,
        burst_mode: bool | None = None,
    ) -> tuple[bool, int]:
        """Resolve burst mode and cap for a project.

        Args:
            project: Project being scheduled.
            max_parallel: Explicit cap override.
            burst_mode: Explicit burst mode override.

        Returns:
            ``(burst_mode, max_parallel)``.

        Raises:
            ConfigInvalidError: If the resolved cap is not positive.
        """
        if burst_mode is None:
            burst_mode = (
                project.burst_mode
                if project.burst_mode is not None
                else self.config.burst_mode
            )
        if max_parallel is None:
            max_parallel = project.max_parallel_stories or self.config.max_parallel_stories
        if max_parallel < 1:
            raise ConfigInvalidError(f"max_parallel must be at least 1, got {max_parallel}")
        return burst_mode, max_parallel

    async def plan(
        self,
        short_code: str,
        max_parallel: int | None = None,
        burst_mode: bool | None = None,
    ) -> AdmissionPlan:
        """Run an admission pass for a project without changing anything.

        Raises:
            NotFoundError: If the project does not exist.
            ConfigInvalidError: If the cap is not positive.
        """
        async with self.session_factory() as session:
            project = await require_project(session, short_code)
            burst, cap = self.resolve_settings(project, max_parallel, burst_mode)
            backlog = await list_stories(
                session, project_id=project.id, statuses={StoryStatus.backlog}
            )
            active = await list_stories(
                session, project_id=project.id, statuses=HOLDING_STATUSES
            )

        plan = plan_admission(
            [StorySnapshot.from_model(s) for s in backlog],
            [StorySnapshot.from_model(s) for s in active],
            burst_mode=burst,
            max_parallel=cap,
        )
        self._logger.info(
            "admission_pass",
            short_code=project.short_code,
            burst_mode=burst,
            max_parallel=cap,
            assignable=[s.short_id for s in plan.assignable],
            queued=[q.story.short_id for q in plan.queued],
        )
        return plan

    async def assign(self, plan: AdmissionPlan) -> list[Assignment]:
        """Give each unassigned admitted story a worker.

        The worker is the routing recommendation for the story's tags, or
        the fallback worker when the story has none. Stories that left
        backlog since the plan was made are skipped.

        Args:
            plan: Plan from :meth:`plan`.

        Returns:
            Assignments that were written.
        """
        assignments: list[Assignment] = []
        async with self.session_factory() as session:
            workers = await load_worker_profiles(session)
            default_worker = fallback_worker_id(workers, self.routing_config)

            for snapshot in plan.assignable:
                if snapshot.assigned_worker:
                    continue
                result = route_story(snapshot.tags, workers, self.routing_config)
                worker = result.recommended or default_worker
                if worker is None:
                    continue

                story = await get_story_by_short_id(session, snapshot.short_id)
                if story is None or story.status != StoryStatus.backlog:
                    continue
                try:
                    await update_story(
                        session,
                        story,
                        {"assigned_worker": worker},
                        expected_status=StoryStatus.backlog,
                    )
                except ContentionError:
                    self._logger.warning("assignment_skipped", short_id=snapshot.short_id)
                    continue

                assignments.append(
                    Assignment(
                        short_id=snapshot.short_id,
                        worker=worker,
                        reason=result.reason.value,
                    )
                )
                self._logger.info(
                    "story_assigned",
                    short_id=snapshot.short_id,
                    worker=worker,
                    reason=result.reason.value,
                )
        return assignments
