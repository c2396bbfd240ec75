"""Unit tests for the admission scheduler.

Tests cover:
- Priority ordering stable within a priority
- Serial mode offering only the top story
- Greedy burst admission against active holders
- Conflicts with stories admitted earlier in the same pass
- The parallel cap and unconsidered backlog
- Settings precedence (override, project, config)
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from storyloom.config import SchedulerConfig
from storyloom.database.models.story import Priority, StoryStatus
from storyloom.exceptions import ConfigInvalidError
from storyloom.orchestrator.scheduler import (
    AdmissionScheduler,
    StorySnapshot,
    plan_admission,
    sort_backlog,
)


def _story(
    short_id: str,
    priority: Priority = Priority.P2,
    paths: list[str] | None = None,
    status: StoryStatus = StoryStatus.backlog,
) -> StorySnapshot:
    return StorySnapshot(
        short_id=short_id,
        title=f"Story {short_id}",
        status=status,
        priority=priority,
        reserved_paths=paths or [],
    )


def _ids(stories: list[StorySnapshot]) -> list[str]:
    return [s.short_id for s in stories]


class TestSortBacklog:
    """Tests for sort_backlog."""

    def test_orders_by_priority(self) -> None:
        backlog = [_story("A-1", Priority.P3), _story("A-2", Priority.P0), _story("A-3", Priority.P1)]
        assert _ids(sort_backlog(backlog)) == ["A-2", "A-3", "A-1"]

    def test_stable_within_priority(self) -> None:
        backlog = [
            _story("A-5", Priority.P1),
            _story("A-2", Priority.P1),
            _story("A-9", Priority.P0),
            _story("A-1", Priority.P1),
        ]
        assert _ids(sort_backlog(backlog)) == ["A-9", "A-5", "A-2", "A-1"]


class TestSerialMode:
    """Tests for plan_admission with burst mode off."""

    def test_only_highest_priority_story(self) -> None:
        backlog = [_story("X", Priority.P1), _story("Y", Priority.P0)]
        plan = plan_admission(backlog, [], burst_mode=False)

        assert _ids(plan.assignable) == ["Y"]
        assert plan.queued == []
        assert plan.unconsidered == ["X"]

    def test_ignores_reservations(self) -> None:
        backlog = [_story("X", Priority.P1), _story("Y", Priority.P0, ["x.ts"])]
        active = [_story("H", paths=["x.ts"], status=StoryStatus.in_progress)]
        plan = plan_admission(backlog, active, burst_mode=False)

        assert _ids(plan.assignable) == ["Y"]
        assert plan.queued == []

    def test_empty_backlog(self) -> None:
        plan = plan_admission([], [], burst_mode=False)
        assert plan.assignable == []
        assert plan.unconsidered == []


class TestBurstMode:
    """Tests for plan_admission with burst mode on."""

    def test_queues_story_conflicting_with_same_pass(self) -> None:
        backlog = [
            _story("A", Priority.P0, ["x.ts"]),
            _story("B", Priority.P0, ["x.ts"]),
            _story("C", Priority.P1, ["y.ts"]),
        ]
        plan = plan_admission(backlog, [], burst_mode=True, max_parallel=2)

        assert _ids(plan.assignable) == ["A", "C"]
        assert len(plan.queued) == 1
        queued = plan.queued[0]
        assert queued.story.short_id == "B"
        assert queued.holders == ["A"]
        assert queued.conflicts[0].paths == ["x.ts"]

    def test_queues_story_conflicting_with_active_holder(self) -> None:
        active = [_story("H-1", paths=["src/*.ts"], status=StoryStatus.in_progress)]
        backlog = [_story("A", Priority.P0, ["src/app.ts"]), _story("B", Priority.P1, ["docs/x.md"])]
        plan = plan_admission(backlog, active, burst_mode=True)

        assert _ids(plan.assignable) == ["B"]
        assert plan.queued[0].story.short_id == "A"
        assert plan.queued[0].holders == ["H-1"]
        assert plan.queued[0].conflicts[0].holder_status == StoryStatus.in_progress
        assert plan.active == ["H-1"]

    def test_globstar_holder_queues_literal_candidate(self) -> None:
        active = [_story("H-1", paths=["src/**/*.ts"], status=StoryStatus.in_progress)]
        backlog = [
            _story("A", Priority.P0, ["src/app.ts"]),
            _story("B", Priority.P1, ["src/deep/nested/util.ts"]),
            _story("C", Priority.P2, ["src/app.py"]),
        ]
        plan = plan_admission(backlog, active, burst_mode=True)

        assert _ids(plan.assignable) == ["C"]
        assert _ids([q.story for q in plan.queued]) == ["A", "B"]
        assert plan.queued[0].conflicts[0].paths == ["src/app.ts"]

    def test_star_holder_leaves_nested_files_free(self) -> None:
        active = [_story("H-1", paths=["src/components/*"], status=StoryStatus.in_progress)]
        backlog = [_story("A", Priority.P0, ["src/components/sub/x.ts"])]
        plan = plan_admission(backlog, active, burst_mode=True)

        assert _ids(plan.assignable) == ["A"]
        assert plan.queued == []

    def test_story_without_reservations_always_admitted(self) -> None:
        active = [_story("H-1", paths=["*"], status=StoryStatus.in_design)]
        backlog = [_story("A", Priority.P0), _story("B", Priority.P1, ["a.ts"])]
        plan = plan_admission(backlog, active, burst_mode=True)

        assert _ids(plan.assignable) == ["A"]
        assert _ids([q.story for q in plan.queued]) == ["B"]

    def test_stops_at_cap(self) -> None:
        backlog = [_story(f"S-{i}", Priority.P2, [f"f{i}.ts"]) for i in range(1, 6)]
        plan = plan_admission(backlog, [], burst_mode=True, max_parallel=3)

        assert _ids(plan.assignable) == ["S-1", "S-2", "S-3"]
        assert plan.queued == []
        assert plan.unconsidered == ["S-4", "S-5"]

    def test_queued_stories_do_not_count_toward_cap(self) -> None:
        backlog = [
            _story("A", Priority.P0, ["x.ts"]),
            _story("B", Priority.P0, ["x.ts"]),
            _story("C", Priority.P1, ["y.ts"]),
            _story("D", Priority.P2, ["z.ts"]),
        ]
        plan = plan_admission(backlog, [], burst_mode=True, max_parallel=2)

        assert _ids(plan.assignable) == ["A", "C"]
        assert _ids([q.story for q in plan.queued]) == ["B"]
        assert plan.unconsidered == ["D"]

    def test_does_not_backtrack(self) -> None:
        active = [_story("H", paths=["core.py"], status=StoryStatus.in_progress)]
        backlog = [_story("HIGH", Priority.P0, ["core.py"]), _story("LOW", Priority.P3, ["other.py"])]
        plan = plan_admission(backlog, active, burst_mode=True, max_parallel=1)

        assert _ids(plan.assignable) == ["LOW"]
        assert plan.queued[0].story.short_id == "HIGH"

    def test_conflicts_listed_per_holder(self) -> None:
        active = [
            _story("H-1", paths=["a.ts"], status=StoryStatus.in_progress),
            _story("H-2", paths=["b.ts"], status=StoryStatus.in_design),
        ]
        backlog = [_story("A", Priority.P0, ["a.ts", "b.ts", "c.ts"])]
        plan = plan_admission(backlog, active, burst_mode=True)

        conflicts = plan.queued[0].conflicts
        assert [(c.holder, c.paths) for c in conflicts] == [("H-1", ["a.ts"]), ("H-2", ["b.ts"])]

    def test_rejects_non_positive_cap(self) -> None:
        with pytest.raises(ConfigInvalidError):
            plan_admission([_story("A")], [], burst_mode=True, max_parallel=0)


class TestResolveSettings:
    """Tests for AdmissionScheduler.resolve_settings precedence."""

    def _project(self, burst: bool | None = None, cap: int | None = None) -> MagicMock:
        project = MagicMock()
        project.burst_mode = burst
        project.max_parallel_stories = cap
        return project

    def test_config_default(self) -> None:
        scheduler = AdmissionScheduler(MagicMock(), SchedulerConfig(max_parallel_stories=4))
        assert scheduler.resolve_settings(self._project()) == (False, 4)

    def test_project_value_beats_config(self) -> None:
        scheduler = AdmissionScheduler(MagicMock(), SchedulerConfig(max_parallel_stories=4))
        assert scheduler.resolve_settings(self._project(burst=True, cap=2)) == (True, 2)

    def test_override_beats_project(self) -> None:
        scheduler = AdmissionScheduler(MagicMock(), SchedulerConfig())
        result = scheduler.resolve_settings(
            self._project(burst=True, cap=2), max_parallel=5, burst_mode=False
        )
        assert result == (False, 5)

    def test_rejects_non_positive_override(self) -> None:
        scheduler = AdmissionScheduler(MagicMock(), SchedulerConfig())
        with pytest.raises(ConfigInvalidError):
            scheduler.resolve_settings(self._project(), max_parallel=0)

    def test_configured_burst_mode_applies_to_unset_project(self) -> None:
        scheduler = AdmissionScheduler(MagicMock(), SchedulerConfig(burst_mode=True))
        assert scheduler.resolve_settings(self._project()) == (True, 3)

    def test_project_serial_beats_configured_burst(self) -> None:
        scheduler = AdmissionScheduler(MagicMock(), SchedulerConfig(burst_mode=True))
        assert scheduler.resolve_settings(self._project(burst=False)) == (False, 3)
