"""Coordination subsystem for Storyloom.

This module implements reservation overlap matching, capability-based
worker ranking, story id allocation, the file reservation protocol, the
admission scheduler, the liveness watchdog and story status transitions.
"""

from __future__ import annotations

from storyloom.orchestrator.allocator import StoryAllocator, StoryDraft
from storyloom.orchestrator.path_matcher import overlaps, paths_conflict, validate_patterns
from storyloom.orchestrator.reservations import (
    ReleaseOutcome,
    ReleaseResult,
    RequestOutcome,
    RequestResult,
    ReservationConflict,
    ReservationManager,
    ReservationReport,
)
from storyloom.orchestrator.routing import (
    DEFAULT_WORKERS,
    CapabilityTag,
    RecommendationReason,
    RoutingResult,
    WorkerProfile,
    WorkerScore,
    rank_workers,
    route_story,
)
from storyloom.orchestrator.scheduler import (
    AdmissionPlan,
    AdmissionScheduler,
    QueuedStory,
    StorySnapshot,
    plan_admission,
)
from storyloom.orchestrator.state_machine import (
    InvalidTransitionError,
    StoryStateMachine,
    WaitingOn,
)
from storyloom.orchestrator.watchdog import (
    ActivityInput,
    ActivitySource,
    LivenessWatchdog,
    StaleStory,
    WatchdogReport,
    find_stale,
    record_heartbeat,
)

__all__ = [
    "StoryAllocator",
    "StoryDraft",
    "overlaps",
    "paths_conflict",
    "validate_patterns",
    "ReleaseOutcome",
    "ReleaseResult",
    "RequestOutcome",
    "RequestResult",
    "ReservationConflict",
    "ReservationManager",
    "ReservationReport",
    "DEFAULT_WORKERS",
    "CapabilityTag",
    "RecommendationReason",
    "RoutingResult",
    "WorkerProfile",
    "WorkerScore",
    "rank_workers",
    "route_story",
    "AdmissionPlan",
    "AdmissionScheduler",
    "QueuedStory",
    "StorySnapshot",
    "plan_admission",
    "InvalidTransitionError",
    "StoryStateMachine",
    "WaitingOn",
    "ActivityInput",
    "ActivitySource",
    "LivenessWatchdog",
    "StaleStory",
    "WatchdogReport",
    "find_stale",
    "record_heartbeat",
]
