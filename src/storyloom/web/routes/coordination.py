"""Coordination REST API endpoints for Storyloom.

Exposes file reservations and the request/release protocol, admission
passes, worker routing and the liveness watchdog. Every route returns the
same structured result models the orchestrator produces.
"""

from __future__ import annotations

from collections.abc import Callable

import structlog
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from storyloom.config import StoryloomConfig
from storyloom.database.queries.story import require_story
from storyloom.orchestrator.reservations import (
    ReleaseResult,
    RequestResult,
    ReservationManager,
    ReservationReport,
)
from storyloom.orchestrator.routing import RoutingResult, load_worker_profiles, route_story
from storyloom.orchestrator.scheduler import AdmissionPlan, AdmissionScheduler, Assignment
from storyloom.orchestrator.watchdog import FlagResult, LivenessWatchdog, WatchdogReport
from storyloom.web.routes.deps import get_config, get_session_factory

logger = structlog.get_logger(__name__)


# --- Pydantic Schemas ---


class ReservationSet(BaseModel):
    """Request schema for replacing a story's reservations."""

    paths: list[str] = Field(default_factory=list)


class PathRequest(BaseModel):
    """Request schema for asking for a path."""

    path: str = Field(..., min_length=1)
    worker: str | None = None


class ReleaseRequest(BaseModel):
    """Request schema for releasing reservations."""

    worker: str | None = None


class ScheduleRequest(BaseModel):
    """Request schema for an admission pass that assigns workers."""

    max_parallel: int | None = None


class ScheduleResponse(AdmissionPlan):
    """Admission plan plus the worker assignments made from it."""

    assignments: list[Assignment] = Field(default_factory=list)


class WatchdogFlagResponse(BaseModel):
    """Watchdog report plus the flagging outcome per story."""

    report: WatchdogReport
    flags: list[FlagResult]


def create_coordination_router() -> APIRouter:
    """Create the coordination router.

    Routes:
        GET /stories/{short_id}/reservations - Check overlaps
        PUT /stories/{short_id}/reservations - Replace reservations
        DELETE /stories/{short_id}/reservations - Clear reservations
        POST /stories/{short_id}/reservations/request - Request a path
        POST /stories/{short_id}/reservations/release - Release and resume waiters
        GET /projects/{short_code}/schedule - Preview an admission pass
        POST /projects/{short_code}/schedule - Admission pass with assignment
        GET /routing - Rank workers for tags
        GET /projects/{short_code}/watchdog - Stale story report
        POST /projects/{short_code}/watchdog/flag - Report and flag stale stories
    """
    router = APIRouter(tags=["coordination"])

    def reservations(
        session_factory: Callable[[], AsyncSession] = Depends(get_session_factory),
        config: StoryloomConfig = Depends(get_config),
    ) -> ReservationManager:
        return ReservationManager(session_factory, config.reservations)

    def scheduler(
        session_factory: Callable[[], AsyncSession] = Depends(get_session_factory),
        config: StoryloomConfig = Depends(get_config),
    ) -> AdmissionScheduler:
        return AdmissionScheduler(session_factory, config.scheduler, config.routing)

    def watchdog(
        session_factory: Callable[[], AsyncSession] = Depends(get_session_factory),
        config: StoryloomConfig = Depends(get_config),
    ) -> LivenessWatchdog:
        return LivenessWatchdog(session_factory, config.scheduler)

    # --- Reservations ---

    @router.get("/stories/{short_id}/reservations", response_model=ReservationReport)
    async def check_reservations_endpoint(
        short_id: str,
        manager: ReservationManager = Depends(reservations),
    ) -> ReservationReport:
        return await manager.check(short_id)

    @router.put("/stories/{short_id}/reservations", response_model=ReservationReport)
    async def set_reservations_endpoint(
        short_id: str,
        body: ReservationSet,
        manager: ReservationManager = Depends(reservations),
    ) -> ReservationReport:
        """Replace reservations; overlaps are reported, not rejected."""
        return await manager.set_reservations(short_id, body.paths)

    @router.delete("/stories/{short_id}/reservations", response_model=list[str])
    async def clear_reservations_endpoint(
        short_id: str,
        manager: ReservationManager = Depends(reservations),
    ) -> list[str]:
        return await manager.clear(short_id)

    @router.post("/stories/{short_id}/reservations/request", response_model=RequestResult)
    async def request_path_endpoint(
        short_id: str,
        body: PathRequest,
        manager: ReservationManager = Depends(reservations),
    ) -> RequestResult:
        """Ask for a path; blocks the story if another active story holds it."""
        return await manager.request(short_id, body.path, worker=body.worker)

    @router.post("/stories/{short_id}/reservations/release", response_model=ReleaseResult)
    async def release_endpoint(
        short_id: str,
        body: ReleaseRequest | None = None,
        manager: ReservationManager = Depends(reservations),
    ) -> ReleaseResult:
        """Release reservations and resume stories waiting on them."""
        worker = body.worker if body is not None else None
        return await manager.release(short_id, worker=worker)

    # --- Scheduling ---

    @router.get("/projects/{short_code}/schedule", response_model=AdmissionPlan)
    async def preview_schedule_endpoint(
        short_code: str,
        max_parallel: int | None = None,
        admission: AdmissionScheduler = Depends(scheduler),
    ) -> AdmissionPlan:
        return await admission.plan(short_code, max_parallel=max_parallel)

    @router.post("/projects/{short_code}/schedule", response_model=ScheduleResponse)
    async def run_schedule_endpoint(
        short_code: str,
        body: ScheduleRequest | None = None,
        admission: AdmissionScheduler = Depends(scheduler),
    ) -> ScheduleResponse:
        """Run an admission pass and assign workers to admitted stories."""
        max_parallel = body.max_parallel if body is not None else None
        plan = await admission.plan(short_code, max_parallel=max_parallel)
        assignments = await admission.assign(plan)
        return ScheduleResponse(**plan.model_dump(), assignments=assignments)

    # --- Routing ---

    @router.get("/routing", response_model=RoutingResult)
    async def routing_endpoint(
        tags: list[str] | None = Query(default=None),  # noqa: B008
        story: str | None = None,
        session_factory: Callable[[], AsyncSession] = Depends(get_session_factory),
        config: StoryloomConfig = Depends(get_config),
    ) -> RoutingResult:
        """Rank workers for tags (or a story's tags) and recommend one."""
        wanted = [t for raw in tags or [] for t in raw.split(",")]
        async with session_factory() as session:
            if story is not None:
                wanted.extend((await require_story(session, story)).tags or [])
            workers = await load_worker_profiles(session)
        return route_story(wanted, workers, config.routing)

    # --- Watchdog ---

    @router.get("/projects/{short_code}/watchdog", response_model=WatchdogReport)
    async def watchdog_endpoint(
        short_code: str,
        threshold: int | None = None,
        dog: LivenessWatchdog = Depends(watchdog),
    ) -> WatchdogReport:
        return await dog.scan(short_code, threshold_minutes=threshold)

    @router.post("/projects/{short_code}/watchdog/flag", response_model=WatchdogFlagResponse)
    async def watchdog_flag_endpoint(
        short_code: str,
        threshold: int | None = None,
        dog: LivenessWatchdog = Depends(watchdog),
    ) -> WatchdogFlagResponse:
        """Report stale stories and leave a watchdog note on each."""
        report = await dog.scan(short_code, threshold_minutes=threshold)
        flags = await dog.flag(report)
        logger.info(
            "watchdog_flagged_via_api",
            short_code=short_code,
            flagged=[f.short_id for f in flags if f.flagged],
        )
        return WatchdogFlagResponse(report=report, flags=flags)

    return router
