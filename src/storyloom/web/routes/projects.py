"""Project REST API endpoints for Storyloom."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from storyloom.database.queries.project import (
    create_project,
    list_projects,
    require_project,
    update_project_settings,
)
from storyloom.web.routes.deps import get_session_factory

logger = structlog.get_logger(__name__)


# --- Pydantic Schemas ---


class ProjectCreate(BaseModel):
    """Request schema for creating a project."""

    name: str = Field(..., min_length=1, max_length=255)
    short_code: str = Field(..., min_length=1, max_length=10)
    burst_mode: bool | None = None
    max_parallel_stories: int | None = Field(default=None, ge=1)
    stale_threshold_minutes: int | None = Field(default=None, ge=1)


class ProjectUpdate(BaseModel):
    """Request schema for changing a project's scheduling settings."""

    burst_mode: bool | None = None
    max_parallel_stories: int | None = Field(default=None, ge=1)
    stale_threshold_minutes: int | None = Field(default=None, ge=1)


class ProjectResponse(BaseModel):
    """Response schema for project data."""

    id: UUID
    name: str
    short_code: str
    story_counter: int
    burst_mode: bool | None
    max_parallel_stories: int | None
    stale_threshold_minutes: int | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


def create_projects_router() -> APIRouter:
    """Create the project router.

    Routes:
        GET /projects/ - List projects
        POST /projects/ - Create a project
        GET /projects/{short_code} - Get a project
        PATCH /projects/{short_code} - Update scheduling settings
    """
    router = APIRouter(prefix="/projects", tags=["projects"])

    @router.get("/", response_model=list[ProjectResponse])
    async def list_projects_endpoint(
        session_factory: Callable[[], AsyncSession] = Depends(get_session_factory),
    ) -> list[ProjectResponse]:
        async with session_factory() as session:
            projects = await list_projects(session)
        return [ProjectResponse.model_validate(p) for p in projects]

    @router.post("/", response_model=ProjectResponse, status_code=201)
    async def create_project_endpoint(
        body: ProjectCreate,
        session_factory: Callable[[], AsyncSession] = Depends(get_session_factory),
    ) -> ProjectResponse:
        """Create a project and its story namespace."""
        async with session_factory() as session:
            project = await create_project(
                session,
                name=body.name,
                short_code=body.short_code,
                burst_mode=body.burst_mode,
                max_parallel_stories=body.max_parallel_stories,
                stale_threshold_minutes=body.stale_threshold_minutes,
            )
        return ProjectResponse.model_validate(project)

    @router.get("/{short_code}", response_model=ProjectResponse)
    async def get_project_endpoint(
        short_code: str,
        session_factory: Callable[[], AsyncSession] = Depends(get_session_factory),
    ) -> ProjectResponse:
        async with session_factory() as session:
            project = await require_project(session, short_code)
        return ProjectResponse.model_validate(project)

    @router.patch("/{short_code}", response_model=ProjectResponse)
    async def update_project_endpoint(
        short_code: str,
        body: ProjectUpdate,
        session_factory: Callable[[], AsyncSession] = Depends(get_session_factory),
    ) -> ProjectResponse:
        """Change burst mode, admission cap or stale threshold."""
        async with session_factory() as session:
            project = await require_project(session, short_code)
            project = await update_project_settings(
                session,
                project,
                burst_mode=body.burst_mode,
                max_parallel_stories=body.max_parallel_stories,
                stale_threshold_minutes=body.stale_threshold_minutes,
            )
        logger.info("project_updated_via_api", short_code=project.short_code)
        return ProjectResponse.model_validate(project)

    return router
