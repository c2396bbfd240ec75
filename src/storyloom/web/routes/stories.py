"""Story REST API endpoints for Storyloom.

Provides routes for allocating stories, reading them, changing status,
adding notes and recording worker heartbeats.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from storyloom.config import StoryloomConfig
from storyloom.database.models.story import Complexity, Priority, StoryStatus
from storyloom.database.queries.project import require_project
from storyloom.database.queries.story import (
    add_note,
    list_activity,
    list_notes,
    list_stories,
    require_story,
)
from storyloom.orchestrator.allocator import StoryAllocator, StoryDraft
from storyloom.orchestrator.routing import split_tags
from storyloom.orchestrator.state_machine import StoryStateMachine
from storyloom.orchestrator.watchdog import HeartbeatResult, record_heartbeat
from storyloom.web.routes.deps import get_config, get_session_factory

logger = structlog.get_logger(__name__)


# --- Pydantic Schemas ---


class StoryResponse(BaseModel):
    """Response schema for story data."""

    id: UUID
    short_id: str
    project_id: UUID
    title: str
    description: str
    status: StoryStatus
    previous_status: StoryStatus | None
    priority: Priority
    complexity: Complexity
    assigned_worker: str | None
    reserved_paths: list[str]
    tags: list[str]
    blocked_reason: str | None
    waiting_on_path: str | None
    last_heartbeat_at: datetime | None
    heartbeat_worker: str | None
    heartbeat_message: str | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class StoryCreated(StoryResponse):
    """Response schema for a newly allocated story."""

    unrecognized_tags: list[str] = Field(default_factory=list)


class StatusUpdate(BaseModel):
    """Request schema for a status change."""

    status: StoryStatus
    worker: str = Field(default="user", min_length=1)
    reason: str | None = None
    note: str | None = None


class NoteCreate(BaseModel):
    """Request schema for appending a note."""

    text: str = Field(..., min_length=1)
    author: str = Field(default="user", min_length=1)


class NoteResponse(BaseModel):
    """Response schema for a note."""

    id: UUID
    author: str
    text: str
    created_at: datetime

    model_config = {"from_attributes": True}


class ActivityResponse(BaseModel):
    """Response schema for an activity record."""

    from_status: StoryStatus | None
    to_status: StoryStatus
    worker: str
    note: str | None
    created_at: datetime

    model_config = {"from_attributes": True}


class HeartbeatCreate(BaseModel):
    """Request schema for a heartbeat."""

    worker: str = Field(..., min_length=1)
    message: str | None = None


def create_stories_router() -> APIRouter:
    """Create the story router.

    Routes:
        POST /projects/{short_code}/stories - Allocate and create a story
        GET /projects/{short_code}/stories - List a project's stories
        GET /stories/{short_id} - Get a story
        PATCH /stories/{short_id}/status - Change status
        GET /stories/{short_id}/notes - List notes
        POST /stories/{short_id}/notes - Append a note
        GET /stories/{short_id}/activity - List status changes
        POST /stories/{short_id}/heartbeat - Record a heartbeat
    """
    router = APIRouter(tags=["stories"])

    @router.post(
        "/projects/{short_code}/stories",
        response_model=StoryCreated,
        status_code=201,
    )
    async def create_story_endpoint(
        short_code: str,
        draft: StoryDraft,
        worker: str = "user",
        session_factory: Callable[[], AsyncSession] = Depends(get_session_factory),
        config: StoryloomConfig = Depends(get_config),
    ) -> StoryCreated:
        """Allocate the next id in the project's namespace and create the story."""
        allocator = StoryAllocator(session_factory, config.allocator)
        story = await allocator.allocate(short_code, draft, worker=worker)
        _, unrecognized = split_tags(story.tags or [])
        return StoryCreated.model_validate(story).model_copy(
            update={"unrecognized_tags": unrecognized}
        )

    @router.get("/projects/{short_code}/stories", response_model=list[StoryResponse])
    async def list_stories_endpoint(
        short_code: str,
        status: list[StoryStatus] | None = Query(default=None),  # noqa: B008
        session_factory: Callable[[], AsyncSession] = Depends(get_session_factory),
    ) -> list[StoryResponse]:
        async with session_factory() as session:
            project = await require_project(session, short_code)
            stories = await list_stories(session, project_id=project.id, statuses=status)
        return [StoryResponse.model_validate(s) for s in stories]

    @router.get("/stories/{short_id}", response_model=StoryResponse)
    async def get_story_endpoint(
        short_id: str,
        session_factory: Callable[[], AsyncSession] = Depends(get_session_factory),
    ) -> StoryResponse:
        async with session_factory() as session:
            story = await require_story(session, short_id)
        return StoryResponse.model_validate(story)

    @router.patch("/stories/{short_id}/status", response_model=StoryResponse)
    async def update_status_endpoint(
        short_id: str,
        body: StatusUpdate,
        session_factory: Callable[[], AsyncSession] = Depends(get_session_factory),
    ) -> StoryResponse:
        """Change a story's status; blocked and cancelled need a reason."""
        async with session_factory() as session:
            story = await require_story(session, short_id)
            story = await StoryStateMachine().transition(
                session,
                story,
                body.status,
                worker=body.worker,
                reason=body.reason,
                note=body.note,
            )
        logger.info(
            "story_status_updated_via_api",
            short_id=story.short_id,
            status=story.status.value,
        )
        return StoryResponse.model_validate(story)

    @router.get("/stories/{short_id}/notes", response_model=list[NoteResponse])
    async def list_notes_endpoint(
        short_id: str,
        session_factory: Callable[[], AsyncSession] = Depends(get_session_factory),
    ) -> list[NoteResponse]:
        async with session_factory() as session:
            story = await require_story(session, short_id)
            notes = await list_notes(session, story.id)
        return [NoteResponse.model_validate(n) for n in notes]

    @router.post("/stories/{short_id}/notes", response_model=NoteResponse, status_code=201)
    async def add_note_endpoint(
        short_id: str,
        body: NoteCreate,
        session_factory: Callable[[], AsyncSession] = Depends(get_session_factory),
    ) -> NoteResponse:
        async with session_factory() as session:
            story = await require_story(session, short_id)
            note = await add_note(session, story.id, author=body.author, text=body.text)
        return NoteResponse.model_validate(note)

    @router.get("/stories/{short_id}/activity", response_model=list[ActivityResponse])
    async def list_activity_endpoint(
        short_id: str,
        session_factory: Callable[[], AsyncSession] = Depends(get_session_factory),
    ) -> list[ActivityResponse]:
        async with session_factory() as session:
            story = await require_story(session, short_id)
            activity = await list_activity(session, story.id)
        return [ActivityResponse.model_validate(a) for a in activity]

    @router.post("/stories/{short_id}/heartbeat", response_model=HeartbeatResult)
    async def heartbeat_endpoint(
        short_id: str,
        body: HeartbeatCreate,
        session_factory: Callable[[], AsyncSession] = Depends(get_session_factory),
        config: StoryloomConfig = Depends(get_config),
    ) -> HeartbeatResult:
        """Record a worker heartbeat (debounced)."""
        async with session_factory() as session:
            return await record_heartbeat(
                session,
                short_id,
                worker=body.worker,
                message=body.message,
                config=config.heartbeat,
            )

    return router
