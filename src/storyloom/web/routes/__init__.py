"""FastAPI route definitions for the Storyloom web service."""

from __future__ import annotations

from storyloom.web.routes.coordination import create_coordination_router
from storyloom.web.routes.health import (
    HealthResponse,
    ReadinessResponse,
    create_health_router,
)
from storyloom.web.routes.projects import (
    ProjectCreate,
    ProjectResponse,
    ProjectUpdate,
    create_projects_router,
)
from storyloom.web.routes.stories import (
    StatusUpdate,
    StoryCreated,
    StoryResponse,
    create_stories_router,
)

__all__ = [
    # Coordination
    "create_coordination_router",
    # Health
    "HealthResponse",
    "ReadinessResponse",
    "create_health_router",
    # Projects
    "ProjectCreate",
    "ProjectResponse",
    "ProjectUpdate",
    "create_projects_router",
    # Stories
    "StatusUpdate",
    "StoryCreated",
    "StoryResponse",
    "create_stories_router",
]
