"""Project query functions for Storyloom.

Provides async functions for creating, reading and updating Project
records. The story counter on a project row is written only by the
allocator in :mod:`storyloom.orchestrator.allocator`.
"""

from __future__ import annotations

import re
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from storyloom.database.models.project import Project
from storyloom.exceptions import ConfigInvalidError, NotFoundError

logger = structlog.get_logger(__name__)

SHORT_CODE_PATTERN = re.compile(r"^[A-Z][A-Z0-9]{0,9}$")


def _check_positive(name: str, value: int | None) -> None:
    if value is not None and value < 1:
        raise ConfigInvalidError(f"{name} must be a positive integer, got {value}")


async def create_project(
    session: AsyncSession,
    name: str,
    short_code: str,
    burst_mode: bool | None = None,
    max_parallel_stories: int | None = None,
    stale_threshold_minutes: int | None = None,
) -> Project:
    """Create a new project and its story namespace.

    Args:
        session: Active async database session.
        name: Human-readable project name.
        short_code: Namespace prefix for story ids (upper-case, 1-10 chars).
        burst_mode: Whether parallel admission is enabled, or None for the
            deployment default.
        max_parallel_stories: Optional per-project admission cap.
        stale_threshold_minutes: Optional per-project staleness threshold.

    Returns:
        The newly created Project instance.

    Raises:
        ConfigInvalidError: If the short code is invalid or taken, or a limit
            is invalid.
    """
    short_code = short_code.strip().upper()
    if not SHORT_CODE_PATTERN.match(short_code):
        raise ConfigInvalidError(
            f"Invalid short code {short_code!r}: use 1-10 upper-case letters or digits"
        )
    _check_positive("max_parallel_stories", max_parallel_stories)
    _check_positive("stale_threshold_minutes", stale_threshold_minutes)

    project = Project(
        name=name,
        short_code=short_code,
        story_counter=0,
        burst_mode=burst_mode,
        max_parallel_stories=max_parallel_stories,
        stale_threshold_minutes=stale_threshold_minutes,
    )
    session.add(project)
    try:
        await session.commit()
    except IntegrityError as e:
        await session.rollback()
        raise ConfigInvalidError(f"Short code already in use: {short_code}") from e

    logger.info(
        "project_created",
        project_id=str(project.id),
        short_code=short_code,
        burst_mode=burst_mode,
    )
    return project


async def get_project(
    session: AsyncSession,
    project_id: UUID,
) -> Project | None:
    """Retrieve a project by ID.

    Args:
        session: Active async database session.
        project_id: UUID of the project to retrieve.

    Returns:
        The Project instance if found, None otherwise.
    """
    stmt = select(Project).where(Project.id == project_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_project_by_code(
    session: AsyncSession,
    short_code: str,
) -> Project | None:
    """Retrieve a project by its namespace short code (case-insensitive)."""
    stmt = select(Project).where(Project.short_code == short_code.strip().upper())
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def require_project(session: AsyncSession, short_code: str) -> Project:
    """Retrieve a project by short code or raise NotFoundError."""
    project = await get_project_by_code(session, short_code)
    if project is None:
        raise NotFoundError("project", short_code)
    return project


async def list_projects(session: AsyncSession) -> list[Project]:
    """List all projects ordered by short code."""
    stmt = select(Project).order_by(Project.short_code.asc())
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def update_project_settings(
    session: AsyncSession,
    project: Project,
    burst_mode: bool | None = None,
    max_parallel_stories: int | None = None,
    stale_threshold_minutes: int | None = None,
) -> Project:
    """Update a project's scheduling settings.

    Only arguments that are not None are changed. The update goes through
    the ORM so the row version is bumped like any other project write.

    Args:
        session: Active async database session.
        project: Project to update (loaded in ``session``).
        burst_mode: New burst mode flag.
        max_parallel_stories: New admission cap.
        stale_threshold_minutes: New staleness threshold.

    Returns:
        The updated Project instance.

    Raises:
        ConfigInvalidError: If a limit is not a positive integer.
    """
    _check_positive("max_parallel_stories", max_parallel_stories)
    _check_positive("stale_threshold_minutes", stale_threshold_minutes)

    if burst_mode is not None:
        project.burst_mode = burst_mode
    if max_parallel_stories is not None:
        project.max_parallel_stories = max_parallel_stories
    if stale_threshold_minutes is not None:
        project.stale_threshold_minutes = stale_threshold_minutes

    await session.commit()

    logger.info(
        "project_settings_updated",
        short_code=project.short_code,
        burst_mode=project.burst_mode,
        max_parallel_stories=project.max_parallel_stories,
        stale_threshold_minutes=project.stale_threshold_minutes,
    )
    return project
