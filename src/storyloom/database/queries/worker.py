"""Worker directory query functions for Storyloom."""

from __future__ import annotations

from collections.abc import Iterable

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storyloom.database.models.worker import Worker

logger = structlog.get_logger(__name__)


async def list_workers(session: AsyncSession) -> list[Worker]:
    """List all workers in tie-break order."""
    stmt = select(Worker).order_by(Worker.tie_break_rank.asc(), Worker.id.asc())
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_worker(session: AsyncSession, worker_id: str) -> Worker | None:
    """Retrieve a worker by slug."""
    return await session.get(Worker, worker_id)


async def upsert_worker(
    session: AsyncSession,
    worker_id: str,
    name: str,
    primary_tags: Iterable[str],
    secondary_tags: Iterable[str],
    tie_break_rank: int,
    is_fallback: bool = False,
) -> Worker:
    """Create or replace a worker record.

    Args:
        session: Active async database session.
        worker_id: Worker slug.
        name: Display name.
        primary_tags: Primary capability tags.
        secondary_tags: Secondary capability tags.
        tie_break_rank: Position in the tie-break order (lower wins).
        is_fallback: Whether this worker is the default assignee.

    Returns:
        The persisted Worker.
    """
    worker = await session.merge(
        Worker(
            id=worker_id,
            name=name,
            primary_tags=sorted(primary_tags),
            secondary_tags=sorted(secondary_tags),
            tie_break_rank=tie_break_rank,
            is_fallback=is_fallback,
        )
    )
    await session.commit()

    logger.info("worker_upserted", worker_id=worker_id, tie_break_rank=tie_break_rank)
    return worker
