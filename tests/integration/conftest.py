"""Pytest fixtures for integration tests.

Provides async database fixtures backed by a temporary SQLite file. A
file (rather than ``:memory:``) lets every session get its own
connection, so concurrent allocators really race on the same database.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Awaitable, Callable
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from storyloom.config import AllocatorConfig, DatabaseConfig, StoryloomConfig
from storyloom.database.connection import get_engine, get_session_factory
from storyloom.database.models import Base, Project, Story, StoryStatus
from storyloom.database.queries.project import create_project
from storyloom.database.queries.story import require_story, update_story
from storyloom.orchestrator.allocator import StoryAllocator, StoryDraft

MakeStory = Callable[..., Awaitable[Story]]


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    """URL of a fresh SQLite database file for the test."""
    return f"sqlite+aiosqlite:///{tmp_path / 'storyloom.db'}"


@pytest.fixture
def test_config(database_url: str) -> StoryloomConfig:
    """Configuration pointing at the test database with a fast retry policy."""
    return StoryloomConfig(
        database=DatabaseConfig(url=database_url),
        allocator=AllocatorConfig(max_attempts=10, base_delay_seconds=0.001),
    )


@pytest_asyncio.fixture
async def engine(test_config: StoryloomConfig) -> AsyncGenerator[AsyncEngine, None]:
    """Create the async engine and all tables.

    Yields:
        AsyncEngine bound to the temporary database file.
    """
    test_engine = get_engine(test_config.database)
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine

    await test_engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test engine."""
    return get_session_factory(engine)


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """A session for direct queries inside a test."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def project(session_factory: async_sessionmaker[AsyncSession]) -> Project:
    """A project with short code ``AB`` using the configured scheduling defaults."""
    async with session_factory() as session:
        return await create_project(session, name="Alpha Board", short_code="AB")


@pytest_asyncio.fixture
async def make_story(
    session_factory: async_sessionmaker[AsyncSession],
    test_config: StoryloomConfig,
    project: Project,
) -> MakeStory:
    """Factory creating a story through the allocator, then moving it.

    The returned coroutine accepts StoryDraft fields plus ``status`` (any
    status; applied after creation) and extra column values.
    """
    allocator = StoryAllocator(session_factory, test_config.allocator)

    async def _make(
        title: str = "Story",
        status: StoryStatus = StoryStatus.backlog,
        short_code: str = "AB",
        **fields: Any,
    ) -> Story:
        draft_fields = {
            k: fields.pop(k)
            for k in ("description", "priority", "complexity", "tags", "reserved_paths")
            if k in fields
        }
        story = await allocator.allocate(short_code, StoryDraft(title=title, **draft_fields))
        values: dict[str, Any] = dict(fields)
        if status != StoryStatus.backlog:
            values["status"] = status
        if values:
            async with session_factory() as session:
                loaded = await require_story(session, story.short_id)
                story = await update_story(session, loaded, values)
        return story

    return _make
