"""Database connection management for Storyloom.

This module provides factory functions for creating SQLAlchemy async engines
and session factories, configured from the application's DatabaseConfig.

Production deployments run on PostgreSQL through asyncpg with a pooled
engine; tests and single-user installs can point the URL at a SQLite file
through aiosqlite, in which case the pool arguments are not applicable.

Example usage:
    >>> from storyloom.config import DatabaseConfig
    >>> from storyloom.database.connection import get_engine, get_session_factory
    >>>
    >>> config = DatabaseConfig(url="postgresql+asyncpg://localhost/storyloom")
    >>> engine = get_engine(config)
    >>> SessionFactory = get_session_factory(engine)
    >>>
    >>> async with SessionFactory() as session:
    ...     result = await session.execute(select(Story))
"""

from __future__ import annotations

from typing import Any

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from storyloom.config import DatabaseConfig

# Seconds a SQLite writer waits on a locked database before giving up
SQLITE_BUSY_TIMEOUT = 30


def get_engine(config: DatabaseConfig) -> AsyncEngine:
    """Create an async SQLAlchemy engine from database configuration.

    Configures connection pooling using the pool_size and max_overflow
    settings from DatabaseConfig for server databases. SQLite URLs get a
    busy timeout instead so concurrent writers queue rather than fail.

    Args:
        config: Database configuration containing URL, pool settings,
                and SQL echo preference.

    Returns:
        Configured AsyncEngine instance.
    """
    url = make_url(config.url)
    kwargs: dict[str, Any] = {"echo": config.echo}

    if url.get_backend_name() == "sqlite":
        kwargs["connect_args"] = {"timeout": SQLITE_BUSY_TIMEOUT}
    else:
        kwargs["pool_size"] = config.pool_size
        kwargs["max_overflow"] = config.max_overflow

    return create_async_engine(url, **kwargs)


def get_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create an async session factory bound to the given engine.

    The returned factory produces AsyncSession instances configured with:
    - expire_on_commit=False to allow accessing attributes after commit
      without triggering lazy loads (important for async contexts)

    Args:
        engine: AsyncEngine to bind sessions to.

    Returns:
        Configured async_sessionmaker that produces AsyncSession instances.
    """
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
