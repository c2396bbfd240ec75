"""FastAPI application factory for Storyloom.

This module provides the main application factory function that creates
and configures a FastAPI application with:
- CORS middleware for cross-origin requests
- Request logging middleware with correlation IDs
- Database connection lifecycle management
- Error mapping from the Storyloom exception hierarchy to HTTP statuses

Example usage:
    >>> from storyloom.config import StoryloomConfig
    >>> from storyloom.web.app import create_app
    >>>
    >>> app = create_app(StoryloomConfig())
    >>>
    >>> import uvicorn
    >>> uvicorn.run(app, host="0.0.0.0", port=8000)
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from storyloom import __version__
from storyloom.config import StoryloomConfig
from storyloom.database.connection import get_engine, get_session_factory
from storyloom.exceptions import (
    AllocationExhaustedError,
    ConfigInvalidError,
    ContentionError,
    InvalidPatternError,
    MalformedStateError,
    NotFoundError,
    StoryloomError,
)
from storyloom.logging import get_logger
from storyloom.orchestrator.state_machine import InvalidTransitionError
from storyloom.web.middleware import RequestLoggingMiddleware
from storyloom.web.routes.coordination import create_coordination_router
from storyloom.web.routes.health import create_health_router
from storyloom.web.routes.projects import create_projects_router
from storyloom.web.routes.stories import create_stories_router

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = get_logger(__name__)

# Most specific first; the first matching class decides the status.
ERROR_STATUS: list[tuple[type[StoryloomError], int]] = [
    (NotFoundError, 404),
    (ContentionError, 409),
    (MalformedStateError, 409),
    (AllocationExhaustedError, 503),
    (InvalidTransitionError, 400),
    (ConfigInvalidError, 400),
    (InvalidPatternError, 400),
]


def status_for(exc: StoryloomError) -> int:
    """Map a Storyloom error to an HTTP status code."""
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 400


async def storyloom_error_handler(request: Request, exc: StoryloomError) -> JSONResponse:
    """Render a Storyloom error as a JSON body with a mapped status."""
    status_code = status_for(exc)
    logger.warning(
        "request_failed",
        path=request.url.path,
        error_type=type(exc).__name__,
        error=str(exc),
        status_code=status_code,
    )
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error": type(exc).__name__},
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Create the database engine on startup and dispose of it on shutdown.

    Args:
        app: FastAPI application instance

    Yields:
        None after startup, cleans up on context exit
    """
    config: StoryloomConfig = app.state.config

    logger.info("app_startup_begin", host=config.web.host, port=config.web.port)

    engine = get_engine(config.database)
    app.state.engine = engine
    app.state.session_factory = get_session_factory(engine)

    yield

    logger.info("app_shutdown_begin")
    await engine.dispose()
    logger.info("database_pool_disposed")


def create_app(config: StoryloomConfig | None = None) -> FastAPI:
    """Create and configure a FastAPI application.

    Args:
        config: Optional StoryloomConfig. If None, creates default config.

    Returns:
        Configured FastAPI application instance.
    """
    if config is None:
        config = StoryloomConfig()

    app = FastAPI(
        title="Storyloom",
        version=__version__,
        description="Story admission and file-reservation coordination",
        lifespan=lifespan,
    )

    app.state.config = config

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.web.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    app.add_exception_handler(StoryloomError, storyloom_error_handler)

    app.include_router(create_health_router())
    app.include_router(create_projects_router())
    app.include_router(create_stories_router())
    app.include_router(create_coordination_router())

    logger.info("app_created", cors_origins=config.web.cors_origins, version=__version__)

    return app
