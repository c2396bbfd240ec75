"""Unit tests for FastAPI application setup.

Tests cover:
- Application factory and state
- CORS and request logging middleware registration
- Mapping of Storyloom errors to HTTP statuses
- Health endpoints with a mocked database
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from httpx import ASGITransport, AsyncClient
from sqlalchemy.exc import OperationalError

from storyloom import __version__
from storyloom.config import StoryloomConfig, WebConfig
from storyloom.database.models import StoryStatus
from storyloom.exceptions import (
    AllocationExhaustedError,
    ConfigInvalidError,
    ContentionError,
    InvalidPatternError,
    MalformedStateError,
    NotFoundError,
    StoryloomError,
)
from storyloom.orchestrator.state_machine import InvalidTransitionError
from storyloom.web.app import create_app, status_for
from storyloom.web.middleware import RequestLoggingMiddleware


class TestCreateApp:
    """Test application factory function."""

    def test_returns_fastapi_instance(self) -> None:
        app = create_app()
        assert isinstance(app, FastAPI)
        assert app.title == "Storyloom"
        assert app.version == __version__

    def test_app_stores_config_in_state(self) -> None:
        config = StoryloomConfig()
        app = create_app(config)
        assert app.state.config is config

    def test_cors_uses_config_origins(self) -> None:
        origins = ["https://board.example.com"]
        app = create_app(StoryloomConfig(web=WebConfig(cors_origins=origins)))

        cors = [m for m in app.user_middleware if m.cls == CORSMiddleware]
        assert len(cors) == 1
        assert cors[0].kwargs["allow_origins"] == origins

    def test_logging_middleware_is_registered(self) -> None:
        app = create_app()
        assert any(m.cls == RequestLoggingMiddleware for m in app.user_middleware)


class TestErrorMapping:
    """Test status codes for the exception hierarchy."""

    @pytest.mark.parametrize(
        ("exc", "status_code"),
        [
            (NotFoundError("story", "AB-1"), 404),
            (ContentionError("raced"), 409),
            (MalformedStateError("AB-1", "bad reason"), 409),
            (AllocationExhaustedError("AB", 3), 503),
            (InvalidTransitionError(StoryStatus.backlog, StoryStatus.backlog), 400),
            (ConfigInvalidError("cap"), 400),
            (InvalidPatternError("blank"), 400),
            (StoryloomError("other"), 400),
        ],
    )
    def test_status_for(self, exc: StoryloomError, status_code: int) -> None:
        assert status_for(exc) == status_code

    @pytest.mark.asyncio
    async def test_handler_renders_json(self) -> None:
        app = create_app()

        @app.get("/boom")
        async def boom() -> None:
            raise NotFoundError("project", "ZZ")

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.get("/boom")

        assert response.status_code == 404
        assert response.json() == {"detail": "Project not found: ZZ", "error": "NotFoundError"}


class TestHealthEndpoints:
    """Test health endpoints without a real database."""

    @pytest.fixture
    def session(self) -> AsyncMock:
        return AsyncMock()

    @pytest.fixture
    def app(self, session: AsyncMock) -> FastAPI:
        app = create_app()
        factory = MagicMock()
        factory.return_value.__aenter__ = AsyncMock(return_value=session)
        factory.return_value.__aexit__ = AsyncMock(return_value=None)
        app.state.session_factory = factory
        return app

    @pytest.mark.asyncio
    async def test_health_returns_version(self, app: FastAPI) -> None:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.get("/health/")

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "version": __version__}

    @pytest.mark.asyncio
    async def test_ready_when_database_answers(self, app: FastAPI) -> None:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.get("/health/ready")

        assert response.json() == {"status": "ok", "database": "connected"}

    @pytest.mark.asyncio
    async def test_unhealthy_when_database_fails(self, app: FastAPI, session: AsyncMock) -> None:
        session.execute.side_effect = OperationalError("SELECT 1", {}, Exception("down"))

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.get("/health/ready")

        assert response.json() == {"status": "unhealthy", "database": "disconnected"}

    @pytest.mark.asyncio
    async def test_generates_correlation_id(self, app: FastAPI) -> None:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.get("/health/")

        assert response.headers["X-Correlation-ID"]
        assert len(response.headers["X-Correlation-ID"]) == len(str(uuid4()))
