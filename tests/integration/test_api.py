"""Integration tests for the HTTP API.

The app is driven in-process through httpx's ASGI transport. Lifespan
events do not run there, so the session factory from the test fixtures
is placed on the app state directly.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Any

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storyloom.config import StoryloomConfig
from storyloom.web.app import create_app


@pytest_asyncio.fixture
async def client(
    test_config: StoryloomConfig,
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[httpx.AsyncClient, None]:
    """HTTP client bound to an app using the test database."""
    app = create_app(test_config)
    app.state.session_factory = session_factory
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http


async def _project(client: httpx.AsyncClient, **fields: Any) -> dict[str, Any]:
    body = {"name": "Alpha Board", "short_code": "AB", **fields}
    response = await client.post("/projects/", json=body)
    assert response.status_code == 201, response.text
    return response.json()


async def _story(client: httpx.AsyncClient, title: str, **fields: Any) -> dict[str, Any]:
    response = await client.post("/projects/AB/stories", json={"title": title, **fields})
    assert response.status_code == 201, response.text
    return response.json()


async def _move(client: httpx.AsyncClient, short_id: str, status: str, **fields: Any) -> Any:
    return await client.patch(f"/stories/{short_id}/status", json={"status": status, **fields})


@pytest.mark.integration
class TestHealth:
    """Tests for the health endpoints."""

    @pytest.mark.asyncio
    async def test_health_and_ready(self, client: httpx.AsyncClient) -> None:
        health = await client.get("/health/")
        ready = await client.get("/health/ready")

        assert health.json()["status"] == "ok"
        assert ready.json() == {"status": "ok", "database": "connected"}

    @pytest.mark.asyncio
    async def test_correlation_id_header(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/health/", headers={"X-Correlation-ID": "abc-123"})

        assert response.headers["X-Correlation-ID"] == "abc-123"


@pytest.mark.integration
class TestProjectsAndStories:
    """Tests for project and story endpoints."""

    @pytest.mark.asyncio
    async def test_project_lifecycle(self, client: httpx.AsyncClient) -> None:
        created = await _project(client)
        assert created["short_code"] == "AB"

        patched = await client.patch("/projects/ab", json={"burst_mode": True})
        assert patched.status_code == 200
        assert patched.json()["burst_mode"] is True

        listing = await client.get("/projects/")
        assert [p["short_code"] for p in listing.json()] == ["AB"]

    @pytest.mark.asyncio
    async def test_duplicate_project_is_400(self, client: httpx.AsyncClient) -> None:
        await _project(client)

        response = await client.post("/projects/", json={"name": "Again", "short_code": "AB"})

        assert response.status_code == 400
        assert response.json()["error"] == "ConfigInvalidError"

    @pytest.mark.asyncio
    async def test_unknown_project_is_404(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/projects/ZZ")

        assert response.status_code == 404
        assert response.json()["error"] == "NotFoundError"

    @pytest.mark.asyncio
    async def test_create_story_and_transition(self, client: httpx.AsyncClient) -> None:
        await _project(client)

        story = await _story(client, "Login form", tags=["frontend", "magic"], priority="P1")
        assert story["short_id"] == "AB-1"
        assert story["unrecognized_tags"] == ["magic"]

        moved = await _move(client, "AB-1", "in-progress", worker="w1")
        assert moved.status_code == 200
        assert moved.json()["status"] == "in-progress"

        activity = await client.get("/stories/AB-1/activity")
        assert [(a["from_status"], a["to_status"]) for a in activity.json()] == [
            (None, "backlog"),
            ("backlog", "in-progress"),
        ]

        listed = await client.get("/projects/AB/stories", params={"status": "in-progress"})
        assert [s["short_id"] for s in listed.json()] == ["AB-1"]

    @pytest.mark.asyncio
    async def test_blocked_without_reason_is_400(self, client: httpx.AsyncClient) -> None:
        await _project(client)
        await _story(client, "Login form")

        response = await _move(client, "AB-1", "blocked")

        assert response.status_code == 400
        assert response.json()["error"] == "InvalidTransitionError"

    @pytest.mark.asyncio
    async def test_notes_and_heartbeat(self, client: httpx.AsyncClient) -> None:
        await _project(client)
        await _story(client, "Login form")

        note = await client.post("/stories/AB-1/notes", json={"text": "hello", "author": "w1"})
        assert note.status_code == 201
        notes = await client.get("/stories/AB-1/notes")
        assert [n["text"] for n in notes.json()] == ["hello"]

        beat = await client.post("/stories/AB-1/heartbeat", json={"worker": "w1"})
        assert beat.status_code == 200
        assert beat.json()["recorded"] is True

    @pytest.mark.asyncio
    async def test_unknown_story_is_404(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/stories/AB-9")

        assert response.status_code == 404


@pytest.mark.integration
class TestCoordination:
    """Tests for reservation, schedule, routing and watchdog endpoints."""

    @pytest.mark.asyncio
    async def test_request_and_release(self, client: httpx.AsyncClient) -> None:
        await _project(client)
        await _story(client, "Holder", reserved_paths=["src/app.py"])
        await _story(client, "Waiter")
        await _move(client, "AB-1", "in-progress")
        await _move(client, "AB-2", "in-progress")

        blocked = await client.post(
            "/stories/AB-2/reservations/request", json={"path": "src/app.py", "worker": "w2"}
        )
        assert blocked.status_code == 200
        assert blocked.json()["outcome"] == "blocked"
        assert blocked.json()["holder"] == "AB-1"

        released = await client.post("/stories/AB-1/reservations/release")
        assert released.status_code == 200
        items = released.json()["items"]
        assert [(i["short_id"], i["outcome"], i["status"]) for i in items] == [
            ("AB-2", "unblocked", "in-progress")
        ]

    @pytest.mark.asyncio
    async def test_set_check_and_clear(self, client: httpx.AsyncClient) -> None:
        await _project(client)
        await _story(client, "Holder", reserved_paths=["src/*.py"])
        await _story(client, "Other")
        await _move(client, "AB-1", "in-progress")

        report = await client.put(
            "/stories/AB-2/reservations", json={"paths": ["src/app.py", "pyproject.toml"]}
        )
        assert report.status_code == 200
        body = report.json()
        assert body["high_conflict"] == ["pyproject.toml"]
        assert [(c["holder"], c["paths"]) for c in body["conflicts"]] == [
            ("AB-1", ["src/app.py"])
        ]

        cleared = await client.delete("/stories/AB-2/reservations")
        assert cleared.json() == ["src/app.py", "pyproject.toml"]
        check = await client.get("/stories/AB-2/reservations")
        assert check.json()["reserved_paths"] == []

    @pytest.mark.asyncio
    async def test_blank_path_is_400(self, client: httpx.AsyncClient) -> None:
        await _project(client)
        await _story(client, "Any")

        response = await client.post("/stories/AB-1/reservations/request", json={"path": "   "})

        assert response.status_code == 400
        assert response.json()["error"] == "InvalidPatternError"

    @pytest.mark.asyncio
    async def test_schedule_preview_and_run(self, client: httpx.AsyncClient) -> None:
        await _project(client, burst_mode=True)
        await _story(client, "A", priority="P0", reserved_paths=["x.ts"])
        await _story(client, "B", priority="P0", reserved_paths=["x.ts"])
        await _story(client, "C", priority="P1", reserved_paths=["y.ts"], tags=["database"])

        preview = await client.get("/projects/AB/schedule")
        assert [s["short_id"] for s in preview.json()["assignable"]] == ["AB-1", "AB-3"]
        assert preview.json()["queued"][0]["story"]["short_id"] == "AB-2"

        run = await client.post("/projects/AB/schedule", json={"max_parallel": 1})
        assert run.status_code == 200
        assert [a["short_id"] for a in run.json()["assignments"]] == ["AB-1"]
        assert run.json()["unconsidered"] == ["AB-2", "AB-3"]

    @pytest.mark.asyncio
    async def test_schedule_invalid_cap_is_400(self, client: httpx.AsyncClient) -> None:
        await _project(client)

        response = await client.get("/projects/AB/schedule", params={"max_parallel": 0})

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_routing(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/routing", params={"tags": "security,api"})

        body = response.json()
        assert body["recommended"] == "security-reviewer"
        assert body["reason"] == "matched"

    @pytest.mark.asyncio
    async def test_routing_from_story_tags(self, client: httpx.AsyncClient) -> None:
        await _project(client)
        await _story(client, "Styling", tags=["ui-design"])

        response = await client.get("/routing", params={"story": "AB-1"})

        assert response.json()["recommended"] == "designer"

    @pytest.mark.asyncio
    async def test_watchdog(self, client: httpx.AsyncClient) -> None:
        await _project(client)
        await _story(client, "Busy")
        await _move(client, "AB-1", "in-review")

        report = await client.get("/projects/AB/watchdog", params={"threshold": 30})
        assert report.json()["active_count"] == 1
        assert report.json()["stale"] == []

        flagged = await client.post("/projects/AB/watchdog/flag")
        assert flagged.status_code == 200
        assert flagged.json()["flags"] == []

        invalid = await client.get("/projects/AB/watchdog", params={"threshold": 0})
        assert invalid.status_code == 400
