"""Tests for the FastAPI server."""

from __future__ import annotations

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from ecodefer.api.server import create_app
from ecodefer.engine.service import DeferralService


@pytest.fixture
def app(service: DeferralService) -> FastAPI:
    return create_app(service)


def _client(app: FastAPI) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.anyio
async def test_health(app: FastAPI) -> None:
    async with _client(app) as client:
        response = await client.get("/api/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["version"] == "0.1.0"
    assert "uptime_seconds" in data


# --- Tasks ---


@pytest.mark.anyio
async def test_submit_approved(app: FastAPI) -> None:
    async with _client(app) as client:
        response = await client.post(
            "/api/tasks",
            json={"task_name": "database-cleanup", "payload": {"data_size_mb": 100}},
        )
    assert response.status_code == 200
    data = response.json()
    assert data["verdict"] == "approved"
    assert data["estimated_power_w"] == 55
    assert data["reasoning"][-1] == "APPROVED FOR EXECUTION"


@pytest.mark.anyio
async def test_submit_deferred(app: FastAPI) -> None:
    async with _client(app) as client:
        response = await client.post(
            "/api/tasks", json={"task_name": "log-rotation", "urgency": "low"}
        )
    data = response.json()
    assert data["verdict"] == "deferred"
    assert data["scheduled_for"] == "2026-03-05T02:00:00"


@pytest.mark.anyio
async def test_submit_denied_is_not_an_error(app: FastAPI) -> None:
    async with _client(app) as client:
        response = await client.post("/api/tasks", json={"task_name": "nope-task"})
    assert response.status_code == 200
    assert response.json()["verdict"] == "denied"


@pytest.mark.anyio
async def test_submit_validation_errors(app: FastAPI) -> None:
    async with _client(app) as client:
        bad_urgency = await client.post(
            "/api/tasks", json={"task_name": "database-cleanup", "urgency": "someday"}
        )
        missing_name = await client.post("/api/tasks", json={"payload": {}})
        bad_size = await client.post(
            "/api/tasks",
            json={"task_name": "database-cleanup", "payload": {"data_size_mb": -5}},
        )

    assert bad_urgency.status_code == 422
    assert bad_urgency.json()["error"] == "ValidationError"
    assert bad_urgency.json()["component"] == "submission"
    assert missing_name.status_code == 422
    assert bad_size.status_code == 422


@pytest.mark.anyio
async def test_get_task_and_decisions(app: FastAPI) -> None:
    async with _client(app) as client:
        submitted = await client.post("/api/tasks", json={"task_name": "cache-warming"})
        task_id = submitted.json()["task_id"]
        task = await client.get(f"/api/tasks/{task_id}")
        trail = await client.get(f"/api/tasks/{task_id}/decisions")

    assert task.status_code == 200
    assert task.json()["status"] == "queued"
    assert trail.status_code == 200
    data = trail.json()
    assert data["count"] == 1
    assert data["decisions"][0]["verdict"] == "approved"
    assert isinstance(data["decisions"][0]["reasoning"], list)
    assert data["decisions"][0]["system_state"]["whitelisted"] is True


@pytest.mark.anyio
async def test_unknown_task(app: FastAPI) -> None:
    async with _client(app) as client:
        task = await client.get("/api/tasks/missing")
        trail = await client.get("/api/tasks/missing/decisions")
    assert task.status_code == 404
    assert task.json()["error"] == "TaskNotFound"
    assert task.json()["task_id"] == "missing"
    assert trail.status_code == 404


@pytest.mark.anyio
async def test_feedback(app: FastAPI) -> None:
    async with _client(app) as client:
        submitted = await client.post("/api/tasks", json={"task_name": "cache-warming"})
        task_id = submitted.json()["task_id"]
        ok = await client.post(f"/api/tasks/{task_id}/feedback", json={"kind": "avoidable"})
        bad = await client.post(f"/api/tasks/{task_id}/feedback", json={"kind": "pointless"})

    assert ok.status_code == 200
    assert ok.json()["recorded"] is True
    assert bad.status_code == 422


@pytest.mark.anyio
async def test_status_and_history(app: FastAPI) -> None:
    async with _client(app) as client:
        await client.post("/api/tasks", json={"task_name": "cache-warming"})
        await client.post("/api/tasks", json={"task_name": "nope-task"})
        status = await client.get("/api/status")
        history = await client.get("/api/history", params={"limit": 1})

    counts = status.json()["queue_counts"]
    assert counts["pending"] == 1
    assert counts["denied"] == 1
    data = history.json()
    assert data["count"] == 1
    assert data["limit"] == 1
    assert data["tasks"][0]["name"] == "nope-task"
    assert data["tasks"][0]["payload"] == {}


# --- Mesh ---


@pytest.mark.anyio
async def test_peer_lifecycle(app: FastAPI) -> None:
    announcement = {
        "id": "solar-01",
        "name": "Rooftop",
        "energy": {"type": "solar", "percent_clean": 95},
        "capacity": {"cpu": 4, "memory_mb": 8192, "disk_mb": 10000},
    }
    async with _client(app) as client:
        announced = await client.post("/api/peers", json=announcement)
        listed = await client.get("/api/peers", params={"status": "online"})
        beat = await client.post(
            "/api/peers/solar-01/heartbeat", json={"available": {"memory_mb": 4096}}
        )
        events = await client.get("/api/mesh/events")

    assert announced.status_code == 200
    assert announced.json()["status"] == "online"
    assert announced.json()["available"]["memory_mb"] == 8192
    assert listed.json()["count"] == 1
    assert beat.status_code == 200
    assert beat.json()["available"]["memory_mb"] == 4096
    assert events.json()["events"][0]["event_type"] == "peer_online"
    assert events.json()["events"][0]["event_data"]["name"] == "Rooftop"


@pytest.mark.anyio
async def test_peer_errors(app: FastAPI) -> None:
    async with _client(app) as client:
        unknown = await client.post("/api/peers/ghost/heartbeat")
        bad_id = await client.post("/api/peers", json={"id": "no spaces", "name": "x"})
        bad_status = await client.get("/api/peers", params={"status": "asleep"})

    assert unknown.status_code == 404
    assert unknown.json()["error"] == "MeshNotFound"
    assert bad_id.status_code == 422
    assert bad_status.status_code == 422


@pytest.mark.anyio
async def test_carbon_summary(app: FastAPI) -> None:
    async with _client(app) as client:
        response = await client.get("/api/carbon")
    assert response.status_code == 200
    data = response.json()
    assert data["tasks"] == 0
    assert data["carbon_avoided_kg"] == 0
    assert data["by_peer"] == {}
