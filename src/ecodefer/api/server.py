"""FastAPI server for programmatic EcoDefer access."""

from __future__ import annotations

import threading
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import click
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ecodefer import __version__
from ecodefer.api.schemas import (
    ErrorResponse,
    FeedbackRequest,
    Heartbeat,
    PeerAnnouncement,
    SubmitRequest,
)
from ecodefer.engine.service import DeferralService
from ecodefer.errors import (
    EcoDeferError,
    LateBallotError,
    MeshError,
    MeshNotFound,
    TaskNotFound,
    ValidationError,
)
from ecodefer.mesh.models import EnergyProfile, Resources
from ecodefer.storage.reader import AsyncReader

_service_lock = threading.Lock()

_STATUS_CODES: list[tuple[type[EcoDeferError], int]] = [
    (ValidationError, 422),
    (TaskNotFound, 404),
    (MeshNotFound, 404),
    (LateBallotError, 409),
    (MeshError, 409),
]


def _status_for(error: EcoDeferError) -> int:
    for kind, code in _STATUS_CODES:
        if isinstance(error, kind):
            return code
    return 500


def create_app(service: DeferralService | None = None, run_scheduler: bool = False) -> FastAPI:
    """
    Build the API app.

    Without an explicit service one is created on first use from the default
    config. With ``run_scheduler`` the polling loop runs for the app's lifetime.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        if run_scheduler:
            _service(app).start()
        yield
        service = app.state.service
        if service is not None:
            if app.state.owned:
                service.close()
            elif run_scheduler:
                service.stop()

    app = FastAPI(
        title="EcoDefer API",
        version=__version__,
        description="Local-first task deferral and delegation",
        lifespan=lifespan,
    )
    app.state.service = service
    app.state.owned = service is None
    app.state.started = time.monotonic()

    @app.exception_handler(EcoDeferError)
    async def service_error(request: Request, exc: EcoDeferError) -> JSONResponse:
        return JSONResponse(
            status_code=_status_for(exc),
            content=ErrorResponse(**exc.to_dict()).model_dump(),
        )

    @app.get("/api/health")
    async def health() -> dict[str, Any]:
        """Health check."""
        uptime = time.monotonic() - app.state.started
        return {"status": "ok", "version": __version__, "uptime_seconds": round(uptime, 1)}

    @app.post("/api/tasks")
    def submit(body: SubmitRequest) -> dict[str, Any]:
        """Submit a task; the verdict is returned immediately."""
        return _service(app).submit(body.task_name, body.payload, body.urgency).to_dict()

    @app.get("/api/tasks/{task_id}")
    def get_task(task_id: str) -> dict[str, Any]:
        return _service(app).get_task(task_id).to_dict()

    @app.get("/api/tasks/{task_id}/decisions")
    async def get_decisions(task_id: str) -> dict[str, Any]:
        """Decision trail for a task, oldest first."""
        service = _service(app)
        service.get_task(task_id)
        async with AsyncReader(service.db.db_path) as reader:
            records = await reader.decisions(task_id)
        return {"task_id": task_id, "decisions": records, "count": len(records)}

    @app.post("/api/tasks/{task_id}/feedback")
    def post_feedback(task_id: str, body: FeedbackRequest) -> dict[str, Any]:
        _service(app).record_feedback(task_id, body.kind, body.note)
        return {"task_id": task_id, "kind": body.kind, "recorded": True}

    @app.get("/api/status")
    def status() -> dict[str, Any]:
        """Queue counts, whitelist and scheduling state."""
        return _service(app).get_status()

    @app.get("/api/history")
    async def history(limit: int = 20, offset: int = 0) -> dict[str, Any]:
        """Recent tasks, newest first."""
        service = _service(app)
        async with AsyncReader(service.db.db_path) as reader:
            tasks = await reader.history(limit, offset)
        return {"tasks": tasks, "count": len(tasks), "limit": limit, "offset": offset}

    @app.get("/api/peers")
    def list_peers(status: str | None = None) -> dict[str, Any]:
        peers = [peer.to_dict() for peer in _service(app).peers.list(status)]
        return {"peers": peers, "count": len(peers)}

    @app.post("/api/peers")
    def announce_peer(body: PeerAnnouncement) -> dict[str, Any]:
        """Register a peer, or refresh an existing one, as online."""
        capacity = Resources(**body.capacity.model_dump())
        peer = _service(app).peers.announce(
            body.id,
            body.name,
            location=body.location,
            energy=EnergyProfile(**body.energy.model_dump()),
            capacity=capacity,
            available=Resources(**body.available.model_dump()) if body.available else None,
            allowed_tasks=body.allowed_tasks,
            max_task_duration_s=body.max_task_duration_s,
            timezone=body.timezone,
        )
        return peer.to_dict()

    @app.post("/api/peers/{peer_id}/heartbeat")
    def heartbeat(peer_id: str, body: Heartbeat | None = None) -> dict[str, Any]:
        body = body or Heartbeat()
        peer = _service(app).peers.heartbeat(
            peer_id,
            available=Resources(**body.available.model_dump()) if body.available else None,
            energy=EnergyProfile(**body.energy.model_dump()) if body.energy else None,
        )
        return peer.to_dict()

    @app.get("/api/mesh/events")
    async def mesh_events(limit: int = 50) -> dict[str, Any]:
        """Mesh event log, newest first."""
        async with AsyncReader(_service(app).db.db_path) as reader:
            events = await reader.mesh_events(limit)
        return {"events": events, "count": len(events)}

    @app.get("/api/carbon")
    def carbon() -> dict[str, Any]:
        """Carbon accounting totals, overall and per executing peer."""
        return _service(app).carbon.summary()

    return app


def _service(app: FastAPI) -> DeferralService:
    with _service_lock:
        if app.state.service is None:
            app.state.service = DeferralService()
        return app.state.service


app = create_app()


@click.command()
@click.option("--port", default=3849, help="Port to listen on")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--scheduler/--no-scheduler", default=True, help="Run the polling loop too")
def main(port: int, host: str, scheduler: bool) -> None:
    """Start the EcoDefer API server."""
    import uvicorn

    uvicorn.run(create_app(run_scheduler=scheduler), host=host, port=port)
