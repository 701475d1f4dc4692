"""Request and response bodies for the HTTP API."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class SubmitRequest(BaseModel):
    """A task submission."""

    task_name: str = Field(..., min_length=1, max_length=128)
    payload: dict[str, Any] = Field(default_factory=dict)
    urgency: str = Field(default="normal", description="critical|high|normal|low|eco|solar_only")


class FeedbackRequest(BaseModel):
    kind: str = Field(..., description="necessary|avoidable|optimizable")
    note: str = ""


class EnergyBody(BaseModel):
    type: str = "grid"
    percent_clean: float = Field(default=0.0, ge=0.0, le=100.0)
    source: str = ""


class ResourcesBody(BaseModel):
    cpu: float = Field(default=1.0, ge=0.0)
    memory_mb: float = Field(default=1024.0, ge=0.0)
    disk_mb: float = Field(default=1024.0, ge=0.0)


class PeerAnnouncement(BaseModel):
    id: str = Field(..., pattern=r"^[a-zA-Z0-9_.-]+$")
    name: str
    location: str = ""
    energy: EnergyBody = Field(default_factory=EnergyBody)
    capacity: ResourcesBody = Field(default_factory=ResourcesBody)
    available: ResourcesBody | None = None
    allowed_tasks: list[str] = Field(default_factory=lambda: ["*"])
    max_task_duration_s: float = Field(default=3600.0, gt=0.0)
    timezone: str = "UTC"


class Heartbeat(BaseModel):
    available: ResourcesBody | None = None
    energy: EnergyBody | None = None


class ErrorResponse(BaseModel):
    """Error body returned for every service error."""

    error: str
    message: str
    task_id: str | None = None
    component: str | None = None
    timestamp: str | None = None
