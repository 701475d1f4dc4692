"""Core task types shared across the queue, scheduler and decision engine."""

from __future__ import annotations

import json
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

Clock = Callable[[], datetime]


def iso(dt: datetime) -> str:
    """Timestamps are stored as second-precision local ISO strings."""
    return dt.isoformat(timespec="seconds")


def parse_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class TaskStatus(StrEnum):
    QUEUED = "queued"
    DEFERRED = "deferred"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    DENIED = "denied"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.DENIED})

# Allowed task state machine edges
TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.QUEUED: frozenset({TaskStatus.DEFERRED, TaskStatus.EXECUTING, TaskStatus.DENIED}),
    TaskStatus.DEFERRED: frozenset({TaskStatus.QUEUED, TaskStatus.EXECUTING, TaskStatus.DENIED}),
    TaskStatus.EXECUTING: frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.DENIED: frozenset(),
}


class Urgency(StrEnum):
    """Submitter-declared priority."""

    CRITICAL = "critical"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"
    ECO = "eco"
    SOLAR_ONLY = "solar_only"

    @property
    def rank(self) -> int:
        return {"critical": 3, "high": 2, "normal": 1}.get(self.value, 0)


class Verdict(StrEnum):
    APPROVED = "approved"
    DENIED = "denied"
    DEFERRED = "deferred"


class FeedbackKind(StrEnum):
    NECESSARY = "necessary"
    AVOIDABLE = "avoidable"
    OPTIMIZABLE = "optimizable"


@dataclass
class Task:
    """A submitted background job and its execution record."""

    id: str
    name: str
    payload: dict[str, Any]
    urgency: str
    status: str
    created_at: str
    scheduled_for: str | None = None
    executed_at: str | None = None
    completed_at: str | None = None
    estimated_power_w: float | None = None
    actual_power_w: float | None = None
    result: dict[str, Any] | None = None
    error: str | None = None

    @classmethod
    def from_row(cls, row: Any) -> Task:
        return cls(
            id=row["id"],
            name=row["name"],
            payload=json.loads(row["payload"]) if row["payload"] else {},
            urgency=row["urgency"],
            status=row["status"],
            created_at=row["created_at"],
            scheduled_for=row["scheduled_for"],
            executed_at=row["executed_at"],
            completed_at=row["completed_at"],
            estimated_power_w=row["estimated_power_w"],
            actual_power_w=row["actual_power_w"],
            result=json.loads(row["result"]) if row["result"] else None,
            error=row["error"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "payload": self.payload,
            "urgency": self.urgency,
            "status": self.status,
            "created_at": self.created_at,
            "scheduled_for": self.scheduled_for,
            "executed_at": self.executed_at,
            "completed_at": self.completed_at,
            "estimated_power_w": self.estimated_power_w,
            "actual_power_w": self.actual_power_w,
            "result": self.result,
            "error": self.error,
        }


@dataclass(frozen=True)
class SandboxConstraints:
    """Limits granted to an approved task's handler."""

    timeout_s: float
    memory_limit_mb: int
    allowed_operations: tuple[str, ...] = ("read", "write")
    blocked_operations: tuple[str, ...] = ("delete", "config_modify", "network")
    # Set when the handler overruns its timeout, just before it is terminated
    cancel_event: threading.Event = field(
        default_factory=threading.Event, compare=False, repr=False
    )

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def to_dict(self) -> dict[str, Any]:
        return {
            "timeout_s": self.timeout_s,
            "memory_limit_mb": self.memory_limit_mb,
            "allowed_operations": list(self.allowed_operations),
            "blocked_operations": list(self.blocked_operations),
        }


@dataclass
class DecisionRecord:
    """Append-only audit entry for one verdict."""

    id: str
    task_id: str
    verdict: str
    reasoning: list[str]
    system_state: dict[str, Any]
    timestamp: str
    parent_id: str | None = None

    @classmethod
    def from_row(cls, row: Any) -> DecisionRecord:
        return cls(
            id=row["id"],
            task_id=row["task_id"],
            verdict=row["verdict"],
            reasoning=json.loads(row["reasoning"]),
            system_state=json.loads(row["system_state"]),
            timestamp=row["timestamp"],
            parent_id=row["parent_id"],
        )


@dataclass
class SubmitResult:
    """Outcome of a submission."""

    task_id: str
    verdict: str
    scheduled_for: str | None = None
    estimated_power_w: float | None = None
    reasoning: list[str] = field(default_factory=list)
    reason: str = ""
    # False when the task row and its decision could not be written
    persisted: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "verdict": self.verdict,
            "persisted": self.persisted,
            "scheduled_for": self.scheduled_for,
            "estimated_power_w": self.estimated_power_w,
            "reasoning": self.reasoning,
            "reason": self.reason,
        }
