"""Error hierarchy and the out-of-band error channel.

Every error carries the task id (when one applies), the component that raised
it and a timestamp, so the audit trail can be reconstructed even when the
audit write itself is what failed.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable
from datetime import datetime
from typing import Any

logger = logging.getLogger(__name__)


class EcoDeferError(Exception):
    """Base class for all service errors."""

    component = "core"

    def __init__(
        self,
        message: str,
        task_id: str | None = None,
        component: str | None = None,
        timestamp: datetime | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.task_id = task_id
        if component is not None:
            self.component = component
        self.timestamp = timestamp or datetime.now()

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "task_id": self.task_id,
            "component": self.component,
            "timestamp": self.timestamp.isoformat(timespec="seconds"),
        }


class ValidationError(EcoDeferError):
    """Malformed submission or configuration; rejected before anything is enqueued."""

    component = "submission"


class PolicyDenied(EcoDeferError):
    """Task is not on the execution whitelist."""

    component = "decision"


class TaskNotFound(EcoDeferError):
    component = "queue"


class InvalidTransition(EcoDeferError):
    """A task or delegation was asked to move along an edge its state machine lacks."""

    component = "queue"


class ExecutionFailure(EcoDeferError):
    """Handler raised or reported failure."""

    component = "executor"


class ExecutionTimeout(ExecutionFailure):
    """Handler exceeded its granted timeout."""


class PersistenceError(EcoDeferError):
    """Audit or state write failed."""

    component = "storage"


class MeshError(EcoDeferError):
    component = "mesh"


class MeshNotFound(MeshError):
    """Unknown peer, vote or delegation id."""


class MeshConflictError(MeshError):
    """A non-terminal delegation already exists for the task."""


class PeerNotEligible(MeshError):
    """Peer lacks permission, capacity or the energy profile the task needs."""


class LateBallotError(MeshError):
    """Ballot arrived after the vote expired or closed."""


class DelegationDeferred(MeshError):
    """The submitting user's cooldown or delegation hours rule out delegating now."""

    def __init__(
        self, message: str, retry_at: datetime | None = None, task_id: str | None = None
    ) -> None:
        super().__init__(message, task_id=task_id)
        self.retry_at = retry_at

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["retry_at"] = self.retry_at.isoformat(timespec="seconds") if self.retry_at else None
        return data


class DelegationBlocked(MeshError):
    """A strict ethical rule or the user's tier quota forbids the delegation."""

    def __init__(
        self, message: str, violations: list[str] | None = None, task_id: str | None = None
    ) -> None:
        super().__init__(message, task_id=task_id)
        self.violations = violations or []

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["violations"] = list(self.violations)
        return data


class ErrorChannel:
    """Collects errors that must not interrupt the caller.

    Decision verdicts are still returned when their audit write fails; the
    failure lands here instead, where listeners and the status endpoint can
    see it.
    """

    def __init__(self, maxlen: int = 200) -> None:
        self._events: deque[EcoDeferError] = deque(maxlen=maxlen)
        self._counts: dict[str, int] = {}
        self._listeners: list[Callable[[EcoDeferError], None]] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: Callable[[EcoDeferError], None]) -> None:
        self._listeners.append(listener)

    def publish(self, error: EcoDeferError) -> None:
        with self._lock:
            self._events.append(error)
            name = type(error).__name__
            self._counts[name] = self._counts.get(name, 0) + 1
        logger.error(
            f"{error.component} error for task {error.task_id}: {error.message}"
        )
        for listener in list(self._listeners):
            try:
                listener(error)
            except Exception as e:
                logger.warning(f"Error listener failed: {e}")

    def count(self, kind: type[EcoDeferError] | None = None) -> int:
        with self._lock:
            if kind is None:
                return sum(self._counts.values())
            return self._counts.get(kind.__name__, 0)

    def recent(self, limit: int = 20) -> list[EcoDeferError]:
        with self._lock:
            return list(self._events)[-limit:]
