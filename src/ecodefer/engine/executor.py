"""Task Executor - runs claimed tasks through their handler and records the outcome."""

from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import dataclass
from typing import Any

from ecodefer.config import ServiceConfig
from ecodefer.engine.work_queue import WorkQueue
from ecodefer.errors import ErrorChannel, ExecutionFailure, ExecutionTimeout, PersistenceError
from ecodefer.handlers.registry import HandlerRegistry
from ecodefer.mesh.carbon import CarbonLedger
from ecodefer.models import SandboxConstraints, Task, TaskStatus
from ecodefer.storage.database import Database

logger = logging.getLogger(__name__)


@dataclass
class ExecutionResult:
    """Outcome of one local execution attempt."""

    task_id: str
    success: bool
    status: str
    result: dict[str, Any] | None = None
    error: str | None = None
    duration_seconds: float = 0.0
    energy_used_wh: float = 0.0
    timed_out: bool = False


class TaskExecutor:
    """
    Executes claimed tasks locally.

    Completion and the task's carbon record are written in one transaction.
    Handler failures and timeouts mark the task failed; nothing is retried.
    """

    def __init__(
        self,
        db: Database,
        config: ServiceConfig,
        queue: WorkQueue,
        handlers: HandlerRegistry,
        carbon: CarbonLedger,
        errors: ErrorChannel | None = None,
    ) -> None:
        self.db = db
        self.config = config
        self.queue = queue
        self.handlers = handlers
        self.carbon = carbon
        self.errors = errors or ErrorChannel()

    def execute(self, task: Task, constraints: SandboxConstraints) -> ExecutionResult:
        """Run an executing-status task to completion or failure."""
        if task.status != TaskStatus.EXECUTING:
            raise ExecutionFailure(
                f"Task {task.id} must be claimed before execution (status {task.status})",
                task_id=task.id,
            )

        logger.info(f"Executing {task.name}", extra={"task_id": task.id})
        start = time.monotonic()
        try:
            output = self.handlers.invoke(task.name, task.payload, constraints, task_id=task.id)
        except ExecutionTimeout as e:
            duration = time.monotonic() - start
            self._fail(task, e.message)
            return ExecutionResult(
                task_id=task.id,
                success=False,
                status=TaskStatus.FAILED,
                error=e.message,
                duration_seconds=duration,
                timed_out=True,
            )
        except ExecutionFailure as e:
            duration = time.monotonic() - start
            self._fail(task, e.message)
            return ExecutionResult(
                task_id=task.id,
                success=False,
                status=TaskStatus.FAILED,
                error=e.message,
                duration_seconds=duration,
            )

        duration = time.monotonic() - start
        power_w = float(
            output.get("power_w") or task.estimated_power_w or self.config.power_for(task.name)
        )
        energy_wh = float(output.get("energy_used_wh") or power_w * duration / 3600)

        try:
            with self.db.connect() as conn:
                completed = self.queue.complete(
                    task.id, result=output, actual_power_w=power_w, conn=conn
                )
                if completed:
                    self.carbon.record(task.id, self.config.local_peer_id, energy_wh, conn=conn)
        except sqlite3.Error as e:
            error = PersistenceError(
                f"Failed to record completion: {e}", task_id=task.id, component="executor"
            )
            self.errors.publish(error)
            return ExecutionResult(
                task_id=task.id,
                success=False,
                status=TaskStatus.EXECUTING,
                result=output,
                error=error.message,
                duration_seconds=duration,
            )

        if not completed:
            logger.warning(f"Task {task.id} left executing before its result arrived; discarded")
            return ExecutionResult(
                task_id=task.id,
                success=False,
                status=self.queue.get(task.id).status,
                result=output,
                duration_seconds=duration,
            )

        logger.info(f"Completed {task.name} in {duration:.2f}s ({energy_wh:.4f} Wh)")
        return ExecutionResult(
            task_id=task.id,
            success=True,
            status=TaskStatus.COMPLETED,
            result=output,
            duration_seconds=duration,
            energy_used_wh=energy_wh,
        )

    def _fail(self, task: Task, error: str) -> None:
        logger.error(f"Task {task.name} failed: {error}", extra={"task_id": task.id})
        try:
            self.queue.fail(task.id, error)
        except PersistenceError as e:
            e.task_id = task.id
            self.errors.publish(e)
