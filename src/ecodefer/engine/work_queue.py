"""Work Queue - durable task instances with atomic claims and crash recovery."""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Generator, Iterable
from contextlib import contextmanager
from datetime import datetime
from typing import Any

from ecodefer.errors import InvalidTransition, PersistenceError, TaskNotFound
from ecodefer.models import TRANSITIONS, Clock, Task, TaskStatus, iso
from ecodefer.storage.database import Database

logger = logging.getLogger(__name__)

_ACTIVE_DELEGATION = (
    "NOT EXISTS (SELECT 1 FROM delegations d WHERE d.task_id = tasks.id "
    "AND d.status IN ('pending', 'accepted', 'executing'))"
)

_URGENCY_ORDER = (
    "CASE urgency WHEN 'critical' THEN 0 WHEN 'high' THEN 1 WHEN 'normal' THEN 2 ELSE 3 END"
)


class WorkQueue:
    """
    Durable queue of task instances backed by the ``tasks`` table.

    State machine:
    - queued <-> deferred -> executing -> completed | failed
    - queued | deferred -> denied

    Every transition is a conditional UPDATE on the current status, so two
    workers racing for the same task cannot both win.
    """

    def __init__(self, db: Database, clock: Clock | None = None) -> None:
        self.db = db
        self.clock = clock or datetime.now

    @contextmanager
    def _conn(self, conn: sqlite3.Connection | None) -> Generator[sqlite3.Connection, None, None]:
        if conn is not None:
            yield conn
            return
        try:
            with self.db.connect() as own:
                yield own
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as e:
            raise PersistenceError(f"Queue write failed: {e}", component="queue") from e

    def enqueue(self, task: Task, conn: sqlite3.Connection | None = None) -> Task:
        """Persist a new task.

        Without ``conn`` this returns only after the row is committed; with
        one, the row commits with the caller's transaction.
        """
        if task.status not in (TaskStatus.QUEUED, TaskStatus.DEFERRED, TaskStatus.DENIED):
            raise InvalidTransition(
                f"Cannot enqueue task in status {task.status}", task_id=task.id
            )
        with self._conn(conn) as c:
            c.execute(
                """
                INSERT INTO tasks (
                    id, name, payload, urgency, status, created_at,
                    scheduled_for, completed_at, estimated_power_w, error
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    task.id,
                    task.name,
                    json.dumps(task.payload),
                    task.urgency,
                    task.status,
                    task.created_at,
                    task.scheduled_for,
                    task.completed_at,
                    task.estimated_power_w,
                    task.error,
                ),
            )
        logger.info(f"Task {task.status}: {task.name}", extra={"task_id": task.id})
        return task

    def get(self, task_id: str) -> Task:
        rows = self.db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,))
        if not rows:
            raise TaskNotFound(f"Task not found: {task_id}", task_id=task_id)
        return Task.from_row(rows[0])

    def transition(
        self,
        task_id: str,
        from_statuses: Iterable[str],
        to_status: str,
        conn: sqlite3.Connection | None = None,
        **fields: Any,
    ) -> bool:
        """
        Move a task to ``to_status`` if it is currently in one of ``from_statuses``.

        Returns:
            True if this call performed the transition, False if the task was
            not in an allowed source state (someone else got there first).
        """
        sources = [TaskStatus(s) for s in from_statuses]
        target = TaskStatus(to_status)
        for source in sources:
            if target not in TRANSITIONS[source] and not (
                source == target == TaskStatus.DEFERRED
            ):
                raise InvalidTransition(f"{source} -> {target} is not allowed", task_id=task_id)

        assignments = ["status = ?"]
        params: list[Any] = [target.value]
        for column, value in fields.items():
            assignments.append(f"{column} = ?")
            if isinstance(value, dict):
                value = json.dumps(value)
            params.append(value)

        placeholders = ", ".join("?" for _ in sources)
        sql = (
            f"UPDATE tasks SET {', '.join(assignments)} "
            f"WHERE id = ? AND status IN ({placeholders})"
        )
        params.append(task_id)
        params.extend(s.value for s in sources)

        with self._conn(conn) as c:
            cursor = c.execute(sql, tuple(params))
            changed = cursor.rowcount == 1

        if changed:
            logger.debug(f"Task {task_id} -> {target.value}")
        return changed

    def claim(self, task_id: str, conn: sqlite3.Connection | None = None) -> Task | None:
        """Atomically claim a queued task for execution."""
        claimed = self.transition(
            task_id,
            [TaskStatus.QUEUED],
            TaskStatus.EXECUTING,
            conn=conn,
            executed_at=iso(self.clock()),
        )
        if not claimed:
            return None
        if conn is not None:
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
            return Task.from_row(row)
        return self.get(task_id)

    def claim_next(self, limit: int) -> list[Task]:
        """Claim up to ``limit`` due queued tasks, highest urgency first."""
        if limit <= 0:
            return []
        now = iso(self.clock())
        rows = self.db.execute(
            f"""
            SELECT id FROM tasks
            WHERE status = 'queued'
              AND (scheduled_for IS NULL OR scheduled_for <= ?)
              AND {_ACTIVE_DELEGATION}
            ORDER BY {_URGENCY_ORDER}, created_at
            LIMIT ?
            """,
            (now, limit * 2),
        )
        claimed: list[Task] = []
        for row in rows:
            task = self.claim(row["id"])
            if task is not None:
                claimed.append(task)
            if len(claimed) >= limit:
                break
        return claimed

    def due_deferred(self) -> list[Task]:
        """Deferred tasks whose scheduled time has arrived."""
        rows = self.db.execute(
            f"""
            SELECT * FROM tasks
            WHERE status = 'deferred' AND scheduled_for <= ?
              AND {_ACTIVE_DELEGATION}
            ORDER BY scheduled_for, created_at
            """,
            (iso(self.clock()),),
        )
        return [Task.from_row(row) for row in rows]

    def defer(
        self, task_id: str, scheduled_for: datetime, conn: sqlite3.Connection | None = None
    ) -> bool:
        return self.transition(
            task_id,
            [TaskStatus.QUEUED, TaskStatus.DEFERRED],
            TaskStatus.DEFERRED,
            conn=conn,
            scheduled_for=iso(scheduled_for),
        )

    def release(
        self,
        task_id: str,
        estimated_power_w: float | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> bool:
        """Return a deferred task to the queue after it was re-approved."""
        fields: dict[str, Any] = {"scheduled_for": iso(self.clock())}
        if estimated_power_w is not None:
            fields["estimated_power_w"] = estimated_power_w
        return self.transition(
            task_id, [TaskStatus.DEFERRED], TaskStatus.QUEUED, conn=conn, **fields
        )

    def deny(self, task_id: str, reason: str, conn: sqlite3.Connection | None = None) -> bool:
        return self.transition(
            task_id,
            [TaskStatus.QUEUED, TaskStatus.DEFERRED],
            TaskStatus.DENIED,
            conn=conn,
            error=reason,
            completed_at=iso(self.clock()),
        )

    def complete(
        self,
        task_id: str,
        result: dict[str, Any] | None = None,
        actual_power_w: float | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> bool:
        return self.transition(
            task_id,
            [TaskStatus.EXECUTING],
            TaskStatus.COMPLETED,
            conn=conn,
            completed_at=iso(self.clock()),
            result=json.dumps(result or {}),
            actual_power_w=actual_power_w,
        )

    def fail(self, task_id: str, error: str, conn: sqlite3.Connection | None = None) -> bool:
        return self.transition(
            task_id,
            [TaskStatus.EXECUTING],
            TaskStatus.FAILED,
            conn=conn,
            completed_at=iso(self.clock()),
            error=error,
        )

    def recover(self) -> list[str]:
        """
        Requeue tasks left executing by a crash.

        Tasks whose execution belongs to a peer (delegation in 'executing')
        are left alone.
        """
        with self._conn(None) as conn:
            rows = conn.execute(
                """
                SELECT id FROM tasks
                WHERE status = 'executing' AND completed_at IS NULL
                  AND NOT EXISTS (
                      SELECT 1 FROM delegations d
                      WHERE d.task_id = tasks.id AND d.status = 'executing'
                  )
                """
            ).fetchall()
            recovered = [row["id"] for row in rows]
            for task_id in recovered:
                # Direct update: executing -> queued exists only for recovery
                conn.execute(
                    "UPDATE tasks SET status = 'queued', executed_at = NULL "
                    "WHERE id = ? AND status = 'executing'",
                    (task_id,),
                )

        for task_id in recovered:
            logger.warning(f"Recovered interrupted task {task_id} -> queued")
        return recovered

    def counts(self) -> dict[str, int]:
        rows = self.db.execute("SELECT status, COUNT(*) AS n FROM tasks GROUP BY status")
        by_status = {row["status"]: int(row["n"]) for row in rows}
        return {
            "pending": by_status.get(TaskStatus.QUEUED.value, 0),
            "deferred": by_status.get(TaskStatus.DEFERRED.value, 0),
            "active": by_status.get(TaskStatus.EXECUTING.value, 0),
            "completed": by_status.get(TaskStatus.COMPLETED.value, 0),
            "failed": by_status.get(TaskStatus.FAILED.value, 0),
            "denied": by_status.get(TaskStatus.DENIED.value, 0),
        }

    def history(self, limit: int = 20) -> list[Task]:
        rows = self.db.execute(
            "SELECT * FROM tasks ORDER BY created_at DESC, rowid DESC LIMIT ?", (limit,)
        )
        return [Task.from_row(row) for row in rows]
