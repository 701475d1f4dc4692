"""
Deferral Service - composition root and submission API.

Wires the store, queue, scheduler, decision engine, feedback loop, mesh
layer and handlers together, and owns the dispatcher pool and the polling
loop.
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
import threading
import uuid
from collections.abc import Generator
from concurrent.futures import Future, ThreadPoolExecutor, wait
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from ecodefer.config import ServiceConfig, load_config
from ecodefer.decision.engine import Decision, DecisionEngine
from ecodefer.engine.executor import ExecutionResult, TaskExecutor
from ecodefer.engine.work_queue import WorkQueue
from ecodefer.errors import ErrorChannel, PeerNotEligible, PersistenceError, ValidationError
from ecodefer.feedback.learning import FeedbackLoop
from ecodefer.handlers.builtin import register_builtin_handlers
from ecodefer.handlers.registry import HandlerRegistry
from ecodefer.mesh.carbon import CarbonLedger, GridSignalProvider
from ecodefer.mesh.delegation import DelegationManager
from ecodefer.mesh.events import MeshEventLog
from ecodefer.mesh.models import Delegation, PeerStatus
from ecodefer.mesh.peers import PeerRegistry
from ecodefer.mesh.policy import DelegationPolicy
from ecodefer.mesh.voting import ImportanceVoting
from ecodefer.models import (
    Clock,
    DecisionRecord,
    SubmitResult,
    Task,
    TaskStatus,
    Urgency,
    Verdict,
    iso,
)
from ecodefer.scheduling.scheduler import EcoScheduler, LoadSampler
from ecodefer.storage.database import Database

logger = logging.getLogger(__name__)

TASK_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")


class DeferralService:
    """
    Local-first task deferral service.

    ``submit`` decides immediately. ``tick`` re-evaluates due deferred tasks
    and dispatches queued ones while the host has capacity; ``start`` runs
    ``tick`` every ``poll_interval_s`` on a daemon thread.
    """

    def __init__(
        self,
        config: ServiceConfig | None = None,
        data_dir: Path | None = None,
        sampler: LoadSampler | None = None,
        clock: Clock | None = None,
        grid: GridSignalProvider | None = None,
        handlers: HandlerRegistry | None = None,
    ) -> None:
        self.config = config or load_config(data_dir)
        self.clock = clock or datetime.now
        self.errors = ErrorChannel()

        self.db = Database(self.config.data_dir)
        self.db.ensure_tables()

        self.queue = WorkQueue(self.db, self.clock)
        self.scheduler = EcoScheduler(self.config, self.db, sampler, self.clock, self.errors)
        self.feedback = FeedbackLoop(self.db, self.config, self.clock)
        self.decisions = DecisionEngine(
            self.db, self.config, self.scheduler, self.feedback, self.errors, self.clock
        )

        self.events = MeshEventLog(self.db, self.clock)
        self.peers = PeerRegistry(self.db, self.config, self.events, self.clock)
        self.voting = ImportanceVoting(self.db, self.config, self.events, self.clock)
        self.carbon = CarbonLedger(self.db, self.config, grid, self.clock)
        self.policy = DelegationPolicy(self.db, self.config, self.clock)
        self.delegations = DelegationManager(
            self.db,
            self.config,
            self.queue,
            self.peers,
            self.carbon,
            self.events,
            self.clock,
            self.policy,
        )

        if handlers is None:
            handlers = register_builtin_handlers(HandlerRegistry())
        self.handlers = handlers
        self.executor = TaskExecutor(
            self.db, self.config, self.queue, self.handlers, self.carbon, self.errors
        )

        self._pool = ThreadPoolExecutor(
            max_workers=self.config.max_concurrency, thread_name_prefix="ecodefer-worker"
        )
        self._futures: set[Future[ExecutionResult]] = set()
        self._inflight: set[str] = set()
        self._lock = threading.Lock()
        self._tick_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def __enter__(self) -> DeferralService:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # -- in-flight guard ---------------------------------------------------

    @contextmanager
    def _verdict_guard(self, task_id: str) -> Generator[bool, None, None]:
        """Yield True if this caller holds the only in-flight verdict for the task."""
        with self._lock:
            if task_id in self._inflight:
                acquired = False
            else:
                self._inflight.add(task_id)
                acquired = True
        try:
            yield acquired
        finally:
            if acquired:
                with self._lock:
                    self._inflight.discard(task_id)

    # -- submission API ----------------------------------------------------

    def _validate(
        self, task_name: Any, payload: Any, urgency: Any
    ) -> tuple[str, dict[str, Any], str]:
        if not isinstance(task_name, str) or not TASK_NAME_PATTERN.match(task_name):
            raise ValidationError(
                f"Invalid task name {task_name!r}: use letters, digits, '.', '_' or '-'"
            )
        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            raise ValidationError(f"Payload must be an object, got {type(payload).__name__}")
        try:
            json.dumps(payload)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Payload is not JSON-serialisable: {e}") from e
        try:
            urgency = Urgency(urgency).value
        except ValueError:
            valid = ", ".join(u.value for u in Urgency)
            raise ValidationError(
                f"Unknown urgency {urgency!r} (expected one of: {valid})"
            ) from None

        size = payload.get("data_size_mb")
        if size is not None:
            if isinstance(size, bool) or not isinstance(size, (int, float)) or size < 0:
                raise ValidationError(f"data_size_mb must be a non-negative number, got {size!r}")
        return task_name, payload, urgency

    def submit(
        self,
        task_name: str,
        payload: dict[str, Any] | None = None,
        urgency: str = Urgency.NORMAL,
    ) -> SubmitResult:
        """Validate, decide and persist a task.

        Approved tasks are queued, deferred tasks wait for their window and
        denied tasks are stored as terminal records that never enter the queue.
        The task row and its decision record commit in one transaction. If
        that write fails, neither is kept: the verdict is still returned with
        ``persisted=False`` and the failure is published on the error channel.

        Raises:
            ValidationError: malformed submission; nothing is stored.
        """
        task_name, payload, urgency = self._validate(task_name, payload, urgency)
        task_id = str(uuid.uuid4())

        with self._verdict_guard(task_id):
            decision = self.decisions.assess(task_id, task_name, payload, urgency)
            now = iso(self.clock())
            task = Task(
                id=task_id,
                name=task_name,
                payload=payload,
                urgency=urgency,
                status=_status_for(decision.verdict),
                created_at=now,
                scheduled_for=iso(decision.scheduled_for) if decision.scheduled_for else None,
                estimated_power_w=decision.estimated_power_w,
            )
            if decision.verdict == Verdict.DENIED:
                task.error = decision.reason
                task.completed_at = now
            persisted = self._store(task, decision)

        return SubmitResult(
            task_id=task_id,
            verdict=decision.verdict.value,
            scheduled_for=task.scheduled_for,
            estimated_power_w=decision.estimated_power_w,
            reasoning=decision.reasoning,
            reason=decision.reason,
            persisted=persisted,
        )

    def _store(self, task: Task, decision: Decision) -> bool:
        try:
            with self.db.connect() as conn:
                self.queue.enqueue(task, conn=conn)
                self.decisions.record(decision, conn=conn)
        except (PersistenceError, sqlite3.Error) as e:
            decision.record_id = None
            self.errors.publish(
                PersistenceError(
                    f"Failed to store task: {e}", task_id=task.id, component="submission"
                )
            )
            logger.error(f"Task {task.name} not stored: {e}", extra={"task_id": task.id})
            return False
        return True

    def record_feedback(self, task_id: str, kind: str, note: str = "") -> None:
        self.feedback.record(task_id, kind, note)

    def get_task(self, task_id: str) -> Task:
        return self.queue.get(task_id)

    def get_history(self, limit: int = 20) -> list[Task]:
        return self.queue.history(limit)

    def get_decisions(self, task_id: str) -> list[DecisionRecord]:
        self.queue.get(task_id)
        return self.decisions.decisions_for(task_id)

    def get_status(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "queue_counts": self.queue.counts(),
            "whitelist": self.decisions.get_whitelist(),
            "persistence_failures": self.errors.count(PersistenceError),
            "is_off_peak": self.scheduler.is_off_peak(),
            "next_off_peak": iso(self.scheduler.next_off_peak_boundary()),
            "peers_online": len(self.peers.list(PeerStatus.ONLINE)),
            "handlers": self.handlers.names(),
        }

    def add_to_whitelist(self, task_name: str, persist: bool = True) -> None:
        self.decisions.add_to_whitelist(task_name, persist)

    def remove_from_whitelist(self, task_name: str, persist: bool = True) -> None:
        self.decisions.remove_from_whitelist(task_name, persist)

    def delegate(
        self, task_id: str, peer_id: str | None = None, from_user_id: str = ""
    ) -> Delegation:
        """Delegate to ``peer_id``, or to the best-ranked eligible peer."""
        if peer_id is None:
            task = self.queue.get(task_id)
            candidates = self.peers.find_candidates(task.name, task.urgency)
            if not candidates:
                raise PeerNotEligible(f"No eligible peer for {task.name}", task_id=task_id)
            peer_id = candidates[0].id
        return self.delegations.delegate(task_id, peer_id, from_user_id)

    # -- scheduling loop ---------------------------------------------------

    def recover(self) -> list[str]:
        return self.queue.recover()

    def tick(self) -> dict[str, int]:
        """One scheduling pass: mesh housekeeping, re-evaluation, dispatch."""
        with self._tick_lock:
            summary = {
                "peers_offline": len(self.peers.sweep()),
                "votes_resolved": len(self.voting.resolve_expired()),
                "released": 0,
                "deferred": 0,
                "denied": 0,
                "dispatched": 0,
            }
            for task in self.queue.due_deferred():
                outcome = self._reevaluate(task)
                if outcome is not None:
                    summary[outcome] += 1
            summary["dispatched"] = self._dispatch()
        logger.debug(f"Tick: {summary}")
        return summary

    def _reevaluate(self, task: Task) -> str | None:
        with self._verdict_guard(task.id) as acquired:
            if not acquired:
                return None
            decision = self.decisions.assess(task.id, task.name, task.payload, task.urgency)
            parent_id = self.decisions.last_decision_id(task.id)
            try:
                with self.db.connect() as conn:
                    outcome = self._apply(task, decision, conn)
                    if outcome is not None:
                        self.decisions.record(decision, parent_id, conn=conn)
            except (PersistenceError, sqlite3.Error) as e:
                self.errors.publish(
                    PersistenceError(
                        f"Failed to apply re-evaluation: {e}", task_id=task.id, component="queue"
                    )
                )
                return None
            return outcome

    def _apply(self, task: Task, decision: Decision, conn: sqlite3.Connection) -> str | None:
        """Apply a re-evaluated verdict; None if the task moved on meanwhile."""
        if decision.verdict == Verdict.APPROVED:
            if self.queue.release(task.id, decision.estimated_power_w, conn=conn):
                return "released"
        elif decision.verdict == Verdict.DEFERRED:
            if decision.scheduled_for and self.queue.defer(
                task.id, decision.scheduled_for, conn=conn
            ):
                return "deferred"
        elif self.queue.deny(task.id, decision.reason, conn=conn):
            return "denied"
        return None

    def _active(self) -> int:
        with self._lock:
            return sum(1 for future in self._futures if not future.done())

    def _dispatch(self) -> int:
        slots = self.config.max_concurrency - self._active()
        if slots <= 0:
            return 0
        capacity = self.scheduler.check_capacity()
        if not capacity.can_execute:
            logger.info(f"Dispatch held: {'; '.join(capacity.reasons)}")
            return 0

        claimed = self.queue.claim_next(slots)
        for task in claimed:
            constraints = self.decisions.enforce_constraints()
            future = self._pool.submit(self.executor.execute, task, constraints)
            with self._lock:
                self._futures.add(future)
            future.add_done_callback(self._finished)
        return len(claimed)

    def _finished(self, future: Future[ExecutionResult]) -> None:
        with self._lock:
            self._futures.discard(future)
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error(f"Worker crashed: {error}", exc_info=error)

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until every dispatched task has finished. False on timeout."""
        with self._lock:
            pending = set(self._futures)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Recover interrupted work and start polling on a daemon thread."""
        if self.running:
            return
        recovered = self.recover()
        if recovered:
            logger.info(f"Recovered {len(recovered)} task(s) on start")
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="ecodefer-scheduler", daemon=True)
        self._thread.start()
        logger.info(f"Scheduler started (poll every {self.config.poll_interval_s:g}s)")

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Scheduling pass failed")
            self._stop.wait(self.config.poll_interval_s)

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
            logger.info("Scheduler stopped")

    def close(self) -> None:
        """Stop polling, then terminate handler processes and release workers."""
        self.stop()
        self._pool.shutdown(wait=True)
        self.handlers.shutdown()


def _status_for(verdict: Verdict) -> TaskStatus:
    return {
        Verdict.APPROVED: TaskStatus.QUEUED,
        Verdict.DEFERRED: TaskStatus.DEFERRED,
        Verdict.DENIED: TaskStatus.DENIED,
    }[verdict]
