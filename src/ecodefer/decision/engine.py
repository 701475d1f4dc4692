"""Decision Engine - whitelist, advisory feedback and the audited rule chain."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ecodefer.config import ServiceConfig
from ecodefer.decision.rules import (
    DEFAULT_RULES,
    DecisionContext,
    Rule,
    estimate_power_cost,
    evaluate,
)
from ecodefer.errors import ErrorChannel, PersistenceError
from ecodefer.feedback.learning import FeedbackLoop
from ecodefer.models import (
    Clock,
    DecisionRecord,
    SandboxConstraints,
    Urgency,
    Verdict,
    iso,
)
from ecodefer.scheduling.scheduler import CapacityCheck, EcoScheduler, LoadSample
from ecodefer.storage.database import Database

logger = logging.getLogger(__name__)

_INSERT_DECISION = """
INSERT INTO decisions (
    id, task_id, parent_id, verdict, reasoning, system_state, timestamp
) VALUES (?, ?, ?, ?, ?, ?, ?)
"""


@dataclass
class Decision:
    """Verdict for one task plus everything needed to act on it."""

    task_id: str
    verdict: Verdict
    reasoning: list[str]
    reason: str = ""
    scheduled_for: datetime | None = None
    defer_reason: str | None = None
    estimated_power_w: int | None = None
    constraints: SandboxConstraints | None = None
    record_id: str | None = None
    system_state: dict[str, Any] = field(default_factory=dict)

    @property
    def allowed(self) -> bool:
        return self.verdict != Verdict.DENIED

    @property
    def deferred(self) -> bool:
        return self.verdict == Verdict.DEFERRED


class DecisionEngine:
    """
    Decides whether a task runs now, later, or never.

    The whitelist has two tiers: the boot-time set from config, which is never
    modified, and the ``whitelist_overrides`` table, which records explicit
    add/remove actions. Overrides made with ``persist=False`` last for the
    lifetime of this engine only.
    """

    def __init__(
        self,
        db: Database,
        config: ServiceConfig,
        scheduler: EcoScheduler,
        feedback: FeedbackLoop,
        errors: ErrorChannel | None = None,
        clock: Clock | None = None,
        rules: Sequence[Rule] = DEFAULT_RULES,
    ) -> None:
        self.db = db
        self.config = config
        self.scheduler = scheduler
        self.feedback = feedback
        self.errors = errors or ErrorChannel()
        self.clock = clock or datetime.now
        self.rules = tuple(rules)
        self._boot_whitelist = frozenset(config.allowed_tasks)
        self._overrides: dict[str, str] = {}
        self._lock = threading.Lock()
        self._load_overrides()

    # -- whitelist ---------------------------------------------------------

    def _load_overrides(self) -> None:
        rows = self.db.execute("SELECT task_name, action FROM whitelist_overrides")
        with self._lock:
            self._overrides = {row["task_name"]: row["action"] for row in rows}
        if rows:
            logger.info(f"Loaded {len(rows)} whitelist override(s)")

    def _set_override(self, task_name: str, action: str, persist: bool) -> None:
        if persist:
            self.db.execute_insert(
                """
                INSERT INTO whitelist_overrides (task_name, action, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(task_name) DO UPDATE SET
                    action = excluded.action,
                    updated_at = excluded.updated_at
                """,
                (task_name, action, iso(self.clock())),
            )
        with self._lock:
            self._overrides[task_name] = action

    def add_to_whitelist(self, task_name: str, persist: bool = True) -> None:
        """Allow a task name (requires explicit user action)."""
        self._set_override(task_name, "add", persist)
        logger.info(f"Task added to whitelist: {task_name}")

    def remove_from_whitelist(self, task_name: str, persist: bool = True) -> None:
        self._set_override(task_name, "remove", persist)
        logger.info(f"Task removed from whitelist: {task_name}")

    def is_whitelisted(self, task_name: str) -> bool:
        with self._lock:
            action = self._overrides.get(task_name)
        if action == "remove":
            return False
        return action == "add" or task_name in self._boot_whitelist

    def get_whitelist(self) -> list[str]:
        with self._lock:
            overrides = dict(self._overrides)
        names = set(self._boot_whitelist)
        names |= {name for name, action in overrides.items() if action == "add"}
        names -= {name for name, action in overrides.items() if action == "remove"}
        return sorted(names)

    # -- policy helpers ----------------------------------------------------

    def estimate_power_cost(self, task_name: str, payload: dict[str, Any]) -> int:
        return estimate_power_cost(
            self.config.power_for(task_name), float(payload.get("data_size_mb") or 0.0)
        )

    def enforce_constraints(self) -> SandboxConstraints:
        """Sandbox limits granted to every approved task."""
        return SandboxConstraints(
            timeout_s=self.config.max_task_duration_s,
            memory_limit_mb=self.config.max_memory_mb,
        )

    def build_context(
        self, task_id: str, task_name: str, payload: dict[str, Any], urgency: str
    ) -> DecisionContext:
        whitelisted = self.is_whitelisted(task_name)
        pattern = None
        capacity = None
        if whitelisted:
            if self.config.learning_enabled:
                pattern = self.feedback.pattern_for(task_name)
            capacity = self.scheduler.check_capacity()
        else:
            # Denied before any sampling
            capacity = CapacityCheck(
                can_execute=False,
                sample=LoadSample(cpu_percent=0.0, memory_percent=0.0),
                is_off_peak=self.scheduler.is_off_peak(),
                reasons=["not sampled"],
            )

        return DecisionContext(
            task_id=task_id,
            task_name=task_name,
            urgency=Urgency(urgency).value,
            data_size_mb=float(payload.get("data_size_mb") or 0.0),
            whitelisted=whitelisted,
            learning_enabled=self.config.learning_enabled,
            pattern=pattern,
            capacity=capacity,
            is_off_peak=capacity.is_off_peak,
            normal_window=self.scheduler.find_optimal_window(Urgency.NORMAL),
            low_window=self.scheduler.find_optimal_window(Urgency.LOW),
            base_power_w=self.config.power_for(task_name),
            constraints=self.enforce_constraints(),
        )

    # -- decisions ---------------------------------------------------------

    def assess(
        self, task_id: str, task_name: str, payload: dict[str, Any], urgency: str = Urgency.NORMAL
    ) -> Decision:
        """Run the rule chain without writing anything."""
        ctx = self.build_context(task_id, task_name, payload, urgency)
        outcome, reasoning = evaluate(ctx, self.rules)

        decision = Decision(
            task_id=task_id,
            verdict=outcome.verdict or Verdict.DENIED,
            reasoning=reasoning,
            reason=outcome.reason,
            scheduled_for=outcome.scheduled_for,
            defer_reason=outcome.defer_reason,
            system_state=ctx.snapshot(),
        )
        if decision.verdict != Verdict.DENIED:
            decision.estimated_power_w = estimate_power_cost(ctx.base_power_w, ctx.data_size_mb)
        if decision.verdict == Verdict.APPROVED:
            decision.constraints = ctx.constraints

        log = logger.warning if decision.verdict == Verdict.DENIED else logger.info
        log(f"Decision for {task_name}: {decision.verdict.value} - {decision.reason}")
        return decision

    def decide(
        self,
        task_id: str,
        task_name: str,
        payload: dict[str, Any],
        urgency: str = Urgency.NORMAL,
        parent_id: str | None = None,
    ) -> Decision:
        """Assess a task and record the verdict on its own transaction."""
        decision = self.assess(task_id, task_name, payload, urgency)
        self.record(decision, parent_id)
        return decision

    def record(
        self,
        decision: Decision,
        parent_id: str | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> str | None:
        """Write the audit record for ``decision`` and set its ``record_id``.

        With ``conn`` the record joins the caller's transaction inside a
        savepoint: a failed audit write rolls back only itself, and a later
        failure in the caller's transaction rolls back the record too.
        A failed audit write never changes the verdict; it is published on
        the error channel and None is returned.
        """
        if not self.config.audit_enabled:
            return None
        record_id = str(uuid.uuid4())
        state = {
            **decision.system_state,
            "reason": decision.reason,
            "scheduled_for": iso(decision.scheduled_for) if decision.scheduled_for else None,
            "estimated_power_w": decision.estimated_power_w,
        }
        params = (
            record_id,
            decision.task_id,
            parent_id,
            decision.verdict.value,
            json.dumps(decision.reasoning),
            json.dumps(state),
            iso(self.clock()),
        )
        try:
            if conn is None:
                self.db.execute_insert(_INSERT_DECISION, params)
            else:
                conn.execute("SAVEPOINT audit")
                try:
                    conn.execute(_INSERT_DECISION, params)
                except sqlite3.Error:
                    conn.execute("ROLLBACK TO SAVEPOINT audit")
                    raise
                finally:
                    conn.execute("RELEASE SAVEPOINT audit")
        except (PersistenceError, sqlite3.Error) as e:
            error = PersistenceError(
                f"Failed to record decision: {e}", task_id=decision.task_id, component="decision"
            )
            self.errors.publish(error)
            return None
        decision.record_id = record_id
        return record_id

    def decisions_for(self, task_id: str) -> list[DecisionRecord]:
        rows = self.db.execute(
            "SELECT * FROM decisions WHERE task_id = ? ORDER BY timestamp, rowid", (task_id,)
        )
        return [DecisionRecord.from_row(row) for row in rows]

    def last_decision_id(self, task_id: str) -> str | None:
        rows = self.db.execute(
            "SELECT id FROM decisions WHERE task_id = ?"
            " ORDER BY timestamp DESC, rowid DESC LIMIT 1",
            (task_id,),
        )
        return rows[0]["id"] if rows else None
