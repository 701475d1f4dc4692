"""
Delegation Manager

Hands queued or deferred tasks to mesh peers.

State machine:
- pending -> accepted -> executing -> completed | failed
- pending -> retracted
- accepted -> failed, when the peer gives up before starting; the task
  stays queued and can be delegated again

At most one pending/accepted/executing delegation exists per task; the
``idx_delegations_active`` partial unique index enforces it, so a racing
second attempt fails with MeshConflictError. Repeating a step that already
happened returns the delegation unchanged, including an accept that arrives
after the peer started or finished.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from datetime import datetime
from typing import Any

from ecodefer.config import ServiceConfig
from ecodefer.engine.work_queue import WorkQueue
from ecodefer.errors import (
    DelegationBlocked,
    DelegationDeferred,
    InvalidTransition,
    MeshConflictError,
    MeshNotFound,
    PeerNotEligible,
    PersistenceError,
)
from ecodefer.mesh.carbon import CarbonLedger, GridSignal
from ecodefer.mesh.events import MeshEventLog
from ecodefer.mesh.models import (
    ACTIVE_DELEGATION_STATUSES,
    DELEGATION_TRANSITIONS,
    Delegation,
    DelegationStatus,
    PeerStatus,
)
from ecodefer.mesh.peers import PeerRegistry
from ecodefer.mesh.policy import DelegationPolicy
from ecodefer.mesh.sla import sla_for
from ecodefer.models import Clock, Task, TaskStatus, iso
from ecodefer.storage.database import Database

logger = logging.getLogger(__name__)

# Steps that count as reached once their timestamp is set, whatever came after
_STEP_STAMPS = {
    DelegationStatus.ACCEPTED: "accepted_at",
    DelegationStatus.EXECUTING: "started_at",
}


class DelegationManager:
    def __init__(
        self,
        db: Database,
        config: ServiceConfig,
        queue: WorkQueue,
        peers: PeerRegistry,
        carbon: CarbonLedger,
        events: MeshEventLog | None = None,
        clock: Clock | None = None,
        policy: DelegationPolicy | None = None,
    ) -> None:
        self.db = db
        self.config = config
        self.queue = queue
        self.peers = peers
        self.carbon = carbon
        self.clock = clock or datetime.now
        self.events = events or MeshEventLog(db, self.clock)
        self.policy = policy or DelegationPolicy(db, config, self.clock)

    # -- lookups -----------------------------------------------------------

    def _load(self, conn: sqlite3.Connection, delegation_id: str) -> Delegation:
        row = conn.execute("SELECT * FROM delegations WHERE id = ?", (delegation_id,)).fetchone()
        if row is None:
            raise MeshNotFound(f"Delegation not found: {delegation_id}")
        return Delegation.from_row(row)

    def get(self, delegation_id: str) -> Delegation:
        with self.db.connect() as conn:
            return self._load(conn, delegation_id)

    def for_task(self, task_id: str) -> list[Delegation]:
        rows = self.db.execute(
            "SELECT * FROM delegations WHERE task_id = ? ORDER BY created_at, rowid", (task_id,)
        )
        return [Delegation.from_row(row) for row in rows]

    def active_for(self, task_id: str) -> Delegation | None:
        for delegation in self.for_task(task_id):
            if delegation.status in ACTIVE_DELEGATION_STATUSES:
                return delegation
        return None

    # -- handshake ---------------------------------------------------------

    def delegate(
        self,
        task_id: str,
        peer_id: str,
        from_user_id: str = "",
        urgency: str | None = None,
    ) -> Delegation:
        """Offer a queued or deferred task to a peer.

        The submitting user's policy (cooldown, delegation hours, ethical
        rules, tier quota) is checked before the peer itself.

        Raises:
            DelegationDeferred: the user may not delegate yet.
            DelegationBlocked: the user's rules or quota forbid this task.
            PeerNotEligible: the task or the peer does not qualify.
            MeshConflictError: the task already has an active delegation.
        """
        task = self.queue.get(task_id)
        if task.status not in (TaskStatus.QUEUED, TaskStatus.DEFERRED):
            raise PeerNotEligible(
                f"Task {task_id} is {task.status}; only queued or deferred tasks can be delegated",
                task_id=task_id,
            )
        urgency = urgency or task.urgency
        self._admit(task, from_user_id, urgency)
        self._check_eligible(task.name, peer_id, urgency, task_id)

        delegation = Delegation(
            id=str(uuid.uuid4()),
            task_id=task_id,
            from_peer_id=self.config.local_peer_id,
            to_peer_id=peer_id,
            created_at=iso(self.clock()),
            from_user_id=from_user_id,
            urgency=urgency,
        )
        try:
            with self.db.connect() as conn:
                conn.execute(
                    """
                    INSERT INTO delegations (
                        id, task_id, from_peer_id, to_peer_id, from_user_id,
                        status, urgency, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        delegation.id,
                        delegation.task_id,
                        delegation.from_peer_id,
                        delegation.to_peer_id,
                        delegation.from_user_id,
                        delegation.status,
                        delegation.urgency,
                        delegation.created_at,
                    ),
                )
                self.events.record(
                    "task_delegated",
                    peer_id=peer_id,
                    task_id=task_id,
                    data={"delegation_id": delegation.id, "urgency": urgency},
                    conn=conn,
                )
        except sqlite3.IntegrityError as e:
            raise MeshConflictError(
                f"Task {task_id} already has an active delegation", task_id=task_id
            ) from e
        except sqlite3.Error as e:
            raise PersistenceError(f"Delegation write failed: {e}", task_id=task_id) from e

        logger.info(f"Task {task_id} delegated to {peer_id}")
        return delegation

    def _admit(self, task: Task, from_user_id: str, urgency: str) -> None:
        payload = task.payload
        power_w = task.estimated_power_w
        try:
            self.policy.admit(
                from_user_id,
                task.id,
                task.name,
                urgency,
                power_w=self.config.power_for(task.name) if power_w is None else power_w,
                duration_s=float(payload.get("estimated_duration_s") or 0.0),
                memory_mb=float(payload.get("memory_mb") or 0.0),
            )
        except DelegationDeferred as e:
            logger.info(f"Delegation of {task.id} deferred: {e.message}")
            self.events.record("delegation_deferred", task_id=task.id, data=e.to_dict())
            raise
        except DelegationBlocked as e:
            logger.warning(f"Delegation of {task.id} blocked: {e.message}")
            self.events.record("delegation_blocked", task_id=task.id, data=e.to_dict())
            raise

    def _check_eligible(self, task_name: str, peer_id: str, urgency: str, task_id: str) -> None:
        peer = self.peers.get(peer_id)
        sla = sla_for(urgency)
        problems = []
        if peer.status != PeerStatus.ONLINE:
            problems.append(f"peer is {peer.status}")
        if not sla.can_delegate:
            problems.append(f"{sla.name} tasks cannot be delegated")
        if not peer.permits(task_name):
            problems.append(f"peer does not permit {task_name}")
        if peer.max_task_duration_s < self.config.max_task_duration_s:
            problems.append("peer max task duration too short")
        if not self.peers.has_capacity(peer):
            problems.append("peer lacks capacity")
        if not sla.admits(peer.energy, self.config.eco_min_clean_percent):
            problems.append(f"energy profile does not meet the {sla.name} SLA")
        if problems:
            raise PeerNotEligible(
                f"Peer {peer_id} not eligible: {'; '.join(problems)}", task_id=task_id
            )

    def _advance(
        self,
        conn: sqlite3.Connection,
        delegation_id: str,
        target: DelegationStatus,
        **fields: Any,
    ) -> tuple[Delegation, bool]:
        """Move a delegation along one edge. Returns (delegation, changed)."""
        current = self._load(conn, delegation_id)
        stamp = _STEP_STAMPS.get(target)
        if current.status == target or (stamp and getattr(current, stamp)):
            return current, False
        source = DelegationStatus(current.status)
        if target not in DELEGATION_TRANSITIONS[source]:
            raise InvalidTransition(
                f"Delegation {delegation_id}: {source} -> {target} is not allowed",
                task_id=current.task_id,
                component="mesh",
            )
        assignments = ["status = ?"] + [f"{column} = ?" for column in fields]
        conn.execute(
            f"UPDATE delegations SET {', '.join(assignments)} WHERE id = ? AND status = ?",
            (target.value, *fields.values(), delegation_id, source.value),
        )
        self.events.record(
            f"delegation_{target.value}",
            peer_id=current.to_peer_id,
            task_id=current.task_id,
            data={"delegation_id": delegation_id},
            conn=conn,
        )
        return self._load(conn, delegation_id), True

    def accept(self, delegation_id: str) -> Delegation:
        with self.db.connect() as conn:
            delegation, changed = self._advance(
                conn, delegation_id, DelegationStatus.ACCEPTED, accepted_at=iso(self.clock())
            )
        if changed:
            logger.info(f"Delegation {delegation_id} accepted by {delegation.to_peer_id}")
        return delegation

    def start(self, delegation_id: str) -> Delegation:
        """Peer begins execution; the local task is claimed in the same transaction."""
        with self.db.connect() as conn:
            delegation, changed = self._advance(
                conn, delegation_id, DelegationStatus.EXECUTING, started_at=iso(self.clock())
            )
            if changed:
                claimed = self.queue.transition(
                    delegation.task_id,
                    [TaskStatus.QUEUED, TaskStatus.DEFERRED],
                    TaskStatus.EXECUTING,
                    conn=conn,
                    executed_at=iso(self.clock()),
                )
                if not claimed:
                    raise MeshConflictError(
                        f"Task {delegation.task_id} was claimed elsewhere",
                        task_id=delegation.task_id,
                    )
        if changed:
            logger.info(f"Delegation {delegation_id} executing on {delegation.to_peer_id}")
        return delegation

    def complete(
        self,
        delegation_id: str,
        energy_used_wh: float,
        grid_intensity: float | None = None,
        renewable_percent: float | None = None,
        result: dict[str, Any] | None = None,
    ) -> Delegation:
        """
        Record the peer's result.

        The task's completion and its carbon record commit together. The
        grid figures are the executing peer's; they default to the local
        grid signal when the peer does not report them.
        """
        local = self.carbon.grid()
        signal = GridSignal(
            carbon_intensity=local.carbon_intensity if grid_intensity is None else grid_intensity,
            renewable_percent=(
                local.renewable_percent if renewable_percent is None else renewable_percent
            ),
        )
        with self.db.connect() as conn:
            current = self._load(conn, delegation_id)
            if current.status == DelegationStatus.COMPLETED:
                return current
            record = self.carbon.record(
                current.task_id, current.to_peer_id, energy_used_wh, signal, conn=conn
            )
            if current.from_user_id:
                self.policy.start_cooldown(current.from_user_id, current.task_id, conn=conn)
            delegation, _ = self._advance(
                conn,
                delegation_id,
                DelegationStatus.COMPLETED,
                completed_at=iso(self.clock()),
                energy_used_wh=record.energy_used_wh,
                carbon_saved_kg=record.carbon_avoided_kg,
            )
            self.queue.complete(
                current.task_id,
                result={"delegated_to": current.to_peer_id, **(result or {})},
                conn=conn,
            )
        logger.info(
            f"Delegation {delegation_id} completed: {record.carbon_avoided_kg:.6f} kg CO2 avoided"
        )
        return delegation

    def fail(self, delegation_id: str, error: str) -> Delegation:
        """Peer gave up. An executing task is marked failed; an unclaimed one stays queued."""
        with self.db.connect() as conn:
            current = self._load(conn, delegation_id)
            if current.status == DelegationStatus.FAILED:
                return current
            delegation, _ = self._advance(
                conn,
                delegation_id,
                DelegationStatus.FAILED,
                completed_at=iso(self.clock()),
                error=error,
            )
            if current.status == DelegationStatus.EXECUTING:
                self.queue.fail(current.task_id, f"Delegated execution failed: {error}", conn=conn)
        logger.warning(f"Delegation {delegation_id} failed: {error}")
        return delegation

    def retract(self, delegation_id: str) -> Delegation:
        """Withdraw a delegation the peer has not accepted yet."""
        with self.db.connect() as conn:
            delegation, changed = self._advance(
                conn, delegation_id, DelegationStatus.RETRACTED, completed_at=iso(self.clock())
            )
        if changed:
            logger.info(f"Delegation {delegation_id} retracted")
        return delegation
