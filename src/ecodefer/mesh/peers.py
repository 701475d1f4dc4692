"""Peer registry: announce, heartbeat, liveness sweep and candidate ranking."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from dataclasses import asdict
from datetime import datetime, timedelta

from ecodefer.config import ServiceConfig
from ecodefer.errors import MeshNotFound, ValidationError
from ecodefer.mesh.events import MeshEventLog
from ecodefer.mesh.models import EnergyProfile, Peer, PeerStatus, Resources
from ecodefer.mesh.sla import energy_score, sla_for
from ecodefer.models import Clock, Urgency, iso
from ecodefer.storage.database import Database

logger = logging.getLogger(__name__)


class PeerRegistry:
    """
    Tracks mesh peers.

    A peer is online from its announcement until it misses heartbeats for
    ``peer_liveness_timeout_s``; ``sweep()`` then marks it offline. Peers in
    maintenance are never swept and never chosen for delegation.
    """

    def __init__(
        self,
        db: Database,
        config: ServiceConfig,
        events: MeshEventLog | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.db = db
        self.config = config
        self.clock = clock or datetime.now
        self.events = events or MeshEventLog(db, self.clock)

    def announce(
        self,
        peer_id: str,
        name: str,
        location: str = "",
        energy: EnergyProfile | None = None,
        capacity: Resources | None = None,
        available: Resources | None = None,
        allowed_tasks: Iterable[str] = ("*",),
        max_task_duration_s: float = 3600.0,
        timezone: str = "UTC",
    ) -> Peer:
        """Register a peer, or refresh an existing one, as online."""
        capacity = capacity or Resources()
        peer = Peer(
            id=peer_id,
            name=name,
            last_seen=iso(self.clock()),
            location=location,
            energy=energy or EnergyProfile(),
            capacity=capacity,
            available=available or capacity,
            allowed_tasks=tuple(allowed_tasks),
            max_task_duration_s=float(max_task_duration_s),
            timezone=timezone,
            status=PeerStatus.ONLINE,
        )
        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT INTO peers (
                    id, name, location, energy, capacity, available, allowed_tasks,
                    max_task_duration_s, timezone, last_seen, status
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    location = excluded.location,
                    energy = excluded.energy,
                    capacity = excluded.capacity,
                    available = excluded.available,
                    allowed_tasks = excluded.allowed_tasks,
                    max_task_duration_s = excluded.max_task_duration_s,
                    timezone = excluded.timezone,
                    last_seen = excluded.last_seen,
                    status = excluded.status
                """,
                (
                    peer.id,
                    peer.name,
                    peer.location,
                    json.dumps(asdict(peer.energy)),
                    json.dumps(asdict(peer.capacity)),
                    json.dumps(asdict(peer.available)),
                    json.dumps(list(peer.allowed_tasks)),
                    peer.max_task_duration_s,
                    peer.timezone,
                    peer.last_seen,
                    peer.status,
                ),
            )
            self.events.record(
                "peer_online", peer_id=peer.id, data={"name": name, "location": location}, conn=conn
            )
        logger.info(f"Peer announced: {name} ({peer_id})")
        return peer

    def get(self, peer_id: str) -> Peer:
        rows = self.db.execute("SELECT * FROM peers WHERE id = ?", (peer_id,))
        if not rows:
            raise MeshNotFound(f"Peer not found: {peer_id}")
        return Peer.from_row(rows[0])

    def list(self, status: str | None = None) -> list[Peer]:
        if status is None:
            rows = self.db.execute("SELECT * FROM peers ORDER BY id")
        else:
            try:
                status = PeerStatus(status).value
            except ValueError:
                raise ValidationError(f"Unknown peer status {status!r}") from None
            rows = self.db.execute("SELECT * FROM peers WHERE status = ? ORDER BY id", (status,))
        return [Peer.from_row(row) for row in rows]

    def heartbeat(
        self,
        peer_id: str,
        available: Resources | None = None,
        energy: EnergyProfile | None = None,
    ) -> Peer:
        """Refresh last_seen; an offline peer comes back online."""
        peer = self.get(peer_id)
        assignments = ["last_seen = ?"]
        params: list[object] = [iso(self.clock())]
        if available is not None:
            assignments.append("available = ?")
            params.append(json.dumps(asdict(available)))
        if energy is not None:
            assignments.append("energy = ?")
            params.append(json.dumps(asdict(energy)))
        revived = peer.status == PeerStatus.OFFLINE
        if revived:
            assignments.append("status = ?")
            params.append(PeerStatus.ONLINE.value)
        params.append(peer_id)

        with self.db.connect() as conn:
            conn.execute(f"UPDATE peers SET {', '.join(assignments)} WHERE id = ?", tuple(params))
            if revived:
                self.events.record("peer_online", peer_id=peer_id, conn=conn)
        return self.get(peer_id)

    def set_maintenance(self, peer_id: str, enabled: bool = True) -> Peer:
        self.get(peer_id)
        status = PeerStatus.MAINTENANCE if enabled else PeerStatus.ONLINE
        self.db.execute_insert(
            "UPDATE peers SET status = ?, last_seen = ? WHERE id = ?",
            (status.value, iso(self.clock()), peer_id),
        )
        logger.info(f"Peer {peer_id} -> {status.value}")
        return self.get(peer_id)

    def sweep(self) -> list[str]:
        """Mark online peers offline once their heartbeat is older than the timeout."""
        cutoff = iso(self.clock() - timedelta(seconds=self.config.peer_liveness_timeout_s))
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT id FROM peers WHERE status = 'online' AND last_seen < ?", (cutoff,)
            ).fetchall()
            expired = [row["id"] for row in rows]
            for peer_id in expired:
                conn.execute(
                    "UPDATE peers SET status = 'offline' WHERE id = ? AND status = 'online'",
                    (peer_id,),
                )
                self.events.record("peer_offline", peer_id=peer_id, conn=conn)
        for peer_id in expired:
            logger.warning(f"Peer {peer_id} missed heartbeats -> offline")
        return expired

    def has_capacity(self, peer: Peer, memory_mb: float | None = None) -> bool:
        needed = self.config.max_memory_mb if memory_mb is None else memory_mb
        return peer.available.cpu > 0 and peer.available.memory_mb >= needed

    def find_candidates(
        self,
        task_name: str,
        urgency: str = Urgency.NORMAL,
        duration_s: float | None = None,
        memory_mb: float | None = None,
    ) -> list[Peer]:
        """
        Online peers able to run the task, best first.

        Ranked by energy score, then spare memory, then id, so the order is
        stable for identical inputs.
        """
        duration_s = self.config.max_task_duration_s if duration_s is None else duration_s
        sla = sla_for(urgency)
        candidates = [
            peer
            for peer in self.list(PeerStatus.ONLINE)
            if peer.permits(task_name)
            and peer.max_task_duration_s >= duration_s
            and self.has_capacity(peer, memory_mb)
            and sla.admits(peer.energy, self.config.eco_min_clean_percent)
        ]
        candidates.sort(
            key=lambda p: (-energy_score(p.energy, urgency), -p.available.memory_mb, p.id)
        )
        return candidates
