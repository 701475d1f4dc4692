"""
Mesh Data Models

Peers, importance votes, delegations and carbon records. Rows store nested
structures (energy profile, resources, allowed tasks) as JSON text.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import Any


class PeerStatus(StrEnum):
    ONLINE = "online"
    OFFLINE = "offline"
    MAINTENANCE = "maintenance"


class Importance(StrEnum):
    """Ballot importance levels, lowest first."""

    NON_CRITICAL = "non-critical"
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return list(Importance).index(self)


class VoteStatus(StrEnum):
    VOTING = "voting"
    CLOSED = "closed"
    CONSENSUS = "consensus"


class DelegationStatus(StrEnum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRACTED = "retracted"


ACTIVE_DELEGATION_STATUSES = frozenset(
    {DelegationStatus.PENDING, DelegationStatus.ACCEPTED, DelegationStatus.EXECUTING}
)

DELEGATION_TRANSITIONS: dict[DelegationStatus, frozenset[DelegationStatus]] = {
    DelegationStatus.PENDING: frozenset({DelegationStatus.ACCEPTED, DelegationStatus.RETRACTED}),
    DelegationStatus.ACCEPTED: frozenset({DelegationStatus.EXECUTING, DelegationStatus.FAILED}),
    DelegationStatus.EXECUTING: frozenset({DelegationStatus.COMPLETED, DelegationStatus.FAILED}),
    DelegationStatus.COMPLETED: frozenset(),
    DelegationStatus.FAILED: frozenset(),
    DelegationStatus.RETRACTED: frozenset(),
}


@dataclass(frozen=True)
class EnergyProfile:
    """Where a peer's power currently comes from."""

    type: str = "grid"
    percent_clean: float = 0.0
    source: str = ""

    def __post_init__(self) -> None:
        if not 0.0 <= self.percent_clean <= 100.0:
            raise ValueError(f"percent_clean must be in [0, 100], got {self.percent_clean}")

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> EnergyProfile:
        data = data or {}
        return cls(
            type=str(data.get("type", "grid")),
            percent_clean=float(data.get("percent_clean", 0.0)),
            source=str(data.get("source", "")),
        )


@dataclass(frozen=True)
class Resources:
    cpu: float = 1.0
    memory_mb: float = 1024.0
    disk_mb: float = 1024.0

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> Resources:
        data = data or {}
        return cls(
            cpu=float(data.get("cpu", 1.0)),
            memory_mb=float(data.get("memory_mb", 1024.0)),
            disk_mb=float(data.get("disk_mb", 1024.0)),
        )


@dataclass
class Peer:
    """A device in the mesh that can run delegated tasks."""

    id: str
    name: str
    last_seen: str
    location: str = ""
    energy: EnergyProfile = field(default_factory=EnergyProfile)
    capacity: Resources = field(default_factory=Resources)
    available: Resources = field(default_factory=Resources)
    allowed_tasks: tuple[str, ...] = ("*",)
    max_task_duration_s: float = 3600.0
    timezone: str = "UTC"
    status: str = PeerStatus.ONLINE

    def permits(self, task_name: str) -> bool:
        return "*" in self.allowed_tasks or task_name in self.allowed_tasks

    @classmethod
    def from_row(cls, row: Any) -> Peer:
        return cls(
            id=row["id"],
            name=row["name"],
            last_seen=row["last_seen"],
            location=row["location"],
            energy=EnergyProfile.from_dict(json.loads(row["energy"])),
            capacity=Resources.from_dict(json.loads(row["capacity"])),
            available=Resources.from_dict(json.loads(row["available"])),
            allowed_tasks=tuple(json.loads(row["allowed_tasks"])),
            max_task_duration_s=row["max_task_duration_s"],
            timezone=row["timezone"],
            status=row["status"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "location": self.location,
            "energy": asdict(self.energy),
            "capacity": asdict(self.capacity),
            "available": asdict(self.available),
            "allowed_tasks": list(self.allowed_tasks),
            "max_task_duration_s": self.max_task_duration_s,
            "timezone": self.timezone,
            "last_seen": self.last_seen,
            "status": self.status,
        }


@dataclass
class Ballot:
    id: str
    vote_id: str
    voter_id: str
    importance: str
    reasoning: str
    timestamp: str


@dataclass
class Vote:
    """Importance vote on a task; resolves to a consensus level."""

    id: str
    task_id: str
    created_at: str
    expires_at: str
    task_name: str = ""
    description: str = ""
    status: str = VoteStatus.VOTING
    expected_voters: tuple[str, ...] | None = None
    final_consensus: str | None = None
    confidence: float = 0.0
    ballots: list[Ballot] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: Any, ballots: list[Ballot] | None = None) -> Vote:
        expected = row["expected_voters"]
        return cls(
            id=row["id"],
            task_id=row["task_id"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            task_name=row["task_name"],
            description=row["description"],
            status=row["status"],
            expected_voters=tuple(json.loads(expected)) if expected else None,
            final_consensus=row["final_consensus"],
            confidence=row["confidence"],
            ballots=ballots or [],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "task_name": self.task_name,
            "status": self.status,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "expected_voters": list(self.expected_voters) if self.expected_voters else None,
            "final_consensus": self.final_consensus,
            "confidence": self.confidence,
            "ballots": [asdict(b) for b in self.ballots],
        }


@dataclass
class Delegation:
    id: str
    task_id: str
    from_peer_id: str
    to_peer_id: str
    created_at: str
    from_user_id: str = ""
    status: str = DelegationStatus.PENDING
    urgency: str = "normal"
    accepted_at: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    energy_used_wh: float | None = None
    carbon_saved_kg: float | None = None
    error: str | None = None

    @classmethod
    def from_row(cls, row: Any) -> Delegation:
        return cls(**{key: row[key] for key in row.keys()})

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class CarbonRecord:
    """Carbon accounting for one executed task. Written exactly once."""

    id: str
    task_id: str
    executed_peer_id: str
    grid_carbon_intensity: float
    renewable_percent: float
    energy_used_wh: float
    carbon_emitted_kg: float
    carbon_avoided_kg: float
    executed_at: str

    @classmethod
    def from_row(cls, row: Any) -> CarbonRecord:
        return cls(**{key: row[key] for key in row.keys()})

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
