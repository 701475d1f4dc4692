"""
Importance Voting

Peers vote on how important a task is. A vote closes at its expiry, or
early once every expected voter has cast a ballot.

Ballot policy:
- one ballot per voter; the first one counts and repeats are ignored
- ballots after expiry or close raise LateBallotError
- consensus is the modal level, ties broken toward the higher importance
- confidence is modal count / total ballots
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from collections import Counter
from collections.abc import Iterable
from datetime import datetime, timedelta

from ecodefer.config import ServiceConfig
from ecodefer.errors import LateBallotError, MeshNotFound, PeerNotEligible, ValidationError
from ecodefer.mesh.events import MeshEventLog
from ecodefer.mesh.models import Ballot, Importance, Vote, VoteStatus
from ecodefer.models import Clock, iso, parse_iso
from ecodefer.storage.database import Database

logger = logging.getLogger(__name__)

PUBLIC_HEALTH_KEYWORDS = (
    "health",
    "medical",
    "hospital",
    "emergency",
    "ambulance",
    "security",
    "police",
    "fire",
    "rescue",
    "hazmat",
    "nuclear",
    "power-grid",
    "water-treatment",
    "sewage",
)


def is_public_health(task_name: str, description: str = "") -> bool:
    combined = f"{task_name} {description}".lower()
    return any(keyword in combined for keyword in PUBLIC_HEALTH_KEYWORDS)


def tally(levels: Iterable[str]) -> tuple[str, float]:
    """Return (consensus, confidence) for a set of ballot levels.

    No ballots yields ("normal", 0.0).
    """
    counts = Counter(Importance(level) for level in levels)
    total = sum(counts.values())
    if total == 0:
        return Importance.NORMAL.value, 0.0
    winner = max(counts, key=lambda level: (counts[level], level.rank))
    return winner.value, counts[winner] / total


class ImportanceVoting:
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

    def open_vote(
        self,
        task_id: str,
        task_name: str = "",
        description: str = "",
        expected_voters: Iterable[str] | None = None,
        period_s: float | None = None,
    ) -> Vote:
        """Open a vote. Public-health tasks resolve to critical immediately."""
        now = self.clock()
        period_s = self.config.voting_period_s if period_s is None else period_s
        voters = tuple(dict.fromkeys(expected_voters)) if expected_voters is not None else None
        vote = Vote(
            id=str(uuid.uuid4()),
            task_id=task_id,
            created_at=iso(now),
            expires_at=iso(now + timedelta(seconds=period_s)),
            task_name=task_name,
            description=description,
            expected_voters=voters,
        )
        override = is_public_health(task_name, description)
        if override:
            vote.status = VoteStatus.CONSENSUS
            vote.final_consensus = Importance.CRITICAL.value
            vote.confidence = 1.0

        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT INTO importance_votes (
                    id, task_id, task_name, description, status, created_at, expires_at,
                    expected_voters, final_consensus, confidence
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    vote.id,
                    vote.task_id,
                    vote.task_name,
                    vote.description,
                    vote.status,
                    vote.created_at,
                    vote.expires_at,
                    json.dumps(list(voters)) if voters is not None else None,
                    vote.final_consensus,
                    vote.confidence,
                ),
            )
            if override:
                self.events.record(
                    "consensus_reached",
                    task_id=task_id,
                    data={"vote_id": vote.id, "consensus": "critical", "override": "public_health"},
                    conn=conn,
                )

        if override:
            logger.warning(f"Public health task detected: {task_name} - importance set to critical")
        else:
            logger.info(f"Vote {vote.id} opened for task {task_id} until {vote.expires_at}")
        return vote

    def _load(self, conn: sqlite3.Connection, vote_id: str) -> Vote:
        row = conn.execute("SELECT * FROM importance_votes WHERE id = ?", (vote_id,)).fetchone()
        if row is None:
            raise MeshNotFound(f"Vote not found: {vote_id}")
        ballots = [
            Ballot(
                id=b["id"],
                vote_id=b["vote_id"],
                voter_id=b["voter_id"],
                importance=b["importance"],
                reasoning=b["reasoning"],
                timestamp=b["timestamp"],
            )
            for b in conn.execute(
                "SELECT * FROM ballots WHERE vote_id = ? ORDER BY timestamp, rowid", (vote_id,)
            ).fetchall()
        ]
        return Vote.from_row(row, ballots)

    def get(self, vote_id: str) -> Vote:
        with self.db.connect() as conn:
            return self._load(conn, vote_id)

    def _expired(self, vote: Vote) -> bool:
        return self.clock() >= parse_iso(vote.expires_at)

    def cast_ballot(
        self, vote_id: str, voter_id: str, importance: str, reasoning: str = ""
    ) -> bool:
        """
        Cast a ballot.

        Returns:
            True if the ballot was counted, False if this voter had already voted.
        """
        try:
            level = Importance(importance)
        except ValueError:
            valid = ", ".join(i.value for i in Importance)
            raise ValidationError(
                f"Unknown importance {importance!r} (expected one of: {valid})"
            ) from None

        if self.resolve_if_expired(vote_id):
            raise LateBallotError(f"Vote {vote_id} has expired")

        with self.db.connect() as conn:
            vote = self._load(conn, vote_id)
            if vote.status != VoteStatus.VOTING:
                raise LateBallotError(
                    f"Vote {vote_id} is already {vote.status}", task_id=vote.task_id
                )
            if vote.expected_voters is not None and voter_id not in vote.expected_voters:
                raise PeerNotEligible(
                    f"{voter_id} is not an expected voter on {vote_id}", task_id=vote.task_id
                )
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO ballots
                    (id, vote_id, voter_id, importance, reasoning, timestamp)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (str(uuid.uuid4()), vote_id, voter_id, level.value, reasoning, iso(self.clock())),
            )
            counted = cursor.rowcount == 1

            if counted and vote.expected_voters is not None:
                voted = {
                    row["voter_id"]
                    for row in conn.execute(
                        "SELECT voter_id FROM ballots WHERE vote_id = ?", (vote_id,)
                    ).fetchall()
                }
                if voted >= set(vote.expected_voters):
                    self._resolve(conn, vote_id)

        if counted:
            logger.info(f"Ballot from {voter_id} on {vote_id}: {level.value}")
        else:
            logger.debug(f"Duplicate ballot from {voter_id} on {vote_id} ignored")
        return counted

    def _resolve(self, conn: sqlite3.Connection, vote_id: str) -> Vote:
        vote = self._load(conn, vote_id)
        if vote.status != VoteStatus.VOTING:
            return vote
        consensus, confidence = tally(b.importance for b in vote.ballots)
        status = VoteStatus.CONSENSUS if vote.ballots else VoteStatus.CLOSED
        conn.execute(
            "UPDATE importance_votes SET status = ?, final_consensus = ?, confidence = ? "
            "WHERE id = ? AND status = 'voting'",
            (status.value, consensus, confidence, vote_id),
        )
        if vote.ballots:
            self.events.record(
                "consensus_reached",
                task_id=vote.task_id,
                data={"vote_id": vote_id, "consensus": consensus, "confidence": confidence},
                conn=conn,
            )
        vote.status = status.value
        vote.final_consensus = consensus
        vote.confidence = confidence
        logger.info(f"Vote {vote_id} resolved: {consensus} ({confidence:.0%})")
        return vote

    def resolve(self, vote_id: str) -> Vote:
        """Close a vote now. Resolving an already-closed vote returns it unchanged."""
        with self.db.connect() as conn:
            return self._resolve(conn, vote_id)

    def resolve_if_expired(self, vote_id: str) -> bool:
        vote = self.get(vote_id)
        if vote.status == VoteStatus.VOTING and self._expired(vote):
            self.resolve(vote_id)
            return True
        return False

    def resolve_expired(self) -> list[Vote]:
        """Resolve every open vote past its expiry."""
        rows = self.db.execute(
            "SELECT id FROM importance_votes WHERE status = 'voting' AND expires_at <= ?",
            (iso(self.clock()),),
        )
        return [self.resolve(row["id"]) for row in rows]
