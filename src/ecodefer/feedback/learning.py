"""Learning feedback loop.

Feedback is append-only. Learned patterns are a cache of grouped feedback
counts per task name; they can be dropped and rebuilt at any time and the
rebuild always yields the same counts.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime

from ecodefer.config import ServiceConfig
from ecodefer.errors import TaskNotFound, ValidationError
from ecodefer.models import Clock, FeedbackKind, iso
from ecodefer.storage.database import Database

logger = logging.getLogger(__name__)


@dataclass
class Feedback:
    id: str
    task_id: str
    kind: str
    note: str
    timestamp: str


@dataclass
class LearnedPattern:
    """Feedback counts for one task name."""

    task_name: str
    necessary_count: int = 0
    avoidable_count: int = 0
    optimizable_count: int = 0
    confidence: float = 0.0
    last_updated: str = ""

    @property
    def total(self) -> int:
        return self.necessary_count + self.avoidable_count + self.optimizable_count

    def counts(self) -> dict[str, int]:
        return {
            FeedbackKind.NECESSARY.value: self.necessary_count,
            FeedbackKind.AVOIDABLE.value: self.avoidable_count,
            FeedbackKind.OPTIMIZABLE.value: self.optimizable_count,
        }

    def advisory(self) -> str | None:
        """Reasoning line for the decision trail, if the pattern says anything."""
        if self.total == 0:
            return None
        if self.necessary_count < self.avoidable_count:
            return f"User marked similar tasks as avoidable ({self.avoidable_count}x)"
        if self.necessary_count > 0:
            return f"User confirmed similar tasks necessary ({self.necessary_count}x)"
        return f"User marked similar tasks as optimizable ({self.optimizable_count}x)"


def _confidence(necessary: int, avoidable: int, optimizable: int) -> float:
    total = necessary + avoidable + optimizable
    if total == 0:
        return 0.0
    return max(necessary, avoidable, optimizable) / total


class FeedbackLoop:
    """Records user feedback and maintains learned patterns."""

    def __init__(self, db: Database, config: ServiceConfig, clock: Clock | None = None) -> None:
        self.db = db
        self.config = config
        self.clock = clock or datetime.now

    def record(self, task_id: str, kind: str, note: str = "") -> Feedback:
        """Append one feedback entry and refresh the task name's pattern."""
        if not self.config.feedback_enabled:
            raise ValidationError("Feedback collection is disabled", task_id=task_id)
        try:
            kind = FeedbackKind(kind).value
        except ValueError:
            valid = ", ".join(k.value for k in FeedbackKind)
            raise ValidationError(
                f"Unknown feedback kind {kind!r} (expected one of: {valid})", task_id=task_id
            ) from None

        rows = self.db.execute("SELECT name FROM tasks WHERE id = ?", (task_id,))
        if not rows:
            raise TaskNotFound(f"Task not found: {task_id}", task_id=task_id)
        task_name = rows[0]["name"]

        feedback = Feedback(
            id=str(uuid.uuid4()),
            task_id=task_id,
            kind=kind,
            note=note or "",
            timestamp=iso(self.clock()),
        )
        self.db.execute_insert(
            "INSERT INTO feedback (id, task_id, kind, note, timestamp) VALUES (?, ?, ?, ?, ?)",
            (feedback.id, feedback.task_id, feedback.kind, feedback.note, feedback.timestamp),
        )
        logger.info(f"Feedback recorded: {kind}", extra={"task_id": task_id})

        if self.config.learning_enabled:
            self.refresh(task_name)
        return feedback

    def list_feedback(self, task_id: str) -> list[Feedback]:
        rows = self.db.execute(
            "SELECT * FROM feedback WHERE task_id = ? ORDER BY timestamp, rowid", (task_id,)
        )
        return [
            Feedback(
                id=row["id"],
                task_id=row["task_id"],
                kind=row["kind"],
                note=row["note"],
                timestamp=row["timestamp"],
            )
            for row in rows
        ]

    def compute(self, task_name: str) -> LearnedPattern:
        """Aggregate the feedback table for one task name (no caching)."""
        rows = self.db.execute(
            """
            SELECT f.kind AS kind, COUNT(*) AS n
            FROM feedback f JOIN tasks t ON f.task_id = t.id
            WHERE t.name = ?
            GROUP BY f.kind
            """,
            (task_name,),
        )
        counts = {row["kind"]: int(row["n"]) for row in rows}
        return self._pattern(task_name, counts)

    def _pattern(self, task_name: str, counts: dict[str, int]) -> LearnedPattern:
        necessary = counts.get(FeedbackKind.NECESSARY.value, 0)
        avoidable = counts.get(FeedbackKind.AVOIDABLE.value, 0)
        optimizable = counts.get(FeedbackKind.OPTIMIZABLE.value, 0)
        return LearnedPattern(
            task_name=task_name,
            necessary_count=necessary,
            avoidable_count=avoidable,
            optimizable_count=optimizable,
            confidence=_confidence(necessary, avoidable, optimizable),
            last_updated=iso(self.clock()),
        )

    def refresh(self, task_name: str) -> LearnedPattern:
        pattern = self.compute(task_name)
        self.db.execute_insert(
            """
            INSERT INTO learned_patterns (
                task_name, necessary_count, avoidable_count, optimizable_count,
                confidence, last_updated
            ) VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(task_name) DO UPDATE SET
                necessary_count = excluded.necessary_count,
                avoidable_count = excluded.avoidable_count,
                optimizable_count = excluded.optimizable_count,
                confidence = excluded.confidence,
                last_updated = excluded.last_updated
            """,
            (
                pattern.task_name,
                pattern.necessary_count,
                pattern.avoidable_count,
                pattern.optimizable_count,
                pattern.confidence,
                pattern.last_updated,
            ),
        )
        return pattern

    def recompute_all(self) -> dict[str, LearnedPattern]:
        """Rebuild every learned pattern from the full feedback table."""
        with self.db.connect() as conn:
            rows = conn.execute(
                """
                SELECT t.name AS task_name, f.kind AS kind, COUNT(*) AS n
                FROM feedback f JOIN tasks t ON f.task_id = t.id
                GROUP BY t.name, f.kind
                """
            ).fetchall()

            grouped: dict[str, dict[str, int]] = {}
            for row in rows:
                grouped.setdefault(row["task_name"], {})[row["kind"]] = int(row["n"])
            patterns = {name: self._pattern(name, counts) for name, counts in grouped.items()}

            conn.execute("DELETE FROM learned_patterns")
            conn.executemany(
                """
                INSERT INTO learned_patterns (
                    task_name, necessary_count, avoidable_count, optimizable_count,
                    confidence, last_updated
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        p.task_name,
                        p.necessary_count,
                        p.avoidable_count,
                        p.optimizable_count,
                        p.confidence,
                        p.last_updated,
                    )
                    for p in patterns.values()
                ],
            )

        logger.info(f"Recomputed {len(patterns)} learned pattern(s)")
        return patterns

    def pattern_for(self, task_name: str) -> LearnedPattern | None:
        """Cached pattern for a task name, or None if nothing was learned."""
        rows = self.db.execute(
            "SELECT * FROM learned_patterns WHERE task_name = ?", (task_name,)
        )
        if not rows:
            return None
        row = rows[0]
        return LearnedPattern(
            task_name=row["task_name"],
            necessary_count=row["necessary_count"],
            avoidable_count=row["avoidable_count"],
            optimizable_count=row["optimizable_count"],
            confidence=row["confidence"],
            last_updated=row["last_updated"],
        )
