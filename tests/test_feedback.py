"""Tests for the feedback loop and learned patterns."""

from __future__ import annotations


import pytest

from ecodefer.config import ServiceConfig
from ecodefer.errors import TaskNotFound, ValidationError
from ecodefer.feedback.learning import FeedbackLoop, LearnedPattern
from ecodefer.models import iso
from ecodefer.storage.database import Database

from conftest import PEAK, FakeClock


def _add_task(db: Database, task_id: str, name: str) -> None:
    with db.connect() as conn:
        conn.execute(
            "INSERT INTO tasks (id, name, status, created_at) VALUES (?, ?, 'completed', ?)",
            (task_id, name, iso(PEAK)),
        )


@pytest.fixture
def loop(db: Database, config: ServiceConfig, clock: FakeClock) -> FeedbackLoop:
    return FeedbackLoop(db, config, clock)


def test_record_feedback(loop: FeedbackLoop, db: Database) -> None:
    _add_task(db, "t1", "database-cleanup")
    entry = loop.record("t1", "necessary", "nightly job")

    assert entry.kind == "necessary"
    assert entry.timestamp == iso(PEAK)
    stored = loop.list_feedback("t1")
    assert [f.note for f in stored] == ["nightly job"]


def test_unknown_task(loop: FeedbackLoop) -> None:
    with pytest.raises(TaskNotFound):
        loop.record("missing", "necessary")


def test_unknown_kind(loop: FeedbackLoop, db: Database) -> None:
    _add_task(db, "t1", "database-cleanup")
    with pytest.raises(ValidationError):
        loop.record("t1", "pointless")
    assert loop.list_feedback("t1") == []


def test_feedback_disabled(db: Database, config: ServiceConfig, clock: FakeClock) -> None:
    _add_task(db, "t1", "database-cleanup")
    loop = FeedbackLoop(db, config.with_overrides(feedback_enabled=False), clock)
    with pytest.raises(ValidationError):
        loop.record("t1", "necessary")


def test_pattern_counts_group_by_task_name(loop: FeedbackLoop, db: Database) -> None:
    _add_task(db, "a", "cache-warming")
    _add_task(db, "b", "cache-warming")
    _add_task(db, "c", "log-rotation")
    loop.record("a", "avoidable")
    loop.record("b", "avoidable")
    loop.record("b", "necessary")
    loop.record("c", "optimizable")

    pattern = loop.pattern_for("cache-warming")
    assert pattern is not None
    assert pattern.counts() == {"necessary": 1, "avoidable": 2, "optimizable": 0}
    assert pattern.confidence == pytest.approx(2 / 3)
    assert loop.pattern_for("log-rotation").optimizable_count == 1


def test_no_pattern_without_feedback(loop: FeedbackLoop) -> None:
    assert loop.pattern_for("database-cleanup") is None


def test_learning_disabled_leaves_cache_alone(
    db: Database, config: ServiceConfig, clock: FakeClock
) -> None:
    _add_task(db, "t1", "database-cleanup")
    loop = FeedbackLoop(db, config.with_overrides(learning_enabled=False), clock)
    loop.record("t1", "avoidable")
    assert loop.pattern_for("database-cleanup") is None
    assert loop.compute("database-cleanup").avoidable_count == 1


def test_recompute_is_stable(loop: FeedbackLoop, db: Database) -> None:
    _add_task(db, "a", "cache-warming")
    _add_task(db, "b", "report-generation")
    loop.record("a", "necessary")
    loop.record("a", "necessary")
    loop.record("b", "avoidable")

    first = {name: p.counts() for name, p in loop.recompute_all().items()}
    db.execute_insert("DELETE FROM learned_patterns")
    second = {name: p.counts() for name, p in loop.recompute_all().items()}

    assert first == second
    assert first["cache-warming"]["necessary"] == 2
    assert loop.pattern_for("report-generation").avoidable_count == 1


class TestAdvisory:
    def test_empty(self) -> None:
        assert LearnedPattern("x").advisory() is None

    def test_avoidable_dominates(self) -> None:
        pattern = LearnedPattern("x", necessary_count=1, avoidable_count=4)
        assert pattern.advisory() == "User marked similar tasks as avoidable (4x)"

    def test_necessary(self) -> None:
        pattern = LearnedPattern("x", necessary_count=2, avoidable_count=1)
        assert pattern.advisory() == "User confirmed similar tasks necessary (2x)"

    def test_optimizable_only(self) -> None:
        pattern = LearnedPattern("x", optimizable_count=3)
        assert pattern.advisory() == "User marked similar tasks as optimizable (3x)"
