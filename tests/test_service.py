"""End-to-end tests for the deferral service: submit, tick, execute, recover."""

from __future__ import annotations

import multiprocessing
import sqlite3
import time
from datetime import datetime
from typing import Any

import pytest

from ecodefer.config import ServiceConfig
from ecodefer.engine.service import DeferralService
from ecodefer.errors import PersistenceError, TaskNotFound, ValidationError
from ecodefer.handlers.registry import HandlerRegistry
from ecodefer.models import SandboxConstraints, TaskStatus, iso
from ecodefer.storage.database import Database

from conftest import NEXT_OFF_PEAK, FakeClock, FakeSampler

_FORK = multiprocessing.get_context("fork")


def _service_with(
    config: ServiceConfig,
    clock: FakeClock,
    sampler: FakeSampler,
    handlers: dict[str, Any],
    **overrides: Any,
) -> DeferralService:
    registry = HandlerRegistry(terminate_grace_s=1.0)
    for name, handler in handlers.items():
        registry.register(name, handler)
    return DeferralService(
        config.with_overrides(**overrides), clock=clock, sampler=sampler, handlers=registry
    )


def _wait_for_status(
    service: DeferralService, task_id: str, status: str, timeout: float = 5.0
) -> None:
    deadline = time.monotonic() + timeout
    while service.get_task(task_id).status != status:
        assert time.monotonic() < deadline, f"task never reached {status}"
        time.sleep(0.02)


def _rows(db: Database, table: str) -> int:
    return int(db.execute(f"SELECT COUNT(*) AS n FROM {table}")[0]["n"])


# --- Submission ---


class TestSubmit:
    def test_denied_task_never_enters_queue(self, service: DeferralService) -> None:
        result = service.submit("unregistered-job", {})

        assert result.verdict == "denied"
        assert "whitelist" in result.reasoning[0]
        assert result.estimated_power_w is None
        task = service.get_task(result.task_id)
        assert task.status == TaskStatus.DENIED
        assert task.error == "Task not in execution whitelist"

        counts = service.queue.counts()
        assert counts["pending"] == 0
        assert counts["deferred"] == 0
        assert counts["denied"] == 1
        assert service.tick()["dispatched"] == 0
        assert service.queue.claim(result.task_id) is None
        assert [d.verdict for d in service.get_decisions(result.task_id)] == ["denied"]

    @pytest.mark.parametrize(
        ("name", "payload", "urgency"),
        [
            ("", {}, "normal"),
            ("bad name!", {}, "normal"),
            ("database-cleanup", [1, 2], "normal"),
            ("database-cleanup", {}, "whenever"),
            ("database-cleanup", {"data_size_mb": -1}, "normal"),
            ("database-cleanup", {"data_size_mb": "big"}, "normal"),
            ("database-cleanup", {"at": datetime(2026, 1, 1)}, "normal"),
        ],
    )
    def test_malformed_submissions_store_nothing(
        self, service: DeferralService, name: Any, payload: Any, urgency: Any
    ) -> None:
        with pytest.raises(ValidationError):
            service.submit(name, payload, urgency)
        assert service.get_history() == []

    def test_unknown_task_lookups(self, service: DeferralService) -> None:
        with pytest.raises(TaskNotFound):
            service.get_task("missing")
        with pytest.raises(TaskNotFound):
            service.get_decisions("missing")
        with pytest.raises(TaskNotFound):
            service.record_feedback("missing", "necessary")

    def test_feedback_updates_pattern(self, service: DeferralService) -> None:
        result = service.submit("database-cleanup", {})
        service.record_feedback(result.task_id, "optimizable", "runs too often")
        pattern = service.feedback.pattern_for("database-cleanup")
        assert pattern is not None
        assert pattern.optimizable_count == 1


# --- Execution ---


class TestExecution:
    def test_approved_task_runs_once(self, service: DeferralService) -> None:
        result = service.submit("database-cleanup", {"data_size_mb": 100})
        assert result.verdict == "approved"
        assert result.estimated_power_w == 55

        assert service.tick()["dispatched"] == 1
        assert service.wait_idle(5)
        assert service.tick()["dispatched"] == 0

        task = service.get_task(result.task_id)
        assert task.status == TaskStatus.COMPLETED
        assert task.result == {"rows_removed": 10000, "vacuumed": True}
        assert task.actual_power_w == 55.0
        assert len(service.get_decisions(result.task_id)) == 1

        record = service.carbon.get(result.task_id)
        assert record is not None
        assert record.executed_peer_id == "local"
        assert record.carbon_avoided_kg >= 0.0

    def test_low_urgency_waits_for_off_peak(
        self, service: DeferralService, clock: FakeClock
    ) -> None:
        result = service.submit("log-rotation", {}, "low")
        assert result.verdict == "deferred"
        assert result.scheduled_for == iso(NEXT_OFF_PEAK)

        early = service.tick()
        assert early["released"] == 0
        assert early["dispatched"] == 0
        assert service.get_task(result.task_id).status == TaskStatus.DEFERRED

        clock.set(NEXT_OFF_PEAK)
        due = service.tick()
        assert due["released"] == 1
        assert due["dispatched"] == 1
        assert service.wait_idle(5)

        assert service.get_task(result.task_id).status == TaskStatus.COMPLETED
        records = service.get_decisions(result.task_id)
        assert [r.verdict for r in records] == ["deferred", "approved"]
        assert records[0].parent_id is None
        assert records[1].parent_id == records[0].id

    def test_busy_host_keeps_deferring(
        self, service: DeferralService, clock: FakeClock, sampler: FakeSampler
    ) -> None:
        sampler.cpu_percent = 90
        result = service.submit("index-optimization", {})
        assert result.verdict == "deferred"

        clock.set(NEXT_OFF_PEAK)
        busy = service.tick()
        assert busy["deferred"] == 1
        assert busy["dispatched"] == 0
        assert service.get_task(result.task_id).status == TaskStatus.DEFERRED

        sampler.cpu_percent = 10
        idle = service.tick()
        assert idle["released"] == 1
        assert idle["dispatched"] == 1
        assert service.wait_idle(5)
        assert service.get_task(result.task_id).status == TaskStatus.COMPLETED

    def test_deferred_task_denied_after_whitelist_removal(
        self, service: DeferralService, clock: FakeClock
    ) -> None:
        result = service.submit("log-rotation", {}, "low")
        service.remove_from_whitelist("log-rotation")
        clock.set(NEXT_OFF_PEAK)

        assert service.tick()["denied"] == 1
        assert service.get_task(result.task_id).status == TaskStatus.DENIED

    def test_handler_failure_marks_task_failed(
        self, config: ServiceConfig, clock: FakeClock, sampler: FakeSampler
    ) -> None:
        def broken(payload: dict[str, Any], constraints: SandboxConstraints) -> dict[str, Any]:
            raise RuntimeError("kaput")

        service = _service_with(config, clock, sampler, {"database-cleanup": broken})
        try:
            result = service.submit("database-cleanup", {})
            service.tick()
            assert service.wait_idle(5)
            task = service.get_task(result.task_id)
            assert task.status == TaskStatus.FAILED
            assert "kaput" in task.error
            assert service.carbon.get(result.task_id) is None
        finally:
            service.close()

    def test_missing_handler_fails_task(self, service: DeferralService) -> None:
        service.add_to_whitelist("custom-job")
        result = service.submit("custom-job", {})
        service.tick()
        assert service.wait_idle(5)
        task = service.get_task(result.task_id)
        assert task.status == TaskStatus.FAILED
        assert "No handler registered" in task.error

    def test_timeout_terminates_handler_and_frees_slot(
        self, config: ServiceConfig, clock: FakeClock, sampler: FakeSampler
    ) -> None:
        def stubborn(payload: dict[str, Any], constraints: SandboxConstraints) -> dict[str, Any]:
            time.sleep(30)
            return {"finished": "late"}

        def quick(payload: dict[str, Any], constraints: SandboxConstraints) -> dict[str, Any]:
            return {"ran": True}

        service = _service_with(
            config,
            clock,
            sampler,
            {"database-cleanup": stubborn, "cache-warming": quick},
            max_task_duration_s=0.3,
            max_concurrency=1,
        )
        try:
            hung = service.submit("database-cleanup", {}, "critical")
            assert service.tick()["dispatched"] == 1
            assert service.wait_idle(5)
            task = service.get_task(hung.task_id)
            assert task.status == TaskStatus.FAILED
            assert "exceeded its 0.3s timeout" in task.error
            assert service.handlers.running() == 0

            follow_up = service.submit("cache-warming", {})
            assert service.tick()["dispatched"] == 1
            assert service.wait_idle(5)
            done = service.get_task(follow_up.task_id)
            assert done.status == TaskStatus.COMPLETED
            assert done.result == {"ran": True}
        finally:
            service.close()

    def test_concurrency_limit(
        self, config: ServiceConfig, clock: FakeClock, sampler: FakeSampler
    ) -> None:
        gate = _FORK.Event()

        def gated(payload: dict[str, Any], constraints: SandboxConstraints) -> dict[str, Any]:
            gate.wait(5.0)
            return {}

        service = _service_with(config, clock, sampler, {"cache-warming": gated})
        try:
            ids = [service.submit("cache-warming", {}).task_id for _ in range(3)]
            assert service.tick()["dispatched"] == 2
            assert service.tick()["dispatched"] == 0
            assert service.queue.counts()["active"] == 2

            gate.set()
            assert service.wait_idle(5)
            assert service.tick()["dispatched"] == 1
            assert service.wait_idle(5)
            assert all(service.get_task(i).status == TaskStatus.COMPLETED for i in ids)
        finally:
            service.close()

    def test_dispatch_order_follows_urgency(
        self, config: ServiceConfig, clock: FakeClock, sampler: FakeSampler
    ) -> None:
        order = _FORK.SimpleQueue()

        def record(payload: dict[str, Any], constraints: SandboxConstraints) -> dict[str, Any]:
            order.put(payload["tag"])
            return {}

        service = _service_with(
            config, clock, sampler, {"cache-warming": record}, max_concurrency=1
        )
        try:
            service.submit("cache-warming", {"tag": "normal"}, "normal")
            service.submit("cache-warming", {"tag": "critical"}, "critical")
            for _ in range(2):
                service.tick()
                assert service.wait_idle(5)
            assert [order.get(), order.get()] == ["critical", "normal"]
        finally:
            service.close()


# --- Durability ---


class TestDurability:
    def test_recover_after_crash(
        self,
        service: DeferralService,
        config: ServiceConfig,
        clock: FakeClock,
        sampler: FakeSampler,
    ) -> None:
        result = service.submit("database-cleanup", {})
        service.queue.claim(result.task_id)

        with DeferralService(config, clock=clock, sampler=sampler) as restarted:
            assert restarted.recover() == [result.task_id]
            assert restarted.get_task(result.task_id).status == TaskStatus.QUEUED

    def test_whitelist_overrides_survive_restart(
        self,
        service: DeferralService,
        config: ServiceConfig,
        clock: FakeClock,
        sampler: FakeSampler,
    ) -> None:
        service.add_to_whitelist("custom-job")
        service.remove_from_whitelist("cache-warming", persist=False)

        with DeferralService(config, clock=clock, sampler=sampler) as restarted:
            assert restarted.submit("custom-job", {}).verdict == "approved"
            assert restarted.submit("cache-warming", {}).verdict == "approved"

    def test_failed_audit_write_is_reported(self, service: DeferralService) -> None:
        with service.db.connect() as conn:
            conn.execute("ALTER TABLE decisions RENAME TO decisions_archive")

        result = service.submit("database-cleanup", {})

        assert result.verdict == "approved"
        assert result.persisted is True
        assert service.get_task(result.task_id).status == TaskStatus.QUEUED
        assert service.get_status()["persistence_failures"] == 1
        assert service.errors.recent()[0].component == "decision"

    def test_failed_task_write_stores_no_decision(
        self, service: DeferralService, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def broken_enqueue(task: Any, conn: Any = None) -> Any:
            raise PersistenceError("disk full")

        monkeypatch.setattr(service.queue, "enqueue", broken_enqueue)
        result = service.submit("database-cleanup", {})

        assert result.verdict == "approved"
        assert result.persisted is False
        assert _rows(service.db, "tasks") == 0
        assert _rows(service.db, "decisions") == 0
        assert service.get_status()["persistence_failures"] == 1
        with pytest.raises(TaskNotFound):
            service.get_task(result.task_id)

    def test_failure_after_decision_write_rolls_back_both(
        self, service: DeferralService, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        record = service.decisions.record

        def record_then_fail(decision: Any, parent_id: Any = None, conn: Any = None) -> Any:
            record(decision, parent_id, conn=conn)
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(service.decisions, "record", record_then_fail)
        result = service.submit("log-rotation", {}, "low")

        assert result.verdict == "deferred"
        assert result.persisted is False
        assert _rows(service.db, "tasks") == 0
        assert _rows(service.db, "decisions") == 0

    def test_failed_reevaluation_keeps_task_and_trail(
        self, service: DeferralService, clock: FakeClock, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        result = service.submit("log-rotation", {}, "low")
        clock.set(NEXT_OFF_PEAK)

        def broken_release(task_id: str, estimated_power_w: Any = None, conn: Any = None) -> bool:
            raise PersistenceError("disk full")

        monkeypatch.setattr(service.queue, "release", broken_release)
        assert service.tick()["released"] == 0

        assert service.get_task(result.task_id).status == TaskStatus.DEFERRED
        assert len(service.get_decisions(result.task_id)) == 1
        assert service.errors.recent()[0].component == "queue"


# --- Status and loop ---


def test_status(service: DeferralService) -> None:
    service.submit("database-cleanup", {})
    status = service.get_status()

    assert status["running"] is False
    assert status["queue_counts"]["pending"] == 1
    assert "database-cleanup" in status["whitelist"]
    assert status["persistence_failures"] == 0
    assert status["is_off_peak"] is False
    assert status["next_off_peak"] == iso(NEXT_OFF_PEAK)
    assert status["peers_online"] == 0
    assert len(status["handlers"]) == 7


def test_background_loop(config: ServiceConfig, clock: FakeClock, sampler: FakeSampler) -> None:
    fast = config.with_overrides(poll_interval_s=0.05)
    with DeferralService(fast, clock=clock, sampler=sampler) as service:
        interrupted = service.submit("database-cleanup", {})
        service.queue.claim(interrupted.task_id)

        service.start()
        assert service.running
        fresh = service.submit("cache-warming", {})

        _wait_for_status(service, interrupted.task_id, TaskStatus.COMPLETED)
        _wait_for_status(service, fresh.task_id, TaskStatus.COMPLETED)

        service.stop(timeout=5)
        assert not service.running
