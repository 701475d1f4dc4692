"""Tests for the SQLite storage layer."""

from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from ecodefer.errors import PersistenceError
from ecodefer.storage.database import Database


def _insert_task(conn: sqlite3.Connection, task_id: str = "t1") -> None:
    conn.execute(
        "INSERT INTO tasks (id, name, status, created_at) VALUES (?, ?, ?, ?)",
        (task_id, "database-cleanup", "queued", "2026-03-04T14:00:00"),
    )


def _insert_peer(conn: sqlite3.Connection, peer_id: str = "p1") -> None:
    conn.execute(
        "INSERT INTO peers (id, name, last_seen) VALUES (?, ?, ?)",
        (peer_id, "Peer", "2026-03-04T14:00:00"),
    )


def _insert_delegation(conn: sqlite3.Connection, delegation_id: str, status: str) -> None:
    conn.execute(
        "INSERT INTO delegations (id, task_id, from_peer_id, to_peer_id, status, created_at) "
        "VALUES (?, 't1', 'local', 'p1', ?, '2026-03-04T14:00:00')",
        (delegation_id, status),
    )


def test_database_init(tmp_path: Path) -> None:
    db = Database(tmp_path)
    db.ensure_tables()
    assert db.db_path.exists()
    assert (tmp_path / "logs").is_dir()
    assert db.schema_version() == 1


def test_ensure_tables_is_idempotent(tmp_path: Path) -> None:
    db = Database(tmp_path)
    db.ensure_tables()
    db.ensure_tables()
    assert db.schema_version() == 1


def test_wal_mode(tmp_path: Path) -> None:
    db = Database(tmp_path)
    db.ensure_tables()
    rows = db.execute("PRAGMA journal_mode")
    assert rows[0][0] == "wal"


def test_connect_rolls_back_on_error(tmp_path: Path) -> None:
    db = Database(tmp_path)
    db.ensure_tables()
    with pytest.raises(RuntimeError):
        with db.connect() as conn:
            _insert_task(conn)
            raise RuntimeError("boom")
    assert db.execute("SELECT * FROM tasks") == []


def test_query_errors_become_persistence_errors(tmp_path: Path) -> None:
    db = Database(tmp_path)
    db.ensure_tables()
    with pytest.raises(PersistenceError):
        db.execute("SELECT * FROM no_such_table")
    with pytest.raises(PersistenceError):
        db.execute_insert("INSERT INTO no_such_table VALUES (1)")


def test_integrity_errors_propagate(tmp_path: Path) -> None:
    db = Database(tmp_path)
    db.ensure_tables()
    with db.connect() as conn:
        _insert_task(conn)
    with pytest.raises(sqlite3.IntegrityError):
        db.execute_insert(
            "INSERT INTO tasks (id, name, status, created_at) VALUES ('t1', 'x', 'queued', 'now')"
        )


def test_task_status_is_constrained(tmp_path: Path) -> None:
    db = Database(tmp_path)
    db.ensure_tables()
    with pytest.raises(sqlite3.IntegrityError):
        db.execute_insert(
            "INSERT INTO tasks (id, name, status, created_at) VALUES ('t1', 'x', 'running', 'now')"
        )


class TestDelegationIndex:
    def test_one_active_delegation_per_task(self, tmp_path: Path) -> None:
        db = Database(tmp_path)
        db.ensure_tables()
        with db.connect() as conn:
            _insert_task(conn)
            _insert_peer(conn)
            _insert_delegation(conn, "d1", "pending")

        with pytest.raises(sqlite3.IntegrityError):
            with db.connect() as conn:
                _insert_delegation(conn, "d2", "accepted")

    def test_finished_delegations_do_not_block(self, tmp_path: Path) -> None:
        db = Database(tmp_path)
        db.ensure_tables()
        with db.connect() as conn:
            _insert_task(conn)
            _insert_peer(conn)
            _insert_delegation(conn, "d1", "retracted")
            _insert_delegation(conn, "d2", "failed")
            _insert_delegation(conn, "d3", "pending")
        assert len(db.execute("SELECT * FROM delegations")) == 3


def test_carbon_avoided_cannot_be_negative(tmp_path: Path) -> None:
    db = Database(tmp_path)
    db.ensure_tables()
    with pytest.raises(sqlite3.IntegrityError):
        db.execute_insert(
            """
            INSERT INTO carbon_records (
                id, task_id, executed_peer_id, grid_carbon_intensity, renewable_percent,
                energy_used_wh, carbon_emitted_kg, carbon_avoided_kg, executed_at
            ) VALUES ('c1', 't1', 'local', 400, 30, 10, 0.004, -0.001, 'now')
            """
        )
