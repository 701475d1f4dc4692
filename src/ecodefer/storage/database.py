"""SQLite database with WAL mode and one transaction per connection block."""

from __future__ import annotations

import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from ecodefer.errors import PersistenceError

SCHEMA_VERSION = 1


class Database:
    """SQLite storage layer with WAL mode for the deferral service."""

    def __init__(self, data_dir: Path | None = None, timeout: float = 10.0) -> None:
        self.data_dir = data_dir or Path.home() / ".ecodefer"
        self.db_path = self.data_dir / "data" / "ecodefer.db"
        self.timeout = timeout

    def _ensure_dirs(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        (self.data_dir / "data").mkdir(exist_ok=True)
        (self.data_dir / "logs").mkdir(exist_ok=True)

    @contextmanager
    def connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a database connection with WAL mode.

        Everything executed inside the block commits together or not at all.
        """
        self._ensure_dirs()
        conn = sqlite3.connect(str(self.db_path), timeout=self.timeout)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def ensure_tables(self) -> None:
        """Create all tables if they don't exist."""
        with self.connect() as conn:
            conn.executescript(_SCHEMA)

    def execute(self, sql: str, params: tuple[Any, ...] = ()) -> list[sqlite3.Row]:
        """Execute a query and return results."""
        try:
            with self.connect() as conn:
                cursor = conn.execute(sql, params)
                return cursor.fetchall()
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as e:
            raise PersistenceError(f"Query failed: {e}") from e

    def execute_insert(self, sql: str, params: tuple[Any, ...] = ()) -> int:
        """Execute an insert and return rowcount."""
        try:
            with self.connect() as conn:
                cursor = conn.execute(sql, params)
                return cursor.rowcount
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as e:
            raise PersistenceError(f"Write failed: {e}") from e

    def schema_version(self) -> int:
        rows = self.execute("SELECT MAX(version) AS version FROM schema_version")
        return int(rows[0]["version"] or 0) if rows else 0


_SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    payload TEXT NOT NULL DEFAULT '{}',
    urgency TEXT NOT NULL DEFAULT 'normal',
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    scheduled_for TEXT,
    executed_at TEXT,
    completed_at TEXT,
    estimated_power_w REAL,
    actual_power_w REAL,
    result TEXT,
    error TEXT,
    CHECK (status IN ('queued', 'deferred', 'executing', 'completed', 'failed', 'denied'))
);
CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status, scheduled_for);
CREATE INDEX IF NOT EXISTS idx_tasks_name ON tasks(name);

CREATE TABLE IF NOT EXISTS feedback (
    id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    note TEXT NOT NULL DEFAULT '',
    timestamp TEXT NOT NULL,
    FOREIGN KEY(task_id) REFERENCES tasks(id),
    CHECK (kind IN ('necessary', 'avoidable', 'optimizable'))
);
CREATE INDEX IF NOT EXISTS idx_feedback_task ON feedback(task_id);

CREATE TABLE IF NOT EXISTS metrics (
    id TEXT PRIMARY KEY,
    timestamp TEXT NOT NULL,
    cpu_percent REAL NOT NULL,
    memory_percent REAL NOT NULL,
    memory_used_mb REAL NOT NULL DEFAULT 0.0,
    load_average REAL NOT NULL DEFAULT 0.0,
    is_off_peak INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS decisions (
    id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL,
    parent_id TEXT,
    verdict TEXT NOT NULL,
    reasoning TEXT NOT NULL DEFAULT '[]',
    system_state TEXT NOT NULL DEFAULT '{}',
    timestamp TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_decisions_task ON decisions(task_id, timestamp);

CREATE TABLE IF NOT EXISTS learned_patterns (
    task_name TEXT PRIMARY KEY,
    necessary_count INTEGER NOT NULL DEFAULT 0,
    avoidable_count INTEGER NOT NULL DEFAULT 0,
    optimizable_count INTEGER NOT NULL DEFAULT 0,
    confidence REAL NOT NULL DEFAULT 0.0,
    last_updated TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS whitelist_overrides (
    task_name TEXT PRIMARY KEY,
    action TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    CHECK (action IN ('add', 'remove'))
);

CREATE TABLE IF NOT EXISTS peers (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    location TEXT NOT NULL DEFAULT '',
    energy TEXT NOT NULL DEFAULT '{}',
    capacity TEXT NOT NULL DEFAULT '{}',
    available TEXT NOT NULL DEFAULT '{}',
    allowed_tasks TEXT NOT NULL DEFAULT '[]',
    max_task_duration_s REAL NOT NULL DEFAULT 3600.0,
    timezone TEXT NOT NULL DEFAULT 'UTC',
    last_seen TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'online',
    CHECK (status IN ('online', 'offline', 'maintenance'))
);

CREATE TABLE IF NOT EXISTS importance_votes (
    id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL,
    task_name TEXT NOT NULL DEFAULT '',
    description TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL DEFAULT 'voting',
    created_at TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    expected_voters TEXT,
    final_consensus TEXT,
    confidence REAL NOT NULL DEFAULT 0.0,
    CHECK (status IN ('voting', 'closed', 'consensus')),
    CHECK (confidence BETWEEN 0.0 AND 1.0)
);

CREATE TABLE IF NOT EXISTS ballots (
    id TEXT PRIMARY KEY,
    vote_id TEXT NOT NULL,
    voter_id TEXT NOT NULL,
    importance TEXT NOT NULL,
    reasoning TEXT NOT NULL DEFAULT '',
    timestamp TEXT NOT NULL,
    UNIQUE (vote_id, voter_id),
    FOREIGN KEY(vote_id) REFERENCES importance_votes(id)
);

CREATE TABLE IF NOT EXISTS delegations (
    id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL,
    from_peer_id TEXT NOT NULL,
    to_peer_id TEXT NOT NULL,
    from_user_id TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL DEFAULT 'pending',
    urgency TEXT NOT NULL DEFAULT 'normal',
    created_at TEXT NOT NULL,
    accepted_at TEXT,
    started_at TEXT,
    completed_at TEXT,
    energy_used_wh REAL,
    carbon_saved_kg REAL,
    error TEXT,
    FOREIGN KEY(task_id) REFERENCES tasks(id),
    FOREIGN KEY(to_peer_id) REFERENCES peers(id),
    CHECK (status IN ('pending', 'accepted', 'executing', 'completed', 'failed', 'retracted'))
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_delegations_active
    ON delegations(task_id) WHERE status IN ('pending', 'accepted', 'executing');

CREATE TABLE IF NOT EXISTS carbon_records (
    id TEXT PRIMARY KEY,
    task_id TEXT UNIQUE NOT NULL,
    executed_peer_id TEXT NOT NULL,
    grid_carbon_intensity REAL NOT NULL,
    renewable_percent REAL NOT NULL,
    energy_used_wh REAL NOT NULL,
    carbon_emitted_kg REAL NOT NULL,
    carbon_avoided_kg REAL NOT NULL,
    executed_at TEXT NOT NULL,
    CHECK (carbon_avoided_kg >= 0.0),
    CHECK (energy_used_wh >= 0.0)
);

CREATE TABLE IF NOT EXISTS mesh_events (
    id TEXT PRIMARY KEY,
    event_type TEXT NOT NULL,
    peer_id TEXT,
    task_id TEXT,
    event_data TEXT NOT NULL DEFAULT '{}',
    timestamp TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS task_cooldown (
    user_id TEXT PRIMARY KEY,
    last_task_id TEXT,
    last_executed_at TEXT NOT NULL,
    idle_until TEXT NOT NULL,
    reason TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS delegation_hours (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    day_of_week INTEGER,
    start_hour INTEGER NOT NULL,
    start_minute INTEGER NOT NULL DEFAULT 0,
    end_hour INTEGER NOT NULL,
    end_minute INTEGER NOT NULL DEFAULT 0,
    is_active INTEGER NOT NULL DEFAULT 1,
    description TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL,
    CHECK (day_of_week IS NULL OR day_of_week BETWEEN 0 AND 6)
);
CREATE INDEX IF NOT EXISTS idx_delegation_hours_user ON delegation_hours(user_id);

CREATE TABLE IF NOT EXISTS ethical_rules (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    rule_type TEXT NOT NULL,
    rule_value TEXT NOT NULL DEFAULT '',
    enforcement_level TEXT NOT NULL DEFAULT 'strict',
    is_active INTEGER NOT NULL DEFAULT 1,
    reasoning TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL,
    CHECK (enforcement_level IN ('strict', 'warn'))
);
CREATE INDEX IF NOT EXISTS idx_ethical_rules_user ON ethical_rules(user_id);

CREATE TABLE IF NOT EXISTS user_tiers (
    user_id TEXT PRIMARY KEY,
    tier TEXT NOT NULL DEFAULT 'free',
    total_contributions INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL
);

INSERT OR IGNORE INTO schema_version (version) VALUES (1);
"""
