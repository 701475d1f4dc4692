"""Append-only mesh event log."""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from datetime import datetime
from typing import Any

from ecodefer.models import Clock, iso
from ecodefer.storage.database import Database

logger = logging.getLogger(__name__)


class MeshEventLog:
    def __init__(self, db: Database, clock: Clock | None = None) -> None:
        self.db = db
        self.clock = clock or datetime.now

    def record(
        self,
        event_type: str,
        peer_id: str | None = None,
        task_id: str | None = None,
        data: dict[str, Any] | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> None:
        """Append an event, inside ``conn``'s transaction when one is given."""
        params = (
            str(uuid.uuid4()),
            event_type,
            peer_id,
            task_id,
            json.dumps(data or {}),
            iso(self.clock()),
        )
        sql = (
            "INSERT INTO mesh_events (id, event_type, peer_id, task_id, event_data, timestamp) "
            "VALUES (?, ?, ?, ?, ?, ?)"
        )
        if conn is not None:
            conn.execute(sql, params)
        else:
            self.db.execute_insert(sql, params)
        logger.debug(f"Mesh event {event_type} peer={peer_id} task={task_id}")

    def list(self, limit: int = 50, task_id: str | None = None) -> list[dict[str, Any]]:
        if task_id is None:
            rows = self.db.execute(
                "SELECT * FROM mesh_events ORDER BY timestamp DESC, rowid DESC LIMIT ?", (limit,)
            )
        else:
            rows = self.db.execute(
                "SELECT * FROM mesh_events WHERE task_id = ? "
                "ORDER BY timestamp DESC, rowid DESC LIMIT ?",
                (task_id, limit),
            )
        events = []
        for row in rows:
            event = dict(row)
            event["event_data"] = json.loads(event["event_data"])
            events.append(event)
        return events
