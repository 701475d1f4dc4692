"""Async read-only access for the HTTP API.

Reads go through aiosqlite so request handlers never block the event loop
on SQLite I/O. Writes always go through ``Database`` on the service.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import aiosqlite


class AsyncReader:
    """Short-lived async connection to the service database."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None

    async def __aenter__(self) -> AsyncReader:
        self._db = await aiosqlite.connect(str(self.db_path))
        self._db.row_factory = aiosqlite.Row
        return self

    async def __aexit__(
        self,
        exc_type: type | None,
        exc_val: BaseException | None,
        exc_tb: object | None,
    ) -> None:
        await self.close()

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    async def _fetchall(self, sql: str, params: tuple[Any, ...] = ()) -> list[dict[str, Any]]:
        assert self._db is not None
        async with self._db.execute(sql, params) as cursor:
            rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    async def history(self, limit: int = 20, offset: int = 0) -> list[dict[str, Any]]:
        rows = await self._fetchall(
            "SELECT * FROM tasks ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
            (limit, offset),
        )
        for row in rows:
            row["payload"] = json.loads(row["payload"]) if row["payload"] else {}
            row["result"] = json.loads(row["result"]) if row["result"] else None
        return rows

    async def decisions(self, task_id: str) -> list[dict[str, Any]]:
        rows = await self._fetchall(
            "SELECT * FROM decisions WHERE task_id = ? ORDER BY timestamp, rowid", (task_id,)
        )
        for row in rows:
            row["reasoning"] = json.loads(row["reasoning"])
            row["system_state"] = json.loads(row["system_state"])
        return rows

    async def mesh_events(self, limit: int = 50) -> list[dict[str, Any]]:
        rows = await self._fetchall(
            "SELECT * FROM mesh_events ORDER BY timestamp DESC, rowid DESC LIMIT ?", (limit,)
        )
        for row in rows:
            row["event_data"] = json.loads(row["event_data"])
        return rows
