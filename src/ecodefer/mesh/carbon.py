"""
Carbon Ledger

One record per executed task, local or delegated. Emissions are computed
from the executing node's live grid intensity; the avoided figure compares
against a configured worst-case intensity and is never negative.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from ecodefer.config import ServiceConfig
from ecodefer.mesh.models import CarbonRecord
from ecodefer.models import Clock, iso
from ecodefer.storage.database import Database

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GridSignal:
    carbon_intensity: float  # kg CO2/MWh
    renewable_percent: float


GridSignalProvider = Callable[[], GridSignal]


def static_grid(config: ServiceConfig) -> GridSignalProvider:
    """Provider returning the configured grid figures."""
    signal = GridSignal(config.grid_carbon_intensity, config.grid_renewable_percent)
    return lambda: signal


def emissions_kg(energy_wh: float, intensity_kg_per_mwh: float) -> float:
    return energy_wh / 1e6 * intensity_kg_per_mwh


def carbon_avoided_kg(energy_wh: float, intensity: float, reference_intensity: float) -> float:
    avoided = emissions_kg(energy_wh, reference_intensity) - emissions_kg(energy_wh, intensity)
    return max(0.0, avoided)


class CarbonLedger:
    def __init__(
        self,
        db: Database,
        config: ServiceConfig,
        grid: GridSignalProvider | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.db = db
        self.config = config
        self.grid = grid or static_grid(config)
        self.clock = clock or datetime.now

    def record(
        self,
        task_id: str,
        peer_id: str,
        energy_used_wh: float,
        signal: GridSignal | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> CarbonRecord:
        """Write the task's carbon record, or return the existing one.

        Pass ``conn`` to write inside the caller's transaction, next to the
        task's completion.
        """
        signal = signal or self.grid()
        energy_used_wh = max(0.0, float(energy_used_wh))
        record = CarbonRecord(
            id=str(uuid.uuid4()),
            task_id=task_id,
            executed_peer_id=peer_id,
            grid_carbon_intensity=signal.carbon_intensity,
            renewable_percent=signal.renewable_percent,
            energy_used_wh=energy_used_wh,
            carbon_emitted_kg=emissions_kg(energy_used_wh, signal.carbon_intensity),
            carbon_avoided_kg=carbon_avoided_kg(
                energy_used_wh, signal.carbon_intensity, self.config.reference_carbon_intensity
            ),
            executed_at=iso(self.clock()),
        )
        if conn is None:
            with self.db.connect() as own:
                return self._insert(own, record)
        return self._insert(conn, record)

    def _insert(self, conn: sqlite3.Connection, record: CarbonRecord) -> CarbonRecord:
        cursor = conn.execute(
            """
            INSERT OR IGNORE INTO carbon_records (
                id, task_id, executed_peer_id, grid_carbon_intensity, renewable_percent,
                energy_used_wh, carbon_emitted_kg, carbon_avoided_kg, executed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.id,
                record.task_id,
                record.executed_peer_id,
                record.grid_carbon_intensity,
                record.renewable_percent,
                record.energy_used_wh,
                record.carbon_emitted_kg,
                record.carbon_avoided_kg,
                record.executed_at,
            ),
        )
        if cursor.rowcount == 0:
            row = conn.execute(
                "SELECT * FROM carbon_records WHERE task_id = ?", (record.task_id,)
            ).fetchone()
            return CarbonRecord.from_row(row)
        logger.info(
            f"Carbon recorded for {record.task_id}: "
            f"{record.carbon_emitted_kg:.6f} kg emitted, {record.carbon_avoided_kg:.6f} kg avoided"
        )
        return record

    def get(self, task_id: str) -> CarbonRecord | None:
        rows = self.db.execute("SELECT * FROM carbon_records WHERE task_id = ?", (task_id,))
        return CarbonRecord.from_row(rows[0]) if rows else None

    def summary(self) -> dict[str, Any]:
        rows = self.db.execute(
            """
            SELECT executed_peer_id,
                   COUNT(*) AS tasks,
                   COALESCE(SUM(energy_used_wh), 0) AS energy_used_wh,
                   COALESCE(SUM(carbon_emitted_kg), 0) AS carbon_emitted_kg,
                   COALESCE(SUM(carbon_avoided_kg), 0) AS carbon_avoided_kg
            FROM carbon_records
            GROUP BY executed_peer_id
            ORDER BY executed_peer_id
            """
        )
        by_peer = {row["executed_peer_id"]: dict(row) for row in rows}
        return {
            "tasks": sum(r["tasks"] for r in by_peer.values()),
            "energy_used_wh": sum(r["energy_used_wh"] for r in by_peer.values()),
            "carbon_emitted_kg": sum(r["carbon_emitted_kg"] for r in by_peer.values()),
            "carbon_avoided_kg": sum(r["carbon_avoided_kg"] for r in by_peer.values()),
            "by_peer": by_peer,
        }
