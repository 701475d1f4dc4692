"""Eco Scheduler - off-peak classification, capacity sampling, window search."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any

import psutil

from ecodefer.config import ServiceConfig
from ecodefer.errors import ErrorChannel, PersistenceError
from ecodefer.models import Clock, Urgency, iso
from ecodefer.storage.database import Database

logger = logging.getLogger(__name__)

# Upper bound on the boundary search; off-peak hours are validated non-empty
_SEARCH_HOURS = 24 * 8


@dataclass(frozen=True)
class LoadSample:
    """One snapshot of host utilisation."""

    cpu_percent: float
    memory_percent: float
    memory_used_mb: float = 0.0
    load_average: float = 0.0


@dataclass(frozen=True)
class CapacityCheck:
    """Result of comparing a load sample against the configured thresholds."""

    can_execute: bool
    sample: LoadSample
    is_off_peak: bool
    reasons: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "can_execute": self.can_execute,
            "is_off_peak": self.is_off_peak,
            "reasons": list(self.reasons),
            **asdict(self.sample),
        }


LoadSampler = Callable[[], LoadSample]


def psutil_sampler() -> LoadSample:
    """Sample live CPU and memory utilisation without blocking."""
    memory = psutil.virtual_memory()
    try:
        load_average = psutil.getloadavg()[0]
    except (AttributeError, OSError):
        load_average = 0.0
    return LoadSample(
        cpu_percent=psutil.cpu_percent(interval=None),
        memory_percent=memory.percent,
        memory_used_mb=memory.used / (1024 * 1024),
        load_average=load_average,
    )


class EcoScheduler:
    """
    Decides when work may run.

    Off-peak hours are local wall-clock hours. Weekends may use their own
    hour set. Every method takes its notion of "now" from the injected clock,
    so results are reproducible for a given config, clock and sample.
    """

    def __init__(
        self,
        config: ServiceConfig,
        db: Database | None = None,
        sampler: LoadSampler | None = None,
        clock: Clock | None = None,
        errors: ErrorChannel | None = None,
    ) -> None:
        self.config = config
        self.db = db
        self.sampler = sampler or psutil_sampler
        self.clock = clock or datetime.now
        self.errors = errors

    def _hours_for(self, at: datetime) -> tuple[int, ...]:
        if at.weekday() >= 5 and self.config.weekend_off_peak_hours:
            return self.config.weekend_off_peak_hours
        return self.config.off_peak_hours

    def is_off_peak(self, at: datetime | None = None) -> bool:
        at = at or self.clock()
        return at.hour in self._hours_for(at)

    def next_off_peak_boundary(self, after: datetime | None = None) -> datetime:
        """Earliest off-peak hour start at or after ``after``."""
        after = after or self.clock()
        candidate = after.replace(minute=0, second=0, microsecond=0)
        if candidate < after:
            candidate += timedelta(hours=1)
        for _ in range(_SEARCH_HOURS):
            if candidate.hour in self._hours_for(candidate):
                return candidate
            candidate += timedelta(hours=1)
        raise RuntimeError("No off-peak hour found within search horizon")

    def find_optimal_window(self, urgency: str = Urgency.NORMAL) -> datetime:
        """
        Find when a task of the given urgency should run.

        Normal and above run now if already off-peak, otherwise at the next
        off-peak boundary. Lower urgencies always land on an hour boundary so
        deferred work batches together.
        """
        now = self.clock()
        if Urgency(urgency).rank >= Urgency.NORMAL.rank and self.is_off_peak(now):
            return now
        return self.next_off_peak_boundary(now)

    def check_capacity(self) -> CapacityCheck:
        """Sample load, persist the sample and compare against thresholds."""
        sample = self.sampler()
        off_peak = self.is_off_peak()
        reasons: list[str] = []

        if sample.cpu_percent >= self.config.cpu_threshold_percent:
            reasons.append(
                f"CPU {sample.cpu_percent:.0f}% >= {self.config.cpu_threshold_percent:.0f}%"
            )
        if sample.memory_percent >= self.config.memory_threshold_percent:
            reasons.append(
                f"memory {sample.memory_percent:.0f}% >= "
                f"{self.config.memory_threshold_percent:.0f}%"
            )

        check = CapacityCheck(
            can_execute=not reasons, sample=sample, is_off_peak=off_peak, reasons=reasons
        )
        self._store_sample(check)
        logger.debug(f"Capacity check: {check.to_dict()}")
        return check

    def can_execute_task(self) -> bool:
        return self.check_capacity().can_execute

    def _store_sample(self, check: CapacityCheck) -> None:
        if self.db is None:
            return
        try:
            self.db.execute_insert(
                """
                INSERT INTO metrics (
                    id, timestamp, cpu_percent, memory_percent,
                    memory_used_mb, load_average, is_off_peak
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(uuid.uuid4()),
                    iso(self.clock()),
                    check.sample.cpu_percent,
                    check.sample.memory_percent,
                    check.sample.memory_used_mb,
                    check.sample.load_average,
                    1 if check.is_off_peak else 0,
                ),
            )
        except PersistenceError as e:
            e.component = "scheduler"
            if self.errors is not None:
                self.errors.publish(e)
            else:
                logger.warning(f"Failed to store metrics: {e}")

    def recent_metrics(self, limit: int = 20) -> list[dict[str, Any]]:
        if self.db is None:
            return []
        rows = self.db.execute(
            "SELECT * FROM metrics ORDER BY timestamp DESC LIMIT ?", (limit,)
        )
        return [dict(row) for row in rows]
