"""Shared fixtures: a controllable clock, a fake load sampler and a temp service."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from ecodefer.config import ServiceConfig
from ecodefer.engine.service import DeferralService
from ecodefer.scheduling.scheduler import LoadSample
from ecodefer.storage.database import Database

# Wednesday afternoon: peak hours under the default (2-5) off-peak set
PEAK = datetime(2026, 3, 4, 14, 0, 0)
NEXT_OFF_PEAK = datetime(2026, 3, 5, 2, 0, 0)
OFF_PEAK = datetime(2026, 3, 4, 3, 0, 0)


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)

    def set(self, now: datetime) -> None:
        self.now = now


class FakeSampler:
    def __init__(self, cpu_percent: float = 10.0, memory_percent: float = 20.0) -> None:
        self.cpu_percent = cpu_percent
        self.memory_percent = memory_percent
        self.calls = 0

    def __call__(self) -> LoadSample:
        self.calls += 1
        return LoadSample(
            cpu_percent=self.cpu_percent,
            memory_percent=self.memory_percent,
            memory_used_mb=512.0,
            load_average=0.5,
        )


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(PEAK)


@pytest.fixture
def sampler() -> FakeSampler:
    return FakeSampler()


@pytest.fixture
def config(tmp_path: Path) -> ServiceConfig:
    return ServiceConfig(data_dir=tmp_path / "ecodefer")


@pytest.fixture
def db(config: ServiceConfig) -> Database:
    database = Database(config.data_dir)
    database.ensure_tables()
    return database


@pytest.fixture
def service(
    config: ServiceConfig, clock: FakeClock, sampler: FakeSampler
) -> Iterator[DeferralService]:
    svc = DeferralService(config, clock=clock, sampler=sampler)
    yield svc
    svc.close()


def make_service(config: ServiceConfig, clock: FakeClock, sampler: FakeSampler, **overrides):
    """Service over the same data dir with a tweaked config."""
    return DeferralService(config.with_overrides(**overrides), clock=clock, sampler=sampler)
