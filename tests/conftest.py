"""Shared fixtures for the scheduler tests"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

import pytest
import pytest_asyncio

from research_scheduler.jobs.orchestrator import SchedulerOrchestrator
from research_scheduler.metrics.metrics import Metrics, RuntimeStats
from research_scheduler.research.executor import QueryExecutor
from research_scheduler.schedule.trigger import CronTrigger
from research_scheduler.storage.db import Storage

from tests.fakes import FakeAnswerClient, FakeExporter


@dataclass
class Harness:
    storage: Storage
    client: FakeAnswerClient
    exporter: FakeExporter
    trigger: CronTrigger
    orchestrator: SchedulerOrchestrator
    stats: RuntimeStats = field(default_factory=RuntimeStats)


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "data" / "queries.db"


@pytest_asyncio.fixture
async def storage(db_path: Path):
    s = Storage(db_path)
    await s.connect()
    yield s
    await s.close()


@pytest.fixture
def fixed_clock():
    return lambda: datetime(2026, 1, 5, 8, 59, 30)


@pytest_asyncio.fixture
async def harness(storage: Storage, fixed_clock):
    client = FakeAnswerClient()
    exporter = FakeExporter()
    trigger = CronTrigger(clock=fixed_clock)
    stats = RuntimeStats()
    orchestrator = SchedulerOrchestrator(
        storage=storage,
        executor=QueryExecutor(client),
        trigger=trigger,
        exporter=exporter,
        metrics=Metrics(),
        runtime_stats=stats,
    )
    yield Harness(
        storage=storage,
        client=client,
        exporter=exporter,
        trigger=trigger,
        orchestrator=orchestrator,
        stats=stats,
    )
    await trigger.stop()
