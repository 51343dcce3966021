"""Scheduling, firing and persisting query runs"""

import asyncio
from datetime import datetime, timedelta

import pytest

from research_scheduler.errors import StorageError
from research_scheduler.jobs.orchestrator import SchedulerOrchestrator
from research_scheduler.metrics.metrics import Metrics
from research_scheduler.research.executor import QueryExecutor
from research_scheduler.research.prompts import FAILURE_MESSAGE
from research_scheduler.schedule.trigger import CronTrigger
from research_scheduler.storage.types import RESULT_COMPLETED, RESULT_FAILED, NewQuery

from tests.fakes import FakeAnswerClient, FakeExporter


MORNING = datetime(2026, 1, 5, 9, 0)


async def _run_minutes(trigger: CronTrigger, start: datetime, count: int) -> None:
    for i in range(count):
        trigger.fire_due(start + timedelta(minutes=i))
        await trigger.drain()


async def _add(harness, text="q", cron="0 9 * * *", **kwargs) -> int:
    qid = await harness.storage.create_query(NewQuery(text, cron, **kwargs))
    harness.orchestrator.register(await harness.storage.get_query(qid))
    return qid


@pytest.mark.asyncio
@pytest.mark.parametrize("cron", ["0 9 * *", "0 0 9 * * *", "", "61 9 * * *"])
async def test_malformed_schedules_are_never_registered(harness, cron):
    qid = await harness.storage.create_query(NewQuery("bad", cron))
    assert harness.orchestrator.register(await harness.storage.get_query(qid)) is False
    assert harness.orchestrator.is_registered(qid) is False

    await _run_minutes(harness.trigger, datetime(2026, 1, 5, 0, 0), 24 * 60)
    assert harness.client.calls == []


@pytest.mark.asyncio
async def test_fire_persists_result_and_document(harness):
    qid = await _add(harness, "Chip exports", website_filters="site:sec.gov")

    await _run_minutes(harness.trigger, MORNING, 1)

    [result] = await harness.storage.list_results(qid)
    assert result.status == RESULT_COMPLETED
    assert result.exported_document_id == "doc-1"
    assert result.payload["content"] == "ABC"
    assert result.payload["metadata"]["query_id"] == qid
    assert harness.stats.last_executed_query_id == qid
    assert harness.stats.last_fire_ts is not None


@pytest.mark.asyncio
async def test_export_failure_still_saves_result(storage, fixed_clock):
    trigger = CronTrigger(clock=fixed_clock)
    orchestrator = SchedulerOrchestrator(
        storage, QueryExecutor(FakeAnswerClient()), trigger, exporter=FakeExporter(fail=True)
    )
    qid = await storage.create_query(NewQuery("q", "0 9 * * *"))

    result = await orchestrator.run_query(await storage.get_query(qid))

    assert result.status == RESULT_COMPLETED
    assert result.exported_document_id is None
    [stored] = await storage.list_results(qid)
    assert stored.id == result.id
    assert stored.exported_document_id is None


@pytest.mark.asyncio
async def test_disabled_exporter_is_skipped(storage):
    exporter = FakeExporter(enabled=False)
    orchestrator = SchedulerOrchestrator(storage, QueryExecutor(FakeAnswerClient()), CronTrigger(), exporter=exporter)
    qid = await storage.create_query(NewQuery("q", "0 9 * * *"))

    result = await orchestrator.run_query(await storage.get_query(qid))

    assert result.exported_document_id is None
    assert exporter.exported == []


@pytest.mark.asyncio
async def test_failed_execution_is_stored_and_not_exported(harness):
    harness.client.error = RuntimeError("down")
    qid = await _add(harness)

    result = await harness.orchestrator.run_query(await harness.storage.get_query(qid))

    assert result.status == RESULT_FAILED
    assert result.payload["content"] == FAILURE_MESSAGE
    assert harness.exporter.exported == []
    assert harness.stats.consecutive_ai_failures == 1
    [stored] = await harness.storage.list_results(qid)
    assert stored.status == RESULT_FAILED


@pytest.mark.asyncio
async def test_deleted_query_drops_its_trigger_on_fire(harness):
    qid = await _add(harness)
    await harness.storage.delete_query(qid)

    assert await harness.orchestrator.fire(qid) is None
    assert harness.orchestrator.is_registered(qid) is False
    assert len(harness.trigger) == 0
    assert harness.client.calls == []


@pytest.mark.asyncio
async def test_reregistering_replaces_trigger(harness):
    qid = await _add(harness)
    harness.orchestrator.register(await harness.storage.get_query(qid))

    assert len(harness.trigger) == 1
    await _run_minutes(harness.trigger, MORNING, 1)
    assert len(harness.client.calls) == 1


@pytest.mark.asyncio
async def test_unregister(harness):
    qid = await _add(harness)
    assert harness.orchestrator.unregister(qid) is True
    assert harness.orchestrator.unregister(qid) is False

    await _run_minutes(harness.trigger, MORNING, 1)
    assert harness.client.calls == []


class BlockingClient(FakeAnswerClient):
    def __init__(self):
        super().__init__()
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def complete(self, messages, domain_filter=None, recency_filter=None):
        self.started.set()
        await self.release.wait()
        return await super().complete(messages, domain_filter, recency_filter)


@pytest.mark.asyncio
async def test_overlapping_fire_is_skipped(storage):
    client = BlockingClient()
    metrics = Metrics()
    orchestrator = SchedulerOrchestrator(storage, QueryExecutor(client), CronTrigger(), metrics=metrics)
    qid = await storage.create_query(NewQuery("slow", "* * * * *"))

    first = asyncio.create_task(orchestrator.fire(qid))
    await asyncio.wait_for(client.started.wait(), timeout=5)

    assert await orchestrator.fire(qid) is None
    client.release.set()
    result_id = await asyncio.wait_for(first, timeout=5)

    assert result_id is not None
    assert len(client.calls) == 1
    assert metrics.registry.get_sample_value("query_overlapping_fires_total") == 1.0


@pytest.mark.asyncio
async def test_load_existing_registers_active_queries(harness):
    good = await harness.storage.create_query(NewQuery("good", "0 9 * * *"))
    await harness.storage.create_query(NewQuery("bad", "0 9 * *"))
    other = await harness.storage.create_query(NewQuery("other", "30 17 * * 1-5"))

    assert await harness.orchestrator.load_existing() == 2
    assert harness.orchestrator.registered_ids == [good, other]


@pytest.mark.asyncio
async def test_storage_failure_propagates_from_run_query(harness):
    qid = await _add(harness)
    query = await harness.storage.get_query(qid)
    await harness.storage._conn().execute("DROP TABLE query_results")

    with pytest.raises(StorageError):
        await harness.orchestrator.run_query(query)

    # a scheduled fire logs and carries on
    assert await harness.orchestrator.fire(qid) is None
    assert harness.orchestrator.is_registered(qid) is True


@pytest.mark.asyncio
async def test_followup_with_corrupt_parent_result_still_runs(harness):
    parent = await harness.storage.create_query(NewQuery("parent", "0 9 * * *"))
    conn = harness.storage._conn()
    await conn.execute(
        "INSERT INTO query_results(query_id, execution_timestamp, payload_json, status) "
        "VALUES(?, '2026-01-05T09:00:00+00:00', '{not json', 'completed')",
        (parent,),
    )
    await conn.commit()
    child = await harness.storage.create_followup_query(parent, NewQuery("child", "5 9 * * *"), delay_minutes=5)

    result = await harness.orchestrator.run_query(await harness.storage.get_query(child))

    assert result.status == RESULT_COMPLETED
    assert result.payload["metadata"]["is_followup"] is False
    [call] = harness.client.calls
    assert [m["role"] for m in call["messages"]] == ["system", "user"]


@pytest.mark.asyncio
async def test_run_locks_are_released_with_the_trigger(harness):
    qid = await _add(harness)
    await _run_minutes(harness.trigger, MORNING, 1)
    assert qid in harness.orchestrator._running

    harness.orchestrator.unregister(qid)
    assert qid not in harness.orchestrator._running


@pytest.mark.asyncio
async def test_deleted_query_leaves_no_run_lock(harness):
    qid = await _add(harness)
    await harness.storage.delete_query(qid)

    await harness.orchestrator.fire(qid)
    assert harness.orchestrator._running == {}
