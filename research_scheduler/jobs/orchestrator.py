from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Protocol

from research_scheduler.errors import ExternalAPIError, StorageError
from research_scheduler.export.google_docs import ExportedDocument
from research_scheduler.metrics.metrics import Metrics, RuntimeStats
from research_scheduler.research.context import build_context
from research_scheduler.research.executor import QueryExecutor
from research_scheduler.schedule.cron import has_five_fields
from research_scheduler.schedule.trigger import CronTrigger
from research_scheduler.storage.db import Storage
from research_scheduler.storage.types import STATUS_ACTIVE, ExecutionResult, NewResult, ScheduledQuery
from research_scheduler.utils import now_utc


logger = logging.getLogger(__name__)


TRIGGER_SCHEDULED = "scheduled"
TRIGGER_MANUAL = "manual"


class Exporter(Protocol):
    @property
    def enabled(self) -> bool: ...

    async def export(self, query: ScheduledQuery, payload: dict[str, Any]) -> ExportedDocument: ...


class SchedulerOrchestrator:
    """Connects persisted queries to the cron trigger.

    Each fire re-reads the query from storage, so edits made after
    registration are honoured and deleted queries drop their trigger. Fires
    that arrive while the same query is still running are skipped.
    """

    def __init__(
        self,
        storage: Storage,
        executor: QueryExecutor,
        trigger: CronTrigger,
        exporter: Exporter | None = None,
        metrics: Metrics | None = None,
        runtime_stats: RuntimeStats | None = None,
    ) -> None:
        self._storage = storage
        self._executor = executor
        self._trigger = trigger
        self._exporter = exporter
        self._metrics = metrics or Metrics()
        self._stats = runtime_stats or RuntimeStats()
        self._handles: dict[int, int] = {}
        self._running: dict[int, asyncio.Lock] = {}

    @property
    def registered_ids(self) -> list[int]:
        return sorted(self._handles)

    def is_registered(self, query_id: int) -> bool:
        return query_id in self._handles

    def register(self, query: ScheduledQuery) -> bool:
        """Attach a query to the trigger. Malformed schedules are logged and skipped."""
        if not has_five_fields(query.schedule_expression):
            logger.error(
                "invalid cron schedule for query %s: %r",
                query.id,
                query.schedule_expression,
            )
            return False

        self.unregister(query.id)
        try:
            handle = self._trigger.register(
                query.schedule_expression,
                self._callback(query.id),
                name=f"query-{query.id}",
            )
        except ValueError:
            logger.error("unusable cron schedule for query %s: %r", query.id, query.schedule_expression)
            return False

        self._handles[query.id] = handle
        self._metrics.registered_triggers.set(len(self._handles))
        logger.info("scheduled query %s with cron %r", query.id, query.schedule_expression)
        return True

    def unregister(self, query_id: int) -> bool:
        self._drop_idle_lock(query_id)
        handle = self._handles.pop(query_id, None)
        if handle is None:
            return False
        self._trigger.unregister(handle)
        self._metrics.registered_triggers.set(len(self._handles))
        logger.info("unscheduled query %s", query_id)
        return True

    def _drop_idle_lock(self, query_id: int) -> None:
        lock = self._running.get(query_id)
        if lock is not None and not lock.locked():
            del self._running[query_id]

    async def load_existing(self) -> int:
        queries = await self._storage.list_active_queries()
        registered = 0
        for q in queries:
            if self.register(q):
                registered += 1
        logger.info("loaded %s/%s existing scheduled queries", registered, len(queries))
        return registered

    def _callback(self, query_id: int):
        async def _fire() -> None:
            await self.fire(query_id)

        return _fire

    async def fire(self, query_id: int) -> int | None:
        """One scheduled run. Returns the stored result id, or None when skipped."""
        lock = self._running.setdefault(query_id, asyncio.Lock())
        if lock.locked():
            self._metrics.overlapping_fires_total.inc()
            logger.warning("query %s still running, skipping overlapping fire", query_id)
            return None

        try:
            async with lock:
                return await self._fire_locked(query_id)
        finally:
            if query_id not in self._handles:
                self._running.pop(query_id, None)

    async def _fire_locked(self, query_id: int) -> int | None:
        self._stats.last_fire_ts = time.time()
        try:
            query = await self._storage.get_query(query_id)
        except StorageError:
            logger.exception("could not load query %s for scheduled run", query_id)
            return None

        if query is None or query.status != STATUS_ACTIVE:
            logger.info("query %s no longer active, dropping its trigger", query_id)
            self.unregister(query_id)
            return None

        logger.info("running scheduled query %s: %r", query.id, query.query_text)
        try:
            result = await self.run_query(query, trigger=TRIGGER_SCHEDULED)
        except StorageError:
            logger.exception("saving result for query %s failed", query_id)
            return None
        return result.id

    async def _export(self, query: ScheduledQuery, payload: dict[str, Any]) -> str | None:
        if self._exporter is None or not self._exporter.enabled:
            return None
        try:
            doc = await self._exporter.export(query, payload)
        except ExternalAPIError as e:
            self._metrics.export_failures_total.inc()
            self._stats.consecutive_export_failures += 1
            self._metrics.set_consecutive("export", self._stats.consecutive_export_failures)
            logger.warning("export failed query_id=%s err=%s", query.id, e)
            return None
        except Exception:
            self._metrics.export_failures_total.inc()
            logger.exception("export failed query_id=%s", query.id)
            return None

        self._metrics.exports_total.inc()
        self._stats.consecutive_export_failures = 0
        self._metrics.set_consecutive("export", 0)
        logger.info("saved results to document %r", doc.title)
        return doc.document_id

    async def run_query(self, query: ScheduledQuery, trigger: str = TRIGGER_MANUAL) -> ExecutionResult:
        """Execute, export best-effort, and persist. StorageError propagates."""
        self._metrics.executions_total.labels(trigger=trigger).inc()
        self._stats.last_executed_query_id = query.id

        context = await build_context(self._storage, query)

        with self._metrics.ai_latency_seconds.time():
            outcome = await self._executor.execute(query, context)

        if outcome.failed:
            self._metrics.execution_failures_total.inc()
            self._stats.consecutive_ai_failures += 1
            document_id = None
        else:
            self._stats.consecutive_ai_failures = 0
            document_id = await self._export(query, outcome.payload)
        self._metrics.set_consecutive("ai", self._stats.consecutive_ai_failures)

        executed_at = now_utc()
        result_id = await self._storage.create_result(
            NewResult(
                query_id=query.id,
                payload=outcome.payload,
                status=outcome.status,
                exported_document_id=document_id,
                executed_at=executed_at,
            )
        )
        logger.info("query %s finished status=%s result_id=%s", query.id, outcome.status, result_id)

        return ExecutionResult(
            id=result_id,
            query_id=query.id,
            execution_timestamp=executed_at.isoformat(),
            payload=outcome.payload,
            exported_document_id=document_id,
            status=outcome.status,
        )
