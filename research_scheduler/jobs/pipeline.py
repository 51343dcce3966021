from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from research_scheduler.ai.client import AIConfig, AnswerClient
from research_scheduler.config import Config
from research_scheduler.errors import ExternalAPIError
from research_scheduler.export.google_docs import GoogleDocsExporter, load_access_token
from research_scheduler.jobs.followups import FollowupRequest, create_followup
from research_scheduler.jobs.orchestrator import SchedulerOrchestrator
from research_scheduler.metrics.metrics import Metrics, RuntimeStats
from research_scheduler.research.executor import QueryExecutor
from research_scheduler.schedule.trigger import CronTrigger
from research_scheduler.storage.db import Storage
from research_scheduler.storage.types import NewQuery, ScheduledQuery


logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    config: Config
    storage: Storage
    ai: AnswerClient
    exporter: GoogleDocsExporter
    executor: QueryExecutor
    trigger: CronTrigger
    orchestrator: SchedulerOrchestrator
    metrics: Metrics
    runtime_stats: RuntimeStats
    checks_task: asyncio.Task | None = None

    async def add_query(self, query: NewQuery) -> ScheduledQuery | None:
        query_id = await self.storage.create_query(query)
        created = await self.storage.get_query(query_id)
        if created is not None:
            self.orchestrator.register(created)
        return created

    async def add_followup(self, parent_id: int, request: FollowupRequest) -> int:
        return await create_followup(
            self.storage,
            self.orchestrator,
            parent_id,
            request,
            delay_minutes=self.config.followup_delay_minutes,
        )

    async def delete_query(self, query_id: int) -> bool:
        removed = await self.storage.delete_query(query_id)
        self.orchestrator.unregister(query_id)
        return removed > 0


async def build_app_context(config: Config) -> AppContext:
    storage = Storage(config.sqlite_path, auto_migrate=config.sqlite_auto_migrate)
    await storage.connect()

    metrics = Metrics()
    if config.metrics_enabled:
        metrics.start_server(config.metrics_bind, config.metrics_port)

    ai = AnswerClient(
        AIConfig(
            base_url=config.ai_base_url,
            api_key=config.ai_api_key,
            model=config.ai_model,
            timeout_seconds=config.ai_timeout_seconds,
            max_retries=config.ai_max_retries,
            max_tokens=config.ai_max_tokens,
            temperature=config.ai_temperature,
            top_p=config.ai_top_p,
        )
    )

    token = ""
    if config.export_enabled:
        token = load_access_token(config.google_access_token, config.google_token_path)
        if not token:
            logger.warning("document export enabled but no access token found; exports are skipped")
    exporter = GoogleDocsExporter(
        access_token=token,
        folder_name=config.google_folder_name,
        timeout_seconds=config.google_timeout_seconds,
    )

    executor = QueryExecutor(ai)
    trigger = CronTrigger()
    runtime_stats = RuntimeStats()
    orchestrator = SchedulerOrchestrator(
        storage=storage,
        executor=executor,
        trigger=trigger,
        exporter=exporter,
        metrics=metrics,
        runtime_stats=runtime_stats,
    )

    return AppContext(
        config=config,
        storage=storage,
        ai=ai,
        exporter=exporter,
        executor=executor,
        trigger=trigger,
        orchestrator=orchestrator,
        metrics=metrics,
        runtime_stats=runtime_stats,
    )


async def check_connections(ctx: AppContext) -> None:
    if await ctx.ai.check_connection():
        logger.info("answer API connected successfully")
    else:
        logger.warning("answer API connection failed, check AI_API_KEY")

    if not ctx.exporter.enabled:
        return
    try:
        await ctx.exporter.initialize()
    except ExternalAPIError as e:
        logger.warning("document export folder setup failed: %s", e)
        return
    await ctx.exporter.check_connection()


async def start_background_jobs(ctx: AppContext) -> None:
    ctx.trigger.start()
    await ctx.orchestrator.load_existing()

    if ctx.config.check_connections_on_start:
        ctx.checks_task = asyncio.create_task(check_connections(ctx), name="connection_checks")


async def stop_background_jobs(ctx: AppContext) -> None:
    if ctx.checks_task is not None:
        ctx.checks_task.cancel()
        await asyncio.gather(ctx.checks_task, return_exceptions=True)

    await ctx.trigger.stop()
    await ctx.ai.aclose()
    await ctx.exporter.aclose()
    await ctx.storage.close()
