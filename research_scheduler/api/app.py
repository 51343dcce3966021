"""HTTP API for managing scheduled research queries"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse

from research_scheduler.api.schemas import FollowupCreateRequest, QueryCreateRequest
from research_scheduler.config import Config
from research_scheduler.errors import NotFoundError, StorageError, ValidationError
from research_scheduler.jobs.pipeline import (
    AppContext,
    build_app_context,
    start_background_jobs,
    stop_background_jobs,
)
from research_scheduler.storage.types import RESULT_COMPLETED


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["queries"])


def get_ctx(request: Request) -> AppContext:
    ctx = getattr(request.app.state, "ctx", None)
    if ctx is None:
        raise RuntimeError("app context not initialized")
    return ctx


@router.get("/queries")
async def list_queries(ctx: AppContext = Depends(get_ctx)) -> list[dict[str, Any]]:
    queries = await ctx.storage.list_active_queries()
    return [q.to_dict() for q in queries]


@router.post("/queries")
async def create_query(body: QueryCreateRequest, ctx: AppContext = Depends(get_ctx)) -> dict[str, Any]:
    created = await ctx.add_query(body.to_new_query())
    if created is None:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to add query")
    return {
        "success": True,
        "queryId": created.id,
        "scheduled": ctx.orchestrator.is_registered(created.id),
    }


@router.get("/statistics")
async def get_statistics(ctx: AppContext = Depends(get_ctx)) -> dict[str, Any]:
    stats = await ctx.storage.get_statistics()
    runtime = ctx.runtime_stats
    return {
        "scheduledQueries": stats.scheduled_queries,
        "documentsCreated": stats.documents_created,
        "completedToday": stats.completed_today,
        "registeredTriggers": len(ctx.orchestrator.registered_ids),
        "consecutiveAiFailures": runtime.consecutive_ai_failures,
        "lastExecutedQueryId": runtime.last_executed_query_id,
    }


@router.get("/queries/{query_id}/results")
async def get_results(query_id: int, ctx: AppContext = Depends(get_ctx)) -> list[dict[str, Any]]:
    results = await ctx.storage.list_results(query_id)
    return [r.to_dict() for r in results]


@router.post("/queries/{query_id}/execute")
async def execute_query(query_id: int, ctx: AppContext = Depends(get_ctx)) -> dict[str, Any]:
    """
    Run a query immediately, outside its schedule.

    The run is stored like a scheduled one; export failures do not fail the call.
    """
    query = await ctx.storage.get_query(query_id)
    if query is None:
        raise NotFoundError(f"query {query_id} not found")
    result = await ctx.orchestrator.run_query(query)
    return {"success": result.status == RESULT_COMPLETED, "resultId": result.id, "results": result.payload}


@router.delete("/queries/{query_id}")
async def delete_query(query_id: int, ctx: AppContext = Depends(get_ctx)) -> dict[str, Any]:
    if not await ctx.delete_query(query_id):
        raise NotFoundError(f"query {query_id} not found")
    return {"success": True, "message": "Query deleted successfully"}


@router.post("/queries/{query_id}/followup")
async def create_followup(
    query_id: int,
    body: FollowupCreateRequest,
    ctx: AppContext = Depends(get_ctx),
) -> dict[str, Any]:
    followup_id = await ctx.add_followup(query_id, body.to_request())
    delay = ctx.config.followup_delay_minutes
    return {
        "success": True,
        "followupId": followup_id,
        "message": f"Follow-up query scheduled {delay} minutes after its parent",
    }


@router.get("/queries/{query_id}/followups")
async def list_followups(query_id: int, ctx: AppContext = Depends(get_ctx)) -> list[dict[str, Any]]:
    followups = await ctx.storage.list_followups(query_id)
    return [q.to_dict() for q in followups]


async def _not_found(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"error": exc.detail})


async def _invalid(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": exc.detail})


async def _storage_failed(request: Request, exc: StorageError) -> JSONResponse:
    logger.error("storage error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"error": "Storage failure"})


def create_app(ctx: AppContext | None = None, config: Config | None = None) -> FastAPI:
    """Build the ASGI app.

    With ``ctx`` the caller owns the context's lifecycle; with ``config`` the
    context is built on startup and torn down on shutdown.
    """
    if ctx is None and config is None:
        raise ValueError("create_app needs a context or a config")

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if ctx is not None:
            app.state.ctx = ctx
            yield
            return

        built = await build_app_context(config)
        app.state.ctx = built
        await start_background_jobs(built)
        logger.info("scheduler started")
        try:
            yield
        finally:
            await stop_background_jobs(built)
            logger.info("scheduler stopped")

    app = FastAPI(title="Research Query Scheduler", lifespan=lifespan)
    if ctx is not None:
        app.state.ctx = ctx
    app.include_router(router)
    app.add_exception_handler(NotFoundError, _not_found)
    app.add_exception_handler(ValidationError, _invalid)
    app.add_exception_handler(StorageError, _storage_failed)
    return app
