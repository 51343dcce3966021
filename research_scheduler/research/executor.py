from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from research_scheduler.ai.client import Completion
from research_scheduler.errors import ExternalAPIError
from research_scheduler.research.context import PriorContext
from research_scheduler.research.prompts import (
    FAILURE_MESSAGE,
    FOLLOWUP_QUERY_TEMPLATE,
    NEW_QUERY_TEMPLATE,
    PRIOR_QUESTION_TEMPLATE,
    SYSTEM_PROMPT,
)
from research_scheduler.storage.types import RESULT_COMPLETED, RESULT_FAILED, ScheduledQuery
from research_scheduler.utils import now_utc, truncate


logger = logging.getLogger(__name__)


_SITE_RE = re.compile(r"site:(\S+)")


class CompletionClient(Protocol):
    async def complete(
        self,
        messages: list[dict[str, str]],
        domain_filter: list[str] | None = None,
        recency_filter: str | None = None,
    ) -> Completion: ...


@dataclass(frozen=True)
class ExecutionOutcome:
    payload: dict[str, Any]
    status: str

    @property
    def failed(self) -> bool:
        return self.status == RESULT_FAILED


def format_date_range(start: str | None, end: str | None) -> str:
    if start and end:
        return f"from {start} to {end}"
    if start:
        return f"since {start}"
    if end:
        return f"until {end}"
    return ""


def build_search_query(query: ScheduledQuery) -> str:
    text = query.query_text
    date_clause = format_date_range(query.date_range_start, query.date_range_end)
    if date_clause:
        text += f" {date_clause}"
    if query.website_filters:
        text += f" {query.website_filters}"
    return text


def get_search_domains(website_filters: str | None) -> list[str]:
    if not website_filters:
        return []
    return _SITE_RE.findall(website_filters)


def _parse_date(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.strip())
    if parsed.tzinfo is not None:
        parsed = parsed.replace(tzinfo=None)
    return parsed


def get_recency_filter(start: str | None, end: str | None, now: datetime | None = None) -> str:
    """Coarse recency bucket for the span between ``start`` and ``end``.

    A missing end means now; a missing start measures the span from now.
    Spans are rounded up to whole days.
    """
    if not start and not end:
        return "month"

    now = now or datetime.now()
    try:
        start_dt = _parse_date(start) if start else now
        end_dt = _parse_date(end) if end else now
    except ValueError:
        logger.warning("unparseable date range start=%r end=%r", start, end)
        return "month"

    days = math.ceil((end_dt - start_dt).total_seconds() / 86400)
    if days <= 1:
        return "day"
    if days <= 7:
        return "week"
    if days <= 30:
        return "month"
    return "year"


def build_messages(search_query: str, context: PriorContext | None) -> list[dict[str, str]]:
    messages = [{"role": "system", "content": SYSTEM_PROMPT}]

    if context is None:
        messages.append({"role": "user", "content": NEW_QUERY_TEMPLATE.format(query=search_query)})
        return messages

    messages.append({"role": "user", "content": PRIOR_QUESTION_TEMPLATE.format(question=context.prior_question)})
    messages.append({"role": "assistant", "content": context.prior_answer})
    messages.append({"role": "user", "content": FOLLOWUP_QUERY_TEMPLATE.format(query=search_query)})
    return messages


def _filters(query: ScheduledQuery) -> dict[str, Any]:
    return {
        "date_range": format_date_range(query.date_range_start, query.date_range_end),
        "websites": query.website_filters,
    }


def _metadata(query: ScheduledQuery, context: PriorContext | None, timestamp: str) -> dict[str, Any]:
    return {
        "execution_time": timestamp,
        "query_id": query.id,
        "schedule": query.schedule_expression,
        "is_followup": context is not None,
        "parent_query": context.prior_question if context is not None else None,
    }


class QueryExecutor:
    """Runs one query against the answer API and always returns an outcome."""

    def __init__(self, client: CompletionClient):
        self._client = client

    async def execute(self, query: ScheduledQuery, context: PriorContext | None = None) -> ExecutionOutcome:
        search_query = build_search_query(query)
        messages = build_messages(search_query, context)
        domains = get_search_domains(query.website_filters)
        recency = get_recency_filter(query.date_range_start, query.date_range_end)

        logger.info(
            "executing query_id=%s context=%s domains=%s recency=%s text=%r",
            query.id,
            "yes" if context is not None else "no",
            domains,
            recency,
            truncate(search_query, 80),
        )

        try:
            completion = await self._client.complete(messages, domain_filter=domains, recency_filter=recency)
        except ExternalAPIError as e:
            logger.warning("answer API failed query_id=%s err=%s", query.id, e)
            return self._failure(query, context, e.detail or str(e))
        except Exception as e:
            logger.exception("unexpected executor failure query_id=%s", query.id)
            return self._failure(query, context, str(e) or type(e).__name__)

        timestamp = now_utc().isoformat()
        payload: dict[str, Any] = {
            "query": query.query_text,
            "timestamp": timestamp,
            "model": completion.model,
            "content": completion.content,
            "usage": completion.usage,
            "filters": _filters(query),
            "metadata": _metadata(query, context, timestamp),
        }
        if completion.citations:
            payload["citations"] = completion.citations
        return ExecutionOutcome(payload=payload, status=RESULT_COMPLETED)

    def _failure(self, query: ScheduledQuery, context: PriorContext | None, error: str) -> ExecutionOutcome:
        timestamp = now_utc().isoformat()
        payload = {
            "query": query.query_text,
            "timestamp": timestamp,
            "model": None,
            "content": FAILURE_MESSAGE,
            "error": error,
            "filters": _filters(query),
            "metadata": _metadata(query, context, timestamp),
        }
        return ExecutionOutcome(payload=payload, status=RESULT_FAILED)
