from __future__ import annotations

import logging
from dataclasses import dataclass

from research_scheduler.errors import StorageError
from research_scheduler.storage.db import Storage
from research_scheduler.storage.types import RESULT_COMPLETED, ScheduledQuery


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PriorContext:
    prior_question: str
    prior_answer: str


async def build_context(storage: Storage, query: ScheduledQuery) -> PriorContext | None:
    """Latest parent output for a follow-up, or None.

    Missing context is never an error: the query then runs without it.
    """
    if query.parent_query_id is None:
        return None

    try:
        results = await storage.list_results(query.parent_query_id)
    except StorageError:
        logger.exception("loading parent results failed query_id=%s", query.id)
        return None

    if not results:
        logger.warning(
            "follow-up %s has no parent results yet (parent_query_id=%s)",
            query.id,
            query.parent_query_id,
        )
        return None

    completed = [r for r in results if r.status == RESULT_COMPLETED]
    if not completed:
        logger.warning("parent %s has only failed results", query.parent_query_id)
        return None

    latest = completed[0]
    if not isinstance(latest.payload, dict):
        logger.warning("parent result %s payload is not an object", latest.id)
        return None
    question = latest.payload.get("query")
    answer = latest.payload.get("content")
    if not isinstance(question, str) or not isinstance(answer, str):
        logger.warning("parent result %s has no usable query/content", latest.id)
        return None

    logger.info(
        "loaded parent context query_id=%s parent_result_id=%s answer_chars=%s",
        query.id,
        latest.id,
        len(answer),
    )
    return PriorContext(prior_question=question, prior_answer=answer)
