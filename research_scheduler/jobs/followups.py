from __future__ import annotations

import logging
from dataclasses import dataclass

from research_scheduler.errors import NotFoundError, StorageError, ValidationError
from research_scheduler.jobs.orchestrator import SchedulerOrchestrator
from research_scheduler.schedule.cron import derive_offset_expression, is_valid_expression
from research_scheduler.storage.db import Storage
from research_scheduler.storage.types import NewQuery


logger = logging.getLogger(__name__)


DEFAULT_FOLLOWUP_DELAY_MINUTES = 5


@dataclass(frozen=True)
class FollowupRequest:
    query_text: str
    date_range_start: str | None = None
    date_range_end: str | None = None
    website_filters: str | None = None


async def create_followup(
    storage: Storage,
    orchestrator: SchedulerOrchestrator,
    parent_id: int,
    request: FollowupRequest,
    delay_minutes: int = DEFAULT_FOLLOWUP_DELAY_MINUTES,
) -> int:
    """Persist a follow-up that runs ``delay_minutes`` after its parent and schedule it."""
    parent = await storage.get_query(parent_id)
    if parent is None:
        raise NotFoundError(f"parent query {parent_id} not found")

    try:
        expression = derive_offset_expression(parent.schedule_expression, delay_minutes)
    except ValueError as e:
        raise ValidationError(
            f"parent schedule {parent.schedule_expression!r} needs numeric minute and hour fields"
        ) from e
    if not is_valid_expression(expression):
        raise ValidationError(
            f"a {delay_minutes} minute delay on {parent.schedule_expression!r} gives unusable schedule {expression!r}"
        )

    logger.info(
        "creating follow-up of query %s: parent cron %r -> %r",
        parent_id,
        parent.schedule_expression,
        expression,
    )

    followup_id = await storage.create_followup_query(
        parent_id,
        NewQuery(
            query_text=request.query_text,
            schedule_expression=expression,
            date_range_start=request.date_range_start,
            date_range_end=request.date_range_end,
            website_filters=request.website_filters,
        ),
        delay_minutes,
    )

    # read back: an old-shape store drops the parent link
    followup = await storage.get_query(followup_id)
    if followup is None:
        raise StorageError(f"follow-up {followup_id} vanished after insert")
    orchestrator.register(followup)

    logger.info("follow-up %s created (linked=%s)", followup_id, followup.is_followup)
    return followup_id
