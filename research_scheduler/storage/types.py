from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any


STATUS_ACTIVE = "active"
STATUS_INACTIVE = "inactive"

RESULT_COMPLETED = "completed"
RESULT_FAILED = "failed"


@dataclass(frozen=True)
class NewQuery:
    query_text: str
    schedule_expression: str
    date_range_start: str | None = None
    date_range_end: str | None = None
    website_filters: str | None = None
    google_folder_id: str | None = None


@dataclass(frozen=True)
class ScheduledQuery:
    id: int
    query_text: str
    schedule_expression: str
    date_range_start: str | None
    date_range_end: str | None
    website_filters: str | None
    google_folder_id: str | None
    status: str
    parent_query_id: int | None
    is_followup: bool
    followup_delay_minutes: int | None
    auto_triggered: bool
    created_at: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class NewResult:
    query_id: int
    payload: dict[str, Any]
    status: str = RESULT_COMPLETED
    exported_document_id: str | None = None
    executed_at: datetime | None = None


@dataclass(frozen=True)
class ExecutionResult:
    id: int
    query_id: int
    execution_timestamp: str
    payload: dict[str, Any] = field(default_factory=dict)
    exported_document_id: str | None = None
    status: str = RESULT_COMPLETED

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class QueryStatistics:
    scheduled_queries: int
    documents_created: int
    completed_today: int
