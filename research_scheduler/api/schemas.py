"""Request bodies for the HTTP API"""

from __future__ import annotations

from typing import Optional

from pydantic import AliasChoices, BaseModel, Field, field_validator

from research_scheduler.jobs.followups import FollowupRequest
from research_scheduler.storage.types import NewQuery


def _blank_to_none(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


class QueryCreateRequest(BaseModel):
    """Body of POST /api/queries"""
    query_text: str = Field(..., min_length=1, description="Natural-language research prompt")
    schedule_expression: str = Field(
        ...,
        validation_alias=AliasChoices("schedule_expression", "schedule_cron"),
        description="5-field cron expression, e.g. '0 9 * * 1-5'",
    )
    date_range_start: Optional[str] = Field(None, description="Optional start date (YYYY-MM-DD)")
    date_range_end: Optional[str] = Field(None, description="Optional end date (YYYY-MM-DD)")
    website_filters: Optional[str] = Field(None, description="Domain hints such as 'site:example.com'")
    google_folder_id: Optional[str] = Field(None, description="Export folder overriding the default")

    @field_validator("query_text")
    @classmethod
    def _strip_text(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("query_text must not be blank")
        return v

    @field_validator("date_range_start", "date_range_end", "website_filters", "google_folder_id")
    @classmethod
    def _optional(cls, v: Optional[str]) -> Optional[str]:
        return _blank_to_none(v)

    def to_new_query(self) -> NewQuery:
        return NewQuery(
            query_text=self.query_text,
            schedule_expression=self.schedule_expression.strip(),
            date_range_start=self.date_range_start,
            date_range_end=self.date_range_end,
            website_filters=self.website_filters,
            google_folder_id=self.google_folder_id,
        )


class FollowupCreateRequest(BaseModel):
    """Body of POST /api/queries/{id}/followup"""
    query_text: str = Field(..., min_length=1)
    date_range_start: Optional[str] = None
    date_range_end: Optional[str] = None
    website_filters: Optional[str] = None

    @field_validator("date_range_start", "date_range_end", "website_filters")
    @classmethod
    def _optional(cls, v: Optional[str]) -> Optional[str]:
        return _blank_to_none(v)

    def to_request(self) -> FollowupRequest:
        return FollowupRequest(
            query_text=self.query_text.strip(),
            date_range_start=self.date_range_start,
            date_range_end=self.date_range_end,
            website_filters=self.website_filters,
        )
