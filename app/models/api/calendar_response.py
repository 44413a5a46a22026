# app/models/api/calendar_response.py
"""
Calendar and job API response models.
Used by routes for output formatting.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class EventResponse(BaseModel):
    """Response model for a local event."""

    id: str = Field(..., description="Event ID")
    title: str = Field(..., description="Event title")
    description: str = Field(default="", description="Event description")
    location: str = Field(default="", description="Event location")
    start_date: datetime = Field(..., description="Event start")
    end_date: datetime = Field(..., description="Event end")
    is_all_day: bool = Field(..., description="Date-only event")
    status: str = Field(..., description="Event status")
    timezone: str | None = Field(None, description="Event timezone")
    provider_event_id: str | None = Field(None, description="Linked provider event")
    provider_calendar_id: str | None = Field(None, description="Linked provider calendar")
    display_date: str = Field(..., description="Human readable date span")


class PageInfo(BaseModel):
    has_next_page: bool
    next_cursor: str | None = None
    has_previous_page: bool = False
    previous_cursor: str | None = None


class EventListResponse(BaseModel):
    """One keyset page of events."""

    items: list[EventResponse]
    page_info: PageInfo
    range: dict[str, Any] = Field(default_factory=dict, description="Effective query window")
    groups: dict[str, list[EventResponse]] | None = Field(
        None, description="Items grouped by day or week start"
    )


class JobAcceptedResponse(BaseModel):
    job_id: str = Field(..., description="Identifier to poll with GET /jobs/{job_id}")
    type: str
    status: str = "pending"


class JobStatusResponse(BaseModel):
    id: str
    type: str
    payload: dict[str, Any]
    status: str
    attempts: int
    max_attempts: int
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    next_retry_at: datetime | None = None
    error: str | None = None
    result: dict[str, Any] | None = None
