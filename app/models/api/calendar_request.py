# app/models/api/calendar_request.py
"""
Calendar API request models.
Used by routes for input validation.
"""

from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator


def _assume_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class EventFilter(BaseModel):
    """Query parameters for listing events."""

    start_date: datetime | None = Field(default=None, description="Window start (inclusive)")
    end_date: datetime | None = Field(default=None, description="Window end (inclusive)")
    days: int = Field(
        default=30, ge=1, le=366, description="Days from today when no explicit window is given"
    )
    cursor: str | None = Field(default=None, description="Opaque cursor from a previous page")
    limit: int = Field(default=50, ge=1, le=200, description="Page size (1-200)")
    group_by: Literal["day", "week"] | None = Field(default=None, description="Group items by day or week")

    @field_validator("start_date", "end_date")
    @classmethod
    def assume_utc(cls, value: datetime | None) -> datetime | None:
        return _assume_utc(value)

    def cache_params(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class CreateEventRequest(BaseModel):
    """Request for creating a calendar event."""

    title: str = Field(..., min_length=1, max_length=200, description="Event title")
    start_date: datetime = Field(..., description="Event start time")
    end_date: datetime | None = Field(default=None, description="Event end time (default: +1 hour)")
    description: str = Field(default="", max_length=1000, description="Event description")
    location: str = Field(default="", max_length=500, description="Event location")
    is_all_day: bool = Field(default=False, description="Date-only event")
    timezone: str | None = Field(default=None, description="Event timezone")
    calendar_id: str = Field(default="primary", description="Provider calendar to mirror into")

    @field_validator("start_date", "end_date")
    @classmethod
    def assume_utc(cls, value: datetime | None) -> datetime | None:
        return _assume_utc(value)

    @model_validator(mode="after")
    def check_range(self):
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class UpdateEventRequest(BaseModel):
    """Request for updating a calendar event."""

    title: str | None = Field(None, min_length=1, max_length=200, description="New event title")
    start_date: datetime | None = Field(None, description="New start time")
    end_date: datetime | None = Field(None, description="New end time")
    description: str | None = Field(None, max_length=1000, description="New description")
    location: str | None = Field(None, max_length=500, description="New location")
    is_all_day: bool | None = Field(None, description="Date-only event")
    timezone: str | None = Field(None, description="New timezone")

    @field_validator("start_date", "end_date")
    @classmethod
    def assume_utc(cls, value: datetime | None) -> datetime | None:
        return _assume_utc(value)

    def changed_fields(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True, exclude_none=True)


class EnqueueJobRequest(BaseModel):
    """Extra payload for an enqueued job. The user id always comes from the token."""

    payload: dict[str, Any] = Field(default_factory=dict)
