"""
Events API Routes
Local event CRUD, keyset-paginated listing and on-demand sync.
"""

from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.auth.verify import auth_dependency
from app.infrastructure.observability.logging import get_logger
from app.jobs.errors import QueueCapacityExceeded
from app.models.api.calendar_request import CreateEventRequest, EventFilter, UpdateEventRequest
from app.models.api.calendar_response import (
    EventListResponse,
    EventResponse,
    JobAcceptedResponse,
)
from app.models.domain.job_domain import JobType
from app.services.events_service import EventNotFoundError, EventsServiceError, events_service

logger = get_logger(__name__)

router = APIRouter(prefix="/events", tags=["events"])


@router.get("", response_model=EventListResponse)
async def list_events(
    claims: dict = Depends(auth_dependency),
    start_date: datetime | None = Query(default=None, description="Window start"),
    end_date: datetime | None = Query(default=None, description="Window end"),
    days: int = Query(default=30, ge=1, le=366, description="Days ahead when no window is given"),
    cursor: str | None = Query(default=None, description="Cursor from a previous page"),
    limit: int = Query(default=50, ge=1, le=200, description="Page size (1-200)"),
    group_by: Literal["day", "week"] | None = Query(default=None),
):
    """List the user's confirmed events one page at a time."""
    user_id = claims["sub"]
    filters = EventFilter(
        start_date=start_date,
        end_date=end_date,
        days=days,
        cursor=cursor,
        limit=limit,
        group_by=group_by,
    )

    try:
        return await events_service.list_events(user_id, filters)
    except EventsServiceError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.post("", response_model=EventResponse, status_code=status.HTTP_201_CREATED)
async def create_event(request: CreateEventRequest, claims: dict = Depends(auth_dependency)):
    """Create an event locally and mirror it to the connected calendar."""
    user_id = claims["sub"]
    try:
        event = await events_service.create_event(user_id, request)
    except EventsServiceError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return event.to_dict()


@router.get("/{event_id}", response_model=EventResponse)
async def get_event(event_id: str, claims: dict = Depends(auth_dependency)):
    try:
        event = await events_service.get_event(claims["sub"], event_id)
    except EventNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return event.to_dict()


@router.patch("/{event_id}", response_model=EventResponse)
async def update_event(
    event_id: str, request: UpdateEventRequest, claims: dict = Depends(auth_dependency)
):
    try:
        event = await events_service.update_event(claims["sub"], event_id, request)
    except EventNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except EventsServiceError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return event.to_dict()


@router.delete("/{event_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_event(event_id: str, claims: dict = Depends(auth_dependency)):
    try:
        await events_service.delete_event(claims["sub"], event_id)
    except EventNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.post("/sync", response_model=JobAcceptedResponse, status_code=status.HTTP_202_ACCEPTED)
async def request_sync(
    claims: dict = Depends(auth_dependency),
    calendar_id: str = Query(default="primary"),
):
    """Queue an inbound sync; poll /jobs/{job_id} for the outcome."""
    user_id = claims["sub"]
    try:
        job_id = await events_service.request_sync(user_id, calendar_id)
    except QueueCapacityExceeded as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    logger.info("Sync requested", user_id=user_id, job_id=job_id)
    return JobAcceptedResponse(job_id=job_id, type=JobType.SYNC_EVENTS.value)
