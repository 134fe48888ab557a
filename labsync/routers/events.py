"""Lab calendar event endpoints.

Writes here fire the sync hooks: a new event is pushed to Google in the
background, an edited event is flagged for the next sync pass.
"""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
import structlog

from labsync.dependencies import get_event_store, verify_api_key
from labsync.models.calendar_sync import CalendarEvent
from labsync.schemas.calendar import (
    ErrorCodes,
    EventCreateRequest,
    EventUpdateRequest,
    error_detail,
)
from labsync.services import sync_hooks
from labsync.services.event_store import EventStore
from labsync.utils.datetime_utils import ensure_utc, utc_now

logger = structlog.get_logger()

router = APIRouter(prefix="/api/calendar/events", tags=["Events"], dependencies=[Depends(verify_api_key)])


def _event_not_found(event_id: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=error_detail(f"Event {event_id} not found", ErrorCodes.NOT_FOUND),
    )


@router.get("", response_model=List[CalendarEvent])
async def list_events(
    lab_id: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    store: EventStore = Depends(get_event_store)
):
    """Events ordered by start, optionally filtered by lab and start range."""
    return await store.list_events(lab_id=lab_id, start=start_date, end=end_date)


@router.post("", response_model=CalendarEvent, status_code=status.HTTP_201_CREATED)
async def create_event(request: EventCreateRequest, store: EventStore = Depends(get_event_store)):
    """Create an event and push it to Google Calendar in the background."""
    if not await store.lab_exists(request.lab_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=error_detail(f"Lab {request.lab_id} not found", ErrorCodes.NOT_FOUND),
        )

    values = request.model_dump()
    values["needs_sync"] = False
    values["metadata"] = {}
    event = await store.create_event(values)

    logger.info("calendar_event_created", event_id=event.id, lab_id=event.lab_id)
    sync_hooks.trigger_event_created(event.id)
    return event


@router.get("/{event_id}", response_model=CalendarEvent)
async def get_event(event_id: str, store: EventStore = Depends(get_event_store)):
    event = await store.get_event(event_id)
    if not event:
        raise _event_not_found(event_id)
    return event


@router.patch("/{event_id}", response_model=CalendarEvent)
async def update_event(event_id: str, request: EventUpdateRequest, store: EventStore = Depends(get_event_store)):
    """Update an event; the change reaches Google on the next sync pass."""
    existing = await store.get_event(event_id)
    if not existing:
        raise _event_not_found(event_id)

    # Only description and location may be cleared
    values = {
        key: value for key, value in request.model_dump(exclude_unset=True).items()
        if value is not None or key in ("description", "location")
    }
    start_date = ensure_utc(values.get("start_date", existing.start_date))
    end_date = ensure_utc(values.get("end_date", existing.end_date))
    if end_date < start_date:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=error_detail("end_date must not be before start_date", ErrorCodes.INVALID_REQUEST),
        )

    values["updated_at"] = utc_now()
    await store.update_event(event_id, values)
    await sync_hooks.on_event_updated(event_id)

    logger.info("calendar_event_updated", event_id=event_id, fields=sorted(values))
    return await store.get_event(event_id)


@router.delete("/{event_id}")
async def delete_event(event_id: str, store: EventStore = Depends(get_event_store)):
    """Delete an event locally. The bound Google event is left in place."""
    deleted = await store.delete_event(event_id)
    if not deleted:
        raise _event_not_found(event_id)

    await sync_hooks.on_event_deleted(deleted.google_calendar_id)

    logger.info("calendar_event_deleted", event_id=event_id)
    return {"success": True, "id": event_id, "google_calendar_id": deleted.google_calendar_id}
