"""
API endpoints for Google Calendar synchronization.
"""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
import structlog

from labsync.config import settings
from labsync.dependencies import get_sync_service, verify_api_key
from labsync.models.calendar_sync import BulkSyncResult, SyncLogEntry
from labsync.schemas.calendar import (
    BulkSyncRequest,
    ErrorCodes,
    SyncPreviewResponse,
    error_detail,
)
from labsync.services.calendar_sync_service import CalendarSyncService
from labsync.services.google_calendar_service import GoogleCalendarError
from labsync.utils.datetime_utils import ensure_utc, utc_now

logger = structlog.get_logger()

router = APIRouter(
    prefix="/api/calendar",
    tags=["Calendar Sync"],
    dependencies=[Depends(verify_api_key)]
)


def _upstream_error(e: GoogleCalendarError) -> HTTPException:
    details = [f"status_code={e.status_code}"] if e.status_code else []
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail=error_detail(str(e), ErrorCodes.UPSTREAM_ERROR, details),
    )


@router.post("/sync", response_model=SyncLogEntry)
async def trigger_sync(service: CalendarSyncService = Depends(get_sync_service)):
    """
    Run one bidirectional sync pass now.

    Returns:
        Sync log entry of the pass (status "error" when it failed)
    """
    logger.info("manual_sync_triggered")
    return await service.perform_bidirectional_sync()


@router.get("/sync/preview", response_model=SyncPreviewResponse)
async def preview_sync(
    days_back: int = Query(settings.manual_sync_days_back, ge=1, le=90),
    service: CalendarSyncService = Depends(get_sync_service)
):
    """Count what a pull over the last ``days_back`` days would change."""
    try:
        stats = await service.preview_pull(days_back=days_back)
    except GoogleCalendarError as e:
        logger.error("sync_preview_failed", error=str(e))
        raise _upstream_error(e)

    return SyncPreviewResponse(days_back=days_back, **stats.model_dump())


@router.get("/sync/logs", response_model=List[SyncLogEntry])
async def list_sync_logs(
    limit: int = Query(20, ge=1, le=100),
    service: CalendarSyncService = Depends(get_sync_service)
):
    """Recent sync passes, newest first."""
    return await service.store.list_sync_logs(limit)


@router.post("/bulk-sync", response_model=BulkSyncResult)
async def bulk_sync(request: BulkSyncRequest, service: CalendarSyncService = Depends(get_sync_service)):
    """Import unknown Google events into a lab and push the lab's unbound events."""
    if not await service.store.lab_exists(request.lab_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=error_detail(f"Lab {request.lab_id} not found", ErrorCodes.NOT_FOUND),
        )

    try:
        return await service.bulk_sync_lab(request.lab_id, request.start_date, request.end_date)
    except GoogleCalendarError as e:
        logger.error("bulk_sync_failed", lab_id=request.lab_id, error=str(e))
        raise _upstream_error(e)


@router.get("/google-events")
async def list_google_events(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    service: CalendarSyncService = Depends(get_sync_service)
):
    """Fetch events from Google Calendar in the local shape, without storing them."""
    if start_date and end_date and ensure_utc(end_date) < ensure_utc(start_date):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=error_detail("end_date must not be before start_date", ErrorCodes.INVALID_REQUEST),
        )

    google = service.google_service
    try:
        remote_events = await google.fetch_remote_events(start_date or utc_now(), end_date)
    except GoogleCalendarError as e:
        raise _upstream_error(e)

    events = []
    for remote_event in remote_events:
        draft = google.convert_remote_to_local(remote_event)
        if draft is not None:
            events.append(draft)

    return {"count": len(events), "events": events}
