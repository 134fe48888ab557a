"""Lab and lab calendar integration endpoints."""

from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
import structlog

from labsync.dependencies import get_event_store, verify_api_key
from labsync.models.calendar_sync import Lab, LabCalendarIntegration
from labsync.schemas.calendar import (
    CalendarIntegrationRequest,
    ErrorCodes,
    LabCreateRequest,
    error_detail,
)
from labsync.services.event_store import EventStore

logger = structlog.get_logger()

router = APIRouter(prefix="/api/labs", tags=["Labs"], dependencies=[Depends(verify_api_key)])


def _lab_not_found(lab_id: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=error_detail(f"Lab {lab_id} not found", ErrorCodes.NOT_FOUND),
    )


@router.post("", response_model=Lab, status_code=status.HTTP_201_CREATED)
async def create_lab(request: LabCreateRequest, store: EventStore = Depends(get_event_store)):
    """Create a lab."""
    if request.id and await store.lab_exists(request.id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=error_detail(f"Lab {request.id} already exists", ErrorCodes.INVALID_REQUEST),
        )
    return await store.create_lab(request.name, request.id)


@router.get("", response_model=List[Lab])
async def list_labs(store: EventStore = Depends(get_event_store)):
    return await store.list_labs()


@router.get("/{lab_id}/calendar-integration", response_model=LabCalendarIntegration)
async def get_calendar_integration(lab_id: str, store: EventStore = Depends(get_event_store)):
    """Google calendar bound to the lab."""
    integration = await store.get_calendar_integration(lab_id)
    if not integration:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=error_detail(f"No calendar integration for lab {lab_id}", ErrorCodes.NOT_FOUND),
        )
    return integration


@router.put("/{lab_id}/calendar-integration", response_model=LabCalendarIntegration)
async def set_calendar_integration(
    lab_id: str,
    request: CalendarIntegrationRequest,
    store: EventStore = Depends(get_event_store)
):
    """
    Bind a Google calendar to the lab.

    A calendar maps to one lab only; binding it here removes any other lab's binding.
    """
    if not await store.lab_exists(lab_id):
        raise _lab_not_found(lab_id)

    return await store.set_calendar_integration(
        lab_id,
        request.calendar_id,
        sync_enabled=request.sync_enabled
    )


@router.delete("/{lab_id}/calendar-integration")
async def delete_calendar_integration(lab_id: str, store: EventStore = Depends(get_event_store)):
    if not await store.delete_calendar_integration(lab_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=error_detail(f"No calendar integration for lab {lab_id}", ErrorCodes.NOT_FOUND),
        )

    logger.info("calendar_integration_removed", lab_id=lab_id)
    return {"success": True, "lab_id": lab_id}
