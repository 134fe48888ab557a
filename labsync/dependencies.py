"""FastAPI dependencies for authentication and shared services."""

import secrets
from typing import Optional

from fastapi import Depends, Header, HTTPException, status

from labsync.config import settings
from labsync.schemas.calendar import ErrorCodes, error_detail
from labsync.services import sync_hooks
from labsync.services.calendar_sync_service import CalendarSyncService
from labsync.services.event_store import EventStore


async def verify_api_key(x_api_key: Optional[str] = Header(None, alias="X-API-Key")) -> Optional[str]:
    """
    Verify API key from X-API-Key header.

    Open access when no API key is configured (development).

    Raises:
        HTTPException: 401 if key is missing or invalid
    """
    if not settings.api_key:
        return None

    # Use constant-time comparison to prevent timing attacks
    if not x_api_key or not secrets.compare_digest(x_api_key, settings.api_key):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=error_detail("Invalid or missing API key", ErrorCodes.UNAUTHORIZED),
        )

    return x_api_key


def get_sync_service() -> CalendarSyncService:
    """Process-wide calendar sync service."""
    service = sync_hooks.calendar_sync_service
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=error_detail("Calendar sync service not initialized", ErrorCodes.SERVICE_UNAVAILABLE),
        )
    return service


def get_event_store(service: CalendarSyncService = Depends(get_sync_service)) -> EventStore:
    return service.store
