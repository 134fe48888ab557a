"""
Google Calendar push notification endpoint.

Google sends one ``sync`` message when a watch channel opens, then ``exists``
whenever something in the calendar changes and ``not_exists`` when the watched
resource is gone. Notifications carry no event payload.
"""

import secrets
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status
import structlog

from labsync.config import settings
from labsync.dependencies import get_sync_service
from labsync.schemas.calendar import ErrorCodes, WebhookResponse, error_detail
from labsync.services.calendar_sync_service import CalendarSyncService, new_correlation_id
from labsync.services.google_calendar_service import GoogleCalendarError

logger = structlog.get_logger()

router = APIRouter(prefix="/api/calendar", tags=["Calendar Sync"])


def _verify_channel_token(channel_token: Optional[str]):
    expected = settings.google_webhook_token
    if not expected:
        return
    if not channel_token or not secrets.compare_digest(channel_token, expected):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=error_detail("Invalid channel token", ErrorCodes.UNAUTHORIZED),
        )


@router.post("/webhook", response_model=WebhookResponse)
async def google_calendar_webhook(
    channel_id: Optional[str] = Header(None, alias="X-Goog-Channel-ID"),
    resource_id: Optional[str] = Header(None, alias="X-Goog-Resource-ID"),
    resource_state: Optional[str] = Header(None, alias="X-Goog-Resource-State"),
    message_number: Optional[str] = Header(None, alias="X-Goog-Message-Number"),
    channel_token: Optional[str] = Header(None, alias="X-Goog-Channel-Token"),
    service: CalendarSyncService = Depends(get_sync_service)
):
    """
    Handle a Google Calendar push notification.

    Returns:
        Acknowledgement, with pull counters when a change was reconciled
    """
    _verify_channel_token(channel_token)

    correlation_id = new_correlation_id("webhook")
    logger.info("google_webhook_received",
               correlation_id=correlation_id,
               channel_id=channel_id,
               resource_id=resource_id,
               resource_state=resource_state,
               message_number=message_number)

    if resource_state == "sync":
        return WebhookResponse(message="Sync message acknowledged", resource_state=resource_state)

    if resource_state == "not_exists":
        # Deletes are not propagated locally
        return WebhookResponse(message="Deletion acknowledged", resource_state=resource_state)

    if resource_state != "exists":
        logger.warning("google_webhook_unknown_state",
                      correlation_id=correlation_id,
                      resource_state=resource_state)
        return WebhookResponse(message="Notification ignored", resource_state=resource_state)

    try:
        stats = await service.reconcile_recent_changes(correlation_id)
    except GoogleCalendarError as e:
        logger.error("google_webhook_reconcile_failed", correlation_id=correlation_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=error_detail("Failed to process webhook", ErrorCodes.UPSTREAM_ERROR, [str(e)]),
        )

    return WebhookResponse(
        message="Webhook processed",
        resource_state=resource_state,
        created=stats.created,
        updated=stats.updated,
        skipped=stats.skipped,
    )
