"""
Process-wide entry points for calendar sync.

Called at startup/shutdown and after event creation/update/deletion.
"""

import asyncio
from typing import Optional, Set

import structlog

from labsync.models.calendar_sync import SyncLogEntry
from labsync.services.calendar_sync_service import CalendarSyncService
from labsync.services.sync_scheduler import SyncScheduler

logger = structlog.get_logger()

# Global instances (initialized at startup)
calendar_sync_service: Optional[CalendarSyncService] = None
sync_scheduler: Optional[SyncScheduler] = None

# Background hook tasks, kept referenced until done
_background_tasks: Set[asyncio.Task] = set()


def init_calendar_sync_service(service: CalendarSyncService) -> CalendarSyncService:
    """Install the global calendar sync service and its scheduler."""
    global calendar_sync_service, sync_scheduler
    if sync_scheduler is not None:
        sync_scheduler.stop()

    calendar_sync_service = service
    sync_scheduler = SyncScheduler(service.perform_bidirectional_sync)
    logger.info("calendar_sync_service_initialized", calendar_id=service.calendar_id)
    return service


def shutdown_calendar_sync():
    """Stop the scheduler and drop the global service."""
    global calendar_sync_service, sync_scheduler
    if sync_scheduler is not None:
        sync_scheduler.stop()
    sync_scheduler = None
    calendar_sync_service = None


def start_periodic_sync(interval_minutes: float = 5):
    """Run a pass now and every ``interval_minutes`` after that."""
    if not sync_scheduler:
        logger.warning("calendar_sync_not_initialized", action="start_periodic_sync")
        return
    sync_scheduler.start(interval_minutes)


def stop_periodic_sync():
    """Cancel future passes; safe when not running."""
    if sync_scheduler:
        sync_scheduler.stop()


async def perform_bidirectional_sync() -> Optional[SyncLogEntry]:
    """Run one pass and return its sync log entry."""
    if not calendar_sync_service:
        logger.warning("calendar_sync_not_initialized", action="perform_bidirectional_sync")
        return None
    return await calendar_sync_service.perform_bidirectional_sync()


async def on_event_created(event_id: str):
    """
    Push a newly created event to Google Calendar.

    Args:
        event_id: Local event ID
    """
    if not calendar_sync_service:
        return

    try:
        await calendar_sync_service.on_event_created(event_id)
    except Exception as e:
        logger.error("event_created_hook_error",
                    event_id=event_id,
                    error=str(e),
                    exc_info=True)


async def on_event_updated(event_id: str):
    """
    Flag an updated event for the next sync pass.

    Args:
        event_id: Local event ID
    """
    if not calendar_sync_service:
        return

    try:
        await calendar_sync_service.on_event_updated(event_id)
    except Exception as e:
        logger.error("event_updated_hook_error",
                    event_id=event_id,
                    error=str(e),
                    exc_info=True)


async def on_event_deleted(external_id: Optional[str]):
    """
    Handle deletion of a local event.

    Args:
        external_id: Google event ID the local event was bound to, if any
    """
    if not calendar_sync_service:
        return
    await calendar_sync_service.on_event_deleted(external_id)


def trigger_event_created(event_id: str) -> asyncio.Task:
    """Trigger push in background (non-blocking)."""
    task = asyncio.create_task(on_event_created(event_id))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task
