"""Health check endpoints for monitoring."""

from fastapi import APIRouter
import structlog

from labsync.config import settings
from labsync.services import sync_hooks
from labsync.utils.datetime_utils import utc_now

logger = structlog.get_logger()

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Overall system health check."""
    database_ok = await _check_database()
    scheduler = sync_hooks.sync_scheduler

    return {
        "status": "healthy" if database_ok else "degraded",
        "version": settings.app_version,
        "timestamp": utc_now().isoformat(),
        "services": {
            "database": database_ok,
            "google_calendar": settings.google_configured,
            "scheduler": scheduler.get_status() if scheduler else {"running": False},
        }
    }


@router.get("/")
async def root():
    """Service banner."""
    return {
        "name": "Lab Sync Calendar",
        "version": settings.app_version,
        "docs": "/docs",
    }


async def _check_database() -> bool:
    service = sync_hooks.calendar_sync_service
    if service is None:
        return False
    try:
        return await service.store.ping()
    except Exception as e:
        logger.error("database_health_check_failed", error=str(e))
        return False
