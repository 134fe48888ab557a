"""Main application entry point."""

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import structlog

from labsync.config import settings
from labsync.routers import calendar_sync, events, health, labs, webhooks
from labsync.schemas.calendar import ErrorCodes, ErrorResponse
from labsync.services import sync_hooks
from labsync.services.calendar_sync_service import CalendarSyncService
from labsync.services.event_store import EventStore
from labsync.services.google_calendar_service import GoogleCalendarService
from labsync.utils.logger import setup_logging


# Setup logging
setup_logging(settings.log_level, settings.json_logs)
logger = structlog.get_logger()

# Create FastAPI application
app = FastAPI(
    title="Lab Sync Calendar",
    description="Lab calendar events with bidirectional Google Calendar sync",
    version=settings.app_version,
    debug=settings.debug,
)

# Parse CORS origins from config (comma-separated string)
allowed_origins = [origin.strip() for origin in settings.cors_origins.split(",") if origin.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "X-API-Key"],
)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions with standard error format."""
    logger.error("unhandled_exception",
                path=request.url.path,
                method=request.method,
                error=str(exc),
                exc_info=exc)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error="Internal server error",
            code=ErrorCodes.INTERNAL_ERROR,
            details=[],
        ).model_dump(),
    )


# Include routers
app.include_router(health.router)
app.include_router(calendar_sync.router)
app.include_router(webhooks.router)
app.include_router(events.router)
app.include_router(labs.router)


@app.on_event("startup")
async def startup_event():
    """Application startup event."""
    logger.info(
        "application_started",
        environment=settings.app_env,
        debug=settings.debug,
    )

    store = EventStore(settings.database_url)
    google_service = GoogleCalendarService.from_settings(settings)
    sync_hooks.init_calendar_sync_service(
        CalendarSyncService.from_settings(store, google_service, settings)
    )

    if not settings.sync_enabled:
        logger.info("calendar_sync_disabled")
    elif not google_service.is_configured:
        logger.warning("google_calendar_not_configured",
                      message="Periodic sync disabled. Set GOOGLE_CLIENT_ID, GOOGLE_CLIENT_SECRET "
                              "and GOOGLE_REFRESH_TOKEN to enable.")
    else:
        sync_hooks.start_periodic_sync(settings.sync_interval_minutes)


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event - stop the scheduler and close the database."""
    logger.info("application_shutdown_started")

    service = sync_hooks.calendar_sync_service
    sync_hooks.shutdown_calendar_sync()
    if service is not None:
        service.store.dispose()

    logger.info("application_shutdown_complete")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "labsync.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
