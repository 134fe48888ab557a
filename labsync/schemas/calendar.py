"""Request and response schemas for the HTTP API."""

from datetime import datetime
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field, model_validator

from labsync.models.calendar_sync import EventType
from labsync.services.google_calendar_service import LAB_ID_PATTERN
from labsync.utils.datetime_utils import ensure_utc


class ErrorResponse(BaseModel):
    """Standard error response."""
    error: str
    code: str
    details: List[str] = []


class ErrorCodes:
    """Error code constants."""
    INVALID_REQUEST = "INVALID_REQUEST"
    UNAUTHORIZED = "UNAUTHORIZED"
    NOT_FOUND = "NOT_FOUND"
    UPSTREAM_ERROR = "UPSTREAM_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    INTERNAL_ERROR = "INTERNAL_ERROR"


def error_detail(error: str, code: str, details: Optional[List[str]] = None) -> Dict[str, Any]:
    """HTTPException detail in the standard error shape."""
    return ErrorResponse(error=error, code=code, details=details or []).model_dump()


def _check_range(start: Optional[datetime], end: Optional[datetime]):
    if start and end and ensure_utc(end) < ensure_utc(start):
        raise ValueError("end_date must not be before start_date")


# ==================== Labs ====================

class LabCreateRequest(BaseModel):
    """Create a lab."""
    name: str = Field(..., min_length=1, description="Lab name")
    id: Optional[str] = Field(
        None,
        max_length=64,
        pattern=LAB_ID_PATTERN,
        description="Explicit lab ID: letters, digits, '-' or '_' (generated when omitted)",
    )


class CalendarIntegrationRequest(BaseModel):
    """Bind a Google calendar to a lab."""
    calendar_id: str = Field(..., min_length=1, description="Google calendar ID, e.g. an address or 'primary'")
    sync_enabled: bool = Field(True, description="Whether inbound sync may use this mapping")


# ==================== Events ====================

class EventCreateRequest(BaseModel):
    """Create a local calendar event."""
    lab_id: str
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    event_type: EventType = EventType.OTHER
    start_date: datetime = Field(..., description="ISO 8601 with timezone (naive is read as UTC)")
    end_date: datetime
    all_day: bool = False
    location: Optional[str] = None
    created_by: Optional[str] = Field(None, description="Member who created the event")

    class Config:
        use_enum_values = True

    @model_validator(mode="after")
    def check_dates(self):
        _check_range(self.start_date, self.end_date)
        return self


class EventUpdateRequest(BaseModel):
    """Partial update of a local calendar event."""
    title: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    event_type: Optional[EventType] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    all_day: Optional[bool] = None
    location: Optional[str] = None

    class Config:
        use_enum_values = True

    @model_validator(mode="after")
    def check_dates(self):
        _check_range(self.start_date, self.end_date)
        return self


# ==================== Sync ====================

class BulkSyncRequest(BaseModel):
    """Lab-scoped import and push."""
    lab_id: str
    start_date: Optional[datetime] = Field(None, description="Window start (default: now)")
    end_date: Optional[datetime] = Field(None, description="Window end (default: start + 30 days)")

    @model_validator(mode="after")
    def check_dates(self):
        _check_range(self.start_date, self.end_date)
        return self


class WebhookResponse(BaseModel):
    """Acknowledgement of a Google push notification."""
    success: bool = True
    message: str
    resource_state: Optional[str] = None
    created: int = 0
    updated: int = 0
    skipped: int = 0


class SyncPreviewResponse(BaseModel):
    """Dry-run counts for a manual pull."""
    days_back: int
    total: int
    created: int
    updated: int
    skipped: int
