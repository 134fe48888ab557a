"""
Domain models for calendar events and synchronization.
"""

from datetime import datetime
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field
from enum import Enum


class EventType(str, Enum):
    """Lab calendar event categories."""
    MEETING = "MEETING"
    CLINICAL_SERVICE = "CLINICAL_SERVICE"
    PTO = "PTO"
    TRAINING = "TRAINING"
    CONFERENCE = "CONFERENCE"
    HOLIDAY = "HOLIDAY"
    OTHER = "OTHER"


class SyncStatus(str, Enum):
    """Outcome of a reconciliation pass."""
    SUCCESS = "success"
    ERROR = "error"


class Lab(BaseModel):
    """Lab (tenant)."""
    id: str
    name: str
    created_at: Optional[datetime] = None


class LabCalendarIntegration(BaseModel):
    """External calendar bound to a lab."""
    id: Optional[int] = None
    lab_id: str
    provider: str = "google"
    calendar_id: str
    sync_enabled: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class CalendarEventDraft(BaseModel):
    """Local-shaped event produced from a remote event (no identity, no lab)."""
    title: str
    description: Optional[str] = None
    event_type: EventType = EventType.OTHER
    start_date: datetime
    end_date: datetime
    all_day: bool = False
    location: Optional[str] = None
    google_calendar_id: Optional[str] = None
    google_calendar_url: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        use_enum_values = True


class CalendarEvent(CalendarEventDraft):
    """Local calendar event record."""
    id: str
    lab_id: str
    created_by: Optional[str] = None
    needs_sync: bool = False
    created_at: datetime
    updated_at: datetime


class SyncLogEntry(BaseModel):
    """Audit record for one reconciliation pass."""
    id: Optional[int] = None
    sync_type: str = "calendar_bidirectional"
    status: SyncStatus
    duration_ms: int = 0
    error_message: Optional[str] = None
    events_created: int = 0
    events_updated: int = 0
    events_skipped: int = 0
    events_pushed: int = 0
    events_failed: int = 0
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None

    class Config:
        use_enum_values = True


class PullStats(BaseModel):
    """Counters for the remote -> local phase."""
    total: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0


class PushStats(BaseModel):
    """Counters for the local -> remote phase."""
    synced: int = 0
    failed: int = 0


class BulkSyncResult(BaseModel):
    """Outcome of a lab-scoped bulk sync."""
    lab_id: str
    imported: int = 0
    synced: int = 0
    skipped: int = 0
    failed: int = 0
