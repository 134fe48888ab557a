"""Pytest configuration and fixtures."""

from datetime import datetime, timedelta
from typing import Optional

import pytest
import pytz
from fastapi.testclient import TestClient

from labsync.config import settings
from labsync.main import app
from labsync.services import sync_hooks
from labsync.services.calendar_sync_service import CalendarSyncService
from labsync.services.event_store import EventStore
from labsync.services.google_calendar_service import GoogleCalendarService
from labsync.utils.datetime_utils import isoformat_utc

TEST_CALENDAR_ID = "lab-calendar@group.calendar.google.com"


def make_remote_event(
    event_id: str = "g1",
    summary: Optional[str] = "Lab Meeting",
    updated: str = "2024-01-02T10:00:00Z",
    start: Optional[datetime] = None,
    description: Optional[str] = None,
    all_day: bool = False,
    **extra
) -> dict:
    """Google Calendar v3 event as returned by events.list."""
    start = start or datetime(2024, 1, 3, 15, 0, tzinfo=pytz.UTC)
    end = start + (timedelta(days=1) if all_day else timedelta(hours=1))

    if all_day:
        start_field = {"date": start.date().isoformat()}
        end_field = {"date": end.date().isoformat()}
    else:
        start_field = {"dateTime": isoformat_utc(start), "timeZone": "UTC"}
        end_field = {"dateTime": isoformat_utc(end), "timeZone": "UTC"}

    event = {
        "id": event_id,
        "status": "confirmed",
        "htmlLink": f"https://www.google.com/calendar/event?eid={event_id}",
        "created": "2024-01-01T09:00:00Z",
        "updated": updated,
        "start": start_field,
        "end": end_field,
    }
    if summary is not None:
        event["summary"] = summary
    if description is not None:
        event["description"] = description
    event.update(extra)
    return event


@pytest.fixture
def store():
    """In-memory event store."""
    event_store = EventStore("sqlite://")
    yield event_store
    event_store.dispose()


@pytest.fixture
def google_service():
    """Google client with a static token; tests patch its network methods."""
    return GoogleCalendarService(
        calendar_id=TEST_CALENDAR_ID,
        timezone="America/Chicago",
        access_token="test-token",
        retry_attempts=1,
        retry_base_delay=0,
    )


@pytest.fixture
def sync_service(store, google_service):
    """Sync service over the in-memory store."""
    return CalendarSyncService(store, google_service)


@pytest.fixture
def client(sync_service, monkeypatch):
    """Test client with the sync service installed and no API key required."""
    monkeypatch.setattr(settings, "api_key", None)
    monkeypatch.setattr(settings, "google_webhook_token", None)
    sync_hooks.init_calendar_sync_service(sync_service)
    yield TestClient(app)
    sync_hooks.shutdown_calendar_sync()


@pytest.fixture
def remote_event():
    """Factory for Google event dicts."""
    return make_remote_event
