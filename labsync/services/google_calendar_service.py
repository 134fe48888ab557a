"""
Google Calendar API integration service.
"""

import asyncio
import re
from datetime import datetime, timedelta
from typing import Optional, List, Dict, Any
from urllib.parse import quote

import httpx
import structlog

from labsync.models.calendar_sync import CalendarEvent, CalendarEventDraft, EventType
from labsync.utils.datetime_utils import isoformat_utc, parse_timestamp, utc_now

logger = structlog.get_logger()

# Lab IDs must fit the tag alphabet below
LAB_ID_PATTERN = r"^[A-Za-z0-9_-]+$"

# Lab identifier embedded in a remote description, e.g. "lab_id:3f2a..."
LAB_TAG_PATTERN = re.compile(r"lab_id:([A-Za-z0-9_-]+)(?=\s|$)", re.IGNORECASE)

EDIT_URL_TEMPLATE = "https://calendar.google.com/calendar/u/0/r/eventedit/{event_id}"

# Google Calendar color IDs per event type
GOOGLE_CALENDAR_COLORS = {
    EventType.PTO.value: "7",
    EventType.CLINICAL_SERVICE.value: "2",
    EventType.HOLIDAY.value: "11",
    EventType.CONFERENCE.value: "9",
    EventType.TRAINING.value: "5",
    EventType.MEETING.value: "1",
    EventType.OTHER.value: "4",
}

MAX_RETRY_DELAY_SECONDS = 30.0


class GoogleCalendarError(Exception):
    """Google Calendar request that failed after retries (or was not retryable)."""

    def __init__(self, message: str, status_code: Optional[int] = None, correlation_id: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.correlation_id = correlation_id


def extract_lab_tag(description: Optional[str]) -> Optional[str]:
    """Return the lab ID tagged in a description, if any."""
    if not description:
        return None
    match = LAB_TAG_PATTERN.search(description)
    return match.group(1) if match else None


def strip_lab_tag(description: Optional[str]) -> Optional[str]:
    """Remove lab tags from a description."""
    if not description:
        return description
    return LAB_TAG_PATTERN.sub("", description).strip()


def remote_edit_url(external_id: str) -> str:
    """Deterministic Google Calendar edit link for an event ID."""
    return EDIT_URL_TEMPLATE.format(event_id=external_id)


class GoogleCalendarService:
    """Service for Google Calendar API integration."""

    TOKEN_URL = "https://oauth2.googleapis.com/token"
    API_BASE = "https://www.googleapis.com/calendar/v3"

    def __init__(
        self,
        calendar_id: str = "primary",
        timezone: str = "UTC",
        api_key: Optional[str] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        refresh_token: Optional[str] = None,
        access_token: Optional[str] = None,
        timeout: float = 30.0,
        retry_attempts: int = 3,
        retry_base_delay: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Initialize Google Calendar service.

        Args:
            calendar_id: Calendar to read and write (e.g. "primary" or an address)
            timezone: IANA timezone sent with timed events
            api_key: API key, read-only access
            client_id: OAuth client ID (with client_secret and refresh_token for write access)
            client_secret: OAuth client secret
            refresh_token: Long-lived OAuth refresh token
            access_token: Pre-issued access token, used as-is
            timeout: Per-request timeout in seconds
            retry_attempts: Attempts per request (1 disables retries)
            retry_base_delay: First backoff delay in seconds, doubled per attempt
            transport: Custom httpx transport (tests)
        """
        self.calendar_id = calendar_id
        self.timezone = timezone
        self.api_key = api_key
        self.client_id = client_id
        self.client_secret = client_secret
        self.refresh_token = refresh_token
        self.timeout = timeout
        self.retry_attempts = max(1, retry_attempts)
        self.retry_base_delay = retry_base_delay
        self.transport = transport

        self._access_token = access_token
        self._static_token = access_token is not None
        self._token_expires_at: Optional[datetime] = None

    @classmethod
    def from_settings(cls, settings) -> "GoogleCalendarService":
        """Build the service from application settings."""
        return cls(
            calendar_id=settings.google_calendar_id,
            timezone=settings.google_calendar_timezone,
            api_key=settings.google_api_key,
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            refresh_token=settings.google_refresh_token,
            access_token=settings.google_access_token,
            timeout=settings.google_request_timeout,
            retry_attempts=settings.google_retry_attempts,
            retry_base_delay=settings.google_retry_base_delay,
        )

    @property
    def has_oauth(self) -> bool:
        return bool(self.client_id and self.client_secret and self.refresh_token)

    @property
    def can_write(self) -> bool:
        """Writes need OAuth; an API key only grants read access."""
        return self._static_token or self.has_oauth

    @property
    def is_configured(self) -> bool:
        return self.can_write or bool(self.api_key)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    # ==================== OAuth ====================

    async def refresh_access_token(self) -> str:
        """
        Exchange the refresh token for a new access token.

        Raises:
            GoogleCalendarError: If the token endpoint rejects the request
        """
        try:
            async with self._client() as client:
                response = await client.post(
                    self.TOKEN_URL,
                    data={
                        "refresh_token": self.refresh_token,
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                        "grant_type": "refresh_token"
                    }
                )
                response.raise_for_status()
                tokens = response.json()
        except httpx.HTTPError as e:
            raise GoogleCalendarError(f"Token refresh failed: {e}") from e

        self._access_token = tokens["access_token"]
        self._token_expires_at = utc_now() + timedelta(seconds=tokens.get("expires_in", 3600))
        logger.info("google_token_refreshed", expires_in=tokens.get("expires_in"))
        return self._access_token

    async def _auth(self) -> tuple:
        """Headers and query params carrying credentials."""
        if self.has_oauth and not self._static_token:
            # Refresh a minute before expiry
            if (not self._access_token or not self._token_expires_at
                    or self._token_expires_at <= utc_now() + timedelta(seconds=60)):
                await self.refresh_access_token()

        if self._access_token:
            return {"Authorization": f"Bearer {self._access_token}"}, {}
        if self.api_key:
            return {}, {"key": self.api_key}
        return {}, {}

    # ==================== Transport ====================

    async def _request(
        self,
        method: str,
        path: str,
        correlation_id: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Call the Calendar API with exponential backoff.

        Client errors other than 429 fail immediately.

        Raises:
            GoogleCalendarError: When the request cannot be completed
        """
        last_error: Optional[GoogleCalendarError] = None

        for attempt in range(1, self.retry_attempts + 1):
            headers, auth_params = await self._auth()
            try:
                async with self._client() as client:
                    response = await client.request(
                        method,
                        f"{self.API_BASE}{path}",
                        headers=headers,
                        params={**(params or {}), **auth_params},
                        json=json
                    )
                    response.raise_for_status()
                    return response.json() if response.content else {}

            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                last_error = GoogleCalendarError(
                    f"Google Calendar API returned {status} for {method} {path}",
                    status_code=status,
                    correlation_id=correlation_id
                )
                if status == 401 and self.has_oauth and not self._static_token:
                    # Refresh before the next attempt
                    self._token_expires_at = None
                elif 400 <= status < 500 and status != 429:
                    break

            except httpx.TransportError as e:
                last_error = GoogleCalendarError(
                    f"Google Calendar request failed: {e}",
                    correlation_id=correlation_id
                )

            if attempt < self.retry_attempts:
                delay = min(self.retry_base_delay * (2 ** (attempt - 1)), MAX_RETRY_DELAY_SECONDS)
                logger.warning("google_request_retry",
                             correlation_id=correlation_id,
                             attempt=attempt,
                             delay=delay,
                             error=str(last_error))
                await asyncio.sleep(delay)

        raise last_error

    def _events_path(self, event_id: Optional[str] = None) -> str:
        path = f"/calendars/{quote(self.calendar_id, safe='')}/events"
        if event_id:
            path += f"/{quote(event_id, safe='')}"
        return path

    # ==================== Calendar API ====================

    async def fetch_remote_events(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        correlation_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """
        List events of the configured calendar in a time window.

        Args:
            start_date: Window start (default: now)
            end_date: Window end (default: 30 days from now)
            correlation_id: Tag attached to log lines for this call

        Returns:
            Raw Google event dicts, expanded from recurring series

        Raises:
            GoogleCalendarError: If the API keeps failing
        """
        if not self.is_configured:
            logger.warning("google_calendar_not_configured", correlation_id=correlation_id)
            return []

        time_min = start_date or utc_now()
        time_max = end_date or utc_now() + timedelta(days=30)

        params = {
            "timeMin": isoformat_utc(time_min),
            "timeMax": isoformat_utc(time_max),
            "singleEvents": "true",  # Expand recurring events
            "orderBy": "startTime",
            "maxResults": 250,
        }

        logger.info("google_events_fetch_started",
                   correlation_id=correlation_id,
                   time_min=params["timeMin"],
                   time_max=params["timeMax"])

        events: List[Dict[str, Any]] = []
        page_token = None
        while True:
            page_params = dict(params)
            if page_token:
                page_params["pageToken"] = page_token

            data = await self._request("GET", self._events_path(), correlation_id, params=page_params)
            events.extend(data.get("items", []))

            page_token = data.get("nextPageToken")
            if not page_token:
                break

        logger.info("google_events_listed", correlation_id=correlation_id, count=len(events))
        return events

    async def push_local_to_remote(
        self,
        event: CalendarEvent,
        correlation_id: Optional[str] = None
    ) -> Optional[str]:
        """
        Create or update the Google event bound to a local event.

        Returns:
            The Google event ID, or None if the push failed
        """
        if not self.can_write:
            logger.warning("google_calendar_not_writable",
                         correlation_id=correlation_id,
                         event_id=event.id)
            return None

        payload = self.build_remote_payload(event)

        try:
            if event.google_calendar_id:
                try:
                    data = await self._request(
                        "PUT", self._events_path(event.google_calendar_id), correlation_id, json=payload
                    )
                except GoogleCalendarError as e:
                    if e.status_code not in (404, 410):
                        raise
                    # Bound remote event is gone; recreate it
                    logger.warning("google_event_missing_recreating",
                                 correlation_id=correlation_id,
                                 external_id=event.google_calendar_id)
                    data = await self._request("POST", self._events_path(), correlation_id, json=payload)
            else:
                data = await self._request("POST", self._events_path(), correlation_id, json=payload)

        except GoogleCalendarError as e:
            logger.error("google_event_push_failed",
                        correlation_id=correlation_id,
                        event_id=event.id,
                        status_code=e.status_code,
                        error=str(e))
            return None

        external_id = data.get("id")
        if not external_id:
            logger.error("google_event_push_no_id", correlation_id=correlation_id, event_id=event.id)
            return None

        logger.info("google_event_pushed",
                   correlation_id=correlation_id,
                   event_id=event.id,
                   external_id=external_id)
        return external_id

    # ==================== Format Conversion ====================

    @staticmethod
    def parse_event_type(title: str, description: str = "") -> str:
        """Infer the lab event type from free text."""
        content = f"{title} {description}".lower()

        if "pto" in content or "vacation" in content or "time off" in content:
            return EventType.PTO.value
        if "clinical" in content or "clinic" in content:
            return EventType.CLINICAL_SERVICE.value
        if "meeting" in content or "standup" in content:
            return EventType.MEETING.value
        if "conference" in content or "presentation" in content:
            return EventType.CONFERENCE.value
        if "training" in content or "education" in content:
            return EventType.TRAINING.value
        if "holiday" in content:
            return EventType.HOLIDAY.value
        return EventType.OTHER.value

    def convert_remote_to_local(self, remote_event: Dict[str, Any]) -> Optional[CalendarEventDraft]:
        """
        Convert a Google event to the local shape.

        Returns None (never raises) when the event has no title, lacks a start
        or end, or carries dates that cannot be parsed.
        """
        try:
            title = remote_event.get("summary")
            if not title:
                return None

            start = remote_event.get("start") or {}
            end = remote_event.get("end") or {}
            start_date = parse_timestamp(start.get("dateTime") or start.get("date"))
            end_date = parse_timestamp(end.get("dateTime") or end.get("date"))
            if start_date is None or end_date is None:
                return None

            raw_description = remote_event.get("description") or ""

            return CalendarEventDraft(
                title=title,
                description=strip_lab_tag(raw_description) or None,
                event_type=self.parse_event_type(title, raw_description),
                start_date=start_date,
                end_date=end_date,
                all_day="dateTime" not in start,
                location=remote_event.get("location") or None,
                google_calendar_id=remote_event.get("id"),
                google_calendar_url=remote_event.get("htmlLink"),
                metadata={
                    "sourceType": "google_calendar",
                    "googleEvent": {
                        "status": remote_event.get("status"),
                        "attendees": len(remote_event.get("attendees") or []),
                        "created": remote_event.get("created"),
                        "updated": remote_event.get("updated"),
                    }
                }
            )
        except (AttributeError, TypeError, ValueError) as e:
            logger.debug("google_event_conversion_failed", external_id=_safe_id(remote_event), error=str(e))
            return None

    def build_remote_payload(self, event: CalendarEvent) -> Dict[str, Any]:
        """Convert a local event to the Google Calendar event format."""
        description_parts = []
        local_description = strip_lab_tag(event.description)
        if local_description:
            description_parts.append(local_description)
        description_parts.append(f"lab_id:{event.lab_id}")

        if event.all_day:
            start_day = event.start_date.date()
            end_day = event.end_date.date()
            if end_day <= start_day:
                end_day = start_day + timedelta(days=1)  # Google all-day end is exclusive
            start = {"date": start_day.isoformat()}
            end = {"date": end_day.isoformat()}
        else:
            start = {"dateTime": isoformat_utc(event.start_date), "timeZone": self.timezone}
            end = {"dateTime": isoformat_utc(event.end_date), "timeZone": self.timezone}

        payload = {
            "summary": event.title,
            "description": "\n\n".join(description_parts),
            "start": start,
            "end": end,
            "colorId": GOOGLE_CALENDAR_COLORS.get(event.event_type, GOOGLE_CALENDAR_COLORS[EventType.OTHER.value]),
            "transparency": "opaque",  # Show as busy
        }

        if event.location:
            payload["location"] = event.location

        if event.event_type == EventType.MEETING.value:
            payload["reminders"] = {
                "useDefault": False,
                "overrides": [
                    {"method": "email", "minutes": 24 * 60},
                    {"method": "popup", "minutes": 60},
                    {"method": "popup", "minutes": 15},
                ],
            }

        return payload


def _safe_id(remote_event: Any) -> Optional[str]:
    return remote_event.get("id") if isinstance(remote_event, dict) else None
