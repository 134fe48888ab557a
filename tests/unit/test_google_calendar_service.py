"""Unit tests for the Google Calendar client."""

import json
from datetime import datetime, timedelta

import httpx
import pytest
import pytz

from labsync.models.calendar_sync import CalendarEvent, EventType
from labsync.services.google_calendar_service import (
    GoogleCalendarError,
    GoogleCalendarService,
    extract_lab_tag,
    remote_edit_url,
    strip_lab_tag,
)


def make_service(handler, **kwargs):
    """Client whose HTTP traffic goes to ``handler``."""
    options = {
        "calendar_id": "lab-calendar@group.calendar.google.com",
        "timezone": "America/Chicago",
        "access_token": "test-token",
        "retry_attempts": 3,
        "retry_base_delay": 0,
    }
    options.update(kwargs)
    return GoogleCalendarService(transport=httpx.MockTransport(handler), **options)


def make_local_event(**overrides) -> CalendarEvent:
    now = datetime.now(pytz.UTC)
    values = {
        "id": "evt-1",
        "lab_id": "abc-123",
        "title": "Journal club",
        "description": "Paper discussion",
        "event_type": EventType.MEETING.value,
        "start_date": datetime(2030, 5, 6, 14, 0, tzinfo=pytz.UTC),
        "end_date": datetime(2030, 5, 6, 15, 0, tzinfo=pytz.UTC),
        "all_day": False,
        "location": "Room 204",
        "created_at": now,
        "updated_at": now,
    }
    values.update(overrides)
    return CalendarEvent(**values)


class TestLabTag:
    """Test lab tag helpers."""

    def test_extract_lab_tag(self):
        assert extract_lab_tag("lab_id:abc-123 weekly sync") == "abc-123"

    def test_extract_lab_tag_on_own_line(self):
        description = "Agenda\n\nlab_id:0f8e2a6c-1b2d-4c3e-9f00-123456789abc"
        assert extract_lab_tag(description) == "0f8e2a6c-1b2d-4c3e-9f00-123456789abc"

    def test_extract_lab_tag_case_insensitive(self):
        assert extract_lab_tag("LAB_ID:ABC-123") == "ABC-123"

    def test_extract_lab_tag_missing(self):
        assert extract_lab_tag("weekly sync") is None
        assert extract_lab_tag(None) is None
        assert extract_lab_tag("") is None

    def test_strip_lab_tag(self):
        assert strip_lab_tag("lab_id:abc-123 weekly sync") == "weekly sync"
        assert strip_lab_tag("Agenda\n\nlab_id:abc-123") == "Agenda"

    def test_non_hex_lab_id_read_whole(self):
        assert extract_lab_tag("Agenda\n\nlab_id:bead_lab-2") == "bead_lab-2"
        assert strip_lab_tag("Agenda\n\nlab_id:bead_lab-2") == "Agenda"

    def test_tag_must_end_at_whitespace(self):
        assert extract_lab_tag("lab_id:abc.123") is None

    def test_remote_edit_url(self):
        assert remote_edit_url("g1") == "https://calendar.google.com/calendar/u/0/r/eventedit/g1"


class TestConvertRemoteToLocal:
    """Test Google event -> local event conversion."""

    @pytest.fixture
    def service(self, google_service):
        return google_service

    def test_timed_event(self, service, remote_event):
        draft = service.convert_remote_to_local(
            remote_event(description="lab_id:abc-123 weekly sync", location="Room 1")
        )

        assert draft is not None
        assert draft.title == "Lab Meeting"
        assert draft.description == "weekly sync"
        assert draft.event_type == EventType.MEETING.value
        assert draft.start_date == datetime(2024, 1, 3, 15, 0, tzinfo=pytz.UTC)
        assert draft.end_date == datetime(2024, 1, 3, 16, 0, tzinfo=pytz.UTC)
        assert draft.all_day is False
        assert draft.location == "Room 1"
        assert draft.google_calendar_id == "g1"
        assert draft.metadata["sourceType"] == "google_calendar"
        assert draft.metadata["googleEvent"]["updated"] == "2024-01-02T10:00:00Z"

    def test_all_day_event(self, service, remote_event):
        draft = service.convert_remote_to_local(
            remote_event(summary="Lab holiday party", all_day=True)
        )

        assert draft is not None
        assert draft.all_day is True
        assert draft.event_type == EventType.HOLIDAY.value
        assert draft.end_date - draft.start_date == timedelta(days=1)

    def test_offset_datetime_normalized_to_utc(self, service, remote_event):
        event = remote_event()
        event["start"] = {"dateTime": "2024-01-03T09:00:00-06:00"}
        event["end"] = {"dateTime": "2024-01-03T10:00:00-06:00"}

        draft = service.convert_remote_to_local(event)

        assert draft.start_date == datetime(2024, 1, 3, 15, 0, tzinfo=pytz.UTC)

    def test_missing_summary_returns_none(self, service, remote_event):
        assert service.convert_remote_to_local(remote_event(summary=None)) is None
        assert service.convert_remote_to_local(remote_event(summary="")) is None

    def test_missing_start_returns_none(self, service, remote_event):
        event = remote_event()
        del event["start"]
        assert service.convert_remote_to_local(event) is None

    def test_missing_end_returns_none(self, service, remote_event):
        event = remote_event()
        event["end"] = {}
        assert service.convert_remote_to_local(event) is None

    def test_malformed_date_returns_none(self, service, remote_event):
        event = remote_event()
        event["start"] = {"dateTime": "not-a-date"}
        assert service.convert_remote_to_local(event) is None

    def test_wrong_shape_returns_none(self, service):
        assert service.convert_remote_to_local({"summary": "x", "start": "2024-01-01"}) is None

    @pytest.mark.parametrize("title,expected", [
        ("PTO - Alex", EventType.PTO.value),
        ("Vacation", EventType.PTO.value),
        ("Clinic coverage", EventType.CLINICAL_SERVICE.value),
        ("Daily standup", EventType.MEETING.value),
        ("Poster presentation", EventType.CONFERENCE.value),
        ("Safety training", EventType.TRAINING.value),
        ("Holiday", EventType.HOLIDAY.value),
        ("Bench work", EventType.OTHER.value),
    ])
    def test_event_type_keywords(self, service, title, expected):
        assert service.parse_event_type(title) == expected


class TestBuildRemotePayload:
    """Test local event -> Google payload conversion."""

    def test_timed_meeting_payload(self, google_service):
        payload = google_service.build_remote_payload(make_local_event())

        assert payload["summary"] == "Journal club"
        assert payload["description"] == "Paper discussion\n\nlab_id:abc-123"
        assert payload["start"] == {"dateTime": "2030-05-06T14:00:00Z", "timeZone": "America/Chicago"}
        assert payload["end"] == {"dateTime": "2030-05-06T15:00:00Z", "timeZone": "America/Chicago"}
        assert payload["location"] == "Room 204"
        assert payload["colorId"] == "1"
        assert payload["reminders"]["useDefault"] is False
        assert {"method": "popup", "minutes": 15} in payload["reminders"]["overrides"]

    def test_all_day_payload_uses_dates(self, google_service):
        event = make_local_event(
            event_type=EventType.PTO.value,
            all_day=True,
            start_date=datetime(2030, 5, 6, tzinfo=pytz.UTC),
            end_date=datetime(2030, 5, 6, tzinfo=pytz.UTC),
            location=None,
            description=None,
        )

        payload = google_service.build_remote_payload(event)

        assert payload["start"] == {"date": "2030-05-06"}
        assert payload["end"] == {"date": "2030-05-07"}
        assert payload["colorId"] == "7"
        assert payload["description"] == "lab_id:abc-123"
        assert "location" not in payload
        assert "reminders" not in payload

    def test_existing_tag_not_duplicated(self, google_service):
        payload = google_service.build_remote_payload(
            make_local_event(description="Notes\n\nlab_id:abc-123")
        )
        assert payload["description"].count("lab_id:") == 1


@pytest.mark.asyncio
class TestFetchRemoteEvents:
    """Test listing events."""

    async def test_follows_pages(self, remote_event):
        requests = []

        def handler(request):
            requests.append(request)
            if "pageToken" not in request.url.params:
                return httpx.Response(200, json={"items": [remote_event("g1")], "nextPageToken": "p2"})
            return httpx.Response(200, json={"items": [remote_event("g2")]})

        service = make_service(handler)
        events = await service.fetch_remote_events(
            datetime(2024, 1, 1, tzinfo=pytz.UTC),
            datetime(2024, 2, 1, tzinfo=pytz.UTC),
            correlation_id="test"
        )

        assert [e["id"] for e in events] == ["g1", "g2"]
        assert len(requests) == 2

        params = requests[0].url.params
        assert params["timeMin"] == "2024-01-01T00:00:00Z"
        assert params["timeMax"] == "2024-02-01T00:00:00Z"
        assert params["singleEvents"] == "true"
        assert params["orderBy"] == "startTime"
        assert params["maxResults"] == "250"
        assert requests[0].headers["Authorization"] == "Bearer test-token"
        assert requests[0].url.path.endswith("/events")
        assert requests[1].url.params["pageToken"] == "p2"

    async def test_default_end_is_thirty_days_out(self):
        captured = {}

        def handler(request):
            captured["params"] = request.url.params
            return httpx.Response(200, json={"items": []})

        service = make_service(handler)
        start = datetime.now(pytz.UTC)
        await service.fetch_remote_events(start)

        time_max = datetime.strptime(captured["params"]["timeMax"], "%Y-%m-%dT%H:%M:%SZ")
        expected = (start + timedelta(days=30)).replace(tzinfo=None)
        assert abs((time_max - expected).total_seconds()) < 60

    async def test_api_key_sent_as_query_param(self):
        captured = {}

        def handler(request):
            captured["request"] = request
            return httpx.Response(200, json={"items": []})

        service = make_service(handler, access_token=None, api_key="read-key")
        await service.fetch_remote_events(datetime.now(pytz.UTC))

        assert captured["request"].url.params["key"] == "read-key"
        assert "Authorization" not in captured["request"].headers

    async def test_not_configured_returns_empty(self):
        def handler(request):
            raise AssertionError("no request expected")

        service = make_service(handler, access_token=None)
        assert await service.fetch_remote_events(datetime.now(pytz.UTC)) == []

    async def test_retries_server_errors(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(500)
            return httpx.Response(200, json={"items": []})

        service = make_service(handler)
        assert await service.fetch_remote_events(datetime.now(pytz.UTC)) == []
        assert len(calls) == 2

    async def test_retries_rate_limit(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) < 3:
                return httpx.Response(429)
            return httpx.Response(200, json={"items": []})

        service = make_service(handler)
        await service.fetch_remote_events(datetime.now(pytz.UTC))
        assert len(calls) == 3

    async def test_client_error_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(404)

        service = make_service(handler)
        with pytest.raises(GoogleCalendarError) as exc_info:
            await service.fetch_remote_events(datetime.now(pytz.UTC), correlation_id="corr-1")

        assert len(calls) == 1
        assert exc_info.value.status_code == 404
        assert exc_info.value.correlation_id == "corr-1"

    async def test_gives_up_after_retry_attempts(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503)

        service = make_service(handler)
        with pytest.raises(GoogleCalendarError) as exc_info:
            await service.fetch_remote_events(datetime.now(pytz.UTC))

        assert len(calls) == 3
        assert exc_info.value.status_code == 503

    async def test_transport_error_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, json={"items": []})

        service = make_service(handler)
        await service.fetch_remote_events(datetime.now(pytz.UTC))
        assert len(calls) == 2

    async def test_refresh_token_exchanged_once(self):
        token_requests = []
        api_requests = []

        def handler(request):
            if request.url.host == "oauth2.googleapis.com":
                token_requests.append(request)
                return httpx.Response(200, json={"access_token": "fresh-token", "expires_in": 3600})
            api_requests.append(request)
            return httpx.Response(200, json={"items": []})

        service = make_service(
            handler,
            access_token=None,
            client_id="client",
            client_secret="secret",
            refresh_token="refresh",
        )
        await service.fetch_remote_events(datetime.now(pytz.UTC))
        await service.fetch_remote_events(datetime.now(pytz.UTC))

        assert len(token_requests) == 1
        assert b"grant_type=refresh_token" in token_requests[0].content
        assert all(r.headers["Authorization"] == "Bearer fresh-token" for r in api_requests)


@pytest.mark.asyncio
class TestPushLocalToRemote:
    """Test creating/updating Google events."""

    async def test_insert_unbound_event(self):
        captured = {}

        def handler(request):
            captured["request"] = request
            return httpx.Response(200, json={"id": "g-new"})

        service = make_service(handler)
        external_id = await service.push_local_to_remote(make_local_event(), "corr-1")

        request = captured["request"]
        assert external_id == "g-new"
        assert request.method == "POST"
        assert request.url.path.endswith("/events")
        body = json.loads(request.content)
        assert body["summary"] == "Journal club"
        assert "lab_id:abc-123" in body["description"]

    async def test_update_bound_event(self):
        captured = {}

        def handler(request):
            captured["request"] = request
            return httpx.Response(200, json={"id": "g-1"})

        service = make_service(handler)
        external_id = await service.push_local_to_remote(make_local_event(google_calendar_id="g-1"))

        assert external_id == "g-1"
        assert captured["request"].method == "PUT"
        assert captured["request"].url.path.endswith("/events/g-1")

    async def test_missing_remote_event_recreated(self):
        methods = []

        def handler(request):
            methods.append(request.method)
            if request.method == "PUT":
                return httpx.Response(404)
            return httpx.Response(200, json={"id": "g-2"})

        service = make_service(handler)
        external_id = await service.push_local_to_remote(make_local_event(google_calendar_id="g-1"))

        assert external_id == "g-2"
        assert methods == ["PUT", "POST"]

    async def test_failure_returns_none(self):
        def handler(request):
            return httpx.Response(400, json={"error": {"message": "Bad Request"}})

        service = make_service(handler)
        assert await service.push_local_to_remote(make_local_event()) is None

    async def test_read_only_credentials_do_not_push(self):
        def handler(request):
            raise AssertionError("no request expected")

        service = make_service(handler, access_token=None, api_key="read-key")
        assert await service.push_local_to_remote(make_local_event()) is None
