from __future__ import annotations

import io
import json
from datetime import datetime, timedelta, timezone
from urllib.error import HTTPError, URLError
from urllib.parse import parse_qs, urlparse
from zoneinfo import ZoneInfo

import pytest

from taskpilot.busy_service import Interval
from taskpilot.connectors.google_calendar import (
    CalendarErrorKind,
    CalendarEventRequest,
    CalendarGatewayError,
    GoogleCalendarGateway,
    OAuthTokenProvider,
    classify_provider_error,
    event_payload,
)
from taskpilot.models import CalendarConnection

BERLIN = ZoneInfo("Europe/Berlin")
UTC = timezone.utc


class _ResponseStub:
    def __init__(self, payload: bytes):
        self.payload = payload

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def read(self) -> bytes:
        return self.payload


class FakeProvider:
    """Replays (status, body) pairs; an exception instance is raised as-is."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request, timeout):
        self.requests.append(request)
        status, body = self.responses.pop(0)
        if isinstance(status, BaseException):
            raise status
        payload = json.dumps(body).encode("utf-8") if body is not None else b""
        if status >= 400:
            raise HTTPError(request.full_url, status, "error", hdrs=None, fp=io.BytesIO(payload))
        return _ResponseStub(payload)


class FakeTokens:
    def __init__(self, error: CalendarGatewayError | None = None):
        self.error = error
        self.issued = 0
        self.invalidated = 0

    def access_token(self, owner_id: int) -> str:
        if self.error is not None:
            raise self.error
        self.issued += 1
        return f"access-{self.issued}"

    def invalidate(self, owner_id: int) -> None:
        self.invalidated += 1


class FakeConnections:
    def __init__(self, refresh_token: str | None = "refresh-1", calendar_id: str = "work@example.com"):
        self.connection = CalendarConnection(owner_id=1, calendar_id=calendar_id, refresh_token=refresh_token)

    def get(self, owner_id: int) -> CalendarConnection | None:
        return self.connection

    def refresh_token(self, owner_id: int) -> str | None:
        return self.connection.refresh_token


def _request() -> CalendarEventRequest:
    return CalendarEventRequest(
        title="Write report",
        start=datetime(2026, 3, 2, 8, 0, tzinfo=UTC),
        end=datetime(2026, 3, 2, 9, 0, tzinfo=UTC),
        timezone_name="Europe/Berlin",
        description="Quarterly numbers",
        task_id=42,
    )


def _event_body(event_id: str = "evt-1") -> dict:
    return {
        "id": event_id,
        "start": {"dateTime": "2026-03-02T09:00:00+01:00", "timeZone": "Europe/Berlin"},
        "end": {"dateTime": "2026-03-02T10:00:00+01:00", "timeZone": "Europe/Berlin"},
        "htmlLink": "https://calendar.google.com/event?eid=1",
    }


def _gateway(tokens=None) -> GoogleCalendarGateway:
    return GoogleCalendarGateway(tokens=tokens or FakeTokens(), connections=FakeConnections())


@pytest.mark.parametrize(
    ("status", "payload", "exc", "expected"),
    [
        (401, None, None, CalendarErrorKind.TOKEN_EXPIRED),
        (400, {"error": "invalid_grant", "error_description": "Bad Request"}, None, CalendarErrorKind.TOKEN_EXPIRED),
        (400, {"error": "invalid_token"}, None, CalendarErrorKind.TOKEN_EXPIRED),
        (403, {"error": {"code": 403, "message": "Token has been expired or revoked."}}, None, CalendarErrorKind.TOKEN_EXPIRED),
        (403, {"error": {"errors": [{"reason": "authError"}]}}, None, CalendarErrorKind.TOKEN_EXPIRED),
        (400, {"error": {"code": 400, "message": "Invalid start time."}}, None, CalendarErrorKind.MALFORMED_REQUEST),
        (403, {"error": {"errors": [{"reason": "rateLimitExceeded"}]}}, None, CalendarErrorKind.TRANSIENT),
        (403, {"error": {"errors": [{"reason": "forbidden"}]}}, None, CalendarErrorKind.FATAL),
        (429, None, None, CalendarErrorKind.TRANSIENT),
        (503, None, None, CalendarErrorKind.TRANSIENT),
        (404, None, None, CalendarErrorKind.FATAL),
        (None, None, TimeoutError(), CalendarErrorKind.TRANSIENT),
        (None, None, URLError("down"), CalendarErrorKind.TRANSIENT),
        (None, None, ValueError("boom"), CalendarErrorKind.FATAL),
    ],
)
def test_classify_provider_error(status, payload, exc, expected) -> None:
    assert classify_provider_error(status=status, payload=payload, exc=exc) == expected


def test_event_payload_carries_explicit_offset_and_zone() -> None:
    payload = event_payload(_request())

    assert payload["start"] == {"dateTime": "2026-03-02T09:00:00+01:00", "timeZone": "Europe/Berlin"}
    assert payload["end"] == {"dateTime": "2026-03-02T10:00:00+01:00", "timeZone": "Europe/Berlin"}
    assert payload["description"] == "Quarterly numbers"
    assert payload["extendedProperties"] == {"private": {"taskpilotTaskId": "42"}}


def test_minimal_payload_keeps_only_title_and_bounds() -> None:
    request = _request().minimal()

    assert request.is_minimal
    assert set(event_payload(request, minimal=True)) == {"summary", "start", "end"}


def test_create_event_posts_json_to_connected_calendar(monkeypatch) -> None:
    provider = FakeProvider([(200, _event_body())])
    monkeypatch.setattr("taskpilot.connectors.google_calendar.urlopen", provider)

    event = _gateway().create_event(1, _request())

    assert event.event_id == "evt-1"
    assert event.start == datetime(2026, 3, 2, 8, 0, tzinfo=UTC)
    sent = provider.requests[0]
    assert sent.get_method() == "POST"
    assert sent.full_url == "https://www.googleapis.com/calendar/v3/calendars/work%40example.com/events"
    assert sent.get_header("Authorization") == "Bearer access-1"
    assert json.loads(sent.data)["summary"] == "Write report"


def test_stale_access_token_is_refreshed_once(monkeypatch) -> None:
    provider = FakeProvider([(401, {"error": {"code": 401, "message": "Invalid Credentials"}}), (200, _event_body())])
    monkeypatch.setattr("taskpilot.connectors.google_calendar.urlopen", provider)
    tokens = FakeTokens()

    event = _gateway(tokens).create_event(1, _request())

    assert event.event_id == "evt-1"
    assert tokens.invalidated == 1
    assert provider.requests[1].get_header("Authorization") == "Bearer access-2"


def test_repeated_401_surfaces_token_expired(monkeypatch) -> None:
    provider = FakeProvider([(401, None), (401, None)])
    monkeypatch.setattr("taskpilot.connectors.google_calendar.urlopen", provider)

    with pytest.raises(CalendarGatewayError) as excinfo:
        _gateway().create_event(1, _request())

    assert excinfo.value.kind == CalendarErrorKind.TOKEN_EXPIRED
    assert excinfo.value.status == 401
    assert len(provider.requests) == 2


def test_bad_request_is_classified_malformed(monkeypatch) -> None:
    provider = FakeProvider([(400, {"error": {"code": 400, "message": "Invalid value for: reminders"}})])
    monkeypatch.setattr("taskpilot.connectors.google_calendar.urlopen", provider)

    with pytest.raises(CalendarGatewayError) as excinfo:
        _gateway().create_event(1, _request())

    assert excinfo.value.kind == CalendarErrorKind.MALFORMED_REQUEST


def test_timeout_is_classified_transient(monkeypatch) -> None:
    provider = FakeProvider([(TimeoutError("timed out"), None)])
    monkeypatch.setattr("taskpilot.connectors.google_calendar.urlopen", provider)

    with pytest.raises(CalendarGatewayError) as excinfo:
        _gateway().create_event(1, _request())

    assert excinfo.value.kind == CalendarErrorKind.TRANSIENT
    assert "timed out" in str(excinfo.value)


def test_update_of_missing_event_reports_event_missing(monkeypatch) -> None:
    provider = FakeProvider([(404, {"error": {"code": 404, "message": "Not Found"}})])
    monkeypatch.setattr("taskpilot.connectors.google_calendar.urlopen", provider)

    with pytest.raises(CalendarGatewayError) as excinfo:
        _gateway().update_event(1, "evt-9", _request())

    assert excinfo.value.event_missing
    assert provider.requests[0].get_method() == "PATCH"
    assert provider.requests[0].full_url.endswith("/events/evt-9")


def test_delete_of_already_removed_event_succeeds(monkeypatch) -> None:
    provider = FakeProvider([(410, {"error": {"code": 410, "message": "Resource has been deleted"}})])
    monkeypatch.setattr("taskpilot.connectors.google_calendar.urlopen", provider)

    _gateway().delete_event(1, "evt-9")

    assert provider.requests[0].get_method() == "DELETE"


def test_list_busy_intervals_pages_filters_and_keeps_partial_results(monkeypatch) -> None:
    start = datetime(2026, 3, 2, tzinfo=UTC)
    end = start + timedelta(days=10)
    first_page = {
        "items": [
            {
                "id": "e1",
                "summary": "Standup",
                "start": {"dateTime": "2026-03-02T09:00:00+01:00"},
                "end": {"dateTime": "2026-03-02T09:30:00+01:00"},
            },
            {
                "id": "e2",
                "status": "cancelled",
                "start": {"dateTime": "2026-03-02T11:00:00+01:00"},
                "end": {"dateTime": "2026-03-02T12:00:00+01:00"},
            },
            {
                "id": "e3",
                "transparency": "transparent",
                "start": {"dateTime": "2026-03-02T14:00:00+01:00"},
                "end": {"dateTime": "2026-03-02T15:00:00+01:00"},
            },
        ],
        "nextPageToken": "page-2",
    }
    second_page = {
        "items": [
            {"id": "e4", "start": {"date": "2026-03-04"}, "end": {"date": "2026-03-05"}},
            {
                "id": "own-event",
                "start": {"dateTime": "2026-03-05T10:00:00+01:00"},
                "end": {"dateTime": "2026-03-05T11:00:00+01:00"},
            },
        ]
    }
    provider = FakeProvider([(200, first_page), (200, second_page), (503, None)])
    monkeypatch.setattr("taskpilot.connectors.google_calendar.urlopen", provider)

    busy = _gateway().list_busy_intervals(
        1,
        start,
        end,
        timezone_name="Europe/Berlin",
        exclude_event_ids=("own-event",),
    )

    assert busy.intervals == [
        Interval(
            start=datetime(2026, 3, 2, 8, 0, tzinfo=UTC),
            end=datetime(2026, 3, 2, 8, 30, tzinfo=UTC),
            label="Standup",
        ),
        Interval(start=datetime(2026, 3, 4, tzinfo=BERLIN), end=datetime(2026, 3, 5, tzinfo=BERLIN)),
    ]
    assert busy.complete is False
    assert busy.failed_ranges == ((start + timedelta(days=7), end),)
    query = parse_qs(urlparse(provider.requests[1].full_url).query)
    assert query["pageToken"] == ["page-2"]
    assert query["singleEvents"] == ["true"]


def test_list_busy_intervals_stops_after_token_failure() -> None:
    start = datetime(2026, 3, 2, tzinfo=UTC)
    end = start + timedelta(days=14)
    tokens = FakeTokens(error=CalendarGatewayError(CalendarErrorKind.TOKEN_EXPIRED, "reconnect"))

    busy = _gateway(tokens).list_busy_intervals(1, start, end, timezone_name="UTC")

    assert busy.intervals == []
    assert busy.failed_ranges == ((start, end),)


def test_token_provider_refreshes_and_caches(monkeypatch) -> None:
    provider = FakeProvider([(200, {"access_token": "ya29.token", "expires_in": 3599})])
    monkeypatch.setattr("taskpilot.connectors.google_calendar.urlopen", provider)
    tokens = OAuthTokenProvider(
        client_id="client",
        client_secret="secret",
        connections=FakeConnections(),
        clock=lambda: datetime(2026, 3, 2, 9, 0, tzinfo=UTC),
    )

    assert tokens.access_token(1) == "ya29.token"
    assert tokens.access_token(1) == "ya29.token"

    assert len(provider.requests) == 1
    form = parse_qs(provider.requests[0].data.decode("utf-8"))
    assert form["grant_type"] == ["refresh_token"]
    assert form["refresh_token"] == ["refresh-1"]


def test_token_provider_maps_invalid_grant_to_token_expired(monkeypatch) -> None:
    provider = FakeProvider([(400, {"error": "invalid_grant", "error_description": "Token has been expired or revoked."})])
    monkeypatch.setattr("taskpilot.connectors.google_calendar.urlopen", provider)
    tokens = OAuthTokenProvider(client_id="client", client_secret="secret", connections=FakeConnections())

    with pytest.raises(CalendarGatewayError) as excinfo:
        tokens.access_token(1)

    assert excinfo.value.kind == CalendarErrorKind.TOKEN_EXPIRED


def test_token_provider_without_refresh_token_needs_reauth(monkeypatch) -> None:
    def _fail(request, timeout):
        raise AssertionError("no HTTP call expected")

    monkeypatch.setattr("taskpilot.connectors.google_calendar.urlopen", _fail)
    tokens = OAuthTokenProvider(client_id="client", client_secret="secret", connections=FakeConnections(refresh_token=None))

    with pytest.raises(CalendarGatewayError) as excinfo:
        tokens.access_token(1)

    assert excinfo.value.kind == CalendarErrorKind.TOKEN_EXPIRED


def test_token_provider_from_env_requires_client_credentials(monkeypatch) -> None:
    monkeypatch.delenv("TASKPILOT_GOOGLE_CLIENT_ID", raising=False)
    monkeypatch.delenv("TASKPILOT_GOOGLE_CLIENT_SECRET", raising=False)

    with pytest.raises(CalendarGatewayError, match="not configured"):
        OAuthTokenProvider.from_env(FakeConnections())
