from __future__ import annotations

from collections.abc import Collection, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime, time, timedelta
from enum import StrEnum
import json
import logging
import os
import re
import threading
from typing import Any, Callable, Protocol
from urllib.error import HTTPError, URLError
from urllib.parse import quote, urlencode
from urllib.request import Request, urlopen
from zoneinfo import ZoneInfo

from taskpilot.busy_service import Interval
from taskpilot.models import CalendarConnection
from taskpilot.timeutil import parse_date_ymd, parse_provider_dt, to_rfc3339, utc_now

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API = "https://www.googleapis.com/calendar/v3"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"

_TOKEN_ERROR_CODES: frozenset[str] = frozenset(
    {"invalid_grant", "invalid_token", "expired_token", "unauthenticated"}
)
_TOKEN_ERROR_REASONS: frozenset[str] = frozenset({"autherror", "invalidcredentials"})
_RATE_LIMIT_REASONS: frozenset[str] = frozenset(
    {"ratelimitexceeded", "userratelimitexceeded", "quotaexceeded"}
)
_TRANSIENT_STATUSES: frozenset[int] = frozenset({408, 425, 429})
_EVENT_MISSING_STATUSES: frozenset[int] = frozenset({404, 410})
_TOKEN_REVOKED_PATTERN = re.compile(r"token.*(expired|revoked)", re.IGNORECASE)
_TOKEN_EXPIRY_MARGIN = timedelta(seconds=60)


class CalendarErrorKind(StrEnum):
    TOKEN_EXPIRED = "token_expired"
    MALFORMED_REQUEST = "malformed_request"
    TRANSIENT = "transient"
    FATAL = "fatal"


class CalendarGatewayError(RuntimeError):
    """Raised by calendar gateway calls, carrying the classified failure kind."""

    def __init__(self, kind: CalendarErrorKind, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.status = status

    @property
    def event_missing(self) -> bool:
        return self.status in _EVENT_MISSING_STATUSES


def classify_provider_error(
    *,
    status: int | None = None,
    payload: Mapping[str, Any] | None = None,
    exc: BaseException | None = None,
) -> CalendarErrorKind:
    """Map a failed provider call to one of the four recovery classes.

    Token signals win over the HTTP status: Google answers a revoked refresh
    token with HTTP 400 ``invalid_grant``, which must trigger reauthorization
    rather than the malformed-request retry.
    """
    codes, reasons, message = _error_signals(payload)
    if codes & _TOKEN_ERROR_CODES or reasons & _TOKEN_ERROR_REASONS:
        return CalendarErrorKind.TOKEN_EXPIRED
    if message and _TOKEN_REVOKED_PATTERN.search(message):
        return CalendarErrorKind.TOKEN_EXPIRED
    if status == 401:
        return CalendarErrorKind.TOKEN_EXPIRED

    if status is None:
        if isinstance(exc, (TimeoutError, URLError, ConnectionError)):
            return CalendarErrorKind.TRANSIENT
        return CalendarErrorKind.FATAL

    if status == 400:
        return CalendarErrorKind.MALFORMED_REQUEST
    if status in _TRANSIENT_STATUSES or status >= 500:
        return CalendarErrorKind.TRANSIENT
    if status == 403 and reasons & _RATE_LIMIT_REASONS:
        return CalendarErrorKind.TRANSIENT
    return CalendarErrorKind.FATAL


def _error_signals(payload: Mapping[str, Any] | None) -> tuple[set[str], set[str], str]:
    codes: set[str] = set()
    reasons: set[str] = set()
    message = ""
    if not isinstance(payload, Mapping):
        return codes, reasons, message

    error = payload.get("error")
    if isinstance(error, str):
        # OAuth token endpoint shape: {"error": "invalid_grant", "error_description": "..."}
        codes.add(error.lower())
        description = payload.get("error_description")
        if isinstance(description, str):
            message = description
    elif isinstance(error, Mapping):
        status_text = error.get("status")
        if isinstance(status_text, str):
            codes.add(status_text.lower())
        error_message = error.get("message")
        if isinstance(error_message, str):
            message = error_message
        details = error.get("errors")
        if isinstance(details, list):
            for detail in details:
                if isinstance(detail, Mapping) and isinstance(detail.get("reason"), str):
                    reasons.add(detail["reason"].lower())
    return codes, reasons, message


@dataclass(frozen=True)
class CalendarEventRequest:
    title: str
    start: datetime
    end: datetime
    timezone_name: str
    description: str | None = None
    task_id: int | None = None

    def minimal(self) -> CalendarEventRequest:
        """Title and bounds only, for providers that reject an optional field."""
        return replace(self, description=None, task_id=None)

    @property
    def is_minimal(self) -> bool:
        return self.description is None and self.task_id is None


def event_payload(request: CalendarEventRequest, *, minimal: bool = False) -> dict[str, Any]:
    tz = ZoneInfo(request.timezone_name)
    payload: dict[str, Any] = {
        "summary": request.title,
        "start": {"dateTime": to_rfc3339(request.start, tz), "timeZone": request.timezone_name},
        "end": {"dateTime": to_rfc3339(request.end, tz), "timeZone": request.timezone_name},
    }
    if minimal:
        return payload

    if request.description:
        payload["description"] = request.description
    if request.task_id is not None:
        payload["extendedProperties"] = {"private": {"taskpilotTaskId": str(request.task_id)}}
    payload["reminders"] = {"useDefault": True}
    return payload


@dataclass(frozen=True)
class CalendarEvent:
    event_id: str
    start: datetime
    end: datetime
    html_link: str | None = None


@dataclass(frozen=True)
class BusyIntervals:
    """Busy blocks read from the provider.

    ``complete`` is False when part of the requested range could not be read;
    ``failed_ranges`` lists those parts. Callers schedule against what is known.
    """

    intervals: list[Interval]
    complete: bool = True
    failed_ranges: tuple[tuple[datetime, datetime], ...] = ()


class ConnectionSource(Protocol):
    def get(self, owner_id: int) -> CalendarConnection | None: ...

    def refresh_token(self, owner_id: int) -> str | None: ...


class TokenProvider(Protocol):
    def access_token(self, owner_id: int) -> str: ...

    def invalidate(self, owner_id: int) -> None: ...


class CalendarGateway(Protocol):
    def create_event(self, owner_id: int, request: CalendarEventRequest) -> CalendarEvent: ...

    def update_event(self, owner_id: int, event_id: str, request: CalendarEventRequest) -> CalendarEvent: ...

    def delete_event(self, owner_id: int, event_id: str) -> None: ...

    def list_busy_intervals(
        self,
        owner_id: int,
        start: datetime,
        end: datetime,
        *,
        timezone_name: str,
        exclude_event_ids: Collection[str] = (),
    ) -> BusyIntervals: ...


@dataclass
class OAuthTokenProvider:
    """Exchanges each owner's stored refresh token for short-lived access tokens."""

    client_id: str
    client_secret: str
    connections: ConnectionSource
    token_url: str = GOOGLE_TOKEN_URL
    timeout_sec: float = 20.0
    clock: Callable[[], datetime] = utc_now
    _cache: dict[int, tuple[str, datetime]] = field(default_factory=dict, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    @classmethod
    def from_env(cls, connections: ConnectionSource, *, timeout_sec: float = 20.0) -> OAuthTokenProvider:
        client_id = os.getenv("TASKPILOT_GOOGLE_CLIENT_ID", "").strip()
        client_secret = os.getenv("TASKPILOT_GOOGLE_CLIENT_SECRET", "").strip()
        if not client_id or not client_secret:
            raise CalendarGatewayError(
                CalendarErrorKind.FATAL,
                "Google Calendar is not configured. Set TASKPILOT_GOOGLE_CLIENT_ID and "
                "TASKPILOT_GOOGLE_CLIENT_SECRET.",
            )
        return cls(
            client_id=client_id,
            client_secret=client_secret,
            connections=connections,
            timeout_sec=timeout_sec,
        )

    def access_token(self, owner_id: int) -> str:
        now = self.clock()
        with self._lock:
            cached = self._cache.get(owner_id)
            if cached is not None and cached[1] - _TOKEN_EXPIRY_MARGIN > now:
                return cached[0]

        refresh_token = self.connections.refresh_token(owner_id)
        if not refresh_token:
            raise CalendarGatewayError(
                CalendarErrorKind.TOKEN_EXPIRED,
                "Calendar is not connected or needs reauthorization.",
            )

        body = urlencode(
            {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            }
        ).encode("utf-8")
        request = Request(
            self.token_url,
            data=body,
            method="POST",
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        data = _send_json(request, timeout_sec=self.timeout_sec)

        token = data.get("access_token")
        if not isinstance(token, str) or not token:
            raise CalendarGatewayError(CalendarErrorKind.FATAL, "Token endpoint returned no access token.")
        expires_in = data.get("expires_in")
        lifetime = int(expires_in) if isinstance(expires_in, (int, float)) else 3600

        with self._lock:
            self._cache[owner_id] = (token, now + timedelta(seconds=lifetime))
        logger.info("calendar_token_refreshed owner_id=%s expires_in=%s", owner_id, lifetime)
        return token

    def invalidate(self, owner_id: int) -> None:
        with self._lock:
            self._cache.pop(owner_id, None)


@dataclass(frozen=True)
class GoogleCalendarGateway:
    tokens: TokenProvider
    connections: ConnectionSource
    timeout_sec: float = 20.0
    base_url: str = GOOGLE_CALENDAR_API
    busy_chunk_days: int = 7

    def create_event(self, owner_id: int, request: CalendarEventRequest) -> CalendarEvent:
        data = self._request_json(
            owner_id,
            method="POST",
            path=self._events_path(owner_id),
            body=event_payload(request, minimal=request.is_minimal),
        )
        event = _parse_event(data, ZoneInfo(request.timezone_name))
        logger.info("calendar_event_created owner_id=%s event_id=%s", owner_id, event.event_id)
        return event

    def update_event(self, owner_id: int, event_id: str, request: CalendarEventRequest) -> CalendarEvent:
        data = self._request_json(
            owner_id,
            method="PATCH",
            path=f"{self._events_path(owner_id)}/{quote(event_id, safe='')}",
            body=event_payload(request, minimal=request.is_minimal),
        )
        event = _parse_event(data, ZoneInfo(request.timezone_name))
        logger.info("calendar_event_updated owner_id=%s event_id=%s", owner_id, event.event_id)
        return event

    def delete_event(self, owner_id: int, event_id: str) -> None:
        try:
            self._request_json(
                owner_id,
                method="DELETE",
                path=f"{self._events_path(owner_id)}/{quote(event_id, safe='')}",
            )
        except CalendarGatewayError as exc:
            if not exc.event_missing:
                raise
            logger.info("calendar_event_already_gone owner_id=%s event_id=%s", owner_id, event_id)
            return
        logger.info("calendar_event_deleted owner_id=%s event_id=%s", owner_id, event_id)

    def list_busy_intervals(
        self,
        owner_id: int,
        start: datetime,
        end: datetime,
        *,
        timezone_name: str,
        exclude_event_ids: Collection[str] = (),
    ) -> BusyIntervals:
        """Read busy blocks in weekly chunks.

        A chunk that fails is recorded in ``failed_ranges`` and skipped; the
        remaining chunks are still read. A token failure stops the walk since
        every later chunk would fail the same way.
        """
        tz = ZoneInfo(timezone_name)
        intervals: list[Interval] = []
        failed: list[tuple[datetime, datetime]] = []

        chunk_start = start
        while chunk_start < end:
            chunk_end = min(chunk_start + timedelta(days=self.busy_chunk_days), end)
            try:
                intervals.extend(
                    self._fetch_busy_chunk(
                        owner_id,
                        chunk_start,
                        chunk_end,
                        tz=tz,
                        exclude_event_ids=exclude_event_ids,
                    )
                )
            except CalendarGatewayError as exc:
                logger.warning(
                    "calendar_busy_fetch_failed owner_id=%s range_start=%s range_end=%s kind=%s",
                    owner_id,
                    chunk_start.isoformat(),
                    chunk_end.isoformat(),
                    exc.kind,
                )
                if exc.kind == CalendarErrorKind.TOKEN_EXPIRED:
                    failed.append((chunk_start, end))
                    break
                failed.append((chunk_start, chunk_end))
            chunk_start = chunk_end

        return BusyIntervals(intervals=intervals, complete=not failed, failed_ranges=tuple(failed))

    def _fetch_busy_chunk(
        self,
        owner_id: int,
        start: datetime,
        end: datetime,
        *,
        tz: ZoneInfo,
        exclude_event_ids: Collection[str],
    ) -> list[Interval]:
        intervals: list[Interval] = []
        page_token: str | None = None
        while True:
            query = {
                "timeMin": to_rfc3339(start, tz),
                "timeMax": to_rfc3339(end, tz),
                "singleEvents": "true",
                "orderBy": "startTime",
                "maxResults": "250",
            }
            if page_token:
                query["pageToken"] = page_token
            data = self._request_json(
                owner_id,
                method="GET",
                path=self._events_path(owner_id),
                query=query,
            )

            items = data.get("items", [])
            if not isinstance(items, list):
                raise CalendarGatewayError(CalendarErrorKind.FATAL, "Calendar event list has no items array.")
            for item in items:
                interval = _busy_interval(item, tz, exclude_event_ids=exclude_event_ids)
                if interval is not None:
                    intervals.append(interval)

            next_token = data.get("nextPageToken")
            if not isinstance(next_token, str) or not next_token:
                return intervals
            page_token = next_token

    def _events_path(self, owner_id: int) -> str:
        connection = self.connections.get(owner_id)
        calendar_id = connection.calendar_id if connection is not None and connection.calendar_id else "primary"
        return f"/calendars/{quote(calendar_id, safe='')}/events"

    def _request_json(
        self,
        owner_id: int,
        *,
        method: str,
        path: str,
        query: Mapping[str, str] | None = None,
        body: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        if query:
            url = f"{url}?{urlencode(query)}"
        data = json.dumps(body).encode("utf-8") if body is not None else None

        # A 401 on a cached access token gets one retry with a freshly refreshed token.
        for attempt in range(2):
            token = self.tokens.access_token(owner_id)
            headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}
            if data is not None:
                headers["Content-Type"] = "application/json; charset=utf-8"
            request = Request(url, data=data, method=method, headers=headers)
            try:
                return _send_json(request, timeout_sec=self.timeout_sec)
            except CalendarGatewayError as exc:
                if exc.status == 401 and attempt == 0:
                    self.tokens.invalidate(owner_id)
                    continue
                raise
        raise AssertionError("unreachable")


def _send_json(request: Request, *, timeout_sec: float) -> dict[str, Any]:
    try:
        with urlopen(request, timeout=timeout_sec) as response:
            raw = response.read()
    except HTTPError as exc:
        payload = _read_error_payload(exc)
        kind = classify_provider_error(status=exc.code, payload=payload, exc=exc)
        logger.warning("calendar_request_failed method=%s status=%s kind=%s", request.get_method(), exc.code, kind)
        raise CalendarGatewayError(kind, f"Calendar provider returned HTTP {exc.code}.", status=exc.code) from None
    except TimeoutError as exc:
        kind = classify_provider_error(exc=exc)
        raise CalendarGatewayError(kind, "Calendar provider request timed out.") from None
    except (URLError, ConnectionError) as exc:
        kind = classify_provider_error(exc=exc)
        raise CalendarGatewayError(kind, "Calendar provider is unreachable.") from None

    if not raw or not raw.strip():
        return {}
    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise CalendarGatewayError(CalendarErrorKind.FATAL, "Calendar provider returned invalid JSON.") from None
    if not isinstance(data, dict):
        raise CalendarGatewayError(CalendarErrorKind.FATAL, "Calendar provider returned unexpected JSON.")
    return data


def _read_error_payload(exc: HTTPError) -> dict[str, Any] | None:
    try:
        raw = exc.read()
    except OSError:
        return None
    if not raw:
        return None
    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    return data if isinstance(data, dict) else None


def _parse_event(data: Mapping[str, Any], tz: ZoneInfo) -> CalendarEvent:
    event_id = data.get("id")
    if not isinstance(event_id, str) or not event_id:
        raise CalendarGatewayError(CalendarErrorKind.FATAL, "Calendar provider returned an event without id.")
    try:
        start = _event_bound(data.get("start"), tz)
        end = _event_bound(data.get("end"), tz)
    except ValueError as exc:
        raise CalendarGatewayError(CalendarErrorKind.FATAL, f"Calendar event {event_id} has invalid bounds.") from exc
    html_link = data.get("htmlLink")
    return CalendarEvent(
        event_id=event_id,
        start=start,
        end=end,
        html_link=html_link if isinstance(html_link, str) else None,
    )


def _event_bound(value: Any, tz: ZoneInfo) -> datetime:
    if not isinstance(value, Mapping):
        raise ValueError("Event bound must be an object.")
    date_time = value.get("dateTime")
    if isinstance(date_time, str):
        return parse_provider_dt(date_time)
    # All-day events carry a date; the end date is exclusive.
    all_day = value.get("date")
    if isinstance(all_day, str):
        return datetime.combine(parse_date_ymd(all_day), time.min, tzinfo=tz)
    raise ValueError("Event bound has neither dateTime nor date.")


def _busy_interval(
    item: Any,
    tz: ZoneInfo,
    *,
    exclude_event_ids: Collection[str],
) -> Interval | None:
    if not isinstance(item, Mapping):
        return None
    if item.get("status") == "cancelled" or item.get("transparency") == "transparent":
        return None
    event_id = item.get("id")
    if event_id in exclude_event_ids:
        return None

    try:
        start = _event_bound(item.get("start"), tz)
        end = _event_bound(item.get("end"), tz)
    except ValueError:
        logger.warning("calendar_event_skipped event_id=%s reason=invalid_bounds", event_id)
        return None
    if end <= start:
        logger.warning("calendar_event_skipped event_id=%s reason=empty_interval", event_id)
        return None

    summary = item.get("summary")
    return Interval(start=start, end=end, label=summary if isinstance(summary, str) and summary else None)
