from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Optional
from urllib.parse import quote

import httpx

from .errors import GatewayError, SyncTokenExpiredError, TransientGatewayError, UnauthenticatedError
from .models import CalendarSummary, RemoteEvent
from .parsing import to_rfc3339

log = logging.getLogger("pomblock")

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
TRANSIENT_STATUS_CODES = {408, 429, 500, 502, 503, 504}
MAX_PAGES = 50


@dataclass(frozen=True)
class ListEventsRequest:
    time_min: Optional[datetime] = None
    time_max: Optional[datetime] = None
    continuation_token: Optional[str] = None


@dataclass(frozen=True)
class ListEventsResult:
    events: list[RemoteEvent] = field(default_factory=list)
    next_continuation_token: Optional[str] = None


class CalendarGateway:
    """
    Remote calendar capability. Failures are signalled by exception class:
    - SyncTokenExpiredError: the continuation token is no longer accepted
    - TransientGatewayError: worth retrying
    - GatewayError: anything else
    """

    async def list_calendars(self, token: str) -> list[CalendarSummary]:
        raise NotImplementedError

    async def create_calendar(self, token: str, summary: str, time_zone: Optional[str] = None) -> CalendarSummary:
        raise NotImplementedError

    async def list_events(self, token: str, calendar_id: str, request: ListEventsRequest) -> ListEventsResult:
        raise NotImplementedError

    async def create_event(self, token: str, calendar_id: str, event: RemoteEvent) -> str:
        raise NotImplementedError

    async def update_event(self, token: str, calendar_id: str, event_id: str, event: RemoteEvent) -> None:
        raise NotImplementedError

    async def delete_event(self, token: str, calendar_id: str, event_id: str) -> None:
        raise NotImplementedError


def _parse_event_time(raw: Any) -> Optional[datetime]:
    if not isinstance(raw, dict):
        return None
    if raw.get("dateTime"):
        try:
            parsed = datetime.fromisoformat(str(raw["dateTime"]).replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    if raw.get("date"):
        try:
            day = date.fromisoformat(str(raw["date"]))
        except ValueError:
            return None
        return datetime.combine(day, datetime.min.time(), tzinfo=timezone.utc)
    return None


def event_from_google(payload: dict[str, Any]) -> RemoteEvent:
    private = (payload.get("extendedProperties") or {}).get("private") or {}
    return RemoteEvent(
        id=str(payload.get("id") or ""),
        start_at=_parse_event_time(payload.get("start")),
        end_at=_parse_event_time(payload.get("end")),
        title=payload.get("summary"),
        description=payload.get("description"),
        status=str(payload.get("status") or "confirmed"),
        updated=payload.get("etag") or payload.get("updated"),
        private={str(k): str(v) for k, v in private.items()},
    )


def event_to_google(event: RemoteEvent) -> dict[str, Any]:
    body: dict[str, Any] = {"status": event.status}
    if event.title is not None:
        body["summary"] = event.title
    if event.description is not None:
        body["description"] = event.description
    if event.start_at is not None:
        body["start"] = {"dateTime": to_rfc3339(event.start_at)}
    if event.end_at is not None:
        body["end"] = {"dateTime": to_rfc3339(event.end_at)}
    if event.private:
        body["extendedProperties"] = {"private": dict(event.private)}
    return body


def _safe_google_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:200]
        if isinstance(error_payload, str) and error_payload.strip():
            return " ".join(error_payload.split())[:200]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:200]
    return "request failed without an error payload"


class GoogleCalendarGateway(CalendarGateway):
    """Google Calendar v3 over httpx. Retrying is left to the sync engine."""

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        *,
        base_url: str = GOOGLE_CALENDAR_API_BASE_URL,
    ) -> None:
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)
        self._base_url = base_url.rstrip("/")

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    async def _request(
        self,
        token: str,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, Any]] = None,
        json_body: Optional[dict[str, Any]] = None,
    ) -> httpx.Response:
        try:
            response = await self._http_client.request(
                method,
                f"{self._base_url}{path}",
                params=params,
                json=json_body,
                headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
            )
        except httpx.TransportError as exc:
            raise TransientGatewayError(f"Google Calendar request failed: {exc}") from exc
        except httpx.HTTPError as exc:
            raise GatewayError(f"Google Calendar request failed: {exc}") from exc
        return response

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        status = response.status_code
        if 200 <= status < 300:
            return
        message = _safe_google_error_message(response)
        if status == 401:
            raise UnauthenticatedError(f"Google Calendar rejected the access token: {message}")
        if status in TRANSIENT_STATUS_CODES:
            raise TransientGatewayError(f"Google Calendar is unavailable ({status}): {message}", status_code=status)
        raise GatewayError(f"Google Calendar request failed ({status}): {message}", status_code=status)

    @staticmethod
    def _json(response: httpx.Response) -> dict[str, Any]:
        if response.status_code == 204 or not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            raise GatewayError("Google Calendar returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise GatewayError("Google Calendar returned an unexpected payload shape")
        return payload

    async def list_calendars(self, token: str) -> list[CalendarSummary]:
        out: list[CalendarSummary] = []
        params: dict[str, Any] = {"maxResults": 250}
        for _ in range(MAX_PAGES):
            response = await self._request(token, "GET", "/users/me/calendarList", params=params)
            self._raise_for_status(response)
            payload = self._json(response)
            for item in payload.get("items") or []:
                if isinstance(item, dict) and item.get("id"):
                    out.append(CalendarSummary(id=str(item["id"]), summary=str(item.get("summary") or "")))
            page = payload.get("nextPageToken")
            if not page:
                break
            params = {"maxResults": 250, "pageToken": page}
        return out

    async def create_calendar(self, token: str, summary: str, time_zone: Optional[str] = None) -> CalendarSummary:
        body: dict[str, Any] = {"summary": summary}
        if time_zone:
            body["timeZone"] = time_zone
        response = await self._request(token, "POST", "/calendars", json_body=body)
        self._raise_for_status(response)
        payload = self._json(response)
        if not payload.get("id"):
            raise GatewayError("Google Calendar create_calendar response has no id")
        return CalendarSummary(id=str(payload["id"]), summary=str(payload.get("summary") or summary))

    async def list_events(self, token: str, calendar_id: str, request: ListEventsRequest) -> ListEventsResult:
        path = f"/calendars/{quote(calendar_id, safe='')}/events"
        base: dict[str, Any] = {"singleEvents": "true", "showDeleted": "true", "maxResults": 2500}
        if request.continuation_token:
            base["syncToken"] = request.continuation_token
        else:
            if request.time_min is not None:
                base["timeMin"] = to_rfc3339(request.time_min)
            if request.time_max is not None:
                base["timeMax"] = to_rfc3339(request.time_max)

        events: list[RemoteEvent] = []
        params = dict(base)
        next_token: Optional[str] = None
        for _ in range(MAX_PAGES):
            response = await self._request(token, "GET", path, params=params)
            if response.status_code == 410:
                raise SyncTokenExpiredError("Google Calendar sync token expired", status_code=410)
            self._raise_for_status(response)
            payload = self._json(response)
            items = payload.get("items")
            if not isinstance(items, list):
                raise GatewayError("Google Calendar list_events response is missing items")
            events.extend(event_from_google(item) for item in items if isinstance(item, dict))
            page = payload.get("nextPageToken")
            if not page:
                next_token = payload.get("nextSyncToken")
                break
            params = dict(base, pageToken=page)
        return ListEventsResult(events=events, next_continuation_token=next_token)

    async def create_event(self, token: str, calendar_id: str, event: RemoteEvent) -> str:
        path = f"/calendars/{quote(calendar_id, safe='')}/events"
        response = await self._request(token, "POST", path, json_body=event_to_google(event))
        self._raise_for_status(response)
        payload = self._json(response)
        if not payload.get("id"):
            raise GatewayError("Google Calendar create_event response has no id")
        return str(payload["id"])

    async def update_event(self, token: str, calendar_id: str, event_id: str, event: RemoteEvent) -> None:
        path = f"/calendars/{quote(calendar_id, safe='')}/events/{quote(event_id, safe='')}"
        response = await self._request(token, "PUT", path, json_body=event_to_google(event))
        self._raise_for_status(response)

    async def delete_event(self, token: str, calendar_id: str, event_id: str) -> None:
        path = f"/calendars/{quote(calendar_id, safe='')}/events/{quote(event_id, safe='')}"
        response = await self._request(token, "DELETE", path)
        if response.status_code in (404, 410):
            log.info("Remote event %s already gone", event_id)
            return
        self._raise_for_status(response)
