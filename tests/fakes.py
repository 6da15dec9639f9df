from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime, timedelta, timezone
from typing import Iterable, Optional, Union

from pomblock.errors import OAuthError
from pomblock.gateway import CalendarGateway, ListEventsRequest, ListEventsResult
from pomblock.models import CalendarSummary, OAuthToken, RemoteEvent, SyncState
from pomblock.oauth import OAuthClient, OAuthConfig, TokenGrant
from pomblock.storage import CredentialStore, SuppressionStore, SyncStateStore

UTC = timezone.utc


def utc(y: int, m: int, d: int, hh: int = 0, mm: int = 0) -> datetime:
    return datetime(y, m, d, hh, mm, tzinfo=UTC)


class Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def tick(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeGateway(CalendarGateway):
    """
    In-memory calendar. list_events answers from `script` first (results or
    exceptions, in order), then from the events it holds.
    """

    def __init__(self, calendars: Iterable[CalendarSummary] = ()) -> None:
        self.calendars = list(calendars)
        self.events: dict[str, RemoteEvent] = {}
        self.script: list[Union[ListEventsResult, Exception]] = []
        self.list_requests: list[ListEventsRequest] = []
        self.created: list[RemoteEvent] = []
        self.updated: list[tuple[str, RemoteEvent]] = []
        self.deleted: list[str] = []
        self.fail_create: Optional[Exception] = None
        self.fail_update: Optional[Exception] = None
        self.fail_delete: Optional[Exception] = None
        self._seq = 0

    async def list_calendars(self, token: str) -> list[CalendarSummary]:
        return list(self.calendars)

    async def create_calendar(self, token: str, summary: str, time_zone: Optional[str] = None) -> CalendarSummary:
        cal = CalendarSummary(id=f"cal-{len(self.calendars) + 1}", summary=summary)
        self.calendars.append(cal)
        return cal

    async def list_events(self, token: str, calendar_id: str, request: ListEventsRequest) -> ListEventsResult:
        self.list_requests.append(request)
        if self.script:
            item = self.script.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        return ListEventsResult(events=list(self.events.values()), next_continuation_token=None)

    async def create_event(self, token: str, calendar_id: str, event: RemoteEvent) -> str:
        if self.fail_create is not None:
            raise self.fail_create
        self._seq += 1
        event_id = f"evt-{self._seq}"
        stored = replace(event, id=event_id)
        self.events[event_id] = stored
        self.created.append(stored)
        return event_id

    async def update_event(self, token: str, calendar_id: str, event_id: str, event: RemoteEvent) -> None:
        if self.fail_update is not None:
            raise self.fail_update
        self.events[event_id] = replace(event, id=event_id)
        self.updated.append((event_id, event))

    async def delete_event(self, token: str, calendar_id: str, event_id: str) -> None:
        if self.fail_delete is not None:
            raise self.fail_delete
        self.events.pop(event_id, None)
        self.deleted.append(event_id)


class FakeOAuthClient(OAuthClient):
    def __init__(self, *, fail_refresh: bool = False) -> None:
        self.fail_refresh = fail_refresh
        self.refresh_calls = 0
        self.exchange_calls = 0

    async def exchange_code(self, config: OAuthConfig, code: str) -> TokenGrant:
        self.exchange_calls += 1
        return TokenGrant(access_token=f"access-{code}", expires_in=3600, refresh_token="refresh-1")

    async def refresh(self, config: OAuthConfig, refresh_token: str) -> TokenGrant:
        self.refresh_calls += 1
        if self.fail_refresh:
            raise OAuthError("invalid_grant", status_code=400)
        return TokenGrant(access_token="access-refreshed", expires_in=3600)


class MemorySyncState(SyncStateStore):
    def __init__(self) -> None:
        self.states: dict[str, SyncState] = {}

    def load_sync_state(self, account_id: str) -> SyncState:
        return self.states.get(account_id, SyncState(continuation_token=None, last_sync_time=None))

    def save_sync_state(self, account_id: str, state: SyncState) -> None:
        self.states[account_id] = state


class MemorySuppressions(SuppressionStore):
    def __init__(self) -> None:
        self.reasons: dict[str, str] = {}

    def suppressed_keys(self) -> set[str]:
        return set(self.reasons)

    def add_suppressions(self, instance_keys: Iterable[str], reason: str, at: datetime) -> None:
        for key in instance_keys:
            if self.reasons.get(key) == "user_deleted" and reason == "calendar_cancelled":
                continue
            self.reasons[key] = reason

    def purge_user_deleted(self, day: date) -> int:
        doomed = [k for k, r in self.reasons.items() if r == "user_deleted" and day.isoformat() in k.split(":")]
        for k in doomed:
            del self.reasons[k]
        return len(doomed)


class MemoryCredentials(CredentialStore):
    def __init__(self) -> None:
        self.tokens: dict[str, OAuthToken] = {}
        self.saves = 0

    def save_token(self, account_id: str, token: OAuthToken) -> None:
        self.saves += 1
        self.tokens[account_id] = token

    def load_token(self, account_id: str) -> Optional[OAuthToken]:
        return self.tokens.get(account_id)

    def delete_token(self, account_id: str) -> None:
        self.tokens.pop(account_id, None)


def event(
    event_id: str,
    start: datetime,
    end: datetime,
    *,
    title: Optional[str] = None,
    status: str = "confirmed",
    instance: Optional[str] = None,
) -> RemoteEvent:
    return RemoteEvent(
        id=event_id,
        start_at=start,
        end_at=end,
        title=title,
        status=status,
        private={"instance": instance} if instance else {},
    )
