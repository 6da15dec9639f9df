from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import StrEnum
from typing import Awaitable, Callable, Optional, TypeVar

from .config import WorkspaceConfig
from .errors import GatewayError, SyncTokenExpiredError, TransientGatewayError
from .gateway import CalendarGateway, ListEventsRequest, ListEventsResult
from .models import RemoteEvent, SuppressionReason, SyncState
from .storage import SuppressionStore, SyncStateStore

T = TypeVar("T")

log = logging.getLogger("pomblock")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_ms: int = 200


async def retry_with_backoff(
    func: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Retries func on TransientGatewayError only, doubling the delay each time.
    Exhaustion surfaces as a plain (non-retryable) GatewayError.
    """
    attempt = 0
    while True:
        try:
            return await func()
        except TransientGatewayError as exc:
            if attempt + 1 >= policy.max_attempts:
                raise GatewayError(
                    f"gave up after {attempt + 1} attempts: {exc}",
                    status_code=exc.status_code,
                ) from exc
            delay = policy.base_delay_ms * (2**attempt) / 1000.0
            log.warning("Attempt %d failed: %s. Retrying in %.2fs", attempt + 1, exc, delay)
            await sleep(delay)
            attempt += 1


class EventCache:
    """Last observed payload per remote event id."""

    def __init__(self) -> None:
        self._events: dict[str, RemoteEvent] = {}

    def get(self, event_id: str) -> Optional[RemoteEvent]:
        return self._events.get(event_id)

    def upsert(self, event: RemoteEvent) -> None:
        self._events[event.id] = event

    def remove(self, event_id: str) -> Optional[RemoteEvent]:
        return self._events.pop(event_id, None)

    def list_events(self) -> list[RemoteEvent]:
        return list(self._events.values())

    def __len__(self) -> int:
        return len(self._events)

    def __contains__(self, event_id: object) -> bool:
        return event_id in self._events


@dataclass(frozen=True)
class SyncResult:
    added: list[RemoteEvent] = field(default_factory=list)
    updated: list[RemoteEvent] = field(default_factory=list)
    deleted_ids: list[str] = field(default_factory=list)
    suppressed_instance_keys: list[str] = field(default_factory=list)
    next_continuation_token: Optional[str] = None
    removed: list[RemoteEvent] = field(default_factory=list)  # cached payloads of deleted_ids


class CalendarSyncService:
    """
    Incremental pull plus write-through mutations for one account.
    Callers serialize sync() per account.
    """

    def __init__(
        self,
        *,
        gateway: CalendarGateway,
        cache: EventCache,
        sync_state_store: SyncStateStore,
        suppression_store: SuppressionStore,
        account_id: str,
        retry_policy: RetryPolicy = RetryPolicy(),
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.gateway = gateway
        self.cache = cache
        self.sync_state_store = sync_state_store
        self.suppression_store = suppression_store
        self.account_id = account_id
        self.retry_policy = retry_policy
        self._clock = clock
        self._sleep = sleep

    async def _list(self, token: str, calendar_id: str, request: ListEventsRequest) -> ListEventsResult:
        return await retry_with_backoff(
            lambda: self.gateway.list_events(token, calendar_id, request),
            self.retry_policy,
            sleep=self._sleep,
        )

    async def sync(
        self,
        access_token: str,
        calendar_id: str,
        time_min: Optional[datetime],
        time_max: Optional[datetime],
    ) -> SyncResult:
        state = self.sync_state_store.load_sync_state(self.account_id)
        request = ListEventsRequest(
            time_min=time_min,
            time_max=time_max,
            continuation_token=state.continuation_token,
        )
        try:
            result = await self._list(access_token, calendar_id, request)
        except SyncTokenExpiredError:
            if request.continuation_token is None:
                raise
            log.info("Sync token for %s expired, refetching the full window", self.account_id)
            result = await self._list(access_token, calendar_id, replace(request, continuation_token=None))

        added: list[RemoteEvent] = []
        updated: list[RemoteEvent] = []
        deleted_ids: list[str] = []
        removed: list[RemoteEvent] = []
        suppressed: list[str] = []

        for event in result.events:
            event_id = event.id.strip()
            if not event_id:
                continue
            if event_id != event.id:
                event = replace(event, id=event_id)

            if event.is_cancelled:
                previous = self.cache.remove(event_id)
                if previous is not None:
                    deleted_ids.append(event_id)
                    removed.append(previous)
                key = event.instance_key or (previous.instance_key if previous else None)
                if key and key not in suppressed:
                    suppressed.append(key)
                continue

            cached = self.cache.get(event_id)
            if cached is None:
                added.append(event)
            elif cached != event:
                updated.append(event)
            else:
                continue
            self.cache.upsert(event)

        now = self._clock()
        self.sync_state_store.save_sync_state(
            self.account_id,
            SyncState(continuation_token=result.next_continuation_token, last_sync_time=now),
        )
        self.suppression_store.add_suppressions(suppressed, str(SuppressionReason.CALENDAR_CANCELLED), now)

        log.info(
            "Synced %s: %d added, %d updated, %d deleted",
            self.account_id,
            len(added),
            len(updated),
            len(deleted_ids),
        )
        return SyncResult(
            added=added,
            updated=updated,
            deleted_ids=deleted_ids,
            suppressed_instance_keys=suppressed,
            next_continuation_token=result.next_continuation_token,
            removed=removed,
        )

    async def fetch_events(
        self,
        access_token: str,
        calendar_id: str,
        time_min: Optional[datetime],
        time_max: Optional[datetime],
    ) -> list[RemoteEvent]:
        """Window read that leaves the sync state alone."""
        result = await self._list(
            access_token,
            calendar_id,
            ListEventsRequest(time_min=time_min, time_max=time_max),
        )
        return [e for e in result.events if e.id.strip()]

    async def create_event(self, access_token: str, calendar_id: str, event: RemoteEvent) -> str:
        event_id = await self.gateway.create_event(access_token, calendar_id, event)
        self.cache.upsert(replace(event, id=event_id))
        return event_id

    async def update_event(self, access_token: str, calendar_id: str, event_id: str, event: RemoteEvent) -> None:
        await self.gateway.update_event(access_token, calendar_id, event_id, event)
        self.cache.upsert(replace(event, id=event_id))

    async def delete_event(self, access_token: str, calendar_id: str, event_id: str) -> None:
        await self.gateway.delete_event(access_token, calendar_id, event_id)
        self.cache.remove(event_id)


class CalendarSetupStatus(StrEnum):
    REUSED = "reused"
    LINKED_EXISTING = "linked_existing"
    CREATED = "created"


@dataclass(frozen=True)
class CalendarSetupResult:
    calendar_id: str
    status: CalendarSetupStatus


async def ensure_blocks_calendar(
    *,
    gateway: CalendarGateway,
    access_token: str,
    config: WorkspaceConfig,
    account_id: str,
) -> CalendarSetupResult:
    """Configured id, else a remote calendar with the configured name, else a new one."""
    configured = config.blocks_calendar_id(account_id)
    if configured:
        return CalendarSetupResult(calendar_id=configured, status=CalendarSetupStatus.REUSED)

    app = config.app_settings()
    for cal in await gateway.list_calendars(access_token):
        if cal.summary == app.blocks_calendar_name:
            config.save_blocks_calendar_id(account_id, cal.id)
            log.info("Linked existing blocks calendar %s for %s", cal.id, account_id)
            return CalendarSetupResult(calendar_id=cal.id, status=CalendarSetupStatus.LINKED_EXISTING)

    created = await gateway.create_calendar(access_token, app.blocks_calendar_name, app.time_zone)
    config.save_blocks_calendar_id(account_id, created.id)
    log.info("Created blocks calendar %s for %s", created.id, account_id)
    return CalendarSetupResult(calendar_id=created.id, status=CalendarSetupStatus.CREATED)
