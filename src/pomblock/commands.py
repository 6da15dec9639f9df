from __future__ import annotations

import asyncio
import functools
import itertools
import logging
import time as time_mod
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional, Sequence

from .config import DEFAULT_ACCOUNT, WorkspaceConfig, WorkspacePaths, workspace_from_env
from .errors import InvalidConfigError, UnauthenticatedError
from .event_mapper import decode_block_event, encode_block_event
from .gateway import CalendarGateway, GoogleCalendarGateway
from .jobs import due_for_daily_run
from .models import Block, Firmness, Interval, PomodoroPhase, RemoteEvent, SuppressionReason, Task
from .oauth import EnsureStatus, GoogleOAuthClient, OAuthManager, load_oauth_config_from_env
from .oplog import CommandLog
from .parsing import parse_date_input, parse_datetime_input
from .planner import BULK_FILL, SINGLE_BLOCK, PlacementMode, event_interval, plan_day
from .pomodoro import PomodoroEngine, PomodoroSnapshot, ReflectionSummary, reflection_summary
from .policy import local_date
from .relocation import RelocationStatus, blocks_hit_by_changes, changed_intervals, decide_relocation
from .routines import plan_candidates
from .storage import Storage
from .sync import CalendarSyncService, EventCache, RetryPolicy, SyncResult, ensure_blocks_calendar
from .tasks import TaskBoard, parse_task_status

log = logging.getLogger("pomblock")

GENERATION_TARGET_SECONDS = 30.0
BLOCK_CREATION_CONCURRENCY = 4
REFLECTION_DEFAULT_DAYS = 7


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IdFactory:
    """<prefix>-<micros>-<seq>, never one of the ids in taken."""

    def __init__(self, clock: Callable[[], datetime]) -> None:
        self._clock = clock
        self._seq = itertools.count(1)
        self.taken: set[str] = set()

    def __call__(self, prefix: str) -> str:
        while True:
            micros = int(self._clock().timestamp() * 1_000_000)
            candidate = f"{prefix}-{micros}-{next(self._seq)}"
            if candidate not in self.taken:
                return candidate


@dataclass
class RuntimeState:
    """All in-memory state; only touched while holding lock."""

    tasks: TaskBoard
    pomodoro: PomodoroEngine
    blocks: dict[str, Block] = field(default_factory=dict)
    synced_events: dict[str, list[RemoteEvent]] = field(default_factory=dict)
    caches: dict[str, EventCache] = field(default_factory=dict)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


@dataclass(frozen=True)
class AuthenticateResponse:
    status: str
    authorization_url: Optional[str] = None
    expires_at: Optional[datetime] = None


@dataclass(frozen=True)
class SyncCalendarResponse:
    account_id: str
    calendar_id: str
    added: int
    updated: int
    deleted: int
    suppressed: int
    relocated: int
    next_continuation_token: Optional[str]


def command(name: str) -> Callable:
    """Writes exactly one operational log entry per call and re-raises failures."""

    def decorate(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        @functools.wraps(func)
        async def wrapper(self: PomBlockApp, *args: Any, **kwargs: Any) -> Any:
            try:
                result = await func(self, *args, **kwargs)
            except Exception as exc:
                self.oplog.error(name, str(exc) or exc.__class__.__name__)
                raise
            self.oplog.info(name, "ok")
            return result

        return wrapper

    return decorate


def resolve_sync_window(
    time_min: Optional[str],
    time_max: Optional[str],
    *,
    now: datetime,
) -> Interval:
    start = parse_datetime_input(time_min, "time_min") if time_min else None
    end = parse_datetime_input(time_max, "time_max") if time_max else None
    if start is None and end is None:
        start = datetime.combine(now.astimezone(timezone.utc).date(), datetime.min.time(), tzinfo=timezone.utc)
    if start is None:
        start = end - timedelta(days=1)
    if end is None:
        end = start + timedelta(days=1)
    if end <= start:
        raise InvalidConfigError("time_max must be after time_min")
    return Interval(start=start, end=end)


class PomBlockApp:
    """
    Coarse-grained commands for a host (chat bot, CLI).

    In-memory state lives in RuntimeState behind a single asyncio lock that is
    never held across a network call. Blocks, tasks and pomodoro logs are
    written through to sqlite under that lock, right after each change, and
    loaded back on startup.
    """

    def __init__(
        self,
        paths: WorkspacePaths,
        *,
        gateway: Optional[CalendarGateway] = None,
        oauth: Optional[OAuthManager] = None,
        storage: Optional[Storage] = None,
        clock: Callable[[], datetime] = _utcnow,
        retry_policy: RetryPolicy = RetryPolicy(),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        paths.ensure()
        self.paths = paths
        self.config = WorkspaceConfig(paths.config_dir)
        self.config.ensure_defaults()
        self.storage = storage or Storage(paths.database_path)
        self.oplog = CommandLog(paths.command_log_path)
        self.gateway = gateway or GoogleCalendarGateway()
        self.oauth = oauth
        self.retry_policy = retry_policy
        self._clock = clock
        self._sleep = sleep
        self.new_id = IdFactory(clock)
        self.runtime = RuntimeState(
            tasks=TaskBoard(new_id=self.new_id, clock=clock),
            pomodoro=PomodoroEngine(new_id=self.new_id, clock=clock),
        )
        self._twin_locks: dict[str, asyncio.Lock] = {}
        self._restore()

    def _restore(self) -> None:
        runtime = self.runtime
        for block in self.storage.load_blocks():
            runtime.blocks[block.id] = block
        for task, block_id in self.storage.load_tasks():
            runtime.tasks.restore(task, block_id if block_id in runtime.blocks else None)
        logs = self.storage.load_pomodoro_logs()
        runtime.pomodoro.state.completed_logs = logs
        self.new_id.taken.update(runtime.blocks, runtime.tasks.tasks, (entry.id for entry in logs))
        if runtime.blocks or runtime.tasks.tasks:
            log.info("Restored %d blocks and %d tasks", len(runtime.blocks), len(runtime.tasks.tasks))

    def _save_tasks(self) -> None:
        board = self.runtime.tasks
        self.storage.replace_tasks(board.list_tasks(), board.block_by_task)

    def _save_logs_since(self, count: int) -> None:
        self.storage.save_pomodoro_logs(self.runtime.pomodoro.state.completed_logs[count:])

    @staticmethod
    def _account(account: Optional[str]) -> str:
        return (account or "").strip() or DEFAULT_ACCOUNT

    def _sync_service(self, account_id: str) -> CalendarSyncService:
        cache = self.runtime.caches.setdefault(account_id, EventCache())
        return CalendarSyncService(
            gateway=self.gateway,
            cache=cache,
            sync_state_store=self.storage,
            suppression_store=self.storage,
            account_id=account_id,
            retry_policy=self.retry_policy,
            clock=self._clock,
            sleep=self._sleep,
        )

    def _twin_lock(self, block_id: str) -> asyncio.Lock:
        return self._twin_locks.setdefault(block_id, asyncio.Lock())

    async def _try_access_token(self, account_id: str) -> Optional[str]:
        if self.oauth is None:
            return None
        result = await self.oauth.ensure_access_token(account_id)
        return result.token.access_token if result.token else None

    async def _required_access_token(self, account_id: str) -> str:
        token = await self._try_access_token(account_id)
        if token is None:
            raise UnauthenticatedError(f"account {account_id} is not authenticated with Google")
        return token

    def _get_block(self, block_id: str) -> Block:
        block = self.runtime.blocks.get(block_id)
        if block is None:
            raise InvalidConfigError(f"block not found: {block_id}")
        return block

    async def _push_twin(self, block: Block) -> None:
        """PUT the remote twin when there is one and a token to do it with."""
        if not block.calendar_event_id:
            return
        account_id = block.calendar_account_id or DEFAULT_ACCOUNT
        token = await self._try_access_token(account_id)
        calendar_id = self.config.blocks_calendar_id(account_id)
        if token is None or calendar_id is None:
            log.info("Skipping remote update of %s: no token or blocks calendar", block.id)
            return
        try:
            async with self._twin_lock(block.id):
                await self._sync_service(account_id).update_event(
                    token, calendar_id, block.calendar_event_id, encode_block_event(block)
                )
        except UnauthenticatedError as exc:
            log.warning("Remote update of %s skipped, %s needs to sign in again: %s", block.id, account_id, exc)

    @command("authenticate_google")
    async def authenticate_google(self, account: Optional[str] = None, code: Optional[str] = None) -> AuthenticateResponse:
        if self.oauth is None:
            raise InvalidConfigError("Google OAuth is not configured (set POMBLOCK_GOOGLE_CLIENT_ID)")
        account_id = self._account(account)
        if code and code.strip():
            token = await self.oauth.authenticate_with_code(account_id, code)
            return AuthenticateResponse(status="authenticated", expires_at=token.expires_at)

        result = await self.oauth.ensure_access_token(account_id)
        if result.status is EnsureStatus.REAUTHENTICATION_REQUIRED or result.token is None:
            return AuthenticateResponse(
                status=str(EnsureStatus.REAUTHENTICATION_REQUIRED),
                authorization_url=self.oauth.build_authorization_url(),
            )
        return AuthenticateResponse(status=str(result.status), expires_at=result.token.expires_at)

    @command("sync_calendar")
    async def sync_calendar(
        self,
        account: Optional[str] = None,
        time_min: Optional[str] = None,
        time_max: Optional[str] = None,
    ) -> SyncCalendarResponse:
        account_id = self._account(account)
        window = resolve_sync_window(time_min, time_max, now=self._clock())
        token = await self._required_access_token(account_id)
        setup = await ensure_blocks_calendar(
            gateway=self.gateway,
            access_token=token,
            config=self.config,
            account_id=account_id,
        )
        service = self._sync_service(account_id)
        result = await service.sync(token, setup.calendar_id, window.start, window.end)

        async with self.runtime.lock:
            self._apply_remote_twins(account_id, result)

        relocated = await self._relocate_after_sync(account_id, token, setup.calendar_id, result, window)

        events = await service.fetch_events(token, setup.calendar_id, window.start, window.end)
        async with self.runtime.lock:
            self.runtime.synced_events[account_id] = events

        return SyncCalendarResponse(
            account_id=account_id,
            calendar_id=setup.calendar_id,
            added=len(result.added),
            updated=len(result.updated),
            deleted=len(result.deleted_ids),
            suppressed=len(result.suppressed_instance_keys),
            relocated=relocated,
            next_continuation_token=result.next_continuation_token,
        )

    def _apply_remote_twins(self, account_id: str, result: SyncResult) -> None:
        """
        Imports unknown remote twins, follows remote time edits, drops cancelled twins.
        Twins whose instance key is suppressed are not imported.
        """
        blocks = self.runtime.blocks
        policy = self.config.policy(now=self._clock())
        tz = policy.zone
        suppressed = self.storage.suppressed_keys() if policy.respect_suppression else set()
        by_event = {
            (b.calendar_account_id, b.calendar_event_id): b.id for b in blocks.values() if b.calendar_event_id
        }
        touched: list[str] = []
        dropped: list[str] = []

        for ev in [*result.added, *result.updated]:
            remote = decode_block_event(ev, tz=tz, account_id=account_id)
            if remote is None:
                continue
            local_id = by_event.get((account_id, ev.id))
            if local_id is not None:
                local = blocks[local_id]
                if (local.start_at, local.end_at) != (remote.start_at, remote.end_at):
                    blocks[local_id] = replace(
                        local,
                        start_at=remote.start_at,
                        end_at=remote.end_at,
                        date=local_date(remote.start_at, tz),
                    )
                    touched.append(local_id)
                continue
            twin_of = next(
                (
                    b
                    for b in blocks.values()
                    if b.date == remote.date and b.instance_key == remote.instance_key
                ),
                None,
            )
            if twin_of is not None:
                if twin_of.calendar_event_id is None:
                    blocks[twin_of.id] = replace(twin_of, calendar_event_id=ev.id, calendar_account_id=account_id)
                    touched.append(twin_of.id)
                continue
            if remote.instance_key in suppressed:
                log.info("Not importing remote event %s: %s is suppressed", ev.id, remote.instance_key)
                continue
            if remote.id in blocks:
                remote = replace(remote, id=self.new_id("blk"))
            blocks[remote.id] = remote
            by_event[(account_id, ev.id)] = remote.id
            touched.append(remote.id)
            log.info("Imported block %s from remote event %s", remote.id, ev.id)

        for ev in result.removed:
            local_id = by_event.get((account_id, ev.id))
            if local_id is not None and blocks.pop(local_id, None) is not None:
                self.runtime.tasks.detach_block(local_id)
                dropped.append(local_id)
                log.info("Dropped block %s: remote twin %s was cancelled", local_id, ev.id)

        self.storage.save_blocks([blocks[i] for i in dict.fromkeys(touched) if i in blocks])
        self.storage.delete_blocks(dropped)
        if dropped:
            self._save_tasks()

    async def _relocate_after_sync(
        self,
        account_id: str,
        token: str,
        calendar_id: str,
        result: SyncResult,
        window: Interval,
    ) -> int:
        changed = changed_intervals(events=[*result.added, *result.updated, *result.removed], window=window)
        if not changed:
            return 0
        policy = self.config.policy(now=self._clock())
        moved: list[Block] = []
        async with self.runtime.lock:
            blocks = self.runtime.blocks
            account_events = self.runtime.caches.setdefault(account_id, EventCache()).list_events()
            hit = blocks_hit_by_changes(
                blocks=blocks.values(),
                account_id=account_id,
                changed=changed,
                limit=policy.max_relocations_per_sync,
            )
            for block in hit:
                decision = decide_relocation(
                    block=block,
                    policy=policy,
                    account_events=account_events,
                    other_blocks=list(blocks.values()),
                )
                if decision.status is RelocationStatus.MOVED and decision.interval is not None:
                    updated = replace(block, start_at=decision.interval.start, end_at=decision.interval.end)
                    blocks[block.id] = updated
                    moved.append(updated)
                elif decision.status is not RelocationStatus.UNCHANGED:
                    log.warning("Block %s: manual adjustment required (%s)", block.id, decision.status)
            self.storage.save_blocks(moved)

        service = self._sync_service(account_id)
        for block in moved:
            if block.calendar_event_id:
                async with self._twin_lock(block.id):
                    await service.update_event(token, calendar_id, block.calendar_event_id, encode_block_event(block))
        return len(moved)

    @command("generate_blocks")
    async def generate_blocks(self, date: str, account: Optional[str] = None) -> list[Block]:
        return await self._generate(date, account, BULK_FILL)

    @command("generate_one_block")
    async def generate_one_block(self, date: str, account: Optional[str] = None) -> list[Block]:
        return await self._generate(date, account, SINGLE_BLOCK)

    async def _generate(self, date_text: str, account: Optional[str], mode: PlacementMode) -> list[Block]:
        started = time_mod.perf_counter()
        day = parse_date_input(date_text)
        account_id = self._account(account)
        policy = self.config.policy(now=self._clock())
        templates = self.config.templates()
        routines = self.config.routines()

        async with self.runtime.lock:
            day_is_empty = not any(b.date == day for b in self.runtime.blocks.values())
        if day_is_empty and policy.respect_suppression:
            purged = self.storage.purge_user_deleted(day)
            if purged:
                log.info("Cleared %d user-deleted suppressions for %s", purged, day.isoformat())
        suppressed = self.storage.suppressed_keys()

        async with self.runtime.lock:
            existing = [b for b in self.runtime.blocks.values() if b.date == day]
            events = [e for evs in self.runtime.synced_events.values() for e in evs]
            plans = plan_day(
                day=day,
                policy=policy,
                candidates=plan_candidates(day=day, policy=policy, templates=templates, routines=routines),
                events=events,
                existing_blocks=existing,
                suppressed=suppressed,
                mode=mode,
            )
            generated = [
                Block(
                    id=self.new_id("blk"),
                    instance_key=p.instance_key,
                    date=day,
                    start_at=p.start_at,
                    end_at=p.end_at,
                    block_type=p.block_type,
                    firmness=p.firmness,
                    planned_cycles=p.planned_cycles,
                    source=p.source,
                    source_id=p.source_id,
                )
                for p in plans
            ]
            for block in generated:
                self.runtime.blocks[block.id] = block
            self.storage.save_blocks(generated)

        if generated:
            await self._materialize(generated, account_id)

        elapsed = time_mod.perf_counter() - started
        if elapsed > GENERATION_TARGET_SECONDS:
            self.oplog.error(
                "generate_blocks",
                f"generation for {day.isoformat()} took {elapsed:.1f}s (target {GENERATION_TARGET_SECONDS:.0f}s)",
            )
        async with self.runtime.lock:
            out = [self.runtime.blocks[b.id] for b in generated if b.id in self.runtime.blocks]
        return sorted(out, key=lambda b: (b.start_at, b.id))

    async def _materialize(self, generated: Sequence[Block], account_id: str) -> None:
        """Creates remote twins, at most BLOCK_CREATION_CONCURRENCY at a time."""
        token = await self._try_access_token(account_id)
        if token is None:
            log.info("No access token for %s, keeping %d blocks local", account_id, len(generated))
            return
        setup = await ensure_blocks_calendar(
            gateway=self.gateway,
            access_token=token,
            config=self.config,
            account_id=account_id,
        )
        service = self._sync_service(account_id)
        semaphore = asyncio.Semaphore(BLOCK_CREATION_CONCURRENCY)
        created: dict[str, str] = {}

        async def create_one(block: Block) -> None:
            async with semaphore:
                twin = encode_block_event(replace(block, calendar_account_id=account_id))
                created[block.id] = await service.create_event(token, setup.calendar_id, twin)

        tasks = [asyncio.create_task(create_one(b)) for b in generated]
        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        finally:
            for t in tasks:
                t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

            async with self.runtime.lock:
                linked: list[Block] = []
                for block_id, event_id in created.items():
                    block = self.runtime.blocks.get(block_id)
                    if block is not None:
                        block = replace(block, calendar_event_id=event_id, calendar_account_id=account_id)
                        self.runtime.blocks[block_id] = block
                        linked.append(block)
                self.storage.save_blocks(linked)

        for t in tasks:
            if not t.cancelled() and t.exception() is not None:
                raise t.exception()

    @command("approve_blocks")
    async def approve_blocks(self, block_ids: Sequence[str]) -> list[Block]:
        async with self.runtime.lock:
            approved: list[Block] = []
            for block_id in block_ids:
                block = self._get_block(block_id)
                if block.firmness is Firmness.DRAFT:
                    block = replace(block, firmness=Firmness.SOFT)
                    self.runtime.blocks[block_id] = block
                    self.storage.save_blocks([block])
                approved.append(block)
        for block in approved:
            await self._push_twin(block)
        return approved

    @command("adjust_block_time")
    async def adjust_block_time(self, block_id: str, start: str, end: str) -> Block:
        start_at = parse_datetime_input(start, "start")
        end_at = parse_datetime_input(end, "end")
        if end_at <= start_at:
            raise InvalidConfigError("end must be after start")
        tz = self.config.policy(now=self._clock()).zone
        async with self.runtime.lock:
            block = replace(
                self._get_block(block_id),
                start_at=start_at,
                end_at=end_at,
                date=local_date(start_at, tz),
            )
            self.runtime.blocks[block_id] = block
            self.storage.save_blocks([block])
        await self._push_twin(block)
        return block

    @command("delete_block")
    async def delete_block(self, block_id: str) -> bool:
        async with self.runtime.lock:
            block = self.runtime.blocks.pop(block_id, None)
            if block is not None:
                had_task = block_id in self.runtime.tasks.task_by_block
                self.runtime.tasks.detach_block(block_id)
                self.storage.delete_blocks([block_id])
                if had_task:
                    self._save_tasks()
        if block is None:
            return False

        self.storage.add_suppressions([block.instance_key], str(SuppressionReason.USER_DELETED), self._clock())

        if block.calendar_event_id:
            account_id = block.calendar_account_id or DEFAULT_ACCOUNT
            token = await self._try_access_token(account_id)
            calendar_id = self.config.blocks_calendar_id(account_id)
            if token is not None and calendar_id is not None:
                try:
                    async with self._twin_lock(block_id):
                        await self._sync_service(account_id).delete_event(
                            token, calendar_id, block.calendar_event_id
                        )
                except UnauthenticatedError as exc:
                    log.warning(
                        "Deleted block %s locally only, %s needs to sign in again: %s", block_id, account_id, exc
                    )
            else:
                log.info("Deleted block %s locally only: no token or blocks calendar", block_id)
        self._twin_locks.pop(block_id, None)
        return True

    @command("relocate_if_needed")
    async def relocate_if_needed(self, block_id: str, account: Optional[str] = None) -> Block:
        policy = self.config.policy(now=self._clock())
        async with self.runtime.lock:
            block = self._get_block(block_id)
            account_id = block.calendar_account_id or self._account(account)
            cache = self.runtime.caches.get(account_id)
            account_events = cache.list_events() if cache else list(self.runtime.synced_events.get(account_id, []))
            decision = decide_relocation(
                block=block,
                policy=policy,
                account_events=account_events,
                other_blocks=list(self.runtime.blocks.values()),
            )
            if decision.status is RelocationStatus.MOVED and decision.interval is not None:
                block = replace(block, start_at=decision.interval.start, end_at=decision.interval.end)
                self.runtime.blocks[block_id] = block
                self.storage.save_blocks([block])
        if decision.status is RelocationStatus.MOVED:
            await self._push_twin(block)
        elif decision.status is not RelocationStatus.UNCHANGED:
            log.warning("Block %s: manual adjustment required (%s)", block_id, decision.status)
        return block

    @command("list_blocks")
    async def list_blocks(self, date: Optional[str] = None) -> list[Block]:
        day = parse_date_input(date) if date else None
        async with self.runtime.lock:
            blocks = [b for b in self.runtime.blocks.values() if day is None or b.date == day]
        return sorted(blocks, key=lambda b: (b.start_at, b.id))

    @command("list_synced_events")
    async def list_synced_events(
        self,
        account: Optional[str] = None,
        time_min: Optional[str] = None,
        time_max: Optional[str] = None,
    ) -> list[RemoteEvent]:
        lo = parse_datetime_input(time_min, "time_min") if time_min else None
        hi = parse_datetime_input(time_max, "time_max") if time_max else None
        async with self.runtime.lock:
            events = list(self.runtime.synced_events.get(self._account(account), []))
        out: list[RemoteEvent] = []
        for ev in events:
            iv = event_interval(ev)
            if iv is None:
                continue
            if lo is not None and iv.end <= lo:
                continue
            if hi is not None and iv.start >= hi:
                continue
            out.append(ev)
        return sorted(out, key=lambda e: (e.start_at, e.id))

    @command("create_task")
    async def create_task(
        self,
        title: str,
        description: Optional[str] = None,
        estimated_cycles: Optional[int] = None,
    ) -> Task:
        async with self.runtime.lock:
            task = self.runtime.tasks.create(
                title=title, description=description, estimated_cycles=estimated_cycles
            )
            self._save_tasks()
            return task

    @command("update_task")
    async def update_task(
        self,
        task_id: str,
        *,
        title: Optional[str] = None,
        description: Optional[str] = None,
        estimated_cycles: Optional[int] = None,
        status: Optional[str] = None,
    ) -> Task:
        parsed_status = parse_task_status(status) if status is not None else None
        async with self.runtime.lock:
            task = self.runtime.tasks.update(
                task_id,
                title=title,
                description=description,
                estimated_cycles=estimated_cycles,
                status=parsed_status,
            )
            self._save_tasks()
            return task

    @command("delete_task")
    async def delete_task(self, task_id: str) -> bool:
        async with self.runtime.lock:
            deleted = self.runtime.tasks.delete(task_id)
            if deleted:
                self.runtime.pomodoro.detach_task(task_id)
                self._save_tasks()
            return deleted

    @command("split_task")
    async def split_task(self, task_id: str, parts: int) -> list[Task]:
        async with self.runtime.lock:
            children = self.runtime.tasks.split(task_id, parts)
            self._save_tasks()
            return children

    @command("carry_over_task")
    async def carry_over_task(
        self,
        task_id: str,
        from_block_id: str,
        candidate_block_ids: Optional[Sequence[str]] = None,
    ) -> Block:
        async with self.runtime.lock:
            source = self._get_block(from_block_id)
            if candidate_block_ids is None:
                candidates = [
                    b
                    for b in self.runtime.blocks.values()
                    if b.date == source.date and b.start_at >= source.end_at
                ]
            else:
                candidates = [self._get_block(b) for b in candidate_block_ids]
            target_id = self.runtime.tasks.carry_over(task_id, source, candidates)
            self._save_tasks()
            return self.runtime.blocks[target_id]

    @command("list_tasks")
    async def list_tasks(self) -> list[Task]:
        async with self.runtime.lock:
            return self.runtime.tasks.list_tasks()

    @command("start_pomodoro")
    async def start_pomodoro(self, block_id: str, task_id: Optional[str] = None) -> PomodoroSnapshot:
        policy = self.config.policy(now=self._clock())
        async with self.runtime.lock:
            block = self._get_block(block_id)
            if task_id is not None:
                self.runtime.tasks.get(task_id)
            snapshot = self.runtime.pomodoro.start(
                block=block,
                task_id=task_id,
                break_duration_minutes=policy.break_duration_minutes,
            )
            if task_id is not None:
                self.runtime.tasks.start_on_block(task_id, block_id)
                self._save_tasks()
            return snapshot

    @command("advance_pomodoro")
    async def advance_pomodoro(self) -> PomodoroSnapshot:
        async with self.runtime.lock:
            logged = len(self.runtime.pomodoro.state.completed_logs)
            before = self.runtime.pomodoro.snapshot()
            after = self.runtime.pomodoro.advance()
            self._save_logs_since(logged)
            if before.phase is PomodoroPhase.FOCUS and before.current_task_id:
                self.runtime.tasks.record_focus_cycle(before.current_task_id)
                self._save_tasks()
            return after

    @command("pause_pomodoro")
    async def pause_pomodoro(self, reason: Optional[str] = None) -> PomodoroSnapshot:
        async with self.runtime.lock:
            logged = len(self.runtime.pomodoro.state.completed_logs)
            snapshot = self.runtime.pomodoro.pause(reason)
            self._save_logs_since(logged)
            return snapshot

    @command("resume_pomodoro")
    async def resume_pomodoro(self) -> PomodoroSnapshot:
        async with self.runtime.lock:
            return self.runtime.pomodoro.resume()

    @command("complete_pomodoro")
    async def complete_pomodoro(self) -> PomodoroSnapshot:
        async with self.runtime.lock:
            logged = len(self.runtime.pomodoro.state.completed_logs)
            snapshot = self.runtime.pomodoro.complete()
            self._save_logs_since(logged)
            return snapshot

    @command("get_pomodoro_state")
    async def get_pomodoro_state(self) -> PomodoroSnapshot:
        async with self.runtime.lock:
            return self.runtime.pomodoro.snapshot()

    @command("get_reflection_summary")
    async def get_reflection_summary(
        self,
        start: Optional[str] = None,
        end: Optional[str] = None,
    ) -> ReflectionSummary:
        end_at = parse_datetime_input(end, "end") if end else self._clock()
        start_at = (
            parse_datetime_input(start, "start") if start else end_at - timedelta(days=REFLECTION_DEFAULT_DAYS)
        )
        if end_at < start_at:
            raise InvalidConfigError("end must not be before start")
        async with self.runtime.lock:
            logs = self.runtime.pomodoro.logs_between(start_at, end_at)
        return reflection_summary(logs, start=start_at, end=end_at)

    async def run_auto_generation(
        self,
        *,
        account: Optional[str] = None,
        catch_up: bool = False,
    ) -> Optional[list[Block]]:
        """Generates today's blocks once per day at generation.autoTime."""
        account_id = self._account(account)
        now = self._clock()
        policy = self.config.policy(now=now)
        if not policy.auto_enabled:
            return None
        tz = policy.zone
        today = now.astimezone(tz).date()
        check = due_for_daily_run(
            now=now,
            today=today,
            when_local=policy.auto_time,
            tz=tz,
            last_run_day=self.storage.get_last_generated_day(account_id),
            window_minutes=None if catch_up and policy.catch_up_on_app_start else 10,
        )
        if not check.due_now:
            return None
        blocks = await self.generate_blocks(today.isoformat(), account_id)
        self.storage.set_last_generated_day(account_id, today)
        log.info("Auto-generated %d blocks for %s", len(blocks), today.isoformat())
        return blocks

    async def aclose(self) -> None:
        close = getattr(self.gateway, "aclose", None)
        if close is not None:
            await close()
        if self.oauth is not None:
            await self.oauth.client.aclose()
        self.oplog.close()


def build_app_from_env() -> PomBlockApp:
    paths = workspace_from_env()
    paths.ensure()
    storage = Storage(paths.database_path)
    oauth_config = load_oauth_config_from_env()
    oauth = OAuthManager(oauth_config, storage, GoogleOAuthClient()) if oauth_config else None
    if oauth is None:
        log.warning("POMBLOCK_GOOGLE_CLIENT_ID is not set; calendar features are disabled")
    return PomBlockApp(paths, oauth=oauth, storage=storage)
