from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from dataclasses import asdict
from datetime import date, datetime
from pathlib import Path
from typing import Iterable, Mapping, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import CredentialError, StorageError
from .models import (
    Block,
    BlockSource,
    BlockType,
    Firmness,
    OAuthToken,
    PomodoroLog,
    PomodoroPhase,
    Suppression,
    SuppressionReason,
    SyncState,
    Task,
    TaskStatus,
)


def _to_iso_dt(dt: datetime) -> str:
    return dt.isoformat()


def _from_iso_dt(s: str) -> datetime:
    return datetime.fromisoformat(s)


def _to_iso_date(d: date) -> str:
    return d.isoformat()


def _from_iso_date(s: str) -> date:
    return date.fromisoformat(s)


class SyncStateStore:
    def load_sync_state(self, account_id: str) -> SyncState:
        raise NotImplementedError

    def save_sync_state(self, account_id: str, state: SyncState) -> None:
        raise NotImplementedError


class SuppressionStore:
    def suppressed_keys(self) -> set[str]:
        raise NotImplementedError

    def add_suppressions(self, instance_keys: Iterable[str], reason: str, at: datetime) -> None:
        """Upserts; a user_deleted row is never turned into calendar_cancelled."""
        raise NotImplementedError

    def purge_user_deleted(self, day: date) -> int:
        raise NotImplementedError


class CredentialStore:
    def save_token(self, account_id: str, token: OAuthToken) -> None:
        raise NotImplementedError

    def load_token(self, account_id: str) -> Optional[OAuthToken]:
        raise NotImplementedError

    def delete_token(self, account_id: str) -> None:
        raise NotImplementedError


class StoredToken(BaseModel):
    """oauth_tokens.payload"""

    model_config = ConfigDict(extra="ignore")

    access_token: str = Field(min_length=1)
    expires_at: datetime
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    scope: Optional[str] = None

    @field_validator("token_type", mode="before")
    @classmethod
    def _default_type(cls, value: object) -> object:
        return value or "Bearer"

    @field_validator("expires_at")
    @classmethod
    def _aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            raise ValueError("expires_at needs a UTC offset")
        return value


def token_to_json(token: OAuthToken) -> str:
    return StoredToken(**asdict(token)).model_dump_json()


def token_from_json(raw: str) -> OAuthToken:
    try:
        stored = StoredToken.model_validate_json(raw)
    except ValidationError as exc:
        raise CredentialError("stored OAuth token is unreadable") from exc
    return OAuthToken(**stored.model_dump())


class Storage(SyncStateStore, SuppressionStore, CredentialStore):
    """sqlite-backed persistent state. Every call is its own transaction."""

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = str(db_path)
        self._init()

    @contextmanager
    def _conn(self) -> Iterable[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.db_path)
        except sqlite3.Error as exc:
            raise StorageError(f"cannot open {self.db_path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise StorageError(str(exc)) from exc
        finally:
            conn.close()

    def _init(self) -> None:
        with self._conn() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS sync_state (
                  account_id TEXT PRIMARY KEY,
                  continuation_token TEXT NULL,
                  last_sync_time TEXT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS suppressions (
                  instance TEXT PRIMARY KEY,
                  suppressed_at TEXT NOT NULL,
                  reason TEXT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS oauth_tokens (
                  account_id TEXT PRIMARY KEY,
                  payload TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS generation_state (
                  account_id TEXT PRIMARY KEY,
                  last_generated_day TEXT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS blocks (
                  id TEXT PRIMARY KEY,
                  instance_key TEXT NOT NULL,
                  day TEXT NOT NULL,
                  start_at TEXT NOT NULL,
                  end_at TEXT NOT NULL,
                  block_type TEXT NOT NULL,
                  firmness TEXT NOT NULL,
                  planned_cycles INTEGER NOT NULL,
                  source TEXT NOT NULL,
                  source_id TEXT NULL,
                  calendar_event_id TEXT NULL,
                  calendar_account_id TEXT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_blocks_day ON blocks(day)")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS tasks (
                  id TEXT PRIMARY KEY,
                  position INTEGER NOT NULL,
                  title TEXT NOT NULL,
                  description TEXT NULL,
                  estimated_cycles INTEGER NULL,
                  completed_cycles INTEGER NOT NULL DEFAULT 0,
                  status TEXT NOT NULL,
                  created_at TEXT NOT NULL,
                  block_id TEXT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS pomodoro_logs (
                  id TEXT PRIMARY KEY,
                  block_id TEXT NOT NULL,
                  task_id TEXT NULL,
                  phase TEXT NOT NULL,
                  start_time TEXT NOT NULL,
                  end_time TEXT NULL,
                  interruption_reason TEXT NULL
                )
                """
            )

    def load_sync_state(self, account_id: str) -> SyncState:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT continuation_token, last_sync_time FROM sync_state WHERE account_id=?",
                (account_id,),
            ).fetchone()
        if row is None:
            return SyncState(continuation_token=None, last_sync_time=None)
        return SyncState(
            continuation_token=row["continuation_token"],
            last_sync_time=_from_iso_dt(row["last_sync_time"]) if row["last_sync_time"] else None,
        )

    def save_sync_state(self, account_id: str, state: SyncState) -> None:
        with self._conn() as conn:
            conn.execute(
                """
                INSERT INTO sync_state(account_id, continuation_token, last_sync_time)
                VALUES(?, ?, ?)
                ON CONFLICT(account_id) DO UPDATE SET
                  continuation_token=excluded.continuation_token,
                  last_sync_time=excluded.last_sync_time
                """,
                (
                    account_id,
                    state.continuation_token,
                    _to_iso_dt(state.last_sync_time) if state.last_sync_time else None,
                ),
            )

    def suppressed_keys(self) -> set[str]:
        with self._conn() as conn:
            rows = conn.execute("SELECT instance FROM suppressions").fetchall()
        return {str(r["instance"]) for r in rows}

    def list_suppressions(self) -> list[Suppression]:
        with self._conn() as conn:
            rows = conn.execute("SELECT * FROM suppressions ORDER BY instance ASC").fetchall()
        return [
            Suppression(
                instance_key=str(r["instance"]),
                reason=r["reason"],
                suppressed_at=_from_iso_dt(str(r["suppressed_at"])),
            )
            for r in rows
        ]

    def add_suppressions(self, instance_keys: Iterable[str], reason: str, at: datetime) -> None:
        rows = [(key, _to_iso_dt(at), str(reason)) for key in instance_keys]
        if not rows:
            return
        with self._conn() as conn:
            conn.executemany(
                """
                INSERT INTO suppressions(instance, suppressed_at, reason)
                VALUES(?, ?, ?)
                ON CONFLICT(instance) DO UPDATE SET
                  suppressed_at=excluded.suppressed_at,
                  reason=excluded.reason
                WHERE NOT (suppressions.reason=? AND excluded.reason=?)
                """,
                [
                    (*row, str(SuppressionReason.USER_DELETED), str(SuppressionReason.CALENDAR_CANCELLED))
                    for row in rows
                ],
            )

    def purge_user_deleted(self, day: date) -> int:
        marker = _to_iso_date(day)
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT instance FROM suppressions WHERE reason=?",
                (str(SuppressionReason.USER_DELETED),),
            ).fetchall()
            doomed = [(r["instance"],) for r in rows if marker in str(r["instance"]).split(":")]
            conn.executemany("DELETE FROM suppressions WHERE instance=?", doomed)
        return len(doomed)

    def save_token(self, account_id: str, token: OAuthToken) -> None:
        with self._conn() as conn:
            conn.execute(
                """
                INSERT INTO oauth_tokens(account_id, payload, updated_at)
                VALUES(?, ?, ?)
                ON CONFLICT(account_id) DO UPDATE SET
                  payload=excluded.payload,
                  updated_at=excluded.updated_at
                """,
                (account_id, token_to_json(token), _to_iso_dt(datetime.now().astimezone())),
            )

    def load_token(self, account_id: str) -> Optional[OAuthToken]:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT payload FROM oauth_tokens WHERE account_id=?",
                (account_id,),
            ).fetchone()
        if row is None:
            return None
        return token_from_json(str(row["payload"]))

    def delete_token(self, account_id: str) -> None:
        with self._conn() as conn:
            conn.execute("DELETE FROM oauth_tokens WHERE account_id=?", (account_id,))

    def get_last_generated_day(self, account_id: str) -> Optional[date]:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT last_generated_day FROM generation_state WHERE account_id=?",
                (account_id,),
            ).fetchone()
        if row is None or not row["last_generated_day"]:
            return None
        return _from_iso_date(row["last_generated_day"])

    def set_last_generated_day(self, account_id: str, day: date) -> None:
        with self._conn() as conn:
            conn.execute(
                """
                INSERT INTO generation_state(account_id, last_generated_day)
                VALUES(?, ?)
                ON CONFLICT(account_id) DO UPDATE SET
                  last_generated_day=excluded.last_generated_day
                """,
                (account_id, _to_iso_date(day)),
            )

    def save_blocks(self, blocks: Iterable[Block]) -> None:
        rows = [
            (
                b.id,
                b.instance_key,
                _to_iso_date(b.date),
                _to_iso_dt(b.start_at),
                _to_iso_dt(b.end_at),
                str(b.block_type),
                str(b.firmness),
                b.planned_cycles,
                str(b.source),
                b.source_id,
                b.calendar_event_id,
                b.calendar_account_id,
            )
            for b in blocks
        ]
        if not rows:
            return
        with self._conn() as conn:
            conn.executemany(
                """
                INSERT OR REPLACE INTO blocks(
                  id, instance_key, day, start_at, end_at, block_type, firmness,
                  planned_cycles, source, source_id, calendar_event_id, calendar_account_id
                )
                VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )

    def delete_blocks(self, block_ids: Iterable[str]) -> None:
        rows = [(block_id,) for block_id in block_ids]
        if not rows:
            return
        with self._conn() as conn:
            conn.executemany("DELETE FROM blocks WHERE id=?", rows)

    def load_blocks(self) -> list[Block]:
        with self._conn() as conn:
            rows = conn.execute("SELECT * FROM blocks ORDER BY start_at ASC, id ASC").fetchall()
        return [
            Block(
                id=str(r["id"]),
                instance_key=str(r["instance_key"]),
                date=_from_iso_date(str(r["day"])),
                start_at=_from_iso_dt(str(r["start_at"])),
                end_at=_from_iso_dt(str(r["end_at"])),
                block_type=BlockType(r["block_type"]),
                firmness=Firmness(r["firmness"]),
                planned_cycles=int(r["planned_cycles"]),
                source=BlockSource(r["source"]),
                source_id=r["source_id"],
                calendar_event_id=r["calendar_event_id"],
                calendar_account_id=r["calendar_account_id"],
            )
            for r in rows
        ]

    def replace_tasks(self, tasks: Sequence[Task], block_by_task: Mapping[str, str]) -> None:
        """Rewrites the whole task board, keeping list order and block assignments."""
        rows = [
            (
                t.id,
                position,
                t.title,
                t.description,
                t.estimated_cycles,
                t.completed_cycles,
                str(t.status),
                _to_iso_dt(t.created_at),
                block_by_task.get(t.id),
            )
            for position, t in enumerate(tasks)
        ]
        with self._conn() as conn:
            conn.execute("DELETE FROM tasks")
            conn.executemany(
                """
                INSERT INTO tasks(
                  id, position, title, description, estimated_cycles,
                  completed_cycles, status, created_at, block_id
                )
                VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )

    def load_tasks(self) -> list[tuple[Task, Optional[str]]]:
        """(task, assigned block id) in list order."""
        with self._conn() as conn:
            rows = conn.execute("SELECT * FROM tasks ORDER BY position ASC").fetchall()
        return [
            (
                Task(
                    id=str(r["id"]),
                    title=str(r["title"]),
                    created_at=_from_iso_dt(str(r["created_at"])),
                    description=r["description"],
                    estimated_cycles=r["estimated_cycles"],
                    completed_cycles=int(r["completed_cycles"]),
                    status=TaskStatus(r["status"]),
                ),
                r["block_id"],
            )
            for r in rows
        ]

    def save_pomodoro_logs(self, logs: Iterable[PomodoroLog]) -> None:
        rows = [
            (
                entry.id,
                entry.block_id,
                entry.task_id,
                str(entry.phase),
                _to_iso_dt(entry.start_time),
                _to_iso_dt(entry.end_time) if entry.end_time else None,
                entry.interruption_reason,
            )
            for entry in logs
        ]
        if not rows:
            return
        with self._conn() as conn:
            conn.executemany(
                """
                INSERT OR REPLACE INTO pomodoro_logs(
                  id, block_id, task_id, phase, start_time, end_time, interruption_reason
                )
                VALUES(?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )

    def load_pomodoro_logs(self) -> list[PomodoroLog]:
        with self._conn() as conn:
            rows = conn.execute("SELECT * FROM pomodoro_logs ORDER BY start_time ASC, id ASC").fetchall()
        return [
            PomodoroLog(
                id=str(r["id"]),
                block_id=str(r["block_id"]),
                task_id=r["task_id"],
                phase=PomodoroPhase(r["phase"]),
                start_time=_from_iso_dt(str(r["start_time"])),
                end_time=_from_iso_dt(str(r["end_time"])) if r["end_time"] else None,
                interruption_reason=r["interruption_reason"],
            )
            for r in rows
        ]
