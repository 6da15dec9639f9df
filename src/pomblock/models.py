from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import StrEnum
from typing import Optional


class BlockType(StrEnum):
    DEEP = "deep"
    SHALLOW = "shallow"
    ADMIN = "admin"
    LEARNING = "learning"


class Firmness(StrEnum):
    DRAFT = "draft"
    SOFT = "soft"
    HARD = "hard"


class BlockSource(StrEnum):
    TEMPLATE = "template"
    ROUTINE = "routine"


class TaskStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    DEFERRED = "deferred"


class PomodoroPhase(StrEnum):
    IDLE = "idle"
    FOCUS = "focus"
    BREAK = "break"
    PAUSED = "paused"


class SuppressionReason(StrEnum):
    USER_DELETED = "user_deleted"
    CALENDAR_CANCELLED = "calendar_cancelled"


@dataclass(frozen=True)
class Block:
    id: str
    instance_key: str
    date: date  # local date in the policy zone
    start_at: datetime  # aware, UTC
    end_at: datetime  # aware, UTC
    block_type: BlockType
    firmness: Firmness
    planned_cycles: int
    source: BlockSource
    source_id: Optional[str] = None
    calendar_event_id: Optional[str] = None
    calendar_account_id: Optional[str] = None

    @property
    def duration_seconds(self) -> int:
        return int((self.end_at - self.start_at).total_seconds())


@dataclass(frozen=True)
class Task:
    id: str
    title: str
    created_at: datetime
    description: Optional[str] = None
    estimated_cycles: Optional[int] = None
    completed_cycles: int = 0
    status: TaskStatus = TaskStatus.PENDING


@dataclass(frozen=True)
class RemoteEvent:
    id: str
    start_at: Optional[datetime]
    end_at: Optional[datetime]
    title: Optional[str] = None
    description: Optional[str] = None
    status: str = "confirmed"
    updated: Optional[str] = None  # etag or server "updated" stamp
    private: dict[str, str] = field(default_factory=dict)

    @property
    def is_cancelled(self) -> bool:
        return self.status.strip().lower() == "cancelled"

    @property
    def is_confirmed(self) -> bool:
        return self.status.strip().lower() == "confirmed"

    @property
    def instance_key(self) -> Optional[str]:
        value = (self.private.get("instance") or "").strip()
        return value or None


@dataclass(frozen=True)
class CalendarSummary:
    id: str
    summary: str


@dataclass(frozen=True)
class SyncState:
    continuation_token: Optional[str]
    last_sync_time: Optional[datetime]


@dataclass(frozen=True)
class Suppression:
    instance_key: str
    reason: Optional[str]
    suppressed_at: datetime


@dataclass(frozen=True)
class PomodoroLog:
    id: str
    block_id: str
    task_id: Optional[str]
    phase: PomodoroPhase
    start_time: datetime
    end_time: Optional[datetime] = None
    interruption_reason: Optional[str] = None


@dataclass(frozen=True)
class Interval:
    """Half-open [start, end) between two aware instants."""

    start: datetime
    end: datetime

    def overlaps(self, other: Interval) -> bool:
        return self.start < other.end and other.start < self.end

    def contains(self, other: Interval) -> bool:
        return self.start <= other.start and other.end <= self.end

    def clip(self, other: Interval) -> Optional[Interval]:
        start = max(self.start, other.start)
        end = min(self.end, other.end)
        if end <= start:
            return None
        return Interval(start=start, end=end)

    @property
    def seconds(self) -> int:
        return int((self.end - self.start).total_seconds())


@dataclass(frozen=True)
class OAuthToken:
    access_token: str
    expires_at: datetime
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    scope: Optional[str] = None
