from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from enum import StrEnum
from typing import Any, Mapping, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .errors import InvalidConfigError
from .models import BlockSource, BlockType, Firmness, Interval
from .policy import (
    PolicyConfig,
    hhmm_time,
    planned_cycles_for,
    resolve_local_time,
    validate_config,
    weekday_number,
    weekday_set,
)

_RRULE_DAYS = {"MO": 0, "TU": 1, "WE": 2, "TH": 3, "FR": 4, "SA": 5, "SU": 6}
_RRULE_FREQS = {"DAILY", "WEEKLY", "MONTHLY"}


class ScheduleKind(StrEnum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


@dataclass(frozen=True)
class BlockTemplate:
    id: str
    start: time  # local, policy zone
    duration_minutes: int
    name: str = ""
    block_type: BlockType = BlockType.DEEP
    firmness: Firmness = Firmness.DRAFT
    planned_cycles: Optional[int] = None
    days: Optional[frozenset[int]] = None


@dataclass(frozen=True)
class RoutineSchedule:
    kind: ScheduleKind
    weekday: Optional[int] = None
    month_day: Optional[int] = None


@dataclass(frozen=True)
class Routine:
    id: str
    name: str = ""
    template_id: Optional[str] = None
    schedule: Optional[RoutineSchedule] = None
    rrule: Optional[str] = None
    start: Optional[time] = None
    duration_minutes: Optional[int] = None
    block_type: Optional[BlockType] = None
    firmness: Optional[Firmness] = None
    planned_cycles: Optional[int] = None
    exceptions: frozenset[date] = frozenset()


@dataclass(frozen=True)
class CandidatePlan:
    instance_key: str
    start_at: datetime
    end_at: datetime
    block_type: BlockType
    firmness: Firmness
    planned_cycles: int
    source: BlockSource
    source_id: Optional[str]

    @property
    def interval(self) -> Interval:
        return Interval(start=self.start_at, end=self.end_at)


class _Settings(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class TemplateSettings(_Settings):
    id: str = Field(min_length=1)
    name: str = ""
    start: time
    duration_minutes: int = Field(ge=1)
    block_type: BlockType = BlockType.DEEP
    firmness: Firmness = Firmness.DRAFT
    planned_cycles: Optional[int] = Field(default=None, ge=1)
    days: Optional[frozenset[int]] = None

    @field_validator("id", mode="after")
    @classmethod
    def _strip_id(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("id is required")
        return value

    @field_validator("start", mode="before")
    @classmethod
    def _parse_start(cls, value: Any) -> Any:
        return hhmm_time(value)

    @field_validator("block_type", "firmness", mode="before")
    @classmethod
    def _lower(cls, value: Any) -> Any:
        return str(value).strip().lower() if value is not None else value

    @field_validator("days", mode="before")
    @classmethod
    def _parse_days(cls, value: Any) -> Any:
        return weekday_set(value) if value else None

    def to_template(self) -> BlockTemplate:
        return BlockTemplate(**self.model_dump())


class ScheduleSettings(_Settings):
    kind: ScheduleKind = Field(alias="type")
    day: Optional[Union[int, str]] = None

    @field_validator("kind", mode="before")
    @classmethod
    def _lower(cls, value: Any) -> Any:
        return str(value).strip().lower() if value is not None else value

    @model_validator(mode="after")
    def _day_fits_kind(self) -> "ScheduleSettings":
        if self.kind is ScheduleKind.WEEKLY:
            if self.day is None:
                raise ValueError("day is required for weekly schedules")
            weekday_number(self.day)
        elif self.kind is ScheduleKind.MONTHLY:
            if not isinstance(self.day, int) or not 1 <= self.day <= 31:
                raise ValueError("day must be 1..31 for monthly schedules")
        return self

    def to_schedule(self) -> RoutineSchedule:
        if self.kind is ScheduleKind.WEEKLY:
            return RoutineSchedule(kind=self.kind, weekday=weekday_number(self.day))
        if self.kind is ScheduleKind.MONTHLY:
            return RoutineSchedule(kind=self.kind, month_day=int(self.day or 0))
        return RoutineSchedule(kind=self.kind)


class RoutineSettings(_Settings):
    id: str = Field(min_length=1)
    name: str = ""
    template_id: Optional[str] = None
    schedule: Optional[ScheduleSettings] = None
    rrule: Optional[str] = None
    start: Optional[time] = None
    duration_minutes: Optional[int] = Field(default=None, ge=1)
    block_type: Optional[BlockType] = None
    firmness: Optional[Firmness] = None
    planned_cycles: Optional[int] = Field(default=None, ge=1)
    exceptions: frozenset[date] = frozenset()

    @field_validator("id", mode="after")
    @classmethod
    def _strip_id(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("id is required")
        return value

    @field_validator("start", mode="before")
    @classmethod
    def _parse_start(cls, value: Any) -> Any:
        return hhmm_time(value) if value else None

    @field_validator("block_type", "firmness", mode="before")
    @classmethod
    def _lower(cls, value: Any) -> Any:
        return str(value).strip().lower() if value else None

    @field_validator("template_id", "schedule", "rrule", mode="before")
    @classmethod
    def _blank_is_unset(cls, value: Any) -> Any:
        return value or None

    @field_validator("exceptions", mode="before")
    @classmethod
    def _no_exceptions(cls, value: Any) -> Any:
        return value or frozenset()

    def to_routine(self) -> Routine:
        fields = self.model_dump(exclude={"schedule"})
        return Routine(**fields, schedule=self.schedule.to_schedule() if self.schedule else None)


def template_from_json(raw: Mapping[str, Any]) -> BlockTemplate:
    label = f"template {raw.get('id')!r}" if isinstance(raw, Mapping) else "template"
    return validate_config(TemplateSettings, raw, label).to_template()


def routine_from_json(raw: Mapping[str, Any]) -> Routine:
    label = f"routine {raw.get('id')!r}" if isinstance(raw, Mapping) else "routine"
    return validate_config(RoutineSettings, raw, label).to_routine()


def rrule_matches(rule: str, day: date) -> bool:
    """
    Minimal RRULE check:
    - FREQ must be DAILY, WEEKLY or MONTHLY, anything else never matches
    - BYDAY (two-letter codes) and BYMONTHDAY filter when present
    - other parts are ignored
    """
    parts: dict[str, str] = {}
    body = rule.strip()
    if body.upper().startswith("RRULE:"):
        body = body[6:]
    for chunk in body.split(";"):
        if "=" not in chunk:
            continue
        key, value = chunk.split("=", 1)
        parts[key.strip().upper()] = value.strip().upper()

    if parts.get("FREQ") not in _RRULE_FREQS:
        return False

    if parts.get("BYDAY"):
        wanted = {_RRULE_DAYS.get(code.strip()[-2:]) for code in parts["BYDAY"].split(",")}
        if day.weekday() not in wanted:
            return False

    if parts.get("BYMONTHDAY"):
        month_len = calendar.monthrange(day.year, day.month)[1]
        wanted_days: set[int] = set()
        for code in parts["BYMONTHDAY"].split(","):
            try:
                n = int(code)
            except ValueError:
                continue
            wanted_days.add(n if n > 0 else month_len + 1 + n)
        if day.day not in wanted_days:
            return False
    return True


def routine_matches(routine: Routine, day: date) -> bool:
    if day in routine.exceptions:
        return False
    schedule = routine.schedule
    if schedule is not None:
        if schedule.kind is ScheduleKind.WEEKLY:
            return day.weekday() == schedule.weekday
        if schedule.kind is ScheduleKind.MONTHLY:
            return day.day == schedule.month_day
        return True
    if routine.rrule:
        return rrule_matches(routine.rrule, day)
    return True


def _plan(
    *,
    key: str,
    day: date,
    start: time,
    duration_minutes: int,
    block_type: BlockType,
    firmness: Firmness,
    planned_cycles: Optional[int],
    source: BlockSource,
    source_id: str,
    policy: PolicyConfig,
) -> CandidatePlan:
    start_at = resolve_local_time(day, start, policy.zone)
    return CandidatePlan(
        instance_key=key,
        start_at=start_at,
        end_at=start_at + timedelta(minutes=duration_minutes),
        block_type=block_type,
        firmness=firmness,
        planned_cycles=planned_cycles or planned_cycles_for(duration_minutes, policy.break_duration_minutes),
        source=source,
        source_id=source_id,
    )


def plan_candidates(
    *,
    day: date,
    policy: PolicyConfig,
    templates: Sequence[BlockTemplate],
    routines: Sequence[Routine],
) -> list[CandidatePlan]:
    """Template and routine plans for day, sorted by (start, key) and unique by key."""
    by_id = {t.id: t for t in templates}
    day_key = day.isoformat()
    plans: list[CandidatePlan] = []

    for tpl in templates:
        if tpl.days and day.weekday() not in tpl.days:
            continue
        plans.append(
            _plan(
                key=f"tpl:{tpl.id}:{day_key}",
                day=day,
                start=tpl.start,
                duration_minutes=tpl.duration_minutes,
                block_type=tpl.block_type,
                firmness=tpl.firmness,
                planned_cycles=tpl.planned_cycles,
                source=BlockSource.TEMPLATE,
                source_id=tpl.id,
                policy=policy,
            )
        )

    for routine in routines:
        if not routine_matches(routine, day):
            continue
        base: Optional[BlockTemplate] = None
        if routine.template_id:
            base = by_id.get(routine.template_id)
            if base is None:
                raise InvalidConfigError(
                    f"routine {routine.id} links unknown template {routine.template_id!r}"
                )
        start = routine.start or (base.start if base else None)
        duration = routine.duration_minutes or (base.duration_minutes if base else None)
        if start is None or duration is None:
            raise InvalidConfigError(f"routine {routine.id} needs a start and durationMinutes")
        plans.append(
            _plan(
                key=f"rtn:{routine.id}:{day_key}",
                day=day,
                start=start,
                duration_minutes=duration,
                block_type=routine.block_type or (base.block_type if base else BlockType.DEEP),
                firmness=routine.firmness or (base.firmness if base else Firmness.DRAFT),
                planned_cycles=routine.planned_cycles or (base.planned_cycles if base else None),
                source=BlockSource.ROUTINE,
                source_id=routine.id,
                policy=policy,
            )
        )

    plans.sort(key=lambda p: (p.start_at, p.instance_key))
    seen: set[str] = set()
    unique: list[CandidatePlan] = []
    for p in plans:
        if p.instance_key in seen:
            continue
        seen.add(p.instance_key)
        unique.append(p)
    return unique
