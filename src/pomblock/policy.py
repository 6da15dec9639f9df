from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from datetime import date, datetime, time, timezone
from enum import StrEnum
from typing import Any, Mapping, Optional, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import InvalidConfigError, LocalTimeError
from .models import Interval

WEEKDAY_NAMES = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

_RE_HHMM = re.compile(r"^(\d{1,2}):(\d{2})$")

M = TypeVar("M", bound=BaseModel)


@dataclass(frozen=True)
class PolicyConfig:
    time_zone: str = "UTC"
    work_start: time = time(9, 0)
    work_end: time = time(18, 0)
    work_days: frozenset[int] = frozenset(range(5))  # date.weekday() numbers
    block_duration_minutes: int = 50
    break_duration_minutes: int = 10
    min_block_gap_minutes: int = 5
    max_auto_blocks_per_day: int = 16
    max_relocations_per_sync: int = 50
    respect_suppression: bool = True
    auto_enabled: bool = True
    auto_time: time = time(5, 30)
    catch_up_on_app_start: bool = True

    @property
    def zone(self) -> ZoneInfo:
        return load_zone(self.time_zone)


class OverrideMode(StrEnum):
    NONE = "none"
    SOFT = "soft"
    HARD = "hard"
    TEMPORARY = "temporary"


def validate_config(model: type[M], raw: Any, label: str) -> M:
    """model_validate with every pydantic complaint folded into one InvalidConfigError."""
    try:
        return model.model_validate(raw)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or label}: {err['msg']}" for err in exc.errors()
        )
        raise InvalidConfigError(f"{label}: {problems}") from exc


def load_zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise InvalidConfigError(f"unknown time zone: {name!r}") from exc


def weekday_number(value: Any) -> int:
    """Accepts "Monday", "monday" or "mon". Raises ValueError."""
    raw = str(value).strip().lower()
    for idx, name in enumerate(WEEKDAY_NAMES):
        if raw == name or raw == name[:3]:
            return idx
    raise ValueError(f"unknown weekday: {value!r}")


def hhmm_time(value: Any) -> time:
    """"HH:MM" to a time of day. Raises ValueError."""
    if isinstance(value, time):
        return value
    m = _RE_HHMM.match(str(value).strip()) if value is not None else None
    if not m:
        raise ValueError(f"must be HH:MM, got {value!r}")
    hh, mm = int(m.group(1)), int(m.group(2))
    if not (0 <= hh <= 23 and 0 <= mm <= 59):
        raise ValueError(f"out of range: {value!r}")
    return time(hour=hh, minute=mm)


def weekday_set(value: Any) -> frozenset[int]:
    if not isinstance(value, (list, tuple, set, frozenset)):
        raise ValueError("must be a list of weekday names")
    return frozenset(weekday_number(d) for d in value)


class WorkHoursSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    start: Optional[time] = None
    end: Optional[time] = None
    days: Optional[frozenset[int]] = None
    timezone: Optional[str] = None

    @field_validator("start", "end", mode="before")
    @classmethod
    def _parse_time(cls, value: Any) -> Any:
        return None if value is None else hhmm_time(value)

    @field_validator("days", mode="before")
    @classmethod
    def _parse_days(cls, value: Any) -> Any:
        return None if value is None else weekday_set(value)

    @field_validator("timezone")
    @classmethod
    def _known_zone(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        value = value.strip()
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown time zone: {value!r}") from exc
        return value

    def policy_fields(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.start is not None:
            out["work_start"] = self.start
        if self.end is not None:
            out["work_end"] = self.end
        if self.days is not None:
            out["work_days"] = self.days
        if self.timezone:
            out["time_zone"] = self.timezone
        return out


class PolicyValues(BaseModel):
    """The policy fields an override may carry; policies.json extends it."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    work_hours: Optional[WorkHoursSettings] = None
    block_duration_minutes: Optional[int] = Field(default=None, ge=1)
    break_duration_minutes: Optional[int] = Field(default=None, ge=0)
    min_block_gap_minutes: Optional[int] = Field(default=None, ge=0)

    def policy_fields(self) -> dict[str, Any]:
        out = self.work_hours.policy_fields() if self.work_hours else {}
        out.update(self.model_dump(exclude_none=True, exclude={"work_hours"}))
        return out


class GenerationSettings(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    auto_enabled: Optional[bool] = None
    auto_time: Optional[time] = None
    catch_up_on_app_start: Optional[bool] = None
    respect_suppression: Optional[bool] = None
    max_auto_blocks_per_day: Optional[int] = Field(default=None, ge=0)
    max_relocations_per_sync: Optional[int] = Field(default=None, ge=0)

    @field_validator("auto_time", mode="before")
    @classmethod
    def _parse_time(cls, value: Any) -> Any:
        return None if value is None else hhmm_time(value)

    def policy_fields(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


@dataclass(frozen=True)
class PolicyOverride:
    mode: OverrideMode = OverrideMode.NONE
    value: Union[PolicyValues, Mapping[str, Any]] = field(default_factory=PolicyValues)
    weight: float = 1.0
    valid_from: Optional[datetime] = None
    valid_to: Optional[datetime] = None


def resolve_local_time(day: date, when: time, tz: ZoneInfo) -> datetime:
    """
    Converts a wall-clock time on a local date to a UTC instant:
    - unambiguous: that instant
    - repeated hour (DST fall-back): the earlier instant
    - skipped hour (DST spring-forward): LocalTimeError
    """
    local = datetime.combine(day, when, tzinfo=tz)  # fold=0 picks the earlier instant
    roundtrip = local.astimezone(timezone.utc).astimezone(tz)
    if roundtrip.replace(tzinfo=None) != local.replace(tzinfo=None):
        raise LocalTimeError(
            f"{day.isoformat()} {when.isoformat(timespec='minutes')} does not exist in {tz.key}"
        )
    return local.astimezone(timezone.utc)


def local_date(instant: datetime, tz: ZoneInfo) -> date:
    return instant.astimezone(tz).date()


def work_window(policy: PolicyConfig, day: date) -> Optional[Interval]:
    """The [work_start, work_end) window for day, or None on inactive days."""
    if day.weekday() not in policy.work_days:
        return None
    tz = policy.zone
    start = resolve_local_time(day, policy.work_start, tz)
    end = resolve_local_time(day, policy.work_end, tz)
    if end <= start:
        return None
    return Interval(start=start, end=end)


def planned_cycles_for(duration_minutes: int, break_duration_minutes: int) -> int:
    return max(1, int(duration_minutes) // (25 + int(break_duration_minutes)))


def _blend(base: int, override: Optional[int], weight: float, *, minimum: int) -> int:
    if override is None:
        return base
    return max(minimum, round(base * (1 - weight) + override * weight))


def _override_active(override: PolicyOverride, now: datetime) -> bool:
    if override.mode is not OverrideMode.TEMPORARY:
        return True
    if override.valid_from is None or override.valid_to is None:
        return True
    return override.valid_from <= now <= override.valid_to


def apply_policy_override(base: PolicyConfig, override: PolicyOverride, *, now: datetime) -> PolicyConfig:
    """
    - none: base unchanged
    - hard: override values replace base values
    - temporary: like hard, but only inside [valid_from, valid_to]
    - soft: durations blended by weight, work hours taken from the override
    """
    if override.mode is OverrideMode.NONE or not _override_active(override, now):
        return base

    values = override.value
    if not isinstance(values, PolicyValues):
        values = validate_config(PolicyValues, dict(values or {}), "overrides.value")

    if override.mode in (OverrideMode.HARD, OverrideMode.TEMPORARY):
        return replace(base, **values.policy_fields())

    hours = values.work_hours.policy_fields() if values.work_hours else {}
    weight = max(0.0, min(1.0, float(override.weight)))
    return replace(
        base,
        **hours,
        block_duration_minutes=_blend(
            base.block_duration_minutes, values.block_duration_minutes, weight, minimum=1
        ),
        break_duration_minutes=_blend(
            base.break_duration_minutes, values.break_duration_minutes, weight, minimum=1
        ),
        min_block_gap_minutes=_blend(
            base.min_block_gap_minutes, values.min_block_gap_minutes, weight, minimum=0
        ),
    )
