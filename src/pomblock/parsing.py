from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Optional

from .errors import InvalidConfigError

CYCLE_MINUTES = 25


@dataclass(frozen=True)
class ParsedTaskInput:
    title: str
    estimated_cycles: Optional[int]


_RE_CYCLES = re.compile(r"(?i)(?:^|\s)(\d+)\s*(p|pom|poms|pomodoros?)\b")
_RE_MINUTES = re.compile(r"(?i)\b(\d+)\s*(m|min)\b")
_RE_HOURS = re.compile(r"(?i)\b(\d+)\s*(h|hr)\b")
_RE_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_RE_OFFSET = re.compile(r"^\+(\d+)d?$")


def parse_task_line(line: str) -> Optional[ParsedTaskInput]:
    """
    Accepts lines like:
    - "Write report 3p"
    - "Review PR 50m"
    - "Inbox zero"
    Durations are turned into 25-minute cycles; no estimate stays None.
    """
    raw = line.strip()
    if not raw:
        return None

    cycles = 0
    for m in _RE_CYCLES.finditer(raw):
        cycles += int(m.group(1))
    raw = _RE_CYCLES.sub(" ", raw)

    minutes = 0
    for m in _RE_MINUTES.finditer(raw):
        minutes += int(m.group(1))
    for h in _RE_HOURS.finditer(raw):
        minutes += int(h.group(1)) * 60

    title = _RE_MINUTES.sub(" ", raw)
    title = _RE_HOURS.sub(" ", title)
    title = re.sub(r"\s+", " ", title).strip(" -\t")

    if not title:
        return None
    if cycles <= 0 and minutes > 0:
        cycles = math.ceil(minutes / CYCLE_MINUTES)

    return ParsedTaskInput(title=title, estimated_cycles=cycles or None)


def to_rfc3339(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def parse_date_input(value: str, field_name: str = "date") -> date:
    raw = (value or "").strip()
    if not _RE_DATE.match(raw):
        raise InvalidConfigError(f"{field_name} must be YYYY-MM-DD, got {value!r}")
    try:
        return date.fromisoformat(raw)
    except ValueError as exc:
        raise InvalidConfigError(f"{field_name} is not a valid date: {value!r}") from exc


def parse_datetime_input(value: str, field_name: str) -> datetime:
    """RFC3339 instant, or YYYY-MM-DD meaning midnight UTC."""
    raw = (value or "").strip()
    if _RE_DATE.match(raw):
        return datetime.combine(parse_date_input(raw, field_name), datetime.min.time(), tzinfo=timezone.utc)
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00").replace("z", "+00:00"))
    except ValueError as exc:
        raise InvalidConfigError(f"{field_name} must be RFC3339, got {value!r}") from exc
    if parsed.tzinfo is None:
        raise InvalidConfigError(f"{field_name} needs a UTC offset, got {value!r}")
    return parsed.astimezone(timezone.utc)


def parse_day_arg(value: Optional[str], today: date) -> date:
    """Accepts today, tomorrow, +N (days ahead) or YYYY-MM-DD."""
    raw = (value or "today").strip().lower()
    if raw == "today":
        return today
    if raw == "tomorrow":
        return today + timedelta(days=1)
    m = _RE_OFFSET.match(raw)
    if m:
        return today + timedelta(days=int(m.group(1)))
    return parse_date_input(raw)
