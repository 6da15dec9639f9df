from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Optional

from zoneinfo import ZoneInfo

from .policy import resolve_local_time


@dataclass(frozen=True)
class DueCheck:
    due_now: bool
    scheduled_dt: datetime


def due_for_daily_run(
    *,
    now: datetime,
    today: date,
    when_local: time,
    tz: ZoneInfo,
    last_run_day: date | None,
    window_minutes: Optional[int] = 10,
) -> DueCheck:
    """
    Returns due_now=True if:
    - not run today
    - now is within [scheduled, scheduled+window]; window None means any time after scheduled
    """
    scheduled = resolve_local_time(today, when_local, tz)
    if last_run_day == today:
        return DueCheck(due_now=False, scheduled_dt=scheduled)
    if now < scheduled:
        return DueCheck(due_now=False, scheduled_dt=scheduled)
    if window_minutes is not None and now - scheduled > timedelta(minutes=window_minutes):
        return DueCheck(due_now=False, scheduled_dt=scheduled)
    return DueCheck(due_now=True, scheduled_dt=scheduled)
