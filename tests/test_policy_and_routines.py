from __future__ import annotations

from datetime import date, datetime, time, timezone

import pytest
from zoneinfo import ZoneInfo

from pomblock.errors import InvalidConfigError, LocalTimeError
from pomblock.policy import (
    OverrideMode,
    PolicyConfig,
    PolicyOverride,
    apply_policy_override,
    planned_cycles_for,
    resolve_local_time,
    weekday_number,
    work_window,
)
from pomblock.routines import (
    plan_candidates,
    routine_from_json,
    routine_matches,
    rrule_matches,
    template_from_json,
)

NOW = datetime(2026, 2, 16, 8, 0, tzinfo=timezone.utc)


def test_resolve_local_time_dst_gap_is_rejected() -> None:
    tz = ZoneInfo("Europe/Berlin")
    with pytest.raises(LocalTimeError):
        resolve_local_time(date(2026, 3, 29), time(2, 30), tz)


def test_resolve_local_time_repeated_hour_picks_earlier_instant() -> None:
    tz = ZoneInfo("Europe/Berlin")
    # 02:30 happens twice on 2026-10-25: first at +02:00, then at +01:00
    out = resolve_local_time(date(2026, 10, 25), time(2, 30), tz)
    assert out == datetime(2026, 10, 25, 0, 30, tzinfo=timezone.utc)


def test_work_window_is_none_on_weekend() -> None:
    policy = PolicyConfig()
    assert work_window(policy, date(2026, 2, 21)) is None  # Saturday
    window = work_window(policy, date(2026, 2, 16))
    assert window is not None
    assert window.start == datetime(2026, 2, 16, 9, 0, tzinfo=timezone.utc)
    assert window.end == datetime(2026, 2, 16, 18, 0, tzinfo=timezone.utc)


def test_weekday_number_accepts_short_and_long_names() -> None:
    assert weekday_number("Monday") == 0
    assert weekday_number("sun") == 6
    with pytest.raises(ValueError):
        weekday_number("someday")


def test_planned_cycles_floor_is_one() -> None:
    assert planned_cycles_for(60, 5) == 2
    assert planned_cycles_for(50, 10) == 1
    assert planned_cycles_for(20, 10) == 1


def test_hard_override_replaces_durations() -> None:
    base = PolicyConfig()
    override = PolicyOverride(mode=OverrideMode.HARD, value={"blockDurationMinutes": 90})
    assert apply_policy_override(base, override, now=NOW).block_duration_minutes == 90


def test_soft_override_blends_by_weight() -> None:
    base = PolicyConfig(block_duration_minutes=50)
    override = PolicyOverride(mode=OverrideMode.SOFT, value={"blockDurationMinutes": 90}, weight=0.5)
    assert apply_policy_override(base, override, now=NOW).block_duration_minutes == 70


def test_temporary_override_only_inside_its_window() -> None:
    base = PolicyConfig()
    override = PolicyOverride(
        mode=OverrideMode.TEMPORARY,
        value={"workHours": {"start": "10:00"}},
        valid_from=datetime(2026, 3, 1, tzinfo=timezone.utc),
        valid_to=datetime(2026, 3, 31, tzinfo=timezone.utc),
    )
    assert apply_policy_override(base, override, now=NOW).work_start == time(9, 0)
    inside = datetime(2026, 3, 10, tzinfo=timezone.utc)
    assert apply_policy_override(base, override, now=inside).work_start == time(10, 0)


def test_rrule_weekly_byday_and_negative_bymonthday() -> None:
    assert rrule_matches("RRULE:FREQ=WEEKLY;BYDAY=MO,WE", date(2026, 2, 16)) is True
    assert rrule_matches("FREQ=WEEKLY;BYDAY=MO,WE", date(2026, 2, 17)) is False
    assert rrule_matches("FREQ=MONTHLY;BYMONTHDAY=-1", date(2026, 2, 28)) is True
    assert rrule_matches("FREQ=YEARLY", date(2026, 2, 28)) is False


def test_routine_exceptions_win_over_schedule() -> None:
    routine = routine_from_json(
        {
            "id": "standup",
            "start": "09:00",
            "durationMinutes": 30,
            "schedule": {"type": "weekly", "day": "Monday"},
            "exceptions": ["2026-02-16"],
        }
    )
    assert routine_matches(routine, date(2026, 2, 16)) is False
    assert routine_matches(routine, date(2026, 2, 23)) is True


def test_plan_candidates_sorted_and_keyed() -> None:
    policy = PolicyConfig()
    templates = [
        template_from_json({"id": "morning", "start": "10:00", "durationMinutes": 60, "blockType": "deep"}),
    ]
    routines = [
        routine_from_json({"id": "inbox", "start": "09:00", "durationMinutes": 30, "blockType": "admin"}),
        routine_from_json({"id": "review", "templateId": "morning", "rrule": "FREQ=WEEKLY;BYDAY=MO"}),
    ]
    plans = plan_candidates(day=date(2026, 2, 16), policy=policy, templates=templates, routines=routines)
    assert [p.instance_key for p in plans] == [
        "rtn:inbox:2026-02-16",
        "rtn:review:2026-02-16",
        "tpl:morning:2026-02-16",
    ]
    review = plans[1]
    assert review.start_at == datetime(2026, 2, 16, 10, 0, tzinfo=timezone.utc)
    assert review.planned_cycles == 1


def test_routine_with_unknown_template_is_rejected() -> None:
    routines = [routine_from_json({"id": "r", "templateId": "missing"})]
    with pytest.raises(InvalidConfigError):
        plan_candidates(day=date(2026, 2, 16), policy=PolicyConfig(), templates=[], routines=routines)
