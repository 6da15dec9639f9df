from __future__ import annotations

import json
from datetime import date, datetime, time, timezone
from pathlib import Path

import pytest
from zoneinfo import ZoneInfo

from pomblock.config import DEFAULT_CONFIGS, WorkspaceConfig, workspace_from_env
from pomblock.errors import InvalidConfigError, SerializationError
from pomblock.jobs import due_for_daily_run
from pomblock.oplog import CommandLog, read_entries
from pomblock.parsing import parse_datetime_input, parse_day_arg, parse_task_line

NOW = datetime(2026, 2, 16, 8, 0, tzinfo=timezone.utc)


def test_defaults_are_written_once(tmp_path) -> None:
    config = WorkspaceConfig(tmp_path / "config")
    created = config.ensure_defaults()
    assert sorted(p.name for p in created) == sorted(DEFAULT_CONFIGS)
    assert config.ensure_defaults() == []

    policy = config.policy(now=NOW)
    assert (policy.work_start, policy.work_end) == (time(9, 0), time(18, 0))
    assert policy.block_duration_minutes == 50
    assert policy.work_days == frozenset(range(5))
    assert config.read_document("calendars.json") == {"schema": 1, "blocksCalendarId": None, "blocksCalendarIds": {}}


def test_schema_mismatch_is_rejected(tmp_path) -> None:
    config = WorkspaceConfig(tmp_path)
    (tmp_path / "policies.json").write_text(json.dumps({"schema": 2}), encoding="utf-8")
    with pytest.raises(InvalidConfigError):
        config.policy(now=NOW)


def test_broken_json_is_a_serialization_error(tmp_path) -> None:
    config = WorkspaceConfig(tmp_path)
    (tmp_path / "templates.json").write_text("{not json", encoding="utf-8")
    with pytest.raises(SerializationError):
        config.templates()


def test_override_document_is_applied(tmp_path) -> None:
    config = WorkspaceConfig(tmp_path)
    config.ensure_defaults()
    config.write_document(
        "overrides.json",
        {"schema": 1, "mode": "hard", "value": {"workHours": {"start": "08:00", "days": ["Saturday"]}}},
    )
    policy = config.policy(now=NOW)
    assert policy.work_start == time(8, 0)
    assert policy.work_days == frozenset({5})


def test_blocks_calendar_id_per_account(tmp_path) -> None:
    config = WorkspaceConfig(tmp_path)
    config.ensure_defaults()
    assert config.blocks_calendar_id("default") is None
    config.save_blocks_calendar_id("default", "cal-1")
    config.save_blocks_calendar_id("work", "cal-2")
    assert config.blocks_calendar_id("default") == "cal-1"
    assert config.blocks_calendar_id("work") == "cal-2"
    assert json.loads((tmp_path / "calendars.json").read_text())["blocksCalendarId"] == "cal-1"


def test_workspace_from_env(tmp_path) -> None:
    paths = workspace_from_env({"POMBLOCK_WORKSPACE": str(tmp_path / "ws")}.get)
    paths.ensure()
    assert paths.command_log_path == tmp_path / "ws" / "logs" / "commands.log"
    assert paths.config_dir.is_dir()
    assert workspace_from_env(lambda name: None).root == Path(".pomblock")


def test_parse_task_line_units() -> None:
    assert parse_task_line("Write report 3p").estimated_cycles == 3
    p = parse_task_line("Review PR 50m")
    assert (p.title, p.estimated_cycles) == ("Review PR", 2)
    assert parse_task_line("Deep dive 2h").estimated_cycles == 5
    assert parse_task_line("Inbox zero").estimated_cycles is None
    assert parse_task_line("   ") is None


def test_parse_datetime_input() -> None:
    assert parse_datetime_input("2026-02-16", "time_min") == datetime(2026, 2, 16, tzinfo=timezone.utc)
    assert parse_datetime_input("2026-02-16T10:00:00+01:00", "start") == datetime(
        2026, 2, 16, 9, 0, tzinfo=timezone.utc
    )
    with pytest.raises(InvalidConfigError):
        parse_datetime_input("2026-02-16T10:00:00", "start")
    with pytest.raises(InvalidConfigError):
        parse_datetime_input("yesterday", "start")


def test_parse_day_arg() -> None:
    today = date(2026, 2, 16)
    assert parse_day_arg(None, today) == today
    assert parse_day_arg("tomorrow", today) == date(2026, 2, 17)
    assert parse_day_arg("+3", today) == date(2026, 2, 19)
    assert parse_day_arg("2026-03-01", today) == date(2026, 3, 1)


def test_due_for_daily_run_only_once_per_day() -> None:
    tz = ZoneInfo("UTC")
    today = date(2026, 2, 16)
    when = time(5, 30)
    now = datetime(2026, 2, 16, 5, 35, tzinfo=tz)

    d1 = due_for_daily_run(now=now, today=today, when_local=when, tz=tz, last_run_day=None)
    assert d1.due_now is True

    d2 = due_for_daily_run(now=now, today=today, when_local=when, tz=tz, last_run_day=today)
    assert d2.due_now is False


def test_due_for_daily_run_catch_up_ignores_window() -> None:
    tz = ZoneInfo("UTC")
    today = date(2026, 2, 16)
    late = datetime(2026, 2, 16, 11, 0, tzinfo=tz)
    assert due_for_daily_run(now=late, today=today, when_local=time(5, 30), tz=tz, last_run_day=None).due_now is False
    assert (
        due_for_daily_run(
            now=late, today=today, when_local=time(5, 30), tz=tz, last_run_day=None, window_minutes=None
        ).due_now
        is True
    )


def test_command_log_writes_json_lines(tmp_path) -> None:
    path = tmp_path / "commands.log"
    oplog = CommandLog(path)
    oplog.info("generate_blocks", "ok")
    oplog.error("sync_calendar", "account default is not authenticated")
    oplog.close()

    entries = read_entries(path)
    assert [(e["level"], e["command"]) for e in entries] == [("info", "generate_blocks"), ("error", "sync_calendar")]
    assert entries[1]["message"] == "account default is not authenticated"
    assert entries[0]["timestamp"].endswith("Z")


def test_invalid_policy_values_are_rejected(tmp_path) -> None:
    config = WorkspaceConfig(tmp_path)
    config.ensure_defaults()
    doc = json.loads((tmp_path / "policies.json").read_text())

    config.write_document("policies.json", dict(doc, blockDurationMinutes=0))
    with pytest.raises(InvalidConfigError) as info:
        config.policy(now=NOW)
    assert "blockDurationMinutes" in str(info.value)

    config.write_document("policies.json", dict(doc, workHours={"start": "09:00", "days": ["Someday"]}))
    with pytest.raises(InvalidConfigError):
        config.policy(now=NOW)

    config.write_document("policies.json", dict(doc, generation={"autoTime": "25:00"}))
    with pytest.raises(InvalidConfigError):
        config.policy(now=NOW)


def test_generation_settings_and_override_weight(tmp_path) -> None:
    config = WorkspaceConfig(tmp_path)
    config.ensure_defaults()
    doc = json.loads((tmp_path / "policies.json").read_text())
    config.write_document(
        "policies.json",
        dict(doc, generation={"autoEnabled": False, "autoTime": "06:15", "maxAutoBlocksPerDay": 3}),
    )
    config.write_document(
        "overrides.json",
        {"schema": 1, "mode": "SOFT", "weight": 0.5, "value": {"blockDurationMinutes": 90}},
    )
    policy = config.policy(now=NOW)
    assert (policy.auto_enabled, policy.auto_time, policy.max_auto_blocks_per_day) == (False, time(6, 15), 3)
    assert policy.block_duration_minutes == 70

    config.write_document("overrides.json", {"schema": 1, "mode": "soft", "weight": 2})
    with pytest.raises(InvalidConfigError):
        config.policy(now=NOW)
    config.write_document("overrides.json", {"schema": 1, "mode": "sometimes"})
    with pytest.raises(InvalidConfigError):
        config.policy(now=NOW)


def test_temporary_override_window_from_document(tmp_path) -> None:
    config = WorkspaceConfig(tmp_path)
    config.ensure_defaults()
    config.write_document(
        "overrides.json",
        {
            "schema": 1,
            "mode": "temporary",
            "value": {"workHours": {"start": "07:00"}},
            "validFrom": "2026-02-16",
            "validTo": "2026-02-20T23:59:59Z",
        },
    )
    assert config.policy(now=NOW).work_start == time(7, 0)
    assert config.policy(now=datetime(2026, 2, 21, tzinfo=timezone.utc)).work_start == time(9, 0)
    config.write_document("overrides.json", {"schema": 1, "mode": "temporary", "validFrom": "next week"})
    with pytest.raises(InvalidConfigError):
        config.policy(now=NOW)


def test_bad_templates_and_routines_are_rejected(tmp_path) -> None:
    config = WorkspaceConfig(tmp_path)
    config.ensure_defaults()
    config.write_document("templates.json", {"schema": 1, "templates": [{"id": "am", "start": "09:00"}]})
    with pytest.raises(InvalidConfigError) as info:
        config.templates()
    assert "durationMinutes" in str(info.value)

    config.write_document(
        "routines.json",
        {"schema": 1, "routines": [{"id": "rent", "schedule": {"type": "monthly", "day": 40}}]},
    )
    with pytest.raises(InvalidConfigError):
        config.routines()

    config.write_document(
        "routines.json",
        {"schema": 1, "routines": [{"id": "review", "schedule": {"type": "Weekly", "day": "fri"}, "blockType": "ADMIN"}]},
    )
    (routine,) = config.routines()
    assert (routine.schedule.weekday, routine.block_type) == (4, "admin")
