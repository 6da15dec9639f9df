from __future__ import annotations

from datetime import date, datetime, timezone

from pomblock.models import Block, Interval
from pomblock.planner import (
    BULK_FILL,
    SINGLE_BLOCK,
    auto_index,
    free_slots,
    merge_intervals,
    plan_day,
)
from pomblock.policy import PolicyConfig
from pomblock.routines import CandidatePlan, plan_candidates, template_from_json

from fakes import event, utc

DAY = date(2026, 2, 16)  # Monday
HOURLY = PolicyConfig(block_duration_minutes=60, min_block_gap_minutes=0, break_duration_minutes=5)


def _as_blocks(plans: list[CandidatePlan]) -> list[Block]:
    return [
        Block(
            id=f"blk-{i}",
            instance_key=p.instance_key,
            date=DAY,
            start_at=p.start_at,
            end_at=p.end_at,
            block_type=p.block_type,
            firmness=p.firmness,
            planned_cycles=p.planned_cycles,
            source=p.source,
            source_id=p.source_id,
        )
        for i, p in enumerate(plans)
    ]


def test_bulk_fill_on_empty_day_places_hourly_auto_blocks() -> None:
    plans = plan_day(day=DAY, policy=HOURLY, candidates=[], events=[], existing_blocks=[], suppressed=set())
    assert [p.instance_key for p in plans] == [f"rtn:auto:2026-02-16:{i}" for i in range(9)]
    assert [p.start_at.hour for p in plans] == list(range(9, 18))
    assert all(p.planned_cycles == 2 for p in plans)


def test_generation_is_idempotent_and_resumes_auto_indices() -> None:
    first = plan_day(day=DAY, policy=HOURLY, candidates=[], events=[], existing_blocks=[], suppressed=set())
    assert plan_day(
        day=DAY, policy=HOURLY, candidates=[], events=[], existing_blocks=_as_blocks(first), suppressed=set()
    ) == []

    kept = _as_blocks(first[:4])
    rest = plan_day(day=DAY, policy=HOURLY, candidates=[], events=[], existing_blocks=kept, suppressed=set())
    assert {b.instance_key for b in kept} | {p.instance_key for p in rest} == {p.instance_key for p in first}
    assert auto_index(rest[0].instance_key, DAY) == 4


def test_bulk_fill_avoids_busy_time_and_itself() -> None:
    policy = PolicyConfig()
    templates = [template_from_json({"id": "deep", "start": "10:00", "durationMinutes": 90})]
    candidates = plan_candidates(day=DAY, policy=policy, templates=templates, routines=[])
    busy_event = event("e1", utc(2026, 2, 16, 11, 0), utc(2026, 2, 16, 12, 30))
    plans = plan_day(
        day=DAY,
        policy=policy,
        candidates=candidates,
        events=[busy_event],
        existing_blocks=[],
        suppressed=set(),
    )
    busy = Interval(start=busy_event.start_at, end=busy_event.end_at)
    intervals = [p.interval for p in plans]

    assert "tpl:deep:2026-02-16" not in {p.instance_key for p in plans}  # 10:00-11:30 collides
    assert not any(iv.overlaps(busy) for iv in intervals)
    for i, a in enumerate(intervals):
        for b in intervals[i + 1:]:
            assert not a.overlaps(b)


def test_bulk_fill_respects_max_auto_blocks() -> None:
    policy = PolicyConfig(block_duration_minutes=30, min_block_gap_minutes=0, max_auto_blocks_per_day=3)
    plans = plan_day(day=DAY, policy=policy, candidates=[], events=[], existing_blocks=[], suppressed=set())
    assert len(plans) == 3


def test_max_auto_blocks_ignores_template_blocks() -> None:
    policy = PolicyConfig(block_duration_minutes=60, min_block_gap_minutes=0, max_auto_blocks_per_day=2)
    templates = [template_from_json({"id": "am", "start": "09:00", "durationMinutes": 60})]
    candidates = plan_candidates(day=DAY, policy=policy, templates=templates, routines=[])
    plans = plan_day(day=DAY, policy=policy, candidates=candidates, events=[], existing_blocks=[], suppressed=set())
    assert [p.instance_key for p in plans] == [
        "tpl:am:2026-02-16",
        "rtn:auto:2026-02-16:0",
        "rtn:auto:2026-02-16:1",
    ]


def test_suppressed_candidate_is_skipped() -> None:
    policy = PolicyConfig(max_auto_blocks_per_day=0)
    templates = [template_from_json({"id": "deep", "start": "09:00", "durationMinutes": 50})]
    candidates = plan_candidates(day=DAY, policy=policy, templates=templates, routines=[])
    plans = plan_day(
        day=DAY,
        policy=policy,
        candidates=candidates,
        events=[],
        existing_blocks=[],
        suppressed={"tpl:deep:2026-02-16"},
    )
    assert plans == []


def test_single_block_mode_places_one_block_even_over_busy_time() -> None:
    busy_event = event("e1", utc(2026, 2, 16, 9, 0), utc(2026, 2, 16, 18, 0))
    plans = plan_day(
        day=DAY,
        policy=HOURLY,
        candidates=[],
        events=[busy_event],
        existing_blocks=[],
        suppressed=set(),
        mode=SINGLE_BLOCK,
    )
    assert len(plans) == 1
    assert plans[0].start_at == utc(2026, 2, 16, 9, 0)

    again = plan_day(
        day=DAY,
        policy=HOURLY,
        candidates=[],
        events=[],
        existing_blocks=_as_blocks(plans),
        suppressed=set(),
        mode=SINGLE_BLOCK,
    )
    assert [p.instance_key for p in again] == ["rtn:auto:2026-02-16:1"]
    assert again[0].start_at == utc(2026, 2, 16, 10, 0)


def test_weekend_yields_nothing() -> None:
    assert plan_day(
        day=date(2026, 2, 22), policy=HOURLY, candidates=[], events=[], existing_blocks=[], suppressed=set()
    ) == []
    assert BULK_FILL.limit is None


def test_free_slots_and_merge() -> None:
    window = Interval(start=utc(2026, 2, 16, 9), end=utc(2026, 2, 16, 12))
    busy = [
        Interval(start=utc(2026, 2, 16, 10), end=utc(2026, 2, 16, 10, 30)),
        Interval(start=utc(2026, 2, 16, 10, 30), end=utc(2026, 2, 16, 11)),
        Interval(start=datetime(2026, 2, 16, 8, tzinfo=timezone.utc), end=utc(2026, 2, 16, 9, 15)),
    ]
    assert len(merge_intervals(busy)) == 2
    assert free_slots(window, busy) == [
        Interval(start=utc(2026, 2, 16, 9, 15), end=utc(2026, 2, 16, 10)),
        Interval(start=utc(2026, 2, 16, 11), end=utc(2026, 2, 16, 12)),
    ]
