from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from typing import Iterable, Optional, Sequence

from .models import Block, BlockSource, BlockType, Firmness, Interval, RemoteEvent
from .policy import PolicyConfig, planned_cycles_for, work_window
from .routines import CandidatePlan

AUTO_SOURCE_ID = "auto"


@dataclass(frozen=True)
class PlacementMode:
    limit: Optional[int]
    allow_overlap: bool


BULK_FILL = PlacementMode(limit=None, allow_overlap=False)
SINGLE_BLOCK = PlacementMode(limit=1, allow_overlap=True)


def auto_instance_key(day: date, index: int) -> str:
    return f"rtn:auto:{day.isoformat()}:{index}"


def auto_index(instance_key: str, day: date) -> Optional[int]:
    prefix = f"rtn:auto:{day.isoformat()}:"
    if not instance_key.startswith(prefix):
        return None
    tail = instance_key[len(prefix):]
    return int(tail) if tail.isdigit() else None


def event_interval(event: RemoteEvent) -> Optional[Interval]:
    if event.start_at is None or event.end_at is None or event.end_at <= event.start_at:
        return None
    return Interval(start=event.start_at, end=event.end_at)


def block_interval(block: Block) -> Interval:
    return Interval(start=block.start_at, end=block.end_at)


def merge_intervals(intervals: Iterable[Interval]) -> list[Interval]:
    """Sorts and merges overlapping or touching intervals."""
    merged: list[Interval] = []
    for iv in sorted(intervals, key=lambda i: (i.start, i.end)):
        if merged and iv.start <= merged[-1].end:
            if iv.end > merged[-1].end:
                merged[-1] = Interval(start=merged[-1].start, end=iv.end)
            continue
        merged.append(iv)
    return merged


def intersects_any(interval: Interval, others: Iterable[Interval]) -> bool:
    return any(interval.overlaps(o) for o in others)


def free_slots(window: Interval, busy: Iterable[Interval]) -> list[Interval]:
    """Gaps of window not covered by busy, in chronological order."""
    cursor = window.start
    slots: list[Interval] = []
    for iv in merge_intervals(busy):
        clipped = window.clip(iv)
        if clipped is None:
            continue
        if clipped.start > cursor:
            slots.append(Interval(start=cursor, end=clipped.start))
        cursor = max(cursor, clipped.end)
    if cursor < window.end:
        slots.append(Interval(start=cursor, end=window.end))
    return slots


def build_busy_map(
    *,
    window: Interval,
    events: Iterable[RemoteEvent],
    blocks: Iterable[Block],
) -> list[Interval]:
    """Non-cancelled remote events clipped to the window, plus existing blocks, merged."""
    intervals: list[Interval] = []
    for ev in events:
        if ev.is_cancelled:
            continue
        iv = event_interval(ev)
        clipped = window.clip(iv) if iv else None
        if clipped:
            intervals.append(clipped)
    intervals.extend(block_interval(b) for b in blocks)
    return merge_intervals(intervals)


def place_blocks(
    *,
    day: date,
    policy: PolicyConfig,
    window: Interval,
    candidates: Sequence[CandidatePlan],
    busy: Sequence[Interval],
    existing_blocks: Sequence[Block],
    suppressed: set[str],
    mode: PlacementMode = BULK_FILL,
) -> list[CandidatePlan]:
    """
    Deterministic placement for one day:
    - configured plans in candidate order, skipping ones outside the window,
      overlapping (unless the mode allows it), suppressed, or duplicated
    - then auto-fill of the remaining free gaps with rtn:auto:<date>:<i> blocks,
      i resuming past the highest existing auto index
    """
    occupied: list[Interval] = list(busy)
    keys = {b.instance_key for b in existing_blocks}
    ranges = {(b.start_at, b.end_at) for b in existing_blocks}
    accepted: list[CandidatePlan] = []

    def limit_reached() -> bool:
        return mode.limit is not None and len(accepted) >= mode.limit

    for plan in candidates:
        if limit_reached():
            return accepted
        iv = plan.interval
        if not window.contains(iv):
            continue
        if not mode.allow_overlap and intersects_any(iv, occupied):
            continue
        if policy.respect_suppression and plan.instance_key in suppressed:
            continue
        if plan.instance_key in keys or (plan.start_at, plan.end_at) in ranges:
            continue
        accepted.append(plan)
        keys.add(plan.instance_key)
        ranges.add((plan.start_at, plan.end_at))
        occupied.append(iv)

    existing_auto = [i for i in (auto_index(b.instance_key, day) for b in existing_blocks) if i is not None]
    next_index = max(existing_auto) + 1 if existing_auto else 0
    auto_count = len(existing_auto)

    duration = timedelta(minutes=policy.block_duration_minutes)
    gap = timedelta(minutes=policy.min_block_gap_minutes)
    cycles = planned_cycles_for(policy.block_duration_minutes, policy.break_duration_minutes)
    slots = [window] if mode.allow_overlap else free_slots(window, occupied)

    for slot in slots:
        cur = slot.start
        while cur + duration <= slot.end:
            if limit_reached() or auto_count >= policy.max_auto_blocks_per_day:
                return accepted
            end = cur + duration
            if (cur, end) in ranges:
                cur = end + gap
                continue
            plan = CandidatePlan(
                instance_key=auto_instance_key(day, next_index),
                start_at=cur,
                end_at=end,
                block_type=BlockType.DEEP,
                firmness=Firmness.DRAFT,
                planned_cycles=cycles,
                source=BlockSource.ROUTINE,
                source_id=AUTO_SOURCE_ID,
            )
            accepted.append(plan)
            ranges.add((cur, end))
            next_index += 1
            auto_count += 1
            cur = end + gap
    return accepted


def plan_day(
    *,
    day: date,
    policy: PolicyConfig,
    candidates: Sequence[CandidatePlan],
    events: Iterable[RemoteEvent],
    existing_blocks: Sequence[Block],
    suppressed: set[str],
    mode: PlacementMode = BULK_FILL,
) -> list[CandidatePlan]:
    """Busy map + placement for day. Empty on inactive weekdays."""
    window = work_window(policy, day)
    if window is None:
        return []
    busy = build_busy_map(window=window, events=events, blocks=existing_blocks)
    return place_blocks(
        day=day,
        policy=policy,
        window=window,
        candidates=candidates,
        busy=busy,
        existing_blocks=existing_blocks,
        suppressed=suppressed,
        mode=mode,
    )
