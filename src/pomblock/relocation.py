from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from enum import StrEnum
from typing import Iterable, Optional, Sequence

from .models import Block, Firmness, Interval, RemoteEvent
from .planner import block_interval, event_interval, free_slots, intersects_any
from .policy import PolicyConfig, work_window


class RelocationStatus(StrEnum):
    UNCHANGED = "unchanged"
    MOVED = "moved"
    NO_SLOT = "no_slot"
    PINNED = "pinned"


@dataclass(frozen=True)
class RelocationDecision:
    status: RelocationStatus
    interval: Optional[Interval] = None


def changed_intervals(
    *,
    events: Iterable[RemoteEvent],
    window: Optional[Interval] = None,
) -> list[Interval]:
    """Intervals touched by a sync: added/updated payloads and the cached payloads of deletions."""
    out: list[Interval] = []
    for ev in events:
        iv = event_interval(ev)
        if iv is None:
            continue
        if window is not None:
            iv = window.clip(iv)
            if iv is None:
                continue
        out.append(iv)
    return out


def blocks_hit_by_changes(
    *,
    blocks: Iterable[Block],
    account_id: str,
    changed: Sequence[Interval],
    limit: int,
) -> list[Block]:
    hit = [
        b
        for b in blocks
        if b.calendar_account_id == account_id and intersects_any(block_interval(b), changed)
    ]
    hit.sort(key=lambda b: (b.start_at, b.id))
    return hit[: max(0, limit)]


def decide_relocation(
    *,
    block: Block,
    policy: PolicyConfig,
    account_events: Iterable[RemoteEvent],
    other_blocks: Iterable[Block],
) -> RelocationDecision:
    """
    - only confirmed remote events count, never the block's own twin
    - a block that does not collide with a remote event stays where it is
    - otherwise it moves to the start of the first free slot of the block's
      work window that fits its duration (other local blocks are busy too)
    """
    current = block_interval(block)
    remote: list[Interval] = []
    for ev in account_events:
        if not ev.is_confirmed:
            continue
        if block.calendar_event_id and ev.id == block.calendar_event_id:
            continue
        iv = event_interval(ev)
        if iv is not None:
            remote.append(iv)

    if not intersects_any(current, remote):
        return RelocationDecision(status=RelocationStatus.UNCHANGED)
    if block.firmness is Firmness.HARD:
        return RelocationDecision(status=RelocationStatus.PINNED)

    window = work_window(policy, block.date)
    if window is None:
        return RelocationDecision(status=RelocationStatus.NO_SLOT)

    busy = list(remote)
    busy.extend(block_interval(b) for b in other_blocks if b.id != block.id and b.date == block.date)
    duration = timedelta(seconds=block.duration_seconds)
    for slot in free_slots(window, busy):
        if slot.end - slot.start >= duration:
            return RelocationDecision(
                status=RelocationStatus.MOVED,
                interval=Interval(start=slot.start, end=slot.start + duration),
            )
    return RelocationDecision(status=RelocationStatus.NO_SLOT)
