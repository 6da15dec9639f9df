from __future__ import annotations

from datetime import date
from typing import Optional

from zoneinfo import ZoneInfo

from .models import Block, BlockSource, BlockType, Firmness, RemoteEvent

SUMMARY_PREFIX = "[PomBlock]"


def _enum_or(enum_cls: type, raw: Optional[str], default):
    try:
        return enum_cls((raw or "").strip().lower())
    except ValueError:
        return default


def encode_block_event(block: Block) -> RemoteEvent:
    """Remote twin of a block; every block field rides along as private metadata."""
    private = {
        "block_id": block.id,
        "instance": block.instance_key,
        "date": block.date.isoformat(),
        "block_type": str(block.block_type),
        "firmness": str(block.firmness),
        "source": str(block.source),
        "planned_cycles": str(block.planned_cycles),
    }
    if block.source_id:
        private["source_id"] = block.source_id
    return RemoteEvent(
        id=block.calendar_event_id or "",
        start_at=block.start_at,
        end_at=block.end_at,
        title=f"{SUMMARY_PREFIX} {str(block.block_type).capitalize()} Block",
        description=f"instance: {block.instance_key}, firmness: {block.firmness}",
        status="confirmed",
        private=private,
    )


def decode_block_event(event: RemoteEvent, *, tz: ZoneInfo, account_id: Optional[str]) -> Optional[Block]:
    """Rebuilds a block from a remote event, or None when the event is not one of ours."""
    instance = event.instance_key
    if instance is None or event.is_cancelled:
        return None
    if event.start_at is None or event.end_at is None or event.end_at <= event.start_at:
        return None

    p = event.private
    try:
        day = date.fromisoformat(p["date"]) if p.get("date") else event.start_at.astimezone(tz).date()
    except ValueError:
        day = event.start_at.astimezone(tz).date()
    try:
        cycles = max(1, int(p.get("planned_cycles") or 1))
    except ValueError:
        cycles = 1

    return Block(
        id=(p.get("block_id") or "").strip() or event.id,
        instance_key=instance,
        date=day,
        start_at=event.start_at,
        end_at=event.end_at,
        block_type=_enum_or(BlockType, p.get("block_type"), BlockType.DEEP),
        firmness=_enum_or(Firmness, p.get("firmness"), Firmness.DRAFT),
        planned_cycles=cycles,
        source=_enum_or(BlockSource, p.get("source"), BlockSource.ROUTINE),
        source_id=(p.get("source_id") or "").strip() or None,
        calendar_event_id=event.id,
        calendar_account_id=account_id,
    )
