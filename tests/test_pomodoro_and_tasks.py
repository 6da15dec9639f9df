from __future__ import annotations

import itertools
from datetime import date, timedelta

import pytest

from pomblock.errors import InvalidConfigError, InvalidTransitionError
from pomblock.models import Block, BlockSource, BlockType, Firmness, PomodoroPhase, TaskStatus
from pomblock.pomodoro import FOCUS_SECONDS, PomodoroEngine, reflection_summary
from pomblock.tasks import TaskBoard, parse_task_status

from fakes import Clock, utc

START = utc(2026, 2, 16, 9, 0)


def _ids():
    seq = itertools.count(1)
    return lambda prefix: f"{prefix}-{next(seq)}"


def _block(block_id: str = "blk-1", *, minutes: int = 60, cycles: int = 2, offset_minutes: int = 0) -> Block:
    start = START + timedelta(minutes=offset_minutes)
    return Block(
        id=block_id,
        instance_key=f"rtn:auto:2026-02-16:{block_id}",
        date=date(2026, 2, 16),
        start_at=start,
        end_at=start + timedelta(minutes=minutes),
        block_type=BlockType.DEEP,
        firmness=Firmness.DRAFT,
        planned_cycles=cycles,
        source=BlockSource.ROUTINE,
    )


def test_pomodoro_full_cycle_flow() -> None:
    clock = Clock(START)
    engine = PomodoroEngine(new_id=_ids(), clock=clock)
    s = engine.start(block=_block(), task_id=None, break_duration_minutes=5)
    assert (s.phase, s.total_cycles, s.break_seconds) == (PomodoroPhase.FOCUS, 2, 300)

    phases = []
    for seconds in (FOCUS_SECONDS, 300, FOCUS_SECONDS, 300):
        clock.tick(seconds)
        snap = engine.advance()
        assert snap.completed_cycles <= max(snap.total_cycles, 0)
        phases.append(snap.phase)

    assert phases == [PomodoroPhase.BREAK, PomodoroPhase.FOCUS, PomodoroPhase.BREAK, PomodoroPhase.IDLE]
    logs = engine.logs_between(START, clock())
    focus = [x for x in logs if x.phase is PomodoroPhase.FOCUS]
    breaks = [x for x in logs if x.phase is PomodoroPhase.BREAK]
    assert len(focus) == 2 and len(breaks) == 2
    assert sum((x.end_time - x.start_time).total_seconds() for x in focus) == 2 * FOCUS_SECONDS


def test_total_cycles_limited_by_block_length() -> None:
    engine = PomodoroEngine(new_id=_ids(), clock=Clock(START))
    s = engine.start(block=_block(minutes=50, cycles=4), task_id=None, break_duration_minutes=10)
    assert s.total_cycles == 1
    s = engine.complete()
    assert s.phase is PomodoroPhase.IDLE

    s = engine.start(block=_block(minutes=20, cycles=1), task_id=None, break_duration_minutes=0)
    assert s.total_cycles == 1
    assert s.break_seconds == 60


def test_pause_keeps_remaining_time_and_resume_continues() -> None:
    clock = Clock(START)
    engine = PomodoroEngine(new_id=_ids(), clock=clock)
    engine.start(block=_block(), task_id="tsk-1", break_duration_minutes=5)
    clock.tick(600)
    paused = engine.pause("phone call")
    assert paused.phase is PomodoroPhase.PAUSED
    assert paused.paused_phase is PomodoroPhase.FOCUS
    assert paused.remaining_seconds == FOCUS_SECONDS - 600

    clock.tick(3600)
    assert engine.snapshot().remaining_seconds == FOCUS_SECONDS - 600
    resumed = engine.resume()
    assert resumed.phase is PomodoroPhase.FOCUS
    clock.tick(100)
    assert engine.snapshot().remaining_seconds == FOCUS_SECONDS - 700

    interrupted = [x for x in engine.state.completed_logs if x.interruption_reason]
    assert [x.interruption_reason for x in interrupted] == ["phone call"]


def test_invalid_transitions_are_rejected() -> None:
    engine = PomodoroEngine(new_id=_ids(), clock=Clock(START))
    with pytest.raises(InvalidTransitionError):
        engine.advance()
    with pytest.raises(InvalidTransitionError):
        engine.resume()
    engine.start(block=_block(), task_id=None, break_duration_minutes=5)
    with pytest.raises(InvalidTransitionError):
        engine.start(block=_block(), task_id=None, break_duration_minutes=5)
    with pytest.raises(InvalidConfigError):
        engine.resume()


def test_logs_survive_new_sessions_and_feed_reflection() -> None:
    clock = Clock(START)
    engine = PomodoroEngine(new_id=_ids(), clock=clock)
    engine.start(block=_block(cycles=1, minutes=30), task_id=None, break_duration_minutes=5)
    clock.tick(FOCUS_SECONDS)
    engine.advance()
    clock.tick(300)
    engine.advance()

    engine.start(block=_block("blk-2", offset_minutes=60), task_id=None, break_duration_minutes=5)
    clock.tick(30)
    engine.complete()

    logs = engine.logs_between(START, clock())
    summary = reflection_summary(logs, start=START, end=clock())
    assert summary.completed_count == 1
    assert summary.interrupted_count == 1
    # the 30-second focus segment truncates to zero minutes
    assert summary.total_focus_minutes == 25
    assert summary.logs[0]["phase"] == "focus"
    assert summary.logs[0]["start_time"] == "2026-02-16T09:00:00Z"


def test_task_lifecycle_and_focus_cycles() -> None:
    board = TaskBoard(new_id=_ids(), clock=Clock(START))
    task = board.create(title="  Write report ", estimated_cycles=2)
    assert task.title == "Write report"
    assert task.status is TaskStatus.PENDING

    board.start_on_block(task.id, "blk-1")
    assert board.get(task.id).status is TaskStatus.IN_PROGRESS
    assert board.task_by_block == {"blk-1": task.id}

    for _ in range(3):
        board.record_focus_cycle(task.id)
    assert board.get(task.id).completed_cycles == 2

    with pytest.raises(InvalidConfigError):
        board.create(title="   ")
    assert parse_task_status("in-progress") is TaskStatus.IN_PROGRESS


def test_split_task_defers_parent() -> None:
    board = TaskBoard(new_id=_ids(), clock=Clock(START))
    parent = board.create(title="Migrate DB", estimated_cycles=5)
    children = board.split(parent.id, 2)
    assert [c.title for c in children] == ["Migrate DB (1/2)", "Migrate DB (2/2)"]
    assert [c.estimated_cycles for c in children] == [3, 3]
    assert board.get(parent.id).status is TaskStatus.DEFERRED
    with pytest.raises(InvalidConfigError):
        board.split(parent.id, 1)


def test_carry_over_picks_earliest_free_block() -> None:
    board = TaskBoard(new_id=_ids(), clock=Clock(START))
    a = board.create(title="A")
    b = board.create(title="B")
    src = _block("blk-1")
    later = _block("blk-3", offset_minutes=180)
    sooner = _block("blk-2", offset_minutes=90)
    board.assign(a.id, src.id)
    board.assign(b.id, sooner.id)

    target = board.carry_over(a.id, src, [later, sooner])
    assert target == "blk-3"
    assert board.block_by_task[a.id] == "blk-3"
    assert "blk-1" not in board.task_by_block

    with pytest.raises(InvalidConfigError):
        board.carry_over(a.id, later, [sooner])


def test_focus_segments_add_up_to_one_focus_length_per_cycle() -> None:
    clock = Clock(START)
    engine = PomodoroEngine(new_id=_ids(), clock=clock)
    engine.start(block=_block(), task_id=None, break_duration_minutes=5)
    clock.tick(600)
    engine.pause()
    clock.tick(120)
    engine.resume()
    clock.tick(FOCUS_SECONDS - 600)
    engine.advance()
    clock.tick(300)
    engine.advance()
    clock.tick(FOCUS_SECONDS)
    snap = engine.advance()

    focus = [x for x in engine.state.completed_logs if x.phase is PomodoroPhase.FOCUS]
    assert snap.completed_cycles == 2
    assert len(focus) == 3
    assert [x.interruption_reason for x in focus] == ["paused", None, None]
    spent = sum((x.end_time - x.start_time).total_seconds() for x in focus)
    assert spent == snap.completed_cycles * snap.focus_seconds
