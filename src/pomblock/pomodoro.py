from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Callable, Optional

from .errors import InvalidTransitionError
from .models import Block, PomodoroLog, PomodoroPhase
from .parsing import to_rfc3339

log = logging.getLogger("pomblock")

FOCUS_SECONDS = 25 * 60
MIN_BREAK_SECONDS = 60
PAUSED_REASON = "paused"
MANUAL_COMPLETE_REASON = "manual_complete"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PomodoroRuntime:
    current_block_id: Optional[str] = None
    current_task_id: Optional[str] = None
    phase: PomodoroPhase = PomodoroPhase.IDLE
    paused_phase: Optional[PomodoroPhase] = None
    remaining_seconds: int = 0
    start_time: Optional[datetime] = None  # start of the running segment
    total_cycles: int = 0
    completed_cycles: int = 0
    current_cycle: int = 0
    focus_seconds: int = FOCUS_SECONDS
    break_seconds: int = MIN_BREAK_SECONDS
    active_log: Optional[PomodoroLog] = None
    completed_logs: list[PomodoroLog] = field(default_factory=list)


@dataclass(frozen=True)
class PomodoroSnapshot:
    current_block_id: Optional[str]
    current_task_id: Optional[str]
    phase: PomodoroPhase
    paused_phase: Optional[PomodoroPhase]
    remaining_seconds: int
    start_time: Optional[datetime]
    total_cycles: int
    completed_cycles: int
    current_cycle: int
    focus_seconds: int
    break_seconds: int


@dataclass(frozen=True)
class ReflectionSummary:
    start: datetime
    end: datetime
    completed_count: int
    interrupted_count: int
    total_focus_minutes: int
    logs: list[dict[str, Optional[str]]]


def session_plan(block: Block, break_duration_minutes: int) -> tuple[int, int, int]:
    """(total_cycles, focus_seconds, break_seconds) for a block."""
    focus = FOCUS_SECONDS
    brk = max(MIN_BREAK_SECONDS, int(break_duration_minutes) * 60)
    fits = block.duration_seconds // (focus + brk)
    total = max(1, min(block.planned_cycles, fits))
    return total, focus, brk


class PomodoroEngine:
    """
    Focus/break cycles for a single block at a time.

        idle → focus ⇄ break → … → idle
        focus|break → paused → focus|break
        any non-idle → idle (complete)

    Every phase segment is written to an append-only log.
    """

    def __init__(
        self,
        *,
        new_id: Callable[[str], str],
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._new_id = new_id
        self._clock = clock
        self.state = PomodoroRuntime()

    def start(self, *, block: Block, task_id: Optional[str], break_duration_minutes: int) -> PomodoroSnapshot:
        self._require_phase((PomodoroPhase.IDLE,), "start")
        total, focus, brk = session_plan(block, break_duration_minutes)
        completed_logs = self.state.completed_logs
        self.state = PomodoroRuntime(
            current_block_id=block.id,
            current_task_id=task_id,
            total_cycles=total,
            focus_seconds=focus,
            break_seconds=brk,
            current_cycle=1,
            completed_logs=completed_logs,
        )
        self._enter(PomodoroPhase.FOCUS, remaining=focus)
        log.info("Pomodoro started on block %s (%d cycles)", block.id, total)
        return self.snapshot()

    def advance(self) -> PomodoroSnapshot:
        self._require_phase((PomodoroPhase.FOCUS, PomodoroPhase.BREAK), "advance")
        s = self.state
        if s.phase is PomodoroPhase.FOCUS:
            self._close_active(None)
            s.completed_cycles = min(s.total_cycles, s.completed_cycles + 1)
            self._enter(PomodoroPhase.BREAK, remaining=s.break_seconds)
        elif s.completed_cycles < s.total_cycles:
            self._close_active(None)
            s.current_cycle += 1
            self._enter(PomodoroPhase.FOCUS, remaining=s.focus_seconds)
        else:
            self._close_active(None)
            self._reset()
        return self.snapshot()

    def pause(self, reason: Optional[str] = None) -> PomodoroSnapshot:
        self._require_phase((PomodoroPhase.FOCUS, PomodoroPhase.BREAK), "pause")
        s = self.state
        s.remaining_seconds = self._live_remaining()
        self._close_active(reason or PAUSED_REASON)
        s.paused_phase = s.phase
        s.phase = PomodoroPhase.PAUSED
        s.start_time = None
        return self.snapshot()

    def resume(self) -> PomodoroSnapshot:
        self._require_phase((PomodoroPhase.PAUSED,), "resume")
        s = self.state
        phase = s.paused_phase or PomodoroPhase.FOCUS
        s.paused_phase = None
        self._enter(phase, remaining=s.remaining_seconds)
        return self.snapshot()

    def complete(self) -> PomodoroSnapshot:
        self._require_phase((PomodoroPhase.FOCUS, PomodoroPhase.BREAK, PomodoroPhase.PAUSED), "complete")
        if self.state.phase in (PomodoroPhase.FOCUS, PomodoroPhase.BREAK):
            self._close_active(MANUAL_COMPLETE_REASON)
        self._reset()
        return self.snapshot()

    def snapshot(self) -> PomodoroSnapshot:
        s = self.state
        return PomodoroSnapshot(
            current_block_id=s.current_block_id,
            current_task_id=s.current_task_id,
            phase=s.phase,
            paused_phase=s.paused_phase,
            remaining_seconds=self._live_remaining(),
            start_time=s.start_time,
            total_cycles=s.total_cycles,
            completed_cycles=s.completed_cycles,
            current_cycle=s.current_cycle,
            focus_seconds=s.focus_seconds,
            break_seconds=s.break_seconds,
        )

    def detach_task(self, task_id: str) -> None:
        if self.state.current_task_id == task_id:
            self.state.current_task_id = None

    def logs_between(self, start: datetime, end: datetime) -> list[PomodoroLog]:
        return [x for x in self.state.completed_logs if start <= x.start_time <= end]

    def _require_phase(self, allowed: tuple[PomodoroPhase, ...], action: str) -> None:
        if self.state.phase not in allowed:
            raise InvalidTransitionError(f"cannot {action} pomodoro while {self.state.phase}")

    def _live_remaining(self) -> int:
        s = self.state
        if s.phase not in (PomodoroPhase.FOCUS, PomodoroPhase.BREAK) or s.start_time is None:
            return s.remaining_seconds
        elapsed = int((self._clock() - s.start_time).total_seconds())
        return max(0, s.remaining_seconds - elapsed)

    def _enter(self, phase: PomodoroPhase, *, remaining: int) -> None:
        s = self.state
        now = self._clock()
        s.phase = phase
        s.remaining_seconds = remaining
        s.start_time = now
        s.active_log = PomodoroLog(
            id=self._new_id("log"),
            block_id=s.current_block_id or "",
            task_id=s.current_task_id,
            phase=phase,
            start_time=now,
        )

    def _close_active(self, reason: Optional[str]) -> None:
        s = self.state
        if s.active_log is None:
            return
        s.completed_logs.append(replace(s.active_log, end_time=self._clock(), interruption_reason=reason))
        s.active_log = None

    def _reset(self) -> None:
        self.state = PomodoroRuntime(completed_logs=self.state.completed_logs)


def reflection_summary(logs: list[PomodoroLog], *, start: datetime, end: datetime) -> ReflectionSummary:
    completed = 0
    interrupted = 0
    focus_minutes = 0
    for entry in logs:
        if entry.interruption_reason:
            interrupted += 1
        elif entry.phase is PomodoroPhase.FOCUS:
            completed += 1
        if entry.phase is PomodoroPhase.FOCUS and entry.end_time is not None:
            minutes = int((entry.end_time - entry.start_time).total_seconds() // 60)
            if minutes > 0:
                focus_minutes += minutes
    return ReflectionSummary(
        start=start,
        end=end,
        completed_count=completed,
        interrupted_count=interrupted,
        total_focus_minutes=focus_minutes,
        logs=[
            {
                "id": entry.id,
                "block_id": entry.block_id,
                "task_id": entry.task_id,
                "phase": str(entry.phase),
                "start_time": to_rfc3339(entry.start_time),
                "end_time": to_rfc3339(entry.end_time) if entry.end_time else None,
                "interruption_reason": entry.interruption_reason,
            }
            for entry in logs
        ],
    )
