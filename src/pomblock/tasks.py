from __future__ import annotations

import math
from dataclasses import replace
from datetime import datetime
from typing import Callable, Optional, Sequence

from .errors import InvalidConfigError
from .models import Block, Task, TaskStatus


def parse_task_status(value: str) -> TaskStatus:
    raw = (value or "").strip().lower().replace("-", "_")
    try:
        return TaskStatus(raw)
    except ValueError as exc:
        raise InvalidConfigError(f"unknown task status: {value!r}") from exc


def _check_estimate(estimated: Optional[int], completed: int) -> None:
    if estimated is None:
        return
    if isinstance(estimated, bool) or not isinstance(estimated, int) or estimated < 1:
        raise InvalidConfigError("estimated_cycles must be a positive integer")
    if completed > estimated:
        raise InvalidConfigError(
            f"estimated_cycles ({estimated}) is below completed_cycles ({completed})"
        )


class TaskBoard:
    """
    Tasks plus their block assignments. A task sits on at most one block and a
    block carries at most one task; the two maps always mirror each other.
    """

    def __init__(self, *, new_id: Callable[[str], str], clock: Callable[[], datetime]) -> None:
        self._new_id = new_id
        self._clock = clock
        self.tasks: dict[str, Task] = {}
        self.order: list[str] = []
        self.block_by_task: dict[str, str] = {}
        self.task_by_block: dict[str, str] = {}

    def get(self, task_id: str) -> Task:
        task = self.tasks.get(task_id)
        if task is None:
            raise InvalidConfigError(f"task not found: {task_id}")
        return task

    def list_tasks(self) -> list[Task]:
        return [self.tasks[t] for t in self.order]

    def create(
        self,
        *,
        title: str,
        description: Optional[str] = None,
        estimated_cycles: Optional[int] = None,
    ) -> Task:
        title = (title or "").strip()
        if not title:
            raise InvalidConfigError("task title must not be empty")
        _check_estimate(estimated_cycles, 0)
        task = Task(
            id=self._new_id("tsk"),
            title=title,
            description=(description or "").strip() or None,
            estimated_cycles=estimated_cycles,
            created_at=self._clock(),
        )
        self.tasks[task.id] = task
        self.order.append(task.id)
        return task

    def update(
        self,
        task_id: str,
        *,
        title: Optional[str] = None,
        description: Optional[str] = None,
        estimated_cycles: Optional[int] = None,
        status: Optional[TaskStatus] = None,
    ) -> Task:
        task = self.get(task_id)
        changes: dict = {}
        if title is not None:
            if not title.strip():
                raise InvalidConfigError("task title must not be empty")
            changes["title"] = title.strip()
        if description is not None:
            changes["description"] = description.strip() or None
        if estimated_cycles is not None:
            _check_estimate(estimated_cycles, task.completed_cycles)
            changes["estimated_cycles"] = estimated_cycles
        if status is not None:
            changes["status"] = status
        task = replace(task, **changes)
        self.tasks[task_id] = task
        return task

    def restore(self, task: Task, block_id: Optional[str] = None) -> None:
        """Puts back a previously saved task, appended in list order."""
        if task.id not in self.tasks:
            self.order.append(task.id)
        self.tasks[task.id] = task
        if block_id:
            self.assign(task.id, block_id)

    def delete(self, task_id: str) -> bool:
        if task_id not in self.tasks:
            return False
        self.detach_task(task_id)
        del self.tasks[task_id]
        self.order.remove(task_id)
        return True

    def assign(self, task_id: str, block_id: str) -> None:
        self.get(task_id)
        self.detach_task(task_id)
        self.detach_block(block_id)
        self.block_by_task[task_id] = block_id
        self.task_by_block[block_id] = task_id

    def detach_task(self, task_id: str) -> None:
        block_id = self.block_by_task.pop(task_id, None)
        if block_id is not None:
            self.task_by_block.pop(block_id, None)

    def detach_block(self, block_id: str) -> None:
        task_id = self.task_by_block.pop(block_id, None)
        if task_id is not None:
            self.block_by_task.pop(task_id, None)

    def start_on_block(self, task_id: str, block_id: str) -> Task:
        self.assign(task_id, block_id)
        task = self.get(task_id)
        if task.status is not TaskStatus.COMPLETED:
            task = replace(task, status=TaskStatus.IN_PROGRESS)
            self.tasks[task_id] = task
        return task

    def record_focus_cycle(self, task_id: str) -> None:
        task = self.tasks.get(task_id)
        if task is None:
            return
        completed = task.completed_cycles + 1
        if task.estimated_cycles is not None:
            completed = min(completed, task.estimated_cycles)
        self.tasks[task_id] = replace(task, completed_cycles=completed)

    def split(self, task_id: str, parts: int) -> list[Task]:
        """Children "<title> (i/n)"; the parent is deferred."""
        if isinstance(parts, bool) or not isinstance(parts, int) or parts < 2:
            raise InvalidConfigError("parts must be an integer >= 2")
        parent = self.get(task_id)
        per_part = (
            max(1, math.ceil(parent.estimated_cycles / parts)) if parent.estimated_cycles else None
        )
        children = [
            self.create(
                title=f"{parent.title} ({i}/{parts})",
                description=parent.description,
                estimated_cycles=per_part,
            )
            for i in range(1, parts + 1)
        ]
        self.detach_task(task_id)
        self.tasks[task_id] = replace(parent, status=TaskStatus.DEFERRED)
        return children

    def carry_over(self, task_id: str, from_block: Block, candidates: Sequence[Block]) -> str:
        """Moves the task to the earliest candidate block that carries no task."""
        self.get(task_id)
        for block in sorted(candidates, key=lambda b: (b.start_at, b.id)):
            if block.id == from_block.id:
                continue
            if block.id in self.task_by_block:
                continue
            self.assign(task_id, block.id)
            return block.id
        raise InvalidConfigError(f"no free block to carry task {task_id} over to")
