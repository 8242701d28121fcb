"""
Multi-level priority queue for evaluation tasks.

Four FIFO sub-queues (critical, high, normal, low) are drained strictly in
that order. A sustained stream of critical/high work can starve normal/low
work indefinitely; there is no aging or fairness across levels.

The queue itself is not synchronized. ``EvaluationScheduler`` owns it and
serializes every mutation behind its condition lock.
"""

from __future__ import annotations

from collections import deque
from typing import Deque, Dict, Iterator, List

from .errors import ValidationError
from .task import PRIORITY_ORDER, EvaluationTask, Priority


class PriorityTaskQueue:
    """Priority-major / FIFO-minor task queue with an id -> level index."""

    def __init__(self, *, enable_priorities: bool = True) -> None:
        self.enable_priorities = enable_priorities
        self._levels: Dict[Priority, Deque[EvaluationTask]] = {level: deque() for level in PRIORITY_ORDER}
        self._index: Dict[str, Priority] = {}

    def _level_for(self, task: EvaluationTask) -> Priority:
        # With priorities disabled everything routes to NORMAL.
        return task.priority if self.enable_priorities else Priority.NORMAL

    def enqueue(self, task: EvaluationTask) -> None:
        """Append to the tail of the task's level. Raises ``ValidationError`` for a queued id."""
        if task.id in self._index:
            raise ValidationError(f"task {task.id!r} is already queued")
        level = self._level_for(task)
        self._levels[level].append(task)
        self._index[task.id] = level

    def dequeue(self) -> EvaluationTask | None:
        """Pop the head of the highest non-empty level, or ``None`` when empty."""
        for level in PRIORITY_ORDER:
            bucket = self._levels[level]
            if bucket:
                task = bucket.popleft()
                self._index.pop(task.id, None)
                return task
        return None

    def dequeue_many(self, limit: int) -> List[EvaluationTask]:
        taken: List[EvaluationTask] = []
        while len(taken) < limit:
            task = self.dequeue()
            if task is None:
                break
            taken.append(task)
        return taken

    def peek(self) -> EvaluationTask | None:
        for level in PRIORITY_ORDER:
            bucket = self._levels[level]
            if bucket:
                return bucket[0]
        return None

    def remove(self, task_id: str) -> EvaluationTask | None:
        """
        Remove a pending task by id.

        Returns the removed task, or ``None`` if the id is not queued; the
        queue is left untouched in that case.
        """
        level = self._index.get(task_id)
        if level is None:
            return None
        bucket = self._levels[level]
        for position, task in enumerate(bucket):
            if task.id == task_id:
                del bucket[position]
                del self._index[task_id]
                return task
        # Index out of sync with the level; drop the stale entry.
        del self._index[task_id]
        return None

    def contains(self, task_id: str) -> bool:
        return task_id in self._index

    def get(self, task_id: str) -> EvaluationTask | None:
        level = self._index.get(task_id)
        if level is None:
            return None
        return next((task for task in self._levels[level] if task.id == task_id), None)

    def size(self) -> int:
        return sum(len(bucket) for bucket in self._levels.values())

    def size_by_level(self) -> Dict[str, int]:
        return {level.value: len(self._levels[level]) for level in PRIORITY_ORDER}

    def empty(self) -> bool:
        return self.size() == 0

    def __len__(self) -> int:
        return self.size()

    def __contains__(self, task_id: object) -> bool:
        return isinstance(task_id, str) and self.contains(task_id)

    def __iter__(self) -> Iterator[EvaluationTask]:
        """Iterate pending tasks in dispatch order without consuming them."""
        for level in PRIORITY_ORDER:
            yield from list(self._levels[level])
