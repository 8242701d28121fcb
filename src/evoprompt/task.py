"""Evaluation task: the unit of scheduled work and its lifecycle."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict

from .errors import EvaluationError, InvalidTransitionError, ValidationError
from .interfaces import EvalOutcome


class Priority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @classmethod
    def parse(cls, value: "Priority | str | None") -> "Priority":
        if value is None:
            return cls.NORMAL
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError as exc:
            raise ValidationError(f"unknown priority {value!r}") from exc


# Dispatch order: strictly priority-major.
PRIORITY_ORDER: tuple[Priority, ...] = (Priority.CRITICAL, Priority.HIGH, Priority.NORMAL, Priority.LOW)


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)


@dataclass
class EvaluationTask:
    """
    A scheduled evaluation of one candidate.

    ``evaluator`` is opaque to the queue: either an async callable taking the
    candidate, or a task-type tag resolved by an ``EvaluationDispatcher``.
    States move ``pending -> running -> {completed, failed, cancelled}``;
    ``pending -> cancelled`` is also allowed. Terminal states are final.
    """

    id: str
    candidate_id: str
    evaluator: Any
    priority: Priority = Priority.NORMAL
    metadata: Dict[str, Any] = field(default_factory=dict)
    timeout_seconds: float | None = None
    status: TaskStatus = TaskStatus.PENDING
    submitted_at: float = field(default_factory=time.monotonic)
    started_at: float | None = None
    completed_at: float | None = None
    result: EvalOutcome | None = None
    error: EvaluationError | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.id, str) or not self.id:
            raise ValidationError("task id must be a non-empty string")
        if not isinstance(self.candidate_id, str) or not self.candidate_id:
            raise ValidationError("task candidate_id must be a non-empty string")
        if self.evaluator is None or not (callable(self.evaluator) or isinstance(self.evaluator, str)):
            raise ValidationError("task evaluator must be a callable or a task-type tag")
        self.priority = Priority.parse(self.priority)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def duration_s(self) -> float | None:
        if self.started_at is None or self.completed_at is None:
            return None
        return self.completed_at - self.started_at

    def _require(self, *allowed: TaskStatus) -> None:
        if self.status not in allowed:
            raise InvalidTransitionError(
                f"task {self.id} cannot leave {self.status.value} (allowed from: {[s.value for s in allowed]})"
            )

    def mark_running(self) -> None:
        self._require(TaskStatus.PENDING)
        self.status = TaskStatus.RUNNING
        self.started_at = time.monotonic()

    def mark_completed(self, outcome: EvalOutcome) -> None:
        self._require(TaskStatus.RUNNING)
        self.status = TaskStatus.COMPLETED
        self.result = outcome
        self.completed_at = time.monotonic()

    def mark_failed(self, error: EvaluationError, outcome: EvalOutcome | None = None) -> None:
        self._require(TaskStatus.RUNNING)
        if error.task_id is None:
            error.task_id = self.id
        self.status = TaskStatus.FAILED
        self.error = error
        self.result = outcome or EvalOutcome.failure(error)
        self.completed_at = time.monotonic()

    def mark_cancelled(self) -> None:
        self._require(TaskStatus.PENDING)
        self.status = TaskStatus.CANCELLED
        self.completed_at = time.monotonic()
