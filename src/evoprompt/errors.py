"""
Error taxonomy for evoprompt.

Hard failures for a whole call are limited to caller configuration mistakes
(unknown strategy names, promoting an empty population) and lookups of ids
that do not exist. Per-item failures (a single evaluator call, a single
similarity pair, a single variant) are captured on the item and never raised.
"""

from __future__ import annotations


class EvoPromptError(Exception):
    """Base class for every error raised by evoprompt."""


class ValidationError(EvoPromptError, ValueError):
    """Malformed candidate, task or configuration."""


class NotFoundError(EvoPromptError, LookupError):
    """Unknown task or candidate id."""

    def __init__(self, kind: str, key: str) -> None:
        super().__init__(f"{kind} not found: {key!r}")
        self.kind = kind
        self.key = key


class EmptyCollectionError(EvoPromptError, ValueError):
    """Operation requires at least one member."""


class UnknownStrategyError(EvoPromptError, ValueError):
    """Unrecognized similarity or promotion strategy name."""

    def __init__(self, kind: str, name: object) -> None:
        super().__init__(f"unknown {kind} strategy: {name!r}")
        self.kind = kind
        self.name = name


class QueueFullError(EvoPromptError):
    """Scheduler queue reached ``max_queue_size``."""


class InvalidTransitionError(EvoPromptError):
    """Attempt to move a task out of a terminal state."""


class CollaboratorUnavailableError(EvoPromptError):
    """A strategy needs an external provider that was not configured."""


class EvaluationError(EvoPromptError):
    """
    Evaluator failure attached to a specific task.

    ``kind`` is one of ``"error"``, ``"timeout"`` or ``"invalid_fitness"``.
    Instances are stored on tasks and outcomes; the scheduler never raises them.
    """

    def __init__(self, message: str, *, kind: str = "error", task_id: str | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.task_id = task_id

    @property
    def is_timeout(self) -> bool:
        return self.kind == "timeout"

    def __repr__(self) -> str:
        return f"EvaluationError({str(self)!r}, kind={self.kind!r}, task_id={self.task_id!r})"
