"""
Task-type routing for candidate evaluation.

``EvaluationDispatcher`` holds one handler per :class:`TaskType` plus a
generic fallback. Unregistered or unknown task types route to the fallback
rather than failing. Every call returns an :class:`EvalOutcome`; handler
exceptions are captured on the outcome so a batch always yields exactly one
result per input.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Sequence

from .errors import EvaluationError
from .interfaces import Candidate, EvalOutcome, Evaluator, EvaluatorResult, coerce_outcome

logger = logging.getLogger(__name__)

TaskHandler = Callable[[Candidate, Mapping[str, Any]], Awaitable[EvaluatorResult]]


class TaskType(str, Enum):
    CODE_GENERATION = "code_generation"
    REASONING = "reasoning"
    CLASSIFICATION = "classification"
    QUESTION_ANSWERING = "question_answering"
    SUMMARIZATION = "summarization"
    GENERIC = "generic"

    @classmethod
    def parse(cls, value: "TaskType | str | None") -> "TaskType":
        """Unknown tags map to ``GENERIC`` so they reach the fallback handler."""
        if value is None:
            return cls.GENERIC
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.GENERIC


class EvaluationDispatcher:
    """Registration table of task-type handlers with a generic fallback."""

    def __init__(
        self,
        fallback: TaskHandler,
        handlers: Mapping[TaskType | str, TaskHandler] | None = None,
        *,
        default_task: Mapping[str, Any] | None = None,
    ) -> None:
        if not callable(fallback):
            raise TypeError("fallback handler must be callable")
        self.fallback = fallback
        self.default_task = dict(default_task or {})
        self._handlers: Dict[TaskType, TaskHandler] = {}
        for task_type, handler in (handlers or {}).items():
            self.register(task_type, handler)

    def register(self, task_type: TaskType | str, handler: TaskHandler) -> None:
        parsed = TaskType.parse(task_type)
        if parsed is TaskType.GENERIC:
            self.fallback = handler
        else:
            self._handlers[parsed] = handler

    def unregister(self, task_type: TaskType | str) -> None:
        self._handlers.pop(TaskType.parse(task_type), None)

    def handler_for(self, task_type: TaskType | str | None) -> TaskHandler:
        parsed = TaskType.parse(task_type)
        handler = self._handlers.get(parsed)
        if handler is None:
            if parsed is not TaskType.GENERIC:
                logger.debug("No handler for %s, using generic evaluator", parsed.value)
            return self.fallback
        return handler

    def registered(self) -> List[TaskType]:
        return list(self._handlers)

    async def evaluate(
        self,
        candidate: Candidate,
        task_type: TaskType | str | None = None,
        task: Mapping[str, Any] | None = None,
    ) -> EvalOutcome:
        """Run the handler for ``task_type`` and normalize its result."""
        config = {**self.default_task, **(task or {})}
        resolved = task_type if task_type is not None else config.get("type")
        handler = self.handler_for(resolved)
        start = time.monotonic()
        try:
            raw = handler(candidate, config)
            if inspect.isawaitable(raw):
                raw = await raw
        except asyncio.CancelledError:
            raise
        except EvaluationError as exc:
            return EvalOutcome.failure(exc, time.monotonic() - start)
        except Exception as exc:
            logger.warning(
                "Task evaluation failed (type: %s, candidate: %s): %s",
                TaskType.parse(resolved).value,
                candidate.id,
                exc,
            )
            return EvalOutcome.failure(EvaluationError(f"{type(exc).__name__}: {exc}"), time.monotonic() - start)
        outcome = coerce_outcome(raw, duration_s=time.monotonic() - start)
        if outcome.ok:
            logger.debug(
                "Task evaluation completed (type: %s, fitness: %s)", TaskType.parse(resolved).value, outcome.fitness
            )
        return outcome

    async def evaluate_batch(
        self,
        candidates: Sequence[Candidate],
        task_type: TaskType | str | None = None,
        task: Mapping[str, Any] | None = None,
        *,
        parallelism: int = 5,
    ) -> List[EvalOutcome]:
        """Evaluate many candidates; the result list is index-aligned with the input."""
        semaphore = asyncio.Semaphore(max(parallelism, 1))

        async def _one(candidate: Candidate) -> EvalOutcome:
            async with semaphore:
                return await self.evaluate(candidate, task_type, task)

        outcomes = await asyncio.gather(*(_one(candidate) for candidate in candidates))
        successful = sum(1 for outcome in outcomes if outcome.ok)
        logger.info("Batch evaluation complete (%d/%d successful)", successful, len(outcomes))
        return list(outcomes)

    def bind(self, task_type: TaskType | str | None = None, task: Mapping[str, Any] | None = None) -> Evaluator:
        """Return a single-candidate evaluator usable as a scheduler task evaluator."""

        async def _evaluate(candidate: Candidate) -> EvalOutcome:
            return await self.evaluate(candidate, task_type, task)

        return _evaluate
