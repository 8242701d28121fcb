"""
Async evaluation scheduler.

A fixed pool of ``max_concurrent`` worker coroutines drains a
:class:`PriorityTaskQueue`. Queue mutations happen under one
``asyncio.Condition``; the evaluator call itself runs outside the lock and is
the only suspension point that can take real time. Results are written back to
the attached :class:`PopulationStore`.

Cancellation is queue-level only: a running evaluation cannot be preempted,
and a timeout produces a ``failed`` task carrying an ``EvaluationError`` of
kind ``"timeout"``.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import time
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Mapping

from evoprompt.logging.logger import LoggerProtocol, LogLevel, StdOutLogger

from .errors import EvaluationError, EvoPromptError, NotFoundError, QueueFullError, ValidationError
from .interfaces import Candidate, EvalOutcome, coerce_outcome
from .metrics import Metrics
from .queue import PriorityTaskQueue
from .task import EvaluationTask, Priority, TaskStatus

if TYPE_CHECKING:
    from .dispatcher import EvaluationDispatcher
    from .logging_utils import EventLogger
    from .population import PopulationStore

TaskDoneHook = Callable[[EvaluationTask], None]


@dataclass
class SchedulerConfig:
    max_concurrent: int = 5
    max_queue_size: int = 100
    enable_priorities: bool = True
    capacity_threshold: float = 0.8
    eval_timeout_seconds: float | None = 30.0

    def __post_init__(self) -> None:
        if self.max_concurrent < 1:
            raise ValidationError(f"max_concurrent must be >= 1, got {self.max_concurrent}")
        if self.max_queue_size < 1:
            raise ValidationError(f"max_queue_size must be >= 1, got {self.max_queue_size}")
        if not 0.0 < self.capacity_threshold <= 1.0:
            raise ValidationError(f"capacity_threshold must be in (0, 1], got {self.capacity_threshold}")
        if self.eval_timeout_seconds is not None and self.eval_timeout_seconds <= 0:
            raise ValidationError(f"eval_timeout_seconds must be positive, got {self.eval_timeout_seconds}")


@dataclass(frozen=True)
class SchedulerStatus:
    running: int
    pending: int
    submitted: int
    completed: int
    failed: int
    cancelled: int
    capacity: float
    at_capacity: bool
    throughput: float
    uptime: float
    pending_by_priority: Dict[str, int] = field(default_factory=dict)


class EvaluationScheduler:
    """
    Priority scheduler with bounded concurrency.

    Parameters:
        config: Concurrency, queue and timeout settings.
        population: Optional store. When attached, ``submit`` requires the
            candidate to exist and successful fitness is written back.
        dispatcher: Resolves string task-type evaluators.
        metrics: Shared run counters.
        on_task_done: Synchronous hook invoked after each task finishes.
    """

    def __init__(
        self,
        config: SchedulerConfig | None = None,
        *,
        population: PopulationStore | None = None,
        dispatcher: EvaluationDispatcher | None = None,
        metrics: Metrics | None = None,
        logger: LoggerProtocol | None = None,
        event_logger: EventLogger | None = None,
        on_task_done: TaskDoneHook | None = None,
    ) -> None:
        self.config = config or SchedulerConfig()
        self.population = population
        self.dispatcher = dispatcher
        self.metrics = metrics or Metrics()
        self.logger: LoggerProtocol = logger or StdOutLogger()
        self.event_logger = event_logger
        self.on_task_done = on_task_done

        self._queue = PriorityTaskQueue(enable_priorities=self.config.enable_priorities)
        self._cond = asyncio.Condition()
        self._tasks: Dict[str, EvaluationTask] = {}
        self._payloads: Dict[str, Candidate] = {}
        self._running: Dict[str, EvaluationTask] = {}
        self._done_events: Dict[str, asyncio.Event] = {}
        self._workers: List[asyncio.Task[None]] = []
        self._counter = itertools.count(1)
        self._stats = {"submitted": 0, "completed": 0, "failed": 0, "cancelled": 0}
        self._started_at: float | None = None
        self._stopping = False
        self._closed = False

    # ---------------------------------------------------------------- lifecycle

    @property
    def started(self) -> bool:
        return bool(self._workers)

    async def start(self) -> None:
        """Spawn the worker pool. Calling twice is a no-op."""
        if self._closed:
            raise EvoPromptError("scheduler has been stopped")
        if self._workers:
            return
        self._started_at = time.monotonic()
        self._workers = [
            asyncio.create_task(self._worker(index), name=f"evoprompt-worker-{index}")
            for index in range(self.config.max_concurrent)
        ]
        self.logger.log(f"Scheduler started with {self.config.max_concurrent} workers", LogLevel.DEBUG)

    async def stop(self, *, drain: bool = False) -> None:
        """
        Stop the worker pool.

        With ``drain=True`` pending tasks are evaluated first; otherwise they
        are cancelled. Running evaluations always finish.
        """
        if drain and self._workers:
            await self.join()
        async with self._cond:
            self._stopping = True
            self._closed = True
            while True:
                task = self._queue.dequeue()
                if task is None:
                    break
                self._finish_cancelled(task)
            self._cond.notify_all()
        if self._workers:
            await asyncio.gather(*self._workers)
            self._workers = []
        self.logger.log("Scheduler stopped", LogLevel.DEBUG)

    async def __aenter__(self) -> "EvaluationScheduler":
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.stop(drain=exc_type is None)

    # --------------------------------------------------------------- submission

    async def submit(
        self,
        candidate: Candidate | str,
        evaluator: Any,
        *,
        priority: Priority | str | None = None,
        metadata: Mapping[str, Any] | None = None,
        timeout_seconds: float | None = None,
    ) -> EvaluationTask:
        """
        Queue an evaluation of ``candidate``.

        ``candidate`` may be a :class:`Candidate` or, with a population
        attached, a candidate id. ``evaluator`` is an async callable taking
        the candidate, or a task-type tag resolved by the dispatcher.
        """
        if self._closed:
            raise EvoPromptError("scheduler has been stopped")
        resolved = self._resolve_for_submit(candidate)
        if isinstance(evaluator, str) and self.dispatcher is None:
            raise ValidationError(f"task-type evaluator {evaluator!r} needs a dispatcher")

        async with self._cond:
            if self._queue.size() >= self.config.max_queue_size:
                raise QueueFullError(f"queue is full ({self.config.max_queue_size} pending tasks)")
            task = EvaluationTask(
                id=f"task_{next(self._counter)}_{uuid.uuid4().hex[:8]}",
                candidate_id=resolved.id,
                evaluator=evaluator,
                priority=Priority.parse(priority),
                metadata=dict(metadata or {}),
                timeout_seconds=timeout_seconds,
            )
            self._tasks[task.id] = task
            self._payloads[task.id] = resolved
            self._done_events[task.id] = asyncio.Event()
            self._queue.enqueue(task)
            self._stats["submitted"] += 1
            self.metrics.record_submission()
            self._cond.notify()
        self.logger.log(
            f"Submitted {task.id} for {task.candidate_id} (priority={task.priority.value})", LogLevel.DEBUG
        )
        return task

    def _resolve_for_submit(self, candidate: Candidate | str) -> Candidate:
        if isinstance(candidate, Candidate):
            if self.population is not None and candidate.id not in self.population:
                raise NotFoundError("candidate", candidate.id)
            return candidate
        if self.population is None:
            raise ValidationError("submitting by candidate id requires an attached population")
        return self.population.get(candidate)

    async def cancel(self, task_id: str) -> EvaluationTask:
        """Cancel a task that has not started yet."""
        async with self._cond:
            task = self._queue.remove(task_id)
            if task is None:
                if task_id in self._tasks:
                    raise NotFoundError("pending task", task_id)
                raise NotFoundError("task", task_id)
            self._finish_cancelled(task)
            self._cond.notify_all()
        return task

    def _finish_cancelled(self, task: EvaluationTask) -> None:
        task.mark_cancelled()
        self._stats["cancelled"] += 1
        self.metrics.record_task_done(task.status.value, None)
        self._payloads.pop(task.id, None)
        self._done_events[task.id].set()

    # ------------------------------------------------------------------ lookups

    def get_task(self, task_id: str) -> EvaluationTask:
        try:
            return self._tasks[task_id]
        except KeyError:
            raise NotFoundError("task", task_id) from None

    def get_result(self, task_id: str) -> EvalOutcome | None:
        """
        Outcome of a finished task.

        Returns ``None`` while the task is pending or running, or if it was
        cancelled; ``get_task(task_id).status`` tells which.
        """
        task = self.get_task(task_id)
        if task.status in (TaskStatus.COMPLETED, TaskStatus.FAILED):
            return task.result
        return None

    async def wait_for(self, task_id: str, timeout: float | None = None) -> EvaluationTask:
        """Wait until ``task_id`` reaches a terminal state."""
        task = self.get_task(task_id)
        await asyncio.wait_for(self._done_events[task_id].wait(), timeout)
        return task

    async def join(self) -> None:
        """Wait until the queue is empty and no evaluation is running."""
        if not self._workers and not self._queue.empty():
            await self.start()
        async with self._cond:
            await self._cond.wait_for(lambda: self._queue.empty() and not self._running)

    def status(self) -> SchedulerStatus:
        uptime = time.monotonic() - self._started_at if self._started_at is not None else 0.0
        capacity = len(self._running) / self.config.max_concurrent
        return SchedulerStatus(
            running=len(self._running),
            pending=self._queue.size(),
            submitted=self._stats["submitted"],
            completed=self._stats["completed"],
            failed=self._stats["failed"],
            cancelled=self._stats["cancelled"],
            capacity=capacity,
            at_capacity=capacity >= self.config.capacity_threshold,
            throughput=self._stats["completed"] / uptime if uptime > 0 else 0.0,
            uptime=uptime,
            pending_by_priority=self._queue.size_by_level(),
        )

    # ------------------------------------------------------------------ workers

    async def _worker(self, index: int) -> None:
        while True:
            async with self._cond:
                await self._cond.wait_for(lambda: self._stopping or not self._queue.empty())
                if self._stopping:
                    return
                task = self._queue.dequeue()
                if task is None:
                    continue
                task.mark_running()
                self._running[task.id] = task
                self.metrics.update_concurrent_evals(len(self._running))
            await self._execute(task)

    async def _execute(self, task: EvaluationTask) -> None:
        candidate = self._payloads.get(task.id)
        if self.population is not None:
            candidate = self.population.find(task.candidate_id) or candidate
        timeout = task.timeout_seconds if task.timeout_seconds is not None else self.config.eval_timeout_seconds
        start = time.monotonic()
        try:
            raw = await asyncio.wait_for(self._invoke(task, candidate), timeout)
            outcome = coerce_outcome(raw, duration_s=time.monotonic() - start)
        except asyncio.TimeoutError:
            error = EvaluationError(f"evaluation timed out after {timeout}s", kind="timeout", task_id=task.id)
            outcome = EvalOutcome.failure(error, time.monotonic() - start)
        except asyncio.CancelledError:
            raise
        except EvaluationError as exc:
            outcome = EvalOutcome.failure(exc, time.monotonic() - start)
        except Exception as exc:
            error = EvaluationError(f"{type(exc).__name__}: {exc}", task_id=task.id)
            outcome = EvalOutcome.failure(error, time.monotonic() - start)

        async with self._cond:
            self._running.pop(task.id, None)
            self._payloads.pop(task.id, None)
            if outcome.ok:
                task.mark_completed(outcome)
                self._stats["completed"] += 1
                self._write_fitness(task, outcome)
            else:
                task.mark_failed(outcome.error or EvaluationError("evaluation failed"), outcome)
                self._stats["failed"] += 1
                self.logger.log(f"Task {task.id} failed: {task.error}", LogLevel.WARNING)
            self.metrics.record_task_done(
                task.status.value, task.duration_s, timed_out=bool(task.error and task.error.is_timeout)
            )
            self._done_events[task.id].set()
            self._cond.notify_all()

        if self.on_task_done is not None:
            try:
                self.on_task_done(task)
            except Exception as exc:
                self.logger.log(f"on_task_done hook failed for {task.id}: {exc}", LogLevel.WARNING)
        if self.event_logger is not None:
            try:
                await self.event_logger.log(
                    "task_done",
                    {
                        "task_id": task.id,
                        "candidate_id": task.candidate_id,
                        "status": task.status.value,
                        "priority": task.priority.value,
                        "fitness": task.result.fitness if task.result else None,
                        "error_kind": task.error.kind if task.error else None,
                        "duration_s": task.duration_s,
                    },
                )
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self.logger.log(f"Event log write failed for {task.id}: {exc}", LogLevel.WARNING)

    async def _invoke(self, task: EvaluationTask, candidate: Candidate | None) -> Any:
        if candidate is None:
            raise EvaluationError(f"candidate {task.candidate_id!r} is no longer available", task_id=task.id)
        if isinstance(task.evaluator, str):
            assert self.dispatcher is not None
            return await self.dispatcher.evaluate(candidate, task.evaluator, task.metadata.get("task"))
        result = task.evaluator(candidate)
        if inspect.isawaitable(result):
            result = await result
        return result

    def _write_fitness(self, task: EvaluationTask, outcome: EvalOutcome) -> None:
        if self.population is None or outcome.fitness is None:
            return
        try:
            self.population.update_fitness(task.candidate_id, outcome.fitness)
        except NotFoundError:
            # Candidate was removed while the task ran; the result stays on the task.
            self.logger.log(
                f"Candidate {task.candidate_id} left the population before {task.id} finished", LogLevel.WARNING
            )
