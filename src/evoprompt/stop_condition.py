"""
Stop conditions for evolution runs.

A stopper is called with the orchestrator's ``RunState`` after every
generation and returns True when the run should end.
"""

from __future__ import annotations

import time
from typing import Any, Callable, Protocol, runtime_checkable

from evoprompt.diversity.monitor import DiversityMonitor
from evoprompt.errors import ValidationError


@runtime_checkable
class StopperProtocol(Protocol):
    def __call__(self, run_state: Any) -> bool:
        """
        Check if the run should stop.

        Args:
            run_state: Exposes ``generation`` (completed generations) and
                ``best_fitness`` (None before any evaluation succeeded).

        Returns:
            True if the run should stop, False otherwise.
        """
        ...


class MaxGenerationsStopper(StopperProtocol):
    def __init__(self, max_generations: int):
        if max_generations < 1:
            raise ValidationError(f"max_generations must be >= 1, got {max_generations}")
        self.max_generations = max_generations

    def __call__(self, run_state) -> bool:
        return run_state.generation >= self.max_generations


class TimeoutStopCondition(StopperProtocol):
    # stops once timeout_seconds have elapsed since construction

    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        self.start_time = time.time()

    def __call__(self, run_state) -> bool:
        return time.time() - self.start_time > self.timeout_seconds


class ScoreThresholdStopper(StopperProtocol):
    """Stops when the best fitness reaches ``threshold``; ``score_getter`` overrides the source."""

    def __init__(self, threshold: float, score_getter: Callable[[], float | None] | None = None):
        self.threshold = threshold
        self.score_getter = score_getter

    def __call__(self, run_state) -> bool:
        score = self.score_getter() if self.score_getter is not None else run_state.best_fitness
        return score is not None and score >= self.threshold


class NoImprovementStopper(StopperProtocol):
    # stops after a number of generations without a better best fitness

    def __init__(self, max_generations_without_improvement: int, min_delta: float = 0.0):
        if max_generations_without_improvement < 1:
            raise ValidationError("max_generations_without_improvement must be >= 1")
        self.max_generations_without_improvement = max_generations_without_improvement
        self.min_delta = min_delta
        self.best_score = float("-inf")
        self.generations_without_improvement = 0

    def __call__(self, run_state) -> bool:
        current = run_state.best_fitness
        if current is not None and current > self.best_score + self.min_delta:
            self.best_score = current
            self.generations_without_improvement = 0
        else:
            self.generations_without_improvement += 1
        return self.generations_without_improvement >= self.max_generations_without_improvement

    def reset(self):
        self.generations_without_improvement = 0


class DiversityCollapseStopper(StopperProtocol):
    """Stops once ``monitor`` reports a collapsed population."""

    def __init__(self, monitor: DiversityMonitor):
        self.monitor = monitor

    def __call__(self, run_state) -> bool:
        return self.monitor.collapsed


class CompositeStopper(StopperProtocol):
    # combines stoppers with "any" or "all" semantics

    def __init__(self, *stoppers: Callable[[Any], bool], mode: str = "any"):
        if mode not in ("any", "all"):
            raise ValidationError(f"Unknown mode: {mode}")
        self.stoppers = stoppers
        self.mode = mode

    def __call__(self, run_state) -> bool:
        if self.mode == "any":
            return any(stopper(run_state) for stopper in self.stoppers)
        return all(stopper(run_state) for stopper in self.stoppers)
