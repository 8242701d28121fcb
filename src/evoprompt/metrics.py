"""
Run metrics for evoprompt.

Counts scheduler lifecycle events, evaluation latency and diversity
interventions across a run.
"""

from __future__ import annotations

import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass
class Metrics:
    """Counters shared by the scheduler, promoter and orchestrator."""

    # Scheduler lifecycle
    tasks_submitted: int = 0
    tasks_completed: int = 0
    tasks_failed: int = 0
    tasks_cancelled: int = 0
    tasks_timed_out: int = 0
    concurrent_evals_peak: int = 0
    eval_latency_sum: float = 0.0
    eval_latency_samples: list[float] = field(default_factory=list)

    # Diversity
    diversity_checks: int = 0
    diversity_by_level: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    promotions_total: int = 0
    promotions_by_strategy: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    candidates_injected: int = 0
    candidates_diversified: int = 0
    variant_fallbacks: int = 0

    # Generations
    generations_completed: int = 0
    generation_durations: list[float] = field(default_factory=list)
    _generation_started_at: float | None = None

    def record_submission(self) -> None:
        self.tasks_submitted += 1

    def record_task_done(self, status: str, duration: float | None, *, timed_out: bool = False) -> None:
        """Record a task reaching a terminal state."""
        if status == "completed":
            self.tasks_completed += 1
        elif status == "failed":
            self.tasks_failed += 1
            if timed_out:
                self.tasks_timed_out += 1
        elif status == "cancelled":
            self.tasks_cancelled += 1
        if duration is not None:
            self.eval_latency_sum += duration
            self.eval_latency_samples.append(duration)

    def update_concurrent_evals(self, current: int) -> None:
        if current > self.concurrent_evals_peak:
            self.concurrent_evals_peak = current

    def record_diversity(self, level: str) -> None:
        self.diversity_checks += 1
        self.diversity_by_level[level] += 1

    def record_promotion(self, strategy: str, injected: int, diversified: int, fallbacks: int = 0) -> None:
        self.promotions_total += 1
        self.promotions_by_strategy[strategy] += 1
        self.candidates_injected += injected
        self.candidates_diversified += diversified
        self.variant_fallbacks += fallbacks

    def start_generation(self) -> None:
        self._generation_started_at = time.time()

    def end_generation(self) -> None:
        if self._generation_started_at is not None:
            self.generation_durations.append(time.time() - self._generation_started_at)
            self._generation_started_at = None
        self.generations_completed += 1

    @property
    def eval_latency_mean(self) -> float:
        samples = len(self.eval_latency_samples)
        return self.eval_latency_sum / samples if samples else 0.0

    @property
    def eval_latency_p95(self) -> float:
        if not self.eval_latency_samples:
            return 0.0
        sorted_samples = sorted(self.eval_latency_samples)
        idx = int(len(sorted_samples) * 0.95)
        return sorted_samples[min(idx, len(sorted_samples) - 1)]

    @property
    def failure_rate(self) -> float:
        finished = self.tasks_completed + self.tasks_failed
        return self.tasks_failed / finished if finished else 0.0

    def snapshot(self) -> Dict[str, Any]:
        """Plain-dict view suitable for JSON event payloads."""
        return {
            "tasks_submitted": self.tasks_submitted,
            "tasks_completed": self.tasks_completed,
            "tasks_failed": self.tasks_failed,
            "tasks_cancelled": self.tasks_cancelled,
            "tasks_timed_out": self.tasks_timed_out,
            "concurrent_evals_peak": self.concurrent_evals_peak,
            "eval_latency_mean": round(self.eval_latency_mean, 4),
            "eval_latency_p95": round(self.eval_latency_p95, 4),
            "diversity_checks": self.diversity_checks,
            "diversity_by_level": dict(self.diversity_by_level),
            "promotions_total": self.promotions_total,
            "promotions_by_strategy": dict(self.promotions_by_strategy),
            "candidates_injected": self.candidates_injected,
            "candidates_diversified": self.candidates_diversified,
            "variant_fallbacks": self.variant_fallbacks,
            "generations_completed": self.generations_completed,
        }

    def format_summary(self) -> str:
        """Generate a human-readable metrics summary."""
        lines = [
            "=" * 60,
            "evoprompt run summary",
            "=" * 60,
            f"Tasks: submitted={self.tasks_submitted} completed={self.tasks_completed} "
            f"failed={self.tasks_failed} (timeouts={self.tasks_timed_out}) cancelled={self.tasks_cancelled}",
            f"Latency: mean={self.eval_latency_mean:.2f}s p95={self.eval_latency_p95:.2f}s "
            f"peak concurrency={self.concurrent_evals_peak}",
            f"Diversity checks: {self.diversity_checks} by level={dict(self.diversity_by_level)}",
            f"Promotions: {self.promotions_total} injected={self.candidates_injected} "
            f"diversified={self.candidates_diversified} fallbacks={self.variant_fallbacks}",
            f"Generations: {self.generations_completed}",
            "=" * 60,
        ]
        return "\n".join(lines)
