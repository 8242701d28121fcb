"""Callback protocol for observing evolution runs.

Callbacks are synchronous and observational. Every method is optional:

    class PrintGenerations:
        def on_generation_end(self, generation, statistics, report):
            print(f"gen {generation}: best={statistics.best_fitness}")

    orchestrator = Orchestrator(..., callbacks=[PrintGenerations()])
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Protocol, Sequence, runtime_checkable

if TYPE_CHECKING:
    from evoprompt.diversity.promoter import PromotionResult
    from evoprompt.diversity.types import DiversityReport
    from evoprompt.population import PopulationStatistics
    from evoprompt.task import EvaluationTask

logger = logging.getLogger(__name__)


@runtime_checkable
class EvolutionCallback(Protocol):
    """Hooks fired by ``Orchestrator`` as a run progresses."""

    def on_run_start(self, config: dict[str, Any], population_size: int) -> None:
        ...

    def on_generation_start(self, generation: int, population_size: int) -> None:
        ...

    def on_task_done(self, task: EvaluationTask) -> None:
        """Called once per finished evaluation task, completed or failed."""
        ...

    def on_diversity_analyzed(self, generation: int, report: DiversityReport) -> None:
        ...

    def on_promotion(self, generation: int, result: PromotionResult, applied: int) -> None:
        """
        Called after a promotion pass was written to the population.

        Args:
            generation: Generation the pass belongs to.
            result: Proposed replacements.
            applied: How many replacements were actually written.
        """
        ...

    def on_generation_end(
        self, generation: int, statistics: PopulationStatistics, report: DiversityReport | None
    ) -> None:
        ...

    def on_run_end(self, generations: int, best_fitness: float | None, stop_reason: str) -> None:
        ...


def notify_callbacks(callbacks: Sequence[Any] | None, method_name: str, **kwargs: Any) -> None:
    """Invoke ``method_name`` on every callback that defines it; failures are logged."""
    if not callbacks:
        return

    for callback in callbacks:
        method = getattr(callback, method_name, None)
        if method is not None:
            try:
                method(**kwargs)
            except Exception as e:
                logger.warning(f"Callback {callback} failed on {method_name}: {e}")
