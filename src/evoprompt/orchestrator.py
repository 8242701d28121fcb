"""
Generation loop tying the scheduler, population and diversity layers together.

Each generation evaluates the unevaluated members through an
``EvaluationScheduler``, analyzes an immutable snapshot with the
``DiversityEngine``, lets the ``DiversityPromoter`` replace members when
diversity is too low, and then advances the generation counter. All run state
lives on the ``Orchestrator`` instance; nothing is process-global.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Sequence

from evoprompt.logging.logger import LoggerProtocol, LogLevel

from .callbacks import notify_callbacks
from .config import Config
from .diversity.engine import DiversityEngine
from .diversity.monitor import DiversityMonitor
from .diversity.novelty import NoveltyArchive
from .diversity.promoter import DiversityPromoter, PromotionResult, apply_promotion
from .diversity.types import DiversityReport
from .errors import QueueFullError, ValidationError
from .interfaces import Candidate, EmbeddingProvider, TraceProvider, VariantGenerator
from .logging_utils import EventLogger, build_logger
from .metrics import Metrics
from .population import PopulationStatistics, PopulationStore
from .scheduler import EvaluationScheduler
from .stop_condition import MaxGenerationsStopper, ScoreThresholdStopper, StopperProtocol, TimeoutStopCondition
from .task import EvaluationTask, Priority, TaskStatus


@dataclass
class RunState:
    """What stoppers see: completed generations and the best fitness so far."""

    generation: int = 0
    best_fitness: float | None = None
    started_at: float = field(default_factory=time.time)
    last_report: DiversityReport | None = None
    stop_reason: str | None = None

    @property
    def elapsed(self) -> float:
        return time.time() - self.started_at


@dataclass(frozen=True)
class GenerationSummary:
    generation: int
    evaluated: int
    failed: int
    statistics: PopulationStatistics
    report: DiversityReport | None = None
    promotion: PromotionResult | None = None
    replacements_applied: int = 0
    duration_s: float = 0.0


@dataclass(frozen=True)
class RunResult:
    generations: List[GenerationSummary]
    best: Candidate | None
    stop_reason: str
    metrics: Dict[str, Any]

    @property
    def best_fitness(self) -> float | None:
        return self.best.fitness if self.best is not None else None


class Orchestrator:
    """
    Drives evaluate, analyze, promote generations over one population.

    ``evaluator`` is either an async callable taking a ``Candidate`` or a
    task-type tag resolved by ``dispatcher``; ``task`` is forwarded to the
    dispatcher as the task payload.
    """

    def __init__(
        self,
        config: Config | None = None,
        *,
        evaluator: Any,
        population: PopulationStore | None = None,
        dispatcher: Any = None,
        task: Dict[str, Any] | None = None,
        embedding_provider: EmbeddingProvider | None = None,
        trace_provider: TraceProvider | None = None,
        variant_generator: VariantGenerator | None = None,
        engine: DiversityEngine | None = None,
        promoter: DiversityPromoter | None = None,
        monitor: DiversityMonitor | None = None,
        archive: NoveltyArchive | None = None,
        metrics: Metrics | None = None,
        logger: LoggerProtocol | None = None,
        event_logger: EventLogger | None = None,
        callbacks: Sequence[Any] | None = None,
    ) -> None:
        self.config = config or Config()
        if isinstance(evaluator, str) and dispatcher is None:
            raise ValidationError(f"task-type evaluator {evaluator!r} needs a dispatcher")
        self.evaluator = evaluator
        self.dispatcher = dispatcher
        self.task = task
        self.population = population or PopulationStore(self.config.population_capacity)
        self.metrics = metrics or Metrics()
        self.logger: LoggerProtocol = logger or build_logger(self.config.log_level)
        if event_logger is None and self.config.event_log_path:
            event_logger = EventLogger(self.config.event_log_path)
        self.event_logger = event_logger
        self.engine = engine or DiversityEngine(
            self.config.diversity,
            embedding_provider=embedding_provider,
            trace_provider=trace_provider,
            seed=self.config.seed,
        )
        self.promoter = promoter or DiversityPromoter(
            self.config.promoter,
            diversity_config=self.config.diversity,
            variant_generator=variant_generator,
            logger=self.logger,
            metrics=self.metrics,
        )
        critical, warning = self.config.diversity.level_thresholds[:2]
        self.monitor = monitor or DiversityMonitor(critical_threshold=critical, warning_threshold=warning)
        self.archive = archive or NoveltyArchive(self.config.archive_size, seed=self.config.seed)
        self.callbacks = list(callbacks or [])
        self.state = RunState()
        self.history: List[GenerationSummary] = []

    # ------------------------------------------------------------------ seeding

    def seed(self, prompts: Iterable[str]) -> List[Candidate]:
        """Insert seed prompts into the current generation."""
        return [self.population.add(prompt, metadata={"origin": "seed"}) for prompt in prompts]

    # -------------------------------------------------------------- generation

    def _scheduler(self) -> EvaluationScheduler:
        return EvaluationScheduler(
            self.config.scheduler_config(),
            population=self.population,
            dispatcher=self.dispatcher,
            metrics=self.metrics,
            logger=self.logger,
            event_logger=self.event_logger,
            on_task_done=self._on_task_done,
        )

    def _on_task_done(self, task: EvaluationTask) -> None:
        notify_callbacks(self.callbacks, "on_task_done", task=task)

    def _submission_priority(self, candidate: Candidate) -> Priority:
        # Members injected by diversity promotion jump ahead of regular offspring.
        if "priority" in candidate.metadata:
            return Priority.parse(candidate.metadata["priority"])
        if candidate.metadata.get("origin") in ("diversity_injection", "targeted_diversification"):
            return Priority.HIGH
        return Priority.NORMAL

    async def evaluate_pending(self) -> List[EvaluationTask]:
        """Evaluate every unevaluated member; fitness lands in the population."""
        pending = self.population.unevaluated_candidates()
        tasks: List[EvaluationTask] = []
        if not pending:
            return tasks
        metadata = {"task": self.task} if self.task is not None else None
        async with self._scheduler() as scheduler:
            for candidate in pending:
                while True:
                    try:
                        task = await scheduler.submit(
                            candidate,
                            self.evaluator,
                            priority=self._submission_priority(candidate),
                            metadata=metadata,
                        )
                        break
                    except QueueFullError:
                        await scheduler.join()
                tasks.append(task)
        return tasks

    async def run_generation(self) -> GenerationSummary:
        generation = self.population.generation
        started = time.time()
        self.metrics.start_generation()
        notify_callbacks(
            self.callbacks, "on_generation_start", generation=generation, population_size=len(self.population)
        )
        await self._event("generation_start", {"generation": generation, "population_size": len(self.population)})

        tasks = await self.evaluate_pending()
        failed = sum(1 for task in tasks if task.status is TaskStatus.FAILED)

        snapshot = self.population.snapshot()
        report: DiversityReport | None = None
        promotion: PromotionResult | None = None
        applied = 0
        if len(snapshot):
            report = await self.engine.analyze(
                snapshot.candidates,
                promoter_config=self.config.promoter,
                novelty_k=self.config.novelty_k,
                strategy=self.config.analysis_strategy,
            )
            self.metrics.record_diversity(report.metrics.diversity_level.value)
            self.monitor.record(generation, report.metrics)
            self.archive.update(snapshot.candidates)
            notify_callbacks(self.callbacks, "on_diversity_analyzed", generation=generation, report=report)
            await self._event(
                "diversity",
                {
                    "generation": generation,
                    **report.metrics.to_dict(),
                    "recommended_action": report.recommended_action,
                    "failed_pairs": len(report.matrix.failed_pairs),
                },
            )
            self.logger.log(
                f"Generation {generation}: diversity={report.metrics.pairwise_diversity:.3f} "
                f"level={report.metrics.diversity_level.value} action={report.recommended_action}",
                LogLevel.INFO,
            )

            if report.needs_promotion:
                promotion = await self.promoter.promote(
                    snapshot.candidates,
                    report.metrics,
                    self.config.promotion_strategy,
                    matrix=report.matrix,
                )
                applied = apply_promotion(self.population, promotion, self.logger)
                notify_callbacks(
                    self.callbacks, "on_promotion", generation=generation, result=promotion, applied=applied
                )
                await self._event(
                    "promotion",
                    {
                        "generation": generation,
                        "strategy": promotion.strategy.value,
                        "replaced": list(promotion.replaced_ids),
                        "applied": applied,
                        "mutation_rate": promotion.mutation_rate,
                        **{k: v for k, v in promotion.metadata.items() if isinstance(v, (str, int, float, bool))},
                    },
                )

        statistics = self.population.statistics()
        self.population.next_generation()
        self.metrics.end_generation()
        if self.config.checkpoint_path:
            self.population.save(self.config.checkpoint_path)

        self.state.generation += 1
        self.state.best_fitness = statistics.best_fitness
        self.state.last_report = report
        summary = GenerationSummary(
            generation=generation,
            evaluated=len(tasks) - failed,
            failed=failed,
            statistics=statistics,
            report=report,
            promotion=promotion,
            replacements_applied=applied,
            duration_s=time.time() - started,
        )
        self.history.append(summary)
        notify_callbacks(
            self.callbacks, "on_generation_end", generation=generation, statistics=statistics, report=report
        )
        await self._event(
            "generation_end",
            {
                "generation": generation,
                "evaluated": summary.evaluated,
                "failed": failed,
                "best_fitness": statistics.best_fitness,
                "avg_fitness": statistics.avg_fitness,
                "replacements_applied": applied,
                "duration_s": summary.duration_s,
            },
        )
        return summary

    # --------------------------------------------------------------------- run

    def default_stoppers(self) -> List[StopperProtocol]:
        stoppers: List[StopperProtocol] = []
        if self.config.max_generations is not None:
            stoppers.append(MaxGenerationsStopper(self.config.max_generations))
        if self.config.target_quality is not None:
            stoppers.append(ScoreThresholdStopper(self.config.target_quality))
        if self.config.max_optimization_time_seconds is not None:
            stoppers.append(TimeoutStopCondition(self.config.max_optimization_time_seconds))
        return stoppers

    async def run(
        self,
        seeds: Iterable[str] | None = None,
        *,
        stoppers: Sequence[StopperProtocol] | None = None,
    ) -> RunResult:
        """
        Run generations until any stopper fires.

        Without explicit ``stoppers`` the run stops on ``max_generations``,
        ``target_quality`` or ``max_optimization_time_seconds`` from the config.
        """
        if seeds is not None:
            self.seed(seeds)
        if not len(self.population):
            raise ValidationError("cannot run with an empty population; pass seeds or a populated store")
        active = list(stoppers) if stoppers is not None else self.default_stoppers()
        if not active:
            raise ValidationError("no stop condition configured")

        self.state = RunState(generation=0)
        notify_callbacks(
            self.callbacks,
            "on_run_start",
            config={"max_concurrent": self.config.max_concurrent, "max_generations": self.config.max_generations},
            population_size=len(self.population),
        )

        stop_reason = "completed"
        while True:
            await self.run_generation()
            fired = next((stopper for stopper in active if stopper(self.state)), None)
            if fired is not None:
                stop_reason = type(fired).__name__
                break

        self.state.stop_reason = stop_reason
        best = self.population.best_candidate()
        self.logger.log(
            f"Run finished after {self.state.generation} generations ({stop_reason}); "
            f"best fitness={best.fitness if best else None}",
            LogLevel.INFO,
        )
        self.logger.log(self.metrics.format_summary(), LogLevel.DEBUG)
        notify_callbacks(
            self.callbacks,
            "on_run_end",
            generations=self.state.generation,
            best_fitness=best.fitness if best else None,
            stop_reason=stop_reason,
        )
        return RunResult(
            generations=list(self.history),
            best=best,
            stop_reason=stop_reason,
            metrics=self.metrics.snapshot(),
        )

    async def _event(self, event_type: str, payload: Dict[str, Any]) -> None:
        if self.event_logger is not None:
            await self.event_logger.log(event_type, payload)
