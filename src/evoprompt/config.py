"""
Central configuration knobs for evoprompt.

Defaults are conservative so a run works without tuning. Override values by
constructing ``Config`` with keyword arguments or via ``adaptive_config``.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from evoprompt.diversity.promoter import PromoterConfig, PromotionStrategy
from evoprompt.diversity.types import DiversityConfig, SimilarityStrategy
from evoprompt.errors import ValidationError
from evoprompt.logging.logger import LogLevel
from evoprompt.scheduler import SchedulerConfig


@dataclass(slots=True)
class Config:
    """Runtime parameters for scheduling, population size and diversity control."""

    # Scheduler
    max_concurrent: int = 5
    max_queue_size: int | None = None  # Auto-scaled from population_capacity if None
    enable_priorities: bool = True
    capacity_threshold: float = 0.8
    eval_timeout_seconds: float | None = 30.0

    # Population
    population_capacity: int | None = 50

    # Diversity
    diversity: DiversityConfig = field(default_factory=DiversityConfig)
    promoter: PromoterConfig = field(default_factory=PromoterConfig)
    analysis_strategy: SimilarityStrategy | str | None = None  # Defaults to diversity.similarity_strategy
    promotion_strategy: PromotionStrategy | str = PromotionStrategy.ALL
    novelty_k: int = 5
    archive_size: int = 50

    # Run control
    max_generations: int | None = 10
    target_quality: float | None = None
    max_optimization_time_seconds: float | None = None

    # Output
    log_level: str = "WARNING"
    event_log_path: str | None = None
    checkpoint_path: str | None = None
    seed: int | None = None

    def __post_init__(self) -> None:
        """Validate values and fill the ones left unset."""
        if self.max_concurrent < 1:
            raise ValidationError(f"max_concurrent must be >= 1, got {self.max_concurrent}")
        if self.population_capacity is not None and self.population_capacity < 1:
            raise ValidationError(f"population_capacity must be >= 1, got {self.population_capacity}")
        if self.novelty_k < 1:
            raise ValidationError(f"novelty_k must be >= 1, got {self.novelty_k}")
        if self.max_generations is not None and self.max_generations < 1:
            raise ValidationError(f"max_generations must be >= 1, got {self.max_generations}")

        if self.max_queue_size is None:
            # One full population per generation plus headroom for re-evaluations.
            self.max_queue_size = max(100, (self.population_capacity or 0) * 2)

        if self.analysis_strategy is None:
            self.analysis_strategy = self.diversity.similarity_strategy
        self.analysis_strategy = SimilarityStrategy.parse(self.analysis_strategy)
        self.promotion_strategy = PromotionStrategy.parse(self.promotion_strategy)

        try:
            LogLevel.parse(self.log_level)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

    def scheduler_config(self) -> SchedulerConfig:
        return SchedulerConfig(
            max_concurrent=self.max_concurrent,
            max_queue_size=self.max_queue_size or 100,
            enable_priorities=self.enable_priorities,
            capacity_threshold=self.capacity_threshold,
            eval_timeout_seconds=self.eval_timeout_seconds,
        )


DEFAULT_CONFIG = Config()


def adaptive_config(population_size: int, *, base_config: Config | None = None) -> Config:
    """
    Scale concurrency and queue size with the population size.

    Examples:
        >>> adaptive_config(8).max_concurrent
        4
        >>> adaptive_config(60).max_concurrent
        16
    """
    if population_size < 1:
        raise ValidationError(f"population_size must be >= 1, got {population_size}")
    config = base_config or Config()

    if population_size < 10:
        config.max_concurrent = 4
    elif population_size < 50:
        config.max_concurrent = 8
    elif population_size < 200:
        config.max_concurrent = 16
    else:
        config.max_concurrent = 32

    config.population_capacity = max(population_size, config.population_capacity or 0)
    config.max_queue_size = max(100, config.population_capacity * 2)
    return config
