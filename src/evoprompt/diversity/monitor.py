"""Per-generation diversity history with trend and collapse detection."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import List, Tuple

import numpy as np

from evoprompt.errors import ValidationError

from .types import DiversityLevel, DiversityMetrics

TREND_SLOPE = 0.01


@dataclass(frozen=True)
class DiversityObservation:
    generation: int
    pairwise_diversity: float
    convergence_risk: float
    diversity_level: DiversityLevel
    recorded_at: float


class DiversityMonitor:
    """
    Tracks diversity across generations.

    The population counts as collapsed once pairwise diversity stays below
    ``critical_threshold`` for ``patience`` consecutive observations. The
    trend is the least-squares slope over the last ``trend_window`` points.
    """

    def __init__(
        self,
        *,
        critical_threshold: float = 0.15,
        warning_threshold: float = 0.30,
        trend_window: int = 5,
        patience: int = 3,
    ) -> None:
        if not 0.0 <= critical_threshold <= warning_threshold <= 1.0:
            raise ValidationError("thresholds must satisfy 0 <= critical_threshold <= warning_threshold <= 1")
        if trend_window < 2:
            raise ValidationError(f"trend_window must be >= 2, got {trend_window}")
        if patience < 1:
            raise ValidationError(f"patience must be >= 1, got {patience}")
        self.critical_threshold = critical_threshold
        self.warning_threshold = warning_threshold
        self.trend_window = trend_window
        self.patience = patience
        self._history: List[DiversityObservation] = []
        self._below_critical = 0

    @property
    def history(self) -> Tuple[DiversityObservation, ...]:
        return tuple(self._history)

    def record(self, generation: int, metrics: DiversityMetrics) -> DiversityObservation:
        observation = DiversityObservation(
            generation=generation,
            pairwise_diversity=metrics.pairwise_diversity,
            convergence_risk=metrics.convergence_risk,
            diversity_level=metrics.diversity_level,
            recorded_at=time.time(),
        )
        self._history.append(observation)
        if metrics.pairwise_diversity < self.critical_threshold:
            self._below_critical += 1
        else:
            self._below_critical = 0
        return observation

    @property
    def collapsed(self) -> bool:
        return self._below_critical >= self.patience

    @property
    def in_warning_zone(self) -> bool:
        if not self._history:
            return False
        return self._history[-1].pairwise_diversity < self.warning_threshold

    def slope(self) -> float | None:
        window = self._history[-self.trend_window :]
        if len(window) < 2:
            return None
        x = np.arange(len(window), dtype=float)
        y = np.array([obs.pairwise_diversity for obs in window], dtype=float)
        return float(np.polyfit(x, y, 1)[0])

    def trend(self) -> str:
        """``increasing``, ``decreasing``, ``stable`` or ``unknown`` (fewer than two points)."""
        slope = self.slope()
        if slope is None:
            return "unknown"
        if slope > TREND_SLOPE:
            return "increasing"
        if slope < -TREND_SLOPE:
            return "decreasing"
        return "stable"

    def reset(self) -> None:
        self._history.clear()
        self._below_critical = 0
