"""Data types shared by the diversity engine, promoter and monitor."""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Sequence, Tuple

from evoprompt.errors import NotFoundError, UnknownStrategyError, ValidationError


class SimilarityStrategy(str, Enum):
    TEXT = "text"
    STRUCTURAL = "structural"
    SEMANTIC = "semantic"
    BEHAVIORAL = "behavioral"
    COMPOSITE = "composite"

    @classmethod
    def parse(cls, value: "SimilarityStrategy | str") -> "SimilarityStrategy":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise UnknownStrategyError("similarity", value) from None


class DiversityLevel(str, Enum):
    CRITICAL = "critical"
    LOW = "low"
    MODERATE = "moderate"
    HEALTHY = "healthy"
    EXCELLENT = "excellent"

    @property
    def rank(self) -> int:
        """0 for critical up to 4 for excellent."""
        return _LEVEL_ORDER.index(self)

    @classmethod
    def worst(cls, *levels: "DiversityLevel") -> "DiversityLevel":
        return min(levels, key=lambda level: level.rank)


_LEVEL_ORDER: Tuple[DiversityLevel, ...] = (
    DiversityLevel.CRITICAL,
    DiversityLevel.LOW,
    DiversityLevel.MODERATE,
    DiversityLevel.HEALTHY,
    DiversityLevel.EXCELLENT,
)

DEFAULT_COMPOSITE_WEIGHTS: Mapping[str, float] = MappingProxyType(
    {"text": 0.4, "structural": 0.2, "semantic": 0.25, "behavioral": 0.15}
)


@dataclass(frozen=True)
class DiversityConfig:
    """
    Thresholds and strategy selection for diversity analysis.

    ``level_thresholds`` are the pairwise-diversity cut points below which a
    population is critical, low, moderate and healthy (ascending).
    ``risk_thresholds`` are the convergence-risk cut points at or above which
    it is critical, low, moderate and healthy (descending). The reported level
    is the worse of the two classifications.
    """

    similarity_strategy: SimilarityStrategy = SimilarityStrategy.TEXT
    similarity_threshold: float = 0.85
    min_diversity: float = 0.3
    diversity_promotion_threshold: float = 0.25
    novelty_weight: float = 0.2
    enable_novelty_rewards: bool = True
    composite_weights: Mapping[str, float] = field(default_factory=lambda: dict(DEFAULT_COMPOSITE_WEIGHTS))
    level_thresholds: Tuple[float, float, float, float] = (0.15, 0.30, 0.50, 0.70)
    risk_thresholds: Tuple[float, float, float, float] = (0.85, 0.70, 0.55, 0.40)
    high_risk_threshold: float = 0.7
    novelty_sample_size: int = 64

    def __post_init__(self) -> None:
        object.__setattr__(self, "similarity_strategy", SimilarityStrategy.parse(self.similarity_strategy))
        for name in ("similarity_threshold", "min_diversity", "diversity_promotion_threshold", "novelty_weight"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValidationError(f"{name} must be in [0, 1], got {value}")
        if self.similarity_threshold == 0.0:
            raise ValidationError("similarity_threshold must be greater than 0")
        if self.novelty_sample_size < 1:
            raise ValidationError(f"novelty_sample_size must be >= 1, got {self.novelty_sample_size}")

        levels = tuple(float(v) for v in self.level_thresholds)
        if len(levels) != 4 or any(b <= a for a, b in zip(levels, levels[1:])) or not 0.0 <= levels[0] <= levels[-1] <= 1.0:
            raise ValidationError(f"level_thresholds must be 4 ascending values in [0, 1], got {self.level_thresholds}")
        risks = tuple(float(v) for v in self.risk_thresholds)
        if len(risks) != 4 or any(b >= a for a, b in zip(risks, risks[1:])) or not 0.0 <= risks[-1] <= risks[0] <= 1.0:
            raise ValidationError(f"risk_thresholds must be 4 descending values in [0, 1], got {self.risk_thresholds}")
        object.__setattr__(self, "level_thresholds", levels)
        object.__setattr__(self, "risk_thresholds", risks)

        weights: Dict[str, float] = {}
        for name, weight in dict(self.composite_weights).items():
            strategy = SimilarityStrategy.parse(name)
            if strategy is SimilarityStrategy.COMPOSITE:
                raise ValidationError("composite_weights cannot reference the composite strategy")
            if weight < 0 or not math.isfinite(weight):
                raise ValidationError(f"composite weight for {name} must be a non-negative number, got {weight}")
            weights[strategy.value] = float(weight)
        if not weights or sum(weights.values()) <= 0:
            raise ValidationError("composite_weights must contain at least one positive weight")
        object.__setattr__(self, "composite_weights", MappingProxyType(weights))


@dataclass(frozen=True)
class SimilarityResult:
    """Pairwise similarity under one strategy; 1.0 means identical."""

    a_id: str
    b_id: str
    score: float
    strategy: SimilarityStrategy
    components: Mapping[str, Any] = field(default_factory=dict)
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class FailedPair:
    a_id: str
    b_id: str
    reason: str


class SimilarityMatrix:
    """
    All unordered pairwise scores for one population snapshot.

    Immutable once built. Pairs whose strategy failed are excluded from
    ``scores`` and listed in ``failed_pairs``.
    """

    __slots__ = ("_ids", "_texts", "_position", "_scores", "strategy", "computed_at", "failed_pairs", "metadata")

    def __init__(
        self,
        ids: Sequence[str],
        scores: Mapping[Tuple[str, str], float],
        strategy: SimilarityStrategy,
        *,
        texts: Sequence[str] | None = None,
        failed_pairs: Sequence[FailedPair] = (),
        computed_at: float | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> None:
        if len(set(ids)) != len(ids):
            raise ValidationError("similarity matrix ids must be unique")
        if texts is not None and len(texts) != len(ids):
            raise ValidationError("texts must align with ids")
        self._ids: Tuple[str, ...] = tuple(ids)
        self._texts: Tuple[str, ...] | None = tuple(texts) if texts is not None else None
        self._position = {candidate_id: index for index, candidate_id in enumerate(self._ids)}
        normalized: Dict[Tuple[str, str], float] = {}
        for (a, b), score in scores.items():
            normalized[self._key(a, b)] = float(score)
        self._scores: Mapping[Tuple[str, str], float] = MappingProxyType(normalized)
        self.strategy = SimilarityStrategy.parse(strategy)
        self.failed_pairs: Tuple[FailedPair, ...] = tuple(failed_pairs)
        self.computed_at = computed_at if computed_at is not None else time.time()
        self.metadata: Mapping[str, Any] = MappingProxyType(dict(metadata or {}))

    def __setattr__(self, name: str, value: Any) -> None:
        if hasattr(self, "metadata"):
            raise AttributeError("SimilarityMatrix is immutable")
        object.__setattr__(self, name, value)

    @classmethod
    def from_dense(
        cls,
        ids: Sequence[str],
        values: Sequence[Sequence[float]],
        strategy: SimilarityStrategy | str = SimilarityStrategy.TEXT,
        *,
        texts: Sequence[str] | None = None,
    ) -> "SimilarityMatrix":
        """Build from a square matrix; only the upper triangle is read."""
        scores = {
            (ids[i], ids[j]): float(values[i][j]) for i in range(len(ids)) for j in range(i + 1, len(ids))
        }
        return cls(ids, scores, SimilarityStrategy.parse(strategy), texts=texts)

    def _key(self, a: str, b: str) -> Tuple[str, str]:
        try:
            pa, pb = self._position[a], self._position[b]
        except KeyError as exc:
            raise NotFoundError("candidate", exc.args[0]) from None
        return (a, b) if pa < pb else (b, a)

    @property
    def ids(self) -> Tuple[str, ...]:
        return self._ids

    @property
    def texts(self) -> Tuple[str, ...] | None:
        return self._texts

    @property
    def scores(self) -> Mapping[Tuple[str, str], float]:
        return self._scores

    @property
    def size(self) -> int:
        return len(self._ids)

    @property
    def pair_count(self) -> int:
        return len(self._scores)

    def __len__(self) -> int:
        return len(self._ids)

    def __contains__(self, candidate_id: object) -> bool:
        return candidate_id in self._position

    def values(self) -> List[float]:
        return list(self._scores.values())

    def get(self, a: str, b: str) -> float | None:
        """Score for a pair; 1.0 for an id with itself, ``None`` if the pair failed."""
        if a == b:
            self._key(a, a)
            return 1.0
        return self._scores.get(self._key(a, b))

    def mean_similarity(self, candidate_id: str) -> float:
        """Average similarity of one member to every other scored member."""
        values = [
            score for (a, b), score in self._scores.items() if a == candidate_id or b == candidate_id
        ]
        if candidate_id not in self._position:
            raise NotFoundError("candidate", candidate_id)
        return sum(values) / len(values) if values else 0.0

    def pairs_at_or_above(self, threshold: float) -> List[Tuple[str, str, float]]:
        """Pairs with score >= threshold, highest first."""
        pairs = [(a, b, score) for (a, b), score in self._scores.items() if score >= threshold]
        pairs.sort(key=lambda item: item[2], reverse=True)
        return pairs

    def __iter__(self) -> Iterator[Tuple[str, str, float]]:
        for (a, b), score in self._scores.items():
            yield a, b, score

    def __repr__(self) -> str:
        return (
            f"SimilarityMatrix(size={self.size}, pairs={self.pair_count}, "
            f"failed={len(self.failed_pairs)}, strategy={self.strategy.value!r})"
        )


@dataclass(frozen=True)
class DiversityMetrics:
    pairwise_diversity: float
    entropy: float
    coverage: float
    uniqueness_ratio: float
    clustering_coefficient: float
    convergence_risk: float
    diversity_level: DiversityLevel
    population_size: int = 0
    strategy: SimilarityStrategy | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pairwise_diversity": self.pairwise_diversity,
            "entropy": self.entropy,
            "coverage": self.coverage,
            "uniqueness_ratio": self.uniqueness_ratio,
            "clustering_coefficient": self.clustering_coefficient,
            "convergence_risk": self.convergence_risk,
            "diversity_level": self.diversity_level.value,
            "population_size": self.population_size,
            "strategy": self.strategy.value if self.strategy else None,
        }


@dataclass(frozen=True)
class NoveltyScore:
    """Mean distance from a candidate to its k nearest neighbours."""

    candidate_id: str
    novelty_score: float
    k_nearest_distance: float
    k_used: int
    neighbor_ids: Tuple[str, ...] = ()
    behavioral_features: Tuple[float, ...] = ()
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DiversityReport:
    """Everything one generation's analysis produced, plus the recommended action."""

    metrics: DiversityMetrics
    matrix: SimilarityMatrix
    needs_promotion: bool
    acceptable: bool
    recommended_action: str
    mutation_rate: float
    injection_count: int
    duplicates: Tuple[Tuple[str, str, float], ...] = ()
    novelty: Mapping[str, NoveltyScore] = field(default_factory=dict)
