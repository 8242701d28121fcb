"""
Aggregate diversity metrics derived from a similarity matrix.

Defaults for classification:
- pairwise diversity < 0.15 critical, < 0.30 low, < 0.50 moderate, < 0.70 healthy, otherwise excellent
- convergence risk >= 0.85 critical, >= 0.70 low, >= 0.55 moderate, >= 0.40 healthy, otherwise excellent

The reported level is the worse of the two, so lowering diversity or raising
risk can never improve it.
"""

from __future__ import annotations

import math
from typing import Sequence

from evoprompt.errors import CollaboratorUnavailableError, EmptyCollectionError

from .types import DiversityConfig, DiversityLevel, DiversityMetrics, SimilarityMatrix

_BINS = 10


def level_for_diversity(pairwise_diversity: float, thresholds: Sequence[float]) -> DiversityLevel:
    critical, low, moderate, healthy = thresholds
    if pairwise_diversity < critical:
        return DiversityLevel.CRITICAL
    if pairwise_diversity < low:
        return DiversityLevel.LOW
    if pairwise_diversity < moderate:
        return DiversityLevel.MODERATE
    if pairwise_diversity < healthy:
        return DiversityLevel.HEALTHY
    return DiversityLevel.EXCELLENT


def level_for_risk(convergence_risk: float, thresholds: Sequence[float]) -> DiversityLevel:
    critical, low, moderate, healthy = thresholds
    if convergence_risk >= critical:
        return DiversityLevel.CRITICAL
    if convergence_risk >= low:
        return DiversityLevel.LOW
    if convergence_risk >= moderate:
        return DiversityLevel.MODERATE
    if convergence_risk >= healthy:
        return DiversityLevel.HEALTHY
    return DiversityLevel.EXCELLENT


def classify(pairwise_diversity: float, convergence_risk: float, config: DiversityConfig | None = None) -> DiversityLevel:
    config = config or DiversityConfig()
    return DiversityLevel.worst(
        level_for_diversity(pairwise_diversity, config.level_thresholds),
        level_for_risk(convergence_risk, config.risk_thresholds),
    )


def similarity_entropy(scores: Sequence[float]) -> float:
    """Shannon entropy (bits) of the scores over ten equal-width bins."""
    if not scores:
        return 0.0
    counts = [0] * _BINS
    for score in scores:
        counts[min(_BINS - 1, int(math.floor(score * _BINS)))] += 1
    total = len(scores)
    entropy = -sum((c / total) * math.log2(c / total) for c in counts if c)
    return round(max(0.0, entropy), 3)


def convergence_risk(pairwise_diversity: float, clustering: float, coverage: float) -> float:
    risk = (1.0 - pairwise_diversity) * 0.5 + clustering * 0.3 + (1.0 - coverage) * 0.2
    return round(min(1.0, max(0.0, risk)), 3)


def compute_metrics(matrix: SimilarityMatrix, config: DiversityConfig | None = None) -> DiversityMetrics:
    """
    Summarize a similarity matrix.

    Raises ``EmptyCollectionError`` for an empty matrix and
    ``CollaboratorUnavailableError`` when every pair of a multi-member matrix
    failed, since no similarity was measured at all.
    """
    config = config or DiversityConfig()
    n = matrix.size
    if n == 0:
        raise EmptyCollectionError("cannot compute diversity metrics for an empty population")

    if n == 1:
        return DiversityMetrics(
            pairwise_diversity=1.0,
            entropy=0.0,
            coverage=1.0,
            uniqueness_ratio=1.0,
            clustering_coefficient=0.0,
            convergence_risk=0.0,
            diversity_level=DiversityLevel.EXCELLENT,
            population_size=1,
            strategy=matrix.strategy,
            metadata={"threshold_used": config.similarity_threshold},
        )

    scores = matrix.values()
    if not scores:
        reason = matrix.failed_pairs[0].reason if matrix.failed_pairs else "no scores recorded"
        raise CollaboratorUnavailableError(
            f"all {n * (n - 1) // 2} similarity pairs failed under the {matrix.strategy.value} strategy: {reason}"
        )
    threshold = config.similarity_threshold
    pairwise_diversity = round(max(0.0, 1.0 - sum(scores) / len(scores)), 3)
    uniqueness = round(sum(1 for s in scores if s < threshold) / len(scores), 3)
    clustering = round(sum(1 for s in scores if s >= threshold) / len(scores), 3)

    if matrix.texts is not None:
        coverage = round(len(set(matrix.texts)) / n, 3)
    else:
        coverage = 1.0

    risk = convergence_risk(pairwise_diversity, clustering, coverage)
    return DiversityMetrics(
        pairwise_diversity=pairwise_diversity,
        entropy=similarity_entropy(scores),
        coverage=coverage,
        uniqueness_ratio=uniqueness,
        clustering_coefficient=clustering,
        convergence_risk=risk,
        diversity_level=classify(pairwise_diversity, risk, config),
        population_size=n,
        strategy=matrix.strategy,
        metadata={
            "threshold_used": threshold,
            "comparisons": len(scores),
            "failed_pairs": len(matrix.failed_pairs),
        },
    )


def acceptable(metrics: DiversityMetrics, min_diversity: float = 0.3) -> bool:
    return metrics.pairwise_diversity >= min_diversity


def needs_promotion(
    metrics: DiversityMetrics,
    threshold: float = 0.25,
    high_risk_threshold: float = 0.7,
) -> bool:
    return (
        metrics.pairwise_diversity < threshold
        or metrics.convergence_risk > high_risk_threshold
        or metrics.diversity_level in (DiversityLevel.CRITICAL, DiversityLevel.LOW)
    )
