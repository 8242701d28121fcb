"""Diversity analysis and promotion for evolving prompt populations."""

from evoprompt.diversity.engine import DiversityEngine, recommend_action
from evoprompt.diversity.metrics import acceptable, classify, compute_metrics, needs_promotion
from evoprompt.diversity.monitor import DiversityMonitor, DiversityObservation
from evoprompt.diversity.novelty import (
    ArchiveStrategy,
    NoveltyArchive,
    behavioral_features,
    combine_fitness_novelty,
)
from evoprompt.diversity.promoter import (
    DiversityPromoter,
    PromoterConfig,
    PromotionResult,
    PromotionStrategy,
    adaptive_mutation_rate,
    apply_promotion,
    injection_count,
)
from evoprompt.diversity.similarity import (
    SimilarityContext,
    find_clusters,
    find_duplicates,
    register_strategy,
    structural_similarity,
    text_similarity,
)
from evoprompt.diversity.types import (
    DiversityConfig,
    DiversityLevel,
    DiversityMetrics,
    DiversityReport,
    FailedPair,
    NoveltyScore,
    SimilarityMatrix,
    SimilarityResult,
    SimilarityStrategy,
)

__all__ = [
    "ArchiveStrategy",
    "DiversityConfig",
    "DiversityEngine",
    "DiversityLevel",
    "DiversityMetrics",
    "DiversityMonitor",
    "DiversityObservation",
    "DiversityPromoter",
    "DiversityReport",
    "FailedPair",
    "NoveltyArchive",
    "NoveltyScore",
    "PromoterConfig",
    "PromotionResult",
    "PromotionStrategy",
    "SimilarityContext",
    "SimilarityMatrix",
    "SimilarityResult",
    "SimilarityStrategy",
    "acceptable",
    "adaptive_mutation_rate",
    "apply_promotion",
    "behavioral_features",
    "classify",
    "combine_fitness_novelty",
    "compute_metrics",
    "find_clusters",
    "find_duplicates",
    "injection_count",
    "needs_promotion",
    "recommend_action",
    "register_strategy",
    "structural_similarity",
    "text_similarity",
]
