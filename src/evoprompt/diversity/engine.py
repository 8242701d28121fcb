"""
Diversity engine facade.

Reads always work on an immutable snapshot of candidates: pass a
``PopulationSnapshot`` (or any sequence of candidates) taken at the start of
a generation. The matrix is never updated incrementally.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Dict, Iterable, List, Sequence, Tuple

from evoprompt.errors import CollaboratorUnavailableError, EmptyCollectionError, ValidationError
from evoprompt.interfaces import Candidate, EmbeddingProvider, TraceProvider

from . import metrics as metric_fns
from .novelty import DEFAULT_K, behavioral_features, knn_novelty
from .promoter import PromoterConfig, adaptive_mutation_rate, injection_count
from .similarity import STRATEGY_HANDLERS, SimilarityContext, find_duplicates
from .types import (
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

logger = logging.getLogger(__name__)


class DiversityEngine:
    def __init__(
        self,
        config: DiversityConfig | None = None,
        *,
        embedding_provider: EmbeddingProvider | None = None,
        trace_provider: TraceProvider | None = None,
        seed: int | None = None,
    ) -> None:
        self.config = config or DiversityConfig()
        self.context = SimilarityContext(
            self.config, embedding_provider=embedding_provider, trace_provider=trace_provider
        )
        self._rng = random.Random(seed)

    def _strategy(self, strategy: SimilarityStrategy | str | None) -> SimilarityStrategy:
        if strategy is None:
            return self.config.similarity_strategy
        return SimilarityStrategy.parse(strategy)

    async def compute_similarity(
        self, a: Candidate, b: Candidate, strategy: SimilarityStrategy | str | None = None
    ) -> SimilarityResult:
        """
        Compare two candidates.

        Raises ``UnknownStrategyError`` for an unrecognized strategy name and
        ``CollaboratorUnavailableError`` when a semantic or behavioral
        comparison has no provider to call.
        """
        parsed = self._strategy(strategy)
        score, components = await STRATEGY_HANDLERS[parsed](a, b, self.context)
        return SimilarityResult(
            a_id=a.id,
            b_id=b.id,
            score=score,
            strategy=parsed,
            components=components,
            metadata={"a_length": len(a.prompt), "b_length": len(b.prompt)},
        )

    async def compute_matrix(
        self, population: Iterable[Candidate], strategy: SimilarityStrategy | str | None = None
    ) -> SimilarityMatrix:
        """All unordered pairwise scores; failing pairs land in ``failed_pairs``."""
        parsed = self._strategy(strategy)
        candidates = list(population)
        if not candidates:
            raise EmptyCollectionError("cannot build a similarity matrix for an empty population")
        await self._warm_up(candidates, parsed)

        handler = STRATEGY_HANDLERS[parsed]
        scores: Dict[Tuple[str, str], float] = {}
        failed: List[FailedPair] = []
        for i, a in enumerate(candidates):
            for b in candidates[i + 1 :]:
                try:
                    score, _ = await handler(a, b, self.context)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    failed.append(FailedPair(a.id, b.id, f"{type(exc).__name__}: {exc}"))
                    continue
                scores[(a.id, b.id)] = score
        if failed:
            logger.warning(
                "%d of %d similarity pairs failed (%s): %s",
                len(failed),
                len(failed) + len(scores),
                parsed.value,
                failed[0].reason,
            )
        return SimilarityMatrix(
            [c.id for c in candidates],
            scores,
            parsed,
            texts=[c.prompt for c in candidates],
            failed_pairs=failed,
            metadata={"population_size": len(candidates), "comparisons": len(scores)},
        )

    async def _warm_up(self, candidates: Sequence[Candidate], strategy: SimilarityStrategy) -> None:
        wants_embeddings = strategy is SimilarityStrategy.SEMANTIC or (
            strategy is SimilarityStrategy.COMPOSITE and self.config.composite_weights.get("semantic", 0.0) > 0
        )
        if wants_embeddings and self.context.embedding_provider is not None:
            try:
                await self.context.prefetch_embeddings(c.prompt for c in candidates)
            except (CollaboratorUnavailableError, ValidationError) as exc:
                # Recorded on the context; individual pairs report it.
                logger.debug("Embedding warm-up failed: %s", exc)

    def compute_metrics(self, matrix: SimilarityMatrix) -> DiversityMetrics:
        return metric_fns.compute_metrics(matrix, self.config)

    async def compute_novelty(
        self,
        candidate: Candidate,
        population: Iterable[Candidate],
        k: int | None = None,
        *,
        matrix: SimilarityMatrix | None = None,
        strategy: SimilarityStrategy | str | None = None,
    ) -> NoveltyScore:
        """
        Mean ``1 - similarity`` to the k most similar other members.

        Scores already in ``matrix`` are reused. Without a matrix and with more
        than ``novelty_sample_size`` neighbours, a random sample is compared.
        """
        k = DEFAULT_K if k is None else k
        if k < 1:
            raise ValidationError(f"k must be >= 1, got {k}")
        parsed = self._strategy(strategy)
        others = [other for other in population if other.id != candidate.id]
        sampled = False
        if matrix is None and len(others) > self.config.novelty_sample_size:
            others = self._rng.sample(others, self.config.novelty_sample_size)
            sampled = True

        handler = STRATEGY_HANDLERS[parsed]
        distances: List[Tuple[str, float]] = []
        failures = 0
        for other in others:
            score = None
            if matrix is not None and candidate.id in matrix and other.id in matrix:
                score = matrix.get(candidate.id, other.id)
            if score is None:
                try:
                    score, _ = await handler(candidate, other, self.context)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    failures += 1
                    logger.debug("Novelty comparison %s/%s failed: %s", candidate.id, other.id, exc)
                    continue
            distances.append((other.id, 1.0 - score))
        return knn_novelty(
            candidate.id,
            distances,
            k,
            features=behavioral_features(candidate.prompt),
            strategy=parsed.value,
            sampled=sampled,
            failed_comparisons=failures,
        )

    async def compute_population_novelty(
        self, population: Sequence[Candidate], k: int | None = None, *, matrix: SimilarityMatrix | None = None
    ) -> Dict[str, NoveltyScore]:
        members = list(population)
        return {
            candidate.id: await self.compute_novelty(candidate, members, k, matrix=matrix) for candidate in members
        }

    def needs_promotion(self, metrics: DiversityMetrics) -> bool:
        return metric_fns.needs_promotion(
            metrics, self.config.diversity_promotion_threshold, self.config.high_risk_threshold
        )

    def acceptable(self, metrics: DiversityMetrics) -> bool:
        return metric_fns.acceptable(metrics, self.config.min_diversity)

    async def analyze(
        self,
        population: Sequence[Candidate],
        *,
        promoter_config: PromoterConfig | None = None,
        novelty_k: int | None = None,
        strategy: SimilarityStrategy | str | None = None,
    ) -> DiversityReport:
        """Matrix, metrics, duplicates and a recommended action for one snapshot."""
        promoter_config = promoter_config or PromoterConfig()
        members = list(population)
        matrix = await self.compute_matrix(members, strategy)
        metrics = self.compute_metrics(matrix)
        needs = self.needs_promotion(metrics)
        ok = self.acceptable(metrics)
        novelty: Dict[str, NoveltyScore] = {}
        if self.config.enable_novelty_rewards and len(members) > 1:
            novelty = {
                candidate.id: await self.compute_novelty(
                    candidate, members, novelty_k, matrix=matrix, strategy=matrix.strategy
                )
                for candidate in members
            }
        return DiversityReport(
            metrics=metrics,
            matrix=matrix,
            needs_promotion=needs,
            acceptable=ok,
            recommended_action=recommend_action(metrics, needs, ok),
            mutation_rate=adaptive_mutation_rate(
                metrics,
                promoter_config.base_mutation_rate,
                max_rate=promoter_config.max_mutation_rate,
                min_diversity_target=promoter_config.min_diversity_target,
                high_risk_threshold=promoter_config.high_risk_threshold,
            ),
            injection_count=injection_count(metrics, len(members)),
            duplicates=tuple(find_duplicates(matrix, self.config.similarity_threshold)),
            novelty=novelty,
        )


def recommend_action(metrics: DiversityMetrics, needs_promotion: bool, acceptable: bool) -> str:
    if metrics.diversity_level is DiversityLevel.CRITICAL:
        return "inject_and_diversify"
    if metrics.diversity_level is DiversityLevel.LOW:
        return "inject"
    if needs_promotion:
        return "increase_mutation"
    if not acceptable:
        return "monitor"
    return "none"
