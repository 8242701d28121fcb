"""
Diversity promoter: the policy layer acting on diversity metrics.

The promoter never mutates a store directly. ``promote`` returns a
:class:`PromotionResult` describing the new population and which ids were
replaced; ``apply_promotion`` writes those replacements into a
:class:`PopulationStore`.
"""

from __future__ import annotations

import asyncio
import math
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Sequence, Set, Tuple

from evoprompt.errors import EmptyCollectionError, NotFoundError, UnknownStrategyError, ValidationError
from evoprompt.interfaces import Candidate, VariantGenerator
from evoprompt.logging.logger import LoggerProtocol, LogLevel, StdOutLogger

from .similarity import find_clusters
from .types import DiversityConfig, DiversityLevel, DiversityMetrics, SimilarityMatrix

if TYPE_CHECKING:
    from evoprompt.metrics import Metrics
    from evoprompt.population import PopulationStore

DEFAULT_TEMPLATE = "Solve this problem step by step."

FALLBACK_PHRASES: Tuple[str, ...] = (
    "with clear explanations",
    "showing all intermediate steps",
    "using examples to illustrate",
    "with detailed reasoning",
    "explaining your thought process",
    "step by step with justification",
    "with thorough analysis",
    "considering multiple approaches",
    "with careful attention to detail",
    "systematically and methodically",
)

_INJECTION_RATIOS: Mapping[DiversityLevel, float] = {
    DiversityLevel.CRITICAL: 0.3,
    DiversityLevel.LOW: 0.2,
    DiversityLevel.MODERATE: 0.1,
}


class PromotionStrategy(str, Enum):
    RANDOM_INJECTION = "random_injection"
    ADAPTIVE_MUTATION = "adaptive_mutation"
    TARGETED_DIVERSIFICATION = "targeted_diversification"
    ALL = "all"

    @classmethod
    def parse(cls, value: "PromotionStrategy | str") -> "PromotionStrategy":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise UnknownStrategyError("promotion", value) from None


@dataclass(frozen=True)
class PromoterConfig:
    base_mutation_rate: float = 0.1
    max_mutation_rate: float = 0.5
    min_diversity_target: float = 0.4
    high_risk_threshold: float = 0.7
    seed: int | None = None

    def __post_init__(self) -> None:
        if not 0.0 <= self.base_mutation_rate <= self.max_mutation_rate <= 1.0:
            raise ValidationError(
                "mutation rates must satisfy 0 <= base_mutation_rate <= max_mutation_rate <= 1, "
                f"got base={self.base_mutation_rate} max={self.max_mutation_rate}"
            )
        if not 0.0 <= self.min_diversity_target <= 1.0:
            raise ValidationError(f"min_diversity_target must be in [0, 1], got {self.min_diversity_target}")
        if not 0.0 <= self.high_risk_threshold <= 1.0:
            raise ValidationError(f"high_risk_threshold must be in [0, 1], got {self.high_risk_threshold}")


def mutation_multiplier(
    metrics: DiversityMetrics,
    *,
    min_diversity_target: float = 0.4,
    high_risk_threshold: float = 0.7,
) -> float:
    """Severity multiplier: critical 4.0, low 2.5, high risk 2.0, below target 1.5, otherwise 1.0."""
    if metrics.diversity_level is DiversityLevel.CRITICAL:
        return 4.0
    if metrics.diversity_level is DiversityLevel.LOW:
        return 2.5
    if metrics.convergence_risk > high_risk_threshold:
        return 2.0
    if metrics.pairwise_diversity < min_diversity_target:
        return 1.5
    return 1.0


def adaptive_mutation_rate(
    metrics: DiversityMetrics,
    base_rate: float = 0.1,
    *,
    max_rate: float = 0.5,
    min_diversity_target: float = 0.4,
    high_risk_threshold: float = 0.7,
) -> float:
    """Scale ``base_rate`` by severity, capped at ``max_rate`` and rounded to 3 places."""
    if base_rate < 0:
        raise ValidationError(f"base_rate must be non-negative, got {base_rate}")
    multiplier = mutation_multiplier(
        metrics, min_diversity_target=min_diversity_target, high_risk_threshold=high_risk_threshold
    )
    return round(min(base_rate * multiplier, max_rate), 3)


def injection_count(metrics: DiversityMetrics, population_size: int) -> int:
    """floor(N * ratio) with ratio 0.3 / 0.2 / 0.1 for critical / low / moderate, else 0."""
    if population_size <= 0:
        return 0
    ratio = _INJECTION_RATIOS.get(metrics.diversity_level, 0.0)
    return max(0, min(population_size, math.floor(population_size * ratio)))


@dataclass(frozen=True)
class PromotionResult:
    """
    Outcome of one promotion pass.

    ``replacements`` pairs each replaced id with the candidate that takes its
    place; ``candidates`` is the full population after the pass.
    """

    candidates: Tuple[Candidate, ...]
    strategy: "PromotionStrategy"
    replacements: Tuple[Tuple[str, Candidate], ...] = ()
    mutation_rate: float | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @property
    def replaced_ids(self) -> Tuple[str, ...]:
        return tuple(old_id for old_id, _ in self.replacements)

    @property
    def new_candidates(self) -> Tuple[Candidate, ...]:
        return tuple(new for _, new in self.replacements)

    @property
    def injected(self) -> Tuple[Candidate, ...]:
        return tuple(c for c in self.new_candidates if c.metadata.get("origin") == "diversity_injection")

    @property
    def diversified(self) -> Tuple[Candidate, ...]:
        return tuple(c for c in self.new_candidates if c.metadata.get("origin") == "targeted_diversification")

    @property
    def changed(self) -> bool:
        return bool(self.replacements)


class DiversityPromoter:
    """
    Reads diversity metrics and proposes population changes.

    Variant text comes from ``variant_generator`` when one is configured; if
    it fails or returns too few variants, qualifying phrases are appended to
    the template instead and ``metadata["variant_fallback"]`` is set.
    """

    def __init__(
        self,
        config: PromoterConfig | None = None,
        *,
        diversity_config: DiversityConfig | None = None,
        variant_generator: VariantGenerator | None = None,
        logger: LoggerProtocol | None = None,
        metrics: Metrics | None = None,
    ) -> None:
        self.config = config or PromoterConfig()
        self.diversity_config = diversity_config or DiversityConfig()
        self.variant_generator = variant_generator
        self.logger: LoggerProtocol = logger or StdOutLogger()
        self.metrics = metrics
        self._rng = random.Random(self.config.seed)

    def adaptive_mutation_rate(self, metrics: DiversityMetrics, base_rate: float | None = None) -> float:
        return adaptive_mutation_rate(
            metrics,
            self.config.base_mutation_rate if base_rate is None else base_rate,
            max_rate=self.config.max_mutation_rate,
            min_diversity_target=self.config.min_diversity_target,
            high_risk_threshold=self.config.high_risk_threshold,
        )

    def injection_count(self, metrics: DiversityMetrics, population_size: int) -> int:
        return injection_count(metrics, population_size)

    async def promote(
        self,
        population: Sequence[Candidate],
        metrics: DiversityMetrics,
        strategy: PromotionStrategy | str = PromotionStrategy.ALL,
        *,
        injection_count: int | None = None,
        base_prompt: str | None = None,
        matrix: SimilarityMatrix | None = None,
    ) -> PromotionResult:
        """
        Apply ``strategy`` to ``population`` and describe the result.

        Raises ``EmptyCollectionError`` for an empty population and
        ``UnknownStrategyError`` for an unrecognized strategy name. A zero
        injection count is a successful no-op.
        """
        candidates = list(population)
        if not candidates:
            raise EmptyCollectionError("cannot promote diversity in an empty population")
        parsed = PromotionStrategy.parse(strategy)
        metadata: Dict[str, Any] = {"diversity_level": metrics.diversity_level.value}
        replacements: List[Tuple[str, Candidate]] = []
        pass_state = _PassState(_PhraseOrder(self._rng), {c.prompt for c in candidates})

        if parsed in (PromotionStrategy.RANDOM_INJECTION, PromotionStrategy.ALL):
            candidates, injected = await self._random_injection(
                candidates, metrics, injection_count, base_prompt, matrix, metadata, pass_state
            )
            replacements.extend(injected)

        if parsed in (PromotionStrategy.TARGETED_DIVERSIFICATION, PromotionStrategy.ALL):
            candidates, diversified = await self._targeted_diversification(
                candidates, matrix, metadata, pass_state
            )
            replacements.extend(diversified)

        rate = self.adaptive_mutation_rate(metrics)
        result = PromotionResult(
            candidates=tuple(candidates),
            strategy=parsed,
            replacements=tuple(replacements),
            mutation_rate=rate,
            metadata=metadata,
        )
        if self.metrics is not None:
            self.metrics.record_promotion(
                parsed.value,
                len(result.injected),
                len(result.diversified),
                1 if metadata.get("variant_fallback") else 0,
            )
        if result.changed:
            self.logger.log(
                f"Diversity promotion ({parsed.value}, level={metrics.diversity_level.value}): "
                f"replaced {len(replacements)} of {len(candidates)} candidates",
                LogLevel.INFO,
            )
        return result

    # ------------------------------------------------------------- strategies

    async def _random_injection(
        self,
        candidates: List[Candidate],
        metrics: DiversityMetrics,
        requested: int | None,
        base_prompt: str | None,
        matrix: SimilarityMatrix | None,
        metadata: Dict[str, Any],
        pass_state: _PassState,
    ) -> Tuple[List[Candidate], List[Tuple[str, Candidate]]]:
        count = self.injection_count(metrics, len(candidates)) if requested is None else requested
        count = max(0, min(int(count), len(candidates)))
        metadata["injection_count"] = count
        if count == 0:
            return candidates, []

        template = base_prompt or self._base_prompt(candidates)
        victims = self._least_diverse(candidates, count, matrix)
        texts = await self._variants(template, len(victims), metadata, pass_state)
        replacements: List[Tuple[str, Candidate]] = []
        by_id = {candidate.id: candidate for candidate in candidates}
        for victim_id, text in zip(victims, texts):
            victim = by_id[victim_id]
            fresh = Candidate.create(
                text,
                generation=victim.generation,
                metadata={"origin": "diversity_injection", "replaced": victim_id, "template": template},
            )
            replacements.append((victim_id, fresh))
        return _swap(candidates, replacements), replacements

    async def _targeted_diversification(
        self,
        candidates: List[Candidate],
        matrix: SimilarityMatrix | None,
        metadata: Dict[str, Any],
        pass_state: _PassState,
    ) -> Tuple[List[Candidate], List[Tuple[str, Candidate]]]:
        if matrix is None:
            metadata["targeted_diversification"] = "skipped"
            metadata["targeted_diversification_reason"] = "no similarity matrix supplied"
            return candidates, []

        by_id = {candidate.id: candidate for candidate in candidates}
        clusters = [
            [member for member in cluster if member in by_id]
            for cluster in find_clusters(matrix, self.diversity_config.similarity_threshold)
        ]
        clusters = [cluster for cluster in clusters if len(cluster) > 1]
        metadata["clusters_found"] = len(clusters)
        replacements: List[Tuple[str, Candidate]] = []
        for cluster in clusters:
            representative = max(cluster, key=lambda cid: _fitness_key(by_id[cid]))
            members = [member_id for member_id in cluster if member_id != representative]
            texts = await self._variants(by_id[representative].prompt, len(members), metadata, pass_state)
            for member_id, text in zip(members, texts):
                member = by_id[member_id]
                fresh = Candidate.create(
                    text,
                    generation=member.generation,
                    parent_ids=(member_id,),
                    metadata={
                        "origin": "targeted_diversification",
                        "replaced": member_id,
                        "cluster_representative": representative,
                    },
                )
                replacements.append((member_id, fresh))
        metadata["targeted_diversification"] = "applied" if replacements else "no_clusters"
        return _swap(candidates, replacements), replacements

    # --------------------------------------------------------------- helpers

    def _base_prompt(self, candidates: Sequence[Candidate]) -> str:
        evaluated = [c for c in candidates if c.fitness is not None]
        if evaluated:
            return max(evaluated, key=_fitness_key).prompt
        return candidates[0].prompt if candidates else DEFAULT_TEMPLATE

    def _least_diverse(
        self, candidates: Sequence[Candidate], count: int, matrix: SimilarityMatrix | None
    ) -> List[str]:
        """Ids to replace: most similar to the rest first, falling back to lowest fitness."""
        order = {candidate.id: index for index, candidate in enumerate(candidates)}
        pool = list(candidates)
        if count < len(pool):
            evaluated = [c for c in pool if c.fitness is not None]
            if evaluated:
                best = max(evaluated, key=_fitness_key)
                pool = [c for c in pool if c.id != best.id]

        def crowding(candidate: Candidate) -> float:
            if matrix is not None and candidate.id in matrix:
                return matrix.mean_similarity(candidate.id)
            return 0.0

        ranked = sorted(
            pool,
            key=lambda c: (-crowding(c), _fitness_key(c), order[c.id]),
        )
        return [candidate.id for candidate in ranked[:count]]

    async def _variants(
        self, template: str, count: int, metadata: Dict[str, Any], pass_state: _PassState
    ) -> List[str]:
        """``count`` texts unlike each other and unlike every prompt seen in this pass."""
        produced: List[str] = []
        if count <= 0:
            return produced
        taken = pass_state.taken
        if self.variant_generator is not None:
            try:
                raw = await self.variant_generator.generate(template, count)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self.logger.log(f"Variant generator failed, using built-in phrases: {exc}", LogLevel.WARNING)
                metadata["variant_error"] = f"{type(exc).__name__}: {exc}"
                raw = []
            for text in raw:
                cleaned = text.strip() if isinstance(text, str) else ""
                if cleaned and cleaned not in taken:
                    produced.append(cleaned)
                    taken.add(cleaned)
                if len(produced) == count:
                    break
        if len(produced) < count:
            if self.variant_generator is not None:
                metadata["variant_fallback"] = True
            while len(produced) < count:
                text = pass_state.phrases.variant(template, taken)
                produced.append(text)
                taken.add(text)
        return produced

    def fallback_variants(self, template: str, count: int) -> List[str]:
        """Append distinct qualifying phrases to ``template``; pairs of phrases past the first ten."""
        phrases = _PhraseOrder(self._rng)
        taken: Set[str] = set()
        variants: List[str] = []
        for _ in range(count):
            text = phrases.variant(template, taken)
            taken.add(text)
            variants.append(text)
        return variants


class _PhraseOrder:
    """
    One shuffled phrase order consumed across a promotion pass.

    Past the single phrases, pairs are produced; ``variant`` skips any text
    already in ``taken``.
    """

    def __init__(self, rng: random.Random) -> None:
        self._order = list(FALLBACK_PHRASES)
        rng.shuffle(self._order)
        self._next = 0

    def _phrase(self, index: int) -> str:
        size = len(self._order)
        first = self._order[index % size]
        if index < size:
            return first
        round_, position = divmod(index - size, size)
        offset = round_ % (size - 1) + 1
        phrase = f"{first}, {self._order[(position + offset) % size]}"
        if round_ >= size - 1:
            phrase = f"{phrase} (variation {round_ // (size - 1) + 1})"
        return phrase

    def variant(self, template: str, taken: Set[str]) -> str:
        while True:
            text = f"{template.rstrip()} {self._phrase(self._next)}"
            self._next += 1
            if text not in taken:
                return text


@dataclass(slots=True)
class _PassState:
    """Phrase order and prompts already in use for one ``promote`` call."""

    phrases: _PhraseOrder
    taken: Set[str]


def apply_promotion(store: PopulationStore, result: PromotionResult, logger: LoggerProtocol | None = None) -> int:
    """Write ``result``'s replacements into ``store``; returns how many were applied."""
    applied = 0
    for old_id, new_candidate in result.replacements:
        try:
            store.replace(old_id, new_candidate)
        except NotFoundError:
            if logger is not None:
                logger.log(f"Skipping replacement of {old_id}: no longer in population", LogLevel.WARNING)
            continue
        applied += 1
    return applied


def _fitness_key(candidate: Candidate) -> float:
    return candidate.fitness if candidate.fitness is not None else float("-inf")


def _swap(candidates: List[Candidate], replacements: Sequence[Tuple[str, Candidate]]) -> List[Candidate]:
    mapping = dict(replacements)
    return [mapping.get(candidate.id, candidate) for candidate in candidates]
