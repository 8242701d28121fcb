"""Tests for the diversity promoter."""

import pytest

from evoprompt.diversity.promoter import (
    FALLBACK_PHRASES,
    DiversityPromoter,
    PromoterConfig,
    PromotionStrategy,
    adaptive_mutation_rate,
    apply_promotion,
    injection_count,
)
from evoprompt.diversity.types import DiversityLevel, DiversityMetrics, SimilarityMatrix
from evoprompt.errors import EmptyCollectionError, UnknownStrategyError, ValidationError
from evoprompt.interfaces import Candidate
from evoprompt.metrics import Metrics
from evoprompt.population import PopulationStore


def make_metrics(level: DiversityLevel, diversity: float = 0.5, risk: float = 0.3) -> DiversityMetrics:
    return DiversityMetrics(
        pairwise_diversity=diversity,
        entropy=0.0,
        coverage=1.0,
        uniqueness_ratio=1.0,
        clustering_coefficient=0.0,
        convergence_risk=risk,
        diversity_level=level,
    )


CRITICAL = make_metrics(DiversityLevel.CRITICAL, diversity=0.0, risk=0.96)
LOW = make_metrics(DiversityLevel.LOW, diversity=0.2, risk=0.6)
HIGH_RISK = make_metrics(DiversityLevel.MODERATE, diversity=0.45, risk=0.75)
BELOW_TARGET = make_metrics(DiversityLevel.MODERATE, diversity=0.35, risk=0.5)
BASELINE = make_metrics(DiversityLevel.EXCELLENT, diversity=0.9, risk=0.1)


class ScriptedGenerator:
    def __init__(self, variants=None, error=None):
        self.variants = variants or []
        self.error = error
        self.requests = []

    async def generate(self, template, count):
        self.requests.append((template, count))
        if self.error:
            raise self.error
        return self.variants[:count]


def identical_population(n: int = 5):
    return [
        Candidate.create("Solve this problem step by step.").with_fitness(round(0.1 * (i + 1), 1))
        for i in range(n)
    ]


def dense(candidates, value):
    ids = [c.id for c in candidates]
    return SimilarityMatrix.from_dense(ids, [[value] * len(ids) for _ in ids], texts=[c.prompt for c in candidates])


def test_mutation_rate_rises_with_severity_and_respects_cap():
    rates = [adaptive_mutation_rate(m, 0.1) for m in (BASELINE, BELOW_TARGET, HIGH_RISK, LOW, CRITICAL)]

    assert rates == [0.1, 0.15, 0.2, 0.25, 0.4]
    assert rates == sorted(rates)
    assert adaptive_mutation_rate(CRITICAL, 0.3) == 0.5
    assert adaptive_mutation_rate(CRITICAL, 0.3, max_rate=0.9) == 0.9
    with pytest.raises(ValidationError):
        adaptive_mutation_rate(BASELINE, -0.1)


def test_injection_count_by_level():
    assert injection_count(CRITICAL, 10) == 3
    assert injection_count(LOW, 10) == 2
    assert injection_count(BELOW_TARGET, 10) == 1
    assert injection_count(make_metrics(DiversityLevel.HEALTHY), 10) == 0
    assert injection_count(BASELINE, 10) == 0
    assert injection_count(CRITICAL, 0) == 0
    for size in range(1, 30):
        assert 0 <= injection_count(CRITICAL, size) <= size


@pytest.mark.asyncio
async def test_empty_population_and_unknown_strategy_are_errors():
    promoter = DiversityPromoter()
    with pytest.raises(EmptyCollectionError):
        await promoter.promote([], CRITICAL)
    with pytest.raises(EmptyCollectionError):
        await promoter.promote([], CRITICAL, "nonsense")
    with pytest.raises(UnknownStrategyError):
        await promoter.promote(identical_population(), CRITICAL, "nonsense")


@pytest.mark.asyncio
async def test_random_injection_replaces_least_diverse_and_protects_best():
    population = identical_population()
    promoter = DiversityPromoter(PromoterConfig(seed=7))

    result = await promoter.promote(population, CRITICAL, "random_injection", matrix=dense(population, 1.0))

    assert len(result.replacements) == 1
    old_id, fresh = result.replacements[0]
    assert old_id == population[0].id
    assert fresh.metadata["origin"] == "diversity_injection"
    assert fresh.prompt.startswith("Solve this problem step by step.")
    assert fresh.prompt[len("Solve this problem step by step. "):] in FALLBACK_PHRASES
    assert population[-1].id not in result.replaced_ids
    assert len(result.candidates) == len(population)
    assert result.metadata["injection_count"] == 1


@pytest.mark.asyncio
async def test_explicit_injection_count_and_base_prompt():
    population = identical_population()
    promoter = DiversityPromoter(PromoterConfig(seed=1))

    result = await promoter.promote(
        population, BASELINE, "random_injection", injection_count=2, base_prompt="Answer concisely."
    )

    assert len(result.injected) == 2
    assert all(c.prompt.startswith("Answer concisely.") for c in result.injected)
    assert len({c.prompt for c in result.injected}) == 2


@pytest.mark.asyncio
async def test_zero_injection_is_a_successful_no_op():
    population = [Candidate.create(f"Distinct prompt {i}") for i in range(5)]
    promoter = DiversityPromoter()

    result = await promoter.promote(population, BASELINE, "all", matrix=dense(population, 0.0))

    assert not result.changed
    assert result.candidates == tuple(population)
    assert result.metadata["injection_count"] == 0
    assert result.metadata["targeted_diversification"] == "no_clusters"


@pytest.mark.asyncio
async def test_adaptive_mutation_leaves_population_unchanged():
    population = identical_population()
    result = await DiversityPromoter().promote(population, CRITICAL, PromotionStrategy.ADAPTIVE_MUTATION)

    assert result.candidates == tuple(population)
    assert result.mutation_rate == 0.4


@pytest.mark.asyncio
async def test_targeted_diversification_mutates_all_but_cluster_representative():
    population = identical_population(4)
    population.append(Candidate.create("Write a haiku about autumn leaves."))
    ids = [c.id for c in population]
    values = [[1.0 if (i < 4 and j < 4) else 0.0 for j in range(5)] for i in range(5)]
    matrix = SimilarityMatrix.from_dense(ids, values)
    generator = ScriptedGenerator(["Variant A", "Variant B", "Variant C"])
    promoter = DiversityPromoter(variant_generator=generator)

    result = await promoter.promote(population, CRITICAL, "targeted_diversification", matrix=matrix)

    representative = population[3].id
    assert result.metadata["clusters_found"] == 1
    assert result.metadata["targeted_diversification"] == "applied"
    assert set(result.replaced_ids) == set(ids[:3])
    assert representative not in result.replaced_ids
    assert all(c.metadata["cluster_representative"] == representative for c in result.diversified)
    assert all(c.parent_ids[0] in ids[:3] for c in result.diversified)
    assert sorted(c.prompt for c in result.diversified) == ["Variant A", "Variant B", "Variant C"]
    assert generator.requests == [(population[3].prompt, 3)]


class NumberedGenerator:
    """Deterministic generator: same template in, same numbered rewrites out."""

    async def generate(self, template, count):
        return [f"{template} rewritten #{i}" for i in range(count)]


@pytest.mark.asyncio
async def test_targeted_diversification_with_deterministic_generator_yields_distinct_prompts():
    population = identical_population(5)
    result = await DiversityPromoter(variant_generator=NumberedGenerator()).promote(
        population, CRITICAL, "targeted_diversification", matrix=dense(population, 1.0)
    )

    prompts = [c.prompt for c in result.diversified]
    assert len(prompts) == 4
    assert len(set(prompts)) == 4
    assert population[0].prompt not in prompts
    assert "variant_fallback" not in result.metadata


@pytest.mark.asyncio
@pytest.mark.parametrize("seed", range(12))
async def test_targeted_diversification_fallback_never_repeats_a_prompt(seed):
    population = identical_population(5)
    result = await DiversityPromoter(PromoterConfig(seed=seed)).promote(
        population, CRITICAL, "targeted_diversification", matrix=dense(population, 1.0)
    )

    prompts = [c.prompt for c in result.diversified]
    assert result.metadata["targeted_diversification"] == "applied"
    assert len(prompts) == 4
    assert len(set(prompts)) == 4
    assert population[0].prompt not in prompts


@pytest.mark.asyncio
async def test_generator_repeats_are_replaced_within_one_pass():
    population = identical_population(5)
    generator = ScriptedGenerator(["Same rewrite", "Same rewrite", population[0].prompt])

    result = await DiversityPromoter(PromoterConfig(seed=1), variant_generator=generator).promote(
        population, CRITICAL, "all", matrix=dense(population, 1.0)
    )

    prompts = [c.prompt for c in result.new_candidates]
    assert len(result.injected) == 1
    assert len(result.diversified) == 3
    assert len(set(prompts)) == len(prompts) == 4
    assert prompts.count("Same rewrite") == 1
    assert population[0].prompt not in prompts
    assert result.metadata["variant_fallback"] is True


@pytest.mark.asyncio
async def test_targeted_diversification_without_matrix_is_flagged():
    result = await DiversityPromoter().promote(identical_population(), CRITICAL, "targeted_diversification")

    assert not result.changed
    assert result.metadata["targeted_diversification"] == "skipped"


@pytest.mark.asyncio
async def test_generator_failure_falls_back_to_phrases():
    metrics = Metrics()
    promoter = DiversityPromoter(
        PromoterConfig(seed=3), variant_generator=ScriptedGenerator(error=RuntimeError("quota")), metrics=metrics
    )
    population = identical_population(10)

    result = await promoter.promote(population, CRITICAL, "random_injection")

    assert len(result.injected) == 3
    assert result.metadata["variant_fallback"] is True
    assert "quota" in result.metadata["variant_error"]
    assert metrics.variant_fallbacks == 1
    assert metrics.promotions_by_strategy["random_injection"] == 1
    assert metrics.candidates_injected == 3


@pytest.mark.asyncio
async def test_short_generator_output_is_topped_up():
    promoter = DiversityPromoter(variant_generator=ScriptedGenerator(["Only one variant"]))
    result = await promoter.promote(identical_population(10), CRITICAL, "random_injection")

    prompts = [c.prompt for c in result.injected]
    assert prompts[0] == "Only one variant"
    assert len(prompts) == 3
    assert result.metadata["variant_fallback"] is True


def test_fallback_variants_are_distinct_beyond_phrase_count():
    promoter = DiversityPromoter(PromoterConfig(seed=0))
    variants = promoter.fallback_variants("Base.", 15)

    assert len(variants) == 15
    assert len(set(variants)) == 15
    assert all(v.startswith("Base. ") for v in variants)


@pytest.mark.asyncio
async def test_apply_promotion_writes_replacements_into_store():
    store = PopulationStore()
    for candidate in identical_population():
        store.insert(candidate)
    snapshot = store.snapshot()
    result = await DiversityPromoter().promote(snapshot.candidates, CRITICAL, "random_injection")

    store.remove(result.replaced_ids[0])
    assert apply_promotion(store, result) == 0

    second = await DiversityPromoter().promote(store.snapshot().candidates, CRITICAL, "random_injection")
    assert apply_promotion(store, second) == 1
    assert second.new_candidates[0].id in store
    assert len(store) == 4


def test_promoter_config_validation():
    with pytest.raises(ValidationError):
        PromoterConfig(base_mutation_rate=0.6, max_mutation_rate=0.5)
    with pytest.raises(ValidationError):
        PromoterConfig(min_diversity_target=2.0)
