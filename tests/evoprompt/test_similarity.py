"""Tests for the similarity strategies and the diversity engine facade."""

import pytest

from evoprompt.diversity.engine import DiversityEngine
from evoprompt.diversity.similarity import (
    SimilarityContext,
    find_clusters,
    find_duplicates,
    structural_similarity,
    text_similarity,
    trajectory_similarity,
)
from evoprompt.diversity.types import DiversityConfig, SimilarityMatrix, SimilarityStrategy
from evoprompt.errors import CollaboratorUnavailableError, EmptyCollectionError, NotFoundError, UnknownStrategyError
from evoprompt.interfaces import Candidate


class FakeEmbeddings:
    """Embedding provider backed by a lookup table."""

    def __init__(self, vectors, fail=False):
        self.vectors = vectors
        self.fail = fail
        self.calls = 0

    async def embed(self, texts):
        self.calls += 1
        if self.fail:
            raise ConnectionError("embedding service unreachable")
        return [self.vectors[text] for text in texts]


def test_identical_text_is_fully_similar():
    score, components = text_similarity("Solve step by step.", "Solve step by step.")
    assert score == 1.0
    assert components["levenshtein"] == 1.0


def test_text_similarity_orders_near_and_far_pairs():
    base = "Solve this math problem step by step."
    near, _ = text_similarity(base, "Solve this math problem carefully step by step.")
    far, _ = text_similarity(base, "Translate the poem into French verse.")

    assert 0.0 <= far < near < 1.0


def test_structural_similarity_uses_segment_types():
    a = "You are an expert tutor. Solve the problem. Always show your steps."
    b = "You are a helpful assistant. Explain the answer. Never skip steps."
    c = "Banana."

    same_shape, components = structural_similarity(a, b)
    different_shape, _ = structural_similarity(a, c)

    assert "role" in components["segments_a"]
    assert same_shape > different_shape


def test_trajectory_similarity_rewards_order():
    same, _ = trajectory_similarity(["parse", "plan", "solve"], ["parse", "plan", "solve"])
    shuffled, _ = trajectory_similarity(["parse", "plan", "solve"], ["solve", "plan", "parse"])

    assert same == 1.0
    assert shuffled < same


@pytest.mark.asyncio
async def test_semantic_strategy_uses_embedding_provider():
    provider = FakeEmbeddings({"alpha": [1.0, 0.0], "beta": [0.0, 1.0], "gamma": [-1.0, 0.0]})
    engine = DiversityEngine(embedding_provider=provider)
    a, b, c = (Candidate.create(text) for text in ["alpha", "beta", "gamma"])

    orthogonal = await engine.compute_similarity(a, b, "semantic")
    opposite = await engine.compute_similarity(a, c, SimilarityStrategy.SEMANTIC)

    assert orthogonal.score == 0.0
    assert opposite.score == 0.0
    assert opposite.components["cosine"] == -1.0


@pytest.mark.asyncio
async def test_semantic_without_provider_is_unavailable():
    engine = DiversityEngine()
    with pytest.raises(CollaboratorUnavailableError):
        await engine.compute_similarity(Candidate.create("a"), Candidate.create("b"), "semantic")


@pytest.mark.asyncio
async def test_behavioral_strategy_reads_trajectory_metadata():
    engine = DiversityEngine()
    a = Candidate.create("a", metadata={"trajectory": ["read", "plan", "answer"]})
    b = Candidate.create("b", metadata={"trajectory": ["read", "plan", "answer"]})
    c = Candidate.create("c")

    result = await engine.compute_similarity(a, b, "behavioral")
    assert result.score == 1.0
    with pytest.raises(CollaboratorUnavailableError):
        await engine.compute_similarity(a, c, "behavioral")


@pytest.mark.asyncio
async def test_behavioral_strategy_prefers_trace_provider():
    class Traces:
        async def trace(self, candidate):
            return ["step"] if "short" in candidate.prompt else ["step", "check", "answer"]

    engine = DiversityEngine(trace_provider=Traces())
    result = await engine.compute_similarity(Candidate.create("short"), Candidate.create("long"), "behavioral")
    assert 0.0 < result.score < 1.0


@pytest.mark.asyncio
async def test_composite_renormalizes_over_available_components():
    engine = DiversityEngine()
    a = Candidate.create("You are a tutor. Solve the problem step by step.")
    b = Candidate.create("You are a coach. Explain the solution in detail.")

    result = await engine.compute_similarity(a, b, "composite")
    text_score, _ = text_similarity(a.prompt, b.prompt)
    structural_score, _ = structural_similarity(a.prompt, b.prompt)

    expected = round((0.4 * text_score + 0.2 * structural_score) / 0.6, 3)
    assert result.score == pytest.approx(expected, abs=1e-3)
    assert sorted(result.components["unavailable"]) == ["behavioral", "semantic"]


@pytest.mark.asyncio
async def test_unknown_strategy_is_rejected():
    engine = DiversityEngine()
    with pytest.raises(UnknownStrategyError):
        await engine.compute_similarity(Candidate.create("a"), Candidate.create("b"), "telepathic")
    with pytest.raises(UnknownStrategyError):
        DiversityConfig(similarity_strategy="telepathic")


@pytest.mark.asyncio
async def test_matrix_covers_all_unordered_pairs():
    engine = DiversityEngine()
    population = [Candidate.create(f"Prompt variant number {i}") for i in range(4)]

    matrix = await engine.compute_matrix(population)

    assert matrix.size == 4
    assert matrix.pair_count == 6
    a, b = population[0].id, population[1].id
    assert matrix.get(a, b) == matrix.get(b, a)
    assert matrix.get(a, a) == 1.0
    with pytest.raises(NotFoundError):
        matrix.get(a, "cand_missing")
    with pytest.raises(AttributeError):
        matrix.strategy = SimilarityStrategy.SEMANTIC


@pytest.mark.asyncio
async def test_matrix_records_failed_pairs_and_remembers_provider_failure():
    provider = FakeEmbeddings({}, fail=True)
    engine = DiversityEngine(embedding_provider=provider)
    population = [Candidate.create(text) for text in ["one", "two", "three"]]

    matrix = await engine.compute_matrix(population, "semantic")

    assert matrix.pair_count == 0
    assert len(matrix.failed_pairs) == 3
    assert "CollaboratorUnavailableError" in matrix.failed_pairs[0].reason
    assert provider.calls == 1


@pytest.mark.asyncio
async def test_analysis_without_any_scored_pair_is_not_reported_as_diverse():
    engine = DiversityEngine()
    population = [Candidate.create("Solve this problem step by step.") for _ in range(5)]

    with pytest.raises(CollaboratorUnavailableError, match="all 10 similarity pairs failed"):
        await engine.analyze(population, strategy="semantic")

    report = await engine.analyze(population[:1], strategy="semantic")
    assert report.metrics.population_size == 1


@pytest.mark.asyncio
async def test_empty_population_matrix_is_an_error():
    with pytest.raises(EmptyCollectionError):
        await DiversityEngine().compute_matrix([])


@pytest.mark.asyncio
async def test_embedding_cache_avoids_repeat_calls():
    provider = FakeEmbeddings({"x": [1.0, 2.0], "y": [2.0, 1.0]})
    ctx = SimilarityContext(embedding_provider=provider)

    await ctx.prefetch_embeddings(["x", "y", "x"])
    await ctx.embedding("x")

    assert provider.calls == 1


def test_clusters_and_duplicates():
    ids = ["a", "b", "c", "d", "e"]
    values = [
        [1.0, 0.9, 0.1, 0.0, 0.0],
        [0.9, 1.0, 0.88, 0.0, 0.0],
        [0.1, 0.88, 1.0, 0.0, 0.0],
        [0.0, 0.0, 0.0, 1.0, 0.95],
        [0.0, 0.0, 0.0, 0.95, 1.0],
    ]
    matrix = SimilarityMatrix.from_dense(ids, values)

    assert find_clusters(matrix, 0.85) == [["a", "b", "c"], ["d", "e"]]
    assert find_duplicates(matrix, 0.85) == [("d", "e", 0.95), ("a", "b", 0.9), ("b", "c", 0.88)]
    assert find_clusters(matrix, 0.99) == []
