"""
Pairwise similarity strategies.

Each strategy is an async handler ``(a, b, ctx) -> (score, components)``
registered against a :class:`SimilarityStrategy` variant. Scores are in
[0, 1] with 1.0 meaning identical. Semantic and behavioral similarity call
out to collaborators held on the :class:`SimilarityContext`; when those are
missing the handler raises :class:`CollaboratorUnavailableError`.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterable, List, Sequence, Tuple

import numpy as np
from rapidfuzz.distance import Indel, Levenshtein

from evoprompt.errors import CollaboratorUnavailableError, ValidationError
from evoprompt.interfaces import Candidate, EmbeddingProvider, TraceProvider

from .types import DiversityConfig, SimilarityMatrix, SimilarityStrategy

logger = logging.getLogger(__name__)

StrategyHandler = Callable[[Candidate, Candidate, "SimilarityContext"], Awaitable[Tuple[float, Dict[str, Any]]]]

_PUNCT_RE = re.compile(r"[^\w\s]")


class SimilarityContext:
    """
    Per-analysis state for the similarity strategies.

    Holds the configuration, the optional collaborators and per-text
    embedding / per-candidate trajectory caches so each is fetched once.
    """

    def __init__(
        self,
        config: DiversityConfig | None = None,
        *,
        embedding_provider: EmbeddingProvider | None = None,
        trace_provider: TraceProvider | None = None,
    ) -> None:
        self.config = config or DiversityConfig()
        self.embedding_provider = embedding_provider
        self.trace_provider = trace_provider
        self._embeddings: Dict[str, np.ndarray] = {}
        self._trajectories: Dict[str, Tuple[str, ...]] = {}
        self._embedding_error: str | None = None

    async def prefetch_embeddings(self, texts: Iterable[str]) -> None:
        """
        Embed every uncached text in one provider call.

        A provider failure is remembered, so later pairs fail fast instead
        of calling the provider again.
        """
        missing = list(dict.fromkeys(t for t in texts if t not in self._embeddings))
        if not missing:
            return
        if self.embedding_provider is None:
            raise CollaboratorUnavailableError("semantic similarity needs an embedding provider")
        if self._embedding_error is not None:
            raise CollaboratorUnavailableError(f"embedding provider failed earlier: {self._embedding_error}")
        try:
            vectors = await self.embedding_provider.embed(missing)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._embedding_error = f"{type(exc).__name__}: {exc}"
            logger.warning("Embedding provider failed for %d texts: %s", len(missing), exc)
            raise CollaboratorUnavailableError(f"embedding provider failed: {exc}") from exc
        if len(vectors) != len(missing):
            raise ValidationError(f"embedding provider returned {len(vectors)} vectors for {len(missing)} texts")
        for text, vector in zip(missing, vectors):
            self._embeddings[text] = np.asarray(vector, dtype=float)

    async def embedding(self, text: str) -> np.ndarray:
        if text not in self._embeddings:
            await self.prefetch_embeddings([text])
        return self._embeddings[text]

    async def trajectory(self, candidate: Candidate) -> Tuple[str, ...]:
        cached = self._trajectories.get(candidate.id)
        if cached is not None:
            return cached
        steps: Sequence[Any] | None = None
        if self.trace_provider is not None:
            steps = await self.trace_provider.trace(candidate)
        elif isinstance(candidate.metadata.get("trajectory"), (list, tuple)):
            steps = candidate.metadata["trajectory"]
        if steps is None:
            raise CollaboratorUnavailableError(
                f"behavioral similarity needs a trace provider or trajectory metadata for {candidate.id}"
            )
        trajectory = tuple(str(step) for step in steps)
        self._trajectories[candidate.id] = trajectory
        return trajectory


# ---------------------------------------------------------------------- text

def tokenize(text: str) -> FrozenSet[str]:
    return frozenset(_PUNCT_RE.sub("", text.lower()).split())


def char_ngrams(text: str, n: int = 3) -> FrozenSet[str]:
    cleaned = _PUNCT_RE.sub("", text.lower())
    return frozenset(cleaned[i : i + n] for i in range(len(cleaned) - n + 1))


def jaccard(a: FrozenSet[Any], b: FrozenSet[Any]) -> float:
    union = len(a | b)
    if union == 0:
        return 0.0
    return len(a & b) / union


def text_similarity(text_a: str, text_b: str) -> Tuple[float, Dict[str, Any]]:
    """0.4 edit-distance similarity + 0.4 word Jaccard + 0.2 character-trigram Jaccard."""
    if text_a == text_b:
        return 1.0, {"levenshtein": 1.0, "jaccard": 1.0, "ngram": 1.0}
    lev = round(Levenshtein.normalized_similarity(text_a, text_b), 3)
    jac = round(jaccard(tokenize(text_a), tokenize(text_b)), 3)
    ngram = round(jaccard(char_ngrams(text_a), char_ngrams(text_b)), 3)
    score = round(lev * 0.4 + jac * 0.4 + ngram * 0.2, 3)
    return score, {"levenshtein": lev, "jaccard": jac, "ngram": ngram}


async def _text(a: Candidate, b: Candidate, ctx: SimilarityContext) -> Tuple[float, Dict[str, Any]]:
    return text_similarity(a.prompt, b.prompt)


# ---------------------------------------------------------------- structural

SEGMENT_PATTERNS: Dict[str, re.Pattern[str]] = {
    "role": re.compile(r"\byou are\b|\bact as\b|\bas an? (?:expert|assistant)\b", re.IGNORECASE),
    "instruction": re.compile(
        r"(?:^|[.!?]\s+)(?:solve|write|explain|calculate|describe|summari[sz]e|classify|answer|generate|"
        r"analy[sz]e|list|provide|give|create|identify|translate)\b",
        re.IGNORECASE,
    ),
    "example": re.compile(r"\bexamples?\b|\be\.g\.|\bfor instance\b", re.IGNORECASE),
    "constraint": re.compile(r"\bmust\b|\bshould\b|\bdon't\b|\bdo not\b|\bnever\b|\balways\b|\bonly\b", re.IGNORECASE),
    "steps": re.compile(r"\bsteps?\b|^\s*\d+[.)]\s|\bfirst\b|\bthen\b|\bfinally\b", re.IGNORECASE | re.MULTILINE),
    "question": re.compile(r"\?"),
    "format": re.compile(r"\bformat\b|\bjson\b|\bbullet|\brespond with\b|\banswer:", re.IGNORECASE),
}

_SEGMENT_SPLIT_RE = re.compile(r"(?<=[.!?])\s+|\n+")


def segment_types(text: str) -> FrozenSet[str]:
    return frozenset(name for name, pattern in SEGMENT_PATTERNS.items() if pattern.search(text))


def segment_count(text: str) -> int:
    return sum(1 for part in _SEGMENT_SPLIT_RE.split(text) if part.strip())


def structural_similarity(text_a: str, text_b: str) -> Tuple[float, Dict[str, Any]]:
    """0.6 segment-type Jaccard + 0.4 ratio of segment counts."""
    types_a, types_b = segment_types(text_a), segment_types(text_b)
    type_overlap = 1.0 if not types_a and not types_b else jaccard(types_a, types_b)
    count_a, count_b = segment_count(text_a), segment_count(text_b)
    count_ratio = min(count_a, count_b) / max(count_a, count_b) if max(count_a, count_b) else 1.0
    score = round(0.6 * type_overlap + 0.4 * count_ratio, 3)
    return score, {
        "segment_overlap": round(type_overlap, 3),
        "segment_count_ratio": round(count_ratio, 3),
        "segments_a": sorted(types_a),
        "segments_b": sorted(types_b),
    }


async def _structural(a: Candidate, b: Candidate, ctx: SimilarityContext) -> Tuple[float, Dict[str, Any]]:
    return structural_similarity(a.prompt, b.prompt)


# ------------------------------------------------------------------ semantic

def cosine_similarity(vec_a: np.ndarray, vec_b: np.ndarray) -> float:
    if vec_a.shape != vec_b.shape:
        raise ValidationError(f"embedding dimensions differ: {vec_a.shape} vs {vec_b.shape}")
    norm = float(np.linalg.norm(vec_a) * np.linalg.norm(vec_b))
    if norm == 0.0:
        return 0.0
    return float(np.dot(vec_a, vec_b) / norm)


async def _semantic(a: Candidate, b: Candidate, ctx: SimilarityContext) -> Tuple[float, Dict[str, Any]]:
    cosine = cosine_similarity(await ctx.embedding(a.prompt), await ctx.embedding(b.prompt))
    # Negative cosine means unrelated for our purposes.
    score = round(min(1.0, max(0.0, cosine)), 3)
    return score, {"cosine": round(cosine, 3)}


# ---------------------------------------------------------------- behavioral

def trajectory_similarity(steps_a: Sequence[str], steps_b: Sequence[str]) -> Tuple[float, Dict[str, Any]]:
    """0.5 step-set Jaccard + 0.5 order-aware Indel similarity over step sequences."""
    set_a, set_b = frozenset(steps_a), frozenset(steps_b)
    overlap = 1.0 if not set_a and not set_b else jaccard(set_a, set_b)
    order = Indel.normalized_similarity(list(steps_a), list(steps_b))
    score = round(0.5 * overlap + 0.5 * order, 3)
    return score, {"step_overlap": round(overlap, 3), "order_similarity": round(order, 3)}


async def _behavioral(a: Candidate, b: Candidate, ctx: SimilarityContext) -> Tuple[float, Dict[str, Any]]:
    return trajectory_similarity(await ctx.trajectory(a), await ctx.trajectory(b))


# ----------------------------------------------------------------- composite

async def _composite(a: Candidate, b: Candidate, ctx: SimilarityContext) -> Tuple[float, Dict[str, Any]]:
    weighted = 0.0
    total_weight = 0.0
    components: Dict[str, Any] = {}
    unavailable: List[str] = []
    for name, weight in ctx.config.composite_weights.items():
        if weight <= 0:
            continue
        strategy = SimilarityStrategy(name)
        try:
            score, _ = await STRATEGY_HANDLERS[strategy](a, b, ctx)
        except CollaboratorUnavailableError:
            unavailable.append(name)
            continue
        components[name] = score
        weighted += weight * score
        total_weight += weight
    if total_weight == 0.0:
        raise CollaboratorUnavailableError(f"no composite component available (skipped: {unavailable})")
    components["weights_used"] = {name: ctx.config.composite_weights[name] for name in components}
    if unavailable:
        components["unavailable"] = unavailable
    return round(weighted / total_weight, 3), components


STRATEGY_HANDLERS: Dict[SimilarityStrategy, StrategyHandler] = {
    SimilarityStrategy.TEXT: _text,
    SimilarityStrategy.STRUCTURAL: _structural,
    SimilarityStrategy.SEMANTIC: _semantic,
    SimilarityStrategy.BEHAVIORAL: _behavioral,
    SimilarityStrategy.COMPOSITE: _composite,
}


def register_strategy(strategy: SimilarityStrategy | str, handler: StrategyHandler) -> StrategyHandler:
    """Replace the handler for a strategy variant; returns the previous one."""
    parsed = SimilarityStrategy.parse(strategy)
    previous = STRATEGY_HANDLERS[parsed]
    STRATEGY_HANDLERS[parsed] = handler
    return previous


# ---------------------------------------------------------------- clustering

def find_clusters(matrix: SimilarityMatrix, threshold: float) -> List[List[str]]:
    """
    Connected groups of near-duplicates (score >= threshold), via union-find.

    Singletons are omitted. Members keep matrix order and clusters are
    ordered by their first member.
    """
    parent = {candidate_id: candidate_id for candidate_id in matrix.ids}

    def find(node: str) -> str:
        while parent[node] != node:
            parent[node] = parent[parent[node]]
            node = parent[node]
        return node

    for a, b, score in matrix:
        if score >= threshold:
            root_a, root_b = find(a), find(b)
            if root_a != root_b:
                parent[root_b] = root_a

    groups: Dict[str, List[str]] = {}
    for candidate_id in matrix.ids:
        groups.setdefault(find(candidate_id), []).append(candidate_id)
    return [members for members in groups.values() if len(members) > 1]


def find_duplicates(matrix: SimilarityMatrix, threshold: float = 0.85) -> List[Tuple[str, str, float]]:
    """Near-duplicate pairs at or above ``threshold``, most similar first."""
    return matrix.pairs_at_or_above(threshold)
