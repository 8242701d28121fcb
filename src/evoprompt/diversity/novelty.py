"""
Novelty scoring.

Two flavours:

- population novelty (``DiversityEngine.compute_novelty``): mean distance,
  ``1 - similarity`` under the configured strategy, to the k nearest members
  of the current population;
- archive novelty (:class:`NoveltyArchive`): mean euclidean distance in a
  small behavioural feature space to the k nearest prompts seen in earlier
  generations.

Both are independent of fitness; ``combine_fitness_novelty`` blends them.
"""

from __future__ import annotations

import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Sequence, Tuple

import numpy as np

from evoprompt.errors import UnknownStrategyError, ValidationError
from evoprompt.interfaces import Candidate

from .types import NoveltyScore

DEFAULT_K = 5
MAX_ARCHIVE_SIZE = 50

_CONSTRAINT_MARKERS = ("must", "should", "don't")


def behavioral_features(text: str) -> Tuple[float, ...]:
    """[length/1000, words/100, mentions example, mentions step, has constraint words]."""
    lowered = text.lower()
    return (
        len(text) / 1000.0,
        len(text.split()) / 100.0,
        1.0 if "example" in lowered else 0.0,
        1.0 if "step" in lowered else 0.0,
        1.0 if any(marker in lowered for marker in _CONSTRAINT_MARKERS) else 0.0,
    )


def euclidean_distance(a: Sequence[float], b: Sequence[float]) -> float:
    size = min(len(a), len(b))
    return float(np.linalg.norm(np.asarray(a[:size], dtype=float) - np.asarray(b[:size], dtype=float)))


def knn_novelty(
    candidate_id: str,
    distances: Sequence[Tuple[str, float]],
    k: int = DEFAULT_K,
    *,
    features: Sequence[float] = (),
    **metadata: object,
) -> NoveltyScore:
    """Build a :class:`NoveltyScore` from (neighbour id, distance) pairs."""
    if k < 1:
        raise ValidationError(f"k must be >= 1, got {k}")
    if not distances:
        return NoveltyScore(
            candidate_id=candidate_id,
            novelty_score=1.0,
            k_nearest_distance=1.0,
            k_used=0,
            behavioral_features=tuple(features),
            metadata={"neighbors": 0, **metadata},
        )
    nearest = sorted(distances, key=lambda item: item[1])[:k]
    mean_distance = sum(d for _, d in nearest) / len(nearest)
    return NoveltyScore(
        candidate_id=candidate_id,
        novelty_score=round(min(1.0, mean_distance), 3),
        k_nearest_distance=round(mean_distance, 3),
        k_used=len(nearest),
        neighbor_ids=tuple(neighbor for neighbor, _ in nearest),
        behavioral_features=tuple(features),
        metadata={"neighbors": len(distances), "nearest_distances": [round(d, 3) for _, d in nearest], **metadata},
    )


def combine_fitness_novelty(fitness: float, novelty: float, novelty_weight: float = 0.2) -> float:
    if not 0.0 <= novelty_weight <= 1.0:
        raise ValidationError(f"novelty_weight must be in [0, 1], got {novelty_weight}")
    return round(fitness * (1.0 - novelty_weight) + novelty * novelty_weight, 3)


class ArchiveStrategy(str, Enum):
    RANDOM = "random"
    RECENT = "recent"
    DIVERSE = "diverse"

    @classmethod
    def parse(cls, value: "ArchiveStrategy | str") -> "ArchiveStrategy":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise UnknownStrategyError("archive selection", value) from None


@dataclass(frozen=True)
class ArchiveEntry:
    id: str
    text: str
    features: Tuple[float, ...]
    added_at: float = field(default_factory=time.time)


class NoveltyArchive:
    """Bounded archive of past prompts in behavioural feature space."""

    def __init__(
        self,
        max_size: int = MAX_ARCHIVE_SIZE,
        selection_strategy: ArchiveStrategy | str = ArchiveStrategy.DIVERSE,
        *,
        seed: int | None = None,
    ) -> None:
        if max_size < 1:
            raise ValidationError(f"max_size must be >= 1, got {max_size}")
        self.max_size = max_size
        self.selection_strategy = ArchiveStrategy.parse(selection_strategy)
        self._rng = random.Random(seed)
        self._entries: List[ArchiveEntry] = []

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> Tuple[ArchiveEntry, ...]:
        return tuple(self._entries)

    @property
    def ids(self) -> Tuple[str, ...]:
        return tuple(entry.id for entry in self._entries)

    def score(self, candidate: Candidate, k: int = DEFAULT_K) -> NoveltyScore:
        features = behavioral_features(candidate.prompt)
        distances = [(entry.id, euclidean_distance(features, entry.features)) for entry in self._entries]
        return knn_novelty(candidate.id, distances, k, features=features, archive_size=len(self._entries))

    def score_all(self, candidates: Iterable[Candidate], k: int = DEFAULT_K) -> List[NoveltyScore]:
        return [self.score(candidate, k) for candidate in candidates]

    def update(self, candidates: Iterable[Candidate]) -> None:
        """Add candidates, then trim back to ``max_size`` using the selection strategy."""
        now = time.time()
        combined = list(self._entries)
        for candidate in candidates:
            combined.append(ArchiveEntry(candidate.id, candidate.prompt, behavioral_features(candidate.prompt), now))
        if len(combined) <= self.max_size:
            self._entries = combined
            return

        if self.selection_strategy is ArchiveStrategy.RANDOM:
            self._entries = self._rng.sample(combined, self.max_size)
        elif self.selection_strategy is ArchiveStrategy.RECENT:
            # Stable sort keeps insertion order among entries added together.
            ordered = sorted(enumerate(combined), key=lambda item: (item[1].added_at, item[0]), reverse=True)
            self._entries = [entry for _, entry in ordered[: self.max_size]]
        else:
            self._entries = self._select_diverse(combined)

    def _select_diverse(self, entries: List[ArchiveEntry]) -> List[ArchiveEntry]:
        # Greedy farthest-point selection from a random starting entry.
        pool = list(entries)
        self._rng.shuffle(pool)
        selected = [pool.pop(0)]
        while pool and len(selected) < self.max_size:
            best_index = max(
                range(len(pool)),
                key=lambda i: min(euclidean_distance(pool[i].features, chosen.features) for chosen in selected),
            )
            selected.append(pool.pop(best_index))
        return selected
