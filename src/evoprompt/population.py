"""
Population store: the authoritative set of candidates and their fitness.

All mutating methods are synchronous and never await, so within one event
loop they are serialized relative to each other. Candidates are frozen
dataclasses; ``snapshot()`` therefore hands the diversity engine an immutable
view that later mutations cannot disturb.
"""

from __future__ import annotations

import json
import logging
import math
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Sequence, Tuple

from .errors import NotFoundError, ValidationError
from .interfaces import Candidate

logger = logging.getLogger(__name__)

_FORMAT_VERSION = 1


@dataclass(frozen=True)
class PopulationSnapshot:
    """Immutable view of the population at a well-defined point."""

    generation: int
    candidates: Tuple[Candidate, ...]
    taken_at: float

    def __len__(self) -> int:
        return len(self.candidates)

    def __iter__(self) -> Iterator[Candidate]:
        return iter(self.candidates)

    @property
    def ids(self) -> Tuple[str, ...]:
        return tuple(candidate.id for candidate in self.candidates)


@dataclass(frozen=True)
class PopulationStatistics:
    size: int
    capacity: int | None
    evaluated: int
    unevaluated: int
    generation: int
    best_fitness: float | None
    avg_fitness: float | None
    unique_ratio: float


class PopulationStore:
    """
    Generation-scoped collection of candidates keyed by id.

    Parameters:
        capacity: Optional maximum size. When full, a new candidate is only
            admitted if it carries a fitness better than the worst evaluated
            member, which it then evicts.
        generation: Starting generation number.
    """

    def __init__(self, capacity: int | None = None, *, generation: int = 0) -> None:
        if capacity is not None and capacity <= 0:
            raise ValidationError(f"capacity must be positive, got {capacity}")
        if generation < 0:
            raise ValidationError(f"generation must be non-negative, got {generation}")
        self.capacity = capacity
        self._generation = generation
        self._candidates: Dict[str, Candidate] = {}
        self.created_at = time.time()
        self.updated_at = self.created_at

    # ------------------------------------------------------------------ queries

    @property
    def generation(self) -> int:
        return self._generation

    def __len__(self) -> int:
        return len(self._candidates)

    def __contains__(self, candidate_id: object) -> bool:
        return candidate_id in self._candidates

    def __iter__(self) -> Iterator[Candidate]:
        return iter(list(self._candidates.values()))

    def candidates(self) -> List[Candidate]:
        return list(self._candidates.values())

    def get(self, candidate_id: str) -> Candidate:
        try:
            return self._candidates[candidate_id]
        except KeyError:
            raise NotFoundError("candidate", candidate_id) from None

    def find(self, candidate_id: str) -> Candidate | None:
        return self._candidates.get(candidate_id)

    def evaluated_candidates(self) -> List[Candidate]:
        """Candidates with fitness set, in insertion order."""
        return [c for c in self._candidates.values() if c.fitness is not None]

    def unevaluated_candidates(self) -> List[Candidate]:
        return [c for c in self._candidates.values() if c.fitness is None]

    def best_candidate(self) -> Candidate | None:
        """Highest-fitness evaluated candidate, or ``None`` if nothing is evaluated yet."""
        evaluated = self.evaluated_candidates()
        if not evaluated:
            return None
        # max() keeps the first of equal maxima, so ties go to the earliest insert.
        return max(evaluated, key=lambda c: c.fitness)  # type: ignore[arg-type, return-value]

    def get_best(self, limit: int = 10, min_fitness: float | None = None) -> List[Candidate]:
        evaluated = self.evaluated_candidates()
        if min_fitness is not None:
            evaluated = [c for c in evaluated if c.fitness >= min_fitness]  # type: ignore[operator]
        evaluated.sort(key=lambda c: c.fitness, reverse=True)  # type: ignore[arg-type, return-value]
        return evaluated[:limit]

    def snapshot(self) -> PopulationSnapshot:
        return PopulationSnapshot(
            generation=self._generation,
            candidates=tuple(self._candidates.values()),
            taken_at=time.time(),
        )

    def statistics(self) -> PopulationStatistics:
        candidates = list(self._candidates.values())
        scores = [c.fitness for c in candidates if c.fitness is not None]
        unique_prompts = len({c.prompt for c in candidates})
        return PopulationStatistics(
            size=len(candidates),
            capacity=self.capacity,
            evaluated=len(scores),
            unevaluated=len(candidates) - len(scores),
            generation=self._generation,
            best_fitness=max(scores) if scores else None,
            avg_fitness=sum(scores) / len(scores) if scores else None,
            unique_ratio=unique_prompts / len(candidates) if candidates else 1.0,
        )

    # ---------------------------------------------------------------- mutations

    def add(
        self,
        prompt: str,
        *,
        parent_ids: Sequence[str] = (),
        metadata: Dict[str, Any] | None = None,
        fitness: float | None = None,
    ) -> Candidate:
        """Create a candidate in the current generation and insert it."""
        candidate = Candidate.create(prompt, generation=self._generation, parent_ids=parent_ids, metadata=metadata)
        if fitness is not None:
            candidate = candidate.with_fitness(_validated_fitness(fitness))
        return self.insert(candidate)

    def insert(self, candidate: Candidate) -> Candidate:
        _validate_candidate(candidate)
        if candidate.id in self._candidates:
            raise ValidationError(f"duplicate candidate id {candidate.id!r}")
        if candidate.fitness is not None:
            _validated_fitness(candidate.fitness)

        if self.capacity is not None and len(self._candidates) >= self.capacity:
            worst = self._worst_evaluated()
            if candidate.fitness is None or worst is None or candidate.fitness <= worst.fitness:  # type: ignore[operator]
                raise ValidationError(f"population full (capacity {self.capacity})")
            logger.debug("Evicting %s (fitness=%s) for %s", worst.id, worst.fitness, candidate.id)
            del self._candidates[worst.id]

        self._candidates[candidate.id] = candidate
        self._touch()
        return candidate

    def update_fitness(self, candidate_id: str, value: float) -> Candidate:
        """Overwrite fitness for the current evaluation pass."""
        current = self._candidates.get(candidate_id)
        if current is None:
            raise NotFoundError("candidate", candidate_id)
        updated = current.with_fitness(_validated_fitness(value))
        self._candidates[candidate_id] = updated
        self._touch()
        return updated

    def remove(self, candidate_id: str) -> Candidate:
        try:
            removed = self._candidates.pop(candidate_id)
        except KeyError:
            raise NotFoundError("candidate", candidate_id) from None
        self._touch()
        return removed

    def replace(self, old_id: str, new_candidate: Candidate) -> Candidate:
        """Swap ``old_id`` for ``new_candidate`` in place, keeping insertion order."""
        if old_id not in self._candidates:
            raise NotFoundError("candidate", old_id)
        _validate_candidate(new_candidate)
        if new_candidate.id != old_id and new_candidate.id in self._candidates:
            raise ValidationError(f"duplicate candidate id {new_candidate.id!r}")
        self._candidates = {
            (new_candidate.id if key == old_id else key): (new_candidate if key == old_id else value)
            for key, value in self._candidates.items()
        }
        self._touch()
        return new_candidate

    def next_generation(self) -> int:
        self._generation += 1
        self._touch()
        return self._generation

    def _worst_evaluated(self) -> Candidate | None:
        evaluated = self.evaluated_candidates()
        if not evaluated:
            return None
        return min(evaluated, key=lambda c: c.fitness)  # type: ignore[arg-type, return-value]

    def _touch(self) -> None:
        self.updated_at = time.time()

    # -------------------------------------------------------------- persistence

    def save(self, path: str | os.PathLike[str]) -> None:
        """Write a JSON checkpoint of the population."""
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "version": _FORMAT_VERSION,
            "capacity": self.capacity,
            "generation": self._generation,
            "saved_at": time.time(),
            "candidates": [c.to_dict() for c in self._candidates.values()],
        }
        tmp = target.with_suffix(target.suffix + ".tmp")
        tmp.write_text(json.dumps(payload), encoding="utf-8")
        os.replace(tmp, target)
        logger.info("Population saved (path=%s, size=%d)", target, len(self._candidates))

    @classmethod
    def load(cls, path: str | os.PathLike[str]) -> "PopulationStore":
        source = Path(path)
        if not source.exists():
            raise NotFoundError("population checkpoint", str(source))
        try:
            payload = json.loads(source.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ValidationError(f"invalid population checkpoint {source}: {exc}") from exc
        if not isinstance(payload, dict) or "version" not in payload:
            raise ValidationError(f"invalid population checkpoint {source}: missing version")
        if payload["version"] != _FORMAT_VERSION:
            raise ValidationError(f"unsupported population checkpoint version {payload['version']!r}")

        store = cls(capacity=payload.get("capacity"), generation=int(payload.get("generation", 0)))
        for record in payload.get("candidates", []):
            candidate = Candidate.from_dict(record)
            _validate_candidate(candidate)
            store._candidates[candidate.id] = candidate
        logger.info("Population loaded (path=%s, size=%d)", source, len(store))
        return store


def _validate_candidate(candidate: Candidate) -> None:
    if not isinstance(candidate, Candidate):
        raise ValidationError(f"expected Candidate, got {type(candidate).__name__}")
    if not candidate.id:
        raise ValidationError("candidate id must be non-empty")
    if not isinstance(candidate.prompt, str) or not candidate.prompt.strip():
        raise ValidationError(f"candidate {candidate.id!r} has empty prompt text")


def _validated_fitness(value: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise ValidationError(f"fitness must be a finite real number, got {value!r}")
    return float(value)
