"""
Core data contracts shared across evoprompt modules.

These dataclasses mirror the artifacts produced and consumed by the
evolution loop, allowing the scheduler, population store and diversity
engine to remain loosely coupled.
"""

from __future__ import annotations

import hashlib
import math
import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Protocol, Sequence, Tuple, Union, runtime_checkable

from .errors import EvaluationError, ValidationError


def new_candidate_id() -> str:
    return f"cand_{uuid.uuid4().hex[:12]}"


@dataclass(frozen=True)
class Candidate:
    """One prompt variant under optimization."""

    id: str
    prompt: str
    generation: int = 0
    fitness: float | None = None
    parent_ids: Tuple[str, ...] = ()
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)
    evaluated_at: float | None = None

    @classmethod
    def create(
        cls,
        prompt: str,
        *,
        generation: int = 0,
        parent_ids: Sequence[str] = (),
        metadata: Mapping[str, Any] | None = None,
        candidate_id: str | None = None,
    ) -> "Candidate":
        """Build a candidate with a freshly generated id."""
        return cls(
            id=candidate_id or new_candidate_id(),
            prompt=prompt,
            generation=generation,
            parent_ids=tuple(parent_ids),
            metadata=dict(metadata or {}),
        )

    @property
    def is_evaluated(self) -> bool:
        return self.fitness is not None

    @property
    def fingerprint(self) -> str:
        """Stable identifier derived from the prompt text."""
        return hashlib.sha256(self.prompt.encode("utf-8")).hexdigest()

    def with_fitness(self, fitness: float) -> "Candidate":
        return replace(self, fitness=float(fitness), evaluated_at=time.time())

    def with_meta(self, **updates: Any) -> "Candidate":
        """Return a new candidate with additional metadata merged in."""
        merged = dict(self.metadata)
        merged.update(updates)
        return replace(self, metadata=merged)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "prompt": self.prompt,
            "generation": self.generation,
            "fitness": self.fitness,
            "parent_ids": list(self.parent_ids),
            "metadata": dict(self.metadata),
            "created_at": self.created_at,
            "evaluated_at": self.evaluated_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Candidate":
        try:
            return cls(
                id=str(data["id"]),
                prompt=str(data["prompt"]),
                generation=int(data.get("generation", 0)),
                fitness=data.get("fitness"),
                parent_ids=tuple(data.get("parent_ids") or ()),
                metadata=dict(data.get("metadata") or {}),
                created_at=float(data.get("created_at", time.time())),
                evaluated_at=data.get("evaluated_at"),
            )
        except KeyError as exc:
            raise ValidationError(f"candidate record missing field {exc.args[0]!r}") from exc


@dataclass
class EvalOutcome:
    """
    Result of running an evaluator on one candidate.

    Exactly one of ``fitness`` / ``error`` is meaningful: a failed evaluation
    carries an :class:`EvaluationError` and no fitness.
    """

    fitness: float | None
    metrics: Dict[str, Any] = field(default_factory=dict)
    error: EvaluationError | None = None
    duration_s: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None and self.fitness is not None

    @classmethod
    def failure(cls, error: EvaluationError, duration_s: float = 0.0) -> "EvalOutcome":
        return cls(fitness=None, error=error, duration_s=duration_s)


def coerce_outcome(raw: Any, *, duration_s: float = 0.0) -> EvalOutcome:
    """
    Normalize whatever an evaluator returned into an :class:`EvalOutcome`.

    Accepts a bare number, a mapping with a ``quality`` (or ``fitness``) key,
    or an ``EvalOutcome``. Non-finite fitness becomes an ``invalid_fitness`` error.
    """
    if isinstance(raw, EvalOutcome):
        outcome = raw
        if not outcome.duration_s:
            outcome.duration_s = duration_s
    elif isinstance(raw, bool):
        outcome = EvalOutcome(fitness=1.0 if raw else 0.0, duration_s=duration_s)
    elif isinstance(raw, (int, float)):
        outcome = EvalOutcome(fitness=float(raw), duration_s=duration_s)
    elif isinstance(raw, Mapping):
        value = raw.get("quality", raw.get("fitness"))
        metrics = {k: v for k, v in raw.items() if k not in ("quality", "fitness")}
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            return EvalOutcome.failure(
                EvaluationError("evaluator returned no numeric 'quality'", kind="invalid_fitness"),
                duration_s,
            )
        outcome = EvalOutcome(fitness=float(value), metrics=metrics, duration_s=duration_s)
    else:
        return EvalOutcome.failure(
            EvaluationError(f"unsupported evaluator result {type(raw).__name__}", kind="invalid_fitness"),
            duration_s,
        )

    if outcome.error is None and (outcome.fitness is None or not math.isfinite(outcome.fitness)):
        return EvalOutcome.failure(
            EvaluationError(f"non-finite fitness {outcome.fitness!r}", kind="invalid_fitness"),
            duration_s,
        )
    return outcome


EvaluatorResult = Union[float, Mapping[str, Any], EvalOutcome]
Evaluator = Callable[[Candidate], Awaitable[EvaluatorResult]]


@runtime_checkable
class EmbeddingProvider(Protocol):
    """External embedding service used by the semantic similarity strategy."""

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:  # pragma: no cover - interface definition only
        ...


@runtime_checkable
class TraceProvider(Protocol):
    """External execution collaborator returning a candidate's step trajectory."""

    async def trace(self, candidate: Candidate) -> Sequence[str]:  # pragma: no cover - interface definition only
        ...


@runtime_checkable
class VariantGenerator(Protocol):
    """External mutation operator producing ``count`` new prompt texts from ``template``."""

    async def generate(self, template: str, count: int) -> List[str]:  # pragma: no cover - interface definition only
        ...
