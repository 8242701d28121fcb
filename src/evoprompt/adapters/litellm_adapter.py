"""
litellm-backed collaborators.

``LiteLLMEvaluator`` runs a candidate prompt as the system message against
task examples and scores the completions with :mod:`evoprompt.scoring`.
``LiteLLMEmbeddingProvider`` serves semantic similarity and
``LiteLLMVariantGenerator`` writes prompt variants for diversity injection.
litellm is imported lazily inside each call.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Sequence

from evoprompt.dispatcher import EvaluationDispatcher, TaskType
from evoprompt.errors import EvaluationError, ValidationError
from evoprompt.interfaces import Candidate
from evoprompt.scoring import score_response


@dataclass
class ModelConfig:
    """Configuration for an LLM call."""

    name: str
    temperature: float | None = None
    max_tokens: int | None = 2048
    reasoning_effort: str | None = None


def _as_model(model: ModelConfig | str) -> ModelConfig:
    return model if isinstance(model, ModelConfig) else ModelConfig(name=model)


def _completion_kwargs(model: ModelConfig, messages: List[Dict[str, str]]) -> Dict[str, Any]:
    completion_kwargs: Dict[str, Any] = {"model": model.name, "messages": messages}
    if model.max_tokens is not None:
        completion_kwargs["max_tokens"] = model.max_tokens
    if model.temperature is not None:
        completion_kwargs["temperature"] = model.temperature
    if model.reasoning_effort is not None:
        completion_kwargs["reasoning_effort"] = model.reasoning_effort
    return completion_kwargs


async def _complete(completion_kwargs: Dict[str, Any]) -> Any:
    from litellm import acompletion

    try:
        return await acompletion(**completion_kwargs)
    except Exception as e:
        # Some models reject a custom temperature; retry once without it.
        if "temperature" in str(e).lower() and completion_kwargs.get("temperature") is not None:
            retry_kwargs = {k: v for k, v in completion_kwargs.items() if k != "temperature"}
            return await acompletion(**retry_kwargs)
        raise


def _content(response: Any) -> str:
    return response.choices[0].message.content or ""


def _total_tokens(response: Any) -> int:
    usage = getattr(response, "usage", None)
    return int(getattr(usage, "total_tokens", 0) or 0)


class LiteLLMEvaluator:
    """
    Scores a candidate prompt by running it on task examples.

    A task is a mapping with an ``input`` (or ``question`` / ``prompt``) plus
    the expectation keys the task-type scorer reads; ``task["examples"]``
    holds several such mappings and their qualities are averaged.

    Use the instance directly as a scheduler evaluator, or call
    :meth:`dispatcher` to route every task type through it.
    """

    def __init__(
        self,
        task_model: ModelConfig | str,
        *,
        task_type: TaskType | str | None = None,
        task: Mapping[str, Any] | None = None,
        max_parallel_examples: int = 4,
    ) -> None:
        self.task_model = _as_model(task_model)
        self.task_type = TaskType.parse(task_type)
        self.task = dict(task or {})
        self.max_parallel_examples = max(1, max_parallel_examples)

    async def __call__(self, candidate: Candidate) -> Dict[str, Any]:
        return await self.evaluate(candidate, self.task, self.task_type)

    def handler_for(self, task_type: TaskType | str):
        parsed = TaskType.parse(task_type)

        async def _handle(candidate: Candidate, task: Mapping[str, Any]) -> Dict[str, Any]:
            return await self.evaluate(candidate, task or self.task, parsed)

        return _handle

    def dispatcher(self) -> EvaluationDispatcher:
        handlers = {task_type: self.handler_for(task_type) for task_type in TaskType if task_type is not TaskType.GENERIC}
        return EvaluationDispatcher(self.handler_for(TaskType.GENERIC), handlers, default_task=self.task)

    async def evaluate(
        self, candidate: Candidate, task: Mapping[str, Any], task_type: TaskType | str | None = None
    ) -> Dict[str, Any]:
        parsed = TaskType.parse(task_type if task_type is not None else task.get("type"))
        examples: Sequence[Mapping[str, Any]] = task.get("examples") or [task]
        if not examples:
            raise ValidationError("task has no examples to evaluate")
        semaphore = asyncio.Semaphore(self.max_parallel_examples)

        async def _one(example: Mapping[str, Any]) -> Dict[str, Any]:
            async with semaphore:
                return await self._run_example(candidate, parsed, example)

        results = await asyncio.gather(*(_one(example) for example in examples))
        quality = sum(result["quality"] for result in results) / len(results)
        return {
            "quality": quality,
            "task_type": parsed.value,
            "examples": len(results),
            "tokens": float(sum(result.get("tokens", 0) for result in results)),
            "responses": [result.get("response", "") for result in results],
        }

    async def _run_example(
        self, candidate: Candidate, task_type: TaskType, example: Mapping[str, Any]
    ) -> Dict[str, Any]:
        user_input = example.get("input") or example.get("question") or example.get("prompt")
        if not user_input:
            raise ValidationError("task example needs an 'input', 'question' or 'prompt'")
        if task_type is TaskType.QUESTION_ANSWERING and example.get("context"):
            user_input = f"Context:\n{example['context']}\n\nQuestion: {user_input}"
        completion_kwargs = _completion_kwargs(
            self.task_model,
            [
                {"role": "system", "content": candidate.prompt},
                {"role": "user", "content": str(user_input)},
            ],
        )
        start = time.time()
        try:
            response = await _complete(completion_kwargs)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise EvaluationError(
                f"Task LLM call failed after {time.time() - start:.2f}s ({type(e).__name__}: {e}). "
                "Check your API key, model name, and network connection."
            ) from e
        output = _content(response)
        metrics = score_response(task_type, output, example)
        metrics["response"] = output
        metrics["tokens"] = _total_tokens(response)
        return metrics


class LiteLLMEmbeddingProvider:
    """Embeds texts with ``litellm.aembedding`` in batches."""

    def __init__(self, model: str = "text-embedding-3-small", *, batch_size: int = 64) -> None:
        if batch_size < 1:
            raise ValidationError(f"batch_size must be >= 1, got {batch_size}")
        self.model = model
        self.batch_size = batch_size

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        from litellm import aembedding

        vectors: List[List[float]] = []
        for start in range(0, len(texts), self.batch_size):
            batch = list(texts[start : start + self.batch_size])
            response = await aembedding(model=self.model, input=batch)
            for item in response.data:
                embedding = item["embedding"] if isinstance(item, Mapping) else item.embedding
                vectors.append([float(value) for value in embedding])
        return vectors


VARIANT_PROMPT = """Below is an instruction given to an AI assistant:

"{template}"

Write {count} alternative instructions for the same task. Each should keep the intent but differ clearly in wording, structure or approach from the original and from each other.

Separate each instruction with a line containing only "---"."""


class LiteLLMVariantGenerator:
    """Asks a reflection model for prompt variants separated by ``---``."""

    def __init__(self, model: ModelConfig | str) -> None:
        self.model = _as_model(model)

    async def generate(self, template: str, count: int) -> List[str]:
        if count <= 0:
            return []
        completion_kwargs = _completion_kwargs(
            self.model,
            [{"role": "user", "content": VARIANT_PROMPT.format(template=template, count=count)}],
        )
        start = time.time()
        try:
            response = await _complete(completion_kwargs)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise RuntimeError(
                f"Variant LLM call failed after {time.time() - start:.2f}s ({type(e).__name__}: {e}). "
                "Check your API key, model name, and network connection."
            ) from e
        variants = [v.strip() for v in _content(response).split("---") if v.strip()]
        return variants[:count]
