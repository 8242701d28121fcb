"""
Heuristic response scorers, one per task type.

Each scorer maps a model response plus the task description to a metrics
dict with a ``quality`` key in [0, 1]. The LiteLLM evaluator uses them to turn
completions into fitness; callers with their own graders register handlers
on :class:`~evoprompt.dispatcher.EvaluationDispatcher` instead.
"""

from __future__ import annotations

import re
from typing import Any, Callable, Dict, List, Mapping

from .dispatcher import TaskType

Scorer = Callable[[str, Mapping[str, Any]], Dict[str, Any]]

_WORD_RE = re.compile(r"\b\w+\b")
_STOPWORDS = frozenset(
    "a an the is are was were be been of to in on at for and or but with by from as it this that these those".split()
)


def _words(text: str) -> List[str]:
    return _WORD_RE.findall(text.lower())


def _normalize(text: Any) -> str:
    return re.sub(r"[^\w\d\.]", "", str(text).lower().strip())


def overlap_score(answer: str, expected: str) -> float:
    """Fraction of expected words that appear in the answer."""
    expected_words = set(_words(expected))
    if not expected_words:
        return 0.0
    return len(expected_words & set(_words(answer))) / len(expected_words)


def _numeric_similarity(a: str, b: str) -> float:
    try:
        x, y = float(a), float(b)
    except ValueError:
        return 0.0
    if y == 0.0:
        return 1.0 if x == 0.0 else 0.0
    return 1.0 - min(abs(x - y) / abs(y), 1.0)


# --------------------------------------------------------------------- reasoning

_ANSWER_PATTERNS = (
    re.compile(r"(?:answer|result)(?:\s+is)?:\s*([^\n\.]+)", re.IGNORECASE),
    re.compile(r"(?:therefore|thus|so|hence),?\s+([^\n\.]+)", re.IGNORECASE),
    re.compile(r"([0-9]+(?:\.[0-9]+)?)\s*$"),
    re.compile(r"(yes|no|true|false)\s*$", re.IGNORECASE),
)
_STEP_PATTERNS = (
    re.compile(r"\d+[\.)]\s+"),
    re.compile(r"\b(first|second|third|then|next|finally)\b", re.IGNORECASE),
    re.compile(r"step\s+\d+", re.IGNORECASE),
)


def extract_answer(response: str) -> str:
    for pattern in _ANSWER_PATTERNS:
        match = pattern.search(response)
        if match:
            return match.group(1).strip()
    return response.strip()


def answer_correctness(extracted: str, expected: Any) -> float:
    if expected is None:
        return 0.5
    got, want = _normalize(extracted), _normalize(expected)
    if not got:
        return 0.0
    if got == want or _numeric_similarity(got, want) > 0.95:
        return 1.0
    if want and (want in got or got in want):
        return 0.7
    return 0.0


def _clarity(response: str) -> float:
    count = len(_words(response))
    if count == 0:
        return 0.0
    if count < 10:
        return 0.5
    if count > 400:
        return 0.6
    return 1.0


def score_reasoning(response: str, task: Mapping[str, Any]) -> Dict[str, Any]:
    extracted = extract_answer(response)
    correctness = answer_correctness(extracted, task.get("expected_answer"))
    steps = any(pattern.search(response) for pattern in _STEP_PATTERNS)
    clarity = _clarity(response)
    quality = 0.6 * correctness + 0.25 * (1.0 if steps else 0.0) + 0.15 * clarity
    return {
        "quality": quality,
        "answer_correctness": correctness,
        "reasoning_steps_present": steps,
        "explanation_clarity": clarity,
        "extracted_answer": extracted,
    }


# ---------------------------------------------------------------- classification

_LABEL_RE = re.compile(r"(?:label|classification|category|class)\s*:\s*([\w\- ]+)", re.IGNORECASE)
_CONFIDENCE_RE = re.compile(r"confidence\s*:?\s*([0-9]+(?:\.[0-9]+)?)\s*(%?)", re.IGNORECASE)


def extract_label(response: str) -> str:
    match = _LABEL_RE.search(response)
    if match:
        return match.group(1).strip().lower()
    words = _words(response)
    return words[0] if words else ""


def extract_confidence(response: str) -> float | None:
    match = _CONFIDENCE_RE.search(response)
    if not match:
        return None
    value = float(match.group(1))
    if match.group(2) == "%" or 1.0 < value <= 100.0:
        value /= 100.0
    return value if 0.0 <= value <= 1.0 else None


def score_classification(response: str, task: Mapping[str, Any]) -> Dict[str, Any]:
    label = extract_label(response)
    expected = task.get("expected_label")
    if expected is None:
        accuracy = 0.5
    elif label == str(expected).lower():
        accuracy = 1.0
    elif label and (label in str(expected).lower() or str(expected).lower() in label):
        accuracy = 0.7
    else:
        accuracy = 0.0

    valid_labels = [str(v).lower() for v in task.get("labels") or ()]
    consistency = 1.0 if not valid_labels or label in valid_labels else 0.0

    confidence = extract_confidence(response)
    if confidence is None:
        calibration = 0.0 if task.get("require_confidence") else 1.0
    else:
        gap = abs(confidence - accuracy)
        if gap < 0.1:
            calibration = 1.0
        elif gap < 0.2:
            calibration = 0.8
        elif gap < 0.3:
            calibration = 0.6
        else:
            calibration = max(0.0, 0.5 - gap)

    quality = 0.7 * accuracy + 0.2 * calibration + 0.1 * consistency
    return {
        "quality": quality,
        "label": label,
        "accuracy": accuracy,
        "confidence": confidence,
        "calibration": calibration,
        "consistency": consistency,
    }


# ------------------------------------------------------------ question answering

def score_question_answering(response: str, task: Mapping[str, Any]) -> Dict[str, Any]:
    expected = task.get("expected_answer")
    context = task.get("context")
    question = str(task.get("question", ""))
    answer = response.strip()

    if not answer:
        accuracy = 0.0
    elif expected is None:
        accuracy = 0.5
    elif _normalize(answer) == _normalize(expected):
        accuracy = 1.0
    elif _normalize(expected) in _normalize(answer) or _normalize(answer) in _normalize(expected):
        accuracy = 0.8
    elif overlap_score(answer, str(expected)) >= 0.6:
        accuracy = 0.7
    elif context and overlap_score(str(context), answer) >= 0.7:
        accuracy = 0.6
    else:
        accuracy = 0.0

    if not answer:
        relevance = 0.0
    elif question and overlap_score(answer, question) > 0.3:
        relevance = 1.0
    elif question and overlap_score(answer, question) > 0.2:
        relevance = 0.6
    else:
        relevance = 0.4

    count = len(answer.split())
    if count == 0:
        completeness = 0.0
    elif count < 3:
        completeness = 0.3
    else:
        completeness = min(count / 10, 1.0) if count < 10 else 1.0

    hallucination = False
    if context:
        content = [w for w in _words(answer) if w not in _STOPWORDS]
        context_words = set(_words(str(context)))
        if content:
            hallucination = sum(1 for w in content if w not in context_words) / len(content) > 0.5

    quality = 0.6 * accuracy + 0.25 * relevance + 0.15 * completeness
    if hallucination:
        quality *= 0.5
    return {
        "quality": quality,
        "accuracy": accuracy,
        "relevance": relevance,
        "completeness": completeness,
        "contains_hallucination": hallucination,
    }


# ------------------------------------------------------------------ summarization

def score_summarization(response: str, task: Mapping[str, Any]) -> Dict[str, Any]:
    source = str(task.get("source_text", ""))
    summary_words = len(response.split())
    source_words = len(source.split())

    summary_content = {w for w in _words(response) if w not in _STOPWORDS}
    source_content = {w for w in _words(source) if w not in _STOPWORDS}
    if not summary_content:
        consistency = 0.0
    elif not source_content:
        consistency = 0.5
    else:
        ratio = len(summary_content & source_content) / len(summary_content)
        consistency = 1.0 if ratio >= 0.8 else 0.8 if ratio >= 0.6 else 0.6 if ratio >= 0.4 else ratio

    ratio = summary_words / source_words if source_words else 0.0
    if summary_words == 0:
        conciseness = 0.0
    elif task.get("max_length") and summary_words > task["max_length"]:
        conciseness = max(0.3, 1.0 - (summary_words - task["max_length"]) / task["max_length"])
    elif not source_words:
        conciseness = 0.7
    elif 0.05 <= ratio <= 0.25:
        conciseness = 1.0
    elif 0.25 < ratio < 0.5:
        conciseness = 0.8
    elif ratio >= 0.5:
        conciseness = 0.5
    else:
        conciseness = 0.7

    key_points = [str(p) for p in task.get("key_points") or ()]
    if key_points:
        covered = sum(1 for point in key_points if overlap_score(response, point) >= 0.5)
        coverage = covered / len(key_points)
    else:
        coverage = 1.0

    coherence = _clarity(response) * (1.0 if re.search(r"[.!?]\s*$", response.strip()) else 0.8)

    quality = 0.4 * consistency + 0.3 * conciseness + 0.2 * coherence + 0.1 * coverage
    return {
        "quality": quality,
        "factual_consistency": consistency,
        "conciseness": conciseness,
        "coherence": coherence,
        "key_points_coverage": coverage,
        "length_ratio": ratio,
    }


# ----------------------------------------------------------------- code generation

_CODE_BLOCK_RE = re.compile(r"```[\w+-]*\n(.*?)```", re.DOTALL)


def extract_code(response: str) -> str:
    match = _CODE_BLOCK_RE.search(response)
    return match.group(1) if match else response


def score_code_generation(response: str, task: Mapping[str, Any]) -> Dict[str, Any]:
    code = extract_code(response).strip()
    language = str(task.get("language", "")).lower()
    test_cases = list(task.get("test_cases") or ())

    if not code:
        functionality = 0.0
    elif len(code) <= 10:
        functionality = 0.2
    else:
        if language in ("python", "elixir", "ruby"):
            has_function = "def " in code
        elif language in ("javascript", "typescript"):
            has_function = "function" in code or "=>" in code
        else:
            has_function = True
        values_present = any(
            str(case.get("expected")) in code or str(case.get("input")) in code for case in test_cases
        )
        functionality = min(0.5 + (0.25 if has_function else 0.0) + (0.25 if values_present else 0.0), 1.0)

    syntax_valid = True
    if language == "python" and code:
        try:
            compile(code, "<candidate>", "exec")
        except SyntaxError:
            syntax_valid = False

    quality = 0.7 * functionality + 0.3 * (1.0 if syntax_valid else 0.0)
    return {
        "quality": quality,
        "functionality": functionality,
        "syntax_valid": syntax_valid,
        "tests_total": len(test_cases),
    }


# ------------------------------------------------------------------------ generic

def score_generic(response: str, task: Mapping[str, Any]) -> Dict[str, Any]:
    expected = task.get("expected") or task.get("expected_answer")
    if expected is not None:
        if _normalize(expected) and _normalize(expected) in _normalize(response):
            return {"quality": 1.0, "match": "contains"}
        return {"quality": overlap_score(response, str(expected)), "match": "overlap"}
    return {"quality": 1.0 if response.strip() else 0.0, "match": "non_empty"}


SCORERS: Dict[TaskType, Scorer] = {
    TaskType.CODE_GENERATION: score_code_generation,
    TaskType.REASONING: score_reasoning,
    TaskType.CLASSIFICATION: score_classification,
    TaskType.QUESTION_ANSWERING: score_question_answering,
    TaskType.SUMMARIZATION: score_summarization,
    TaskType.GENERIC: score_generic,
}


def score_response(task_type: TaskType | str | None, response: str, task: Mapping[str, Any]) -> Dict[str, Any]:
    """Score ``response`` with the scorer for ``task_type`` (generic when unknown)."""
    scorer = SCORERS.get(TaskType.parse(task_type), score_generic)
    metrics = scorer(response, task)
    metrics["quality"] = round(max(0.0, min(1.0, float(metrics["quality"]))), 4)
    return metrics
