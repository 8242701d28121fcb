"""Tests for the heuristic response scorers."""

import pytest

from evoprompt.scoring import (
    extract_answer,
    extract_code,
    extract_confidence,
    extract_label,
    score_classification,
    score_code_generation,
    score_question_answering,
    score_reasoning,
    score_response,
    score_summarization,
)


def test_reasoning_rewards_correct_answer_with_steps():
    response = "Step 1: add 2 and 2 to get 4. Step 2: double it to get 8.\nAnswer: 8"
    metrics = score_reasoning(response, {"expected_answer": "8"})

    assert metrics["extracted_answer"] == "8"
    assert metrics["answer_correctness"] == 1.0
    assert metrics["reasoning_steps_present"] is True
    assert metrics["quality"] == pytest.approx(1.0)


def test_reasoning_penalizes_wrong_terse_answer():
    metrics = score_reasoning("Answer: 5", {"expected_answer": "8"})
    assert metrics["answer_correctness"] == 0.0
    assert metrics["quality"] == pytest.approx(0.075)


def test_classification_label_and_confidence():
    response = "Label: positive\nConfidence: 95%"
    metrics = score_classification(response, {"expected_label": "positive", "labels": ["positive", "negative"]})

    assert metrics["label"] == "positive"
    assert metrics["confidence"] == pytest.approx(0.95)
    assert metrics["quality"] == pytest.approx(1.0)

    wrong = score_classification("Label: negative", {"expected_label": "positive"})
    assert wrong["quality"] == pytest.approx(0.3)


def test_question_answering_flags_hallucination():
    task = {
        "question": "What is the capital of France?",
        "context": "Paris is the capital of France.",
        "expected_answer": "Paris",
    }
    grounded = score_question_answering("Paris", task)
    invented = score_question_answering("Berlin Munich Hamburg", task)

    assert grounded["accuracy"] == 1.0
    assert grounded["contains_hallucination"] is False
    assert grounded["quality"] == pytest.approx(0.745)
    assert invented["contains_hallucination"] is True
    assert invented["quality"] < 0.1


def test_code_generation_checks_python_syntax():
    task = {"language": "python", "test_cases": [{"input": "add(2, 3)", "expected": 5}]}
    valid = score_code_generation("```python\ndef add(a, b):\n    return a + b\n```", task)
    broken = score_code_generation("```python\ndef add(a, b)\n    return a + b\n```", task)

    assert valid["syntax_valid"] is True
    assert valid["quality"] == pytest.approx(0.825)
    assert broken["syntax_valid"] is False
    assert broken["quality"] == pytest.approx(0.525)


def test_summarization_covers_key_points():
    source = " ".join(["The committee approved the new budget for schools and hospitals."] * 10)
    task = {"source_text": source, "key_points": ["budget approved", "schools hospitals"]}
    metrics = score_summarization("The committee approved the budget for schools and hospitals.", task)

    assert metrics["key_points_coverage"] == 1.0
    assert metrics["factual_consistency"] == 1.0
    assert 0.0 <= metrics["quality"] <= 1.0


def test_score_response_falls_back_to_generic_and_clamps():
    metrics = score_response("poetry", "The result is 42", {"expected": "42"})
    assert metrics["quality"] == 1.0
    assert metrics["match"] == "contains"

    empty = score_response(None, "   ", {})
    assert empty["quality"] == 0.0


def test_extractors():
    assert extract_answer("Thus, x equals 3") == "x equals 3"
    assert extract_label("category: Sports news") == "sports news"
    assert extract_confidence("confidence 0.4") == pytest.approx(0.4)
    assert extract_confidence("no number here") is None
    assert extract_code("plain text code") == "plain text code"
