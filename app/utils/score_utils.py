"""Utility functions for scoring parsed response sheets."""

from collections.abc import Sequence
from typing import Any

from app.schemas.submission import ParsedResponse
from app.utils.statistics_utils import round_half_up

DEFAULT_POSITIVE_MARKS = 2.0
DEFAULT_NEGATIVE_MARKS = 0.5


def is_attempted(response: ParsedResponse) -> bool:
    return response.selected_answer is not None


def calculate_raw_score(
    responses: Sequence[ParsedResponse],
    positive_marks: float = DEFAULT_POSITIVE_MARKS,
    negative_marks: float = DEFAULT_NEGATIVE_MARKS,
) -> float:
    """
    Calculate raw score from responses.
    Correct answers add positive_marks, wrong answers subtract negative_marks,
    unattempted questions contribute 0. Rounded to 2 decimal places.
    """
    score = 0.0
    for response in responses:
        if not is_attempted(response):
            continue
        if response.is_correct:
            score += positive_marks
        else:
            score -= negative_marks
    return round_half_up(score, 2)


def calculate_section_performance(
    responses: Sequence[ParsedResponse],
    positive_marks: float = DEFAULT_POSITIVE_MARKS,
    negative_marks: float = DEFAULT_NEGATIVE_MARKS,
) -> dict[str, dict[str, Any]]:
    """Per-section attempted/correct/wrong counts and marks, in first-seen section order."""
    sections: dict[str, dict[str, Any]] = {}
    for response in responses:
        stats = sections.setdefault(response.section, {"attempted": 0, "correct": 0, "wrong": 0, "marks": 0.0})
        if not is_attempted(response):
            continue
        stats["attempted"] += 1
        if response.is_correct:
            stats["correct"] += 1
            stats["marks"] += positive_marks
        else:
            stats["wrong"] += 1
            stats["marks"] -= negative_marks

    for stats in sections.values():
        stats["marks"] = round_half_up(stats["marks"], 2)
    return sections


def analyze_accuracy(responses: Sequence[ParsedResponse]) -> dict[str, dict[str, Any]]:
    """
    Per-section total/attempted/correct counts and accuracy percentage.
    Accuracy is correct / attempted * 100 rounded to 2 places, 0 when nothing was attempted.
    """
    sections: dict[str, dict[str, Any]] = {}
    for response in responses:
        stats = sections.setdefault(response.section, {"total": 0, "attempted": 0, "correct": 0, "accuracy": 0.0})
        stats["total"] += 1
        if is_attempted(response):
            stats["attempted"] += 1
            if response.is_correct:
                stats["correct"] += 1

    for stats in sections.values():
        if stats["attempted"] > 0:
            stats["accuracy"] = round_half_up(stats["correct"] / stats["attempted"] * 100, 2)
    return sections


def get_strengths_weaknesses(responses: Sequence[ParsedResponse]) -> dict[str, list[dict[str, Any]]]:
    """Top two and bottom two sections by accuracy."""
    sections = [{"section": section, **stats} for section, stats in analyze_accuracy(responses).items()]
    sections.sort(key=lambda s: s["accuracy"], reverse=True)
    return {"strengths": sections[:2], "weaknesses": sections[-2:]}


def summarize_responses(responses: Sequence[ParsedResponse]) -> dict[str, Any]:
    """Totals stored on the submission row."""
    attempted = sum(1 for r in responses if is_attempted(r))
    correct = sum(1 for r in responses if is_attempted(r) and r.is_correct)
    return {
        "total_attempted": attempted,
        "total_correct": correct,
        "total_wrong": attempted - correct,
        "accuracy": round_half_up(correct / attempted * 100, 2) if attempted else None,
    }
