import pytest

from app.schemas.submission import ParsedResponse
from app.utils.score_utils import (
    analyze_accuracy,
    calculate_raw_score,
    calculate_section_performance,
    get_strengths_weaknesses,
    summarize_responses,
)


def response(number: int, section: str, selected: str | None, correct: bool) -> ParsedResponse:
    return ParsedResponse(
        question_number=number,
        section=section,
        selected_answer=selected,
        correct_answer="A",
        is_correct=correct,
    )


@pytest.fixture
def quant_sheet() -> list[ParsedResponse]:
    # One correct, one wrong, one skipped
    return [
        response(1, "QA", "A", True),
        response(2, "QA", "B", False),
        response(3, "QA", None, False),
    ]


@pytest.fixture
def mixed_sheet() -> list[ParsedResponse]:
    return [
        response(1, "QA", "A", True),
        response(2, "QA", "A", True),
        response(3, "REASONING", "A", True),
        response(4, "REASONING", "C", False),
        response(5, "ENGLISH", "D", False),
        response(6, "ENGLISH", None, False),
        response(7, "GK", None, False),
    ]


def test_raw_score_applies_negative_marking(quant_sheet):
    assert calculate_raw_score(quant_sheet) == 1.5


def test_raw_score_custom_marking_scheme(quant_sheet):
    assert calculate_raw_score(quant_sheet, positive_marks=3, negative_marks=1) == 2.0
    assert calculate_raw_score(quant_sheet, positive_marks=1, negative_marks=0.25) == 0.75


def test_analyze_accuracy_counts_attempts(quant_sheet):
    assert analyze_accuracy(quant_sheet) == {"QA": {"total": 3, "attempted": 2, "correct": 1, "accuracy": 50.0}}


def test_unattempted_section_has_zero_accuracy(mixed_sheet):
    accuracy = analyze_accuracy(mixed_sheet)
    assert accuracy["GK"] == {"total": 1, "attempted": 0, "correct": 0, "accuracy": 0.0}
    assert accuracy["ENGLISH"]["accuracy"] == 0.0
    assert accuracy["REASONING"]["accuracy"] == 50.0


def test_section_performance(mixed_sheet):
    performance = calculate_section_performance(mixed_sheet)
    assert list(performance) == ["QA", "REASONING", "ENGLISH", "GK"]
    assert performance["QA"] == {"attempted": 2, "correct": 2, "wrong": 0, "marks": 4.0}
    assert performance["REASONING"]["marks"] == 1.5
    assert performance["ENGLISH"]["marks"] == -0.5
    assert performance["GK"]["attempted"] == 0


def test_strengths_and_weaknesses(mixed_sheet):
    result = get_strengths_weaknesses(mixed_sheet)
    assert [s["section"] for s in result["strengths"]] == ["QA", "REASONING"]
    assert [s["section"] for s in result["weaknesses"]] == ["ENGLISH", "GK"]


def test_summarize_responses(quant_sheet):
    assert summarize_responses(quant_sheet) == {
        "total_attempted": 2,
        "total_correct": 1,
        "total_wrong": 1,
        "accuracy": 50.0,
    }


def test_summarize_responses_nothing_attempted():
    sheet = [response(1, "QA", None, False)]
    assert summarize_responses(sheet)["accuracy"] is None
