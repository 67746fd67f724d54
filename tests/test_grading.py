import sys
from fractions import Fraction
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from grading import (  # noqa: E402
    InvalidQuestionReference, grade_submission, round_half_up, score_selection,
)


def _question(qid, correct, total):
    answers = [
        {"id": f"{qid}-a{i}", "text": f"choice {i}", "is_correct": i < correct}
        for i in range(total)
    ]
    return {"id": qid, "text": f"question {qid}", "answers": answers}


@pytest.mark.parametrize("total", [2, 3, 4, 5, 6])
def test_single_correct_scores_one_or_zero(total):
    q = _question("q", 1, total)
    assert score_selection(q, "q-a0") == (True, Fraction(1))
    for i in range(1, total):
        assert score_selection(q, f"q-a{i}") == (False, Fraction(0))


@pytest.mark.parametrize("k", [2, 3, 4, 5])
def test_partial_credit_is_one_over_k_and_never_exceeds_one(k):
    q = _question("q", k, 6)
    picks = [score_selection(q, a["id"]) for a in q["answers"]]
    for i in range(k):
        assert picks[i] == (True, Fraction(1, k))
    assert max(points for _, points in picks) <= 1


def test_null_and_foreign_selection_score_zero():
    q = _question("q", 2, 4)
    assert score_selection(q, None) == (False, Fraction(0))
    assert score_selection(q, "someone-elses-answer") == (False, Fraction(0))


def test_zero_correct_answers_is_tolerated():
    q = _question("q", 0, 4)
    for a in q["answers"]:
        assert score_selection(q, a["id"]) == (False, Fraction(0))
    assert grade_submission([q], [{"question_id": "q", "selected_answer_id": "q-a0"}])["score"] == 0.0


def test_worked_example():
    q1 = {"id": "Q1", "answers": [
        {"id": "A1", "is_correct": True}, {"id": "A2", "is_correct": False},
        {"id": "A3", "is_correct": False}, {"id": "A4", "is_correct": False},
    ]}
    q2 = {"id": "Q2", "answers": [
        {"id": "A5", "is_correct": True}, {"id": "A6", "is_correct": True},
        {"id": "A7", "is_correct": False}, {"id": "A8", "is_correct": False},
    ]}

    result = grade_submission([q1, q2], [
        {"question_id": "Q1", "selected_answer_id": "A1"},
        {"question_id": "Q2", "selected_answer_id": "A5"},
    ])

    assert result["total_points"] == Fraction(3, 2)
    assert result["total_questions"] == 2
    assert result["correct_answers"] == 2
    assert result["score"] == 75.0
    assert [a["points"] for a in result["answers"]] == [Fraction(1), Fraction(1, 2)]


def test_denominator_is_full_package():
    questions = [_question(f"q{i}", 1, 4) for i in range(4)]
    result = grade_submission(questions, [{"question_id": "q0", "selected_answer_id": "q0-a0"}])
    assert result["total_questions"] == 4
    assert result["score"] == 25.0


def test_empty_package_scores_zero():
    result = grade_submission([], [])
    assert result["score"] == 0.0
    assert result["total_questions"] == 0


def test_thirds_accumulate_exactly():
    questions = [_question(f"q{i}", 3, 6) for i in range(3)]
    answers = [{"question_id": f"q{i}", "selected_answer_id": f"q{i}-a0"} for i in range(3)]
    result = grade_submission(questions, answers)
    assert result["total_points"] == Fraction(1)
    assert result["correct_answers"] == 1


def test_foreign_selection_is_recorded_as_none():
    q = _question("q", 1, 4)
    result = grade_submission([q], [{"question_id": "q", "selected_answer_id": "nope"}])
    assert result["answers"][0]["selected_answer_id"] is None
    assert result["answers"][0]["is_correct"] is False


def test_unknown_question_raises_before_scoring():
    with pytest.raises(InvalidQuestionReference) as err:
        grade_submission([_question("q", 1, 4)], [
            {"question_id": "q", "selected_answer_id": "q-a0"},
            {"question_id": "elsewhere", "selected_answer_id": None},
        ])
    assert err.value.status == 400
    assert err.value.details["question_id"] == "elsewhere"


@pytest.mark.parametrize("value,expected", [
    (Fraction(1, 2), 1), (Fraction(3, 2), 2), (Fraction(5, 2), 3), (Fraction(4, 3), 1), (Fraction(0), 0),
])
def test_round_half_up(value, expected):
    assert round_half_up(value) == expected
