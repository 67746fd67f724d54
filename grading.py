# grading.py
# -----------------------------------------------------------------------------
# Scoring of a submitted package attempt.
# - One point per question at most; k correct alternatives => 1/k per correct pick
# - Null selection, foreign answer id or a question without any correct answer => 0
# - Denominator is the package's full question count, not the number answered
# - Exact rational accumulation; floats only at the edge
# -----------------------------------------------------------------------------

import math
from fractions import Fraction
from typing import Any, Dict, List, Optional, Set, Tuple


# =============================================================================
# Error taxonomy
# =============================================================================
class QuizError(Exception):
    status = 400
    code = "quiz_error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        out = {"ok": False, "error": self.message, "code": self.code}
        if self.details:
            out["details"] = self.details
        return out


class MissingField(QuizError):
    status = 400
    code = "missing_field"


class InvalidField(QuizError):
    status = 400
    code = "invalid_field"


class AccessDenied(QuizError):
    status = 403
    code = "access_denied"


class NotFound(QuizError):
    status = 404
    code = "not_found"


class InvalidQuestionReference(QuizError):
    status = 400
    code = "invalid_question_reference"


class PersistenceFailure(QuizError):
    status = 500
    code = "persistence_failure"


# =============================================================================
# Per-question scoring
# =============================================================================
def correct_answer_ids(question: Dict[str, Any]) -> Set[str]:
    return {str(a["id"]) for a in (question.get("answers") or []) if a.get("is_correct")}


def resolve_selection(question: Dict[str, Any], selected_answer_id: Optional[str]) -> Optional[Dict[str, Any]]:
    """The answer row the learner picked, or None when it is not one of this question's answers."""
    if selected_answer_id is None:
        return None
    for a in question.get("answers") or []:
        if str(a["id"]) == str(selected_answer_id):
            return a
    return None


def score_selection(question: Dict[str, Any], selected_answer_id: Optional[str]) -> Tuple[bool, Fraction]:
    """Returns (is_correct, points) for one question."""
    k = len(correct_answer_ids(question))
    chosen = resolve_selection(question, selected_answer_id)
    is_correct = bool(chosen is not None and chosen.get("is_correct"))
    if not is_correct or k == 0:
        return False, Fraction(0)
    return True, Fraction(1, k)


def round_half_up(value: Fraction) -> int:
    return math.floor(value + Fraction(1, 2))


# =============================================================================
# Whole submission
# =============================================================================
def check_question_references(questions: List[Dict[str, Any]], answers: List[Dict[str, Any]]):
    known = {str(q["id"]) for q in questions}
    for idx, item in enumerate(answers):
        qid = str(item["question_id"])
        if qid not in known:
            raise InvalidQuestionReference(
                f"Question {qid} is not part of this package", question_id=qid, index=idx
            )


def grade_submission(questions: List[Dict[str, Any]], answers: List[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Grade ``answers`` ([{question_id, selected_answer_id}], submission order)
    against the package ``questions`` (each with its ``answers`` list).

    Raises InvalidQuestionReference before scoring anything if one answer
    names a question outside the package.
    """
    check_question_references(questions, answers)
    by_id = {str(q["id"]): q for q in questions}

    total = Fraction(0)
    graded: List[Dict[str, Any]] = []
    for position, item in enumerate(answers, start=1):
        question = by_id[str(item["question_id"])]
        selected = item.get("selected_answer_id")
        chosen = resolve_selection(question, selected)
        is_correct, points = score_selection(question, selected)
        total += points
        graded.append({
            "position": position,
            "question_id": str(question["id"]),
            # an id that is not one of this question's answers is stored as no selection
            "selected_answer_id": (str(chosen["id"]) if chosen is not None else None),
            "is_correct": is_correct,
            "points": points,
        })

    total_questions = len(questions)
    score = float(total / total_questions * 100) if total_questions > 0 else 0.0
    return {
        "answers": graded,
        "total_points": total,
        "total_questions": total_questions,
        "correct_answers": round_half_up(total),
        "score": score,
    }
