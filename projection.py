# projection.py

from enum import Enum
from typing import Any, Dict, List, Optional

from richtext import render_rich


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"

    @classmethod
    def parse(cls, value: Optional[str]) -> "Role":
        return cls.ADMIN if (value or "").strip().lower() == "admin" else cls.USER


class Audience(str, Enum):
    ADMIN = "admin"        # authoring view: everything
    REVIEWER = "reviewer"  # the owner reviewing a graded attempt: correctness + explanation
    LEARNER = "learner"    # entitled, before grading: questions and choices only
    PUBLIC = "public"      # not entitled: package metadata only


def audience_for(role: Role, entitled: bool = False, reviewing: bool = False) -> Audience:
    if role == Role.ADMIN:
        return Audience.ADMIN
    if reviewing:
        return Audience.REVIEWER
    if entitled:
        return Audience.LEARNER
    return Audience.PUBLIC


def _iso(value):
    return value.isoformat() if hasattr(value, "isoformat") else value


def _num(value):
    return float(value) if value is not None else None


def project_answer(answer: Dict[str, Any], audience: Audience) -> Dict[str, Any]:
    out = {"id": str(answer["id"]), "text": answer.get("text")}
    if audience in (Audience.ADMIN, Audience.REVIEWER):
        out["isCorrect"] = bool(answer.get("is_correct"))
    return out


def project_question(question: Dict[str, Any], audience: Audience) -> Optional[Dict[str, Any]]:
    """None for the public audience; question bodies are never shown there."""
    if audience == Audience.PUBLIC:
        return None
    out = {
        "id": str(question["id"]),
        "text": question.get("text"),
        "textHtml": str(render_rich(question.get("text"))),
        "imageUrls": list(question.get("image_urls") or []),
        "answers": [project_answer(a, audience) for a in question.get("answers") or []],
    }
    if audience in (Audience.ADMIN, Audience.REVIEWER):
        out["explanation"] = question.get("explanation")
        out["explanationHtml"] = str(render_rich(question.get("explanation")))
    return out


def project_package(
    package: Dict[str, Any],
    audience: Audience,
    questions: Optional[List[Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    out = {
        "id": str(package["id"]),
        "title": package.get("title"),
        "description": package.get("description"),
        "price": _num(package.get("price")),
        "isActive": bool(package.get("is_active")),
        "timeLimitMin": package.get("time_limit_min"),
        "availableFrom": _iso(package.get("available_from")),
        "availableUntil": _iso(package.get("available_until")),
        "questionCount": (
            len(questions) if questions is not None else int(package.get("question_count") or 0)
        ),
    }
    if audience == Audience.ADMIN:
        out["createdBy"] = package.get("created_by")
        out["createdAt"] = _iso(package.get("created_at"))
    if questions is not None and audience != Audience.PUBLIC:
        out["questions"] = [project_question(q, audience) for q in questions]
    return out
