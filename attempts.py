# attempts.py — submit a graded package attempt, read attempts back, stats
#
# A quiz_attempts row plus its quiz_answers rows are written in one
# UnitOfWork and never updated afterwards. Retakes create new rows.

import os
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import psycopg
from flask import Blueprint, abort, jsonify, request

from access import has_package_access
from auth import current_role, require_admin, require_user
from db import UnitOfWorkAborted
from grading import (
    AccessDenied, InvalidField, MissingField, NotFound, PersistenceFailure, QuizError,
    grade_submission,
)
from packages import load_package, load_package_questions, load_questions
from projection import Audience, Role, audience_for, project_question

PASS_THRESHOLD = float(os.getenv("PASS_THRESHOLD") or 80)
ENFORCE_TIME_LIMIT = os.getenv("ENFORCE_TIME_LIMIT", "0").lower() in {"1", "true", "yes"}
ATTEMPT_LIST_LIMIT = int(os.getenv("ATTEMPT_LIST_LIMIT") or 200)

REQUIRED_FIELDS = ("packageId", "answers", "timeSpent", "startedAt")
# quiz_attempts.time_spent is an INTEGER column
MAX_TIME_SPENT = 2**31 - 1


# =============================================================================
# Request validation
# =============================================================================
def _iso(value):
    return value.isoformat() if hasattr(value, "isoformat") else value


def _parse_time_spent(value) -> int:
    if isinstance(value, bool):
        raise InvalidField("timeSpent must be a whole number of seconds", field="timeSpent")
    if isinstance(value, int):
        n = value
    elif isinstance(value, float) and value.is_integer():
        n = int(value)
    elif isinstance(value, str) and value.strip().isdigit():
        n = int(value.strip())
    else:
        raise InvalidField("timeSpent must be a whole number of seconds", field="timeSpent")
    if n < 0:
        raise InvalidField("timeSpent cannot be negative", field="timeSpent")
    if n > MAX_TIME_SPENT:
        raise InvalidField("timeSpent is too large", field="timeSpent")
    return n


def _parse_started_at(value) -> datetime:
    if not isinstance(value, str):
        raise InvalidField("startedAt must be an ISO-8601 timestamp", field="startedAt")
    raw = value.strip()
    if raw.endswith("Z") or raw.endswith("z"):
        raw = raw[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(raw)
    except ValueError:
        raise InvalidField("startedAt must be an ISO-8601 timestamp", field="startedAt")
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt


def _parse_answers(value) -> List[Dict[str, Any]]:
    if not isinstance(value, list):
        raise InvalidField("answers must be a list", field="answers")
    out: List[Dict[str, Any]] = []
    seen = set()
    for idx, item in enumerate(value):
        if not isinstance(item, dict):
            raise InvalidField("each answer must be an object", field="answers", index=idx)
        qid = item.get("questionId")
        if not isinstance(qid, str) or not qid.strip():
            raise InvalidField("answer is missing questionId", field="answers", index=idx)
        qid = qid.strip()
        if qid in seen:
            raise InvalidField(f"question {qid} answered twice", field="answers", index=idx)
        seen.add(qid)
        selected = item.get("selectedAnswerId")
        if selected is not None and not isinstance(selected, str):
            raise InvalidField("selectedAnswerId must be a string or null", field="answers", index=idx)
        out.append({"question_id": qid, "selected_answer_id": selected or None})
    return out


def parse_submission(body: Any) -> Dict[str, Any]:
    """Checks presence first, then shape. Returns the normalized submission."""
    if not isinstance(body, dict):
        body = {}
    for field in REQUIRED_FIELDS:
        v = body.get(field)
        if isinstance(v, str):
            v = v.strip()
        if v is None or v == "" or (field == "answers" and v == []):
            raise MissingField(f"{field} is required", field=field)
    package_id = body["packageId"]
    if not isinstance(package_id, str):
        raise InvalidField("packageId must be a string", field="packageId")
    return {
        "package_id": package_id.strip(),
        "answers": _parse_answers(body["answers"]),
        "time_spent": _parse_time_spent(body["timeSpent"]),
        "started_at": _parse_started_at(body["startedAt"]),
    }


# =============================================================================
# Grading pipeline
# =============================================================================
def submit_attempt(deps: Dict[str, Any], user_id: str, body: Any, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Validate, gate, grade and persist one attempt. Returns the serialized
    attempt with per-question review detail.

    Raises a QuizError subclass on any rejection; nothing is written unless
    every check has passed.
    """
    db = deps["db"]
    access_check: Callable = deps.get("has_package_access") or has_package_access
    now = now or datetime.now(timezone.utc)

    sub = parse_submission(body)
    package_id = sub["package_id"]

    if not access_check(db, user_id, package_id, now):
        raise AccessDenied("You do not have access to this package", package_id=package_id)

    package = load_package(db, package_id)
    if not package:
        raise NotFound("Package not found", package_id=package_id)

    questions = load_package_questions(db, package_id)
    result = grade_submission(questions, sub["answers"])

    limit_min = package.get("time_limit_min")
    if ENFORCE_TIME_LIMIT and limit_min and sub["time_spent"] > int(limit_min) * 60:
        raise InvalidField("timeSpent exceeds the package time limit", field="timeSpent")

    attempt_id = str(uuid.uuid4())
    header = {
        "id": attempt_id,
        "user_id": user_id,
        "package_id": package_id,
        "package_title": package.get("title"),
        "score": result["score"],
        "correct_answers": result["correct_answers"],
        "total_questions": result["total_questions"],
        "time_spent": sub["time_spent"],
        "started_at": sub["started_at"],
        "completed_at": now,
    }
    answer_rows = [dict(a, id=str(uuid.uuid4()), attempt_id=attempt_id) for a in result["answers"]]

    uow = db.unit_of_work()
    uow.add("""
        INSERT INTO quiz_attempts
          (id, user_id, package_id, score, correct_answers, total_questions,
           time_spent, started_at, completed_at)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
        RETURNING id;
    """, (
        attempt_id, user_id, package_id, header["score"], header["correct_answers"],
        header["total_questions"], header["time_spent"], header["started_at"], now,
    ), require_row=True)
    for a in answer_rows:
        uow.add("""
            INSERT INTO quiz_answers
              (id, attempt_id, question_id, selected_answer_id, is_correct, points, position)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            RETURNING id;
        """, (
            a["id"], attempt_id, a["question_id"], a["selected_answer_id"],
            a["is_correct"], float(a["points"]), a["position"],
        ), require_row=True)
    try:
        uow.commit()
    except (psycopg.Error, UnitOfWorkAborted) as e:
        print(f"[attempts] write failed user={user_id} package={package_id}: {e}")
        raise PersistenceFailure("Could not save the attempt", package_id=package_id) from e

    print(
        f"[attempts] saved {attempt_id} user={user_id} package={package_id} "
        f"score={result['score']:.2f} ({len(answer_rows)} answers)"
    )
    return serialize_attempt(header, answer_rows, questions, Audience.REVIEWER)


# =============================================================================
# Serialization
# =============================================================================
def serialize_attempt_summary(row: Dict[str, Any]) -> Dict[str, Any]:
    out = {
        "id": str(row["id"]),
        "userId": row.get("user_id"),
        "packageId": row.get("package_id"),
        "packageTitle": row.get("package_title"),
        "score": float(row.get("score") or 0),
        "correctAnswers": int(row.get("correct_answers") or 0),
        "totalQuestions": int(row.get("total_questions") or 0),
        "timeSpent": int(row.get("time_spent") or 0),
        "startedAt": _iso(row.get("started_at")),
        "completedAt": _iso(row.get("completed_at")),
    }
    if row.get("user_email") is not None:
        out["userEmail"] = row["user_email"]
    return out


def serialize_attempt(
    header: Dict[str, Any],
    answer_rows: List[Dict[str, Any]],
    questions: List[Dict[str, Any]],
    audience: Audience,
) -> Dict[str, Any]:
    by_id = {str(q["id"]): q for q in questions}
    out = serialize_attempt_summary(header)
    detail = []
    for a in sorted(answer_rows, key=lambda r: r.get("position") or 0):
        q = by_id.get(str(a["question_id"]))
        detail.append({
            "position": a.get("position"),
            "questionId": str(a["question_id"]),
            "selectedAnswerId": a.get("selected_answer_id"),
            "isCorrect": bool(a.get("is_correct")),
            "points": float(a.get("points") or 0),
            "question": project_question(q, audience) if q else None,
        })
    out["answers"] = detail
    return out


# =============================================================================
# Aggregates
# =============================================================================
def summarize_attempts(rows: List[Dict[str, Any]], pass_threshold: float = PASS_THRESHOLD) -> Dict[str, Any]:
    scores = [float(r.get("score") or 0) for r in rows]
    times = [int(r.get("time_spent") or 0) for r in rows]
    n = len(scores)
    if n == 0:
        return {
            "totalAttempts": 0, "averageScore": 0.0, "passRate": 0.0, "averageTimeSpent": 0,
            "highestScore": 0.0, "lowestScore": 0.0, "passThreshold": pass_threshold,
        }
    passed = sum(1 for s in scores if s >= pass_threshold)
    return {
        "totalAttempts": n,
        "averageScore": round(sum(scores) / n, 1),
        "passRate": round(passed / n * 100, 1),
        "averageTimeSpent": round(sum(times) / n),
        "highestScore": max(scores),
        "lowestScore": min(scores),
        "passThreshold": pass_threshold,
    }


def dashboard_summary(rows: List[Dict[str, Any]], recent: int = 5) -> Dict[str, Any]:
    """``rows`` newest first."""
    scores = [float(r.get("score") or 0) for r in rows]
    total_seconds = sum(int(r.get("time_spent") or 0) for r in rows)
    return {
        "totalAttempts": len(rows),
        "avgScore": round(sum(scores) / len(scores), 1) if scores else 0.0,
        "bestScore": max(scores) if scores else 0.0,
        "timeSpentMinutes": round(total_seconds / 60, 1),
        "recentAttempts": [serialize_attempt_summary(r) for r in rows[:recent]],
    }


# =============================================================================
# Blueprint
# =============================================================================
_SUMMARY_COLUMNS = """
    a.id, a.user_id, a.package_id, p.title AS package_title, a.score, a.correct_answers,
    a.total_questions, a.time_spent, a.started_at, a.completed_at
"""


def create_attempts_blueprint(base_path: str, deps: Dict[str, Any], name: str = "attempts") -> Blueprint:
    """
    Required deps: db
    Optional deps: has_package_access
    """
    bp = Blueprint(name, __name__, url_prefix=base_path or None)
    db = deps["db"]

    @bp.post("/attempts")
    def create_attempt():
        uid = require_user()
        try:
            attempt = submit_attempt(deps, uid, request.get_json(silent=True))
        except QuizError as e:
            if e.status < 500:
                print(f"[attempts] rejected user={uid}: {e.code} {e.message}")
            return jsonify(e.to_dict()), e.status
        return jsonify({"ok": True, "attempt": attempt}), 201

    @bp.get("/attempts/mine")
    def my_attempts():
        uid = require_user()
        package_id = (request.args.get("packageId") or "").strip() or None
        rows = db.fetch_all(f"""
            SELECT {_SUMMARY_COLUMNS}
              FROM quiz_attempts a
              JOIN packages p ON p.id = a.package_id
             WHERE a.user_id = %s AND (%s::text IS NULL OR a.package_id = %s)
             ORDER BY a.completed_at DESC
             LIMIT %s;
        """, (uid, package_id, package_id, ATTEMPT_LIST_LIMIT))
        return jsonify({"ok": True, "attempts": [serialize_attempt_summary(r) for r in rows or []]})

    @bp.get("/attempts/<attempt_id>")
    def get_attempt(attempt_id):
        uid = require_user()
        role = current_role()
        header = db.fetch_one(f"""
            SELECT {_SUMMARY_COLUMNS}
              FROM quiz_attempts a
              JOIN packages p ON p.id = a.package_id
             WHERE a.id = %s;
        """, (attempt_id,))
        if not header:
            abort(404)
        if header["user_id"] != uid and role != Role.ADMIN:
            abort(403)
        answer_rows = db.fetch_all("""
            SELECT id, question_id, selected_answer_id, is_correct, points, position
              FROM quiz_answers
             WHERE attempt_id = %s
             ORDER BY position;
        """, (attempt_id,))
        questions = load_questions(db, [r["question_id"] for r in answer_rows or []])
        audience = audience_for(role, entitled=True, reviewing=True)
        return jsonify({"ok": True, "attempt": serialize_attempt(header, answer_rows or [], questions, audience)})

    @bp.get("/admin/attempts")
    def admin_attempts():
        require_admin()
        package_id = (request.args.get("packageId") or "").strip() or None
        user_id = (request.args.get("userId") or "").strip() or None
        rows = db.fetch_all(f"""
            SELECT {_SUMMARY_COLUMNS}, u.email AS user_email
              FROM quiz_attempts a
              JOIN packages p ON p.id = a.package_id
              JOIN users u ON u.id = a.user_id
             WHERE (%s::text IS NULL OR a.package_id = %s)
               AND (%s::text IS NULL OR a.user_id = %s)
             ORDER BY a.completed_at DESC
             LIMIT %s;
        """, (package_id, package_id, user_id, user_id, ATTEMPT_LIST_LIMIT))
        return jsonify({"ok": True, "attempts": [serialize_attempt_summary(r) for r in rows or []]})

    @bp.get("/admin/stats")
    def admin_stats():
        require_admin()
        package_id = (request.args.get("packageId") or "").strip() or None
        rows = db.fetch_all("""
            SELECT score, time_spent
              FROM quiz_attempts
             WHERE (%s::text IS NULL OR package_id = %s);
        """, (package_id, package_id))
        stats = summarize_attempts(list(rows or []))
        stats["packageId"] = package_id
        return jsonify({"ok": True, "stats": stats})

    @bp.get("/dashboard")
    def dashboard():
        uid = require_user()
        rows = db.fetch_all(f"""
            SELECT {_SUMMARY_COLUMNS}
              FROM quiz_attempts a
              JOIN packages p ON p.id = a.package_id
             WHERE a.user_id = %s
             ORDER BY a.completed_at DESC;
        """, (uid,))
        return jsonify({"ok": True, "dashboard": dashboard_summary(list(rows or []))})

    return bp
