# packages.py

from typing import Any, Dict, List, Optional, Sequence

from flask import Blueprint, abort, jsonify

from access import entitled_package_ids, has_package_access
from auth import current_role, require_user
from projection import Audience, Role, audience_for, project_package


# =============================================================================
# Loaders (shared with attempts.py)
# =============================================================================
def load_package(db, package_id) -> Optional[Dict[str, Any]]:
    return db.fetch_one("""
        SELECT p.id, p.title, p.description, p.price, p.is_active, p.time_limit_min,
               p.available_from, p.available_until, p.created_by, p.created_at,
               (SELECT count(*) FROM package_questions pq WHERE pq.package_id = p.id) AS question_count
          FROM packages p
         WHERE p.id = %s;
    """, (package_id,))


def _attach_answers(db, questions: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    if not questions:
        return questions
    ids = [q["id"] for q in questions]
    rows = db.fetch_all("""
        SELECT id, question_id, text, is_correct, position
          FROM answers
         WHERE question_id = ANY(%s)
         ORDER BY question_id, position, id;
    """, (ids,))
    by_question: Dict[str, List[Dict[str, Any]]] = {}
    for r in rows or []:
        by_question.setdefault(str(r["question_id"]), []).append(r)
    for q in questions:
        q["answers"] = by_question.get(str(q["id"]), [])
    return questions


def load_package_questions(db, package_id) -> List[Dict[str, Any]]:
    """The package's questions in package order, each with its ``answers`` list."""
    questions = db.fetch_all("""
        SELECT q.id, q.text, q.explanation, q.image_urls, pq.position
          FROM package_questions pq
          JOIN questions q ON q.id = pq.question_id
         WHERE pq.package_id = %s
         ORDER BY pq.position, q.id;
    """, (package_id,))
    return _attach_answers(db, list(questions or []))


def load_questions(db, question_ids: Sequence[str]) -> List[Dict[str, Any]]:
    if not question_ids:
        return []
    questions = db.fetch_all("""
        SELECT id, text, explanation, image_urls
          FROM questions
         WHERE id = ANY(%s);
    """, (list(question_ids),))
    return _attach_answers(db, list(questions or []))


# =============================================================================
# Blueprint
# =============================================================================
def create_packages_blueprint(base_path: str, deps: Dict[str, Any], name: str = "packages") -> Blueprint:
    """
    Required deps: db
    """
    bp = Blueprint(name, __name__, url_prefix=base_path or None)
    db = deps["db"]

    @bp.get("/packages")
    def list_packages():
        uid = require_user()
        admin = current_role() == Role.ADMIN
        rows = db.fetch_all(f"""
            SELECT p.id, p.title, p.description, p.price, p.is_active, p.time_limit_min,
                   p.available_from, p.available_until, p.created_by, p.created_at,
                   count(pq.question_id) AS question_count
              FROM packages p
              LEFT JOIN package_questions pq ON pq.package_id = p.id
             {"" if admin else "WHERE p.is_active"}
             GROUP BY p.id
             ORDER BY p.created_at DESC;
        """)
        audience = Audience.ADMIN if admin else Audience.PUBLIC
        entitled = set() if admin else entitled_package_ids(db, uid)
        items = []
        for row in rows or []:
            item = project_package(row, audience)
            if not admin:
                item["hasAccess"] = str(row["id"]) in entitled
            items.append(item)
        return jsonify({"ok": True, "packages": items})

    @bp.get("/packages/<package_id>")
    def get_package(package_id):
        uid = require_user()
        role = current_role()
        package = load_package(db, package_id)
        if not package or (role != Role.ADMIN and not package.get("is_active")):
            abort(404)
        entitled = role == Role.ADMIN or has_package_access(db, uid, package_id)
        audience = audience_for(role, entitled=entitled)
        questions = load_package_questions(db, package_id) if audience != Audience.PUBLIC else None
        out = project_package(package, audience, questions)
        out["hasAccess"] = entitled
        return jsonify({"ok": True, "package": out})

    @bp.get("/packages/<package_id>/access")
    def package_access(package_id):
        uid = require_user()
        return jsonify({"ok": True, "packageId": package_id, "hasAccess": has_package_access(db, uid, package_id)})

    return bp
