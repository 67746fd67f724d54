# main.py — quiz backend entry point: config, Database, auth, blueprints (psycopg3 + pooling)

import os

from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException

from db import Database
from schema import ensure_schema
from grading import QuizError
from auth import init_oauth, make_identity_hook, register_auth_routes
from attempts import create_attempts_blueprint
from packages import create_packages_blueprint
from purchases import create_purchases_blueprint

# =============================================================================
# BASE_PATH & Flask app
# =============================================================================
BASE_PATH = (os.getenv("BASE_PATH", "") or "").rstrip("/")

app = Flask(__name__)
app.url_map.strict_slashes = False
app.secret_key = os.getenv("SECRET_KEY", "dev-secret")
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_SECURE=os.getenv("SESSION_COOKIE_SECURE", "1").lower() in {"1", "true", "yes"},
)

# =============================================================================
# Database (one handle for the process, injected everywhere else)
# =============================================================================
db = Database()

# =============================================================================
# Identity + auth routes
# =============================================================================
oauth = init_oauth(app)
app.before_request(make_identity_hook(db))
register_auth_routes(app, BASE_PATH, {"db": db, "oauth": oauth})


@app.get("/healthz")
def healthz():
    try:
        row = db.fetch_one("SELECT 1 AS ok;")
        ok = bool(row and row.get("ok") == 1)
        return ("ok" if ok else "db-fail", 200 if ok else 500)
    except Exception as e:
        print(f"[DB] health check failed: {e}")
        return ("db-fail", 500)


# =============================================================================
# Blueprints
# =============================================================================
_deps = {"db": db}

app.register_blueprint(create_packages_blueprint("", _deps, name="packages"))
app.register_blueprint(create_attempts_blueprint("", _deps, name="attempts"))
app.register_blueprint(create_purchases_blueprint("", _deps, name="purchases"))
if BASE_PATH:
    app.register_blueprint(create_packages_blueprint(BASE_PATH, _deps, name="packages_alias"))
    app.register_blueprint(create_attempts_blueprint(BASE_PATH, _deps, name="attempts_alias"))
    app.register_blueprint(create_purchases_blueprint(BASE_PATH, _deps, name="purchases_alias"))


# =============================================================================
# JSON errors
# =============================================================================
@app.errorhandler(QuizError)
def quiz_error(e: QuizError):
    return jsonify(e.to_dict()), e.status


@app.errorhandler(HTTPException)
def http_error(e: HTTPException):
    return jsonify({"ok": False, "error": e.description or e.name, "code": e.name.lower().replace(" ", "_")}), e.code


@app.errorhandler(500)
def server_error(e):
    original = getattr(e, "original_exception", None)
    if original is not None:
        print(f"[app] unhandled {type(original).__name__}: {original}")
    return jsonify({"ok": False, "error": "Internal server error", "code": "internal_server_error"}), 500


# =============================================================================
# CLI
# =============================================================================
@app.cli.command("init-db")
def init_db_command():
    """Create the quiz tables, indexes and triggers if they are missing."""
    count = ensure_schema(db)
    print(f"[DB] init-db done ({count} statements)")


# =============================================================================
# Local dev entry
# =============================================================================
if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    try:
        app.run(host="0.0.0.0", port=port, debug=True)
    finally:
        db.close()
