# auth.py — session identity, Google OAuth / password login, role gates
#
# Identity lives in session["user"] = {"email", "name", "picture", "sub"}.
# The before_request hook turns it into g.user_id / g.user_email / g.user_role.

import hmac
import os
import uuid
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlsplit, urlunsplit

from flask import Flask, abort, g, jsonify, redirect, request, session
from authlib.integrations.flask_client import OAuth

from projection import Role

# =============================================================================
# Config
# =============================================================================
AUTH_REQUIRED = os.getenv("AUTH_REQUIRED", "1").lower() in {"1", "true", "yes"}

GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET")
OAUTH_REDIRECT_BASE = (os.getenv("OAUTH_REDIRECT_BASE", "") or "").rstrip("/")

SUPERADMIN_EMAIL = (os.getenv("SUPERADMIN_EMAIL", "") or "").strip().lower()
_ADMIN_EMAILS_RAW = os.getenv("ADMIN_EMAILS", "")
ADMIN_EMAILS = {
    e.strip().lower()
    for part in _ADMIN_EMAILS_RAW.split(";")
    for e in part.split(",")
    if e.strip()
}

SIMPLE_LOGIN_PASSWORD = os.getenv("SIMPLE_LOGIN_PASSWORD", "")
SIMPLE_LOGIN_USER_EMAIL = (
    os.getenv("SIMPLE_LOGIN_USER_EMAIL") or SUPERADMIN_EMAIL or "quiz-user@example.com"
).strip().lower()
_enable_password_login_env = os.getenv("ENABLE_PASSWORD_LOGIN")
if _enable_password_login_env is not None:
    ENABLE_PASSWORD_LOGIN = _enable_password_login_env.lower() in {"1", "true", "yes"}
else:
    ENABLE_PASSWORD_LOGIN = not (GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET)


# =============================================================================
# OAuth (Google)
# =============================================================================
def init_oauth(app: Flask) -> Optional[OAuth]:
    if not (GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET):
        return None
    oauth = OAuth(app)
    oauth.register(
        "google",
        client_id=GOOGLE_CLIENT_ID,
        client_secret=GOOGLE_CLIENT_SECRET,
        server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
        client_kwargs={"scope": "openid email profile"},
    )
    return oauth


def _oauth_callback_url(base_path: str) -> str:
    base = OAUTH_REDIRECT_BASE or (request.url_root.rstrip("/") + (base_path or ""))
    if base.endswith("/auth/google/callback"):
        return base
    return base.rstrip("/") + "/auth/google/callback"


# =============================================================================
# Identity helpers
# =============================================================================
def _session_email() -> Optional[str]:
    u = session.get("user") or {}
    e = (u.get("email") or "").strip().lower()
    return e or None


def is_admin_email(email: Optional[str]) -> bool:
    e = (email or "").strip().lower()
    if not e:
        return False
    return e == SUPERADMIN_EMAIL or e in ADMIN_EMAILS


def ensure_user_row(db, email: str) -> Tuple[str, str]:
    """Returns (user_id, role) for the email, creating the row on first sight."""
    wanted_admin = is_admin_email(email)
    row = db.fetch_one("SELECT id, role FROM users WHERE email = %s;", (email,))
    if row:
        if wanted_admin and row.get("role") != Role.ADMIN.value:
            db.execute("UPDATE users SET role = 'admin' WHERE id = %s;", (row["id"],))
            print(f"[Auth] promoted {email} to admin")
            return row["id"], Role.ADMIN.value
        return row["id"], row.get("role") or Role.USER.value
    display = email.split("@", 1)[0].replace(".", " ").title()
    role = Role.ADMIN.value if wanted_admin else Role.USER.value
    rows = db.execute_returning("""
        INSERT INTO users (id, email, full_name, role)
        VALUES (%s, %s, %s, %s)
        ON CONFLICT (email) DO UPDATE SET full_name = COALESCE(users.full_name, EXCLUDED.full_name)
        RETURNING id, role;
    """, (str(uuid.uuid4()), email, display, role))
    return rows[0]["id"], rows[0]["role"]


def current_user_id() -> Optional[str]:
    return getattr(g, "user_id", None)


def current_role() -> Role:
    return Role.parse(getattr(g, "user_role", None))


def is_admin() -> bool:
    return current_role() == Role.ADMIN


def require_user() -> str:
    uid = current_user_id()
    if not uid:
        abort(401)
    return uid


def require_admin() -> str:
    uid = require_user()
    if not is_admin():
        abort(403)
    return uid


# =============================================================================
# Request hook
# =============================================================================
def make_identity_hook(db):
    def attach_identity():
        if request.path.endswith("/healthz"):
            return
        email = _session_email()
        if not email and not AUTH_REQUIRED:
            # local dev without a login round-trip
            email = SIMPLE_LOGIN_USER_EMAIL
        if not email:
            return
        user_id, role = ensure_user_row(db, email)
        g.user_email = email
        g.user_id = user_id
        g.user_role = role
    return attach_identity


# =============================================================================
# Routes
# =============================================================================
def _sanitize_next(next_url: Optional[str], base_path: str) -> str:
    home = (base_path or "") + "/"
    if not next_url:
        return home
    parts = urlsplit(next_url)
    if parts.scheme or parts.netloc:
        return home
    path = parts.path or "/"
    if path.startswith("/login") or path.startswith("/auth") or "/login" in path or "/auth/" in path:
        return home
    return urlunsplit(("", "", path, parts.query, "")) or home


def register_auth_routes(app: Flask, base_path: str, deps: Dict[str, Any]):
    """
    Required deps: db
    Optional deps: oauth (an Authlib OAuth registry with a 'google' client)
    """
    db = deps["db"]
    oauth: Optional[OAuth] = deps.get("oauth")
    password_login = ENABLE_PASSWORD_LOGIN or oauth is None

    if AUTH_REQUIRED:
        if password_login and SIMPLE_LOGIN_PASSWORD:
            print("[Auth] password login enabled.", flush=True)
        elif oauth is not None:
            print("[Auth] Google OAuth configured; password login disabled.", flush=True)
        else:
            print("[Auth] no login method configured; protected routes will answer 401.", flush=True)

    def _require_oauth() -> OAuth:
        if oauth is None:
            abort(503, description="Google OAuth is not configured.")
        return oauth

    def login():
        next_url = _sanitize_next(request.values.get("next"), base_path)
        if request.method == "POST":
            if not (password_login and SIMPLE_LOGIN_PASSWORD):
                abort(405)
            body = request.get_json(silent=True) or request.form
            password = (body.get("password") or "").strip()
            if not hmac.compare_digest(password, SIMPLE_LOGIN_PASSWORD):
                print("[Auth] password login rejected")
                return jsonify({"ok": False, "error": "Incorrect password."}), 401
            session["user"] = {
                "email": SIMPLE_LOGIN_USER_EMAIL,
                "name": "Quiz User",
                "picture": None,
                "sub": "password-login",
            }
            user_id, role = ensure_user_row(db, SIMPLE_LOGIN_USER_EMAIL)
            return jsonify({"ok": True, "user": {"id": user_id, "email": SIMPLE_LOGIN_USER_EMAIL, "role": role}, "next": next_url})

        if oauth is None and password_login:
            return jsonify({"ok": True, "method": "password", "next": next_url})
        provider = _require_oauth()
        session["login_next"] = next_url
        return provider.google.authorize_redirect(_oauth_callback_url(base_path))

    def auth_callback():
        provider = _require_oauth()
        token = provider.google.authorize_access_token()
        claims = token.get("userinfo") or provider.google.userinfo(token=token)
        email = (claims.get("email") or "").strip().lower()
        if not email:
            abort(400, description="Google authentication failed (no email).")
        session["user"] = {
            "email": email,
            "name": claims.get("name"),
            "picture": claims.get("picture"),
            "sub": claims.get("sub"),
        }
        ensure_user_row(db, email)
        print(f"[Auth] signed in {email}")
        return redirect(_sanitize_next(session.pop("login_next", None), base_path))

    def logout():
        session.clear()
        return jsonify({"ok": True})

    def whoami():
        uid = current_user_id()
        if not uid:
            return jsonify({"ok": True, "authenticated": False})
        return jsonify({
            "ok": True,
            "authenticated": True,
            "user": {"id": uid, "email": getattr(g, "user_email", None), "role": current_role().value},
        })

    prefixes = [""] + ([base_path] if base_path else [])
    for prefix in prefixes:
        suffix = "_bp" if prefix else ""
        app.add_url_rule(f"{prefix}/login", endpoint=f"login{suffix}", view_func=login, methods=["GET", "POST"])
        app.add_url_rule(f"{prefix}/auth/google/callback", endpoint=f"auth_callback{suffix}", view_func=auth_callback, methods=["GET"])
        app.add_url_rule(f"{prefix}/logout", endpoint=f"logout{suffix}", view_func=logout, methods=["GET", "POST"])
        app.add_url_rule(f"{prefix}/whoami", endpoint=f"whoami{suffix}", view_func=whoami, methods=["GET"])
