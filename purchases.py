import uuid
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional, Tuple

from flask import Blueprint, abort, jsonify, request

from access import as_utc, has_bundle_access, has_package_access
from auth import require_admin, require_user
from db import UnitOfWorkAborted

CENTS = Decimal("0.01")

# type -> (purchase table, target column, target table)
PURCHASE_KINDS: Dict[str, Tuple[str, str, str]] = {
    "package": ("package_purchases", "package_id", "packages"),
    "bundle": ("bundle_purchases", "bundle_id", "bundles"),
}


class ReferralRejected(ValueError):
    pass


def calculate_discount(price, discount_type: str, discount_value) -> Decimal:
    price = Decimal(str(price))
    value = Decimal(str(discount_value))
    if discount_type == "PERCENTAGE":
        discount = price * value / Decimal(100)
    else:
        discount = min(value, price)
    return discount.quantize(CENTS, rounding=ROUND_HALF_UP)


def check_referral_code(code_row: Optional[Dict[str, Any]], now: datetime) -> Dict[str, Any]:
    if not code_row:
        raise ReferralRejected("Invalid referral code")
    if not code_row.get("is_active"):
        raise ReferralRejected("This referral code is no longer active")
    expires_at = code_row.get("expires_at")
    if expires_at is not None and as_utc(expires_at) < as_utc(now):
        raise ReferralRejected("This referral code has expired")
    if int(code_row.get("used_count") or 0) >= int(code_row.get("quota") or 0):
        raise ReferralRejected("This referral code has reached its usage limit")
    return code_row


def _iso(value):
    return value.isoformat() if hasattr(value, "isoformat") else value


def _money(value):
    return float(value) if value is not None else None


def serialize_purchase(row: Dict[str, Any], kind: str) -> Dict[str, Any]:
    _, target_col, _ = PURCHASE_KINDS[kind]
    out = {
        "id": str(row["id"]),
        "type": kind,
        "userId": row.get("user_id"),
        "targetId": row.get(target_col),
        "targetTitle": row.get("target_title"),
        "originalPrice": _money(row.get("original_price")),
        "pricePaid": _money(row.get("price_paid")),
        "discountApplied": _money(row.get("discount_applied")),
        "referralCode": row.get("referral_code"),
        "approved": bool(row.get("approved")),
        "expiresAt": _iso(row.get("expires_at")),
        "proofImageUrl": row.get("proof_image_url"),
        "purchasedAt": _iso(row.get("purchased_at")),
    }
    out[f"{kind}Id"] = row.get(target_col)
    if row.get("user_email") is not None:
        out["userEmail"] = row["user_email"]
    return out


def create_purchases_blueprint(base_path: str, deps: Dict[str, Any], name: str = "purchases") -> Blueprint:
    """
    Required deps: db
    """
    bp = Blueprint(name, __name__, url_prefix=base_path or None)
    db = deps["db"]

    def _error(message: str, status: int, code: str):
        return jsonify({"ok": False, "error": message, "code": code}), status

    def _purchase(kind: str):
        uid = require_user()
        table, target_col, target_table = PURCHASE_KINDS[kind]
        body = request.get_json(silent=True) or {}
        target_id = body.get(f"{kind}Id")
        if not isinstance(target_id, str) or not target_id.strip():
            return _error(f"{kind}Id is required", 400, "missing_field")
        target_id = target_id.strip()
        now = datetime.now(timezone.utc)

        target = db.fetch_one(
            f"SELECT id, title, price, is_active FROM {target_table} WHERE id = %s;", (target_id,)
        )
        if not target or not target.get("is_active"):
            return _error(f"{kind.title()} not found or inactive", 404, "not_found")

        if kind == "package":
            owned = has_package_access(db, uid, target_id, now)
        else:
            owned = db.fetch_one(
                "SELECT id FROM bundle_purchases WHERE user_id = %s AND bundle_id = %s;", (uid, target_id)
            ) is not None
        if owned:
            return _error(f"You already have this {kind}", 409, "already_purchased")

        price = Decimal(str(target.get("price") or 0))
        discount = Decimal("0.00")
        code_row = None
        raw_code = str(body.get("referralCode") or "").strip()
        if raw_code:
            code_row = db.fetch_one("""
                SELECT id, code, discount_type, discount_value, quota, used_count, is_active, expires_at
                  FROM referral_codes
                 WHERE code = %s;
            """, (raw_code.upper(),))
            try:
                check_referral_code(code_row, now)
            except ReferralRejected as e:
                print(f"[purchases] referral {raw_code.upper()!r} rejected for user={uid}: {e}")
                return _error(str(e), 400, "invalid_referral_code")
            discount = calculate_discount(price, code_row["discount_type"], code_row["discount_value"])

        purchase_id = str(uuid.uuid4())
        uow = db.unit_of_work()
        uow.add(f"""
            INSERT INTO {table}
              (id, user_id, {target_col}, original_price, price_paid, discount_applied,
               referral_code_id, approved, proof_image_url, purchased_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, FALSE, %s, %s)
            ON CONFLICT (user_id, {target_col}) DO NOTHING
            RETURNING *;
        """, (
            purchase_id, uid, target_id, price, price - discount, discount,
            code_row["id"] if code_row else None, body.get("proofImageUrl") or None, now,
        ), require_row=True)
        if code_row:
            uow.add("""
                UPDATE referral_codes
                   SET used_count = used_count + 1
                 WHERE id = %s AND used_count < quota
                RETURNING id;
            """, (code_row["id"],), require_row=True)
        try:
            results = uow.commit()
        except UnitOfWorkAborted as e:
            if e.index == 0:
                return _error(f"You already have this {kind}", 409, "already_purchased")
            return _error("This referral code has reached its usage limit", 400, "invalid_referral_code")

        row = dict(results[0][0], target_title=target.get("title"))
        if code_row:
            row["referral_code"] = code_row["code"]
        print(f"[purchases] {kind} {target_id} requested by user={uid} paid={price - discount}")
        out = serialize_purchase(row, kind)
        if discount > 0:
            out["savings"] = float(discount)
        return jsonify({
            "ok": True,
            "message": f"{kind.title()} purchase request submitted. It becomes usable once an admin approves it.",
            "purchase": out,
        }), 201

    @bp.post("/purchases/package")
    def purchase_package():
        return _purchase("package")

    @bp.post("/purchases/bundle")
    def purchase_bundle():
        return _purchase("bundle")

    def _list(kind: str, where: str = "", params: tuple = ()):
        table, target_col, target_table = PURCHASE_KINDS[kind]
        return db.fetch_all(f"""
            SELECT pu.*, t.title AS target_title, rc.code AS referral_code, u.email AS user_email
              FROM {table} pu
              JOIN {target_table} t ON t.id = pu.{target_col}
              JOIN users u ON u.id = pu.user_id
              LEFT JOIN referral_codes rc ON rc.id = pu.referral_code_id
             {where}
             ORDER BY pu.purchased_at DESC;
        """, params) or []

    @bp.get("/purchases/mine")
    def my_purchases():
        uid = require_user()
        now = datetime.now(timezone.utc)
        packages = []
        for r in _list("package", "WHERE pu.user_id = %s", (uid,)):
            item = serialize_purchase(r, "package")
            item["hasAccess"] = has_package_access(db, uid, r["package_id"], now)
            packages.append(item)
        bundles = []
        for r in _list("bundle", "WHERE pu.user_id = %s", (uid,)):
            item = serialize_purchase(r, "bundle")
            item["hasAccess"] = has_bundle_access(db, uid, r["bundle_id"], now)
            bundles.append(item)
        return jsonify({"ok": True, "packages": packages, "bundles": bundles})

    # ---------- Admin ----------
    @bp.get("/admin/purchases")
    def admin_list_purchases():
        require_admin()
        return jsonify({
            "ok": True,
            "packages": [serialize_purchase(r, "package") for r in _list("package")],
            "bundles": [serialize_purchase(r, "bundle") for r in _list("bundle")],
        })

    def _kind_or_400(kind: str):
        if kind not in PURCHASE_KINDS:
            abort(400, description="Invalid purchase type")
        return PURCHASE_KINDS[kind]

    def _parse_expires_at(raw) -> Optional[datetime]:
        if raw in (None, ""):
            return None
        if not isinstance(raw, str):
            abort(400, description="expiresAt must be an ISO-8601 timestamp")
        value = raw.strip()
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        try:
            return as_utc(datetime.fromisoformat(value))
        except ValueError:
            abort(400, description="expiresAt must be an ISO-8601 timestamp")

    @bp.post("/admin/purchases/<kind>/<purchase_id>/approve")
    def admin_approve(kind, purchase_id):
        require_admin()
        table, _, _ = _kind_or_400(kind)
        body = request.get_json(silent=True) or {}
        if "expiresAt" in body:
            rows = db.execute_returning(
                f"UPDATE {table} SET approved = TRUE, expires_at = %s WHERE id = %s RETURNING *;",
                (_parse_expires_at(body.get("expiresAt")), purchase_id),
            )
        else:
            rows = db.execute_returning(
                f"UPDATE {table} SET approved = TRUE WHERE id = %s RETURNING *;", (purchase_id,)
            )
        if not rows:
            abort(404)
        print(f"[purchases] approved {kind} purchase {purchase_id}")
        return jsonify({"ok": True, "purchase": serialize_purchase(rows[0], kind)})

    @bp.post("/admin/purchases/<kind>/<purchase_id>/revoke")
    def admin_revoke(kind, purchase_id):
        require_admin()
        table, _, _ = _kind_or_400(kind)
        rows = db.execute_returning(
            f"UPDATE {table} SET approved = FALSE WHERE id = %s RETURNING *;", (purchase_id,)
        )
        if not rows:
            abort(404)
        print(f"[purchases] revoked {kind} purchase {purchase_id}")
        return jsonify({"ok": True, "purchase": serialize_purchase(rows[0], kind)})

    @bp.delete("/admin/purchases/<kind>/<purchase_id>")
    def admin_delete(kind, purchase_id):
        require_admin()
        table, _, _ = _kind_or_400(kind)
        rows = db.execute_returning(f"DELETE FROM {table} WHERE id = %s RETURNING *;", (purchase_id,))
        if not rows:
            abort(404)
        print(f"[purchases] deleted {kind} purchase {purchase_id}")
        return jsonify({"ok": True, "purchase": serialize_purchase(rows[0], kind)})

    return bp
