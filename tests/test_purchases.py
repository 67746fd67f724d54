import copy
import sys
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

import pytest
from flask import Flask, g

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from db import UnitOfWork  # noqa: E402
from purchases import calculate_discount, create_purchases_blueprint  # noqa: E402

PURCHASE_COLUMNS = (
    "id", "user_id", "target_id", "original_price", "price_paid", "discount_applied",
    "referral_code_id", "proof_image_url", "purchased_at",
)


class FakeCursor:
    def __init__(self, db):
        self.db = db
        self.description = None
        self._rows = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=None):
        self.description = [("id",)]
        self._rows = []
        if "INSERT INTO package_purchases" in sql or "INSERT INTO bundle_purchases" in sql:
            kind = "package" if "package_purchases" in sql else "bundle"
            row = dict(zip(PURCHASE_COLUMNS, params))
            row[f"{kind}_id"] = row.pop("target_id")
            row["approved"] = False
            row["expires_at"] = None
            table = self.db.purchases[kind]
            if any(r["user_id"] == row["user_id"] and r[f"{kind}_id"] == row[f"{kind}_id"] for r in table):
                return
            table.append(row)
            self._rows = [dict(row)]
        elif "UPDATE referral_codes" in sql:
            code = next(c for c in self.db.codes if c["id"] == params[0])
            if self.db.exhaust_code_on_update:
                code["used_count"] = code["quota"]
            if code["used_count"] < code["quota"]:
                code["used_count"] += 1
                self._rows = [{"id": code["id"]}]
        else:
            raise AssertionError(f"unexpected write: {sql}")

    def fetchall(self):
        return self._rows


class FakeConnection:
    def __init__(self, db):
        self.db = db

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    @contextmanager
    def transaction(self):
        snapshot = copy.deepcopy((self.db.purchases, self.db.codes))
        try:
            yield
        except Exception:
            self.db.purchases, self.db.codes = snapshot
            raise

    def cursor(self, row_factory=None):
        return FakeCursor(self.db)


class FakeDB:
    def __init__(self):
        self.targets = {
            "package": {
                "pkg-1": {"id": "pkg-1", "title": "Cardiology I", "price": Decimal("40.00"), "is_active": True},
                "pkg-old": {"id": "pkg-old", "title": "Retired", "price": Decimal("5.00"), "is_active": False},
            },
            "bundle": {
                "b-1": {"id": "b-1", "title": "Everything", "price": Decimal("100.00"), "is_active": True},
            },
        }
        self.purchases = {"package": [], "bundle": []}
        later = datetime.now(timezone.utc) + timedelta(days=30)
        earlier = datetime.now(timezone.utc) - timedelta(days=1)
        self.codes = [
            {"id": "rc-1", "code": "SAVE25", "discount_type": "PERCENTAGE", "discount_value": Decimal("25"),
             "quota": 10, "used_count": 0, "is_active": True, "expires_at": later},
            {"id": "rc-2", "code": "BIGFLAT", "discount_type": "FIXED", "discount_value": Decimal("500"),
             "quota": 10, "used_count": 0, "is_active": True, "expires_at": None},
            {"id": "rc-3", "code": "OFF", "discount_type": "FIXED", "discount_value": Decimal("5"),
             "quota": 10, "used_count": 0, "is_active": False, "expires_at": None},
            {"id": "rc-4", "code": "OLD", "discount_type": "FIXED", "discount_value": Decimal("5"),
             "quota": 10, "used_count": 0, "is_active": True, "expires_at": earlier},
            {"id": "rc-5", "code": "FULL", "discount_type": "FIXED", "discount_value": Decimal("5"),
             "quota": 2, "used_count": 2, "is_active": True, "expires_at": None},
        ]
        self.exhaust_code_on_update = False
        self.emails = {"u1": "u1@example.com"}

    def connection(self):
        return FakeConnection(self)

    def unit_of_work(self):
        return UnitOfWork(self.connection)

    def fetch_one(self, sql, params=()):
        rows = self.fetch_all(sql, params)
        return rows[0] if rows else None

    def fetch_all(self, sql, params=()):
        for kind, table in (("package", "packages"), ("bundle", "bundles")):
            if f"FROM {table} WHERE id" in sql:
                t = self.targets[kind].get(params[0])
                return [dict(t)] if t else []
        if "FROM referral_codes" in sql:
            return [dict(c) for c in self.codes if c["code"] == params[0]]
        for kind in ("package", "bundle"):
            if f"FROM {kind}_purchases pu" in sql:
                rows = self.purchases[kind]
                if params:
                    rows = [r for r in rows if r["user_id"] == params[0]]
                codes = {c["id"]: c["code"] for c in self.codes}
                out = [
                    dict(r, target_title=self.targets[kind][r[f"{kind}_id"]]["title"],
                         referral_code=codes.get(r["referral_code_id"]), user_email=self.emails.get(r["user_id"]))
                    for r in rows
                ]
                return sorted(out, key=lambda r: r["purchased_at"], reverse=True)
        if "FROM bundle_purchases bp" in sql:
            return []
        for kind in ("package", "bundle"):
            if f"FROM {kind}_purchases" in sql:
                user_id, target_id = params
                return [dict(r) for r in self.purchases[kind]
                        if r["user_id"] == user_id and r[f"{kind}_id"] == target_id]
        raise AssertionError(f"unexpected query: {sql}")

    def execute_returning(self, sql, params=()):
        kind = "package" if "package_purchases" in sql else "bundle"
        table = self.purchases[kind]
        purchase_id = params[-1]
        row = next((r for r in table if r["id"] == purchase_id), None)
        if row is None:
            return []
        if sql.lstrip().startswith("DELETE"):
            table.remove(row)
        elif "approved = TRUE" in sql:
            row["approved"] = True
            if "expires_at" in sql:
                row["expires_at"] = params[0]
        else:
            row["approved"] = False
        return [dict(row)]


def _make_app(db, user_id="u1", role="user"):
    app = Flask(__name__)
    app.testing = True

    @app.before_request
    def _set_user():
        if user_id:
            g.user_id = user_id
            g.user_role = role

    app.register_blueprint(create_purchases_blueprint("", {"db": db}))
    return app


@pytest.fixture
def db():
    return FakeDB()


def test_package_purchase_is_pending(db):
    client = _make_app(db).test_client()

    resp = client.post("/purchases/package", json={"packageId": "pkg-1", "proofImageUrl": "https://img/1.png"})

    assert resp.status_code == 201
    purchase = resp.get_json()["purchase"]
    assert purchase["approved"] is False
    assert purchase["pricePaid"] == 40.0
    assert purchase["packageId"] == "pkg-1"
    assert "savings" not in purchase
    assert len(db.purchases["package"]) == 1


def test_percentage_code_is_case_insensitive_and_counted(db):
    client = _make_app(db).test_client()

    resp = client.post("/purchases/package", json={"packageId": "pkg-1", "referralCode": "save25"})

    purchase = resp.get_json()["purchase"]
    assert resp.status_code == 201
    assert purchase["discountApplied"] == 10.0
    assert purchase["pricePaid"] == 30.0
    assert purchase["savings"] == 10.0
    assert purchase["referralCode"] == "SAVE25"
    assert db.codes[0]["used_count"] == 1


def test_fixed_discount_is_capped_at_price(db):
    client = _make_app(db).test_client()

    purchase = client.post("/purchases/package", json={"packageId": "pkg-1", "referralCode": "BIGFLAT"}).get_json()["purchase"]

    assert purchase["discountApplied"] == 40.0
    assert purchase["pricePaid"] == 0.0


@pytest.mark.parametrize("code,message", [
    ("NOPE", "Invalid referral code"),
    ("OFF", "no longer active"),
    ("OLD", "expired"),
    ("FULL", "reached its usage limit"),
])
def test_rejected_referral_codes(db, code, message):
    client = _make_app(db).test_client()

    resp = client.post("/purchases/package", json={"packageId": "pkg-1", "referralCode": code})

    assert resp.status_code == 400
    assert message in resp.get_json()["error"]
    assert db.purchases["package"] == []


def test_code_exhausted_between_check_and_write_rolls_back(db):
    db.exhaust_code_on_update = True
    client = _make_app(db).test_client()

    resp = client.post("/purchases/package", json={"packageId": "pkg-1", "referralCode": "SAVE25"})

    assert resp.status_code == 400
    assert db.purchases["package"] == []


def test_inactive_or_unknown_package_is_404(db):
    client = _make_app(db).test_client()
    assert client.post("/purchases/package", json={"packageId": "pkg-old"}).status_code == 404
    assert client.post("/purchases/package", json={"packageId": "pkg-nope"}).status_code == 404
    assert client.post("/purchases/package", json={}).status_code == 400


def test_owned_package_is_conflict(db):
    db.purchases["package"].append({
        "id": "pp-1", "user_id": "u1", "package_id": "pkg-1", "approved": True, "expires_at": None,
        "original_price": Decimal("40"), "price_paid": Decimal("40"), "discount_applied": Decimal("0"),
        "referral_code_id": None, "proof_image_url": None, "purchased_at": datetime.now(timezone.utc),
    })
    client = _make_app(db).test_client()

    resp = client.post("/purchases/package", json={"packageId": "pkg-1"})

    assert resp.status_code == 409


def test_pending_package_record_is_conflict(db):
    client = _make_app(db).test_client()
    assert client.post("/purchases/package", json={"packageId": "pkg-1", "referralCode": "SAVE25"}).status_code == 201

    again = client.post("/purchases/package", json={"packageId": "pkg-1", "referralCode": "SAVE25"})

    assert again.status_code == 409
    assert len(db.purchases["package"]) == 1
    assert db.codes[0]["used_count"] == 1


def test_bundle_purchase_once(db):
    client = _make_app(db).test_client()

    first = client.post("/purchases/bundle", json={"bundleId": "b-1"})
    second = client.post("/purchases/bundle", json={"bundleId": "b-1"})

    assert first.status_code == 201
    assert first.get_json()["purchase"]["bundleId"] == "b-1"
    assert second.status_code == 409


def test_my_purchases(db):
    client = _make_app(db).test_client()
    client.post("/purchases/package", json={"packageId": "pkg-1"})
    client.post("/purchases/bundle", json={"bundleId": "b-1"})

    data = client.get("/purchases/mine").get_json()

    assert [p["targetTitle"] for p in data["packages"]] == ["Cardiology I"]
    assert data["packages"][0]["hasAccess"] is False
    assert [p["bundleId"] for p in data["bundles"]] == ["b-1"]


def test_admin_approve_revoke_delete(db):
    _make_app(db).test_client().post("/purchases/package", json={"packageId": "pkg-1"})
    purchase_id = db.purchases["package"][0]["id"]
    admin = _make_app(db, user_id="admin-1", role="admin").test_client()

    approved = admin.post(f"/admin/purchases/package/{purchase_id}/approve", json={"expiresAt": "2027-01-01T00:00:00Z"})
    assert approved.status_code == 200
    assert approved.get_json()["purchase"]["approved"] is True
    assert db.purchases["package"][0]["expires_at"] == datetime(2027, 1, 1, tzinfo=timezone.utc)

    revoked = admin.post(f"/admin/purchases/package/{purchase_id}/revoke")
    assert revoked.get_json()["purchase"]["approved"] is False

    assert admin.delete(f"/admin/purchases/package/{purchase_id}").status_code == 200
    assert db.purchases["package"] == []
    assert admin.delete(f"/admin/purchases/package/{purchase_id}").status_code == 404


def test_admin_routes_reject_bad_type_and_non_admins(db):
    admin = _make_app(db, user_id="admin-1", role="admin").test_client()
    assert admin.post("/admin/purchases/course/x/approve").status_code == 400

    user = _make_app(db).test_client()
    assert user.get("/admin/purchases").status_code == 403
    assert _make_app(db, user_id=None).test_client().get("/purchases/mine").status_code == 401


@pytest.mark.parametrize("price,kind,value,expected", [
    (Decimal("40"), "PERCENTAGE", Decimal("25"), Decimal("10.00")),
    (Decimal("19.99"), "PERCENTAGE", Decimal("15"), Decimal("3.00")),
    (Decimal("40"), "FIXED", Decimal("15"), Decimal("15.00")),
    (Decimal("10"), "FIXED", Decimal("15"), Decimal("10.00")),
])
def test_calculate_discount(price, kind, value, expected):
    assert calculate_discount(price, kind, value) == expected
