# access.py — who may attempt a package (direct purchase or live bundle membership)

from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set


def as_utc(dt: datetime) -> datetime:
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt


def _usable(row: Optional[Dict[str, Any]], now: datetime) -> bool:
    """Approved and not past its expiry. A missing row is never usable."""
    if not row or not row.get("approved"):
        return False
    expires_at = row.get("expires_at")
    if expires_at is None:
        return True
    return as_utc(expires_at) >= as_utc(now)


def has_package_access(db, user_id, package_id, now: Optional[datetime] = None) -> bool:
    """
    True when the user holds an approved, unexpired purchase of the package,
    either directly or through a bundle that contains it right now.

    Unknown users and packages simply come back False. Database errors are
    not caught here.
    """
    if not user_id or not package_id:
        return False
    now = now or datetime.now(timezone.utc)

    direct = db.fetch_one("""
        SELECT approved, expires_at
          FROM package_purchases
         WHERE user_id = %s AND package_id = %s
         LIMIT 1;
    """, (user_id, package_id))
    if _usable(direct, now):
        return True

    via_bundles = db.fetch_all("""
        SELECT bp.approved, bp.expires_at
          FROM bundle_purchases bp
          JOIN bundle_packages bpk ON bpk.bundle_id = bp.bundle_id
         WHERE bp.user_id = %s AND bpk.package_id = %s;
    """, (user_id, package_id))
    return any(_usable(row, now) for row in via_bundles or [])


def has_bundle_access(db, user_id, bundle_id, now: Optional[datetime] = None) -> bool:
    if not user_id or not bundle_id:
        return False
    now = now or datetime.now(timezone.utc)
    row = db.fetch_one("""
        SELECT approved, expires_at
          FROM bundle_purchases
         WHERE user_id = %s AND bundle_id = %s
         LIMIT 1;
    """, (user_id, bundle_id))
    return _usable(row, now)


def entitled_package_ids(db, user_id, now: Optional[datetime] = None) -> Set[str]:
    """Every package id the user may attempt right now, in one round trip."""
    if not user_id:
        return set()
    now = now or datetime.now(timezone.utc)
    rows = db.fetch_all("""
        SELECT package_id, approved, expires_at
          FROM package_purchases
         WHERE user_id = %s
        UNION ALL
        SELECT bpk.package_id, bp.approved, bp.expires_at
          FROM bundle_purchases bp
          JOIN bundle_packages bpk ON bpk.bundle_id = bp.bundle_id
         WHERE bp.user_id = %s;
    """, (user_id, user_id))
    return {str(row["package_id"]) for row in rows or [] if _usable(row, now)}
