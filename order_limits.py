"""
Admission check consulted before a user creates an order or a bundle order.

Daily and active quotas are shared by both order types.
"""
from datetime import datetime, timezone
from typing import Optional, Tuple

from pymongo.database import Database

from admin_config import get_settings
from database import oid
from lifecycle import ACTIVE_STATUSES

DAILY_LIMIT_REACHED = "daily limit reached"
ACTIVE_LIMIT_REACHED = "active limit reached"


def local_midnight_utc(at: Optional[datetime] = None) -> datetime:
    """Start of the server's local day, as naive UTC (the stored form)."""
    local = (at or datetime.now(timezone.utc)).astimezone()
    midnight = local.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight.astimezone(timezone.utc).replace(tzinfo=None)


def check_order_limits(db: Database, user_id, role: str = "user") -> Tuple[bool, Optional[str]]:
    """Return (allowed, reason). Agents and admins are never limited."""
    if role != "user":
        return True, None

    settings = get_settings(db)
    if not settings.order_limit_enabled:
        return True, None

    uid = oid(user_id)
    since = {"user_id": uid, "created_at": {"$gte": local_midnight_utc()}}
    created_today = db.order.count_documents(since) + db.bundle_order.count_documents(since)
    if created_today >= settings.max_orders_per_day:
        return False, DAILY_LIMIT_REACHED

    active = {"user_id": uid, "status": {"$in": list(ACTIVE_STATUSES)}}
    active_count = db.order.count_documents(active) + db.bundle_order.count_documents(active)
    if active_count >= settings.max_active_orders:
        return False, ACTIVE_LIMIT_REACHED

    return True, None
