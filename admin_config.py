"""Admin-configured platform settings (single document in `admin_settings`)."""
from typing import Any, Dict

from pymongo.database import Database

from database import now
from schemas import AdminSettings


def get_settings(db: Database) -> AdminSettings:
    doc = db.admin_settings.find_one({})
    if not doc:
        return AdminSettings()
    known = {k: v for k, v in doc.items() if k in AdminSettings.model_fields and v is not None}
    return AdminSettings(**known)


def update_settings(db: Database, updates: Dict[str, Any]) -> AdminSettings:
    merged = get_settings(db).model_dump()
    merged.update({k: v for k, v in updates.items() if v is not None})
    settings = AdminSettings(**merged)
    db.admin_settings.update_one(
        {},
        {"$set": {**settings.model_dump(), "updated_at": now()}, "$setOnInsert": {"created_at": now()}},
        upsert=True,
    )
    return settings
