"""
Cargo registry: the freight forwarders buyers choose from on their profile.

Admins maintain the list; everyone can read it. Names are unique.
"""
import logging
from typing import Any, Dict, List, Optional

from pymongo.database import Database

from database import create_document, now, oid, serialize_doc
from errors import AlreadyExists, NotFound, ValidationError
from schemas import Cargo, build

logger = logging.getLogger(__name__)

_OPTIONAL_FIELDS = ("description", "phone", "location", "website", "facebook", "image_url")


def _clean(data: Dict[str, Any]) -> Dict[str, Any]:
    out = {}
    for key in _OPTIONAL_FIELDS:
        if key in data:
            value = data[key]
            out[key] = (value.strip() or None) if isinstance(value, str) else value
    return out


class CargoRegistry:
    def __init__(self, db: Database):
        self.db = db

    def _check_name(self, name: Optional[str], exclude_id=None) -> str:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Name is required")
        flt: Dict[str, Any] = {"name": name}
        if exclude_id is not None:
            flt["_id"] = {"$ne": exclude_id}
        if self.db.cargo.find_one(flt, {"_id": 1}):
            raise AlreadyExists("Cargo with this name already exists")
        return name

    def list(self) -> List[Dict[str, Any]]:
        return [serialize_doc(c) for c in self.db.cargo.find({}).sort("name", 1)]

    def create(self, data: Dict[str, Any]) -> Dict[str, Any]:
        name = self._check_name(data.get("name"))
        cargo = build(Cargo, name=name, **_clean(data))
        cargo_id = create_document(self.db, "cargo", cargo)
        logger.info("Cargo %s (%s) created", cargo_id, name)
        return serialize_doc(self.db.cargo.find_one({"_id": oid(cargo_id)}))

    def update(self, cargo_id, data: Dict[str, Any]) -> Dict[str, Any]:
        cid = oid(cargo_id)
        if not self.db.cargo.find_one({"_id": cid}, {"_id": 1}):
            raise NotFound("Cargo not found")
        updates = {"name": self._check_name(data.get("name"), exclude_id=cid), **_clean(data)}
        self.db.cargo.update_one({"_id": cid}, {"$set": {**updates, "updated_at": now()}})
        return serialize_doc(self.db.cargo.find_one({"_id": cid}))

    def delete(self, cargo_id) -> None:
        result = self.db.cargo.delete_one({"_id": oid(cargo_id)})
        if result.deleted_count == 0:
            raise NotFound("Cargo not found")
