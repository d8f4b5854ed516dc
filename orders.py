"""
Single-order lifecycle.

published -> under_agent_review -> awaiting_user_payment -> completed, with
cancelled reachable under the per-role rules in lifecycle.py. Every status
write is conditional on the status it was read in, so a request that lost a
race gets Conflict instead of overwriting the winner.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database

from admin_config import get_settings
from agent_stats import AgentStatsService
from database import create_document, now, oid, serialize_doc
from errors import Conflict, Forbidden, InsufficientCredit, InvalidTransition, LimitExceeded, NotFound, ValidationError
from ledger import CardLedger
from lifecycle import (
    AWAITING_USER_PAYMENT,
    CANCELLED,
    COMPLETED,
    PUBLISHED,
    UNDER_AGENT_REVIEW,
    check_cancel,
    check_transition,
    is_visible,
    parse_status,
    visibility_filter,
)
from notifications import Notifier
from order_limits import check_order_limits
from schemas import AgentReport, Order, ReportEdit, build
from uploads import ImageStore

logger = logging.getLogger(__name__)

COMMISSION_RATE = 0.05
CARDS_PER_ORDER = 1
MAX_COMBINED_IMAGES = 9


def join_parties(db: Database, docs: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Serialize orders and attach `user`/`agent` summaries in one lookup pass."""
    docs = list(docs)
    ids = set()
    for d in docs:
        ids.add(d["user_id"])
        if d.get("agent_id"):
            ids.add(d["agent_id"])
    users = {u["_id"]: u for u in db.user.find({"_id": {"$in": list(ids)}})}
    profiles = {p["user_id"]: p for p in db.profile.find({"user_id": {"$in": list(ids)}})}

    def party(uid: Optional[ObjectId]) -> Optional[Dict[str, Any]]:
        if not uid:
            return None
        user = users.get(uid) or {}
        profile = profiles.get(uid)
        return {
            "id": str(uid),
            "email": user.get("email", ""),
            "role": user.get("role", "user"),
            "profile": serialize_doc(profile) if profile else None,
        }

    out = []
    for d in docs:
        row = serialize_doc(d)
        row["user"] = party(d["user_id"])
        row["agent"] = party(d.get("agent_id"))
        out.append(row)
    return out


class OrderService:
    def __init__(
        self,
        db: Database,
        ledger: Optional[CardLedger] = None,
        notifier: Optional[Notifier] = None,
        stats: Optional[AgentStatsService] = None,
        images: Optional[ImageStore] = None,
    ):
        self.db = db
        self.ledger = ledger or CardLedger(db)
        self.notifier = notifier or Notifier(db)
        self.stats = stats or AgentStatsService(db, self.notifier)
        self.images = images or ImageStore()

    # ---------------------------- Reads -----------------------------------
    def _load(self, order_id) -> Dict[str, Any]:
        order = self.db.order.find_one({"_id": oid(order_id)})
        if not order:
            raise NotFound("Order not found")
        return order

    def _load_visible(self, order_id, actor_id, role: str) -> Dict[str, Any]:
        order = self._load(order_id)
        if not is_visible(order, oid(actor_id), role):
            raise NotFound("Order not found")
        return order

    def list(self, actor_id, role: str, include_archived: bool = False) -> List[Dict[str, Any]]:
        flt = visibility_filter(oid(actor_id), role)
        if not include_archived and role in ("user", "agent"):
            flt = {"$and": [flt, {f"archived_by_{role}": {"$ne": True}}]}
        docs = self.db.order.find(flt).sort("created_at", -1)
        return join_parties(self.db, docs)

    def get(self, order_id, actor_id, role: str) -> Dict[str, Any]:
        return join_parties(self.db, [self._load_visible(order_id, actor_id, role)])[0]

    def get_report(self, order_id, actor_id, role: str) -> Optional[Dict[str, Any]]:
        self._load_visible(order_id, actor_id, role)
        return serialize_doc(self.db.agent_report.find_one({"order_id": oid(order_id)}))

    def _has_report(self, order_id: ObjectId) -> bool:
        return self.db.agent_report.find_one({"order_id": order_id}, {"_id": 1}) is not None

    # ---------------------------- Creation --------------------------------
    def create(
        self,
        actor_id,
        role: str,
        product_name: Optional[str] = None,
        description: Optional[str] = None,
        image_urls: Optional[List[str]] = None,
        products: Optional[List[Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        uid = oid(actor_id)
        allowed, reason = check_order_limits(self.db, uid, role)
        if not allowed:
            raise LimitExceeded(reason)
        if not self.ledger.has_enough(uid, role, CARDS_PER_ORDER):
            raise InsufficientCredit("Not enough research cards")

        if products:
            product_name, description, images = self._combine_products(products)
        else:
            if not (product_name or "").strip():
                raise ValidationError("Product name is required")
            if not (description or "").strip():
                raise ValidationError("Description is required")
            product_name, description = product_name.strip(), description.strip()
            images = self.images.resolve(image_urls)

        order_id = create_document(self.db, "order", Order(
            user_id=uid,
            product_name=product_name,
            description=description,
            image_urls=images,
        ))
        if role == "user":
            try:
                self.ledger.deduct(uid, CARDS_PER_ORDER, order_id)
            except Exception:
                self.db.order.delete_one({"_id": oid(order_id)})
                raise

        self.notifier.broadcast_new_order(order_id, product_name)
        logger.info("Order %s created by %s", order_id, uid)
        return self.get(order_id, uid, "admin")

    def _combine_products(self, products: List[Dict[str, Any]]):
        names, descriptions, images = [], [], []
        for p in products:
            name = (p.get("product_name") or "").strip()
            desc = (p.get("description") or "").strip()
            if not name:
                raise ValidationError("Every product needs a name")
            if not desc:
                raise ValidationError("Every product needs a description")
            names.append(name)
            descriptions.append(f"{name}: {desc}")
            images.extend((p.get("image_urls") or [])[:3])
        urls = self.images.resolve(images, limit=MAX_COMBINED_IMAGES)
        return ", ".join(names), "\n\n".join(descriptions), urls

    # ---------------------------- Transitions -----------------------------
    def _swap(self, order_id: ObjectId, expected: Dict[str, Any], updates: Dict[str, Any]) -> Dict[str, Any]:
        updated = self.db.order.find_one_and_update(
            {"_id": order_id, **expected},
            {"$set": {**updates, "updated_at": now()}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise Conflict("Order changed while this request was in flight")
        return updated

    def change_status(self, order_id, actor_id, role: str, status: str, cancel_reason: Optional[str] = None) -> Dict[str, Any]:
        target = parse_status(status)
        if target == CANCELLED:
            return self.cancel(order_id, actor_id, role, cancel_reason)

        aid = oid(actor_id)
        order = self._load(order_id)
        current = order["status"]
        if target == UNDER_AGENT_REVIEW:
            # the claim itself reports a lost race as Conflict
            check_transition(role, PUBLISHED, target)
            return self.claim(order["_id"], aid, role)
        check_transition(role, current, target)
        if target == AWAITING_USER_PAYMENT:
            if role == "agent":
                if order.get("agent_id") != aid:
                    raise Forbidden("Order is not assigned to you")
                if not self._has_report(order["_id"]):
                    raise InvalidTransition("File a price report before requesting payment")
            updated = self._swap(order["_id"], {"status": current}, {"status": target})
            return join_parties(self.db, [updated])[0]
        return self.verify_payment(order["_id"])

    def claim(self, order_id, actor_id, role: str = "agent") -> Dict[str, Any]:
        """Move a published order under review; an agent becomes its owner."""
        oid_ = oid(order_id)
        aid = oid(actor_id)
        if role == "agent":
            expected = {"status": PUBLISHED, "agent_id": None}
            updates = {"status": UNDER_AGENT_REVIEW, "agent_id": aid}
        else:
            expected = {"status": PUBLISHED}
            updates = {"status": UNDER_AGENT_REVIEW}
        updated = self.db.order.find_one_and_update(
            {"_id": oid_, **expected},
            {"$set": {**updates, "updated_at": now()}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            existing = self._load(oid_)
            if existing.get("agent_id"):
                raise Conflict("Order already claimed by another agent")
            raise InvalidTransition(f"Order is {existing['status']}, not published")

        if updated.get("agent_id"):
            self.notifier.withdraw_broadcast(oid_, updated["agent_id"])
            self.notifier.notify(
                updated["user_id"], "order_assigned", "An agent is on it",
                f'An agent started researching "{updated["product_name"]}".', oid_,
            )
        return join_parties(self.db, [updated])[0]

    def submit_report(self, order_id, actor_id, role: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """File or revise the agent's price report and move the order to awaiting payment."""
        aid = oid(actor_id)
        order = self._load(order_id)
        if role == "agent":
            if order.get("agent_id") != aid:
                raise Forbidden("Order is not assigned to you")
        elif role != "admin":
            raise Forbidden("Only agents and admins can file reports")
        if order["status"] not in (UNDER_AGENT_REVIEW, AWAITING_USER_PAYMENT) or order.get("user_payment_verified"):
            raise InvalidTransition("Report can only be filed before the payment is verified")

        amount = data.get("user_amount")
        if not isinstance(amount, (int, float)) or isinstance(amount, bool) or amount <= 0:
            raise ValidationError("User amount is required")

        report = build(
            AgentReport,
            order_id=order["_id"],
            user_amount=amount,
            payment_link=data.get("payment_link") or None,
            additional_images=self.images.resolve(data.get("additional_images"), limit=10),
            additional_description=data.get("additional_description") or None,
            quantity=data.get("quantity"),
        )

        # a report is only written once this status write has won
        self._swap(
            order["_id"],
            {"status": order["status"], "user_payment_verified": {"$ne": True}},
            {"status": AWAITING_USER_PAYMENT},
        )
        try:
            self._write_report(report, data.get("edit_reason"))
        except Exception:
            if order["status"] == UNDER_AGENT_REVIEW:
                self.db.order.update_one(
                    {"_id": order["_id"], "status": AWAITING_USER_PAYMENT},
                    {"$set": {"status": UNDER_AGENT_REVIEW}},
                )
            raise

        agent_profile = self.db.profile.find_one({"user_id": order.get("agent_id") or aid}) or {}
        self.notifier.agent_report_sent(
            order["user_id"], order["_id"], order["product_name"], agent_profile.get("name", "Your agent"),
        )
        return serialize_doc(self.db.agent_report.find_one({"order_id": order["_id"]}))

    def _write_report(self, report: AgentReport, edit_reason: Optional[str]) -> None:
        existing = self.db.agent_report.find_one({"order_id": report.order_id})
        if not existing:
            create_document(self.db, "agent_report", report)
            return
        fields = report.model_dump(exclude={"order_id", "edit_history"})
        update: Dict[str, Any] = {"$set": {**fields, "updated_at": now()}}
        if existing["user_amount"] != report.user_amount:
            edit = ReportEdit(
                edited_at=now(),
                previous_amount=existing["user_amount"],
                new_amount=report.user_amount,
                reason=edit_reason,
            )
            update["$push"] = {"edit_history": edit.model_dump()}
        self.db.agent_report.update_one({"_id": existing["_id"]}, update)

    def confirm_payment(self, order_id, actor_id) -> Dict[str, Any]:
        """The buyer says they paid; admins are asked to verify it."""
        uid = oid(actor_id)
        order = self._load(order_id)
        if order["user_id"] != uid:
            raise Forbidden("Not your order")
        if order["status"] != AWAITING_USER_PAYMENT:
            raise InvalidTransition("Order is not awaiting payment")
        updated = self._swap(order["_id"], {"status": AWAITING_USER_PAYMENT}, {"user_payment_verified": True})
        profile = self.db.profile.find_one({"user_id": uid}) or {}
        self.notifier.payment_request(order["_id"], order["product_name"], profile.get("name", "A user"))
        return join_parties(self.db, [updated])[0]

    def verify_payment(self, order_id) -> Dict[str, Any]:
        """Admin confirms the buyer's payment; the order is completed."""
        order = self._load(order_id)
        if order["status"] != AWAITING_USER_PAYMENT:
            raise InvalidTransition("Order is not awaiting payment")
        updated = self._swap(
            order["_id"], {"status": AWAITING_USER_PAYMENT},
            {"status": COMPLETED, "user_payment_verified": True},
        )
        if updated.get("agent_id"):
            report = self.db.agent_report.find_one({"order_id": order["_id"]}) or {}
            self.notifier.payment_verified(
                updated["agent_id"], order["_id"], order["product_name"], report.get("user_amount", 0),
            )
        return join_parties(self.db, [updated])[0]

    def mark_agent_paid(self, order_id) -> Dict[str, Any]:
        """Settle a completed order: release commission points and refund the buyer's card."""
        order = self._load(order_id)
        if order["status"] != COMPLETED or not order.get("user_payment_verified"):
            raise InvalidTransition("Only completed, verified orders can be settled")
        if not order.get("agent_id"):
            raise InvalidTransition("Order has no assigned agent")
        if order.get("agent_payment_paid"):
            raise InvalidTransition("Agent payment already marked as paid")
        report = self.db.agent_report.find_one({"order_id": order["_id"]})
        if not report:
            raise InvalidTransition("Agent report not found")

        updated = self._swap(
            order["_id"], {"status": COMPLETED, "agent_payment_paid": {"$ne": True}}, {"agent_payment_paid": True},
        )
        try:
            self.ledger.refund(order["user_id"], CARDS_PER_ORDER, order["_id"])
        except Exception:
            self.db.order.update_one({"_id": order["_id"]}, {"$set": {"agent_payment_paid": False}})
            raise

        points = report["user_amount"] * get_settings(self.db).exchange_rate * COMMISSION_RATE
        self.db.user.update_one({"_id": order["agent_id"]}, {"$inc": {"agent_points": points}})
        logger.info("Agent %s earned %s points on order %s", order["agent_id"], points, order["_id"])
        self.stats.safe_recalculate(order["agent_id"])
        self.notifier.agent_payment_paid(order["agent_id"], order["_id"], order["product_name"], points)
        return join_parties(self.db, [updated])[0]

    def cancel(self, order_id, actor_id, role: str, reason: Optional[str] = None) -> Dict[str, Any]:
        aid = oid(actor_id)
        order = self._load(order_id)
        reason = check_cancel(role, aid, order, self._has_report(order["_id"]), reason)
        updates: Dict[str, Any] = {"status": CANCELLED}
        if reason:
            updates["cancel_reason"] = reason
        expected: Dict[str, Any] = {"status": order["status"]}
        if role == "user":
            expected["user_payment_verified"] = {"$ne": True}
        updated = self._swap(order["_id"], expected, updates)

        if role == "user":
            if order.get("agent_id"):
                self.notifier.agent_notified_of_user_cancel(order["agent_id"], order["_id"], order["product_name"])
        else:
            self.notifier.order_cancelled(order["user_id"], order["_id"], order["product_name"], role, reason)
        if order.get("agent_id"):
            self.stats.safe_recalculate(order["agent_id"])
        return join_parties(self.db, [updated])[0]

    # ---------------------------- Housekeeping ----------------------------
    def update_track_code(self, order_id, actor_id, role: str, track_code: Optional[str]) -> Dict[str, Any]:
        order = self._load(order_id)
        if role == "agent" and order.get("agent_id") != oid(actor_id):
            raise Forbidden("Order is not assigned to you")
        if role == "user":
            raise Forbidden("Users cannot set track codes")
        code = (track_code or "").strip() or None
        updated = self._swap(order["_id"], {}, {"track_code": code})
        if code:
            self.notifier.track_code_added(order["user_id"], order["_id"], order["product_name"], code)
        return join_parties(self.db, [updated])[0]

    def archive(self, order_id, actor_id, role: str) -> Dict[str, Any]:
        aid = oid(actor_id)
        order = self._load(order_id)
        if role == "user":
            if order["user_id"] != aid:
                raise Forbidden("Not your order")
            updates = {"archived_by_user": True}
        elif role == "agent":
            if order.get("agent_id") != aid:
                raise Forbidden("Order is not assigned to you")
            updates = {"archived_by_agent": True}
        else:
            updates = {"archived_by_user": True, "archived_by_agent": True}
        return join_parties(self.db, [self._swap(order["_id"], {}, updates)])[0]

    def delete(self, order_id, actor_id, role: str) -> None:
        order = self._load(order_id)
        if role == "agent" or (role == "user" and order["user_id"] != oid(actor_id)):
            raise Forbidden("Not allowed to delete this order")
        self.db.order.delete_one({"_id": order["_id"]})
        self.db.agent_report.delete_one({"order_id": order["_id"]})
