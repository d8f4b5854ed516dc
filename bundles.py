"""
Bundle-order lifecycle.

A bundle order and its items are one aggregate. Every mutation loads the
document, applies the change through `Bundle` (which re-derives the parent
status from the items), and writes it back only if nobody else wrote it in
between (`version` compare-and-swap). A lost race is retried from a fresh
read, so two agents filing reports on different items can never both miss
the "all items are reported" moment.
"""
import logging
from typing import Any, Callable, Dict, List, Optional

from bson import ObjectId
from pymongo.database import Database

from admin_config import get_settings
from agent_stats import AgentStatsService
from database import create_document, now, oid
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
from orders import COMMISSION_RATE, join_parties
from schemas import BundleItem, BundleOrder, BundleReport, ItemReport, UserSnapshot, build
from uploads import ImageStore

logger = logging.getLogger(__name__)

MAX_WRITE_ATTEMPTS = 5


class Bundle:
    """In-memory view of one bundle order document with its invariants."""

    def __init__(self, doc: Dict[str, Any]):
        self.doc = doc

    @property
    def id(self) -> ObjectId:
        return self.doc["_id"]

    @property
    def status(self) -> str:
        return self.doc["status"]

    @property
    def items(self) -> List[Dict[str, Any]]:
        return self.doc["items"]

    @property
    def name(self) -> str:
        return ", ".join(i["product_name"] for i in self.items)

    def item(self, item_id) -> Dict[str, Any]:
        iid = oid(item_id)
        for item in self.items:
            if item["id"] == iid:
                return item
        raise NotFound("Item not found")

    def has_report(self) -> bool:
        return bool(self.doc.get("bundle_report")) or any(i.get("report") for i in self.items)

    def all_items_reported(self) -> bool:
        return all(i.get("report") for i in self.items)

    def total_amount(self) -> float:
        if self.doc.get("report_mode") == "single" and self.doc.get("bundle_report"):
            return self.doc["bundle_report"]["total_user_amount"]
        return sum((i.get("report") or {}).get("user_amount", 0) for i in self.items)

    def set_all(self, status: str) -> None:
        self.doc["status"] = status
        for item in self.items:
            if item["status"] != CANCELLED:
                item["status"] = status

    def converged(self) -> bool:
        """True once the reports (or item statuses) say the buyer can be asked to pay."""
        mode = self.doc.get("report_mode")
        if mode == "single" and self.doc.get("bundle_report"):
            return True
        if mode == "per_item":
            return self.all_items_reported()
        return all(i["status"] == AWAITING_USER_PAYMENT for i in self.items)

    def rederive(self) -> None:
        """Recompute the parent status from the items while research is ongoing."""
        if self.status not in (UNDER_AGENT_REVIEW, AWAITING_USER_PAYMENT):
            return
        if self.converged():
            self.set_all(AWAITING_USER_PAYMENT)
        else:
            self.doc["status"] = UNDER_AGENT_REVIEW

    def file_single_report(self, report: BundleReport) -> None:
        self.doc["report_mode"] = "single"
        self.doc["bundle_report"] = report.model_dump()
        for item in self.items:
            item["report"] = None
        self.set_all(AWAITING_USER_PAYMENT)

    def file_item_reports(self, reports: Dict[ObjectId, ItemReport]) -> None:
        if self.doc.get("report_mode") != "per_item":
            self.doc["report_mode"] = "per_item"
            self.doc["bundle_report"] = None
            for item in self.items:
                if item["status"] == AWAITING_USER_PAYMENT:
                    item["status"] = UNDER_AGENT_REVIEW
        targets = [self.item(item_id) for item_id in reports]
        for item, report in zip(targets, reports.values()):
            item["report"] = report.model_dump()
            item["status"] = AWAITING_USER_PAYMENT
        self.rederive()

    def remove_item(self, item_id) -> Dict[str, Any]:
        item = self.item(item_id)
        if len(self.items) < 2:
            raise InvalidTransition("Cannot remove the last item; cancel the order instead")
        self.doc["items"] = [i for i in self.items if i["id"] != item["id"]]
        # removal may complete the set of reports; it never sends the parent back
        if self.status == UNDER_AGENT_REVIEW and self.converged():
            self.set_all(AWAITING_USER_PAYMENT)
        return item


def _is_amount(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _to_doc(order: BundleOrder) -> Dict[str, Any]:
    doc = order.model_dump()
    for item in doc["items"]:
        item["id"] = ObjectId(item["id"])
    return doc


def serialize_bundle(db: Database, doc: Dict[str, Any]) -> Dict[str, Any]:
    row = join_parties(db, [doc])[0]
    row.pop("version", None)
    return row


class BundleOrderService:
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

    # ---------------------------- Persistence -----------------------------
    def _load(self, bundle_id) -> Bundle:
        doc = self.db.bundle_order.find_one({"_id": oid(bundle_id)})
        if not doc:
            raise NotFound("Bundle order not found")
        return Bundle(doc)

    def _mutate(self, bundle_id, change: Callable[[Bundle], Any]):
        """Apply `change` to a fresh copy of the bundle and commit it atomically.

        Returns (bundle, result of change). Domain errors raised by `change`
        abort the write.
        """
        for _ in range(MAX_WRITE_ATTEMPTS):
            bundle = self._load(bundle_id)
            version = bundle.doc.get("version", 0)
            result = change(bundle)
            bundle.doc["version"] = version + 1
            bundle.doc["updated_at"] = now()
            written = self.db.bundle_order.replace_one({"_id": bundle.id, "version": version}, bundle.doc)
            if written.matched_count == 1:
                return bundle, result
        raise Conflict("Bundle order is busy, try again")

    # ---------------------------- Reads -----------------------------------
    def list(self, actor_id, role: str, include_archived: bool = False) -> List[Dict[str, Any]]:
        flt = visibility_filter(oid(actor_id), role)
        if not include_archived and role in ("user", "agent"):
            flt = {"$and": [flt, {f"archived_by_{role}": {"$ne": True}}]}
        docs = list(self.db.bundle_order.find(flt).sort("created_at", -1))
        rows = join_parties(self.db, docs)
        for row in rows:
            row.pop("version", None)
        return rows

    def get(self, bundle_id, actor_id, role: str) -> Dict[str, Any]:
        bundle = self._load(bundle_id)
        if not is_visible(bundle.doc, oid(actor_id), role):
            raise NotFound("Bundle order not found")
        return serialize_bundle(self.db, bundle.doc)

    # ---------------------------- Creation --------------------------------
    def create(self, actor_id, role: str, items: List[Dict[str, Any]]) -> Dict[str, Any]:
        uid = oid(actor_id)
        allowed, reason = check_order_limits(self.db, uid, role)
        if not allowed:
            raise LimitExceeded(reason)
        if not items:
            raise ValidationError("At least one item is required")
        for item in items:
            if not (item.get("product_name") or "").strip():
                raise ValidationError("Every item needs a product name")
        if not self.ledger.has_enough(uid, role, len(items)):
            raise InsufficientCredit("Not enough research cards for every item")

        profile = self.db.profile.find_one({"user_id": uid})
        if not profile:
            raise ValidationError("Profile not found. Please create a profile first.")

        cards = len(items) if role == "user" else 0
        order = BundleOrder(
            user_id=uid,
            user_snapshot=UserSnapshot(
                name=profile["name"], phone=profile["phone"], cargo=profile.get("cargo") or "",
            ),
            items=[
                BundleItem(
                    product_name=i["product_name"].strip(),
                    description=(i.get("description") or "").strip(),
                    image_urls=self.images.resolve(i.get("image_urls")),
                )
                for i in items
            ],
            cards_spent=cards,
        )
        bundle_id = create_document(self.db, "bundle_order", _to_doc(order))
        if cards:
            try:
                self.ledger.deduct(uid, cards, bundle_id, kind="bundle")
            except Exception:
                self.db.bundle_order.delete_one({"_id": oid(bundle_id)})
                raise

        bundle = self._load(bundle_id)
        self.notifier.broadcast_new_order(bundle_id, bundle.name)
        logger.info("Bundle order %s created by %s with %s items", bundle_id, uid, len(items))
        return serialize_bundle(self.db, bundle.doc)

    # ---------------------------- Transitions -----------------------------
    def change_status(self, bundle_id, actor_id, role: str, status: str, cancel_reason: Optional[str] = None) -> Dict[str, Any]:
        target = parse_status(status)
        if target == CANCELLED:
            return self.cancel(bundle_id, actor_id, role, cancel_reason)
        if target == UNDER_AGENT_REVIEW:
            check_transition(role, PUBLISHED, target)
            return self.claim(bundle_id, actor_id, role)
        if target == COMPLETED:
            check_transition(role, AWAITING_USER_PAYMENT, target)
            return self.verify_payment(bundle_id)

        aid = oid(actor_id)

        def escalate(bundle: Bundle):
            check_transition(role, bundle.status, target)
            if role == "agent":
                if bundle.doc.get("agent_id") != aid:
                    raise Forbidden("Order is not assigned to you")
                bundle.rederive()
                if bundle.status != AWAITING_USER_PAYMENT:
                    raise InvalidTransition("Every item needs a report before requesting payment")
            else:
                bundle.set_all(AWAITING_USER_PAYMENT)

        bundle, _ = self._mutate(bundle_id, escalate)
        return serialize_bundle(self.db, bundle.doc)

    def claim(self, bundle_id, actor_id, role: str = "agent") -> Dict[str, Any]:
        aid = oid(actor_id)

        def take(bundle: Bundle):
            if bundle.status != PUBLISHED:
                if bundle.doc.get("agent_id"):
                    raise Conflict("Order already claimed by another agent")
                raise InvalidTransition(f"Order is {bundle.status}, not published")
            if role == "agent":
                if bundle.doc.get("agent_id"):
                    raise Conflict("Order already claimed by another agent")
                bundle.doc["agent_id"] = aid
            bundle.set_all(UNDER_AGENT_REVIEW)

        bundle, _ = self._mutate(bundle_id, take)
        if role == "agent":
            self.notifier.withdraw_broadcast(bundle.id, aid)
            self.notifier.notify(
                bundle.doc["user_id"], "order_assigned", "An agent is on it",
                f'An agent started researching your bundle "{bundle.name}".', bundle.id,
            )
        return serialize_bundle(self.db, bundle.doc)

    def update_item_status(self, bundle_id, item_id, actor_id, role: str, status: str) -> Dict[str, Any]:
        target = parse_status(status)
        aid = oid(actor_id)
        if target == CANCELLED:
            raise InvalidTransition("Items cannot be cancelled one by one; remove the item or cancel the order")

        def move(bundle: Bundle):
            if role == "agent" and bundle.doc.get("agent_id") != aid:
                raise Forbidden("Order is not assigned to you")
            if bundle.status in (PUBLISHED, COMPLETED, CANCELLED):
                raise InvalidTransition(f"Items cannot change while the order is {bundle.status}")
            item = bundle.item(item_id)
            check_transition(role, item["status"], target)
            if target == COMPLETED:
                raise InvalidTransition("Items complete together when the payment is verified")
            if target == AWAITING_USER_PAYMENT and role == "agent" and not item.get("report"):
                raise InvalidTransition("File a report for this item first")
            item["status"] = target
            bundle.rederive()

        bundle, _ = self._mutate(bundle_id, move)
        return serialize_bundle(self.db, bundle.doc)

    def _check_reporter(self, bundle: Bundle, aid: ObjectId, role: str) -> None:
        if role == "agent":
            if bundle.doc.get("agent_id") != aid:
                raise Forbidden("Order is not assigned to you")
        elif role != "admin":
            raise Forbidden("Only agents and admins can file reports")
        if bundle.status not in (UNDER_AGENT_REVIEW, AWAITING_USER_PAYMENT) or bundle.doc.get("user_payment_verified"):
            raise InvalidTransition("Report can only be filed before the payment is verified")

    def submit_report(
        self,
        bundle_id,
        actor_id,
        role: str,
        report_mode: str,
        bundle_report: Optional[Dict[str, Any]] = None,
        item_reports: Optional[List[Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        aid = oid(actor_id)
        if report_mode == "single":
            if not bundle_report or not _is_amount(bundle_report.get("total_user_amount")):
                raise ValidationError("total_user_amount is required for single mode")
            report = build(
                BundleReport,
                total_user_amount=bundle_report["total_user_amount"],
                payment_link=bundle_report.get("payment_link"),
                additional_images=self.images.resolve(bundle_report.get("additional_images"), limit=10),
                additional_description=bundle_report.get("additional_description"),
            )

            def apply(bundle: Bundle):
                self._check_reporter(bundle, aid, role)
                bundle.file_single_report(report)
        elif report_mode == "per_item":
            if not item_reports:
                raise ValidationError("item_reports is required for per_item mode")
            reports = {}
            for r in item_reports:
                if not _is_amount(r.get("user_amount")):
                    raise ValidationError("Every item report needs a user_amount")
                reports[oid(r.get("item_id"))] = build(
                    ItemReport,
                    user_amount=r["user_amount"],
                    payment_link=r.get("payment_link"),
                    additional_images=self.images.resolve(r.get("additional_images"), limit=10),
                    additional_description=r.get("additional_description"),
                    quantity=r.get("quantity"),
                )

            def apply(bundle: Bundle):
                self._check_reporter(bundle, aid, role)
                bundle.file_item_reports(reports)
        else:
            raise ValidationError("report_mode must be 'single' or 'per_item'")

        bundle, _ = self._mutate(bundle_id, apply)
        if bundle.status == AWAITING_USER_PAYMENT:
            agent_profile = self.db.profile.find_one({"user_id": bundle.doc.get("agent_id") or aid}) or {}
            self.notifier.agent_report_sent(
                bundle.doc["user_id"], bundle.id, bundle.name, agent_profile.get("name", "Your agent"),
            )
        return serialize_bundle(self.db, bundle.doc)

    def remove_item(self, bundle_id, item_id, actor_id) -> Dict[str, Any]:
        """Drop one item before payment; its card is burned, not refunded."""
        uid = oid(actor_id)

        def drop(bundle: Bundle):
            if bundle.doc["user_id"] != uid:
                raise Forbidden("Not your order")
            if bundle.status != AWAITING_USER_PAYMENT or bundle.doc.get("user_payment_verified"):
                raise InvalidTransition("Items can only be removed while awaiting an unverified payment")
            return bundle.remove_item(item_id)

        bundle, removed = self._mutate(bundle_id, drop)
        try:
            self.ledger.burn_for_removed_item(uid, bundle.id, removed["id"], removed["product_name"])
        except Exception:
            logger.exception("Failed to record burned card for bundle %s item %s", bundle.id, removed["id"])
        return serialize_bundle(self.db, bundle.doc)

    def cancel(self, bundle_id, actor_id, role: str, reason: Optional[str] = None) -> Dict[str, Any]:
        aid = oid(actor_id)

        def stop(bundle: Bundle):
            recorded = check_cancel(role, aid, bundle.doc, bundle.has_report(), reason)
            bundle.doc["status"] = CANCELLED
            for item in bundle.items:
                item["status"] = CANCELLED
            if recorded:
                bundle.doc["cancel_reason"] = recorded
            return recorded

        bundle, recorded = self._mutate(bundle_id, stop)
        agent_id = bundle.doc.get("agent_id")
        if role == "user":
            if agent_id:
                self.notifier.agent_notified_of_user_cancel(agent_id, bundle.id, bundle.name)
        else:
            self.notifier.order_cancelled(bundle.doc["user_id"], bundle.id, bundle.name, role, recorded)
        if agent_id:
            self.stats.safe_recalculate(agent_id)
        return serialize_bundle(self.db, bundle.doc)

    def confirm_payment(self, bundle_id, actor_id) -> Dict[str, Any]:
        uid = oid(actor_id)

        def confirm(bundle: Bundle):
            if bundle.doc["user_id"] != uid:
                raise Forbidden("Not your order")
            if bundle.status != AWAITING_USER_PAYMENT:
                raise InvalidTransition("Order is not awaiting payment")
            bundle.doc["user_payment_verified"] = True

        bundle, _ = self._mutate(bundle_id, confirm)
        self.notifier.payment_request(bundle.id, bundle.name, bundle.doc["user_snapshot"]["name"])
        return serialize_bundle(self.db, bundle.doc)

    def verify_payment(self, bundle_id) -> Dict[str, Any]:
        def verify(bundle: Bundle):
            if bundle.status != AWAITING_USER_PAYMENT:
                raise InvalidTransition("Order is not awaiting payment")
            bundle.doc["user_payment_verified"] = True
            bundle.set_all(COMPLETED)

        bundle, _ = self._mutate(bundle_id, verify)
        if bundle.doc.get("agent_id"):
            self.notifier.payment_verified(bundle.doc["agent_id"], bundle.id, bundle.name, bundle.total_amount())
        return serialize_bundle(self.db, bundle.doc)

    def mark_agent_paid(self, bundle_id) -> Dict[str, Any]:
        def settle(bundle: Bundle):
            if bundle.status != COMPLETED or not bundle.doc.get("user_payment_verified"):
                raise InvalidTransition("Only completed, verified orders can be settled")
            if not bundle.doc.get("agent_id"):
                raise InvalidTransition("Order has no assigned agent")
            if bundle.doc.get("agent_payment_paid"):
                raise InvalidTransition("Agent payment already marked as paid")
            if not bundle.has_report():
                raise InvalidTransition("Agent report not found")
            bundle.doc["agent_payment_paid"] = True

        bundle, _ = self._mutate(bundle_id, settle)
        agent_id = bundle.doc["agent_id"]
        refund = len(bundle.items) if bundle.doc.get("cards_spent") else 0
        if refund:
            try:
                self.ledger.refund(bundle.doc["user_id"], refund, bundle.id)
            except Exception:
                self.db.bundle_order.update_one(
                    {"_id": bundle.id}, {"$set": {"agent_payment_paid": False}, "$inc": {"version": 1}},
                )
                raise

        points = bundle.total_amount() * get_settings(self.db).exchange_rate * COMMISSION_RATE
        self.db.user.update_one({"_id": agent_id}, {"$inc": {"agent_points": points}})
        logger.info("Agent %s earned %s points on bundle %s", agent_id, points, bundle.id)
        self.stats.safe_recalculate(agent_id)
        self.notifier.agent_payment_paid(agent_id, bundle.id, bundle.name, points)
        return serialize_bundle(self.db, bundle.doc)

    # ---------------------------- Housekeeping ----------------------------
    def update_track_code(self, bundle_id, actor_id, role: str, track_code: Optional[str]) -> Dict[str, Any]:
        aid = oid(actor_id)
        code = (track_code or "").strip() or None

        def set_code(bundle: Bundle):
            if role == "user":
                raise Forbidden("Users cannot set track codes")
            if role == "agent" and bundle.doc.get("agent_id") != aid:
                raise Forbidden("Order is not assigned to you")
            bundle.doc["track_code"] = code

        bundle, _ = self._mutate(bundle_id, set_code)
        if code:
            self.notifier.track_code_added(bundle.doc["user_id"], bundle.id, bundle.name, code)
        return serialize_bundle(self.db, bundle.doc)

    def archive(self, bundle_id, actor_id, role: str) -> Dict[str, Any]:
        aid = oid(actor_id)

        def hide(bundle: Bundle):
            if role == "user":
                if bundle.doc["user_id"] != aid:
                    raise Forbidden("Not your order")
                bundle.doc["archived_by_user"] = True
            elif role == "agent":
                if bundle.doc.get("agent_id") != aid:
                    raise Forbidden("Order is not assigned to you")
                bundle.doc["archived_by_agent"] = True
            else:
                bundle.doc["archived_by_user"] = True
                bundle.doc["archived_by_agent"] = True

        bundle, _ = self._mutate(bundle_id, hide)
        return serialize_bundle(self.db, bundle.doc)

    def delete(self, bundle_id, actor_id, role: str) -> None:
        bundle = self._load(bundle_id)
        if role == "agent" or (role == "user" and bundle.doc["user_id"] != oid(actor_id)):
            raise Forbidden("Not allowed to delete this order")
        self.db.bundle_order.delete_one({"_id": bundle.id})
