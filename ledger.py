"""
Research-card ledger.

`user.research_cards` is the only mutable balance. Every change to it is paired
with one `card_transaction` row; if the row cannot be written the balance
change is reversed before the error propagates. Debits use a guarded `$inc`
(`research_cards >= n`) so two requests racing on the same user can never
overdraw it.
"""
import logging
import math
from typing import Any, Dict, Optional

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database

from database import create_document, oid
from errors import (
    InsufficientCredit,
    NotFound,
    RecipientNotFound,
    SelfTransferForbidden,
    SenderNotFound,
    ValidationError,
)
from schemas import CardTransaction, CardTransactionType

logger = logging.getLogger(__name__)

INITIAL_CARDS = 5

_CREDITS = (
    CardTransactionType.INITIAL_GRANT.value,
    CardTransactionType.ORDER_REFUND.value,
    CardTransactionType.USER_TRANSFER.value,
    CardTransactionType.AGENT_GIFT.value,
    CardTransactionType.ADMIN_GIFT.value,
)
# senders of these types are debited; admin gifts come from an unlimited source
_SENDER_DEBITED = (
    CardTransactionType.USER_TRANSFER.value,
    CardTransactionType.AGENT_GIFT.value,
)


def balance_delta(entry: Dict[str, Any], user_id: ObjectId) -> int:
    """Signed effect of one ledger row on `user_id`'s balance."""
    kind = entry["type"]
    amount = entry["amount"]
    delta = 0
    if kind == CardTransactionType.ORDER_DEDUCTION.value and entry["to_user_id"] == user_id:
        delta -= amount
    elif kind in _CREDITS and entry["to_user_id"] == user_id:
        delta += amount
    if kind in _SENDER_DEBITED and entry.get("from_user_id") == user_id:
        delta -= amount
    # bundle_item_removal rows are audit only
    return delta


class CardLedger:
    def __init__(self, db: Database):
        self.db = db

    # ---------------------------- Reads -----------------------------------
    def get_balance(self, user_id) -> int:
        user = self.db.user.find_one({"_id": oid(user_id)}, {"research_cards": 1})
        if not user:
            raise NotFound("User not found")
        return user.get("research_cards", 0)

    def has_enough(self, user_id, role: str, n: int = 1) -> bool:
        if role != "user":
            return True
        return self.get_balance(user_id) >= n

    def history(self, user_id, page: int = 1, limit: int = 20) -> Dict[str, Any]:
        uid = oid(user_id)
        flt = {"$or": [{"from_user_id": uid}, {"to_user_id": uid}]}
        total = self.db.card_transaction.count_documents(flt)
        rows = list(
            self.db.card_transaction.find(flt)
            .sort("created_at", -1)
            .skip((page - 1) * limit)
            .limit(limit)
        )
        party_ids = set()
        for r in rows:
            party_ids.add(r["to_user_id"])
            if r.get("from_user_id"):
                party_ids.add(r["from_user_id"])
        names = {
            p["user_id"]: p.get("name")
            for p in self.db.profile.find({"user_id": {"$in": list(party_ids)}})
        }
        transactions = []
        for r in rows:
            transactions.append({
                "id": str(r["_id"]),
                "from_user_id": str(r["from_user_id"]) if r.get("from_user_id") else None,
                "to_user_id": str(r["to_user_id"]),
                "amount": r["amount"],
                "type": r["type"],
                "recipient_phone": r.get("recipient_phone"),
                "order_id": str(r["order_id"]) if r.get("order_id") else None,
                "note": r.get("note"),
                "created_at": r["created_at"],
                "from_user_name": names.get(r.get("from_user_id")),
                "to_user_name": names.get(r["to_user_id"]),
            })
        return {
            "transactions": transactions,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "total_pages": math.ceil(total / limit) if limit else 0,
            },
        }

    def reconcile(self, user_id) -> int:
        """Recompute a balance from the ledger alone."""
        uid = oid(user_id)
        rows = self.db.card_transaction.find({"$or": [{"from_user_id": uid}, {"to_user_id": uid}]})
        return sum(balance_delta(r, uid) for r in rows)

    # ---------------------------- Writes ----------------------------------
    def grant_initial(self, user_id) -> bool:
        """Give a newly registered end user their starting cards, once."""
        uid = oid(user_id)
        user = self.db.user.find_one_and_update(
            {"_id": uid, "role": "user", "initial_cards_granted": {"$ne": True}},
            {"$inc": {"research_cards": INITIAL_CARDS}, "$set": {"initial_cards_granted": True}},
        )
        if user is None:
            if not self.db.user.find_one({"_id": uid}, {"_id": 1}):
                raise NotFound("User not found")
            return False
        self._record(
            CardTransaction(
                to_user_id=uid,
                amount=INITIAL_CARDS,
                type=CardTransactionType.INITIAL_GRANT,
                note="Welcome bonus for new users",
            ),
            undo=[(uid, -INITIAL_CARDS)],
            undo_set={"initial_cards_granted": False},
        )
        return True

    def deduct(self, user_id, n: int, order_id, kind: str = "order") -> None:
        uid = oid(user_id)
        self._debit(uid, n, SenderNotFound("User not found"))
        if kind == "bundle":
            note = f"Spent on bundle order creation ({n} item(s))"
        else:
            note = "Spent on order creation"
        self._record(
            CardTransaction(
                to_user_id=uid,
                amount=n,
                type=CardTransactionType.ORDER_DEDUCTION,
                order_id=oid(order_id),
                note=note,
            ),
            undo=[(uid, n)],
        )
        logger.info("Deducted %s card(s) from user %s for order %s", n, uid, order_id)

    def refund(self, user_id, n: int, order_id) -> None:
        uid = oid(user_id)
        self._credit(uid, n)
        self._record(
            CardTransaction(
                to_user_id=uid,
                amount=n,
                type=CardTransactionType.ORDER_REFUND,
                order_id=oid(order_id),
                note=f"Refund for successful order ({n} card(s))",
            ),
            undo=[(uid, -n)],
        )
        logger.info("Refunded %s card(s) to user %s for order %s", n, uid, order_id)

    def burn_for_removed_item(self, user_id, order_id, item_id, item_name: str) -> None:
        # the card was spent when the bundle was created; nothing moves here
        create_document(self.db, "card_transaction", CardTransaction(
            to_user_id=oid(user_id),
            amount=1,
            type=CardTransactionType.BUNDLE_ITEM_REMOVAL,
            order_id=oid(order_id),
            note=f"Removed from bundle: {item_name} (item: {item_id})"[:200],
        ))

    def transfer(self, from_user_id, from_role: str, recipient_phone: str, amount: int) -> Dict[str, Any]:
        if from_role == "admin":
            return self.admin_grant(from_user_id, recipient_phone, amount)
        if amount < 1:
            raise ValidationError("At least 1 card must be sent")

        sender_id = oid(from_user_id)
        sender = self.db.user.find_one({"_id": sender_id})
        if not sender:
            raise SenderNotFound("Sender not found")
        if sender.get("research_cards", 0) < amount:
            raise InsufficientCredit("Not enough research cards")
        recipient_id = self._resolve_recipient(recipient_phone)
        if recipient_id == sender_id:
            raise SelfTransferForbidden("Cannot send cards to yourself")

        self._debit(sender_id, amount, SenderNotFound("Sender not found"))
        try:
            self._credit(recipient_id, amount)
        except Exception:
            self._compensate([(sender_id, amount)])
            raise
        kind = CardTransactionType.AGENT_GIFT if from_role == "agent" else CardTransactionType.USER_TRANSFER
        self._record(
            CardTransaction(
                from_user_id=sender_id,
                to_user_id=recipient_id,
                amount=amount,
                type=kind,
                recipient_phone=recipient_phone,
            ),
            undo=[(sender_id, amount), (recipient_id, -amount)],
        )
        return {"recipient_id": str(recipient_id), "amount": amount}

    def admin_grant(self, admin_id, recipient_phone: str, amount: int) -> Dict[str, Any]:
        if amount < 1:
            raise ValidationError("At least 1 card must be sent")
        recipient_id = self._resolve_recipient(recipient_phone)
        self._credit(recipient_id, amount)
        self._record(
            CardTransaction(
                from_user_id=oid(admin_id),
                to_user_id=recipient_id,
                amount=amount,
                type=CardTransactionType.ADMIN_GIFT,
                recipient_phone=recipient_phone,
            ),
            undo=[(recipient_id, -amount)],
        )
        return {"recipient_id": str(recipient_id), "amount": amount}

    def bulk_grant(self, admin_id, amount: int = INITIAL_CARDS) -> int:
        """Add `amount` cards to every end user's balance; returns users updated."""
        if amount < 1:
            raise ValidationError("At least 1 card must be granted")
        admin_oid = oid(admin_id)
        updated = 0
        for user in self.db.user.find({"role": "user"}, {"_id": 1}):
            self._credit(user["_id"], amount)
            self._record(
                CardTransaction(
                    from_user_id=admin_oid,
                    to_user_id=user["_id"],
                    amount=amount,
                    type=CardTransactionType.ADMIN_GIFT,
                    note="Promotional grant to all users",
                ),
                undo=[(user["_id"], -amount)],
            )
            updated += 1
        logger.info("Admin %s granted %s card(s) to %s users", admin_oid, amount, updated)
        return updated

    # ---------------------------- Internals -------------------------------
    def _resolve_recipient(self, phone: str) -> ObjectId:
        profile = self.db.profile.find_one({"phone": phone})
        if not profile:
            raise RecipientNotFound("Recipient not found. Check the phone number.")
        if not self.db.user.find_one({"_id": profile["user_id"]}, {"_id": 1}):
            raise RecipientNotFound("Recipient account not found")
        return profile["user_id"]

    def _debit(self, uid: ObjectId, n: int, missing: Exception) -> None:
        updated = self.db.user.find_one_and_update(
            {"_id": uid, "research_cards": {"$gte": n}},
            {"$inc": {"research_cards": -n}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            if not self.db.user.find_one({"_id": uid}, {"_id": 1}):
                raise missing
            raise InsufficientCredit("Not enough research cards")

    def _credit(self, uid: ObjectId, n: int) -> None:
        result = self.db.user.update_one({"_id": uid}, {"$inc": {"research_cards": n}})
        if result.matched_count == 0:
            raise NotFound("User not found")

    def _compensate(self, undo, undo_set: Optional[Dict[str, Any]] = None) -> None:
        for uid, n in undo:
            update: Dict[str, Any] = {"$inc": {"research_cards": n}}
            if undo_set:
                update["$set"] = undo_set
            self.db.user.update_one({"_id": uid}, update)

    def _record(self, entry: CardTransaction, undo, undo_set: Optional[Dict[str, Any]] = None) -> str:
        try:
            return create_document(self.db, "card_transaction", entry)
        except Exception:
            logger.exception("Ledger write failed, reverting balance change")
            self._compensate(undo, undo_set)
            raise
