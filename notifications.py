"""
Notification fan-out.

State machines report what happened; this module turns it into in-app
notifications and queued emails. Nothing here is allowed to fail the caller:
every public side-effect method logs and swallows its own errors. Emails are
only written to the `email_queue` outbox; mailer.py delivers them.
"""
import logging
import math
from datetime import timedelta
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo.database import Database

from database import create_document, now, oid, serialize_doc
from lifecycle import PUBLISHED
from schemas import EmailQueue, Notification, OrderNotificationBatch

logger = logging.getLogger(__name__)

BATCH_SIZE = 5
BATCH_WINDOW_MINUTES = 10


class Notifier:
    def __init__(self, db: Database):
        self.db = db

    # ---------------------------- Core ------------------------------------
    def notify(
        self,
        user_id,
        type: str,
        title: str,
        message: str,
        order_id=None,
        send_email: bool = True,
    ) -> Optional[str]:
        try:
            uid = oid(user_id)
            notification_id = create_document(self.db, "notification", Notification(
                user_id=uid,
                type=type,
                title=title,
                message=message,
                order_id=oid(order_id) if order_id else None,
            ))
            if send_email:
                self.queue_email_for(uid, title, message)
            return notification_id
        except Exception:
            logger.exception("Failed to notify user %s (%s)", user_id, type)
            return None

    def notify_admins(self, type: str, title: str, message: str, order_id=None) -> int:
        try:
            admins = list(self.db.user.find({"role": "admin"}, {"_id": 1}))
            if not admins:
                return 0
            stamp = now()
            docs = [
                {
                    **Notification(
                        user_id=a["_id"],
                        type=type,
                        title=title,
                        message=message,
                        order_id=oid(order_id) if order_id else None,
                    ).model_dump(),
                    "created_at": stamp,
                    "updated_at": stamp,
                }
                for a in admins
            ]
            self.db.notification.insert_many(docs)
            for a in admins:
                self.queue_email_for(a["_id"], title, message)
            return len(admins)
        except Exception:
            logger.exception("Failed to notify admins (%s)", type)
            return 0

    def queue_email_for(self, user_id: ObjectId, subject: str, body: str, html: Optional[str] = None) -> bool:
        profile = self.db.profile.find_one({"user_id": user_id})
        if not profile or not profile.get("email"):
            return False
        if profile.get("email_notifications_enabled") is False:
            return False
        create_document(self.db, "email_queue", EmailQueue(
            to=profile["email"], subject=subject, body=body, html=html,
        ))
        return True

    # ---------------------------- Inbox -----------------------------------
    def list_for(self, user_id, page: int = 1, limit: int = 20) -> Dict[str, Any]:
        uid = oid(user_id)
        total = self.db.notification.count_documents({"user_id": uid})
        rows = (
            self.db.notification.find({"user_id": uid})
            .sort("created_at", -1)
            .skip((page - 1) * limit)
            .limit(limit)
        )
        return {
            "notifications": [serialize_doc(r) for r in rows],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "total_pages": math.ceil(total / limit) if limit else 0,
            },
        }

    def unread_count(self, user_id) -> int:
        return self.db.notification.count_documents({"user_id": oid(user_id), "is_read": False})

    def mark_read(self, notification_id, user_id) -> bool:
        result = self.db.notification.update_one(
            {"_id": oid(notification_id), "user_id": oid(user_id)},
            {"$set": {"is_read": True}},
        )
        return result.matched_count > 0

    def mark_all_read(self, user_id) -> int:
        result = self.db.notification.update_many(
            {"user_id": oid(user_id), "is_read": False},
            {"$set": {"is_read": True}},
        )
        return result.modified_count

    def delete(self, notification_id, user_id) -> bool:
        result = self.db.notification.delete_one({"_id": oid(notification_id), "user_id": oid(user_id)})
        return result.deleted_count > 0

    # ---------------------------- Order events ----------------------------
    def agent_report_sent(self, user_id, order_id, product_name: str, agent_name: str):
        return self.notify(
            user_id, "agent_report_sent", "Your order has a price report",
            f'Agent {agent_name} sent a report for your order "{product_name}".', order_id,
        )

    def order_cancelled(self, user_id, order_id, product_name: str, by_role: str, reason: Optional[str] = None):
        kind = {"agent": "agent_cancelled_order", "admin": "admin_cancelled_order"}.get(by_role, "user_cancelled_order")
        message = f'Your order "{product_name}" was cancelled by the {by_role}.'
        if reason:
            message += f" Reason: {reason}"
        return self.notify(user_id, kind, "Order cancelled", message, order_id)

    def agent_notified_of_user_cancel(self, agent_id, order_id, product_name: str):
        return self.notify(
            agent_id, "user_cancelled_order", "Order cancelled by buyer",
            f'The buyer cancelled "{product_name}".', order_id,
        )

    def track_code_added(self, user_id, order_id, product_name: str, track_code: str):
        return self.notify(
            user_id, "agent_added_track_code", "Track code added",
            f'A track code was added to your order "{product_name}": {track_code}', order_id,
        )

    def payment_verified(self, agent_id, order_id, product_name: str, amount: float):
        return self.notify(
            agent_id, "payment_verified", "Payment verified",
            f'Payment of ¥{amount} for "{product_name}" has been verified.', order_id,
        )

    def agent_payment_paid(self, agent_id, order_id, product_name: str, points: float):
        return self.notify(
            agent_id, "agent_payment_paid", "Commission released",
            f'You earned {points:g} points for "{product_name}".', order_id,
        )

    def payment_request(self, order_id, product_name: str, user_name: str):
        return self.notify_admins(
            "payment_verification_request", "Payment verification requested",
            f'{user_name} asked to verify the payment for "{product_name}".', order_id,
        )

    def cards_received(self, user_id, amount: int, sender: str):
        return self.notify(
            user_id, "card_received", "Research cards received",
            f"You received {amount} research card(s) from {sender}.",
        )

    # ---------------------------- Agent broadcast -------------------------
    def top_agents_by_volume(self, skip: int = 0, limit: int = BATCH_SIZE) -> List[ObjectId]:
        """Approved agents ordered by the total reported amount they have handled."""
        agents = list(self.db.user.find({"role": "agent", "is_approved": True}, {"_id": 1}))
        volume = {a["_id"]: 0.0 for a in agents}
        handled = self.db.order.find({"agent_id": {"$in": list(volume)}}, {"_id": 1, "agent_id": 1})
        agent_of = {o["_id"]: o["agent_id"] for o in handled}
        if agent_of:
            for report in self.db.agent_report.find({"order_id": {"$in": list(agent_of)}}):
                volume[agent_of[report["order_id"]]] += report.get("user_amount", 0)
        ranked = sorted(volume, key=lambda a: volume[a], reverse=True)
        return ranked[skip:skip + limit]

    def broadcast_new_order(self, order_id, product_name: str, batch_number: int = 1) -> Optional[str]:
        try:
            skip = 0 if batch_number == 1 else BATCH_SIZE
            agent_ids = self.top_agents_by_volume(skip, BATCH_SIZE)
            if not agent_ids:
                logger.info("No approved agents for order %s batch %s", order_id, batch_number)
                return None
            batch_id = create_document(self.db, "order_notification_batch", OrderNotificationBatch(
                order_id=oid(order_id),
                batch_number=batch_number,
                notified_agent_ids=agent_ids,
                expires_at=now() + timedelta(minutes=BATCH_WINDOW_MINUTES),
            ))
            for agent_id in agent_ids:
                self.notify(
                    agent_id, "new_order_available", "New order available",
                    f'New order: "{product_name}". Claim it within {BATCH_WINDOW_MINUTES} minutes.',
                    order_id,
                )
            logger.info("Notified %s agents (batch %s) for order %s", len(agent_ids), batch_number, order_id)
            return batch_id
        except Exception:
            logger.exception("Failed to broadcast order %s", order_id)
            return None

    def withdraw_broadcast(self, order_id, agent_id) -> int:
        """Close the open broadcast batches once an agent has claimed the order."""
        try:
            result = self.db.order_notification_batch.update_many(
                {"order_id": oid(order_id), "status": "active"},
                {"$set": {"status": "assigned", "assigned_to_agent_id": oid(agent_id), "updated_at": now()}},
            )
            return result.modified_count
        except Exception:
            logger.exception("Failed to withdraw broadcast for order %s", order_id)
            return 0

    def process_expired_batches(self) -> int:
        """Expire first-wave batches and re-broadcast still-open orders to agents 6-10."""
        stamp = now()
        expired = list(self.db.order_notification_batch.find({
            "batch_number": 1, "status": "active", "expires_at": {"$lte": stamp},
        }))
        for batch in expired:
            self.db.order_notification_batch.update_one(
                {"_id": batch["_id"]}, {"$set": {"status": "expired", "updated_at": stamp}},
            )
            order = self.db.order.find_one({"_id": batch["order_id"]}) or \
                self.db.bundle_order.find_one({"_id": batch["order_id"]})
            if not order or order.get("status") != PUBLISHED or order.get("agent_id"):
                continue
            if self.db.order_notification_batch.find_one({"order_id": batch["order_id"], "batch_number": 2}):
                continue
            name = order.get("product_name") or ", ".join(i["product_name"] for i in order.get("items", []))
            self.broadcast_new_order(batch["order_id"], name, batch_number=2)

        self.db.order_notification_batch.update_many(
            {"batch_number": 2, "status": "active", "expires_at": {"$lte": stamp}},
            {"$set": {"status": "expired", "updated_at": stamp}},
        )
        logger.info("Processed %s expired broadcast batches", len(expired))
        return len(expired)
