"""
Email outbox dispatcher.

Drains `email_queue` in creation order while today's send count stays under
the global daily cap. The mail day starts at EMAIL_DAY_START_HOUR local time.
Delivery goes through Resend unless another transport is injected.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

import resend
from pymongo.database import Database

import config
from database import now

logger = logging.getLogger(__name__)

BATCH_LIMIT = 50
MAX_RETRIES = 3

Transport = Callable[[str, str, str, Optional[str]], None]


def today_key(at: Optional[datetime] = None) -> str:
    local = at or datetime.now()
    if local.hour < config.EMAIL_DAY_START_HOUR:
        local = local - timedelta(days=1)
    return local.strftime("%Y-%m-%d")


def resend_transport(to: str, subject: str, body: str, html: Optional[str] = None) -> None:
    if not config.RESEND_API_KEY:
        raise RuntimeError("Resend API key is not configured")
    resend.api_key = config.RESEND_API_KEY
    payload: Dict[str, object] = {
        "from": config.EMAIL_FROM,
        "to": [to],
        "subject": subject,
        "text": body,
    }
    if html:
        payload["html"] = html
    response = resend.Emails.send(payload)
    if not isinstance(response, dict) or not response.get("id"):
        raise RuntimeError(f"Resend did not accept the email: {response}")


class Mailer:
    def __init__(self, db: Database, transport: Transport = resend_transport, daily_limit: int = config.DAILY_EMAIL_LIMIT):
        self.db = db
        self.transport = transport
        self.daily_limit = daily_limit

    def sent_today(self) -> int:
        row = self.db.email_daily_count.find_one({"date": today_key()})
        return row["count"] if row else 0

    def remaining_quota(self) -> int:
        return max(0, self.daily_limit - self.sent_today())

    def _claim_slot(self) -> bool:
        """Reserve one send against today's cap; False once the cap is hit."""
        key = today_key()
        self.db.email_daily_count.update_one(
            {"date": key},
            {"$setOnInsert": {"count": 0, "limit": self.daily_limit, "created_at": now()}},
            upsert=True,
        )
        result = self.db.email_daily_count.update_one(
            {"date": key, "count": {"$lt": self.daily_limit}},
            {"$inc": {"count": 1}},
        )
        return result.modified_count == 1

    def _release_slot(self) -> None:
        self.db.email_daily_count.update_one({"date": today_key()}, {"$inc": {"count": -1}})

    def process_pending(self) -> int:
        """Send queued emails; returns how many went out."""
        stamp = now()
        pending = (
            self.db.email_queue.find({
                "status": {"$in": ["pending", "daily_limit_reached"]},
                "retry_count": {"$lt": MAX_RETRIES},
                "$or": [{"scheduled_at": None}, {"scheduled_at": {"$lte": stamp}}],
            })
            .sort("created_at", 1)
            .limit(BATCH_LIMIT)
        )
        sent = 0
        for email in list(pending):
            if not self._claim_slot():
                self.db.email_queue.update_many(
                    {"status": "pending"}, {"$set": {"status": "daily_limit_reached"}},
                )
                logger.info("Daily email limit reached, stopping")
                break
            try:
                self.transport(email["to"], email["subject"], email["body"], email.get("html"))
            except Exception as e:
                self._release_slot()
                logger.exception("Email to %s failed", email["to"])
                self.db.email_queue.update_one({"_id": email["_id"]}, {
                    "$set": {"status": "failed", "failed_at": now(), "fail_reason": str(e)[:500]},
                    "$inc": {"retry_count": 1},
                })
                continue
            self.db.email_queue.update_one(
                {"_id": email["_id"]}, {"$set": {"status": "sent", "sent_at": now()}},
            )
            sent += 1
        return sent

    def retry_failed(self) -> int:
        result = self.db.email_queue.update_many(
            {"status": "failed", "retry_count": {"$lt": MAX_RETRIES}},
            {"$set": {"status": "pending"}},
        )
        return result.modified_count
