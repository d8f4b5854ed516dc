"""
Per-order chat between the buyer, the agent working the order and admins.

Who may read or post follows the same visibility rule as the order itself.
"""
import logging
from typing import Any, Dict, List, Optional

from pymongo.database import Database

from database import create_document, oid, serialize_doc
from errors import NotFound, ValidationError
from lifecycle import is_visible
from notifications import Notifier
from schemas import Message, build
from uploads import ImageStore

logger = logging.getLogger(__name__)


class MessageService:
    def __init__(self, db: Database, notifier: Optional[Notifier] = None, images: Optional[ImageStore] = None):
        self.db = db
        self.notifier = notifier or Notifier(db)
        self.images = images or ImageStore()

    def _order_for(self, order_id, actor_id, role: str) -> Dict[str, Any]:
        order = self.db.order.find_one({"_id": oid(order_id)})
        if not order or not is_visible(order, oid(actor_id), role):
            raise NotFound("Order not found")
        return order

    def list(self, order_id, actor_id, role: str) -> List[Dict[str, Any]]:
        order = self._order_for(order_id, actor_id, role)
        rows = self.db.message.find({"order_id": order["_id"]}).sort("created_at", 1)
        return [serialize_doc(m) for m in rows]

    def send(self, order_id, actor_id, role: str, text: Optional[str] = None, image: Optional[str] = None) -> Dict[str, Any]:
        order = self._order_for(order_id, actor_id, role)
        text = (text or "").strip() or None
        if not text and not image:
            raise ValidationError("Text or image is required")
        image_url = None
        if image:
            urls = self.images.resolve([image], limit=1)
            if not urls:
                raise ValidationError("Image could not be uploaded")
            image_url = urls[0]

        sender = oid(actor_id)
        message = build(
            Message, order_id=order["_id"], sender_id=sender, sender_role=role, text=text, image_url=image_url,
        )
        message_id = create_document(self.db, "message", message)

        # tell the other side of the conversation
        if role == "user":
            recipient = order.get("agent_id")
        else:
            recipient = order["user_id"]
        if recipient and recipient != sender:
            self.notifier.notify(
                recipient, "new_message", "New message",
                f'New message on "{order["product_name"]}".', order["_id"], send_email=False,
            )
        logger.info("Message %s posted on order %s by %s", message_id, order["_id"], sender)
        return serialize_doc(self.db.message.find_one({"_id": oid(message_id)}))
