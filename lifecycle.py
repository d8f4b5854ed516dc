"""
Status vocabulary and the role-gated rules shared by single and bundle orders.

Both state machines ask this module two questions: "may this role move the
order from A to B?" and "may this role cancel it right now?". Side effects stay
with the callers.
"""
from typing import Any, Dict, Optional

from bson import ObjectId

from errors import Forbidden, InvalidTransition, ValidationError
from schemas import OrderStatus

PUBLISHED = OrderStatus.PUBLISHED.value
UNDER_AGENT_REVIEW = OrderStatus.UNDER_AGENT_REVIEW.value
AWAITING_USER_PAYMENT = OrderStatus.AWAITING_USER_PAYMENT.value
COMPLETED = OrderStatus.COMPLETED.value
CANCELLED = OrderStatus.CANCELLED.value

ACTIVE_STATUSES = (PUBLISHED, UNDER_AGENT_REVIEW, AWAITING_USER_PAYMENT)
TERMINAL_STATUSES = (COMPLETED, CANCELLED)

MIN_CANCEL_REASON = 5

# role -> current status -> allowed next statuses (cancellation handled apart)
TRANSITIONS: Dict[str, Dict[str, tuple]] = {
    "agent": {
        PUBLISHED: (UNDER_AGENT_REVIEW,),
        UNDER_AGENT_REVIEW: (AWAITING_USER_PAYMENT,),
    },
    "admin": {
        PUBLISHED: (UNDER_AGENT_REVIEW,),
        UNDER_AGENT_REVIEW: (AWAITING_USER_PAYMENT,),
        AWAITING_USER_PAYMENT: (COMPLETED,),
    },
    "user": {},
}


def parse_status(value: str) -> str:
    try:
        return OrderStatus(value).value
    except ValueError:
        raise ValidationError(f"Invalid status: {value}")


def check_transition(role: str, current: str, target: str) -> None:
    allowed = TRANSITIONS.get(role, {}).get(current, ())
    if target not in allowed:
        raise InvalidTransition(f"{role} cannot move an order from {current} to {target}")


def check_cancel(
    role: str,
    actor_id: ObjectId,
    doc: Dict[str, Any],
    has_report: bool,
    reason: Optional[str] = None,
) -> Optional[str]:
    """Validate a cancellation and return the reason to record (if any).

    `doc` is an order or bundle order document; `has_report` says whether the
    agent already filed a price report for it.
    """
    status = doc.get("status")
    if status == CANCELLED:
        raise InvalidTransition("Order is already cancelled")

    reason = (reason or "").strip() or None

    if role == "user":
        if doc.get("user_id") != actor_id:
            raise Forbidden("Not your order")
        if status not in (PUBLISHED, AWAITING_USER_PAYMENT) or doc.get("user_payment_verified"):
            raise InvalidTransition("Order cannot be cancelled at this stage")
        return reason

    if role == "agent":
        if doc.get("agent_id") != actor_id:
            raise Forbidden("Order is not assigned to you")
        if status != UNDER_AGENT_REVIEW or has_report:
            raise InvalidTransition("Order cannot be cancelled once a report is filed")
        if reason is None or len(reason) < MIN_CANCEL_REASON:
            raise ValidationError(f"Cancel reason is required (minimum {MIN_CANCEL_REASON} characters)")
        return reason

    if role == "admin":
        return reason

    raise Forbidden("Unknown role")


def visibility_filter(actor_id: ObjectId, role: str) -> Dict[str, Any]:
    """The one definition of "orders this actor may see".

    Users see their own orders, agents see what they claimed plus the open
    pool of unassigned published orders, admins see everything.
    """
    if role == "user":
        return {"user_id": actor_id}
    if role == "agent":
        return {"$or": [
            {"agent_id": actor_id},
            {"agent_id": None, "status": PUBLISHED},
        ]}
    return {}


def is_visible(doc: Dict[str, Any], actor_id: ObjectId, role: str) -> bool:
    if role == "user":
        return doc.get("user_id") == actor_id
    if role == "agent":
        return doc.get("agent_id") == actor_id or (
            doc.get("agent_id") is None and doc.get("status") == PUBLISHED
        )
    return True
