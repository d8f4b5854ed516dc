"""
Database Schemas for the research-agent marketplace

Each Pydantic model below maps to a MongoDB collection using the snake_case
class name as the collection name (e.g., BundleOrder -> "bundle_order").

These schemas are used when documents are created and to keep collections
consistent. Foreign keys are stored as ObjectIds; joining them to users and
profiles is an explicit, separate lookup step.
"""
from datetime import datetime
from enum import Enum
from typing import List, Optional, Literal

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, Field, EmailStr
from pydantic import ValidationError as SchemaError

from errors import ValidationError

Role = Literal["user", "agent", "admin"]
ReportMode = Literal["single", "per_item"]


class OrderStatus(str, Enum):
    PUBLISHED = "published"
    UNDER_AGENT_REVIEW = "under_agent_review"
    AWAITING_USER_PAYMENT = "awaiting_user_payment"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class CardTransactionType(str, Enum):
    INITIAL_GRANT = "initial_grant"
    ORDER_DEDUCTION = "order_deduction"
    ORDER_REFUND = "order_refund"
    BUNDLE_ITEM_REMOVAL = "bundle_item_removal"
    USER_TRANSFER = "user_transfer"
    AGENT_GIFT = "agent_gift"
    ADMIN_GIFT = "admin_gift"


NotificationType = Literal[
    "new_order_available",
    "order_assigned",
    "agent_report_sent",
    "agent_cancelled_order",
    "admin_cancelled_order",
    "user_cancelled_order",
    "agent_added_track_code",
    "payment_verified",
    "payment_verification_request",
    "agent_payment_paid",
    "card_received",
    "reward_request",
    "new_message",
    "system",
]


class _Document(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True, use_enum_values=True, validate_default=True)


def build(model, **fields):
    """Instantiate `model`, reporting bad input as a domain ValidationError."""
    try:
        return model(**fields)
    except SchemaError as e:
        first = e.errors()[0]
        where = ".".join(str(p) for p in first["loc"])
        raise ValidationError(f"{where}: {first['msg']}")


# ---------------------------------------------------------------------------
# Users, profiles and agent standing
# ---------------------------------------------------------------------------
class AgentProfile(_Document):
    display_name: Optional[str] = None
    bio: Optional[str] = Field(None, max_length=500)
    specialties: List[str] = []
    rank: int = Field(999, ge=1, description="Admin-assigned ranking, 1 is best")
    is_top_agent: bool = False
    total_transactions: int = 0
    success_rate: int = Field(0, ge=0, le=100)


class User(_Document):
    email: EmailStr
    role: Role = "user"
    is_approved: bool = False
    research_cards: int = Field(0, ge=0)
    initial_cards_granted: bool = False
    agent_points: float = 0
    agent_profile: Optional[AgentProfile] = None


class Profile(_Document):
    user_id: ObjectId
    name: str
    phone: str
    email: Optional[EmailStr] = None
    cargo: Optional[str] = None
    email_notifications_enabled: bool = True


class AgentReview(_Document):
    agent_id: ObjectId
    user_id: ObjectId
    order_id: Optional[ObjectId] = None
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=1000)
    is_approved: bool = False
    is_visible: bool = True


class RewardRequest(_Document):
    agent_id: ObjectId
    amount: float = Field(..., gt=0)
    status: Literal["pending", "approved", "rejected"] = "pending"


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------
class Order(_Document):
    user_id: ObjectId
    agent_id: Optional[ObjectId] = None
    product_name: str
    description: str
    image_urls: List[str] = []
    status: OrderStatus = OrderStatus.PUBLISHED
    user_payment_verified: bool = False
    agent_payment_paid: bool = False
    track_code: Optional[str] = None
    cancel_reason: Optional[str] = None
    archived_by_user: bool = False
    archived_by_agent: bool = False


class ReportEdit(_Document):
    edited_at: datetime
    previous_amount: float
    new_amount: float
    reason: Optional[str] = None


class AgentReport(_Document):
    """Price quote for a single order; `user_amount` is in the agent's currency."""
    order_id: ObjectId
    user_amount: float = Field(..., gt=0)
    payment_link: Optional[str] = None
    additional_images: List[str] = []
    additional_description: Optional[str] = None
    quantity: Optional[int] = Field(None, ge=1)
    edit_history: List[ReportEdit] = []


class ItemReport(_Document):
    user_amount: float = Field(..., gt=0)
    payment_link: Optional[str] = None
    additional_images: List[str] = []
    additional_description: Optional[str] = None
    quantity: Optional[int] = Field(None, ge=1)


class BundleReport(_Document):
    total_user_amount: float = Field(..., gt=0)
    payment_link: Optional[str] = None
    additional_images: List[str] = []
    additional_description: Optional[str] = None


class BundleItem(_Document):
    id: ObjectId = Field(default_factory=ObjectId)
    product_name: str
    description: str = ""
    image_urls: List[str] = []
    status: OrderStatus = OrderStatus.PUBLISHED
    report: Optional[ItemReport] = None


class UserSnapshot(_Document):
    """Receipt copy of the buyer's profile taken when the bundle was created."""
    name: str
    phone: str
    cargo: str = ""


class Message(_Document):
    """Chat line on a single order between the buyer, its agent and admins."""
    order_id: ObjectId
    sender_id: ObjectId
    sender_role: Role
    text: Optional[str] = Field(None, max_length=2000)
    image_url: Optional[str] = None


class BundleOrder(_Document):
    user_id: ObjectId
    agent_id: Optional[ObjectId] = None
    user_snapshot: UserSnapshot
    items: List[BundleItem] = Field(..., min_length=1)
    status: OrderStatus = OrderStatus.PUBLISHED
    user_payment_verified: bool = False
    agent_payment_paid: bool = False
    track_code: Optional[str] = None
    cancel_reason: Optional[str] = None
    report_mode: ReportMode = "single"
    bundle_report: Optional[BundleReport] = None
    cards_spent: int = 0
    archived_by_user: bool = False
    archived_by_agent: bool = False
    version: int = 0


# ---------------------------------------------------------------------------
# Research-card ledger
# ---------------------------------------------------------------------------
class CardTransaction(_Document):
    from_user_id: Optional[ObjectId] = None
    to_user_id: ObjectId
    amount: int = Field(..., ge=1)
    type: CardTransactionType
    recipient_phone: Optional[str] = None
    order_id: Optional[ObjectId] = None
    note: Optional[str] = Field(None, max_length=200)


# ---------------------------------------------------------------------------
# Notifications, outbox & broadcast batches
# ---------------------------------------------------------------------------
class Notification(_Document):
    user_id: ObjectId
    type: NotificationType = "system"
    title: str
    message: str
    order_id: Optional[ObjectId] = None
    is_read: bool = False


class EmailQueue(_Document):
    to: str
    subject: str
    body: str
    html: Optional[str] = None
    status: Literal["pending", "sent", "failed", "daily_limit_reached"] = "pending"
    retry_count: int = 0
    scheduled_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    fail_reason: Optional[str] = None


class EmailDailyCount(_Document):
    date: str
    count: int = 0
    limit: int = 450


class OrderNotificationBatch(_Document):
    order_id: ObjectId
    batch_number: Literal[1, 2] = 1
    notified_agent_ids: List[ObjectId] = []
    status: Literal["active", "assigned", "expired"] = "active"
    assigned_to_agent_id: Optional[ObjectId] = None
    expires_at: datetime


# ---------------------------------------------------------------------------
# Platform settings & cargo registry
# ---------------------------------------------------------------------------
class Cargo(_Document):
    """Freight forwarder a buyer can pick on their profile; names are unique."""
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    phone: Optional[str] = None
    location: Optional[str] = None
    website: Optional[str] = None
    facebook: Optional[str] = None
    image_url: Optional[str] = None


class AdminSettings(_Document):
    order_limit_enabled: bool = True
    max_orders_per_day: int = Field(10, ge=1)
    max_active_orders: int = Field(10, ge=1)
    exchange_rate: float = Field(1.0, gt=0)
    account_number: Optional[str] = None
    account_name: Optional[str] = None
    bank: Optional[str] = None
