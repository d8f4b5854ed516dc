import logging
from contextlib import asynccontextmanager
from typing import List, Optional, Dict, Any, Literal

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field
from pymongo.database import Database

import config
import database
from admin_config import get_settings, update_settings
from agent_stats import AgentStatsService
from bundles import BundleOrderService
from cargos import CargoRegistry
from database import create_document, get_documents, now, oid, serialize_doc
from errors import AlreadyExists, Forbidden, MarketplaceError, NotFound, Unauthenticated
from ledger import CardLedger
from messages import MessageService
from notifications import Notifier
from order_limits import check_order_limits
from orders import OrderService
from scheduler import Scheduler
from schemas import AgentProfile, Profile, User
from uploads import ImageStore

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    scheduler = None
    if database.db is not None:
        scheduler = Scheduler(database.db)
        scheduler.start()
    else:
        logger.warning("DATABASE_URL is not set, background jobs are disabled")
    yield
    if scheduler is not None:
        scheduler.stop()


app = FastAPI(title="Research Agent Marketplace API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError):
    if exc.status_code >= 500:
        logger.error("Unhandled domain error on %s: %s", request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})


# ---------------------------- Utilities ------------------------------------
class Actor(BaseModel):
    id: str
    role: Literal["user", "agent", "admin"]


def get_db() -> Database:
    if database.db is None:
        raise HTTPException(status_code=503, detail="Database not configured")
    return database.db


_images = ImageStore()


def get_images() -> ImageStore:
    return _images


def current_actor(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> Actor:
    if not x_user_id:
        raise Unauthenticated("Missing user identity")
    if x_user_role not in ("user", "agent", "admin"):
        raise Unauthenticated("Missing or unknown role")
    oid(x_user_id)
    return Actor(id=x_user_id, role=x_user_role)


def admin_only(actor: Actor = Depends(current_actor)) -> Actor:
    if actor.role != "admin":
        raise Forbidden("Admin access required")
    return actor


def agent_only(actor: Actor = Depends(current_actor)) -> Actor:
    if actor.role != "agent":
        raise Forbidden("Agent access required")
    return actor


class Services:
    """Per-request service graph sharing one notifier and ledger."""

    def __init__(self, db: Database, images: ImageStore):
        self.db = db
        self.notifier = Notifier(db)
        self.ledger = CardLedger(db)
        self.stats = AgentStatsService(db, self.notifier)
        self.orders = OrderService(db, self.ledger, self.notifier, self.stats, images)
        self.bundles = BundleOrderService(db, self.ledger, self.notifier, self.stats, images)
        self.messages = MessageService(db, self.notifier, images)
        self.cargos = CargoRegistry(db)


def get_services(db: Database = Depends(get_db), images: ImageStore = Depends(get_images)) -> Services:
    return Services(db, images)


# --------------------------- Schemas (DTOs) ---------------------------------
class RegisterIn(BaseModel):
    email: EmailStr
    role: Literal["user", "agent"] = "user"


class ProfileIn(BaseModel):
    name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    email: Optional[EmailStr] = None
    cargo: Optional[str] = None
    email_notifications_enabled: bool = True


class ProductIn(BaseModel):
    product_name: str
    description: str = ""
    image_urls: List[str] = []


class OrderIn(BaseModel):
    product_name: Optional[str] = None
    description: Optional[str] = None
    image_urls: List[str] = []
    products: Optional[List[ProductIn]] = None


class StatusIn(BaseModel):
    status: str
    cancel_reason: Optional[str] = None


class CancelIn(BaseModel):
    reason: Optional[str] = None


class ReportIn(BaseModel):
    user_amount: float = Field(..., gt=0)
    payment_link: Optional[str] = None
    additional_images: List[str] = []
    additional_description: Optional[str] = None
    quantity: Optional[int] = Field(None, ge=1)
    edit_reason: Optional[str] = None


class TrackCodeIn(BaseModel):
    track_code: Optional[str] = None


class MessageIn(BaseModel):
    text: Optional[str] = Field(None, max_length=2000)
    image_url: Optional[str] = None


class BundleIn(BaseModel):
    items: List[ProductIn] = Field(..., min_length=1)


class BundleReportIn(BaseModel):
    total_user_amount: float = Field(..., gt=0)
    payment_link: Optional[str] = None
    additional_images: List[str] = []
    additional_description: Optional[str] = None


class ItemReportIn(BaseModel):
    item_id: str
    user_amount: float = Field(..., gt=0)
    payment_link: Optional[str] = None
    additional_images: List[str] = []
    additional_description: Optional[str] = None
    quantity: Optional[int] = Field(None, ge=1)


class BundleReportRequest(BaseModel):
    report_mode: Literal["single", "per_item"]
    bundle_report: Optional[BundleReportIn] = None
    item_reports: Optional[List[ItemReportIn]] = None


class TransferIn(BaseModel):
    recipient_phone: str
    amount: int


class BulkGrantIn(BaseModel):
    amount: int = 5


class ReviewIn(BaseModel):
    rating: int
    comment: Optional[str] = None
    order_id: Optional[str] = None


class RankIn(BaseModel):
    rank: int
    is_top_agent: bool = True


class RewardDecisionIn(BaseModel):
    approve: bool


class CargoIn(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    phone: Optional[str] = None
    location: Optional[str] = None
    website: Optional[str] = None
    facebook: Optional[str] = None
    image_url: Optional[str] = None


class SettingsIn(BaseModel):
    order_limit_enabled: Optional[bool] = None
    max_orders_per_day: Optional[int] = Field(None, ge=1)
    max_active_orders: Optional[int] = Field(None, ge=1)
    exchange_rate: Optional[float] = Field(None, gt=0)
    account_number: Optional[str] = None
    account_name: Optional[str] = None
    bank: Optional[str] = None


# ---------------------------- Root & Health --------------------------------
@app.get("/")
def read_root():
    return {"message": "Research agent marketplace backend running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }

    db = database.db
    if db is not None:
        response["database"] = "✅ Available"
        try:
            collections = db.list_collection_names()
            response["collections"] = collections[:10]
            response["connection_status"] = "Connected"
            response["database"] = "✅ Connected & Working"
            response["database_url"] = "✅ Set"
            response["database_name"] = getattr(db, "name", "✅ Set")
        except Exception as e:
            response["database"] = f"⚠️ Connected but Error: {str(e)[:80]}"
    return response


# ---------------------------- Accounts -------------------------------------
@app.post("/api/users")
def register_user(req: RegisterIn, db: Database = Depends(get_db)):
    if db.user.find_one({"email": req.email}):
        raise AlreadyExists("Email already registered")
    user = User(
        email=req.email,
        role=req.role,
        is_approved=req.role == "user",
        agent_profile=AgentProfile() if req.role == "agent" else None,
    )
    user_id = create_document(db, "user", user)
    granted = False
    if req.role == "user":
        granted = CardLedger(db).grant_initial(user_id)
    return {"id": user_id, "initial_cards_granted": granted}


@app.get("/api/me")
def get_me(actor: Actor = Depends(current_actor), db: Database = Depends(get_db)):
    user = db.user.find_one({"_id": oid(actor.id)})
    if not user:
        raise NotFound("User not found")
    out = serialize_doc(user)
    out["profile"] = serialize_doc(db.profile.find_one({"user_id": user["_id"]}))
    return out


@app.put("/api/profile")
def upsert_profile(req: ProfileIn, actor: Actor = Depends(current_actor), db: Database = Depends(get_db)):
    uid = oid(actor.id)
    taken = db.profile.find_one({"phone": req.phone, "user_id": {"$ne": uid}})
    if taken:
        raise AlreadyExists("Phone number already in use")
    profile = Profile(user_id=uid, **req.model_dump())
    db.profile.update_one(
        {"user_id": uid},
        {"$set": {**profile.model_dump(), "updated_at": now()}, "$setOnInsert": {"created_at": now()}},
        upsert=True,
    )
    return serialize_doc(db.profile.find_one({"user_id": uid}))


@app.post("/api/admin/agents/{agent_id}/approve")
def approve_agent(agent_id: str, actor: Actor = Depends(admin_only), db: Database = Depends(get_db)):
    result = db.user.update_one(
        {"_id": oid(agent_id), "role": "agent"}, {"$set": {"is_approved": True, "updated_at": now()}},
    )
    if result.matched_count == 0:
        raise NotFound("Agent not found")
    return {"approved": True}


# ------------------------------ Orders -------------------------------------
@app.get("/api/orders")
def list_orders(
    include_archived: bool = False,
    actor: Actor = Depends(current_actor),
    svc: Services = Depends(get_services),
):
    return {"orders": svc.orders.list(actor.id, actor.role, include_archived)}


@app.get("/api/orders/limits")
def order_limits(actor: Actor = Depends(current_actor), db: Database = Depends(get_db)):
    allowed, reason = check_order_limits(db, actor.id, actor.role)
    return {"allowed": allowed, "reason": reason}


@app.post("/api/orders")
def create_order(req: OrderIn, actor: Actor = Depends(current_actor), svc: Services = Depends(get_services)):
    products = [p.model_dump() for p in req.products] if req.products else None
    return svc.orders.create(actor.id, actor.role, req.product_name, req.description, req.image_urls, products)


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, actor: Actor = Depends(current_actor), svc: Services = Depends(get_services)):
    return svc.orders.get(order_id, actor.id, actor.role)


@app.put("/api/orders/{order_id}/status")
def update_order_status(
    order_id: str, req: StatusIn, actor: Actor = Depends(current_actor), svc: Services = Depends(get_services),
):
    return svc.orders.change_status(order_id, actor.id, actor.role, req.status, req.cancel_reason)


@app.post("/api/orders/{order_id}/claim")
def claim_order(order_id: str, actor: Actor = Depends(agent_only), svc: Services = Depends(get_services)):
    return svc.orders.claim(order_id, actor.id)


@app.post("/api/orders/{order_id}/cancel")
def cancel_order(
    order_id: str, req: CancelIn, actor: Actor = Depends(current_actor), svc: Services = Depends(get_services),
):
    return svc.orders.cancel(order_id, actor.id, actor.role, req.reason)


@app.get("/api/orders/{order_id}/report")
def get_order_report(order_id: str, actor: Actor = Depends(current_actor), svc: Services = Depends(get_services)):
    report = svc.orders.get_report(order_id, actor.id, actor.role)
    if report is None:
        raise NotFound("Report not found")
    return report


@app.post("/api/orders/{order_id}/report")
def submit_order_report(
    order_id: str, req: ReportIn, actor: Actor = Depends(current_actor), svc: Services = Depends(get_services),
):
    return svc.orders.submit_report(order_id, actor.id, actor.role, req.model_dump())


@app.post("/api/orders/{order_id}/confirm-payment")
def confirm_order_payment(order_id: str, actor: Actor = Depends(current_actor), svc: Services = Depends(get_services)):
    return svc.orders.confirm_payment(order_id, actor.id)


@app.post("/api/orders/{order_id}/verify-payment")
def verify_order_payment(order_id: str, actor: Actor = Depends(admin_only), svc: Services = Depends(get_services)):
    return svc.orders.verify_payment(order_id)


@app.post("/api/orders/{order_id}/mark-agent-paid")
def mark_order_agent_paid(order_id: str, actor: Actor = Depends(admin_only), svc: Services = Depends(get_services)):
    return svc.orders.mark_agent_paid(order_id)


@app.put("/api/orders/{order_id}/track-code")
def update_order_track_code(
    order_id: str, req: TrackCodeIn, actor: Actor = Depends(current_actor), svc: Services = Depends(get_services),
):
    return svc.orders.update_track_code(order_id, actor.id, actor.role, req.track_code)


@app.post("/api/orders/{order_id}/archive")
def archive_order(order_id: str, actor: Actor = Depends(current_actor), svc: Services = Depends(get_services)):
    return svc.orders.archive(order_id, actor.id, actor.role)


@app.delete("/api/orders/{order_id}")
def delete_order(order_id: str, actor: Actor = Depends(current_actor), svc: Services = Depends(get_services)):
    svc.orders.delete(order_id, actor.id, actor.role)
    return {"deleted": True}


@app.get("/api/orders/{order_id}/messages")
def list_order_messages(order_id: str, actor: Actor = Depends(current_actor), svc: Services = Depends(get_services)):
    return {"messages": svc.messages.list(order_id, actor.id, actor.role)}


@app.post("/api/orders/{order_id}/messages", status_code=201)
def send_order_message(
    order_id: str, req: MessageIn, actor: Actor = Depends(current_actor), svc: Services = Depends(get_services),
):
    return svc.messages.send(order_id, actor.id, actor.role, req.text, req.image_url)


# --------------------------- Bundle orders ---------------------------------
@app.get("/api/bundle-orders")
def list_bundles(
    include_archived: bool = False,
    actor: Actor = Depends(current_actor),
    svc: Services = Depends(get_services),
):
    return {"bundle_orders": svc.bundles.list(actor.id, actor.role, include_archived)}


@app.post("/api/bundle-orders")
def create_bundle(req: BundleIn, actor: Actor = Depends(current_actor), svc: Services = Depends(get_services)):
    return svc.bundles.create(actor.id, actor.role, [i.model_dump() for i in req.items])


@app.get("/api/bundle-orders/{bundle_id}")
def get_bundle(bundle_id: str, actor: Actor = Depends(current_actor), svc: Services = Depends(get_services)):
    return svc.bundles.get(bundle_id, actor.id, actor.role)


@app.put("/api/bundle-orders/{bundle_id}/status")
def update_bundle_status(
    bundle_id: str, req: StatusIn, actor: Actor = Depends(current_actor), svc: Services = Depends(get_services),
):
    return svc.bundles.change_status(bundle_id, actor.id, actor.role, req.status, req.cancel_reason)


@app.put("/api/bundle-orders/{bundle_id}/items/{item_id}/status")
def update_bundle_item_status(
    bundle_id: str,
    item_id: str,
    req: StatusIn,
    actor: Actor = Depends(current_actor),
    svc: Services = Depends(get_services),
):
    return svc.bundles.update_item_status(bundle_id, item_id, actor.id, actor.role, req.status)


@app.post("/api/bundle-orders/{bundle_id}/claim")
def claim_bundle(bundle_id: str, actor: Actor = Depends(agent_only), svc: Services = Depends(get_services)):
    return svc.bundles.claim(bundle_id, actor.id)


@app.post("/api/bundle-orders/{bundle_id}/report")
def submit_bundle_report(
    bundle_id: str,
    req: BundleReportRequest,
    actor: Actor = Depends(current_actor),
    svc: Services = Depends(get_services),
):
    return svc.bundles.submit_report(
        bundle_id,
        actor.id,
        actor.role,
        req.report_mode,
        req.bundle_report.model_dump() if req.bundle_report else None,
        [r.model_dump() for r in req.item_reports] if req.item_reports else None,
    )


@app.delete("/api/bundle-orders/{bundle_id}/items/{item_id}")
def remove_bundle_item(
    bundle_id: str, item_id: str, actor: Actor = Depends(current_actor), svc: Services = Depends(get_services),
):
    if actor.role != "user":
        raise Forbidden("Only the buyer can remove items")
    return svc.bundles.remove_item(bundle_id, item_id, actor.id)


@app.post("/api/bundle-orders/{bundle_id}/cancel")
def cancel_bundle(
    bundle_id: str, req: CancelIn, actor: Actor = Depends(current_actor), svc: Services = Depends(get_services),
):
    return svc.bundles.cancel(bundle_id, actor.id, actor.role, req.reason)


@app.post("/api/bundle-orders/{bundle_id}/confirm-payment")
def confirm_bundle_payment(bundle_id: str, actor: Actor = Depends(current_actor), svc: Services = Depends(get_services)):
    return svc.bundles.confirm_payment(bundle_id, actor.id)


@app.post("/api/bundle-orders/{bundle_id}/verify-payment")
def verify_bundle_payment(bundle_id: str, actor: Actor = Depends(admin_only), svc: Services = Depends(get_services)):
    return svc.bundles.verify_payment(bundle_id)


@app.post("/api/bundle-orders/{bundle_id}/mark-agent-paid")
def mark_bundle_agent_paid(bundle_id: str, actor: Actor = Depends(admin_only), svc: Services = Depends(get_services)):
    return svc.bundles.mark_agent_paid(bundle_id)


@app.put("/api/bundle-orders/{bundle_id}/track-code")
def update_bundle_track_code(
    bundle_id: str, req: TrackCodeIn, actor: Actor = Depends(current_actor), svc: Services = Depends(get_services),
):
    return svc.bundles.update_track_code(bundle_id, actor.id, actor.role, req.track_code)


@app.post("/api/bundle-orders/{bundle_id}/archive")
def archive_bundle(bundle_id: str, actor: Actor = Depends(current_actor), svc: Services = Depends(get_services)):
    return svc.bundles.archive(bundle_id, actor.id, actor.role)


@app.delete("/api/bundle-orders/{bundle_id}")
def delete_bundle(bundle_id: str, actor: Actor = Depends(current_actor), svc: Services = Depends(get_services)):
    svc.bundles.delete(bundle_id, actor.id, actor.role)
    return {"deleted": True}


# --------------------------- Research cards --------------------------------
@app.get("/api/cards/balance")
def card_balance(actor: Actor = Depends(current_actor), svc: Services = Depends(get_services)):
    return {"balance": svc.ledger.get_balance(actor.id)}


@app.get("/api/cards/history")
def card_history(
    page: int = 1, limit: int = 20, actor: Actor = Depends(current_actor), svc: Services = Depends(get_services),
):
    return svc.ledger.history(actor.id, page, limit)


@app.post("/api/cards/transfer")
def transfer_cards(req: TransferIn, actor: Actor = Depends(current_actor), svc: Services = Depends(get_services)):
    result = svc.ledger.transfer(actor.id, actor.role, req.recipient_phone, req.amount)
    sender = svc.db.profile.find_one({"user_id": oid(actor.id)}) or {}
    svc.notifier.cards_received(result["recipient_id"], req.amount, sender.get("name", "an administrator"))
    return result


@app.post("/api/admin/cards/bulk-grant")
def bulk_grant_cards(req: BulkGrantIn, actor: Actor = Depends(admin_only), svc: Services = Depends(get_services)):
    return {"updated": svc.ledger.bulk_grant(actor.id, req.amount)}


# ---------------------------- Notifications --------------------------------
@app.get("/api/notifications")
def list_notifications(
    page: int = 1, limit: int = 20, actor: Actor = Depends(current_actor), svc: Services = Depends(get_services),
):
    return svc.notifier.list_for(actor.id, page, limit)


@app.get("/api/notifications/unread-count")
def unread_notifications(actor: Actor = Depends(current_actor), svc: Services = Depends(get_services)):
    return {"count": svc.notifier.unread_count(actor.id)}


@app.post("/api/notifications/{notification_id}/read")
def read_notification(
    notification_id: str, actor: Actor = Depends(current_actor), svc: Services = Depends(get_services),
):
    if not svc.notifier.mark_read(notification_id, actor.id):
        raise NotFound("Notification not found")
    return {"read": True}


@app.post("/api/notifications/read-all")
def read_all_notifications(actor: Actor = Depends(current_actor), svc: Services = Depends(get_services)):
    return {"updated": svc.notifier.mark_all_read(actor.id)}


@app.delete("/api/notifications/{notification_id}")
def delete_notification(
    notification_id: str, actor: Actor = Depends(current_actor), svc: Services = Depends(get_services),
):
    if not svc.notifier.delete(notification_id, actor.id):
        raise NotFound("Notification not found")
    return {"deleted": True}


# ------------------------------- Agents ------------------------------------
@app.get("/api/agents/top")
def top_agents(limit: int = 10, svc: Services = Depends(get_services)):
    return {"agents": svc.stats.top_agents(limit)}


@app.get("/api/agents/{agent_id}/reviews")
def agent_reviews(agent_id: str, svc: Services = Depends(get_services)):
    return {"reviews": svc.stats.reviews_for(agent_id)}


@app.post("/api/agents/{agent_id}/reviews")
def add_agent_review(
    agent_id: str, req: ReviewIn, actor: Actor = Depends(current_actor), svc: Services = Depends(get_services),
):
    if actor.role != "user":
        raise Forbidden("Only buyers can review agents")
    return svc.stats.add_review(actor.id, agent_id, req.rating, req.comment, req.order_id)


@app.post("/api/agents/{agent_id}/recalculate")
def recalculate_agent(agent_id: str, actor: Actor = Depends(admin_only), svc: Services = Depends(get_services)):
    return svc.stats.recalculate(agent_id)


@app.put("/api/admin/agents/{agent_id}/rank")
def rank_agent(
    agent_id: str, req: RankIn, actor: Actor = Depends(admin_only), svc: Services = Depends(get_services),
):
    svc.stats.set_rank(agent_id, req.rank, req.is_top_agent)
    return {"updated": True}


@app.post("/api/admin/reviews/{review_id}/approve")
def approve_review(review_id: str, actor: Actor = Depends(admin_only), svc: Services = Depends(get_services)):
    return svc.stats.approve_review(review_id)


@app.delete("/api/admin/reviews/{review_id}")
def delete_review(review_id: str, actor: Actor = Depends(admin_only), svc: Services = Depends(get_services)):
    svc.stats.delete_review(review_id)
    return {"deleted": True}


@app.post("/api/agents/rewards")
def request_reward(actor: Actor = Depends(agent_only), svc: Services = Depends(get_services)):
    return svc.stats.request_reward(actor.id)


@app.get("/api/admin/rewards")
def list_rewards(status: Optional[str] = "pending", actor: Actor = Depends(admin_only), db: Database = Depends(get_db)):
    flt: Dict[str, Any] = {"status": status} if status else {}
    return {"requests": [serialize_doc(r) for r in get_documents(db, "reward_request", flt)]}


@app.post("/api/admin/rewards/{request_id}")
def resolve_reward(
    request_id: str, req: RewardDecisionIn, actor: Actor = Depends(admin_only), svc: Services = Depends(get_services),
):
    return svc.stats.resolve_reward(request_id, req.approve)


# ------------------------------- Settings ----------------------------------
@app.get("/api/settings")
def read_settings(db: Database = Depends(get_db)):
    return get_settings(db).model_dump()


@app.put("/api/admin/settings")
def write_settings(req: SettingsIn, actor: Actor = Depends(admin_only), db: Database = Depends(get_db)):
    return update_settings(db, req.model_dump(exclude_none=True)).model_dump()


# -------------------------------- Cargos -----------------------------------
@app.get("/api/cargos")
def list_cargos(svc: Services = Depends(get_services)):
    return {"cargos": svc.cargos.list()}


@app.post("/api/admin/cargos", status_code=201)
def create_cargo(req: CargoIn, actor: Actor = Depends(admin_only), svc: Services = Depends(get_services)):
    return svc.cargos.create(req.model_dump(exclude_none=True))


@app.put("/api/admin/cargos/{cargo_id}")
def update_cargo(
    cargo_id: str, req: CargoIn, actor: Actor = Depends(admin_only), svc: Services = Depends(get_services),
):
    return svc.cargos.update(cargo_id, req.model_dump(exclude_unset=True))


@app.delete("/api/admin/cargos/{cargo_id}")
def delete_cargo(cargo_id: str, actor: Actor = Depends(admin_only), svc: Services = Depends(get_services)):
    svc.cargos.delete(cargo_id)
    return {"deleted": True}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
