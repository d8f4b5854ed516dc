import mongomock
import pytest
from bson import ObjectId

from agent_stats import AgentStatsService
from bundles import BundleOrderService
from database import create_document
from ledger import CardLedger
from notifications import Notifier
from orders import OrderService
from schemas import AgentProfile, CardTransaction, CardTransactionType, Profile, User
from uploads import ImageStore


class FakeImages(ImageStore):
    """Uploads nothing; inline images come back as predictable URLs."""

    def __init__(self):
        super().__init__(upload_url="https://images.test/upload", preset="test")
        self.uploaded = []

    def upload(self, data: str) -> str:
        self.uploaded.append(data)
        return f"https://images.test/{len(self.uploaded)}.png"


@pytest.fixture
def db():
    return mongomock.MongoClient().get_database("agentbuy_test")


@pytest.fixture
def images():
    return FakeImages()


@pytest.fixture
def make_user(db):
    """Insert a user (and profile) and return its ObjectId.

    Starting cards are written through the ledger as an admin gift so that
    balances always reconcile with `card_transaction`.
    """
    counter = {"n": 0}

    def factory(role="user", cards=0, name=None, phone=None, email=None, approved=True, profile=True):
        counter["n"] += 1
        n = counter["n"]
        user = User(
            email=email or f"{role}{n}@example.com",
            role=role,
            is_approved=approved,
            agent_profile=AgentProfile() if role == "agent" else None,
        )
        uid = ObjectId(create_document(db, "user", user))
        if profile:
            create_document(db, "profile", Profile(
                user_id=uid,
                name=name or f"{role.title()} {n}",
                phone=phone or f"+8801700000{n:03d}",
                email=email or f"{role}{n}@example.com",
            ))
        if cards:
            db.user.update_one({"_id": uid}, {"$inc": {"research_cards": cards}})
            create_document(db, "card_transaction", CardTransaction(
                to_user_id=uid, amount=cards, type=CardTransactionType.ADMIN_GIFT, note="seed",
            ))
        return uid

    return factory


@pytest.fixture
def notifier(db):
    return Notifier(db)


@pytest.fixture
def ledger(db):
    return CardLedger(db)


@pytest.fixture
def stats(db, notifier):
    return AgentStatsService(db, notifier)


@pytest.fixture
def orders(db, ledger, notifier, stats, images):
    return OrderService(db, ledger, notifier, stats, images)


@pytest.fixture
def bundles(db, ledger, notifier, stats, images):
    return BundleOrderService(db, ledger, notifier, stats, images)


@pytest.fixture
def admin(make_user):
    return make_user(role="admin", name="Admin")
