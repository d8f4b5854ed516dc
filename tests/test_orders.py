import threading

import mongomock
import pytest

from admin_config import update_settings
from errors import Conflict, Forbidden, InsufficientCredit, InvalidTransition, LimitExceeded, NotFound, ValidationError


@pytest.fixture
def buyer(make_user, ledger):
    uid = make_user(name="Buyer")
    ledger.grant_initial(uid)
    return uid


@pytest.fixture
def agent(make_user):
    return make_user(role="agent", name="Agent One")


def _create(orders, buyer, **kwargs):
    fields = {"product_name": "Ceramic mug", "description": "Blue, 350ml"}
    fields.update(kwargs)
    return orders.create(buyer, "user", **fields)


def test_create_spends_one_card_and_broadcasts(db, orders, ledger, buyer, agent):
    order = _create(orders, buyer)
    assert order["status"] == "published"
    assert order["user"]["id"] == str(buyer)
    assert ledger.get_balance(buyer) == 4
    assert ledger.reconcile(buyer) == 4
    assert db.notification.count_documents({"user_id": agent, "type": "new_order_available"}) == 1
    assert db.order_notification_batch.count_documents({"batch_number": 1}) == 1


def test_create_needs_a_card(db, orders, make_user):
    broke = make_user()
    with pytest.raises(InsufficientCredit):
        _create(orders, broke)
    assert db.order.count_documents({}) == 0


def test_create_respects_order_limits(db, orders, buyer):
    update_settings(db, {"max_orders_per_day": 1})
    _create(orders, buyer)
    with pytest.raises(LimitExceeded) as exc:
        _create(orders, buyer)
    assert exc.value.message == "daily limit reached"


def test_create_requires_name_and_description(orders, buyer):
    with pytest.raises(ValidationError):
        _create(orders, buyer, product_name="  ")
    with pytest.raises(ValidationError):
        _create(orders, buyer, description="")


def test_create_combines_products_and_uploads_inline_images(orders, buyer, images):
    order = orders.create(buyer, "user", products=[
        {"product_name": "Mug", "description": "Blue", "image_urls": ["data:image/png;base64,AAA"]},
        {"product_name": "Plate", "description": "White", "image_urls": ["https://cdn.test/plate.png"]},
    ])
    assert order["product_name"] == "Mug, Plate"
    assert order["description"] == "Mug: Blue\n\nPlate: White"
    assert order["image_urls"] == ["https://images.test/1.png", "https://cdn.test/plate.png"]
    assert len(images.uploaded) == 1


def test_second_agent_claim_conflicts(orders, buyer, agent, make_user):
    other = make_user(role="agent")
    order = _create(orders, buyer)

    claimed = orders.claim(order["id"], agent)
    assert claimed["status"] == "under_agent_review"
    with pytest.raises(Conflict):
        orders.claim(order["id"], other)
    with pytest.raises(Conflict):
        orders.change_status(order["id"], other, "agent", "under_agent_review")
    assert orders.get(order["id"], agent, "agent")["agent"]["id"] == str(agent)


def test_users_cannot_move_status_forward(orders, buyer):
    order = _create(orders, buyer)
    with pytest.raises(InvalidTransition):
        orders.change_status(order["id"], buyer, "user", "under_agent_review")


def test_agent_needs_report_before_awaiting_payment(db, orders, buyer, agent):
    order = _create(orders, buyer)
    orders.claim(order["id"], agent)
    with pytest.raises(InvalidTransition):
        orders.change_status(order["id"], agent, "agent", "awaiting_user_payment")

    orders.submit_report(order["id"], agent, "agent", {"user_amount": 120})
    assert orders.get(order["id"], buyer, "user")["status"] == "awaiting_user_payment"
    assert db.notification.count_documents({"user_id": buyer, "type": "agent_report_sent"}) == 1


def test_report_revision_keeps_edit_history(orders, buyer, agent):
    order = _create(orders, buyer)
    orders.claim(order["id"], agent)
    orders.submit_report(order["id"], agent, "agent", {"user_amount": 100})
    report = orders.submit_report(order["id"], agent, "agent", {"user_amount": 120, "edit_reason": "shipping"})
    assert report["user_amount"] == 120
    assert len(report["edit_history"]) == 1
    assert report["edit_history"][0]["previous_amount"] == 100
    assert report["edit_history"][0]["reason"] == "shipping"


def test_agent_cancel_needs_a_reason(db, orders, buyer, agent):
    order = _create(orders, buyer)
    orders.claim(order["id"], agent)

    with pytest.raises(ValidationError):
        orders.cancel(order["id"], agent, "agent", "no")
    assert orders.get(order["id"], agent, "agent")["status"] == "under_agent_review"

    cancelled = orders.cancel(order["id"], agent, "agent", "Item discontinued")
    assert cancelled["status"] == "cancelled"
    assert cancelled["cancel_reason"] == "Item discontinued"
    note = db.notification.find_one({"user_id": buyer, "type": "agent_cancelled_order"})
    assert "Item discontinued" in note["message"]


def test_agent_cannot_cancel_after_report(orders, buyer, agent):
    order = _create(orders, buyer)
    orders.claim(order["id"], agent)
    orders.submit_report(order["id"], agent, "agent", {"user_amount": 50})
    with pytest.raises(InvalidTransition):
        orders.cancel(order["id"], agent, "agent", "Changed my mind")


def test_user_cancel_rules(orders, buyer, agent, admin):
    first = _create(orders, buyer)
    assert orders.cancel(first["id"], buyer, "user")["status"] == "cancelled"

    second = _create(orders, buyer)
    orders.claim(second["id"], agent)
    with pytest.raises(InvalidTransition):
        orders.cancel(second["id"], buyer, "user")
    orders.submit_report(second["id"], agent, "agent", {"user_amount": 10})
    orders.confirm_payment(second["id"], buyer)
    with pytest.raises(InvalidTransition):
        orders.cancel(second["id"], buyer, "user")
    assert orders.cancel(second["id"], admin, "admin")["status"] == "cancelled"
    with pytest.raises(InvalidTransition):
        orders.cancel(second["id"], admin, "admin")


def test_settlement_pays_commission_and_refunds_once(db, orders, ledger, buyer, agent, admin):
    update_settings(db, {"exchange_rate": 500.0})
    order = _create(orders, buyer)
    orders.claim(order["id"], agent)
    orders.submit_report(order["id"], agent, "agent", {"user_amount": 100})
    orders.confirm_payment(order["id"], buyer)
    assert db.notification.count_documents({"user_id": admin, "type": "payment_verification_request"}) == 1

    done = orders.change_status(order["id"], admin, "admin", "completed")
    assert done["status"] == "completed"
    assert ledger.get_balance(buyer) == 4

    paid = orders.mark_agent_paid(order["id"])
    assert paid["agent_payment_paid"] is True
    assert db.user.find_one({"_id": agent})["agent_points"] == 2500
    assert ledger.get_balance(buyer) == 5
    assert ledger.reconcile(buyer) == 5

    with pytest.raises(InvalidTransition):
        orders.mark_agent_paid(order["id"])
    assert ledger.get_balance(buyer) == 5
    assert db.user.find_one({"_id": agent})["agent_points"] == 2500

    standing = db.user.find_one({"_id": agent})["agent_profile"]
    assert standing["total_transactions"] == 1
    assert standing["success_rate"] == 100


def test_mark_paid_requires_completed_order(orders, buyer, agent):
    order = _create(orders, buyer)
    orders.claim(order["id"], agent)
    orders.submit_report(order["id"], agent, "agent", {"user_amount": 10})
    with pytest.raises(InvalidTransition):
        orders.mark_agent_paid(order["id"])


def test_visibility(orders, buyer, agent, make_user):
    stranger = make_user()
    other_agent = make_user(role="agent")
    order = _create(orders, buyer)

    with pytest.raises(NotFound):
        orders.get(order["id"], stranger, "user")
    assert [o["id"] for o in orders.list(other_agent, "agent")] == [order["id"]]

    orders.claim(order["id"], agent)
    assert orders.list(other_agent, "agent") == []
    with pytest.raises(NotFound):
        orders.get(order["id"], other_agent, "agent")


def test_track_code_archive_and_delete(db, orders, buyer, agent):
    order = _create(orders, buyer)
    orders.claim(order["id"], agent)
    with pytest.raises(Forbidden):
        orders.update_track_code(order["id"], buyer, "user", "TRK1")
    updated = orders.update_track_code(order["id"], agent, "agent", " TRK1 ")
    assert updated["track_code"] == "TRK1"
    assert db.notification.count_documents({"user_id": buyer, "type": "agent_added_track_code"}) == 1

    orders.archive(order["id"], buyer, "user")
    assert orders.list(buyer, "user") == []
    assert len(orders.list(buyer, "user", include_archived=True)) == 1

    with pytest.raises(Forbidden):
        orders.delete(order["id"], agent, "agent")
    orders.delete(order["id"], buyer, "user")
    assert db.order.count_documents({}) == 0


@pytest.fixture
def atomic_find_and_modify(monkeypatch):
    """Serialize find_one_and_update the way a MongoDB server does.

    mongomock reads and then writes by _id, so two threads can both see the
    pre-update document.
    """
    lock = threading.Lock()
    original = mongomock.collection.Collection.find_one_and_update

    def atomic(self, *args, **kwargs):
        with lock:
            return original(self, *args, **kwargs)

    monkeypatch.setattr(mongomock.collection.Collection, "find_one_and_update", atomic)


def test_concurrent_claims_have_exactly_one_winner(orders, buyer, make_user, atomic_find_and_modify):
    agents = [make_user(role="agent") for _ in range(4)]
    order = _create(orders, buyer)
    start = threading.Barrier(len(agents))
    outcomes = []

    def claim(agent_id):
        start.wait()
        try:
            orders.claim(order["id"], agent_id)
            outcomes.append(("won", agent_id))
        except Conflict:
            outcomes.append(("conflict", agent_id))

    threads = [threading.Thread(target=claim, args=(a,)) for a in agents]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)

    assert len(outcomes) == len(agents)
    winners = [agent_id for result, agent_id in outcomes if result == "won"]
    assert len(winners) == 1
    assert orders.get(order["id"], winners[0], "agent")["agent"]["id"] == str(winners[0])


def test_report_rejects_quantity_below_one(db, orders, buyer, agent):
    order = _create(orders, buyer)
    orders.claim(order["id"], agent)

    with pytest.raises(ValidationError):
        orders.submit_report(order["id"], agent, "agent", {"user_amount": 10, "quantity": -1})
    assert db.agent_report.count_documents({}) == 0
    assert orders.get(order["id"], agent, "agent")["status"] == "under_agent_review"

    orders.submit_report(order["id"], agent, "agent", {"user_amount": 10, "quantity": 2})
    with pytest.raises(ValidationError):
        orders.submit_report(order["id"], agent, "agent", {"user_amount": 12, "quantity": 0})
    report = db.agent_report.find_one({})
    assert report["quantity"] == 2
    assert report["user_amount"] == 10


def test_report_rejects_boolean_amount(orders, buyer, agent):
    order = _create(orders, buyer)
    orders.claim(order["id"], agent)
    with pytest.raises(ValidationError):
        orders.submit_report(order["id"], agent, "agent", {"user_amount": True})


def test_report_that_loses_to_a_cancel_is_not_stored(db, orders, buyer, agent, monkeypatch):
    order = _create(orders, buyer)
    orders.claim(order["id"], agent)
    load = orders._load

    def load_then_cancel(order_id):
        doc = load(order_id)
        # an admin cancel lands between the read and the write
        db.order.update_one({"_id": doc["_id"]}, {"$set": {"status": "cancelled"}})
        return doc

    monkeypatch.setattr(orders, "_load", load_then_cancel)
    with pytest.raises(Conflict):
        orders.submit_report(order["id"], agent, "agent", {"user_amount": 50})
    assert db.agent_report.count_documents({}) == 0
    assert db.order.find_one({})["status"] == "cancelled"


def test_failed_report_write_restores_review_status(db, orders, buyer, agent, monkeypatch):
    order = _create(orders, buyer)
    orders.claim(order["id"], agent)

    def broken_write(report, edit_reason):
        raise RuntimeError("write failed")

    monkeypatch.setattr(orders, "_write_report", broken_write)
    with pytest.raises(RuntimeError):
        orders.submit_report(order["id"], agent, "agent", {"user_amount": 50})
    assert db.order.find_one({})["status"] == "under_agent_review"
