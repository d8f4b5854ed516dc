import pytest

from errors import NotFound, ValidationError
from messages import MessageService


@pytest.fixture
def messages(db, notifier, images):
    return MessageService(db, notifier, images)


@pytest.fixture
def order(orders, make_user, ledger):
    buyer = make_user(name="Buyer")
    ledger.grant_initial(buyer)
    return orders.create(buyer, "user", product_name="Lamp", description="Brass, 40cm")


def _buyer(order):
    return order["user"]["id"]


def test_open_orders_can_be_discussed_by_any_agent(messages, order, make_user):
    agent = make_user(role="agent")
    sent = messages.send(order["id"], agent, "agent", text="Is the shade included?")
    assert sent["text"] == "Is the shade included?"
    assert sent["sender_id"] == str(agent)
    assert [m["id"] for m in messages.list(order["id"], _buyer(order), "user")] == [sent["id"]]


def test_claimed_orders_are_private_to_their_agent(messages, orders, order, make_user):
    agent = make_user(role="agent")
    other = make_user(role="agent")
    orders.claim(order["id"], agent)

    messages.send(order["id"], agent, "agent", text="Found it")
    with pytest.raises(NotFound):
        messages.list(order["id"], other, "agent")
    with pytest.raises(NotFound):
        messages.send(order["id"], make_user(), "user", text="hello")
    assert len(messages.list(order["id"], make_user(role="admin"), "admin")) == 1


def test_the_other_party_is_notified(db, messages, orders, order, make_user):
    agent = make_user(role="agent")
    orders.claim(order["id"], agent)

    messages.send(order["id"], _buyer(order), "user", text="Any update?")
    assert db.notification.count_documents({"user_id": agent, "type": "new_message"}) == 1
    messages.send(order["id"], agent, "agent", text="Tomorrow")
    assert db.notification.count_documents({"type": "new_message"}) == 2


def test_inline_images_are_uploaded(messages, order, images):
    sent = messages.send(order["id"], _buyer(order), "user", image="data:image/png;base64,AAA")
    assert sent["image_url"] == "https://images.test/1.png"
    assert sent["text"] is None
    assert images.uploaded == ["data:image/png;base64,AAA"]


def test_empty_message_is_rejected(messages, order):
    with pytest.raises(ValidationError):
        messages.send(order["id"], _buyer(order), "user", text="   ")
