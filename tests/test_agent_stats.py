import pytest
from bson import ObjectId

from errors import AlreadyExists, InvalidTransition, NotFound, ValidationError


def _orders(db, agent, status, n, collection="order"):
    for _ in range(n):
        db[collection].insert_one({"agent_id": agent, "status": status})


def test_success_rate_from_completed_and_cancelled(db, stats, make_user):
    agent = make_user(role="agent")
    _orders(db, agent, "completed", 2)
    _orders(db, agent, "completed", 1, collection="bundle_order")
    _orders(db, agent, "cancelled", 1)
    _orders(db, agent, "under_agent_review", 4)

    assert stats.recalculate(agent) == {"total_transactions": 3, "success_rate": 75}
    profile = db.user.find_one({"_id": agent})["agent_profile"]
    assert profile["success_rate"] == 75
    assert profile["total_transactions"] == 3


def test_no_history_means_zero(stats, make_user):
    assert stats.recalculate(make_user(role="agent")) == {"total_transactions": 0, "success_rate": 0}


def test_approved_ratings_can_lift_the_rate(db, stats, make_user):
    agent = make_user(role="agent")
    buyer = make_user()
    _orders(db, agent, "completed", 1)
    _orders(db, agent, "cancelled", 1)

    review = stats.add_review(buyer, agent, 5, "Great")
    assert stats.recalculate(agent)["success_rate"] == 50

    stats.approve_review(review["id"])
    assert db.user.find_one({"_id": agent})["agent_profile"]["success_rate"] == 100

    stats.delete_review(review["id"])
    assert db.user.find_one({"_id": agent})["agent_profile"]["success_rate"] == 50


def test_review_validation(stats, make_user):
    agent = make_user(role="agent")
    buyer = make_user()
    order_id = ObjectId()

    with pytest.raises(ValidationError):
        stats.add_review(buyer, agent, 6)
    with pytest.raises(NotFound):
        stats.add_review(buyer, make_user(), 4)

    stats.add_review(buyer, agent, 4, order_id=order_id)
    with pytest.raises(AlreadyExists):
        stats.add_review(buyer, agent, 3, order_id=order_id)
    assert stats.reviews_for(agent) == []
    assert len(stats.reviews_for(agent, approved_only=False)) == 1


def test_top_agents_follow_admin_rank(stats, make_user):
    first = make_user(role="agent", name="First")
    second = make_user(role="agent", name="Second")
    make_user(role="agent", name="Unranked")
    stats.set_rank(second, 2)
    stats.set_rank(first, 1)

    top = stats.top_agents()
    assert [a["name"] for a in top] == ["First", "Second"]
    assert top[0]["rank"] == 1

    with pytest.raises(ValidationError):
        stats.set_rank(first, 0)
    with pytest.raises(NotFound):
        stats.set_rank(ObjectId(), 1)


def test_reward_request_lifecycle(db, stats, make_user):
    agent = make_user(role="agent")
    admin = make_user(role="admin")
    with pytest.raises(ValidationError):
        stats.request_reward(agent)

    db.user.update_one({"_id": agent}, {"$set": {"agent_points": 250}})
    request = stats.request_reward(agent)
    assert request["amount"] == 250
    assert db.notification.count_documents({"user_id": admin, "type": "reward_request"}) == 1
    with pytest.raises(AlreadyExists):
        stats.request_reward(agent)

    resolved = stats.resolve_reward(request["id"], approve=True)
    assert resolved["status"] == "approved"
    assert db.user.find_one({"_id": agent})["agent_points"] == 0
    with pytest.raises(InvalidTransition):
        stats.resolve_reward(request["id"], approve=False)


def test_rejected_reward_keeps_points(db, stats, make_user):
    agent = make_user(role="agent")
    db.user.update_one({"_id": agent}, {"$set": {"agent_points": 80}})
    request = stats.request_reward(agent)
    stats.resolve_reward(request["id"], approve=False)
    assert db.user.find_one({"_id": agent})["agent_points"] == 80
