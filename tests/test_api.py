import pytest
from fastapi.testclient import TestClient

from main import app, get_db, get_images


@pytest.fixture
def client(db, images):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_images] = lambda: images
    yield TestClient(app)
    app.dependency_overrides.clear()


def _as(uid, role):
    return {"X-User-Id": str(uid), "X-User-Role": role}


def _register(client, email, role="user", name="Someone", phone="+8801900000000"):
    resp = client.post("/api/users", json={"email": email, "role": role})
    assert resp.status_code == 200
    uid = resp.json()["id"]
    resp = client.put("/api/profile", json={"name": name, "phone": phone}, headers=_as(uid, role))
    assert resp.status_code == 200
    return uid


def test_root(client):
    assert client.get("/").json() == {"message": "Research agent marketplace backend running"}


def test_identity_headers_are_required(client):
    resp = client.get("/api/orders")
    assert resp.status_code == 401
    assert resp.json()["code"] == "Unauthenticated"

    resp = client.get("/api/orders", headers={"X-User-Id": "nope", "X-User-Role": "user"})
    assert resp.status_code == 400


def test_registration_grants_starting_cards(client):
    resp = client.post("/api/users", json={"email": "new@example.com"})
    assert resp.json()["initial_cards_granted"] is True
    uid = resp.json()["id"]
    assert client.get("/api/cards/balance", headers=_as(uid, "user")).json() == {"balance": 5}

    again = client.post("/api/users", json={"email": "new@example.com"})
    assert again.status_code == 409
    assert again.json()["code"] == "AlreadyExists"


def test_order_flow_over_http(client, admin):
    buyer = _register(client, "buyer@example.com", phone="+8801900000001")
    first = _register(client, "a1@example.com", role="agent", phone="+8801900000002")
    second = _register(client, "a2@example.com", role="agent", phone="+8801900000003")
    client.post(f"/api/admin/agents/{first}/approve", headers=_as(admin, "admin"))

    resp = client.post(
        "/api/orders",
        json={"product_name": "Mug", "description": "Blue"},
        headers=_as(buyer, "user"),
    )
    assert resp.status_code == 200
    order_id = resp.json()["id"]

    assert client.post(f"/api/orders/{order_id}/claim", headers=_as(first, "agent")).status_code == 200
    lost = client.post(f"/api/orders/{order_id}/claim", headers=_as(second, "agent"))
    assert lost.status_code == 409
    assert lost.json()["code"] == "Conflict"

    resp = client.post(f"/api/orders/{order_id}/report", json={"user_amount": 300}, headers=_as(first, "agent"))
    assert resp.status_code == 200
    order = client.get(f"/api/orders/{order_id}", headers=_as(buyer, "user")).json()
    assert order["status"] == "awaiting_user_payment"

    unread = client.get("/api/notifications/unread-count", headers=_as(buyer, "user")).json()
    assert unread["count"] >= 2


def test_admin_routes_reject_other_roles(client, make_user):
    uid = make_user()
    resp = client.put("/api/admin/settings", json={"exchange_rate": 2}, headers=_as(uid, "user"))
    assert resp.status_code == 403
    assert resp.json() == {"detail": "Admin access required", "code": "Forbidden"}


def test_settings_round_trip(client, admin):
    resp = client.put("/api/admin/settings", json={"max_orders_per_day": 3}, headers=_as(admin, "admin"))
    assert resp.status_code == 200
    assert client.get("/api/settings").json()["max_orders_per_day"] == 3


def test_card_transfer_over_http(client, db):
    sender = _register(client, "s@example.com", phone="+8801900000010")
    recipient = _register(client, "r@example.com", phone="+8801900000011")

    resp = client.post(
        "/api/cards/transfer", json={"recipient_phone": "+8801900000011", "amount": 2}, headers=_as(sender, "user"),
    )
    assert resp.status_code == 200
    assert client.get("/api/cards/balance", headers=_as(recipient, "user")).json() == {"balance": 7}
    assert db.notification.count_documents({"type": "card_received"}) == 1

    resp = client.post(
        "/api/cards/transfer", json={"recipient_phone": "+8801900000011", "amount": 50}, headers=_as(sender, "user"),
    )
    assert resp.status_code == 402
    assert resp.json()["code"] == "InsufficientCredit"

    resp = client.post(
        "/api/cards/transfer", json={"recipient_phone": "+8801999999999", "amount": 1}, headers=_as(sender, "user"),
    )
    assert resp.status_code == 404
    assert resp.json()["code"] == "RecipientNotFound"


def test_bundle_item_removal_over_http(client, admin):
    buyer = _register(client, "b@example.com", phone="+8801900000020")
    agent = _register(client, "ag@example.com", role="agent", phone="+8801900000021")
    resp = client.post(
        "/api/bundle-orders",
        json={"items": [{"product_name": "Mug"}, {"product_name": "Plate"}]},
        headers=_as(buyer, "user"),
    )
    assert resp.status_code == 200
    bundle = resp.json()
    client.post(f"/api/bundle-orders/{bundle['id']}/claim", headers=_as(agent, "agent"))
    resp = client.post(
        f"/api/bundle-orders/{bundle['id']}/report",
        json={"report_mode": "single", "bundle_report": {"total_user_amount": 400}},
        headers=_as(agent, "agent"),
    )
    assert resp.json()["status"] == "awaiting_user_payment"

    item_id = bundle["items"][0]["id"]
    resp = client.delete(f"/api/bundle-orders/{bundle['id']}/items/{item_id}", headers=_as(buyer, "user"))
    assert resp.status_code == 200
    assert len(resp.json()["items"]) == 1
    assert client.get("/api/cards/balance", headers=_as(buyer, "user")).json() == {"balance": 3}


def test_reward_requests_over_http(client, db, make_user, admin):
    agent = make_user(role="agent")
    db.user.update_one({"_id": agent}, {"$set": {"agent_points": 120}})

    resp = client.post("/api/agents/rewards", headers=_as(agent, "agent"))
    assert resp.status_code == 200
    request_id = resp.json()["id"]

    pending = client.get("/api/admin/rewards", headers=_as(admin, "admin")).json()["requests"]
    assert [r["id"] for r in pending] == [request_id]

    resp = client.post(f"/api/admin/rewards/{request_id}", json={"approve": True}, headers=_as(admin, "admin"))
    assert resp.json()["status"] == "approved"
    assert client.get("/api/admin/rewards", headers=_as(admin, "admin")).json()["requests"] == []


def test_malformed_reports_are_rejected_before_reaching_services(client, db):
    buyer = _register(client, "q@example.com", phone="+8801900000030")
    agent = _register(client, "qa@example.com", role="agent", phone="+8801900000031")
    order_id = client.post(
        "/api/orders", json={"product_name": "Mug", "description": "Blue"}, headers=_as(buyer, "user"),
    ).json()["id"]
    client.post(f"/api/orders/{order_id}/claim", headers=_as(agent, "agent"))

    resp = client.post(
        f"/api/orders/{order_id}/report", json={"user_amount": 10, "quantity": -1}, headers=_as(agent, "agent"),
    )
    assert resp.status_code == 422
    assert db.agent_report.count_documents({}) == 0

    bundle = client.post(
        "/api/bundle-orders",
        json={"items": [{"product_name": "Mug"}, {"product_name": "Plate"}]},
        headers=_as(buyer, "user"),
    ).json()
    client.post(f"/api/bundle-orders/{bundle['id']}/claim", headers=_as(agent, "agent"))
    resp = client.post(
        f"/api/bundle-orders/{bundle['id']}/report",
        json={"report_mode": "per_item", "item_reports": [
            {"item_id": bundle["items"][0]["id"], "user_amount": 10, "quantity": 0},
        ]},
        headers=_as(agent, "agent"),
    )
    assert resp.status_code == 422


def test_order_messages_over_http(client, db):
    buyer = _register(client, "m@example.com", phone="+8801900000040")
    agent = _register(client, "ma@example.com", role="agent", phone="+8801900000041")
    outsider = _register(client, "mo@example.com", phone="+8801900000042")
    order_id = client.post(
        "/api/orders", json={"product_name": "Lamp", "description": "Brass"}, headers=_as(buyer, "user"),
    ).json()["id"]
    client.post(f"/api/orders/{order_id}/claim", headers=_as(agent, "agent"))

    resp = client.post(f"/api/orders/{order_id}/messages", json={"text": "Which size?"}, headers=_as(agent, "agent"))
    assert resp.status_code == 201
    assert resp.json()["sender_role"] == "agent"
    client.post(f"/api/orders/{order_id}/messages", json={"text": "Large"}, headers=_as(buyer, "user"))

    thread = client.get(f"/api/orders/{order_id}/messages", headers=_as(buyer, "user")).json()["messages"]
    assert [m["text"] for m in thread] == ["Which size?", "Large"]

    resp = client.get(f"/api/orders/{order_id}/messages", headers=_as(outsider, "user"))
    assert resp.status_code == 404
    resp = client.post(f"/api/orders/{order_id}/messages", json={"text": "  "}, headers=_as(buyer, "user"))
    assert resp.status_code == 400


def test_cargo_registry_over_http(client, admin, make_user):
    resp = client.post(
        "/api/admin/cargos", json={"name": "Swift Cargo", "phone": " 99112233 "}, headers=_as(admin, "admin"),
    )
    assert resp.status_code == 201
    cargo = resp.json()
    assert cargo["phone"] == "99112233"

    dup = client.post("/api/admin/cargos", json={"name": "Swift Cargo"}, headers=_as(admin, "admin"))
    assert dup.status_code == 409
    assert dup.json()["code"] == "AlreadyExists"

    user = make_user()
    resp = client.post("/api/admin/cargos", json={"name": "Other"}, headers=_as(user, "user"))
    assert resp.status_code == 403

    client.post("/api/admin/cargos", json={"name": "Atlas Freight"}, headers=_as(admin, "admin"))
    names = [c["name"] for c in client.get("/api/cargos").json()["cargos"]]
    assert names == ["Atlas Freight", "Swift Cargo"]

    resp = client.put(
        f"/api/admin/cargos/{cargo['id']}", json={"name": "Swift Cargo", "website": "swift.mn"}, headers=_as(admin, "admin"),
    )
    assert resp.json()["website"] == "swift.mn"
    assert resp.json()["phone"] == "99112233"

    assert client.delete(f"/api/admin/cargos/{cargo['id']}", headers=_as(admin, "admin")).status_code == 200
    assert client.delete(f"/api/admin/cargos/{cargo['id']}", headers=_as(admin, "admin")).status_code == 404
