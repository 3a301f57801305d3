import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine

from fulfillment import schema
from fulfillment.config import FulfillmentConfig
from fulfillment.main import create_app

BUYER = {"X-User-Id": "buyer-1"}
OTHER_BUYER = {"X-User-Id": "buyer-2"}
SELLER = {"X-User-Id": "seller-1"}
ADMIN = {"X-User-Id": "admin-1"}


@pytest.fixture
def client(tmp_path):
    path = tmp_path / "api.db"
    engine = create_engine(f"sqlite:///{path}")
    schema.metadata.create_all(engine)
    with engine.begin() as conn:
        conn.execute(
            schema.users.insert(),
            [
                {"id": "buyer-1", "name": "Awa", "role": "acheteur", "phone": None, "sms_opt_in": True},
                {"id": "buyer-2", "name": "Coop", "role": "cooperative", "phone": None, "sms_opt_in": True},
                {"id": "seller-1", "name": "Koffi", "role": "producteur", "phone": None, "sms_opt_in": True},
                {"id": "admin-1", "name": "Admin", "role": "admin", "phone": None, "sms_opt_in": True},
            ],
        )
        conn.execute(
            schema.products.insert(),
            {
                "id": "product-1",
                "seller_id": "seller-1",
                "name": "Cassava",
                "unit": "kg",
                "price": 500,
                "available_quantity": 10,
                "initial_quantity": 10,
                "status": "approved",
            },
        )
    engine.dispose()

    app = create_app(
        FulfillmentConfig(
            database_url=f"sqlite+aiosqlite:///{path}",
            webhook_worker_enabled=False,
        )
    )
    with TestClient(app) as client:
        yield client


def _create(client, quantity=2, headers=BUYER):
    return client.post(
        "/transactions", json={"product_id": "product-1", "quantity": quantity}, headers=headers
    )


def test_health(client):
    assert client.get("/health").json() == {"status": "ok", "service": "fulfillment-service"}


def test_requires_known_user(client):
    assert client.get("/transactions").status_code == 401
    assert client.get("/transactions", headers={"X-User-Id": "nobody"}).status_code == 401


def test_create_transaction(client):
    response = _create(client, 4)

    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "pending"
    assert body["buyer_id"] == "buyer-1"
    assert body["seller_id"] == "seller-1"
    assert body["total_amount"] == 2000


def test_create_errors(client):
    assert _create(client, 11).status_code == 422
    assert _create(client, 0).status_code == 422
    missing = client.post(
        "/transactions", json={"product_id": "missing", "quantity": 1}, headers=BUYER
    )
    assert missing.status_code == 404


def test_complete_and_cancel_flow(client):
    transaction_id = _create(client).json()["id"]

    assert client.post(f"/transactions/{transaction_id}/complete", headers=BUYER).status_code == 403

    completed = client.post(f"/transactions/{transaction_id}/complete", headers=SELLER)
    assert completed.status_code == 200
    assert completed.json()["status"] == "completed"

    again = client.post(f"/transactions/{transaction_id}/cancel", headers=BUYER)
    assert again.status_code == 422

    assert client.post("/transactions/missing/complete", headers=SELLER).status_code == 404


def test_cancel_with_and_without_reason(client):
    first = _create(client).json()["id"]
    second = _create(client).json()["id"]

    with_reason = client.post(
        f"/transactions/{first}/cancel", json={"reason": "wrong size"}, headers=BUYER
    )
    assert with_reason.status_code == 200
    assert with_reason.json()["cancellation_reason"] == "wrong size"

    without = client.post(f"/transactions/{second}/cancel", headers=SELLER)
    assert without.status_code == 200
    assert without.json()["cancellation_reason"] is None

    assert client.post(f"/transactions/{second}/cancel", headers=OTHER_BUYER).status_code == 403


def test_listing_depends_on_role(client):
    transaction_id = _create(client).json()["id"]

    assert [t["id"] for t in client.get("/transactions", headers=BUYER).json()] == [transaction_id]
    assert [t["id"] for t in client.get("/transactions", headers=SELLER).json()] == [transaction_id]
    assert [t["id"] for t in client.get("/transactions", headers=ADMIN).json()] == [transaction_id]
    assert client.get("/transactions", headers=OTHER_BUYER).json() == []
    assert client.get("/transactions?status=completed", headers=BUYER).json() == []

    assert client.get(f"/transactions/{transaction_id}", headers=BUYER).status_code == 200
    assert client.get(f"/transactions/{transaction_id}", headers=OTHER_BUYER).status_code == 403
    assert client.get("/transactions/missing", headers=BUYER).status_code == 404


def test_notifications_for_participants(client):
    _create(client)

    [notification] = client.get("/notifications", headers=BUYER).json()
    assert notification["kind"] == "transaction_created"
    assert notification["is_read"] is False
    assert len(client.get("/notifications", headers=SELLER).json()) == 1
    assert client.get("/notifications", headers=OTHER_BUYER).json() == []

    read = client.post(f"/notifications/{notification['id']}/read", headers=BUYER)
    assert read.status_code == 200
    assert client.get("/notifications?unread_only=true", headers=BUYER).json() == []
    assert client.post(f"/notifications/{notification['id']}/read", headers=SELLER).status_code == 404


def test_webhook_management(client):
    events = client.get("/webhooks/events").json()
    assert {e["event"] for e in events} == {
        "transaction.created",
        "transaction.completed",
        "transaction.cancelled",
    }

    created = client.post(
        "/webhooks",
        json={"url": "https://seller.example/hook", "events": ["transaction.created"]},
        headers=SELLER,
    )
    assert created.status_code == 201
    endpoint = created.json()
    assert len(endpoint["secret"]) == 64

    listed = client.get("/webhooks", headers=SELLER).json()
    assert [e["id"] for e in listed] == [endpoint["id"]]
    assert "secret" not in listed[0]

    _create(client)
    assert client.get(f"/webhooks/{endpoint['id']}/logs", headers=SELLER).json() == []
    assert client.get(f"/webhooks/{endpoint['id']}/logs", headers=BUYER).status_code == 403

    assert client.delete(f"/webhooks/{endpoint['id']}", headers=BUYER).status_code == 403
    deleted = client.delete(f"/webhooks/{endpoint['id']}", headers=SELLER)
    assert deleted.status_code == 200
    assert deleted.json()["is_active"] is False
    assert client.delete("/webhooks/missing", headers=SELLER).status_code == 404


def test_webhook_validation(client):
    unknown_event = client.post(
        "/webhooks",
        json={"url": "https://seller.example/hook", "events": ["product.created"]},
        headers=SELLER,
    )
    assert unknown_event.status_code == 422
    bad_url = client.post(
        "/webhooks",
        json={"url": "ftp://seller.example/hook", "events": ["transaction.created"]},
        headers=SELLER,
    )
    assert bad_url.status_code == 422
    broken_host = client.post(
        "/webhooks",
        json={"url": "http://[::1/hook", "events": ["transaction.created"]},
        headers=SELLER,
    )
    assert broken_host.status_code == 422
    assert client.get("/webhooks", headers=SELLER).json() == []


def test_webhook_stats_are_admin_only(client):
    assert client.get("/webhooks/stats", headers=SELLER).status_code == 403
    stats = client.get("/webhooks/stats", headers=ADMIN).json()
    assert stats["total_endpoints"] == 0
    assert stats["success_rate"] is None
