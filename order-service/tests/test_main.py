import json
from decimal import Decimal
from threading import Event

import pytest
from fastapi.testclient import TestClient

from conftest import FakeKafkaConsumer
from ordering import main
from ordering.bootstrap import build_services


def event(entity_id, event_type, payload=None):
    body = {"id": entity_id, "eventType": event_type}
    if payload is not None:
        body["payload"] = payload
    return json.dumps(body).encode("utf-8")


@pytest.fixture
def services(monkeypatch):
    svc = build_services("memory", dead_letter=lambda letter: None, on_stale=lambda e, r: None)
    monkeypatch.setattr(main, "services", svc)
    yield svc
    svc.shutdown()


@pytest.fixture
def client(services):
    return TestClient(main.app)


@pytest.fixture
def replicated(services):
    """Feed both lanes as Kafka would."""
    item_lane, account_lane = services.lanes
    item_lane.handle_raw(
        event(5, "INITIAL_LOAD", {"name": "Widget", "unitPrice": 9.99, "stockLevel": 100})
    )
    item_lane.handle_raw(event(6, "CREATED", {"name": "Gizmo", "unitPrice": "2.50"}))
    account_lane.handle_raw(event(1, "USER_CREATED", {"email": "ada@example.com"}))
    account_lane.handle_raw(event(2, "USER_CREATED", {"email": "bob@example.com"}))
    return services


ADA = {"X-User-Email": "ada@example.com"}
BOB = {"X-User-Email": "bob@example.com"}


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_widget_scenario(client, replicated):
    resp = client.post("/orders", json={"lines": [{"itemId": 5, "quantity": 2}]}, headers=ADA)

    assert resp.status_code == 201
    body = resp.json()
    assert body["ownerAccountId"] == 1
    assert body["lines"][0]["name"] == "Widget"
    assert Decimal(body["lines"][0]["lineSubtotal"]) == Decimal("19.98")
    assert Decimal(body["total"]) == Decimal("19.98")


def test_owner_is_never_taken_from_the_body(client, replicated):
    resp = client.post(
        "/orders",
        json={"ownerAccountId": 2, "lines": [{"itemId": 5, "quantity": 1}]},
        headers={"X-User-Id": "1"},
    )
    assert resp.json()["ownerAccountId"] == 1


def test_missing_identity(client, replicated):
    resp = client.post("/orders", json={"lines": [{"itemId": 5, "quantity": 1}]})
    assert resp.status_code == 401


def test_not_found_messages_are_passed_through(client, replicated):
    resp = client.post(
        "/orders",
        json={"lines": [{"itemId": 7, "quantity": 1}, {"itemId": 12, "quantity": 1}]},
        headers=ADA,
    )
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Items not found: 7, 12"

    resp = client.post(
        "/orders", json={"lines": [{"itemId": 5, "quantity": 1}]},
        headers={"X-User-Email": "ghost@example.com"},
    )
    assert resp.status_code == 400
    assert resp.json()["detail"].startswith("Account not found")


def test_malformed_draft(client, replicated):
    resp = client.post("/orders", json={"lines": []}, headers=ADA)
    assert resp.status_code == 400
    assert "at least one line" in resp.json()["detail"]


def test_update_replaces_lines(client, replicated):
    created = client.post(
        "/orders",
        json={"lines": [{"itemId": 5, "quantity": 1}, {"itemId": 6, "quantity": 4}]},
        headers=ADA,
    ).json()

    resp = client.put(
        f"/orders/{created['id']}", json={"lines": [{"itemId": 6, "quantity": 1}]}, headers=ADA
    )

    assert resp.status_code == 200
    updated = resp.json()
    assert len(updated["lines"]) == 1
    assert updated["createdAt"] == created["createdAt"]
    assert Decimal(updated["total"]) == Decimal("2.50")
    assert client.get(f"/orders/{created['id']}", headers=ADA).json()["lines"] == updated["lines"]


def test_update_by_someone_else_is_forbidden(client, replicated):
    created = client.post(
        "/orders", json={"lines": [{"itemId": 5, "quantity": 1}]}, headers=ADA
    ).json()

    resp = client.put(
        f"/orders/{created['id']}", json={"lines": [{"itemId": 6, "quantity": 1}]}, headers=BOB
    )
    assert resp.status_code == 403
    assert client.get(f"/orders/{created['id']}", headers=BOB).status_code == 403


def test_unknown_order(client, replicated):
    assert client.get("/orders/nope", headers=ADA).status_code == 404
    resp = client.put("/orders/nope", json={"lines": [{"itemId": 5, "quantity": 1}]}, headers=ADA)
    assert resp.status_code == 404


def test_list_and_delete_my_orders(client, replicated):
    created = client.post(
        "/orders", json={"lines": [{"itemId": 5, "quantity": 1}]}, headers=ADA
    ).json()

    mine = client.get("/orders/me", headers=ADA).json()
    assert [o["id"] for o in mine["orders"]] == [created["id"]]
    assert client.get("/orders/me", headers=BOB).json()["orders"] == []

    assert client.delete(f"/orders/{created['id']}", headers=ADA).status_code == 200
    assert client.get(f"/orders/{created['id']}", headers=ADA).status_code == 404


def test_sync_status(client, replicated):
    body = client.get("/admin/sync/status").json()

    assert body["status"] == "SYNCHRONIZED"
    assert body["items"] == 2
    assert body["accounts"] == 2
    assert {lane["entityType"] for lane in body["lanes"]} == {"item", "account"}

    assert client.get("/admin/sync/accounts/ADA@example.com").json()["synchronized"] is True
    assert client.get("/admin/sync/accounts/x@example.com").json()["synchronized"] is False


def test_sync_status_before_any_event(client):
    assert client.get("/admin/sync/status").json()["status"] == "INCOMPLETE"


def test_lanes_start_and_stop_with_the_service(services):
    created = []

    def factory():
        fake = FakeKafkaConsumer([], Event())
        created.append(fake)
        return fake

    services.start_lanes(consumer_factory=factory)
    assert [t.name for t in services.threads] == ["replica-item", "replica-account"]

    services.shutdown()

    assert services.threads == []
    assert len(created) == 2
    assert all(fake.closed for fake in created)
    assert {tuple(fake.subscribed) for fake in created} == {("product",), ("user",)}
