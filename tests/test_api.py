from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from token_ledger.app import build_container, create_app
from token_ledger.config import Settings
from token_ledger.db.memory import InMemoryDBManager
from token_ledger.db.mongo import MongoDBManager


@pytest.fixture
def client(tmp_path):
    settings = Settings(audit_log_path=tmp_path / "audit.jsonl")
    container = build_container(settings, db=InMemoryDBManager())
    app = create_app(settings, container=container)
    with TestClient(app) as test_client:
        yield test_client


def _open(client, account_id="ana@example.com", balance=0):
    resp = client.post("/tokens/accounts", json={"account_id": account_id})
    assert resp.status_code == 201
    if balance:
        resp = client.post(
            "/tokens/credit",
            json={"account_id": account_id, "amount": balance, "category": "purchase"},
        )
        assert resp.status_code == 200


def test_open_account_twice_conflicts(client):
    _open(client)

    resp = client.post("/tokens/accounts", json={"account_id": "ANA@example.com"})

    assert resp.status_code == 409


def test_credit_charge_and_balance(client):
    _open(client, balance=1000)

    resp = client.post("/tokens/charge", json={"account_id": "ana@example.com", "amount": 400})
    assert resp.status_code == 200
    assert resp.json()["balance"] == 600

    resp = client.get("/tokens/balance/ana@example.com")
    assert resp.json() == {"account_id": "ana@example.com", "balance": 600}


def test_charge_errors_map_to_status_codes(client):
    _open(client, balance=100)

    resp = client.post("/tokens/charge", json={"account_id": "ana@example.com", "amount": 500})
    assert resp.status_code == 402

    resp = client.post("/tokens/charge", json={"account_id": "ghost@example.com", "amount": 5})
    assert resp.status_code == 404

    resp = client.post("/tokens/charge", json={"account_id": "ana@example.com", "amount": 0})
    assert resp.status_code == 422


def test_history_lists_newest_first(client):
    _open(client, balance=300)
    client.post("/tokens/charge", json={"account_id": "ana@example.com", "amount": 100})

    resp = client.get("/tokens/history/ana@example.com", params={"limit": 10})

    entries = resp.json()["entries"]
    assert [e["direction"] for e in entries] == ["charge", "credit"]
    assert entries[0]["balance_after"] == 200


def test_purchase_top_up_and_webhook_settlement(client):
    _open(client, balance=2000)

    resp = client.post(
        "/tokens/purchase",
        json={"account_id": "ana@example.com", "product_type": "cinema", "price": 6000},
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["action"] == "topup_required"
    assert body["amount_to_top_up"] == 4000

    resp = client.post("/tokens/webhook/payment", json={"reference": body["checkout_reference"]})
    assert resp.status_code == 200
    assert resp.json()["action"] == "completed"

    resp = client.post("/tokens/webhook/payment", json={"reference": body["checkout_reference"]})
    assert resp.status_code == 200
    assert resp.json()["action"] == "already_handled"

    resp = client.get(f"/tokens/intents/{body['intent_id']}")
    assert resp.json()["status"] == "completed"
    assert client.get("/tokens/balance/ana@example.com").json()["balance"] == 0


def test_webhook_for_unknown_reference_still_answers_ok(client):
    resp = client.post("/tokens/webhook/payment", json={"reference": "pref-unknown"})

    assert resp.status_code == 200
    assert resp.json()["action"] == "not_found"


def test_cancel_intent(client):
    _open(client)
    body = client.post(
        "/tokens/purchase",
        json={"account_id": "ana@example.com", "product_type": "event", "price": 50},
    ).json()

    resp = client.post(f"/tokens/intents/{body['intent_id']}/cancel")
    assert resp.status_code == 200
    assert resp.json()["status"] == "cancelled"

    resp = client.post(f"/tokens/intents/{body['intent_id']}/cancel")
    assert resp.status_code == 409

    assert client.get("/tokens/intents/TKN-missing").status_code == 404


def test_build_container_picks_store_from_settings(tmp_path):
    in_memory = build_container(Settings(audit_log_path=tmp_path / "a.jsonl"))
    assert isinstance(in_memory.db, InMemoryDBManager)

    mongo = build_container(
        Settings(mongo_uri="mongodb://localhost:27017", audit_log_path=tmp_path / "b.jsonl")
    )
    assert isinstance(mongo.db, MongoDBManager)


def test_history_limit_must_be_positive(client):
    _open(client, balance=300)
    client.post("/tokens/charge", json={"account_id": "ana@example.com", "amount": 100})

    assert client.get("/tokens/history/ana@example.com", params={"limit": -1}).status_code == 422
    assert client.get("/tokens/history/ana@example.com", params={"limit": 0}).status_code == 422
    assert client.get("/tokens/history/ana@example.com", params={"limit": 501}).status_code == 422

    resp = client.get("/tokens/history/ana@example.com", params={"limit": 1})
    assert [e["direction"] for e in resp.json()["entries"]] == ["charge"]


def test_account_id_in_path_is_normalized(client):
    _open(client, balance=40)

    resp = client.get("/tokens/balance/ANA@Example.com")
    assert resp.json() == {"account_id": "ana@example.com", "balance": 40}

    resp = client.get("/tokens/history/ANA@example.com")
    assert resp.json()["account_id"] == "ana@example.com"
    assert len(resp.json()["entries"]) == 1
