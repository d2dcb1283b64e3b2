"""HTTP surface exercised through FastAPI's TestClient on the in-memory ledger."""

from __future__ import annotations

import time
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import orjson
import pytest
from fastapi.testclient import TestClient

from bidboard.main import app
from bidboard.transport.signatures import sign_payload


def _auction_payload() -> dict:
    now = datetime.now(timezone.utc)
    return {
        "holiday_name": "Christmas 2026",
        "start_time": (now - timedelta(hours=1)).isoformat(),
        "end_time": (now + timedelta(days=1)).isoformat(),
        "items": [
            {"title": "Altar flowers", "service": "Christmas Eve", "honor": "In memory of",
             "starting_bid": "10.00", "minimum_increment": "5", "display_order": 1},
            {"title": "Candles", "service": "Christmas Day", "honor": "In honor of",
             "starting_bid": 25, "minimum_increment": 1, "display_order": 2},
        ],
    }


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        config = test_client.app.state.server_config
        test_client.app.state.server_config = replace(
            config, webhooks=replace(config.webhooks, signing_secret=None)
        )
        yield test_client


@pytest.fixture
def items(client):
    response = client.post("/admin/auctions", json=_auction_payload())
    assert response.status_code == 201
    return response.json()["items"]


def test_no_active_auction(client):
    response = client.get("/auctions/active")
    assert response.status_code == 200
    assert response.json() == {"auction": None, "accepting_bids": False, "items": []}


def test_active_auction_lists_items_in_cents(client, items):
    body = client.get("/auctions/active").json()

    assert body["accepting_bids"] is True
    assert body["auction"]["services"] == ["Christmas Eve", "Christmas Day"]
    flowers = body["items"][0]
    assert flowers["starting_bid_cents"] == 1000
    assert flowers["minimum_next_bid_cents"] == 1500
    assert flowers["has_bidder"] is False


def test_bid_flow(client, items):
    item_id = items[0]["item_id"]

    accepted = client.post(
        "/bids",
        json={"item_id": item_id, "full_name": "Ada", "email": "ada@example.org", "amount": "15.00"},
    )
    too_low = client.post(
        "/bids",
        json={"item_id": item_id, "full_name": "Grace", "email": "grace@example.org", "amount": 15},
    )
    outbid = client.post(
        "/bids",
        json={"item_id": item_id, "full_name": "Grace", "email": "grace@example.org", "amount": 20},
    )

    assert accepted.status_code == 200
    assert accepted.json() == {"success": True, "item_id": item_id, "current_bid_cents": 1500}
    assert too_low.status_code == 409
    assert too_low.json()["detail"] == "bid must be at least $20.00"
    assert outbid.status_code == 200

    history = client.get(f"/items/{item_id}/history").json()
    assert history == [
        {"bidder_name": "Ada", "bid_amount_cents": 1500, "created_at": history[0]["created_at"]}
    ]


@pytest.mark.parametrize(
    "payload",
    [
        {"full_name": "Ada", "email": "ada@example.org", "amount": 20},
        {"item_id": "x", "full_name": "Ada", "email": "ada@example.org", "amount": "20.001"},
        {"item_id": "x", "full_name": "Ada", "email": "nope", "amount": 20},
    ],
)
def test_bid_validation_errors(client, items, payload):
    if "item_id" in payload:
        payload["item_id"] = items[0]["item_id"]
    response = client.post("/bids", json=payload)
    assert response.status_code == 422


def test_unknown_item(client, items):
    response = client.post(
        "/bids",
        json={"item_id": "missing", "full_name": "Ada", "email": "ada@example.org", "amount": 50},
    )
    assert response.status_code == 404
    assert client.get("/items/missing/history").status_code == 404


def test_end_auction_and_pay(client, items):
    item_id = items[1]["item_id"]
    client.post("/bids", json={"item_id": item_id, "full_name": "Ada", "email": "ada@example.org", "amount": 120})
    auction_id = items[1]["auction_id"]

    ended = client.post(f"/admin/auctions/{auction_id}/end")
    again = client.post(f"/admin/auctions/{auction_id}/end")
    assert ended.json()["ended"] is True
    assert again.json()["ended"] is False

    unpaid = client.get("/bidders/unpaid-items", params={"email": "ADA@example.org"}).json()
    assert [entry["item_id"] for entry in unpaid] == [item_id]

    forbidden = client.post("/payments", json={"item_ids": [item_id], "email": "grace@example.org"})
    assert forbidden.status_code == 403

    created = client.post("/payments", json={"item_ids": [item_id], "email": "ada@example.org", "cover_fee": True})
    assert created.status_code == 201
    payment = created.json()
    assert payment["amount_due_cents"] == 12378
    assert payment["breakdown"]["fee"] == 378

    event = orjson.dumps(
        {"id": "evt_1", "type": "payment_intent.succeeded", "data": {"object": {"id": payment["payment_reference"]}}}
    )
    first = client.post("/payments/webhook", content=event)
    second = client.post("/payments/webhook", content=event)
    assert first.json()["result"] == "applied"
    assert second.json()["result"] == "duplicate"
    assert client.get("/bidders/unpaid-items", params={"email": "ada@example.org"}).json() == []

    records = client.get("/admin/payments", params={"status": "succeeded"}).json()
    assert [record["payment_reference"] for record in records] == [payment["payment_reference"]]

    client.portal.call(client.app.state.dispatcher.drain)
    outbox = client.app.state.mailer.outbox
    assert [message.to for message in outbox] == ["ada@example.org"]


def test_webhook_ignores_unknown_events_and_rejects_unknown_payments(client):
    ignored = client.post("/payments/webhook", content=b'{"type": "charge.refunded", "data": {"object": {}}}')
    assert ignored.json() == {"received": True, "handled": False}

    missing = client.post(
        "/payments/webhook",
        content=b'{"type": "payment_intent.succeeded", "data": {"object": {"id": "pi_nope"}}}',
    )
    assert missing.status_code == 404
    assert client.post("/payments/webhook", content=b"garbage").status_code == 422


def test_webhook_signature_required_when_secret_configured(client):
    config = client.app.state.server_config
    client.app.state.server_config = replace(
        config, webhooks=replace(config.webhooks, signing_secret="whsec_test")
    )
    body = b'{"type": "charge.refunded", "data": {"object": {}}}'

    unsigned = client.post("/payments/webhook", content=body)
    signed = client.post(
        "/payments/webhook",
        content=body,
        headers={"Stripe-Signature": sign_payload(body, "whsec_test", int(time.time()))},
    )

    assert unsigned.status_code == 400
    assert signed.status_code == 200


def test_admin_overrides(client, items):
    item_id = items[0]["item_id"]

    restored = client.post(
        f"/admin/items/{item_id}/restore-bid",
        json={"amount": "40.00", "full_name": "Grace", "email": "grace@example.org"},
    )
    assert restored.status_code == 200
    assert restored.json()["current_bid_cents"] == 4000
    assert restored.json()["has_bidder"] is True

    paid = client.post(f"/admin/items/{item_id}/mark-paid", json={"is_paid": True})
    assert paid.json()["is_paid"] is True

    reset = client.post(f"/admin/items/{item_id}/reset-bid")
    assert reset.json()["current_bid_cents"] == 1000
    assert reset.json()["has_bidder"] is False

    assert client.post(f"/admin/items/{item_id}/mark-paid", json={}).status_code == 422


def test_start_auction_rejects_bad_window(client):
    payload = _auction_payload()
    payload["end_time"], payload["start_time"] = payload["start_time"], payload["end_time"]
    response = client.post("/admin/auctions", json=payload)
    assert response.status_code == 422
    assert client.get("/admin/auctions").json() == []


def test_expire_endpoint_leaves_running_auction(client, items):
    response = client.post("/admin/auctions/expire")
    assert response.json() == {"ended": False}


def test_admin_reporting(client, items):
    client.post("/bids", json={"item_id": items[0]["item_id"], "full_name": "Ada", "email": "ada@example.org", "amount": 15})

    health = client.get("/admin/health").json()
    assert health["status"] == "healthy"
    assert health["ledger_backend"] == "in_memory"

    stats = client.get("/admin/stats").json()
    assert stats["total_items"] == 2
    assert stats["items_with_bids"] == 1
    assert stats["total_committed_cents"] == 1500
    assert stats["unique_bidders"] == 1

    config = client.get("/admin/config").json()
    assert config["fee_rate"] == "0.029"
    assert config["webhook_signatures"] is False
    assert client.get("/admin/payments", params={"status": "bogus"}).status_code == 422


def test_start_auction_rejects_sub_dollar_increment(client):
    payload = _auction_payload()
    payload["items"][0]["minimum_increment"] = "0.5"
    del payload["items"][1]["minimum_increment"]

    response = client.post("/admin/auctions", json=payload)

    assert response.status_code == 422
    assert "at least $1.00" in response.json()["detail"]
    assert client.get("/admin/auctions").json() == []


def test_missing_increment_defaults_to_one_dollar(client):
    payload = _auction_payload()
    del payload["items"][1]["minimum_increment"]

    created = client.post("/admin/auctions", json=payload).json()["items"]

    assert created[1]["minimum_increment_cents"] == 100
    assert created[1]["minimum_next_bid_cents"] == 2600


def test_item_add_update_delete(client, items):
    auction_id = items[0]["auction_id"]

    added = client.post(
        f"/admin/auctions/{auction_id}/items",
        json={"title": "Wreath", "service": "Christmas Eve", "honor": "In memory of", "starting_bid": "30"},
    )
    assert added.status_code == 201
    wreath = added.json()
    assert wreath["display_order"] == 3
    assert wreath["current_bid_cents"] == 3000
    assert wreath["minimum_increment_cents"] == 100

    updated = client.patch(
        f"/admin/items/{wreath['item_id']}",
        json={"starting_bid": "45", "minimum_increment": "2.50", "description": "Fresh pine"},
    )
    assert updated.status_code == 200
    assert updated.json()["current_bid_cents"] == 4500
    assert updated.json()["minimum_increment_cents"] == 250

    assert client.patch(f"/admin/items/{wreath['item_id']}", json={}).status_code == 422
    assert client.patch(f"/admin/items/{wreath['item_id']}", json={"minimum_increment": "0.99"}).status_code == 422

    assert client.delete(f"/admin/items/{wreath['item_id']}").status_code == 204
    assert client.delete(f"/admin/items/{wreath['item_id']}").status_code == 404
    listed = client.get("/auctions/active").json()["items"]
    assert [item["item_id"] for item in listed] == [item["item_id"] for item in items]


def test_item_edits_respect_bids(client, items):
    item_id = items[0]["item_id"]
    client.post("/bids", json={"item_id": item_id, "full_name": "Ada", "email": "ada@example.org", "amount": 15})

    raised = client.patch(f"/admin/items/{item_id}", json={"starting_bid": "20"})
    lowered = client.patch(f"/admin/items/{item_id}", json={"starting_bid": "5"})
    deleted = client.delete(f"/admin/items/{item_id}")

    assert raised.status_code == 409
    assert lowered.status_code == 200
    assert lowered.json()["current_bid_cents"] == 1500
    assert lowered.json()["starting_bid_cents"] == 500
    assert deleted.status_code == 409
    assert client.post("/admin/auctions/missing/items", json={
        "title": "Wreath", "service": "Christmas Eve", "honor": "In memory of", "starting_bid": 30,
    }).status_code == 404


def test_stats_for_unknown_auction_is_not_found(client, items):
    response = client.get("/admin/stats", params={"auction_id": "nope"})
    assert response.status_code == 404
