from __future__ import annotations

import hashlib
import hmac
import pathlib
import sys

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from conftest import ORDER_ID, PAYMENT_ID
from edushop.config import settings
from edushop.domain.errors import PersistenceError, ProviderFetchError
from edushop.domain.statuses import OrderStatus, PaymentStatus


def _signature(secret: str, data_id: str, request_id: str, ts: str = "1700000000") -> str:
    manifest = f"id:{data_id};request-id:{request_id};ts:{ts};"
    digest = hmac.new(secret.encode(), manifest.encode(), hashlib.sha256).hexdigest()
    return f"ts={ts},v1={digest}"


def test_webhook_approved_payment(client, store, provider) -> None:
    provider.set_payment(PAYMENT_ID, "approved")

    response = client.post("/api/mercadopago/webhook", json={"type": "payment", "data": {"id": PAYMENT_ID}})

    assert response.status_code == 200
    assert response.json() == {"ok": True}
    assert store.get_order(ORDER_ID).status is OrderStatus.PAID
    assert store.webhooks[-1]["related_order_id"] == ORDER_ID
    assert store.webhooks[-1]["verification_status"] == "UNVERIFIED"


def test_webhook_ignores_status_in_body(client, store, provider) -> None:
    provider.set_payment(PAYMENT_ID, "pending")

    response = client.post(
        "/api/mercadopago/webhook",
        json={"type": "payment", "data": {"id": PAYMENT_ID, "status": "approved"}},
    )

    assert response.status_code == 200
    assert store.get_order(ORDER_ID).status is OrderStatus.PAYMENT_PENDING
    assert store.get_payment(ORDER_ID, "mercadopago").status is PaymentStatus.PENDING


def test_webhook_query_string_form(client, store, provider) -> None:
    provider.set_payment(PAYMENT_ID, "approved")

    response = client.post(f"/api/mercadopago/webhook?data.id={PAYMENT_ID}&type=payment")

    assert response.status_code == 200
    assert provider.calls == [PAYMENT_ID]


def test_webhook_acknowledges_other_topics(client, provider) -> None:
    response = client.post("/api/mercadopago/webhook", json={"type": "merchant_order", "data": {"id": "42"}})
    assert response.status_code == 200
    empty = client.post("/api/mercadopago/webhook", json={"action": "test.created"})
    assert empty.status_code == 200
    assert provider.calls == []


def test_webhook_secret(client, provider, monkeypatch) -> None:
    monkeypatch.setattr(settings, "mp_webhook_secret", "hook-secret")
    provider.set_payment(PAYMENT_ID, "approved")
    body = {"type": "payment", "data": {"id": PAYMENT_ID}}

    rejected = client.post("/api/mercadopago/webhook?secret=wrong", json=body)
    accepted = client.post("/api/mercadopago/webhook?secret=hook-secret", json=body)

    assert rejected.status_code == 401
    assert rejected.json() == {"error": "INVALID_WEBHOOK_SECRET"}
    assert accepted.status_code == 200


def test_webhook_signature(client, store, provider, monkeypatch) -> None:
    monkeypatch.setattr(settings, "mp_signature_secret", "sig-secret")
    provider.set_payment(PAYMENT_ID, "approved")
    body = {"type": "payment", "data": {"id": PAYMENT_ID}}

    forged = client.post(
        "/api/mercadopago/webhook",
        json=body,
        headers={"x-signature": _signature("other", PAYMENT_ID, "req-1"), "x-request-id": "req-1"},
    )
    assert forged.status_code == 401
    assert forged.json() == {"error": "INVALID_SIGNATURE"}
    assert store.webhooks[-1]["verification_status"] == "FAILED"
    assert provider.calls == []

    signed = client.post(
        "/api/mercadopago/webhook",
        json=body,
        headers={"x-signature": _signature("sig-secret", PAYMENT_ID, "req-2"), "x-request-id": "req-2"},
    )
    assert signed.status_code == 200
    assert store.webhooks[-1]["verification_status"] == "SUCCESS"


def test_webhook_unknown_order_is_acknowledged(client, provider) -> None:
    provider.set_payment(PAYMENT_ID, "approved", order_id="ord-unknown")
    response = client.post("/api/mercadopago/webhook", json={"type": "payment", "data": {"id": PAYMENT_ID}})
    assert response.status_code == 200


def test_webhook_provider_failure_asks_for_retry(client, provider) -> None:
    provider.error = ProviderFetchError("timeout")
    response = client.post("/api/mercadopago/webhook", json={"type": "payment", "data": {"id": PAYMENT_ID}})
    assert response.status_code == 500
    assert response.json() == {"error": "PROVIDER_FETCH_FAILED"}


def test_webhook_persistence_failure(client, provider) -> None:
    provider.error = PersistenceError("db down")
    response = client.post("/api/mercadopago/webhook", json={"id": PAYMENT_ID})
    assert response.status_code == 500


def test_sync_returns_reconciled_state(client, store, provider) -> None:
    provider.set_payment(PAYMENT_ID, "approved")

    response = client.get("/api/mercadopago/sync", params={"payment_id": PAYMENT_ID})

    assert response.status_code == 200
    assert response.json() == {
        "ok": True,
        "order_id": ORDER_ID,
        "payment_status": "APPROVED",
        "order_status": "PAID",
        "stock_applied": True,
    }
    again = client.get("/api/mercadopago/sync", params={"payment_id": PAYMENT_ID})
    assert again.json()["stock_applied"] is False
    assert store.get_stock(1).on_hand == 8


def test_sync_errors(client, provider, monkeypatch) -> None:
    missing = client.get("/api/mercadopago/sync")
    assert missing.status_code == 400
    assert missing.json() == {"error": "MISSING_PAYMENT_ID"}

    provider.set_payment(PAYMENT_ID, "approved", order_id="ord-unknown")
    unknown = client.get("/api/mercadopago/sync", params={"payment_id": PAYMENT_ID})
    assert unknown.status_code == 404
    assert unknown.json() == {"error": "ORDER_NOT_FOUND"}

    provider.error = ProviderFetchError("bad gateway")
    failed = client.get("/api/mercadopago/sync", params={"payment_id": PAYMENT_ID})
    assert failed.status_code == 502

    monkeypatch.setattr(settings, "sync_secret", "sync-secret")
    unauthorized = client.get("/api/mercadopago/sync", params={"payment_id": PAYMENT_ID})
    assert unauthorized.status_code == 401
    assert unauthorized.json() == {"error": "INVALID_SECRET"}


def test_webhook_payment_without_order_reference_is_acknowledged(client, store, provider) -> None:
    provider.set_payment(PAYMENT_ID, "approved", order_id=None)

    response = client.post("/api/mercadopago/webhook", json={"type": "payment", "data": {"id": PAYMENT_ID}})

    assert response.status_code == 200
    assert response.json() == {"ok": True}
    assert store.webhooks[-1]["related_order_id"] is None
    assert store.get_order(ORDER_ID).status is OrderStatus.PAYMENT_PENDING


def test_sync_payment_without_order_reference_is_rejected(client, provider) -> None:
    provider.set_payment(PAYMENT_ID, "approved", order_id=None)
    response = client.get("/api/mercadopago/sync", params={"payment_id": PAYMENT_ID})
    assert response.status_code == 400
    assert response.json() == {"error": "MISSING_EXTERNAL_REFERENCE"}
