import asyncio
import json
from decimal import Decimal
from typing import Any, Dict

import pytest
from fastapi.testclient import TestClient
from jose import jwt

from ordercore.core.config import settings
from ordercore.core.errors import UpstreamFailure
from ordercore.services import store_credit


@pytest.fixture(autouse=True)
def _stripe_webhook_secret(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "stripe_webhook_secret", "whsec_test")
    monkeypatch.setattr(settings, "stripe_webhook_secret_sandbox", None)
    monkeypatch.setattr(
        "ordercore.services.payments.stripe.Webhook.construct_event",
        lambda payload, sig_header, secret: json.loads(payload),
    )


def _place_order(client: TestClient, add_product, cart_payload, **kwargs: Any) -> tuple[dict, Any]:
    product = add_product(inventory=5)
    res = client.post("/api/v1/orders", json=cart_payload(product, quantity=2, **kwargs))
    assert res.status_code == 201, res.text
    return res.json()["order"], product


def _request_refund(client: TestClient, order: dict, **overrides: Any):
    body = {
        "orderId": order["id"],
        "email": "Buyer@Example.com",
        "reason": "damaged",
        "reasonDetails": "Stone arrived chipped",
        **overrides,
    }
    return client.post("/api/v1/refund-requests", json=body)


def _decide(client: TestClient, request_id: str, headers: Dict[str, str], **body: Any):
    return client.put(f"/api/v1/admin/refund-requests/{request_id}", json=body, headers=headers)


def _stripe(client: TestClient, event_id: str, event_type: str, obj: dict):
    event = {"id": event_id, "type": event_type, "data": {"object": obj}}
    return client.post(
        "/api/v1/payments/stripe/webhook", content=json.dumps(event), headers={"Stripe-Signature": "t=1,v1=ok"}
    )


def test_store_credit_partial_refund(
    order_app: Dict[str, object], add_product, product_inventory, cart_payload, admin_headers
) -> None:
    client: TestClient = order_app["client"]  # type: ignore[assignment]
    order, product = _place_order(client, add_product, cart_payload)

    res = _request_refund(client, order, requestedAmount="40.00", refundMethod="store_credit")
    assert res.status_code == 201, res.text
    request = res.json()
    assert request["status"] == "pending"
    assert Decimal(request["requested_amount"]) == Decimal("40.00")

    res = _request_refund(client, order)
    assert res.status_code == 409
    assert "already pending" in res.json()["detail"]

    res = _decide(client, request["id"], admin_headers, status="approved", adminNotes="Photo checks out")
    assert res.status_code == 200, res.text
    assert res.json()["status"] == "approved"
    assert res.json()["reviewed_by"] == "admin-1"

    res = _decide(client, request["id"], admin_headers, status="refunded")
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["status"] == "refunded"
    assert body["refund_method"] == "store_credit"
    assert body["order"]["status"] == "partially_refunded"
    assert Decimal(body["order"]["refunded_amount"]) == Decimal("40.00")
    assert body["payment"]["status"] == "pending"
    assert Decimal(body["payment"]["refund_amount"]) == Decimal("0.00")
    assert product_inventory(product.id) == 3

    res = client.get("/api/v1/admin/store-credit/buyer@example.com", headers=admin_headers)
    assert res.status_code == 200, res.text
    ledger = res.json()
    assert Decimal(ledger["account"]["balance"]) == Decimal("40.00")
    assert ledger["audit"]["consistent"] is True
    assert [(txn["type"], Decimal(txn["amount"])) for txn in ledger["transactions"]] == [("earn", Decimal("40.00"))]
    assert ledger["transactions"][0]["source"] == "order_refund"

    res = client.get("/api/v1/refund-requests", params={"email": "buyer@example.com"})
    assert [item["status"] for item in res.json()] == ["refunded"]


def test_refund_request_lifecycle_rules(order_app: Dict[str, object], add_product, cart_payload, admin_headers) -> None:
    client: TestClient = order_app["client"]  # type: ignore[assignment]
    order, _ = _place_order(client, add_product, cart_payload)

    res = _request_refund(client, order, email="someone@else.com")
    assert res.status_code == 404

    res = _request_refund(client, order, requestedAmount="500.00")
    assert res.status_code == 400

    request = _request_refund(client, order).json()
    assert Decimal(request["requested_amount"]) == Decimal("120.00")

    res = _decide(client, request["id"], admin_headers, status="refunded")
    assert res.status_code == 409
    assert res.json()["code"] == "invalid_transition"
    assert res.json()["retryable"] is False

    res = _decide(client, request["id"], admin_headers, status="denied", denialReason="Outside return window")
    assert res.status_code == 200
    assert res.json()["denial_reason"] == "Outside return window"

    res = _decide(client, request["id"], admin_headers, status="approved")
    assert res.status_code == 409


def test_admin_endpoints_require_admin_token(order_app: Dict[str, object]) -> None:
    client: TestClient = order_app["client"]  # type: ignore[assignment]

    res = client.get("/api/v1/admin/refund-requests")
    assert res.status_code == 401

    token = jwt.encode(
        {"sub": "customer-1", "role": "customer", "type": "access"}, settings.secret_key, algorithm=settings.jwt_algorithm
    )
    res = client.get("/api/v1/admin/refund-requests", headers={"Authorization": f"Bearer {token}"})
    assert res.status_code == 403

    res = client.get("/api/v1/admin/refund-requests", headers={"Authorization": "Bearer not-a-jwt"})
    assert res.status_code == 401


def test_full_refund_to_original_payment(
    order_app: Dict[str, object],
    add_product,
    product_inventory,
    cart_payload,
    admin_headers,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    client: TestClient = order_app["client"]  # type: ignore[assignment]
    order, product = _place_order(client, add_product, cart_payload)
    calls: list[dict] = []

    async def fake_refund(intent_id: str, *, amount: Decimal, idempotency_key: str) -> str:
        calls.append({"intent_id": intent_id, "amount": amount, "idempotency_key": idempotency_key})
        return "re_full_1"

    monkeypatch.setattr("ordercore.services.settlement.payments.refund_payment_intent", fake_refund)

    request = _request_refund(client, order, refundMethod="original_payment").json()
    assert _decide(client, request["id"], admin_headers, status="approved").status_code == 200
    res = _decide(client, request["id"], admin_headers, status="refunded")
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["provider_refund_id"] == "re_full_1"
    assert body["order"]["status"] == "refunded"
    assert body["order"]["payment_status"] == "refunded"
    assert calls == [{"intent_id": "pi_test_123", "amount": Decimal("120.00"), "idempotency_key": request["id"]}]
    assert product_inventory(product.id) == 5

    # Stripe's own notification for the same refund must not double count.
    res = _stripe(
        client,
        "evt_own_refund",
        "charge.refunded",
        {
            "id": "ch_1",
            "payment_intent": "pi_test_123",
            "amount_refunded": 12000,
            "refunded": True,
            "refunds": {"data": [{"id": "re_full_1", "amount": 12000}]},
        },
    )
    assert res.json()["status"] == "ignored"
    assert product_inventory(product.id) == 5

    res = _request_refund(client, order)
    assert res.status_code == 409
    assert res.json()["detail"] == "This order has already been refunded"


def test_upstream_failure_leaves_state_unchanged(
    order_app: Dict[str, object], add_product, cart_payload, admin_headers, monkeypatch: pytest.MonkeyPatch
) -> None:
    client: TestClient = order_app["client"]  # type: ignore[assignment]
    order, _ = _place_order(client, add_product, cart_payload)

    async def failing_refund(intent_id: str, *, amount: Decimal, idempotency_key: str) -> str:
        raise UpstreamFailure("Stripe refund failed")

    monkeypatch.setattr("ordercore.services.settlement.payments.refund_payment_intent", failing_refund)

    request = _request_refund(client, order, refundMethod="original_payment").json()
    _decide(client, request["id"], admin_headers, status="approved")
    res = _decide(client, request["id"], admin_headers, status="refunded")
    assert res.status_code == 502
    assert res.json()["code"] == "upstream_failure"
    assert res.json()["retryable"] is True

    res = client.get(f"/api/v1/admin/refund-requests/{request['id']}", headers=admin_headers)
    assert res.json()["status"] == "approved"
    assert res.json()["order"]["status"] == "confirmed"
    assert Decimal(res.json()["order"]["refunded_amount"]) == Decimal("0.00")


def test_disputed_order_rejects_admin_refund(
    order_app: Dict[str, object], add_product, cart_payload, admin_headers
) -> None:
    client: TestClient = order_app["client"]  # type: ignore[assignment]
    order, _ = _place_order(client, add_product, cart_payload)

    request = _request_refund(client, order, refundMethod="store_credit").json()
    _decide(client, request["id"], admin_headers, status="approved")
    res = _stripe(
        client,
        "evt_dispute",
        "charge.dispute.created",
        {"id": "dp_9", "charge": "ch_9", "payment_intent": "pi_test_123", "status": "needs_response"},
    )
    assert res.json()["status"] == "applied"

    res = _decide(client, request["id"], admin_headers, status="refunded")
    assert res.status_code == 409
    assert "dispute" in res.json()["detail"]

    detail = client.get(f"/api/v1/admin/refund-requests/{request['id']}", headers=admin_headers).json()
    assert detail["status"] == "approved"
    assert detail["order"]["status"] == "disputed"


def test_crypto_orders_cannot_be_reversed(order_app: Dict[str, object], add_product, cart_payload, admin_headers) -> None:
    client: TestClient = order_app["client"]  # type: ignore[assignment]
    order, _ = _place_order(client, add_product, cart_payload, method="crypto", reference="0xabc123")

    request = _request_refund(client, order, refundMethod="original_payment").json()
    _decide(client, request["id"], admin_headers, status="approved")
    res = _decide(client, request["id"], admin_headers, status="refunded")
    assert res.status_code == 400
    assert "store credit" in res.json()["detail"]

    res = _decide(client, request["id"], admin_headers, status="refunded", refundMethod="store_credit")
    assert res.status_code == 200, res.text
    assert res.json()["order"]["status"] == "refunded"


def test_store_credit_ledger_spend_and_audit(order_app: Dict[str, object]) -> None:
    session_factory = order_app["session_factory"]

    async def scenario():
        async with session_factory() as session:
            await store_credit.earn(session, "Collector@Example.com", Decimal("25.00"))
            await store_credit.spend(session, "collector@example.com", Decimal("10.00"))
            await session.commit()
            with pytest.raises(Exception) as excinfo:
                await store_credit.spend(session, "collector@example.com", Decimal("50.00"))
            await session.rollback()
            account = await store_credit.get_account(session, "collector@example.com")
            audit = await store_credit.audit_account(session, account)
            return excinfo.value, account, audit

    error, account, audit = asyncio.run(scenario())
    assert getattr(error, "code", None) == "conflict"
    assert account.balance == Decimal("15.00")
    assert account.total_earned == Decimal("25.00")
    assert account.total_used == Decimal("10.00")
    assert audit.consistent
    assert audit.ledger_balance == Decimal("15.00")


def test_store_credit_lookup_for_unknown_customer(order_app: Dict[str, object], admin_headers) -> None:
    client: TestClient = order_app["client"]  # type: ignore[assignment]

    res = client.get("/api/v1/admin/store-credit/nobody@example.com", headers=admin_headers)
    assert res.status_code == 404
    assert client.get("/api/v1/admin/store-credit/nobody@example.com").status_code == 401


def test_admin_store_credit_adjustments(order_app: Dict[str, object], admin_headers) -> None:
    client: TestClient = order_app["client"]  # type: ignore[assignment]
    url = "/api/v1/admin/store-credit/Collector@Example.com/adjustments"

    assert client.post(url, json={"type": "earn", "amount": "25.00"}).status_code == 401

    res = client.post(url, json={"type": "earn", "amount": "25.00"}, headers=admin_headers)
    assert res.status_code == 200, res.text
    assert Decimal(res.json()["account"]["balance"]) == Decimal("25.00")

    res = client.post(
        url, json={"type": "spend", "amount": "10.00", "description": "Goodwill correction"}, headers=admin_headers
    )
    assert res.status_code == 200, res.text
    ledger = res.json()
    assert Decimal(ledger["account"]["balance"]) == Decimal("15.00")
    assert ledger["audit"]["consistent"] is True
    assert [(txn["type"], txn["source"]) for txn in ledger["transactions"]] == [
        ("earn", "admin_adjustment"),
        ("spend", "admin_adjustment"),
    ]
    assert ledger["transactions"][0]["description"] == "Manual adjustment by owner@example.com"
    assert ledger["transactions"][1]["description"] == "Goodwill correction"

    res = client.post(url, json={"type": "spend", "amount": "100.00"}, headers=admin_headers)
    assert res.status_code == 409
    assert res.json()["code"] == "conflict"

    res = client.post(url, json={"type": "earn", "amount": "0"}, headers=admin_headers)
    assert res.status_code == 422

    res = client.get("/api/v1/admin/store-credit/collector@example.com", headers=admin_headers)
    assert Decimal(res.json()["account"]["balance"]) == Decimal("15.00")
