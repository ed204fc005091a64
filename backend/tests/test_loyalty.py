import asyncio
import json
from decimal import Decimal
from typing import Any, Dict
from uuid import UUID

import pytest
from fastapi.testclient import TestClient

from ordercore.core.config import settings
from ordercore.models.loyalty import LoyaltyTier
from ordercore.models.order import Order
from ordercore.services import loyalty


@pytest.fixture(autouse=True)
def _stripe_webhook_secret(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "stripe_webhook_secret", "whsec_test")
    monkeypatch.setattr(settings, "stripe_webhook_secret_sandbox", None)
    monkeypatch.setattr(
        "ordercore.services.payments.stripe.Webhook.construct_event",
        lambda payload, sig_header, secret: json.loads(payload),
    )


def _place_order(client: TestClient, add_product, cart_payload, **kwargs: Any) -> dict:
    product = add_product(inventory=5)
    res = client.post("/api/v1/orders", json=cart_payload(product, quantity=2, **kwargs))
    assert res.status_code == 201, res.text
    return res.json()["order"]


def _paid(client: TestClient, event_id: str, intent_id: str):
    event = {"id": event_id, "type": "payment_intent.succeeded", "data": {"object": {"id": intent_id}}}
    return client.post(
        "/api/v1/payments/stripe/webhook", content=json.dumps(event), headers={"Stripe-Signature": "t=1,v1=ok"}
    )


def _seed(session_factory) -> int:
    async def _run() -> int:
        async with session_factory() as session:
            return await loyalty.seed_default_tiers(session)

    return asyncio.run(_run())


def test_calculate_tier_thresholds() -> None:
    tiers = [LoyaltyTier(**values) for values in loyalty.DEFAULT_TIERS]

    assert loyalty.calculate_tier(Decimal("0.00"), tiers).name == "Bronze"
    assert loyalty.calculate_tier(Decimal("499.99"), tiers).name == "Bronze"
    assert loyalty.calculate_tier(Decimal("500.00"), tiers).name == "Silver"
    assert loyalty.calculate_tier(Decimal("4999.99"), tiers).name == "Gold"
    assert loyalty.calculate_tier(Decimal("12000.00"), tiers).name == "Platinum"
    assert loyalty.calculate_tier(Decimal("10.00"), []) is None

    # Below every threshold still lands on the lowest tier.
    assert loyalty.calculate_tier(Decimal("1.00"), tiers[1:]).name == "Silver"


def test_seeding_tiers_is_repeatable(order_app: Dict[str, object]) -> None:
    session_factory = order_app["session_factory"]

    assert _seed(session_factory) == 4
    assert _seed(session_factory) == 0


def test_confirmed_payments_build_lifetime_spend_and_tier(
    order_app: Dict[str, object], add_product, cart_payload, admin_headers
) -> None:
    client: TestClient = order_app["client"]  # type: ignore[assignment]
    _seed(order_app["session_factory"])

    _place_order(client, add_product, cart_payload)
    assert _paid(client, "evt_paid_1", "pi_test_123").json()["status"] == "applied"

    res = client.get("/api/v1/admin/loyalty/Buyer@Example.com", headers=admin_headers)
    assert res.status_code == 200, res.text
    record = res.json()
    assert record["tier_name"] == "Bronze"
    assert Decimal(record["lifetime_spend"]) == Decimal("120.00")
    assert record["total_orders"] == 1
    assert [(h["previous_tier_name"], h["new_tier_name"], h["reason"]) for h in record["history"]] == [
        (None, "Bronze", "new_customer")
    ]

    # Another success notice for the same payment is not spend.
    assert _paid(client, "evt_paid_1b", "pi_test_123").json()["status"] == "ignored"

    _place_order(client, add_product, cart_payload, price="200.00", reference="pi_second_1")
    assert _paid(client, "evt_paid_2", "pi_second_1").json()["status"] == "applied"

    record = client.get("/api/v1/admin/loyalty/buyer@example.com", headers=admin_headers).json()
    assert record["tier_name"] == "Silver"
    assert Decimal(record["lifetime_spend"]) == Decimal("540.00")
    assert Decimal(record["year_to_date_spend"]) == Decimal("540.00")
    assert record["total_orders"] == 2
    assert record["last_tier_change"] is not None
    upgrade = record["history"][-1]
    assert (upgrade["previous_tier_name"], upgrade["new_tier_name"], upgrade["reason"]) == ("Bronze", "Silver", "upgrade")
    assert Decimal(upgrade["lifetime_spend_at_change"]) == Decimal("540.00")


def test_order_spend_is_counted_once(order_app: Dict[str, object], add_product, cart_payload) -> None:
    client: TestClient = order_app["client"]  # type: ignore[assignment]
    session_factory = order_app["session_factory"]
    order = _place_order(client, add_product, cart_payload)

    async def scenario():
        async with session_factory() as session:
            stored = await session.get(Order, UUID(order["id"]))
            first = await loyalty.record_order_spend(session, stored)
            second = await loyalty.record_order_spend(session, stored)
            await session.commit()
            customer = await loyalty.get_customer(session, "buyer@example.com")
            return first, second, customer, stored.loyalty_recorded_at

    first, second, customer, recorded_at = asyncio.run(scenario())
    assert first is not None
    assert second is None
    assert recorded_at is not None
    assert customer.lifetime_spend == Decimal("120.00")
    assert customer.total_orders == 1
    # No tiers configured: spend is still tracked.
    assert customer.tier_name is None
    assert customer.history == []


def test_loyalty_lookup_requires_admin_and_known_customer(order_app: Dict[str, object], admin_headers) -> None:
    client: TestClient = order_app["client"]  # type: ignore[assignment]

    res = client.get("/api/v1/admin/loyalty/nobody@example.com", headers=admin_headers)
    assert res.status_code == 404
    assert res.json()["code"] == "not_found"
    assert client.get("/api/v1/admin/loyalty/nobody@example.com").status_code == 401
