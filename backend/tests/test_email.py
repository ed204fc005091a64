from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest

from ordercore.core.config import settings
from ordercore.services import email as email_service


def _context(**overrides) -> dict:
    context = {
        "order_id": "4a1d6c1e-0000-4000-8000-000000000001",
        "order_number": "GEM-1700000000000-ABC123",
        "customer_name": "Ada Lovelace",
        "customer_email": "buyer@example.com",
        "payment_method": "stripe",
        "is_test": False,
        "currency": "CAD",
        "subtotal": "100.00",
        "shipping_cost": "10.00",
        "tax_amount": "10.00",
        "discount_amount": "0.00",
        "total": "120.00",
        "refunded_amount": "0.00",
        "items": [{"name": "Amethyst <Ring>", "quantity": 2, "line_total": "100.00"}],
        "shortfalls": [],
    }
    context.update(overrides)
    return context


@pytest.mark.parametrize(
    ("template", "expected"),
    [
        ("order_confirmation.txt.j2", ["GEM-1700000000000-ABC123", "Total: 120.00 CAD", "Amethyst <Ring> x 2"]),
        ("admin_new_order.txt.j2", ["New order GEM-1700000000000-ABC123", "Payment: stripe"]),
        ("payment_failed.txt.j2", ["order GEM-1700000000000-ABC123 (120.00 CAD)"]),
    ],
)
def test_order_templates_render(template: str, expected: list[str]) -> None:
    text_body, html_body = email_service.render_template(template, _context())
    for needle in expected:
        assert needle in text_body
    assert "Gemstore" in text_body
    assert "<html" in html_body.lower()


def test_html_bodies_escape_customer_text() -> None:
    _, html_body = email_service.render_template("order_confirmation.txt.j2", _context())
    assert "Amethyst &lt;Ring&gt;" in html_body
    assert "<Ring>" not in html_body


def test_admin_template_lists_stock_shortfalls() -> None:
    text_body, _ = email_service.render_template(
        "admin_new_order.txt.j2", _context(is_test=True, shortfalls=["Amethyst Ring"])
    )
    assert "New TEST order" in text_body
    assert "Stock could not be taken for: Amethyst Ring" in text_body


def test_send_is_disabled_without_smtp(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "smtp_enabled", False)
    assert asyncio.run(email_service.send_order_confirmation(_context())) is False


def test_notifications_route_to_the_right_inbox(monkeypatch: pytest.MonkeyPatch) -> None:
    sent: list[tuple[str, str, str]] = []

    async def fake_send(to_email: str, subject: str, text_body: str, html_body: str | None = None) -> bool:
        sent.append((to_email, subject, text_body))
        return True

    monkeypatch.setattr(email_service, "send_email", fake_send)
    monkeypatch.setattr(settings, "admin_notification_email", "owner@example.com")

    async def scenario() -> None:
        await email_service.send_admin_new_order(_context(is_test=True))
        await email_service.send_refund_processed(
            _context(), amount=Decimal("40"), method="store_credit", balance=Decimal("55.5")
        )
        await email_service.send_refund_processed(_context(), amount=Decimal("120"), method="original_payment")

    asyncio.run(scenario())

    admin, credit, original = sent
    assert admin[0] == "owner@example.com"
    assert admin[1] == "[TEST] New order GEM-1700000000000-ABC123 (120.00 CAD)"
    assert credit[0] == "buyer@example.com"
    assert "A refund of 40.00 CAD" in credit[2]
    assert "as store credit on your account" in credit[2]
    assert "balance is now 55.50 CAD" in credit[2]
    assert "to your original payment method" in original[2]
    assert "balance" not in original[2]


def test_admin_notification_skipped_without_inbox(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "admin_notification_email", None)
    assert asyncio.run(email_service.send_admin_new_order(_context())) is False
