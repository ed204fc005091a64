"""Customer and shop-owner notifications.

Delivery is fire-and-forget: routes schedule these through ``BackgroundTasks``
after the transaction committed, and a failed send is logged, never raised.
Callers pass plain context dicts (see :func:`order_context`) so nothing here
touches a database session.
"""

import logging
import smtplib
from decimal import Decimal
from email.message import EmailMessage
from pathlib import Path
from typing import Any, Sequence

from jinja2 import Environment, FileSystemLoader, select_autoescape

from ordercore.core.config import settings
from ordercore.models.order import Order

logger = logging.getLogger(__name__)

TEMPLATE_PATH = Path(__file__).parent.parent / "templates" / "emails"
env = Environment(loader=FileSystemLoader(TEMPLATE_PATH), autoescape=select_autoescape(["html", "xml", "html.j2"]))


def _build_message(to_email: str, subject: str, text_body: str, html_body: str | None = None) -> EmailMessage:
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = settings.smtp_from_email or "no-reply@gemstore.local"
    msg["To"] = to_email
    msg.set_content(text_body)
    if html_body:
        msg.add_alternative(html_body, subtype="html")
    return msg


async def send_email(to_email: str, subject: str, text_body: str, html_body: str | None = None) -> bool:
    if not settings.smtp_enabled or not to_email:
        return False
    msg = _build_message(to_email, subject, text_body, html_body)
    try:
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=10) as smtp:
            if settings.smtp_use_tls:
                smtp.starttls()
            if settings.smtp_username and settings.smtp_password:
                smtp.login(settings.smtp_username, settings.smtp_password)
            smtp.send_message(msg)
        return True
    except Exception as exc:
        logger.warning("email_send_failed", extra={"subject": subject, "error": str(exc)})
        return False


def render_template(template_name: str, context: dict) -> tuple[str, str]:
    base_text = env.get_template("base.txt.j2")
    base_html = env.get_template("base.html.j2")
    body_text = env.get_template(template_name).render(**context)
    body_html = env.get_template(template_name.replace(".txt.j2", ".html.j2")).render(**context)
    return base_text.render(body=body_text), base_html.render(body=body_html)


def _money(value: Any) -> str:
    return f"{Decimal(value or 0).quantize(Decimal('0.01'))}"


def order_context(order: Order, *, shortfalls: Sequence[str] = ()) -> dict[str, Any]:
    """Snapshot the fields the templates need while the order is still loaded."""
    return {
        "order_id": str(order.id),
        "order_number": order.order_number,
        "customer_name": order.customer_name,
        "customer_email": order.customer_email,
        "payment_method": order.payment_method.value,
        "is_test": order.is_test,
        "currency": order.currency,
        "subtotal": _money(order.subtotal),
        "shipping_cost": _money(order.shipping_cost),
        "tax_amount": _money(order.tax_amount),
        "discount_amount": _money(order.discount_amount),
        "total": _money(order.total),
        "refunded_amount": _money(order.refunded_amount),
        "items": [{"name": item.name, "quantity": item.quantity, "line_total": _money(item.line_total)} for item in order.items],
        "shortfalls": list(shortfalls),
    }


async def _send(to_email: str | None, subject: str, template_name: str, context: dict) -> bool:
    if not to_email:
        return False
    try:
        text_body, html_body = render_template(template_name, context)
    except Exception as exc:
        logger.warning(
            "email_render_failed",
            extra={"template": template_name, "order_number": context.get("order_number"), "error": str(exc)},
        )
        return False
    return await send_email(to_email, subject, text_body, html_body)


async def send_order_confirmation(context: dict) -> bool:
    subject = f"Order confirmation {context['order_number']}"
    return await _send(context.get("customer_email"), subject, "order_confirmation.txt.j2", context)


async def send_admin_new_order(context: dict) -> bool:
    prefix = "[TEST] " if context.get("is_test") else ""
    subject = f"{prefix}New order {context['order_number']} ({context['total']} {context['currency']})"
    return await _send(settings.admin_notification_email, subject, "admin_new_order.txt.j2", context)


async def send_payment_failed(context: dict) -> bool:
    subject = f"Payment failed for order {context['order_number']}"
    return await _send(context.get("customer_email"), subject, "payment_failed.txt.j2", context)


async def send_refund_processed(context: dict, *, amount: Decimal, method: str, balance: Decimal | None = None) -> bool:
    subject = f"Refund processed for order {context['order_number']}"
    extra = {"amount": _money(amount), "method": method, "balance": _money(balance) if balance is not None else None}
    return await _send(context.get("customer_email"), subject, "refund_processed.txt.j2", {**context, **extra})
