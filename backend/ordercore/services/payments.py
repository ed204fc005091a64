import json
import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Literal, cast

import stripe

from ordercore.core import metrics
from ordercore.core.config import settings
from ordercore.core.errors import InternalFailure, Unauthorized, UpstreamFailure, ValidationFailed

stripe = cast(Any, stripe)

logger = logging.getLogger(__name__)

_STRIPE_PLACEHOLDER_SUFFIX = "_placeholder"


def _stripe_env() -> Literal["sandbox", "live"]:
    raw = (settings.stripe_env or "sandbox").strip().lower()
    if raw in {"live", "production", "prod"}:
        return "live"
    return "sandbox"


def _looks_configured(value: str | None) -> bool:
    cleaned = (value or "").strip()
    if not cleaned:
        return False
    return not cleaned.endswith(_STRIPE_PLACEHOLDER_SUFFIX)


def stripe_secret_key() -> str:
    if _stripe_env() == "live":
        return (settings.stripe_secret_key_live or settings.stripe_secret_key or "").strip()
    return (settings.stripe_secret_key_sandbox or settings.stripe_secret_key or "").strip()


def stripe_webhook_secret() -> str:
    if _stripe_env() == "live":
        return (settings.stripe_webhook_secret_live or settings.stripe_webhook_secret or "").strip()
    return (settings.stripe_webhook_secret_sandbox or settings.stripe_webhook_secret or "").strip()


def is_stripe_configured() -> bool:
    return _looks_configured(stripe_secret_key())


def is_stripe_webhook_configured() -> bool:
    return _looks_configured(stripe_webhook_secret())


def init_stripe() -> None:
    stripe.api_key = stripe_secret_key()
    # Retries belong to the caller (admin resubmission), never to the SDK.
    stripe.max_network_retries = 0
    stripe.default_http_client = stripe.new_default_http_client(timeout=settings.stripe_timeout_seconds)


def to_minor_units(amount: Decimal) -> int:
    normalized = Decimal(amount).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return int((normalized * 100).to_integral_value(rounding=ROUND_HALF_UP))


def from_minor_units(amount: Any) -> Decimal | None:
    if amount is None or isinstance(amount, bool):
        return None
    try:
        return (Decimal(int(amount)) / 100).quantize(Decimal("0.01"))
    except (TypeError, ValueError):
        return None


def verify_webhook(payload: bytes, sig_header: str | None) -> dict[str, Any]:
    """Check the ``Stripe-Signature`` header and return the event as a plain dict."""
    if not is_stripe_webhook_configured():
        logger.error("stripe_webhook_secret_missing")
        raise InternalFailure("Stripe webhook secret not set")
    secret = stripe_webhook_secret()
    if not sig_header:
        metrics.record_webhook_rejected()
        raise Unauthorized("Missing Stripe signature")
    try:
        stripe.Webhook.construct_event(payload, sig_header, secret)
    except Exception as exc:  # broad for Stripe signature errors
        metrics.record_webhook_rejected()
        logger.warning("stripe_webhook_rejected", extra={"provider": "stripe", "error": str(exc)})
        raise Unauthorized("Invalid Stripe signature") from exc
    try:
        event = json.loads(payload)
    except ValueError as exc:
        raise ValidationFailed("Invalid payload") from exc
    if not isinstance(event, dict):
        raise ValidationFailed("Invalid payload")
    return event


async def refund_payment_intent(intent_id: str, *, amount: Decimal, idempotency_key: str) -> str:
    """Refund a captured PaymentIntent and return the Stripe refund id.

    ``idempotency_key`` makes a resubmission after a timeout return the
    refund Stripe already created instead of issuing a second one.
    """
    if not is_stripe_configured():
        raise InternalFailure("Stripe not configured")
    init_stripe()
    try:
        refund = stripe.Refund.create(
            payment_intent=intent_id,
            amount=to_minor_units(amount),
            idempotency_key=idempotency_key,
        )
    except Exception as exc:
        metrics.record_payment_failure()
        logger.error(
            "stripe_refund_failed",
            extra={"provider": "stripe", "payment_intent": intent_id, "refund_request_id": idempotency_key, "error": str(exc)},
        )
        raise UpstreamFailure("Stripe refund failed") from exc
    refund_id = getattr(refund, "id", None) or (refund.get("id") if hasattr(refund, "get") else None)
    return str(refund_id or "")
