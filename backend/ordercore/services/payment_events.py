"""Provider webhook vocabularies mapped onto one canonical transition set.

Each provider has a table from its event type to a canonical transition plus
an extractor that pulls correlation keys and amounts out of the payload.
Event types missing from a table map to ``None`` and are acknowledged
without effect.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Literal

from ordercore.core.errors import ValidationFailed
from ordercore.services.payments import from_minor_units


class CanonicalTransition(str, enum.Enum):
    payment_confirmed = "payment_confirmed"
    payment_denied = "payment_denied"
    payment_refunded = "payment_refunded"
    dispute_opened = "dispute_opened"
    dispute_resolved = "dispute_resolved"


DisputeOutcome = Literal["won", "lost"]


@dataclass(frozen=True)
class CanonicalEvent:
    provider: str
    event_id: str
    event_type: str
    transition: CanonicalTransition | None
    references: tuple[str, ...] = ()
    # Amount of this refund, and the cumulative refunded amount when the provider reports it.
    refund_amount: Decimal | None = None
    refund_total: Decimal | None = None
    fully_refunded: bool | None = None
    refund_id: str | None = None
    dispute_id: str | None = None
    dispute_outcome: DisputeOutcome | None = None
    summary: dict[str, Any] = field(default_factory=dict)


def _obj(data: Any) -> dict[str, Any]:
    return data if isinstance(data, dict) else {}


def _str(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, dict):
        value = value.get("id")
    cleaned = str(value or "").strip()
    return cleaned or None


def _refs(*values: Any) -> tuple[str, ...]:
    seen: list[str] = []
    for value in values:
        cleaned = _str(value)
        if cleaned and cleaned not in seen:
            seen.append(cleaned)
    return tuple(seen)


def _decimal(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError):
        return None


# Stripe ---------------------------------------------------------------------

STRIPE_TRANSITIONS: dict[str, CanonicalTransition] = {
    "payment_intent.succeeded": CanonicalTransition.payment_confirmed,
    "payment_intent.payment_failed": CanonicalTransition.payment_denied,
    "charge.refunded": CanonicalTransition.payment_refunded,
    "charge.dispute.created": CanonicalTransition.dispute_opened,
    "charge.dispute.closed": CanonicalTransition.dispute_resolved,
}

_STRIPE_WON_STATUSES = {"won", "warning_closed"}


def _stripe_details(transition: CanonicalTransition, obj: dict[str, Any]) -> dict[str, Any]:
    if transition in (CanonicalTransition.payment_confirmed, CanonicalTransition.payment_denied):
        return {"references": _refs(obj.get("id"))}
    if transition == CanonicalTransition.payment_refunded:
        refunds = _obj(obj.get("refunds")).get("data")
        latest = _obj(refunds[0]) if isinstance(refunds, list) and refunds else {}
        return {
            "references": _refs(obj.get("payment_intent"), obj.get("id")),
            "refund_total": from_minor_units(obj.get("amount_refunded")),
            "refund_amount": from_minor_units(latest.get("amount")),
            "refund_id": _str(latest.get("id")),
            "fully_refunded": obj.get("refunded") if isinstance(obj.get("refunded"), bool) else None,
        }
    details: dict[str, Any] = {
        "references": _refs(obj.get("payment_intent"), obj.get("charge")),
        "dispute_id": _str(obj.get("id")),
    }
    if transition == CanonicalTransition.dispute_resolved:
        status = str(obj.get("status") or "").strip().lower()
        details["dispute_outcome"] = "won" if status in _STRIPE_WON_STATUSES else "lost"
    return details


def _stripe_summary(event: dict[str, Any], obj: dict[str, Any]) -> dict[str, Any]:
    summary: dict[str, Any] = {"id": event.get("id"), "type": event.get("type"), "created": event.get("created")}
    if "livemode" in event:
        summary["livemode"] = event.get("livemode")
    obj_summary = {
        key: obj.get(key)
        for key in ("id", "payment_intent", "charge", "amount", "amount_refunded", "currency", "reason", "status")
        if obj.get(key) is not None
    }
    if obj_summary:
        summary["data"] = {"object": obj_summary}
    return summary


def from_stripe(event: dict[str, Any]) -> CanonicalEvent:
    event_id = _str(event.get("id"))
    if not event_id:
        raise ValidationFailed("Missing event id")
    event_type = str(event.get("type") or "").strip()
    obj = _obj(_obj(event.get("data")).get("object"))
    transition = STRIPE_TRANSITIONS.get(event_type)
    details = _stripe_details(transition, obj) if transition else {}
    return CanonicalEvent(
        provider="stripe",
        event_id=event_id,
        event_type=event_type,
        transition=transition,
        summary=_stripe_summary(event, obj),
        **details,
    )


# PayPal ---------------------------------------------------------------------

PAYPAL_TRANSITIONS: dict[str, CanonicalTransition] = {
    "PAYMENT.CAPTURE.COMPLETED": CanonicalTransition.payment_confirmed,
    "PAYMENT.CAPTURE.DENIED": CanonicalTransition.payment_denied,
    "PAYMENT.CAPTURE.DECLINED": CanonicalTransition.payment_denied,
    "PAYMENT.CAPTURE.REFUNDED": CanonicalTransition.payment_refunded,
    "CUSTOMER.DISPUTE.CREATED": CanonicalTransition.dispute_opened,
    "CUSTOMER.DISPUTE.RESOLVED": CanonicalTransition.dispute_resolved,
}

_PAYPAL_LOST_OUTCOMES = {"RESOLVED_BUYER_FAVOUR", "RESOLVED_BUYER_FAVOR", "REFUNDED", "CHARGEBACK"}


def _paypal_up_link(resource: dict[str, Any]) -> str | None:
    links = resource.get("links")
    if not isinstance(links, list):
        return None
    for link in links:
        link = _obj(link)
        if str(link.get("rel") or "").lower() == "up":
            href = str(link.get("href") or "").rstrip("/")
            return href.rsplit("/", 1)[-1] or None
    return None


def _paypal_details(transition: CanonicalTransition, resource: dict[str, Any]) -> dict[str, Any]:
    if transition in (CanonicalTransition.payment_confirmed, CanonicalTransition.payment_denied):
        related = _obj(_obj(resource.get("supplementary_data")).get("related_ids"))
        return {"references": _refs(resource.get("id"), related.get("order_id"))}
    if transition == CanonicalTransition.payment_refunded:
        breakdown = _obj(resource.get("seller_payable_breakdown"))
        return {
            "references": _refs(_paypal_up_link(resource)),
            "refund_amount": _decimal(_obj(resource.get("amount")).get("value")),
            "refund_total": _decimal(_obj(breakdown.get("total_refunded_amount")).get("value")),
            "refund_id": _str(resource.get("id")),
        }
    transactions = resource.get("disputed_transactions")
    first = _obj(transactions[0]) if isinstance(transactions, list) and transactions else {}
    details: dict[str, Any] = {
        "references": _refs(first.get("seller_transaction_id")),
        "dispute_id": _str(resource.get("dispute_id")),
    }
    if transition == CanonicalTransition.dispute_resolved:
        outcome = _obj(resource.get("dispute_outcome"))
        code = str(outcome.get("outcome_code") or resource.get("outcome") or "").strip().upper()
        details["dispute_outcome"] = "lost" if code in _PAYPAL_LOST_OUTCOMES else "won"
    return details


def _paypal_summary(event: dict[str, Any], resource: dict[str, Any]) -> dict[str, Any]:
    summary: dict[str, Any] = {
        "id": event.get("id"),
        "event_type": event.get("event_type"),
        "create_time": event.get("create_time"),
    }
    resource_summary = {
        key: resource.get(key)
        for key in ("id", "status", "dispute_id", "amount", "reason")
        if resource.get(key) is not None
    }
    if resource_summary:
        summary["resource"] = resource_summary
    return summary


def from_paypal(event: dict[str, Any]) -> CanonicalEvent:
    event_id = _str(event.get("id"))
    if not event_id:
        raise ValidationFailed("Missing event id")
    event_type = str(event.get("event_type") or "").strip().upper()
    resource = _obj(event.get("resource"))
    transition = PAYPAL_TRANSITIONS.get(event_type)
    details = _paypal_details(transition, resource) if transition else {}
    return CanonicalEvent(
        provider="paypal",
        event_id=event_id,
        event_type=event_type,
        transition=transition,
        summary=_paypal_summary(event, resource),
        **details,
    )


CANONICALIZERS: dict[str, Callable[[dict[str, Any]], CanonicalEvent]] = {
    "stripe": from_stripe,
    "paypal": from_paypal,
}


def canonicalize(provider: str, event: dict[str, Any]) -> CanonicalEvent:
    return CANONICALIZERS[provider](event)
