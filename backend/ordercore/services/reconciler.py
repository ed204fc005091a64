"""Exactly-once application of provider webhook events.

The dedup row and every effect of an event (order transition, payment
record, inventory) are written in one transaction. The unique constraint on
(provider, event_id) is the race guard: a concurrent duplicate blocks on the
insert and then sees a processed row. When processing fails the whole unit
rolls back, an unprocessed attempt row is kept with the error, and the caller
answers 500 so the provider re-delivers. An event whose order does not exist
yet is treated the same way and answered 404.

Provider money is tracked on the payment record (``Payment.refund_amount``);
the order's ``refunded_amount`` also counts store-credit refunds.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Literal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ordercore.core import metrics
from ordercore.core.errors import ConflictError, InternalFailure, InvalidTransition, NotFound
from ordercore.db.base import utcnow
from ordercore.models.order import Order, OrderStatus, PaymentMethod, PaymentStatus
from ordercore.models.payment import Payment, PaymentRecordStatus
from ordercore.models.refund import RefundRequest
from ordercore.models.webhook import PaymentWebhookEvent
from ordercore.services import inventory, loyalty, order_state
from ordercore.services.payment_events import CanonicalEvent, CanonicalTransition

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")
_ZERO = Decimal("0.00")

_REFUND_STATUSES = frozenset({OrderStatus.refunded, OrderStatus.partially_refunded})
_CAPTURED_PAYMENT_STATUSES = frozenset({PaymentStatus.paid, PaymentStatus.refunded, PaymentStatus.partially_refunded})


@dataclass
class ReconcileResult:
    status: Literal["applied", "duplicate", "ignored"]
    transition: CanonicalTransition | None = None
    order: Order | None = None
    detail: str | None = None
    notify: Literal["payment_failed", "refund_processed"] | None = None


class _Skip(Exception):
    """An event that is acknowledged without effect; the reason lands in ``last_error``."""

    def __init__(self, reason: str, order: Order | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.order = order


def _log_ids(event: CanonicalEvent, order: Order | None = None) -> dict[str, str]:
    ids = {"provider": event.provider, "event_id": event.event_id, "event_type": event.event_type}
    if order is not None:
        ids["order_id"] = str(order.id)
        ids["order_number"] = order.order_number
    return ids


async def _load_record(session: AsyncSession, event: CanonicalEvent, *, lock: bool = False) -> PaymentWebhookEvent | None:
    query = (
        select(PaymentWebhookEvent)
        .where(PaymentWebhookEvent.provider == event.provider, PaymentWebhookEvent.event_id == event.event_id)
        .execution_options(populate_existing=True)
    )
    if lock:
        query = query.with_for_update()
    return (await session.execute(query)).scalar_one_or_none()


def _new_record(event: CanonicalEvent) -> PaymentWebhookEvent:
    return PaymentWebhookEvent(
        provider=event.provider,
        event_id=event.event_id,
        event_type=event.event_type or None,
        transition=event.transition.value if event.transition else None,
        attempts=1,
        last_attempt_at=utcnow(),
        payload=event.summary,
    )


async def _claim(session: AsyncSession, event: CanonicalEvent) -> PaymentWebhookEvent | None:
    """Insert the dedup row, or lock the existing one.

    Returns None when the event was already processed (the attempt is counted
    and committed). Otherwise returns the row to finish inside the current
    transaction.
    """
    record = _new_record(event)
    session.add(record)
    try:
        await session.flush()
        return record
    except IntegrityError:
        await session.rollback()

    existing = await _load_record(session, event, lock=True)
    if existing is None:
        raise InternalFailure("Webhook dedup record vanished")
    existing.attempts = int(existing.attempts or 0) + 1
    existing.last_attempt_at = utcnow()
    if existing.processed_at is not None:
        await session.commit()
        return None
    return existing


async def _record_failed_attempt(session: AsyncSession, event: CanonicalEvent, error: str) -> None:
    existing = await _load_record(session, event, lock=True)
    if existing is None:
        existing = _new_record(event)
        session.add(existing)
    else:
        existing.attempts = int(existing.attempts or 0) + 1
        existing.last_attempt_at = utcnow()
    existing.last_error = error[:2000]
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        existing = await _load_record(session, event, lock=True)
        if existing is None:
            raise
        existing.attempts = int(existing.attempts or 0) + 1
        existing.last_attempt_at = utcnow()
        existing.last_error = error[:2000]
        await session.commit()


async def reconcile(session: AsyncSession, event: CanonicalEvent) -> ReconcileResult:
    record = await _claim(session, event)
    if record is None:
        metrics.record_webhook_duplicate()
        logger.info("webhook_duplicate", extra=_log_ids(event))
        return ReconcileResult(status="duplicate", transition=event.transition)

    try:
        result = await _apply(session, event)
    except _Skip as skip:
        result = ReconcileResult(status="ignored", transition=event.transition, order=skip.order, detail=skip.reason)
        logger.info("webhook_ignored", extra={**_log_ids(event, skip.order), "reason": skip.reason})
    except InvalidTransition as exc:
        # Rejected by the state table: acknowledge, keep the reason, and leave it for an operator.
        await session.rollback()
        logger.error("webhook_transition_rejected", extra={**_log_ids(event), "error": str(exc.detail)})
        await _finish_rejected(session, event, str(exc.detail))
        return ReconcileResult(status="ignored", transition=event.transition, detail=str(exc.detail))
    except ConflictError as exc:
        await session.rollback()
        logger.warning("webhook_conflict", extra={**_log_ids(event), "error": str(exc.detail)})
        await _record_failed_attempt(session, event, f"conflict: {exc.detail}")
        raise
    except NotFound as exc:
        # Left unprocessed: a re-delivery after the order commits is applied.
        await session.rollback()
        await _record_failed_attempt(session, event, "order not found")
        raise NotFound("Order", data={"references": list(event.references)}) from exc
    except Exception as exc:
        await session.rollback()
        logger.exception("webhook_processing_failed", extra=_log_ids(event))
        await _record_failed_attempt(session, event, repr(exc))
        raise InternalFailure("Webhook processing failed") from exc

    record.processed_at = utcnow()
    record.order_id = result.order.id if result.order is not None else None
    record.last_error = result.detail if result.status == "ignored" else None
    try:
        await session.commit()
    except Exception as exc:
        await session.rollback()
        logger.exception("webhook_commit_failed", extra=_log_ids(event, result.order))
        await _record_failed_attempt(session, event, repr(exc))
        raise InternalFailure("Webhook processing failed") from exc

    if result.status == "applied":
        metrics.record_webhook_applied()
        logger.info("webhook_applied", extra={**_log_ids(event, result.order), "transition": event.transition.value if event.transition else None})
    return result


async def _finish_rejected(session: AsyncSession, event: CanonicalEvent, reason: str) -> None:
    record = await _load_record(session, event, lock=True)
    if record is None:
        record = _new_record(event)
        session.add(record)
    else:
        record.attempts = int(record.attempts or 0) + 1
        record.last_attempt_at = utcnow()
    record.processed_at = utcnow()
    record.last_error = reason[:2000]
    await session.commit()


async def _find_order(session: AsyncSession, event: CanonicalEvent) -> Order | None:
    if not event.references:
        return None
    try:
        method = PaymentMethod(event.provider)
    except ValueError:
        return None
    result = await session.execute(
        select(Order)
        .where(Order.provider_payment_reference.in_(event.references), Order.payment_method == method)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()


async def _payment_record(session: AsyncSession, order: Order) -> Payment | None:
    result = await session.execute(select(Payment).where(Payment.order_id == order.id))
    return result.scalar_one_or_none()


async def _apply(session: AsyncSession, event: CanonicalEvent) -> ReconcileResult:
    if event.transition is None:
        raise _Skip(f"unhandled event type {event.event_type}")
    if not event.references:
        raise _Skip("event carries no payment reference")
    order = await _find_order(session, event)
    if order is None:
        logger.warning("webhook_order_not_found", extra={**_log_ids(event), "references": ",".join(event.references)})
        raise NotFound("Order")

    handler = _HANDLERS[event.transition]
    return await handler(session, event, order)


async def _on_confirmed(session: AsyncSession, event: CanonicalEvent, order: Order) -> ReconcileResult:
    status = OrderStatus(order.status)
    if status in (OrderStatus.failed, OrderStatus.cancelled):
        # Late success for an order that was already given up on.
        order_state.assert_transition(status, OrderStatus.confirmed)
    if order.payment_status == PaymentStatus.paid:
        raise _Skip("payment already marked paid", order)
    if (
        order.payment_status in _CAPTURED_PAYMENT_STATUSES
        or status in _REFUND_STATUSES
        or status == OrderStatus.disputed
    ):
        # A refund or chargeback already superseded this capture.
        raise _Skip(f"stale payment confirmation for a {status.value} order", order)
    if status == OrderStatus.pending:
        await order_state.transition(session, order, OrderStatus.confirmed, event="payment_confirmed")
    order.payment_status = PaymentStatus.paid
    payment = await _payment_record(session, order)
    if payment is not None:
        payment.status = PaymentRecordStatus.succeeded
    order_state.record_event(session, order, "payment_captured", f"{event.provider} {event.event_id}")
    await loyalty.record_order_spend(session, order)
    return ReconcileResult(status="applied", transition=event.transition, order=order)


async def _on_denied(session: AsyncSession, event: CanonicalEvent, order: Order) -> ReconcileResult:
    if order.status == OrderStatus.failed:
        raise _Skip("order already failed", order)
    if order.payment_status in _CAPTURED_PAYMENT_STATUSES:
        raise _Skip(f"payment already {PaymentStatus(order.payment_status).value}", order)
    await order_state.transition(
        session,
        order,
        OrderStatus.failed,
        event="payment_denied",
        values={"payment_status": PaymentStatus.failed},
    )
    payment = await _payment_record(session, order)
    if payment is not None:
        payment.status = PaymentRecordStatus.failed
    await inventory.restore_order_inventory(session, order, reason="payment denied")
    metrics.record_payment_failure()
    return ReconcileResult(status="applied", transition=event.transition, order=order, notify="payment_failed")


async def _is_own_refund(session: AsyncSession, event: CanonicalEvent) -> bool:
    if not event.refund_id:
        return False
    result = await session.execute(select(RefundRequest.id).where(RefundRequest.provider_refund_id == event.refund_id))
    return result.first() is not None


async def _on_refunded(session: AsyncSession, event: CanonicalEvent, order: Order) -> ReconcileResult:
    if await _is_own_refund(session, event):
        raise _Skip("refund already settled through a refund request", order)
    total = Decimal(order.total)
    already = Decimal(order.refunded_amount or 0)
    payment = await _payment_record(session, order)
    # Provider figures are compared with what the provider refunded before,
    # never with store credit granted for the same order.
    provider_before = Decimal(payment.refund_amount or 0) if payment is not None else already
    if event.refund_total is not None:
        provider_total = event.refund_total
    elif event.refund_amount is not None:
        provider_total = provider_before + event.refund_amount
    else:
        provider_total = total
    if event.fully_refunded:
        provider_total = max(provider_total, total)
    provider_total = min(provider_total, total).quantize(_CENT)

    delta = min(provider_total - provider_before, total - already)
    if order.status == OrderStatus.refunded or delta <= _ZERO:
        raise _Skip("refund already applied", order)

    refunded_total = (already + delta).quantize(_CENT)
    fully = refunded_total >= total
    now = utcnow()
    await order_state.transition(
        session,
        order,
        OrderStatus.refunded if fully else OrderStatus.partially_refunded,
        event="payment_refunded",
        note=f"{refunded_total} {order.currency} refunded by {event.provider}",
        values={
            "refunded_amount": refunded_total,
            "refunded_at": now,
            "payment_status": PaymentStatus.refunded if fully else PaymentStatus.partially_refunded,
        },
    )
    if payment is not None:
        payment.refund_amount = provider_total
        payment.refunded_at = now
        payment.status = (
            PaymentRecordStatus.refunded if provider_total >= Decimal(payment.amount) else PaymentRecordStatus.partially_refunded
        )
    if fully:
        await inventory.restore_order_inventory(session, order, reason="provider refund")
    return ReconcileResult(status="applied", transition=event.transition, order=order, notify="refund_processed")


async def _on_dispute_opened(session: AsyncSession, event: CanonicalEvent, order: Order) -> ReconcileResult:
    if order.status == OrderStatus.disputed:
        raise _Skip("dispute already open", order)
    if order.dispute_closed_at is not None and event.dispute_id and order.dispute_reference == event.dispute_id:
        raise _Skip("stale dispute notification for a closed dispute", order)
    await order_state.transition(
        session,
        order,
        OrderStatus.disputed,
        event="dispute_opened",
        note=f"{event.provider} dispute {event.dispute_id or ''}".strip(),
        values={
            "dispute_reference": event.dispute_id,
            "dispute_closed_at": None,
            "dispute_previous_status": OrderStatus(order.status).value,
        },
    )
    return ReconcileResult(status="applied", transition=event.transition, order=order)


async def _on_dispute_resolved(session: AsyncSession, event: CanonicalEvent, order: Order) -> ReconcileResult:
    if order.status != OrderStatus.disputed:
        raise _Skip("no open dispute for this order", order)
    if event.dispute_id and order.dispute_reference and order.dispute_reference != event.dispute_id:
        raise _Skip("resolution for a different dispute", order)
    now = utcnow()
    if event.dispute_outcome == "lost":
        await order_state.transition(
            session,
            order,
            OrderStatus.refunded,
            event="dispute_lost",
            values={
                "refunded_amount": Decimal(order.total),
                "refunded_at": now,
                "payment_status": PaymentStatus.refunded,
                "dispute_closed_at": now,
            },
        )
        payment = await _payment_record(session, order)
        if payment is not None:
            payment.refund_amount = Decimal(order.total)
            payment.refunded_at = now
            payment.status = PaymentRecordStatus.refunded
        await inventory.restore_order_inventory(session, order, reason="dispute lost")
    else:
        await order_state.transition(
            session,
            order,
            _status_after_won_dispute(order),
            event="dispute_won",
            values={"dispute_closed_at": now, "dispute_previous_status": None},
        )
    return ReconcileResult(status="applied", transition=event.transition, order=order)


def _status_after_won_dispute(order: Order) -> OrderStatus:
    """Refund states survive a won dispute; everything else resumes as confirmed."""
    previous = order.dispute_previous_status
    if previous in {status.value for status in _REFUND_STATUSES}:
        return OrderStatus(previous)
    return OrderStatus.confirmed


_HANDLERS = {
    CanonicalTransition.payment_confirmed: _on_confirmed,
    CanonicalTransition.payment_denied: _on_denied,
    CanonicalTransition.payment_refunded: _on_refunded,
    CanonicalTransition.dispute_opened: _on_dispute_opened,
    CanonicalTransition.dispute_resolved: _on_dispute_resolved,
}
