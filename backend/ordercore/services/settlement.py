"""Refund requests and their settlement.

Approving or denying a request only records the decision. Moving an approved
request to ``refunded`` is the one step with money behind it: the refund goes
either back to the original payment through the provider, or into the
customer's store-credit ledger. Request and order are both updated with
compare-and-set guards, so a dispute landing mid-flow makes the refund fail
with a conflict instead of overwriting the dispute.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Sequence, assert_never
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from ordercore.core import metrics
from ordercore.core.dependencies import AdminPrincipal
from ordercore.core.errors import ConflictError, CoreError, InvalidTransition, NotFound, UpstreamFailure, ValidationFailed
from ordercore.db.base import utcnow
from ordercore.models.order import Order, OrderStatus, PaymentMethod, PaymentStatus
from ordercore.models.payment import Payment, PaymentRecordStatus
from ordercore.models.refund import RefundMethod, RefundRequest, RefundRequestStatus
from ordercore.models.store_credit import StoreCreditSource
from ordercore.schemas.refund import RefundDecision, RefundRequestCreate
from ordercore.services import inventory, order_state, payments, paypal, store_credit

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")

SETTLEABLE_STATUSES = frozenset(
    {
        OrderStatus.confirmed,
        OrderStatus.processing,
        OrderStatus.shipped,
        OrderStatus.delivered,
        OrderStatus.partially_refunded,
    }
)

REFUND_REQUEST_TRANSITIONS: dict[RefundRequestStatus, frozenset[RefundRequestStatus]] = {
    RefundRequestStatus.pending: frozenset({RefundRequestStatus.approved, RefundRequestStatus.denied}),
    RefundRequestStatus.approved: frozenset({RefundRequestStatus.refunded}),
    RefundRequestStatus.denied: frozenset(),
    RefundRequestStatus.refunded: frozenset(),
}


@dataclass(frozen=True)
class OriginalPayment:
    provider: PaymentMethod
    reference: str


@dataclass(frozen=True)
class StoreCredit:
    email: str


SettlementPath = OriginalPayment | StoreCredit


def remaining_refundable(order: Order) -> Decimal:
    return (Decimal(order.total) - Decimal(order.refunded_amount or 0)).quantize(_CENT)


def _log_ids(request: RefundRequest | None = None, order: Order | None = None) -> dict[str, str]:
    ids: dict[str, str] = {}
    if request is not None:
        ids["refund_request_id"] = str(request.id)
    if order is not None:
        ids["order_id"] = str(order.id)
        ids["order_number"] = order.order_number
    return ids


# Customer intake ---------------------------------------------------------------


async def create_refund_request(session: AsyncSession, payload: RefundRequestCreate) -> RefundRequest:
    order = await session.get(Order, payload.order_id)
    if order is None or order.customer_email.lower() != payload.email.strip().lower():
        raise NotFound("Order")
    if order.status == OrderStatus.refunded or order.payment_status == PaymentStatus.refunded:
        raise ConflictError("This order has already been refunded")
    if order.status not in SETTLEABLE_STATUSES:
        raise ConflictError(f"Orders in status {order.status.value} cannot be refunded")

    pending = await session.execute(
        select(RefundRequest.id).where(
            RefundRequest.order_id == order.id, RefundRequest.status == RefundRequestStatus.pending
        )
    )
    if pending.first() is not None:
        raise ConflictError("A refund request for this order is already pending")

    remaining = remaining_refundable(order)
    amount = Decimal(payload.requested_amount or remaining).quantize(_CENT)
    if amount <= 0 or amount > remaining:
        raise ValidationFailed(
            "Refund amount must be positive and cannot exceed the refundable amount",
            data={"refundable": str(remaining)},
        )

    request = RefundRequest(
        order_id=order.id,
        order_number=order.order_number,
        customer_email=order.customer_email,
        customer_name=order.customer_name,
        reason=payload.reason,
        reason_details=payload.reason_details,
        requested_amount=amount,
        refund_method=payload.refund_method,
        status=RefundRequestStatus.pending,
    )
    session.add(request)
    order_state.record_event(session, order, "refund_requested", f"{amount} {order.currency} requested")
    await session.commit()
    await session.refresh(request)
    logger.info("refund_request_created", extra={**_log_ids(request, order), "amount": str(amount)})
    return request


async def list_for_customer(
    session: AsyncSession, *, email: str | None = None, order_id: UUID | None = None
) -> Sequence[RefundRequest]:
    if not email and not order_id:
        raise ValidationFailed("Provide an email or an order id")
    query = select(RefundRequest).order_by(RefundRequest.created_at.desc())
    if email:
        query = query.where(RefundRequest.customer_email == email.strip().lower())
    if order_id:
        query = query.where(RefundRequest.order_id == order_id)
    return (await session.execute(query)).scalars().all()


async def list_requests(
    session: AsyncSession, *, status: RefundRequestStatus | None = None, limit: int = 50, offset: int = 0
) -> Sequence[RefundRequest]:
    query = select(RefundRequest).order_by(RefundRequest.created_at.desc()).limit(limit).offset(offset)
    if status is not None:
        query = query.where(RefundRequest.status == status)
    return (await session.execute(query)).scalars().all()


async def get_request(session: AsyncSession, request_id: UUID, *, lock: bool = False) -> RefundRequest:
    query = select(RefundRequest).where(RefundRequest.id == request_id).execution_options(populate_existing=True)
    if lock:
        query = query.with_for_update(of=RefundRequest)
    request = (await session.execute(query)).scalar_one_or_none()
    if request is None:
        raise NotFound("Refund request")
    return request


async def get_payment(session: AsyncSession, order_id: UUID) -> Payment | None:
    result = await session.execute(select(Payment).where(Payment.order_id == order_id))
    return result.scalar_one_or_none()


# Admin decisions ------------------------------------------------------------------


def _assert_request_transition(current: RefundRequestStatus, target: RefundRequestStatus) -> None:
    if target not in REFUND_REQUEST_TRANSITIONS[current]:
        raise InvalidTransition(current.value, target.value, subject="refund request")


async def _cas_request(
    session: AsyncSession, request: RefundRequest, expected: RefundRequestStatus, values: dict
) -> None:
    values = {**values, "updated_at": utcnow()}
    result = await session.execute(
        update(RefundRequest)
        .where(RefundRequest.id == request.id, RefundRequest.status == expected)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConflictError("Refund request changed concurrently", data={"expected": expected.value})
    for key, value in values.items():
        set_committed_value(request, key, value)


async def decide(
    session: AsyncSession, request_id: UUID, decision: RefundDecision, admin: AdminPrincipal
) -> RefundRequest:
    """Apply an admin decision to a refund request and return the updated request."""
    request = await get_request(session, request_id, lock=True)
    current = RefundRequestStatus(request.status)
    target = RefundRequestStatus(decision.status)
    _assert_request_transition(current, target)

    if target == RefundRequestStatus.refunded:
        return await _settle(session, request, decision, admin)

    values: dict = {
        "status": target,
        "reviewed_by": admin.id,
        "reviewed_by_email": admin.email,
        "reviewed_at": utcnow(),
    }
    if decision.admin_notes is not None:
        values["admin_notes"] = decision.admin_notes
    if target == RefundRequestStatus.approved:
        order = await session.get(Order, request.order_id)
        if order is None:
            raise NotFound("Order")
        amount = Decimal(decision.approved_amount or request.requested_amount).quantize(_CENT)
        if amount > remaining_refundable(order):
            raise ValidationFailed(
                "Approved amount exceeds the refundable amount",
                data={"refundable": str(remaining_refundable(order))},
            )
        values["approved_amount"] = amount
        if decision.refund_method is not None:
            values["refund_method"] = decision.refund_method
    else:
        values["denial_reason"] = decision.denial_reason

    await _cas_request(session, request, current, values)
    await session.commit()
    logger.info(
        "refund_request_decided",
        extra={**_log_ids(request), "status": target.value, "reviewed_by": admin.id},
    )
    return request


def settlement_path(order: Order, method: RefundMethod) -> SettlementPath:
    if method == RefundMethod.store_credit:
        return StoreCredit(email=order.customer_email)
    provider = PaymentMethod(order.payment_method)
    if provider == PaymentMethod.crypto:
        raise ValidationFailed("Crypto payments cannot be reversed; refund to store credit instead")
    if not order.provider_payment_reference:
        raise ValidationFailed("Order has no provider payment reference to refund")
    return OriginalPayment(provider=provider, reference=order.provider_payment_reference)


async def _refund_original_payment(path: OriginalPayment, order: Order, amount: Decimal, request_id: str) -> str:
    if path.provider == PaymentMethod.stripe:
        return await payments.refund_payment_intent(path.reference, amount=amount, idempotency_key=request_id)
    if path.provider == PaymentMethod.paypal:
        return await paypal.refund_capture(
            capture_id=path.reference, amount=amount, currency=order.currency, request_id=request_id
        )
    raise ValidationFailed(f"Refunds are not supported for {path.provider.value}")


async def _settle(
    session: AsyncSession, request: RefundRequest, decision: RefundDecision, admin: AdminPrincipal
) -> RefundRequest:
    result = await session.execute(
        select(Order).where(Order.id == request.order_id).with_for_update().execution_options(populate_existing=True)
    )
    order = result.scalar_one_or_none()
    if order is None:
        raise NotFound("Order")
    log_ids = _log_ids(request, order)

    status = OrderStatus(order.status)
    if status == OrderStatus.disputed:
        raise ConflictError("Order is under dispute; settle it through the provider")
    if status not in SETTLEABLE_STATUSES:
        raise ConflictError(f"Orders in status {status.value} cannot be refunded")

    amount = Decimal(decision.approved_amount or request.approved_amount or request.requested_amount).quantize(_CENT)
    remaining = remaining_refundable(order)
    if amount <= 0 or amount > remaining:
        raise ValidationFailed(
            "Refund amount cannot exceed the refundable amount", data={"refundable": str(remaining)}
        )
    method = decision.refund_method or request.refund_method
    if method is None:
        raise ValidationFailed("Refund method is required")
    path = settlement_path(order, RefundMethod(method))

    provider_refund_id: str | None = None
    now = utcnow()
    refunded_total = (Decimal(order.refunded_amount or 0) + amount).quantize(_CENT)
    fully_refunded = refunded_total >= Decimal(order.total)
    try:
        if isinstance(path, OriginalPayment):
            provider_refund_id = await _refund_original_payment(path, order, amount, str(request.id))
        elif isinstance(path, StoreCredit):
            await store_credit.earn(
                session,
                path.email,
                amount,
                source=StoreCreditSource.order_refund,
                source_id=request.id,
                order_id=order.id,
                user_id=order.user_id,
                description=f"Refund for order {order.order_number}",
            )
        else:
            assert_never(path)

        await _cas_request(
            session,
            request,
            RefundRequestStatus(request.status),
            {
                "status": RefundRequestStatus.refunded,
                "approved_amount": amount,
                "refund_method": RefundMethod(method),
                "provider_refund_id": provider_refund_id,
                "refunded_at": now,
                "reviewed_by": admin.id,
                "reviewed_by_email": admin.email,
                "reviewed_at": request.reviewed_at or now,
                "admin_notes": decision.admin_notes if decision.admin_notes is not None else request.admin_notes,
            },
        )
        await order_state.transition(
            session,
            order,
            OrderStatus.refunded if fully_refunded else OrderStatus.partially_refunded,
            expected=status,
            event="refund_processed",
            note=f"{amount} {order.currency} via {RefundMethod(method).value}",
            values={
                "refunded_amount": refunded_total,
                "refunded_at": now,
                "payment_status": PaymentStatus.refunded if fully_refunded else PaymentStatus.partially_refunded,
            },
        )
        if isinstance(path, OriginalPayment):
            await _mark_payment_refunded(session, order, amount, request)
        if fully_refunded:
            await inventory.restore_order_inventory(session, order, reason="refund")
        await session.commit()
    except UpstreamFailure:
        await session.rollback()
        logger.warning("refund_upstream_failure", extra=log_ids)
        raise
    except CoreError as exc:
        await session.rollback()
        logger.warning("refund_rejected", extra={**log_ids, "error": str(exc.detail)})
        raise
    except Exception:
        await session.rollback()
        # Money may already have moved; the idempotency key makes a resubmission safe.
        logger.exception(
            "refund_settlement_failed",
            extra={**log_ids, "provider_refund_id": provider_refund_id or "", "amount": str(amount)},
        )
        raise

    metrics.record_refund_processed()
    logger.info(
        "refund_processed",
        extra={**log_ids, "amount": str(amount), "method": RefundMethod(method).value, "provider_refund_id": provider_refund_id},
    )
    return request


async def _mark_payment_refunded(session: AsyncSession, order: Order, amount: Decimal, request: RefundRequest) -> None:
    """Record money returned through the provider; store credit never touches the payment record."""
    payment = await get_payment(session, order.id)
    if payment is None:
        return
    payment.refund_amount = (Decimal(payment.refund_amount or 0) + amount).quantize(_CENT)
    payment.refund_reason = request.reason.value if request.reason else None
    payment.refunded_at = utcnow()
    payment.status = (
        PaymentRecordStatus.refunded
        if payment.refund_amount >= Decimal(payment.amount)
        else PaymentRecordStatus.partially_refunded
    )
