import logging
import re
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ordercore.core.errors import NotFound, ValidationFailed
from ordercore.db.base import utcnow
from ordercore.models.order import Order, OrderStatus, PaymentStatus
from ordercore.schemas.order import OrderStatusUpdate, OrderTrackingRead, TimelineEntry
from ordercore.services import inventory, order_state

logger = logging.getLogger(__name__)

CARRIER_TRACKING_URLS: dict[str, str] = {
    "canada_post": "https://www.canadapost-postescanada.ca/track-reperage/en#/search?searchFor={tracking}",
    "ups": "https://www.ups.com/track?tracknum={tracking}",
    "fedex": "https://www.fedex.com/fedextrack/?trknbr={tracking}",
    "purolator": "https://www.purolator.com/en/shipping/tracker?pin={tracking}",
    "dhl": "https://www.dhl.com/ca-en/home/tracking/tracking-express.html?tracking-id={tracking}",
    "usps": "https://tools.usps.com/go/TrackConfirmAction?tLabels={tracking}",
}

_TRACKING_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{4,49}$")

_PAST_PAYMENT = {PaymentStatus.paid, PaymentStatus.refunded, PaymentStatus.partially_refunded}
_REACHED_PROCESSING = {OrderStatus.processing, OrderStatus.shipped, OrderStatus.delivered}


def carrier_key(carrier: str | None) -> str:
    return (carrier or "").strip().lower().replace(" ", "_")


def tracking_url(carrier: str | None, tracking_number: str | None) -> str | None:
    template = CARRIER_TRACKING_URLS.get(carrier_key(carrier))
    if not template or not tracking_number:
        return None
    return template.format(tracking=tracking_number)


def _validate_tracking_number(tracking_number: str | None) -> str | None:
    cleaned = (tracking_number or "").strip() or None
    if cleaned is None:
        return None
    if not _TRACKING_RE.match(cleaned):
        raise ValidationFailed("Invalid tracking number")
    return cleaned


async def get_order(session: AsyncSession, order_id: UUID) -> Order:
    order = await session.get(Order, order_id)
    if order is None:
        raise NotFound("Order")
    return order


async def reload_order(session: AsyncSession, order_id: UUID) -> Order:
    """Re-read the order with fresh items and events after a commit."""
    result = await session.execute(select(Order).where(Order.id == order_id).execution_options(populate_existing=True))
    return result.scalar_one()


async def get_order_by_number(session: AsyncSession, order_number: str) -> Order | None:
    result = await session.execute(select(Order).where(Order.order_number == order_number.strip()))
    return result.scalar_one_or_none()


async def list_orders(
    session: AsyncSession,
    *,
    mode: str | None = None,
    status: OrderStatus | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Order]:
    query = select(Order).order_by(Order.created_at.desc())
    if mode == "test":
        query = query.where(Order.is_test.is_(True))
    elif mode == "live":
        query = query.where(Order.is_test.is_(False))
    if status:
        query = query.where(Order.status == status)
    result = await session.execute(query.limit(limit).offset(offset))
    return list(result.scalars().all())


def build_timeline(order: Order) -> list[TimelineEntry]:
    """Customer-facing milestones derived from the order and its events."""
    status = OrderStatus(order.status)
    stamps: dict[str, object] = {}
    for evt in order.events or []:
        stamps.setdefault(evt.event, evt.created_at)

    paid = order.payment_status in _PAST_PAYMENT or status in _REACHED_PROCESSING
    processing = status in _REACHED_PROCESSING or order.shipped_at is not None
    timeline = [
        TimelineEntry(status="Order Placed", date=order.created_at, completed=True),
        TimelineEntry(status="Payment Confirmed", date=stamps.get("payment_captured") if paid else None, completed=paid),
        TimelineEntry(status="Processing", date=stamps.get("processing") if processing else None, completed=processing),
        TimelineEntry(status="Shipped", date=order.shipped_at, completed=order.shipped_at is not None),
        TimelineEntry(status="Delivered", date=order.delivered_at, completed=order.delivered_at is not None),
    ]
    if status == OrderStatus.disputed:
        timeline.append(TimelineEntry(status="Disputed", date=stamps.get("dispute_opened"), completed=True))
    if status == OrderStatus.failed:
        timeline.append(TimelineEntry(status="Payment Failed", date=stamps.get("payment_denied"), completed=True))
    if status in (OrderStatus.refunded, OrderStatus.partially_refunded):
        label = "Refunded" if status == OrderStatus.refunded else "Partially Refunded"
        timeline.append(TimelineEntry(status=label, date=order.refunded_at, completed=True))
    if status == OrderStatus.cancelled:
        timeline.append(TimelineEntry(status="Cancelled", date=order.cancelled_at, completed=True))
    return timeline


async def track_order(session: AsyncSession, order_number: str, email: str) -> OrderTrackingRead:
    order = await get_order_by_number(session, order_number)
    # A wrong email looks exactly like a missing order.
    if order is None or order.customer_email.lower() != (email or "").strip().lower():
        raise NotFound("Order")
    destination = ", ".join(part for part in (order.shipping_city, order.shipping_country) if part) or None
    return OrderTrackingRead(
        order_number=order.order_number,
        status=order.status,
        payment_status=order.payment_status,
        created_at=order.created_at,
        shipped_at=order.shipped_at,
        delivered_at=order.delivered_at,
        tracking_number=order.tracking_number,
        carrier=order.carrier,
        tracking_url=tracking_url(order.carrier, order.tracking_number),
        shipping_destination=destination,
        timeline=build_timeline(order),
    )


async def update_status(session: AsyncSession, order_id: UUID, payload: OrderStatusUpdate) -> Order:
    """Admin fulfillment step: processing, shipped, delivered or cancelled."""
    order = await session.get(Order, order_id, with_for_update=True, populate_existing=True)
    if order is None:
        raise NotFound("Order")
    target = OrderStatus(payload.status)
    now = utcnow()
    values: dict[str, object] = {}
    if target == OrderStatus.shipped:
        tracking_number = _validate_tracking_number(payload.tracking_number)
        if tracking_number:
            values["tracking_number"] = tracking_number
        if payload.carrier:
            values["carrier"] = payload.carrier.strip()
        values["shipped_at"] = now
    elif target == OrderStatus.delivered:
        values["delivered_at"] = now
    elif target == OrderStatus.cancelled:
        values["cancelled_at"] = now

    await order_state.transition(session, order, target, event=target.value, note=payload.note, values=values)
    if target == OrderStatus.cancelled:
        await inventory.restore_order_inventory(session, order, reason="order cancelled")
    await session.commit()
    logger.info(
        "order_fulfillment_updated",
        extra={"order_id": str(order.id), "order_number": order.order_number, "status": target.value},
    )
    return await reload_order(session, order.id)
