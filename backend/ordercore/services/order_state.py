"""Order status state machine.

Every status change goes through :func:`transition`, which is a
compare-and-set against the status the caller observed. Callers own the
surrounding transaction; nothing here commits.
"""

import logging
from typing import Any

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from ordercore.core.errors import ConflictError, InvalidTransition
from ordercore.db.base import utcnow
from ordercore.models.order import Order, OrderEvent, OrderStatus

logger = logging.getLogger(__name__)

_REFUND_TARGETS = {OrderStatus.refunded, OrderStatus.partially_refunded}

ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.pending: frozenset({OrderStatus.confirmed, OrderStatus.cancelled, OrderStatus.failed, OrderStatus.disputed}),
    OrderStatus.confirmed: frozenset(
        {OrderStatus.processing, OrderStatus.cancelled, OrderStatus.failed, OrderStatus.disputed, *_REFUND_TARGETS}
    ),
    OrderStatus.processing: frozenset(
        {OrderStatus.shipped, OrderStatus.cancelled, OrderStatus.failed, OrderStatus.disputed, *_REFUND_TARGETS}
    ),
    OrderStatus.shipped: frozenset({OrderStatus.delivered, OrderStatus.cancelled, OrderStatus.disputed, *_REFUND_TARGETS}),
    OrderStatus.delivered: frozenset({OrderStatus.disputed, *_REFUND_TARGETS}),
    OrderStatus.partially_refunded: frozenset({OrderStatus.cancelled, OrderStatus.disputed, *_REFUND_TARGETS}),
    OrderStatus.failed: frozenset({OrderStatus.disputed}),
    OrderStatus.disputed: frozenset({OrderStatus.confirmed, *_REFUND_TARGETS}),
    # A provider may reopen a settled transaction.
    OrderStatus.refunded: frozenset({OrderStatus.disputed}),
    OrderStatus.cancelled: frozenset(),
}


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def assert_transition(current: OrderStatus, target: OrderStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransition(current.value, target.value)


def record_event(session: AsyncSession, order: Order, event: str, note: str | None = None) -> OrderEvent:
    evt = OrderEvent(order_id=order.id, event=event, note=note)
    session.add(evt)
    return evt


async def transition(
    session: AsyncSession,
    order: Order,
    target: OrderStatus,
    *,
    expected: OrderStatus | None = None,
    event: str = "status_change",
    note: str | None = None,
    values: dict[str, Any] | None = None,
) -> Order:
    """Move ``order`` to ``target`` only if it is still in ``expected`` (default: its loaded status).

    ``values`` are written in the same UPDATE. Raises ``InvalidTransition`` when
    the table forbids the move and ``ConflictError`` when another writer changed
    the status first.
    """
    current = OrderStatus(expected or order.status)
    assert_transition(current, target)

    changes: dict[str, Any] = {"status": target, "updated_at": utcnow(), **(values or {})}
    result = await session.execute(
        update(Order)
        .where(Order.id == order.id, Order.status == current)
        .values(**changes)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.warning(
            "order_transition_conflict",
            extra={"order_id": str(order.id), "order_number": order.order_number, "expected": current.value, "target": target.value},
        )
        raise ConflictError(
            "Order status changed concurrently",
            data={"expected": current.value, "target": target.value},
        )

    for key, value in changes.items():
        set_committed_value(order, key, value)
    record_event(session, order, event, note or f"{current.value} -> {target.value}")
    logger.info(
        "order_transition",
        extra={"order_id": str(order.id), "order_number": order.order_number, "from": current.value, "to": target.value},
    )
    return order
