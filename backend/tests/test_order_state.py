import asyncio
from decimal import Decimal
from typing import Dict

import pytest
from sqlalchemy import select, update

from ordercore.core.errors import ConflictError, InvalidTransition
from ordercore.models.order import Order, OrderEvent, OrderStatus, PaymentMethod
from ordercore.services import order_state


@pytest.mark.parametrize(
    ("current", "target"),
    [
        (OrderStatus.pending, OrderStatus.confirmed),
        (OrderStatus.confirmed, OrderStatus.processing),
        (OrderStatus.processing, OrderStatus.shipped),
        (OrderStatus.shipped, OrderStatus.delivered),
        (OrderStatus.delivered, OrderStatus.partially_refunded),
        (OrderStatus.partially_refunded, OrderStatus.refunded),
        (OrderStatus.confirmed, OrderStatus.disputed),
        (OrderStatus.disputed, OrderStatus.confirmed),
        (OrderStatus.disputed, OrderStatus.refunded),
        (OrderStatus.refunded, OrderStatus.disputed),
        (OrderStatus.partially_refunded, OrderStatus.disputed),
        (OrderStatus.disputed, OrderStatus.partially_refunded),
    ],
)
def test_allowed_transitions(current: OrderStatus, target: OrderStatus) -> None:
    assert order_state.can_transition(current, target)
    order_state.assert_transition(current, target)


@pytest.mark.parametrize(
    ("current", "target"),
    [
        (OrderStatus.failed, OrderStatus.confirmed),
        (OrderStatus.cancelled, OrderStatus.confirmed),
        (OrderStatus.cancelled, OrderStatus.disputed),
        (OrderStatus.delivered, OrderStatus.cancelled),
        (OrderStatus.refunded, OrderStatus.partially_refunded),
        (OrderStatus.shipped, OrderStatus.processing),
        (OrderStatus.confirmed, OrderStatus.delivered),
    ],
)
def test_forbidden_transitions(current: OrderStatus, target: OrderStatus) -> None:
    assert not order_state.can_transition(current, target)
    with pytest.raises(InvalidTransition) as excinfo:
        order_state.assert_transition(current, target)
    assert excinfo.value.status_code == 409
    assert f"{current.value} -> {target.value}" in str(excinfo.value.detail)


def test_every_status_has_a_row() -> None:
    assert set(order_state.ALLOWED_TRANSITIONS) == set(OrderStatus)
    assert order_state.ALLOWED_TRANSITIONS[OrderStatus.cancelled] == frozenset()


def _new_order(**overrides) -> Order:
    data = {
        "order_number": "GEM-1700000000000-ABC123",
        "customer_email": "buyer@example.com",
        "subtotal": Decimal("100.00"),
        "total": Decimal("120.00"),
        "payment_method": PaymentMethod.stripe,
        "status": OrderStatus.confirmed,
    }
    data.update(overrides)
    return Order(**data)


def test_transition_writes_status_values_and_event(order_app: Dict[str, object]) -> None:
    session_factory = order_app["session_factory"]

    async def scenario():
        async with session_factory() as session:
            order = _new_order()
            session.add(order)
            await session.commit()

            await order_state.transition(
                session, order, OrderStatus.processing, event="processing", values={"carrier": "ups"}
            )
            await session.commit()
            assert order.status == OrderStatus.processing
            assert order.carrier == "ups"

        async with session_factory() as session:
            stored = await session.get(Order, order.id)
            events = (await session.execute(select(OrderEvent).where(OrderEvent.order_id == order.id))).scalars().all()
            return stored, events

    stored, events = asyncio.run(scenario())
    assert stored.status == OrderStatus.processing
    assert stored.carrier == "ups"
    assert [(evt.event, evt.note) for evt in events] == [("processing", "confirmed -> processing")]


def test_stale_status_is_a_conflict(order_app: Dict[str, object]) -> None:
    session_factory = order_app["session_factory"]

    async def scenario():
        async with session_factory() as session:
            order = _new_order()
            session.add(order)
            await session.commit()

            # Another writer moves the order while this copy still says confirmed.
            await session.execute(
                update(Order)
                .where(Order.id == order.id)
                .values(status=OrderStatus.disputed)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            assert order.status == OrderStatus.confirmed

            with pytest.raises(ConflictError) as excinfo:
                await order_state.transition(session, order, OrderStatus.processing)
            await session.rollback()

        async with session_factory() as session:
            stored = await session.get(Order, order.id)
            return excinfo.value, stored

    error, stored = asyncio.run(scenario())
    assert not isinstance(error, InvalidTransition)
    assert error.data == {"expected": "confirmed", "target": "processing"}
    assert stored.status == OrderStatus.disputed
