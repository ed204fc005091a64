import logging
from collections import defaultdict
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from ordercore.core.errors import InsufficientInventory, NotFound
from ordercore.db.base import utcnow
from ordercore.models.catalog import Product
from ordercore.models.order import Order, OrderItem
from ordercore.services.order_state import record_event

logger = logging.getLogger(__name__)


async def check_availability(session: AsyncSession, requested: list[tuple[UUID, int]]) -> dict[UUID, Product]:
    """Read stock for every requested product and fail on any shortfall.

    Quantities for the same product are summed. Unknown products raise
    ``NotFound``; all shortfalls are reported together.
    """
    wanted: dict[UUID, int] = defaultdict(int)
    for product_id, quantity in requested:
        wanted[product_id] += quantity
    if not wanted:
        return {}

    result = await session.execute(select(Product).where(Product.id.in_(list(wanted))))
    products = {product.id: product for product in result.scalars()}

    insufficient: list[dict] = []
    for product_id, quantity in wanted.items():
        product = products.get(product_id)
        if product is None:
            raise NotFound("Product", data={"product_id": str(product_id)})
        available = int(product.inventory or 0)
        if available < quantity:
            insufficient.append(
                {"id": str(product_id), "name": product.name, "requested": quantity, "available": available}
            )
    if insufficient:
        raise InsufficientInventory(insufficient)
    return products


async def decrement(session: AsyncSession, product_id: UUID, quantity: int) -> bool:
    """Atomically subtract ``quantity`` if at least that much is available."""
    result = await session.execute(
        update(Product)
        .where(Product.id == product_id, Product.inventory >= quantity)
        .values(inventory=Product.inventory - quantity, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def increment(session: AsyncSession, product_id: UUID, quantity: int) -> bool:
    result = await session.execute(
        update(Product)
        .where(Product.id == product_id)
        .values(inventory=Product.inventory + quantity, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def reserve_line(session: AsyncSession, item_id: UUID, product_id: UUID, quantity: int) -> bool:
    """Take stock for one order line and mark the line as holding it."""
    if not await decrement(session, product_id, quantity):
        return False
    await session.execute(
        update(OrderItem)
        .where(OrderItem.id == item_id, OrderItem.inventory_reserved.is_(False))
        .values(inventory_reserved=True)
        .execution_options(synchronize_session=False)
    )
    return True


async def restore_order_inventory(session: AsyncSession, order: Order, *, reason: str) -> bool:
    """Give back the stock this order actually took, at most once per order.

    Lines whose decrement never happened are skipped, and so are products
    that no longer exist. Deactivated products are restocked like any other.
    Returns False when the order was already restored.
    """
    now = utcnow()
    claimed = await session.execute(
        update(Order)
        .where(Order.id == order.id, Order.inventory_restored_at.is_(None))
        .values(inventory_restored_at=now)
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1:
        logger.info("inventory_already_restored", extra={"order_id": str(order.id), "order_number": order.order_number})
        return False
    set_committed_value(order, "inventory_restored_at", now)

    restored = 0
    for item in order.items:
        if item.product_id is None or not item.inventory_reserved:
            continue
        if await increment(session, item.product_id, item.quantity):
            restored += item.quantity
        else:
            logger.warning(
                "inventory_restore_missing_product",
                extra={"order_id": str(order.id), "order_number": order.order_number, "product_id": str(item.product_id)},
            )
    record_event(session, order, "inventory_restored", f"{restored} unit(s) restocked ({reason})")
    return True
