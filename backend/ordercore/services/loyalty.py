"""Customer loyalty: lifetime spend and tier, fed by confirmed payments.

Each order counts once (``Order.loyalty_recorded_at`` is the claim marker),
so a re-delivered or second success notification never inflates spend.
"""

import logging
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from ordercore.db.base import utcnow
from ordercore.models.loyalty import CustomerLoyalty, LoyaltyTier, LoyaltyTierHistory
from ordercore.models.order import Order

logger = logging.getLogger(__name__)

_ZERO = Decimal("0.00")

DEFAULT_TIERS: tuple[dict, ...] = (
    {"name": "Bronze", "slug": "bronze", "min_spend": Decimal("0"), "discount_percent": Decimal("0"), "free_shipping": False, "sort_order": 0, "is_default": True},
    {"name": "Silver", "slug": "silver", "min_spend": Decimal("500"), "discount_percent": Decimal("5"), "free_shipping": False, "sort_order": 1, "is_default": False},
    {"name": "Gold", "slug": "gold", "min_spend": Decimal("2000"), "discount_percent": Decimal("10"), "free_shipping": True, "sort_order": 2, "is_default": False},
    {"name": "Platinum", "slug": "platinum", "min_spend": Decimal("5000"), "discount_percent": Decimal("15"), "free_shipping": True, "sort_order": 3, "is_default": False},
)


def _normalize_email(email: str) -> str:
    return (email or "").strip().lower()


async def active_tiers(session: AsyncSession) -> list[LoyaltyTier]:
    result = await session.execute(
        select(LoyaltyTier).where(LoyaltyTier.is_active.is_(True)).order_by(LoyaltyTier.min_spend, LoyaltyTier.sort_order)
    )
    return list(result.scalars().all())


def calculate_tier(lifetime_spend: Decimal, tiers: list[LoyaltyTier]) -> LoyaltyTier | None:
    """Highest tier whose threshold the spend reaches; ``tiers`` must be sorted by ``min_spend``."""
    qualified: LoyaltyTier | None = None
    for tier in tiers:
        if lifetime_spend >= Decimal(tier.min_spend):
            qualified = tier
    return qualified or (tiers[0] if tiers else None)


async def seed_default_tiers(session: AsyncSession) -> int:
    existing = set((await session.execute(select(LoyaltyTier.slug))).scalars().all())
    created = 0
    for values in DEFAULT_TIERS:
        if values["slug"] in existing:
            continue
        session.add(LoyaltyTier(**values))
        created += 1
    await session.commit()
    return created


async def _lock_customer(session: AsyncSession, email: str) -> CustomerLoyalty | None:
    result = await session.execute(
        select(CustomerLoyalty)
        .where(CustomerLoyalty.email == email)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _get_or_create_customer(session: AsyncSession, email: str, user_id: str | None) -> CustomerLoyalty:
    customer = await _lock_customer(session, email)
    if customer is not None:
        return customer
    customer = CustomerLoyalty(
        email=email, user_id=user_id, lifetime_spend=_ZERO, year_to_date_spend=_ZERO, total_orders=0, history=[]
    )
    try:
        async with session.begin_nested():
            session.add(customer)
    except IntegrityError:
        customer = await _lock_customer(session, email)
        if customer is None:
            raise
    return customer


async def get_customer(session: AsyncSession, email: str) -> CustomerLoyalty | None:
    result = await session.execute(select(CustomerLoyalty).where(CustomerLoyalty.email == _normalize_email(email)))
    return result.scalar_one_or_none()


async def record_order_spend(session: AsyncSession, order: Order) -> CustomerLoyalty | None:
    """Add a paid order to its customer's spend and re-tier them.

    Returns None when this order was already counted. Runs inside the
    caller's transaction and does not commit.
    """
    now = utcnow()
    claimed = await session.execute(
        update(Order)
        .where(Order.id == order.id, Order.loyalty_recorded_at.is_(None))
        .values(loyalty_recorded_at=now)
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1:
        logger.info("loyalty_already_recorded", extra={"order_id": str(order.id), "order_number": order.order_number})
        return None
    set_committed_value(order, "loyalty_recorded_at", now)

    amount = Decimal(order.total)
    customer = await _get_or_create_customer(session, _normalize_email(order.customer_email), order.user_id)
    last_update = customer.updated_at
    if last_update is not None and last_update.year != now.year:
        customer.year_to_date_spend = _ZERO
    customer.lifetime_spend = Decimal(customer.lifetime_spend or 0) + amount
    customer.year_to_date_spend = Decimal(customer.year_to_date_spend or 0) + amount
    customer.total_orders = int(customer.total_orders or 0) + 1
    customer.user_id = order.user_id or customer.user_id

    tiers = await active_tiers(session)
    new_tier = calculate_tier(customer.lifetime_spend, tiers)
    if new_tier is not None and new_tier.id != customer.tier_id:
        if customer.tier_id is None:
            reason = "new_customer"
        else:
            previous_min = next((Decimal(t.min_spend) for t in tiers if t.id == customer.tier_id), _ZERO)
            reason = "upgrade" if Decimal(new_tier.min_spend) > previous_min else "downgrade"
        customer.history.append(
            LoyaltyTierHistory(
                previous_tier_name=customer.tier_name,
                new_tier_name=new_tier.name,
                reason=reason,
                lifetime_spend_at_change=customer.lifetime_spend,
                order_id=order.id,
            )
        )
        logger.info(
            "loyalty_tier_changed",
            extra={
                "order_id": str(order.id),
                "order_number": order.order_number,
                "from": customer.tier_name,
                "to": new_tier.name,
                "reason": reason,
            },
        )
        customer.tier_id = new_tier.id
        customer.tier_name = new_tier.name
        customer.last_tier_change = now
    await session.flush()
    return customer
