from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class LoyaltyTierHistoryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    previous_tier_name: str | None = None
    new_tier_name: str | None = None
    reason: str
    lifetime_spend_at_change: Decimal
    order_id: UUID | None = None
    created_at: datetime


class CustomerLoyaltyRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    email: str
    user_id: str | None = None
    tier_name: str | None = None
    lifetime_spend: Decimal
    year_to_date_spend: Decimal
    total_orders: int
    last_tier_change: datetime | None = None
    history: list[LoyaltyTierHistoryRead] = Field(default_factory=list)
