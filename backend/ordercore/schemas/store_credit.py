from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from ordercore.models.store_credit import StoreCreditSource, StoreCreditTransactionType


class StoreCreditTransactionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    type: StoreCreditTransactionType
    amount: Decimal
    balance_after: Decimal
    source: StoreCreditSource
    source_id: UUID | None = None
    order_id: UUID | None = None
    description: str | None = None
    created_at: datetime


class StoreCreditAccountRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    email: str
    user_id: str | None = None
    balance: Decimal
    total_earned: Decimal
    total_used: Decimal
    created_at: datetime
    updated_at: datetime


class StoreCreditAudit(BaseModel):
    email: str
    balance: Decimal
    ledger_balance: Decimal
    consistent: bool


class StoreCreditAccountDetail(BaseModel):
    account: StoreCreditAccountRead
    transactions: list[StoreCreditTransactionRead] = Field(default_factory=list)
    audit: StoreCreditAudit


class StoreCreditAdjustment(BaseModel):
    type: StoreCreditTransactionType
    amount: Decimal = Field(gt=0, decimal_places=2)
    description: str | None = Field(default=None, max_length=500)
