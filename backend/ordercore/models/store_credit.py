import enum
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, Enum, ForeignKey, Numeric, String, Text, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ordercore.db.base import Base, utcnow


class StoreCreditTransactionType(str, enum.Enum):
    earn = "earn"
    spend = "spend"


class StoreCreditSource(str, enum.Enum):
    order_refund = "order_refund"
    admin_adjustment = "admin_adjustment"


class StoreCreditAccount(Base):
    __tablename__ = "store_credit_accounts"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    # Cached projection of the transaction ledger.
    balance: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    total_earned: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    total_used: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False
    )

    transactions: Mapped[list["StoreCreditTransaction"]] = relationship(
        "StoreCreditTransaction",
        back_populates="account",
        lazy="selectin",
        order_by="StoreCreditTransaction.created_at",
    )


class StoreCreditTransaction(Base):
    __tablename__ = "store_credit_transactions"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("store_credit_accounts.id"), nullable=False, index=True
    )
    type: Mapped[StoreCreditTransactionType] = mapped_column(
        Enum(StoreCreditTransactionType, name="store_credit_transaction_type"), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    source: Mapped[StoreCreditSource] = mapped_column(Enum(StoreCreditSource, name="store_credit_source"), nullable=False)
    source_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    order_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), ForeignKey("orders.id"), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    account: Mapped[StoreCreditAccount] = relationship("StoreCreditAccount", back_populates="transactions")
