"""Store-credit ledger.

The transaction rows are the source of truth; ``StoreCreditAccount.balance``
is a projection kept in step inside the same transaction. Every mutation
locks the account row first so concurrent earns/spends for one customer are
serialized.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

from sqlalchemy import case, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ordercore.core.errors import ConflictError, NotFound, ValidationFailed
from ordercore.models.store_credit import (
    StoreCreditAccount,
    StoreCreditSource,
    StoreCreditTransaction,
    StoreCreditTransactionType,
)

logger = logging.getLogger(__name__)

_ZERO = Decimal("0.00")


@dataclass(frozen=True)
class LedgerAudit:
    email: str
    balance: Decimal
    ledger_balance: Decimal

    @property
    def consistent(self) -> bool:
        return self.balance == self.ledger_balance


def _normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def _positive(amount: Decimal) -> Decimal:
    value = Decimal(amount).quantize(Decimal("0.01"))
    if value <= 0:
        raise ValidationFailed("Store credit amount must be positive")
    return value


async def _lock_account(session: AsyncSession, email: str) -> StoreCreditAccount | None:
    result = await session.execute(
        select(StoreCreditAccount)
        .where(StoreCreditAccount.email == email)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_or_create_account(session: AsyncSession, email: str, *, user_id: str | None = None) -> StoreCreditAccount:
    """Fetch the account for ``email`` locked for update, creating it if needed."""
    normalized = _normalize_email(email)
    account = await _lock_account(session, normalized)
    if account is not None:
        return account
    account = StoreCreditAccount(
        email=normalized, user_id=user_id, balance=_ZERO, total_earned=_ZERO, total_used=_ZERO, transactions=[]
    )
    try:
        async with session.begin_nested():
            session.add(account)
    except IntegrityError:
        # Created concurrently; the winner's row is what we lock.
        account = await _lock_account(session, normalized)
        if account is None:
            raise
    return account


async def ledger_balance(session: AsyncSession, account_id: UUID) -> Decimal:
    signed = case(
        (StoreCreditTransaction.type == StoreCreditTransactionType.spend, -StoreCreditTransaction.amount),
        else_=StoreCreditTransaction.amount,
    )
    result = await session.execute(
        select(func.coalesce(func.sum(signed), 0)).where(StoreCreditTransaction.account_id == account_id)
    )
    return Decimal(str(result.scalar_one() or 0)).quantize(Decimal("0.01"))


async def _append(
    session: AsyncSession,
    account: StoreCreditAccount,
    *,
    kind: StoreCreditTransactionType,
    amount: Decimal,
    source: StoreCreditSource,
    source_id: UUID | None,
    order_id: UUID | None,
    description: str | None,
) -> StoreCreditTransaction:
    current = await ledger_balance(session, account.id)
    delta = amount if kind == StoreCreditTransactionType.earn else -amount
    balance_after = current + delta
    if balance_after < 0:
        raise ConflictError(
            "Insufficient store credit",
            data={"balance": str(current), "requested": str(amount)},
        )
    txn = StoreCreditTransaction(
        type=kind,
        amount=amount,
        balance_after=balance_after,
        source=source,
        source_id=source_id,
        order_id=order_id,
        description=description,
    )
    account.transactions.append(txn)
    account.balance = balance_after
    if kind == StoreCreditTransactionType.earn:
        account.total_earned = Decimal(account.total_earned or 0) + amount
    else:
        account.total_used = Decimal(account.total_used or 0) + amount
    await session.flush()
    logger.info(
        "store_credit_transaction",
        extra={
            "email": account.email,
            "type": kind.value,
            "amount": str(amount),
            "balance_after": str(balance_after),
            "order_id": str(order_id) if order_id else None,
        },
    )
    return txn


async def earn(
    session: AsyncSession,
    email: str,
    amount: Decimal,
    *,
    source: StoreCreditSource = StoreCreditSource.order_refund,
    source_id: UUID | None = None,
    order_id: UUID | None = None,
    user_id: str | None = None,
    description: str | None = None,
) -> StoreCreditTransaction:
    account = await get_or_create_account(session, email, user_id=user_id)
    return await _append(
        session,
        account,
        kind=StoreCreditTransactionType.earn,
        amount=_positive(amount),
        source=source,
        source_id=source_id,
        order_id=order_id,
        description=description,
    )


async def spend(
    session: AsyncSession,
    email: str,
    amount: Decimal,
    *,
    source: StoreCreditSource = StoreCreditSource.admin_adjustment,
    source_id: UUID | None = None,
    order_id: UUID | None = None,
    description: str | None = None,
) -> StoreCreditTransaction:
    account = await _lock_account(session, _normalize_email(email))
    if account is None:
        raise NotFound("Store credit account")
    return await _append(
        session,
        account,
        kind=StoreCreditTransactionType.spend,
        amount=_positive(amount),
        source=source,
        source_id=source_id,
        order_id=order_id,
        description=description,
    )


async def get_account(session: AsyncSession, email: str) -> StoreCreditAccount | None:
    result = await session.execute(
        select(StoreCreditAccount).where(StoreCreditAccount.email == _normalize_email(email))
    )
    return result.scalar_one_or_none()


async def audit_account(session: AsyncSession, account: StoreCreditAccount) -> LedgerAudit:
    ledger = await ledger_balance(session, account.id)
    audit = LedgerAudit(email=account.email, balance=Decimal(account.balance).quantize(Decimal("0.01")), ledger_balance=ledger)
    if not audit.consistent:
        logger.error(
            "store_credit_ledger_mismatch",
            extra={"email": account.email, "balance": str(audit.balance), "ledger_balance": str(ledger)},
        )
    return audit


async def audit_all(session: AsyncSession) -> list[LedgerAudit]:
    result = await session.execute(select(StoreCreditAccount).order_by(StoreCreditAccount.email))
    return [await audit_account(session, account) for account in result.scalars().all()]
