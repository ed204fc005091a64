from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ordercore.core.dependencies import AdminPrincipal, require_admin
from ordercore.core.errors import NotFound
from ordercore.db.session import get_session
from ordercore.models.store_credit import StoreCreditAccount, StoreCreditSource, StoreCreditTransactionType
from ordercore.schemas.store_credit import (
    StoreCreditAccountDetail,
    StoreCreditAccountRead,
    StoreCreditAdjustment,
    StoreCreditAudit,
    StoreCreditTransactionRead,
)
from ordercore.services import store_credit

router = APIRouter(prefix="/admin/store-credit", tags=["store-credit"])


async def _account_detail(session: AsyncSession, account: StoreCreditAccount) -> StoreCreditAccountDetail:
    audit = await store_credit.audit_account(session, account)
    return StoreCreditAccountDetail(
        account=StoreCreditAccountRead.model_validate(account),
        transactions=[StoreCreditTransactionRead.model_validate(txn) for txn in account.transactions],
        audit=StoreCreditAudit(
            email=audit.email,
            balance=audit.balance,
            ledger_balance=audit.ledger_balance,
            consistent=audit.consistent,
        ),
    )


@router.get("/{email}", response_model=StoreCreditAccountDetail)
async def get_store_credit_account(
    email: str,
    session: AsyncSession = Depends(get_session),
    _: AdminPrincipal = Depends(require_admin),
) -> StoreCreditAccountDetail:
    account = await store_credit.get_account(session, email)
    if account is None:
        raise NotFound("Store credit account")
    return await _account_detail(session, account)


@router.post("/{email}/adjustments", response_model=StoreCreditAccountDetail)
async def adjust_store_credit(
    email: str,
    payload: StoreCreditAdjustment,
    session: AsyncSession = Depends(get_session),
    admin: AdminPrincipal = Depends(require_admin),
) -> StoreCreditAccountDetail:
    description = payload.description or f"Manual adjustment by {admin.email or admin.id}"
    if payload.type == StoreCreditTransactionType.earn:
        txn = await store_credit.earn(
            session, email, payload.amount, source=StoreCreditSource.admin_adjustment, description=description
        )
    else:
        txn = await store_credit.spend(
            session, email, payload.amount, source=StoreCreditSource.admin_adjustment, description=description
        )
    await session.commit()
    return await _account_detail(session, txn.account)
