from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ordercore.core.dependencies import AdminPrincipal, require_admin
from ordercore.core.errors import NotFound
from ordercore.db.session import get_session
from ordercore.schemas.loyalty import CustomerLoyaltyRead
from ordercore.services import loyalty

router = APIRouter(prefix="/admin/loyalty", tags=["loyalty"])


@router.get("/{email}", response_model=CustomerLoyaltyRead)
async def get_customer_loyalty(
    email: str,
    session: AsyncSession = Depends(get_session),
    _: AdminPrincipal = Depends(require_admin),
) -> CustomerLoyaltyRead:
    customer = await loyalty.get_customer(session, email)
    if customer is None:
        raise NotFound("Loyalty record")
    return CustomerLoyaltyRead.model_validate(customer)
