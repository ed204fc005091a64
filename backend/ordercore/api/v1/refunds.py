from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from ordercore.core.dependencies import AdminPrincipal, require_admin
from ordercore.db.session import get_session
from ordercore.models.refund import RefundMethod, RefundRequestStatus
from ordercore.schemas.order import OrderRead, PaymentRead
from ordercore.schemas.refund import RefundDecision, RefundRequestCreate, RefundRequestDetail, RefundRequestRead
from ordercore.services import email as email_service
from ordercore.services import orders as order_service
from ordercore.services import settlement, store_credit

router = APIRouter(tags=["refunds"])


@router.post("/refund-requests", response_model=RefundRequestRead, status_code=status.HTTP_201_CREATED)
async def create_refund_request(
    payload: RefundRequestCreate,
    session: AsyncSession = Depends(get_session),
):
    return await settlement.create_refund_request(session, payload)


@router.get("/refund-requests", response_model=list[RefundRequestRead])
async def list_my_refund_requests(
    email: str | None = Query(default=None),
    order_id: UUID | None = Query(default=None, alias="orderId"),
    session: AsyncSession = Depends(get_session),
):
    return await settlement.list_for_customer(session, email=email, order_id=order_id)


@router.get("/admin/refund-requests", response_model=list[RefundRequestRead])
async def admin_list_refund_requests(
    status_filter: RefundRequestStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    session: AsyncSession = Depends(get_session),
    _: AdminPrincipal = Depends(require_admin),
):
    return await settlement.list_requests(session, status=status_filter, limit=limit, offset=offset)


async def _detail(session: AsyncSession, request) -> RefundRequestDetail:
    order = await order_service.reload_order(session, request.order_id)
    payment = await settlement.get_payment(session, request.order_id)
    return RefundRequestDetail(
        **RefundRequestRead.model_validate(request).model_dump(),
        order=OrderRead.model_validate(order),
        payment=PaymentRead.model_validate(payment) if payment is not None else None,
    )


@router.get("/admin/refund-requests/{request_id}", response_model=RefundRequestDetail)
async def admin_get_refund_request(
    request_id: UUID,
    session: AsyncSession = Depends(get_session),
    _: AdminPrincipal = Depends(require_admin),
) -> RefundRequestDetail:
    request = await settlement.get_request(session, request_id)
    return await _detail(session, request)


@router.put("/admin/refund-requests/{request_id}", response_model=RefundRequestDetail)
async def admin_decide_refund_request(
    request_id: UUID,
    payload: RefundDecision,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_session),
    admin: AdminPrincipal = Depends(require_admin),
) -> RefundRequestDetail:
    request = await settlement.decide(session, request_id, payload, admin)
    detail = await _detail(session, request)
    if request.status == RefundRequestStatus.refunded:
        detail_order = await order_service.get_order(session, request.order_id)
        balance = None
        if request.refund_method == RefundMethod.store_credit:
            account = await store_credit.get_account(session, request.customer_email)
            balance = account.balance if account is not None else None
        background_tasks.add_task(
            email_service.send_refund_processed,
            email_service.order_context(detail_order),
            amount=request.approved_amount,
            method=RefundMethod(request.refund_method).value,
            balance=balance,
        )
    return detail
