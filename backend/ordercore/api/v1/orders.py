from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from ordercore.core.config import settings
from ordercore.core.dependencies import AdminPrincipal, require_admin
from ordercore.core.rate_limit import client_ip, per_identifier_limiter
from ordercore.core.security import decode_token
from ordercore.db.session import get_session
from ordercore.models.order import OrderStatus
from ordercore.schemas.checkout import CartSubmission
from ordercore.schemas.order import OrderCreatedResponse, OrderRead, OrderStatusUpdate, OrderTrackingRead, PaymentRead
from ordercore.schemas.refund import AdminOrderDetail, RefundRequestRead
from ordercore.services import email as email_service
from ordercore.services import intake
from ordercore.services import orders as order_service
from ordercore.services import settlement

router = APIRouter(tags=["orders"])


def _intake_limit(request: Request) -> int:
    authorization = (request.headers.get("authorization") or "").strip()
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        payload = decode_token(token.strip())
        if payload and payload.get("type") == "access" and payload.get("sub"):
            return settings.intake_rate_limit_authenticated
    return settings.intake_rate_limit_anonymous


intake_rate_limit = per_identifier_limiter(
    client_ip,
    _intake_limit,
    settings.intake_rate_limit_window_seconds,
    key="orders:intake",
)


@router.post("/orders", response_model=OrderCreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_order(
    payload: CartSubmission,
    background_tasks: BackgroundTasks,
    mode: str | None = Query(default=None),
    x_system_mode: str | None = Header(default=None),
    session: AsyncSession = Depends(get_session),
    _: None = Depends(intake_rate_limit),
) -> OrderCreatedResponse:
    result = await intake.create_order(session, payload, mode_override=x_system_mode or mode)
    context = email_service.order_context(result.order, shortfalls=result.shortfalls)
    background_tasks.add_task(email_service.send_order_confirmation, context)
    background_tasks.add_task(email_service.send_admin_new_order, context)
    return OrderCreatedResponse(order=OrderRead.model_validate(result.order))


@router.get("/orders/track", response_model=OrderTrackingRead)
async def track_order(
    order_number: str = Query(alias="orderNumber", min_length=1),
    email: str = Query(min_length=3),
    session: AsyncSession = Depends(get_session),
) -> OrderTrackingRead:
    return await order_service.track_order(session, order_number, email)


@router.get("/admin/orders", response_model=list[OrderRead])
async def admin_list_orders(
    mode: str | None = Query(default=None, pattern="^(live|test)$"),
    status_filter: OrderStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    session: AsyncSession = Depends(get_session),
    _: AdminPrincipal = Depends(require_admin),
):
    return await order_service.list_orders(session, mode=mode, status=status_filter, limit=limit, offset=offset)


@router.get("/admin/orders/{order_id}", response_model=AdminOrderDetail)
async def admin_get_order(
    order_id: UUID,
    session: AsyncSession = Depends(get_session),
    _: AdminPrincipal = Depends(require_admin),
) -> AdminOrderDetail:
    order = await order_service.get_order(session, order_id)
    payment = await settlement.get_payment(session, order.id)
    requests = await settlement.list_for_customer(session, order_id=order.id)
    return AdminOrderDetail(
        order=OrderRead.model_validate(order),
        payment=PaymentRead.model_validate(payment) if payment is not None else None,
        refund_requests=[RefundRequestRead.model_validate(item) for item in requests],
        timeline=order_service.build_timeline(order),
    )


@router.post("/admin/orders/{order_id}/status", response_model=OrderRead)
async def admin_update_status(
    order_id: UUID,
    payload: OrderStatusUpdate,
    session: AsyncSession = Depends(get_session),
    _: AdminPrincipal = Depends(require_admin),
):
    return await order_service.update_status(session, order_id, payload)
