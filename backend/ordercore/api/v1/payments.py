from fastapi import APIRouter, BackgroundTasks, Depends, Header, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from ordercore.db.session import get_session
from ordercore.services import email as email_service
from ordercore.services import payments, paypal, reconciler
from ordercore.services.payment_events import canonicalize
from ordercore.services.reconciler import ReconcileResult

router = APIRouter(prefix="/payments", tags=["payments"])


def _schedule_notification(background_tasks: BackgroundTasks, result: ReconcileResult) -> None:
    if result.status != "applied" or result.order is None or result.notify is None:
        return
    context = email_service.order_context(result.order)
    if result.notify == "payment_failed":
        background_tasks.add_task(email_service.send_payment_failed, context)
    elif result.notify == "refund_processed":
        background_tasks.add_task(
            email_service.send_refund_processed,
            context,
            amount=result.order.refunded_amount,
            method="original_payment",
        )


def _response(provider: str, event_id: str, event_type: str, result: ReconcileResult) -> dict:
    body = {"received": True, "provider": provider, "event_id": event_id, "type": event_type, "status": result.status}
    if result.detail:
        body["detail"] = result.detail
    return body


@router.post("/stripe/webhook", status_code=status.HTTP_200_OK)
async def stripe_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    stripe_signature: str | None = Header(default=None),
    session: AsyncSession = Depends(get_session),
) -> dict:
    payload = await request.body()
    event = canonicalize("stripe", payments.verify_webhook(payload, stripe_signature))
    result = await reconciler.reconcile(session, event)
    _schedule_notification(background_tasks, result)
    return _response("stripe", event.event_id, event.event_type, result)


@router.post("/paypal/webhook", status_code=status.HTTP_200_OK)
async def paypal_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_session),
) -> dict:
    payload = await request.body()
    event = canonicalize("paypal", await paypal.verify_webhook(payload, dict(request.headers)))
    result = await reconciler.reconcile(session, event)
    _schedule_notification(background_tasks, result)
    return _response("paypal", event.event_id, event.event_type, result)
