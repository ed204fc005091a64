from fastapi import APIRouter

from ordercore.api.v1 import loyalty
from ordercore.api.v1 import orders
from ordercore.api.v1 import payments
from ordercore.api.v1 import refunds
from ordercore.api.v1 import store_credit
from ordercore.core.metrics import snapshot as metrics_snapshot

api_router = APIRouter()

api_router.include_router(orders.router)
api_router.include_router(payments.router)
api_router.include_router(refunds.router)
api_router.include_router(store_credit.router)
api_router.include_router(loyalty.router)


@api_router.get("/health", tags=["health"])
def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@api_router.get("/metrics", tags=["metrics"])
def metrics() -> dict:
    return metrics_snapshot()
