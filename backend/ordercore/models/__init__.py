from ordercore.db.base import Base  # noqa: F401
from ordercore.models.catalog import Product  # noqa: F401
from ordercore.models.loyalty import CustomerLoyalty, LoyaltyTier, LoyaltyTierHistory  # noqa: F401
from ordercore.models.order import Order, OrderEvent, OrderItem, OrderStatus, PaymentMethod, PaymentStatus  # noqa: F401
from ordercore.models.payment import Payment, PaymentProvider, PaymentRecordStatus  # noqa: F401
from ordercore.models.webhook import PaymentWebhookEvent  # noqa: F401
from ordercore.models.refund import RefundMethod, RefundReason, RefundRequest, RefundRequestStatus  # noqa: F401
from ordercore.models.store_credit import (  # noqa: F401
    StoreCreditAccount,
    StoreCreditSource,
    StoreCreditTransaction,
    StoreCreditTransactionType,
)

__all__ = [
    "Base",
    "Product",
    "CustomerLoyalty",
    "LoyaltyTier",
    "LoyaltyTierHistory",
    "Order",
    "OrderEvent",
    "OrderItem",
    "OrderStatus",
    "PaymentMethod",
    "PaymentStatus",
    "Payment",
    "PaymentProvider",
    "PaymentRecordStatus",
    "PaymentWebhookEvent",
    "RefundMethod",
    "RefundReason",
    "RefundRequest",
    "RefundRequestStatus",
    "StoreCreditAccount",
    "StoreCreditSource",
    "StoreCreditTransaction",
    "StoreCreditTransactionType",
]
