from datetime import datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from ordercore.models.order import OrderStatus, PaymentMethod, PaymentStatus
from ordercore.models.payment import PaymentProvider, PaymentRecordStatus


class OrderItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    product_id: UUID | None = None
    name: str
    quantity: int
    unit_price: Decimal
    line_total: Decimal


class OrderEventRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    event: str
    note: str | None = None
    created_at: datetime


class OrderRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_number: str
    user_id: str | None = None
    customer_email: str
    customer_name: str | None = None
    customer_phone: str | None = None
    shipping_address_line1: str | None = None
    shipping_address_line2: str | None = None
    shipping_city: str | None = None
    shipping_province: str | None = None
    shipping_postal_code: str | None = None
    shipping_country: str | None = None
    subtotal: Decimal
    shipping_cost: Decimal
    tax_amount: Decimal
    discount_amount: Decimal
    total: Decimal
    refunded_amount: Decimal
    currency: str
    status: OrderStatus
    payment_status: PaymentStatus
    payment_method: PaymentMethod
    provider_payment_reference: str | None = None
    is_test: bool
    tracking_number: str | None = None
    carrier: str | None = None
    created_at: datetime
    updated_at: datetime
    shipped_at: datetime | None = None
    delivered_at: datetime | None = None
    cancelled_at: datetime | None = None
    refunded_at: datetime | None = None
    items: list[OrderItemRead] = Field(default_factory=list)
    events: list[OrderEventRead] = Field(default_factory=list)


class OrderCreatedResponse(BaseModel):
    order: OrderRead


class PaymentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    provider: PaymentProvider
    provider_payment_id: str | None = None
    amount: Decimal
    currency: str
    status: PaymentRecordStatus
    refund_amount: Decimal
    refund_reason: str | None = None
    refunded_at: datetime | None = None


class TimelineEntry(BaseModel):
    status: str
    date: datetime | None = None
    completed: bool


class OrderTrackingRead(BaseModel):
    order_number: str
    status: OrderStatus
    payment_status: PaymentStatus
    created_at: datetime
    shipped_at: datetime | None = None
    delivered_at: datetime | None = None
    tracking_number: str | None = None
    carrier: str | None = None
    tracking_url: str | None = None
    shipping_destination: str | None = None
    timeline: list[TimelineEntry] = Field(default_factory=list)


class OrderStatusUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: Literal["processing", "shipped", "delivered", "cancelled"]
    tracking_number: str | None = Field(default=None, alias="trackingNumber", max_length=80)
    carrier: str | None = Field(default=None, max_length=40)
    note: str | None = Field(default=None, max_length=500)
