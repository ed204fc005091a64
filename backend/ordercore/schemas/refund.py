from datetime import datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from ordercore.models.refund import RefundMethod, RefundReason, RefundRequestStatus
from ordercore.schemas.order import OrderRead, PaymentRead, TimelineEntry


class RefundRequestCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_id: UUID = Field(alias="orderId")
    email: str = Field(min_length=3, max_length=255)
    reason: RefundReason
    reason_details: str | None = Field(default=None, alias="reasonDetails", max_length=2000)
    requested_amount: Decimal | None = Field(default=None, alias="requestedAmount", gt=0)
    refund_method: RefundMethod | None = Field(default=None, alias="refundMethod")


class RefundDecision(BaseModel):
    """Admin decision on a refund request."""

    model_config = ConfigDict(populate_by_name=True)

    status: Literal["approved", "denied", "refunded"]
    admin_notes: str | None = Field(default=None, alias="adminNotes", max_length=2000)
    denial_reason: str | None = Field(default=None, alias="denialReason", max_length=2000)
    approved_amount: Decimal | None = Field(default=None, alias="approvedAmount", gt=0)
    refund_method: RefundMethod | None = Field(default=None, alias="refundMethod")


class RefundRequestRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_id: UUID
    order_number: str
    customer_email: str
    customer_name: str | None = None
    reason: RefundReason
    reason_details: str | None = None
    requested_amount: Decimal
    approved_amount: Decimal | None = None
    refund_method: RefundMethod | None = None
    status: RefundRequestStatus
    reviewed_by: str | None = None
    reviewed_by_email: str | None = None
    reviewed_at: datetime | None = None
    admin_notes: str | None = None
    denial_reason: str | None = None
    provider_refund_id: str | None = None
    refunded_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class RefundRequestDetail(RefundRequestRead):
    order: OrderRead
    payment: PaymentRead | None = None


class AdminOrderDetail(BaseModel):
    order: OrderRead
    payment: PaymentRead | None = None
    refund_requests: list[RefundRequestRead] = Field(default_factory=list)
    timeline: list[TimelineEntry] = Field(default_factory=list)
