"""Cart submission payload as posted by the storefront checkout.

Every field is optional at the schema level: presence and format checks run
in a fixed order inside the intake service so the first missing piece is the
one reported.
"""

from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class CustomerInfo(_CamelModel):
    email: str | None = None
    first_name: str | None = Field(default=None, alias="firstName")
    last_name: str | None = Field(default=None, alias="lastName")
    address: str | None = None
    apartment: str | None = None
    city: str | None = None
    state: str | None = None
    zip_code: str | None = Field(default=None, alias="zipCode")
    country: str | None = None
    phone: str | None = None


class PaymentDescriptor(_CamelModel):
    payment_method: str | None = Field(default=None, alias="paymentMethod")
    payment_intent_id: str | None = Field(default=None, alias="paymentIntentId")
    capture_id: str | None = Field(default=None, alias="captureID")
    transaction_id: str | None = Field(default=None, alias="transactionId")
    currency: str | None = None
    livemode: bool | None = None
    network: str | None = None
    crypto_type: str | None = Field(default=None, alias="cryptoType")
    crypto_amount: Decimal | None = Field(default=None, alias="cryptoAmount")
    crypto_currency: str | None = Field(default=None, alias="cryptoCurrency")
    wallet_address: str | None = Field(default=None, alias="walletAddress")

    @property
    def reference(self) -> str | None:
        return self.payment_intent_id or self.capture_id or self.transaction_id


class Totals(_CamelModel):
    subtotal: Decimal | None = None
    shipping: Decimal | None = None
    tax: Decimal | None = None
    discount: Decimal | None = None
    total: Decimal | None = None


class CartLine(_CamelModel):
    id: str | None = None
    name: str | None = None
    price: Decimal | None = None
    quantity: int | None = None


class CartSubmission(_CamelModel):
    customer_info: CustomerInfo | None = Field(default=None, alias="customerInfo")
    payment: PaymentDescriptor | None = None
    totals: Totals | None = None
    items: list[CartLine] | None = None
