import logging
import secrets
import string
import time
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from uuid import UUID

from email_validator import EmailNotValidError, validate_email
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ordercore.core import metrics
from ordercore.core.config import settings
from ordercore.core.errors import ValidationFailed
from ordercore.models.order import Order, OrderEvent, OrderItem, OrderStatus, PaymentMethod, PaymentStatus
from ordercore.models.payment import Payment, PaymentProvider, PaymentRecordStatus
from ordercore.schemas.checkout import CartLine, CartSubmission, CustomerInfo, PaymentDescriptor, Totals
from ordercore.services import inventory
from ordercore.services.order_mode import OrderMode, classify_order_mode
from ordercore.services.order_state import record_event

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")
_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits
_REQUIRED_CUSTOMER_FIELDS = ("email", "first_name", "last_name", "address", "city", "state", "zip_code", "country")
_CUSTOMER_FIELD_LABELS = {
    "email": "email",
    "first_name": "firstName",
    "last_name": "lastName",
    "address": "address",
    "city": "city",
    "state": "state",
    "zip_code": "zipCode",
    "country": "country",
}


@dataclass
class ValidatedLine:
    product_id: UUID | None
    name: str | None
    unit_price: Decimal
    quantity: int

    @property
    def line_total(self) -> Decimal:
        return (self.unit_price * self.quantity).quantize(_CENT)


@dataclass
class IntakeResult:
    order: Order
    shortfalls: list[str] = field(default_factory=list)


def generate_order_number(prefix: str | None = None, *, now_ms: int | None = None) -> str:
    """Timestamp plus a random base36 suffix; unique by constraint, not guessable."""
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(6))
    return f"{prefix or settings.order_number_prefix}-{stamp}-{suffix}"


def _clean(value: str | None) -> str:
    return (value or "").strip()


def _validate_customer(info: CustomerInfo | None) -> tuple[CustomerInfo, str]:
    if info is None:
        raise ValidationFailed("Missing required order data: customerInfo")
    missing = [_CUSTOMER_FIELD_LABELS[name] for name in _REQUIRED_CUSTOMER_FIELDS if not _clean(getattr(info, name))]
    if missing:
        raise ValidationFailed(f"Missing customer information: {', '.join(missing)}", data={"missing_fields": missing})
    try:
        email = validate_email(_clean(info.email), check_deliverability=False).normalized
    except EmailNotValidError as exc:
        raise ValidationFailed("Invalid email address format") from exc
    return info, email.lower()


def _validate_payment(payment: PaymentDescriptor | None) -> PaymentMethod:
    raw = _clean(payment.payment_method if payment else None).lower()
    if not raw:
        raise ValidationFailed("Missing payment method")
    if raw == "card":
        raw = PaymentMethod.stripe.value
    try:
        return PaymentMethod(raw)
    except ValueError as exc:
        raise ValidationFailed(f"Unsupported payment method: {raw}") from exc


def _validate_totals(totals: Totals | None) -> Totals:
    missing = [name for name in ("subtotal", "total") if totals is None or getattr(totals, name) is None]
    if missing:
        raise ValidationFailed(f"Missing order totals: {', '.join(missing)}", data={"missing_fields": missing})
    assert totals is not None
    for name in ("subtotal", "shipping", "tax", "discount", "total"):
        value = getattr(totals, name)
        if value is not None and value < 0:
            raise ValidationFailed(f"Order total '{name}' cannot be negative")
    return totals


def _validate_items(items: list[CartLine] | None) -> list[ValidatedLine]:
    if not items:
        raise ValidationFailed("Order must contain at least one item")
    lines: list[ValidatedLine] = []
    for index, item in enumerate(items):
        if item.quantity is None or item.quantity < 1:
            raise ValidationFailed(f"Item {index + 1} has an invalid quantity")
        if item.price is None or item.price < 0:
            raise ValidationFailed(f"Item {index + 1} has an invalid price")
        product_id = None
        if _clean(item.id):
            try:
                product_id = UUID(_clean(item.id))
            except ValueError as exc:
                raise ValidationFailed(f"Item {index + 1} has an invalid product id") from exc
        elif not _clean(item.name):
            raise ValidationFailed(f"Item {index + 1} needs a product id or a name")
        lines.append(
            ValidatedLine(product_id=product_id, name=_clean(item.name) or None, unit_price=item.price, quantity=item.quantity)
        )
    return lines


def _money(value: Decimal | None) -> Decimal:
    try:
        return Decimal(value or 0).quantize(_CENT)
    except InvalidOperation as exc:
        raise ValidationFailed("Invalid order total") from exc


def _check_totals(totals: Totals, lines: list[ValidatedLine]) -> dict[str, Decimal]:
    amounts = {
        "subtotal": _money(totals.subtotal),
        "shipping": _money(totals.shipping),
        "tax": _money(totals.tax),
        "discount": _money(totals.discount),
        "total": _money(totals.total),
    }
    expected_total = amounts["subtotal"] + amounts["shipping"] + amounts["tax"] - amounts["discount"]
    if amounts["total"] != expected_total:
        raise ValidationFailed(
            "Order total does not match subtotal + shipping + tax - discount",
            data={"expected_total": str(expected_total), "total": str(amounts["total"])},
        )
    items_subtotal = sum((line.line_total for line in lines), start=Decimal("0.00"))
    if items_subtotal != amounts["subtotal"]:
        raise ValidationFailed(
            "Order subtotal does not match the line items",
            data={"items_subtotal": str(items_subtotal), "subtotal": str(amounts["subtotal"])},
        )
    return amounts


async def create_order(
    session: AsyncSession,
    submission: CartSubmission,
    *,
    user_id: str | None = None,
    mode_override: str | None = None,
) -> IntakeResult:
    """Validate a cart, persist the order and take stock for each catalog line.

    Nothing is written until every check passed. Once the order row is
    committed, a line whose stock can no longer be taken is logged and
    recorded on the order instead of failing the request.
    """
    customer, email = _validate_customer(submission.customer_info)
    method = _validate_payment(submission.payment)
    totals = _validate_totals(submission.totals)
    lines = _validate_items(submission.items)
    amounts = _check_totals(totals, lines)
    payment = submission.payment
    assert payment is not None

    products = await inventory.check_availability(
        session, [(line.product_id, line.quantity) for line in lines if line.product_id is not None]
    )

    mode = classify_order_mode(
        payment,
        override=mode_override or settings.system_mode,
        stripe_env=settings.stripe_env,
        paypal_env=settings.paypal_env,
    )
    currency = (_clean(payment.currency) or settings.default_currency).upper()[:3]
    reference = _clean(payment.reference) or None

    items = [
        OrderItem(
            product_id=line.product_id,
            name=line.name or (products[line.product_id].name if line.product_id else ""),
            quantity=line.quantity,
            unit_price=line.unit_price,
            line_total=line.line_total,
        )
        for line in lines
    ]
    order = Order(
        order_number=generate_order_number(),
        user_id=user_id,
        customer_email=email,
        customer_name=f"{_clean(customer.first_name)} {_clean(customer.last_name)}",
        customer_phone=_clean(customer.phone) or None,
        shipping_address_line1=_clean(customer.address),
        shipping_address_line2=_clean(customer.apartment) or None,
        shipping_city=_clean(customer.city),
        shipping_province=_clean(customer.state),
        shipping_postal_code=_clean(customer.zip_code),
        shipping_country=_clean(customer.country),
        subtotal=amounts["subtotal"],
        shipping_cost=amounts["shipping"],
        tax_amount=amounts["tax"],
        discount_amount=amounts["discount"],
        total=amounts["total"],
        refunded_amount=Decimal("0.00"),
        currency=currency,
        status=OrderStatus.confirmed,
        payment_status=PaymentStatus.pending,
        payment_method=method,
        provider_payment_reference=reference,
        payment_details=_payment_details(payment, method),
        is_test=mode == OrderMode.test,
        items=items,
    )
    session.add(order)
    await session.flush()
    session.add(
        Payment(
            order_id=order.id,
            provider=PaymentProvider(method.value),
            provider_payment_id=reference,
            amount=amounts["total"],
            currency=currency,
            status=PaymentRecordStatus.pending,
        )
    )
    record_event(session, order, "created", f"Order {order.order_number} placed")
    await session.commit()
    metrics.record_order_created()
    logger.info(
        "order_created",
        extra={
            "order_id": str(order.id),
            "order_number": order.order_number,
            "provider": method.value,
            "is_test": order.is_test,
            "total": str(order.total),
        },
    )

    order_id = order.id
    shortfalls = await _reserve_stock(session, order)
    result = await session.execute(
        select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
    )
    return IntakeResult(order=result.scalar_one(), shortfalls=shortfalls)


async def _reserve_stock(session: AsyncSession, order: Order) -> list[str]:
    # Plain values only: a rollback below expires every loaded instance.
    order_id, order_number = order.id, order.order_number
    lines = [(item.id, item.product_id, item.quantity, item.name) for item in order.items if item.product_id is not None]
    log_ids = {"order_id": str(order_id), "order_number": order_number}

    shortfalls: list[str] = []
    for item_id, product_id, quantity, name in lines:
        try:
            reserved = await inventory.reserve_line(session, item_id, product_id, quantity)
            await session.commit()
        except SQLAlchemyError:
            await session.rollback()
            logger.exception("inventory_decrement_failed", extra={**log_ids, "product_id": str(product_id)})
            reserved = False
        if reserved:
            continue
        shortfalls.append(str(product_id))
        metrics.record_inventory_shortfall()
        logger.error("inventory_shortfall", extra={**log_ids, "product_id": str(product_id), "quantity": quantity})
        session.add(
            OrderEvent(order_id=order_id, event="inventory_shortfall", note=f"Could not take {quantity} x {name} ({product_id})")
        )
        await session.commit()
    return shortfalls


def _payment_details(payment: PaymentDescriptor, method: PaymentMethod) -> dict:
    details: dict = {"method": method.value, "payment_id": payment.reference}
    if payment.livemode is not None:
        details["livemode"] = payment.livemode
    if method == PaymentMethod.crypto:
        details.update(
            {
                "crypto_type": payment.crypto_type,
                "crypto_amount": str(payment.crypto_amount) if payment.crypto_amount is not None else None,
                "crypto_currency": payment.crypto_currency,
                "wallet_address": payment.wallet_address,
                "network": payment.network,
            }
        )
    return details
