import asyncio
import os
from collections.abc import Generator
from decimal import Decimal
from typing import Dict

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext import asyncio as sa_asyncio

# Keep pytest output high-signal by disabling outbound Sentry capture in tests.
os.environ["SENTRY_DSN"] = ""
os.environ["REDIS_URL"] = ""

from ordercore.api.v1 import orders as orders_api
from ordercore.core import metrics
from ordercore.core.security import create_admin_token
from ordercore.db.base import Base
from ordercore.db.session import get_session
from ordercore.main import app
from ordercore.models.catalog import Product


_TRACKED_ENGINES: list[sa_asyncio.AsyncEngine] = []
_ORIGINAL_CREATE_ASYNC_ENGINE = sa_asyncio.create_async_engine


def _tracked_create_async_engine(*args, **kwargs):  # type: ignore[no-untyped-def]
    engine = _ORIGINAL_CREATE_ASYNC_ENGINE(*args, **kwargs)
    _TRACKED_ENGINES.append(engine)
    return engine


sa_asyncio.create_async_engine = _tracked_create_async_engine  # type: ignore[assignment]


@pytest.fixture(autouse=True)
def _dispose_tracked_async_engines() -> Generator[None, None, None]:
    start_index = len(_TRACKED_ENGINES)
    yield
    pending = _TRACKED_ENGINES[start_index:]
    if not pending:
        return

    async def _dispose_all() -> None:
        for engine in pending:
            try:
                await engine.dispose()
            except Exception:
                continue

    asyncio.run(_dispose_all())
    del _TRACKED_ENGINES[start_index:]


@pytest.fixture(autouse=True)
def _reset_process_state() -> Generator[None, None, None]:
    # Rate-limit buckets and counters are process-global and can leak across tests.
    orders_api.intake_rate_limit.limiter.reset()
    metrics.reset()
    yield
    orders_api.intake_rate_limit.limiter.reset()
    metrics.reset()


@pytest.fixture
def order_app() -> Generator[Dict[str, object], None, None]:
    engine = sa_asyncio.create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    SessionLocal = sa_asyncio.async_sessionmaker(engine, expire_on_commit=False)

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())

    async def override_get_session():
        async with SessionLocal() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    client = TestClient(app)
    yield {"client": client, "session_factory": SessionLocal}
    client.close()
    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers() -> Dict[str, str]:
    token = create_admin_token("admin-1", email="owner@example.com")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def add_product(order_app):
    session_factory = order_app["session_factory"]

    def _add_product(*, name: str = "Amethyst Ring", inventory: int = 5) -> Product:
        async def _add() -> Product:
            async with session_factory() as session:
                product = Product(name=name, inventory=inventory, is_active=True)
                session.add(product)
                await session.commit()
                await session.refresh(product)
                return product

        return asyncio.run(_add())

    return _add_product


@pytest.fixture
def product_inventory(order_app):
    session_factory = order_app["session_factory"]

    def _product_inventory(product_id) -> int:
        async def _read() -> int:
            async with session_factory() as session:
                product = await session.get(Product, product_id)
                return int(product.inventory)

        return asyncio.run(_read())

    return _product_inventory


@pytest.fixture
def cart_payload():
    return build_cart_payload


def build_cart_payload(
    product: Product,
    *,
    quantity: int = 2,
    price: str = "50.00",
    shipping: str = "10.00",
    tax: str = "10.00",
    discount: str = "0.00",
    method: str = "stripe",
    reference: str = "pi_test_123",
    email: str = "buyer@example.com",
) -> dict:
    subtotal = Decimal(price) * quantity
    total = subtotal + Decimal(shipping) + Decimal(tax) - Decimal(discount)
    payment: dict = {"paymentMethod": method, "currency": "CAD"}
    if method in {"stripe", "card"}:
        payment["paymentIntentId"] = reference
    elif method == "paypal":
        payment["captureID"] = reference
    else:
        payment.update({"transactionId": reference, "network": "sepolia", "cryptoType": "ETH"})
    return {
        "customerInfo": {
            "email": email,
            "firstName": "Ada",
            "lastName": "Lovelace",
            "address": "1 Gem Street",
            "city": "Toronto",
            "state": "ON",
            "zipCode": "M5V 1A1",
            "country": "Canada",
            "phone": "+1 416 555 0100",
        },
        "payment": payment,
        "totals": {
            "subtotal": str(subtotal),
            "shipping": shipping,
            "tax": tax,
            "discount": discount,
            "total": str(total),
        },
        "items": [{"id": str(product.id), "name": product.name, "price": price, "quantity": quantity}],
    }
