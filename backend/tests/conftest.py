"""Shared test fixtures for all test groups."""

import hashlib
import hmac
import json
import os
import time
import uuid
from decimal import Decimal

# Set before any storefront import: get_settings() is cached on first use.
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_dummy")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("METRICS_ENABLED", "false")

import pytest
from fakeredis import aioredis
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from storefront.db.base import Base, build_session_factory, create_tables
from storefront.db.models import Order, OrderItem, OrderStatus, Variant
from storefront.queue.manager import FulfillmentQueue

WEBHOOK_SECRET = os.environ["STRIPE_WEBHOOK_SECRET"]


@pytest.fixture
async def redis_client():
    """Create a fake Redis client for testing."""
    client = aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def queue(redis_client) -> FulfillmentQueue:
    """FulfillmentQueue with the default retry policy on fake Redis."""
    return FulfillmentQueue(redis_client)


@pytest.fixture
async def engine(tmp_path) -> AsyncEngine:
    """Test engine on a per-test SQLite file (TEST_DATABASE_URL overrides, e.g. Postgres)."""
    url = os.getenv("TEST_DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'storefront_test.db'}")
    engine = create_async_engine(url, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await create_tables(engine)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def make_order(session_factory):
    """Factory: persist a PENDING order whose items reference fresh variants.

    Usage:
        order_id, variant_ids = await make_order([(5, 2), (0, 1)])  # (stock, qty) per item
    """

    async def _make(
        items: list[tuple[int, int]],
        status: OrderStatus = OrderStatus.PENDING,
        checkout_session_id: str | None = None,
    ):
        async with session_factory() as session:
            variants = []
            for i, (stock, _qty) in enumerate(items):
                variant = Variant(sku=f"SKU-{os.urandom(4).hex()}-{i}", color="black", size="M", stock_qty=stock)
                session.add(variant)
                variants.append(variant)
            await session.flush()

            order = Order(
                user_id=uuid.uuid4(),
                status=status.value,
                subtotal=Decimal("100.00"),
                shipping=Decimal("10.00"),
                discount=Decimal("0.00"),
                total=Decimal("110.00"),
                stripe_checkout_session_id=checkout_session_id,
            )
            session.add(order)
            await session.flush()

            for variant, (_stock, qty) in zip(variants, items):
                session.add(
                    OrderItem(
                        order_id=order.id,
                        variant_id=variant.id,
                        product_name_snapshot="Basic Tee",
                        variant_snapshot={"color": variant.color, "size": variant.size},
                        unit_price=Decimal("50.00"),
                        qty=qty,
                    )
                )
            await session.commit()
            return order.id, [v.id for v in variants]

    return _make


def make_checkout_completed_event(
    event_id: str,
    session_id: str = "cs_test_001",
    order_id: str | None = None,
    payment_intent: str | dict | None = "pi_test_001",
    client_reference_id: str | None = None,
) -> dict:
    """Build a minimal checkout.session.completed event document."""
    session = {
        "id": session_id,
        "object": "checkout.session",
        "payment_intent": payment_intent,
        "client_reference_id": client_reference_id,
        "metadata": {"orderId": order_id} if order_id else {},
    }
    return {
        "id": event_id,
        "object": "event",
        "type": "checkout.session.completed",
        "data": {"object": session},
    }


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a Stripe-Signature header (t=..., v1=HMAC-SHA256 over "t.payload")."""
    timestamp = timestamp if timestamp is not None else int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


@pytest.fixture
def checkout_event():
    return make_checkout_completed_event


@pytest.fixture
def signed_body():
    """Serialize an event and sign the exact bytes: returns (raw_body, signature_header)."""

    def _signed(event: dict, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> tuple[bytes, str]:
        raw = json.dumps(event).encode("utf-8")
        return raw, sign_payload(raw, secret=secret, timestamp=timestamp)

    return _signed
