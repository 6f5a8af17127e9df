"""Order and OrderItem models: written by checkout, confirmed by fulfillment."""

import uuid
from datetime import UTC, datetime
from enum import Enum

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, Numeric, String, Text, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from storefront.db.base import Base


class OrderStatus(str, Enum):
    """Order lifecycle states. Fulfillment only ever performs PENDING -> PAID."""

    PENDING = "PENDING"
    PAID = "PAID"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELED = "CANCELED"


class Order(Base):
    __tablename__ = "orders"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, nullable=False, index=True)
    status = Column(String(20), nullable=False, default=OrderStatus.PENDING.value)

    # Money fields are exact decimals (NUMERIC(10, 2))
    subtotal = Column(Numeric(10, 2), nullable=False)
    shipping = Column(Numeric(10, 2), nullable=False)
    discount = Column(Numeric(10, 2), nullable=False)
    total = Column(Numeric(10, 2), nullable=False)

    stripe_checkout_session_id = Column(Text, nullable=True, index=True)
    stripe_payment_intent_id = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))

    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")


class OrderItem(Base):
    """Line item snapshot taken at order creation; never re-read from the catalog."""

    __tablename__ = "order_items"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id = Column(Uuid, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    variant_id = Column(Uuid, ForeignKey("variants.id", ondelete="RESTRICT"), nullable=False)

    product_name_snapshot = Column(Text, nullable=False)
    variant_snapshot = Column(JSON().with_variant(JSONB(), "postgresql"), nullable=False)  # {"color", "size"}
    unit_price = Column(Numeric(10, 2), nullable=False)
    qty = Column(Integer, nullable=False)

    order = relationship("Order", back_populates="items")
