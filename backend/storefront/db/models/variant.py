"""Variant model: the stock-keeping unit whose stock fulfillment decrements."""

import uuid

from sqlalchemy import CheckConstraint, Column, Integer, Numeric, String, Text, Uuid

from storefront.db.base import Base


class Variant(Base):
    __tablename__ = "variants"
    __table_args__ = (CheckConstraint("stock_qty >= 0", name="variants_stock_qty_non_negative"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    sku = Column(String(100), nullable=False, unique=True)
    color = Column(Text, nullable=False)
    size = Column(Text, nullable=False)
    price_override = Column(Numeric(10, 2), nullable=True)
    stock_qty = Column(Integer, nullable=False, default=0)
