"""PaymentEvent model: the Stripe event store and source of idempotence."""

import uuid
from datetime import UTC, datetime

from sqlalchemy import JSON, Column, DateTime, String, Uuid
from sqlalchemy.dialects.postgresql import JSONB

from storefront.db.base import Base


class PaymentEvent(Base):
    """One row per Stripe event id. Only processed_at is ever updated."""

    __tablename__ = "stripe_events"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    event_id = Column(String(255), nullable=False, unique=True)  # Stripe's evt_... id
    type = Column(String(255), nullable=False)
    payload = Column(JSON().with_variant(JSONB(), "postgresql"), nullable=False)

    received_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    processed_at = Column(DateTime(timezone=True), nullable=True)
