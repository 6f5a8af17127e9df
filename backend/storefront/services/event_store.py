"""PaymentEventStore: append-only record of Stripe notifications.

The Stripe event id is unique, so recording the same notification twice
returns the existing row instead of inserting a duplicate. The only mutation
is mark_processed, which sets processed_at once and never clears it.
"""

import uuid
from datetime import UTC, datetime

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.db.models.payment_event import PaymentEvent

logger = structlog.get_logger(__name__)


class PaymentEventStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def record(self, event_id: str, event_type: str, payload: dict) -> tuple[uuid.UUID, bool]:
        """Insert the event unless its Stripe id was already recorded.

        Returns:
            (internal id, created), where created is False when an existing row was reused.
        """
        async with self.session_factory() as session:
            row = PaymentEvent(event_id=event_id, type=event_type, payload=payload)
            session.add(row)
            try:
                await session.commit()
                return row.id, True
            except IntegrityError:
                # Concurrent or replayed delivery already stored it
                await session.rollback()
                result = await session.execute(select(PaymentEvent.id).where(PaymentEvent.event_id == event_id))
                return result.scalar_one(), False

    async def get(self, internal_id: uuid.UUID) -> PaymentEvent | None:
        """Load an event by internal id."""
        async with self.session_factory() as session:
            result = await session.execute(select(PaymentEvent).where(PaymentEvent.id == internal_id))
            return result.scalar_one_or_none()

    async def get_by_event_id(self, event_id: str) -> PaymentEvent | None:
        """Load an event by Stripe event id."""
        async with self.session_factory() as session:
            result = await session.execute(select(PaymentEvent).where(PaymentEvent.event_id == event_id))
            return result.scalar_one_or_none()

    @staticmethod
    async def mark_processed(session: AsyncSession, internal_id: uuid.UUID, now: datetime | None = None) -> bool:
        """Set processed_at inside the caller's transaction.

        Conditional on processed_at IS NULL so the first writer's timestamp is kept.

        Returns:
            True if this call set processed_at, False if it was already set.
        """
        now = now or datetime.now(UTC)
        result = await session.execute(
            update(PaymentEvent)
            .where(PaymentEvent.id == internal_id, PaymentEvent.processed_at.is_(None))
            .values(processed_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
