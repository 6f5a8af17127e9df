"""FulfillmentService: apply a stored Stripe event to orders and inventory exactly once.

Provides:
- processed_at guard against queue redelivery
- Single transaction for stock decrements, PENDING -> PAID and processed_at
- Conditional status update so only one of two concurrent deliveries wins
- Conditional stock decrements that never take stock below zero

Business rule, confirm on stock shortfall: when a variant lacks stock for an
item, that decrement is skipped, the shortfall is logged and reported, and the
order is still confirmed as PAID. Stripe has already captured the payment;
shortfalls are resolved by operations, not by refusing the order.
"""

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.db.models.order import Order, OrderItem, OrderStatus
from storefront.db.models.variant import Variant
from storefront.domain.stripe_events import CheckoutSessionCompleted, parse_stripe_event
from storefront.metrics.cloudwatch import emit_business_event
from storefront.services.event_store import PaymentEventStore

logger = structlog.get_logger(__name__)


class FulfillmentOutcome(str, Enum):
    """How a delivery of an event was resolved. Every outcome completes the job."""

    EVENT_NOT_FOUND = "event_not_found"
    ALREADY_PROCESSED = "already_processed"
    IGNORED_EVENT_TYPE = "ignored_event_type"
    ORDER_NOT_FOUND = "order_not_found"
    ORDER_NOT_PENDING = "order_not_pending"
    LOST_RACE = "lost_race"
    PAID = "paid"


@dataclass
class StockShortfall:
    variant_id: uuid.UUID
    requested_qty: int


@dataclass
class FulfillmentResult:
    outcome: FulfillmentOutcome
    event_id: uuid.UUID
    order_id: uuid.UUID | None = None
    shortfalls: list[StockShortfall] = field(default_factory=list)


class FulfillmentService:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], event_store: PaymentEventStore | None = None):
        self.session_factory = session_factory
        self.event_store = event_store or PaymentEventStore(session_factory)

    async def process_event(self, event_id: uuid.UUID, now: datetime | None = None) -> FulfillmentResult:
        """Run the fulfillment state machine for one stored event.

        Args:
            event_id: Internal PaymentEvent id carried by the queue job
            now: Current time (for deterministic testing)

        Returns:
            FulfillmentResult describing what happened.

        Raises:
            Any database error. Nothing is committed in that case and the
            event stays unprocessed, so a retry starts over cleanly.
        """
        now = now or datetime.now(UTC)

        event = await self.event_store.get(event_id)
        if event is None:
            logger.warning("fulfillment_event_not_found", event_id=str(event_id))
            return FulfillmentResult(FulfillmentOutcome.EVENT_NOT_FOUND, event_id)

        if event.processed_at is not None:
            logger.info("fulfillment_event_already_processed", event_id=str(event_id))
            return FulfillmentResult(FulfillmentOutcome.ALREADY_PROCESSED, event_id)

        parsed = parse_stripe_event(event.type, event.payload)

        if isinstance(parsed, CheckoutSessionCompleted):
            return await self._complete_checkout(event_id, parsed, now)

        async with self.session_factory() as session:
            async with session.begin():
                await PaymentEventStore.mark_processed(session, event_id, now)
        logger.info("fulfillment_event_ignored", event_id=str(event_id), event_type=event.type)
        return FulfillmentResult(FulfillmentOutcome.IGNORED_EVENT_TYPE, event_id)

    async def _complete_checkout(
        self,
        event_id: uuid.UUID,
        checkout: CheckoutSessionCompleted,
        now: datetime,
    ) -> FulfillmentResult:
        async with self.session_factory() as session:
            async with session.begin():
                order = await self._find_order(session, checkout)

                if order is None:
                    await PaymentEventStore.mark_processed(session, event_id, now)
                    logger.info(
                        "checkout_completed_order_not_found",
                        event_id=str(event_id),
                        session_id=checkout.session_id,
                        order_id=str(checkout.order_id) if checkout.order_id else None,
                    )
                    return FulfillmentResult(FulfillmentOutcome.ORDER_NOT_FOUND, event_id)

                order_id = order.id
                if order.status != OrderStatus.PENDING.value:
                    await PaymentEventStore.mark_processed(session, event_id, now)
                    log = logger.info if order.status == OrderStatus.PAID.value else logger.warning
                    log("checkout_completed_order_not_pending", order_id=str(order_id), status=order.status)
                    return FulfillmentResult(FulfillmentOutcome.ORDER_NOT_PENDING, event_id, order_id)

                if not await self._mark_paid(session, order_id, checkout):
                    # Another delivery confirmed the order between our read and our write
                    await PaymentEventStore.mark_processed(session, event_id, now)
                    logger.info("checkout_completed_lost_race", order_id=str(order_id), event_id=str(event_id))
                    return FulfillmentResult(FulfillmentOutcome.LOST_RACE, event_id, order_id)

                shortfalls = await self._decrement_stock(session, order_id)
                await PaymentEventStore.mark_processed(session, event_id, now)

        logger.info(
            "order_paid",
            order_id=str(order_id),
            event_id=str(event_id),
            session_id=checkout.session_id,
            shortfall_count=len(shortfalls),
        )
        await emit_business_event("order_paid")
        if shortfalls:
            await emit_business_event("stock_shortfall", value=float(len(shortfalls)))
        return FulfillmentResult(FulfillmentOutcome.PAID, event_id, order_id, shortfalls)

    @staticmethod
    async def _find_order(session: AsyncSession, checkout: CheckoutSessionCompleted) -> Order | None:
        """Resolve by the order id embedded at checkout, else by the recorded session id."""
        if checkout.order_id is not None:
            query = select(Order).where(Order.id == checkout.order_id)
        else:
            query = select(Order).where(Order.stripe_checkout_session_id == checkout.session_id)
        result = await session.execute(query.limit(1))
        return result.scalar_one_or_none()

    @staticmethod
    async def _mark_paid(session: AsyncSession, order_id: uuid.UUID, checkout: CheckoutSessionCompleted) -> bool:
        """PENDING -> PAID, only if the order is still PENDING. Returns True if this call won."""
        result = await session.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == OrderStatus.PENDING.value)
            .values(
                status=OrderStatus.PAID.value,
                stripe_checkout_session_id=checkout.session_id,
                stripe_payment_intent_id=checkout.payment_intent_id,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    async def _decrement_stock(session: AsyncSession, order_id: uuid.UUID) -> list[StockShortfall]:
        """Take each item's quantity from its variant when enough stock exists."""
        result = await session.execute(
            select(OrderItem.variant_id, OrderItem.qty).where(OrderItem.order_id == order_id)
        )
        shortfalls: list[StockShortfall] = []

        for variant_id, qty in result.all():
            updated = await session.execute(
                update(Variant)
                .where(Variant.id == variant_id, Variant.stock_qty >= qty)
                .values(stock_qty=Variant.stock_qty - qty)
                .execution_options(synchronize_session=False)
            )
            if updated.rowcount == 0:
                logger.warning(
                    "stock_shortfall",
                    variant_id=str(variant_id),
                    order_id=str(order_id),
                    requested_qty=qty,
                )
                shortfalls.append(StockShortfall(variant_id=variant_id, requested_qty=qty))

        return shortfalls
