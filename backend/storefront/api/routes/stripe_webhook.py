"""Stripe webhook route: ingestion only; fulfillment runs in the worker."""

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request

from storefront.core.config import get_settings
from storefront.core.exceptions import WebhookError
from storefront.db.base import get_session_factory
from storefront.db.redis import get_redis
from storefront.queue.manager import FulfillmentQueue
from storefront.services.event_store import PaymentEventStore
from storefront.services.webhook_ingestor import WebhookIngestor

logger = structlog.get_logger(__name__)

router = APIRouter()


def get_webhook_ingestor() -> WebhookIngestor:
    """Wire the ingestor to the shared event store and fulfillment queue."""
    settings = get_settings()
    if not settings.stripe_webhook_secret:
        logger.error("stripe_webhook_secret_missing")
        raise HTTPException(status_code=503, detail="Stripe webhook endpoint is not configured")

    queue = FulfillmentQueue(
        get_redis(),
        max_attempts=settings.queue_max_attempts,
        backoff_base_seconds=settings.queue_backoff_base_seconds,
        lease_seconds=settings.queue_lease_seconds,
    )
    return WebhookIngestor(
        event_store=PaymentEventStore(get_session_factory()),
        queue=queue,
        webhook_secret=settings.stripe_webhook_secret,
        tolerance=settings.stripe_webhook_tolerance,
    )


@router.post("/stripe/webhook")
async def stripe_webhook(request: Request, ingestor: WebhookIngestor = Depends(get_webhook_ingestor)):
    """Receive a Stripe notification. Verifies against the raw body; never parses it first."""
    body = await request.body()
    sig_header = request.headers.get("stripe-signature")

    try:
        return await ingestor.ingest(body, sig_header)
    except WebhookError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
