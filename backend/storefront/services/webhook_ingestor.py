"""WebhookIngestor: verify, record and enqueue Stripe notifications.

Ingestion never runs fulfillment: it stores the event, enqueues one job keyed
by the Stripe event id and acknowledges. Slow responses make Stripe retry, so
the request path only waits on one insert and one enqueue.
"""

import json

import stripe
import structlog

from storefront.core.exceptions import InvalidPayloadError, InvalidSignatureError, MissingSignatureError
from storefront.queue.manager import FulfillmentQueue
from storefront.services.event_store import PaymentEventStore

logger = structlog.get_logger(__name__)


class WebhookIngestor:
    def __init__(
        self,
        event_store: PaymentEventStore,
        queue: FulfillmentQueue,
        webhook_secret: str,
        tolerance: int = stripe.Webhook.DEFAULT_TOLERANCE,
    ):
        self.event_store = event_store
        self.queue = queue
        self.webhook_secret = webhook_secret
        self.tolerance = tolerance

    def verify(self, raw_body: bytes, signature: str | None) -> dict:
        """Check the timestamped HMAC signature over the raw bytes and parse the event.

        The body must not be re-serialized before this point: Stripe signs the
        exact bytes it sent.

        Raises:
            InvalidPayloadError: Body missing or not a JSON event document
            MissingSignatureError: No Stripe-Signature header
            InvalidSignatureError: Signature does not match (or timestamp outside tolerance)
        """
        if not raw_body:
            raise InvalidPayloadError("Raw body is required for Stripe webhook")
        if not signature:
            raise MissingSignatureError()

        try:
            stripe.Webhook.construct_event(raw_body, signature, self.webhook_secret, self.tolerance)
        except ValueError:
            raise InvalidPayloadError("Invalid payload")
        except stripe.SignatureVerificationError:
            logger.warning("stripe_signature_verification_failed")
            raise InvalidSignatureError()

        event = json.loads(raw_body)
        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise InvalidPayloadError("Payload is not a Stripe event")
        return event

    async def ingest(self, raw_body: bytes, signature: str | None) -> dict:
        """Verify a notification, store it once and enqueue its fulfillment job.

        Returns:
            {"received": True}, also for replays of an already stored event.
        """
        event = self.verify(raw_body, signature)
        event_id = event["id"]
        event_type = event["type"]

        internal_id, created = await self.event_store.record(event_id, event_type, event)
        if created:
            logger.info("stripe_webhook_received", event_id=event_id, event_type=event_type)
        else:
            logger.info("stripe_event_deduplicated", event_id=event_id, event_type=event_type)

        await self.queue.enqueue(internal_id, dedup_key=event_id)

        return {"received": True}
