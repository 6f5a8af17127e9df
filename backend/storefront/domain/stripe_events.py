"""Typed view over stored Stripe event payloads.

Pure domain functions: no DB access, fully deterministic.
parse_stripe_event maps the loosely-typed event document onto a closed set of
variants. Only checkout completion carries fulfillment semantics; every other
type becomes UnhandledStripeEvent and is acknowledged without side effects.
"""

import uuid
from typing import Any, Literal

import structlog
from pydantic import BaseModel

logger = structlog.get_logger(__name__)

CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"


class CheckoutSessionCompleted(BaseModel):
    """A hosted checkout finished and the payment was captured."""

    kind: Literal["checkout_session_completed"] = "checkout_session_completed"
    session_id: str
    order_id: uuid.UUID | None = None
    payment_intent_id: str | None = None


class UnhandledStripeEvent(BaseModel):
    """Any event type the fulfillment pipeline does not act on."""

    kind: Literal["unhandled"] = "unhandled"
    type: str


StripeEvent = CheckoutSessionCompleted | UnhandledStripeEvent


def _parse_order_id(raw: Any) -> uuid.UUID | None:
    """Order ids are UUIDs; anything else cannot reference one of our orders."""
    if not raw or not isinstance(raw, str):
        return None
    try:
        return uuid.UUID(raw)
    except ValueError:
        logger.warning("stripe_event_invalid_order_id", order_id=raw)
        return None


def _payment_intent_id(raw: Any) -> str | None:
    # payment_intent is an id string, or an object when the event was expanded
    if isinstance(raw, str):
        return raw or None
    if isinstance(raw, dict):
        return raw.get("id") or None
    return None


def parse_stripe_event(event_type: str, payload: dict) -> StripeEvent:
    """Build the typed variant for a stored event.

    Args:
        event_type: The event's type tag (e.g. "checkout.session.completed")
        payload: Full Stripe event document as received by the webhook

    Returns:
        CheckoutSessionCompleted for checkout completion, UnhandledStripeEvent otherwise.
        A completion event without a session object is treated as unhandled.
    """
    if event_type != CHECKOUT_SESSION_COMPLETED:
        return UnhandledStripeEvent(type=event_type)

    session = (payload.get("data") or {}).get("object") or {}
    session_id = session.get("id")
    if not session_id:
        logger.warning("checkout_completed_missing_session", event_id=payload.get("id"))
        return UnhandledStripeEvent(type=event_type)

    metadata = session.get("metadata") or {}
    order_id = _parse_order_id(metadata.get("orderId")) or _parse_order_id(session.get("client_reference_id"))

    return CheckoutSessionCompleted(
        session_id=session_id,
        order_id=order_id,
        payment_intent_id=_payment_intent_id(session.get("payment_intent")),
    )
