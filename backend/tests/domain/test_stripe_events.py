"""Test parse_stripe_event: closed variants over stored Stripe payloads."""

import uuid

import pytest

from storefront.domain.stripe_events import (
    CheckoutSessionCompleted,
    UnhandledStripeEvent,
    parse_stripe_event,
)

pytestmark = pytest.mark.unit


def _completed(session: dict) -> dict:
    return {"id": "evt_001", "type": "checkout.session.completed", "data": {"object": session}}


def test_checkout_completed_with_metadata_order_id():
    order_id = uuid.uuid4()
    payload = _completed({"id": "cs_001", "metadata": {"orderId": str(order_id)}, "payment_intent": "pi_001"})

    parsed = parse_stripe_event("checkout.session.completed", payload)

    assert isinstance(parsed, CheckoutSessionCompleted)
    assert parsed.session_id == "cs_001"
    assert parsed.order_id == order_id
    assert parsed.payment_intent_id == "pi_001"


def test_client_reference_id_used_when_metadata_missing():
    order_id = uuid.uuid4()
    payload = _completed({"id": "cs_002", "client_reference_id": str(order_id), "payment_intent": None})

    parsed = parse_stripe_event("checkout.session.completed", payload)

    assert parsed.order_id == order_id
    assert parsed.payment_intent_id is None


def test_no_order_reference_leaves_order_id_empty():
    """Without an embedded id the worker falls back to the checkout session id."""
    parsed = parse_stripe_event("checkout.session.completed", _completed({"id": "cs_003", "metadata": {}}))

    assert isinstance(parsed, CheckoutSessionCompleted)
    assert parsed.order_id is None
    assert parsed.session_id == "cs_003"


def test_invalid_order_id_treated_as_absent():
    payload = _completed({"id": "cs_004", "metadata": {"orderId": "not-a-uuid"}})

    parsed = parse_stripe_event("checkout.session.completed", payload)

    assert parsed.order_id is None


def test_expanded_payment_intent_object():
    payload = _completed({"id": "cs_005", "payment_intent": {"id": "pi_expanded", "object": "payment_intent"}})

    parsed = parse_stripe_event("checkout.session.completed", payload)

    assert parsed.payment_intent_id == "pi_expanded"


def test_completion_without_session_object_is_unhandled():
    parsed = parse_stripe_event("checkout.session.completed", {"id": "evt_x", "data": {}})

    assert isinstance(parsed, UnhandledStripeEvent)


@pytest.mark.parametrize("event_type", ["payment_intent.succeeded", "charge.refunded", "customer.created"])
def test_other_types_are_unhandled(event_type):
    parsed = parse_stripe_event(event_type, {"id": "evt_y", "type": event_type, "data": {"object": {}}})

    assert isinstance(parsed, UnhandledStripeEvent)
    assert parsed.type == event_type
