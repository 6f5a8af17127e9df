"""Re-export all models so Base.metadata sees them."""

from storefront.db.models.order import Order, OrderItem, OrderStatus
from storefront.db.models.payment_event import PaymentEvent
from storefront.db.models.variant import Variant

__all__ = [
    "Order",
    "OrderItem",
    "OrderStatus",
    "PaymentEvent",
    "Variant",
]
