class StorefrontError(Exception):
    """Base exception for the storefront backend."""

    pass


class WebhookError(StorefrontError):
    """Raised when an inbound Stripe notification is rejected at ingestion."""

    pass


class MissingSignatureError(WebhookError):
    """Raised when the Stripe-Signature header is absent."""

    def __init__(self) -> None:
        super().__init__("Missing Stripe-Signature header")


class InvalidSignatureError(WebhookError):
    """Raised when the signature does not match the raw body."""

    def __init__(self) -> None:
        super().__init__("Invalid signature")


class InvalidPayloadError(WebhookError):
    """Raised when the raw body is missing or is not a Stripe event document."""

    def __init__(self, reason: str = "Invalid payload"):
        self.reason = reason
        super().__init__(reason)
