"""Exceptions raised by billing services"""


class BillingError(Exception):
    """Base class for billing service errors"""


class WebhookConfigurationError(BillingError):
    """Webhook endpoint cannot verify events (signing secret not configured)"""


class InvalidWebhookPayload(BillingError, ValueError):
    """Verified payload is not a usable Stripe event"""


class SubscriptionLockTimeout(BillingError):
    """Another worker held the subscription lock for longer than we are willing to wait"""

    def __init__(self, subscription_id: str, waited: float):
        self.subscription_id = subscription_id
        self.waited = waited
        super().__init__(f"Timed out after {waited:.1f}s waiting for lock on subscription {subscription_id}")


class SubscriptionConflict(BillingError):
    """User already holds an entitled subscription"""
