"""
Billing error taxonomy.

Errors that risk leaving credit state wrong propagate up to the dispatcher so
Stripe redelivers the webhook; everything else is logged where it happens.
"""


class BillingError(Exception):
    """Base class for billing webhook failures."""


class UnknownPriceIdError(BillingError):
    """A Stripe price id is not present in the plan catalog."""

    def __init__(self, price_id: str | None, message: str | None = None):
        self.price_id = price_id
        super().__init__(
            message
            or f"Unknown price ID: {price_id}. This price is not configured in the subscription config."
        )


class ProfileNotFoundError(BillingError):
    """No profile is linked to the Stripe customer id."""

    def __init__(self, customer_id: str | None):
        self.customer_id = customer_id
        super().__init__(f"No profile found for customer {customer_id}")


class PersistenceWriteError(BillingError):
    """A write the reconciliation depends on did not land."""


class InvalidWebhookPayloadError(BillingError):
    """The request body could not be parsed into a Stripe event."""


class WebhookSignatureError(BillingError):
    """Signature header missing or not matching the payload."""


class WebhookConfigurationError(BillingError):
    """The service is configured in a way that makes verification unsafe."""
