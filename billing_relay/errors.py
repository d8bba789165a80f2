"""
billing_relay/errors.py

Error kinds raised by the billing relay.

Routes translate these into HTTP responses:
    RequestValidationError  -> 400
    WebhookSignatureError   -> 400 (webhook rejected, nothing processed)
    anything raised while handling a verified webhook -> 400, so Stripe retries
    ProviderError / store failures on /api routes -> 500
"""


class BillingError(Exception):
    """Base class for billing relay errors."""


class ConfigError(BillingError):
    """Required configuration is missing or invalid."""


class RequestValidationError(BillingError):
    """A request body is missing a required field."""


class WebhookSignatureError(BillingError):
    """Webhook payload failed signature verification."""


class EventDecodeError(BillingError):
    """A verified webhook event does not have the shape its type promises."""


class UnknownCustomerError(BillingError):
    """A subscription event references a customer with no quota record."""

    def __init__(self, customer_id: str):
        super().__init__(f"No quota record for customer {customer_id}")
        self.customer_id = customer_id


class ProviderError(BillingError):
    """The payment provider rejected or failed a call."""


class ConcurrentUpdateError(BillingError):
    """A compare-and-set kept losing to concurrent writers."""
