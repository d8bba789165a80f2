"""
billing_relay/providers/__init__.py

Payment provider exports.
"""

from billing_relay.providers.base import PaymentProvider, CheckoutResult, PortalResult
from billing_relay.providers.stripe_provider import StripeProvider

__all__ = [
    'PaymentProvider',
    'CheckoutResult',
    'PortalResult',
    'StripeProvider',
]
