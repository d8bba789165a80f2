"""
billing_relay/providers/base.py

Abstract base class for payment providers.

BillingService talks to a PaymentProvider, never to the Stripe library.
Tests swap in a fake provider; nothing else changes.

Methods to implement:
    - verify_webhook(payload, signature) -> (is_valid, event_dict)
    - create_customer(email, user_id) -> customer id
    - create_checkout_session(customer_id, price_id, ...) -> CheckoutResult
    - create_portal_session(customer_id, return_url) -> PortalResult

Version History:
    2026-10-19: Subscription checkout + billing portal; customers are
                created up front so webhooks can be matched by customer id
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Tuple


@dataclass
class CheckoutResult:
    """Result of creating a checkout session."""
    success: bool
    checkout_url: Optional[str] = None
    provider_session_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class PortalResult:
    """Result of creating a billing portal session."""
    success: bool
    portal_url: Optional[str] = None
    error: Optional[str] = None


class PaymentProvider(ABC):
    """
    Abstract base class for payment providers.

    Implementations:
        - StripeProvider
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name (e.g., 'stripe')."""
        pass

    @abstractmethod
    def verify_webhook(
        self,
        payload: bytes,
        signature: str
    ) -> Tuple[bool, Optional[dict]]:
        """
        Verify webhook signature and parse payload.

        Args:
            payload: Raw request body
            signature: Signature header value

        Returns:
            (is_valid, parsed_event_dict)
        """
        pass

    @abstractmethod
    def create_customer(self, email: str, user_id: str) -> str:
        """
        Create a customer at the provider.

        Returns:
            Provider customer ID

        Raises:
            ProviderError
        """
        pass

    @abstractmethod
    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        user_id: str
    ) -> CheckoutResult:
        """
        Create a hosted subscription checkout session.

        user_id travels in the session metadata and comes back on
        checkout.session.completed.
        """
        pass

    @abstractmethod
    def create_portal_session(self, customer_id: str, return_url: str) -> PortalResult:
        """Create a hosted billing portal session."""
        pass
