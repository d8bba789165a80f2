"""
billing_relay/providers/stripe_provider.py

Stripe implementation of PaymentProvider.

This is the ONLY file that imports the stripe library.

Supports:
    - Customers (created before the first checkout)
    - Checkout Sessions in subscription mode (hosted payment page)
    - Billing Portal sessions (hosted subscription management)
    - Webhook signature verification

Stripe Dashboard Setup Required:
    1. Create a recurring Price; set STRIPE_PRICE_ID
    2. Enable webhooks pointing to /webhook/stripe
    3. Subscribe to: checkout.session.completed,
       customer.subscription.created/updated/deleted,
       invoice.paid, invoice.payment_failed
    4. Configure the Customer Portal
"""

import json
from typing import Optional, Tuple

import stripe

from billing_relay.errors import ProviderError
from billing_relay.providers.base import PaymentProvider, CheckoutResult, PortalResult


class StripeProvider(PaymentProvider):
    """Stripe payment provider implementation."""

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str,
        max_network_retries: int = 2,
        timeout: int = 20
    ):
        self._secret_key = secret_key
        self._webhook_secret = webhook_secret

        # Configure Stripe; every API call is bounded by timeout x (retries + 1)
        stripe.api_key = secret_key
        stripe.max_network_retries = max_network_retries
        stripe.default_http_client = stripe.new_default_http_client(timeout=timeout)

    @property
    def name(self) -> str:
        return 'stripe'

    def verify_webhook(
        self,
        payload: bytes,
        signature: str
    ) -> Tuple[bool, Optional[dict]]:
        """
        Verify Stripe webhook signature.

        Returns:
            (is_valid, event_dict) - the dict is the plain JSON payload
        """
        if not signature:
            print("[Stripe] Webhook without Stripe-Signature header")
            return False, None

        try:
            stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        except stripe.SignatureVerificationError as e:
            print(f"[Stripe] Webhook signature verification failed: {e}")
            return False, None
        except ValueError as e:
            print(f"[Stripe] Webhook parse error: {e}")
            return False, None

        if isinstance(payload, bytes):
            payload = payload.decode('utf-8')
        return True, json.loads(payload)

    def create_customer(self, email: str, user_id: str) -> str:
        try:
            customer = stripe.Customer.create(
                email=email,
                metadata={'userId': user_id},
            )
        except stripe.StripeError as e:
            print(f"[Stripe] Customer creation error: {e}")
            raise ProviderError(str(e)) from e

        print(f"[Stripe] Created customer {customer.id} for user {user_id}")
        return customer.id

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        user_id: str
    ) -> CheckoutResult:
        """
        Create a Stripe Checkout session in subscription mode.

        Args:
            customer_id: Stripe customer (cus_xxx)
            price_id: Recurring Stripe price ID
            success_url: Redirect URL after success (include {CHECKOUT_SESSION_ID} placeholder)
            cancel_url: Redirect URL if cancelled
            user_id: Our user ID, echoed back in metadata
        """
        try:
            session = stripe.checkout.Session.create(
                customer=customer_id,
                payment_method_types=['card'],
                line_items=[{
                    'price': price_id,
                    'quantity': 1,
                }],
                mode='subscription',
                success_url=success_url,
                cancel_url=cancel_url,
                client_reference_id=user_id,
                metadata={'userId': user_id},
            )
        except stripe.StripeError as e:
            print(f"[Stripe] Checkout session error: {e}")
            return CheckoutResult(success=False, error=str(e))

        return CheckoutResult(
            success=True,
            checkout_url=session.url,
            provider_session_id=session.id
        )

    def create_portal_session(self, customer_id: str, return_url: str) -> PortalResult:
        try:
            session = stripe.billing_portal.Session.create(
                customer=customer_id,
                return_url=return_url,
            )
        except stripe.StripeError as e:
            print(f"[Stripe] Portal session error: {e}")
            return PortalResult(success=False, error=str(e))

        return PortalResult(success=True, portal_url=session.url)
