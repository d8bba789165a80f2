"""
billing_relay/service.py

BillingService - the main interface for quota and subscription operations.

Routes call BillingService, never Stripe or the database directly.

Usage:
    from billing_relay.service import BillingService

    service = BillingService(config)

    # Free-tier gate
    decision = service.validate_request(user_id)

    # Handle webhook (in route)
    service.handle_webhook(request.get_data(), request.headers.get('Stripe-Signature'))

    # Hosted flows
    service.create_checkout(user_id, email, price_id)
    service.create_portal(customer_id)

Version History:
    2026-10-19: Subscription webhooks reconcile into the per-user quota
                record; checkout/portal brokered through the provider
"""

from typing import Optional, Dict, Any

from sqlalchemy.exc import IntegrityError

from billing_relay.config import RelayConfig
from billing_relay.db import get_db
from billing_relay.errors import (
    BillingError, ProviderError, RequestValidationError,
    WebhookSignatureError
)
from billing_relay.events import (
    BillingEvent, CheckoutCompleted, SubscriptionChanged, SubscriptionDeleted,
    InvoicePaid, InvoicePaymentFailed, parse_event
)
from billing_relay.models import PaymentEvent, SubscriptionStatus, utcnow
from billing_relay.providers import PaymentProvider, StripeProvider
from billing_relay.quota import QuotaDecision, QuotaGate
from billing_relay.reconcile import ReconcileResult, Transition, apply_transition
from billing_relay.store import ensure_record, get_record, set_customer_id_if_absent


class BillingService:
    """
    Coordinates the quota gate, webhook reconciliation and hosted checkout.

    Design:
        1. Routes call BillingService methods
        2. BillingService owns the per-user quota record
        3. BillingService delegates payment flows to a PaymentProvider
        4. Webhooks are the only way subscription state changes
    """

    def __init__(
        self,
        config: RelayConfig,
        provider: Optional[PaymentProvider] = None,
        gate: Optional[QuotaGate] = None
    ):
        self.config = config
        self._provider = provider
        self.gate = gate or QuotaGate(limit=config.free_request_limit)

    @property
    def provider(self) -> PaymentProvider:
        """Get active payment provider."""
        if self._provider is None:
            self._provider = StripeProvider(
                secret_key=self.config.stripe_secret_key,
                webhook_secret=self.config.stripe_webhook_secret,
                max_network_retries=self.config.stripe_max_network_retries,
                timeout=self.config.stripe_timeout,
            )
        return self._provider

    # =========================================================================
    # QUOTA
    # =========================================================================

    def validate_request(self, user_id: str) -> QuotaDecision:
        """Check the free-tier quota and consume one request if allowed."""
        if not user_id:
            raise RequestValidationError('userId is required')
        return self.gate.check_and_consume(get_db(), user_id)

    def get_subscription_status(self, user_id: str) -> Dict[str, Any]:
        """
        Current quota and subscription state for a user.

        Returns:
            {
                'isPremium': bool,
                'requestCount': int,
                'subscriptionStatus': str | None,
                'subscriptionEndDate': ISO-8601 str | None,
                'stripeCustomerId': str        # only once linked
            }
        """
        if not user_id:
            raise RequestValidationError('userId is required')
        record = ensure_record(get_db(), user_id)
        return record.to_status_dict()

    # =========================================================================
    # CHECKOUT / PORTAL
    # =========================================================================

    def create_checkout(
        self,
        user_id: str,
        email: str,
        price_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Create a subscription checkout session.

        Flow:
            1. Ensure the user's quota record
            2. Create the Stripe customer on first checkout and link it
            3. Create the hosted checkout session (metadata.userId = user_id)

        Returns:
            {'sessionId': str, 'url': str}
        """
        if not user_id or not email:
            raise RequestValidationError('userId and email are required')

        price_id = price_id or self.config.stripe_price_id
        if not price_id:
            raise RequestValidationError('priceId is required (no default price configured)')

        db = get_db()
        record = ensure_record(db, user_id)
        customer_id = record.stripe_customer_id

        if not customer_id:
            customer_id = self.provider.create_customer(email, user_id)
            if not set_customer_id_if_absent(db, user_id, customer_id):
                # another checkout linked a customer first; use that one
                record = get_record(db, user_id)
                if not record or not record.stripe_customer_id:
                    raise BillingError(f"Could not link customer {customer_id} to user {user_id}")
                customer_id = record.stripe_customer_id

        result = self.provider.create_checkout_session(
            customer_id=customer_id,
            price_id=price_id,
            success_url=self.config.success_url,
            cancel_url=self.config.cancel_url,
            user_id=user_id,
        )

        if not result.success:
            raise ProviderError(result.error or 'Checkout creation failed')

        print(f"[Billing] Checkout created for user {user_id}, customer {customer_id}, session {result.provider_session_id}")

        return {
            'sessionId': result.provider_session_id,
            'url': result.checkout_url,
        }

    def create_portal(self, customer_id: str) -> Dict[str, Any]:
        """Create a billing portal session that returns to the frontend."""
        if not customer_id:
            raise RequestValidationError('customerId is required')

        result = self.provider.create_portal_session(
            customer_id=customer_id,
            return_url=self.config.frontend_url,
        )

        if not result.success:
            raise ProviderError(result.error or 'Portal session creation failed')

        return {'url': result.portal_url}

    # =========================================================================
    # WEBHOOKS
    # =========================================================================

    def handle_webhook(
        self,
        payload: bytes,
        signature: str
    ) -> Dict[str, Any]:
        """
        Handle incoming webhook from the payment provider.

        Flow:
            1. Verify signature (failure: nothing is processed or written)
            2. Decode into a typed event
            3. Log the event; a delivery already processed is acknowledged
            4. Route to the handler for its family
            5. Mark processed

        Handler errors are recorded on the event log and re-raised, so the
        route answers with an error and Stripe retries.

        Raises:
            WebhookSignatureError: signature verification failed
            EventDecodeError: verified payload is malformed
            UnknownCustomerError, store/provider errors: from handlers
        """
        is_valid, event_data = self.provider.verify_webhook(payload, signature)

        if not is_valid:
            print("[Billing] Webhook signature verification failed")
            raise WebhookSignatureError('Invalid signature')

        event_id = event_data.get('id')
        event_type = event_data.get('type')

        print(f"[Billing] Webhook received: {event_type} ({event_id})")

        event = parse_event(event_data)

        if not event_id:
            # parse_event only lets an id-less event through as UnknownEvent
            print(f"[Billing] Unhandled event type without id: {event_type}")
            return {
                'success': True,
                'message': f'Ignored {event_type}',
                'event_id': None
            }

        db = get_db()
        payment_event_id = self._record_event(db, event_id, event_type, event_data)

        if payment_event_id is None:
            print(f"[Billing] Duplicate webhook ignored: {event_id}")
            return {
                'success': True,
                'message': 'Already processed',
                'event_id': event_id
            }

        try:
            self.dispatch(event)
        except Exception as e:
            db.rollback()
            payment_event = db.get(PaymentEvent, payment_event_id)
            payment_event.error_message = str(e)
            db.commit()
            print(f"[Billing] Webhook handler error for {event_type} ({event_id}): {e}")
            raise

        # Mark event as processed
        payment_event = db.get(PaymentEvent, payment_event_id)
        payment_event.processed = True
        payment_event.processed_at = utcnow()
        payment_event.error_message = None
        db.commit()

        return {
            'success': True,
            'message': f'Processed {event_type}',
            'event_id': event_id
        }

    def _record_event(self, db, event_id: str, event_type: str, event_data: dict) -> Optional[int]:
        """
        Insert the event into the log.

        Returns:
            The log row id to process under, or None if this event id was
            already processed.
        """
        try:
            # unique constraint catches redeliveries
            payment_event = PaymentEvent(
                provider=self.provider.name,
                provider_event_id=event_id,
                event_type=event_type,
                payload_json=event_data
            )
            db.add(payment_event)
            db.commit()
            return payment_event.id

        except IntegrityError:
            db.rollback()

            existing = db.query(PaymentEvent).filter_by(
                provider=self.provider.name,
                provider_event_id=event_id
            ).populate_existing().first()

            if existing is None:
                raise
            if existing.processed:
                return None

            print(f"[Billing] Retrying previously failed webhook: {event_id}")
            return existing.id

    def dispatch(self, event: BillingEvent) -> Optional[ReconcileResult]:
        """Route a decoded event to its handler. Unknown types are acknowledged."""
        db = get_db()

        if isinstance(event, CheckoutCompleted):
            self._handle_checkout_completed(db, event)
        elif isinstance(event, SubscriptionChanged):
            return self._handle_subscription_changed(db, event)
        elif isinstance(event, SubscriptionDeleted):
            return self._handle_subscription_deleted(db, event)
        elif isinstance(event, InvoicePaid):
            self._handle_invoice_paid(event)
        elif isinstance(event, InvoicePaymentFailed):
            self._handle_invoice_payment_failed(event)
        else:
            print(f"[Billing] Unhandled event type: {event.event_type}")
        return None

    def _handle_checkout_completed(self, db, event: CheckoutCompleted):
        """Link the Stripe customer to our user id from the session metadata."""
        if not event.user_id:
            print(f"[Billing] No userId in checkout session metadata ({event.session_id}); ignored")
            return

        if not event.customer_id:
            print(f"[Billing] Checkout session {event.session_id} has no customer; ignored")
            return

        ensure_record(db, event.user_id)
        if set_customer_id_if_absent(db, event.user_id, event.customer_id):
            print(f"[Billing] Checkout completed - user {event.user_id} with customer {event.customer_id}")

    def _handle_subscription_changed(self, db, event: SubscriptionChanged) -> ReconcileResult:
        print(
            f"[Billing] Subscription {event.subscription_id} for customer {event.customer_id}: "
            f"status={event.status}, period_end={event.period_end}"
        )

        transition = Transition(
            customer_id=event.customer_id,
            subscription_id=event.subscription_id,
            status=event.status,
            period_end=event.period_end,
            event_time=event.created,
        )
        return apply_transition(db, transition)

    def _handle_subscription_deleted(self, db, event: SubscriptionDeleted) -> ReconcileResult:
        transition = Transition(
            customer_id=event.customer_id,
            subscription_id=event.subscription_id,
            status=SubscriptionStatus.CANCELED,
            period_end=utcnow(),
            event_time=event.created,
            is_deletion=True,
        )
        result = apply_transition(db, transition)

        if result.updated:
            print(f"[Billing] Subscription {event.subscription_id} canceled for customer {event.customer_id}")
        return result

    def _handle_invoice_paid(self, event: InvoicePaid):
        # 'subscription_create' = first payment, 'subscription_cycle' = renewal
        amount = event.amount / 100 if event.amount is not None else None
        print(
            f"[Billing] Invoice {event.invoice_id} paid: customer={event.customer_id}, "
            f"subscription={event.subscription_id}, amount={amount}, reason={event.billing_reason}"
        )

    def _handle_invoice_payment_failed(self, event: InvoicePaymentFailed):
        # premium follows customer.subscription.updated (past_due/unpaid), not this event
        amount = event.amount / 100 if event.amount is not None else None
        print(
            f"[Billing] Invoice {event.invoice_id} payment failed: customer={event.customer_id}, "
            f"subscription={event.subscription_id}, amount_due={amount}, attempt={event.attempt_count}"
        )
