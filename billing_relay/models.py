"""
billing_relay/models.py

SQLAlchemy models for the billing relay.

Tables:
    - user_request_limits: one quota record per end-user
    - payment_events: webhook event log for idempotency

Design principles:
    1. One record per user_id, created lazily (ensure, never duplicate)
    2. request_count only ever goes up, and only while not premium
    3. Webhook-driven fields move forward in event time only;
       webhook_version is the compare-and-set token for that
    4. stripe_customer_id is set once, then stable

Version History:
    2026-10-19: Initial implementation
"""

from datetime import datetime, timezone

from sqlalchemy import (
    Column, String, Integer, Boolean, DateTime, Text, JSON,
    Index, UniqueConstraint, CheckConstraint
)
from sqlalchemy.orm import declarative_base


Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC now; every timestamp column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# =============================================================================
# SUBSCRIPTION STATUS
# =============================================================================

class SubscriptionStatus:
    """
    Subscription status values.

    Stripe statuses are stored verbatim; CANCELING is ours, for an
    active subscription flagged cancel_at_period_end.
    """
    NONE = 'none'
    ACTIVE = 'active'
    CANCELING = 'canceling'
    CANCELED = 'canceled'
    PAST_DUE = 'past_due'
    TRIALING = 'trialing'
    INCOMPLETE = 'incomplete'
    UNPAID = 'unpaid'

    # Statuses that grant premium
    PREMIUM = frozenset({ACTIVE, CANCELING})

    @classmethod
    def is_premium(cls, status) -> bool:
        return status in cls.PREMIUM


# =============================================================================
# USER QUOTA RECORD
# =============================================================================

class UserQuotaRecord(Base):
    """
    Per-user request quota and subscription state.

    Mutated only by the QuotaGate (request_count) and by the
    reconciliation procedure (everything webhook-driven).
    """
    __tablename__ = 'user_request_limits'

    id = Column(Integer, primary_key=True)

    # Opaque external identity
    user_id = Column(String(255), unique=True, nullable=False, index=True)

    # Free tier counter
    request_count = Column(Integer, nullable=False, default=0)

    # Entitlement
    is_premium = Column(Boolean, nullable=False, default=False)

    # Subscription state (from webhooks)
    subscription_status = Column(String(50))
    subscription_id = Column(String(255))
    subscription_end_date = Column(DateTime)

    # Stripe customer (cus_xxx), set once
    stripe_customer_id = Column(String(255), unique=True, index=True)

    # Ordering for webhook reconciliation
    last_webhook_at = Column(DateTime)
    webhook_version = Column(Integer, nullable=False, default=0)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint('request_count >= 0', name='ck_user_request_limits_count'),
    )

    def to_status_dict(self) -> dict:
        """Shape returned by GET /api/subscription-status."""
        data = {
            'isPremium': bool(self.is_premium),
            'requestCount': self.request_count or 0,
            'subscriptionStatus': self.subscription_status,
            'subscriptionEndDate': (
                self.subscription_end_date.isoformat() + 'Z'
                if self.subscription_end_date else None
            ),
        }
        if self.stripe_customer_id:
            data['stripeCustomerId'] = self.stripe_customer_id
        return data

    def __repr__(self):
        return f'<UserQuotaRecord {self.user_id} premium={self.is_premium} count={self.request_count}>'


# =============================================================================
# PAYMENT EVENTS MODEL (Webhook Idempotency)
# =============================================================================

class PaymentEvent(Base):
    """
    Webhook event log.

    Before processing any webhook:
    1. Try to insert into this table
    2. If the event id is already there and processed, acknowledge and stop
    3. Otherwise (new, or a previous attempt failed) run the handlers

    Ordering is not this table's job: a redelivered event is still
    checked against last_webhook_at by the reconciliation procedure.
    """
    __tablename__ = 'payment_events'

    id = Column(Integer, primary_key=True)

    # Provider info
    provider = Column(String(50), nullable=False)
    provider_event_id = Column(String(200), nullable=False)  # Stripe event.id

    # Event details
    event_type = Column(String(100))  # 'customer.subscription.updated'
    payload_json = Column(JSON)

    # Processing status
    processed = Column(Boolean, default=False)
    error_message = Column(Text)

    # Timestamps
    received_at = Column(DateTime, default=utcnow)
    processed_at = Column(DateTime)

    # Unique constraint for idempotency
    __table_args__ = (
        UniqueConstraint('provider', 'provider_event_id', name='uq_payment_events_provider_event'),
    )

    def __repr__(self):
        return f'<PaymentEvent {self.provider}:{self.provider_event_id}>'


Index('idx_payment_events_type', PaymentEvent.event_type)
