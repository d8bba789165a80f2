"""
billing_relay/reconcile.py

Merges a subscription event into the stored quota record without
regressing to stale state.

Stripe delivers webhooks at least once and in no particular order, so
every transition is checked against what is already stored:

    1. No record for the customer           -> UnknownCustomerError
    2. Event older than last_webhook_at     -> reject 'stale_event'
    3. Stored 'canceled', incoming revives it, and the event is not
       strictly newer                       -> reject 'canceled_not_resurrected'
    4. Stored premium on subscription X, incoming non-premium status for
       another subscription Y (not a deletion)
                                            -> reject 'superseded_subscription'
    5. Otherwise accept: premium = status in {active, canceling}

A deletion is only subject to rule 2 and always lands as canceled,
not premium.

decide() is pure. apply_transition() runs it inside a transaction and
writes with a compare-and-set on webhook_version, re-reading and
re-deciding if a concurrent delivery got there first.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from billing_relay.errors import ConcurrentUpdateError, UnknownCustomerError
from billing_relay.models import SubscriptionStatus, UserQuotaRecord, utcnow
from billing_relay.store import compare_and_set_subscription, get_record_by_customer


MAX_CAS_ATTEMPTS = 5


class RejectReason:
    """Why a transition was not applied."""
    STALE_EVENT = 'stale_event'
    CANCELED_NOT_RESURRECTED = 'canceled_not_resurrected'
    SUPERSEDED_SUBSCRIPTION = 'superseded_subscription'


@dataclass(frozen=True)
class Transition:
    """Canonical subscription change, produced from a webhook event."""
    customer_id: str
    subscription_id: Optional[str]
    status: str
    period_end: Optional[datetime]
    event_time: datetime
    is_deletion: bool = False


@dataclass(frozen=True)
class RecordState:
    """The stored fields reconciliation looks at."""
    subscription_status: Optional[str]
    subscription_id: Optional[str]
    last_webhook_at: Optional[datetime]

    @classmethod
    def of(cls, record: UserQuotaRecord) -> 'RecordState':
        return cls(
            subscription_status=record.subscription_status,
            subscription_id=record.subscription_id,
            last_webhook_at=record.last_webhook_at,
        )


@dataclass(frozen=True)
class Decision:
    accept: bool
    reason: Optional[str] = None
    status: Optional[str] = None
    is_premium: Optional[bool] = None


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of applying a transition: {updated, reason?, status?, isPremium?}."""
    updated: bool
    reason: Optional[str] = None
    status: Optional[str] = None
    is_premium: Optional[bool] = None

    def to_dict(self) -> dict:
        data = {'updated': self.updated}
        if self.reason is not None:
            data['reason'] = self.reason
        if self.status is not None:
            data['status'] = self.status
        if self.is_premium is not None:
            data['isPremium'] = self.is_premium
        return data


# =============================================================================
# DECISION
# =============================================================================

def decide(current: RecordState, incoming: Transition) -> Decision:
    """Accept or reject incoming against the stored state."""
    last = current.last_webhook_at

    if last is not None and incoming.event_time < last:
        return Decision(accept=False, reason=RejectReason.STALE_EVENT)

    if incoming.is_deletion:
        return Decision(accept=True, status=SubscriptionStatus.CANCELED, is_premium=False)

    stored = current.subscription_status

    if (
        stored == SubscriptionStatus.CANCELED
        and incoming.status != SubscriptionStatus.CANCELED
        and last is not None
        and incoming.event_time <= last
    ):
        return Decision(accept=False, reason=RejectReason.CANCELED_NOT_RESURRECTED)

    if (
        SubscriptionStatus.is_premium(stored)
        and not SubscriptionStatus.is_premium(incoming.status)
        and current.subscription_id
        and incoming.subscription_id
        and incoming.subscription_id != current.subscription_id
    ):
        return Decision(accept=False, reason=RejectReason.SUPERSEDED_SUBSCRIPTION)

    return Decision(
        accept=True,
        status=incoming.status,
        is_premium=SubscriptionStatus.is_premium(incoming.status),
    )


# =============================================================================
# ATOMIC APPLY
# =============================================================================

def apply_transition(db: Session, transition: Transition) -> ReconcileResult:
    """
    Read, decide and write one transition atomically.

    Raises:
        UnknownCustomerError: no record carries transition.customer_id
        ConcurrentUpdateError: lost the compare-and-set MAX_CAS_ATTEMPTS times
    """
    for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
        try:
            record = get_record_by_customer(db, transition.customer_id, for_update=True)
            if record is None:
                db.rollback()
                print(f"[Reconcile] No record for customer {transition.customer_id}")
                raise UnknownCustomerError(transition.customer_id)

            decision = decide(RecordState.of(record), transition)

            if not decision.accept:
                db.rollback()
                print(
                    f"[Reconcile] Skipped {transition.status} for customer {transition.customer_id} "
                    f"(subscription {transition.subscription_id}): {decision.reason}"
                )
                return ReconcileResult(updated=False, reason=decision.reason)

            written = compare_and_set_subscription(
                db,
                record_id=record.id,
                expected_version=record.webhook_version,
                is_premium=decision.is_premium,
                subscription_status=decision.status,
                subscription_id=transition.subscription_id or record.subscription_id,
                subscription_end_date=transition.period_end,
                last_webhook_at=transition.event_time,
                updated_at=utcnow(),
            )

            if written:
                db.commit()
                print(
                    f"[Reconcile] Customer {transition.customer_id} -> {decision.status} "
                    f"(premium={decision.is_premium}, subscription {transition.subscription_id})"
                )
                return ReconcileResult(
                    updated=True,
                    status=decision.status,
                    is_premium=decision.is_premium,
                )

            db.rollback()
            print(f"[Reconcile] Concurrent update for customer {transition.customer_id}, retry {attempt}")

        except Exception:
            db.rollback()
            raise

    raise ConcurrentUpdateError(
        f"Gave up reconciling customer {transition.customer_id} after {MAX_CAS_ATTEMPTS} attempts"
    )
