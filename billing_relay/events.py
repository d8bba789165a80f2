"""
billing_relay/events.py

Decoding of verified Stripe events into one typed value per event family.

Stripe's `data.object` differs by event type (subscription, invoice,
checkout session). Each family gets a frozen dataclass carrying only the
fields that family guarantees; parse_event() is the single place where
raw payload keys are read.

Families:
    checkout.session.completed                     -> CheckoutCompleted
    customer.subscription.created / .updated       -> SubscriptionChanged
    customer.subscription.deleted                  -> SubscriptionDeleted
    invoice.paid / invoice.payment_succeeded       -> InvoicePaid
    invoice.payment_failed                         -> InvoicePaymentFailed
    anything else                                  -> UnknownEvent

Subscription period end, in order of preference:
    1. subscription.current_period_end
    2. subscription.items.data[0].current_period_end
    3. billing_cycle_anchor + interval_count x interval
       (month/year are calendar steps clamped to the month's last day,
        day/week are 1 and 7 days; defaults month x 1)
"""

import calendar
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

from billing_relay.errors import EventDecodeError
from billing_relay.models import SubscriptionStatus


CHECKOUT_COMPLETED_EVENTS = ('checkout.session.completed',)
SUBSCRIPTION_CHANGED_EVENTS = ('customer.subscription.created', 'customer.subscription.updated')
SUBSCRIPTION_DELETED_EVENTS = ('customer.subscription.deleted',)
# invoice.paid is current, invoice.payment_succeeded is legacy; same meaning here
INVOICE_PAID_EVENTS = ('invoice.paid', 'invoice.payment_succeeded')
INVOICE_FAILED_EVENTS = ('invoice.payment_failed',)

HANDLED_EVENTS = (
    CHECKOUT_COMPLETED_EVENTS
    + SUBSCRIPTION_CHANGED_EVENTS
    + SUBSCRIPTION_DELETED_EVENTS
    + INVOICE_PAID_EVENTS
    + INVOICE_FAILED_EVENTS
)

INTERVALS = ('day', 'week', 'month', 'year')


# =============================================================================
# EVENT TYPES
# =============================================================================

@dataclass(frozen=True)
class CheckoutCompleted:
    event_id: str
    created: datetime
    session_id: Optional[str]
    customer_id: Optional[str]
    user_id: Optional[str]          # our user id, from session metadata
    subscription_id: Optional[str]


@dataclass(frozen=True)
class SubscriptionChanged:
    event_id: str
    event_type: str
    created: datetime
    customer_id: str
    subscription_id: Optional[str]
    status: str                      # canonical: 'canceling' synthesized
    period_end: Optional[datetime]
    cancel_at_period_end: bool = False


@dataclass(frozen=True)
class SubscriptionDeleted:
    event_id: str
    created: datetime
    customer_id: str
    subscription_id: Optional[str]


@dataclass(frozen=True)
class InvoicePaid:
    event_id: str
    created: datetime
    invoice_id: Optional[str]
    customer_id: Optional[str]
    subscription_id: Optional[str]
    amount: Optional[int]            # cents
    billing_reason: Optional[str]


@dataclass(frozen=True)
class InvoicePaymentFailed:
    event_id: str
    created: datetime
    invoice_id: Optional[str]
    customer_id: Optional[str]
    subscription_id: Optional[str]
    amount: Optional[int]            # cents due
    attempt_count: Optional[int]


@dataclass(frozen=True)
class UnknownEvent:
    event_id: str
    event_type: str
    created: Optional[datetime] = None


BillingEvent = Union[
    CheckoutCompleted,
    SubscriptionChanged,
    SubscriptionDeleted,
    InvoicePaid,
    InvoicePaymentFailed,
    UnknownEvent,
]


# =============================================================================
# TIME HELPERS
# =============================================================================

def from_timestamp(value) -> Optional[datetime]:
    """Unix seconds -> naive UTC datetime (None passes through)."""
    if value is None:
        return None
    try:
        seconds = int(value)
    except (TypeError, ValueError):
        raise EventDecodeError(f"Invalid timestamp: {value!r}")
    return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)


def add_months(moment: datetime, months: int) -> datetime:
    """Calendar month addition; day clamped to the target month's length."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def add_interval(anchor: datetime, interval: str = 'month', count: int = 1) -> datetime:
    """
    Advance anchor by count billing intervals.

    >>> add_interval(datetime(2024, 1, 31), 'month', 1)
    datetime.datetime(2024, 2, 29, 0, 0)
    """
    if interval == 'day':
        return anchor + timedelta(days=count)
    if interval == 'week':
        return anchor + timedelta(days=7 * count)
    if interval == 'month':
        return add_months(anchor, count)
    if interval == 'year':
        return add_months(anchor, 12 * count)
    raise EventDecodeError(f"Unknown billing interval: {interval!r}")


# =============================================================================
# SUBSCRIPTION FIELDS
# =============================================================================

def _first_item(subscription: dict) -> dict:
    items = (subscription.get('items') or {}).get('data') or []
    return items[0] if items else {}


def _billing_interval(subscription: dict):
    """(interval, interval_count) from the plan, else the first item's price."""
    plan = subscription.get('plan') or {}
    interval = plan.get('interval')
    count = plan.get('interval_count')

    if not interval:
        item = _first_item(subscription)
        recurring = (item.get('price') or {}).get('recurring') or (item.get('plan') or {})
        interval = recurring.get('interval')
        count = count or recurring.get('interval_count')

    return interval or 'month', int(count or 1)


def resolve_period_end(subscription: dict) -> Optional[datetime]:
    """Current period end of a Stripe subscription object."""
    if subscription.get('current_period_end'):
        return from_timestamp(subscription['current_period_end'])

    item = _first_item(subscription)
    if item.get('current_period_end'):
        return from_timestamp(item['current_period_end'])

    anchor = from_timestamp(subscription.get('billing_cycle_anchor'))
    if anchor is None:
        return None

    interval, count = _billing_interval(subscription)
    return add_interval(anchor, interval, count)


def canonical_status(subscription: dict) -> str:
    """Stripe status, except active + cancel_at_period_end -> 'canceling'."""
    status = subscription.get('status') or SubscriptionStatus.NONE
    if status == SubscriptionStatus.ACTIVE and subscription.get('cancel_at_period_end'):
        return SubscriptionStatus.CANCELING
    return status


def _customer_id(obj: dict) -> Optional[str]:
    customer = obj.get('customer')
    # expanded customer objects carry the id inside
    if isinstance(customer, dict):
        return customer.get('id')
    return customer


def _invoice_subscription_id(invoice: dict) -> Optional[str]:
    if invoice.get('subscription'):
        return invoice['subscription']
    details = ((invoice.get('parent') or {}).get('subscription_details') or {})
    return details.get('subscription')


# =============================================================================
# PARSER
# =============================================================================

def parse_event(event: dict) -> BillingEvent:
    """
    Decode a verified Stripe event dict.

    Types outside the handled families decode to UnknownEvent whatever
    the rest of the payload looks like.

    Raises:
        EventDecodeError: a handled event lacks fields its family requires
    """
    event_type = event.get('type')
    if not event_type:
        raise EventDecodeError("Event has no type")

    event_id = event.get('id') or ''

    if event_type not in HANDLED_EVENTS:
        created = event.get('created')
        return UnknownEvent(
            event_id=event_id,
            event_type=event_type,
            created=from_timestamp(created) if isinstance(created, int) else None,
        )

    if not event_id:
        raise EventDecodeError(f"{event_type} event has no id")
    created = from_timestamp(event.get('created'))
    if created is None:
        raise EventDecodeError(f"Event {event_id} has no created timestamp")

    obj = (event.get('data') or {}).get('object')
    if not isinstance(obj, dict):
        raise EventDecodeError(f"Event {event_id} has no data.object")

    if event_type in CHECKOUT_COMPLETED_EVENTS:
        metadata = obj.get('metadata') or {}
        return CheckoutCompleted(
            event_id=event_id,
            created=created,
            session_id=obj.get('id'),
            customer_id=_customer_id(obj),
            user_id=metadata.get('userId') or metadata.get('user_id') or obj.get('client_reference_id'),
            subscription_id=obj.get('subscription'),
        )

    if event_type in SUBSCRIPTION_CHANGED_EVENTS or event_type in SUBSCRIPTION_DELETED_EVENTS:
        customer_id = _customer_id(obj)
        if not customer_id:
            raise EventDecodeError(f"Subscription event {event_id} has no customer")

        if event_type in SUBSCRIPTION_DELETED_EVENTS:
            return SubscriptionDeleted(
                event_id=event_id,
                created=created,
                customer_id=customer_id,
                subscription_id=obj.get('id'),
            )

        return SubscriptionChanged(
            event_id=event_id,
            event_type=event_type,
            created=created,
            customer_id=customer_id,
            subscription_id=obj.get('id'),
            status=canonical_status(obj),
            period_end=resolve_period_end(obj),
            cancel_at_period_end=bool(obj.get('cancel_at_period_end')),
        )

    if event_type in INVOICE_PAID_EVENTS:
        return InvoicePaid(
            event_id=event_id,
            created=created,
            invoice_id=obj.get('id'),
            customer_id=_customer_id(obj),
            subscription_id=_invoice_subscription_id(obj),
            amount=obj.get('amount_paid'),
            billing_reason=obj.get('billing_reason'),
        )

    if event_type in INVOICE_FAILED_EVENTS:
        return InvoicePaymentFailed(
            event_id=event_id,
            created=created,
            invoice_id=obj.get('id'),
            customer_id=_customer_id(obj),
            subscription_id=_invoice_subscription_id(obj),
            amount=obj.get('amount_due'),
            attempt_count=obj.get('attempt_count'),
        )

    return UnknownEvent(event_id=event_id, event_type=event_type, created=created)
