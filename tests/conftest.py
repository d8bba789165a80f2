"""
Shared fixtures: SQLite-backed store, a fake payment provider, Flask client.
"""

import json
from datetime import datetime, timezone

import pytest

from billing_relay.config import RelayConfig
from billing_relay.db import configure_engine, dispose_engine, get_db, init_db
from billing_relay.models import UserQuotaRecord, utcnow
from billing_relay.providers.base import PaymentProvider, CheckoutResult, PortalResult


VALID_SIGNATURE = 't=1,v1=valid'


class FakeProvider(PaymentProvider):
    """In-memory stand-in for Stripe."""

    def __init__(self):
        self.customers = []
        self.checkouts = []
        self.portals = []
        self.fail_checkout = False

    @property
    def name(self):
        return 'stripe'

    def verify_webhook(self, payload, signature):
        if signature != VALID_SIGNATURE:
            return False, None
        return True, json.loads(payload)

    def create_customer(self, email, user_id):
        customer_id = f'cus_fake_{len(self.customers) + 1}'
        self.customers.append((customer_id, email, user_id))
        return customer_id

    def create_checkout_session(self, customer_id, price_id, success_url, cancel_url, user_id):
        if self.fail_checkout:
            return CheckoutResult(success=False, error='card_declined')
        session_id = f'cs_test_{len(self.checkouts) + 1}'
        self.checkouts.append({
            'customer_id': customer_id,
            'price_id': price_id,
            'success_url': success_url,
            'cancel_url': cancel_url,
            'user_id': user_id,
        })
        return CheckoutResult(
            success=True,
            checkout_url=f'https://checkout.stripe.com/c/pay/{session_id}',
            provider_session_id=session_id,
        )

    def create_portal_session(self, customer_id, return_url):
        self.portals.append((customer_id, return_url))
        return PortalResult(success=True, portal_url=f'https://billing.stripe.com/p/session/{customer_id}')


def ts(year, month, day, hour=0, minute=0, second=0) -> int:
    """UTC wall time -> Unix seconds, as Stripe sends them."""
    return int(datetime(year, month, day, hour, minute, second, tzinfo=timezone.utc).timestamp())


def make_event(event_type, obj, created=None, event_id='evt_1') -> dict:
    return {
        'id': event_id,
        'object': 'event',
        'type': event_type,
        'created': created if created is not None else ts(2024, 1, 1),
        'data': {'object': obj},
    }


def make_subscription(
    sub_id='sub_1',
    customer='cus_1',
    status='active',
    cancel_at_period_end=False,
    current_period_end=None,
    **extra
) -> dict:
    sub = {
        'id': sub_id,
        'object': 'subscription',
        'customer': customer,
        'status': status,
        'cancel_at_period_end': cancel_at_period_end,
        'items': {'data': []},
    }
    if current_period_end is not None:
        sub['current_period_end'] = current_period_end
    sub.update(extra)
    return sub


@pytest.fixture
def config(tmp_path):
    return RelayConfig(
        stripe_secret_key='sk_test_123',
        stripe_webhook_secret='whsec_test',
        database_url=f"sqlite:///{tmp_path / 'relay.db'}",
        frontend_url='https://app.example.com',
        stripe_price_id='price_default',
    )


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def db(config):
    configure_engine(config.database_url)
    init_db()
    yield get_db()
    dispose_engine()


@pytest.fixture
def add_record(db):
    """Insert a quota record directly."""
    def _add(user_id='u1', **fields):
        now = utcnow()
        record = UserQuotaRecord(
            user_id=user_id,
            request_count=fields.pop('request_count', 0),
            is_premium=fields.pop('is_premium', False),
            webhook_version=fields.pop('webhook_version', 0),
            created_at=now,
            updated_at=now,
            **fields
        )
        db.add(record)
        db.commit()
        return record
    return _add


@pytest.fixture
def app(config, provider):
    from app import create_app

    flask_app = create_app(config, provider=provider)
    flask_app.config['TESTING'] = True
    yield flask_app
    dispose_engine()


@pytest.fixture
def client(app):
    return app.test_client()
