"""
Tests for BillingService: webhook dispatch and hosted-flow brokering.
"""

import json

import pytest

from billing_relay.errors import (
    ProviderError, RequestValidationError, UnknownCustomerError, WebhookSignatureError
)
from billing_relay.models import PaymentEvent, UserQuotaRecord
from billing_relay.service import BillingService
from billing_relay.store import get_record

from conftest import VALID_SIGNATURE, make_event, make_subscription, ts


@pytest.fixture
def service(config, provider, db):
    return BillingService(config, provider=provider)


def deliver(service, event, signature=VALID_SIGNATURE):
    return service.handle_webhook(json.dumps(event).encode('utf-8'), signature)


class TestWebhookDispatch:

    def test_bad_signature_processes_nothing(self, service, db):
        event = make_event('checkout.session.completed',
                           {'id': 'cs_1', 'customer': 'cus_1', 'metadata': {'userId': 'u1'}})

        with pytest.raises(WebhookSignatureError):
            deliver(service, event, signature='t=1,v1=forged')

        assert db.query(PaymentEvent).count() == 0
        assert db.query(UserQuotaRecord).count() == 0

    def test_unknown_event_type_is_acknowledged(self, service, db):
        result = deliver(service, make_event('customer.created', {'id': 'cus_1'}))

        assert result['success'] is True
        assert db.query(PaymentEvent).one().processed is True

    def test_checkout_without_user_id_is_a_no_op(self, service, db, add_record):
        add_record('u1', request_count=2)
        before = get_record(db, 'u1')
        snapshot = (before.stripe_customer_id, before.request_count, before.updated_at)
        event = make_event('checkout.session.completed', {'id': 'cs_1', 'customer': 'cus_1', 'metadata': {}})

        result = deliver(service, event)

        assert result['success'] is True
        assert db.query(UserQuotaRecord).count() == 1
        after = get_record(db, 'u1')
        assert (after.stripe_customer_id, after.request_count, after.updated_at) == snapshot
        assert snapshot[0] is None

    def test_checkout_links_customer(self, service, db):
        event = make_event('checkout.session.completed',
                           {'id': 'cs_1', 'customer': 'cus_1', 'metadata': {'userId': 'u1'}})

        deliver(service, event)

        record = get_record(db, 'u1')
        assert record.stripe_customer_id == 'cus_1'
        assert record.request_count == 0

    def test_checkout_never_replaces_existing_customer(self, service, db, add_record):
        add_record('u1', stripe_customer_id='cus_original')
        event = make_event('checkout.session.completed',
                           {'id': 'cs_2', 'customer': 'cus_other', 'metadata': {'userId': 'u1'}})

        deliver(service, event)

        assert get_record(db, 'u1').stripe_customer_id == 'cus_original'

    def test_subscription_lifecycle(self, service, db, add_record):
        add_record('u1', stripe_customer_id='cus_1', request_count=5)

        deliver(service, make_event(
            'customer.subscription.created',
            make_subscription(current_period_end=ts(2024, 2, 1)),
            created=ts(2024, 1, 1), event_id='evt_created',
        ))
        assert get_record(db, 'u1').is_premium is True

        deliver(service, make_event(
            'customer.subscription.updated',
            make_subscription(cancel_at_period_end=True, current_period_end=ts(2024, 2, 1)),
            created=ts(2024, 1, 10), event_id='evt_canceling',
        ))
        record = get_record(db, 'u1')
        assert record.subscription_status == 'canceling'
        assert record.is_premium is True

        deliver(service, make_event(
            'customer.subscription.deleted',
            make_subscription(status='canceled'),
            created=ts(2024, 2, 1), event_id='evt_deleted',
        ))
        record = get_record(db, 'u1')
        assert record.subscription_status == 'canceled'
        assert record.is_premium is False
        assert record.request_count == 5

    def test_late_canceling_event_does_not_resurrect(self, service, db, add_record):
        add_record('u1', stripe_customer_id='cus_1')
        deliver(service, make_event('customer.subscription.deleted', make_subscription(status='canceled'),
                                    created=ts(2024, 2, 1), event_id='evt_deleted'))

        deliver(service, make_event('customer.subscription.updated',
                                    make_subscription(cancel_at_period_end=True),
                                    created=ts(2024, 1, 10), event_id='evt_late'))

        record = get_record(db, 'u1')
        assert record.subscription_status == 'canceled'
        assert record.is_premium is False

    def test_processed_event_redelivery_is_acknowledged(self, service, db, add_record):
        add_record('u1', stripe_customer_id='cus_1')
        event = make_event('customer.subscription.updated', make_subscription(), event_id='evt_dup')

        deliver(service, event)
        result = deliver(service, event)

        assert result['message'] == 'Already processed'
        assert get_record(db, 'u1').webhook_version == 1

    def test_unknown_customer_fails_and_retry_succeeds(self, service, db, add_record):
        event = make_event('customer.subscription.updated', make_subscription(customer='cus_later'),
                           event_id='evt_early')

        with pytest.raises(UnknownCustomerError):
            deliver(service, event)

        logged = db.query(PaymentEvent).filter_by(provider_event_id='evt_early').populate_existing().one()
        assert logged.processed is False
        assert 'cus_later' in logged.error_message

        add_record('u1', stripe_customer_id='cus_later')
        result = deliver(service, event)

        assert result['message'] == 'Processed customer.subscription.updated'
        assert get_record(db, 'u1').is_premium is True

    @pytest.mark.parametrize('event_type', ['invoice.paid', 'invoice.payment_succeeded', 'invoice.payment_failed'])
    def test_invoice_events_do_not_change_state(self, service, db, add_record, event_type):
        add_record('u1', stripe_customer_id='cus_1')
        invoice = {'id': 'in_1', 'customer': 'cus_1', 'subscription': 'sub_1',
                   'amount_paid': 999, 'amount_due': 999, 'attempt_count': 1}

        result = deliver(service, make_event(event_type, invoice))

        assert result['success'] is True
        record = get_record(db, 'u1')
        assert record.webhook_version == 0
        assert record.is_premium is False


class TestHostedFlows:

    def test_checkout_creates_customer_once(self, service, provider, db):
        first = service.create_checkout('u1', 'u1@example.com')
        second = service.create_checkout('u1', 'u1@example.com', price_id='price_yearly')

        assert first == {'sessionId': 'cs_test_1', 'url': 'https://checkout.stripe.com/c/pay/cs_test_1'}
        assert second['sessionId'] == 'cs_test_2'
        assert len(provider.customers) == 1
        assert get_record(db, 'u1').stripe_customer_id == 'cus_fake_1'

        assert provider.checkouts[0]['price_id'] == 'price_default'
        assert provider.checkouts[1]['price_id'] == 'price_yearly'
        assert provider.checkouts[0]['user_id'] == 'u1'
        assert provider.checkouts[0]['success_url'] == (
            'https://app.example.com/success.html?session_id={CHECKOUT_SESSION_ID}'
        )
        assert provider.checkouts[0]['cancel_url'] == 'https://app.example.com/cancel.html'

    def test_checkout_reuses_linked_customer(self, service, provider, add_record):
        add_record('u1', stripe_customer_id='cus_existing')

        service.create_checkout('u1', 'u1@example.com')

        assert provider.customers == []
        assert provider.checkouts[0]['customer_id'] == 'cus_existing'

    def test_checkout_requires_a_price(self, config, provider, db):
        from dataclasses import replace

        service = BillingService(replace(config, stripe_price_id=None), provider=provider)

        with pytest.raises(RequestValidationError):
            service.create_checkout('u1', 'u1@example.com')

    def test_checkout_provider_failure(self, service, provider):
        provider.fail_checkout = True

        with pytest.raises(ProviderError):
            service.create_checkout('u1', 'u1@example.com')

    def test_portal_returns_to_frontend(self, service, provider):
        result = service.create_portal('cus_1')

        assert result == {'url': 'https://billing.stripe.com/p/session/cus_1'}
        assert provider.portals == [('cus_1', 'https://app.example.com')]

    def test_status_for_new_user(self, service, db):
        status = service.get_subscription_status('fresh')

        assert status == {
            'isPremium': False,
            'requestCount': 0,
            'subscriptionStatus': None,
            'subscriptionEndDate': None,
        }
        assert get_record(db, 'fresh') is not None
