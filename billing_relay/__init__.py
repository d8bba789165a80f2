"""
billing_relay/__init__.py

Relay between Stripe subscription billing and a per-user request quota.

    - Free-tier quota gate (fixed request limit per user)
    - Premium flag and subscription state kept in sync from Stripe webhooks
    - Hosted checkout / billing portal brokering

Quick Start:
    from billing_relay import init_billing, load_config

    app = Flask(__name__)
    init_billing(app, load_config())

Version History:
    2026-10-19: Initial implementation
"""

from billing_relay.config import RelayConfig, load_config, FREE_REQUEST_LIMIT
from billing_relay.db import configure_engine, init_db, get_db, db_session, check_connection
from billing_relay.errors import (
    BillingError, ConfigError, RequestValidationError, WebhookSignatureError,
    EventDecodeError, UnknownCustomerError, ProviderError, ConcurrentUpdateError
)
from billing_relay.quota import QuotaGate, QuotaDecision
from billing_relay.reconcile import Transition, ReconcileResult, apply_transition, decide
from billing_relay.routes import billing_bp
from billing_relay.service import BillingService


def init_billing(app, config: RelayConfig, provider=None) -> BillingService:
    """
    Initialize the billing relay for a Flask app.

    This initializes:
        - Database engine, tables, and session cleanup on request teardown
        - The BillingService (stored in app.extensions['billing_relay'])
        - The billing blueprint
    """
    configure_engine(
        config.database_url,
        password=config.database_password,
        pool_timeout=config.db_pool_timeout,
    )
    init_db(app)

    service = BillingService(config, provider=provider)
    app.extensions['billing_relay'] = service
    app.register_blueprint(billing_bp)

    print(f"[Billing] Billing relay initialized (free limit: {config.free_request_limit})")
    return service


__all__ = [
    # Initialization
    'init_billing',
    'load_config',
    'configure_engine',
    'init_db',
    'check_connection',

    # Database
    'get_db',
    'db_session',

    # Config
    'RelayConfig',
    'FREE_REQUEST_LIMIT',

    # Routes / service
    'billing_bp',
    'BillingService',

    # Core
    'QuotaGate',
    'QuotaDecision',
    'Transition',
    'ReconcileResult',
    'apply_transition',
    'decide',

    # Errors
    'BillingError',
    'ConfigError',
    'RequestValidationError',
    'WebhookSignatureError',
    'EventDecodeError',
    'UnknownCustomerError',
    'ProviderError',
    'ConcurrentUpdateError',
]
