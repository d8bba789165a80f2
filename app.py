"""
app.py

Flask application for the billing relay.

Run locally:
    python app.py

Production (gunicorn):
    gunicorn --bind 0.0.0.0:$PORT 'app:create_app()'

A missing STRIPE_SECRET_KEY, STRIPE_WEBHOOK_SECRET, DATABASE_URL or
FRONTEND_URL stops startup with a ConfigError.
"""

from typing import Optional

from flask import Flask
from flask_cors import CORS

from billing_relay import RelayConfig, init_billing, load_config
from billing_relay.providers import PaymentProvider


def create_app(config: Optional[RelayConfig] = None, provider: Optional[PaymentProvider] = None) -> Flask:
    """
    Application factory.

    Args:
        config: Resolved configuration (default: load_config() from the environment)
        provider: Payment provider override (default: Stripe)
    """
    if config is None:
        config = load_config()

    app = Flask(__name__)
    app.config['RELAY_CONFIG'] = config

    # Requests without an Origin (Electron, curl) are not subject to CORS
    origins = '*' if config.allow_all_origins else list(config.allowed_origins)
    CORS(app, origins=origins, supports_credentials=not config.allow_all_origins)

    init_billing(app, config, provider=provider)

    print(f"[App] CORS allowed origins: {origins}")
    print(f"[App] Frontend URL: {config.frontend_url}")
    return app


if __name__ == '__main__':
    app = create_app()
    app.run(host='0.0.0.0', port=app.config['RELAY_CONFIG'].port)
