"""
billing_relay/routes.py

Flask Blueprint for the billing relay.

Endpoints:
    POST /webhook/stripe                   - Stripe webhook handler
    POST /api/validate-request             - Free-tier quota gate
    POST /api/create-checkout-session      - Hosted subscription checkout
    POST /api/create-portal-session        - Hosted billing portal
    GET  /api/subscription-status/<userId> - Quota + subscription state
    GET  /api/health                       - Health check
"""

from flask import Blueprint, current_app, jsonify, request
from werkzeug.exceptions import HTTPException

from billing_relay.config import SERVICE_NAME, SERVICE_VERSION
from billing_relay.errors import RequestValidationError
from billing_relay.models import utcnow


billing_bp = Blueprint('billing_bp', __name__)


def get_service():
    """The BillingService registered by init_billing()."""
    return current_app.extensions['billing_relay']


# =============================================================================
# WEBHOOK
# =============================================================================

@billing_bp.route('/webhook/stripe', methods=['POST'])
def stripe_webhook():
    """
    Stripe webhook handler.

    Needs the raw body for signature verification.

    Response:
        200 {"received": true}
        400 {"error": "Webhook Error: ..."} - bad signature, malformed event
            or handler failure (Stripe retries)
    """
    payload = request.get_data()
    signature = request.headers.get('Stripe-Signature', '')

    try:
        get_service().handle_webhook(payload, signature)
    except Exception as e:
        print(f"[Billing] Webhook error: {e}")
        return jsonify({'error': f'Webhook Error: {e}'}), 400

    return jsonify({'received': True})


# =============================================================================
# QUOTA
# =============================================================================

@billing_bp.route('/api/validate-request', methods=['POST'])
def validate_request():
    """
    Validate and consume one request.

    Request:
        {"userId": "u1"}

    Response:
        200 {"allowed": true, "isPremium": false, "requestCount": 3}
        403 {"allowed": false, "isPremium": false, "requestCount": 5,
             "limit": 5, "message": "..."}
    """
    data = request.get_json(silent=True) or {}
    user_id = data.get('userId')

    if not user_id:
        return jsonify({'error': 'userId is required'}), 400

    print(f"[Billing] Validate request for user {user_id} (origin: {request.headers.get('Origin', 'NONE')})")

    decision = get_service().validate_request(user_id)

    if not decision.allowed:
        return jsonify(decision.to_dict()), 403

    return jsonify(decision.to_dict())


@billing_bp.route('/api/subscription-status/<user_id>', methods=['GET'])
def subscription_status(user_id):
    """
    Get quota and subscription state.

    Response:
        {
            "isPremium": false,
            "requestCount": 2,
            "subscriptionStatus": null,
            "subscriptionEndDate": null,
            "stripeCustomerId": "cus_..."   # once linked
        }
    """
    return jsonify(get_service().get_subscription_status(user_id))


# =============================================================================
# HOSTED FLOWS
# =============================================================================

@billing_bp.route('/api/create-checkout-session', methods=['POST'])
def create_checkout_session():
    """
    Create a subscription checkout session.

    Request:
        {"userId": "u1", "email": "user@example.com", "priceId": "price_..."}

    Response:
        {"sessionId": "cs_...", "url": "https://checkout.stripe.com/..."}
    """
    data = request.get_json(silent=True) or {}
    user_id = data.get('userId')
    email = data.get('email')

    if not user_id or not email:
        return jsonify({'error': 'userId and email are required'}), 400

    return jsonify(get_service().create_checkout(
        user_id=user_id,
        email=email,
        price_id=data.get('priceId'),
    ))


@billing_bp.route('/api/create-portal-session', methods=['POST'])
def create_portal_session():
    """
    Create a billing portal session.

    Request:
        {"customerId": "cus_..."}

    Response:
        {"url": "https://billing.stripe.com/..."}
    """
    data = request.get_json(silent=True) or {}
    customer_id = data.get('customerId')

    if not customer_id:
        return jsonify({'error': 'customerId is required'}), 400

    return jsonify(get_service().create_portal(customer_id))


# =============================================================================
# HEALTH CHECK
# =============================================================================

@billing_bp.route('/api/health', methods=['GET'])
def health():
    """Health check endpoint for load balancers."""
    from billing_relay.db import check_connection

    db_ok = check_connection()

    body = {
        'status': 'healthy' if db_ok else 'unhealthy',
        'timestamp': utcnow().isoformat() + 'Z',
        'service': SERVICE_NAME,
        'version': SERVICE_VERSION,
        'db': 'connected' if db_ok else 'disconnected',
    }
    return jsonify(body), (200 if db_ok else 500)


# =============================================================================
# ERRORS
# =============================================================================

@billing_bp.errorhandler(RequestValidationError)
def handle_validation_error(e):
    return jsonify({'error': str(e)}), 400


@billing_bp.app_errorhandler(404)
def handle_not_found(e):
    return jsonify({'error': 'Endpoint not found'}), 404


@billing_bp.errorhandler(Exception)
def handle_unexpected_error(e):
    if isinstance(e, HTTPException):
        return e
    print(f"[Billing] Error handling {request.method} {request.path}: {e}")
    return jsonify({'error': str(e)}), 500
