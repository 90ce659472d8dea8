# Overview: Provider webhook endpoints; pass the raw body to verification untouched.

# backend/gemach/routes/webhooks.py
"""
Webhook Routes

SECURITY:
- No session auth; authenticity comes from the provider signature
- The body is read with request.get_data() and never re-serialized before
  verification
- A verification failure is 400, so the provider does not retry forever
"""

from flask import Blueprint, current_app, jsonify, request

from ..decorators import error_response
from ..errors import DepositError
from ..services import webhook_service


webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/api/webhooks")


@webhooks_bp.post("/stripe")
def stripe_webhook_route():
    try:
        result = webhook_service.handle_stripe_webhook(
            request.get_data(), request.headers.get("Stripe-Signature")
        )
        return jsonify(result), 200
    except DepositError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to process Stripe webhook")
        return jsonify({"error": "Internal server error"}), 500


@webhooks_bp.post("/paypal")
def paypal_webhook_route():
    try:
        result = webhook_service.handle_paypal_webhook(request.get_data(), request.headers)
        return jsonify(result), 200
    except DepositError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to process PayPal webhook")
        return jsonify({"error": "Internal server error"}), 500
