"""Webhooks blueprint — /api/stripe/webhook

Receives Stripe webhook events. Raw body is required for signature
verification. Non-POST requests get 405 from Flask's routing.
"""

import logging

from flask import Blueprint, jsonify, request

from shop.errors import ErrorKind, OrderError
from shop.services.stripe_gateway import get_gateway
from shop.services.webhook_service import handle_webhook_event

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/api/stripe")


@webhooks_bp.route("/webhook", methods=["POST"])
def stripe_webhook():
    """Receive and process Stripe webhook events.

    1. Get raw body (required for signature verification)
    2. Verify signature with STRIPE_WEBHOOK_SECRET
    3. Pass to handle_webhook_event (idempotent per session and per event id)
    4. 200 {"received": true}; 4xx for bad signatures / unprocessable
       payloads (Stripe stops retrying); 5xx otherwise (Stripe retries)
    """
    payload = request.get_data(as_text=True)
    sig_header = request.headers.get("Stripe-Signature")

    if not sig_header:
        logger.warning("Webhook received without Stripe-Signature header")
        return jsonify(ok=False, code="MISSING_SIGNATURE", message="Missing signature"), 400

    try:
        event = get_gateway().construct_event(payload, sig_header)
        result = handle_webhook_event(event)
    except OrderError as e:
        # Stripe API failures stay 5xx here whatever status they carry
        if e.is_client_error and e.kind != ErrorKind.EXTERNAL_SERVICE:
            return jsonify(e.to_dict()), e.http_status
        logger.error(f"Webhook processing failed: [{e.code}] {e.message}")
        return jsonify(ok=False, code=e.code, message="Webhook handler error"), 500
    except Exception as e:
        logger.error(f"Webhook processing failed: {e}", exc_info=True)
        return jsonify(ok=False, code="INTERNAL_ERROR", message="Webhook handler error"), 500

    return jsonify(received=True, outcome=result["outcome"]), 200
