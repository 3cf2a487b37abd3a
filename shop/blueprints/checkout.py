"""Checkout blueprint — /api/checkout-sessions

Public endpoint hit by the storefront. Supported countries get a Stripe
Checkout URL; every other country gets an unpaid manual order.

Route Map:
  POST    /api/checkout-sessions — create hosted session or manual order
  OPTIONS /api/checkout-sessions — CORS preflight
"""

import logging

from flask import Blueprint, current_app, jsonify, make_response, request

from shop.extensions import limiter
from shop.services.checkout_service import create_checkout

checkout_bp = Blueprint("checkout", __name__, url_prefix="/api")

logger = logging.getLogger(__name__)


@checkout_bp.after_request
def add_cors_headers(response):
    """Allow the storefront origin to call the checkout API (errors included)."""
    response.headers["Access-Control-Allow-Origin"] = current_app.config["PUBLIC_BASE_URL"]
    response.headers["Access-Control-Allow-Methods"] = "POST, OPTIONS"
    response.headers["Access-Control-Allow-Headers"] = "Content-Type"
    return response


@checkout_bp.route("/checkout-sessions", methods=["OPTIONS"])
def checkout_preflight():
    """Handle CORS preflight requests."""
    return make_response("", 204)


@checkout_bp.route("/checkout-sessions", methods=["POST"])
@limiter.limit("20 per minute")
def create_checkout_session():
    """
    Create a checkout for the posted cart.

    Body: { items: [{id, qty}], customer: {name, email, phone},
            shipping_address, billing_address, billingSameAsShipping,
            shipping_cost_cents, notes, clientReferenceId, discount }

    Returns 200 with either
      { mode: "hosted", url, sessionId, paymentIntentId, country } or
      { mode: "manual", orderId, paymentId, amountTotal, currency, country }.
    Errors are answered by the app-wide OrderError handler.
    """
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        return jsonify(
            ok=False, code="INVALID_DATA", message="Request body must be a JSON object"
        ), 400

    result = create_checkout(body)
    return jsonify(ok=True, **result), 200
