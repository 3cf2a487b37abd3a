"""Stripe gateway — every call the order pipeline makes to Stripe.

Responsible for:
- Webhook signature verification (raw body + Stripe-Signature header)
- Listing a Checkout Session's line items (price + product expanded)
- Finding the Checkout Session behind a PaymentIntent
- Creating Checkout Sessions and one-off coupons

One gateway is built in create_app() and kept in
``app.extensions["stripe_gateway"]``; services reach it through
get_gateway(). Tests replace it with a fake per test.

Everything returned is converted to plain dicts/lists so callers never depend
on the SDK's object types. SDK failures are re-raised as OrderError.
"""

import logging

import stripe
from flask import current_app

from shop.errors import external_service, internal_error, invalid_data

logger = logging.getLogger(__name__)

LINE_ITEMS_LIMIT = 100


def to_plain(value):
    """Recursively convert StripeObjects (and lists of them) to dicts/lists."""
    if isinstance(value, stripe.StripeObject):
        return to_plain(value.to_dict())
    if isinstance(value, dict):
        return {key: to_plain(item) for key, item in value.items()}
    if isinstance(value, list):
        return [to_plain(item) for item in value]
    return value


def _wrap_stripe_error(action, e):
    """Translate an SDK exception into an OrderError."""
    if isinstance(e, stripe.CardError):
        return external_service(
            e.user_message or "Card was declined",
            code="STRIPE_CARD_ERROR",
            status=402,
        )
    if isinstance(e, stripe.RateLimitError):
        return external_service(
            "Payment provider is rate limiting requests, try again shortly",
            code="STRIPE_RATE_LIMITED",
            status=429,
        )
    if isinstance(e, stripe.AuthenticationError):
        return external_service(
            "Payment provider rejected our credentials",
            code="STRIPE_AUTH_FAILED",
            status=401,
        )
    if isinstance(e, stripe.InvalidRequestError):
        return external_service(
            f"Stripe rejected {action}: {e.user_message or str(e)}",
            code="STRIPE_INVALID_REQUEST",
            details={"param": getattr(e, "param", None)},
        )
    return external_service(f"Stripe error during {action}: {e}", code="STRIPE_ERROR")


class StripeGateway:
    """Thin wrapper over the stripe SDK with the API key passed per call."""

    def __init__(self, api_key, webhook_secret, timeout=20):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.timeout = timeout

    # ──────────────────────────────────────────────
    # Webhooks
    # ──────────────────────────────────────────────

    def construct_event(self, payload, sig_header):
        """Verify the signature and return the event as a plain dict.

        Raises OrderError(VALIDATION, INVALID_SIGNATURE) on a missing or bad
        signature and on an unparseable body.
        """
        if not sig_header:
            raise invalid_data("Missing Stripe-Signature header", code="MISSING_SIGNATURE")
        if not self.webhook_secret:
            raise internal_error("STRIPE_WEBHOOK_SECRET is not configured")
        try:
            event = stripe.Webhook.construct_event(payload, sig_header, self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Webhook signature verification failed: {e}")
            raise invalid_data("Invalid signature", code="INVALID_SIGNATURE")
        except ValueError as e:
            logger.warning(f"Webhook payload could not be parsed: {e}")
            raise invalid_data("Invalid payload", code="INVALID_PAYLOAD")
        return to_plain(event)

    # ──────────────────────────────────────────────
    # Checkout Sessions
    # ──────────────────────────────────────────────

    def list_line_items(self, session_id):
        """Line items of a session (first 100), price and product expanded."""
        try:
            result = stripe.checkout.Session.list_line_items(
                session_id,
                limit=LINE_ITEMS_LIMIT,
                expand=["data.price", "data.price.product"],
                api_key=self.api_key,
            )
        except stripe.StripeError as e:
            logger.error(f"list_line_items failed for session {session_id}: {e}")
            raise _wrap_stripe_error("line item listing", e)
        return to_plain(result).get("data") or []

    def retrieve_session(self, session_id):
        try:
            session = stripe.checkout.Session.retrieve(session_id, api_key=self.api_key)
        except stripe.StripeError as e:
            logger.error(f"Session retrieval failed for {session_id}: {e}")
            raise _wrap_stripe_error("session retrieval", e)
        return to_plain(session)

    def find_session_for_payment_intent(self, payment_intent_id):
        """The Checkout Session that produced a PaymentIntent, or None."""
        try:
            result = stripe.checkout.Session.list(
                payment_intent=payment_intent_id,
                limit=1,
                api_key=self.api_key,
            )
        except stripe.StripeError as e:
            logger.error(f"Session lookup failed for payment_intent {payment_intent_id}: {e}")
            raise _wrap_stripe_error("session lookup", e)
        sessions = to_plain(result).get("data") or []
        return sessions[0] if sessions else None

    def create_checkout_session(self, **params):
        try:
            session = stripe.checkout.Session.create(api_key=self.api_key, **params)
        except stripe.StripeError as e:
            logger.error(f"Checkout session creation failed: {e}")
            raise _wrap_stripe_error("checkout session creation", e)
        return to_plain(session)

    def create_coupon(self, amount_off, currency, name):
        """One-off fixed-amount coupon used to apply a checkout discount."""
        try:
            coupon = stripe.Coupon.create(
                amount_off=amount_off,
                currency=currency,
                duration="once",
                name=name[:40],
                api_key=self.api_key,
            )
        except stripe.StripeError as e:
            logger.error(f"Coupon creation failed ({name}): {e}")
            raise _wrap_stripe_error("coupon creation", e)
        return to_plain(coupon)


# ──────────────────────────────────────────────
# App wiring
# ──────────────────────────────────────────────

def init_gateway(app):
    """Build the app's gateway and bound every SDK request by the configured timeout."""
    timeout = app.config.get("STRIPE_TIMEOUT_SECONDS", 20)
    stripe.default_http_client = stripe.RequestsClient(timeout=timeout)
    stripe.max_network_retries = 2
    gateway = StripeGateway(
        api_key=app.config.get("STRIPE_SECRET_KEY"),
        webhook_secret=app.config.get("STRIPE_WEBHOOK_SECRET"),
        timeout=timeout,
    )
    app.extensions["stripe_gateway"] = gateway
    return gateway


def get_gateway():
    return current_app.extensions["stripe_gateway"]
