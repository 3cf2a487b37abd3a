"""Webhook service — Stripe event dispatch and order reconciliation.

Responsible for:
- Dispatching verified events to the three payment handlers
- Per-session reconciliation: find or create the order, then adjust stock
- Delivery log via the stripe_events table (exact redeliveries short-circuit)

Per checkout session the state only moves forward:

    UNSEEN -> ORDER_CREATED -> STOCK_ADJUSTED

Order existence is decided by the session/payment-intent lookup, stock
adjustment by the stock-adjusted marker. Both steps are safe to repeat, so
events may arrive duplicated and in any order.

Order creation and stock adjustment are separate commits: a crash between
them leaves an ORDER_CREATED order which the next delivery for the same
session picks up and adjusts.
"""

import logging

from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from shop.errors import OrderError, invalid_data
from shop.extensions import db
from shop.models.stripe_event import StripeEvent
from shop.services.common import sanitize_string
from shop.services.idempotency import find_existing_order, is_stock_adjusted
from shop.services.order_derivation import build_order_draft
from shop.services.order_service import (
    claim_stock_adjustment,
    create_order,
    get_order_by_session_id,
    log_order_audit,
)
from shop.services.stock_service import decrement_each
from shop.services.stripe_gateway import get_gateway

logger = logging.getLogger(__name__)


class Outcome:
    CREATED = "created"              # new order + stock adjusted
    RESUMED = "resumed"              # existing order, stock adjusted now
    DUPLICATE = "duplicate"          # existing order, stock already adjusted
    NO_SESSION = "no_session"        # payment intent without checkout session
    IGNORED = "ignored"              # event type not handled
    ALREADY_PROCESSED = "already_processed"  # event id already recorded


def _ref_id(value):
    if isinstance(value, dict):
        return sanitize_string(value.get("id"))
    return sanitize_string(value)


# ──────────────────────────────────────────────
# Stock adjustment
# ──────────────────────────────────────────────

def apply_stock_adjustment(order):
    """Decrement stock for every line of ``order`` exactly once.

    The marker is claimed first (conditional UPDATE); losing the claim means
    another delivery already adjusted this order and nothing is decremented.
    Each line is attempted even when siblings fail; failures are logged and
    audited but the marker stays set so a retry never decrements twice.
    Marker, decrements and audit row commit together.

    Returns {"claimed": bool, "applied": [...], "failed": [...]}.
    """
    try:
        if not claim_stock_adjustment(order):
            db.session.rollback()
            logger.info(f"Stock for order {order.id} already adjusted by another delivery")
            return {"claimed": False, "applied": [], "failed": []}

        result = decrement_each(order.items or [])
        if result["failed"]:
            logger.warning(
                f"Partial stock adjustment for order {order.id}: "
                f"{len(result['failed'])} of {len(order.items or [])} line(s) failed"
            )
            log_order_audit(order.id, "order.stock_partial", result, actor="stripe")
        else:
            log_order_audit(order.id, "order.stock_adjusted", result, actor="stripe")
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        raise

    return {"claimed": True, **result}


# ──────────────────────────────────────────────
# Reconciliation
# ──────────────────────────────────────────────

def reconcile_session(session, payment_intent_id=None):
    """Bring one checkout session to STOCK_ADJUSTED.

    Returns {"outcome", "order_id", "session_id"[, "stock"]}.
    Raises OrderError(VALIDATION) for payloads that can never become an
    order (missing id, no line items, underivable order).
    """
    session = session if isinstance(session, dict) else {}
    session_id = sanitize_string(session.get("id"))
    if not session_id:
        raise invalid_data("Checkout session payload missing id", code="INVALID_SESSION")

    line_items = get_gateway().list_line_items(session_id)
    if not line_items:
        raise invalid_data(
            f"No line items found for checkout session {session_id}",
            code="NO_LINE_ITEMS",
        )

    payment_intent_id = payment_intent_id or _ref_id(session.get("payment_intent"))
    lookup = find_existing_order(session_id=session_id, payment_intent_id=payment_intent_id)
    if lookup.failed:
        logger.warning(
            f"Order lookup failed for session {session_id}; treating as not found "
            f"(a duplicate insert is still rejected by the session_id constraint)"
        )

    order = lookup.order
    if order is not None and is_stock_adjusted(order):
        logger.info(
            f"Duplicate suppressed for session {session_id} "
            f"(order {order.id}, stock already adjusted)"
        )
        return {"outcome": Outcome.DUPLICATE, "order_id": order.id, "session_id": session_id}

    if order is None:
        draft = build_order_draft(
            session, line_items, current_app.config.get("ALLOWED_CURRENCIES", ("eur",))
        )
        try:
            order = create_order(draft, actor="stripe")
            outcome = Outcome.CREATED
            logger.info(f"Created order {order.id} for session {session_id}")
        except OrderError as e:
            if e.code != "DUPLICATE_ORDER":
                raise
            # Another delivery inserted it first.
            order = get_order_by_session_id(session_id)
            if order is None:
                raise
            if is_stock_adjusted(order):
                return {"outcome": Outcome.DUPLICATE, "order_id": order.id, "session_id": session_id}
            outcome = Outcome.RESUMED
    else:
        outcome = Outcome.RESUMED
        logger.info(
            f"Session {session_id} already has order {order.id} but stock is not "
            f"adjusted yet; adjusting stock only"
        )

    stock = apply_stock_adjustment(order)
    if not stock["claimed"]:
        outcome = Outcome.DUPLICATE
    return {
        "outcome": outcome,
        "order_id": order.id,
        "session_id": session_id,
        "stock": stock,
    }


def reconcile_session_by_id(session_id):
    """Fetch a session from Stripe and reconcile it (manual replay)."""
    session = get_gateway().retrieve_session(session_id)
    return reconcile_session(session)


# ──────────────────────────────────────────────
# Event handlers
# ──────────────────────────────────────────────

def _handle_checkout_completed(event_object):
    """checkout.session.completed"""
    return reconcile_session(event_object)


def _handle_async_payment_succeeded(event_object):
    """checkout.session.async_payment_succeeded (delayed payment methods)."""
    return reconcile_session(event_object)


def _handle_payment_intent_succeeded(event_object):
    """payment_intent.succeeded

    Reconciles the Checkout Session behind the payment intent. Payment
    intents created outside Checkout have none and are skipped.
    """
    payment_intent_id = sanitize_string((event_object or {}).get("id"))
    if not payment_intent_id:
        raise invalid_data("payment_intent.succeeded missing id", code="INVALID_PAYMENT_INTENT")

    session = get_gateway().find_session_for_payment_intent(payment_intent_id)
    if session is None:
        logger.info(
            f"payment_intent.succeeded ({payment_intent_id}) without Checkout "
            f"Session; skipping order creation"
        )
        return {"outcome": Outcome.NO_SESSION, "order_id": None, "session_id": None}
    return reconcile_session(session, payment_intent_id=payment_intent_id)


EVENT_HANDLERS = {
    "checkout.session.completed": _handle_checkout_completed,
    "checkout.session.async_payment_succeeded": _handle_async_payment_succeeded,
    "payment_intent.succeeded": _handle_payment_intent_succeeded,
}


# ──────────────────────────────────────────────
# Dispatch
# ──────────────────────────────────────────────

def _already_processed(event_id):
    try:
        return StripeEvent.query.filter_by(stripe_event_id=event_id).first()
    except SQLAlchemyError as e:
        # Session-level idempotency still protects us; just reprocess.
        logger.warning(f"stripe_events lookup failed for {event_id}: {e}")
        db.session.rollback()
        return None


def _record_event(event_id, event_type, result):
    db.session.add(StripeEvent(
        stripe_event_id=event_id,
        event_type=event_type,
        outcome=result["outcome"],
        order_id=result.get("order_id"),
    ))
    try:
        db.session.commit()
    except IntegrityError:
        # A concurrent delivery of the same event recorded it first.
        db.session.rollback()
        logger.info(f"Event {event_id} already recorded by a concurrent delivery")


def handle_webhook_event(event):
    """Process one verified Stripe event.

    Returns the handler result dict ({"outcome", "order_id", ...}).
    Raises OrderError for unprocessable payloads; store and provider
    failures propagate so the caller answers 5xx and Stripe retries.
    """
    event = event if isinstance(event, dict) else {}
    event_id = sanitize_string(event.get("id"))
    event_type = sanitize_string(event.get("type"))
    if not event_id or not event_type:
        raise invalid_data("Event payload missing id or type", code="INVALID_EVENT")

    logger.info(f"Received Stripe event {event_id} ({event_type})")

    existing = _already_processed(event_id)
    if existing:
        logger.info(f"Duplicate webhook event {event_id}, skipping")
        return {
            "outcome": Outcome.ALREADY_PROCESSED,
            "order_id": existing.order_id,
            "session_id": None,
        }

    handler = EVENT_HANDLERS.get(event_type)
    if handler is None:
        logger.info(f"Ignored event {event_id} ({event_type})")
        result = {"outcome": Outcome.IGNORED, "order_id": None, "session_id": None}
        _record_event(event_id, event_type, result)
        return result

    event_object = (event.get("data") or {}).get("object") or {}
    try:
        result = handler(event_object)
    except OrderError as e:
        db.session.rollback()
        logger.error(
            f"Event {event_id} ({event_type}) failed for object "
            f"{event_object.get('id')}: [{e.code}] {e.message}"
        )
        raise
    except Exception:
        db.session.rollback()
        logger.error(
            f"Error handling event {event_id} ({event_type}) for object "
            f"{event_object.get('id')}",
            exc_info=True,
        )
        raise

    _record_event(event_id, event_type, result)
    logger.info(f"Event {event_id} ({event_type}) -> {result['outcome']}")
    return result
