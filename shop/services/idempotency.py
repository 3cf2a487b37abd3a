"""Idempotency resolver for webhook-created orders.

find_existing_order() looks an order up by Checkout Session id and/or
PaymentIntent id. It never raises: a store failure comes back as
``LookupResult.FAILED`` so the caller can tell "definitely absent" from
"could not check" and pick its own policy.

is_stock_adjusted() reads the stock-adjusted marker. The marker, not the
mere existence of an order, decides whether the stock decrement still has to
run: one event may create the order and a later one adjust its stock.
"""

import logging

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError

from shop.extensions import db
from shop.models.order import Order

logger = logging.getLogger(__name__)


class LookupResult:
    FOUND = "found"
    NOT_FOUND = "not_found"
    FAILED = "failed"

    def __init__(self, status, order=None, error=None):
        self.status = status
        self.order = order
        self.error = error

    @property
    def found(self):
        return self.status == self.FOUND

    @property
    def failed(self):
        return self.status == self.FAILED

    def __repr__(self):
        return f"<LookupResult {self.status}>"


def find_existing_order(session_id=None, payment_intent_id=None):
    """Find an order whose session_id or payment_intent matches.

    Searches every folder: an archived order is still the order for its
    session.
    """
    conditions = []
    if session_id:
        conditions.append(Order.session_id == session_id)
    if payment_intent_id:
        conditions.append(Order.payment_intent == payment_intent_id)
    if not conditions:
        return LookupResult(LookupResult.NOT_FOUND)

    try:
        order = Order.query.filter(or_(*conditions)).first()
    except SQLAlchemyError as e:
        logger.error(
            f"Order lookup failed (session={session_id}, pi={payment_intent_id}): {e}"
        )
        db.session.rollback()
        return LookupResult(LookupResult.FAILED, error=e)

    if order is None:
        return LookupResult(LookupResult.NOT_FOUND)
    return LookupResult(LookupResult.FOUND, order=order)


def is_stock_adjusted(order):
    """True iff the order carries the stock-adjusted marker."""
    if order is None:
        return False
    if isinstance(order, Order):
        metadata = order.metadata_ or {}
        return bool(metadata.get("stock_adjusted_at") or order.stock_adjusted_at)
    metadata = order.get("metadata") or {}
    return bool(metadata.get("stock_adjusted_at"))
