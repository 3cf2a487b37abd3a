"""Order service — order lifecycle on top of the orders table.

Responsible for:
- Preparing and persisting validated orders (webhook and manual paths)
- Listing / searching orders per folder, flexible id lookup
- Patching orders (existing keys only, identity fields immutable)
- Shipment status stages
- Moving orders between the orders / archive / deleted folders
- Claiming the stock-adjusted marker (compare-and-swap)
- Audit logging of order actions

Functions that change state commit before returning, except
claim_stock_adjustment() and log_order_audit(), which flush and leave the
commit to the caller.
"""

import copy
import logging
import uuid

from flask import current_app
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from shop.errors import OrderError, conflict, invalid_data, not_found
from shop.extensions import db
from shop.models.audit import AuditEvent
from shop.models.order import Order
from shop.services.common import PaymentType, sanitize_string, to_boolean, utcnow
from shop.services.order_status import (
    assert_valid_status_key,
    build_stage,
    make_default_status,
)
from shop.services.order_validation import validate_order

logger = logging.getLogger(__name__)

PAID_PAYMENT_STATUSES = ("paid", "no_payment_required")


def _allowed_currencies():
    return current_app.config.get("ALLOWED_CURRENCIES", ("eur",))


# ──────────────────────────────────────────────
# Audit
# ──────────────────────────────────────────────

def log_order_audit(order_id, action, metadata=None, actor="system"):
    """Record an order action. Uses flush() so the caller owns the commit."""
    db.session.add(AuditEvent(
        order_id=order_id,
        actor=actor,
        action=action,
        metadata_=metadata or {},
    ))
    db.session.flush()


# ──────────────────────────────────────────────
# Create
# ──────────────────────────────────────────────

def prepare_order(order):
    """Stamp a validated draft with identifiers, timestamps and default status."""
    prepared = copy.deepcopy(order)
    prepared["id"] = sanitize_string(prepared.get("id")) or str(uuid.uuid4())
    prepared["event_id"] = str(uuid.uuid4())
    if not isinstance(prepared.get("status"), dict) or not prepared["status"]:
        prepared["status"] = make_default_status()
    metadata = dict(prepared.get("metadata") or {})
    metadata["shipping_cost_cents"] = prepared.get("shipping_cost_cents", 0)
    prepared["metadata"] = metadata
    prepared["written_at"] = utcnow()
    return prepared


def claim_stock_adjustment(order, when=None):
    """Set the stock-adjusted marker iff it is not set yet.

    A conditional UPDATE on ``stock_adjusted_at IS NULL``: of two concurrent
    callers only one gets True. The timestamp is mirrored into
    ``metadata.stock_adjusted_at``. Flushes, does not commit.
    """
    when = when or utcnow()
    rows = (
        Order.query
        .filter(Order.id == order.id, Order.stock_adjusted_at.is_(None))
        .update({Order.stock_adjusted_at: when}, synchronize_session="fetch")
    )
    if rows != 1:
        return False

    metadata = dict(order.metadata_ or {})
    metadata["stock_adjusted_at"] = when.isoformat()
    order.metadata_ = metadata
    db.session.flush()
    return True


def create_order(data, reserve_stock=False, notify=True, actor="system"):
    """Validate, prepare and persist one order, then send its emails.

    With ``reserve_stock`` the order's items are decremented all-or-nothing
    in the same transaction and the stock-adjusted marker is set; a shortage
    rolls everything back and raises CONFLICT (INSUFFICIENT_STOCK).

    A second order for the same session_id raises CONFLICT (DUPLICATE_ORDER).
    Email failures are logged and never fail the call.
    """
    from shop.services import stock_service

    prepared = prepare_order(validate_order(data, _allowed_currencies()))

    order = Order(id=prepared["id"], event_id=prepared["event_id"], folder="orders")
    order.apply_dict(prepared)
    order.session_id = prepared.get("session_id") or None
    order.written_at = prepared["written_at"]

    try:
        db.session.add(order)
        db.session.flush()
        if reserve_stock:
            stock_service.reserve_stock(order.items)
            claim_stock_adjustment(order)
        log_order_audit(order.id, "order.created", {
            "session_id": order.session_id,
            "payment_type": order.payment_type,
            "amount_total": order.amount_total,
            "stock_reserved": bool(reserve_stock),
        }, actor=actor)
        db.session.commit()
    except IntegrityError as e:
        db.session.rollback()
        logger.warning(f"Duplicate order for session {prepared.get('session_id')}: {e.orig}")
        raise conflict(
            "An order already exists for this checkout session",
            code="DUPLICATE_ORDER",
            details={"session_id": prepared.get("session_id") or ""},
        )
    except OrderError:
        db.session.rollback()
        raise

    logger.info(
        f"Order {order.id} created ({order.payment_type}, "
        f"{order.amount_total} {order.currency}, session={order.session_id})"
    )

    if notify:
        send_order_notifications(order)
    return order


def send_order_notifications(order):
    """Paid orders get a confirmation, manual orders an awaiting-payment email."""
    from shop.services.email_service import send_awaiting_payment_email, send_order_emails

    try:
        if order.payment_type == PaymentType.MANUAL:
            send_awaiting_payment_email(order)
        else:
            send_order_emails(order)
    except Exception as e:
        # Never let email failure break order creation
        logger.error(f"Failed to send emails for order {order.id}: {e}")


# ──────────────────────────────────────────────
# Read
# ──────────────────────────────────────────────

def _is_paid(order):
    value = order.payment_status
    if isinstance(value, bool):
        return value
    return isinstance(value, str) and value.lower() in PAID_PAYMENT_STATUSES


def _search_fields(order):
    shipping = (order.metadata_ or {}).get("shipping_address") or {}
    return (
        order.id,
        order.event_id,
        order.session_id,
        order.name,
        order.email,
        str(order.amount_total),
        order.currency,
        shipping.get("line1"),
        shipping.get("postal_code"),
    )


def _assert_folder(folder):
    if folder not in Order.FOLDERS:
        raise invalid_data(
            f"Invalid folder '{folder}'. Allowed: {', '.join(Order.FOLDERS)}"
        )
    return folder


def get_orders(folder="orders", status=None, q=None, limit=None):
    """Orders of one folder, newest first.

    status: paid flag filter (True/False or "true"/"false").
    q: case-insensitive substring match over ids, customer, total, address.
    """
    _assert_folder(folder)
    orders = Order.query.filter_by(folder=folder).all()

    if status is not None and status != "":
        want = to_boolean(status)
        orders = [o for o in orders if _is_paid(o) == want]

    needle = sanitize_string(q).lower()
    if needle:
        orders = [
            o for o in orders
            if any(f and needle in str(f).lower() for f in _search_fields(o))
        ]

    orders.sort(key=lambda o: o.written_at.isoformat() if o.written_at else "", reverse=True)

    if limit is not None:
        try:
            limit = int(limit)
        except (TypeError, ValueError):
            raise invalid_data("limit must be a positive integer")
        if limit <= 0:
            raise invalid_data("limit must be a positive integer")
        orders = orders[:limit]
    return orders


def get_order_by_id(order_id):
    """Find an order by id, event_id, session_id or metadata.order_id."""
    key = sanitize_string(order_id)
    if not key:
        raise invalid_data("Order id is required")

    order = Order.query.filter(
        or_(Order.id == key, Order.event_id == key, Order.session_id == key)
    ).first()
    if order is None:
        order = Order.query.filter(
            Order.metadata_["order_id"].as_string() == key
        ).first()
    if order is None:
        raise not_found(f"Order {key} not found")
    return order


def get_order_by_session_id(session_id):
    if not session_id:
        return None
    return Order.query.filter_by(session_id=session_id).first()


# ──────────────────────────────────────────────
# Update
# ──────────────────────────────────────────────

def _merge_existing_keys(current, changes, path):
    merged = copy.deepcopy(current)
    for key, value in changes.items():
        if key not in current:
            logger.info(f"Ignoring unknown order field '{path}{key}'")
            continue
        if isinstance(current[key], dict) and isinstance(value, dict):
            merged[key] = _merge_existing_keys(current[key], value, f"{path}{key}.")
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def merge_order_changes(existing, changes):
    """Merge ``changes`` into an order dict.

    Only keys already present are written (recursively for nested objects);
    anything else is ignored. Changing ``id`` or ``event_id`` is rejected.
    """
    if not isinstance(changes, dict):
        raise invalid_data("Order changes must be an object")
    for key in Order.IDENTITY_FIELDS:
        if key in changes and changes[key] != existing.get(key):
            raise invalid_data(f"Order.{key} is immutable")
    changes = {k: v for k, v in changes.items() if k not in Order.IDENTITY_FIELDS}
    return _merge_existing_keys(existing, changes, "")


def update_order(order_id, changes, actor="admin"):
    """Patch an order. The merged result must still be a valid order."""
    order = get_order_by_id(order_id)
    current = order.to_dict()
    merged = merge_order_changes(current, changes)
    validated = validate_order(merged, _allowed_currencies())

    order.apply_dict(validated)
    order.updated_at = utcnow()
    changed = sorted(k for k in Order.WRITABLE_FIELDS if merged.get(k) != current.get(k))
    log_order_audit(order.id, "order.updated", {"fields": changed}, actor=actor)
    db.session.commit()
    return order


def set_status_stage(order_id, key, value, actor="admin"):
    """Set one shipment stage; a stage set true is stamped with date/time."""
    assert_valid_status_key(key)
    if not isinstance(value, bool):
        raise invalid_data("Status value must be true or false")

    order = get_order_by_id(order_id)
    status = copy.deepcopy(order.status or make_default_status())
    status[key] = build_stage(value, utcnow())
    order.status = status
    order.updated_at = utcnow()
    log_order_audit(order.id, "order.status_changed", {"stage": key, "value": value}, actor=actor)
    db.session.commit()
    return order


def move_orders(ids, from_folder, to_folder, actor="admin"):
    """Move orders between folders.

    Ids not found in ``from_folder`` are reported in ``skipped``; the others
    move in a single commit. Returns {"moved": [...], "skipped": [...]}.
    """
    _assert_folder(from_folder)
    _assert_folder(to_folder)
    if from_folder == to_folder:
        raise invalid_data("Source and destination folders must differ")
    if isinstance(ids, str):
        ids = [ids]
    if not isinstance(ids, (list, tuple)) or not ids:
        raise invalid_data("ids must be a non-empty list")

    moved, skipped = [], []
    now = utcnow()
    for raw in ids:
        key = sanitize_string(raw)
        order = Order.query.filter_by(id=key, folder=from_folder).first() if key else None
        if order is None:
            skipped.append(raw)
            continue
        order.folder = to_folder
        order.moved_from = from_folder
        order.moved_at = now
        moved.append(order.id)

    if moved:
        log_order_audit(None, "orders.moved", {
            "ids": moved,
            "from": from_folder,
            "to": to_folder,
        }, actor=actor)
    db.session.commit()

    if skipped:
        logger.warning(f"move_orders {from_folder}->{to_folder}: skipped {skipped}")
    return {"moved": moved, "skipped": skipped}
