"""Stock service — the stock ledger.

Responsible for:
- Catalog view of stock rows (few_tag / sold_out flags)
- Absolute stock set and signed adjustments
- Decrement with insufficient-stock rejection (never below zero)
- All-or-nothing reservation of several lines (manual orders)

Decrements are a single conditional UPDATE (``stock_value >= n``), so two
requests racing on the same product cannot drive it negative.

Functions flush but do NOT commit — the caller commits.
"""

import logging

from flask import current_app

from shop.errors import OrderError, conflict, invalid_data, not_found
from shop.extensions import db
from shop.models.stock import StockRecord
from shop.services.common import is_non_negative_int, sanitize_string, utcnow

logger = logging.getLogger(__name__)


def _normalize_id(product_id):
    text = sanitize_string(product_id)
    if not text.isdigit():
        raise invalid_data(f"Not a valid product id: {product_id!r}")
    return int(text)


def _catalog_entry(record, threshold):
    entry = record.to_dict()
    entry["fewTag"] = record.stock_value < threshold
    entry["soldOut"] = record.stock_value == 0
    return entry


def get_all_stock():
    """All stock rows, ordered by id."""
    return StockRecord.query.order_by(StockRecord.id).all()


def get_stock_by_id(product_id):
    record = db.session.get(StockRecord, _normalize_id(product_id))
    if record is None:
        raise not_found(f"Product {product_id} not found")
    return record


def get_all_products(include_samples=True):
    """Catalog view: stock rows plus few_tag / sold_out business flags."""
    threshold = current_app.config.get("FEW_STOCK_THRESHOLD", 20)
    query = StockRecord.query
    if not include_samples:
        query = query.filter(StockRecord.is_sample.is_(False))
    return [_catalog_entry(r, threshold) for r in query.order_by(StockRecord.id).all()]


def get_product_by_id(product_id):
    threshold = current_app.config.get("FEW_STOCK_THRESHOLD", 20)
    return _catalog_entry(get_stock_by_id(product_id), threshold)


def set_stock(product_id, changes):
    """Absolute set. Accepts {"stockValue": n} plus optional name / price."""
    record = get_stock_by_id(product_id)
    changes = changes if isinstance(changes, dict) else {}

    if "stockValue" in changes:
        value = changes["stockValue"]
        if not is_non_negative_int(value):
            raise invalid_data("stockValue must be a non-negative integer")
        record.stock_value = value
    if "name" in changes:
        name = sanitize_string(changes["name"])
        if not name:
            raise invalid_data("name cannot be empty")
        record.name = name
    if "priceCents" in changes:
        price = changes["priceCents"]
        if not is_non_negative_int(price) or price == 0:
            raise invalid_data("priceCents must be a positive integer")
        record.price_cents = price

    record.updated_at = utcnow()
    db.session.flush()
    return record


def decrement_stock(product_id, quantity):
    """Remove ``quantity`` units. Rejects (and changes nothing) when short.

    Raises OrderError NOT_FOUND for unknown products and CONFLICT
    (INSUFFICIENT_STOCK) when quantity exceeds the available stock.
    """
    pid = _normalize_id(product_id)
    if not is_non_negative_int(quantity) or quantity == 0:
        raise invalid_data("Decrement quantity must be a positive integer")

    rows = (
        StockRecord.query
        .filter(StockRecord.id == pid, StockRecord.stock_value >= quantity)
        .update(
            {
                StockRecord.stock_value: StockRecord.stock_value - quantity,
                StockRecord.updated_at: utcnow(),
            },
            synchronize_session="fetch",
        )
    )
    record = db.session.get(StockRecord, pid)
    if rows == 0:
        if record is None:
            raise not_found(f"Product {pid} not found")
        raise conflict(
            f"Not enough stock for {record.name}",
            code="INSUFFICIENT_STOCK",
            details={"id": pid, "available": record.stock_value, "requested": quantity},
        )
    return record


def adjust_stock(product_id, delta):
    """Signed adjustment (+ restock, - sale). Zero delta is rejected."""
    if isinstance(delta, bool):
        raise invalid_data("Delta must be a non-zero integer")
    try:
        delta = int(delta)
    except (TypeError, ValueError):
        raise invalid_data("Delta must be a non-zero integer")
    if delta == 0:
        raise invalid_data("Delta must be a non-zero integer")

    if delta < 0:
        return decrement_stock(product_id, -delta)

    record = get_stock_by_id(product_id)
    record.stock_value = record.stock_value + delta
    record.updated_at = utcnow()
    db.session.flush()
    return record


def reserve_stock(items):
    """Decrement every order line or none of them.

    Runs inside a SAVEPOINT: the first shortage rolls back the decrements
    already applied for this order and re-raises.
    """
    with db.session.begin_nested():
        for item in items:
            decrement_stock(item["id"], item["quantity"])
    logger.info(f"Reserved stock for {len(items)} line(s)")


def decrement_each(items):
    """Best-effort decrement: every line is attempted, failures are collected.

    Each line runs in its own SAVEPOINT so a rejected line leaves no trace
    and never stops its siblings. Store errors (SQLAlchemyError) are not
    collected; they propagate so the surrounding transaction rolls back.

    Returns {"applied": [...], "failed": [...]}.
    """
    applied, failed = [], []
    for item in items:
        try:
            with db.session.begin_nested():
                record = decrement_stock(item["id"], item["quantity"])
            applied.append({
                "id": item["id"],
                "quantity": item["quantity"],
                "remaining": record.stock_value,
            })
        except OrderError as e:
            logger.warning(
                f"Stock decrement failed for product {item['id']} "
                f"(qty {item['quantity']}): {e.message}"
            )
            failed.append({
                "id": item["id"],
                "quantity": item["quantity"],
                "code": e.code,
                "reason": e.message,
            })
    return {"applied": applied, "failed": failed}
