"""Order validation — the one definition of a valid order.

Used by the webhook path (after deriving an order from a Checkout Session)
and by the manual checkout path before anything is persisted. Checks run in
a fixed order and the first failure raises OrderError(VALIDATION) with a
field-level message:

    shape -> name -> email -> phone -> amount_total -> shipping cost
    -> items present -> currency -> payment_id -> each item -> total
    -> metadata (nested addresses, no legacy flat address keys)

Pure functions, no DB access here.
"""

from shop.errors import invalid_data
from shop.services.common import (
    ALLOWED_CURRENCIES,
    EMAIL_RE,
    is_non_negative_int,
)

# Flat address keys written by an old checkout form. Orders carrying them
# are rejected, not migrated.
LEGACY_ADDRESS_KEYS = (
    "addr_line1",
    "addr_line2",
    "addr_city",
    "addr_zip",
    "addr_postal",
    "addr_ctry",
    "addr_country",
)


def _require_text(order, field, label):
    value = order.get(field)
    if not isinstance(value, str) or not value.strip():
        raise invalid_data(f"Order.{label} is required and must be a non-empty string")
    return value.strip()


def discount_cents(metadata):
    """Discount already subtracted from amount_total (0 when none)."""
    discount = metadata.get("discount") if isinstance(metadata, dict) else None
    if not isinstance(discount, dict):
        return 0
    amount = discount.get("amount_cents")
    return amount if is_non_negative_int(amount) else 0


def items_total(items):
    return sum(item["quantity"] * item["unit_amount"] for item in items)


def _validate_item(item, index):
    if not isinstance(item, dict):
        raise invalid_data(f"Order.items[{index}] must be an object")

    item_id = item.get("id")
    if not is_non_negative_int(item_id):
        raise invalid_data(f"Order.items[{index}].id must be a non-negative integer")

    name = item.get("name")
    if not isinstance(name, str) or not name.strip():
        raise invalid_data(f"Order.items[{index}].name is required")

    quantity = item.get("quantity")
    if not is_non_negative_int(quantity) or quantity == 0:
        raise invalid_data(f"Order.items[{index}].quantity must be a positive integer")

    unit_amount = item.get("unit_amount")
    if not is_non_negative_int(unit_amount):
        raise invalid_data(
            f"Order.items[{index}].unit_amount must be a non-negative integer"
        )

    return {
        "id": item_id,
        "name": name.strip(),
        "quantity": quantity,
        "unit_amount": unit_amount,
    }


def _validate_metadata(metadata):
    if not isinstance(metadata, dict):
        raise invalid_data("Order.metadata is required and must be an object")

    legacy = [key for key in LEGACY_ADDRESS_KEYS if key in metadata]
    if legacy:
        raise invalid_data(
            "Order.metadata uses legacy flat address fields; "
            "send shipping_address/billing_address objects instead",
            details={"fields": legacy},
        )

    for key in ("shipping_address", "billing_address"):
        if not isinstance(metadata.get(key), dict):
            raise invalid_data(f"Order.metadata.{key} is required and must be an object")


def validate_order(order, allowed_currencies=ALLOWED_CURRENCIES):
    """Validate an order draft and return a normalized shallow copy.

    Raises OrderError(VALIDATION) on the first failing check.
    """
    if not isinstance(order, dict):
        raise invalid_data("Order object is required")

    name = _require_text(order, "name", "name")

    email = order.get("email")
    if not isinstance(email, str) or not EMAIL_RE.match(email.strip()):
        raise invalid_data("Order.email is required and must be a valid email address")

    phone = _require_text(order, "phone", "phone")

    amount_total = order.get("amount_total")
    if not is_non_negative_int(amount_total):
        raise invalid_data("Order.amount_total must be a non-negative integer (cents)")

    metadata = order.get("metadata")
    shipping = order.get("shipping_cost_cents")
    if shipping is None and isinstance(metadata, dict):
        shipping = metadata.get("shipping_cost_cents", 0)
    if shipping is None:
        shipping = 0
    if not is_non_negative_int(shipping):
        raise invalid_data("Order.shipping_cost_cents must be a non-negative integer")
    if shipping > amount_total:
        raise invalid_data("Order.shipping_cost_cents cannot exceed amount_total")

    items = order.get("items")
    if not isinstance(items, list) or not items:
        raise invalid_data("Order.items is required and must be a non-empty array")

    currency = order.get("currency")
    if not isinstance(currency, str) or currency.strip().lower() not in allowed_currencies:
        raise invalid_data(
            f"Order.currency must be one of: {', '.join(allowed_currencies)}"
        )

    payment_id = order.get("payment_id")
    if not isinstance(payment_id, str) or not payment_id.strip():
        raise invalid_data("Order.payment_id is required")

    clean_items = [_validate_item(item, index) for index, item in enumerate(items)]

    expected = items_total(clean_items) + shipping - discount_cents(metadata)
    if expected != amount_total:
        raise invalid_data(
            "Order.amount_total does not match items and shipping",
            details={"expected": expected, "received": amount_total},
        )

    _validate_metadata(metadata)

    normalized = dict(order)
    normalized.update(
        name=name,
        email=email.strip().lower(),
        phone=phone,
        currency=currency.strip().lower(),
        payment_id=payment_id.strip(),
        shipping_cost_cents=shipping,
        items=clean_items,
        metadata=dict(metadata),
    )
    return normalized
