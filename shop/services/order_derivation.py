"""Order derivation — Stripe Checkout Session + line items -> order draft.

Pure: no DB, no Stripe calls. The webhook handlers fetch the session's line
items (expanded with price + product) and hand both here. Whatever comes
back has already passed order_validation.validate_order(); anything that
cannot be turned into a valid order raises OrderError(VALIDATION), which the
webhook surfaces as a 4xx so Stripe stops retrying an unfixable payload.

Resolution rules:
- unit_amount: line amount_total / quantity when it divides evenly,
  otherwise the quoted price.unit_amount.
- product id: product.metadata.productId, then price.metadata.productId,
  then the session-level ``product_ids`` list (positional). Lines tagged
  ``__shipping__`` become shipping_cost_cents instead of items.
- name / email / phone: session fields, then session metadata, then the
  address blocks.
- addresses: JSON blobs in session metadata first, structured
  shipping_details / customer_details second. Billing falls back to a copy
  of shipping when flagged "same as shipping" or empty.
- amount_total is recomputed (items + shipping); Stripe's figure is only
  cross-checked.
"""

import logging

from shop.errors import invalid_data
from shop.services.common import (
    ALLOWED_CURRENCIES,
    SHIPPING_PRODUCT_TAG,
    PaymentType,
    has_address,
    is_non_negative_int,
    merge_addresses,
    parse_json_object,
    pick_non_empty,
    sanitize_string,
    to_boolean,
)
from shop.services.order_validation import validate_order

logger = logging.getLogger(__name__)


def _obj(value):
    """Treat None / non-mapping values as an empty mapping."""
    return value if isinstance(value, dict) else {}


def _ref_id(value):
    """Stripe fields like payment_intent/customer are an id or an expanded object."""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, dict):
        return sanitize_string(value.get("id"))
    return ""


def _parse_product_id(raw):
    """Internal product ids are non-negative integers; anything else -> None."""
    if is_non_negative_int(raw):
        return raw
    text = sanitize_string(raw)
    if text.isdigit():
        return int(text)
    return None


def _line_tag(line):
    """The productId tag stamped on a line item at session-creation time."""
    price = _obj(line.get("price"))
    product = _obj(price.get("product"))
    return pick_non_empty(
        _obj(product.get("metadata")).get("productId"),
        _obj(price.get("metadata")).get("productId"),
    )


def _session_product_ids(metadata):
    """Positional product ids from session metadata ("12,7,3")."""
    raw = metadata.get("product_ids")
    if isinstance(raw, list):
        return raw
    return [part.strip() for part in sanitize_string(raw).split(",") if part.strip()]


def _unit_amount(line, index):
    quantity = line.get("quantity")
    if not is_non_negative_int(quantity) or quantity == 0:
        raise invalid_data(f"Invalid quantity for line item at position {index}")

    line_total = line.get("amount_total")
    if not is_non_negative_int(line_total):
        raise invalid_data(f"Invalid amount_total for line item at position {index}")

    if line_total % quantity == 0:
        return quantity, line_total, line_total // quantity

    quoted = _obj(line.get("price")).get("unit_amount")
    if is_non_negative_int(quoted):
        return quantity, line_total, quoted

    raise invalid_data(f"Unable to derive unit_amount for line item at position {index}")


def build_items(line_items, session_metadata=None):
    """Split line items into order items and the shipping total.

    Returns (items, shipping_cost_cents).
    """
    positional_ids = _session_product_ids(_obj(session_metadata))
    items = []
    shipping_cents = 0

    for index, line in enumerate(line_items):
        line = _obj(line)
        quantity, line_total, unit_amount = _unit_amount(line, index)
        tag = _line_tag(line)

        if tag == SHIPPING_PRODUCT_TAG:
            shipping_cents += line_total
            continue

        product_id = _parse_product_id(tag)
        if product_id is None:
            position = len(items)
            if position < len(positional_ids):
                product_id = _parse_product_id(positional_ids[position])
        if product_id is None:
            raise invalid_data(f"Missing product id for line item at position {index}")

        price = _obj(line.get("price"))
        name = pick_non_empty(
            line.get("description"),
            _obj(price.get("product")).get("name"),
            price.get("nickname"),
        )
        if not name:
            raise invalid_data(f"Missing name for line item at position {index}")

        items.append({
            "id": product_id,
            "name": name,
            "quantity": quantity,
            "unit_amount": unit_amount,
        })

    return items, shipping_cents


def _details_as_address(details):
    """Flatten a Stripe {name, phone, address: {...}} block into one address."""
    details = _obj(details)
    flat = dict(_obj(details.get("address")))
    flat["name"] = details.get("name")
    flat["phone"] = details.get("phone")
    return flat


def _shipping_details(session):
    # Newer API versions moved shipping_details under collected_information.
    return _obj(session.get("shipping_details")) or _obj(
        _obj(session.get("collected_information")).get("shipping_details")
    )


def resolve_addresses(session, name, phone):
    """Return (shipping_address, billing_address, billing_same_as_shipping)."""
    metadata = _obj(session.get("metadata"))

    shipping = merge_addresses(
        parse_json_object(metadata.get("shipping_address")),
        _details_as_address(_shipping_details(session)),
    )
    billing = merge_addresses(
        parse_json_object(metadata.get("billing_address")),
        _details_as_address(session.get("customer_details")),
    )

    for address in (shipping, billing):
        if not address["name"]:
            address["name"] = name
        if not address["phone"]:
            address["phone"] = phone

    same = to_boolean(metadata.get("billing_same_as_shipping"))
    if same or not has_address(billing):
        billing = dict(shipping)

    return shipping, billing, same


def resolve_customer(session):
    """Return (name, email, phone); each must be non-empty."""
    metadata = _obj(session.get("metadata"))
    customer = _obj(session.get("customer_details"))
    shipping_details = _shipping_details(session)
    meta_shipping = parse_json_object(metadata.get("shipping_address"))
    meta_billing = parse_json_object(metadata.get("billing_address"))

    name = pick_non_empty(
        customer.get("name"),
        metadata.get("full_name"),
        metadata.get("name"),
        shipping_details.get("name"),
        meta_shipping.get("name"),
        meta_billing.get("name"),
    )
    if not name:
        raise invalid_data("Missing customer name in checkout session")

    email = pick_non_empty(
        customer.get("email"),
        session.get("customer_email"),
        metadata.get("email"),
    ).lower()
    if not email:
        raise invalid_data("Missing customer email in checkout session")

    phone = pick_non_empty(
        customer.get("phone"),
        metadata.get("phone"),
        shipping_details.get("phone"),
        meta_shipping.get("phone"),
        meta_billing.get("phone"),
    )
    if not phone:
        raise invalid_data("Missing customer phone in checkout session")

    return name, email, phone


def build_order_draft(session, line_items, allowed_currencies=ALLOWED_CURRENCIES):
    """Derive a validated order draft from a Checkout Session and its line items."""
    session = _obj(session)
    session_id = sanitize_string(session.get("id"))
    if not session_id:
        raise invalid_data("Checkout session payload missing id")
    if not line_items:
        raise invalid_data(f"No line items found for checkout session {session_id}")

    metadata = _obj(session.get("metadata"))

    items, shipping_cents = build_items(line_items, metadata)
    if not items:
        raise invalid_data("Checkout session has no purchasable items")

    name, email, phone = resolve_customer(session)
    shipping_address, billing_address, same = resolve_addresses(session, name, phone)

    amount_total = sum(i["quantity"] * i["unit_amount"] for i in items) + shipping_cents
    reported = session.get("amount_total")
    if is_non_negative_int(reported) and reported != amount_total:
        logger.warning(
            f"Session {session_id}: Stripe amount_total={reported} differs from "
            f"recomputed {amount_total}; persisting recomputed total"
        )

    payment_intent = _ref_id(session.get("payment_intent"))
    client_reference_id = pick_non_empty(
        session.get("client_reference_id"),
        metadata.get("client_reference_id"),
        metadata.get("clientReferenceId"),
    )

    order_metadata = {
        "shipping_address": shipping_address,
        "billing_address": billing_address,
        "billing_same_as_shipping": same,
        "shipping_cost_cents": shipping_cents,
        "stripe_session_id": session_id,
        "client_reference_id": client_reference_id,
    }
    order_id = sanitize_string(metadata.get("order_id"))
    if order_id:
        order_metadata["order_id"] = order_id
    notes = sanitize_string(metadata.get("notes"))
    if notes:
        order_metadata["notes"] = notes
    discount_code = sanitize_string(metadata.get("discount_code"))
    if discount_code:
        # Stripe already spread the coupon across line totals.
        order_metadata["discount_code"] = discount_code

    draft = {
        "name": name,
        "email": email,
        "phone": phone,
        "currency": sanitize_string(session.get("currency")).lower(),
        "amount_total": amount_total,
        "shipping_cost_cents": shipping_cents,
        "items": items,
        "metadata": order_metadata,
        "session_id": session_id,
        "payment_intent": payment_intent,
        "payment_id": payment_intent or f"pending_{session_id}",
        "payment_status": session.get("payment_status"),
        "payment_type": PaymentType.STRIPE,
        "stripe_customer_id": _ref_id(session.get("customer")),
        "client_reference_id": client_reference_id,
    }
    return validate_order(draft, allowed_currencies)
