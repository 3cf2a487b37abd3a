"""Checkout service — turns a cart request into a hosted session or a manual order.

Responsible for:
- Normalizing the checkout request body (flat and nested field spellings)
- Country routing: hosted Stripe Checkout for supported countries, manual
  bank-transfer orders for everyone else
- Cross-checking cart lines against the live catalog (price, sold out, stock)
- Discounts (capped at the items subtotal, shipping is never discounted)

Country comes from the shipping address, then billing, then the customer
profile. Codes and full country names are both accepted.

Hosted path: nothing is persisted here; the order is created by the webhook
once Stripe reports the payment. Manual path: the order is persisted at once
with ``payment_status=False`` and its stock reserved all-or-nothing.
"""

import json
import logging
import uuid

from flask import current_app

from shop.errors import conflict, external_service, invalid_data, not_found
from shop.services.common import (
    EMAIL_RE,
    SHIPPING_PRODUCT_TAG,
    PaymentType,
    pick_non_empty,
    sanitize_address,
    sanitize_string,
    to_boolean,
    to_integer,
)
from shop.services.order_service import create_order
from shop.services.stock_service import get_all_products
from shop.services.stripe_gateway import get_gateway

logger = logging.getLogger(__name__)

COUNTRY_NAME_TO_CODE = {
    "AUSTRALIA": "AU",
    "BRAZIL": "BR",
    "BRASIL": "BR",
    "CANADA": "CA",
    "COSTA RICA": "CR",
    "GERMANY": "DE",
    "DEUTSCHLAND": "DE",
    "ALEMANHA": "DE",
    "MEXICO": "MX",
    "MÉXICO": "MX",
    "NETHERLANDS": "NL",
    "THE NETHERLANDS": "NL",
    "NEDERLAND": "NL",
    "HOLLAND": "NL",
    "NEW ZEALAND": "NZ",
    "PORTUGAL": "PT",
    "SOUTH AFRICA": "ZA",
    "URUGUAY": "UY",
    "UNITED STATES": "US",
    "UNITED STATES OF AMERICA": "US",
    "USA": "US",
}


def _obj(value):
    return value if isinstance(value, dict) else {}


def _first_obj(*values):
    for value in values:
        if isinstance(value, dict) and value:
            return value
    return {}


# ──────────────────────────────────────────────
# Request normalization
# ──────────────────────────────────────────────

def normalize_discount(raw, code=None, amount_cents=None, percent=None):
    """Return {"code", "amount_cents", "percent"} or None when no discount.

    Accepts a nested object ({code|label, amountCents|amount_cents, percent})
    and/or flat overrides.
    """
    nested = _obj(raw)
    code = pick_non_empty(code, nested.get("code"), nested.get("label")) or None

    raw_amount = amount_cents
    if raw_amount is None:
        raw_amount = nested.get("amountCents", nested.get("amount_cents"))
    amount = to_integer(raw_amount, 0)

    raw_percent = percent if percent is not None else nested.get("percent")
    percent = to_integer(raw_percent, None)

    if not code and amount == 0:
        return None
    return {"code": code, "amount_cents": amount, "percent": percent}


def prepare_checkout_request(body):
    """Normalize a POST /api/checkout-sessions body."""
    body = _obj(body)
    customer = _obj(body.get("customer"))

    shipping_cost = body.get("shipping_cost_cents", body.get("shippingCostCents"))
    notes = body.get("notes")
    if not isinstance(notes, str):
        notes = customer.get("notes") if isinstance(customer.get("notes"), str) else ""

    return {
        "items": body.get("items") if isinstance(body.get("items"), list) else [],
        "customer": customer,
        "client_reference_id": sanitize_string(
            body.get("clientReferenceId", body.get("client_reference_id"))
        ),
        "shipping_address": _first_obj(
            body.get("shipping_address"), body.get("shippingAddress"), body.get("address")
        ),
        "billing_address": _first_obj(
            body.get("billing_address"), body.get("billingAddress")
        ),
        "billing_same_as_shipping": to_boolean(
            body.get("billingSameAsShipping", body.get("billing_same_as_shipping", False))
        ),
        "shipping_cost_cents": to_integer(shipping_cost, 0),
        "notes": sanitize_string(notes),
        "discount": normalize_discount(
            body.get("discount"),
            code=body.get("discountCode"),
            amount_cents=body.get("discountAmountCents"),
            percent=body.get("discountPercent"),
        ),
    }


def _parse_cart(items):
    """[{id, qty|quantity}] -> [{"id": int, "quantity": int}]; quantity defaults to 1."""
    if not items:
        raise invalid_data("No items in payload", code="EMPTY_CART")
    cart = []
    for index, entry in enumerate(items):
        entry = _obj(entry)
        product_id = sanitize_string(entry.get("id"))
        if not product_id.isdigit():
            raise invalid_data(f"Invalid product id at position {index}", code="MALFORMED_INPUT")
        cart.append({
            "id": int(product_id),
            "quantity": max(1, to_integer(entry.get("qty", entry.get("quantity")), 1)),
        })
    return cart


# ──────────────────────────────────────────────
# Country routing
# ──────────────────────────────────────────────

def normalize_country(value):
    text = sanitize_string(value).upper()
    return COUNTRY_NAME_TO_CODE.get(text, text)


def resolve_country(request):
    """First non-empty country of shipping -> billing -> customer, upper-cased."""
    country = normalize_country(pick_non_empty(
        _obj(request.get("shipping_address")).get("country"),
        _obj(request.get("billing_address")).get("country"),
        _obj(request.get("customer")).get("country"),
    ))
    if not country:
        raise invalid_data("Country is required for checkout", code="MISSING_COUNTRY")
    return country


def uses_hosted_checkout(country, hosted_countries=None):
    if hosted_countries is None:
        hosted_countries = current_app.config.get("HOSTED_CHECKOUT_COUNTRIES", ())
    return normalize_country(country) in hosted_countries


# ──────────────────────────────────────────────
# Catalog cross-check
# ──────────────────────────────────────────────

def _catalog_by_id():
    return {product["id"]: product for product in get_all_products()}


def build_stripe_line_items(cart, catalog, currency):
    """Stripe price_data line items for the cart; any bad line rejects the cart."""
    line_items = []
    for line in cart:
        product = catalog.get(line["id"])
        if product is None:
            raise invalid_data(f"Product not found for id {line['id']}", code="UNKNOWN_PRODUCT")
        if not product.get("priceCents") or product["priceCents"] <= 0:
            raise invalid_data(f"Invalid price for product {line['id']}", code="PRICE_MISMATCH")
        if product.get("soldOut"):
            raise conflict(f"{product['name']} is sold out", code="OUT_OF_STOCK")
        if product["stockValue"] < line["quantity"]:
            raise conflict(
                f"Not enough stock for {product['name']}",
                code="OUT_OF_STOCK",
                details={"id": line["id"], "available": product["stockValue"]},
            )
        line_items.append({
            "price_data": {
                "currency": currency,
                "product_data": {
                    "name": product["name"],
                    "metadata": {"productId": str(product["id"])},
                },
                "unit_amount": product["priceCents"],
            },
            "quantity": line["quantity"],
        })
    return line_items


def _shipping_line_item(shipping_cents, currency):
    return {
        "price_data": {
            "currency": currency,
            "product_data": {
                "name": "Shipping",
                "metadata": {"productId": SHIPPING_PRODUCT_TAG},
            },
            "unit_amount": shipping_cents,
        },
        "quantity": 1,
    }


def _resolve_contact(request, shipping, billing, flow):
    """Return (name, email, phone) or raise a field-level validation error."""
    customer = _obj(request.get("customer"))
    name = pick_non_empty(customer.get("name"), shipping["name"], billing["name"])
    if not name:
        raise invalid_data(f"Customer name is required for {flow}")
    email = pick_non_empty(customer.get("email")).lower()
    if not email or not EMAIL_RE.match(email):
        raise invalid_data(f"Valid customer email is required for {flow}")
    phone = pick_non_empty(customer.get("phone"), shipping["phone"], billing["phone"])
    if not phone:
        raise invalid_data(f"Customer phone is required for {flow}")
    return name, email, phone


def _clean_addresses(request):
    shipping = sanitize_address(request.get("shipping_address"))
    if request.get("billing_same_as_shipping"):
        billing = dict(shipping)
    else:
        billing = sanitize_address(request.get("billing_address"))
    return shipping, billing


# ──────────────────────────────────────────────
# Hosted (Stripe Checkout) path
# ──────────────────────────────────────────────

def build_checkout_metadata(request, shipping, billing, cart):
    """Session metadata read back by the webhook when deriving the order.

    Stripe metadata values are strings: addresses are JSON-encoded (phone
    blanked; it travels once at the top level).
    """
    name, email, phone = _resolve_contact(request, shipping, billing, "checkout")
    metadata = {
        "name": name,
        "full_name": name,
        "email": email,
        "phone": phone,
        "notes": request.get("notes") or "",
        "billing_same_as_shipping": str(bool(request.get("billing_same_as_shipping"))).lower(),
        "shipping_cost_cents": str(request.get("shipping_cost_cents") or 0),
        "shipping_address": json.dumps({**shipping, "phone": ""}),
        "billing_address": json.dumps({**billing, "phone": ""}),
        "client_reference_id": request.get("client_reference_id") or "",
        "product_ids": ",".join(str(line["id"]) for line in cart),
    }
    return metadata, email


def create_hosted_checkout(request):
    """Create a Stripe Checkout Session for the cart. Returns {url, sessionId, ...}."""
    currency = current_app.config.get("DEFAULT_CURRENCY", "eur")
    base_url = current_app.config["PUBLIC_BASE_URL"].rstrip("/")
    gateway = get_gateway()

    cart = _parse_cart(request.get("items"))
    line_items = build_stripe_line_items(cart, _catalog_by_id(), currency)
    shipping_cents = request.get("shipping_cost_cents") or 0
    if shipping_cents > 0:
        line_items.append(_shipping_line_item(shipping_cents, currency))

    shipping, billing = _clean_addresses(request)
    metadata, customer_email = build_checkout_metadata(request, shipping, billing, cart)

    pre_discount_total = sum(li["price_data"]["unit_amount"] * li["quantity"] for li in line_items)
    discount = request.get("discount")
    # never discount shipping: the paid total must still cover it
    applied = min(discount["amount_cents"], pre_discount_total - shipping_cents) if discount else 0
    metadata.update(
        discount_code=(discount or {}).get("code") or "",
        discount_amount_cents=str(applied),
        discount_percent="" if not discount or discount["percent"] is None else str(discount["percent"]),
        pre_discount_total_cents=str(pre_discount_total),
    )

    params = {
        "mode": "payment",
        "line_items": line_items,
        "billing_address_collection": "auto",
        "phone_number_collection": {"enabled": False},
        "customer_creation": "always",
        "customer_email": customer_email,
        "success_url": f"{base_url}/checkout/success/{{CHECKOUT_SESSION_ID}}",
        "cancel_url": f"{base_url}/checkout/cancel",
        "metadata": metadata,
    }
    if metadata["client_reference_id"]:
        params["client_reference_id"] = metadata["client_reference_id"]
    if applied > 0:
        coupon = gateway.create_coupon(
            amount_off=applied,
            currency=currency,
            name=discount["code"] or f"Discount {applied / 100:.2f} {currency.upper()}",
        )
        params["discounts"] = [{"coupon": coupon["id"]}]

    session = gateway.create_checkout_session(**params)
    if not session.get("url") or not session.get("id"):
        raise external_service("Stripe session created without URL", code="STRIPE_NO_URL")

    logger.info(
        f"Checkout session {session['id']} created ({len(cart)} item(s), "
        f"discount={applied}, shipping={shipping_cents})"
    )
    return {
        "mode": "hosted",
        "url": session["url"],
        "sessionId": session["id"],
        "paymentIntentId": session.get("payment_intent") or None,
    }


# ──────────────────────────────────────────────
# Manual (bank transfer) path
# ──────────────────────────────────────────────

def build_manual_order_payload(request, catalog, currency):
    """Order draft for a manual checkout; totals computed from the catalog."""
    if not catalog:
        raise not_found("Product catalog is empty")
    cart = _parse_cart(request.get("items"))

    shipping, billing = _clean_addresses(request)
    name, email, phone = _resolve_contact(request, shipping, billing, "manual checkout")
    for address in (shipping, billing):
        if not address["name"]:
            address["name"] = name
        if not address["phone"]:
            address["phone"] = phone

    items = []
    for line in cart:
        product = catalog.get(line["id"])
        if product is None:
            raise not_found(f"Product not found for id {line['id']}")
        if not product.get("priceCents") or product["priceCents"] <= 0:
            raise invalid_data(f"Invalid price for product {line['id']}", code="PRICE_MISMATCH")
        items.append({
            "id": product["id"],
            "name": sanitize_string(product["name"]) or f"Product {product['id']}",
            "quantity": line["quantity"],
            "unit_amount": product["priceCents"],
        })

    shipping_cents = request.get("shipping_cost_cents") or 0
    items_subtotal = sum(i["quantity"] * i["unit_amount"] for i in items)
    pre_discount_total = items_subtotal + shipping_cents
    discount = request.get("discount")
    applied = min(discount["amount_cents"], items_subtotal) if discount else 0
    amount_total = pre_discount_total - applied

    metadata = {
        "billing_same_as_shipping": bool(request.get("billing_same_as_shipping")),
        "shipping_cost_cents": shipping_cents,
        "shipping_address": shipping,
        "billing_address": billing,
        "client_reference_id": request.get("client_reference_id") or "",
    }
    if request.get("notes"):
        metadata["notes"] = request["notes"]
    if discount:
        metadata["discount"] = {
            "code": discount["code"],
            "amount_cents": applied,
            "percent": discount["percent"],
            "pre_discount_total_cents": pre_discount_total,
            "final_total_cents": amount_total,
        }

    return {
        "name": name,
        "email": email,
        "phone": phone,
        "amount_total": amount_total,
        "currency": currency,
        "items": items,
        "shipping_cost_cents": shipping_cents,
        "payment_id": f"notPaid_Manual-{uuid.uuid4()}",
        "payment_status": False,
        "payment_type": PaymentType.MANUAL,
        "client_reference_id": request.get("client_reference_id") or "",
        "metadata": metadata,
    }


def create_manual_order(request):
    """Persist an unpaid order, reserve its stock and send awaiting-payment emails."""
    currency = current_app.config.get("DEFAULT_CURRENCY", "eur")
    payload = build_manual_order_payload(request, _catalog_by_id(), currency)
    order = create_order(payload, reserve_stock=True, actor="customer")
    return {
        "mode": "manual",
        "orderId": order.id,
        "paymentId": order.payment_id,
        "amountTotal": order.amount_total,
        "currency": order.currency,
    }


# ──────────────────────────────────────────────
# Entry point
# ──────────────────────────────────────────────

def create_checkout(body):
    """Route a checkout request to the hosted or the manual flow."""
    request = prepare_checkout_request(body)
    country = resolve_country(request)
    if uses_hosted_checkout(country):
        result = create_hosted_checkout(request)
    else:
        logger.info(f"Country {country} not served by hosted checkout; creating manual order")
        result = create_manual_order(request)
    result["country"] = country
    return result
