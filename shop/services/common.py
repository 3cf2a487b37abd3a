"""Small pure helpers shared by checkout, derivation and order services.

Free text coming from customers (names, notes, address lines) is passed
through bleach.clean() so no HTML reaches stored orders or email templates.
"""

import json
import re
from datetime import datetime, timezone

import bleach

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

ALLOWED_CURRENCIES = ("eur",)

SHIPPING_PRODUCT_TAG = "__shipping__"


class PaymentType:
    STRIPE = "stripe"
    MANUAL = "manual"


ADDRESS_FIELDS = (
    "name", "line1", "line2", "city", "state", "postal_code", "country", "phone",
)

# Alternative spellings accepted for address fields (first non-empty wins).
ADDRESS_ALIASES = {
    "name": ("name",),
    "line1": ("line1",),
    "line2": ("line2",),
    "city": ("city",),
    "state": ("state", "province", "region"),
    "postal_code": ("postal_code", "postalCode", "zip", "postal"),
    "country": ("country",),
    "phone": ("phone",),
}


def utcnow():
    return datetime.now(timezone.utc)


def sanitize_string(value):
    """Trim a string and strip any HTML; non-strings become ""."""
    if isinstance(value, bool) or value is None:
        return ""
    if isinstance(value, (int, float)):
        value = str(value)
    if not isinstance(value, str):
        return ""
    return bleach.clean(value, tags=[], strip=True).strip()


def pick_non_empty(*values):
    """Return the first value that sanitizes to a non-empty string, else ""."""
    for value in values:
        cleaned = sanitize_string(value)
        if cleaned:
            return cleaned
    return ""


def to_integer(value, fallback=0):
    """Coerce to a non-negative int (truncating); invalid or negative -> fallback."""
    if isinstance(value, bool) or value is None:
        return fallback
    try:
        number = int(float(value))
    except (TypeError, ValueError):
        return fallback
    return number if number >= 0 else fallback


def is_non_negative_int(value):
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def to_boolean(value):
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return False


def empty_address():
    return {field: "" for field in ADDRESS_FIELDS}


def sanitize_address(address):
    """Normalize an address mapping to the canonical eight string fields.

    Country is upper-cased. Non-mapping input yields an empty address.
    """
    if not isinstance(address, dict):
        return empty_address()

    clean = {}
    for field, aliases in ADDRESS_ALIASES.items():
        clean[field] = pick_non_empty(*(address.get(alias) for alias in aliases))
    clean["country"] = clean["country"].upper()
    return clean


def merge_addresses(*candidates):
    """Fill each address field from the first candidate that has it."""
    result = empty_address()
    for candidate in candidates:
        clean = sanitize_address(candidate)
        for field in ADDRESS_FIELDS:
            if not result[field] and clean[field]:
                result[field] = clean[field]
    return result


def has_address(address):
    if not isinstance(address, dict):
        return False
    return any(
        sanitize_string(address.get(field))
        for field in ("line1", "line2", "city", "state", "postal_code", "country")
    )


def parse_json_object(value):
    """Decode a JSON-encoded object (as stored in Stripe metadata).

    Dicts pass through; anything that is not a JSON object yields {}.
    """
    if isinstance(value, dict):
        return value
    if not isinstance(value, str) or not value.strip():
        return {}
    try:
        decoded = json.loads(value)
    except ValueError:
        return {}
    return decoded if isinstance(decoded, dict) else {}
