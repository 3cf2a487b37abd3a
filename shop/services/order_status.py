"""Shipment status stages stored on every order.

Each stage is ``{"status": bool, "date": "YYYY-MM-DD" | None, "time": "HH:MM" | None}``.
"""

from shop.errors import invalid_data

STATUS_KEYS = (
    "awaiting_ctt",
    "accepted",
    "in_transit",
    "in_delivery",
    "delivered",
)

STATUS_LABELS = {
    "awaiting_ctt": "Awaiting carrier acceptance",
    "accepted": "Accepted",
    "in_transit": "In Transit",
    "in_delivery": "In Delivery",
    "delivered": "Delivered",
}


def make_default_status():
    """Blank status mapping for a new order."""
    return {key: {"status": False, "date": None, "time": None} for key in STATUS_KEYS}


def assert_valid_status_key(key):
    if key not in STATUS_KEYS:
        raise invalid_data(
            f"Invalid status key '{key}'. Allowed: {', '.join(STATUS_KEYS)}"
        )
    return key


def build_stage(reached, when=None):
    """Build one stage entry; a reached stage is stamped with ``when``."""
    if not reached:
        return {"status": False, "date": None, "time": None}
    return {
        "status": True,
        "date": when.strftime("%Y-%m-%d"),
        "time": when.strftime("%H:%M"),
    }
