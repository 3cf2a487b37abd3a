"""Order model.

One row per order. Orders are never hard-deleted: ``folder`` partitions
rows into ``orders`` (live), ``archive`` and ``deleted``.

``session_id`` is unique (NULL when not applicable, exposed as "" by
to_dict) and is the primary idempotency key for webhook-created orders.
``stock_adjusted_at`` is the stock-adjusted marker; it is mirrored into
``metadata.stock_adjusted_at`` so API consumers see it where they expect it.
"""

import uuid

from shop.extensions import db


def _iso(value):
    return value.isoformat() if value else None


class Order(db.Model):
    __tablename__ = "orders"

    FOLDERS = ("orders", "archive", "deleted")
    IDENTITY_FIELDS = ("id", "event_id")

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    event_id = db.Column(
        db.String(36), unique=True, nullable=False,
        default=lambda: str(uuid.uuid4()),
    )
    folder = db.Column(db.String(20), nullable=False, default="orders", index=True)

    payment_id = db.Column(db.String(255), nullable=False)
    payment_intent = db.Column(db.String(255), nullable=True, index=True)
    session_id = db.Column(db.String(255), unique=True, nullable=True)
    stripe_customer_id = db.Column(db.String(255), nullable=True)
    client_reference_id = db.Column(db.String(255), nullable=True)

    name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), nullable=False, index=True)
    phone = db.Column(db.String(64), nullable=False)

    currency = db.Column(db.String(3), nullable=False)
    amount_total = db.Column(db.Integer, nullable=False)           # minor units
    shipping_cost_cents = db.Column(db.Integer, nullable=False, default=0)

    items = db.Column(db.JSON, nullable=False, default=list)
    metadata_ = db.Column(
        "metadata", db.JSON, default=dict
    )  # named metadata_ to avoid the SQLAlchemy declarative clash
    status = db.Column(db.JSON, default=dict)       # shipment stages
    payment_status = db.Column(db.JSON, nullable=True)  # bool or Stripe string
    payment_type = db.Column(db.String(20), nullable=False, default="stripe")

    email_sent = db.Column(db.Boolean, default=False)
    stock_adjusted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    moved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    moved_from = db.Column(db.String(20), nullable=True)

    written_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # Keys of to_dict() that can be written back through apply_dict().
    WRITABLE_FIELDS = (
        "payment_id", "payment_intent", "stripe_customer_id",
        "client_reference_id", "name", "email", "phone", "currency",
        "amount_total", "shipping_cost_cents", "items", "metadata", "status",
        "payment_status", "payment_type", "email_sent",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "event_id": self.event_id,
            "folder": self.folder,
            "payment_id": self.payment_id,
            "payment_intent": self.payment_intent or "",
            "session_id": self.session_id or "",
            "stripe_customer_id": self.stripe_customer_id or "",
            "client_reference_id": self.client_reference_id or "",
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "currency": self.currency,
            "amount_total": self.amount_total,
            "shipping_cost_cents": self.shipping_cost_cents,
            "items": list(self.items or []),
            "metadata": dict(self.metadata_ or {}),
            "status": dict(self.status or {}),
            "payment_status": self.payment_status,
            "payment_type": self.payment_type,
            "email_sent": bool(self.email_sent),
            "written_at": _iso(self.written_at),
            "updatedAt": _iso(self.updated_at),
        }

    def apply_dict(self, data):
        """Write the writable keys of a to_dict()-shaped mapping onto the row.

        JSON columns are always reassigned (never mutated in place) so the
        change is tracked.
        """
        for key in self.WRITABLE_FIELDS:
            if key not in data:
                continue
            value = data[key]
            if key == "metadata":
                self.metadata_ = dict(value or {})
            elif key == "items":
                self.items = [dict(item) for item in (value or [])]
            elif key == "status":
                self.status = {k: dict(v) for k, v in (value or {}).items()}
            elif key in ("payment_intent", "stripe_customer_id", "client_reference_id"):
                setattr(self, key, value or None)
            else:
                setattr(self, key, value)

    def __repr__(self):
        return f"<Order {self.id} ({self.folder})>"
