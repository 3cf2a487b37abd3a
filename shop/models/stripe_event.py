"""Stripe event model (delivery log).

Every webhook event that reaches a handler is recorded by its Stripe event
ID together with the outcome. A redelivery of an event ID that is already
recorded is acknowledged with 200 without touching orders or stock.
Session-level idempotency (see idempotency.py) remains the authority;
this table only short-circuits exact redeliveries.
"""

import uuid

from shop.extensions import db


class StripeEvent(db.Model):
    __tablename__ = "stripe_events"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    stripe_event_id = db.Column(
        db.String(255), unique=True, nullable=False
    )  # e.g. "evt_1Abc..."
    event_type = db.Column(
        db.String(255), nullable=False
    )  # e.g. "checkout.session.completed"
    outcome = db.Column(
        db.String(50), nullable=False
    )  # created | resumed | duplicate | no_session | ignored
    order_id = db.Column(db.String(36), nullable=True)
    processed_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    def __repr__(self):
        return f"<StripeEvent {self.stripe_event_id} ({self.event_type})>"
