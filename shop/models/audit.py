"""Audit event model.

Logs order lifecycle actions (order created, stock adjusted, folder moves,
admin edits) for back-office reconciliation and debugging.
"""

import uuid

from shop.extensions import db


class AuditEvent(db.Model):
    __tablename__ = "audit_events"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    order_id = db.Column(db.String(36), nullable=True, index=True)
    actor = db.Column(db.String(50), nullable=False, default="system")  # system | admin | stripe
    action = db.Column(db.String(255), nullable=False)  # e.g. "order.created"
    metadata_ = db.Column(
        "metadata", db.JSON, default=dict
    )  # extra context, named metadata_ to avoid the declarative clash
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    def __repr__(self):
        return f"<AuditEvent {self.action}>"
