"""Stock ledger model.

One row per product: available quantity plus the catalog fields checkout
needs (title, unit price in cents). ``stock_value`` never goes negative; the CHECK
constraint backs up the conditional decrement in stock_service.
"""

from shop.extensions import db


class StockRecord(db.Model):
    __tablename__ = "stock_records"
    __table_args__ = (
        db.CheckConstraint("stock_value >= 0", name="ck_stock_records_non_negative"),
    )

    id = db.Column(db.Integer, primary_key=True, autoincrement=False)
    name = db.Column(db.String(255), nullable=False)
    stock_value = db.Column(db.Integer, nullable=False, default=0)
    price_cents = db.Column(db.Integer, nullable=False)  # unit price, minor units
    is_sample = db.Column(db.Boolean, default=False)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "stockValue": self.stock_value,
            "price": self.price_cents / 100,
            "priceCents": self.price_cents,
            "isSample": bool(self.is_sample),
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<StockRecord {self.id} ({self.stock_value})>"
