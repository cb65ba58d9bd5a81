from __future__ import annotations

from ..extensions import db
from checkout_engine.time_utils import to_utc_z


MOVEMENT_INBOUND = "INBOUND"
MOVEMENT_OUTBOUND = "OUTBOUND"
MOVEMENT_ADJUSTMENT = "ADJUSTMENT"
MOVEMENT_SALE = "SALE"
MOVEMENT_RETURN = "RETURN"

MOVEMENT_TYPES = (
    MOVEMENT_INBOUND,
    MOVEMENT_OUTBOUND,
    MOVEMENT_ADJUSTMENT,
    MOVEMENT_SALE,
    MOVEMENT_RETURN,
)


class StockMovement(db.Model):
    """
    Immutable, signed stock change for one variant.

    CHAIN INVARIANT (per variant, ordered by sequence):
    - new_stock = previous_stock + quantity
    - new_stock >= 0
    - previous_stock of movement n equals new_stock of movement n-1

    Rows are appended by the stock guard only; never updated or deleted.
    Rollbacks are recorded as equal-and-opposite ADJUSTMENT movements.
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.UniqueConstraint("variant_id", "sequence", name="uq_stock_movements_variant_sequence"),
        db.UniqueConstraint("idempotency_key", name="uq_stock_movements_idempotency_key"),
        db.CheckConstraint("new_stock >= 0", name="ck_stock_movements_non_negative"),
        db.Index("ix_stock_movements_product_created", "product_id", "created_at"),
        db.Index("ix_stock_movements_type_created", "type", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    variant_id = db.Column(db.Integer, db.ForeignKey("stock_variants.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    variant_key = db.Column(db.String(200), nullable=False)

    sequence = db.Column(db.Integer, nullable=False)
    type = db.Column(db.String(16), nullable=False)

    quantity = db.Column(db.Integer, nullable=False)
    previous_stock = db.Column(db.Integer, nullable=False)
    new_stock = db.Column(db.Integer, nullable=False)

    reason = db.Column(db.String(255), nullable=True)
    idempotency_key = db.Column(db.String(200), nullable=True)
    # Payment reference / order number this movement belongs to
    reference = db.Column(db.String(128), nullable=True, index=True)
    actor = db.Column(db.String(128), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    variant = db.relationship("StockVariant", backref=db.backref("movements", lazy="dynamic"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "variant_id": self.variant_id,
            "product_id": self.product_id,
            "variant_key": self.variant_key,
            "sequence": self.sequence,
            "type": self.type,
            "quantity": self.quantity,
            "previous_stock": self.previous_stock,
            "new_stock": self.new_stock,
            "reason": self.reason,
            "idempotency_key": self.idempotency_key,
            "reference": self.reference,
            "actor": self.actor,
            "created_at": to_utc_z(self.created_at),
        }
