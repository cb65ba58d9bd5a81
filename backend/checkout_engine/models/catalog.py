from __future__ import annotations

from ..extensions import db
from checkout_engine.time_utils import to_utc_z


class Product(db.Model):
    """
    Catalog product (boundary of the external catalog service).

    The engine only reads price_cents and is_active from here; catalog
    CRUD and images live outside this service.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("sku", name="uq_products_sku"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sku = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(255), nullable=False)

    # Authoritative storage in cents (frontend may only format for display)
    price_cents = db.Column(db.Integer, nullable=False)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sku": self.sku,
            "name": self.name,
            "price_cents": self.price_cents,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class StockVariant(db.Model):
    """
    Purchasable (product, size[, color, material]) combination.

    LEDGER INVARIANT:
    current_stock is a running counter cached from the StockMovement ledger.
    It is only ever written by the stock guard in the same transaction that
    appends the movement, and the ledger stays authoritative for reconciliation.

    version_id gives optimistic compare-and-commit on top of the row lock.
    """
    __tablename__ = "stock_variants"
    __table_args__ = (
        db.UniqueConstraint("product_id", "variant_key", name="uq_stock_variants_product_key"),
        db.CheckConstraint("current_stock >= 0", name="ck_stock_variants_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    size = db.Column(db.String(32), nullable=False)
    color = db.Column(db.String(64), nullable=True)
    material = db.Column(db.String(64), nullable=True)
    # Normalized "size/color/material", "-" for absent parts
    variant_key = db.Column(db.String(200), nullable=False)

    current_stock = db.Column(db.Integer, nullable=False, default=0)
    last_sequence = db.Column(db.Integer, nullable=False, default=0)

    # NULL threshold reads as the configured default (5)
    low_stock_threshold = db.Column(db.Integer, nullable=True)
    auto_restock_enabled = db.Column(db.Boolean, nullable=False, default=False)
    auto_restock_level = db.Column(db.Integer, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    product = db.relationship("Product", backref=db.backref("variants", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<StockVariant id={self.id} product_id={self.product_id} key={self.variant_key!r} stock={self.current_stock}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "size": self.size,
            "color": self.color,
            "material": self.material,
            "variant_key": self.variant_key,
            "current_stock": self.current_stock,
            "low_stock_threshold": self.low_stock_threshold,
            "auto_restock_enabled": self.auto_restock_enabled,
            "auto_restock_level": self.auto_restock_level,
            "version_id": self.version_id,
            "updated_at": to_utc_z(self.updated_at),
        }
