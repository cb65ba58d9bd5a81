from __future__ import annotations

from ..extensions import db
from checkout_engine.time_utils import to_utc_z


# Checkout attempt states
CHECKOUT_QUOTED = "QUOTED"
CHECKOUT_PAYMENT_PENDING = "PAYMENT_PENDING"
CHECKOUT_COMMITTING = "COMMITTING"
CHECKOUT_COMMITTED = "COMMITTED"
CHECKOUT_ABORTED = "ABORTED"

# Order statuses
ORDER_PENDING = "PENDING"
ORDER_PAID = "PAID"
ORDER_SHIPPED = "SHIPPED"
ORDER_DELIVERED = "DELIVERED"
ORDER_REFUNDED = "REFUNDED"

ORDER_STATUSES = (ORDER_PENDING, ORDER_PAID, ORDER_SHIPPED, ORDER_DELIVERED, ORDER_REFUNDED)


class Checkout(db.Model):
    """
    One checkout attempt, from quote to committed order (or abort).

    LIFECYCLE:
    QUOTED -> PAYMENT_PENDING -> COMMITTING -> COMMITTED
    any state before COMMITTED -> ABORTED

    items is the priced snapshot taken at quote time:
    [{product_id, variant_id, variant_key, quantity, unit_price_cents, line_total_cents}]

    Nothing here reserves stock; reservation happens only while COMMITTING.
    """
    __tablename__ = "checkouts"
    __table_args__ = (
        db.UniqueConstraint("quote_token", name="uq_checkouts_quote_token"),
        db.UniqueConstraint("payment_reference", name="uq_checkouts_payment_reference"),
        db.Index("ix_checkouts_state_reconciliation", "state", "needs_reconciliation"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    quote_token = db.Column(db.String(64), nullable=False)
    state = db.Column(db.String(16), nullable=False, default=CHECKOUT_QUOTED, index=True)

    items = db.Column(db.JSON, nullable=False)
    subtotal_cents = db.Column(db.Integer, nullable=False)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False)
    coupon_code = db.Column(db.String(20), nullable=True)

    email = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(32), nullable=True)
    shipping_address = db.Column(db.JSON, nullable=True)

    payment_reference = db.Column(db.String(128), nullable=True)

    # Abort bookkeeping: charged-but-unfulfilled attempts need an operator
    failure_code = db.Column(db.String(64), nullable=True)
    failure_message = db.Column(db.String(255), nullable=True)
    needs_reconciliation = db.Column(db.Boolean, nullable=False, default=False)

    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True)

    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "quote_token": self.quote_token,
            "state": self.state,
            "items": self.items,
            "subtotal_cents": self.subtotal_cents,
            "discount_cents": self.discount_cents,
            "total_cents": self.total_cents,
            "currency": self.currency,
            "coupon_code": self.coupon_code,
            "payment_reference": self.payment_reference,
            "failure_code": self.failure_code,
            "failure_message": self.failure_message,
            "needs_reconciliation": self.needs_reconciliation,
            "expires_at": to_utc_z(self.expires_at),
            "created_at": to_utc_z(self.created_at),
        }


class Order(db.Model):
    """
    Confirmed order. Created exactly once per payment_reference.

    order_number is the public identifier used by the order tracker;
    it is not sequential so ids cannot be enumerated.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.UniqueConstraint("order_number", name="uq_orders_order_number"),
        db.UniqueConstraint("payment_reference", name="uq_orders_payment_reference"),
        db.Index("ix_orders_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(32), nullable=False)
    checkout_id = db.Column(db.Integer, nullable=True)

    status = db.Column(db.String(16), nullable=False, default=ORDER_PENDING, index=True)

    subtotal_cents = db.Column(db.Integer, nullable=False)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False)
    coupon_code = db.Column(db.String(20), nullable=True)

    payment_reference = db.Column(db.String(128), nullable=False)

    email = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(32), nullable=True)
    shipping_address = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    shipped_at = db.Column(db.DateTime(timezone=True), nullable=True)
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    refunded_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    items = db.relationship(
        "OrderItem",
        backref="order",
        lazy="selectin",
        order_by="OrderItem.id",
        cascade="all, delete-orphan",
    )
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self, include_contact: bool = True) -> dict:
        data = {
            "order_number": self.order_number,
            "status": self.status,
            "items": [item.to_dict() for item in self.items],
            "subtotal_cents": self.subtotal_cents,
            "discount_cents": self.discount_cents,
            "total_cents": self.total_cents,
            "currency": self.currency,
            "coupon_code": self.coupon_code,
            "payment_reference": self.payment_reference,
            "created_at": to_utc_z(self.created_at),
            "paid_at": to_utc_z(self.paid_at),
            "shipped_at": to_utc_z(self.shipped_at),
            "delivered_at": to_utc_z(self.delivered_at),
            "refunded_at": to_utc_z(self.refunded_at),
        }
        if include_contact:
            data["email"] = self.email
            data["phone"] = self.phone
            data["shipping_address"] = self.shipping_address
        return data


class OrderItem(db.Model):
    __tablename__ = "order_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    variant_id = db.Column(db.Integer, db.ForeignKey("stock_variants.id"), nullable=False)
    variant_key = db.Column(db.String(200), nullable=False)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    line_total_cents = db.Column(db.Integer, nullable=False)

    # The SALE movement that took this line out of stock
    stock_movement_id = db.Column(db.Integer, db.ForeignKey("stock_movements.id"), nullable=True)

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "variant_key": self.variant_key,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "line_total_cents": self.line_total_cents,
            "stock_movement_id": self.stock_movement_id,
        }
