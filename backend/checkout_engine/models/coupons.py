from __future__ import annotations

from ..extensions import db
from checkout_engine.time_utils import to_utc_z


COUPON_PERCENTAGE = "PERCENTAGE"
COUPON_FIXED_AMOUNT = "FIXED_AMOUNT"


class Coupon(db.Model):
    """
    Promotional coupon.

    value: basis points for PERCENTAGE (2000 = 20%), cents for FIXED_AMOUNT.
    max_discount_cents caps PERCENTAGE discounts only.

    USAGE INVARIANT: 0 <= used_count <= max_uses. used_count is only
    incremented by a conditional UPDATE when an order is confirmed.
    """
    __tablename__ = "coupons"
    __table_args__ = (
        db.UniqueConstraint("code", name="uq_coupons_code"),
        db.CheckConstraint("used_count >= 0", name="ck_coupons_used_non_negative"),
        db.CheckConstraint("used_count <= max_uses", name="ck_coupons_used_within_max"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Upper-cased, trimmed
    code = db.Column(db.String(20), nullable=False)
    coupon_type = db.Column(db.String(16), nullable=False)
    value = db.Column(db.Integer, nullable=False)

    min_purchase_cents = db.Column(db.Integer, nullable=False, default=0)
    max_discount_cents = db.Column(db.Integer, nullable=True)

    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)

    max_uses = db.Column(db.Integer, nullable=False)
    used_count = db.Column(db.Integer, nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    description = db.Column(db.String(200), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "coupon_type": self.coupon_type,
            "value": self.value,
            "min_purchase_cents": self.min_purchase_cents,
            "max_discount_cents": self.max_discount_cents,
            "expires_at": to_utc_z(self.expires_at),
            "max_uses": self.max_uses,
            "used_count": self.used_count,
            "is_active": self.is_active,
            "description": self.description,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class CouponRedemption(db.Model):
    """
    One confirmed use of a coupon.

    reference is unique: the same order can never consume two uses.
    coupon_code is kept so history survives coupon deletion.
    """
    __tablename__ = "coupon_redemptions"
    __table_args__ = (
        db.UniqueConstraint("reference", name="uq_coupon_redemptions_reference"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    coupon_id = db.Column(db.Integer, db.ForeignKey("coupons.id", ondelete="SET NULL"), nullable=True, index=True)
    coupon_code = db.Column(db.String(20), nullable=False)
    reference = db.Column(db.String(128), nullable=False)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "coupon_id": self.coupon_id,
            "coupon_code": self.coupon_code,
            "reference": self.reference,
            "discount_cents": self.discount_cents,
            "created_at": to_utc_z(self.created_at),
        }
