# Overview: Service-layer operations for coupons; validation, discount math, usage commits and admin CRUD.

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Coupon, CouponRedemption
from ..models.coupons import COUPON_PERCENTAGE
from ..errors import (
    CouponNotFoundError,
    CouponExpiredError,
    CouponExhaustedError,
    CouponMinimumNotMetError,
)
from ..validation import (
    ModelValidationPolicy,
    validate_payload,
    enforce_rules_coupon,
    ValidationError,
    ConflictError,
    MAX_PERCENTAGE_BPS,
)
from ..time_utils import utcnow
from .audit_service import append_audit_event
from .concurrency import begin_write, lock_for_update, run_with_retry, RETRYABLE_ERRORS
"""
Coupon Engine Invariants (authoritative)

Validation order (first failure wins):
1. code exists and is_active          -> CouponNotFoundError
2. now < expires_at                   -> CouponExpiredError
3. used_count < max_uses              -> CouponExhaustedError
4. cart_total >= min_purchase_cents   -> CouponMinimumNotMetError

Discount:
- PERCENTAGE: cart_total * value / 10000 (basis points), half-up to the cent,
  capped at max_discount_cents when set.
- FIXED_AMOUNT: value.
- Never more than the cart total; new total never negative.

Usage:
- validate_coupon() never writes.
- commit_usage() increments used_count with a single conditional UPDATE
  (is_active AND used_count < max_uses). Of N racers for the last use,
  exactly one wins; the rest get CouponExhaustedError.
- Each confirmed use writes one CouponRedemption with a unique reference,
  so the same order can never consume two uses.
"""

logger = logging.getLogger(__name__)


COUPON_POLICY = ModelValidationPolicy(
    writable_fields={
        "code",
        "coupon_type",
        "value",
        "min_purchase_cents",
        "max_discount_cents",
        "expires_at",
        "max_uses",
        "is_active",
        "description",
    },
    required_on_create={"code", "coupon_type", "value", "expires_at", "max_uses"},
)


@dataclass(frozen=True)
class CouponQuote:
    code: str
    cart_total_cents: int
    discount_cents: int
    new_total_cents: int

    def to_dict(self) -> dict:
        return {
            "valid": True,
            "code": self.code,
            "cart_total_cents": self.cart_total_cents,
            "discount_cents": self.discount_cents,
            "new_total_cents": self.new_total_cents,
        }


def normalize_code(code: str | None) -> str:
    return (code or "").strip().upper()


def _find_active(code: str) -> Coupon:
    coupon = db.session.query(Coupon).filter_by(code=code).populate_existing().first()
    if coupon is None or not coupon.is_active:
        raise CouponNotFoundError("Invalid coupon code", details={"code": code})
    return coupon


def calculate_discount_cents(coupon: Coupon, cart_total_cents: int) -> int:
    if coupon.coupon_type == COUPON_PERCENTAGE:
        # half-up to the cent
        discount = (cart_total_cents * coupon.value + MAX_PERCENTAGE_BPS // 2) // MAX_PERCENTAGE_BPS
        if coupon.max_discount_cents is not None and discount > coupon.max_discount_cents:
            discount = coupon.max_discount_cents
    else:
        discount = coupon.value
    return max(0, min(discount, cart_total_cents))


def _check_usable(coupon: Coupon, *, now: datetime) -> None:
    if now >= coupon.expires_at:
        raise CouponExpiredError("This coupon has expired", details={"code": coupon.code})
    if coupon.used_count >= coupon.max_uses:
        raise CouponExhaustedError("This coupon has reached its usage limit", details={"code": coupon.code})


def validate_coupon(code: str, cart_total_cents: int, *, now: datetime | None = None) -> CouponQuote:
    """
    Check a coupon against a cart total and price the discount. Read-only.

    Raises the first failing check in order: not found, expired, exhausted,
    minimum not met.
    """
    if not isinstance(cart_total_cents, int) or isinstance(cart_total_cents, bool) or cart_total_cents < 0:
        raise ValidationError("cart_total_cents must be a non-negative integer")

    normalized = normalize_code(code)
    if not normalized:
        raise ValidationError("Coupon code is required")

    coupon = _find_active(normalized)
    _check_usable(coupon, now=now or utcnow())

    if cart_total_cents < coupon.min_purchase_cents:
        raise CouponMinimumNotMetError(
            f"Minimum purchase of {coupon.min_purchase_cents} cents required",
            details={"code": coupon.code, "min_purchase_cents": coupon.min_purchase_cents},
        )

    discount = calculate_discount_cents(coupon, cart_total_cents)
    return CouponQuote(
        code=coupon.code,
        cart_total_cents=cart_total_cents,
        discount_cents=discount,
        new_total_cents=max(0, cart_total_cents - discount),
    )


def commit_usage(
    code: str,
    reference: str,
    *,
    discount_cents: int = 0,
    as_of: datetime | None = None,
    actor: str | None = None,
) -> CouponRedemption:
    """
    Consume one use of a coupon for a confirmed order.

    reference identifies the order (payment reference); calling again with
    the same reference returns the earlier redemption without a second use.

    as_of: business time the coupon was priced at (the quote). A coupon that
    was valid then is honored even if it expired while the customer paid.
    Deactivation or deletion in between is not honored.
    """
    normalized = normalize_code(code)
    if not reference:
        raise ValidationError("reference is required")

    def _op():
        begin_write()

        existing = db.session.query(CouponRedemption).filter_by(reference=reference).first()
        if existing is not None:
            if existing.coupon_code != normalized:
                raise ConflictError(
                    "reference already redeemed a different coupon",
                    details={"reference": reference, "coupon_code": existing.coupon_code},
                )
            db.session.commit()
            return existing

        coupon = _find_active(normalized)
        if (as_of or utcnow()) >= coupon.expires_at:
            raise CouponExpiredError("This coupon has expired", details={"code": coupon.code})

        result = db.session.execute(
            update(Coupon)
            .where(
                Coupon.id == coupon.id,
                Coupon.is_active.is_(True),
                Coupon.used_count < Coupon.max_uses,
            )
            .values(used_count=Coupon.used_count + 1, version_id=Coupon.version_id + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise CouponExhaustedError(
                "This coupon has reached its usage limit",
                details={"code": coupon.code},
            )

        redemption = CouponRedemption(
            coupon_id=coupon.id,
            coupon_code=coupon.code,
            reference=reference,
            discount_cents=discount_cents,
        )
        db.session.add(redemption)
        append_audit_event(
            event_type="coupon.redeemed",
            entity_type="coupon",
            entity_id=coupon.id,
            actor=actor,
            payload={"code": coupon.code, "reference": reference, "discount_cents": discount_cents},
        )
        db.session.commit()

        logger.info("Coupon %s redeemed for %s", normalized, reference)
        return redemption

    config = current_app.config
    return run_with_retry(
        _op,
        attempts=config.get("COUPON_COMMIT_ATTEMPTS", 5),
        backoff_base=config.get("RETRY_BACKOFF_SECONDS", 0.05),
        # a concurrent insert of the same reference is found by the next attempt
        retry_on=RETRYABLE_ERRORS + (IntegrityError,),
        label=f"coupon usage commit for {normalized}",
    )


# =============================================================================
# ADMIN CRUD
# =============================================================================

def get_coupon(coupon_id: int) -> Coupon:
    coupon = db.session.get(Coupon, coupon_id)
    if coupon is None:
        raise CouponNotFoundError(f"Coupon {coupon_id} not found")
    return coupon


def list_coupons(*, active_only: bool = False) -> list[Coupon]:
    q = db.session.query(Coupon)
    if active_only:
        q = q.filter(Coupon.is_active.is_(True))
    return q.order_by(Coupon.created_at.desc(), Coupon.id.desc()).all()


def create_coupon(payload: dict) -> Coupon:
    patch = validate_payload(model=Coupon, payload=payload, policy=COUPON_POLICY, partial=False)
    enforce_rules_coupon(patch)

    if db.session.query(Coupon).filter_by(code=patch["code"]).first():
        raise ConflictError("Coupon code already exists", details={"code": patch["code"]})

    coupon = Coupon(used_count=0, **patch)
    db.session.add(coupon)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("Coupon code already exists", details={"code": patch["code"]})
    return coupon


def update_coupon(coupon_id: int, payload: dict) -> Coupon:
    patch = validate_payload(model=Coupon, payload=payload, policy=COUPON_POLICY, partial=True)

    def _op():
        begin_write()
        coupon = lock_for_update(db.session.query(Coupon).filter_by(id=coupon_id)).first()
        if coupon is None:
            raise CouponNotFoundError(f"Coupon {coupon_id} not found")

        enforce_rules_coupon(patch, current=coupon)
        if "code" in patch and patch["code"] != coupon.code:
            if db.session.query(Coupon).filter(Coupon.code == patch["code"], Coupon.id != coupon_id).first():
                raise ConflictError("Coupon code already exists", details={"code": patch["code"]})

        for key, value in patch.items():
            setattr(coupon, key, value)
        db.session.commit()
        return coupon

    return run_with_retry(_op, label=f"coupon update {coupon_id}")


def delete_coupon(coupon_id: int) -> None:
    def _op():
        begin_write()
        coupon = lock_for_update(db.session.query(Coupon).filter_by(id=coupon_id)).first()
        if coupon is None:
            raise CouponNotFoundError(f"Coupon {coupon_id} not found")
        # redemption history survives under coupon_code
        db.session.query(CouponRedemption).filter_by(coupon_id=coupon_id).update(
            {"coupon_id": None}, synchronize_session=False
        )
        db.session.delete(coupon)
        db.session.commit()

    run_with_retry(_op, label=f"coupon delete {coupon_id}")


def list_redemptions(*, coupon_code: str | None = None, limit: int = 200) -> list[CouponRedemption]:
    q = db.session.query(CouponRedemption)
    if coupon_code:
        q = q.filter(CouponRedemption.coupon_code == normalize_code(coupon_code))
    return q.order_by(CouponRedemption.id.desc()).limit(limit).all()


def get_coupon_stats(*, now: datetime | None = None) -> dict:
    now = now or utcnow()
    total = db.session.query(db.func.count(Coupon.id)).scalar() or 0
    active = (
        db.session.query(db.func.count(Coupon.id))
        .filter(Coupon.is_active.is_(True), Coupon.expires_at > now)
        .scalar()
        or 0
    )
    expired = db.session.query(db.func.count(Coupon.id)).filter(Coupon.expires_at <= now).scalar() or 0
    usage = db.session.query(db.func.coalesce(db.func.sum(Coupon.used_count), 0)).scalar() or 0
    return {
        "total": int(total),
        "active": int(active),
        "expired": int(expired),
        "total_usage": int(usage),
    }
