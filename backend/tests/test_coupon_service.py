"""
Coupon engine tests.

Verifies:
- Validation order (first failure wins)
- Discount math in cents / basis points
- Conditional usage commit, idempotent per reference
- Admin CRUD rules
"""

from datetime import timedelta

import pytest

from checkout_engine.extensions import db
from checkout_engine.models import Coupon, CouponRedemption
from checkout_engine.errors import (
    CouponNotFoundError,
    CouponExpiredError,
    CouponExhaustedError,
    CouponMinimumNotMetError,
)
from checkout_engine.validation import ValidationError, ConflictError
from checkout_engine.services import coupon_service
from checkout_engine.time_utils import utcnow

from conftest import make_coupon


# =============================================================================
# DISCOUNT MATH
# =============================================================================


class TestDiscount:
    def test_percentage_is_capped(self, db_session):
        make_coupon(code="CAP20", coupon_type="PERCENTAGE", value=2000, max_discount_cents=50)
        result = coupon_service.validate_coupon("CAP20", 1000)
        assert result.discount_cents == 50
        assert result.new_total_cents == 950

    def test_fixed_amount_clamped_to_cart_total(self, db_session):
        make_coupon(code="FIXED30", coupon_type="FIXED_AMOUNT", value=30)
        result = coupon_service.validate_coupon("FIXED30", 20)
        assert result.discount_cents == 20
        assert result.new_total_cents == 0

    def test_percentage_rounds_half_up_to_the_cent(self, db_session):
        make_coupon(code="FIFTEEN", value=1500)
        # 15% of 3.33 = 0.4995
        assert coupon_service.validate_coupon("FIFTEEN", 333).discount_cents == 50

    def test_full_percentage_never_goes_negative(self, db_session):
        make_coupon(code="FREE", value=10000)
        result = coupon_service.validate_coupon("FREE", 1999)
        assert result.discount_cents == 1999
        assert result.new_total_cents == 0

    def test_code_is_case_insensitive(self, coupon):
        result = coupon_service.validate_coupon("  save20 ", 10000)
        assert result.code == "SAVE20"
        assert result.discount_cents == 2000


# =============================================================================
# VALIDATION ORDER
# =============================================================================


class TestValidationOrder:
    def test_unknown_code(self, db_session):
        with pytest.raises(CouponNotFoundError):
            coupon_service.validate_coupon("NOPE", 1000)

    def test_inactive_reads_as_not_found(self, db_session):
        make_coupon(code="OFF", is_active=False, expires_at=utcnow() - timedelta(days=1))
        with pytest.raises(CouponNotFoundError):
            coupon_service.validate_coupon("OFF", 1000)

    def test_expired_wins_over_exhausted(self, db_session):
        make_coupon(code="OLD", expires_at=utcnow() - timedelta(seconds=1), max_uses=1, used_count=1)
        with pytest.raises(CouponExpiredError):
            coupon_service.validate_coupon("OLD", 1000)

    def test_exhausted_wins_over_minimum(self, db_session):
        make_coupon(code="GONE", max_uses=2, used_count=2, min_purchase_cents=5000)
        with pytest.raises(CouponExhaustedError):
            coupon_service.validate_coupon("GONE", 1000)

    def test_minimum_not_met(self, db_session):
        make_coupon(code="BIG", min_purchase_cents=5000)
        with pytest.raises(CouponMinimumNotMetError) as exc:
            coupon_service.validate_coupon("BIG", 4999)
        assert exc.value.details["min_purchase_cents"] == 5000
        assert coupon_service.validate_coupon("BIG", 5000).discount_cents == 1000

    def test_validate_never_consumes_a_use(self, coupon):
        for _ in range(3):
            coupon_service.validate_coupon("SAVE20", 1000)
        db.session.refresh(coupon)
        assert coupon.used_count == 0


# =============================================================================
# USAGE COMMIT
# =============================================================================


class TestCommitUsage:
    def test_increments_and_records_redemption(self, coupon):
        redemption = coupon_service.commit_usage("save20", "pay_1", discount_cents=500)

        assert redemption.coupon_code == "SAVE20"
        assert redemption.discount_cents == 500
        assert db.session.get(Coupon, coupon.id).used_count == 1

    def test_same_reference_consumes_once(self, coupon):
        first = coupon_service.commit_usage("SAVE20", "pay_1")
        second = coupon_service.commit_usage("SAVE20", "pay_1")

        assert first.id == second.id
        assert db.session.get(Coupon, coupon.id).used_count == 1

    def test_last_use_then_exhausted(self, db_session):
        coupon = make_coupon(code="ONCE", max_uses=1)
        coupon_service.commit_usage("ONCE", "pay_1")

        with pytest.raises(CouponExhaustedError):
            coupon_service.commit_usage("ONCE", "pay_2")

        assert db.session.get(Coupon, coupon.id).used_count == 1
        assert db.session.query(CouponRedemption).count() == 1

    def test_expiry_judged_at_quote_time(self, db_session):
        quoted_at = utcnow() - timedelta(hours=1)
        make_coupon(code="LATE", expires_at=utcnow() - timedelta(minutes=1))

        with pytest.raises(CouponExpiredError):
            coupon_service.commit_usage("LATE", "pay_1")

        redemption = coupon_service.commit_usage("LATE", "pay_1", as_of=quoted_at)
        assert redemption.reference == "pay_1"

    def test_deactivated_coupon_fails_at_commit(self, coupon):
        coupon_service.update_coupon(coupon.id, {"is_active": False})
        with pytest.raises(CouponNotFoundError):
            coupon_service.commit_usage("SAVE20", "pay_1")


# =============================================================================
# ADMIN CRUD
# =============================================================================


def _payload(**overrides):
    data = {
        "code": "spring10",
        "coupon_type": "percentage",
        "value": 1000,
        "expires_at": "2099-01-01T00:00:00Z",
        "max_uses": 50,
    }
    data.update(overrides)
    return data


class TestCrud:
    def test_create_normalizes(self, db_session):
        coupon = coupon_service.create_coupon(_payload())
        assert coupon.code == "SPRING10"
        assert coupon.coupon_type == "PERCENTAGE"
        assert coupon.used_count == 0
        assert coupon.min_purchase_cents == 0

    def test_duplicate_code_conflicts(self, db_session):
        coupon_service.create_coupon(_payload())
        with pytest.raises(ConflictError):
            coupon_service.create_coupon(_payload(code="Spring10"))

    @pytest.mark.parametrize(
        "overrides",
        [
            {"value": 10001},
            {"value": 0},
            {"code": "AB"},
            {"code": "X" * 21},
            {"coupon_type": "BOGO"},
            {"max_uses": 0},
            {"coupon_type": "FIXED_AMOUNT", "value": 500, "max_discount_cents": 100},
            {"value": 10.5},
            {"unknown": 1},
        ],
    )
    def test_create_rejects_invalid(self, db_session, overrides):
        with pytest.raises(ValidationError):
            coupon_service.create_coupon(_payload(**overrides))

    def test_create_requires_fields(self, db_session):
        with pytest.raises(ValidationError):
            coupon_service.create_coupon({"code": "ONLYCODE"})

    def test_max_uses_cannot_drop_below_used_count(self, db_session):
        coupon = make_coupon(code="USED", max_uses=5, used_count=3)
        with pytest.raises(ValidationError):
            coupon_service.update_coupon(coupon.id, {"max_uses": 2})

        updated = coupon_service.update_coupon(coupon.id, {"max_uses": 3, "description": "last batch"})
        assert updated.max_uses == 3
        assert updated.description == "last batch"

    def test_used_count_is_not_writable(self, coupon):
        with pytest.raises(ValidationError):
            coupon_service.update_coupon(coupon.id, {"used_count": 0})

    def test_delete_keeps_redemption_history(self, coupon):
        coupon_service.commit_usage("SAVE20", "pay_1")
        coupon_service.delete_coupon(coupon.id)

        assert db.session.query(Coupon).count() == 0
        redemption = db.session.query(CouponRedemption).one()
        assert redemption.coupon_id is None
        assert redemption.coupon_code == "SAVE20"

    def test_stats(self, db_session):
        make_coupon(code="LIVE", used_count=4)
        make_coupon(code="DEAD", expires_at=utcnow() - timedelta(days=1), used_count=2)
        make_coupon(code="PAUSED", is_active=False)

        stats = coupon_service.get_coupon_stats()
        assert stats == {"total": 3, "active": 1, "expired": 1, "total_usage": 6}
