"""
Checkout orchestrator tests.

Verifies:
- Quotes price from the catalog and never reserve stock or consume coupons
- Payment must be confirmed for exactly the quoted amount
- Commit is idempotent per payment_reference
- Partial failures are compensated on the append-only ledger and flagged
"""

from datetime import timedelta

import pytest

from checkout_engine.extensions import db
from checkout_engine.models import Checkout, Coupon, Order, StockMovement, AuditEvent
from checkout_engine.errors import (
    InsufficientStockError,
    VariantNotFoundError,
    QuoteNotFoundError,
    QuoteExpiredError,
    PaymentMismatchError,
    StockUnavailableError,
    CouponExhaustedError,
    CouponNotFoundError,
    ConcurrencyConflictError,
)
from checkout_engine.validation import ValidationError, ConflictError
from checkout_engine.services import catalog_service, checkout_service, coupon_service, stock_service
from checkout_engine.services.payment_gateway import PaymentConfirmation
from checkout_engine.time_utils import utcnow

from conftest import make_coupon


def _movements(variant_id):
    return (
        db.session.query(StockMovement)
        .filter_by(variant_id=variant_id)
        .order_by(StockMovement.sequence)
        .all()
    )


# =============================================================================
# QUOTE
# =============================================================================


class TestQuote:
    def test_prices_cart_without_side_effects(self, variant_m, variant_l, coupon):
        checkout = checkout_service.quote(
            [{"variant_id": variant_m.id, "quantity": 2}, {"variant_id": variant_l.id, "quantity": 1}],
            coupon_code="save20",
        )

        assert checkout.state == "QUOTED"
        assert checkout.subtotal_cents == 7500
        assert checkout.discount_cents == 1500
        assert checkout.total_cents == 6000
        assert checkout.coupon_code == "SAVE20"
        assert checkout.currency == "EUR"
        assert len(checkout.quote_token) >= 32
        assert checkout.expires_at > utcnow()

        assert stock_service.get_current_stock(variant_m.id) == 10
        assert db.session.get(Coupon, coupon.id).used_count == 0

    def test_merges_duplicate_lines_and_resolves_by_size(self, product, variant_m):
        checkout = checkout_service.quote([
            {"variant_id": variant_m.id, "quantity": 1},
            {"product_id": product.id, "size": "m", "color": "BLACK", "quantity": 2},
        ])
        assert len(checkout.items) == 1
        assert checkout.items[0]["quantity"] == 3
        assert checkout.items[0]["unit_price_cents"] == 2500

    def test_stock_is_checked_up_front(self, variant_l):
        with pytest.raises(InsufficientStockError):
            checkout_service.quote([{"variant_id": variant_l.id, "quantity": 4}])
        assert db.session.query(Checkout).count() == 0

    def test_unknown_size(self, product, variant_m):
        with pytest.raises(VariantNotFoundError):
            checkout_service.quote([{"product_id": product.id, "size": "XXL", "quantity": 1}])

    def test_inactive_product_cannot_be_quoted(self, product, variant_m):
        product.is_active = False
        db.session.commit()
        with pytest.raises(VariantNotFoundError):
            checkout_service.quote([{"variant_id": variant_m.id, "quantity": 1}])

    @pytest.mark.parametrize("items", [
        [], None, [{"variant_id": 1}], [{"variant_id": 1, "quantity": 0}], [{"quantity": 1}],
        [{"variant_id": "abc", "quantity": 1}],
        [{"product_id": "x1", "size": "M", "quantity": 1}],
    ])
    def test_rejects_malformed_items(self, variant_m, items):
        with pytest.raises(ValidationError):
            checkout_service.quote(items)

    def test_invalid_coupon_fails_the_quote(self, variant_m):
        with pytest.raises(CouponNotFoundError):
            checkout_service.quote([{"variant_id": variant_m.id, "quantity": 1}], coupon_code="NOPE")

    def test_unknown_token(self, db_session):
        with pytest.raises(QuoteNotFoundError):
            checkout_service.get_checkout("missing")


# =============================================================================
# PAYMENT REQUEST
# =============================================================================


class TestRequestPayment:
    def test_binds_payment_to_quote(self, variant_m, gateway):
        checkout = checkout_service.quote(
            [{"variant_id": variant_m.id, "quantity": 2}],
            customer={"email": "Shopper@Example.com"},
        )
        checkout, payment = checkout_service.request_payment(checkout.quote_token)

        assert checkout.state == "PAYMENT_PENDING"
        assert checkout.payment_reference == payment.reference
        assert checkout.email == "shopper@example.com"
        assert payment.amount_cents == 5000
        assert payment.currency == "EUR"
        assert payment.quote_token == checkout.quote_token
        assert payment.status == "PENDING"

    def test_repeat_returns_same_payment(self, variant_m):
        checkout = checkout_service.quote([{"variant_id": variant_m.id, "quantity": 1}], customer={"email": "a@b.co"})
        _, first = checkout_service.request_payment(checkout.quote_token)
        _, second = checkout_service.request_payment(checkout.quote_token)
        assert first.reference == second.reference

    def test_requires_contact_email(self, variant_m):
        checkout = checkout_service.quote([{"variant_id": variant_m.id, "quantity": 1}])
        with pytest.raises(ValidationError):
            checkout_service.request_payment(checkout.quote_token)

        checkout, _ = checkout_service.request_payment(checkout.quote_token, customer={"email": "late@example.com"})
        assert checkout.email == "late@example.com"

    def test_expired_quote(self, variant_m):
        checkout = checkout_service.quote([{"variant_id": variant_m.id, "quantity": 1}], customer={"email": "a@b.co"})
        with pytest.raises(QuoteExpiredError):
            checkout_service.request_payment(checkout.quote_token, now=utcnow() + timedelta(hours=1))

        assert checkout_service.get_checkout(checkout.quote_token).state == "ABORTED"
        with pytest.raises(ConflictError):
            checkout_service.request_payment(checkout.quote_token)

    def test_commit_on_expired_quote_reports_expiry(self, variant_m):
        checkout = checkout_service.quote([{"variant_id": variant_m.id, "quantity": 1}], customer={"email": "a@b.co"})
        with pytest.raises(QuoteExpiredError):
            checkout_service.request_payment(checkout.quote_token, now=utcnow() + timedelta(hours=1))

        with pytest.raises(QuoteExpiredError) as exc:
            checkout_service.commit("sim_late", checkout.quote_token)
        assert exc.value.status_code == 410
        assert stock_service.get_current_stock(variant_m.id) == 10


# =============================================================================
# COMMIT
# =============================================================================


class TestCommit:
    def test_happy_path(self, variant_m, variant_l, coupon, pay_for):
        checkout, payment = pay_for(
            [{"variant_id": variant_m.id, "quantity": 2}, {"variant_id": variant_l.id, "quantity": 3}],
            coupon_code="SAVE20",
        )

        order = checkout_service.commit(payment.reference, checkout.quote_token)

        assert order.status == "PAID"
        assert order.order_number.startswith("ORD-")
        assert order.total_cents == 10000
        assert order.discount_cents == 2500
        assert order.coupon_code == "SAVE20"
        assert order.paid_at is not None
        assert {(i.variant_id, i.quantity) for i in order.items} == {(variant_m.id, 2), (variant_l.id, 3)}
        assert all(i.stock_movement_id for i in order.items)

        assert stock_service.get_current_stock(variant_m.id) == 8
        assert stock_service.get_current_stock(variant_l.id) == 0
        sale = _movements(variant_m.id)[-1]
        assert sale.type == "SALE"
        assert sale.idempotency_key == f"{payment.reference}:{variant_m.id}"
        assert sale.reference == payment.reference

        assert db.session.get(Coupon, coupon.id).used_count == 1
        assert checkout_service.get_checkout(checkout.quote_token).state == "COMMITTED"
        assert db.session.query(AuditEvent).filter_by(event_type="order.created").count() == 1

    def test_replay_returns_same_order_with_one_set_of_movements(self, variant_m, coupon, pay_for):
        checkout, payment = pay_for([{"variant_id": variant_m.id, "quantity": 2}], coupon_code="SAVE20")

        first = checkout_service.commit(payment.reference, checkout.quote_token)
        second = checkout_service.commit(payment.reference, checkout.quote_token)

        assert first.id == second.id
        assert db.session.query(Order).count() == 1
        assert db.session.query(StockMovement).filter_by(type="SALE").count() == 1
        assert stock_service.get_current_stock(variant_m.id) == 8
        assert db.session.get(Coupon, coupon.id).used_count == 1

    def test_unconfirmed_payment_is_rejected(self, variant_m, pay_for):
        checkout, payment = pay_for([{"variant_id": variant_m.id, "quantity": 1}], confirm=False)

        with pytest.raises(PaymentMismatchError):
            checkout_service.commit(payment.reference, checkout.quote_token)

        assert stock_service.get_current_stock(variant_m.id) == 10
        assert db.session.query(Order).count() == 0

    def test_failed_payment_is_rejected(self, variant_m, pay_for, gateway):
        checkout, payment = pay_for([{"variant_id": variant_m.id, "quantity": 1}], confirm=False)
        gateway.fail(payment.reference)
        with pytest.raises(PaymentMismatchError):
            checkout_service.commit(payment.reference, checkout.quote_token)

    def test_unknown_payment_reference(self, variant_m, pay_for):
        checkout, _ = pay_for([{"variant_id": variant_m.id, "quantity": 1}])
        with pytest.raises(PaymentMismatchError):
            checkout_service.commit("sim_forged", checkout.quote_token)

    def test_payment_for_a_different_amount(self, variant_m, gateway):
        checkout = checkout_service.quote([{"variant_id": variant_m.id, "quantity": 2}], customer={"email": "a@b.co"})
        gateway.register(PaymentConfirmation(
            reference="sim_cheap",
            status="CONFIRMED",
            amount_cents=100,
            currency="EUR",
            quote_token=checkout.quote_token,
        ))

        with pytest.raises(PaymentMismatchError) as exc:
            checkout_service.commit("sim_cheap", checkout.quote_token)
        assert "quoted 5000" in exc.value.details["reason"]
        assert stock_service.get_current_stock(variant_m.id) == 10

    def test_payment_reused_for_another_quote(self, variant_m, pay_for):
        checkout_a, payment_a = pay_for([{"variant_id": variant_m.id, "quantity": 1}])
        checkout_b, _ = pay_for([{"variant_id": variant_m.id, "quantity": 1}])
        checkout_service.commit(payment_a.reference, checkout_a.quote_token)

        with pytest.raises(PaymentMismatchError):
            checkout_service.commit(payment_a.reference, checkout_b.quote_token)

    def test_sold_out_after_payment_is_compensated_and_flagged(self, variant_m, variant_l, pay_for):
        checkout, payment = pay_for(
            [{"variant_id": variant_m.id, "quantity": 2}, {"variant_id": variant_l.id, "quantity": 3}]
        )
        # someone else takes one L between payment and commit
        stock_service.reserve_and_commit(variant_id=variant_l.id, quantity=-1, movement_type="OUTBOUND")

        with pytest.raises(StockUnavailableError) as exc:
            checkout_service.commit(payment.reference, checkout.quote_token)
        assert exc.value.details["variant_id"] == variant_l.id

        m_moves = _movements(variant_m.id)
        assert [m.type for m in m_moves] == ["INBOUND", "SALE", "ADJUSTMENT"]
        assert m_moves[1].quantity + m_moves[2].quantity == 0
        assert m_moves[2].idempotency_key == f"{payment.reference}:{variant_m.id}:compensation"
        assert stock_service.get_current_stock(variant_m.id) == 10
        assert stock_service.verify_ledger(variant_m.id).ok

        assert db.session.query(Order).count() == 0
        aborted = checkout_service.get_checkout(checkout.quote_token)
        assert aborted.state == "ABORTED"
        assert aborted.failure_code == "stock_unavailable"
        assert aborted.needs_reconciliation is True
        assert [c.id for c in checkout_service.list_unresolved_checkouts()] == [aborted.id]

    def test_commit_after_abort_replays_failure_without_touching_stock(self, variant_l, pay_for):
        checkout, payment = pay_for([{"variant_id": variant_l.id, "quantity": 3}])
        stock_service.reserve_and_commit(variant_id=variant_l.id, quantity=-1, movement_type="OUTBOUND")
        with pytest.raises(StockUnavailableError):
            checkout_service.commit(payment.reference, checkout.quote_token)
        count = db.session.query(StockMovement).count()

        with pytest.raises(StockUnavailableError):
            checkout_service.commit(payment.reference, checkout.quote_token)
        assert db.session.query(StockMovement).count() == count

    def test_coupon_lost_race_compensates_stock(self, variant_m, pay_for):
        make_coupon(code="LASTONE", max_uses=1)
        checkout, payment = pay_for([{"variant_id": variant_m.id, "quantity": 2}], coupon_code="LASTONE")
        # another order takes the last use first
        coupon_service.commit_usage("LASTONE", "pay_other")

        with pytest.raises(CouponExhaustedError):
            checkout_service.commit(payment.reference, checkout.quote_token)

        sale_and_comp = [m.quantity for m in _movements(variant_m.id)[1:]]
        assert sale_and_comp == [-2, 2]
        assert stock_service.get_current_stock(variant_m.id) == 10
        assert db.session.query(Order).count() == 0
        aborted = checkout_service.get_checkout(checkout.quote_token)
        assert aborted.failure_code == "coupon_exhausted"
        assert aborted.needs_reconciliation is True

    def test_coupon_deactivated_mid_checkout(self, variant_m, coupon, pay_for):
        checkout, payment = pay_for([{"variant_id": variant_m.id, "quantity": 1}], coupon_code="SAVE20")
        coupon_service.update_coupon(coupon.id, {"is_active": False})

        with pytest.raises(CouponNotFoundError):
            checkout_service.commit(payment.reference, checkout.quote_token)
        assert stock_service.get_current_stock(variant_m.id) == 10

    def test_coupon_expiring_during_payment_is_honored(self, variant_m, pay_for):
        coupon = make_coupon(code="SOON", expires_at=utcnow() + timedelta(minutes=5))
        checkout, payment = pay_for([{"variant_id": variant_m.id, "quantity": 1}], coupon_code="SOON")
        # quoted two hours ago, coupon ran out one hour ago
        stored = checkout_service.get_checkout(checkout.quote_token)
        stored.created_at = utcnow() - timedelta(hours=2)
        coupon.expires_at = utcnow() - timedelta(hours=1)
        db.session.commit()

        order = checkout_service.commit(payment.reference, checkout.quote_token)
        assert order.coupon_code == "SOON"

    def test_resumes_after_crash_mid_commit(self, variant_m, pay_for):
        checkout, payment = pay_for([{"variant_id": variant_m.id, "quantity": 2}])
        # first attempt died after taking stock
        stock_service.reserve_and_commit(
            variant_id=variant_m.id,
            quantity=-2,
            movement_type="SALE",
            idempotency_key=f"{payment.reference}:{variant_m.id}",
            reference=payment.reference,
        )
        stuck = checkout_service.get_checkout(checkout.quote_token)
        stuck.state = "COMMITTING"
        db.session.commit()

        order = checkout_service.commit(payment.reference, checkout.quote_token)

        assert order.status == "PAID"
        assert stock_service.get_current_stock(variant_m.id) == 8
        assert db.session.query(StockMovement).filter_by(type="SALE").count() == 1

    def test_resolve_unresolved_checkout(self, variant_l, pay_for):
        checkout, payment = pay_for([{"variant_id": variant_l.id, "quantity": 3}])
        stock_service.reserve_and_commit(variant_id=variant_l.id, quantity=-3, movement_type="OUTBOUND")
        with pytest.raises(StockUnavailableError):
            checkout_service.commit(payment.reference, checkout.quote_token)

        resolved = checkout_service.resolve_checkout(checkout.quote_token, actor="ops", note="refunded at processor")
        assert resolved.needs_reconciliation is False
        assert checkout_service.list_unresolved_checkouts() == []
        with pytest.raises(ConflictError):
            checkout_service.resolve_checkout(checkout.quote_token)

    def test_duplicate_commit_cannot_revive_aborted_checkout(self, variant_m, variant_l, pay_for):
        checkout, payment = pay_for(
            [{"variant_id": variant_m.id, "quantity": 2}, {"variant_id": variant_l.id, "quantity": 3}]
        )
        # worker B moved the checkout to COMMITTING and stalled
        stalled = checkout_service.get_checkout(checkout.quote_token)
        stalled.state = "COMMITTING"
        db.session.commit()

        # worker A runs the same commit, loses L and compensates M
        stock_service.reserve_and_commit(variant_id=variant_l.id, quantity=-1, movement_type="OUTBOUND")
        with pytest.raises(StockUnavailableError):
            checkout_service.commit(payment.reference, checkout.quote_token)
        stock_service.reserve_and_commit(variant_id=variant_l.id, quantity=5, movement_type="INBOUND")
        count = db.session.query(StockMovement).count()

        # B resumes reserving: refused before taking anything
        with pytest.raises(StockUnavailableError):
            checkout_service._reserve_lines(stalled, payment.reference, actor=None)
        assert db.session.query(StockMovement).count() == count

        # B had already taken L before the abort was visible, then tries to persist
        stock_service.reserve_and_commit(
            variant_id=variant_l.id,
            quantity=-3,
            movement_type="SALE",
            idempotency_key=f"{payment.reference}:{variant_l.id}",
            reference=payment.reference,
        )
        with pytest.raises(StockUnavailableError):
            checkout_service._persist_order(stalled, payment.reference, [], actor=None)

        assert db.session.query(Order).count() == 0
        aborted = checkout_service.get_checkout(checkout.quote_token)
        assert aborted.state == "ABORTED"
        assert aborted.order_id is None
        assert aborted.needs_reconciliation is True

        l_moves = _movements(variant_l.id)
        assert l_moves[-1].type == "ADJUSTMENT"
        assert l_moves[-1].quantity == 3
        assert l_moves[-1].idempotency_key == f"{payment.reference}:{variant_l.id}:compensation"
        assert stock_service.get_current_stock(variant_l.id) == 7
        assert stock_service.get_current_stock(variant_m.id) == 10
        assert stock_service.verify_ledger(variant_l.id).ok

    def test_failed_compensation_is_retried_on_replay(self, variant_m, variant_l, pay_for, monkeypatch):
        checkout, payment = pay_for(
            [{"variant_id": variant_m.id, "quantity": 2}, {"variant_id": variant_l.id, "quantity": 3}]
        )
        stock_service.reserve_and_commit(variant_id=variant_l.id, quantity=-1, movement_type="OUTBOUND")

        reserve = stock_service.reserve_and_commit

        def adjustments_time_out(**kwargs):
            if kwargs["movement_type"] == "ADJUSTMENT":
                raise ConcurrencyConflictError("Retry budget exhausted")
            return reserve(**kwargs)

        monkeypatch.setattr(stock_service, "reserve_and_commit", adjustments_time_out)
        with pytest.raises(StockUnavailableError):
            checkout_service.commit(payment.reference, checkout.quote_token)
        assert stock_service.get_current_stock(variant_m.id) == 8
        monkeypatch.undo()

        with pytest.raises(StockUnavailableError):
            checkout_service.commit(payment.reference, checkout.quote_token)
        assert stock_service.get_current_stock(variant_m.id) == 10
        assert stock_service.verify_ledger(variant_m.id).ok

        count = db.session.query(StockMovement).count()
        with pytest.raises(StockUnavailableError):
            checkout_service.commit(payment.reference, checkout.quote_token)
        assert db.session.query(StockMovement).count() == count

    def test_resolve_waits_for_pending_compensation(self, variant_m, variant_l, pay_for, monkeypatch):
        checkout, payment = pay_for(
            [{"variant_id": variant_m.id, "quantity": 2}, {"variant_id": variant_l.id, "quantity": 3}]
        )
        stock_service.reserve_and_commit(variant_id=variant_l.id, quantity=-1, movement_type="OUTBOUND")

        reserve = stock_service.reserve_and_commit

        def adjustments_time_out(**kwargs):
            if kwargs["movement_type"] == "ADJUSTMENT":
                raise ConcurrencyConflictError("Retry budget exhausted")
            return reserve(**kwargs)

        monkeypatch.setattr(stock_service, "reserve_and_commit", adjustments_time_out)
        with pytest.raises(StockUnavailableError):
            checkout_service.commit(payment.reference, checkout.quote_token)
        with pytest.raises(ConflictError) as exc:
            checkout_service.resolve_checkout(checkout.quote_token, actor="ops")
        assert exc.value.details["pending_compensations"] == 1
        assert [c.quote_token for c in checkout_service.list_unresolved_checkouts()] == [checkout.quote_token]
        monkeypatch.undo()

        resolved = checkout_service.resolve_checkout(checkout.quote_token, actor="ops")
        assert resolved.needs_reconciliation is False
        assert stock_service.get_current_stock(variant_m.id) == 10


def test_price_changes_after_quote_do_not_change_the_charge(variant_m, pay_for):
    checkout, payment = pay_for([{"variant_id": variant_m.id, "quantity": 1}])
    product = catalog_service.get_product(variant_m.product_id)
    product.price_cents = 9900
    db.session.commit()

    order = checkout_service.commit(payment.reference, checkout.quote_token)
    assert order.total_cents == 2500
    assert order.items[0].unit_price_cents == 2500
