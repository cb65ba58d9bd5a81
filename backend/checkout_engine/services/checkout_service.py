# Overview: Checkout orchestrator; quote, payment request and the saga that turns a confirmed payment into an order.

from __future__ import annotations

import logging
import secrets
import uuid
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Checkout, Order, OrderItem, StockMovement
from ..models.orders import (
    CHECKOUT_QUOTED,
    CHECKOUT_PAYMENT_PENDING,
    CHECKOUT_COMMITTING,
    CHECKOUT_COMMITTED,
    CHECKOUT_ABORTED,
    ORDER_PAID,
)
from ..models.stock import MOVEMENT_SALE, MOVEMENT_ADJUSTMENT
from ..errors import (
    EngineError,
    CouponError,
    InsufficientStockError,
    QuoteNotFoundError,
    QuoteExpiredError,
    PaymentMismatchError,
    StockUnavailableError,
    error_from_code,
)
from ..validation import ValidationError, ConflictError
from ..time_utils import utcnow
from . import catalog_service, coupon_service, stock_service
from .audit_service import append_audit_event
from .concurrency import begin_write, lock_for_update, run_with_retry, RETRYABLE_ERRORS
from .payment_gateway import get_payment_gateway
"""
Checkout Orchestrator Invariants (authoritative)

State machine per attempt:
    QUOTED -> PAYMENT_PENDING -> COMMITTING -> COMMITTED
    any state before COMMITTED -> ABORTED

Quote:
- Prices are read fresh from the catalog; the coupon is validated, never consumed.
- Stock is checked, never reserved. The priced snapshot is persisted with the token
  and is the only amount the payment processor is ever asked for.

Commit (saga, one sub-commit per resource):
1. Payment must be CONFIRMED for exactly the quoted amount, currency and token,
   otherwise PaymentMismatchError (fatal, no state change, no stock touched).
2. An Order with the same payment_reference is returned unchanged.
3. SALE movements per line, in variant_id order (fixed lock order). Each is its
   own idempotent stock transaction keyed "{payment_reference}:{variant_id}".
4. Coupon usage (idempotent per payment_reference).
5. Order + items persisted in one transaction, status PAID.

On InsufficientStockError (3) or a coupon failure (4): the attempt is recorded
ABORTED first, then every SALE of this attempt gets an equal-and-opposite
ADJUSTMENT. The customer was charged, so the attempt is flagged
needs_reconciliation for an operator.

Transient failures (lock conflicts, crashes) leave the attempt COMMITTING; a
retried commit resumes and the idempotent sub-steps return their earlier effects.
A commit retried after an abort re-raises the recorded failure, after
compensating any SALE of the attempt that is still uncompensated.

Concurrent commits of one payment: the order is only written while the
checkout is still COMMITTING under its row lock. A worker that finds it
ABORTED hands back the stock it took and re-raises the recorded failure.
"""

logger = logging.getLogger(__name__)

MAX_LINES = 100
MAX_LINE_QUANTITY = 1000


def _new_quote_token() -> str:
    return secrets.token_urlsafe(24)


def _new_order_number() -> str:
    return f"ORD-{uuid.uuid4().hex[:12].upper()}"


def _sale_key(payment_reference: str, variant_id: int) -> str:
    return f"{payment_reference}:{variant_id}"


# =============================================================================
# QUOTE
# =============================================================================

def _normalize_customer(customer: dict | None) -> dict:
    if customer is None:
        return {}
    if not isinstance(customer, dict):
        raise ValidationError("customer must be an object")

    cleaned = {}
    email = customer.get("email")
    if email is not None:
        email = str(email).strip().lower()
        if email and ("@" not in email or len(email) > 255):
            raise ValidationError("email is invalid")
        cleaned["email"] = email or None
    phone = customer.get("phone")
    if phone is not None:
        phone = str(phone).strip()
        if len(phone) > 32:
            raise ValidationError("phone exceeds max length 32")
        cleaned["phone"] = phone or None
    if "shipping_address" in customer:
        address = customer["shipping_address"]
        if address is not None and not isinstance(address, dict):
            raise ValidationError("shipping_address must be an object")
        cleaned["shipping_address"] = address
    return cleaned


def _as_id(value, field: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer") from None


def _resolve_line(raw) -> tuple[int, int]:
    """(variant_id, quantity) for one requested line."""
    if not isinstance(raw, dict):
        raise ValidationError("Each item must be an object")

    quantity = raw.get("quantity")
    if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
        raise ValidationError("quantity must be a positive integer")
    if quantity > MAX_LINE_QUANTITY:
        raise ValidationError(f"quantity cannot exceed {MAX_LINE_QUANTITY}")

    if raw.get("variant_id") is not None:
        return catalog_service.get_variant(_as_id(raw["variant_id"], "variant_id")).id, quantity

    product_id = raw.get("product_id")
    if product_id is None or not raw.get("size"):
        raise ValidationError("Each item needs variant_id, or product_id and size")
    variant_key = catalog_service.make_variant_key(raw["size"], raw.get("color"), raw.get("material"))
    return catalog_service.find_variant(_as_id(product_id, "product_id"), variant_key).id, quantity


def _price_lines(items) -> list[dict]:
    if not isinstance(items, list) or not items:
        raise ValidationError("items must be a non-empty list")
    if len(items) > MAX_LINES:
        raise ValidationError(f"A checkout cannot have more than {MAX_LINES} lines")

    merged: dict[int, int] = {}
    for raw in items:
        variant_id, quantity = _resolve_line(raw)
        merged[variant_id] = merged.get(variant_id, 0) + quantity

    lines = []
    for variant_id in sorted(merged):
        quantity = merged[variant_id]
        variant = catalog_service.get_variant(variant_id)
        product = catalog_service.get_product(variant.product_id, require_active=True)

        if variant.current_stock < quantity:
            raise InsufficientStockError(
                f"Only {variant.current_stock} left of {product.name} ({variant.variant_key})",
                details={
                    "variant_id": variant.id,
                    "product_id": product.id,
                    "variant_key": variant.variant_key,
                    "requested": quantity,
                    "available": variant.current_stock,
                },
            )

        lines.append({
            "product_id": product.id,
            "product_name": product.name,
            "variant_id": variant.id,
            "variant_key": variant.variant_key,
            "quantity": quantity,
            "unit_price_cents": product.price_cents,
            "line_total_cents": product.price_cents * quantity,
        })
    return lines


def quote(items, *, coupon_code: str | None = None, customer: dict | None = None, now: datetime | None = None) -> Checkout:
    """
    Price a cart and persist it as a QUOTED checkout bound to a fresh token.

    Nothing is reserved and no coupon use is consumed.
    """
    now = now or utcnow()
    lines = _price_lines(items)
    contact = _normalize_customer(customer)

    subtotal = sum(line["line_total_cents"] for line in lines)
    discount = 0
    code = None
    if coupon_code:
        coupon_quote = coupon_service.validate_coupon(coupon_code, subtotal, now=now)
        discount = coupon_quote.discount_cents
        code = coupon_quote.code

    config = current_app.config
    checkout = Checkout(
        quote_token=_new_quote_token(),
        state=CHECKOUT_QUOTED,
        items=lines,
        subtotal_cents=subtotal,
        discount_cents=discount,
        total_cents=max(0, subtotal - discount),
        currency=config.get("CURRENCY", "EUR"),
        coupon_code=code,
        email=contact.get("email"),
        phone=contact.get("phone"),
        shipping_address=contact.get("shipping_address"),
        expires_at=now + timedelta(seconds=config.get("QUOTE_TTL_SECONDS", 1800)),
        created_at=now,
    )
    db.session.add(checkout)
    db.session.commit()

    logger.debug("Quoted checkout %s: %d lines, total %d", checkout.quote_token, len(lines), checkout.total_cents)
    return checkout


def get_checkout(quote_token: str) -> Checkout:
    checkout = (
        db.session.query(Checkout)
        .filter_by(quote_token=quote_token)
        .populate_existing()
        .first()
    )
    if checkout is None:
        raise QuoteNotFoundError("Quote not found", details={"quote_token": quote_token})
    return checkout


def _update_checkout(checkout_id: int, *, allowed_states: tuple, **fields) -> Checkout:
    """Locked state transition. Returns the checkout unchanged when its state is not allowed."""
    def _op():
        begin_write()
        checkout = lock_for_update(db.session.query(Checkout).filter_by(id=checkout_id)).first()
        if checkout.state in allowed_states:
            for key, value in fields.items():
                setattr(checkout, key, value)
        db.session.commit()
        return checkout

    return run_with_retry(_op, label=f"checkout {checkout_id} update")


# =============================================================================
# PAYMENT
# =============================================================================

def request_payment(quote_token: str, *, customer: dict | None = None, now: datetime | None = None):
    """
    QUOTED -> PAYMENT_PENDING: ask the processor for the quoted amount.

    Returns (checkout, payment). Calling again on a PAYMENT_PENDING checkout
    returns the payment already created.
    """
    now = now or utcnow()
    checkout = get_checkout(quote_token)
    gateway = get_payment_gateway()

    if checkout.state == CHECKOUT_PAYMENT_PENDING and checkout.payment_reference:
        return checkout, gateway.get_payment(checkout.payment_reference)
    if checkout.state != CHECKOUT_QUOTED:
        raise ConflictError(
            f"Checkout is {checkout.state}, payment can no longer be requested",
            details={"quote_token": quote_token, "state": checkout.state},
        )

    if now >= checkout.expires_at:
        _update_checkout(
            checkout.id,
            allowed_states=(CHECKOUT_QUOTED,),
            state=CHECKOUT_ABORTED,
            failure_code=QuoteExpiredError.code,
            failure_message="Quote expired before payment was requested",
        )
        raise QuoteExpiredError("This quote has expired, please review your cart again", details={"quote_token": quote_token})

    contact = _normalize_customer(customer)
    email = contact.get("email", checkout.email)
    if not email:
        raise ValidationError("A contact email is required before payment")

    payment = gateway.create_payment(checkout.total_cents, checkout.currency, checkout.quote_token)

    checkout = _update_checkout(
        checkout.id,
        allowed_states=(CHECKOUT_QUOTED,),
        state=CHECKOUT_PAYMENT_PENDING,
        payment_reference=payment.reference,
        email=email,
        phone=contact.get("phone", checkout.phone),
        shipping_address=contact.get("shipping_address", checkout.shipping_address),
    )
    if checkout.payment_reference != payment.reference:
        raise ConflictError("Payment was already requested for this checkout", details={"quote_token": quote_token})

    logger.info("Payment %s requested for checkout %s (%d %s)", payment.reference, quote_token, checkout.total_cents, checkout.currency)
    return checkout, payment


def _verify_payment(checkout: Checkout, payment_reference: str) -> None:
    if checkout.payment_reference and checkout.payment_reference != payment_reference:
        raise PaymentMismatchError(
            "Payment does not belong to this checkout",
            details={"payment_reference": payment_reference},
        )

    payment = get_payment_gateway().get_payment(payment_reference)
    problem = None
    if payment is None:
        problem = "unknown payment"
    elif not payment.confirmed:
        problem = f"payment is {payment.status}"
    elif payment.quote_token != checkout.quote_token:
        problem = "payment was made for another quote"
    elif payment.amount_cents != checkout.total_cents or payment.currency != checkout.currency:
        problem = f"paid {payment.amount_cents} {payment.currency}, quoted {checkout.total_cents} {checkout.currency}"

    if problem:
        logger.warning("Payment %s rejected for checkout %s: %s", payment_reference, checkout.quote_token, problem)
        raise PaymentMismatchError(
            "Payment could not be verified for this checkout",
            details={"payment_reference": payment_reference, "reason": problem},
        )


# =============================================================================
# COMMIT
# =============================================================================

def _find_order(payment_reference: str) -> Order | None:
    return db.session.query(Order).filter_by(payment_reference=payment_reference).first()


def _abort(checkout: Checkout, error: EngineError, *, needs_reconciliation: bool, actor: str | None) -> None:
    def _op():
        begin_write()
        locked = lock_for_update(db.session.query(Checkout).filter_by(id=checkout.id)).first()
        locked.state = CHECKOUT_ABORTED
        locked.failure_code = error.code
        locked.failure_message = error.message[:255]
        locked.needs_reconciliation = needs_reconciliation
        append_audit_event(
            event_type="checkout.aborted",
            entity_type="checkout",
            entity_id=checkout.quote_token,
            actor=actor,
            note=error.message,
            payload={"code": error.code, "payment_reference": locked.payment_reference, "details": error.details},
        )
        db.session.commit()

    run_with_retry(_op, label=f"checkout {checkout.id} abort")


def _compensate(checkout: Checkout, movements: list[StockMovement], *, actor: str | None) -> int:
    """
    Equal-and-opposite ADJUSTMENT for every SALE of this attempt, newest first.

    Returns how many compensations failed and are still owed.
    """
    failed = 0
    for movement in reversed(movements):
        try:
            stock_service.reserve_and_commit(
                variant_id=movement.variant_id,
                quantity=-movement.quantity,
                movement_type=MOVEMENT_ADJUSTMENT,
                reason=f"Compensation for aborted checkout {checkout.quote_token}",
                idempotency_key=f"{movement.idempotency_key}:compensation",
                actor=actor,
                reference=movement.reference,
            )
        except EngineError:
            # owed until a replayed commit or resolve_checkout runs it again
            failed += 1
            logger.exception(
                "Compensation failed for movement %s (variant %s, %+d)",
                movement.id, movement.variant_id, -movement.quantity,
            )
        else:
            logger.warning(
                "Compensated movement %s: %+d on variant %s",
                movement.id, -movement.quantity, movement.variant_id,
            )
    return failed


def _owed_compensations(checkout: Checkout) -> list[StockMovement]:
    """SALE movements bound to the checkout's payment that have no compensation yet."""
    if not checkout.payment_reference:
        return []
    keys = [_sale_key(checkout.payment_reference, line["variant_id"]) for line in checkout.items]
    sales = (
        db.session.query(StockMovement)
        .filter(StockMovement.type == MOVEMENT_SALE, StockMovement.idempotency_key.in_(keys))
        .order_by(StockMovement.id.asc())
        .all()
    )
    compensated = {
        key
        for (key,) in db.session.query(StockMovement.idempotency_key)
        .filter(StockMovement.idempotency_key.in_([f"{m.idempotency_key}:compensation" for m in sales]))
        .all()
    }
    return [m for m in sales if f"{m.idempotency_key}:compensation" not in compensated]


def _recorded_failure(checkout: Checkout, *, actor: str | None) -> EngineError:
    """
    The failure an aborted checkout was closed with.

    Stock still held by the attempt is handed back first: a compensation that
    failed earlier, or a SALE a concurrent commit took after the abort.
    """
    owed = _owed_compensations(checkout)
    if owed:
        logger.warning("Checkout %s is aborted but still holds %d sale(s), compensating", checkout.quote_token, len(owed))
        _compensate(checkout, owed, actor=actor)
    return error_from_code(checkout.failure_code, checkout.failure_message or "Checkout was aborted", {
        "quote_token": checkout.quote_token,
        "payment_reference": checkout.payment_reference,
    })


def _ensure_not_aborted(checkout: Checkout, *, actor: str | None) -> None:
    current = get_checkout(checkout.quote_token)
    if current.state == CHECKOUT_ABORTED:
        raise _recorded_failure(current, actor=actor)


def _fail_after_payment(checkout: Checkout, error: EngineError, movements: list[StockMovement], *, actor: str | None):
    """Charged but unfulfilled: record the abort, undo stock, flag for an operator."""
    logger.error(
        "Checkout %s aborted after payment %s: %s (lines=%s)",
        checkout.quote_token,
        checkout.payment_reference,
        error.code,
        [(line["variant_id"], line["quantity"]) for line in checkout.items],
    )
    _abort(checkout, error, needs_reconciliation=True, actor=actor)
    _compensate(checkout, movements, actor=actor)
    return error


def _reserve_lines(checkout: Checkout, payment_reference: str, *, actor: str | None) -> list[StockMovement]:
    movements: list[StockMovement] = []
    for line in sorted(checkout.items, key=lambda item: item["variant_id"]):
        _ensure_not_aborted(checkout, actor=actor)
        try:
            movement = stock_service.reserve_and_commit(
                variant_id=line["variant_id"],
                quantity=-line["quantity"],
                movement_type=MOVEMENT_SALE,
                reason=f"Checkout {checkout.quote_token}",
                idempotency_key=_sale_key(payment_reference, line["variant_id"]),
                actor=actor,
                reference=payment_reference,
            )
        except InsufficientStockError as e:
            raise _fail_after_payment(
                checkout,
                StockUnavailableError(
                    "An item sold out while your payment was processed. "
                    "No order was placed and our team will refund your payment.",
                    details={**e.details, "payment_reference": payment_reference},
                ),
                movements,
                actor=actor,
            ) from e
        movements.append(movement)
    return movements


def _persist_order(checkout: Checkout, payment_reference: str, movements: list[StockMovement], *, actor: str | None) -> Order:
    movement_by_variant = {m.variant_id: m.id for m in movements}

    def _op():
        begin_write()
        existing = _find_order(payment_reference)
        if existing is not None:
            db.session.commit()
            return existing

        locked = lock_for_update(db.session.query(Checkout).filter_by(id=checkout.id)).first()
        if locked.state != CHECKOUT_COMMITTING:
            # aborted by a concurrent commit of the same payment
            db.session.commit()
            return None
        now = utcnow()
        order = Order(
            order_number=_new_order_number(),
            checkout_id=locked.id,
            status=ORDER_PAID,
            subtotal_cents=locked.subtotal_cents,
            discount_cents=locked.discount_cents,
            total_cents=locked.total_cents,
            currency=locked.currency,
            coupon_code=locked.coupon_code,
            payment_reference=payment_reference,
            email=locked.email,
            phone=locked.phone,
            shipping_address=locked.shipping_address,
            paid_at=now,
        )
        for line in locked.items:
            order.items.append(OrderItem(
                product_id=line["product_id"],
                variant_id=line["variant_id"],
                variant_key=line["variant_key"],
                quantity=line["quantity"],
                unit_price_cents=line["unit_price_cents"],
                line_total_cents=line["line_total_cents"],
                stock_movement_id=movement_by_variant.get(line["variant_id"]),
            ))
        db.session.add(order)
        db.session.flush()

        locked.state = CHECKOUT_COMMITTED
        locked.order_id = order.id
        append_audit_event(
            event_type="order.created",
            entity_type="order",
            entity_id=order.order_number,
            actor=actor,
            payload={"payment_reference": payment_reference, "total_cents": order.total_cents},
        )
        db.session.commit()
        return order

    order = run_with_retry(
        _op,
        # unique payment_reference: a concurrent commit won, the next attempt returns its order
        retry_on=RETRYABLE_ERRORS + (IntegrityError,),
        label=f"order persist for {payment_reference}",
    )
    if order is None:
        raise _recorded_failure(get_checkout(checkout.quote_token), actor=actor)
    return order


def commit(payment_reference: str, quote_token: str, *, actor: str | None = None) -> Order:
    """
    Turn a confirmed payment into exactly one order.

    Safe to replay: the same payment_reference always yields the same order
    and one set of SALE movements.

    Raises:
        QuoteNotFoundError: unknown quote_token
        PaymentMismatchError: payment unconfirmed or not matching the quote
        StockUnavailableError: a line sold out after payment (compensated)
        CouponError: coupon lost between quote and commit (compensated)
    """
    if not payment_reference:
        raise ValidationError("payment_reference is required")
    checkout = get_checkout(quote_token)

    existing = _find_order(payment_reference)
    if existing is not None:
        if existing.checkout_id != checkout.id:
            raise PaymentMismatchError(
                "Payment already used for another order",
                details={"payment_reference": payment_reference},
            )
        return existing

    if checkout.state == CHECKOUT_ABORTED:
        raise _recorded_failure(checkout, actor=actor)

    _verify_payment(checkout, payment_reference)

    checkout = _update_checkout(
        checkout.id,
        allowed_states=(CHECKOUT_QUOTED, CHECKOUT_PAYMENT_PENDING, CHECKOUT_COMMITTING),
        state=CHECKOUT_COMMITTING,
        payment_reference=payment_reference,
    )
    if checkout.state == CHECKOUT_COMMITTED:
        return db.session.get(Order, checkout.order_id)
    if checkout.state != CHECKOUT_COMMITTING:
        raise _recorded_failure(checkout, actor=actor)

    movements = _reserve_lines(checkout, payment_reference, actor=actor)

    if checkout.coupon_code:
        _ensure_not_aborted(checkout, actor=actor)
        try:
            coupon_service.commit_usage(
                checkout.coupon_code,
                payment_reference,
                discount_cents=checkout.discount_cents,
                as_of=checkout.created_at,
                actor=actor,
            )
        except CouponError as e:
            raise _fail_after_payment(checkout, e, movements, actor=actor) from e

    order = _persist_order(checkout, payment_reference, movements, actor=actor)
    logger.info("Order %s committed for payment %s", order.order_number, payment_reference)
    return order


def list_unresolved_checkouts(*, limit: int = 200) -> list[Checkout]:
    """Charged-but-unfulfilled attempts awaiting manual reconciliation."""
    return (
        db.session.query(Checkout)
        .filter(Checkout.state == CHECKOUT_ABORTED, Checkout.needs_reconciliation.is_(True))
        .order_by(Checkout.updated_at.desc(), Checkout.id.desc())
        .limit(limit)
        .all()
    )


def resolve_checkout(quote_token: str, *, actor: str | None = None, note: str | None = None) -> Checkout:
    """
    Operator sign-off on an unresolved checkout (refund issued out of band).

    Stock the attempt still holds is compensated first; the flag stays set
    while any compensation keeps failing.
    """
    checkout = get_checkout(quote_token)
    if checkout.state != CHECKOUT_ABORTED or not checkout.needs_reconciliation:
        raise ConflictError("Checkout does not need reconciliation", details={"quote_token": quote_token})

    pending = _compensate(checkout, _owed_compensations(checkout), actor=actor)
    if pending:
        raise ConflictError(
            "Stock compensation is still pending for this checkout, try again",
            details={"quote_token": quote_token, "pending_compensations": pending},
        )

    def _op():
        begin_write()
        locked = lock_for_update(db.session.query(Checkout).filter_by(id=checkout.id)).first()
        locked.needs_reconciliation = False
        append_audit_event(
            event_type="checkout.reconciled",
            entity_type="checkout",
            entity_id=quote_token,
            actor=actor,
            note=note,
            payload={"payment_reference": locked.payment_reference},
        )
        db.session.commit()
        return locked

    return run_with_retry(_op, label=f"checkout {checkout.id} reconcile")
