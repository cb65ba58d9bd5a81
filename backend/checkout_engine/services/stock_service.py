# Overview: Service-layer operations for the stock ledger and stock guard.

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import StockVariant, StockMovement
from ..errors import InsufficientStockError, VariantNotFoundError
from ..validation import ConflictError, enforce_rules_stock_movement
from .audit_service import append_audit_event
from .concurrency import begin_write, lock_for_update, run_with_retry, RETRYABLE_ERRORS
"""
Stock Ledger & Stock Guard Invariants (authoritative)

Ledger:
- StockMovement rows are append-only; never updated or deleted.
- Per variant, movements form a chain ordered by sequence (1, 2, 3, ...):
    new_stock = previous_stock + quantity, new_stock >= 0,
    previous_stock(n) = new_stock(n - 1).
- StockVariant.current_stock is a running counter cached from the ledger and
  written in the same transaction as the movement. The ledger is authoritative:
  replay_stock() folds the chain and reconcile_variant() repairs counter drift.

Guard:
- The only write path is reserve_and_commit(); it checks current + quantity >= 0
  and appends the movement in one transaction per variant.
- Concurrent commits to one variant serialize on the variant row
  (SELECT ... FOR UPDATE + version_id; BEGIN IMMEDIATE on SQLite). Different
  variants never share a lock.
- Idempotency: a movement with the same idempotency_key is returned instead of
  appending a second one (exactly-once effect under retries).
- Conflicts are retried a bounded number of times, then surface as
  ConcurrencyConflictError. InsufficientStockError is never retried.
"""

logger = logging.getLogger(__name__)


def _default_threshold() -> int:
    return current_app.config.get("DEFAULT_LOW_STOCK_THRESHOLD", 5)


def effective_threshold(variant: StockVariant) -> int:
    if variant.low_stock_threshold is None:
        return _default_threshold()
    return variant.low_stock_threshold


def get_current_stock(variant_id: int) -> int:
    """Running counter (fast path). See replay_stock() for the authoritative value."""
    stock = db.session.query(StockVariant.current_stock).filter_by(id=variant_id).scalar()
    if stock is None:
        raise VariantNotFoundError(f"Variant {variant_id} not found")
    return int(stock)


def _find_by_idempotency_key(key: str) -> StockMovement | None:
    return db.session.query(StockMovement).filter_by(idempotency_key=key).first()


def _ensure_same_effect(existing: StockMovement, *, variant_id: int, movement_type: str, quantity: int) -> None:
    if (
        existing.variant_id != variant_id
        or existing.type != movement_type
        or existing.quantity != quantity
    ):
        raise ConflictError(
            "idempotency_key already used for a different stock movement",
            details={
                "idempotency_key": existing.idempotency_key,
                "existing_movement_id": existing.id,
            },
        )


def _append_movement_locked(
    variant: StockVariant,
    *,
    quantity: int,
    movement_type: str,
    reason: str | None,
    idempotency_key: str | None,
    actor: str | None,
    reference: str | None,
) -> StockMovement:
    """Core append without locking, retry or commit. Caller holds the variant lock."""
    previous = variant.current_stock
    new_stock = previous + quantity
    if new_stock < 0:
        raise InsufficientStockError(
            "Not enough stock for this size, it may have just sold out",
            details={
                "variant_id": variant.id,
                "product_id": variant.product_id,
                "variant_key": variant.variant_key,
                "requested": -quantity,
                "available": previous,
            },
        )

    movement = StockMovement(
        variant_id=variant.id,
        product_id=variant.product_id,
        variant_key=variant.variant_key,
        sequence=variant.last_sequence + 1,
        type=movement_type,
        quantity=quantity,
        previous_stock=previous,
        new_stock=new_stock,
        reason=reason,
        idempotency_key=idempotency_key,
        reference=reference,
        actor=actor,
    )
    db.session.add(movement)

    variant.current_stock = new_stock
    variant.last_sequence = movement.sequence

    db.session.flush()
    return movement


def _log_threshold_crossing(variant: StockVariant, movement: StockMovement) -> None:
    threshold = effective_threshold(variant)
    if movement.new_stock == 0 and movement.previous_stock > 0:
        logger.warning("Variant %s (%s) is out of stock", variant.id, variant.variant_key)
    elif movement.new_stock <= threshold < movement.previous_stock:
        logger.warning(
            "Variant %s (%s) is low on stock: %d left (threshold %d)",
            variant.id, variant.variant_key, movement.new_stock, threshold,
        )


def reserve_and_commit(
    *,
    variant_id: int,
    quantity: int,
    movement_type: str,
    reason: str | None = None,
    idempotency_key: str | None = None,
    actor: str | None = None,
    reference: str | None = None,
) -> StockMovement:
    """
    Check-and-apply one signed stock movement atomically for a variant.

    quantity sign rules: SALE/OUTBOUND < 0, INBOUND/RETURN > 0, ADJUSTMENT != 0.

    Returns the appended movement, or the earlier one when idempotency_key
    was already used for the same effect.

    Raises:
        InsufficientStockError: post-condition would go negative (hard stop)
        ConflictError: idempotency_key reused for a different effect
        ConcurrencyConflictError: retry budget spent on lock conflicts
    """
    enforce_rules_stock_movement(movement_type, quantity)

    def _op():
        begin_write()

        if idempotency_key:
            existing = _find_by_idempotency_key(idempotency_key)
            if existing is not None:
                _ensure_same_effect(existing, variant_id=variant_id, movement_type=movement_type, quantity=quantity)
                db.session.commit()
                return existing

        variant = lock_for_update(db.session.query(StockVariant).filter_by(id=variant_id)).first()
        if variant is None:
            raise VariantNotFoundError(f"Variant {variant_id} not found")

        movement = _append_movement_locked(
            variant,
            quantity=quantity,
            movement_type=movement_type,
            reason=reason,
            idempotency_key=idempotency_key,
            actor=actor,
            reference=reference,
        )
        db.session.commit()

        logger.debug(
            "Stock movement #%s %s %+d on variant %s: %d -> %d",
            movement.sequence, movement_type, quantity, variant_id, movement.previous_stock, movement.new_stock,
        )
        _log_threshold_crossing(variant, movement)
        return movement

    config = current_app.config
    return run_with_retry(
        _op,
        attempts=config.get("STOCK_COMMIT_ATTEMPTS", 5),
        backoff_base=config.get("RETRY_BACKOFF_SECONDS", 0.05),
        # unique (variant_id, sequence) / idempotency_key races resolve on the next attempt
        retry_on=RETRYABLE_ERRORS + (IntegrityError,),
        label=f"stock commit for variant {variant_id}",
    )


# =============================================================================
# LEDGER READ SIDE
# =============================================================================

@dataclass
class LedgerReport:
    variant_id: int
    movement_count: int
    replayed_stock: int
    cached_stock: int
    last_sequence: int
    problems: list[str] = field(default_factory=list)

    @property
    def chain_ok(self) -> bool:
        return not self.problems

    @property
    def counter_ok(self) -> bool:
        return self.replayed_stock == self.cached_stock

    @property
    def ok(self) -> bool:
        return self.chain_ok and self.counter_ok

    def to_dict(self) -> dict:
        return {
            "variant_id": self.variant_id,
            "movement_count": self.movement_count,
            "replayed_stock": self.replayed_stock,
            "cached_stock": self.cached_stock,
            "last_sequence": self.last_sequence,
            "chain_ok": self.chain_ok,
            "counter_ok": self.counter_ok,
            "ok": self.ok,
            "problems": self.problems,
        }


def _ordered_movements(variant_id: int):
    return (
        db.session.query(StockMovement)
        .filter_by(variant_id=variant_id)
        .order_by(StockMovement.sequence.asc())
    )


def replay_stock(variant_id: int) -> int:
    """Fold the ledger in sequence order: the authoritative stock level."""
    total = (
        db.session.query(func.coalesce(func.sum(StockMovement.quantity), 0))
        .filter(StockMovement.variant_id == variant_id)
        .scalar()
    )
    return int(total or 0)


def verify_ledger(variant_id: int) -> LedgerReport:
    """
    Walk the chain for one variant and compare it with the running counter.

    Problems reported: sequence gaps, arithmetic breaks, negative stock,
    previous_stock not matching the prior movement's new_stock.
    """
    variant = db.session.query(StockVariant).filter_by(id=variant_id).populate_existing().first()
    if variant is None:
        raise VariantNotFoundError(f"Variant {variant_id} not found")

    problems: list[str] = []
    running = 0
    count = 0
    expected_sequence = 1

    for mv in _ordered_movements(variant_id).yield_per(500):
        count += 1
        if mv.sequence != expected_sequence:
            problems.append(f"sequence {mv.sequence}: expected sequence {expected_sequence}")
            expected_sequence = mv.sequence
        if mv.previous_stock != running:
            problems.append(f"sequence {mv.sequence}: previous_stock {mv.previous_stock} != prior new_stock {running}")
        if mv.previous_stock + mv.quantity != mv.new_stock:
            problems.append(f"sequence {mv.sequence}: {mv.previous_stock} + {mv.quantity} != {mv.new_stock}")
        if mv.new_stock < 0:
            problems.append(f"sequence {mv.sequence}: negative stock {mv.new_stock}")
        running = mv.new_stock
        expected_sequence += 1

    return LedgerReport(
        variant_id=variant_id,
        movement_count=count,
        replayed_stock=running,
        cached_stock=variant.current_stock,
        last_sequence=variant.last_sequence,
        problems=problems,
    )


def reconcile_variant(variant_id: int, *, actor: str | None = None) -> LedgerReport:
    """
    Reset a drifted running counter to the replayed ledger value.

    Only the cache is repaired; a broken chain is reported, never rewritten.
    """
    def _op():
        begin_write()
        variant = lock_for_update(db.session.query(StockVariant).filter_by(id=variant_id)).first()
        if variant is None:
            raise VariantNotFoundError(f"Variant {variant_id} not found")

        report = verify_ledger(variant_id)
        if report.counter_ok and report.last_sequence == report.movement_count:
            db.session.commit()
            return report

        logger.warning(
            "Stock counter drift on variant %s: cached %d, ledger %d",
            variant_id, report.cached_stock, report.replayed_stock,
        )
        last_sequence = (
            db.session.query(func.coalesce(func.max(StockMovement.sequence), 0))
            .filter(StockMovement.variant_id == variant_id)
            .scalar()
        )
        variant.current_stock = report.replayed_stock
        variant.last_sequence = int(last_sequence or 0)

        append_audit_event(
            event_type="stock.reconciled",
            entity_type="stock_variant",
            entity_id=variant_id,
            actor=actor,
            note="Running counter reset to ledger value",
            payload={"cached_stock": report.cached_stock, "ledger_stock": report.replayed_stock},
        )
        db.session.commit()
        return verify_ledger(variant_id)

    return run_with_retry(_op, label=f"ledger reconcile for variant {variant_id}")


def list_movements(
    *,
    variant_id: int | None = None,
    product_id: int | None = None,
    movement_type: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    page: int = 1,
    limit: int = 50,
) -> tuple[list[StockMovement], int]:
    """Movement history, newest first. Date range is inclusive."""
    q = db.session.query(StockMovement)
    if variant_id is not None:
        q = q.filter(StockMovement.variant_id == variant_id)
    if product_id is not None:
        q = q.filter(StockMovement.product_id == product_id)
    if movement_type:
        q = q.filter(StockMovement.type == movement_type)
    if start is not None:
        q = q.filter(StockMovement.created_at >= start)
    if end is not None:
        q = q.filter(StockMovement.created_at <= end)

    total = q.count()
    page = max(page, 1)
    movements = (
        q.order_by(StockMovement.created_at.desc(), StockMovement.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return movements, total
