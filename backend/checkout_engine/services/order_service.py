# Overview: Service-layer operations for orders; administrative status transitions and listings.

from __future__ import annotations

import logging

from ..extensions import db
from ..models import Order
from ..models.orders import (
    ORDER_PENDING,
    ORDER_PAID,
    ORDER_SHIPPED,
    ORDER_DELIVERED,
    ORDER_REFUNDED,
    ORDER_STATUSES,
)
from ..models.stock import MOVEMENT_RETURN
from ..errors import OrderNotFoundError, InvalidStatusTransitionError
from ..validation import ValidationError
from ..time_utils import utcnow
from . import stock_service
from .audit_service import append_audit_event
from .concurrency import begin_write, lock_for_update, run_with_retry
"""
Order Status Invariants (authoritative)

    PENDING -> PAID -> SHIPPED -> DELIVERED
               PAID -> REFUNDED

- DELIVERED and REFUNDED are terminal.
- Every transition writes an AuditEvent and stamps the matching *_at column.
- A refund never puts stock back on its own. Stock returns only when the same
  administrative action asks for it (restock=True), as RETURN movements keyed
  "refund:{order_number}:{variant_id}" so a retried refund restocks once.
"""

logger = logging.getLogger(__name__)

ORDER_TRANSITIONS = {
    ORDER_PENDING: {ORDER_PAID},
    ORDER_PAID: {ORDER_SHIPPED, ORDER_REFUNDED},
    ORDER_SHIPPED: {ORDER_DELIVERED},
    ORDER_DELIVERED: set(),
    ORDER_REFUNDED: set(),
}

_TIMESTAMP_FIELDS = {
    ORDER_PAID: "paid_at",
    ORDER_SHIPPED: "shipped_at",
    ORDER_DELIVERED: "delivered_at",
    ORDER_REFUNDED: "refunded_at",
}


def can_transition(from_status: str, to_status: str) -> bool:
    return to_status in ORDER_TRANSITIONS.get(from_status, set())


def get_order(order_number: str) -> Order:
    order = db.session.query(Order).filter_by(order_number=order_number).populate_existing().first()
    if order is None:
        raise OrderNotFoundError("Order not found", details={"order_number": order_number})
    return order


def list_orders(*, status: str | None = None, limit: int = 50, offset: int = 0) -> tuple[list[Order], int]:
    q = db.session.query(Order)
    if status:
        status = status.upper()
        if status not in ORDER_STATUSES:
            raise ValidationError(f"status must be one of: {', '.join(ORDER_STATUSES)}")
        q = q.filter(Order.status == status)
    total = q.count()
    orders = q.order_by(Order.created_at.desc(), Order.id.desc()).offset(offset).limit(limit).all()
    return orders, total


def _restock(order: Order, *, actor: str | None, reason: str | None) -> None:
    for item in order.items:
        stock_service.reserve_and_commit(
            variant_id=item.variant_id,
            quantity=item.quantity,
            movement_type=MOVEMENT_RETURN,
            reason=reason or f"Refund of order {order.order_number}",
            idempotency_key=f"refund:{order.order_number}:{item.variant_id}",
            actor=actor,
            reference=order.order_number,
        )
    logger.info("Restocked %d lines for refunded order %s", len(order.items), order.order_number)


def update_status(
    order_number: str,
    new_status: str,
    *,
    actor: str | None = None,
    restock: bool = False,
    reason: str | None = None,
) -> Order:
    """
    Administrative status change.

    Re-applying the current status is a no-op (a retried REFUNDED with
    restock=True still completes any missing RETURN movements).
    """
    new_status = (new_status or "").strip().upper()
    if new_status not in ORDER_STATUSES:
        raise ValidationError(f"status must be one of: {', '.join(ORDER_STATUSES)}")
    if restock and new_status != ORDER_REFUNDED:
        raise ValidationError("restock only applies to REFUNDED")

    def _op():
        begin_write()
        order = lock_for_update(db.session.query(Order).filter_by(order_number=order_number)).first()
        if order is None:
            raise OrderNotFoundError("Order not found", details={"order_number": order_number})

        if order.status == new_status:
            db.session.commit()
            return order

        if not can_transition(order.status, new_status):
            raise InvalidStatusTransitionError(
                f"Cannot change order from {order.status} to {new_status}",
                details={"order_number": order_number, "from": order.status, "to": new_status},
            )

        previous = order.status
        order.status = new_status
        setattr(order, _TIMESTAMP_FIELDS[new_status], utcnow())
        append_audit_event(
            event_type="order.status_changed",
            entity_type="order",
            entity_id=order.order_number,
            actor=actor,
            note=reason,
            payload={"from": previous, "to": new_status, "restock": restock},
        )
        db.session.commit()
        logger.info("Order %s: %s -> %s", order_number, previous, new_status)
        return order

    order = run_with_retry(_op, label=f"order {order_number} status update")

    if restock:
        _restock(order, actor=actor, reason=reason)
    return order
