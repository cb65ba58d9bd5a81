# backend/checkout_engine/routes/orders.py
"""
Order routes.

- POST /api/orders/track is public: order number + email or phone.
- Everything else requires the admin token.
"""
from flask import Blueprint, request, current_app, g

from ..errors import EngineError
from ..validation import ValidationError
from ..decorators import require_admin
from ..services import order_service, tracking_service, checkout_service, audit_service

orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


@orders_bp.post("/track")
def track_order_route():
    """
    Body: {"order_id": "ORD-...", "email": "..."} or {"order_id": "ORD-...", "phone": "..."}

    Contact details are not echoed back.
    """
    data = request.get_json(silent=True) or {}
    try:
        order = tracking_service.find_order(
            data.get("order_id"),
            email=data.get("email"),
            phone=data.get("phone"),
        )
    except EngineError as e:
        return e.to_dict(), e.status_code
    return {"order": order.to_dict(include_contact=False)}, 200


@orders_bp.get("")
@require_admin
def list_orders_route():
    limit = min(max(request.args.get("limit", 50, type=int) or 50, 1), 200)
    offset = max(request.args.get("offset", 0, type=int) or 0, 0)
    try:
        orders, total = order_service.list_orders(status=request.args.get("status"), limit=limit, offset=offset)
    except EngineError as e:
        return e.to_dict(), e.status_code
    return {
        "orders": [o.to_dict() for o in orders],
        "limit": limit,
        "offset": offset,
        "total": total,
    }, 200


@orders_bp.get("/reconciliation")
@require_admin
def unresolved_checkouts_route():
    """Charged-but-unfulfilled checkouts awaiting an operator."""
    checkouts = checkout_service.list_unresolved_checkouts()
    return {"checkouts": [c.to_dict() | {"email": c.email, "phone": c.phone} for c in checkouts]}, 200


@orders_bp.post("/reconciliation/<quote_token>/resolve")
@require_admin
def resolve_checkout_route(quote_token: str):
    data = request.get_json(silent=True) or {}
    try:
        checkout = checkout_service.resolve_checkout(quote_token, actor=g.actor, note=data.get("note"))
    except EngineError as e:
        return e.to_dict(), e.status_code
    except Exception:
        current_app.logger.exception("Failed to resolve checkout")
        return {"error": "Internal server error"}, 500
    return {"checkout": checkout.to_dict()}, 200


@orders_bp.get("/<order_number>")
@require_admin
def get_order_route(order_number: str):
    try:
        order = order_service.get_order(order_number)
    except EngineError as e:
        return e.to_dict(), e.status_code
    return {"order": order.to_dict()}, 200


@orders_bp.get("/<order_number>/history")
@require_admin
def order_history_route(order_number: str):
    """Audit trail of the order: creation and every status change, newest first."""
    try:
        order = order_service.get_order(order_number)
    except EngineError as e:
        return e.to_dict(), e.status_code
    events = audit_service.list_audit_events(entity_type="order", entity_id=order.order_number)
    return {"events": [ev.to_dict() for ev in events]}, 200


@orders_bp.post("/<order_number>/status")
@require_admin
def update_order_status_route(order_number: str):
    """
    Body: {"status": "SHIPPED"} or {"status": "REFUNDED", "restock": true, "reason": "..."}
    """
    data = request.get_json(silent=True) or {}
    try:
        if not data.get("status"):
            raise ValidationError("Missing required fields: status")
        restock = data.get("restock", False)
        if not isinstance(restock, bool):
            raise ValidationError("restock must be a boolean")
        order = order_service.update_status(
            order_number,
            data["status"],
            actor=g.actor,
            restock=restock,
            reason=data.get("reason"),
        )
    except EngineError as e:
        return e.to_dict(), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update order status")
        return {"error": "Internal server error"}, 500
    return {"order": order.to_dict()}, 200
