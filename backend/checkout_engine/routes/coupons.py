from __future__ import annotations

from flask import Blueprint, request, current_app

from ..errors import EngineError
from ..validation import ValidationError
from ..decorators import require_admin
from ..services import coupon_service

coupons_bp = Blueprint("coupons", __name__, url_prefix="/api/coupons")


@coupons_bp.post("/validate")
def validate_coupon_route():
    """
    Public: price a coupon against a cart total. Never consumes a use.

    Body: {"code": "SUMMER20", "cart_total_cents": 10000}
    """
    data = request.get_json(silent=True) or {}
    try:
        if "code" not in data or "cart_total_cents" not in data:
            raise ValidationError("Missing required fields: cart_total_cents, code")
        result = coupon_service.validate_coupon(data["code"], data["cart_total_cents"])
    except EngineError as e:
        body = e.to_dict()
        body["valid"] = False
        return body, e.status_code
    return result.to_dict(), 200


@coupons_bp.get("")
@require_admin
def list_coupons_route():
    active_only = request.args.get("active_only", "false").lower() == "true"
    coupons = coupon_service.list_coupons(active_only=active_only)
    return {"coupons": [c.to_dict() for c in coupons]}, 200


@coupons_bp.post("")
@require_admin
def create_coupon_route():
    try:
        coupon = coupon_service.create_coupon(request.get_json(silent=True) or {})
    except EngineError as e:
        return e.to_dict(), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create coupon")
        return {"error": "Internal server error"}, 500
    return {"coupon": coupon.to_dict()}, 201


@coupons_bp.get("/stats/summary")
@require_admin
def coupon_stats_route():
    return coupon_service.get_coupon_stats(), 200


@coupons_bp.get("/<int:coupon_id>")
@require_admin
def get_coupon_route(coupon_id: int):
    try:
        coupon = coupon_service.get_coupon(coupon_id)
    except EngineError as e:
        return e.to_dict(), e.status_code
    return {"coupon": coupon.to_dict()}, 200


@coupons_bp.get("/<int:coupon_id>/redemptions")
@require_admin
def coupon_redemptions_route(coupon_id: int):
    try:
        coupon = coupon_service.get_coupon(coupon_id)
    except EngineError as e:
        return e.to_dict(), e.status_code
    redemptions = coupon_service.list_redemptions(coupon_code=coupon.code)
    return {"redemptions": [r.to_dict() for r in redemptions]}, 200


@coupons_bp.put("/<int:coupon_id>")
@require_admin
def update_coupon_route(coupon_id: int):
    try:
        coupon = coupon_service.update_coupon(coupon_id, request.get_json(silent=True) or {})
    except EngineError as e:
        return e.to_dict(), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update coupon")
        return {"error": "Internal server error"}, 500
    return {"coupon": coupon.to_dict()}, 200


@coupons_bp.delete("/<int:coupon_id>")
@require_admin
def delete_coupon_route(coupon_id: int):
    try:
        coupon_service.delete_coupon(coupon_id)
    except EngineError as e:
        return e.to_dict(), e.status_code
    except Exception:
        current_app.logger.exception("Failed to delete coupon")
        return {"error": "Internal server error"}, 500
    return {"deleted": True}, 200
