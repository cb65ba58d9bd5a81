# backend/checkout_engine/routes/checkout.py
"""
Public checkout routes.

Flow:
1. POST /api/checkout/quote                 -> priced snapshot + quote_token
2. POST /api/checkout/<token>/payment       -> payment created at the processor
3. (processor confirms the payment)
4. POST /api/checkout/commit                -> order, exactly once per payment_reference

The client never sends an amount; totals always come from the stored quote.
"""
from flask import Blueprint, request, current_app, abort

from ..errors import EngineError
from ..validation import ValidationError
from ..services import checkout_service
from ..services.payment_gateway import SimulatedPaymentGateway, get_payment_gateway

checkout_bp = Blueprint("checkout", __name__, url_prefix="/api/checkout")


@checkout_bp.post("/quote")
def quote_route():
    """
    Body:
    {
      "items": [{"variant_id": 1, "quantity": 2} | {"product_id": 1, "size": "M", "quantity": 1}],
      "coupon_code": "SUMMER20",
      "customer": {"email": "...", "phone": "...", "shipping_address": {...}}
    }
    """
    data = request.get_json(silent=True) or {}
    try:
        checkout = checkout_service.quote(
            data.get("items"),
            coupon_code=data.get("coupon_code") or None,
            customer=data.get("customer"),
        )
    except EngineError as e:
        return e.to_dict(), e.status_code
    except Exception:
        current_app.logger.exception("Failed to quote checkout")
        return {"error": "Internal server error"}, 500

    return {"checkout": checkout.to_dict()}, 201


@checkout_bp.get("/<quote_token>")
def get_checkout_route(quote_token: str):
    try:
        checkout = checkout_service.get_checkout(quote_token)
    except EngineError as e:
        return e.to_dict(), e.status_code
    return {"checkout": checkout.to_dict()}, 200


@checkout_bp.post("/<quote_token>/payment")
def request_payment_route(quote_token: str):
    data = request.get_json(silent=True) or {}
    try:
        checkout, payment = checkout_service.request_payment(quote_token, customer=data.get("customer"))
    except EngineError as e:
        return e.to_dict(), e.status_code
    except Exception:
        current_app.logger.exception("Failed to request payment")
        return {"error": "Internal server error"}, 500

    return {
        "checkout": checkout.to_dict(),
        "payment": payment.to_dict() if payment is not None else None,
    }, 201


@checkout_bp.post("/commit")
def commit_route():
    """
    Body: {"payment_reference": "...", "quote_token": "..."}

    Replays return the same order.
    """
    data = request.get_json(silent=True) or {}
    try:
        missing = [f for f in ("payment_reference", "quote_token") if not data.get(f)]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")
        order = checkout_service.commit(data["payment_reference"], data["quote_token"])
    except EngineError as e:
        return e.to_dict(), e.status_code
    except Exception:
        current_app.logger.exception("Failed to commit checkout")
        return {"error": "Internal server error"}, 500

    return {"order": order.to_dict()}, 201


@checkout_bp.post("/simulated-payments/<reference>/<action>")
def simulated_payment_route(reference: str, action: str):
    """Development stand-in for the processor webhook. Only with the simulated gateway."""
    gateway = get_payment_gateway()
    if not isinstance(gateway, SimulatedPaymentGateway) or action not in ("confirm", "fail"):
        abort(404)
    try:
        payment = gateway.confirm(reference) if action == "confirm" else gateway.fail(reference)
    except EngineError as e:
        return e.to_dict(), 404
    return {"payment": payment.to_dict()}, 200
