# backend/checkout_engine/routes/inventory.py
"""
Inventory administration routes.

SECURITY: All routes require the admin token.

Stock is never written directly: every change is a movement through the
stock guard. SALE movements are reserved for checkout and cannot be posted here.

Time semantics:
- API accepts ISO-8601 datetimes with Z/offsets; backend normalizes to UTC-naive internally.
- start/end filtering is inclusive.
"""
from flask import Blueprint, request, current_app, g

from ..models import StockVariant, StockMovement
from ..models.stock import MOVEMENT_SALE
from ..errors import EngineError
from ..time_utils import parse_iso_datetime
from ..validation import (
    ModelValidationPolicy,
    validate_payload,
    ValidationError,
    enforce_rules_variant_settings,
)
from ..decorators import require_admin
from ..services import catalog_service, stock_service, restock_service


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")

VARIANT_CREATE_POLICY = ModelValidationPolicy(
    writable_fields={
        "product_id",
        "size",
        "color",
        "material",
        "low_stock_threshold",
        "auto_restock_enabled",
        "auto_restock_level",
    },
    required_on_create={"product_id", "size"},
)

VARIANT_SETTINGS_POLICY = ModelValidationPolicy(
    writable_fields={"low_stock_threshold", "auto_restock_enabled", "auto_restock_level"},
)

MOVEMENT_POLICY = ModelValidationPolicy(
    writable_fields={"type", "quantity", "reason", "idempotency_key"},
    required_on_create={"type", "quantity"},
)

MAX_PAGE_SIZE = 200


def _page_args() -> tuple[int, int]:
    page = request.args.get("page", 1, type=int) or 1
    limit = request.args.get("limit", 50, type=int) or 50
    return max(page, 1), min(max(limit, 1), MAX_PAGE_SIZE)


def _date_arg(name: str):
    raw = request.args.get(name)
    if not raw:
        return None
    try:
        return parse_iso_datetime(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an ISO-8601 datetime")


@inventory_bp.get("/variants")
@require_admin
def list_variants_route():
    product_id = request.args.get("product_id", type=int)
    variants = catalog_service.list_variants(product_id=product_id)
    return {"variants": [v.to_dict() for v in variants]}, 200


@inventory_bp.post("/variants")
@require_admin
def create_variant_route():
    """
    Register a variant. Optional initial_stock is booked as an INBOUND movement.
    """
    payload = dict(request.get_json(silent=True) or {})
    initial_stock = payload.pop("initial_stock", None)

    try:
        patch = validate_payload(
            model=StockVariant,
            payload=payload,
            policy=VARIANT_CREATE_POLICY,
            partial=False,
        )
        enforce_rules_variant_settings(patch)
        if initial_stock is not None and (not isinstance(initial_stock, int) or isinstance(initial_stock, bool) or initial_stock < 0):
            raise ValidationError("initial_stock must be a non-negative integer")

        variant = catalog_service.create_variant(**patch)
        if initial_stock:
            stock_service.reserve_and_commit(
                variant_id=variant.id,
                quantity=initial_stock,
                movement_type="INBOUND",
                reason="Initial stock",
                actor=g.actor,
            )
            variant = catalog_service.get_variant(variant.id)
    except EngineError as e:
        return e.to_dict(), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create variant")
        return {"error": "Internal server error"}, 500

    return {"variant": variant.to_dict()}, 201


@inventory_bp.put("/variants/<int:variant_id>/settings")
@require_admin
def update_variant_settings_route(variant_id: int):
    payload = request.get_json(silent=True) or {}
    try:
        patch = validate_payload(
            model=StockVariant,
            payload=payload,
            policy=VARIANT_SETTINGS_POLICY,
            partial=True,
        )
        enforce_rules_variant_settings(patch)
        variant = catalog_service.update_variant_settings(variant_id, patch)
    except EngineError as e:
        return e.to_dict(), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update variant settings")
        return {"error": "Internal server error"}, 500

    return {"variant": variant.to_dict()}, 200


@inventory_bp.post("/variants/<int:variant_id>/movements")
@require_admin
def create_movement_route(variant_id: int):
    """
    Post a manual movement (receiving, shrink, corrections, returns).

    Body: {"type": "INBOUND", "quantity": 10, "reason": "...", "idempotency_key": "..."}
    """
    payload = request.get_json(silent=True) or {}
    try:
        patch = validate_payload(
            model=StockMovement,
            payload=payload,
            policy=MOVEMENT_POLICY,
            partial=False,
        )
        movement_type = patch["type"].upper()
        if movement_type == MOVEMENT_SALE:
            raise ValidationError("SALE movements are created by checkout only")

        movement = stock_service.reserve_and_commit(
            variant_id=variant_id,
            quantity=patch["quantity"],
            movement_type=movement_type,
            reason=patch.get("reason"),
            idempotency_key=patch.get("idempotency_key") or None,
            actor=g.actor,
        )
        variant = catalog_service.get_variant(variant_id)
    except EngineError as e:
        return e.to_dict(), e.status_code
    except Exception:
        current_app.logger.exception("Failed to post stock movement")
        return {"error": "Internal server error"}, 500

    return {"movement": movement.to_dict(), "variant": variant.to_dict()}, 201


@inventory_bp.get("/variants/<int:variant_id>/movements")
@require_admin
def variant_movements_route(variant_id: int):
    page, limit = _page_args()
    try:
        catalog_service.get_variant(variant_id)
        movements, total = stock_service.list_movements(variant_id=variant_id, page=page, limit=limit)
    except EngineError as e:
        return e.to_dict(), e.status_code

    return {
        "movements": [m.to_dict() for m in movements],
        "page": page,
        "limit": limit,
        "total": total,
    }, 200


@inventory_bp.get("/variants/<int:variant_id>/ledger")
@require_admin
def verify_ledger_route(variant_id: int):
    try:
        report = stock_service.verify_ledger(variant_id)
    except EngineError as e:
        return e.to_dict(), e.status_code
    return report.to_dict(), 200


@inventory_bp.post("/variants/<int:variant_id>/ledger/reconcile")
@require_admin
def reconcile_ledger_route(variant_id: int):
    try:
        report = stock_service.reconcile_variant(variant_id, actor=g.actor)
    except EngineError as e:
        return e.to_dict(), e.status_code
    except Exception:
        current_app.logger.exception("Failed to reconcile variant ledger")
        return {"error": "Internal server error"}, 500
    return report.to_dict(), 200


@inventory_bp.get("/movements")
@require_admin
def list_movements_route():
    page, limit = _page_args()
    try:
        movements, total = stock_service.list_movements(
            variant_id=request.args.get("variant_id", type=int),
            product_id=request.args.get("product_id", type=int),
            movement_type=(request.args.get("type") or "").upper() or None,
            start=_date_arg("start"),
            end=_date_arg("end"),
            page=page,
            limit=limit,
        )
    except EngineError as e:
        return e.to_dict(), e.status_code

    return {
        "movements": [m.to_dict() for m in movements],
        "page": page,
        "limit": limit,
        "total": total,
    }, 200


@inventory_bp.get("/low-stock")
@require_admin
def low_stock_route():
    return {"products": restock_service.get_low_stock_report()}, 200


@inventory_bp.get("/stats")
@require_admin
def inventory_stats_route():
    return restock_service.get_inventory_stats(), 200


@inventory_bp.get("/alerts")
@require_admin
def alerts_route():
    product_id = request.args.get("product_id", type=int)
    alerts = restock_service.get_stock_alerts(product_id=product_id)
    return {"alerts": [a.to_dict() for a in alerts]}, 200


@inventory_bp.get("/restock-suggestions")
@require_admin
def restock_suggestions_route():
    product_id = request.args.get("product_id", type=int)
    suggestions = restock_service.get_restock_suggestions(product_id=product_id)
    return {"suggestions": [s.to_dict() for s in suggestions]}, 200
