from __future__ import annotations
from datetime import datetime
from checkout_engine.time_utils import parse_iso_datetime

from dataclasses import dataclass
from typing import Any

from sqlalchemy import Boolean, Integer, String, Text, DateTime
from sqlalchemy.orm import DeclarativeMeta

from .errors import EngineError


# Maximum money amount: 9,999,999.99 (999,999,999 cents)
MAX_AMOUNT_CENTS = 999_999_999

# Percentage coupons are stored in basis points (10000 = 100%)
MAX_PERCENTAGE_BPS = 10_000

COUPON_CODE_MIN_LENGTH = 3
COUPON_CODE_MAX_LENGTH = 20


class ValidationError(EngineError, ValueError):
    """400-level input problem."""
    code = "validation_error"
    status_code = 400


class ConflictError(EngineError, ValueError):
    """409-level business rule conflict (e.g., duplicate coupon code)."""
    code = "conflict"
    status_code = 409


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer:
    - writable_fields: what clients are allowed to set (security boundary)
    - required_on_create: fields required for POST
    """
    writable_fields: set[str]
    required_on_create: set[str] = None  # type: ignore


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    # Integers - strict validation to reject floats and scientific notation
    if isinstance(coltype, Integer):
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        if isinstance(value, str):
            stripped = value.strip()
            if not stripped:
                raise ValidationError(f"{col.key} must be an integer")
            if 'e' in stripped.lower():
                raise ValidationError(f"{col.key} must be a plain integer (scientific notation not allowed)")
            if '.' in stripped:
                raise ValidationError(f"{col.key} must be an integer (no decimals)")
            try:
                return int(stripped)
            except ValueError:
                raise ValidationError(f"{col.key} must be an integer")
        if isinstance(value, float):
            raise ValidationError(f"{col.key} must be an integer, not a decimal")
        raise ValidationError(f"{col.key} must be an integer")

    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        raise ValidationError(f"{col.key} must be a boolean")

    # Datetimes (accept ISO-8601 strings; normalize to UTC)
    if isinstance(coltype, DateTime):
        if isinstance(value, datetime):
            return value
        if isinstance(value, str):
            try:
                dt = parse_iso_datetime(value)
            except ValueError:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
            if dt is None:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
            return dt
        raise ValidationError(f"{col.key} must be a datetime")

    if isinstance(coltype, (String, Text)):
        return str(value).strip()

    return value


def validate_payload(
    *,
    model: DeclarativeMeta,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool,
) -> dict:
    """
    Validates + normalizes incoming JSON against:
    - SQLAlchemy column metadata (nullable, type, String length)
    - a policy allowlist (writable_fields)
    - required_on_create (if partial=False)
    Returns a cleaned patch dict with only writable fields.

    partial=False: create semantics (enforce required_on_create)
    partial=True: patch semantics (validate only provided keys)
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    required = policy.required_on_create or set()
    if not partial:
        missing = sorted(f for f in required if f not in payload)
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    cols = _columns_by_key(model)

    for k in payload.keys():
        if k not in policy.writable_fields:
            raise ValidationError(f"Field not allowed: {k}")
        if k not in cols:
            raise ValidationError(f"Unknown field: {k}")

    patch: dict = {}

    for k, raw in payload.items():
        col = cols[k]

        if raw is None:
            if not col.nullable:
                raise ValidationError(f"{k} cannot be null")
            patch[k] = None
            continue

        val = _coerce_value(col, raw)

        if isinstance(col.type, (String, Text)) and not col.nullable:
            if isinstance(val, str) and val == "":
                raise ValidationError(f"{k} cannot be blank")

        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationError(f"{k} exceeds max length {col.type.length}")

        patch[k] = val

    return patch


def _require_amount(patch: dict, key: str, *, allow_zero: bool = True) -> None:
    value = patch.get(key)
    if value is None:
        return
    if value < 0 or (value == 0 and not allow_zero):
        raise ValidationError(f"{key} must be {'>= 0' if allow_zero else '> 0'}")
    if value > MAX_AMOUNT_CENTS:
        raise ValidationError(f"{key} cannot exceed {MAX_AMOUNT_CENTS}")


def enforce_rules_coupon(patch: dict, *, current=None) -> None:
    """
    Coupon rules that SQLAlchemy metadata cannot express.

    current: the persisted Coupon when validating an update; merged with patch
    so cross-field rules see the effective values.
    """
    def effective(key):
        if key in patch:
            return patch[key]
        return getattr(current, key, None) if current is not None else None

    if "code" in patch:
        code = (patch["code"] or "").strip().upper()
        if not (COUPON_CODE_MIN_LENGTH <= len(code) <= COUPON_CODE_MAX_LENGTH):
            raise ValidationError(
                f"code must be between {COUPON_CODE_MIN_LENGTH} and {COUPON_CODE_MAX_LENGTH} characters"
            )
        patch["code"] = code

    if "coupon_type" in patch:
        patch["coupon_type"] = (patch["coupon_type"] or "").strip().upper()

    coupon_type = effective("coupon_type")
    if coupon_type not in ("PERCENTAGE", "FIXED_AMOUNT"):
        raise ValidationError("coupon_type must be PERCENTAGE or FIXED_AMOUNT")

    value = effective("value")
    if value is None or value <= 0:
        raise ValidationError("value must be > 0")
    if coupon_type == "PERCENTAGE" and value > MAX_PERCENTAGE_BPS:
        raise ValidationError("percentage value cannot exceed 10000 basis points (100%)")
    if coupon_type == "FIXED_AMOUNT" and value > MAX_AMOUNT_CENTS:
        raise ValidationError(f"value cannot exceed {MAX_AMOUNT_CENTS}")

    _require_amount(patch, "min_purchase_cents")
    _require_amount(patch, "max_discount_cents", allow_zero=False)
    if coupon_type != "PERCENTAGE" and effective("max_discount_cents") is not None:
        raise ValidationError("max_discount_cents only applies to PERCENTAGE coupons")

    max_uses = effective("max_uses")
    if max_uses is None or max_uses < 1:
        raise ValidationError("max_uses must be >= 1")
    used_count = getattr(current, "used_count", 0) if current is not None else 0
    if max_uses < used_count:
        raise ValidationError(f"max_uses cannot be lower than used_count ({used_count})")


def enforce_rules_variant_settings(patch: dict) -> None:
    for key in ("low_stock_threshold", "auto_restock_level"):
        if key in patch and patch[key] is not None and patch[key] < 0:
            raise ValidationError(f"{key} must be >= 0")


def enforce_rules_stock_movement(movement_type: str, quantity: int) -> None:
    """
    Sign rules per movement type:
    - SALE / OUTBOUND decrease stock (negative quantity)
    - INBOUND / RETURN increase stock (positive quantity)
    - ADJUSTMENT may go either way but never zero
    """
    if not isinstance(quantity, int) or isinstance(quantity, bool):
        raise ValidationError("quantity must be an integer")
    if movement_type in ("SALE", "OUTBOUND"):
        if quantity >= 0:
            raise ValidationError(f"quantity must be < 0 for {movement_type}")
    elif movement_type in ("INBOUND", "RETURN"):
        if quantity <= 0:
            raise ValidationError(f"quantity must be > 0 for {movement_type}")
    elif movement_type == "ADJUSTMENT":
        if quantity == 0:
            raise ValidationError("quantity must be non-zero for ADJUSTMENT")
    else:
        raise ValidationError(f"Unknown movement type: {movement_type}")
