# Overview: Domain error taxonomy shared by services and routes.

"""
Engine errors.

Every failure a caller can act on is an EngineError with:
- a human-readable message (shown to the shopper or the operator)
- a stable machine code (lets the client decide to re-quote, retry, etc.)
- an HTTP status used by the API layer
- optional structured details
"""

from __future__ import annotations


class EngineError(Exception):
    """Base class for all expected engine failures."""
    code = "engine_error"
    status_code = 400

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code, "details": self.details}


# =============================================================================
# STOCK
# =============================================================================

class VariantNotFoundError(EngineError):
    code = "variant_not_found"
    status_code = 404


class InsufficientStockError(EngineError):
    """Movement would drive a variant below zero. Not retryable with the same quantity."""
    code = "insufficient_stock"
    status_code = 409


class ConcurrencyConflictError(EngineError):
    """Bounded retry budget exhausted on a contended row."""
    code = "concurrency_conflict"
    status_code = 409


# =============================================================================
# COUPONS
# =============================================================================

class CouponError(EngineError):
    code = "invalid_coupon"


class CouponNotFoundError(CouponError):
    code = "coupon_not_found"
    status_code = 404


class CouponExpiredError(CouponError):
    code = "coupon_expired"


class CouponExhaustedError(CouponError):
    code = "coupon_exhausted"
    status_code = 409


class CouponMinimumNotMetError(CouponError):
    code = "coupon_minimum_not_met"


# =============================================================================
# CHECKOUT / PAYMENT
# =============================================================================

class QuoteNotFoundError(EngineError):
    code = "quote_not_found"
    status_code = 404


class QuoteExpiredError(EngineError):
    code = "quote_expired"
    status_code = 410


class PaymentMismatchError(EngineError):
    """Payment is unconfirmed or does not match the quote. Fatal, never retried."""
    code = "payment_mismatch"
    status_code = 402


class PaymentGatewayError(EngineError):
    code = "payment_gateway_error"
    status_code = 502


class StockUnavailableError(EngineError):
    """Charged but unfulfilled: stock ran out after payment was confirmed."""
    code = "stock_unavailable"
    status_code = 409


# =============================================================================
# ORDERS
# =============================================================================

class OrderNotFoundError(EngineError):
    code = "order_not_found"
    status_code = 404


class UnauthorizedLookupError(EngineError):
    code = "unauthorized_lookup"
    status_code = 401


class InvalidStatusTransitionError(EngineError):
    code = "invalid_status_transition"
    status_code = 409


ERRORS_BY_CODE = {
    cls.code: cls
    for cls in (
        InsufficientStockError,
        CouponNotFoundError,
        CouponExpiredError,
        CouponExhaustedError,
        CouponMinimumNotMetError,
        QuoteExpiredError,
        StockUnavailableError,
        PaymentMismatchError,
    )
}


def error_from_code(code: str, message: str, details: dict | None = None) -> EngineError:
    """Rebuild a recorded failure (e.g. an aborted checkout replayed by the client)."""
    cls = ERRORS_BY_CODE.get(code, EngineError)
    return cls(message, details=details)
