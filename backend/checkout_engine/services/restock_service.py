# Overview: Read-only restock advisor; low-stock alerts, reports and replenishment suggestions.

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from ..extensions import db
from ..models import Product, StockVariant, StockMovement
from ..time_utils import utcnow
from .stock_service import effective_threshold
"""
Restock Advisor Invariants (authoritative)

- Pure reads: nothing here writes stock, movements or settings.
- Alert: current_stock <= threshold is "low"; current_stock == 0 is "out".
- Suggestion: auto_restock_enabled and current_stock < threshold
    -> quantity = max(0, auto_restock_level - current_stock).
  A variant without auto_restock_level gets no suggestion (alert only).
- A variant without low_stock_threshold uses DEFAULT_LOW_STOCK_THRESHOLD.
- Stats count a product once, as "out" when any variant is out, else "low"
  when any variant is low.
"""

LEVEL_LOW = "low"
LEVEL_OUT = "out"


@dataclass(frozen=True)
class StockAlert:
    variant: StockVariant
    threshold: int
    level: str

    def to_dict(self) -> dict:
        return {
            "variant_id": self.variant.id,
            "product_id": self.variant.product_id,
            "variant_key": self.variant.variant_key,
            "current_stock": self.variant.current_stock,
            "threshold": self.threshold,
            "level": self.level,
        }


@dataclass(frozen=True)
class RestockSuggestion:
    variant: StockVariant
    threshold: int
    target_level: int
    suggested_quantity: int

    def to_dict(self) -> dict:
        return {
            "variant_id": self.variant.id,
            "product_id": self.variant.product_id,
            "variant_key": self.variant.variant_key,
            "current_stock": self.variant.current_stock,
            "threshold": self.threshold,
            "auto_restock_level": self.target_level,
            "suggested_quantity": self.suggested_quantity,
        }


def classify(variant: StockVariant) -> str | None:
    """Alert level for one variant, or None when stock is healthy."""
    if variant.current_stock == 0:
        return LEVEL_OUT
    if variant.current_stock <= effective_threshold(variant):
        return LEVEL_LOW
    return None


def suggest_quantity(variant: StockVariant) -> int | None:
    if not variant.auto_restock_enabled or variant.auto_restock_level is None:
        return None
    if variant.current_stock >= effective_threshold(variant):
        return None
    return max(0, variant.auto_restock_level - variant.current_stock)


def _variants(product_id: int | None = None) -> list[StockVariant]:
    q = db.session.query(StockVariant)
    if product_id is not None:
        q = q.filter(StockVariant.product_id == product_id)
    return q.order_by(StockVariant.current_stock.asc(), StockVariant.id.asc()).all()


def get_stock_alerts(*, product_id: int | None = None) -> list[StockAlert]:
    alerts = []
    for variant in _variants(product_id):
        level = classify(variant)
        if level is not None:
            alerts.append(StockAlert(variant=variant, threshold=effective_threshold(variant), level=level))
    return alerts


def get_restock_suggestions(*, product_id: int | None = None) -> list[RestockSuggestion]:
    suggestions = []
    for variant in _variants(product_id):
        qty = suggest_quantity(variant)
        if qty is None:
            continue
        suggestions.append(
            RestockSuggestion(
                variant=variant,
                threshold=effective_threshold(variant),
                target_level=variant.auto_restock_level,
                suggested_quantity=qty,
            )
        )
    return suggestions


def get_low_stock_report() -> list[dict]:
    """
    Products with at least one low or out-of-stock variant.

    One entry per product, most urgent (lowest total stock) first.
    """
    report: dict[int, dict] = {}
    for alert in get_stock_alerts():
        variant = alert.variant
        entry = report.get(variant.product_id)
        if entry is None:
            product = db.session.get(Product, variant.product_id)
            entry = {
                "product_id": variant.product_id,
                "sku": product.sku if product else None,
                "name": product.name if product else None,
                "total_stock": 0,
                "low_stock_variants": [],
                "out_of_stock_variants": [],
            }
            report[variant.product_id] = entry
        bucket = "out_of_stock_variants" if alert.level == LEVEL_OUT else "low_stock_variants"
        entry[bucket].append(alert.to_dict())

    for product_id, entry in report.items():
        total = (
            db.session.query(db.func.coalesce(db.func.sum(StockVariant.current_stock), 0))
            .filter(StockVariant.product_id == product_id)
            .scalar()
        )
        entry["total_stock"] = int(total or 0)

    return sorted(report.values(), key=lambda e: (e["total_stock"], e["product_id"]))


def get_inventory_stats(*, now: datetime | None = None, recent_limit: int = 5, window_days: int = 30) -> dict:
    """Dashboard summary: product counts, stock value, latest movements and 30-day totals per type."""
    now = now or utcnow()

    levels: dict[int, set] = {}
    stock_value = 0
    rows = (
        db.session.query(StockVariant, Product.price_cents)
        .join(Product, Product.id == StockVariant.product_id)
        .all()
    )
    for variant, price_cents in rows:
        stock_value += variant.current_stock * price_cents
        level = classify(variant)
        if level is not None:
            levels.setdefault(variant.product_id, set()).add(level)

    out_count = sum(1 for found in levels.values() if LEVEL_OUT in found)
    low_count = len(levels) - out_count

    recent = (
        db.session.query(StockMovement)
        .order_by(StockMovement.created_at.desc(), StockMovement.id.desc())
        .limit(recent_limit)
        .all()
    )

    by_type = (
        db.session.query(
            StockMovement.type,
            db.func.count(StockMovement.id),
            db.func.coalesce(db.func.sum(StockMovement.quantity), 0),
        )
        .filter(StockMovement.created_at >= now - timedelta(days=window_days))
        .group_by(StockMovement.type)
        .order_by(StockMovement.type.asc())
        .all()
    )

    return {
        "total_products": db.session.query(Product).count(),
        "low_stock_count": low_count,
        "out_of_stock_count": out_count,
        "total_stock_value_cents": stock_value,
        "recent_movements": [m.to_dict() for m in recent],
        "movements_by_type": [
            {"type": movement_type, "count": int(count), "total_quantity": int(total)}
            for movement_type, count, total in by_type
        ],
    }
