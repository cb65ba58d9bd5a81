# Overview: Catalog boundary; unit prices, variant keys and variant configuration.

"""
Catalog boundary.

The catalog itself (product CRUD, images) is an external collaborator.
This module is the narrow contract the engine reads through:
- current unit price of a product (never cached beyond one quote)
- the variant keys a product can be sold in

It also exposes the admin contracts for StockVariant configuration
(threshold / auto-restock). Stock levels are NOT writable here; the only
way to change stock is a movement through stock_service.
"""

from __future__ import annotations

from ..extensions import db
from ..models import Product, StockVariant
from ..errors import VariantNotFoundError
from ..validation import ValidationError, ConflictError
from .concurrency import begin_write, lock_for_update, run_with_retry


VARIANT_KEY_SEPARATOR = "/"
VARIANT_KEY_EMPTY = "-"


def make_variant_key(size: str, color: str | None = None, material: str | None = None) -> str:
    """
    Normalize (size, color, material) into a stable key: "m/red/-".

    Parts are trimmed and lower-cased; absent parts become "-".
    """
    if size is None or not str(size).strip():
        raise ValidationError("size is required")

    parts = []
    for part in (size, color, material):
        value = str(part).strip().lower() if part is not None else ""
        if VARIANT_KEY_SEPARATOR in value:
            raise ValidationError(f"variant attributes cannot contain '{VARIANT_KEY_SEPARATOR}'")
        parts.append(value or VARIANT_KEY_EMPTY)
    return VARIANT_KEY_SEPARATOR.join(parts)


def get_product(product_id: int, *, require_active: bool = False) -> Product:
    product = db.session.query(Product).filter_by(id=product_id).first()
    if product is None:
        raise VariantNotFoundError(f"Product {product_id} not found")
    if require_active and not product.is_active:
        raise VariantNotFoundError(f"Product {product.name} is no longer available")
    return product


def get_variant(variant_id: int) -> StockVariant:
    variant = db.session.query(StockVariant).filter_by(id=variant_id).first()
    if variant is None:
        raise VariantNotFoundError(f"Variant {variant_id} not found")
    return variant


def find_variant(product_id: int, variant_key: str) -> StockVariant:
    variant = (
        db.session.query(StockVariant)
        .filter_by(product_id=product_id, variant_key=variant_key)
        .first()
    )
    if variant is None:
        raise VariantNotFoundError(
            f"Variant {variant_key} is not available for product {product_id}",
            details={"product_id": product_id, "variant_key": variant_key},
        )
    return variant


def create_product(*, sku: str, name: str, price_cents: int, is_active: bool = True) -> Product:
    """Seed helper for the catalog boundary (CLI and tests)."""
    if price_cents is None or price_cents < 0:
        raise ValidationError("price_cents must be >= 0")
    if db.session.query(Product).filter_by(sku=sku).first():
        raise ConflictError(f"Product with SKU {sku} already exists")
    product = Product(sku=sku, name=name, price_cents=price_cents, is_active=is_active)
    db.session.add(product)
    db.session.commit()
    return product


def create_variant(
    *,
    product_id: int,
    size: str,
    color: str | None = None,
    material: str | None = None,
    low_stock_threshold: int | None = None,
    auto_restock_enabled: bool = False,
    auto_restock_level: int | None = None,
) -> StockVariant:
    """
    Register a sellable variant with zero stock.

    Initial stock must be booked as an INBOUND movement so it shows up in the ledger.
    """
    get_product(product_id)
    variant_key = make_variant_key(size, color, material)

    existing = db.session.query(StockVariant).filter_by(product_id=product_id, variant_key=variant_key).first()
    if existing:
        raise ConflictError(f"Variant {variant_key} already exists for product {product_id}")

    variant = StockVariant(
        product_id=product_id,
        size=size.strip(),
        color=color.strip() if color else None,
        material=material.strip() if material else None,
        variant_key=variant_key,
        current_stock=0,
        last_sequence=0,
        low_stock_threshold=low_stock_threshold,
        auto_restock_enabled=auto_restock_enabled,
        auto_restock_level=auto_restock_level,
    )
    db.session.add(variant)
    db.session.commit()
    return variant


def update_variant_settings(variant_id: int, patch: dict) -> StockVariant:
    """Admin contract: threshold and auto-restock configuration only."""
    def _op():
        begin_write()
        variant = lock_for_update(db.session.query(StockVariant).filter_by(id=variant_id)).first()
        if variant is None:
            raise VariantNotFoundError(f"Variant {variant_id} not found")
        for key in ("low_stock_threshold", "auto_restock_enabled", "auto_restock_level"):
            if key in patch:
                setattr(variant, key, patch[key])
        db.session.commit()
        return variant

    return run_with_retry(_op, label="variant settings update")


def list_variants(*, product_id: int | None = None) -> list[StockVariant]:
    q = db.session.query(StockVariant)
    if product_id is not None:
        q = q.filter_by(product_id=product_id)
    return q.order_by(StockVariant.product_id, StockVariant.variant_key).all()
