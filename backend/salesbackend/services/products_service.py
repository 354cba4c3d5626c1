# Overview: Product master CRUD; stock itself is changed only through stock_service.

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..models import Product, PurchaseOrderItem, ReturnItem, SaleItem
from ..validation import (
    DataIntegrityError,
    NotFoundError,
    ValidationError,
    enforce_non_empty,
    enforce_non_negative_int,
    enforce_non_negative_money,
    enforce_positive_money,
)
from .concurrency import atomic

UPDATABLE_FIELDS = {
    "name", "description", "category", "unit_price", "cost_price",
    "min_stock_level", "max_stock_level", "reorder_point", "reorder_quantity", "is_active",
}


def get_product(product_id: int) -> Product:
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFoundError("Product", product_id)
    return product


def get_product_by_sku(sku: str) -> Product:
    product = db.session.query(Product).filter(Product.sku == sku).first()
    if product is None:
        raise NotFoundError("Product", sku)
    return product


def _validate_levels(min_level: int, max_level: int, reorder_point: int) -> None:
    enforce_non_negative_int("min_stock_level", min_level)
    enforce_non_negative_int("max_stock_level", max_level)
    enforce_non_negative_int("reorder_point", reorder_point)
    if max_level < min_level:
        raise ValidationError(
            "max_stock_level cannot be below min_stock_level",
            {"field": "max_stock_level", "min_stock_level": min_level, "max_stock_level": max_level},
        )


def create_product(
    *,
    sku: str,
    name: str,
    unit_price,
    cost_price=0,
    category: str | None = None,
    description: str | None = None,
    stock_quantity: int = 0,
    min_stock_level: int | None = None,
    max_stock_level: int = 1000,
    reorder_point: int | None = None,
    reorder_quantity: int | None = None,
) -> Product:
    enforce_non_empty("sku", sku)
    enforce_non_empty("name", name)
    price = enforce_positive_money("unit_price", unit_price)
    cost = enforce_non_negative_money("cost_price", cost_price)
    enforce_non_negative_int("stock_quantity", stock_quantity)

    config = current_app.config
    if min_stock_level is None:
        min_stock_level = config.get("DEFAULT_MIN_STOCK_LEVEL", 5)
    if reorder_point is None:
        reorder_point = config.get("DEFAULT_REORDER_POINT", 10)
    _validate_levels(min_stock_level, max_stock_level, reorder_point)

    if db.session.query(Product.id).filter(Product.sku == sku).first() is not None:
        raise ValidationError(f"SKU already exists: {sku}", {"field": "sku", "value": sku})

    with atomic():
        product = Product(
            sku=sku.strip(),
            name=name.strip(),
            description=description,
            category=category,
            unit_price=price,
            cost_price=cost,
            stock_quantity=stock_quantity,
            min_stock_level=min_stock_level,
            max_stock_level=max_stock_level,
            reorder_point=reorder_point,
            reorder_quantity=reorder_quantity,
        )
        db.session.add(product)
    current_app.logger.info("Created product %s sku=%s stock=%d", product.id, product.sku, stock_quantity)
    return product


def update_product(product_id: int, **changes) -> Product:
    unknown = set(changes) - UPDATABLE_FIELDS
    if unknown:
        raise ValidationError(
            f"Cannot update fields: {', '.join(sorted(unknown))}",
            {"fields": sorted(unknown)},
        )

    with atomic():
        product = get_product(product_id)
        if "unit_price" in changes:
            changes["unit_price"] = enforce_positive_money("unit_price", changes["unit_price"])
        if "cost_price" in changes:
            changes["cost_price"] = enforce_non_negative_money("cost_price", changes["cost_price"])
        _validate_levels(
            changes.get("min_stock_level", product.min_stock_level),
            changes.get("max_stock_level", product.max_stock_level),
            changes.get("reorder_point", product.reorder_point),
        )
        for key, value in changes.items():
            setattr(product, key, value)
    return product


def delete_product(product_id: int) -> None:
    product = get_product(product_id)

    dependents = (
        (SaleItem, "sale history"),
        (PurchaseOrderItem, "purchase orders"),
        (ReturnItem, "returns"),
    )
    for model, label in dependents:
        if db.session.query(model.id).filter(model.product_id == product_id).first() is not None:
            raise DataIntegrityError(
                "Product", product_id, label,
                "Deactivate the product instead of deleting it.",
            )

    with atomic():
        db.session.delete(product)
    current_app.logger.info("Deleted product %s", product_id)
