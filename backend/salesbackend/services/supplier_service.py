# Overview: Supplier CRUD.

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..models import PurchaseOrder, Supplier
from ..models.enums import SupplierStatus
from ..validation import DataIntegrityError, NotFoundError, ValidationError, enforce_enum, enforce_non_empty
from .concurrency import atomic

UPDATABLE_FIELDS = {"name", "contact_person", "email", "phone", "status", "payment_terms", "delivery_terms"}


def get_supplier(supplier_id: int) -> Supplier:
    supplier = db.session.get(Supplier, supplier_id)
    if supplier is None:
        raise NotFoundError("Supplier", supplier_id)
    return supplier


def create_supplier(
    *,
    name: str,
    contact_person: str | None = None,
    email: str | None = None,
    phone: str | None = None,
    payment_terms: str | None = None,
    delivery_terms: str | None = None,
    status=SupplierStatus.ACTIVE,
) -> Supplier:
    enforce_non_empty("name", name)
    status = enforce_enum("status", status, SupplierStatus)
    if db.session.query(Supplier.id).filter(Supplier.name == name).first() is not None:
        raise ValidationError(f"Supplier already exists: {name}", {"field": "name", "value": name})

    with atomic():
        supplier = Supplier(
            name=name,
            contact_person=contact_person,
            email=email,
            phone=phone,
            payment_terms=payment_terms,
            delivery_terms=delivery_terms,
            status=status,
        )
        db.session.add(supplier)
    current_app.logger.info("Created supplier %s", supplier.id)
    return supplier


def update_supplier(supplier_id: int, **changes) -> Supplier:
    unknown = set(changes) - UPDATABLE_FIELDS
    if unknown:
        raise ValidationError(
            f"Cannot update fields: {', '.join(sorted(unknown))}",
            {"fields": sorted(unknown)},
        )
    with atomic():
        supplier = get_supplier(supplier_id)
        if "status" in changes:
            changes["status"] = enforce_enum("status", changes["status"], SupplierStatus)
        for key, value in changes.items():
            setattr(supplier, key, value)
    return supplier


def delete_supplier(supplier_id: int) -> None:
    supplier = get_supplier(supplier_id)
    if db.session.query(PurchaseOrder.id).filter(PurchaseOrder.supplier_id == supplier_id).first() is not None:
        raise DataIntegrityError(
            "Supplier", supplier_id, "purchase orders",
            "Set the supplier INACTIVE instead of deleting it.",
        )
    with atomic():
        db.session.delete(supplier)
    current_app.logger.info("Deleted supplier %s", supplier_id)
