# Overview: Customer CRUD with referential checks on delete.

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..models import Customer, Return, Sale
from ..models.enums import CustomerType
from ..validation import (
    DataIntegrityError,
    NotFoundError,
    ValidationError,
    enforce_enum,
    enforce_non_empty,
)
from .concurrency import atomic

UPDATABLE_FIELDS = {"name", "email", "phone", "address", "customer_type", "is_active"}


def get_customer(customer_id: int) -> Customer:
    customer = db.session.get(Customer, customer_id)
    if customer is None:
        raise NotFoundError("Customer", customer_id)
    return customer


def _ensure_email_free(email: str | None, exclude_id: int | None = None) -> None:
    if not email:
        return
    q = db.session.query(Customer.id).filter(Customer.email == email)
    if exclude_id is not None:
        q = q.filter(Customer.id != exclude_id)
    if q.first() is not None:
        raise ValidationError(f"Email already in use: {email}", {"field": "email", "value": email})


def create_customer(
    *,
    name: str,
    email: str | None = None,
    phone: str | None = None,
    address: str | None = None,
    customer_type=CustomerType.REGULAR,
) -> Customer:
    enforce_non_empty("name", name)
    ctype = enforce_enum("customer_type", customer_type, CustomerType)
    _ensure_email_free(email)

    with atomic():
        customer = Customer(
            name=name.strip(),
            email=email,
            phone=phone,
            address=address,
            customer_type=ctype,
        )
        db.session.add(customer)
    current_app.logger.info("Created customer %s (%s)", customer.id, ctype.value)
    return customer


def update_customer(customer_id: int, **changes) -> Customer:
    unknown = set(changes) - UPDATABLE_FIELDS
    if unknown:
        raise ValidationError(
            f"Cannot update fields: {', '.join(sorted(unknown))}",
            {"fields": sorted(unknown)},
        )

    with atomic():
        customer = get_customer(customer_id)
        if "name" in changes:
            enforce_non_empty("name", changes["name"])
        if "email" in changes:
            _ensure_email_free(changes["email"], exclude_id=customer_id)
        if "customer_type" in changes:
            changes["customer_type"] = enforce_enum("customer_type", changes["customer_type"], CustomerType)
        for key, value in changes.items():
            setattr(customer, key, value)
    return customer


def delete_customer(customer_id: int) -> None:
    customer = get_customer(customer_id)

    if db.session.query(Sale.id).filter(Sale.customer_id == customer_id).first() is not None:
        raise DataIntegrityError(
            "Customer", customer_id, "sales",
            "Deactivate the customer instead of deleting it.",
        )
    if db.session.query(Return.id).filter(Return.customer_id == customer_id).first() is not None:
        raise DataIntegrityError("Customer", customer_id, "returns")

    with atomic():
        db.session.delete(customer)
    current_app.logger.info("Deleted customer %s", customer_id)
