from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any

from .money import to_decimal, to_money, to_rate


# Maximum unit price / cost: 9,999,999.99
MAX_MONEY = Decimal("9999999.99")


class EngineError(Exception):
    """
    Base for every business-rule failure raised by the service layer.

    `details` carries enough context (offending field, current vs requested
    value) for a caller to correct and resubmit.
    """

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"error": type(self).__name__, "message": self.message, "details": self.details}


class ValidationError(EngineError, ValueError):
    """400-level input problem."""


class NotFoundError(EngineError, LookupError):
    """Referenced record does not exist."""

    def __init__(self, resource: str, resource_id: Any):
        super().__init__(
            f"{resource} not found with id: {resource_id}",
            {"resource": resource, "resource_id": resource_id},
        )
        self.resource = resource
        self.resource_id = resource_id


class InsufficientStockError(EngineError):
    """Requested quantity exceeds stock on hand."""

    def __init__(self, product_id: int | None, product_name: str, available: int, requested: int):
        super().__init__(
            f"Insufficient stock for product {product_name}. "
            f"Available: {available}, Requested: {requested}",
            {
                "product_id": product_id,
                "product_name": product_name,
                "available": available,
                "requested": requested,
            },
        )
        self.product_id = product_id
        self.product_name = product_name
        self.available = available
        self.requested = requested

    @property
    def user_message(self) -> str:
        if self.available == 0:
            return f"'{self.product_name}' is out of stock."
        if self.available == 1:
            return f"Only 1 unit of '{self.product_name}' is available, but {self.requested} were requested."
        return (
            f"Only {self.available} units of '{self.product_name}' are available, "
            f"but {self.requested} were requested."
        )


class InvalidStateTransitionError(EngineError):
    """409-level lifecycle violation; the aggregate is left unchanged."""

    def __init__(self, entity: str, current_status: str, target_status: str, message: str | None = None):
        super().__init__(
            message or f"Cannot move {entity} from {current_status} to {target_status}",
            {"entity": entity, "current_status": current_status, "target_status": target_status},
        )
        self.entity = entity
        self.current_status = current_status
        self.target_status = target_status


class DataIntegrityError(EngineError):
    """Deleting something that is still referenced."""

    def __init__(
        self,
        resource_type: str,
        resource_id: Any,
        dependent_resource: str,
        suggestion: str | None = None,
    ):
        message = (
            f"Cannot delete {resource_type} with id {resource_id} "
            f"because it has associated {dependent_resource}"
        )
        if suggestion:
            message = f"{message}. {suggestion}"
        super().__init__(
            message,
            {
                "resource_type": resource_type,
                "resource_id": resource_id,
                "dependent_resource": dependent_resource,
                "suggestion": suggestion,
            },
        )
        self.resource_type = resource_type
        self.resource_id = resource_id
        self.dependent_resource = dependent_resource
        self.suggestion = suggestion


# =============================================================================
# FIELD RULES
# =============================================================================

def _as_decimal(field: str, value: Any) -> Decimal:
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number", {"field": field, "value": value})
    try:
        d = to_decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"{field} must be a number", {"field": field, "value": value})
    if not d.is_finite():
        raise ValidationError(f"{field} must be a finite number", {"field": field, "value": str(value)})
    return d


def enforce_positive_int(field: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer", {"field": field, "value": value})
    if value <= 0:
        raise ValidationError(f"{field} must be positive", {"field": field, "value": value})
    return value


def enforce_non_negative_int(field: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer", {"field": field, "value": value})
    if value < 0:
        raise ValidationError(f"{field} cannot be negative", {"field": field, "value": value})
    return value


def enforce_positive_money(field: str, value: Any) -> Decimal:
    amount = _as_decimal(field, value)
    if amount <= 0:
        raise ValidationError(f"{field} must be greater than 0", {"field": field, "value": str(amount)})
    if amount > MAX_MONEY:
        raise ValidationError(f"{field} cannot exceed {MAX_MONEY}", {"field": field, "value": str(amount)})
    return to_money(amount)


def enforce_non_negative_money(field: str, value: Any) -> Decimal:
    if value is None:
        return to_money(0)
    amount = _as_decimal(field, value)
    if amount < 0:
        raise ValidationError(f"{field} cannot be negative", {"field": field, "value": str(amount)})
    if amount > MAX_MONEY:
        raise ValidationError(f"{field} cannot exceed {MAX_MONEY}", {"field": field, "value": str(amount)})
    return to_money(amount)


def enforce_percentage(field: str, value: Any) -> Decimal:
    if value is None:
        return to_rate(0)
    pct = _as_decimal(field, value)
    if pct < 0 or pct > 100:
        raise ValidationError(f"{field} must be between 0 and 100", {"field": field, "value": str(pct)})
    return to_rate(pct)


def enforce_non_empty(field: str, value: Any) -> None:
    if not value:
        raise ValidationError(f"{field} is required", {"field": field})


def enforce_enum(field: str, value: Any, enum_cls):
    """Coerce a string into enum_cls or raise ValidationError."""
    if value is None:
        raise ValidationError(f"{field} is required", {"field": field})
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).upper())
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(
            f"Invalid {field} '{value}'. Must be one of: {allowed}",
            {"field": field, "value": value},
        )
