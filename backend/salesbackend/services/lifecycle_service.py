# Overview: Status state machines for the sale, purchase-order and return aggregates.

"""
Document Lifecycle Rules

================================================================================
PURPOSE: One table of legal status moves per aggregate, checked before any
         service mutates an order.
================================================================================

SALE:
    PENDING -> COMPLETED
    PENDING -> CANCELLED
    (payment_status / delivery_status evolve independently of this field)

PURCHASE ORDER:
    PENDING -> APPROVED -> SENT -> DELIVERED
    PENDING | APPROVED -> CANCELLED

RETURN:
    PENDING -> APPROVED -> REFUNDED | EXCHANGED
    PENDING -> REJECTED
    PENDING -> CANCELLED

RULES:
1. Cannot skip states (PENDING -> SENT is forbidden for a purchase order)
2. Cannot reverse states
3. Terminal states have no outgoing moves
4. Same-state "transitions" are rejected; callers must not re-run side effects
================================================================================
"""

from __future__ import annotations

from ..models.enums import PurchaseOrderStatus, ReturnStatus, SaleStatus, coerce, ensure_exhaustive
from ..validation import InvalidStateTransitionError


SALE_TRANSITIONS = ensure_exhaustive({
    SaleStatus.PENDING: {SaleStatus.COMPLETED, SaleStatus.CANCELLED},
    SaleStatus.COMPLETED: set(),
    SaleStatus.CANCELLED: set(),
}, SaleStatus, "SALE_TRANSITIONS")

PURCHASE_ORDER_TRANSITIONS = ensure_exhaustive({
    PurchaseOrderStatus.PENDING: {PurchaseOrderStatus.APPROVED, PurchaseOrderStatus.CANCELLED},
    PurchaseOrderStatus.APPROVED: {PurchaseOrderStatus.SENT, PurchaseOrderStatus.CANCELLED},
    PurchaseOrderStatus.SENT: {PurchaseOrderStatus.DELIVERED},
    PurchaseOrderStatus.DELIVERED: set(),
    PurchaseOrderStatus.CANCELLED: set(),
}, PurchaseOrderStatus, "PURCHASE_ORDER_TRANSITIONS")

RETURN_TRANSITIONS = ensure_exhaustive({
    ReturnStatus.PENDING: {ReturnStatus.APPROVED, ReturnStatus.REJECTED, ReturnStatus.CANCELLED},
    ReturnStatus.APPROVED: {ReturnStatus.REFUNDED, ReturnStatus.EXCHANGED},
    ReturnStatus.REJECTED: set(),
    ReturnStatus.REFUNDED: set(),
    ReturnStatus.EXCHANGED: set(),
    ReturnStatus.CANCELLED: set(),
}, ReturnStatus, "RETURN_TRANSITIONS")

_MACHINES = {
    "Sale": (SaleStatus, SALE_TRANSITIONS),
    "PurchaseOrder": (PurchaseOrderStatus, PURCHASE_ORDER_TRANSITIONS),
    "Return": (ReturnStatus, RETURN_TRANSITIONS),
}


def can_transition(entity: str, from_status, to_status) -> bool:
    """Check a move against the entity's table. Unknown entity -> KeyError."""
    status_enum, table = _MACHINES[entity]
    return coerce(status_enum, to_status) in table[coerce(status_enum, from_status)]


def is_terminal(entity: str, status) -> bool:
    status_enum, table = _MACHINES[entity]
    return not table[coerce(status_enum, status)]


def ensure_transition(entity: str, obj, to_status, message: str | None = None) -> None:
    """
    Raise InvalidStateTransitionError unless obj.status -> to_status is legal.

    Leaves obj untouched either way; the caller assigns the new status after
    its side effects succeed.
    """
    if not can_transition(entity, obj.status, to_status):
        status_enum, _ = _MACHINES[entity]
        current = coerce(status_enum, obj.status).value
        target = coerce(status_enum, to_status).value
        raise InvalidStateTransitionError(
            entity,
            current,
            target,
            message or f"Cannot move {entity} {obj.id} from {current} to {target}",
        )
