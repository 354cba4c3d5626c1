import pytest

from salesbackend.models.enums import PurchaseOrderStatus, ReturnStatus, SaleStatus
from salesbackend.services.lifecycle_service import (
    PURCHASE_ORDER_TRANSITIONS,
    RETURN_TRANSITIONS,
    SALE_TRANSITIONS,
    can_transition,
    ensure_transition,
    is_terminal,
)
from salesbackend.validation import InvalidStateTransitionError


class _Doc:
    def __init__(self, status):
        self.id = 1
        self.status = status


@pytest.mark.parametrize("entity, from_status, to_status, allowed", [
    ("Sale", "PENDING", "COMPLETED", True),
    ("Sale", "PENDING", "CANCELLED", True),
    ("Sale", "COMPLETED", "CANCELLED", False),
    ("Sale", "CANCELLED", "PENDING", False),
    ("PurchaseOrder", "PENDING", "SENT", False),
    ("PurchaseOrder", "APPROVED", "SENT", True),
    ("PurchaseOrder", "APPROVED", "CANCELLED", True),
    ("PurchaseOrder", "SENT", "CANCELLED", False),
    ("PurchaseOrder", "SENT", "DELIVERED", True),
    ("Return", "PENDING", "REFUNDED", False),
    ("Return", "APPROVED", "REFUNDED", True),
    ("Return", "APPROVED", "EXCHANGED", True),
    ("Return", "REJECTED", "APPROVED", False),
])
def test_transition_table(entity, from_status, to_status, allowed):
    assert can_transition(entity, from_status, to_status) is allowed


def test_same_state_is_not_a_transition():
    assert not can_transition("Sale", SaleStatus.PENDING, SaleStatus.PENDING)


@pytest.mark.parametrize("entity, status_enum, table", [
    ("Sale", SaleStatus, SALE_TRANSITIONS),
    ("PurchaseOrder", PurchaseOrderStatus, PURCHASE_ORDER_TRANSITIONS),
    ("Return", ReturnStatus, RETURN_TRANSITIONS),
])
def test_every_status_has_an_entry(entity, status_enum, table):
    assert set(table) == set(status_enum)
    terminal = {s for s in status_enum if is_terminal(entity, s)}
    assert status_enum.PENDING not in terminal


def test_ensure_transition_reports_both_states():
    with pytest.raises(InvalidStateTransitionError) as excinfo:
        ensure_transition("PurchaseOrder", _Doc(PurchaseOrderStatus.DELIVERED), PurchaseOrderStatus.CANCELLED)
    error = excinfo.value
    assert error.current_status == "DELIVERED"
    assert error.target_status == "CANCELLED"
    assert error.to_dict()["error"] == "InvalidStateTransitionError"


def test_ensure_transition_leaves_object_untouched():
    doc = _Doc(ReturnStatus.PENDING)
    ensure_transition("Return", doc, ReturnStatus.APPROVED)
    assert doc.status == ReturnStatus.PENDING
