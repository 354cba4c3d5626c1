# Overview: Human-readable document numbers for sales, purchase orders and returns.

from __future__ import annotations

import itertools
import threading
import uuid
from datetime import datetime

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import DocumentSequence
from ..time_utils import epoch_millis, utcnow


class SaleNumberGenerator:
    """
    SALE-{epochMillis}-{counter}-{4 random chars}

    The counter is owned by this instance (one per application, see
    create_app) and is strictly increasing per call across threads. The
    random suffix is only a secondary collision guard; deployments with more
    than one process should allocate via allocate_sequence() instead.
    """

    def __init__(self, start: int = 1):
        self._counter = itertools.count(start)
        self._lock = threading.Lock()

    def next_counter(self) -> int:
        with self._lock:
            return next(self._counter)

    def __call__(self, now: datetime | None = None) -> str:
        counter = self.next_counter()
        suffix = uuid.uuid4().hex[:4].upper()
        return f"SALE-{epoch_millis(now)}-{counter}-{suffix}"


def sale_number_generator() -> SaleNumberGenerator:
    return current_app.extensions["sale_numbers"]


def generate_return_number(now: datetime | None = None) -> str:
    millis = str(epoch_millis(now))[-6:]
    return f"RET-{millis}-{uuid.uuid4().hex[:8].upper()}"


def _current_value(document_type: str, period: str) -> int:
    return (
        db.session.query(DocumentSequence.next_number)
        .filter_by(document_type=document_type, period=period)
        .scalar()
    )


def allocate_sequence(document_type: str, period: str = "") -> int:
    """
    Atomically allocate the next integer for (document_type, period).

    Runs inside the caller's transaction so a rolled-back document also
    gives its number back.
    """
    stmt = (
        update(DocumentSequence)
        .where(
            DocumentSequence.document_type == document_type,
            DocumentSequence.period == period,
        )
        .values(next_number=DocumentSequence.next_number + 1)
    )

    result = db.session.execute(stmt)
    if result.rowcount:
        return _current_value(document_type, period) - 1

    # First number of the period: insert the row, tolerating a racing insert
    try:
        with db.session.begin_nested():
            db.session.add(DocumentSequence(document_type=document_type, period=period, next_number=2))
        return 1
    except IntegrityError:
        result = db.session.execute(stmt)
        if not result.rowcount:
            raise
        return _current_value(document_type, period) - 1


def next_purchase_order_number(now: datetime | None = None) -> str:
    year = str((now or utcnow()).year)
    seq = allocate_sequence("PURCHASE_ORDER", year)
    return f"PO-{year}-{seq:03d}"
