from __future__ import annotations

from ..extensions import db


class DocumentSequence(db.Model):
    """
    Storage-backed counter for human-readable document numbers.

    One row per (document_type, period). Allocation is an atomic
    UPDATE ... SET next_number = next_number + 1, so concurrent writers
    (including multiple processes) never receive the same number.
    """
    __tablename__ = "document_sequences"
    __table_args__ = (
        db.UniqueConstraint("document_type", "period", name="uq_document_sequences_type_period"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    document_type = db.Column(db.String(32), nullable=False)
    period = db.Column(db.String(16), nullable=False, default="")  # e.g. "2026" for yearly resets
    next_number = db.Column(db.Integer, nullable=False, default=1)
