from __future__ import annotations

from ..extensions import db


class DocumentSequence(db.Model):
    """
    Per-business counters for human-readable numbers.

    period is "YYYY-MM" so allocation and journal numbers restart monthly.
    """
    __tablename__ = "document_sequences"
    __table_args__ = (
        db.UniqueConstraint("business_id", "document_type", "period", name="uq_document_sequences_business_type_period"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)
    document_type = db.Column(db.String(32), nullable=False)
    period = db.Column(db.String(7), nullable=False)
    next_number = db.Column(db.Integer, nullable=False, default=1)
