# Overview: Human-readable, per-business monthly document numbers.

from __future__ import annotations

from datetime import date

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import DocumentSequence
from ..time_utils import today


class DocumentSequenceError(Exception):
    """Raised when document sequence operations fail."""
    pass


ALLOCATION_PREFIX = "DA"
JOURNAL_PREFIX = "JE"
REVERSAL_PREFIX = "REV"
TAX_ADJUSTMENT_PREFIX = "TAX"


def _bump(business_id: int, document_type: str, period: str) -> int | None:
    stmt = (
        update(DocumentSequence)
        .where(
            DocumentSequence.business_id == business_id,
            DocumentSequence.document_type == document_type,
            DocumentSequence.period == period,
        )
        .values(next_number=DocumentSequence.next_number + 1)
    )
    result = db.session.execute(stmt)
    if not result.rowcount:
        return None
    current = (
        db.session.query(DocumentSequence.next_number)
        .filter_by(business_id=business_id, document_type=document_type, period=period)
        .scalar()
    )
    return current - 1


def next_document_number(
    *,
    business_id: int,
    document_type: str,
    prefix: str,
    on_date: date | None = None,
    pad: int = 5,
) -> str:
    """
    Allocate the next number for a business/type within the month of on_date.

    Format: {prefix}-{YYYY}-{MM}-{seq}, e.g. DA-2024-06-00001.

    Runs inside the caller's unit of work: the sequence row is incremented
    with a single UPDATE, and a lost race on first insert is resolved under a
    savepoint so the caller's pending rows survive.
    """
    if not business_id:
        raise DocumentSequenceError("business_id is required")
    if not document_type:
        raise DocumentSequenceError("document_type is required")

    on_date = on_date or today()
    period = f"{on_date.year:04d}-{on_date.month:02d}"

    next_num = _bump(business_id, document_type, period)
    if next_num is None:
        try:
            with db.session.begin_nested():
                db.session.add(DocumentSequence(
                    business_id=business_id,
                    document_type=document_type,
                    period=period,
                    next_number=2,
                ))
            next_num = 1
        except IntegrityError:
            next_num = _bump(business_id, document_type, period)
            if next_num is None:
                raise DocumentSequenceError(
                    f"Could not allocate {document_type} number for business {business_id}"
                )

    return f"{prefix}-{period}-{next_num:0{pad}d}"
