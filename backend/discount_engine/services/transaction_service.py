# Overview: Read/update access to POS tickets and invoices for the discount engine.

from __future__ import annotations

from decimal import Decimal

from ..extensions import db
from ..models import PosTransaction, Invoice, DiscountAllocation
from ..validation import ValidationError, quantize_money, ZERO


TRANSACTION_TYPE_POS = "POS"
TRANSACTION_TYPE_INVOICE = "INVOICE"
TRANSACTION_TYPES = (TRANSACTION_TYPE_POS, TRANSACTION_TYPE_INVOICE)


class TransactionNotFoundError(ValidationError):
    """Raised when a referenced POS ticket or invoice does not exist for the business."""


def normalize_transaction_type(value: str | None) -> str:
    if not value:
        raise ValidationError("transaction_type is required")
    normalized = str(value).strip().upper()
    if normalized == "POS_TRANSACTION":
        normalized = TRANSACTION_TYPE_POS
    if normalized not in TRANSACTION_TYPES:
        raise ValidationError(f"transaction_type must be one of {', '.join(TRANSACTION_TYPES)}")
    return normalized


def transaction_reference(transaction_type: str, transaction_id: int) -> dict:
    """Column kwargs pointing an allocation/approval at its transaction."""
    if normalize_transaction_type(transaction_type) == TRANSACTION_TYPE_POS:
        return {"pos_transaction_id": transaction_id, "invoice_id": None}
    return {"pos_transaction_id": None, "invoice_id": transaction_id}


def get_transaction(business_id: int, transaction_type: str, transaction_id: int):
    model = PosTransaction if normalize_transaction_type(transaction_type) == TRANSACTION_TYPE_POS else Invoice
    tx = db.session.query(model).filter_by(id=transaction_id, business_id=business_id).first()
    if not tx:
        raise TransactionNotFoundError(
            f"{transaction_type} transaction {transaction_id} not found",
            details={"transaction_type": transaction_type, "transaction_id": transaction_id},
        )
    return tx


def transaction_type_of(tx) -> str:
    return TRANSACTION_TYPE_POS if isinstance(tx, PosTransaction) else TRANSACTION_TYPE_INVOICE


def transaction_number(tx) -> str:
    return tx.transaction_number if isinstance(tx, PosTransaction) else tx.invoice_number


def transaction_date(tx):
    return tx.transaction_date if isinstance(tx, PosTransaction) else tx.invoice_date


def get_line_items(tx) -> list[dict]:
    """Line items in the shape the allocation algorithms expect."""
    rows = tx.items if isinstance(tx, PosTransaction) else tx.line_items
    return [
        {"id": row.id, "amount": row.line_total, "quantity": row.quantity}
        for row in rows
    ]


def live_discount_total(tx) -> Decimal:
    """Sum of non-void allocations currently attached to the transaction."""
    column = (
        DiscountAllocation.pos_transaction_id
        if isinstance(tx, PosTransaction)
        else DiscountAllocation.invoice_id
    )
    total = (
        db.session.query(db.func.coalesce(db.func.sum(DiscountAllocation.total_discount_amount), 0))
        .filter(column == tx.id, DiscountAllocation.status != "VOID")
        .scalar()
    )
    return quantize_money(Decimal(total or 0))


def update_discount_total(tx, total_discount: Decimal | None = None) -> Decimal:
    """
    Set the header discount total. With no explicit value the total is
    recomputed from live allocations. Flushes; the caller commits.
    """
    value = live_discount_total(tx) if total_discount is None else quantize_money(Decimal(total_discount))
    if value < ZERO:
        raise ValidationError("total_discount cannot be negative")
    tx.total_discount = value
    db.session.flush()
    return value


def transaction_customer_id(tx):
    return tx.customer_id
