from __future__ import annotations

import json

from ..extensions import db
from discount_engine.time_utils import to_utc_z
from discount_engine.validation import money_str


class DiscountAllocation(db.Model):
    """
    One discount application spread across all lines of one transaction.

    LIFECYCLE:
    1. PENDING: created but not yet in effect
    2. APPLIED: discount is part of the transaction total
    3. VOID: terminal; rejection_reason records why

    Exactly one of pos_transaction_id / invoice_id is set, and at most one of
    discount_rule_id / promotional_discount_id (promotions keep their own id
    column so per-customer usage can be counted).

    journal_entry_id is a weak back-reference used by reconciliation; the
    journal entry does not own the allocation.
    """
    __tablename__ = "discount_allocations"
    __table_args__ = (
        db.UniqueConstraint("business_id", "allocation_number", name="uq_discount_allocations_business_number"),
        db.CheckConstraint(
            "(pos_transaction_id IS NULL) <> (invoice_id IS NULL)",
            name="ck_discount_allocations_one_transaction",
        ),
        db.CheckConstraint(
            "NOT (discount_rule_id IS NOT NULL AND promotional_discount_id IS NOT NULL)",
            name="ck_discount_allocations_one_source",
        ),
        db.Index("ix_discount_allocations_business_status_created", "business_id", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)

    # Human-readable number (e.g., "DA-2024-06-00012")
    allocation_number = db.Column(db.String(32), nullable=False)

    pos_transaction_id = db.Column(db.Integer, db.ForeignKey("pos_transactions.id"), nullable=True, index=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=True, index=True)

    rule_type = db.Column(db.String(16), nullable=True)
    discount_rule_id = db.Column(db.Integer, nullable=True, index=True)
    promotional_discount_id = db.Column(
        db.Integer, db.ForeignKey("promotional_discounts.id"), nullable=True, index=True
    )

    total_discount_amount = db.Column(db.Numeric(14, 2), nullable=False)
    allocation_method = db.Column(db.String(32), nullable=False, default="PRO_RATA_AMOUNT")
    status = db.Column(db.String(16), nullable=False, default="APPLIED", index=True)

    applied_at = db.Column(db.DateTime(timezone=True), nullable=True)
    voided_at = db.Column(db.DateTime(timezone=True), nullable=True)
    voided_by_user_id = db.Column(db.Integer, nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)

    journal_entry_id = db.Column(db.Integer, db.ForeignKey("journal_entries.id"), nullable=True, index=True)

    created_by_user_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    lines = db.relationship(
        "DiscountAllocationLine",
        backref="allocation",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="DiscountAllocationLine.id",
    )
    pos_transaction = db.relationship("PosTransaction", backref=db.backref("discount_allocations", lazy=True))
    invoice = db.relationship("Invoice", backref=db.backref("discount_allocations", lazy=True))

    @property
    def transaction_type(self) -> str:
        return "POS" if self.pos_transaction_id else "INVOICE"

    @property
    def transaction_id(self) -> int:
        return self.pos_transaction_id or self.invoice_id

    def to_dict(self, include_lines: bool = False):
        data = {
            "id": self.id,
            "business_id": self.business_id,
            "allocation_number": self.allocation_number,
            "transaction_type": self.transaction_type,
            "pos_transaction_id": self.pos_transaction_id,
            "invoice_id": self.invoice_id,
            "rule_type": self.rule_type,
            "discount_rule_id": self.discount_rule_id,
            "promotional_discount_id": self.promotional_discount_id,
            "total_discount_amount": money_str(self.total_discount_amount),
            "allocation_method": self.allocation_method,
            "status": self.status,
            "applied_at": to_utc_z(self.applied_at),
            "voided_at": to_utc_z(self.voided_at),
            "voided_by_user_id": self.voided_by_user_id,
            "rejection_reason": self.rejection_reason,
            "journal_entry_id": self.journal_entry_id,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }
        if include_lines:
            data["lines"] = [line.to_dict() for line in self.lines]
        return data


class DiscountAllocationLine(db.Model):
    """Share of an allocation's discount carried by one line item."""
    __tablename__ = "discount_allocation_lines"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    allocation_id = db.Column(db.Integer, db.ForeignKey("discount_allocations.id"), nullable=False, index=True)
    line_item_id = db.Column(db.Integer, nullable=True)

    original_amount = db.Column(db.Numeric(14, 2), nullable=False)
    allocated_discount = db.Column(db.Numeric(14, 2), nullable=False)
    allocation_percentage = db.Column(db.Numeric(7, 4), nullable=False, default=0)

    # Method-specific
    quantity = db.Column(db.Integer, nullable=True)
    discount_per_unit = db.Column(db.Numeric(14, 2), nullable=True)
    allocation_weight = db.Column(db.Numeric(14, 6), nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "allocation_id": self.allocation_id,
            "line_item_id": self.line_item_id,
            "original_amount": money_str(self.original_amount),
            "allocated_discount": money_str(self.allocated_discount),
            "allocation_percentage": str(self.allocation_percentage) if self.allocation_percentage is not None else None,
            "quantity": self.quantity,
            "discount_per_unit": money_str(self.discount_per_unit),
            "allocation_weight": str(self.allocation_weight) if self.allocation_weight is not None else None,
        }


class DiscountApproval(db.Model):
    """
    Manager approval request for a discount set above the threshold.

    LIFECYCLE: pending -> approved | rejected. Decided exactly once.
    """
    __tablename__ = "discount_approvals"
    __table_args__ = (
        db.Index("ix_discount_approvals_business_status", "business_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)

    pos_transaction_id = db.Column(db.Integer, db.ForeignKey("pos_transactions.id"), nullable=True, index=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=True, index=True)

    original_amount = db.Column(db.Numeric(14, 2), nullable=False)
    requested_discount = db.Column(db.Numeric(14, 2), nullable=False)
    discount_percentage = db.Column(db.Numeric(7, 2), nullable=False)
    approval_threshold = db.Column(db.Numeric(5, 2), nullable=False)
    proposed_discounts = db.Column(db.Text, nullable=False, default="[]")
    reason = db.Column(db.Text, nullable=True)

    status = db.Column(db.String(16), nullable=False, default="pending")

    requested_by_user_id = db.Column(db.Integer, nullable=True)
    decided_by_user_id = db.Column(db.Integer, nullable=True)
    decided_at = db.Column(db.DateTime(timezone=True), nullable=True)
    decision_notes = db.Column(db.Text, nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def transaction_type(self) -> str:
        return "POS" if self.pos_transaction_id else "INVOICE"

    @property
    def transaction_id(self) -> int:
        return self.pos_transaction_id or self.invoice_id

    def to_dict(self):
        return {
            "id": self.id,
            "business_id": self.business_id,
            "transaction_type": self.transaction_type,
            "pos_transaction_id": self.pos_transaction_id,
            "invoice_id": self.invoice_id,
            "original_amount": money_str(self.original_amount),
            "requested_discount": money_str(self.requested_discount),
            "discount_percentage": money_str(self.discount_percentage),
            "approval_threshold": money_str(self.approval_threshold),
            "proposed_discounts": json.loads(self.proposed_discounts or "[]"),
            "reason": self.reason,
            "status": self.status,
            "requested_by_user_id": self.requested_by_user_id,
            "decided_by_user_id": self.decided_by_user_id,
            "decided_at": to_utc_z(self.decided_at),
            "decision_notes": self.decision_notes,
            "rejection_reason": self.rejection_reason,
            "created_at": to_utc_z(self.created_at),
        }
