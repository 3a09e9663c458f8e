from __future__ import annotations

from ..extensions import db
from discount_engine.time_utils import to_utc_z
from discount_engine.validation import money_str


class ChartOfAccount(db.Model):
    __tablename__ = "chart_of_accounts"
    __table_args__ = (
        db.UniqueConstraint("business_id", "account_code", name="uq_chart_of_accounts_business_code"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)
    account_code = db.Column(db.String(16), nullable=False)
    account_name = db.Column(db.String(255), nullable=False)
    account_type = db.Column(db.String(32), nullable=False)  # revenue, contra_revenue, liability, ...
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self):
        return {
            "id": self.id,
            "business_id": self.business_id,
            "account_code": self.account_code,
            "account_name": self.account_name,
            "account_type": self.account_type,
            "is_active": self.is_active,
        }


class JournalEntry(db.Model):
    """
    Double-entry journal entry.

    INVARIANTS:
    - Sum of debit lines equals sum of credit lines (checked before insert)
    - Never updated after insert; corrections are new entries that
      reference the corrected one through reverses_entry_id
    """
    __tablename__ = "journal_entries"
    __table_args__ = (
        db.UniqueConstraint("business_id", "reference_number", name="uq_journal_entries_business_reference"),
        db.Index("ix_journal_entries_business_date", "business_id", "journal_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)

    reference_number = db.Column(db.String(32), nullable=False)
    journal_date = db.Column(db.Date, nullable=False)
    description = db.Column(db.Text, nullable=True)

    source_type = db.Column(db.String(32), nullable=False, default="DISCOUNT")  # DISCOUNT, DISCOUNT_REVERSAL, DISCOUNT_TAX
    reference_type = db.Column(db.String(16), nullable=True)  # POS, INVOICE, ALLOCATION
    reference_id = db.Column(db.Integer, nullable=True)

    total_amount = db.Column(db.Numeric(14, 2), nullable=False)
    status = db.Column(db.String(16), nullable=False, default="POSTED")

    reverses_entry_id = db.Column(db.Integer, db.ForeignKey("journal_entries.id"), nullable=True)

    created_by_user_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    lines = db.relationship(
        "JournalEntryLine",
        backref="journal_entry",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="JournalEntryLine.id",
    )

    @property
    def total_debit(self):
        return sum((line.amount for line in self.lines if line.line_type == "debit"), 0)

    @property
    def total_credit(self):
        return sum((line.amount for line in self.lines if line.line_type == "credit"), 0)

    def to_dict(self, include_lines: bool = True):
        data = {
            "id": self.id,
            "business_id": self.business_id,
            "reference_number": self.reference_number,
            "journal_date": self.journal_date.isoformat() if self.journal_date else None,
            "description": self.description,
            "source_type": self.source_type,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "total_amount": money_str(self.total_amount),
            "status": self.status,
            "reverses_entry_id": self.reverses_entry_id,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }
        if include_lines:
            data["lines"] = [line.to_dict() for line in self.lines]
        return data


class JournalEntryLine(db.Model):
    """
    allocation_id is a weak back-reference (no FK) so reconciliation can
    find the entry for an allocation without the ledger owning it.
    """
    __tablename__ = "journal_entry_lines"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    journal_entry_id = db.Column(db.Integer, db.ForeignKey("journal_entries.id"), nullable=False, index=True)
    account_id = db.Column(db.Integer, db.ForeignKey("chart_of_accounts.id"), nullable=False, index=True)
    line_type = db.Column(db.String(8), nullable=False)  # debit, credit
    amount = db.Column(db.Numeric(14, 2), nullable=False)
    description = db.Column(db.Text, nullable=True)
    allocation_id = db.Column(db.Integer, nullable=True, index=True)

    account = db.relationship("ChartOfAccount")

    def to_dict(self):
        return {
            "id": self.id,
            "journal_entry_id": self.journal_entry_id,
            "account_id": self.account_id,
            "account_code": self.account.account_code if self.account else None,
            "line_type": self.line_type,
            "amount": money_str(self.amount),
            "description": self.description,
            "allocation_id": self.allocation_id,
        }
