from __future__ import annotations

from ..extensions import db
from discount_engine.time_utils import to_utc_z
from discount_engine.validation import money_str


class PosTransaction(db.Model):
    """
    POS ticket header, as far as the discount engine needs it.

    total_discount is maintained by the engine when allocations are persisted,
    and is what the unallocated-discount sweep compares against.
    """
    __tablename__ = "pos_transactions"
    __table_args__ = (
        db.UniqueConstraint("business_id", "transaction_number", name="uq_pos_transactions_business_number"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)
    transaction_number = db.Column(db.String(64), nullable=False)
    transaction_date = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    customer_id = db.Column(db.Integer, nullable=True, index=True)

    total_amount = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    total_discount = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    status = db.Column(db.String(16), nullable=False, default="COMPLETED")

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    items = db.relationship(
        "PosTransactionItem",
        backref="transaction",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="PosTransactionItem.id",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "business_id": self.business_id,
            "transaction_number": self.transaction_number,
            "transaction_date": to_utc_z(self.transaction_date),
            "customer_id": self.customer_id,
            "total_amount": money_str(self.total_amount),
            "total_discount": money_str(self.total_discount),
            "status": self.status,
        }


class PosTransactionItem(db.Model):
    __tablename__ = "pos_transaction_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    pos_transaction_id = db.Column(db.Integer, db.ForeignKey("pos_transactions.id"), nullable=False, index=True)
    description = db.Column(db.String(255), nullable=True)
    category_id = db.Column(db.Integer, nullable=True)
    service_id = db.Column(db.Integer, nullable=True)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    unit_price = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    line_total = db.Column(db.Numeric(14, 2), nullable=False, default=0)

    def to_dict(self):
        return {
            "id": self.id,
            "pos_transaction_id": self.pos_transaction_id,
            "description": self.description,
            "category_id": self.category_id,
            "service_id": self.service_id,
            "quantity": self.quantity,
            "unit_price": money_str(self.unit_price),
            "line_total": money_str(self.line_total),
        }


class Invoice(db.Model):
    """Customer invoice header. Same discount bookkeeping as PosTransaction."""
    __tablename__ = "invoices"
    __table_args__ = (
        db.UniqueConstraint("business_id", "invoice_number", name="uq_invoices_business_number"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)
    invoice_number = db.Column(db.String(64), nullable=False)
    invoice_date = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    due_date = db.Column(db.Date, nullable=True)
    customer_id = db.Column(db.Integer, nullable=True, index=True)

    total_amount = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    total_discount = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    status = db.Column(db.String(16), nullable=False, default="OPEN")

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    line_items = db.relationship(
        "InvoiceLineItem",
        backref="invoice",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="InvoiceLineItem.id",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "business_id": self.business_id,
            "invoice_number": self.invoice_number,
            "invoice_date": to_utc_z(self.invoice_date),
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "customer_id": self.customer_id,
            "total_amount": money_str(self.total_amount),
            "total_discount": money_str(self.total_discount),
            "status": self.status,
        }


class InvoiceLineItem(db.Model):
    __tablename__ = "invoice_line_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=False, index=True)
    description = db.Column(db.String(255), nullable=True)
    category_id = db.Column(db.Integer, nullable=True)
    service_id = db.Column(db.Integer, nullable=True)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    unit_price = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    line_total = db.Column(db.Numeric(14, 2), nullable=False, default=0)

    def to_dict(self):
        return {
            "id": self.id,
            "invoice_id": self.invoice_id,
            "description": self.description,
            "category_id": self.category_id,
            "service_id": self.service_id,
            "quantity": self.quantity,
            "unit_price": money_str(self.unit_price),
            "line_total": money_str(self.line_total),
        }
