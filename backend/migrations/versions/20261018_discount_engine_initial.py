"""Discount engine: tenants, rule families, transactions, allocations, approvals, ledger

Revision ID: de001_discount_engine
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "de001_discount_engine"
down_revision = None
branch_labels = None
depends_on = None


def _timestamp(name="created_at"):
    return sa.Column(name, sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP"))


def _validity_columns():
    return [
        sa.Column("valid_from", sa.Date(), nullable=True),
        sa.Column("valid_until", sa.Date(), nullable=True),
    ]


def upgrade():
    # Tenants
    op.create_table(
        "businesses",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("code", sa.String(length=32), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="UGX"),
        sa.Column("discount_approval_threshold", sa.Numeric(5, 2), nullable=True),
        sa.Column("tax_rate", sa.Numeric(5, 2), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _timestamp(),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_businesses_code", "businesses", ["code"], unique=True)

    op.create_table(
        "chart_of_accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("business_id", sa.Integer(), nullable=False),
        sa.Column("account_code", sa.String(length=16), nullable=False),
        sa.Column("account_name", sa.String(length=255), nullable=False),
        sa.Column("account_type", sa.String(length=32), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _timestamp(),
        sa.ForeignKeyConstraint(["business_id"], ["businesses.id"]),
        sa.UniqueConstraint("business_id", "account_code", name="uq_chart_of_accounts_business_code"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_chart_of_accounts_business_id", "chart_of_accounts", ["business_id"], unique=False)

    op.create_table(
        "document_sequences",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("business_id", sa.Integer(), nullable=False),
        sa.Column("document_type", sa.String(length=32), nullable=False),
        sa.Column("period", sa.String(length=7), nullable=False),
        sa.Column("next_number", sa.Integer(), nullable=False, server_default="1"),
        sa.ForeignKeyConstraint(["business_id"], ["businesses.id"]),
        sa.UniqueConstraint(
            "business_id", "document_type", "period", name="uq_document_sequences_business_type_period"
        ),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_document_sequences_business_id", "document_sequences", ["business_id"], unique=False)

    # Rule families
    op.create_table(
        "promotional_discounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("business_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("promo_code", sa.String(length=64), nullable=True),
        sa.Column("discount_type", sa.String(length=16), nullable=False),
        sa.Column("discount_value", sa.Numeric(14, 2), nullable=False),
        sa.Column("min_purchase", sa.Numeric(14, 2), nullable=True),
        sa.Column("max_discount_amount", sa.Numeric(14, 2), nullable=True),
        sa.Column("max_uses", sa.Integer(), nullable=True),
        sa.Column("times_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("per_customer_limit", sa.Integer(), nullable=True),
        *_validity_columns(),
        sa.Column("stackable", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_by_user_id", sa.Integer(), nullable=True),
        _timestamp(),
        _timestamp("updated_at"),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default="1"),
        sa.ForeignKeyConstraint(["business_id"], ["businesses.id"]),
        sa.UniqueConstraint("business_id", "promo_code", name="uq_promotional_discounts_business_code"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_promotional_discounts_business_id", "promotional_discounts", ["business_id"], unique=False)
    op.create_index(
        "ix_promotional_discounts_business_active", "promotional_discounts", ["business_id", "is_active"], unique=False
    )

    op.create_table(
        "volume_discount_tiers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("business_id", sa.Integer(), nullable=False),
        sa.Column("tier_name", sa.String(length=255), nullable=False),
        sa.Column("min_quantity", sa.Integer(), nullable=True),
        sa.Column("min_amount", sa.Numeric(14, 2), nullable=True),
        sa.Column("discount_percentage", sa.Numeric(5, 2), nullable=False),
        sa.Column("applies_to", sa.String(length=16), nullable=False, server_default="ALL"),
        sa.Column("target_category_id", sa.Integer(), nullable=True),
        *_validity_columns(),
        sa.Column("stackable", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _timestamp(),
        sa.ForeignKeyConstraint(["business_id"], ["businesses.id"]),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_volume_discount_tiers_business_id", "volume_discount_tiers", ["business_id"], unique=False)

    op.create_table(
        "early_payment_terms",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("business_id", sa.Integer(), nullable=False),
        sa.Column("term_name", sa.String(length=255), nullable=False),
        sa.Column("discount_percentage", sa.Numeric(5, 2), nullable=False),
        sa.Column("discount_days", sa.Integer(), nullable=False),
        sa.Column("net_days", sa.Integer(), nullable=False, server_default="30"),
        *_validity_columns(),
        sa.Column("stackable", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _timestamp(),
        sa.ForeignKeyConstraint(["business_id"], ["businesses.id"]),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_early_payment_terms_business_id", "early_payment_terms", ["business_id"], unique=False)

    op.create_table(
        "customer_payment_terms",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("business_id", sa.Integer(), nullable=False),
        sa.Column("customer_id", sa.Integer(), nullable=False),
        sa.Column("payment_term_id", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _timestamp("assigned_at"),
        sa.ForeignKeyConstraint(["business_id"], ["businesses.id"]),
        sa.ForeignKeyConstraint(["payment_term_id"], ["early_payment_terms.id"]),
        sa.UniqueConstraint("business_id", "customer_id", name="uq_customer_payment_terms_customer"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_customer_payment_terms_business_id", "customer_payment_terms", ["business_id"], unique=False)
    op.create_index("ix_customer_payment_terms_customer_id", "customer_payment_terms", ["customer_id"], unique=False)

    op.create_table(
        "category_discount_rules",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("business_id", sa.Integer(), nullable=False),
        sa.Column("rule_name", sa.String(length=255), nullable=False),
        sa.Column("category_id", sa.Integer(), nullable=True),
        sa.Column("service_id", sa.Integer(), nullable=True),
        sa.Column("discount_type", sa.String(length=16), nullable=False),
        sa.Column("discount_value", sa.Numeric(14, 2), nullable=False),
        sa.Column("min_amount", sa.Numeric(14, 2), nullable=True),
        sa.Column("max_discount", sa.Numeric(14, 2), nullable=True),
        *_validity_columns(),
        sa.Column("stackable", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _timestamp(),
        sa.ForeignKeyConstraint(["business_id"], ["businesses.id"]),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_category_discount_rules_business_id", "category_discount_rules", ["business_id"], unique=False)
    op.create_index("ix_category_discount_rules_category_id", "category_discount_rules", ["category_id"], unique=False)
    op.create_index("ix_category_discount_rules_service_id", "category_discount_rules", ["service_id"], unique=False)

    op.create_table(
        "pricing_rules",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("business_id", sa.Integer(), nullable=False),
        sa.Column("rule_name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("rule_type", sa.String(length=32), nullable=False, server_default="general"),
        sa.Column("conditions", sa.Text(), nullable=True),
        sa.Column("adjustment_type", sa.String(length=16), nullable=False),
        sa.Column("adjustment_value", sa.Numeric(14, 2), nullable=False),
        sa.Column("target_entity", sa.String(length=16), nullable=True),
        sa.Column("target_id", sa.Integer(), nullable=True),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        *_validity_columns(),
        sa.Column("stackable", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _timestamp(),
        sa.ForeignKeyConstraint(["business_id"], ["businesses.id"]),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_pricing_rules_business_id", "pricing_rules", ["business_id"], unique=False)

    # Transactions
    op.create_table(
        "pos_transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("business_id", sa.Integer(), nullable=False),
        sa.Column("transaction_number", sa.String(length=64), nullable=False),
        _timestamp("transaction_date"),
        sa.Column("customer_id", sa.Integer(), nullable=True),
        sa.Column("total_amount", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("total_discount", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="COMPLETED"),
        _timestamp(),
        sa.ForeignKeyConstraint(["business_id"], ["businesses.id"]),
        sa.UniqueConstraint("business_id", "transaction_number", name="uq_pos_transactions_business_number"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_pos_transactions_business_id", "pos_transactions", ["business_id"], unique=False)
    op.create_index("ix_pos_transactions_customer_id", "pos_transactions", ["customer_id"], unique=False)

    op.create_table(
        "pos_transaction_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("pos_transaction_id", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(length=255), nullable=True),
        sa.Column("category_id", sa.Integer(), nullable=True),
        sa.Column("service_id", sa.Integer(), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("unit_price", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("line_total", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.ForeignKeyConstraint(["pos_transaction_id"], ["pos_transactions.id"]),
        sqlite_autoincrement=True,
    )
    op.create_index(
        "ix_pos_transaction_items_pos_transaction_id", "pos_transaction_items", ["pos_transaction_id"], unique=False
    )

    op.create_table(
        "invoices",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("business_id", sa.Integer(), nullable=False),
        sa.Column("invoice_number", sa.String(length=64), nullable=False),
        _timestamp("invoice_date"),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column("customer_id", sa.Integer(), nullable=True),
        sa.Column("total_amount", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("total_discount", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="OPEN"),
        _timestamp(),
        sa.ForeignKeyConstraint(["business_id"], ["businesses.id"]),
        sa.UniqueConstraint("business_id", "invoice_number", name="uq_invoices_business_number"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_invoices_business_id", "invoices", ["business_id"], unique=False)
    op.create_index("ix_invoices_customer_id", "invoices", ["customer_id"], unique=False)

    op.create_table(
        "invoice_line_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("invoice_id", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(length=255), nullable=True),
        sa.Column("category_id", sa.Integer(), nullable=True),
        sa.Column("service_id", sa.Integer(), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("unit_price", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("line_total", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.ForeignKeyConstraint(["invoice_id"], ["invoices.id"]),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_invoice_line_items_invoice_id", "invoice_line_items", ["invoice_id"], unique=False)

    # Ledger
    op.create_table(
        "journal_entries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("business_id", sa.Integer(), nullable=False),
        sa.Column("reference_number", sa.String(length=32), nullable=False),
        sa.Column("journal_date", sa.Date(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("source_type", sa.String(length=32), nullable=False, server_default="DISCOUNT"),
        sa.Column("reference_type", sa.String(length=16), nullable=True),
        sa.Column("reference_id", sa.Integer(), nullable=True),
        sa.Column("total_amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="POSTED"),
        sa.Column("reverses_entry_id", sa.Integer(), nullable=True),
        sa.Column("created_by_user_id", sa.Integer(), nullable=True),
        _timestamp(),
        sa.ForeignKeyConstraint(["business_id"], ["businesses.id"]),
        sa.ForeignKeyConstraint(["reverses_entry_id"], ["journal_entries.id"]),
        sa.UniqueConstraint("business_id", "reference_number", name="uq_journal_entries_business_reference"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_journal_entries_business_id", "journal_entries", ["business_id"], unique=False)
    op.create_index("ix_journal_entries_business_date", "journal_entries", ["business_id", "journal_date"], unique=False)

    op.create_table(
        "journal_entry_lines",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("journal_entry_id", sa.Integer(), nullable=False),
        sa.Column("account_id", sa.Integer(), nullable=False),
        sa.Column("line_type", sa.String(length=8), nullable=False),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        # Weak back-reference, no FK
        sa.Column("allocation_id", sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(["journal_entry_id"], ["journal_entries.id"]),
        sa.ForeignKeyConstraint(["account_id"], ["chart_of_accounts.id"]),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_journal_entry_lines_journal_entry_id", "journal_entry_lines", ["journal_entry_id"], unique=False)
    op.create_index("ix_journal_entry_lines_account_id", "journal_entry_lines", ["account_id"], unique=False)
    op.create_index("ix_journal_entry_lines_allocation_id", "journal_entry_lines", ["allocation_id"], unique=False)

    # Allocations
    op.create_table(
        "discount_allocations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("business_id", sa.Integer(), nullable=False),
        sa.Column("allocation_number", sa.String(length=32), nullable=False),
        sa.Column("pos_transaction_id", sa.Integer(), nullable=True),
        sa.Column("invoice_id", sa.Integer(), nullable=True),
        sa.Column("rule_type", sa.String(length=16), nullable=True),
        sa.Column("discount_rule_id", sa.Integer(), nullable=True),
        sa.Column("promotional_discount_id", sa.Integer(), nullable=True),
        sa.Column("total_discount_amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("allocation_method", sa.String(length=32), nullable=False, server_default="PRO_RATA_AMOUNT"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="APPLIED"),
        sa.Column("applied_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("voided_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("voided_by_user_id", sa.Integer(), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("journal_entry_id", sa.Integer(), nullable=True),
        sa.Column("created_by_user_id", sa.Integer(), nullable=True),
        _timestamp(),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default="1"),
        sa.ForeignKeyConstraint(["business_id"], ["businesses.id"]),
        sa.ForeignKeyConstraint(["pos_transaction_id"], ["pos_transactions.id"]),
        sa.ForeignKeyConstraint(["invoice_id"], ["invoices.id"]),
        sa.ForeignKeyConstraint(["promotional_discount_id"], ["promotional_discounts.id"]),
        sa.ForeignKeyConstraint(["journal_entry_id"], ["journal_entries.id"]),
        sa.UniqueConstraint("business_id", "allocation_number", name="uq_discount_allocations_business_number"),
        sa.CheckConstraint(
            "(pos_transaction_id IS NULL) <> (invoice_id IS NULL)",
            name="ck_discount_allocations_one_transaction",
        ),
        sa.CheckConstraint(
            "NOT (discount_rule_id IS NOT NULL AND promotional_discount_id IS NOT NULL)",
            name="ck_discount_allocations_one_source",
        ),
        sqlite_autoincrement=True,
    )
    for column in (
        "business_id", "pos_transaction_id", "invoice_id", "discount_rule_id",
        "promotional_discount_id", "status", "journal_entry_id", "created_at",
    ):
        op.create_index(f"ix_discount_allocations_{column}", "discount_allocations", [column], unique=False)
    op.create_index(
        "ix_discount_allocations_business_status_created",
        "discount_allocations",
        ["business_id", "status", "created_at"],
        unique=False,
    )

    op.create_table(
        "discount_allocation_lines",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("allocation_id", sa.Integer(), nullable=False),
        sa.Column("line_item_id", sa.Integer(), nullable=True),
        sa.Column("original_amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("allocated_discount", sa.Numeric(14, 2), nullable=False),
        sa.Column("allocation_percentage", sa.Numeric(7, 4), nullable=False, server_default="0"),
        sa.Column("quantity", sa.Integer(), nullable=True),
        sa.Column("discount_per_unit", sa.Numeric(14, 2), nullable=True),
        sa.Column("allocation_weight", sa.Numeric(14, 6), nullable=True),
        sa.ForeignKeyConstraint(["allocation_id"], ["discount_allocations.id"]),
        sqlite_autoincrement=True,
    )
    op.create_index(
        "ix_discount_allocation_lines_allocation_id", "discount_allocation_lines", ["allocation_id"], unique=False
    )

    # Approvals
    op.create_table(
        "discount_approvals",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("business_id", sa.Integer(), nullable=False),
        sa.Column("pos_transaction_id", sa.Integer(), nullable=True),
        sa.Column("invoice_id", sa.Integer(), nullable=True),
        sa.Column("original_amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("requested_discount", sa.Numeric(14, 2), nullable=False),
        sa.Column("discount_percentage", sa.Numeric(7, 2), nullable=False),
        sa.Column("approval_threshold", sa.Numeric(5, 2), nullable=False),
        sa.Column("proposed_discounts", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("requested_by_user_id", sa.Integer(), nullable=True),
        sa.Column("decided_by_user_id", sa.Integer(), nullable=True),
        sa.Column("decided_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("decision_notes", sa.Text(), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        _timestamp(),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default="1"),
        sa.ForeignKeyConstraint(["business_id"], ["businesses.id"]),
        sa.ForeignKeyConstraint(["pos_transaction_id"], ["pos_transactions.id"]),
        sa.ForeignKeyConstraint(["invoice_id"], ["invoices.id"]),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_discount_approvals_business_id", "discount_approvals", ["business_id"], unique=False)
    op.create_index("ix_discount_approvals_pos_transaction_id", "discount_approvals", ["pos_transaction_id"], unique=False)
    op.create_index("ix_discount_approvals_invoice_id", "discount_approvals", ["invoice_id"], unique=False)
    op.create_index("ix_discount_approvals_business_status", "discount_approvals", ["business_id", "status"], unique=False)


def downgrade():
    op.drop_table("discount_approvals")
    op.drop_table("discount_allocation_lines")
    op.drop_table("discount_allocations")
    op.drop_table("journal_entry_lines")
    op.drop_table("journal_entries")
    op.drop_table("invoice_line_items")
    op.drop_table("invoices")
    op.drop_table("pos_transaction_items")
    op.drop_table("pos_transactions")
    op.drop_table("pricing_rules")
    op.drop_table("category_discount_rules")
    op.drop_table("customer_payment_terms")
    op.drop_table("early_payment_terms")
    op.drop_table("volume_discount_tiers")
    op.drop_table("promotional_discounts")
    op.drop_table("document_sequences")
    op.drop_table("chart_of_accounts")
    op.drop_table("businesses")
