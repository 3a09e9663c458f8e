# Overview: Double-entry journal postings for granted discounts, plus ledger reconciliation.

from __future__ import annotations

import csv
import io
from collections import OrderedDict
from datetime import datetime, timedelta
from decimal import Decimal

from flask import current_app
from sqlalchemy import or_

from ..extensions import db
from ..models import (
    Business,
    ChartOfAccount,
    DiscountAllocation,
    Invoice,
    JournalEntry,
    JournalEntryLine,
    PosTransaction,
)
from ..time_utils import to_date, to_utc_z, today, utcnow
from ..validation import ConflictError, ValidationError, ZERO, money_str, quantize_money, to_decimal, to_money
from .allocation_service import (
    AllocationStateError,
    STATUS_APPLIED,
    STATUS_VOID,
    get_allocation,
    void_allocation,
)
from .concurrency import atomic, lock_for_update
from .discount_core import RuleType, parse_rule_type
from .document_service import (
    JOURNAL_PREFIX,
    REVERSAL_PREFIX,
    TAX_ADJUSTMENT_PREFIX,
    next_document_number,
)
from .transaction_service import transaction_number, transaction_type_of


"""
Discount Ledger Invariants (authoritative)

- Every entry balances: sum(debit lines) == sum(credit lines), checked
  before anything is flushed.
- Entries are never edited. A journaled allocation is undone by a REV entry
  that points at the original through reverses_entry_id.
- A discount debits its family's contra-revenue account and credits the
  revenue account (4100 by default).
- Reconciliation only looks at APPLIED allocations.
"""


class AccountingError(ValidationError):
    """Raised for invalid posting input."""


class UnbalancedJournalError(AccountingError):
    """Raised when an entry's debits and credits differ."""


class AccountingConfigurationError(ConflictError):
    """Raised when a business is missing a required chart-of-accounts row."""


# =============================================================================
# ACCOUNT DETERMINATION
# =============================================================================

DEFAULT_DISCOUNT_ACCOUNT = "4110"

DISCOUNT_ACCOUNT_BY_TYPE = {
    RuleType.PROMOTIONAL: "4113",
    RuleType.VOLUME: "4111",
    RuleType.EARLY_PAYMENT: "4112",
    RuleType.CATEGORY: "4110",
    RuleType.PRICING_RULE: "4110",
}

# code -> (name, account_type)
DISCOUNT_ACCOUNTS = OrderedDict([
    ("4100", ("Sales Revenue", "revenue")),
    ("4110", ("Sales Discounts", "contra_revenue")),
    ("4111", ("Volume Discounts", "contra_revenue")),
    ("4112", ("Early Payment Discounts", "contra_revenue")),
    ("4113", ("Promotional Discounts", "contra_revenue")),
    ("2200", ("VAT Payable", "liability")),
])

SOURCE_DISCOUNT = "DISCOUNT"
SOURCE_REVERSAL = "DISCOUNT_REVERSAL"
SOURCE_TAX = "DISCOUNT_TAX"
DISCOUNT_SOURCES = (SOURCE_DISCOUNT, SOURCE_REVERSAL, SOURCE_TAX)

JOURNAL_EXPORT_HEADER = [
    "Reference Number", "Date", "Description", "Reference Type", "Reference ID",
    "Status", "Total Debit", "Total Credit", "Accounts", "Created At",
]


def get_discount_account_by_type(rule_type) -> str:
    """Unknown or missing families land on the general sales discount account."""
    if not rule_type:
        return DEFAULT_DISCOUNT_ACCOUNT
    try:
        return DISCOUNT_ACCOUNT_BY_TYPE.get(parse_rule_type(rule_type), DEFAULT_DISCOUNT_ACCOUNT)
    except ValidationError:
        return DEFAULT_DISCOUNT_ACCOUNT


def _revenue_code() -> str:
    return current_app.config.get("DISCOUNT_REVENUE_ACCOUNT_CODE", "4100")


def _tax_code() -> str:
    return current_app.config.get("DISCOUNT_TAX_ACCOUNT_CODE", "2200")


def get_account(business_id: int, account_code: str) -> ChartOfAccount:
    account = (
        db.session.query(ChartOfAccount)
        .filter_by(business_id=business_id, account_code=account_code, is_active=True)
        .first()
    )
    if not account:
        raise AccountingConfigurationError(
            f"Account {account_code} is not configured for business {business_id}. "
            "Run 'flask discounts init-accounts' first.",
            details={"business_id": business_id, "account_code": account_code},
        )
    return account


def seed_discount_accounts(business_id: int) -> list[str]:
    """
    Create the discount chart-of-accounts rows a business is missing.

    Safe to call repeatedly (idempotent). Returns the codes created.
    """
    if not db.session.query(Business).filter_by(id=business_id).first():
        raise AccountingError(f"Business {business_id} not found")

    accounts = OrderedDict(DISCOUNT_ACCOUNTS)
    accounts.setdefault(_revenue_code(), ("Sales Revenue", "revenue"))
    accounts.setdefault(_tax_code(), ("VAT Payable", "liability"))

    created = []
    with atomic():
        existing = {
            code for (code,) in db.session.query(ChartOfAccount.account_code).filter_by(business_id=business_id)
        }
        for code, (name, account_type) in accounts.items():
            if code in existing:
                continue
            db.session.add(ChartOfAccount(
                business_id=business_id,
                account_code=code,
                account_name=name,
                account_type=account_type,
            ))
            created.append(code)

    if created:
        current_app.logger.info("Seeded discount accounts %s for business %s", ", ".join(created), business_id)
    return created


# =============================================================================
# TAX
# =============================================================================

def calculate_tax_impact(discount_amount, tax_rate) -> dict:
    """A discount lowers the taxable amount, so tax owed drops by discount * rate."""
    amount = to_money(discount_amount if discount_amount is not None else 0, "discount_amount")
    if amount <= 0:
        return {"discount_amount": ZERO, "tax_rate": Decimal("0"), "tax_impact": ZERO}
    rate = to_decimal(tax_rate if tax_rate is not None else 0, "tax_rate")
    if rate < 0 or rate > 100:
        raise AccountingError("tax_rate must be between 0 and 100")
    return {
        "discount_amount": amount,
        "tax_rate": rate,
        "tax_impact": quantize_money(amount * rate / 100),
    }


# =============================================================================
# POSTING
# =============================================================================

def _check_balanced(lines: list[dict]) -> Decimal:
    if not lines:
        raise UnbalancedJournalError("A journal entry needs at least one debit and one credit")
    debit = ZERO
    credit = ZERO
    for line in lines:
        if line["amount"] <= 0:
            raise UnbalancedJournalError("Journal line amounts must be positive")
        if line["line_type"] == "debit":
            debit += line["amount"]
        elif line["line_type"] == "credit":
            credit += line["amount"]
        else:
            raise UnbalancedJournalError(f"Unknown line type {line['line_type']!r}")
    if debit != credit or debit == 0:
        raise UnbalancedJournalError(
            f"Journal entry does not balance: debit {debit}, credit {credit}",
            details={"debit": str(debit), "credit": str(credit)},
        )
    return debit


def _post_entry(
    *,
    business_id: int,
    prefix: str,
    document_type: str,
    description: str,
    source_type: str,
    reference_type: str | None,
    reference_id: int | None,
    lines: list[dict],
    user_id: int | None,
    reverses_entry_id: int | None = None,
) -> JournalEntry:
    """Flushes inside the caller's unit of work."""
    total = _check_balanced(lines)

    entry = JournalEntry(
        business_id=business_id,
        reference_number=next_document_number(
            business_id=business_id, document_type=document_type, prefix=prefix,
        ),
        journal_date=today(),
        description=description,
        source_type=source_type,
        reference_type=reference_type,
        reference_id=reference_id,
        total_amount=total,
        reverses_entry_id=reverses_entry_id,
        created_by_user_id=user_id,
    )
    for line in lines:
        entry.lines.append(JournalEntryLine(
            account_id=line["account"].id,
            line_type=line["line_type"],
            amount=line["amount"],
            description=line.get("description"),
            allocation_id=line.get("allocation_id"),
        ))
    db.session.add(entry)
    db.session.flush()
    return entry


def _transaction_ref(transaction) -> tuple[int, str, int]:
    """(business_id, type, id) from a POS ticket, an invoice, or a plain dict."""
    if isinstance(transaction, (PosTransaction, Invoice)):
        return transaction.business_id, transaction_type_of(transaction), transaction.id
    if isinstance(transaction, dict) and transaction.get("business_id") and transaction.get("id"):
        return (
            transaction["business_id"],
            (transaction.get("type") or transaction.get("transaction_type") or "TRANSACTION").upper(),
            transaction["id"],
        )
    raise AccountingError("transaction must carry business_id and id")


def _link(allocation_id: int | None, entry: JournalEntry) -> None:
    if not allocation_id:
        return
    allocation = lock_for_update(
        db.session.query(DiscountAllocation).filter_by(id=allocation_id, business_id=entry.business_id)
    ).first()
    if not allocation:
        raise AccountingError(f"Allocation {allocation_id} not found")
    if allocation.status == STATUS_VOID:
        raise AllocationStateError(f"Allocation {allocation_id} is void and cannot be journaled")
    if allocation.journal_entry_id is not None and allocation.journal_entry_id != entry.id:
        raise AllocationStateError(
            f"Allocation {allocation_id} is already posted to journal entry {allocation.journal_entry_id}"
        )
    allocation.journal_entry_id = entry.id
    db.session.flush()


def create_discount_journal_entry(transaction, discount_info: dict, user_id: int | None, commit: bool = True) -> dict:
    """
    One balanced entry for one discount: debit the family's discount account,
    credit revenue. Links discount_info["allocation_id"] when given.
    """
    business_id, tx_type, tx_id = _transaction_ref(transaction)
    amount = to_money(discount_info.get("discount_amount"), "discount_amount")
    if amount <= 0:
        raise AccountingError("discount_amount must be positive")
    rule_type = discount_info.get("rule_type")
    account_code = get_discount_account_by_type(rule_type)
    label = discount_info.get("name") or discount_info.get("code") or ""
    allocation_id = discount_info.get("allocation_id")

    with atomic(commit=commit):
        discount_account = get_account(business_id, account_code)
        revenue_account = get_account(business_id, _revenue_code())
        entry = _post_entry(
            business_id=business_id,
            prefix=JOURNAL_PREFIX,
            document_type="JOURNAL_ENTRY",
            description=f"Discount applied - {rule_type} - {label}".rstrip(" -"),
            source_type=SOURCE_DISCOUNT,
            reference_type=tx_type,
            reference_id=tx_id,
            user_id=user_id,
            lines=[
                {"account": discount_account, "line_type": "debit", "amount": amount,
                 "description": f"{rule_type} discount", "allocation_id": allocation_id},
                {"account": revenue_account, "line_type": "credit", "amount": amount,
                 "description": f"Revenue reduction from {rule_type} discount", "allocation_id": allocation_id},
            ],
        )
        _link(allocation_id, entry)

    current_app.logger.info(
        "Discount journal entry %s posted for %s %s: %s to %s",
        entry.reference_number, tx_type, tx_id, amount, account_code,
    )
    return {
        "journal_id": entry.id,
        "reference_number": entry.reference_number,
        "discount_amount": amount,
        "account_code": account_code,
        "lines": [
            {"account_id": discount_account.id, "line_type": "debit", "amount": amount},
            {"account_id": revenue_account.id, "line_type": "credit", "amount": amount},
        ],
    }


def create_bulk_discount_journal_entries(transaction, discounts: list[dict], user_id: int | None, commit: bool = True) -> dict:
    """
    One entry for a stack of discounts: one debit per distinct discount
    account (amounts summed) and one balancing credit to revenue.
    """
    if not discounts:
        raise AccountingError("At least one discount is required")
    business_id, tx_type, tx_id = _transaction_ref(transaction)

    by_account: "OrderedDict[str, dict]" = OrderedDict()
    total = ZERO
    for discount in discounts:
        amount = to_money(discount.get("discount_amount"), "discount_amount")
        if amount <= 0:
            raise AccountingError("discount_amount must be positive")
        code = get_discount_account_by_type(discount.get("rule_type"))
        bucket = by_account.setdefault(code, {"amount": ZERO, "rule_types": [], "allocation_ids": []})
        bucket["amount"] += amount
        if discount.get("rule_type") and discount["rule_type"] not in bucket["rule_types"]:
            bucket["rule_types"].append(discount["rule_type"])
        if discount.get("allocation_id"):
            bucket["allocation_ids"].append(discount["allocation_id"])
        total += amount

    with atomic(commit=commit):
        revenue_account = get_account(business_id, _revenue_code())
        lines = []
        for code, bucket in by_account.items():
            ids = bucket["allocation_ids"]
            lines.append({
                "account": get_account(business_id, code),
                "line_type": "debit",
                "amount": bucket["amount"],
                "description": f"{', '.join(bucket['rule_types']) or 'Sales'} discount",
                "allocation_id": ids[0] if len(ids) == 1 else None,
            })
        lines.append({
            "account": revenue_account,
            "line_type": "credit",
            "amount": total,
            "description": "Revenue reduction from stacked discounts",
        })
        entry = _post_entry(
            business_id=business_id,
            prefix=JOURNAL_PREFIX,
            document_type="JOURNAL_ENTRY",
            description=f"Stacked discounts applied - {len(discounts)} discount(s)",
            source_type=SOURCE_DISCOUNT,
            reference_type=tx_type,
            reference_id=tx_id,
            user_id=user_id,
            lines=lines,
        )
        for bucket in by_account.values():
            for allocation_id in bucket["allocation_ids"]:
                _link(allocation_id, entry)

    current_app.logger.info(
        "Bulk discount journal entry %s posted for %s %s: %s over %d account(s)",
        entry.reference_number, tx_type, tx_id, total, len(by_account),
    )
    return {
        "journal_id": entry.id,
        "reference_number": entry.reference_number,
        "total_discount": total,
        "discount_count": len(discounts),
        "accounts": [{"account_code": code, "amount": b["amount"]} for code, b in by_account.items()],
    }


def create_allocation_journal_entry(allocation_id: int, business_id: int, user_id: int | None) -> dict:
    allocation = get_allocation(allocation_id, business_id)
    if allocation.status != STATUS_APPLIED:
        raise AllocationStateError(f"Only APPLIED allocations can be journaled. Allocation {allocation_id} is {allocation.status}")
    if allocation.journal_entry_id is not None:
        raise AllocationStateError(
            f"Allocation {allocation_id} is already posted to journal entry {allocation.journal_entry_id}"
        )
    return create_discount_journal_entry(
        {"business_id": business_id, "id": allocation.transaction_id, "type": allocation.transaction_type},
        {
            "rule_type": allocation.rule_type,
            "discount_amount": allocation.total_discount_amount,
            "name": allocation.allocation_number,
            "allocation_id": allocation.id,
        },
        user_id,
    )


def reverse_allocation_journal(allocation_id: int, reason: str, user_id: int | None, business_id: int) -> dict:
    """
    Undo a journaled allocation: post a REV entry and void the allocation,
    both in one unit of work.

    When the original entry belongs to this allocation alone, the reversal
    mirrors it line for line. For a stacked entry only this allocation's
    share is reversed.
    """
    if not reason or not str(reason).strip():
        raise AccountingError("A reversal reason is required")

    with atomic():
        allocation = get_allocation(allocation_id, business_id)
        if allocation.journal_entry_id is None:
            raise AllocationStateError(f"Allocation {allocation_id} has no journal entry to reverse")
        if allocation.status != STATUS_APPLIED:
            raise AllocationStateError(f"Allocation {allocation_id} is {allocation.status}")

        original = db.session.query(JournalEntry).filter_by(
            id=allocation.journal_entry_id, business_id=business_id
        ).first()
        if not original:
            raise AccountingError(f"Journal entry {allocation.journal_entry_id} not found")

        sharers = (
            db.session.query(DiscountAllocation.id)
            .filter(
                DiscountAllocation.journal_entry_id == original.id,
                DiscountAllocation.id != allocation.id,
            )
            .count()
        )
        if sharers == 0:
            lines = [
                {
                    "account": line.account,
                    "line_type": "credit" if line.line_type == "debit" else "debit",
                    "amount": line.amount,
                    "description": f"Reversal: {line.description or ''}".strip(),
                    "allocation_id": allocation.id,
                }
                for line in original.lines
            ]
        else:
            amount = allocation.total_discount_amount
            lines = [
                {"account": get_account(business_id, _revenue_code()), "line_type": "debit",
                 "amount": amount, "description": "Reversal: revenue reduction", "allocation_id": allocation.id},
                {"account": get_account(business_id, get_discount_account_by_type(allocation.rule_type)),
                 "line_type": "credit", "amount": amount, "description": "Reversal: discount",
                 "allocation_id": allocation.id},
            ]

        entry = _post_entry(
            business_id=business_id,
            prefix=REVERSAL_PREFIX,
            document_type="JOURNAL_REVERSAL",
            description=f"Reversal of discount allocation {allocation.allocation_number} - {str(reason).strip()}",
            source_type=SOURCE_REVERSAL,
            reference_type="ALLOCATION",
            reference_id=allocation.id,
            user_id=user_id,
            lines=lines,
            reverses_entry_id=original.id,
        )
        void_allocation(allocation.id, reason, user_id, business_id, allow_journaled=True, commit=False)

    current_app.logger.info(
        "Discount allocation %s reversed by %s (original %s)",
        allocation.allocation_number, entry.reference_number, original.reference_number,
    )
    return {
        "journal_id": entry.id,
        "reference_number": entry.reference_number,
        "reversed_entry_id": original.id,
        "allocation_id": allocation.id,
        "amount": entry.total_amount,
    }


def adjust_tax_entries(allocation_id: int, business_id: int, user_id: int | None, tax_rate=None) -> dict:
    """
    Debit the tax liability account, credit the general discount account, for
    the tax a discount took off. tax_rate defaults to the business rate.
    """
    allocation = get_allocation(allocation_id, business_id)
    if allocation.status != STATUS_APPLIED:
        raise AllocationStateError(f"Allocation {allocation_id} is {allocation.status}")
    if tax_rate is None:
        business = db.session.query(Business).filter_by(id=business_id).first()
        tax_rate = business.tax_rate if business else 0

    impact = calculate_tax_impact(allocation.total_discount_amount, tax_rate)
    if impact["tax_impact"] <= 0:
        return {"adjusted": False, "reason": "No tax impact", "tax_impact": impact}

    with atomic():
        entry = _post_entry(
            business_id=business_id,
            prefix=TAX_ADJUSTMENT_PREFIX,
            document_type="TAX_ADJUSTMENT",
            description=f"Tax adjustment for discount {allocation.allocation_number}",
            source_type=SOURCE_TAX,
            reference_type="ALLOCATION",
            reference_id=allocation.id,
            user_id=user_id,
            lines=[
                {"account": get_account(business_id, _tax_code()), "line_type": "debit",
                 "amount": impact["tax_impact"], "description": "Tax reduction from discount",
                 "allocation_id": allocation.id},
                {"account": get_account(business_id, DEFAULT_DISCOUNT_ACCOUNT), "line_type": "credit",
                 "amount": impact["tax_impact"], "description": "Discount tax adjustment",
                 "allocation_id": allocation.id},
            ],
        )

    current_app.logger.info(
        "Tax adjustment %s posted for allocation %s: %s",
        entry.reference_number, allocation.allocation_number, impact["tax_impact"],
    )
    return {
        "adjusted": True,
        "journal_id": entry.id,
        "reference_number": entry.reference_number,
        "tax_impact": impact,
    }


def link_allocation_to_journal(allocation_id: int, journal_id: int, business_id: int) -> DiscountAllocation:
    with atomic():
        entry = db.session.query(JournalEntry).filter_by(id=journal_id, business_id=business_id).first()
        if not entry:
            raise AccountingError(f"Journal entry {journal_id} not found")
        _link(allocation_id, entry)
    return get_allocation(allocation_id, business_id)


def get_journal_entries_for_allocation(allocation_id: int, business_id: int) -> list[dict]:
    """The posting entry plus any reversal or tax entries raised for the allocation."""
    allocation = get_allocation(allocation_id, business_id)
    line_entry_ids = db.session.query(JournalEntryLine.journal_entry_id).filter(
        JournalEntryLine.allocation_id == allocation.id
    )
    q = db.session.query(JournalEntry).filter(
        JournalEntry.business_id == business_id,
        or_(
            JournalEntry.id == allocation.journal_entry_id,
            JournalEntry.id.in_(line_entry_ids),
        ),
    )
    return [entry.to_dict() for entry in q.order_by(JournalEntry.id.asc()).all()]


# =============================================================================
# RECONCILIATION
# =============================================================================

def _day_end(value) -> datetime:
    day = to_date(value) or today()
    return datetime(day.year, day.month, day.day) + timedelta(days=1)


def _applied_allocations(business_id: int, as_of) -> list[DiscountAllocation]:
    return (
        db.session.query(DiscountAllocation)
        .filter(
            DiscountAllocation.business_id == business_id,
            DiscountAllocation.status == STATUS_APPLIED,
            DiscountAllocation.applied_at < _day_end(as_of),
        )
        .order_by(DiscountAllocation.applied_at.asc(), DiscountAllocation.id.asc())
        .all()
    )


def _net_debit(entry: JournalEntry) -> Decimal:
    """Debit total of an entry less whatever reversal entries took back."""
    reversed_total = sum(
        (r.total_debit for r in db.session.query(JournalEntry).filter_by(reverses_entry_id=entry.id)),
        ZERO,
    )
    return quantize_money(Decimal(entry.total_debit) - Decimal(reversed_total))


def _allocation_row(a: DiscountAllocation) -> dict:
    tx = a.pos_transaction if a.pos_transaction_id else a.invoice
    row = a.to_dict()
    row["source_type"] = a.transaction_type
    row["source_number"] = transaction_number(tx) if tx else None
    return row


def reconcile_discounts(business_id: int, as_of=None) -> dict:
    """
    Compare APPLIED allocations up to as_of (inclusive) with the ledger.

    - unlinked: no journal entry
    - mismatched: the entry's net debit differs from the allocations posted to
      it by more than one cent
    """
    as_of_date = to_date(as_of) or today()
    allocations = _applied_allocations(business_id, as_of_date)

    unlinked = [a for a in allocations if a.journal_entry_id is None]
    linked = [a for a in allocations if a.journal_entry_id is not None]

    by_entry: "OrderedDict[int, list[DiscountAllocation]]" = OrderedDict()
    for a in linked:
        by_entry.setdefault(a.journal_entry_id, []).append(a)

    mismatched = []
    journal_debit_total = ZERO
    for entry_id, members in by_entry.items():
        entry = db.session.get(JournalEntry, entry_id)
        net = _net_debit(entry)
        journal_debit_total += net
        expected = sum((a.total_discount_amount for a in members), ZERO)
        if abs(expected - net) > Decimal("0.01"):
            mismatched.append({
                "journal_id": entry.id,
                "reference_number": entry.reference_number,
                "allocation_ids": [a.id for a in members],
                "allocation_numbers": [a.allocation_number for a in members],
                "allocation_amount": money_str(expected),
                "journal_debit_total": money_str(net),
                "difference": money_str(expected - net),
            })

    summary = {
        "total_allocations": len(allocations),
        "linked_allocations": len(linked),
        "unlinked_allocations": len(unlinked),
        "total_discount_amount": money_str(sum((a.total_discount_amount for a in allocations), ZERO)),
        "linked_amount": money_str(sum((a.total_discount_amount for a in linked), ZERO)),
        "unlinked_amount": money_str(sum((a.total_discount_amount for a in unlinked), ZERO)),
        "journal_debit_total": money_str(journal_debit_total),
    }
    is_reconciled = not unlinked and not mismatched
    if not is_reconciled:
        current_app.logger.warning(
            "Discount reconciliation for business %s as of %s: %d unlinked, %d mismatched",
            business_id, as_of_date, len(unlinked), len(mismatched),
        )

    return {
        "reconciliation_date": as_of_date.isoformat(),
        "summary": summary,
        "unlinked_allocations": [_allocation_row(a) for a in unlinked],
        "mismatched_entries": mismatched,
        "is_reconciled": is_reconciled,
    }


def find_unaccounted_discounts(business_id: int, start_date, end_date) -> list[dict]:
    start = to_date(start_date) or today()
    rows = (
        db.session.query(DiscountAllocation)
        .filter(
            DiscountAllocation.business_id == business_id,
            DiscountAllocation.status == STATUS_APPLIED,
            DiscountAllocation.journal_entry_id.is_(None),
            DiscountAllocation.applied_at >= datetime(start.year, start.month, start.day),
            DiscountAllocation.applied_at < _day_end(end_date),
        )
        .order_by(DiscountAllocation.applied_at.desc(), DiscountAllocation.id.desc())
        .all()
    )
    return [_allocation_row(a) for a in rows]


def generate_reconciliation_report(business_id: int, date=None) -> dict:
    reconciliation = reconcile_discounts(business_id, date)
    allocations = _applied_allocations(business_id, reconciliation["reconciliation_date"])

    daily: "OrderedDict[str, dict]" = OrderedDict()
    for a in sorted(allocations, key=lambda x: x.applied_at, reverse=True):
        key = a.applied_at.date().isoformat()
        bucket = daily.setdefault(key, {"date": key, "allocation_count": 0, "daily_discount_total": ZERO})
        bucket["allocation_count"] += 1
        bucket["daily_discount_total"] += a.total_discount_amount

    entry_ids = {a.journal_entry_id for a in allocations if a.journal_entry_id is not None}
    distribution = []
    if entry_ids:
        rows = (
            db.session.query(
                JournalEntry.id,
                JournalEntry.reference_number,
                JournalEntry.journal_date,
                ChartOfAccount.account_code,
                ChartOfAccount.account_name,
                db.func.sum(JournalEntryLine.amount),
            )
            .join(JournalEntryLine, JournalEntryLine.journal_entry_id == JournalEntry.id)
            .join(ChartOfAccount, ChartOfAccount.id == JournalEntryLine.account_id)
            .filter(JournalEntry.id.in_(entry_ids), JournalEntryLine.line_type == "debit")
            .group_by(
                JournalEntry.id, JournalEntry.reference_number, JournalEntry.journal_date,
                ChartOfAccount.account_code, ChartOfAccount.account_name,
            )
            .order_by(JournalEntry.journal_date.desc(), JournalEntry.id.desc())
            .all()
        )
        distribution = [
            {
                "journal_id": r[0],
                "reference_number": r[1],
                "journal_date": r[2].isoformat() if r[2] else None,
                "account_code": r[3],
                "account_name": r[4],
                "total_debit": money_str(Decimal(r[5] or 0)),
            }
            for r in rows
        ]

    return {
        "report_date": reconciliation["reconciliation_date"],
        "business_id": business_id,
        "reconciliation_summary": reconciliation["summary"],
        "is_reconciled": reconciliation["is_reconciled"],
        "daily_totals": [
            {**b, "daily_discount_total": money_str(b["daily_discount_total"])} for b in daily.values()
        ],
        "account_distribution": distribution,
        "unlinked_count": len(reconciliation["unlinked_allocations"]),
        "mismatched_count": len(reconciliation["mismatched_entries"]),
        "report_generated_at": to_utc_z(utcnow()),
    }


# =============================================================================
# REPORTING
# =============================================================================

def get_discount_journal_entries(business_id: int, start_date, end_date) -> list[dict]:
    start = to_date(start_date) or today()
    end = to_date(end_date) or today()
    entries = (
        db.session.query(JournalEntry)
        .filter(
            JournalEntry.business_id == business_id,
            JournalEntry.source_type.in_(DISCOUNT_SOURCES),
            JournalEntry.journal_date >= start,
            JournalEntry.journal_date <= end,
        )
        .order_by(JournalEntry.journal_date.desc(), JournalEntry.created_at.desc(), JournalEntry.id.desc())
        .all()
    )
    results = []
    for entry in entries:
        data = entry.to_dict(include_lines=False)
        data["line_count"] = len(entry.lines)
        data["total_debit"] = money_str(Decimal(entry.total_debit))
        data["total_credit"] = money_str(Decimal(entry.total_credit))
        data["accounts_used"] = ", ".join(sorted({line.account.account_code for line in entry.lines}))
        results.append(data)
    return results


def export_discount_journal_entries(business_id: int, start_date, end_date) -> str:
    entries = get_discount_journal_entries(business_id, start_date, end_date)

    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(JOURNAL_EXPORT_HEADER)
    for entry in entries:
        writer.writerow([
            entry["reference_number"],
            entry["journal_date"],
            entry["description"] or "",
            entry["reference_type"] or "",
            entry["reference_id"] if entry["reference_id"] is not None else "",
            entry["status"],
            entry["total_debit"],
            entry["total_credit"],
            entry["accounts_used"],
            entry["created_at"] or "",
        ])
    return buf.getvalue()
