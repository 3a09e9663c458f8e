"""
Discount allocation: spreading one discount across a transaction's lines.

WHY: The ledger and line-level margin reports need to know how much of a
ticket-level discount each line carried. The split must add up to the
discount to the cent, and no line may be discounted below zero.

DESIGN PRINCIPLES:
- Algorithms are pure functions over Decimal; persistence is separate
- Every line but the last is rounded to cents; the last absorbs the residual
- A rebalance pass then clamps lines into [0, line amount], moving any
  excess to lines with headroom (only needed for tiny totals or skewed
  weights)
- Header and lines are written in one unit of work

LIFECYCLE:
1. PENDING: recorded, not yet in effect
2. APPLIED: in effect on the transaction
3. VOID: terminal, reason recorded
"""

from __future__ import annotations

import csv
import io
from collections import OrderedDict
from datetime import datetime, timedelta
from decimal import Decimal

from flask import current_app
from sqlalchemy import and_, exists

from ..extensions import db
from ..models import (
    DiscountAllocation,
    DiscountAllocationLine,
    Invoice,
    PosTransaction,
)
from ..time_utils import to_date, today, utcnow
from ..validation import (
    CENT,
    ConflictError,
    ValidationError,
    ZERO,
    money_str,
    quantize_money,
    to_decimal,
    to_money,
)
from .concurrency import atomic, lock_for_update
from .discount_core import DiscountType, calculate_discount, parse_rule_type
from .document_service import ALLOCATION_PREFIX, next_document_number
from .transaction_service import (
    get_line_items,
    get_transaction,
    normalize_transaction_type,
    transaction_reference,
    update_discount_total,
)


class AllocationError(ValidationError):
    """Raised for invalid allocation input or an allocation that doesn't add up."""


class AllocationNotFoundError(AllocationError):
    pass


class AllocationStateError(ConflictError):
    """Raised when an allocation is not in a state that allows the operation."""


# =============================================================================
# CONSTANTS
# =============================================================================

METHOD_PRO_RATA_AMOUNT = "PRO_RATA_AMOUNT"
METHOD_PRO_RATA_QUANTITY = "PRO_RATA_QUANTITY"
METHOD_CUSTOM_WEIGHTS = "CUSTOM_WEIGHTS"
METHOD_FIXED_PERCENTAGE = "FIXED_PERCENTAGE"
ALLOCATION_METHODS = (
    METHOD_PRO_RATA_AMOUNT,
    METHOD_PRO_RATA_QUANTITY,
    METHOD_CUSTOM_WEIGHTS,
    METHOD_FIXED_PERCENTAGE,
)

STATUS_PENDING = "PENDING"
STATUS_APPLIED = "APPLIED"
STATUS_VOID = "VOID"

# One minor currency unit
EPSILON = CENT

EXPORT_HEADER = [
    "Allocation Number", "Date", "Transaction Type", "Transaction Number",
    "Customer ID", "Total Discount", "Method", "Status", "Line Items",
]


# =============================================================================
# ALLOCATION ALGORITHMS (PURE)
# =============================================================================

def _line_amount(item) -> Decimal:
    value = item.get("amount") if isinstance(item, dict) else getattr(item, "amount", None)
    return to_money(value if value is not None else 0, "line amount")


def _line_quantity(item) -> int:
    value = item.get("quantity") if isinstance(item, dict) else getattr(item, "quantity", None)
    return int(value or 1)


def _line_id(item):
    return item.get("id") if isinstance(item, dict) else getattr(item, "id", None)


def _rebalance(shares: list[Decimal], caps: list[Decimal], total: Decimal) -> list[Decimal]:
    """
    Clamp every share into [0, cap] and push the difference onto lines that
    can take it, last line first so the residual stays where it started.
    """
    shares = [min(max(s, ZERO), cap) for s, cap in zip(shares, caps)]
    diff = total - sum(shares, ZERO)
    order = range(len(shares) - 1, -1, -1)
    if diff > 0:
        for i in order:
            room = caps[i] - shares[i]
            take = min(room, diff)
            if take > 0:
                shares[i] += take
                diff -= take
            if diff == 0:
                break
    elif diff < 0:
        for i in order:
            give = min(shares[i], -diff)
            if give > 0:
                shares[i] -= give
                diff += give
            if diff == 0:
                break
    if diff != 0:
        raise AllocationError(f"Cannot place {total} within line amounts")
    return shares


def _distribute(amounts: list[Decimal], weights: list[Decimal], total: Decimal) -> list[Decimal]:
    total_weight = sum(weights, Decimal("0"))
    shares: list[Decimal] = []
    running = ZERO
    for i, weight in enumerate(weights):
        if i == len(weights) - 1:
            share = total - running
        else:
            share = quantize_money(total * weight / total_weight)
        shares.append(share)
        running += share
    return _rebalance(shares, amounts, total)


def _check_total(amounts: list[Decimal], total: Decimal) -> None:
    if total < 0:
        raise AllocationError("total_discount cannot be negative")
    if total > sum(amounts, ZERO):
        raise AllocationError(
            f"Discount {total} exceeds the sum of line amounts {sum(amounts, ZERO)}",
            details={"total_discount": str(total), "lines_total": str(sum(amounts, ZERO))},
        )


def _percentage_of(allocated: Decimal, original: Decimal) -> Decimal:
    if original <= 0:
        return Decimal("0.0000")
    return (allocated / original * 100).quantize(Decimal("0.0001"))


def _build_lines(line_items, amounts, shares, weights=None) -> list[dict]:
    lines = []
    for i, item in enumerate(line_items):
        line = {
            "line_item_id": _line_id(item),
            "original_amount": amounts[i],
            "allocated_discount": shares[i],
            "allocation_percentage": _percentage_of(shares[i], amounts[i]),
            "quantity": _line_quantity(item),
        }
        if weights is not None:
            line["allocation_weight"] = weights[i]
        lines.append(line)
    return lines


def allocate_by_line_amount(line_items: list, total_discount) -> list[dict]:
    """Pro-rata by amount / sum(amount). Lines with zero amount get nothing."""
    if not line_items:
        return []
    total = to_money(total_discount, "total_discount")
    amounts = [_line_amount(item) for item in line_items]
    _check_total(amounts, total)
    if total == 0:
        return _build_lines(line_items, amounts, [ZERO] * len(amounts))
    shares = _distribute(amounts, amounts, total)
    return _build_lines(line_items, amounts, shares)


def allocate_by_quantity(line_items: list, total_discount) -> list[dict]:
    """Pro-rata by quantity / sum(quantity); records discount_per_unit."""
    if not line_items:
        return []
    total = to_money(total_discount, "total_discount")
    amounts = [_line_amount(item) for item in line_items]
    quantities = [_line_quantity(item) for item in line_items]
    if any(q <= 0 for q in quantities):
        raise AllocationError("Line quantities must be positive")
    _check_total(amounts, total)
    if total == 0:
        shares = [ZERO] * len(amounts)
    else:
        shares = _distribute(amounts, [Decimal(q) for q in quantities], total)
    lines = _build_lines(line_items, amounts, shares)
    for line, quantity in zip(lines, quantities):
        line["discount_per_unit"] = quantize_money(line["allocated_discount"] / quantity)
    return lines


def allocate_by_custom_weights(line_items: list, weights: list, total_discount) -> list[dict]:
    """Pro-rata by caller weights, normalized; they need not sum to 1."""
    if not line_items:
        return []
    if weights is None or len(weights) != len(line_items):
        raise AllocationError("Number of weights must match number of line items")
    parsed = [to_decimal(w, "weight") for w in weights]
    if any(w < 0 for w in parsed):
        raise AllocationError("Weights cannot be negative")
    weight_sum = sum(parsed, Decimal("0"))
    if weight_sum <= 0:
        raise AllocationError("Weights must sum to a positive number")

    total = to_money(total_discount, "total_discount")
    amounts = [_line_amount(item) for item in line_items]
    _check_total(amounts, total)
    normalized = [(w / weight_sum).quantize(Decimal("0.000001")) for w in parsed]
    if total == 0:
        shares = [ZERO] * len(amounts)
    else:
        shares = _distribute(amounts, parsed, total)
    return _build_lines(line_items, amounts, shares, weights=normalized)


def allocate_by_percentage(line_items: list, percentage) -> list[dict]:
    """Each line discounted by the same percentage of its own amount."""
    if not line_items:
        return []
    pct = to_decimal(percentage, "percentage")
    if pct < 0 or pct > 100:
        raise AllocationError("percentage must be between 0 and 100")
    amounts = [_line_amount(item) for item in line_items]
    shares = [calculate_discount(amount, DiscountType.PERCENTAGE, pct) for amount in amounts]
    return _build_lines(line_items, amounts, shares)


def validate_allocation_method(method: str | None) -> str:
    normalized = (method or METHOD_PRO_RATA_AMOUNT).strip().upper()
    if normalized not in ALLOCATION_METHODS:
        raise AllocationError(
            f"Invalid allocation method {method!r}. Must be one of: {', '.join(ALLOCATION_METHODS)}"
        )
    return normalized


def allocate(method: str | None, line_items: list, total_discount, weights=None, percentage=None) -> list[dict]:
    """
    Dispatch to one algorithm. FIXED_PERCENTAGE given a total (and no
    percentage) derives the percentage from it and corrects the rounding
    residual so the lines still add up to the total.
    """
    method = validate_allocation_method(method)
    if method == METHOD_PRO_RATA_QUANTITY:
        return allocate_by_quantity(line_items, total_discount)
    if method == METHOD_CUSTOM_WEIGHTS:
        return allocate_by_custom_weights(line_items, weights, total_discount)
    if method == METHOD_FIXED_PERCENTAGE:
        if percentage is not None:
            return allocate_by_percentage(line_items, percentage)
        total = to_money(total_discount, "total_discount")
        amounts = [_line_amount(item) for item in line_items]
        _check_total(amounts, total)
        lines_total = sum(amounts, ZERO)
        pct = total / lines_total * 100 if lines_total else Decimal("0")
        lines = allocate_by_percentage(line_items, pct)
        shares = _rebalance([line["allocated_discount"] for line in lines], amounts, total)
        for line, share in zip(lines, shares):
            line["allocated_discount"] = share
            line["allocation_percentage"] = _percentage_of(share, line["original_amount"])
        return lines
    return allocate_by_line_amount(line_items, total_discount)


def validate_allocation_total(allocations: list[dict], expected_total) -> dict:
    expected = to_money(expected_total, "expected_total")
    actual = quantize_money(sum(
        (to_decimal(a.get("allocated_discount", 0), "allocated_discount") for a in (allocations or [])),
        ZERO,
    ))
    difference = abs(actual - expected)
    return {
        "valid": difference < EPSILON,
        "actual": actual,
        "expected": expected,
        "difference": difference,
    }


# =============================================================================
# PERSISTENCE
# =============================================================================

def _resolve_transaction_ref(data: dict) -> tuple[str, int]:
    if data.get("pos_transaction_id") and data.get("invoice_id"):
        raise AllocationError("An allocation references either a POS transaction or an invoice, not both")
    if data.get("pos_transaction_id"):
        return "POS", data["pos_transaction_id"]
    if data.get("invoice_id"):
        return "INVOICE", data["invoice_id"]
    if data.get("transaction_id") and data.get("transaction_type"):
        return normalize_transaction_type(data["transaction_type"]), data["transaction_id"]
    raise AllocationError("pos_transaction_id or invoice_id is required")


def _coerce_lines(lines: list[dict]) -> list[dict]:
    coerced = []
    for line in lines:
        original = to_money(line.get("original_amount", line.get("amount")), "original_amount")
        allocated = to_money(line.get("allocated_discount", line.get("discount_amount")), "allocated_discount")
        if allocated < 0:
            raise AllocationError("allocated_discount cannot be negative")
        if allocated > original:
            raise AllocationError(
                f"Line {line.get('line_item_id')} discount {allocated} exceeds its amount {original}"
            )
        coerced.append({
            "line_item_id": line.get("line_item_id", line.get("id")),
            "original_amount": original,
            "allocated_discount": allocated,
            "allocation_percentage": line.get("allocation_percentage", _percentage_of(allocated, original)),
            "quantity": line.get("quantity"),
            "discount_per_unit": line.get("discount_per_unit"),
            "allocation_weight": line.get("allocation_weight"),
        })
    return coerced


def create_allocation(data: dict, user_id: int | None, business_id: int, commit: bool = True) -> DiscountAllocation:
    """
    Persist an allocation header and its lines as one unit.

    data keys:
    - pos_transaction_id | invoice_id (or transaction_type + transaction_id)
    - discount_rule_id | promotional_discount_id, rule_type
    - total_discount_amount, allocation_method, status (default PENDING)
    - lines: precomputed lines, or
      line_items (+ weights / percentage): computed here with the method, or
      neither: the transaction's own line items are used

    Integrity problems (lines not adding up, a line discounted past its
    amount) raise AllocationError before anything is written.
    """
    if data.get("discount_rule_id") and data.get("promotional_discount_id"):
        raise AllocationError("Use discount_rule_id or promotional_discount_id, not both")

    transaction_type, transaction_id = _resolve_transaction_ref(data)
    total = to_money(data.get("total_discount_amount"), "total_discount_amount")
    if total <= 0:
        raise AllocationError("total_discount_amount must be positive")
    method = validate_allocation_method(data.get("allocation_method"))
    status = (data.get("status") or STATUS_PENDING).upper()
    if status not in (STATUS_PENDING, STATUS_APPLIED):
        raise AllocationError("New allocations must be PENDING or APPLIED")
    rule_type = parse_rule_type(data["rule_type"]).value if data.get("rule_type") else None

    with atomic(commit=commit):
        tx = get_transaction(business_id, transaction_type, transaction_id)

        if data.get("lines"):
            lines = _coerce_lines(data["lines"])
        else:
            line_items = data.get("line_items") or get_line_items(tx)
            if not line_items:
                raise AllocationError(f"{transaction_type} {transaction_id} has no line items to allocate to")
            lines = _coerce_lines(allocate(
                method, line_items, total,
                weights=data.get("weights"),
                percentage=data.get("percentage"),
            ))

        check = validate_allocation_total(lines, total)
        if not check["valid"]:
            raise AllocationError(
                f"Allocation lines sum to {check['actual']}, expected {check['expected']}",
                details={k: str(v) for k, v in check.items()},
            )

        allocation = DiscountAllocation(
            business_id=business_id,
            allocation_number=next_document_number(
                business_id=business_id,
                document_type="DISCOUNT_ALLOCATION",
                prefix=ALLOCATION_PREFIX,
            ),
            rule_type=rule_type,
            discount_rule_id=data.get("discount_rule_id"),
            promotional_discount_id=data.get("promotional_discount_id"),
            total_discount_amount=total,
            allocation_method=method,
            status=status,
            applied_at=utcnow() if status == STATUS_APPLIED else None,
            created_by_user_id=user_id,
            **transaction_reference(transaction_type, transaction_id),
        )
        for line in lines:
            allocation.lines.append(DiscountAllocationLine(
                line_item_id=line["line_item_id"],
                original_amount=line["original_amount"],
                allocated_discount=line["allocated_discount"],
                allocation_percentage=line["allocation_percentage"],
                quantity=line["quantity"],
                discount_per_unit=line["discount_per_unit"],
                allocation_weight=line["allocation_weight"],
            ))
        db.session.add(allocation)
        db.session.flush()

    current_app.logger.info(
        "Discount allocation %s created on %s %s for %s (%d lines)",
        allocation.allocation_number, transaction_type, transaction_id, total, len(lines),
    )
    return allocation


def _get(allocation_id: int, business_id: int, for_update: bool = False) -> DiscountAllocation:
    q = db.session.query(DiscountAllocation).filter_by(id=allocation_id, business_id=business_id)
    if for_update:
        q = lock_for_update(q)
    allocation = q.first()
    if not allocation:
        raise AllocationNotFoundError(f"Allocation {allocation_id} not found")
    return allocation


def get_allocation(allocation_id: int, business_id: int) -> DiscountAllocation:
    return _get(allocation_id, business_id)


def get_allocation_with_lines(allocation_id: int, business_id: int) -> dict:
    return _get(allocation_id, business_id).to_dict(include_lines=True)


def get_transaction_allocations(transaction_id: int, transaction_type: str, business_id: int) -> list[dict]:
    ref = transaction_reference(transaction_type, transaction_id)
    column = "pos_transaction_id" if ref["pos_transaction_id"] else "invoice_id"
    allocations = (
        db.session.query(DiscountAllocation)
        .filter_by(business_id=business_id, **{column: transaction_id})
        .order_by(DiscountAllocation.created_at.desc(), DiscountAllocation.id.desc())
        .all()
    )
    return [a.to_dict(include_lines=True) for a in allocations]


def apply_allocation(allocation_id: int, user_id: int | None, business_id: int) -> DiscountAllocation:
    with atomic():
        allocation = _get(allocation_id, business_id, for_update=True)
        if allocation.status != STATUS_PENDING:
            raise AllocationStateError(
                f"Only PENDING allocations can be applied. Allocation {allocation_id} is {allocation.status}"
            )
        allocation.status = STATUS_APPLIED
        allocation.applied_at = utcnow()

    current_app.logger.info("Discount allocation %s applied by user %s", allocation_id, user_id)
    return allocation


def can_void_allocation(allocation_id: int, business_id: int) -> bool:
    """
    APPLIED and not yet posted to the ledger. A journaled allocation has to
    be reversed through the accounting service instead.
    """
    allocation = (
        db.session.query(DiscountAllocation)
        .filter_by(id=allocation_id, business_id=business_id)
        .first()
    )
    if not allocation:
        return False
    return allocation.status == STATUS_APPLIED and allocation.journal_entry_id is None


def void_allocation(
    allocation_id: int,
    reason: str,
    user_id: int | None,
    business_id: int,
    *,
    allow_journaled: bool = False,
    commit: bool = True,
) -> DiscountAllocation:
    """
    APPLIED -> VOID. Terminal; voiding twice raises.

    The row carries version_id, so a concurrent void of the same allocation
    from another session fails with StaleDataError instead of silently
    double-voiding.
    """
    if not reason or not str(reason).strip():
        raise AllocationError("A void reason is required")

    with atomic(commit=commit):
        allocation = _get(allocation_id, business_id, for_update=True)
        if allocation.status == STATUS_VOID:
            raise AllocationStateError(f"Allocation {allocation_id} is already void")
        if allocation.status != STATUS_APPLIED:
            raise AllocationStateError(
                f"Only APPLIED allocations can be voided. Allocation {allocation_id} is {allocation.status}"
            )
        if allocation.journal_entry_id is not None and not allow_journaled:
            raise AllocationStateError(
                f"Allocation {allocation_id} is posted to journal entry {allocation.journal_entry_id}; "
                "reverse the journal entry instead"
            )

        allocation.status = STATUS_VOID
        allocation.rejection_reason = str(reason).strip()
        allocation.voided_at = utcnow()
        allocation.voided_by_user_id = user_id
        db.session.flush()

        tx = get_transaction(business_id, allocation.transaction_type, allocation.transaction_id)
        update_discount_total(tx)

    current_app.logger.info("Discount allocation %s voided by user %s: %s", allocation_id, user_id, reason)
    return allocation


# =============================================================================
# SWEEPS & REPORTS
# =============================================================================

def _has_live_allocation(column):
    return exists().where(and_(column, DiscountAllocation.status != STATUS_VOID))


def get_unallocated_discounts(business_id: int) -> list[dict]:
    """
    Transactions carrying a discount total with no live allocation behind it.
    Voided allocations don't count as coverage.
    """
    pos_rows = (
        db.session.query(PosTransaction)
        .filter(
            PosTransaction.business_id == business_id,
            PosTransaction.total_discount > 0,
            ~_has_live_allocation(DiscountAllocation.pos_transaction_id == PosTransaction.id),
        )
        .all()
    )
    invoice_rows = (
        db.session.query(Invoice)
        .filter(
            Invoice.business_id == business_id,
            Invoice.total_discount > 0,
            ~_has_live_allocation(DiscountAllocation.invoice_id == Invoice.id),
        )
        .all()
    )

    results = [
        {
            "transaction_type": "POS",
            "transaction_id": tx.id,
            "transaction_number": tx.transaction_number,
            "transaction_date": tx.transaction_date,
            "customer_id": tx.customer_id,
            "transaction_total": money_str(tx.total_amount),
            "total_discount": money_str(tx.total_discount),
        }
        for tx in pos_rows
    ] + [
        {
            "transaction_type": "INVOICE",
            "transaction_id": inv.id,
            "transaction_number": inv.invoice_number,
            "transaction_date": inv.invoice_date,
            "customer_id": inv.customer_id,
            "transaction_total": money_str(inv.total_amount),
            "total_discount": money_str(inv.total_discount),
        }
        for inv in invoice_rows
    ]
    results.sort(key=lambda r: r["transaction_date"] or datetime.min, reverse=True)
    for row in results:
        row["transaction_date"] = row["transaction_date"].isoformat() if row["transaction_date"] else None
    return results


def _range_bounds(start_date, end_date) -> tuple[datetime, datetime]:
    """Inclusive calendar-day range as [start 00:00, day after end 00:00)."""
    start = to_date(start_date) or today()
    end = to_date(end_date) or today()
    if end < start:
        raise ValidationError("end_date cannot be before start_date")
    return (
        datetime(start.year, start.month, start.day),
        datetime(end.year, end.month, end.day) + timedelta(days=1),
    )


def _allocations_in_range(business_id: int, start_date, end_date) -> list[DiscountAllocation]:
    lower, upper = _range_bounds(start_date, end_date)
    return (
        db.session.query(DiscountAllocation)
        .filter(
            DiscountAllocation.business_id == business_id,
            DiscountAllocation.created_at >= lower,
            DiscountAllocation.created_at < upper,
        )
        .order_by(DiscountAllocation.created_at.desc(), DiscountAllocation.id.desc())
        .all()
    )


def get_allocation_report(business_id: int, start_date, end_date) -> dict:
    allocations = _allocations_in_range(business_id, start_date, end_date)

    groups: "OrderedDict[tuple, dict]" = OrderedDict()
    for a in allocations:
        key = (a.created_at.date().isoformat(), a.allocation_method, a.status)
        group = groups.setdefault(key, {
            "allocation_date": key[0],
            "allocation_method": key[1],
            "status": key[2],
            "allocation_count": 0,
            "total_discount": ZERO,
            "transactions": set(),
        })
        group["allocation_count"] += 1
        group["total_discount"] += a.total_discount_amount
        group["transactions"].add((a.transaction_type, a.transaction_id))

    daily = []
    for group in groups.values():
        count = group["allocation_count"]
        daily.append({
            "allocation_date": group["allocation_date"],
            "allocation_method": group["allocation_method"],
            "status": group["status"],
            "allocation_count": count,
            "total_discount": money_str(group["total_discount"]),
            "avg_discount": money_str(group["total_discount"] / count),
            "transaction_count": len(group["transactions"]),
        })

    summary = {
        "total_allocations": len(allocations),
        "grand_total_discount": money_str(sum((a.total_discount_amount for a in allocations), ZERO)),
        "pos_count": len({a.pos_transaction_id for a in allocations if a.pos_transaction_id}),
        "invoice_count": len({a.invoice_id for a in allocations if a.invoice_id}),
        "applied_count": sum(1 for a in allocations if a.status == STATUS_APPLIED),
        "pending_count": sum(1 for a in allocations if a.status == STATUS_PENDING),
        "void_count": sum(1 for a in allocations if a.status == STATUS_VOID),
    }

    return {
        "period": {
            "start_date": to_date(start_date).isoformat() if start_date else None,
            "end_date": to_date(end_date).isoformat() if end_date else None,
        },
        "daily_breakdown": daily,
        "summary": summary,
    }


def export_allocations(business_id: int, start_date, end_date) -> str:
    allocations = _allocations_in_range(business_id, start_date, end_date)

    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(EXPORT_HEADER)
    for a in allocations:
        tx = a.pos_transaction if a.pos_transaction_id else a.invoice
        if a.pos_transaction_id:
            number = tx.transaction_number if tx else ""
        else:
            number = tx.invoice_number if tx else ""
        writer.writerow([
            a.allocation_number,
            a.created_at.date().isoformat(),
            a.transaction_type,
            number,
            (tx.customer_id if tx and tx.customer_id is not None else ""),
            money_str(a.total_discount_amount),
            a.allocation_method,
            a.status,
            len(a.lines),
        ])
    return buf.getvalue()


def bulk_create_allocations(items: list[dict], user_id: int | None, business_id: int) -> list[dict]:
    """
    Create allocations one by one, each in its own unit of work. Input
    problems with one item are reported in its result and don't stop the
    batch; database errors propagate.
    """
    results = []
    for data in items:
        try:
            allocation = create_allocation(data, user_id, business_id)
        except (ValidationError, ConflictError) as exc:
            results.append({
                "success": False,
                "transaction_id": data.get("pos_transaction_id") or data.get("invoice_id") or data.get("transaction_id"),
                "error": str(exc),
            })
            continue
        results.append({
            "success": True,
            "allocation_id": allocation.id,
            "allocation_number": allocation.allocation_number,
        })

    current_app.logger.info(
        "Bulk allocation for business %s: %d ok, %d failed",
        business_id,
        sum(1 for r in results if r["success"]),
        sum(1 for r in results if not r["success"]),
    )
    return results
