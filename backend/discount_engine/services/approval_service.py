"""
Discount approval workflow.

WHY: Discounts above the business threshold (default 20%) need a manager's
sign-off before the sale can be priced with them.

LIFECYCLE:
1. pending   - created by the rule engine's submit_for_approval
2. approved  - manager accepted; the engine may now price with pre-approval
3. rejected  - manager declined; rejection_reason records why

A request is decided exactly once. approved and rejected are terminal.
"""

from __future__ import annotations

import json
from decimal import Decimal
from enum import Enum

from flask import current_app

from ..extensions import db
from ..models import DiscountApproval
from ..time_utils import utcnow, to_datetime
from ..validation import ConflictError, ValidationError, quantize_money, to_money
from .concurrency import atomic, lock_for_update
from .transaction_service import get_transaction, normalize_transaction_type, transaction_reference


class ApprovalError(ValidationError):
    """Raised for invalid approval requests."""


class ApprovalNotFoundError(ApprovalError):
    pass


class ApprovalTransitionError(ConflictError):
    """Raised when a decision is attempted on an already-decided request."""


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


# =============================================================================
# STATE MACHINE
# =============================================================================

_ALLOWED_TRANSITIONS = {
    ApprovalStatus.PENDING: {ApprovalStatus.APPROVED, ApprovalStatus.REJECTED},
    ApprovalStatus.APPROVED: set(),
    ApprovalStatus.REJECTED: set(),
}


def transition(current, target) -> ApprovalStatus:
    """Return the new status, or raise if the move is not allowed."""
    current = ApprovalStatus(current)
    target = ApprovalStatus(target)
    if target not in _ALLOWED_TRANSITIONS[current]:
        raise ApprovalTransitionError(
            f"Cannot move approval from {current.value} to {target.value}",
            details={"current": current.value, "target": target.value},
        )
    return target


# =============================================================================
# CREATION
# =============================================================================

def create_approval_request(
    *,
    business_id: int,
    transaction_type: str,
    transaction_id: int,
    original_amount,
    requested_discount,
    discount_percentage,
    approval_threshold,
    proposed_discounts: list[dict],
    requested_by_user_id: int | None = None,
    reason: str | None = None,
    commit: bool = True,
) -> DiscountApproval:
    """
    Create a pending request pointing at a real POS ticket or invoice.
    """
    if not transaction_id:
        raise ApprovalError("transaction_id is required to request approval")
    transaction_type = normalize_transaction_type(transaction_type)

    with atomic(commit=commit):
        # Raises when the transaction doesn't belong to this business
        get_transaction(business_id, transaction_type, transaction_id)

        approval = DiscountApproval(
            business_id=business_id,
            original_amount=to_money(original_amount, "original_amount"),
            requested_discount=to_money(requested_discount, "requested_discount"),
            discount_percentage=quantize_money(Decimal(str(discount_percentage))),
            approval_threshold=quantize_money(Decimal(str(approval_threshold))),
            proposed_discounts=json.dumps(proposed_discounts, default=str),
            reason=reason,
            status=ApprovalStatus.PENDING.value,
            requested_by_user_id=requested_by_user_id,
            **transaction_reference(transaction_type, transaction_id),
        )
        db.session.add(approval)
        db.session.flush()

    current_app.logger.info(
        "Discount approval %s requested for %s %s (%s%%)",
        approval.id, transaction_type, transaction_id, approval.discount_percentage,
    )
    return approval


# =============================================================================
# DECISIONS
# =============================================================================

def _load_for_update(approval_id: int, business_id: int) -> DiscountApproval:
    approval = lock_for_update(
        db.session.query(DiscountApproval).filter_by(id=approval_id, business_id=business_id)
    ).first()
    if not approval:
        raise ApprovalNotFoundError(f"Approval {approval_id} not found")
    return approval


def approve_request(
    approval_id: int,
    business_id: int,
    approver_user_id: int,
    notes: str | None = None,
) -> DiscountApproval:
    with atomic():
        approval = _load_for_update(approval_id, business_id)
        approval.status = transition(approval.status, ApprovalStatus.APPROVED).value
        approval.decided_by_user_id = approver_user_id
        approval.decided_at = utcnow()
        approval.decision_notes = notes

    current_app.logger.info("Discount approval %s approved by user %s", approval_id, approver_user_id)
    return approval


def reject_request(
    approval_id: int,
    business_id: int,
    approver_user_id: int,
    reason: str,
) -> DiscountApproval:
    if not reason or not str(reason).strip():
        raise ApprovalError("A rejection reason is required")

    with atomic():
        approval = _load_for_update(approval_id, business_id)
        approval.status = transition(approval.status, ApprovalStatus.REJECTED).value
        approval.decided_by_user_id = approver_user_id
        approval.decided_at = utcnow()
        approval.rejection_reason = str(reason).strip()

    current_app.logger.info("Discount approval %s rejected by user %s", approval_id, approver_user_id)
    return approval


# =============================================================================
# QUERIES
# =============================================================================

def get_approval(approval_id: int, business_id: int) -> DiscountApproval:
    approval = db.session.query(DiscountApproval).filter_by(id=approval_id, business_id=business_id).first()
    if not approval:
        raise ApprovalNotFoundError(f"Approval {approval_id} not found")
    return approval


def list_pending(business_id: int) -> list[DiscountApproval]:
    return (
        db.session.query(DiscountApproval)
        .filter_by(business_id=business_id, status=ApprovalStatus.PENDING.value)
        .order_by(DiscountApproval.created_at.asc(), DiscountApproval.id.asc())
        .all()
    )


def get_approval_history(
    business_id: int,
    status: str | None = None,
    start_date=None,
    end_date=None,
    limit: int = 100,
) -> list[DiscountApproval]:
    q = db.session.query(DiscountApproval).filter_by(business_id=business_id)
    if status:
        q = q.filter_by(status=ApprovalStatus(status).value)
    if start_date:
        q = q.filter(DiscountApproval.created_at >= to_datetime(start_date))
    if end_date:
        q = q.filter(DiscountApproval.created_at <= to_datetime(end_date))
    return q.order_by(DiscountApproval.id.desc()).limit(min(max(limit, 1), 500)).all()


def get_approval_stats(business_id: int) -> dict:
    rows = (
        db.session.query(DiscountApproval.status, db.func.count(DiscountApproval.id))
        .filter_by(business_id=business_id)
        .group_by(DiscountApproval.status)
        .all()
    )
    counts = {status.value: 0 for status in ApprovalStatus}
    for status, count in rows:
        counts[status] = count
    decided = counts["approved"] + counts["rejected"]
    return {
        "total": sum(counts.values()),
        "pending": counts["pending"],
        "approved": counts["approved"],
        "rejected": counts["rejected"],
        "approval_rate": round(counts["approved"] * 100.0 / decided, 1) if decided else 0.0,
    }


def is_approved_for(
    approval_id: int | None,
    business_id: int,
    transaction_type: str | None,
    transaction_id: int | None,
) -> bool:
    """An approval only unlocks pricing for the transaction it was raised on."""
    if not approval_id or not transaction_id or not transaction_type:
        return False
    approval = db.session.query(DiscountApproval).filter_by(id=approval_id, business_id=business_id).first()
    if not approval or approval.status != ApprovalStatus.APPROVED.value:
        return False
    return (
        approval.transaction_type == normalize_transaction_type(transaction_type)
        and approval.transaction_id == transaction_id
    )
