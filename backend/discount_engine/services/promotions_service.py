from __future__ import annotations

from sqlalchemy import func, or_, update

from ..extensions import db
from ..models import PromotionalDiscount, DiscountAllocation, PosTransaction, Invoice
from ..validation import ValidationError, money_str, to_money, ZERO
from .discount_core import (
    PromotionalRule,
    apply_discount,
    format_currency,
    is_valid,
    parse_discount_type,
)


INVALID_CODE_REASON = "Invalid or expired promo code"
MAX_USES_REASON = "Promo code has reached maximum usage"


def promotion_to_rule(promo: PromotionalDiscount) -> PromotionalRule:
    return PromotionalRule(
        id=promo.id,
        business_id=promo.business_id,
        name=promo.name,
        discount_type=parse_discount_type(promo.discount_type),
        discount_value=promo.discount_value,
        valid_from=promo.valid_from,
        valid_to=promo.valid_until,
        min_purchase=promo.min_purchase,
        stackable=bool(promo.stackable),
        promo_code=promo.promo_code,
        description=promo.description,
        max_uses=promo.max_uses,
        times_used=promo.times_used or 0,
        per_customer_limit=promo.per_customer_limit,
        max_discount_amount=promo.max_discount_amount,
    )


def _normalize_code(promo_code: str | None) -> str | None:
    if promo_code is None:
        return None
    code = str(promo_code).strip().upper()
    return code or None


def list_promotions(business_id: int, active_only: bool = False) -> list[dict]:
    q = db.session.query(PromotionalDiscount).filter_by(business_id=business_id)
    if active_only:
        q = q.filter_by(is_active=True)
    return [p.to_dict() for p in q.order_by(PromotionalDiscount.created_at.desc()).all()]


def find_by_code(business_id: int, promo_code: str) -> PromotionalDiscount | None:
    code = _normalize_code(promo_code)
    if not code:
        return None
    return (
        db.session.query(PromotionalDiscount)
        .filter(
            PromotionalDiscount.business_id == business_id,
            func.upper(PromotionalDiscount.promo_code) == code,
            PromotionalDiscount.is_active.is_(True),
        )
        .first()
    )


def get_customer_promo_usage(business_id: int, promotion_id: int, customer_id: int) -> int:
    """APPLIED allocations of this promotion on the customer's tickets and invoices."""
    return (
        db.session.query(func.count(DiscountAllocation.id))
        .outerjoin(PosTransaction, DiscountAllocation.pos_transaction_id == PosTransaction.id)
        .outerjoin(Invoice, DiscountAllocation.invoice_id == Invoice.id)
        .filter(
            DiscountAllocation.business_id == business_id,
            DiscountAllocation.promotional_discount_id == promotion_id,
            DiscountAllocation.status == "APPLIED",
            or_(PosTransaction.customer_id == customer_id, Invoice.customer_id == customer_id),
        )
        .scalar()
    ) or 0


def usage_exhausted(promo: PromotionalDiscount) -> bool:
    return promo.max_uses is not None and (promo.times_used or 0) >= promo.max_uses


def customer_limit_reached(promo: PromotionalDiscount, customer_id: int | None) -> bool:
    if not customer_id or not promo.per_customer_limit:
        return False
    used = get_customer_promo_usage(promo.business_id, promo.id, customer_id)
    return used >= promo.per_customer_limit


def validate_promo_code(
    business_id: int,
    promo_code: str,
    amount,
    customer_id: int | None = None,
    at_date=None,
    currency: str = "UGX",
) -> dict:
    """
    Check a code a cashier typed in.

    Rejections are results, not exceptions:
    {"valid": False, "reason": ..., "discount_amount": "0.00"}
    """
    amount = to_money(amount)
    promo = find_by_code(business_id, promo_code)
    if promo is None or not is_valid(promo.valid_from, promo.valid_until, at_date):
        return {"valid": False, "reason": INVALID_CODE_REASON, "discount_amount": money_str(ZERO)}

    if usage_exhausted(promo):
        return {"valid": False, "reason": MAX_USES_REASON, "discount_amount": money_str(ZERO)}

    if promo.min_purchase is not None and amount < promo.min_purchase:
        return {
            "valid": False,
            "reason": f"Minimum purchase of {format_currency(promo.min_purchase, currency)} required",
            "discount_amount": money_str(ZERO),
        }

    if customer_id and promo.per_customer_limit:
        used = get_customer_promo_usage(business_id, promo.id, customer_id)
        if used >= promo.per_customer_limit:
            return {
                "valid": False,
                "reason": f"You have already used this promo code {used} time(s)",
                "discount_amount": money_str(ZERO),
            }

    rule = promotion_to_rule(promo)
    discount = rule.compute(amount)
    return {
        "valid": True,
        "promotion": promo.to_dict(),
        "discount_amount": money_str(discount),
        "final_amount": money_str(apply_discount(amount, discount)),
    }


def increment_promo_usage(promotion_id: int, business_id: int, by: int = 1) -> None:
    """
    Bump times_used with a single UPDATE. Counting is eventual: two
    concurrent sales may both pass the max_uses check before either bumps.
    Flushes only; the caller's unit of work commits.
    """
    if by <= 0:
        raise ValidationError("by must be positive")
    result = db.session.execute(
        update(PromotionalDiscount)
        .where(
            PromotionalDiscount.id == promotion_id,
            PromotionalDiscount.business_id == business_id,
        )
        .values(
            times_used=PromotionalDiscount.times_used + by,
            version_id=PromotionalDiscount.version_id + 1,
        )
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        raise ValidationError(f"Promotion {promotion_id} not found")
    # Loaded instances now hold stale counters and version ids
    for obj in list(db.session.identity_map.values()):
        if isinstance(obj, PromotionalDiscount) and obj.id == promotion_id:
            db.session.expire(obj)
