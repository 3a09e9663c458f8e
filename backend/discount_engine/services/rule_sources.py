# Overview: One adapter per discount family, each answering "which of my rules could apply here?"

from __future__ import annotations

import logging
from datetime import date, timedelta
from decimal import Decimal

from sqlalchemy import func, or_

from ..extensions import db
from ..models import (
    PromotionalDiscount,
    VolumeDiscountTier,
    EarlyPaymentTerm,
    CustomerPaymentTerm,
    CategoryDiscountRule,
    PricingRule,
)
from ..time_utils import to_date
from ..validation import to_decimal
from . import promotions_service
from .discount_core import (
    CategoryRule,
    DiscountRule,
    DiscountType,
    EarlyPaymentRule,
    PricingAdjustmentRule,
    PricingContext,
    RuleType,
    VolumeRule,
    is_valid,
    parse_discount_type,
)

logger = logging.getLogger(__name__)


class RuleSource:
    """
    Contract every family adapter follows.

    find_active returns candidates scoped by the context's customer,
    category, service, quantity and amount. Validity windows and generic
    minimums are left to the discovery service.
    """
    rule_type: RuleType

    def find_active(self, business_id: int, context: PricingContext) -> list[DiscountRule]:
        raise NotImplementedError

    def count(self, business_id: int) -> dict:
        raise NotImplementedError


# =============================================================================
# PROMOTIONAL
# =============================================================================

class PromotionalSource(RuleSource):
    """
    Automatic promotions (no code) are always candidates; coded promotions
    only when the caller supplies the code. Usage caps are enforced here
    because they depend on live counters, not on the rule definition.
    """
    rule_type = RuleType.PROMOTIONAL

    def find_active(self, business_id, context):
        q = db.session.query(PromotionalDiscount).filter(
            PromotionalDiscount.business_id == business_id,
            PromotionalDiscount.is_active.is_(True),
        )
        code = (context.promo_code or "").strip().upper()
        if code:
            q = q.filter(or_(
                PromotionalDiscount.promo_code.is_(None),
                func.upper(PromotionalDiscount.promo_code) == code,
            ))
        else:
            q = q.filter(PromotionalDiscount.promo_code.is_(None))

        rules = []
        for promo in q.order_by(PromotionalDiscount.id).all():
            if promotions_service.usage_exhausted(promo):
                logger.debug("Promotion %s skipped: max uses reached", promo.id)
                continue
            if promotions_service.customer_limit_reached(promo, context.customer_id):
                logger.debug("Promotion %s skipped: customer %s at limit", promo.id, context.customer_id)
                continue
            rules.append(promotions_service.promotion_to_rule(promo))
        return rules

    def count(self, business_id):
        total = db.session.query(PromotionalDiscount).filter_by(business_id=business_id).count()
        active = db.session.query(PromotionalDiscount).filter_by(business_id=business_id, is_active=True).count()
        return {"total": total, "active": active}


# =============================================================================
# VOLUME
# =============================================================================

def tier_to_rule(tier: VolumeDiscountTier) -> VolumeRule:
    return VolumeRule(
        id=tier.id,
        business_id=tier.business_id,
        name=tier.tier_name,
        discount_type=DiscountType.PERCENTAGE,
        discount_value=tier.discount_percentage,
        valid_from=tier.valid_from,
        valid_to=tier.valid_until,
        stackable=bool(tier.stackable),
        min_quantity=tier.min_quantity,
        min_amount=tier.min_amount,
        applies_to=tier.applies_to or "ALL",
        target_category_id=tier.target_category_id,
    )


def tier_qualifies(tier, quantity: int, amount: Decimal, category_id=None) -> bool:
    """Every threshold the tier defines must be met."""
    if tier.min_quantity is not None and quantity < tier.min_quantity:
        return False
    if tier.min_amount is not None and amount < tier.min_amount:
        return False
    if (tier.applies_to or "ALL") == "CATEGORY":
        if tier.target_category_id is None or tier.target_category_id != category_id:
            return False
    return True


class VolumeSource(RuleSource):
    """Returns at most one rule: the best tier the context qualifies for."""
    rule_type = RuleType.VOLUME

    def _active_tiers(self, business_id):
        return (
            db.session.query(VolumeDiscountTier)
            .filter_by(business_id=business_id, is_active=True)
            .order_by(VolumeDiscountTier.id)
            .all()
        )

    @staticmethod
    def find_best_tier(tiers, quantity: int, amount, category_id=None):
        amount = to_decimal(amount)
        qualifying = [t for t in tiers if tier_qualifies(t, quantity, amount, category_id)]
        if not qualifying:
            return None
        # Highest percentage wins; on a tie the stricter tier
        return max(
            qualifying,
            key=lambda t: (t.discount_percentage, t.min_quantity or 0, t.min_amount or 0),
        )

    def get_applicable_tiers(self, business_id, context: PricingContext) -> list[VolumeDiscountTier]:
        amount = to_decimal(context.amount)
        tiers = [
            t for t in self._active_tiers(business_id)
            if is_valid(t.valid_from, t.valid_until, context.at_date)
            and tier_qualifies(t, context.quantity, amount, context.category_id)
        ]
        tiers.sort(key=lambda t: (t.discount_percentage, t.min_quantity or 0, t.min_amount or 0), reverse=True)
        return tiers

    def find_active(self, business_id, context):
        tiers = [
            t for t in self._active_tiers(business_id)
            if is_valid(t.valid_from, t.valid_until, context.at_date)
        ]
        best = self.find_best_tier(tiers, context.quantity, context.amount, context.category_id)
        return [tier_to_rule(best)] if best else []

    def get_next_tier(self, business_id, context: PricingContext) -> dict | None:
        """Cheapest tier above the current one, with how far the customer is from it."""
        amount = to_decimal(context.amount)
        current = self.find_best_tier(self._active_tiers(business_id), context.quantity, amount, context.category_id)
        current_pct = current.discount_percentage if current else Decimal("0")
        better = [
            t for t in self._active_tiers(business_id)
            if t.discount_percentage > current_pct
            and not tier_qualifies(t, context.quantity, amount, context.category_id)
        ]
        if not better:
            return None
        nxt = min(better, key=lambda t: (t.discount_percentage, t.min_quantity or 0, t.min_amount or 0))
        return {
            "tier": nxt.to_dict(),
            "quantity_needed": max(0, (nxt.min_quantity or 0) - context.quantity),
            "amount_needed": str(max(Decimal("0"), (nxt.min_amount or Decimal("0")) - amount)),
        }

    def count(self, business_id):
        total = db.session.query(VolumeDiscountTier).filter_by(business_id=business_id).count()
        active = db.session.query(VolumeDiscountTier).filter_by(business_id=business_id, is_active=True).count()
        return {"total": total, "active": active}


# =============================================================================
# EARLY PAYMENT
# =============================================================================

def term_to_rule(term: EarlyPaymentTerm, customer_specific: bool = False) -> EarlyPaymentRule:
    return EarlyPaymentRule(
        id=term.id,
        business_id=term.business_id,
        name=term.term_name,
        discount_type=DiscountType.PERCENTAGE,
        discount_value=term.discount_percentage,
        valid_from=term.valid_from,
        valid_to=term.valid_until,
        stackable=bool(term.stackable),
        discount_days=term.discount_days,
        net_days=term.net_days,
        customer_specific=customer_specific,
    )


class EarlyPaymentSource(RuleSource):
    """
    Invoice-only: POS tickets are paid on the spot. A customer's assigned
    terms win over the business's best general terms. When both invoice and
    payment dates are known the discount window is enforced here.
    """
    rule_type = RuleType.EARLY_PAYMENT

    @staticmethod
    def is_eligible(invoice_date, payment_date, discount_days: int) -> bool:
        invoiced = to_date(invoice_date)
        paid = to_date(payment_date)
        if invoiced is None or paid is None:
            return False
        return (paid - invoiced).days <= discount_days

    @staticmethod
    def calculate_net_due_date(invoice_date, net_days: int) -> date:
        return to_date(invoice_date) + timedelta(days=net_days)

    @staticmethod
    def calculate_discount_deadline(invoice_date, discount_days: int) -> date:
        return to_date(invoice_date) + timedelta(days=discount_days)

    def get_customer_terms(self, business_id, customer_id) -> EarlyPaymentTerm | None:
        assignment = (
            db.session.query(CustomerPaymentTerm)
            .filter_by(business_id=business_id, customer_id=customer_id, is_active=True)
            .first()
        )
        if assignment and assignment.payment_term and assignment.payment_term.is_active:
            return assignment.payment_term
        return None

    def get_default_terms(self, business_id) -> EarlyPaymentTerm | None:
        return (
            db.session.query(EarlyPaymentTerm)
            .filter_by(business_id=business_id, is_active=True)
            .order_by(EarlyPaymentTerm.discount_percentage.desc(), EarlyPaymentTerm.id)
            .first()
        )

    def find_active(self, business_id, context):
        if not context.customer_id:
            return []
        if (context.transaction_type or "").upper() == "POS":
            return []

        term = self.get_customer_terms(business_id, context.customer_id)
        customer_specific = term is not None
        if term is None:
            term = self.get_default_terms(business_id)
        if term is None:
            return []

        if context.invoice_date and context.payment_date:
            if not self.is_eligible(context.invoice_date, context.payment_date, term.discount_days):
                logger.debug("Early payment term %s skipped: paid after discount window", term.id)
                return []

        return [term_to_rule(term, customer_specific)]

    def count(self, business_id):
        total = db.session.query(EarlyPaymentTerm).filter_by(business_id=business_id).count()
        active = db.session.query(EarlyPaymentTerm).filter_by(business_id=business_id, is_active=True).count()
        return {"total": total, "active": active}


# =============================================================================
# CATEGORY
# =============================================================================

def category_rule_to_rule(row: CategoryDiscountRule) -> CategoryRule:
    return CategoryRule(
        id=row.id,
        business_id=row.business_id,
        name=row.rule_name,
        discount_type=parse_discount_type(row.discount_type),
        discount_value=row.discount_value,
        valid_from=row.valid_from,
        valid_to=row.valid_until,
        min_purchase=row.min_amount,
        stackable=bool(row.stackable),
        category_id=row.category_id,
        service_id=row.service_id,
        max_discount_value=row.max_discount,
    )


class CategorySource(RuleSource):
    rule_type = RuleType.CATEGORY

    def find_active(self, business_id, context):
        scopes = []
        if context.category_id is not None:
            scopes.append(CategoryDiscountRule.category_id == context.category_id)
        if context.service_id is not None:
            scopes.append(CategoryDiscountRule.service_id == context.service_id)
        if not scopes:
            return []
        rows = (
            db.session.query(CategoryDiscountRule)
            .filter(
                CategoryDiscountRule.business_id == business_id,
                CategoryDiscountRule.is_active.is_(True),
                or_(*scopes),
            )
            .order_by(CategoryDiscountRule.id)
            .all()
        )
        return [category_rule_to_rule(r) for r in rows]

    def count(self, business_id):
        total = db.session.query(CategoryDiscountRule).filter_by(business_id=business_id).count()
        active = db.session.query(CategoryDiscountRule).filter_by(business_id=business_id, is_active=True).count()
        return {"total": total, "active": active}


# =============================================================================
# PRICING RULES
# =============================================================================

def _js_weekday(day: date) -> int:
    """0=Sunday .. 6=Saturday, the numbering stored in rule conditions."""
    return (day.weekday() + 1) % 7


def pricing_rule_applies(rule: PricingRule, context: PricingContext) -> bool:
    conditions = rule.get_conditions()
    kind = rule.rule_type or "general"

    if kind == "customer_category":
        wanted = conditions.get("customer_category_id")
        if wanted is not None and wanted != context.customer_category_id:
            return False

    elif kind == "quantity":
        if conditions.get("min_quantity") is not None and context.quantity < conditions["min_quantity"]:
            return False
        if conditions.get("max_quantity") is not None and context.quantity > conditions["max_quantity"]:
            return False
        if conditions.get("min_amount") is not None:
            if to_decimal(context.amount) < to_decimal(conditions["min_amount"], "min_amount"):
                return False

    elif kind == "time_based":
        at = context.at_datetime
        days = conditions.get("day_of_week") or []
        if days and _js_weekday(at.date()) not in days:
            return False
        start, end = conditions.get("hour_start"), conditions.get("hour_end")
        if start is not None and end is not None:
            if at.hour < start or at.hour > end:
                return False

    if rule.target_id is not None:
        target = {
            "service": context.service_id,
            "customer": context.customer_id,
            "category": context.category_id,
        }
        if rule.target_entity in target and target[rule.target_entity] != rule.target_id:
            return False

    return True


def pricing_rule_to_rule(row: PricingRule) -> PricingAdjustmentRule:
    return PricingAdjustmentRule(
        id=row.id,
        business_id=row.business_id,
        name=row.rule_name,
        discount_type=parse_discount_type(row.adjustment_type),
        discount_value=row.adjustment_value,
        valid_from=row.valid_from,
        valid_to=row.valid_until,
        stackable=bool(row.stackable),
        condition_type=row.rule_type or "general",
        conditions=row.get_conditions(),
        target_entity=row.target_entity,
        target_id=row.target_id,
        rule_priority=row.priority or 0,
    )


class PricingRuleSource(RuleSource):
    rule_type = RuleType.PRICING_RULE

    def find_active(self, business_id, context):
        rows = (
            db.session.query(PricingRule)
            .filter_by(business_id=business_id, is_active=True)
            .order_by(PricingRule.priority.desc(), PricingRule.id)
            .all()
        )
        return [pricing_rule_to_rule(r) for r in rows if pricing_rule_applies(r, context)]

    def count(self, business_id):
        total = db.session.query(PricingRule).filter_by(business_id=business_id).count()
        active = db.session.query(PricingRule).filter_by(business_id=business_id, is_active=True).count()
        return {"total": total, "active": active}


def default_sources() -> list[RuleSource]:
    return [
        PromotionalSource(),
        VolumeSource(),
        EarlyPaymentSource(),
        CategorySource(),
        PricingRuleSource(),
    ]
