# Overview: Collects candidate discounts from every rule family and filters them centrally.

from __future__ import annotations

import logging

from ..validation import to_decimal
from .discount_core import (
    DiscountRule,
    PricingAdjustmentRule,
    PricingContext,
    VolumeRule,
    is_valid,
    normalize_context,
)
from .rule_sources import RuleSource, default_sources

logger = logging.getLogger(__name__)


def filter_expired(rules: list[DiscountRule], at_date) -> list[DiscountRule]:
    kept = []
    for rule in rules:
        if is_valid(rule.valid_from, rule.valid_to, at_date):
            kept.append(rule)
        else:
            logger.debug("%s rule %s outside validity window", rule.rule_type.value, rule.id)
    return kept


def meets_minimum(rule: DiscountRule, context: PricingContext) -> bool:
    amount = context.amount
    if rule.min_purchase is not None and amount < rule.min_purchase:
        return False
    if isinstance(rule, VolumeRule):
        if rule.min_amount is not None and amount < rule.min_amount:
            return False
        if rule.min_quantity is not None and context.quantity < rule.min_quantity:
            return False
    if isinstance(rule, PricingAdjustmentRule) and rule.condition_type == "quantity":
        min_quantity = rule.conditions.get("min_quantity")
        if min_quantity is not None and context.quantity < min_quantity:
            return False
        min_amount = rule.conditions.get("min_amount")
        if min_amount is not None and amount < to_decimal(min_amount, "min_amount"):
            return False
    return True


def filter_by_minimum(rules: list[DiscountRule], context: PricingContext) -> list[DiscountRule]:
    kept = []
    for rule in rules:
        if meets_minimum(rule, context):
            kept.append(rule)
        else:
            logger.debug("%s rule %s below minimum purchase", rule.rule_type.value, rule.id)
    return kept


def discover_discounts(context, sources: list[RuleSource] | None = None) -> list[DiscountRule]:
    """
    Every rule that could apply to the context, each annotated with what it
    would be worth on the full amount. Order is not meaningful.

    Adapter errors propagate: a half-discovered candidate set would price
    the sale wrong without anyone noticing.
    """
    context = normalize_context(context)
    sources = default_sources() if sources is None else sources

    candidates: list[DiscountRule] = []
    for source in sources:
        found = source.find_active(context.business_id, context)
        logger.debug("%s source returned %d candidate(s)", source.rule_type.value, len(found))
        candidates.extend(found)

    candidates = filter_expired(candidates, context.at_date)
    candidates = filter_by_minimum(candidates, context)

    return [rule.with_amount(rule.compute(context.amount)) for rule in candidates]


def check_discount_data(business_id: int, sources: list[RuleSource] | None = None) -> dict:
    """Row counts per family; handy when a business says 'my discount isn't applying'."""
    sources = default_sources() if sources is None else sources
    return {source.rule_type.value: source.count(business_id) for source in sources}
