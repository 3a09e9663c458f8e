"""
Discount rule engine: one entry point for pricing a sale.

PIPELINE (calculate_final_price):
1. validate      - normalize_context, naming the first bad field
2. cache lookup  - only for calls that persist nothing
3. discover      - every family's candidates, validity and minimums applied
4. prioritize    - EARLY_PAYMENT > VOLUME > CATEGORY > PROMOTIONAL > PRICING_RULE
5. resolve       - greedy can_stack walk; one member per family survives
6. approval gate - combined effective percentage vs the business threshold
7. price         - each discount on what the previous ones left
8. persist       - optional: one allocation per applied discount, the
                   transaction's discount total and promo usage, all in one
                   unit of work

"Approval required" is a normal result ({"success": False,
"requires_approval": True, ...}), not an exception. Callers branch on it.
"""

from __future__ import annotations

from decimal import Decimal

from flask import current_app

from ..extensions import db
from ..models import Business
from ..validation import ValidationError, ZERO, quantize_money, to_decimal
from . import approval_service
from .allocation_service import METHOD_PRO_RATA_AMOUNT, create_allocation, validate_allocation_method
from .concurrency import atomic
from .discount_core import (
    DEFAULT_APPROVAL_THRESHOLD,
    DiscountContextError,
    DiscountRule,
    PricingContext,
    RuleType,
    calculate_stacked_discount,
    effective_percentage,
    normalize_context,
    prioritize,
    requires_approval,
    resolve_stack,
)
from .discovery_service import discover_discounts
from .promotions_service import increment_promo_usage
from .result_cache import NullResultCache, ResultCache, make_cache_key
from .rule_sources import RuleSource
from .transaction_service import get_transaction, update_discount_total


class DiscountEngineError(ValidationError):
    """Raised when a pricing call asks for something the context can't support."""


APPROVAL_REQUIRED_MESSAGE = "This discount requires approval"


def _display_name(rule: DiscountRule) -> str:
    return rule.name or getattr(rule, "promo_code", None) or "Discount"


def _applied_dict(rule: DiscountRule, original: Decimal) -> dict:
    amount = rule.discount_amount if rule.discount_amount is not None else ZERO
    data = {
        "id": rule.id,
        "rule_type": rule.rule_type.value,
        "name": _display_name(rule),
        "discount_type": rule.discount_type.value,
        "discount_value": rule.discount_value,
        "amount": amount,
        "percentage": effective_percentage(amount, original),
        "priority": rule.priority,
        "stackable": rule.stackable,
    }
    promo_code = getattr(rule, "promo_code", None)
    if promo_code:
        data["promo_code"] = promo_code
    description = getattr(rule, "description", None)
    if description:
        data["description"] = description
    return data


class DiscountRuleEngine:
    """
    Stateless apart from the injected cache and rule sources; construct one
    per request or share one, either works.
    """

    def __init__(self, cache: ResultCache | None = None, sources: list[RuleSource] | None = None):
        self._cache = cache
        self.sources = sources

    @property
    def cache(self) -> ResultCache:
        if self._cache is not None:
            return self._cache
        cache = current_app.extensions.get("discount_cache")
        return cache if cache is not None else NullResultCache()

    # =========================================================================
    # VALIDATION / CACHE
    # =========================================================================

    def validate_context(self, context) -> PricingContext:
        return normalize_context(context)

    def cache_key(self, context) -> str:
        """
        The approval threshold is part of the key: a cached result carries
        the gate outcome for the threshold it was priced under.
        """
        context = normalize_context(context)
        payload = context.cache_payload()
        payload["approval_threshold"] = str(self.get_approval_threshold(context.business_id))
        return make_cache_key(context.business_id, payload)

    def cache_result(self, key: str, value) -> None:
        self.cache.set(key, value)

    def get_cached_result(self, key: str):
        return self.cache.get(key)

    def invalidate_cache(self, business_id) -> int:
        dropped = self.cache.invalidate(business_id)
        current_app.logger.info("Discount cache invalidated for business %s (%d entries)", business_id, dropped)
        return dropped

    # =========================================================================
    # DISCOVERY / ORDERING
    # =========================================================================

    def discover(self, context: PricingContext) -> list[DiscountRule]:
        return discover_discounts(context, self.sources)

    def prioritize_discounts(self, discounts: list) -> list:
        return prioritize(discounts)

    def check_conflicts(self, discounts: list) -> dict:
        """One DUPLICATE_TYPE conflict per family that shows up more than once."""
        by_type: dict[str, list] = {}
        for d in discounts or []:
            rule_type = d.get("rule_type") if isinstance(d, dict) else d.rule_type
            rule_type = rule_type.value if isinstance(rule_type, RuleType) else rule_type
            by_type.setdefault(rule_type, []).append(d)

        conflicts = []
        for rule_type, members in by_type.items():
            if len(members) < 2:
                continue
            conflicts.append({
                "type": "DUPLICATE_TYPE",
                "rule_type": rule_type,
                "message": f"Multiple {rule_type} discounts cannot be combined",
                "discount_ids": [m.get("id") if isinstance(m, dict) else m.id for m in members],
            })
        return {"has_conflicts": bool(conflicts), "conflicts": conflicts}

    def _resolve(self, context: PricingContext) -> tuple[list[DiscountRule], list[DiscountRule], list[DiscountRule]]:
        """(candidates, kept, skipped)."""
        candidates = self.discover(context)
        kept, skipped = resolve_stack(self.prioritize_discounts(candidates))
        return candidates, kept, skipped

    # =========================================================================
    # APPROVAL
    # =========================================================================

    def get_approval_threshold(self, business_id) -> Decimal:
        business = db.session.query(Business).filter_by(id=business_id).first()
        if business is not None and business.discount_approval_threshold is not None:
            return to_decimal(business.discount_approval_threshold, "discount_approval_threshold")
        configured = current_app.config.get("DISCOUNT_APPROVAL_THRESHOLD", DEFAULT_APPROVAL_THRESHOLD)
        return to_decimal(configured, "DISCOUNT_APPROVAL_THRESHOLD")

    def combined_percentage(self, discounts: list[DiscountRule], amount) -> Decimal:
        """Sum of each discount's effective percentage of the full amount."""
        total = ZERO
        for rule in discounts or []:
            worth = rule.discount_amount if rule.discount_amount is not None else rule.compute(amount)
            total += effective_percentage(worth, amount)
        return quantize_money(total)

    def check_approval_required(self, discounts: list[DiscountRule], context) -> bool:
        if not discounts:
            return False
        context = normalize_context(context)
        pct = self.combined_percentage(discounts, context.amount)
        return requires_approval(pct, self.get_approval_threshold(context.business_id))

    def _is_pre_approved(self, context: PricingContext) -> bool:
        if context.pre_approved:
            return True
        return approval_service.is_approved_for(
            context.approval_id, context.business_id, context.transaction_type, context.transaction_id,
        )

    def submit_for_approval(self, context, requested_by_user_id: int | None = None) -> dict:
        context = normalize_context(context)
        if not context.transaction_id or not context.transaction_type:
            raise DiscountContextError(
                "transaction_id and transaction_type are required to request approval",
                details={"field": "transaction_id"},
            )

        _, kept, _ = self._resolve(context)
        stacked = calculate_stacked_discount(context.amount, kept)
        reason = context.reason
        if not reason:
            reason = f"Promo code: {context.promo_code}" if context.promo_code else "Discount approval requested"
            if context.customer_id:
                reason = f"{reason} - Customer: {context.customer_id}"

        approval = approval_service.create_approval_request(
            business_id=context.business_id,
            transaction_type=context.transaction_type,
            transaction_id=context.transaction_id,
            original_amount=context.amount,
            requested_discount=stacked["total_discount"],
            discount_percentage=self.combined_percentage(kept, context.amount),
            approval_threshold=self.get_approval_threshold(context.business_id),
            proposed_discounts=[_applied_dict(r, context.amount) for r in kept],
            requested_by_user_id=requested_by_user_id if requested_by_user_id is not None else context.user_id,
            reason=reason,
        )
        return {
            "success": True,
            "approval_id": approval.id,
            "status": approval.status,
            "message": "Discount approval request submitted",
        }

    # =========================================================================
    # PRICING
    # =========================================================================

    def calculate_final_price(self, context) -> dict:
        context = normalize_context(context)
        cacheable = not context.create_allocation and not context.approval_id
        key = self.cache_key(context) if cacheable else None

        if cacheable:
            cached = self.get_cached_result(key)
            if cached is not None:
                current_app.logger.debug("Discount cache hit for business %s", context.business_id)
                return cached

        _, kept, skipped = self._resolve(context)
        original = context.amount

        pct = self.combined_percentage(kept, original)
        threshold = self.get_approval_threshold(context.business_id)
        if requires_approval(pct, threshold) and not self._is_pre_approved(context):
            result = {
                "success": False,
                "requires_approval": True,
                "approval_threshold": threshold,
                "discount_percentage": pct,
                "discounts": [_applied_dict(r, original) for r in kept],
                "message": APPROVAL_REQUIRED_MESSAGE,
            }
            if cacheable:
                self.cache_result(key, result)
            return result

        stacked = calculate_stacked_discount(original, kept)
        applied = stacked["applied_discounts"]
        result = {
            "success": True,
            "original_amount": original,
            "final_amount": stacked["final_amount"],
            "total_discount": stacked["total_discount"],
            "applied_discounts": [_applied_dict(r, original) for r in applied],
            "skipped_discounts": [{"id": r.id, "rule_type": r.rule_type.value} for r in skipped],
            "requires_approval": False,
        }

        if context.create_allocation and applied:
            result["allocations"] = self._persist(context, applied)

        if cacheable:
            self.cache_result(key, result)

        current_app.logger.info(
            "Priced %s for business %s: %d discount(s), total %s",
            original, context.business_id, len(applied), stacked["total_discount"],
        )
        return result

    def quick_calculate(self, context) -> dict:
        """calculate_final_price without any persistence; always cacheable."""
        context = normalize_context(context)
        return self.calculate_final_price(context.replace(create_allocation=False, approval_id=None))

    def _persist(self, context: PricingContext, applied: list[DiscountRule]) -> list[dict]:
        if not context.transaction_id or not context.transaction_type:
            raise DiscountEngineError(
                "create_allocation needs transaction_id and transaction_type",
                details={"field": "transaction_id"},
            )
        method = validate_allocation_method(context.allocation_method or METHOD_PRO_RATA_AMOUNT)
        line_items = [item.to_dict() for item in context.items] or None

        created = []
        try:
            with atomic():
                tx = get_transaction(context.business_id, context.transaction_type, context.transaction_id)
                for rule in applied:
                    data = {
                        "transaction_type": context.transaction_type,
                        "transaction_id": context.transaction_id,
                        "rule_type": rule.rule_type.value,
                        "total_discount_amount": rule.discount_amount,
                        "allocation_method": method,
                        "status": "APPLIED",
                        "line_items": line_items,
                        rule.source_column: rule.id,
                    }
                    allocation = create_allocation(data, context.user_id, context.business_id, commit=False)
                    if rule.rule_type == RuleType.PROMOTIONAL:
                        increment_promo_usage(rule.id, context.business_id)
                    created.append(allocation)
                update_discount_total(tx)
        except ValidationError:
            raise
        except Exception:
            current_app.logger.exception(
                "Failed to persist discount allocations for %s %s",
                context.transaction_type, context.transaction_id,
            )
            raise

        current_app.logger.info(
            "Persisted %d allocation(s) for %s %s",
            len(created), context.transaction_type, context.transaction_id,
        )
        if any(rule.rule_type == RuleType.PROMOTIONAL for rule in applied):
            # Usage counters moved; cached previews may offer a used-up promotion
            self.invalidate_cache(context.business_id)
        return [
            {
                "id": a.id,
                "allocation_number": a.allocation_number,
                "allocation_method": a.allocation_method,
                "rule_type": a.rule_type,
                "total_discount_amount": a.total_discount_amount,
            }
            for a in created
        ]

    def preview_discounts(self, context) -> dict:
        """Every candidate on its own, in priority order. Never persists."""
        context = normalize_context(context)
        candidates = self.prioritize_discounts(self.discover(context))
        original = context.amount

        previews = []
        for rule in candidates:
            amount = rule.discount_amount if rule.discount_amount is not None else ZERO
            preview = _applied_dict(rule, original)
            preview["discount_amount"] = amount
            preview["final_amount"] = quantize_money(max(ZERO, original - amount))
            previews.append(preview)

        best = max(previews, key=lambda p: p["discount_amount"]) if previews else None
        return {
            "success": True,
            "original_amount": original,
            "discounts": previews,
            "total_possible_discount": quantize_money(sum((p["discount_amount"] for p in previews), ZERO)),
            "best_single_discount": best,
            "conflicts": self.check_conflicts(candidates),
        }

    def find_best_combination(self, context) -> dict:
        """
        The prioritized, conflict-free subset. With the fixed family order and
        one member per family, the greedy pick is also the best total.
        """
        context = normalize_context(context)
        _, kept, _ = self._resolve(context)
        original = context.amount
        stacked = calculate_stacked_discount(original, kept)

        if original > 0:
            savings = f"{stacked['total_discount'] / original * 100:.2f}%"
        else:
            savings = "0%"
        return {
            "success": True,
            "original_amount": original,
            "best_combination": [_applied_dict(r, original) for r in stacked["applied_discounts"]],
            "total_discount": stacked["total_discount"],
            "final_amount": stacked["final_amount"],
            "savings": savings,
        }

    # =========================================================================
    # INTEGRATION FORMATTERS
    # =========================================================================

    @staticmethod
    def _first_allocation(result: dict) -> dict:
        allocations = result.get("allocations") or []
        return allocations[0] if allocations else {}

    def prepare_for_pos(self, result: dict) -> dict:
        allocation = self._first_allocation(result)
        return {
            "allocation_id": allocation.get("id"),
            "allocation_number": allocation.get("allocation_number"),
            "total_discount": result.get("total_discount", ZERO),
            "final_amount": result.get("final_amount"),
            "discount_breakdown": [
                {
                    "type": d["rule_type"],
                    "code": d.get("promo_code") or d["name"],
                    "amount": d["amount"],
                    "percentage": f"{d['percentage']:.2f}",
                }
                for d in result.get("applied_discounts", [])
            ],
        }

    def prepare_for_invoice(self, result: dict) -> dict:
        allocation = self._first_allocation(result)
        return {
            "allocation_id": allocation.get("id"),
            "allocation_reference": allocation.get("allocation_number"),
            "total_discount": result.get("total_discount", ZERO),
            "net_amount": result.get("final_amount"),
            "discount_details": [
                {
                    "type": d["rule_type"],
                    "description": d.get("description") or d["name"],
                    "amount": d["amount"],
                    "rate": f"{d['percentage']:.2f}%",
                }
                for d in result.get("applied_discounts", [])
            ],
        }

    def prepare_for_accounting(self, result: dict) -> dict:
        """Shape create_bulk_discount_journal_entries expects for its discounts."""
        allocations = result.get("allocations") or []
        by_type = {a["rule_type"]: a["id"] for a in allocations}
        return {
            "total_discount": result.get("total_discount", ZERO),
            "discounts": [
                {
                    "rule_type": d["rule_type"],
                    "discount_amount": d["amount"],
                    "name": d["name"],
                    "allocation_id": by_type.get(d["rule_type"]),
                }
                for d in result.get("applied_discounts", [])
            ],
            "source": {
                "type": "DISCOUNT_ALLOCATION",
                "ids": [a["id"] for a in allocations],
                "numbers": [a["allocation_number"] for a in allocations],
            },
        }
