"""
Discount arithmetic, stacking and pricing-context tests.

Everything here is pure: no app, no database.
"""

from datetime import date, datetime
from decimal import Decimal

import pytest

from discount_engine.services.discount_core import (
    CategoryRule,
    DiscountContextError,
    DiscountType,
    EarlyPaymentRule,
    PricingAdjustmentRule,
    PricingContext,
    PromotionalRule,
    RuleType,
    VolumeRule,
    apply_discount,
    apply_max_discount,
    calculate_discount,
    calculate_stacked_discount,
    can_stack,
    effective_percentage,
    format_currency,
    format_percentage,
    get_date_range,
    is_valid,
    normalize_context,
    parse_discount_type,
    prioritize,
    requires_approval,
    resolve_stack,
    validate_discount_value,
)
from discount_engine.validation import ValidationError


class TestCalculateDiscount:
    """Single-rule arithmetic."""

    def test_percentage(self):
        assert calculate_discount(1000, "PERCENTAGE", 10) == Decimal("100.00")

    def test_percentage_capped_at_hundred(self):
        assert calculate_discount(1000, DiscountType.PERCENTAGE, 150) == Decimal("1000.00")

    def test_fixed_never_exceeds_amount(self):
        assert calculate_discount(50, "FIXED", 80) == Decimal("50.00")

    def test_fixed_amount_alias(self):
        assert calculate_discount(500, "FIXED_AMOUNT", 80) == Decimal("80.00")

    def test_rounds_half_up_to_cents(self):
        assert calculate_discount("10.05", "PERCENTAGE", 50) == Decimal("5.03")

    def test_non_positive_inputs_are_worth_nothing(self):
        assert calculate_discount(0, "PERCENTAGE", 10) == Decimal("0.00")
        assert calculate_discount(-100, "FIXED", 10) == Decimal("0.00")
        assert calculate_discount(100, "FIXED", 0) == Decimal("0.00")

    def test_unknown_type_is_worth_nothing(self):
        assert calculate_discount(100, "BOGO", 10) == Decimal("0.00")

    def test_apply_discount_floors_at_zero(self):
        assert apply_discount(100, 150) == Decimal("0.00")
        assert apply_discount("99.99", "0.99") == Decimal("99.00")

    def test_apply_max_discount(self):
        assert apply_max_discount(500, 200) == Decimal("200.00")
        # Non-positive cap is ignored
        assert apply_max_discount(500, 0) == Decimal("500.00")
        assert apply_max_discount(500, None, original_amount=300) == Decimal("300.00")

    def test_effective_percentage(self):
        assert effective_percentage(50000, 500000) == Decimal("10.00")
        assert effective_percentage(10, 0) == Decimal("0.00")


class TestValidityAndApproval:

    def test_window_inclusive_on_both_ends(self):
        start, end = date(2026, 1, 1), date(2026, 12, 31)
        assert is_valid(start, end, date(2026, 1, 1))
        assert is_valid(start, end, date(2026, 12, 31))
        assert not is_valid(start, end, date(2027, 1, 1))
        assert not is_valid(start, end, date(2025, 12, 31))

    def test_window_compares_calendar_dates(self):
        assert is_valid(None, date(2026, 12, 31), datetime(2026, 12, 31, 23, 59))

    def test_open_ended_window(self):
        assert is_valid(None, None, date(1999, 1, 1))
        assert is_valid(date(2020, 1, 1), None, date(2099, 1, 1))

    def test_approval_strictly_above_threshold(self):
        assert not requires_approval(20, 20)
        assert requires_approval(Decimal("20.01"), 20)
        assert not requires_approval(50, 0)
        assert not requires_approval(None, 20)

    def test_validate_discount_value(self):
        assert validate_discount_value("FIXED", 500) == {"valid": True}
        assert validate_discount_value("PERCENTAGE", 101)["reason"] == "Percentage discount cannot exceed 100%"
        assert validate_discount_value("PERCENTAGE", 0)["reason"] == "Discount value must be positive"
        assert validate_discount_value("PERCENTAGE", None)["reason"] == "Discount value is required"
        assert validate_discount_value("BOGUS", 5)["valid"] is False

    def test_parse_discount_type(self):
        assert parse_discount_type("fixed_amount") == DiscountType.FIXED
        assert parse_discount_type(" percentage ") == DiscountType.PERCENTAGE
        with pytest.raises(ValidationError):
            parse_discount_type("half-off")


def _rule(cls, rule_id, value, stackable=True, **kwargs):
    return cls(id=rule_id, business_id=1, name=f"{cls.__name__} {rule_id}",
               discount_value=Decimal(value), stackable=stackable, **kwargs)


class TestStacking:

    def test_first_discount_always_stacks(self):
        promo = _rule(PromotionalRule, 1, "10", stackable=False)
        assert can_stack([], promo)

    def test_same_family_never_stacks(self):
        a = _rule(VolumeRule, 1, "5")
        b = _rule(VolumeRule, 2, "10")
        assert not can_stack([a], b)

    def test_cross_family_needs_both_stackable(self):
        volume = _rule(VolumeRule, 1, "5")
        category = _rule(CategoryRule, 2, "10")
        promo = _rule(PromotionalRule, 3, "10", stackable=False)
        assert can_stack([volume], category)
        assert not can_stack([volume], promo)
        assert not can_stack([promo], category)

    def test_accepts_plain_dicts(self):
        existing = [{"rule_type": "VOLUME", "stackable": True}]
        assert can_stack(existing, {"rule_type": "CATEGORY", "stackable": True})
        assert not can_stack(existing, {"rule_type": "VOLUME", "stackable": True})

    def test_prioritize_by_family_then_value(self):
        pricing = _rule(PricingAdjustmentRule, 1, "5")
        promo_small = _rule(PromotionalRule, 2, "5")
        promo_big = _rule(PromotionalRule, 3, "15")
        early = _rule(EarlyPaymentRule, 4, "2")
        volume = _rule(VolumeRule, 5, "10")

        ordered = prioritize([pricing, promo_small, promo_big, early, volume])
        assert [(r.rule_type, r.id) for r in ordered] == [
            (RuleType.EARLY_PAYMENT, 4),
            (RuleType.VOLUME, 5),
            (RuleType.PROMOTIONAL, 3),
            (RuleType.PROMOTIONAL, 2),
            (RuleType.PRICING_RULE, 1),
        ]

    def test_prioritize_within_family_by_computed_amount(self):
        flat = _rule(CategoryRule, 1, "5000", discount_type=DiscountType.FIXED).with_amount("5000")
        half = _rule(CategoryRule, 2, "50").with_amount("50000")

        assert [r.id for r in prioritize([flat, half])] == [2, 1]

    def test_resolve_stack_keeps_one_per_family(self):
        volume = _rule(VolumeRule, 1, "5")
        category = _rule(CategoryRule, 2, "10")
        promo = _rule(PromotionalRule, 3, "10", stackable=False)
        second_category = _rule(CategoryRule, 4, "3")

        kept, skipped = resolve_stack(prioritize([promo, category, volume, second_category]))
        assert [r.id for r in kept] == [1, 2]
        assert {r.id for r in skipped} == {3, 4}

    def test_stacked_discounts_apply_to_remainder(self):
        early = _rule(EarlyPaymentRule, 1, "2")
        volume = _rule(VolumeRule, 2, "10")

        result = calculate_stacked_discount(1000, [early, volume])
        assert result["total_discount"] == Decimal("118.00")
        assert result["final_amount"] == Decimal("882.00")
        assert [r.discount_amount for r in result["applied_discounts"]] == [Decimal("20.00"), Decimal("98.00")]

    def test_worthless_discount_on_remainder_is_dropped(self):
        everything = _rule(CategoryRule, 1, "100")
        fixed = _rule(PricingAdjustmentRule, 2, "50", discount_type=DiscountType.FIXED)

        result = calculate_stacked_discount(200, [everything, fixed])
        assert result["final_amount"] == Decimal("0.00")
        assert [r.id for r in result["applied_discounts"]] == [1]

    def test_max_discount_caps_promotions(self):
        promo = _rule(PromotionalRule, 1, "50", max_discount_amount=Decimal("100"))
        assert promo.compute(1000) == Decimal("100.00")

    def test_source_column(self):
        assert _rule(PromotionalRule, 1, "5").source_column == "promotional_discount_id"
        assert _rule(VolumeRule, 1, "5").source_column == "discount_rule_id"

    def test_rule_to_dict(self):
        data = _rule(VolumeRule, 9, "7.5", valid_from=date(2026, 1, 1)).to_dict()
        assert data["rule_type"] == "VOLUME"
        assert data["priority"] == 20
        assert data["discount_value"] == "7.5"
        assert data["valid_from"] == "2026-01-01"


class TestFormatting:

    def test_format_currency(self):
        assert format_currency(Decimal("1234.5")) == "UGX 1234.50"
        assert format_currency(-5) == "UGX 0.00"
        assert format_currency(None, "USD") == "USD 0.00"

    def test_format_percentage(self):
        assert format_percentage(Decimal("12.34")) == "12.3%"
        assert format_percentage(None) == "0.0%"

    def test_date_ranges(self):
        ref = date(2026, 10, 18)
        assert get_date_range("week", ref) == {"start_date": "2026-10-11", "end_date": "2026-10-18"}
        assert get_date_range("quarter", ref)["start_date"] == "2026-07-18"
        assert get_date_range("ytd", ref)["start_date"] == "2026-01-01"
        assert get_date_range("nonsense", ref)["start_date"] == "2026-09-18"

    def test_month_back_clamps_to_month_end(self):
        assert get_date_range("month", date(2026, 3, 31))["start_date"] == "2026-02-28"


class TestPricingContext:

    def test_business_id_checked_first(self):
        with pytest.raises(DiscountContextError) as exc:
            normalize_context({})
        assert exc.value.details == {"field": "business_id"}

    def test_amount_required(self):
        with pytest.raises(DiscountContextError) as exc:
            normalize_context({"business_id": 1})
        assert exc.value.details == {"field": "amount"}

    def test_negative_amount_rejected(self):
        with pytest.raises(DiscountContextError):
            normalize_context({"business_id": 1, "amount": "-1"})

    def test_camel_case_keys_and_coercion(self):
        context = normalize_context({
            "businessId": 1,
            "amount": 100.1,
            "promoCode": "  ",
            "transactionType": "pos_transaction",
            "lineItems": [{"id": 1, "amount": "60.05"}, {"id": 2, "amount": "40.05", "quantity": 2}],
        })
        assert isinstance(context, PricingContext)
        assert context.business_id == 1
        assert context.amount == Decimal("100.10")
        assert context.promo_code is None
        assert context.transaction_type == "POS"
        assert [item.quantity for item in context.items] == [1, 2]
        assert context.transaction_date is not None

    def test_bad_transaction_type(self):
        with pytest.raises(DiscountContextError) as exc:
            normalize_context({"business_id": 1, "amount": 10, "transaction_type": "QUOTE"})
        assert exc.value.details == {"field": "transaction_type"}

    def test_cache_payload_ignores_persistence_fields(self):
        base = {"business_id": 1, "amount": 10, "transaction_date": "2026-10-18T10:15:30"}
        a = normalize_context(base)
        b = normalize_context({**base, "create_allocation": True, "user_id": 9})
        assert a.cache_payload() == b.cache_payload()
