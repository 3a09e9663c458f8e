"""
Per-family rule source tests: scoping by code, tier, customer, category
and time of day.
"""

import json
from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest

from discount_engine.models import (
    CategoryDiscountRule,
    CustomerPaymentTerm,
    EarlyPaymentTerm,
    PricingRule,
    PromotionalDiscount,
    VolumeDiscountTier,
)
from discount_engine.services.discount_core import RuleType, normalize_context
from discount_engine.services.rule_sources import (
    CategorySource,
    EarlyPaymentSource,
    PricingRuleSource,
    PromotionalSource,
    VolumeSource,
    default_sources,
    pricing_rule_applies,
)


def _context(business, **kwargs):
    data = {"business_id": business.id, "amount": 100000}
    data.update(kwargs)
    return normalize_context(data)


class TestPromotionalSource:

    def test_coded_promotions_need_their_code(self, db_session, business_a, welcome_promo):
        automatic = PromotionalDiscount(
            business_id=business_a.id, name="Happy hour", discount_type="PERCENTAGE", discount_value=Decimal("5"),
        )
        db_session.add(automatic)
        db_session.commit()

        source = PromotionalSource()
        without_code = source.find_active(business_a.id, _context(business_a))
        assert [r.id for r in without_code] == [automatic.id]

        with_code = source.find_active(business_a.id, _context(business_a, promo_code="welcome10"))
        assert {r.id for r in with_code} == {automatic.id, welcome_promo.id}
        assert all(r.rule_type == RuleType.PROMOTIONAL for r in with_code)

    def test_exhausted_promotion_skipped(self, db_session, business_a, welcome_promo):
        welcome_promo.max_uses = 1
        welcome_promo.times_used = 1
        db_session.commit()
        assert PromotionalSource().find_active(business_a.id, _context(business_a, promo_code="WELCOME10")) == []

    def test_other_business_rules_invisible(self, db_session, business_b, welcome_promo):
        assert PromotionalSource().find_active(business_b.id, _context(business_b, promo_code="WELCOME10")) == []


class TestVolumeSource:

    @pytest.fixture
    def tiers(self, db_session, business_a):
        rows = [
            VolumeDiscountTier(business_id=business_a.id, tier_name="Bronze", min_quantity=10,
                               discount_percentage=Decimal("5")),
            VolumeDiscountTier(business_id=business_a.id, tier_name="Gold", min_quantity=50,
                               discount_percentage=Decimal("10")),
            VolumeDiscountTier(business_id=business_a.id, tier_name="Hair only", min_quantity=5,
                               discount_percentage=Decimal("20"), applies_to="CATEGORY", target_category_id=3),
        ]
        db_session.add_all(rows)
        db_session.commit()
        return rows

    def test_best_qualifying_tier_only(self, db_session, business_a, tiers):
        rules = VolumeSource().find_active(business_a.id, _context(business_a, quantity=60))
        assert [r.name for r in rules] == ["Gold"]
        assert rules[0].discount_value == Decimal("10.00")

        rules = VolumeSource().find_active(business_a.id, _context(business_a, quantity=20))
        assert [r.name for r in rules] == ["Bronze"]

    def test_category_tier(self, db_session, business_a, tiers):
        rules = VolumeSource().find_active(business_a.id, _context(business_a, quantity=20, category_id=3))
        assert [r.name for r in rules] == ["Hair only"]

    def test_expired_tier_not_considered(self, db_session, business_a, tiers):
        tiers[1].valid_until = date.today() - timedelta(days=400)
        db_session.commit()
        rules = VolumeSource().find_active(business_a.id, _context(business_a, quantity=60))
        assert [r.name for r in rules] == ["Bronze"]

    def test_no_tier(self, db_session, business_a, tiers):
        assert VolumeSource().find_active(business_a.id, _context(business_a, quantity=2)) == []

    def test_next_tier(self, db_session, business_a, tiers):
        nxt = VolumeSource().get_next_tier(business_a.id, _context(business_a, quantity=20))
        assert nxt["tier"]["tier_name"] == "Gold"
        assert nxt["quantity_needed"] == 30

    def test_applicable_tiers_sorted_best_first(self, db_session, business_a, tiers):
        applicable = VolumeSource().get_applicable_tiers(business_a.id, _context(business_a, quantity=60))
        assert [t.tier_name for t in applicable] == ["Gold", "Bronze"]


class TestEarlyPaymentSource:

    @pytest.fixture
    def terms(self, db_session, business_a):
        general = EarlyPaymentTerm(business_id=business_a.id, term_name="2/10 net 30",
                                   discount_percentage=Decimal("2"), discount_days=10, net_days=30)
        vip = EarlyPaymentTerm(business_id=business_a.id, term_name="1/15 net 45",
                               discount_percentage=Decimal("1"), discount_days=15, net_days=45)
        db_session.add_all([general, vip])
        db_session.commit()
        return general, vip

    def test_pos_tickets_never_get_early_payment(self, db_session, business_a, terms):
        context = _context(business_a, customer_id=7, transaction_type="POS")
        assert EarlyPaymentSource().find_active(business_a.id, context) == []

    def test_requires_customer(self, db_session, business_a, terms):
        assert EarlyPaymentSource().find_active(business_a.id, _context(business_a)) == []

    def test_default_terms(self, db_session, business_a, terms):
        rules = EarlyPaymentSource().find_active(business_a.id, _context(business_a, customer_id=7))
        assert [r.name for r in rules] == ["2/10 net 30"]
        assert rules[0].customer_specific is False

    def test_customer_terms_win(self, db_session, business_a, terms):
        db_session.add(CustomerPaymentTerm(business_id=business_a.id, customer_id=7, payment_term_id=terms[1].id))
        db_session.commit()
        rules = EarlyPaymentSource().find_active(business_a.id, _context(business_a, customer_id=7))
        assert [r.name for r in rules] == ["1/15 net 45"]
        assert rules[0].customer_specific is True

    def test_paid_after_window(self, db_session, business_a, terms):
        context = _context(
            business_a, customer_id=7, transaction_type="INVOICE",
            invoice_date="2026-10-01", payment_date="2026-10-12",
        )
        assert EarlyPaymentSource().find_active(business_a.id, context) == []

    def test_date_helpers(self):
        assert EarlyPaymentSource.is_eligible("2026-10-01", "2026-10-11", 10)
        assert not EarlyPaymentSource.is_eligible("2026-10-01", None, 10)
        assert EarlyPaymentSource.calculate_net_due_date("2026-10-01", 30) == date(2026, 10, 31)
        assert EarlyPaymentSource.calculate_discount_deadline("2026-10-01", 10) == date(2026, 10, 11)


class TestCategorySource:

    def test_scoped_by_category_or_service(self, db_session, business_a):
        hair = CategoryDiscountRule(business_id=business_a.id, rule_name="Hair", category_id=3,
                                    discount_type="PERCENTAGE", discount_value=Decimal("10"))
        nails = CategoryDiscountRule(business_id=business_a.id, rule_name="Manicure", service_id=12,
                                     discount_type="FIXED", discount_value=Decimal("5000"),
                                     max_discount=Decimal("4000"))
        db_session.add_all([hair, nails])
        db_session.commit()

        source = CategorySource()
        assert source.find_active(business_a.id, _context(business_a)) == []
        assert [r.name for r in source.find_active(business_a.id, _context(business_a, category_id=3))] == ["Hair"]

        rules = source.find_active(business_a.id, _context(business_a, category_id=3, service_id=12))
        assert {r.name for r in rules} == {"Hair", "Manicure"}
        manicure = next(r for r in rules if r.name == "Manicure")
        assert manicure.compute(100000) == Decimal("4000.00")


class TestPricingRules:

    def _rule(self, business, **kwargs):
        data = dict(business_id=business.id, rule_name="Rule", adjustment_type="PERCENTAGE",
                    adjustment_value=Decimal("5"))
        data.update(kwargs)
        return PricingRule(**data)

    def test_time_based(self, db_session, business_a):
        # 2026-10-18 is a Sunday
        rule = self._rule(business_a, rule_type="time_based",
                          conditions=json.dumps({"day_of_week": [0], "hour_start": 14, "hour_end": 17}))
        assert pricing_rule_applies(rule, _context(business_a, transaction_date=datetime(2026, 10, 18, 15)))
        assert not pricing_rule_applies(rule, _context(business_a, transaction_date=datetime(2026, 10, 18, 18)))
        assert not pricing_rule_applies(rule, _context(business_a, transaction_date=datetime(2026, 10, 19, 15)))

    def test_quantity_and_customer_category(self, db_session, business_a):
        bulk = self._rule(business_a, rule_type="quantity",
                          conditions=json.dumps({"min_quantity": 10, "max_quantity": 50}))
        assert pricing_rule_applies(bulk, _context(business_a, quantity=10))
        assert not pricing_rule_applies(bulk, _context(business_a, quantity=51))

        members = self._rule(business_a, rule_type="customer_category",
                             conditions=json.dumps({"customer_category_id": 2}))
        assert pricing_rule_applies(members, _context(business_a, customer_category_id=2))
        assert not pricing_rule_applies(members, _context(business_a, customer_category_id=1))

    def test_target_entity(self, db_session, business_a):
        rule = self._rule(business_a, target_entity="service", target_id=12)
        assert pricing_rule_applies(rule, _context(business_a, service_id=12))
        assert not pricing_rule_applies(rule, _context(business_a, service_id=13))

    def test_source_orders_by_priority(self, db_session, business_a):
        db_session.add_all([
            self._rule(business_a, rule_name="Low", priority=1),
            self._rule(business_a, rule_name="High", priority=9),
        ])
        db_session.commit()
        rules = PricingRuleSource().find_active(business_a.id, _context(business_a))
        assert [r.name for r in rules] == ["High", "Low"]
        assert rules[0].rule_priority == 9


def test_default_sources_cover_every_family():
    assert [s.rule_type for s in default_sources()] == [
        RuleType.PROMOTIONAL, RuleType.VOLUME, RuleType.EARLY_PAYMENT, RuleType.CATEGORY, RuleType.PRICING_RULE,
    ]
