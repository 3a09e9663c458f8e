from datetime import timedelta
from decimal import Decimal

import pytest

from discount_engine.models import CategoryDiscountRule, PromotionalDiscount, VolumeDiscountTier
from discount_engine.services.discount_core import DiscountContextError, RuleType
from discount_engine.services.discovery_service import check_discount_data, discover_discounts
from discount_engine.services.rule_sources import RuleSource
from discount_engine.time_utils import today


class ExplodingSource(RuleSource):
    rule_type = RuleType.CATEGORY

    def find_active(self, business_id, context):
        raise RuntimeError("category store offline")


class TestDiscoverDiscounts:

    def test_candidates_annotated_with_amount(self, db_session, business_a, welcome_promo):
        db_session.add(VolumeDiscountTier(business_id=business_a.id, tier_name="Bulk", min_quantity=2,
                                          discount_percentage=Decimal("5")))
        db_session.commit()

        found = discover_discounts({
            "business_id": business_a.id, "amount": 500000, "quantity": 4, "promo_code": "WELCOME10",
        })
        amounts = {r.rule_type: r.discount_amount for r in found}
        assert amounts == {RuleType.PROMOTIONAL: Decimal("50000.00"), RuleType.VOLUME: Decimal("25000.00")}

    def test_validity_window_filtered(self, db_session, business_a):
        db_session.add(PromotionalDiscount(
            business_id=business_a.id, name="Next month", discount_type="PERCENTAGE",
            discount_value=Decimal("5"), valid_from=today() + timedelta(days=30),
        ))
        db_session.commit()
        assert discover_discounts({"business_id": business_a.id, "amount": 1000}) == []

        later = today() + timedelta(days=31)
        found = discover_discounts({"business_id": business_a.id, "amount": 1000, "transaction_date": later})
        assert len(found) == 1

    def test_minimum_purchase_filtered(self, db_session, business_a):
        db_session.add(CategoryDiscountRule(
            business_id=business_a.id, rule_name="Big hair", category_id=3, discount_type="PERCENTAGE",
            discount_value=Decimal("10"), min_amount=Decimal("200000"),
        ))
        db_session.commit()
        assert discover_discounts({"business_id": business_a.id, "amount": 199999, "category_id": 3}) == []
        assert len(discover_discounts({"business_id": business_a.id, "amount": 200000, "category_id": 3})) == 1

    def test_source_errors_propagate(self, db_session, business_a):
        with pytest.raises(RuntimeError):
            discover_discounts({"business_id": business_a.id, "amount": 1000}, sources=[ExplodingSource()])

    def test_context_validated_first(self, db_session):
        with pytest.raises(DiscountContextError):
            discover_discounts({"amount": 1000})


def test_check_discount_data(db_session, business_a, welcome_promo):
    db_session.add(PromotionalDiscount(
        business_id=business_a.id, name="Old", discount_type="FIXED", discount_value=Decimal("1"), is_active=False,
    ))
    db_session.commit()

    counts = check_discount_data(business_a.id)
    assert counts["PROMOTIONAL"] == {"total": 2, "active": 1}
    assert counts["VOLUME"] == {"total": 0, "active": 0}
    assert set(counts) == {"PROMOTIONAL", "VOLUME", "EARLY_PAYMENT", "CATEGORY", "PRICING_RULE"}
