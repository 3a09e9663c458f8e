"""
Promo code validation and usage counting tests.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from discount_engine.models import PromotionalDiscount
from discount_engine.services import allocation_service, promotions_service
from discount_engine.services.promotions_service import INVALID_CODE_REASON, MAX_USES_REASON
from discount_engine.time_utils import today
from discount_engine.validation import ValidationError


class TestValidatePromoCode:

    def test_valid_code(self, db_session, business_a, welcome_promo):
        result = promotions_service.validate_promo_code(business_a.id, "WELCOME10", 500000)
        assert result["valid"] is True
        assert result["discount_amount"] == "50000.00"
        assert result["final_amount"] == "450000.00"
        assert result["promotion"]["id"] == welcome_promo.id

    def test_code_is_case_insensitive(self, db_session, business_a, welcome_promo):
        result = promotions_service.validate_promo_code(business_a.id, " welcome10 ", 1000)
        assert result["valid"] is True

    def test_unknown_code(self, db_session, business_a, welcome_promo):
        result = promotions_service.validate_promo_code(business_a.id, "NOPE", 1000)
        assert result == {"valid": False, "reason": INVALID_CODE_REASON, "discount_amount": "0.00"}

    def test_code_from_other_business(self, db_session, business_b, welcome_promo):
        result = promotions_service.validate_promo_code(business_b.id, "WELCOME10", 1000)
        assert result["reason"] == INVALID_CODE_REASON

    def test_expired_code(self, db_session, business_a, welcome_promo):
        welcome_promo.valid_until = today() - timedelta(days=1)
        db_session.commit()
        result = promotions_service.validate_promo_code(business_a.id, "WELCOME10", 1000)
        assert result["reason"] == INVALID_CODE_REASON

    def test_inactive_code(self, db_session, business_a, welcome_promo):
        welcome_promo.is_active = False
        db_session.commit()
        result = promotions_service.validate_promo_code(business_a.id, "WELCOME10", 1000)
        assert result["valid"] is False

    def test_max_uses_reached(self, db_session, business_a, welcome_promo):
        welcome_promo.max_uses = 3
        welcome_promo.times_used = 3
        db_session.commit()
        result = promotions_service.validate_promo_code(business_a.id, "WELCOME10", 1000)
        assert result["reason"] == MAX_USES_REASON

    def test_minimum_purchase(self, db_session, business_a, welcome_promo):
        welcome_promo.min_purchase = Decimal("100000")
        db_session.commit()
        result = promotions_service.validate_promo_code(business_a.id, "WELCOME10", 99999)
        assert result["valid"] is False
        assert result["reason"] == "Minimum purchase of UGX 100000.00 required"

    def test_per_customer_limit(self, db_session, business_a, welcome_promo, pos_tx):
        welcome_promo.per_customer_limit = 1
        db_session.commit()
        allocation_service.create_allocation(
            {"pos_transaction_id": pos_tx.id, "promotional_discount_id": welcome_promo.id,
             "rule_type": "PROMOTIONAL", "total_discount_amount": "50000", "status": "APPLIED"},
            None, business_a.id,
        )

        result = promotions_service.validate_promo_code(business_a.id, "WELCOME10", 1000, customer_id=7)
        assert result["valid"] is False
        assert result["reason"] == "You have already used this promo code 1 time(s)"

        other_customer = promotions_service.validate_promo_code(business_a.id, "WELCOME10", 1000, customer_id=8)
        assert other_customer["valid"] is True

    def test_void_allocations_do_not_count_as_usage(self, db_session, business_a, welcome_promo, pos_tx):
        allocation = allocation_service.create_allocation(
            {"pos_transaction_id": pos_tx.id, "promotional_discount_id": welcome_promo.id,
             "total_discount_amount": "50000", "status": "APPLIED"},
            None, business_a.id,
        )
        assert promotions_service.get_customer_promo_usage(business_a.id, welcome_promo.id, 7) == 1
        allocation_service.void_allocation(allocation.id, "Refunded", None, business_a.id)
        assert promotions_service.get_customer_promo_usage(business_a.id, welcome_promo.id, 7) == 0


class TestPromoUsage:

    def test_increment(self, db_session, business_a, welcome_promo):
        version = welcome_promo.version_id
        promotions_service.increment_promo_usage(welcome_promo.id, business_a.id)
        promotions_service.increment_promo_usage(welcome_promo.id, business_a.id, by=2)
        db_session.commit()

        promo = db_session.get(PromotionalDiscount, welcome_promo.id)
        assert promo.times_used == 3
        assert promo.version_id == version + 2

    def test_increment_is_tenant_scoped(self, db_session, business_b, welcome_promo):
        with pytest.raises(ValidationError):
            promotions_service.increment_promo_usage(welcome_promo.id, business_b.id)

    def test_increment_must_be_positive(self, db_session, business_a, welcome_promo):
        with pytest.raises(ValidationError):
            promotions_service.increment_promo_usage(welcome_promo.id, business_a.id, by=0)

    def test_list_promotions(self, db_session, business_a, welcome_promo):
        db_session.add(PromotionalDiscount(
            business_id=business_a.id, name="Old", discount_type="FIXED",
            discount_value=Decimal("500"), is_active=False,
        ))
        db_session.commit()
        assert len(promotions_service.list_promotions(business_a.id)) == 2
        active = promotions_service.list_promotions(business_a.id, active_only=True)
        assert [p["promo_code"] for p in active] == ["WELCOME10"]
