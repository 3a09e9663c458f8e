from __future__ import annotations

import json

from ..extensions import db
from discount_engine.time_utils import to_utc_z
from discount_engine.validation import money_str


def _date_str(value):
    return value.isoformat() if value else None


class PromotionalDiscount(db.Model):
    """
    Code-driven or automatic promotion.

    A row without promo_code applies to every qualifying transaction; a row
    with one applies only when the caller supplies that code.
    times_used is an eventually-consistent counter, not a hard lock.
    """
    __tablename__ = "promotional_discounts"
    __table_args__ = (
        db.UniqueConstraint("business_id", "promo_code", name="uq_promotional_discounts_business_code"),
        db.Index("ix_promotional_discounts_business_active", "business_id", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)

    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    promo_code = db.Column(db.String(64), nullable=True)

    discount_type = db.Column(db.String(16), nullable=False)  # PERCENTAGE, FIXED
    discount_value = db.Column(db.Numeric(14, 2), nullable=False)

    min_purchase = db.Column(db.Numeric(14, 2), nullable=True)
    max_discount_amount = db.Column(db.Numeric(14, 2), nullable=True)

    max_uses = db.Column(db.Integer, nullable=True)
    times_used = db.Column(db.Integer, nullable=False, default=0)
    per_customer_limit = db.Column(db.Integer, nullable=True)

    valid_from = db.Column(db.Date, nullable=True)
    valid_until = db.Column(db.Date, nullable=True)

    stackable = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_by_user_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self):
        return {
            "id": self.id,
            "business_id": self.business_id,
            "name": self.name,
            "description": self.description,
            "promo_code": self.promo_code,
            "discount_type": self.discount_type,
            "discount_value": money_str(self.discount_value),
            "min_purchase": money_str(self.min_purchase),
            "max_discount_amount": money_str(self.max_discount_amount),
            "max_uses": self.max_uses,
            "times_used": self.times_used,
            "per_customer_limit": self.per_customer_limit,
            "valid_from": _date_str(self.valid_from),
            "valid_until": _date_str(self.valid_until),
            "stackable": self.stackable,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class VolumeDiscountTier(db.Model):
    """Quantity/amount tier. Only the best qualifying tier ever applies."""
    __tablename__ = "volume_discount_tiers"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)

    tier_name = db.Column(db.String(255), nullable=False)
    min_quantity = db.Column(db.Integer, nullable=True)
    min_amount = db.Column(db.Numeric(14, 2), nullable=True)
    discount_percentage = db.Column(db.Numeric(5, 2), nullable=False)

    applies_to = db.Column(db.String(16), nullable=False, default="ALL")  # ALL, CATEGORY
    target_category_id = db.Column(db.Integer, nullable=True)

    valid_from = db.Column(db.Date, nullable=True)
    valid_until = db.Column(db.Date, nullable=True)

    stackable = db.Column(db.Boolean, nullable=False, default=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self):
        return {
            "id": self.id,
            "business_id": self.business_id,
            "tier_name": self.tier_name,
            "min_quantity": self.min_quantity,
            "min_amount": money_str(self.min_amount),
            "discount_percentage": money_str(self.discount_percentage),
            "applies_to": self.applies_to,
            "target_category_id": self.target_category_id,
            "valid_from": _date_str(self.valid_from),
            "valid_until": _date_str(self.valid_until),
            "stackable": self.stackable,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class EarlyPaymentTerm(db.Model):
    """
    Payment terms such as "2/10 net 30": discount_percentage off when paid
    within discount_days, full amount due after net_days.
    """
    __tablename__ = "early_payment_terms"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)

    term_name = db.Column(db.String(255), nullable=False)
    discount_percentage = db.Column(db.Numeric(5, 2), nullable=False)
    discount_days = db.Column(db.Integer, nullable=False)
    net_days = db.Column(db.Integer, nullable=False, default=30)

    valid_from = db.Column(db.Date, nullable=True)
    valid_until = db.Column(db.Date, nullable=True)

    stackable = db.Column(db.Boolean, nullable=False, default=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self):
        return {
            "id": self.id,
            "business_id": self.business_id,
            "term_name": self.term_name,
            "discount_percentage": money_str(self.discount_percentage),
            "discount_days": self.discount_days,
            "net_days": self.net_days,
            "valid_from": _date_str(self.valid_from),
            "valid_until": _date_str(self.valid_until),
            "stackable": self.stackable,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class CustomerPaymentTerm(db.Model):
    """Terms assigned to a specific customer; overrides the business default."""
    __tablename__ = "customer_payment_terms"
    __table_args__ = (
        db.UniqueConstraint("business_id", "customer_id", name="uq_customer_payment_terms_customer"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, nullable=False, index=True)
    payment_term_id = db.Column(db.Integer, db.ForeignKey("early_payment_terms.id"), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    assigned_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    payment_term = db.relationship("EarlyPaymentTerm")

    def to_dict(self):
        return {
            "id": self.id,
            "business_id": self.business_id,
            "customer_id": self.customer_id,
            "payment_term_id": self.payment_term_id,
            "is_active": self.is_active,
            "assigned_at": to_utc_z(self.assigned_at),
        }


class CategoryDiscountRule(db.Model):
    """Discount for a product category or a single service."""
    __tablename__ = "category_discount_rules"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)

    rule_name = db.Column(db.String(255), nullable=False)
    category_id = db.Column(db.Integer, nullable=True, index=True)
    service_id = db.Column(db.Integer, nullable=True, index=True)

    discount_type = db.Column(db.String(16), nullable=False)  # PERCENTAGE, FIXED
    discount_value = db.Column(db.Numeric(14, 2), nullable=False)
    min_amount = db.Column(db.Numeric(14, 2), nullable=True)
    max_discount = db.Column(db.Numeric(14, 2), nullable=True)

    valid_from = db.Column(db.Date, nullable=True)
    valid_until = db.Column(db.Date, nullable=True)

    stackable = db.Column(db.Boolean, nullable=False, default=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self):
        return {
            "id": self.id,
            "business_id": self.business_id,
            "rule_name": self.rule_name,
            "category_id": self.category_id,
            "service_id": self.service_id,
            "discount_type": self.discount_type,
            "discount_value": money_str(self.discount_value),
            "min_amount": money_str(self.min_amount),
            "max_discount": money_str(self.max_discount),
            "valid_from": _date_str(self.valid_from),
            "valid_until": _date_str(self.valid_until),
            "stackable": self.stackable,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class PricingRule(db.Model):
    """
    Conditional price adjustment.

    rule_type selects how `conditions` (JSON) is read:
    - customer_category: {"customer_category_id": 3}
    - quantity: {"min_quantity": 10, "max_quantity": 50, "min_amount": "1000"}
    - time_based: {"day_of_week": [1, 2], "hour_start": 14, "hour_end": 17}
      (day_of_week: 0=Sunday .. 6=Saturday)
    - general: no conditions
    """
    __tablename__ = "pricing_rules"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)

    rule_name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    rule_type = db.Column(db.String(32), nullable=False, default="general")
    conditions = db.Column(db.Text, nullable=True)

    adjustment_type = db.Column(db.String(16), nullable=False)  # PERCENTAGE, FIXED
    adjustment_value = db.Column(db.Numeric(14, 2), nullable=False)

    target_entity = db.Column(db.String(16), nullable=True)  # service, customer, category
    target_id = db.Column(db.Integer, nullable=True)
    priority = db.Column(db.Integer, nullable=False, default=0)

    valid_from = db.Column(db.Date, nullable=True)
    valid_until = db.Column(db.Date, nullable=True)

    stackable = db.Column(db.Boolean, nullable=False, default=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def get_conditions(self) -> dict:
        if not self.conditions:
            return {}
        return json.loads(self.conditions)

    def to_dict(self):
        return {
            "id": self.id,
            "business_id": self.business_id,
            "rule_name": self.rule_name,
            "description": self.description,
            "rule_type": self.rule_type,
            "conditions": self.get_conditions(),
            "adjustment_type": self.adjustment_type,
            "adjustment_value": money_str(self.adjustment_value),
            "target_entity": self.target_entity,
            "target_id": self.target_id,
            "priority": self.priority,
            "valid_from": _date_str(self.valid_from),
            "valid_until": _date_str(self.valid_until),
            "stackable": self.stackable,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }
