"""
Rule maintenance for the five discount families.

MULTI-TENANT: every read and write is scoped by business_id; a rule id from
another business is reported as not found.

Pricing fields of a rule (value, type, thresholds, targeting) are frozen
once a live allocation references the rule, so allocations keep describing
the rule that produced them. Names, validity windows and the active flag
stay editable, and a referenced rule can always be deactivated.

Every mutation drops the business's cached pricing results.
"""
from __future__ import annotations

import json

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import (
    CategoryDiscountRule,
    CustomerPaymentTerm,
    DiscountAllocation,
    EarlyPaymentTerm,
    PricingRule,
    PromotionalDiscount,
    VolumeDiscountTier,
)
from ..time_utils import to_date
from ..validation import ConflictError, ValidationError, to_money
from .concurrency import atomic
from .discount_core import DiscountType, RuleType, parse_rule_type, validate_discount_value
from .rule_engine import DiscountRuleEngine


class RuleError(ValidationError):
    """Raised for invalid rule data."""


class RuleNotFoundError(RuleError):
    pass


class RuleLockedError(ConflictError):
    """Raised when pricing fields of a rule in use are changed."""


# =============================================================================
# FAMILY TABLE
# =============================================================================

_COMMON_FIELDS = {"valid_from", "valid_until", "stackable", "is_active"}

FAMILIES = {
    RuleType.PROMOTIONAL: {
        "model": PromotionalDiscount,
        "name_field": "name",
        "type_field": "discount_type",
        "value_field": "discount_value",
        "fields": _COMMON_FIELDS | {
            "name", "description", "promo_code", "discount_type", "discount_value", "min_purchase",
            "max_discount_amount", "max_uses", "per_customer_limit",
        },
        "pricing_fields": {"promo_code", "discount_type", "discount_value", "min_purchase", "max_discount_amount"},
    },
    RuleType.VOLUME: {
        "model": VolumeDiscountTier,
        "name_field": "tier_name",
        "type_field": None,
        "value_field": "discount_percentage",
        "fields": _COMMON_FIELDS | {
            "tier_name", "min_quantity", "min_amount", "discount_percentage", "applies_to", "target_category_id",
        },
        "pricing_fields": {"min_quantity", "min_amount", "discount_percentage", "applies_to", "target_category_id"},
    },
    RuleType.EARLY_PAYMENT: {
        "model": EarlyPaymentTerm,
        "name_field": "term_name",
        "type_field": None,
        "value_field": "discount_percentage",
        "fields": _COMMON_FIELDS | {"term_name", "discount_percentage", "discount_days", "net_days"},
        "pricing_fields": {"discount_percentage", "discount_days", "net_days"},
    },
    RuleType.CATEGORY: {
        "model": CategoryDiscountRule,
        "name_field": "rule_name",
        "type_field": "discount_type",
        "value_field": "discount_value",
        "fields": _COMMON_FIELDS | {
            "rule_name", "category_id", "service_id", "discount_type", "discount_value", "min_amount", "max_discount",
        },
        "pricing_fields": {"category_id", "service_id", "discount_type", "discount_value", "min_amount", "max_discount"},
    },
    RuleType.PRICING_RULE: {
        "model": PricingRule,
        "name_field": "rule_name",
        "type_field": "adjustment_type",
        "value_field": "adjustment_value",
        "fields": _COMMON_FIELDS | {
            "rule_name", "description", "rule_type", "conditions", "adjustment_type", "adjustment_value",
            "target_entity", "target_id", "priority",
        },
        "pricing_fields": {
            "rule_type", "conditions", "adjustment_type", "adjustment_value", "target_entity", "target_id",
        },
    },
}

_MONEY_FIELDS = {
    "discount_value", "min_purchase", "max_discount_amount", "min_amount", "discount_percentage",
    "max_discount", "adjustment_value",
}
_INT_FIELDS = {
    "max_uses", "per_customer_limit", "min_quantity", "target_category_id", "discount_days", "net_days",
    "category_id", "service_id", "target_id", "priority",
}
_DATE_FIELDS = {"valid_from", "valid_until"}
_PRICING_CONDITION_TYPES = {"customer_category", "quantity", "time_based", "general"}


def _family(rule_type) -> tuple[RuleType, dict]:
    kind = parse_rule_type(rule_type)
    return kind, FAMILIES[kind]


def _coerce(field: str, value):
    if value is None:
        return None
    if field in _MONEY_FIELDS:
        return to_money(value, field)
    if field in _INT_FIELDS:
        if isinstance(value, bool):
            raise RuleError(f"{field} must be an integer")
        try:
            return int(value)
        except (TypeError, ValueError):
            raise RuleError(f"{field} must be an integer")
    if field in _DATE_FIELDS:
        try:
            return to_date(value)
        except (TypeError, ValueError):
            raise RuleError(f"{field} must be a date")
    if field in ("stackable", "is_active"):
        return bool(value)
    if field in ("discount_type", "adjustment_type", "applies_to"):
        return str(value).strip().upper()
    if field == "promo_code":
        return str(value).strip().upper() or None
    if field == "rule_type":
        normalized = str(value).strip().lower()
        if normalized not in _PRICING_CONDITION_TYPES:
            raise RuleError(f"rule_type must be one of {', '.join(sorted(_PRICING_CONDITION_TYPES))}")
        return normalized
    if field == "conditions":
        if isinstance(value, str):
            try:
                json.loads(value)
            except ValueError:
                raise RuleError("conditions must be valid JSON")
            return value
        return json.dumps(value, sort_keys=True)
    if isinstance(value, str):
        return value.strip()
    return value


def _patch(family: dict, data: dict) -> dict:
    unknown = set(data) - family["fields"]
    if unknown:
        raise RuleError(f"Unknown field(s): {', '.join(sorted(unknown))}")
    return {field: _coerce(field, value) for field, value in data.items()}


def _validate(kind: RuleType, family: dict, row) -> None:
    if not getattr(row, family["name_field"]):
        raise RuleError(f"{family['name_field']} is required")

    discount_type = getattr(row, family["type_field"]) if family["type_field"] else DiscountType.PERCENTAGE.value
    check = validate_discount_value(discount_type, getattr(row, family["value_field"]))
    if not check["valid"]:
        raise RuleError(check["reason"])

    if row.valid_from and row.valid_until and row.valid_until < row.valid_from:
        raise RuleError("valid_until cannot be before valid_from")

    if kind == RuleType.VOLUME:
        if row.min_quantity is None and row.min_amount is None:
            raise RuleError("A volume tier needs min_quantity or min_amount")
        if (row.applies_to or "ALL") not in ("ALL", "CATEGORY"):
            raise RuleError("applies_to must be ALL or CATEGORY")
        if row.applies_to == "CATEGORY" and row.target_category_id is None:
            raise RuleError("target_category_id is required when applies_to is CATEGORY")
    if kind == RuleType.EARLY_PAYMENT:
        if row.discount_days is None or row.discount_days < 0:
            raise RuleError("discount_days must be zero or more")
        if row.net_days is not None and row.net_days < row.discount_days:
            raise RuleError("net_days cannot be shorter than discount_days")
    if kind == RuleType.CATEGORY and row.category_id is None and row.service_id is None:
        raise RuleError("A category rule needs category_id or service_id")
    if kind == RuleType.PROMOTIONAL and row.promo_code:
        clash = (
            db.session.query(PromotionalDiscount.id)
            .filter(
                PromotionalDiscount.business_id == row.business_id,
                func.upper(PromotionalDiscount.promo_code) == row.promo_code,
                PromotionalDiscount.id != (row.id or 0),
            )
            .first()
        )
        if clash:
            raise RuleError(f"Promo code {row.promo_code} already exists")


def _invalidate(business_id: int) -> None:
    DiscountRuleEngine().invalidate_cache(business_id)


# =============================================================================
# READS
# =============================================================================

def list_rules(business_id: int, rule_type, active_only: bool = False) -> list[dict]:
    _, family = _family(rule_type)
    model = family["model"]
    q = db.session.query(model).filter_by(business_id=business_id)
    if active_only:
        q = q.filter_by(is_active=True)
    return [row.to_dict() for row in q.order_by(model.id.asc()).all()]


def get_rule(business_id: int, rule_type, rule_id: int):
    kind, family = _family(rule_type)
    row = db.session.query(family["model"]).filter_by(id=rule_id, business_id=business_id).first()
    if not row:
        raise RuleNotFoundError(f"{kind.value} rule {rule_id} not found")
    return row


def is_rule_referenced(business_id: int, rule_type, rule_id: int) -> bool:
    """True when a non-void allocation was produced by the rule."""
    kind = parse_rule_type(rule_type)
    q = db.session.query(DiscountAllocation.id).filter(
        DiscountAllocation.business_id == business_id,
        DiscountAllocation.status != "VOID",
    )
    if kind == RuleType.PROMOTIONAL:
        q = q.filter(DiscountAllocation.promotional_discount_id == rule_id)
    else:
        q = q.filter(
            DiscountAllocation.rule_type == kind.value,
            DiscountAllocation.discount_rule_id == rule_id,
        )
    return q.first() is not None


# =============================================================================
# WRITES
# =============================================================================

def create_rule(business_id: int, rule_type, data: dict, user_id: int | None = None):
    kind, family = _family(rule_type)
    values = _patch(family, data or {})

    with atomic():
        row = family["model"](business_id=business_id, **values)
        if kind == RuleType.PROMOTIONAL:
            row.created_by_user_id = user_id
        if kind == RuleType.VOLUME and not row.applies_to:
            row.applies_to = "ALL"
        _validate(kind, family, row)
        db.session.add(row)
        db.session.flush()

    _invalidate(business_id)
    current_app.logger.info("%s rule %s created for business %s", kind.value, row.id, business_id)
    return row


def update_rule(business_id: int, rule_type, rule_id: int, data: dict):
    kind, family = _family(rule_type)
    values = _patch(family, data or {})

    with atomic():
        row = get_rule(business_id, kind, rule_id)
        changed_pricing = sorted(
            field for field, value in values.items()
            if field in family["pricing_fields"] and getattr(row, field) != value
        )
        if changed_pricing and is_rule_referenced(business_id, kind, rule_id):
            raise RuleLockedError(
                f"{kind.value} rule {rule_id} is used by live allocations; "
                f"cannot change {', '.join(changed_pricing)}",
                details={"fields": changed_pricing},
            )
        for field, value in values.items():
            setattr(row, field, value)
        _validate(kind, family, row)

    _invalidate(business_id)
    current_app.logger.info("%s rule %s updated for business %s", kind.value, rule_id, business_id)
    return row


def deactivate_rule(business_id: int, rule_type, rule_id: int):
    kind, _ = _family(rule_type)
    with atomic():
        row = get_rule(business_id, kind, rule_id)
        row.is_active = False

    _invalidate(business_id)
    current_app.logger.info("%s rule %s deactivated for business %s", kind.value, rule_id, business_id)
    return row


def assign_payment_terms(customer_id: int, term_id: int, business_id: int) -> CustomerPaymentTerm:
    """One active assignment per customer; reassigning replaces the term."""
    if not customer_id:
        raise RuleError("customer_id is required")

    with atomic():
        term = get_rule(business_id, RuleType.EARLY_PAYMENT, term_id)
        if not term.is_active:
            raise RuleError(f"Payment term {term_id} is inactive")
        assignment = (
            db.session.query(CustomerPaymentTerm)
            .filter_by(business_id=business_id, customer_id=customer_id)
            .first()
        )
        if assignment:
            assignment.payment_term_id = term.id
            assignment.is_active = True
        else:
            assignment = CustomerPaymentTerm(
                business_id=business_id,
                customer_id=customer_id,
                payment_term_id=term.id,
            )
            db.session.add(assignment)
        db.session.flush()

    _invalidate(business_id)
    current_app.logger.info("Payment term %s assigned to customer %s", term_id, customer_id)
    return assignment


def get_customer_terms(business_id: int, customer_id: int) -> dict | None:
    assignment = (
        db.session.query(CustomerPaymentTerm)
        .filter_by(business_id=business_id, customer_id=customer_id, is_active=True)
        .first()
    )
    if not assignment or not assignment.payment_term or not assignment.payment_term.is_active:
        return None
    data = assignment.payment_term.to_dict()
    data["customer_id"] = customer_id
    return data
