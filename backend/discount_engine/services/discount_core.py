"""
Discount arithmetic and rule shapes.

Pure functions only: no session, no app context. Everything that decides how
much a discount is worth, whether two discounts may combine, or whether a
rule is inside its validity window lives here so the services above can stay
about I/O.

DESIGN:
- Money is Decimal, rounded to cents with ROUND_HALF_UP after every step
- Validity windows compare calendar dates, never time of day
- Rule families are a closed set; each has its own frozen dataclass
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar, Iterable

from ..time_utils import to_date, to_datetime, to_utc_z, today, utcnow
from ..validation import (
    ValidationError,
    ZERO,
    quantize_money,
    to_decimal,
    to_money,
)

logger = logging.getLogger(__name__)


HUNDRED = Decimal("100")
DEFAULT_APPROVAL_THRESHOLD = Decimal("20")
DEFAULT_CURRENCY = "UGX"


class RuleType(str, Enum):
    PROMOTIONAL = "PROMOTIONAL"
    VOLUME = "VOLUME"
    EARLY_PAYMENT = "EARLY_PAYMENT"
    CATEGORY = "CATEGORY"
    PRICING_RULE = "PRICING_RULE"


class DiscountType(str, Enum):
    PERCENTAGE = "PERCENTAGE"
    FIXED = "FIXED"


# Lower number wins
TYPE_PRIORITY = {
    RuleType.EARLY_PAYMENT: 10,
    RuleType.VOLUME: 20,
    RuleType.CATEGORY: 30,
    RuleType.PROMOTIONAL: 40,
    RuleType.PRICING_RULE: 50,
}
UNKNOWN_PRIORITY = 999


def parse_discount_type(value) -> DiscountType:
    if isinstance(value, DiscountType):
        return value
    normalized = str(value or "").strip().upper()
    if normalized == "FIXED_AMOUNT":
        normalized = "FIXED"
    try:
        return DiscountType(normalized)
    except ValueError:
        raise ValidationError(f"discount_type must be PERCENTAGE or FIXED, got {value!r}")


def parse_rule_type(value) -> RuleType:
    if isinstance(value, RuleType):
        return value
    try:
        return RuleType(str(value or "").strip().upper())
    except ValueError:
        raise ValidationError(f"Unknown rule_type {value!r}")


# =============================================================================
# BASE CALCULATIONS
# =============================================================================

def calculate_discount(amount, discount_type, discount_value) -> Decimal:
    """
    Discount worth of one rule on `amount`.

    PERCENTAGE is capped at 100%; FIXED never exceeds the amount.
    Non-positive inputs and unknown types are worth nothing.
    """
    amount = to_decimal(amount) if amount is not None else ZERO
    value = to_decimal(discount_value, "discount_value") if discount_value is not None else ZERO
    if amount <= 0 or value <= 0:
        return ZERO

    kind = discount_type.value if isinstance(discount_type, DiscountType) else str(discount_type or "").upper()
    if kind == DiscountType.PERCENTAGE.value:
        discount = amount * min(value, HUNDRED) / HUNDRED
    elif kind in (DiscountType.FIXED.value, "FIXED_AMOUNT"):
        discount = min(value, amount)
    else:
        logger.warning("Unknown discount type %r", discount_type)
        return ZERO

    return quantize_money(discount)


def apply_discount(original_amount, discount_amount) -> Decimal:
    """Amount left after the discount, floored at zero."""
    final = to_decimal(original_amount) - to_decimal(discount_amount, "discount_amount")
    return quantize_money(max(ZERO, final))


def apply_max_discount(calculated_discount, max_amount=None, original_amount=None) -> Decimal:
    discount = to_decimal(calculated_discount, "calculated_discount")
    if max_amount is not None:
        cap = to_decimal(max_amount, "max_amount")
        if cap > 0:
            discount = min(discount, cap)
    if original_amount is not None:
        discount = min(discount, to_decimal(original_amount))
    return quantize_money(max(ZERO, discount))


def effective_percentage(discount_amount, original_amount) -> Decimal:
    original = to_decimal(original_amount)
    if original <= 0:
        return ZERO
    return quantize_money(to_decimal(discount_amount, "discount_amount") / original * HUNDRED)


# =============================================================================
# VALIDITY / APPROVAL
# =============================================================================

def is_valid(valid_from, valid_to, at_date=None) -> bool:
    """
    True iff at_date falls inside [valid_from, valid_to], either end open
    when None. Compared as calendar dates; at_date defaults to today (UTC).
    """
    day = to_date(at_date) if at_date is not None else today()
    start = to_date(valid_from)
    end = to_date(valid_to)
    if start and day < start:
        return False
    if end and day > end:
        return False
    return True


def requires_approval(discount_percentage, threshold=DEFAULT_APPROVAL_THRESHOLD) -> bool:
    """Strictly above the threshold; a discount exactly at it passes."""
    if discount_percentage is None or threshold is None:
        return False
    pct = to_decimal(discount_percentage, "discount_percentage")
    limit = to_decimal(threshold, "threshold")
    if pct <= 0 or limit <= 0:
        return False
    return pct > limit


def validate_discount_value(discount_type, discount_value) -> dict:
    if discount_value is None or discount_value == "":
        return {"valid": False, "reason": "Discount value is required"}
    try:
        value = to_decimal(discount_value, "discount_value")
    except ValidationError as exc:
        return {"valid": False, "reason": str(exc)}
    if value <= 0:
        return {"valid": False, "reason": "Discount value must be positive"}
    try:
        kind = parse_discount_type(discount_type)
    except ValidationError as exc:
        return {"valid": False, "reason": str(exc)}
    if kind == DiscountType.PERCENTAGE and value > HUNDRED:
        return {"valid": False, "reason": "Percentage discount cannot exceed 100%"}
    return {"valid": True}


# =============================================================================
# RULE SHAPES
# =============================================================================

@dataclass(frozen=True)
class DiscountRule:
    """
    Fields every family shares. Never instantiated directly; use the family
    subclasses so rule_type is always one of the five.
    """
    rule_type: ClassVar[RuleType]

    id: int
    business_id: int
    name: str
    discount_type: DiscountType = DiscountType.PERCENTAGE
    discount_value: Decimal = ZERO
    valid_from: date | None = None
    valid_to: date | None = None
    min_purchase: Decimal | None = None
    stackable: bool = False
    discount_amount: Decimal | None = None

    @property
    def priority(self) -> int:
        return TYPE_PRIORITY.get(self.rule_type, UNKNOWN_PRIORITY)

    @property
    def max_discount(self) -> Decimal | None:
        return None

    @property
    def source_column(self) -> str:
        """Allocation column that references this rule."""
        return "discount_rule_id"

    def compute(self, amount) -> Decimal:
        raw = calculate_discount(amount, self.discount_type, self.discount_value)
        return apply_max_discount(raw, self.max_discount, amount)

    def with_amount(self, discount_amount) -> "DiscountRule":
        return dataclasses.replace(self, discount_amount=quantize_money(to_decimal(discount_amount)))

    def to_dict(self) -> dict:
        data = {}
        for f in dataclasses.fields(self):
            data[f.name] = _jsonable(getattr(self, f.name))
        data["rule_type"] = self.rule_type.value
        data["priority"] = self.priority
        return data


@dataclass(frozen=True)
class PromotionalRule(DiscountRule):
    rule_type: ClassVar[RuleType] = RuleType.PROMOTIONAL

    promo_code: str | None = None
    description: str | None = None
    max_uses: int | None = None
    times_used: int = 0
    per_customer_limit: int | None = None
    max_discount_amount: Decimal | None = None

    @property
    def max_discount(self) -> Decimal | None:
        return self.max_discount_amount

    @property
    def source_column(self) -> str:
        return "promotional_discount_id"


@dataclass(frozen=True)
class VolumeRule(DiscountRule):
    rule_type: ClassVar[RuleType] = RuleType.VOLUME

    min_quantity: int | None = None
    min_amount: Decimal | None = None
    applies_to: str = "ALL"
    target_category_id: int | None = None


@dataclass(frozen=True)
class EarlyPaymentRule(DiscountRule):
    rule_type: ClassVar[RuleType] = RuleType.EARLY_PAYMENT

    discount_days: int = 0
    net_days: int = 30
    customer_specific: bool = False


@dataclass(frozen=True)
class CategoryRule(DiscountRule):
    rule_type: ClassVar[RuleType] = RuleType.CATEGORY

    category_id: int | None = None
    service_id: int | None = None
    max_discount_value: Decimal | None = None

    @property
    def max_discount(self) -> Decimal | None:
        return self.max_discount_value


@dataclass(frozen=True)
class PricingAdjustmentRule(DiscountRule):
    rule_type: ClassVar[RuleType] = RuleType.PRICING_RULE

    condition_type: str = "general"
    conditions: dict = field(default_factory=dict, compare=False)
    target_entity: str | None = None
    target_id: int | None = None
    rule_priority: int = 0


RULE_CLASSES = {
    RuleType.PROMOTIONAL: PromotionalRule,
    RuleType.VOLUME: VolumeRule,
    RuleType.EARLY_PAYMENT: EarlyPaymentRule,
    RuleType.CATEGORY: CategoryRule,
    RuleType.PRICING_RULE: PricingAdjustmentRule,
}


def _jsonable(value):
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return to_utc_z(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def _attr(discount, name, default=None):
    if isinstance(discount, dict):
        return discount.get(name, default)
    return getattr(discount, name, default)


def _rule_type_value(discount) -> str | None:
    value = _attr(discount, "rule_type")
    if isinstance(value, Enum):
        return value.value
    return value


# =============================================================================
# STACKING / PRIORITY
# =============================================================================

def can_stack(existing_discounts: Iterable, candidate) -> bool:
    """
    Whether `candidate` may join `existing_discounts`.

    Two members of the same family never combine, whatever their flags.
    Across families, the candidate and every existing discount must all be
    stackable. Accepts rule objects or plain dicts.
    """
    existing = list(existing_discounts or [])
    candidate_type = _rule_type_value(candidate)
    if any(_rule_type_value(d) == candidate_type for d in existing):
        return False
    if not existing:
        return True
    if not _attr(candidate, "stackable", False):
        return False
    return all(_attr(d, "stackable", False) for d in existing)


def type_priority(rule_type) -> int:
    try:
        return TYPE_PRIORITY[parse_rule_type(rule_type)]
    except ValidationError:
        return UNKNOWN_PRIORITY


def prioritize(discounts: Iterable) -> list:
    """
    Fixed family precedence; within a family the larger computed
    discount_amount comes first, then the larger discount_value. Stable,
    so equal keys keep discovery order.
    """
    def _key(d):
        amount = _attr(d, "discount_amount") or ZERO
        value = _attr(d, "discount_value") or ZERO
        return (
            type_priority(_rule_type_value(d)),
            -to_decimal(amount, "discount_amount"),
            -to_decimal(value, "discount_value"),
        )
    return sorted(discounts, key=_key)


def resolve_stack(prioritized: Iterable) -> tuple[list, list]:
    """
    Walk a prioritized list keeping each discount that can stack with what
    was kept before it. Returns (kept, skipped).
    """
    kept: list = []
    skipped: list = []
    for discount in prioritized:
        if can_stack(kept, discount):
            kept.append(discount)
        else:
            logger.debug("Discount %s skipped: cannot stack", _attr(discount, "id"))
            skipped.append(discount)
    return kept, skipped


def calculate_stacked_discount(original_amount, discounts: Iterable[DiscountRule]) -> dict:
    """
    Apply already-resolved discounts in order, each on what the previous
    ones left. A discount worth nothing on the remainder is dropped.
    """
    original = to_money(original_amount)
    remaining = original
    applied: list[DiscountRule] = []
    total = ZERO

    for rule in discounts:
        amount = rule.compute(remaining)
        if amount <= 0:
            continue
        applied.append(rule.with_amount(amount))
        total += amount
        remaining -= amount

    total = quantize_money(total)
    return {
        "total_discount": total,
        "final_amount": apply_discount(original, total),
        "applied_discounts": applied,
        "remaining_amount": quantize_money(max(ZERO, remaining)),
    }


# =============================================================================
# FORMATTING / DATES
# =============================================================================

def format_currency(amount, currency: str = DEFAULT_CURRENCY) -> str:
    if amount is None:
        return f"{currency} 0.00"
    value = to_money(amount)
    if value <= 0:
        return f"{currency} 0.00"
    return f"{currency} {value:.2f}"


def format_percentage(percentage) -> str:
    if percentage is None:
        return "0.0%"
    value = to_decimal(percentage, "percentage")
    if value <= 0:
        return "0.0%"
    return f"{value:.1f}%"


def to_date_only_string(value) -> str | None:
    day = to_date(value)
    return day.isoformat() if day else None


def to_utc_iso_string(value) -> str | None:
    return to_utc_z(to_datetime(value))


def _months_back(day: date, months: int) -> date:
    month_index = day.year * 12 + (day.month - 1) - months
    year, month = divmod(month_index, 12)
    month += 1
    # Clamp to the last valid day of the target month
    next_month = date(year + (month // 12), month % 12 + 1, 1)
    last_day = (next_month - timedelta(days=1)).day
    return date(year, month, min(day.day, last_day))


def get_date_range(period: str = "month", reference=None) -> dict:
    """
    Trailing window ending on `reference` (default today).

    week: 7 days back; month/quarter/year: 1/3/12 months back;
    ytd: from January 1st. Unknown periods fall back to month.
    """
    end = to_date(reference) if reference is not None else today()
    if period == "week":
        start = end - timedelta(days=7)
    elif period == "quarter":
        start = _months_back(end, 3)
    elif period == "year":
        start = _months_back(end, 12)
    elif period == "ytd":
        start = date(end.year, 1, 1)
    else:
        start = _months_back(end, 1)
    return {"start_date": start.isoformat(), "end_date": end.isoformat()}


# =============================================================================
# PRICING CONTEXT
# =============================================================================

@dataclass(frozen=True)
class LineItem:
    id: Any
    amount: Decimal
    quantity: int = 1

    @classmethod
    def from_value(cls, value) -> "LineItem":
        if isinstance(value, LineItem):
            return value
        return cls(
            id=value.get("id"),
            amount=to_money(value.get("amount"), "items.amount"),
            quantity=int(value.get("quantity") or 1),
        )

    def to_dict(self) -> dict:
        return {"id": self.id, "amount": self.amount, "quantity": self.quantity}


_CAMEL_KEYS = {
    "businessId": "business_id",
    "customerId": "customer_id",
    "customerCategoryId": "customer_category_id",
    "categoryId": "category_id",
    "serviceId": "service_id",
    "itemId": "item_id",
    "transactionDate": "transaction_date",
    "promoCode": "promo_code",
    "lineItems": "items",
    "transactionId": "transaction_id",
    "transactionType": "transaction_type",
    "preApproved": "pre_approved",
    "approvalId": "approval_id",
    "createAllocation": "create_allocation",
    "allocationMethod": "allocation_method",
    "userId": "user_id",
    "invoiceDate": "invoice_date",
    "paymentDate": "payment_date",
    "reason": "reason",
}


@dataclass(frozen=True)
class PricingContext:
    """
    Everything a pricing call knows about the sale being priced.

    Built per call; from_dict accepts snake_case or camelCase keys and does
    no validation, which is the engine's job.
    """
    business_id: Any = None
    amount: Any = None
    quantity: int = 1
    customer_id: int | None = None
    customer_category_id: int | None = None
    category_id: int | None = None
    service_id: int | None = None
    item_id: int | None = None
    transaction_date: Any = None
    promo_code: str | None = None
    items: tuple = ()
    transaction_id: int | None = None
    transaction_type: str | None = None
    pre_approved: bool = False
    approval_id: int | None = None
    create_allocation: bool = False
    allocation_method: str | None = None
    user_id: int | None = None
    invoice_date: Any = None
    payment_date: Any = None
    reason: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "PricingContext":
        known = {f.name for f in dataclasses.fields(cls)}
        kwargs = {}
        for key, value in (data or {}).items():
            name = _CAMEL_KEYS.get(key, key)
            if name in known:
                kwargs[name] = value
        if kwargs.get("items") is not None:
            kwargs["items"] = tuple(kwargs["items"])
        return cls(**kwargs)

    def replace(self, **changes) -> "PricingContext":
        return dataclasses.replace(self, **changes)

    @property
    def at_datetime(self) -> datetime:
        return to_datetime(self.transaction_date) or utcnow()

    @property
    def at_date(self) -> date:
        return self.at_datetime.date()

    def cache_payload(self) -> dict:
        """Fields that influence discovery and pricing, and nothing else."""
        at = self.at_datetime.replace(second=0, microsecond=0)
        return {
            "amount": str(self.amount),
            "transaction_type": self.transaction_type,
            "quantity": self.quantity,
            "customer_id": self.customer_id,
            "customer_category_id": self.customer_category_id,
            "category_id": self.category_id,
            "service_id": self.service_id,
            "item_id": self.item_id,
            "transaction_date": at.isoformat(),
            "promo_code": self.promo_code,
            "invoice_date": to_date_only_string(self.invoice_date),
            "payment_date": to_date_only_string(self.payment_date),
            "pre_approved": bool(self.pre_approved),
        }


class DiscountContextError(ValidationError):
    """A pricing context field is missing or malformed."""


def normalize_context(context) -> PricingContext:
    """
    Validate and coerce a pricing context.

    Raises DiscountContextError naming the first bad field, checking
    business_id before amount.
    """
    if isinstance(context, dict):
        context = PricingContext.from_dict(context)
    if not isinstance(context, PricingContext):
        raise DiscountContextError("context must be a PricingContext or dict")

    if context.business_id is None or context.business_id == "":
        raise DiscountContextError("business_id is required", details={"field": "business_id"})
    if context.amount is None or context.amount == "":
        raise DiscountContextError("amount is required", details={"field": "amount"})
    try:
        amount = to_money(context.amount)
    except ValidationError as exc:
        raise DiscountContextError(str(exc), details={"field": "amount"})
    if amount < 0:
        raise DiscountContextError("amount cannot be negative", details={"field": "amount"})

    try:
        quantity = 1 if context.quantity is None else int(context.quantity)
    except (TypeError, ValueError):
        raise DiscountContextError("quantity must be an integer", details={"field": "quantity"})
    if quantity < 0:
        raise DiscountContextError("quantity cannot be negative", details={"field": "quantity"})

    try:
        items = tuple(LineItem.from_value(item) for item in (context.items or ()))
    except (ValidationError, TypeError, ValueError, AttributeError) as exc:
        raise DiscountContextError(f"items are invalid: {exc}", details={"field": "items"})

    transaction_type = context.transaction_type
    if transaction_type:
        transaction_type = str(transaction_type).strip().upper()
        if transaction_type == "POS_TRANSACTION":
            transaction_type = "POS"
        if transaction_type not in ("POS", "INVOICE"):
            raise DiscountContextError(
                "transaction_type must be POS or INVOICE", details={"field": "transaction_type"}
            )

    promo_code = (context.promo_code or "").strip() or None

    return context.replace(
        amount=amount,
        quantity=quantity,
        items=items,
        transaction_type=transaction_type,
        transaction_date=to_datetime(context.transaction_date) or utcnow(),
        promo_code=promo_code,
    )
