from __future__ import annotations

from ..extensions import db
from discount_engine.time_utils import to_utc_z
from discount_engine.validation import money_str


class Business(db.Model):
    """
    Tenant root. Every rule, transaction, allocation and journal entry is
    scoped to exactly one business.

    discount_approval_threshold overrides the app-wide default when set.
    """
    __tablename__ = "businesses"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    code = db.Column(db.String(32), nullable=False, unique=True, index=True)
    currency = db.Column(db.String(3), nullable=False, default="UGX")

    # Percent, e.g. 20.00; NULL falls back to DISCOUNT_APPROVAL_THRESHOLD
    discount_approval_threshold = db.Column(db.Numeric(5, 2), nullable=True)

    # Default VAT rate in percent, used for discount tax impact
    tax_rate = db.Column(db.Numeric(5, 2), nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def __repr__(self) -> str:
        return f"<Business {self.id} {self.code}>"

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "currency": self.currency,
            "discount_approval_threshold": money_str(self.discount_approval_threshold),
            "tax_rate": money_str(self.tax_rate),
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }
