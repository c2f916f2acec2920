from __future__ import annotations

from ..extensions import db
from storefront.time_utils import to_utc_z
from .catalog import money


DISCOUNT_PERCENTAGE = "PERCENTAGE"
DISCOUNT_FIXED = "FIXED"
DISCOUNT_TYPES = (DISCOUNT_PERCENTAGE, DISCOUNT_FIXED)


class PromoCode(db.Model):
    """
    Promo code redeemable at checkout.

    amount is a percentage (0-100] for PERCENTAGE codes and a canonical-currency
    amount for FIXED codes.

    redemptions counts orders that currently reference the code: it is
    incremented when an order is materialized and decremented when that order
    is deleted. max_redemptions is only checked at validation time.
    """
    __tablename__ = "promo_codes"
    __table_args__ = (
        db.CheckConstraint("redemptions >= 0", name="ck_promo_codes_redemptions_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Stored normalized (trimmed, upper-case)
    code = db.Column(db.String(64), nullable=False, unique=True, index=True)
    description = db.Column(db.String(200), nullable=True)

    discount_type = db.Column(db.String(16), nullable=False)  # PERCENTAGE, FIXED
    amount = db.Column(db.Numeric(10, 2), nullable=False)

    active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    minimum_order_value = db.Column(db.Numeric(10, 2), nullable=True)
    max_redemptions = db.Column(db.Integer, nullable=True)
    redemptions = db.Column(db.Integer, nullable=False, default=0, server_default="0")

    starts_at = db.Column(db.DateTime(timezone=True), nullable=True)
    ends_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self):
        return {
            "id": self.id,
            "code": self.code,
            "description": self.description,
            "discount_type": self.discount_type,
            "amount": money(self.amount),
            "active": self.active,
            "minimum_order_value": money(self.minimum_order_value),
            "max_redemptions": self.max_redemptions,
            "redemptions": self.redemptions,
            "starts_at": to_utc_z(self.starts_at),
            "ends_at": to_utc_z(self.ends_at),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
