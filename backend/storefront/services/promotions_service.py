from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable

from sqlalchemy import case, update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import PromoCode
from ..models.promotions import DISCOUNT_PERCENTAGE, DISCOUNT_TYPES
from ..time_utils import normalize_datetime, utcnow
from ..validation import (
    ConflictError,
    ModelValidationPolicy,
    ValidationError,
    validate_payload,
)


ZERO = Decimal("0.00")
TWO_PLACES = Decimal("0.01")

REASON_NOT_FOUND = "Promo code not found."
REASON_INACTIVE = "This promo code is inactive."
REASON_NOT_STARTED = "This promo code is not active yet."
REASON_EXPIRED = "This promo code has expired."
REASON_USAGE_LIMIT = "This promo code has reached its usage limit."
REASON_DOES_NOT_APPLY = "Promo code does not apply to this order."

PROMO_POLICY = ModelValidationPolicy(
    writable_fields={
        "code", "description", "discount_type", "amount", "active",
        "minimum_order_value", "max_redemptions", "starts_at", "ends_at",
    },
    required_on_create={"code", "discount_type", "amount"},
)


@dataclass(frozen=True)
class PromoValidationResult:
    valid: bool
    reason: str | None
    discount_amount: Decimal

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "reason": self.reason,
            "discount_amount": float(self.discount_amount),
        }


# =============================================================================
# EVALUATION (pure: no database access)
# =============================================================================

def normalize_promo_code(code: str) -> str:
    return (code or "").strip().upper()


def _as_decimal(value) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def is_promo_active(promo, subtotal, now: datetime | None = None) -> tuple[bool, str | None]:
    """
    Check a promo against an order subtotal.

    Checks run in a fixed order and the first failure wins:
    active -> starts_at -> ends_at -> minimum_order_value -> max_redemptions.
    """
    now = normalize_datetime(now) if now is not None else utcnow()
    subtotal = _as_decimal(subtotal)

    if not promo.active:
        return False, REASON_INACTIVE

    starts_at = normalize_datetime(promo.starts_at)
    if starts_at is not None and now < starts_at:
        return False, REASON_NOT_STARTED

    ends_at = normalize_datetime(promo.ends_at)
    if ends_at is not None and now > ends_at:
        return False, REASON_EXPIRED

    minimum = promo.minimum_order_value
    if minimum is not None and _as_decimal(minimum) > 0 and subtotal < _as_decimal(minimum):
        return False, f"Minimum order value of {_as_decimal(minimum).quantize(TWO_PLACES)} required."

    if promo.max_redemptions and (promo.redemptions or 0) >= promo.max_redemptions:
        return False, REASON_USAGE_LIMIT

    return True, None


def get_promo_discount_amount(promo, subtotal) -> Decimal:
    """Discount for `subtotal`, clamped to [0, subtotal] and rounded half-up to 2 places."""
    subtotal = _as_decimal(subtotal)
    if subtotal <= 0:
        return ZERO

    amount = _as_decimal(promo.amount)
    if promo.discount_type == DISCOUNT_PERCENTAGE:
        discount = subtotal * amount / Decimal(100)
    else:
        discount = amount

    if not discount.is_finite() or discount < 0:
        return ZERO

    return min(discount, subtotal).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def validate_promo(promo, subtotal, now: datetime | None = None) -> PromoValidationResult:
    if promo is None:
        return PromoValidationResult(False, REASON_NOT_FOUND, ZERO)

    valid, reason = is_promo_active(promo, subtotal, now)
    if not valid:
        return PromoValidationResult(False, reason, ZERO)

    discount_amount = get_promo_discount_amount(promo, subtotal)
    if discount_amount <= 0:
        return PromoValidationResult(False, REASON_DOES_NOT_APPLY, ZERO)

    return PromoValidationResult(True, None, discount_amount)


# =============================================================================
# LOOKUP & ADMIN CRUD
# =============================================================================

def get_promo_by_code(code: str) -> PromoCode | None:
    normalized = normalize_promo_code(code)
    if not normalized:
        return None
    return db.session.query(PromoCode).filter_by(code=normalized).first()


def validate_code_for_subtotal(code: str, subtotal, now: datetime | None = None) -> tuple[PromoCode | None, PromoValidationResult]:
    promo = get_promo_by_code(code)
    return promo, validate_promo(promo, subtotal, now)


def list_promo_codes(active_only: bool = False) -> list[dict]:
    q = db.session.query(PromoCode)
    if active_only:
        q = q.filter_by(active=True)
    return [p.to_dict() for p in q.order_by(PromoCode.created_at.desc(), PromoCode.id.desc()).all()]


def _enforce_promo_rules(patch: dict, existing: PromoCode | None = None) -> None:
    if "code" in patch:
        patch["code"] = normalize_promo_code(patch["code"])
        if len(patch["code"]) < 2:
            raise ValidationError("Code must be at least 2 characters")

    if "discount_type" in patch:
        patch["discount_type"] = (patch["discount_type"] or "").upper()
        if patch["discount_type"] not in DISCOUNT_TYPES:
            raise ValidationError("discount_type must be PERCENTAGE or FIXED")

    discount_type = patch.get("discount_type", existing.discount_type if existing else None)
    amount = patch.get("amount", existing.amount if existing else None)

    if "amount" in patch and (amount is None or amount <= 0):
        raise ValidationError("Amount must be greater than 0")
    if discount_type == DISCOUNT_PERCENTAGE and amount is not None and amount > 100:
        raise ValidationError("Percentage discounts cannot exceed 100%")

    if patch.get("minimum_order_value") is not None and patch["minimum_order_value"] < 0:
        raise ValidationError("minimum_order_value must be >= 0")
    if patch.get("max_redemptions") is not None and patch["max_redemptions"] <= 0:
        raise ValidationError("max_redemptions must be a positive integer")

    starts_at = patch.get("starts_at", existing.starts_at if existing else None)
    ends_at = patch.get("ends_at", existing.ends_at if existing else None)
    if starts_at and ends_at and normalize_datetime(starts_at) > normalize_datetime(ends_at):
        raise ValidationError("Start date must be before end date")


def create_promo_code(data: dict) -> PromoCode:
    patch = validate_payload(model=PromoCode, payload=data, policy=PROMO_POLICY, partial=False)
    _enforce_promo_rules(patch)
    patch.setdefault("active", True)

    promo = PromoCode(**patch)
    db.session.add(promo)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("This promo code already exists.")
    return promo


def update_promo_code(promo_id: int, data: dict) -> PromoCode | None:
    promo = db.session.get(PromoCode, promo_id)
    if not promo:
        return None

    patch = validate_payload(model=PromoCode, payload=data, policy=PROMO_POLICY, partial=True)
    _enforce_promo_rules(patch, existing=promo)

    for key, value in patch.items():
        setattr(promo, key, value)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("This promo code already exists.")
    return promo


def delete_promo_code(promo_id: int) -> bool:
    """Orders keep their promo_code_code snapshot; their FK is set to NULL."""
    promo = db.session.get(PromoCode, promo_id)
    if not promo:
        return False
    db.session.delete(promo)
    db.session.commit()
    return True


# =============================================================================
# REDEMPTION BOOKKEEPING (caller owns the transaction)
# =============================================================================

_promo_codes = PromoCode.__table__


def _distinct_ids(promo_ids: Iterable[int | None]) -> list[int]:
    return sorted({pid for pid in promo_ids if pid is not None})


def increment_redemptions(promo_ids: Iterable[int | None]) -> int:
    """Add one redemption to each distinct promo. Returns rows updated."""
    ids = _distinct_ids(promo_ids)
    if not ids:
        return 0
    result = db.session.execute(
        update(_promo_codes)
        .where(_promo_codes.c.id.in_(ids))
        .values(redemptions=_promo_codes.c.redemptions + 1)
    )
    _expire_loaded(ids)
    return result.rowcount


def decrement_redemptions(promo_ids: Iterable[int | None]) -> int:
    """Remove one redemption from each distinct promo, floored at 0. Returns rows updated."""
    ids = _distinct_ids(promo_ids)
    if not ids:
        return 0
    result = db.session.execute(
        update(_promo_codes)
        .where(_promo_codes.c.id.in_(ids))
        .values(
            redemptions=case(
                (_promo_codes.c.redemptions > 0, _promo_codes.c.redemptions - 1),
                else_=0,
            )
        )
    )
    _expire_loaded(ids)
    return result.rowcount


def _expire_loaded(ids: list[int]) -> None:
    for pid in ids:
        loaded = db.session.identity_map.get(db.session.identity_key(PromoCode, pid))
        if loaded is not None:
            db.session.expire(loaded, ["redemptions", "updated_at"])
