# Overview: Parse-and-validate boundary for gateway checkout session payloads.

"""
Checkout session parsing.

The gateway hands back a loosely-typed session object whose metadata carries
JSON-encoded blobs (address, items, promoCodes) written at checkout time.
parse_checkout_session() turns it into typed dataclasses before any order
logic runs. Malformed shapes are rejected with SessionPayloadError; nothing
is guessed.

Tolerated (defaults applied):
- missing money fields (0.00; total falls back to
  subtotal - discount + shipping + tax)
- missing customer name ("Guest") and email (None)
- missing promo references, and promo ids that are not positive integers
  (dropped; the paid order is still recorded)

Rejected:
- no session id
- address/items/promoCodes that are not valid JSON of the right shape
- items without productId, or with a non-positive/non-integer quantity
- money fields that are not numbers
- online addresses missing line1, city, state, postalCode or country
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from ..validation import ValidationError, parse_money, parse_positive_int
from .promotions_service import normalize_promo_code


logger = logging.getLogger(__name__)


REQUIRED_ADDRESS_KEYS = ("line1", "city", "state", "postalCode", "country")
# state is often empty outside the US; it must be present but may be blank
OPTIONAL_BLANK_ADDRESS_KEYS = ("state",)

# Gateway customer_details.address -> storefront address keys
GATEWAY_ADDRESS_KEYS = {
    "line1": "line1",
    "line2": "line2",
    "city": "city",
    "state": "state",
    "postal_code": "postalCode",
    "country": "country",
}


class SessionPayloadError(ValidationError):
    """Session metadata is malformed; the order cannot be materialized."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


@dataclass(frozen=True)
class ParsedItem:
    product_id: int
    quantity: int
    product_name: str | None = None
    product_image: str | None = None
    size: str | None = None
    color: str | None = None
    price_at_purchase: Decimal | None = None


@dataclass(frozen=True)
class ParsedPromo:
    promo_id: int | None
    code: str | None
    discount_applied: Decimal | None = None


@dataclass(frozen=True)
class ParsedSession:
    session_id: str
    payment_id: str
    email: str | None
    name: str
    address: dict
    items: list[ParsedItem]
    promos: list[ParsedPromo]
    subtotal: Decimal
    discount: Decimal
    subtotal_after_discount: Decimal
    shipping: Decimal
    tax: Decimal
    total: Decimal
    amount_total: int | None = None
    metadata: dict = field(default_factory=dict)


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _load_json(metadata: dict, key: str, expected: type, default):
    raw = metadata.get(key)
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return default
    if isinstance(raw, expected):
        return raw
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        raise SessionPayloadError(f"{key} metadata is not valid JSON", details={"field": key})
    if not isinstance(value, expected):
        raise SessionPayloadError(
            f"{key} metadata must be a JSON {expected.__name__}",
            details={"field": key},
        )
    return value


def _money(metadata: dict, key: str) -> Decimal | None:
    try:
        return parse_money(metadata.get(key), key, allow_none=True)
    except ValidationError as exc:
        raise SessionPayloadError(str(exc), details={"field": key})


def _payment_id(session: dict) -> str | None:
    intent = session.get("payment_intent")
    if isinstance(intent, dict):
        intent = intent.get("id")
    return _optional_str(intent)


def _parse_product_id(value: Any, index: int) -> int:
    try:
        return parse_positive_int(value, "productId")
    except ValidationError:
        raise SessionPayloadError(
            f"Item {index} has a missing or invalid productId",
            details={"index": index, "productId": value},
        )


def parse_cart_items(raw_items: list) -> list[ParsedItem]:
    """Typed cart lines from the storefront item shape (shared with checkout creation)."""
    items = []
    for index, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise SessionPayloadError(f"Item {index} is not an object", details={"index": index})
        product_id = _parse_product_id(raw.get("productId"), index)
        try:
            quantity = parse_positive_int(raw.get("quantity"), "quantity")
        except ValidationError:
            raise SessionPayloadError(
                f"Item {index} has an invalid quantity",
                details={"index": index, "quantity": raw.get("quantity")},
            )
        try:
            price = parse_money(raw.get("priceAtPurchase"), "priceAtPurchase", allow_none=True)
        except ValidationError as exc:
            raise SessionPayloadError(f"Item {index}: {exc}", details={"index": index})
        items.append(ParsedItem(
            product_id=product_id,
            quantity=quantity,
            product_name=_optional_str(raw.get("productName")),
            product_image=_optional_str(raw.get("productImage")),
            size=_optional_str(raw.get("size")),
            color=_optional_str(raw.get("color")),
            price_at_purchase=price,
        ))
    return items


def _promo_id(value: Any) -> int | None:
    """Promo row id, or None. A bad id is dropped; the code, if any, still resolves."""
    if value is None or value == "":
        return None
    try:
        return parse_positive_int(value, "promoCodeId")
    except ValidationError:
        logger.warning("Ignoring invalid promo code id %r", value)
        return None


def _parse_promos(metadata: dict) -> list[ParsedPromo]:
    """Union of promoCodes[], promoCodeId and promoCode, de-duplicated by id then code."""
    candidates: list[ParsedPromo] = []
    for index, raw in enumerate(_load_json(metadata, "promoCodes", list, [])):
        if isinstance(raw, str):
            raw = {"code": raw}
        if not isinstance(raw, dict):
            raise SessionPayloadError(f"promoCodes[{index}] is not an object", details={"index": index})
        try:
            applied = parse_money(raw.get("discountApplied"), "discountApplied", allow_none=True)
        except ValidationError as exc:
            raise SessionPayloadError(f"promoCodes[{index}]: {exc}", details={"index": index})
        candidates.append(ParsedPromo(
            promo_id=_promo_id(raw.get("id")),
            code=normalize_promo_code(raw.get("code") or "") or None,
            discount_applied=applied,
        ))

    single_id = _promo_id(metadata.get("promoCodeId"))
    single_code = normalize_promo_code(metadata.get("promoCode") or "") or None
    if single_id is not None or single_code:
        candidates.append(ParsedPromo(promo_id=single_id, code=single_code))

    promos: list[ParsedPromo] = []
    seen_ids: set[int] = set()
    seen_codes: set[str] = set()
    for promo in candidates:
        if promo.promo_id is None and not promo.code:
            continue
        if promo.promo_id is not None and promo.promo_id in seen_ids:
            continue
        if promo.code and promo.code in seen_codes:
            continue
        if promo.promo_id is not None:
            seen_ids.add(promo.promo_id)
        if promo.code:
            seen_codes.add(promo.code)
        promos.append(promo)
    return promos


def _parse_address(session: dict, metadata: dict) -> dict:
    address = _load_json(metadata, "address", dict, None)
    if address is None:
        details = session.get("customer_details") or {}
        gateway_address = details.get("address") if isinstance(details, dict) else None
        address = {
            ours: gateway_address.get(theirs)
            for theirs, ours in GATEWAY_ADDRESS_KEYS.items()
            if isinstance(gateway_address, dict) and gateway_address.get(theirs) is not None
        }
    return check_address(address)


def check_address(address: dict) -> dict:
    """Reject an online shipping address missing a required field; used at checkout and at materialization."""
    missing = []
    for key in REQUIRED_ADDRESS_KEYS:
        value = address.get(key)
        if value is None or not isinstance(value, str):
            missing.append(key)
        elif not value.strip() and key not in OPTIONAL_BLANK_ADDRESS_KEYS:
            missing.append(key)
    if missing:
        raise SessionPayloadError(
            f"Address is missing required fields: {', '.join(missing)}",
            details={"missing": missing},
        )
    return address


def idempotency_key(session: dict) -> str:
    """payment_intent id when the session has one, else the session id."""
    if not isinstance(session, dict):
        raise SessionPayloadError("Session payload must be an object")
    session_id = _optional_str(session.get("id"))
    if not session_id:
        raise SessionPayloadError("Session id is missing")
    return _payment_id(session) or session_id


def parse_checkout_session(session: dict) -> ParsedSession:
    payment_id = idempotency_key(session)
    session_id = _optional_str(session.get("id"))

    metadata = session.get("metadata") or {}
    if not isinstance(metadata, dict):
        raise SessionPayloadError("Session metadata must be an object")

    details = session.get("customer_details")
    details = details if isinstance(details, dict) else {}

    email = (
        _optional_str(session.get("customer_email"))
        or _optional_str(details.get("email"))
        or _optional_str(metadata.get("email"))
    )
    name = _optional_str(metadata.get("customerName")) or _optional_str(details.get("name")) or "Guest"

    items = parse_cart_items(_load_json(metadata, "items", list, []))

    zero = Decimal("0.00")
    subtotal = _money(metadata, "subtotal") or zero
    discount = max(_money(metadata, "discount") or zero, zero)
    subtotal_after_discount = _money(metadata, "subtotalAfterDiscount")
    if subtotal_after_discount is None:
        subtotal_after_discount = max(subtotal - discount, zero)
    shipping = _money(metadata, "shipping") or zero
    tax = _money(metadata, "tax") or zero
    total = _money(metadata, "total")
    if total is None:
        total = subtotal_after_discount + shipping + tax

    amount_total = session.get("amount_total")
    if not isinstance(amount_total, int) or isinstance(amount_total, bool):
        amount_total = None

    return ParsedSession(
        session_id=session_id,
        payment_id=payment_id,
        email=email.lower() if email else None,
        name=name,
        address=_parse_address(session, metadata),
        items=items,
        promos=_parse_promos(metadata),
        subtotal=subtotal,
        discount=discount,
        subtotal_after_discount=subtotal_after_discount,
        shipping=shipping,
        tax=tax,
        total=total,
        amount_total=amount_total,
        metadata=dict(metadata),
    )
