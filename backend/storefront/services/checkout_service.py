# Overview: Builds gateway checkout sessions from storefront carts.

from __future__ import annotations

import json
import logging
from decimal import Decimal

from flask import current_app

from ..extensions import db
from ..models import Product
from ..validation import ValidationError, parse_money, parse_positive_int
from . import currency_service, settings_service
from .checkout_session import SessionPayloadError, check_address, parse_cart_items
from .payment_gateway import StripeClient
from .promotions_service import normalize_promo_code


logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


class CheckoutError(Exception):
    """Cart cannot be turned into a checkout session."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


def resolve_currency(requested: str | None) -> str:
    if requested and currency_service.is_supported_currency(requested):
        return requested.upper()
    return current_app.config.get("DEFAULT_CURRENCY", "GBP").upper()


def _full_image_url(path: str | None) -> list[str]:
    if not path:
        return []
    if path.startswith(("http://", "https://")):
        return [path]
    if path.startswith("/"):
        return [f"{current_app.config['APP_URL'].rstrip('/')}{path}"]
    return []


def _amount(payload: dict, key: str, *, required: bool = False) -> Decimal | None:
    value = parse_money(payload.get(key), key, allow_none=not required)
    if value is not None and value < 0:
        raise ValidationError(f"{key} must be >= 0")
    return value


def _optional_promo_id(value, field: str) -> int | None:
    # Checked here so a paid session never carries an id the order parser would drop
    if value is None or value == "":
        return None
    return parse_positive_int(value, field)


def _promo_references(payload: dict) -> list[dict]:
    raw = payload.get("promoCodes") or []
    if not isinstance(raw, list):
        raise ValidationError("promoCodes must be a list")
    refs = []
    for entry in raw:
        if not isinstance(entry, dict) or not entry.get("code"):
            raise ValidationError("Each promoCodes entry needs a code")
        ref = {"code": normalize_promo_code(entry["code"])}
        promo_id = _optional_promo_id(entry.get("id"), "promoCodes.id")
        if promo_id is not None:
            ref["id"] = promo_id
        if entry.get("discountApplied") is not None:
            ref["discountApplied"] = str(parse_money(entry["discountApplied"], "discountApplied"))
        refs.append(ref)
    return refs


def create_checkout_session(payload: dict) -> dict:
    """
    Validate a cart and open a hosted checkout session for it.

    Line items, shipping and the discount coupon are all converted with
    currency_service.to_minor_units against one rates snapshot so the
    gateway total matches the cart.

    Returns {"sessionId", "url"}.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    config = settings_service.get_homepage_config(create=False)
    if config is not None and not config.purchasing_enabled:
        raise CheckoutError("Purchasing is currently disabled")

    raw_items = payload.get("items")
    if not isinstance(raw_items, list) or not raw_items:
        raise ValidationError("Cart is empty")
    try:
        items = parse_cart_items(raw_items)
    except SessionPayloadError as exc:
        raise ValidationError(str(exc))

    address = payload.get("address")
    if not isinstance(address, dict):
        raise ValidationError("address must be an object")
    try:
        check_address(address)
    except SessionPayloadError as exc:
        raise CheckoutError(str(exc), details=exc.details)

    promo_code = normalize_promo_code(payload.get("promoCode") or "")
    promo_code_id = _optional_promo_id(payload.get("promoCodeId"), "promoCodeId")
    promo_refs = _promo_references(payload)

    subtotal = _amount(payload, "subtotal", required=True)
    discount = _amount(payload, "discount") or ZERO
    shipping = _amount(payload, "shipping") or ZERO
    tax = _amount(payload, "tax") or ZERO
    total = _amount(payload, "total", required=True)
    subtotal_after_discount = _amount(payload, "subtotalAfterDiscount")
    if subtotal_after_discount is None:
        subtotal_after_discount = max(subtotal - discount, ZERO)

    products = {
        p.id: p
        for p in db.session.query(Product).filter(Product.id.in_(sorted({i.product_id for i in items}))).all()
    }
    missing = sorted(i.product_id for i in items if i.product_id not in products or not products[i.product_id].active)
    if missing:
        raise CheckoutError("Some products are no longer available", details={"product_ids": missing})

    currency = resolve_currency(payload.get("currency"))
    rates = currency_service.get_rates().rates
    gateway_currency = currency.lower()

    line_items = []
    metadata_items = []
    for item in items:
        product = products[item.product_id]
        price = item.price_at_purchase if item.price_at_purchase is not None else product.price
        name = item.product_name or product.name
        variant = " ".join(v for v in (item.size, item.color) if v)
        line_items.append({
            "price_data": {
                "currency": gateway_currency,
                "product_data": {
                    "name": name,
                    "images": _full_image_url(item.product_image or product.primary_image()),
                    "description": variant or None,
                },
                "unit_amount": currency_service.to_minor_units(price, currency, rates),
            },
            "quantity": item.quantity,
        })
        metadata_items.append({
            "productId": item.product_id,
            "productName": name,
            "quantity": item.quantity,
            "size": item.size,
            "color": item.color,
            "priceAtPurchase": str(price),
        })

    if shipping > 0:
        line_items.append({
            "price_data": {
                "currency": gateway_currency,
                "product_data": {"name": "Shipping"},
                "unit_amount": currency_service.to_minor_units(shipping, currency, rates),
            },
            "quantity": 1,
        })

    client = StripeClient.from_app()
    discounts = None
    if discount > 0:
        coupon = client.create_coupon(
            amount_off=currency_service.to_minor_units(discount, currency, rates),
            currency=currency,
            name=promo_code or "Checkout Discount",
        )
        discounts = [{"coupon": coupon["id"]}]

    app_url = current_app.config["APP_URL"].rstrip("/")
    session = client.create_checkout_session({
        "payment_method_types": ["card"],
        "mode": "payment",
        "line_items": line_items,
        "success_url": f"{app_url}/order/success?session_id={{CHECKOUT_SESSION_ID}}",
        "cancel_url": f"{app_url}/checkout",
        "customer_email": payload.get("email") or None,
        "discounts": discounts,
        "metadata": {
            "customerName": payload.get("name") or "",
            "address": json.dumps(address),
            "items": json.dumps(metadata_items),
            "subtotal": str(subtotal),
            "subtotalAfterDiscount": str(subtotal_after_discount),
            "shipping": str(shipping),
            "tax": str(tax),
            "total": str(total),
            "discount": str(discount),
            "promoCode": promo_code,
            "promoCodeId": "" if promo_code_id is None else str(promo_code_id),
            "promoCodes": json.dumps(promo_refs),
        },
    })

    logger.info("Created checkout session %s (%s, %d lines)", session.get("id"), currency, len(line_items))
    return {"sessionId": session.get("id"), "url": session.get("url")}
