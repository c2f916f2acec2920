# Overview: Order materialization, in-person sales, status transitions, compensating deletes and profit summaries.

"""
Orders Service

MATERIALIZATION (create_order_from_session):
- Idempotent on orders.stripe_payment_id (payment_intent id, else session id).
- The redirect confirmation and the webhook race for the same payment. The
  first to commit wins; the other either finds the row on its lookup or trips
  the UNIQUE constraint on flush, rolls back and re-reads the winner's order.
- The order row is flushed before any inventory or promo write, so a losing
  racer never touches counters.
- Order, items, applied promos, inventory effects and redemption increments
  commit as one transaction. Email goes out after commit and never fails it.

COMPENSATION (delete_order):
- One transaction: reverse each item's inventory effect, decrement every
  distinct promo once, delete the order (items and applied promos cascade).
- Under DEDUCT a line gives back order_items.stock_deducted, the units its
  sale actually removed, so an oversold order does not mint stock.
- A missing product is logged and skipped; it does not block the delete.
- Reversal uses the CURRENT policy (or an injected one). If it differs from
  the policy recorded on the order, a warning is logged and the current
  policy still wins.

STATUS MACHINE:
    PENDING -> PROCESSING -> SHIPPED -> DELIVERED
    CANCELLED from any non-terminal state
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Order, OrderAppliedPromoCode, OrderItem, Product, PromoCode
from ..models.orders import (
    ORDER_STATUS_CANCELLED,
    ORDER_STATUS_DELIVERED,
    ORDER_STATUS_PENDING,
    ORDER_STATUS_PROCESSING,
    ORDER_STATUS_SHIPPED,
    ORDER_STATUSES,
)
from ..time_utils import normalize_datetime, to_utc_z, utcnow
from ..validation import ValidationError, parse_positive_int
from . import email_service, inventory_service, promotions_service, settings_service
from .checkout_session import (
    ParsedItem,
    ParsedPromo,
    SessionPayloadError,
    idempotency_key,
    parse_cart_items,
    parse_checkout_session,
)
from .concurrency import begin_write, lock_for_update, run_with_retry


logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")

ALLOWED_TRANSITIONS = {
    ORDER_STATUS_PENDING: {ORDER_STATUS_PROCESSING, ORDER_STATUS_CANCELLED},
    ORDER_STATUS_PROCESSING: {ORDER_STATUS_SHIPPED, ORDER_STATUS_CANCELLED},
    ORDER_STATUS_SHIPPED: {ORDER_STATUS_DELIVERED, ORDER_STATUS_CANCELLED},
    ORDER_STATUS_DELIVERED: set(),
    ORDER_STATUS_CANCELLED: set(),
}


class OrderError(Exception):
    """Raised for order operation errors."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class OrderNotFoundError(OrderError):
    pass


class InvalidTransitionError(OrderError):
    """Requested status change is not allowed from the current status."""


@dataclass
class MaterializationResult:
    order: Order
    created: bool


@dataclass
class CompensationReport:
    order_id: int
    policy: str
    recorded_policy: str | None
    reversed_items: list[dict] = field(default_factory=list)
    skipped_items: list[dict] = field(default_factory=list)
    promo_ids_decremented: list[int] = field(default_factory=list)

    @property
    def policy_drift(self) -> bool:
        return self.recorded_policy is not None and self.recorded_policy != self.policy

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "policy": self.policy,
            "recorded_policy": self.recorded_policy,
            "policy_drift": self.policy_drift,
            "reversed_items": self.reversed_items,
            "skipped_items": self.skipped_items,
            "promo_ids_decremented": self.promo_ids_decremented,
        }


# =============================================================================
# READS
# =============================================================================

def find_order_by_payment_id(payment_id: str) -> Order | None:
    return db.session.query(Order).filter_by(stripe_payment_id=payment_id).first()


def get_order(order_id: int) -> Order:
    order = db.session.get(Order, order_id)
    if order is None:
        raise OrderNotFoundError("Order not found", details={"order_id": order_id})
    return order


def list_orders(
    *,
    status: str | None = None,
    include_in_person: bool = True,
    limit: int = 100,
    offset: int = 0,
) -> list[Order]:
    q = db.session.query(Order)
    if status:
        status = status.upper()
        if status not in ORDER_STATUSES:
            raise ValidationError(f"Unknown status: {status}")
        q = q.filter(Order.status == status)
    if not include_in_person:
        q = q.filter(Order.is_in_person.is_(False))
    return (
        q.order_by(Order.created_at.desc(), Order.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )


def list_in_person_sales(limit: int = 25) -> list[Order]:
    return (
        db.session.query(Order)
        .filter(Order.is_in_person.is_(True))
        .order_by(Order.created_at.desc(), Order.id.desc())
        .limit(limit)
        .all()
    )


# =============================================================================
# MATERIALIZATION
# =============================================================================

def _load_products(product_ids) -> dict[int, Product]:
    ids = sorted(set(product_ids))
    if not ids:
        return {}
    return {p.id: p for p in db.session.query(Product).filter(Product.id.in_(ids)).all()}


def _resolve_promos(refs: list[ParsedPromo]) -> list[tuple[PromoCode, ParsedPromo]]:
    """Match promo references to rows; unknown references are logged and dropped."""
    resolved: list[tuple[PromoCode, ParsedPromo]] = []
    seen: set[int] = set()
    for ref in refs:
        promo = db.session.get(PromoCode, ref.promo_id) if ref.promo_id is not None else None
        if promo is None and ref.code:
            promo = promotions_service.get_promo_by_code(ref.code)
        if promo is None:
            logger.warning("Promo reference %s/%s not found; not counted", ref.promo_id, ref.code)
            continue
        if promo.id in seen:
            continue
        seen.add(promo.id)
        resolved.append((promo, ref))
    return resolved


def _add_items(order: Order, items: list[ParsedItem], products: dict[int, Product], policy: str) -> None:
    """Write item snapshots and apply each line's inventory effect."""
    for item in items:
        product = products.get(item.product_id)
        if product is None:
            logger.warning(
                "Order %s references unknown product %s; item stored without inventory effect",
                order.id, item.product_id,
            )
        price = item.price_at_purchase
        if price is None:
            price = product.price if product is not None else ZERO

        line = OrderItem(
            product_id=product.id if product is not None else None,
            product_name=item.product_name or (product.name if product is not None else "Product"),
            product_image=item.product_image or (product.primary_image() if product is not None else None),
            quantity=item.quantity,
            size=item.size,
            color=item.color,
            price_at_purchase=price,
        )
        order.items.append(line)

        if product is not None:
            applied = inventory_service.apply_sale(product.id, item.quantity, policy)
            if policy == inventory_service.POLICY_DEDUCT:
                line.stock_deducted = applied


def _materialize(parsed, policy: str | None) -> tuple[Order, bool]:
    begin_write()
    existing = find_order_by_payment_id(parsed.payment_id)
    if existing is not None:
        # Nothing written; end the transaction to release the write lock
        db.session.commit()
        return existing, False

    applied_policy = policy or inventory_service.resolve_policy()
    promos = _resolve_promos(parsed.promos)
    primary = promos[0][0] if promos else None
    fallback_code = next((p.code for p in parsed.promos if p.code), None)

    order = Order(
        email=parsed.email,
        name=parsed.name,
        address=json.dumps(parsed.address),
        subtotal=parsed.subtotal,
        shipping=parsed.shipping,
        tax=parsed.tax,
        discount=parsed.discount,
        total=parsed.total,
        status=ORDER_STATUS_PROCESSING,
        promo_code_id=primary.id if primary is not None else None,
        promo_code_code=primary.code if primary is not None else fallback_code,
        stripe_payment_id=parsed.payment_id,
        is_in_person=False,
        inventory_policy=applied_policy,
    )
    db.session.add(order)
    # UNIQUE(stripe_payment_id) is checked here, before any counter moves
    db.session.flush()

    _add_items(order, parsed.items, _load_products(i.product_id for i in parsed.items), applied_policy)

    for promo, ref in promos:
        if ref.discount_applied is not None:
            applied = ref.discount_applied
        elif len(promos) == 1:
            applied = parsed.discount
        else:
            applied = ZERO
        order.applied_promos.append(OrderAppliedPromoCode(
            promo_code_id=promo.id,
            code=promo.code,
            discount_type=promo.discount_type,
            amount=promo.amount,
            discount_applied=applied,
        ))
    promotions_service.increment_redemptions(promo.id for promo, _ in promos)

    db.session.commit()
    return order, True


def create_order_from_session(session: dict, *, policy: str | None = None, send_email: bool = True) -> MaterializationResult:
    """
    Turn a completed checkout session into exactly one order.

    Safe to call any number of times, concurrently, for the same session.
    Raises SessionPayloadError on malformed metadata (nothing is written).
    """
    payment_id = idempotency_key(session)
    existing = find_order_by_payment_id(payment_id)
    if existing is not None:
        return MaterializationResult(existing, False)

    parsed = parse_checkout_session(session)

    try:
        order, created = run_with_retry(lambda: _materialize(parsed, policy))
    except IntegrityError:
        db.session.rollback()
        existing = find_order_by_payment_id(payment_id)
        if existing is None:
            raise
        logger.info("Order for payment %s created concurrently; returning existing", payment_id)
        return MaterializationResult(existing, False)

    if created:
        logger.info("Materialized order %s for payment %s", order.id, payment_id)
        if send_email and order.email:
            result = email_service.send_order_thank_you_email(order)
            if not result.ok:
                logger.warning("Thank-you email for order %s not sent: %s", order.id, result.error)

    return MaterializationResult(order, created)


# =============================================================================
# IN-PERSON SALES
# =============================================================================

def _parse_in_person_payload(payload: dict) -> tuple[dict, list[ParsedItem]]:
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    name = (payload.get("customerName") or "").strip()
    raw_items = payload.get("items")
    if not name or not isinstance(raw_items, list) or not raw_items:
        raise ValidationError("Invalid sale data")
    try:
        items = parse_cart_items(raw_items)
    except SessionPayloadError as exc:
        raise ValidationError(str(exc))

    address = {"type": "in-person"}
    location = (payload.get("customerLocation") or "").strip()
    if location:
        address["location"] = location

    customer = {
        "name": name,
        "email": (payload.get("customerEmail") or "").strip() or None,
        "address": json.dumps(address),
    }
    return customer, items


def _catalog_priced(items: list[ParsedItem]) -> tuple[list[ParsedItem], dict[int, Product], Decimal]:
    """In-person lines are always priced from the catalog."""
    products = _load_products(i.product_id for i in items)
    missing = sorted({i.product_id for i in items if i.product_id not in products})
    if missing:
        raise OrderError("Product not found for sale", details={"product_ids": missing})

    priced = []
    subtotal = ZERO
    for item in items:
        price = products[item.product_id].price
        subtotal += price * item.quantity
        priced.append(ParsedItem(
            product_id=item.product_id,
            quantity=item.quantity,
            product_name=item.product_name,
            size=item.size,
            color=item.color,
            price_at_purchase=price,
        ))
    return priced, products, subtotal


def create_in_person_sale(payload: dict, *, policy: str | None = None) -> Order:
    customer, items = _parse_in_person_payload(payload)

    def _op():
        begin_write()
        priced, products, subtotal = _catalog_priced(items)
        applied_policy = policy or inventory_service.resolve_policy()

        order = Order(
            email=customer["email"],
            name=customer["name"],
            address=customer["address"],
            subtotal=subtotal,
            shipping=ZERO,
            tax=ZERO,
            discount=ZERO,
            total=subtotal,
            status=ORDER_STATUS_DELIVERED,
            is_in_person=True,
            inventory_policy=applied_policy,
        )
        db.session.add(order)
        db.session.flush()
        _add_items(order, priced, products, applied_policy)

        db.session.commit()
        return order

    return run_with_retry(_op)


def _reverse_items(order: Order, policy: str, report: CompensationReport | None = None) -> None:
    for item in order.items:
        entry = {"order_item_id": item.id, "product_id": item.product_id, "quantity": item.quantity}
        if item.product_id is None:
            logger.warning("Order %s item %s has no product; skipping inventory reversal", order.id, item.id)
            if report is not None:
                report.skipped_items.append({**entry, "reason": "product no longer exists"})
            continue
        units = item.quantity
        if policy == inventory_service.POLICY_DEDUCT and item.stock_deducted is not None:
            units = item.stock_deducted
        entry["restored"] = units
        if units <= 0:
            # Fully oversold; nothing was taken from stock
            if report is not None:
                report.reversed_items.append(entry)
            continue
        if inventory_service.reverse_sale(item.product_id, units, policy):
            if report is not None:
                report.reversed_items.append(entry)
        else:
            logger.warning(
                "Failed to restore inventory for product %s (order %s): product not found",
                item.product_id, order.id,
            )
            if report is not None:
                report.skipped_items.append({**entry, "reason": "product not found"})


def _warn_on_policy_drift(order: Order, policy: str) -> None:
    if order.inventory_policy and order.inventory_policy != policy:
        logger.warning(
            "Order %s was created under %s but is being reversed under %s",
            order.id, order.inventory_policy, policy,
        )


def _lock_order(order_id: int, *, in_person: bool | None = None) -> Order:
    order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
    if order is None or (in_person is not None and order.is_in_person != in_person):
        raise OrderNotFoundError("Sale not found" if in_person else "Order not found", details={"order_id": order_id})
    return order


def update_in_person_sale(order_id: int, payload: dict, *, policy: str | None = None) -> Order:
    """Replace a sale's customer details and lines; inventory moves in the same transaction."""
    customer, items = _parse_in_person_payload(payload)

    def _op():
        begin_write()
        order = _lock_order(order_id, in_person=True)
        priced, products, subtotal = _catalog_priced(items)
        applied_policy = policy or inventory_service.resolve_policy()

        _warn_on_policy_drift(order, applied_policy)
        _reverse_items(order, applied_policy)
        order.items.clear()
        db.session.flush()

        order.name = customer["name"]
        order.email = customer["email"]
        order.address = customer["address"]
        order.subtotal = subtotal
        order.total = subtotal
        order.inventory_policy = applied_policy
        _add_items(order, priced, products, applied_policy)

        db.session.commit()
        return order

    return run_with_retry(_op)


# =============================================================================
# STATUS
# =============================================================================

def update_order_status(order_id: int, status: str | None, tracking_number: str | None = None) -> Order:
    """
    Move an order along the status machine and/or set its tracking number.

    tracking_number=None leaves it unchanged; an empty string clears it.
    Entering SHIPPED stamps shipped_at; the shipping email (when enabled) is
    sent after commit and a failure is only logged.
    """
    target = status.strip().upper() if isinstance(status, str) and status.strip() else None
    if target is not None and target not in ORDER_STATUSES:
        raise ValidationError(f"Unknown status: {status}")
    if target is None and tracking_number is None:
        raise ValidationError("Nothing to update")

    def _op():
        order = _lock_order(order_id)
        previous = order.status

        if target is not None and target != previous:
            if target not in ALLOWED_TRANSITIONS.get(previous, set()):
                raise InvalidTransitionError(
                    f"Cannot change order from {previous} to {target}",
                    details={"from": previous, "to": target},
                )
            order.status = target
            if target == ORDER_STATUS_SHIPPED:
                order.shipped_at = utcnow()

        if tracking_number is not None:
            order.tracking_number = tracking_number.strip() or None

        db.session.commit()
        return order, previous

    order, previous = run_with_retry(_op)

    if order.status == ORDER_STATUS_SHIPPED and previous != ORDER_STATUS_SHIPPED:
        _notify_shipped(order)
    return order


def _notify_shipped(order: Order) -> None:
    config = settings_service.get_homepage_config(create=False)
    if config is not None and not config.shipping_emails_enabled:
        return
    if not order.email:
        return
    result = email_service.send_shipping_confirmation_email(order)
    if not result.ok:
        logger.warning("Shipping email for order %s not sent: %s", order.id, result.error)


# =============================================================================
# COMPENSATION
# =============================================================================

def delete_order(order_id: int, *, policy: str | None = None) -> CompensationReport:
    """Delete an order and undo its inventory and promo effects atomically."""
    order_id = parse_positive_int(order_id, "order_id")

    def _op():
        begin_write()
        order = _lock_order(order_id)
        applied_policy = policy or inventory_service.resolve_policy()
        report = CompensationReport(order.id, applied_policy, order.inventory_policy)

        _warn_on_policy_drift(order, applied_policy)
        _reverse_items(order, applied_policy, report)

        promo_ids = {order.promo_code_id} | {p.promo_code_id for p in order.applied_promos}
        promo_ids.discard(None)
        # Only promos that still exist are decremented
        existing = {
            pid for (pid,) in db.session.query(PromoCode.id).filter(PromoCode.id.in_(sorted(promo_ids))).all()
        } if promo_ids else set()
        promotions_service.decrement_redemptions(existing)
        report.promo_ids_decremented = sorted(existing)

        db.session.delete(order)
        db.session.commit()
        logger.info(
            "Deleted order %s: %d items reversed, %d skipped, promos %s",
            order_id, len(report.reversed_items), len(report.skipped_items), report.promo_ids_decremented,
        )
        return report

    return run_with_retry(_op)


def delete_in_person_sale(order_id: int, *, policy: str | None = None) -> CompensationReport:
    order = db.session.get(Order, order_id)
    if order is None or not order.is_in_person:
        raise OrderNotFoundError("Sale not found", details={"order_id": order_id})
    return delete_order(order_id, policy=policy)


# =============================================================================
# PROFITS
# =============================================================================

PROFIT_PERIODS = ("day", "week", "month", "year", "lifetime")


def _period_starts(now: datetime) -> dict[str, datetime | None]:
    """Calendar starts in UTC; weeks begin on Monday."""
    day = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return {
        "day": day,
        "week": day - timedelta(days=day.weekday()),
        "month": day.replace(day=1),
        "year": day.replace(month=1, day=1),
        "lifetime": None,
    }


def _cents(value: Decimal) -> Decimal:
    return value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def profit_summary(now: datetime | None = None) -> dict:
    """
    Revenue, cost and profit of non-cancelled orders for the current day,
    week, month and year, plus lifetime.

    Revenue is the order total. Cost is products.cost_price x quantity per
    line; lines whose product is gone or has no cost price count as 0.
    """
    now = normalize_datetime(now) if now is not None else utcnow()
    starts = _period_starts(now)

    line_cost = (
        db.session.query(
            OrderItem.order_id.label("order_id"),
            func.sum(func.coalesce(Product.cost_price, 0) * OrderItem.quantity).label("cost"),
        )
        .outerjoin(Product, Product.id == OrderItem.product_id)
        .group_by(OrderItem.order_id)
        .subquery()
    )
    rows = (
        db.session.query(Order.created_at, Order.total, line_cost.c.cost)
        .outerjoin(line_cost, line_cost.c.order_id == Order.id)
        .filter(Order.status != ORDER_STATUS_CANCELLED)
        .all()
    )

    totals = {key: {"revenue": ZERO, "cost": ZERO} for key in PROFIT_PERIODS}
    for created_at, revenue, cost in rows:
        created_at = normalize_datetime(created_at)
        revenue = Decimal(str(revenue or 0))
        cost = Decimal(str(cost or 0))
        for key, start in starts.items():
            if start is not None and (created_at is None or created_at < start):
                continue
            totals[key]["revenue"] += revenue
            totals[key]["cost"] += cost

    periods = {}
    for key in PROFIT_PERIODS:
        revenue = _cents(totals[key]["revenue"])
        cost = _cents(totals[key]["cost"])
        periods[key] = {
            "revenue": float(revenue),
            "cost": float(cost),
            "profit": float(revenue - cost),
        }
    return {"as_of": to_utc_z(now), "periods": periods}
