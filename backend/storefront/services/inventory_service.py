# Overview: Service-layer operations for inventory; encapsulates stock and reservation bookkeeping.

from __future__ import annotations

import logging

from sqlalchemy import case, func, update

from ..extensions import db
from ..models import Product, ProductVariant
from . import settings_service
from .concurrency import begin_write, lock_for_update, run_with_retry
"""
Inventory Ledger Invariants (authoritative)

Counters:
- products.stock is available units; products.reserved_stock is units held by
  sales recorded in reservation mode. Neither may go below zero: decrements are
  floored at 0 inside the UPDATE statement.
- All counter mutations are single-statement UPDATEs (stock = stock - n), never
  read-modify-write from Python, so concurrent orders for the same product
  cannot lose updates.
- When a product has variants, products.stock == SUM(product_variants.stock).
  Every variant stock change recomputes and rewrites the parent in the same
  transaction.

Policy:
- DEDUCT (auto_deduct_stock OFF): a sale decrements stock; reversing it
  increments stock by the units the sale actually removed. An oversold line
  only removes what was on hand, and apply_sale reports that figure so the
  caller can store it on the order item.
- RESERVE (auto_deduct_stock ON): a sale increments reserved_stock; reversing
  it decrements reserved_stock (floored at 0).
- The policy is resolved once per operation by the caller and passed in
  explicitly; apply_sale/reverse_sale never read the config row themselves.

Transactions:
- apply_sale/reverse_sale do not commit: they run inside the caller's order
  transaction so the order row and its inventory effects commit together.
"""

logger = logging.getLogger(__name__)

POLICY_DEDUCT = "DEDUCT"
POLICY_RESERVE = "RESERVE"
VALID_POLICIES = (POLICY_DEDUCT, POLICY_RESERVE)


class InventoryError(Exception):
    """Raised for inventory operation errors."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class InventoryNotFoundError(InventoryError):
    """Product or variant does not exist."""


def policy_from_flag(auto_deduct_stock: bool) -> str:
    return POLICY_RESERVE if auto_deduct_stock else POLICY_DEDUCT


def resolve_policy() -> str:
    """Read the store-wide flag once and map it to a policy."""
    return policy_from_flag(settings_service.read_auto_deduct_stock())


def _check_args(quantity: int, policy: str) -> None:
    if policy not in VALID_POLICIES:
        raise InventoryError(f"Unknown inventory policy: {policy}")
    if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
        raise InventoryError("quantity must be a positive integer", details={"quantity": quantity})


_products = Product.__table__


def _floored_subtract(column, quantity: int):
    return case((column >= quantity, column - quantity), else_=0)


def _execute_counter_update(product_id: int, **values) -> bool:
    result = db.session.execute(
        update(_products).where(_products.c.id == product_id).values(**values)
    )
    # The UPDATE bypasses the ORM; drop any stale copy of the counters.
    loaded = db.session.identity_map.get(db.session.identity_key(Product, product_id))
    if loaded is not None:
        db.session.expire(loaded, ["stock", "reserved_stock", "updated_at"])
    return result.rowcount > 0


def apply_sale(product_id: int, quantity: int, policy: str) -> int | None:
    """
    Record the inventory effect of selling `quantity` units.

    Returns the units applied: under DEDUCT that is min(stock, quantity),
    under RESERVE the full quantity. Returns None if the product does not
    exist (nothing is written).
    """
    _check_args(quantity, policy)

    if policy == POLICY_DEDUCT:
        current = lock_for_update(
            db.session.query(Product.stock).filter(Product.id == product_id)
        ).scalar()
        if current is None:
            return None
        if current < quantity:
            logger.warning(
                "Oversold product %s: stock %s, sold %s; stock floored at 0",
                product_id, current, quantity,
            )
        if not _execute_counter_update(
            product_id, stock=_floored_subtract(_products.c.stock, quantity)
        ):
            return None
        return min(current, quantity)

    if not _execute_counter_update(
        product_id, reserved_stock=_products.c.reserved_stock + quantity
    ):
        return None
    return quantity


def reverse_sale(product_id: int, quantity: int, policy: str) -> bool:
    """
    Undo the inventory effect of a sale under `policy`.

    Returns False if the product does not exist (nothing is written).
    """
    _check_args(quantity, policy)

    if policy == POLICY_DEDUCT:
        return _execute_counter_update(
            product_id, stock=_products.c.stock + quantity
        )

    return _execute_counter_update(
        product_id,
        reserved_stock=_floored_subtract(_products.c.reserved_stock, quantity),
    )


def release_reserved(product_id: int) -> int:
    """
    Zero reserved_stock for a product (administrative override).

    Not tied to any order: deleting an order afterwards will still try to
    decrement reserved_stock, which is floored at 0.

    Returns the number of units released.
    """
    def _op():
        begin_write()
        product = lock_for_update(db.session.query(Product).filter_by(id=product_id)).first()
        if product is None:
            raise InventoryNotFoundError("Product not found", details={"product_id": product_id})

        released = product.reserved_stock or 0
        _execute_counter_update(product_id, reserved_stock=0)
        db.session.commit()
        return released

    return run_with_retry(_op)


def recompute_product_stock(product_id: int) -> int:
    """Rewrite products.stock as the sum of its variants. Does not commit."""
    total = (
        db.session.query(func.coalesce(func.sum(ProductVariant.stock), 0))
        .filter(ProductVariant.product_id == product_id)
        .scalar()
    )
    total = int(total or 0)
    _execute_counter_update(product_id, stock=total)
    return total


def set_variant_stock(variant_id: int, stock) -> ProductVariant:
    """Set one variant's stock and resync the parent product's total."""
    if isinstance(stock, bool):
        raise InventoryError("Stock must be a non-negative number")
    try:
        parsed = int(str(stock).strip())
    except ValueError:
        raise InventoryError("Stock must be a non-negative number")
    if parsed < 0:
        raise InventoryError("Stock must be a non-negative number")

    def _op():
        begin_write()
        variant = lock_for_update(
            db.session.query(ProductVariant).filter_by(id=variant_id)
        ).first()
        if variant is None:
            raise InventoryNotFoundError("Variant not found", details={"variant_id": variant_id})

        variant.stock = parsed
        db.session.flush()
        recompute_product_stock(variant.product_id)

        db.session.commit()
        return variant

    return run_with_retry(_op)


def list_inventory() -> list[dict]:
    rows = (
        db.session.query(ProductVariant, Product)
        .join(Product, Product.id == ProductVariant.product_id)
        .order_by(Product.name.asc(), ProductVariant.color.asc(), ProductVariant.size.asc())
        .all()
    )
    inventory = []
    for variant, product in rows:
        entry = variant.to_dict()
        entry["product"] = {
            "id": product.id,
            "name": product.name,
            "price": float(product.price) if product.price is not None else None,
            "active": product.active,
            "stock": product.stock,
            "reserved_stock": product.reserved_stock,
        }
        inventory.append(entry)
    return inventory
