from __future__ import annotations

import json

from ..extensions import db
from storefront.time_utils import to_utc_z
from .catalog import money


ORDER_STATUS_PENDING = "PENDING"
ORDER_STATUS_PROCESSING = "PROCESSING"
ORDER_STATUS_SHIPPED = "SHIPPED"
ORDER_STATUS_DELIVERED = "DELIVERED"
ORDER_STATUS_CANCELLED = "CANCELLED"

ORDER_STATUSES = (
    ORDER_STATUS_PENDING,
    ORDER_STATUS_PROCESSING,
    ORDER_STATUS_SHIPPED,
    ORDER_STATUS_DELIVERED,
    ORDER_STATUS_CANCELLED,
)


class Order(db.Model):
    """
    Snapshot of a storefront transaction.

    IDEMPOTENCY: stripe_payment_id is the external payment identifier and is
    UNIQUE. Materializing the same payment twice (redirect confirmation racing
    the webhook) collapses onto one row; the loser of the race gets an
    IntegrityError and re-reads the winner's order.

    inventory_policy records which inventory policy (DEDUCT/RESERVE) was applied
    when the order was created.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.UniqueConstraint("stripe_payment_id", name="uq_orders_stripe_payment_id"),
        db.Index("ix_orders_status_created", "status", "created_at"),
        db.Index("ix_orders_in_person_created", "is_in_person", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    email = db.Column(db.String(255), nullable=True, index=True)
    name = db.Column(db.String(255), nullable=False)

    # JSON object; parsed only at the checkout boundary
    address = db.Column(db.Text, nullable=True)

    subtotal = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    shipping = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    tax = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    discount = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    total = db.Column(db.Numeric(10, 2), nullable=False, default=0)

    status = db.Column(db.String(16), nullable=False, default=ORDER_STATUS_PENDING)

    # Primary promo code (the first applied one); the full set lives in applied_promos
    promo_code_id = db.Column(
        db.Integer,
        db.ForeignKey("promo_codes.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    promo_code_code = db.Column(db.String(64), nullable=True)

    stripe_payment_id = db.Column(db.String(255), nullable=True)

    is_in_person = db.Column(db.Boolean, nullable=False, default=False)
    inventory_policy = db.Column(db.String(16), nullable=True)

    tracking_number = db.Column(db.String(128), nullable=True)
    shipped_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    version_id = db.Column(db.Integer, nullable=False, default=1)

    items = db.relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.id",
        lazy=True,
    )
    applied_promos = db.relationship(
        "OrderAppliedPromoCode",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderAppliedPromoCode.id",
        lazy=True,
    )
    promo_code = db.relationship("PromoCode")
    __mapper_args__ = {"version_id_col": version_id}

    def address_dict(self) -> dict:
        if not self.address:
            return {}
        try:
            parsed = json.loads(self.address)
        except ValueError:
            return {}
        return parsed if isinstance(parsed, dict) else {}

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "address": self.address_dict(),
            "subtotal": money(self.subtotal),
            "shipping": money(self.shipping),
            "tax": money(self.tax),
            "discount": money(self.discount),
            "total": money(self.total),
            "status": self.status,
            "promo_code_id": self.promo_code_id,
            "promo_code_code": self.promo_code_code,
            "stripe_payment_id": self.stripe_payment_id,
            "is_in_person": self.is_in_person,
            "inventory_policy": self.inventory_policy,
            "tracking_number": self.tracking_number,
            "shipped_at": to_utc_z(self.shipped_at),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
            data["applied_promos"] = [promo.to_dict() for promo in self.applied_promos]
        return data


class OrderItem(db.Model):
    """
    Immutable line snapshot. product_id is nulled if the product is later
    deleted; product_name and price_at_purchase keep the sale readable.
    """
    __tablename__ = "order_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(
        db.Integer,
        db.ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    product_id = db.Column(
        db.Integer,
        db.ForeignKey("products.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    product_name = db.Column(db.String(255), nullable=False)
    product_image = db.Column(db.String(512), nullable=True)
    quantity = db.Column(db.Integer, nullable=False)
    size = db.Column(db.String(32), nullable=True)
    color = db.Column(db.String(64), nullable=True)
    price_at_purchase = db.Column(db.Numeric(10, 2), nullable=False)
    # Units removed from products.stock when sold under DEDUCT; oversold lines
    # remove less than quantity. NULL when the sale did not touch stock.
    stock_deducted = db.Column(db.Integer, nullable=True)

    order = db.relationship("Order", back_populates="items")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "product_image": self.product_image,
            "quantity": self.quantity,
            "size": self.size,
            "color": self.color,
            "price_at_purchase": money(self.price_at_purchase),
            "stock_deducted": self.stock_deducted,
        }


class OrderAppliedPromoCode(db.Model):
    """One row per promo code stacked on an order."""
    __tablename__ = "order_applied_promo_codes"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(
        db.Integer,
        db.ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    promo_code_id = db.Column(
        db.Integer,
        db.ForeignKey("promo_codes.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    code = db.Column(db.String(64), nullable=False)
    discount_type = db.Column(db.String(16), nullable=False)
    amount = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    discount_applied = db.Column(db.Numeric(10, 2), nullable=False, default=0)

    order = db.relationship("Order", back_populates="applied_promos")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "promo_code_id": self.promo_code_id,
            "code": self.code,
            "discount_type": self.discount_type,
            "amount": money(self.amount),
            "discount_applied": money(self.discount_applied),
        }
