from __future__ import annotations

import json

from ..extensions import db
from storefront.time_utils import to_utc_z


def money(value):
    """Serialize a Numeric column for JSON (None stays None)."""
    return float(value) if value is not None else None


class Product(db.Model):
    """
    Catalog product.

    STOCK SEMANTICS:
    - stock: units available to sell. When the product has variants this is a
      denormalized SUM(product_variants.stock), rewritten on every variant change.
    - reserved_stock: units held by sales recorded while the store runs in
      reservation mode; they are not subtracted from stock until an admin acts.

    Both counters are only ever mutated with single-statement UPDATEs
    (see inventory_service) so concurrent orders cannot lose updates.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.CheckConstraint("reserved_stock >= 0", name="ck_products_reserved_stock_non_negative"),
        db.Index("ix_products_active_name", "active", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)

    # Canonical currency amounts
    price = db.Column(db.Numeric(10, 2), nullable=False)
    compare_at_price = db.Column(db.Numeric(10, 2), nullable=True)
    cost_price = db.Column(db.Numeric(10, 2), nullable=True)

    stock = db.Column(db.Integer, nullable=False, default=0, server_default="0")
    reserved_stock = db.Column(db.Integer, nullable=False, default=0, server_default="0")

    # JSON array of image URLs, opaque to the backend
    images = db.Column(db.Text, nullable=True)

    active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    variants = db.relationship(
        "ProductVariant",
        back_populates="product",
        cascade="all, delete-orphan",
        lazy=True,
    )

    def primary_image(self) -> str | None:
        """First entry of the images JSON array, if any."""
        if not self.images:
            return None
        try:
            parsed = json.loads(self.images)
        except ValueError:
            return None
        if isinstance(parsed, list) and parsed and isinstance(parsed[0], str):
            return parsed[0]
        return None

    def __repr__(self) -> str:
        return f"<Product id={self.id} name={self.name!r} stock={self.stock} reserved={self.reserved_stock}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "price": money(self.price),
            "compare_at_price": money(self.compare_at_price),
            "cost_price": money(self.cost_price),
            "stock": self.stock,
            "reserved_stock": self.reserved_stock,
            "active": self.active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class ProductVariant(db.Model):
    """(size, color) stock bucket under a product."""
    __tablename__ = "product_variants"
    __table_args__ = (
        db.UniqueConstraint("product_id", "size", "color", name="uq_product_variants_size_color"),
        db.CheckConstraint("stock >= 0", name="ck_product_variants_stock_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(
        db.Integer,
        db.ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    size = db.Column(db.String(32), nullable=True)
    color = db.Column(db.String(64), nullable=True)
    stock = db.Column(db.Integer, nullable=False, default=0, server_default="0")

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    product = db.relationship("Product", back_populates="variants")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "size": self.size,
            "color": self.color,
            "stock": self.stock,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
