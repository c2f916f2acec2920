from __future__ import annotations

from ..extensions import db
from storefront.time_utils import to_utc_z


HOMEPAGE_CONFIG_ID = "main"


class HomepageConfig(db.Model):
    """
    Process-wide storefront configuration (singleton row, id="main").

    auto_deduct_stock selects the inventory policy applied when orders are
    created or deleted:
    - False: sales decrement products.stock immediately
    - True: sales only increment products.reserved_stock
    """
    __tablename__ = "homepage_config"

    id = db.Column(db.String(32), primary_key=True, default=HOMEPAGE_CONFIG_ID)

    auto_deduct_stock = db.Column(db.Boolean, nullable=False, default=False, server_default=db.false())
    shipping_emails_enabled = db.Column(db.Boolean, nullable=False, default=True, server_default=db.true())
    purchasing_enabled = db.Column(db.Boolean, nullable=False, default=True, server_default=db.true())

    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self):
        return {
            "id": self.id,
            "auto_deduct_stock": self.auto_deduct_stock,
            "shipping_emails_enabled": self.shipping_emails_enabled,
            "purchasing_enabled": self.purchasing_enabled,
            "updated_at": to_utc_z(self.updated_at),
        }
