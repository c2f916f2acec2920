from .catalog import Product, ProductVariant
from .promotions import PromoCode
from .orders import Order, OrderItem, OrderAppliedPromoCode
from .settings import HomepageConfig

__all__ = [
    'Product', 'ProductVariant',
    'PromoCode',
    'Order', 'OrderItem', 'OrderAppliedPromoCode',
    'HomepageConfig',
]
