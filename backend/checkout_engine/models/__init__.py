from .catalog import Product, StockVariant
from .stock import StockMovement
from .coupons import Coupon, CouponRedemption
from .orders import Checkout, Order, OrderItem
from .audit import AuditEvent

__all__ = [
    'Product', 'StockVariant',
    'StockMovement',
    'Coupon', 'CouponRedemption',
    'Checkout', 'Order', 'OrderItem',
    'AuditEvent',
]
