from .catalog import DiscountGroup, Product
from .customers import User, PointsEntry
from .coupons import Coupon, CouponRedemption
from .orders import Order, OrderItem, AppliedCoupon

__all__ = [
    'DiscountGroup', 'Product',
    'User', 'PointsEntry',
    'Coupon', 'CouponRedemption',
    'Order', 'OrderItem', 'AppliedCoupon',
]
