from .cart import Cart
from .cart_item import CartItem
from .coupon import Coupon, CouponUsage
from .product_variant import ProductVariant


__all__ = [
    "Cart",
    "CartItem",
    "Coupon",
    "CouponUsage",
    "ProductVariant",
]
