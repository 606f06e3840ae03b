from .auth_service import AuthService
from .cart_service import CartService, CartLocks
from .cart_store import CartStore
from .coupon_service import CouponService
from .variant_lookup import DatabaseVariantLookup, HttpVariantLookup, VariantPriceLookup
