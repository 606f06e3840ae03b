from .cart import (
    AppliedCoupon,
    CartItemCreate,
    CartItemQuantityUpdate,
    CartItemResponse,
    CartItemVariantUpdate,
    CartHistoryEntry,
    CartHistoryPagination,
    CartHistoryResponse,
    CartResponse,
    CartSyncRequest,
    CartTotals,
    CheckoutRequest,
    ItemRef,
    QuantityAdjustment,
    SyncCartItem,
)
from .coupon import (
    CouponResponse,
    CouponValidationResponse,
)
from .variant import VariantInfo


__all__ = [
    # cart schemas
    "AppliedCoupon",
    "CartItemCreate",
    "CartItemQuantityUpdate",
    "CartItemResponse",
    "CartItemVariantUpdate",
    "CartHistoryEntry",
    "CartHistoryPagination",
    "CartHistoryResponse",
    "CartResponse",
    "CartSyncRequest",
    "CartTotals",
    "CheckoutRequest",
    "ItemRef",
    "QuantityAdjustment",
    "SyncCartItem",

    # coupon schemas
    "CouponResponse",
    "CouponValidationResponse",

    # catalog schemas
    "VariantInfo",
]
