from pydantic import BaseModel, ConfigDict, Field, model_validator
from typing import Optional, List
from datetime import datetime

from ..enums import AdjustmentReason, CartStatus


class CartItemBase(BaseModel):
    """Base schema for cart items"""
    product_id: int = Field(gt=0)
    variant_id: int = Field(gt=0)


class CartItemCreate(CartItemBase):
    """Schema for adding an item to the cart"""
    quantity: int = Field(ge=1, default=1)


class CartItemQuantityUpdate(BaseModel):
    """Schema for overwriting the quantity of a line addressed by its id"""
    quantity: int = Field(ge=0)


class CartItemVariantUpdate(CartItemBase):
    """Schema for overwriting the quantity of a line addressed by product and variant"""
    quantity: int = Field(ge=0)


class SyncCartItem(CartItemBase):
    """One entry of a client-side cart snapshot; out-of-range quantities get clamped"""
    quantity: int


class CartSyncRequest(BaseModel):
    items: List[SyncCartItem] = Field(default_factory=list)


class ItemRef(BaseModel):
    """
    Addresses a cart line either by its id or by its (product_id, variant_id) pair.
    Exactly one of the two forms must be given.
    """
    item_id: Optional[int] = None
    product_id: Optional[int] = None
    variant_id: Optional[int] = None

    @model_validator(mode="after")
    def check_addressing(self):
        by_pair = self.product_id is not None or self.variant_id is not None
        if self.item_id is not None and by_pair:
            raise ValueError("Address a cart item by item_id or by product_id/variant_id, not both")
        if self.item_id is None and (self.product_id is None or self.variant_id is None):
            raise ValueError("Both product_id and variant_id are required")
        return self


class QuantityAdjustment(BaseModel):
    """Informational record of a quantity clamp or price repair made while serving a request"""
    product_id: int
    variant_id: int
    original_quantity: int
    adjusted_quantity: int
    reason: AdjustmentReason
    message: Optional[str] = None


class CartItemResponse(BaseModel):
    """Schema for cart item responses"""
    id: int
    cart_id: int
    product_id: int
    variant_id: int
    quantity: int
    price_with_tax: float
    tax_rate: float
    base_price: float
    tax_amount: float
    line_total: float

    model_config = ConfigDict(from_attributes=True)


class AppliedCoupon(BaseModel):
    coupon_id: int
    code: str
    discount_type: str
    discount_value: float
    discount_amount: float


class CartTotals(BaseModel):
    base_amount: float = 0.0
    tax_amount: float = 0.0
    subtotal: float = 0.0
    discount_amount: float = 0.0
    roundoff: float = 0.0
    final_total: float = 0.0
    item_count: int = 0
    total_quantity: int = 0


class CartResponse(BaseModel):
    """Schema for cart responses"""
    id: int
    user_id: int
    status: CartStatus
    expires_at: datetime
    coupon: Optional[AppliedCoupon] = None
    totals: CartTotals
    items: List[CartItemResponse] = []
    adjustments: List[QuantityAdjustment] = []
    message: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class CheckoutRequest(BaseModel):
    order_id: str = Field(min_length=1)


class CartHistoryEntry(BaseModel):
    """A checked out or expired cart with the totals it closed with"""
    id: int
    status: CartStatus
    created_at: datetime
    closed_at: datetime
    coupon_code: Optional[str] = None
    subtotal: float
    discount_amount: float
    final_total: float
    item_count: int
    total_quantity: int


class CartHistoryPagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int
    has_more: bool


class CartHistoryResponse(BaseModel):
    carts: List[CartHistoryEntry] = []
    pagination: CartHistoryPagination
