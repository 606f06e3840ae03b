from fastapi import APIRouter, Depends, Query
from typing import List, Optional

from ..core.dependencies import get_cart_service, get_current_user_id
from ..schemas.cart import (
    CartItemCreate,
    CartItemQuantityUpdate,
    CartItemVariantUpdate,
    CartHistoryResponse,
    CartResponse,
    CartSyncRequest,
    CheckoutRequest,
    ItemRef,
)
from ..schemas.coupon import CouponResponse, CouponValidationResponse
from ..services.cart_service import CartService

router = APIRouter()


@router.get("/", response_model=CartResponse)
async def get_cart(
    user_id: int = Depends(get_current_user_id),
    cart_service: CartService = Depends(get_cart_service)
):
    """Get current user's cart with totals"""
    return await cart_service.get_cart(user_id)

@router.get("/history", response_model=CartHistoryResponse)
async def get_cart_history(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user_id: int = Depends(get_current_user_id),
    cart_service: CartService = Depends(get_cart_service)
):
    """List the user's checked out and expired carts"""
    return await cart_service.get_cart_history(user_id, page, limit)

@router.post("/items", response_model=CartResponse)
async def add_item_to_cart(
    item: CartItemCreate,
    user_id: int = Depends(get_current_user_id),
    cart_service: CartService = Depends(get_cart_service)
):
    """Add a product variant to the cart"""
    return await cart_service.add_item(user_id, item.product_id, item.variant_id, item.quantity)

@router.put("/items/{item_id}", response_model=CartResponse)
async def update_cart_item_quantity(
    item_id: int,
    update: CartItemQuantityUpdate,
    user_id: int = Depends(get_current_user_id),
    cart_service: CartService = Depends(get_cart_service)
):
    """Update quantity of a cart item, 0 removes it"""
    return await cart_service.update_item(user_id, ItemRef(item_id=item_id), update.quantity)

@router.put("/items", response_model=CartResponse)
async def update_cart_item_by_variant(
    update: CartItemVariantUpdate,
    user_id: int = Depends(get_current_user_id),
    cart_service: CartService = Depends(get_cart_service)
):
    """Update quantity of the cart item holding a product variant"""
    ref = ItemRef(product_id=update.product_id, variant_id=update.variant_id)
    return await cart_service.update_item(user_id, ref, update.quantity)

@router.delete("/items/{item_id}", response_model=CartResponse)
async def remove_cart_item(
    item_id: int,
    quantity: Optional[int] = Query(None, gt=0),
    user_id: int = Depends(get_current_user_id),
    cart_service: CartService = Depends(get_cart_service)
):
    """Remove an item from the cart, or only part of its quantity"""
    return await cart_service.remove_item(user_id, ItemRef(item_id=item_id), quantity)

@router.delete("/items", response_model=CartResponse)
async def remove_cart_item_by_variant(
    product_id: int = Query(..., gt=0),
    variant_id: int = Query(..., gt=0),
    quantity: Optional[int] = Query(None, gt=0),
    user_id: int = Depends(get_current_user_id),
    cart_service: CartService = Depends(get_cart_service)
):
    """Remove the cart item holding a product variant"""
    ref = ItemRef(product_id=product_id, variant_id=variant_id)
    return await cart_service.remove_item(user_id, ref, quantity)

@router.post("/sync", response_model=CartResponse)
async def sync_cart(
    payload: CartSyncRequest,
    user_id: int = Depends(get_current_user_id),
    cart_service: CartService = Depends(get_cart_service)
):
    """Merge a client-side cart into the stored cart"""
    return await cart_service.sync_items(user_id, payload.items)

@router.post("/apply-coupon/{coupon_code}", response_model=CartResponse)
async def apply_coupon(
    coupon_code: str,
    user_id: int = Depends(get_current_user_id),
    cart_service: CartService = Depends(get_cart_service)
):
    """Apply a coupon to the cart"""
    return await cart_service.apply_coupon(user_id, coupon_code)

@router.delete("/coupon", response_model=CartResponse)
async def remove_coupon(
    user_id: int = Depends(get_current_user_id),
    cart_service: CartService = Depends(get_cart_service)
):
    """Remove the coupon from the cart"""
    return await cart_service.remove_coupon(user_id)

@router.get("/coupons", response_model=List[CouponResponse])
async def list_available_coupons(
    user_id: int = Depends(get_current_user_id),
    cart_service: CartService = Depends(get_cart_service)
):
    """List coupons the current user can still use"""
    return await cart_service.list_available_coupons(user_id)

@router.post("/coupons/validate/{coupon_code}", response_model=CouponValidationResponse)
async def validate_coupon(
    coupon_code: str,
    user_id: int = Depends(get_current_user_id),
    cart_service: CartService = Depends(get_cart_service)
):
    """Check a coupon against the cart without applying it"""
    return await cart_service.validate_coupon(user_id, coupon_code)

@router.delete("/", response_model=CartResponse)
async def clear_cart(
    user_id: int = Depends(get_current_user_id),
    cart_service: CartService = Depends(get_cart_service)
):
    """Remove every item and the coupon from the cart"""
    return await cart_service.clear_cart(user_id)

@router.post("/checkout", response_model=CartResponse)
async def checkout_cart(
    payload: CheckoutRequest,
    user_id: int = Depends(get_current_user_id),
    cart_service: CartService = Depends(get_cart_service)
):
    """Close the cart once its order has been placed"""
    return await cart_service.checkout(user_id, payload.order_id)
