import asyncio
import logging
import math
import weakref
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import Config
from ..enums import AdjustmentReason
from ..exceptions import BadRequestException, NotFoundException
from ..models import Cart, CartItem
from ..schemas.cart import ItemRef, QuantityAdjustment, SyncCartItem
from ..schemas.variant import VariantInfo
from .cart_store import CartStore
from .coupon_service import CouponService
from .totals import to_decimal
from .variant_lookup import VariantPriceLookup


logger = logging.getLogger(__name__)


class CartLocks:
    """
    One asyncio.Lock per user so that two requests on the same cart never
    interleave inside a worker. Locks are dropped once nobody holds a
    reference, and the registry starts over when the event loop changes.
    """

    def __init__(self):
        self._locks = weakref.WeakValueDictionary()
        self._loop = None

    def get(self, user_id: int) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        if loop is not self._loop:
            self._locks = weakref.WeakValueDictionary()
            self._loop = loop

        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock


cart_locks = CartLocks()


def clamp_quantity(variant: VariantInfo, quantity: int) -> Tuple[int, Optional[QuantityAdjustment]]:
    """Fit a quantity into the variant's [min_quantity, max_quantity] bounds."""
    minimum = variant.min_quantity or 1
    maximum = variant.max_quantity

    if quantity < minimum:
        return minimum, QuantityAdjustment(
            product_id=variant.product_id,
            variant_id=variant.variant_id,
            original_quantity=quantity,
            adjusted_quantity=minimum,
            reason=AdjustmentReason.BELOW_MINIMUM,
            message=f"Quantity raised to the minimum of {minimum}",
        )

    if maximum is not None and quantity > maximum:
        return maximum, QuantityAdjustment(
            product_id=variant.product_id,
            variant_id=variant.variant_id,
            original_quantity=quantity,
            adjusted_quantity=maximum,
            reason=AdjustmentReason.ABOVE_MAXIMUM,
            message=f"Quantity lowered to the maximum of {maximum}",
        )

    return quantity, None


def effective_tax_rate(variant: VariantInfo) -> Decimal:
    if variant.tax_rate is not None and variant.tax_rate > 0:
        return variant.tax_rate
    return to_decimal(Config.DEFAULT_TAX_RATE)


class CartService:
    """
    Customer-facing cart operations.

    Each operation holds the user's lock, runs in one transaction and returns
    the whole cart with freshly derived totals.
    """

    def __init__(self, db: AsyncSession, variant_lookup: VariantPriceLookup, locks: CartLocks = cart_locks):
        self.db = db
        self.variant_lookup = variant_lookup
        self.locks = locks
        self.store = CartStore(db, variant_lookup)
        self.coupons = CouponService(db, self.store)


    @asynccontextmanager
    async def _transaction(self, user_id: int):
        async with self.locks.get(user_id):
            try:
                yield
                await self.db.commit()
            except SQLAlchemyError as e:
                logger.error(f"Rolling back cart transaction for user {user_id}: {e}")
                await self.db.rollback()
                raise
            except Exception:
                await self.db.rollback()
                raise
            finally:
                self.store.repairs.clear()


    async def get_cart(self, user_id: int) -> Dict[str, Any]:
        """Get the user's active cart, creating it when there is none."""
        async with self._transaction(user_id):
            cart = await self.store.get_or_create_active_cart(user_id)
            response = await self._cart_response(cart)
        return response


    async def add_item(self, user_id: int, product_id: int, variant_id: int, quantity: int) -> Dict[str, Any]:
        """
        Add a variant to the cart, merging with an existing line for the same
        variant. The merged quantity is clamped to the variant's bounds.
        """
        if quantity is None or quantity <= 0:
            raise BadRequestException("Quantity must be greater than 0")

        variant = await self._get_variant(product_id, variant_id)
        price = variant.effective_price
        if price <= 0:
            raise BadRequestException("Product price not found or invalid")

        async with self._transaction(user_id):
            cart = await self.store.get_or_create_active_cart(user_id)
            item = await self.store.upsert_line_item(
                cart, product_id, variant_id, quantity, price, effective_tax_rate(variant)
            )

            adjustments = []
            clamped, adjustment = clamp_quantity(variant, item.quantity)
            if adjustment:
                logger.warning(f"Clamped cart item {item.id} from {item.quantity} to {clamped}")
                await self.store.set_line_item_quantity(cart, item.id, clamped)
                adjustments.append(adjustment)

            logger.info(f"User {user_id} added {quantity} x product {product_id} variant {variant_id}")
            response = await self._cart_response(cart, adjustments, "Item added to cart")
        return response


    async def update_item(self, user_id: int, ref: ItemRef, quantity: int) -> Dict[str, Any]:
        """Overwrite a line's quantity; zero removes the line."""
        if quantity is None or quantity < 0:
            raise BadRequestException("Quantity cannot be negative")

        async with self._transaction(user_id):
            cart = await self._require_cart(user_id)
            item = await self._resolve_item(cart, ref)

            adjustments = []
            if quantity == 0:
                await self.store.remove_line_item(cart, item.id)
                message = "Item removed from cart"
            else:
                variant = await self._get_variant(item.product_id, item.variant_id)
                clamped, adjustment = clamp_quantity(variant, quantity)
                if adjustment:
                    adjustments.append(adjustment)
                await self.store.set_line_item_quantity(cart, item.id, clamped)
                message = "Cart item updated"

            logger.info(f"User {user_id} set cart item {item.id} to quantity {quantity}")
            response = await self._cart_response(cart, adjustments, message)
        return response


    async def remove_item(self, user_id: int, ref: ItemRef, quantity: Optional[int] = None) -> Dict[str, Any]:
        """Remove a line, or only ``quantity`` units of it when that is less than what the cart holds."""
        if quantity is not None and quantity <= 0:
            raise BadRequestException("Quantity to remove must be greater than 0")

        async with self._transaction(user_id):
            cart = await self._require_cart(user_id)
            item = await self._resolve_item(cart, ref)

            adjustments = []
            if quantity is None or quantity >= item.quantity:
                await self.store.remove_line_item(cart, item.id)
                message = "Item removed from cart"
            else:
                remaining = item.quantity - quantity
                variant = await self.variant_lookup.get_variant(item.product_id, item.variant_id)
                adjustment = None
                if variant:
                    remaining, adjustment = clamp_quantity(variant, remaining)

                if adjustment and adjustment.reason == AdjustmentReason.BELOW_MINIMUM:
                    # what is left would be below the minimum, so the line goes
                    await self.store.remove_line_item(cart, item.id)
                    adjustments.append(adjustment.model_copy(update={
                        "adjusted_quantity": 0,
                        "message": f"Remaining quantity is below the minimum of {variant.min_quantity}, item removed",
                    }))
                    message = "Item removed from cart"
                else:
                    if adjustment:
                        adjustments.append(adjustment)
                    await self.store.set_line_item_quantity(cart, item.id, remaining)
                    message = f"Removed {quantity} from cart item"

            logger.info(f"User {user_id} removed cart item {item.id} (quantity={quantity})")
            response = await self._cart_response(cart, adjustments, message)
        return response


    async def sync_items(self, user_id: int, items: Sequence[SyncCartItem]) -> Dict[str, Any]:
        """
        Merge a client-side cart into the stored one.

        Every submitted line ends up holding exactly its (clamped) quantity at
        the current price. Lines the client did not send are left alone.
        """
        resolved = []
        for entry in items:
            variant = await self.variant_lookup.get_variant(entry.product_id, entry.variant_id)
            resolved.append((entry, variant))

        async with self._transaction(user_id):
            cart = await self.store.get_or_create_active_cart(user_id)

            adjustments = []
            synced = 0
            for entry, variant in resolved:
                if variant is None or variant.effective_price <= 0:
                    logger.warning(
                        f"Skipping unavailable product {entry.product_id} variant {entry.variant_id} during sync"
                    )
                    adjustments.append(
                        QuantityAdjustment(
                            product_id=entry.product_id,
                            variant_id=entry.variant_id,
                            original_quantity=entry.quantity,
                            adjusted_quantity=0,
                            reason=AdjustmentReason.UNAVAILABLE,
                            message="This item is no longer available",
                        )
                    )
                    continue

                quantity, adjustment = clamp_quantity(variant, entry.quantity)
                if adjustment:
                    logger.warning(
                        f"Clamped synced product {entry.product_id} variant {entry.variant_id} "
                        f"from {entry.quantity} to {quantity}"
                    )
                    adjustments.append(adjustment)

                await self.store.put_line_item(
                    cart, entry.product_id, entry.variant_id, quantity,
                    variant.effective_price, effective_tax_rate(variant),
                )
                synced += 1

            logger.info(f"Synced {synced} items into cart {cart.id} for user {user_id}")
            response = await self._cart_response(cart, adjustments, f"Synced {synced} items")
        return response


    async def apply_coupon(self, user_id: int, coupon_code: str) -> Dict[str, Any]:
        async with self._transaction(user_id):
            cart = await self._require_cart(user_id)
            quote = await self.coupons.apply_to_cart(cart, coupon_code, user_id)
            response = await self._cart_response(cart, message=quote.message)
        return response


    async def remove_coupon(self, user_id: int) -> Dict[str, Any]:
        async with self._transaction(user_id):
            cart = await self._require_cart(user_id)
            await self.coupons.remove_from_cart(cart)
            response = await self._cart_response(cart, message="Coupon removed")
        return response


    async def validate_coupon(self, user_id: int, coupon_code: str) -> Dict[str, Any]:
        """Dry run of apply_coupon; the coupon on the cart is left as it is."""
        async with self._transaction(user_id):
            cart = await self.store.get_or_create_active_cart(user_id)
            try:
                quote = await self.coupons.validate(cart, coupon_code, user_id)
            except (BadRequestException, NotFoundException) as e:
                return {
                    "valid": False,
                    "code": coupon_code,
                    "discount_type": None,
                    "discount_amount": 0,
                    "message": e.detail,
                }

        return {
            "valid": True,
            "code": quote.coupon.code,
            "discount_type": quote.coupon.discount_type,
            "discount_amount": quote.discount_amount,
            "message": f"Coupon is valid. You would save {quote.discount_amount:.2f}",
        }


    async def list_available_coupons(self, user_id: int) -> List[Dict[str, Any]]:
        async with self._transaction(user_id):
            coupons = await self.coupons.list_available(user_id)
        return coupons


    async def clear_cart(self, user_id: int) -> Dict[str, Any]:
        async with self._transaction(user_id):
            cart = await self.store.get_or_create_active_cart(user_id)
            await self.store.clear_items(cart)
            logger.info(f"Cleared cart {cart.id} for user {user_id}")
            response = await self._cart_response(cart, message="Cart cleared")
        return response


    async def checkout(self, user_id: int, order_id: str) -> Dict[str, Any]:
        """
        Close the active cart for an order that has been placed, recording the
        coupon use against the order. The cart can not be changed afterwards.
        """
        if not order_id or not order_id.strip():
            raise BadRequestException("Order id is required")

        async with self._transaction(user_id):
            cart = await self._require_cart(user_id)
            totals = await self.store.refresh_totals(cart)
            if totals.item_count == 0:
                raise BadRequestException("Cannot check out an empty cart")

            await self.coupons.record_usage(cart, order_id.strip(), totals.discount_amount)
            await self.store.mark_checked_out(cart)

            logger.info(f"Cart {cart.id} checked out as order {order_id} for user {user_id}")
            response = await self._cart_response(cart, message="Cart checked out")
        return response


    async def get_cart_history(self, user_id: int, page: int = 1, limit: int = 10) -> Dict[str, Any]:
        """Paginated list of the user's checked out and expired carts with their final totals."""
        if page < 1:
            raise BadRequestException("Page must be 1 or greater")
        if limit < 1 or limit > 100:
            raise BadRequestException("Limit must be between 1 and 100")

        async with self._transaction(user_id):
            rows, total = await self.store.list_closed_carts(user_id, (page - 1) * limit, limit)

        carts = []
        for cart, item_count, total_quantity in rows:
            subtotal = to_decimal(cart.subtotal)
            carts.append({
                "id": cart.id,
                "status": cart.status,
                "created_at": cart.created_at,
                "closed_at": cart.updated_at,
                "coupon_code": cart.coupon_code,
                "subtotal": subtotal,
                "discount_amount": min(to_decimal(cart.discount_amount), subtotal),
                "final_total": to_decimal(cart.final_total),
                "item_count": item_count,
                "total_quantity": total_quantity,
            })

        return {
            "carts": carts,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "total_pages": math.ceil(total / limit),
                "has_more": page * limit < total,
            },
        }


    async def _get_variant(self, product_id: int, variant_id: int) -> VariantInfo:
        variant = await self.variant_lookup.get_variant(product_id, variant_id)
        if not variant:
            raise NotFoundException(f"Product {product_id} variant {variant_id} not found")
        return variant


    async def _require_cart(self, user_id: int) -> Cart:
        cart = await self.store.get_active_cart(user_id, lock=True)
        if not cart:
            # keep an expiry transition made by the lookup before failing
            await self.db.commit()
            raise NotFoundException("Cart not found")
        return cart


    async def _resolve_item(self, cart: Cart, ref: ItemRef) -> CartItem:
        if ref.item_id is not None:
            return await self.store.get_line_item(cart.id, ref.item_id)
        return await self.store.get_line_item_by_product_variant(cart.id, ref.product_id, ref.variant_id)


    async def _cart_response(
        self,
        cart: Cart,
        adjustments: Optional[List[QuantityAdjustment]] = None,
        message: Optional[str] = None,
    ) -> Dict[str, Any]:
        # totals are rederived on every read, which also repairs broken prices
        totals = await self.store.refresh_totals(cart)
        items = await self.store.list_line_items(cart.id)

        coupon = None
        if cart.coupon_id:
            coupon = {
                "coupon_id": cart.coupon_id,
                "code": cart.coupon_code,
                "discount_type": cart.discount_type,
                "discount_value": cart.discount_value,
                "discount_amount": cart.discount_amount,
            }

        return {
            "id": cart.id,
            "user_id": cart.user_id,
            "status": cart.status,
            "expires_at": cart.expires_at,
            "coupon": coupon,
            "totals": totals.as_dict(),
            "items": [
                {
                    "id": item.id,
                    "cart_id": item.cart_id,
                    "product_id": item.product_id,
                    "variant_id": item.variant_id,
                    "quantity": item.quantity,
                    "price_with_tax": item.price_with_tax,
                    "tax_rate": item.tax_rate,
                    "base_price": item.base_price,
                    "tax_amount": item.tax_amount,
                    "line_total": item.line_total,
                }
                for item in items
            ],
            "adjustments": self.store.drain_repairs() + list(adjustments or []),
            "message": message,
        }
