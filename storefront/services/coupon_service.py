import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, func, or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from ..enums import DiscountType
from ..exceptions import BadRequestException, NotFoundException
from ..models import Cart, Coupon, CouponUsage
from ..models.base import utcnow
from .cart_store import CartStore
from .totals import ZERO, HUNDRED, round_money, to_decimal


logger = logging.getLogger(__name__)

DATE_FORMAT = "%d %b %Y, %I:%M %p"


@dataclass(frozen=True)
class CouponQuote:
    coupon: Coupon
    discount_amount: Decimal
    message: str


def calculate_discount(coupon: Coupon, subtotal: Decimal) -> Decimal:
    """
    Discount a coupon grants on the given subtotal.

    Percentage coupons are capped at ``maximum_discount_amount``, fixed
    amounts at the subtotal. Free shipping carries no line discount since the
    cart has no shipping charge of its own.
    """
    subtotal = to_decimal(subtotal)
    value = to_decimal(coupon.discount_value)

    if coupon.discount_type == DiscountType.PERCENTAGE.value:
        discount = subtotal * value / HUNDRED
        if coupon.maximum_discount_amount is not None and discount > to_decimal(coupon.maximum_discount_amount):
            discount = to_decimal(coupon.maximum_discount_amount)
    elif coupon.discount_type == DiscountType.FIXED_AMOUNT.value:
        discount = min(value, subtotal)
    elif coupon.discount_type == DiscountType.FREE_SHIPPING.value:
        discount = ZERO
    else:
        raise BadRequestException(f"Unsupported discount type: {coupon.discount_type}")

    return round_money(discount)


class CouponService:
    """
    Validates coupons against a cart and writes the resulting discount onto it.
    """

    def __init__(self, db: AsyncSession, store: CartStore):
        self.db = db
        self.store = store
        self.store.coupon_rules = self


    async def get_coupon_by_code(self, code: str) -> Optional[Coupon]:
        query = select(Coupon).where(
            and_(
                Coupon.code == code.strip(),
                Coupon.deleted_at.is_(None),
            )
        )
        result = await self.db.execute(query)
        return result.scalars().first()


    async def usage_count(self, coupon_id: int) -> int:
        query = select(func.count(CouponUsage.id)).where(CouponUsage.coupon_id == coupon_id)
        result = await self.db.execute(query)
        return result.scalar() or 0


    async def user_usage_count(self, coupon_id: int, user_id: int) -> int:
        query = select(func.count(CouponUsage.id)).where(
            and_(
                CouponUsage.coupon_id == coupon_id,
                CouponUsage.user_id == user_id,
            )
        )
        result = await self.db.execute(query)
        return result.scalar() or 0


    async def validate(self, cart: Cart, code: Optional[str], user_id: int) -> CouponQuote:
        """
        Run the coupon checks in order and quote the discount for the cart's
        current subtotal. The first failing check raises.

        Raises:
            BadRequestException: If the code is blank, the cart is empty or a rule fails.
            NotFoundException: If no live coupon carries the code.
        """
        if not code or not code.strip():
            raise BadRequestException("Coupon code is required")

        totals = await self.store.refresh_totals(cart)
        if totals.item_count == 0:
            raise BadRequestException("Cannot apply coupon to an empty cart")

        coupon = await self.get_coupon_by_code(code)
        if not coupon:
            logger.warning(f"Rejected coupon {code!r} for user {user_id}: unknown code")
            raise NotFoundException("Invalid coupon code")

        try:
            await self._check_rules(coupon, totals.subtotal, user_id)
        except BadRequestException as e:
            logger.warning(f"Rejected coupon {coupon.code} for user {user_id}: {e.detail}")
            raise

        discount = calculate_discount(coupon, totals.subtotal)
        return CouponQuote(
            coupon=coupon,
            discount_amount=discount,
            message=f"Coupon applied successfully! You saved {discount:.2f}",
        )


    async def _check_rules(self, coupon: Coupon, subtotal: Decimal, user_id: int) -> None:
        now = utcnow()

        if not coupon.is_active:
            raise BadRequestException("This coupon is not active")

        if coupon.start_date and coupon.start_date > now:
            raise BadRequestException(
                f"This coupon is not yet valid. It will be active from {coupon.start_date.strftime(DATE_FORMAT)}"
            )

        if coupon.end_date and coupon.end_date < now:
            raise BadRequestException(f"This coupon expired on {coupon.end_date.strftime(DATE_FORMAT)}")

        if coupon.minimum_order_value is not None and subtotal < to_decimal(coupon.minimum_order_value):
            raise BadRequestException(
                f"Minimum purchase amount of {to_decimal(coupon.minimum_order_value):.2f} required. "
                f"Your cart total is {subtotal:.2f}"
            )

        if coupon.usage_limit is not None:
            if await self.usage_count(coupon.id) >= coupon.usage_limit:
                raise BadRequestException("This coupon has reached its usage limit and is no longer available")

        if coupon.per_user_limit is not None:
            if await self.user_usage_count(coupon.id, user_id) >= coupon.per_user_limit:
                raise BadRequestException(
                    f"You have already used this coupon the maximum number of times ({coupon.per_user_limit})"
                )


    async def requote(self, cart: Cart, subtotal: Decimal) -> Decimal:
        """
        Discount the cart's coupon earns on ``subtotal``, or zero when the
        coupon no longer passes its rules. The coupon stays on the cart.
        """
        query = select(Coupon).where(
            and_(
                Coupon.id == cart.coupon_id,
                Coupon.deleted_at.is_(None),
            )
        )
        result = await self.db.execute(query)
        coupon = result.scalars().first()

        if not coupon:
            logger.warning(f"Coupon {cart.coupon_code} on cart {cart.id} no longer exists, discount dropped")
            return ZERO

        try:
            await self._check_rules(coupon, subtotal, cart.user_id)
        except BadRequestException as e:
            logger.warning(f"Coupon {coupon.code} on cart {cart.id} no longer applies: {e.detail}")
            return ZERO

        return calculate_discount(coupon, subtotal)


    async def apply_to_cart(self, cart: Cart, code: Optional[str], user_id: int) -> CouponQuote:
        """Validate and attach a coupon, replacing any coupon already on the cart."""
        quote = await self.validate(cart, code, user_id)

        if cart.coupon_code and cart.coupon_code != quote.coupon.code:
            logger.info(f"Replacing coupon {cart.coupon_code} with {quote.coupon.code} on cart {cart.id}")

        await self.store.apply_coupon_fields(cart, quote.coupon, quote.discount_amount)
        logger.info(f"Applied coupon {quote.coupon.code} to cart {cart.id}, discount {quote.discount_amount}")
        return quote


    async def remove_from_cart(self, cart: Cart) -> None:
        if not cart.coupon_id:
            await self.store.refresh_totals(cart)
            return

        logger.info(f"Removing coupon {cart.coupon_code} from cart {cart.id}")
        await self.store.clear_coupon_fields(cart)


    async def list_available(self, user_id: int) -> List[Dict[str, Any]]:
        """Coupons that are live right now and that the user has not used up."""
        now = utcnow()
        query = (
            select(Coupon)
            .where(
                and_(
                    Coupon.is_active == True,
                    Coupon.deleted_at.is_(None),
                    Coupon.start_date <= now,
                    or_(Coupon.end_date.is_(None), Coupon.end_date >= now),
                )
            )
            .order_by(Coupon.id)
        )
        result = await self.db.execute(query)

        available = []
        for coupon in result.scalars().all():
            if coupon.usage_limit is not None and await self.usage_count(coupon.id) >= coupon.usage_limit:
                continue

            used = await self.user_usage_count(coupon.id, user_id)
            remaining = None
            if coupon.per_user_limit is not None:
                remaining = coupon.per_user_limit - used
                if remaining <= 0:
                    continue

            available.append({
                "id": coupon.id,
                "code": coupon.code,
                "name": coupon.name,
                "description": coupon.description,
                "discount_type": coupon.discount_type,
                "discount_value": coupon.discount_value,
                "minimum_order_value": coupon.minimum_order_value,
                "maximum_discount_amount": coupon.maximum_discount_amount,
                "start_date": coupon.start_date,
                "end_date": coupon.end_date,
                "usage_limit": coupon.usage_limit,
                "per_user_limit": coupon.per_user_limit,
                "user_usage_count": used,
                "remaining_uses": remaining,
            })

        return available


    async def record_usage(self, cart: Cart, order_id: str, discount_amount: Decimal) -> Optional[CouponUsage]:
        if not cart.coupon_id:
            return None

        usage = CouponUsage(
            coupon_id=cart.coupon_id,
            user_id=cart.user_id,
            order_id=order_id,
            discount_amount=round_money(discount_amount),
            used_at=utcnow(),
        )
        self.db.add(usage)
        await self.db.flush()

        logger.info(f"Recorded use of coupon {cart.coupon_code} by user {cart.user_id} for order {order_id}")
        return usage
