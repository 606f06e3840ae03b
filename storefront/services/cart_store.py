import logging
from datetime import timedelta
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy import and_, delete, func, update
from sqlalchemy.dialects.mysql import insert as mysql_insert
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from ..core.config import Config
from ..enums import AdjustmentReason, CartStatus
from ..exceptions import BadRequestException, ConflictException, NotFoundException
from ..models import Cart, CartItem, Coupon
from ..models.base import utcnow
from ..schemas.cart import QuantityAdjustment
from .totals import ZERO, CartTotals, calculate_subtotal, calculate_totals, price_line, round_money, to_decimal
from .variant_lookup import VariantPriceLookup


logger = logging.getLogger(__name__)

LINE_KEY = ("cart_id", "product_id", "variant_id")


class CartStore:
    """
    Persistence for carts and their line items.

    Every mutating method finishes by rewriting the cart's totals from its
    lines, so the caller only has to commit. Nothing here commits.
    """

    def __init__(self, db: AsyncSession, variant_lookup: VariantPriceLookup):
        self.db = db
        self.variant_lookup = variant_lookup
        self.repairs: List[QuantityAdjustment] = []
        # set by CouponService; re-quotes the applied coupon whenever totals are refreshed
        self.coupon_rules = None

    # -----------------------------------------------------------------
    # carts
    # -----------------------------------------------------------------
    async def get_active_cart(self, user_id: int, lock: bool = False) -> Optional[Cart]:
        """
        Return the user's active cart, or None.

        A cart whose expiry has passed is moved to ``expired`` here; expiry is
        only ever enforced on read.
        """
        query = select(Cart).where(
            and_(
                Cart.user_id == user_id,
                Cart.status == CartStatus.ACTIVE,
            )
        )
        if lock:
            query = query.with_for_update()

        result = await self.db.execute(query)
        cart = result.scalars().first()

        if cart and cart.expires_at <= utcnow():
            logger.info(f"Cart {cart.id} for user {user_id} expired at {cart.expires_at}")
            cart.status = CartStatus.EXPIRED
            await self.db.flush()
            return None

        return cart

    async def get_or_create_active_cart(self, user_id: int, lock: bool = True) -> Cart:
        cart = await self.get_active_cart(user_id, lock=lock)
        if cart:
            return cart

        cart = Cart(
            user_id=user_id,
            status=CartStatus.ACTIVE,
            base_amount=ZERO,
            tax_amount=ZERO,
            subtotal=ZERO,
            roundoff=ZERO,
            final_total=ZERO,
            expires_at=utcnow() + timedelta(days=Config.CART_EXPIRY_DAYS),
        )

        try:
            async with self.db.begin_nested():
                self.db.add(cart)
        except IntegrityError:
            # another request created the active cart first
            logger.info(f"Active cart for user {user_id} was created concurrently, reusing it")
            cart = await self.get_active_cart(user_id, lock=lock)
            if not cart:
                raise ConflictException("Could not create a cart, please retry")
            return cart

        logger.info(f"Created cart {cart.id} for user {user_id}")
        return cart

    async def mark_checked_out(self, cart: Cart) -> Cart:
        if cart.status != CartStatus.ACTIVE:
            raise BadRequestException(f"Cart is {cart.status.value} and can no longer be checked out")

        cart.status = CartStatus.CHECKED_OUT
        await self.db.flush()
        return cart

    async def list_closed_carts(self, user_id: int, offset: int, limit: int) -> Tuple[List[Tuple[Cart, int, int]], int]:
        """
        Page through the user's checked out and expired carts, newest first.
        Each row carries the cart with its line count and total quantity.
        """
        closed = and_(
            Cart.user_id == user_id,
            Cart.status != CartStatus.ACTIVE,
        )
        line_counts = (
            select(
                CartItem.cart_id,
                func.count(CartItem.id).label("item_count"),
                func.sum(CartItem.quantity).label("total_quantity"),
            )
            .group_by(CartItem.cart_id)
            .subquery()
        )
        query = (
            select(
                Cart,
                func.coalesce(line_counts.c.item_count, 0),
                func.coalesce(line_counts.c.total_quantity, 0),
            )
            .outerjoin(line_counts, line_counts.c.cart_id == Cart.id)
            .where(closed)
            .order_by(Cart.updated_at.desc(), Cart.id.desc())
            .offset(offset)
            .limit(limit)
        )
        result = await self.db.execute(query)
        rows = [(cart, int(item_count), int(total_quantity)) for cart, item_count, total_quantity in result.all()]

        count_result = await self.db.execute(select(func.count(Cart.id)).where(closed))
        return rows, count_result.scalar() or 0

    # -----------------------------------------------------------------
    # line items
    # -----------------------------------------------------------------
    async def find_line_item(self, cart_id: int, product_id: int, variant_id: int) -> Optional[CartItem]:
        query = (
            select(CartItem)
            .where(
                and_(
                    CartItem.cart_id == cart_id,
                    CartItem.product_id == product_id,
                    CartItem.variant_id == variant_id,
                )
            )
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(query)
        return result.scalars().first()

    async def get_line_item(self, cart_id: int, item_id: int) -> CartItem:
        query = (
            select(CartItem)
            .where(
                and_(
                    CartItem.id == item_id,
                    CartItem.cart_id == cart_id,
                )
            )
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(query)
        item = result.scalars().first()

        if not item:
            raise NotFoundException(f"Cart item with ID {item_id} not found")

        return item

    async def get_line_item_by_product_variant(self, cart_id: int, product_id: int, variant_id: int) -> CartItem:
        item = await self.find_line_item(cart_id, product_id, variant_id)

        if not item:
            raise NotFoundException(f"Cart item for product {product_id} variant {variant_id} not found")

        return item

    async def list_line_items(self, cart_id: int) -> List[CartItem]:
        """
        Load a cart's lines, repairing any whose stored price is not positive
        before handing them out.
        """
        query = (
            select(CartItem)
            .where(CartItem.cart_id == cart_id)
            .order_by(CartItem.id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(query)
        items = list(result.scalars().all())

        repaired = False
        for item in items:
            if to_decimal(item.price_with_tax) <= 0:
                await self.repair_line_item(item)
                repaired = True

        if repaired:
            await self.db.flush()

        return items

    async def upsert_line_item(
        self,
        cart: Cart,
        product_id: int,
        variant_id: int,
        quantity: int,
        unit_price_incl_tax: Decimal,
        tax_rate: Decimal,
    ) -> CartItem:
        """
        Add ``quantity`` of a variant to the cart.

        An existing line for the same product/variant has its quantity
        increased and its price snapshot replaced by the supplied one; the
        insert-or-increment is a single statement keyed on the unique
        constraint, so concurrent adds never produce two rows.
        """
        await self._write_line(cart.id, product_id, variant_id, quantity, unit_price_incl_tax, tax_rate, increment=True)
        return await self._normalize_line(cart, product_id, variant_id)

    async def put_line_item(
        self,
        cart: Cart,
        product_id: int,
        variant_id: int,
        quantity: int,
        unit_price_incl_tax: Decimal,
        tax_rate: Decimal,
    ) -> CartItem:
        """Same as upsert_line_item, except the stored quantity is overwritten rather than increased."""
        await self._write_line(cart.id, product_id, variant_id, quantity, unit_price_incl_tax, tax_rate, increment=False)
        return await self._normalize_line(cart, product_id, variant_id)

    async def set_line_item_quantity(self, cart: Cart, item_id: int, quantity: int) -> Optional[CartItem]:
        """Overwrite a line's quantity; zero or less deletes the line."""
        item = await self.get_line_item(cart.id, item_id)

        if quantity <= 0:
            await self._delete_line(cart, item)
            return None

        if to_decimal(item.price_with_tax) <= 0:
            await self.repair_line_item(item)

        item.quantity = quantity
        self._apply_pricing(item)
        await self.db.flush()

        await self.refresh_totals(cart)
        return item

    async def remove_line_item(self, cart: Cart, item_id: int) -> None:
        item = await self.get_line_item(cart.id, item_id)
        await self._delete_line(cart, item)

    async def remove_line_item_by_product_variant(self, cart: Cart, product_id: int, variant_id: int) -> None:
        item = await self.get_line_item_by_product_variant(cart.id, product_id, variant_id)
        await self._delete_line(cart, item)

    async def clear_items(self, cart: Cart) -> None:
        await self.db.execute(delete(CartItem).where(CartItem.cart_id == cart.id))
        self._reset_coupon(cart)
        await self.db.flush()

        await self.refresh_totals(cart)

    # -----------------------------------------------------------------
    # price repair
    # -----------------------------------------------------------------
    async def repair_line_item(self, item: CartItem) -> CartItem:
        """
        Replace a non-positive stored price with the variant's current one.

        The tax rate is only touched when the stored one is not positive: the
        variant's rate is used if it has one, otherwise DEFAULT_TAX_RATE.
        """
        variant = await self.variant_lookup.get_variant(item.product_id, item.variant_id)
        price = round_money(variant.effective_price) if variant else ZERO

        if price <= 0:
            logger.error(f"Cart item {item.id} has no valid price and none could be found for variant {item.variant_id}")
            raise BadRequestException(
                f"Price for product {item.product_id} variant {item.variant_id} is unavailable"
            )

        tax_rate = to_decimal(item.tax_rate)
        if tax_rate <= 0:
            if variant.tax_rate is not None and variant.tax_rate > 0:
                tax_rate = variant.tax_rate
            else:
                tax_rate = to_decimal(Config.DEFAULT_TAX_RATE)

        logger.warning(
            f"Repaired cart item {item.id}: price {item.price_with_tax} -> {price}, tax rate {item.tax_rate} -> {tax_rate}"
        )

        item.price_with_tax = price
        item.tax_rate = tax_rate
        self._apply_pricing(item)

        self.repairs.append(
            QuantityAdjustment(
                product_id=item.product_id,
                variant_id=item.variant_id,
                original_quantity=item.quantity,
                adjusted_quantity=item.quantity,
                reason=AdjustmentReason.PRICE_REPAIRED,
                message=f"Price refreshed to {price}",
            )
        )
        return item

    def drain_repairs(self) -> List[QuantityAdjustment]:
        repairs, self.repairs = self.repairs, []
        return repairs

    # -----------------------------------------------------------------
    # coupon fields and totals
    # -----------------------------------------------------------------
    async def apply_coupon_fields(self, cart: Cart, coupon: Coupon, discount_amount: Decimal) -> CartTotals:
        cart.coupon_id = coupon.id
        cart.coupon_code = coupon.code
        cart.discount_type = coupon.discount_type
        cart.discount_value = coupon.discount_value
        cart.discount_amount = round_money(discount_amount)
        await self.db.flush()

        return await self.refresh_totals(cart)

    async def clear_coupon_fields(self, cart: Cart) -> CartTotals:
        self._reset_coupon(cart)
        await self.db.flush()

        return await self.refresh_totals(cart)

    async def refresh_totals(self, cart: Cart) -> CartTotals:
        """
        Recompute the cart's totals from its current lines and write them onto the cart row.

        An applied coupon on an active cart is re-quoted against the new
        subtotal first. A coupon that no longer qualifies stays attached with
        a zero discount.
        """
        items = await self.list_line_items(cart.id)

        if cart.coupon_id and cart.status == CartStatus.ACTIVE and self.coupon_rules is not None:
            cart.discount_amount = await self.coupon_rules.requote(cart, calculate_subtotal(items))

        totals = calculate_totals(items, cart.discount_amount)

        cart.base_amount = totals.base_amount
        cart.tax_amount = totals.tax_amount
        cart.subtotal = totals.subtotal
        cart.roundoff = totals.roundoff
        cart.final_total = totals.final_total
        await self.db.flush()

        return totals

    # -----------------------------------------------------------------
    # internals
    # -----------------------------------------------------------------
    async def _write_line(
        self,
        cart_id: int,
        product_id: int,
        variant_id: int,
        quantity: int,
        unit_price_incl_tax: Decimal,
        tax_rate: Decimal,
        increment: bool,
    ) -> None:
        pricing = price_line(unit_price_incl_tax, tax_rate, quantity)
        now = utcnow()
        values = {
            "cart_id": cart_id,
            "product_id": product_id,
            "variant_id": variant_id,
            "quantity": quantity,
            "price_with_tax": pricing.price_with_tax,
            "tax_rate": pricing.tax_rate,
            "base_price": pricing.base_price,
            "tax_amount": pricing.tax_amount,
            "line_total": pricing.line_total,
            "created_at": now,
            "updated_at": now,
        }

        table = CartItem.__table__
        dialect = self.db.get_bind().dialect.name

        if dialect in ("postgresql", "sqlite"):
            insert = postgresql_insert if dialect == "postgresql" else sqlite_insert
            stmt = insert(table).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=[table.c[column] for column in LINE_KEY],
                set_={
                    "quantity": table.c.quantity + stmt.excluded.quantity if increment else stmt.excluded.quantity,
                    "price_with_tax": stmt.excluded.price_with_tax,
                    "tax_rate": stmt.excluded.tax_rate,
                    "base_price": stmt.excluded.base_price,
                    "tax_amount": stmt.excluded.tax_amount,
                    "updated_at": stmt.excluded.updated_at,
                },
            )
            await self.db.execute(stmt)

        elif dialect in ("mysql", "mariadb"):
            stmt = mysql_insert(table).values(**values)
            stmt = stmt.on_duplicate_key_update(
                quantity=table.c.quantity + stmt.inserted.quantity if increment else stmt.inserted.quantity,
                price_with_tax=stmt.inserted.price_with_tax,
                tax_rate=stmt.inserted.tax_rate,
                base_price=stmt.inserted.base_price,
                tax_amount=stmt.inserted.tax_amount,
                updated_at=stmt.inserted.updated_at,
            )
            await self.db.execute(stmt)

        else:
            await self._write_line_with_fallback(values, increment)

    async def _write_line_with_fallback(self, values: dict, increment: bool) -> None:
        """
        Insert inside a savepoint and fall back to updating the existing row
        when the unique constraint reports it is already there.
        """
        table = CartItem.__table__

        try:
            async with self.db.begin_nested():
                await self.db.execute(table.insert().values(**values))
            return
        except IntegrityError:
            logger.info(
                f"Cart {values['cart_id']} already holds product {values['product_id']} "
                f"variant {values['variant_id']}, updating the existing line"
            )

        quantity = table.c.quantity + values["quantity"] if increment else values["quantity"]
        await self.db.execute(
            update(table)
            .where(
                and_(*(table.c[column] == values[column] for column in LINE_KEY))
            )
            .values(
                quantity=quantity,
                price_with_tax=values["price_with_tax"],
                tax_rate=values["tax_rate"],
                base_price=values["base_price"],
                tax_amount=values["tax_amount"],
                updated_at=values["updated_at"],
            )
        )

    async def _normalize_line(self, cart: Cart, product_id: int, variant_id: int) -> CartItem:
        # quantity may have been incremented in SQL, so the line total is rederived here
        item = await self.get_line_item_by_product_variant(cart.id, product_id, variant_id)
        self._apply_pricing(item)
        await self.db.flush()

        await self.refresh_totals(cart)
        return item

    async def _delete_line(self, cart: Cart, item: CartItem) -> None:
        await self.db.delete(item)
        await self.db.flush()
        logger.info(f"Removed cart item {item.id} from cart {cart.id}")

        await self.refresh_totals(cart)

    @staticmethod
    def _apply_pricing(item: CartItem) -> None:
        pricing = price_line(item.price_with_tax, item.tax_rate, item.quantity)
        item.price_with_tax = pricing.price_with_tax
        item.tax_rate = pricing.tax_rate
        item.base_price = pricing.base_price
        item.tax_amount = pricing.tax_amount
        item.line_total = pricing.line_total

    @staticmethod
    def _reset_coupon(cart: Cart) -> None:
        cart.coupon_id = None
        cart.coupon_code = None
        cart.discount_type = None
        cart.discount_value = None
        cart.discount_amount = None
