from datetime import timedelta
from decimal import Decimal

import pytest

from storefront.exceptions import BadRequestException, NotFoundException
from storefront.models import Coupon
from storefront.models.base import utcnow
from storefront.services.cart_store import CartStore
from storefront.services.coupon_service import CouponService, calculate_discount


@pytest.fixture
def store(db_session, variants):
    return CartStore(db_session, variants)


@pytest.fixture
def coupons(db_session, store):
    return CouponService(db_session, store)


@pytest.fixture
async def cart(store, db_session):
    cart = await store.get_or_create_active_cart(1)
    await store.upsert_line_item(cart, 10, 100, 2, Decimal("250.00"), Decimal("5"))
    await db_session.commit()
    return cart


def test_percentage_discount_is_capped():
    coupon = Coupon(discount_type="percentage", discount_value=Decimal("50"), maximum_discount_amount=Decimal("100"))

    assert calculate_discount(coupon, Decimal("500.00")) == Decimal("100.00")


def test_fixed_discount_is_capped_at_subtotal():
    coupon = Coupon(discount_type="fixed_amount", discount_value=Decimal("75"))

    assert calculate_discount(coupon, Decimal("40.00")) == Decimal("40.00")
    assert calculate_discount(coupon, Decimal("400.00")) == Decimal("75.00")


def test_free_shipping_gives_no_line_discount():
    coupon = Coupon(discount_type="free_shipping", discount_value=Decimal("0"))

    assert calculate_discount(coupon, Decimal("400.00")) == 0


async def test_apply_percentage_coupon(coupons, cart, make_coupon, db_session):
    await make_coupon("HALF", "percentage", "50", maximum_discount_amount=Decimal("100"))

    quote = await coupons.apply_to_cart(cart, "HALF", 1)
    await db_session.commit()

    assert quote.discount_amount == Decimal("100.00")
    assert cart.coupon_code == "HALF"
    assert cart.discount_amount == Decimal("100.00")
    assert cart.final_total == Decimal("400")


async def test_new_coupon_replaces_previous_one(coupons, cart, make_coupon):
    await make_coupon("SAVE50", "fixed_amount", "50")
    await make_coupon("SAVE20", "fixed_amount", "20")

    await coupons.apply_to_cart(cart, "SAVE50", 1)
    await coupons.apply_to_cart(cart, "SAVE20", 1)

    assert cart.coupon_code == "SAVE20"
    assert cart.final_total == Decimal("480")


@pytest.mark.parametrize(
    "code, kwargs, error",
    [
        ("OFF", {"is_active": False}, "not active"),
        ("LATER", {"start_date": utcnow() + timedelta(days=2)}, "not yet valid"),
        ("OLD", {"end_date": utcnow() - timedelta(days=1)}, "expired"),
        ("BIG", {"minimum_order_value": Decimal("1000")}, "Minimum purchase amount of 1000.00"),
    ],
)
async def test_rule_violations_are_rejected(coupons, cart, make_coupon, code, kwargs, error):
    await make_coupon(code, "fixed_amount", "10", **kwargs)

    with pytest.raises(BadRequestException) as exc_info:
        await coupons.validate(cart, code, 1)

    assert error in exc_info.value.detail


async def test_unknown_or_deleted_code_is_not_found(coupons, cart, make_coupon):
    await make_coupon("GONE", "fixed_amount", "10", deleted_at=utcnow())

    with pytest.raises(NotFoundException):
        await coupons.validate(cart, "NOPE", 1)

    with pytest.raises(NotFoundException):
        await coupons.validate(cart, "GONE", 1)


async def test_blank_code_is_rejected(coupons, cart):
    with pytest.raises(BadRequestException):
        await coupons.validate(cart, "   ", 1)


async def test_empty_cart_is_rejected(coupons, store, make_coupon):
    await make_coupon()
    empty = await store.get_or_create_active_cart(2)

    with pytest.raises(BadRequestException) as exc_info:
        await coupons.validate(empty, "SAVE50", 2)

    assert "empty cart" in exc_info.value.detail


async def test_global_usage_limit(coupons, cart, make_coupon, record_usage):
    coupon = await make_coupon("ONCE", "fixed_amount", "10", usage_limit=1)
    await record_usage(coupon, user_id=99)

    with pytest.raises(BadRequestException) as exc_info:
        await coupons.validate(cart, "ONCE", 1)

    assert "usage limit" in exc_info.value.detail


async def test_per_user_limit(coupons, cart, make_coupon, record_usage):
    coupon = await make_coupon("MINE", "fixed_amount", "10", per_user_limit=1)
    await record_usage(coupon, user_id=1)

    with pytest.raises(BadRequestException):
        await coupons.validate(cart, "MINE", 1)

    other = await coupons.store.get_or_create_active_cart(2)
    await coupons.store.upsert_line_item(other, 10, 100, 1, Decimal("50.00"), Decimal("5"))
    quote = await coupons.validate(other, "MINE", 2)
    assert quote.discount_amount == Decimal("10.00")


async def test_list_available_skips_used_up_coupons(coupons, make_coupon, record_usage):
    await make_coupon("OPEN", "fixed_amount", "10", per_user_limit=3)
    mine = await make_coupon("MINE", "fixed_amount", "10", per_user_limit=1)
    await make_coupon("OFF", "fixed_amount", "10", is_active=False)
    await record_usage(mine, user_id=1)

    available = await coupons.list_available(1)

    assert [c["code"] for c in available] == ["OPEN"]
    assert available[0]["remaining_uses"] == 3
    assert available[0]["user_usage_count"] == 0


async def test_record_usage_only_with_coupon(coupons, cart, make_coupon, db_session):
    assert await coupons.record_usage(cart, "ORD-1", Decimal("0")) is None

    await make_coupon()
    await coupons.apply_to_cart(cart, "SAVE50", 1)
    usage = await coupons.record_usage(cart, "ORD-2", Decimal("50"))
    await db_session.commit()

    assert usage.user_id == 1
    assert usage.order_id == "ORD-2"
    assert await coupons.user_usage_count(cart.coupon_id, 1) == 1
