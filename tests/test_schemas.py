from datetime import datetime
from decimal import Decimal

import pytest
from pydantic import ValidationError

from storefront.enums import CartStatus
from storefront.models import CartItem
from storefront.schemas.cart import CartHistoryEntry, CartItemResponse, ItemRef


def test_cart_item_response_reads_orm_attributes():
    item = CartItem(
        id=3,
        cart_id=1,
        product_id=10,
        variant_id=100,
        quantity=2,
        price_with_tax=Decimal("105.00"),
        tax_rate=Decimal("5.00"),
        base_price=Decimal("100.00"),
        tax_amount=Decimal("5.00"),
        line_total=Decimal("210.00"),
    )

    response = CartItemResponse.model_validate(item)

    assert response.id == 3
    assert response.quantity == 2
    assert response.line_total == 210.0


def test_item_ref_needs_id_or_pair():
    assert ItemRef(item_id=4).item_id == 4
    assert ItemRef(product_id=10, variant_id=100).variant_id == 100

    with pytest.raises(ValidationError):
        ItemRef()
    with pytest.raises(ValidationError):
        ItemRef(product_id=10)


def test_history_entry_serializes_money_as_numbers():
    entry = CartHistoryEntry(
        id=1,
        status=CartStatus.EXPIRED,
        created_at=datetime(2026, 1, 1),
        closed_at=datetime(2026, 1, 2),
        subtotal=Decimal("20.00"),
        discount_amount=Decimal("0"),
        final_total=Decimal("20"),
        item_count=1,
        total_quantity=2,
    )

    data = entry.model_dump()
    assert data["status"] == CartStatus.EXPIRED
    assert data["coupon_code"] is None
    assert data["subtotal"] == 20.0
