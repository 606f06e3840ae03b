"""
Cart totals arithmetic.

Everything here is pure: no session, no I/O. The store calls
``calculate_totals`` after every line or coupon change and writes the result
back onto the cart row in the same transaction.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional, Protocol


ZERO = Decimal("0.00")
CENT = Decimal("0.01")
UNIT = Decimal("1")
HUNDRED = Decimal("100")


def to_decimal(value) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    # str() keeps floats like 0.1 from dragging binary noise into the sum
    return Decimal(str(value))


def round_money(value) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def round_to_integer(value) -> Decimal:
    return to_decimal(value).quantize(UNIT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class LinePricing:
    price_with_tax: Decimal
    tax_rate: Decimal
    base_price: Decimal
    tax_amount: Decimal
    line_total: Decimal


def price_line(price_with_tax, tax_rate, quantity: int) -> LinePricing:
    """
    Split a tax-inclusive unit price into its pre-tax and tax parts.

    The per-unit tax is taken as the remainder so that
    ``base_price + tax_amount == price_with_tax`` holds exactly after rounding.
    """
    price = round_money(price_with_tax)
    rate = round_money(tax_rate)

    base_price = round_money(price / (1 + rate / HUNDRED))
    tax_amount = price - base_price

    return LinePricing(
        price_with_tax=price,
        tax_rate=rate,
        base_price=base_price,
        tax_amount=tax_amount,
        line_total=round_money(price * quantity),
    )


class PricedLine(Protocol):
    quantity: int
    base_price: Decimal
    tax_amount: Decimal
    line_total: Decimal


@dataclass(frozen=True)
class CartTotals:
    base_amount: Decimal = ZERO
    tax_amount: Decimal = ZERO
    subtotal: Decimal = ZERO
    discount_amount: Decimal = ZERO
    roundoff: Decimal = ZERO
    final_total: Decimal = ZERO
    item_count: int = 0
    total_quantity: int = 0

    def as_dict(self) -> dict:
        return {
            "base_amount": self.base_amount,
            "tax_amount": self.tax_amount,
            "subtotal": self.subtotal,
            "discount_amount": self.discount_amount,
            "roundoff": self.roundoff,
            "final_total": self.final_total,
            "item_count": self.item_count,
            "total_quantity": self.total_quantity,
        }


EMPTY_TOTALS = CartTotals()


def calculate_subtotal(items: Iterable[PricedLine]) -> Decimal:
    return sum((to_decimal(item.line_total) for item in items), ZERO)


def calculate_totals(items: Iterable[PricedLine], discount_amount: Optional[Decimal] = None) -> CartTotals:
    """
    Derive the totals breakdown for a set of priced lines and an optional coupon discount.

    The discount is capped at the subtotal so the payable total never goes
    negative when lines are removed after a fixed-amount coupon was applied.
    An empty set of lines yields all-zero totals.
    """
    items = list(items)
    if not items:
        return EMPTY_TOTALS

    base_amount = ZERO
    tax_amount = ZERO
    subtotal = ZERO
    total_quantity = 0

    for item in items:
        base_amount += round_money(to_decimal(item.base_price) * item.quantity)
        tax_amount += round_money(to_decimal(item.tax_amount) * item.quantity)
        subtotal += to_decimal(item.line_total)
        total_quantity += item.quantity

    discount = min(round_money(discount_amount), subtotal) if discount_amount else ZERO

    total_before_roundoff = subtotal - discount
    final_total = round_to_integer(total_before_roundoff)
    roundoff = final_total - total_before_roundoff

    return CartTotals(
        base_amount=base_amount,
        tax_amount=tax_amount,
        subtotal=subtotal,
        discount_amount=discount,
        roundoff=roundoff,
        final_total=final_total,
        item_count=len(items),
        total_quantity=total_quantity,
    )
