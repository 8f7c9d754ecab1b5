"""
Order Pricing
=============

    subtotal = sum(quantity x unit price)
    tax      = subtotal x TAX_RATE
    shipping = SHIPPING_FEE, or 0 once subtotal >= FREE_SHIPPING_THRESHOLD
    total    = subtotal + tax + shipping - discount

All amounts are Decimals rounded half-up to 2 places.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Tuple

from storefront import config, models
from storefront.errors import InvalidCoupon

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def money(value) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class PriceBreakdown:
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    discount: Decimal
    total: Decimal

    def as_dict(self):
        return {
            "subtotal": self.subtotal,
            "tax": self.tax,
            "shipping": self.shipping,
            "discount": self.discount,
            "total": self.total,
        }


def subtotal(lines: Iterable[Tuple[int, Decimal]]) -> Decimal:
    """Sum of ``(quantity, unit_price)`` pairs."""
    return money(sum((Decimal(price) * quantity for quantity, price in lines), ZERO))


def shipping_for(amount: Decimal) -> Decimal:
    if amount >= config.FREE_SHIPPING_THRESHOLD:
        return ZERO
    return money(config.SHIPPING_FEE)


def price_order(lines: Iterable[Tuple[int, Decimal]], discount: Decimal = ZERO) -> PriceBreakdown:
    sub = subtotal(lines)
    # the discount never exceeds the subtotal
    discount = min(money(discount), sub)
    tax = money(sub * config.TAX_RATE)
    shipping = shipping_for(sub) if sub > ZERO else ZERO
    return PriceBreakdown(
        subtotal=sub,
        tax=tax,
        shipping=shipping,
        discount=discount,
        total=money(sub + tax + shipping - discount),
    )


def coupon_discount(coupon, amount: Decimal) -> Decimal:
    """
    What ``coupon`` takes off a subtotal of ``amount``.

    percentage: amount x value / 100, capped at max_discount
    fixed:      value
    Either way the discount never exceeds the subtotal.

    Raises:
        InvalidCoupon: amount below the coupon's min_order_amount
    """
    if coupon.min_order_amount is not None and amount < coupon.min_order_amount:
        raise InvalidCoupon(
            f"Minimum order amount of {money(coupon.min_order_amount)} required for this coupon"
        )

    if coupon.discount_type == models.DISCOUNT_PERCENTAGE:
        discount = amount * Decimal(coupon.discount_value) / Decimal(100)
        if coupon.max_discount is not None:
            discount = min(discount, Decimal(coupon.max_discount))
    else:
        discount = Decimal(coupon.discount_value)

    return money(min(discount, amount))


def price_with_coupon(lines: Iterable[Tuple[int, Decimal]], coupon=None) -> PriceBreakdown:
    """
    Price ``lines`` with the discount ``coupon`` is worth on them now.

    The discount is recomputed from the live subtotal, so a cart that shrank
    below the coupon's minimum after it was applied raises InvalidCoupon.
    """
    lines = list(lines)
    if coupon is None:
        return price_order(lines)
    return price_order(lines, discount=coupon_discount(coupon, subtotal(lines)))
