"""Tax and total calculations. Pure functions, no I/O."""

from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Iterable, Optional, Union

from shopflow.domain.errors import InvalidArgument

Number = Union[Decimal, int, float, str]

CENT = Decimal("0.01")


def to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # str() first so 0.1 stays 0.1 instead of its binary expansion
    return Decimal(str(value))


def quantize_money(amount: Number) -> Decimal:
    return to_decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


def compute_line_tax(price: Number, tax_rate: Number, tax_included_in_price: bool) -> Decimal:
    """Tax component of a single unit price.

    With tax-inclusive pricing the tax is extracted from ``price``,
    otherwise it is added on top of it. The result is not rounded.
    """
    price = to_decimal(price)
    tax_rate = to_decimal(tax_rate)
    if price < 0 or tax_rate < 0:
        raise InvalidArgument("Price and tax rate must be non-negative.")

    if tax_included_in_price:
        return price - price / (1 + tax_rate)
    return price * tax_rate


def compute_order_total(items: Iterable[Any]) -> Decimal:
    """Sum of ``(price + tax_amount) * quantity`` over cart or order lines."""
    total = Decimal("0")
    for item in items:
        total += (to_decimal(item.price) + to_decimal(item.tax_amount)) * item.quantity
    return total


class PricingCalculator:
    """Binds the configured tax mode and default rate to the pure functions."""

    def __init__(self, tax_included_in_price: bool = False, default_tax_rate: Number = Decimal("0")):
        self.tax_included_in_price = tax_included_in_price
        self.default_tax_rate = to_decimal(default_tax_rate)

    @classmethod
    def from_settings(cls, settings) -> "PricingCalculator":
        return cls(
            tax_included_in_price=settings.TAX_INCLUDED_IN_PRICES,
            default_tax_rate=settings.TAX_RATE,
        )

    def effective_rate(self, tax_rate: Optional[Number]) -> Decimal:
        return self.default_tax_rate if tax_rate is None else to_decimal(tax_rate)

    def line_tax(self, price: Number, tax_rate: Optional[Number]) -> Decimal:
        """Per-unit tax rounded to the cent, as stored on cart and order lines."""
        return quantize_money(
            compute_line_tax(price, self.effective_rate(tax_rate), self.tax_included_in_price)
        )

    def order_total(self, items: Iterable[Any]) -> Decimal:
        return quantize_money(compute_order_total(items))
