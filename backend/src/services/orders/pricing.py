"""Order pricing.

Prices are computed once at placement from the item snapshots supplied by
the catalog and never recomputed afterwards.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

from src.schemas.orders import LineItemCreate

CENT = Decimal("0.01")
HUNDRED = Decimal("100")


def quantize(amount: Decimal) -> Decimal:
    return Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class PriceBreakdown:
    items_total: Decimal
    delivery_fee: Decimal
    tax: Decimal
    discount: Decimal
    final_amount: Decimal


def line_subtotal(item: LineItemCreate) -> Decimal:
    """Return ``(unit_price + sum of customization prices) * quantity``."""
    extras = sum(
        (c.additional_price for c in item.customizations), Decimal("0")
    )
    return quantize((item.unit_price + extras) * item.quantity)


def calculate_pricing(
    items: Iterable[LineItemCreate],
    delivery_fee: Decimal,
    tax_rate_percent: Decimal,
    discount: Decimal = Decimal("0"),
) -> PriceBreakdown:
    """Compute the order price breakdown.

    Tax applies to the items total plus the delivery fee.

    Args:
        items: Line items with price snapshots
        delivery_fee: Flat delivery fee
        tax_rate_percent: Tax rate as a percentage
        discount: Discount to subtract

    Returns:
        PriceBreakdown with every amount rounded to cents
    """
    items_total = quantize(sum((line_subtotal(i) for i in items), Decimal("0")))
    fee = quantize(delivery_fee)
    tax = quantize((items_total + fee) * tax_rate_percent / HUNDRED)
    discount = quantize(discount)
    final_amount = quantize(items_total + fee + tax - discount)
    return PriceBreakdown(
        items_total=items_total,
        delivery_fee=fee,
        tax=tax,
        discount=discount,
        final_amount=final_amount,
    )
