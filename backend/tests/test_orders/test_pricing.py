"""
Tests for order pricing and order number generation.
"""

from datetime import datetime
from decimal import Decimal

import pytest

from src.schemas.orders import Customization, LineItemCreate
from src.services.orders.numbering import (
    generate_order_number,
    parse_order_number,
)
from src.services.orders.pricing import calculate_pricing, line_subtotal


def item(unit_price: str, quantity: int, *extras: str) -> LineItemCreate:
    return LineItemCreate(
        menu_item_id="item",
        name="Item",
        unit_price=Decimal(unit_price),
        quantity=quantity,
        customizations=[
            Customization(name=f"extra-{i}", additional_price=Decimal(price))
            for i, price in enumerate(extras)
        ],
    )


class TestPricing:
    def test_line_subtotal_includes_customizations(self) -> None:
        assert line_subtotal(item("200.00", 2, "10.00", "5.50")) == Decimal("431.00")

    def test_breakdown(self) -> None:
        pricing = calculate_pricing(
            [item("200.00", 2, "10.00"), item("50.00", 1)],
            delivery_fee=Decimal("30"),
            tax_rate_percent=Decimal("5"),
        )

        assert pricing.items_total == Decimal("470.00")
        assert pricing.delivery_fee == Decimal("30.00")
        assert pricing.tax == Decimal("25.00")
        assert pricing.discount == Decimal("0.00")
        assert pricing.final_amount == Decimal("525.00")

    def test_tax_rounds_half_up_to_cents(self) -> None:
        pricing = calculate_pricing(
            [item("0.10", 1)],
            delivery_fee=Decimal("0"),
            tax_rate_percent=Decimal("5"),
        )

        # 0.10 * 5% = 0.005
        assert pricing.tax == Decimal("0.01")
        assert pricing.final_amount == Decimal("0.11")

    def test_discount_is_subtracted(self) -> None:
        pricing = calculate_pricing(
            [item("100.00", 1)],
            delivery_fee=Decimal("0"),
            tax_rate_percent=Decimal("0"),
            discount=Decimal("15"),
        )

        assert pricing.final_amount == Decimal("85.00")


class TestOrderNumbers:
    def test_format(self) -> None:
        placed_at = datetime(2026, 10, 19, 14, 30, 5)

        assert generate_order_number(placed_at, 41) == "ORD19143005042"

    def test_counter_wraps_at_one_thousand(self) -> None:
        placed_at = datetime(2026, 10, 1, 0, 0, 0)

        assert generate_order_number(placed_at, 999) == "ORD01000000000"
        assert generate_order_number(placed_at, 1000) == "ORD01000000001"

    def test_parse(self) -> None:
        parts = parse_order_number("ORD19143005042")

        assert (parts.day, parts.hour, parts.minute, parts.second) == (19, 14, 30, 5)
        assert parts.counter == 42

    @pytest.mark.parametrize("value", ["ORD1914300504", "XYZ19143005042", "ORD1914300504A"])
    def test_parse_rejects_malformed(self, value: str) -> None:
        with pytest.raises(ValueError, match="Malformed order number"):
            parse_order_number(value)
