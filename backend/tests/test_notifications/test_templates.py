"""
Tests for notification template rendering.
"""

from decimal import Decimal

import pytest

from src.services.notifications.templates import (
    NOTIFICATION_TEMPLATES,
    TemplateEngine,
    TemplateNotFoundError,
    TemplateRenderError,
    customer_status_message,
)
from src.services.orders.enums import OrderStatus


@pytest.fixture
def engine() -> TemplateEngine:
    return TemplateEngine(currency="INR")


class TestNotificationTemplates:
    def test_operator_new_order(self, engine) -> None:
        rendered = engine.render_notification(
            "order_placed",
            "operator",
            {
                "order_number": "ORD19143005001",
                "final_amount": Decimal("1234.5"),
                "payment_method": "CASH_ON_DELIVERY",
            },
        )

        assert rendered["title"] == "New Order"
        assert rendered["message"] == (
            "Order ORD19143005001 placed for INR 1,234.50 (CASH_ON_DELIVERY)"
        )

    def test_courier_assignment(self, engine) -> None:
        rendered = engine.render_notification(
            "order_assigned", "courier", {"order_number": "ORD19143005001"}
        )

        assert rendered == {
            "title": "New Delivery Order",
            "message": "Order ORD19143005001 has been assigned to you",
        }

    def test_customer_never_sees_dispatch_failure(self, engine) -> None:
        rendered = engine.render_notification(
            "dispatch_no_courier", "customer", {"order_number": "ORD19143005001"}
        )

        assert rendered["message"] == "We're preparing your order ORD19143005001"

    def test_unknown_pair_raises_not_found(self, engine) -> None:
        assert not engine.has_template("order_assigned", "customer")

        with pytest.raises(TemplateNotFoundError) as exc_info:
            engine.render_notification("order_assigned", "customer", {})

        assert exc_info.value.template_name == "order_assigned/customer/title.txt"

    def test_missing_variable_raises_render_error(self, engine) -> None:
        with pytest.raises(TemplateRenderError):
            engine.render_notification("order_delivered", "operator", {"order_number": "X"})

    @pytest.mark.parametrize("event_type,role", sorted(NOTIFICATION_TEMPLATES))
    def test_every_template_renders(self, engine, event_type: str, role: str) -> None:
        context = {
            "order_number": "ORD19143005001",
            "final_amount": Decimal("10"),
            "payment_method": "PREPAID",
            "courier_name": "Ravi",
            "candidates_tried": 3,
        }

        rendered = engine.render_notification(event_type, role, context)

        assert rendered["title"]
        assert "{{" not in rendered["message"]


class TestStatusMessages:
    @pytest.mark.parametrize(
        "status,expected",
        [
            (OrderStatus.PENDING, "Your order ORD1 has been placed successfully"),
            (OrderStatus.READY, "We're preparing your order ORD1"),
            (OrderStatus.OUT_FOR_DELIVERY, "Your order ORD1 is out for delivery"),
            (OrderStatus.CANCELLED, "Your order ORD1 has been cancelled"),
        ],
    )
    def test_customer_status_message(self, status: OrderStatus, expected: str) -> None:
        assert customer_status_message(status, "ORD1") == expected


class TestNewOrderEmail:
    def test_renders_items_and_escapes_html(self, engine) -> None:
        email = engine.render_new_order_email(
            {
                "order_number": "ORD19143005001",
                "customer_name": "Asha <Rao>",
                "items": [{"quantity": 2, "name": "Masala Dosa", "subtotal": "420.00"}],
                "final_amount": Decimal("472.50"),
                "payment_method": "CASH_ON_DELIVERY",
                "address": "12 MG Road, Bengaluru, 560001",
            }
        )

        assert email["subject"] == "New order ORD19143005001"
        assert "- 2 x Masala Dosa: INR 420.00" in email["text_body"]
        assert "Total: INR 472.50 (CASH_ON_DELIVERY)" in email["text_body"]
        assert "Asha <Rao>" in email["text_body"]
        assert "Asha &lt;Rao&gt;" in email["html_body"]
        assert "<li>2 x Masala Dosa: INR 420.00</li>" in email["html_body"]
