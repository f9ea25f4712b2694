"""
Notification template engine with Jinja2 for push and email rendering.

Templates live in memory, keyed by event type and audience role. Each
entry renders a short title and a message; the operator email for new
orders additionally has subject, text and HTML bodies.
"""

from decimal import Decimal
from typing import Any, Optional

from jinja2 import (
    DictLoader,
    Environment,
    StrictUndefined,
    TemplateError,
    TemplateNotFound,
    select_autoescape,
)

from src.core.config import get_settings
from src.core.logging import get_logger
from src.services.orders.enums import OrderStatus

logger = get_logger(__name__)

PREPARING_MESSAGE = "We're preparing your order {{ order_number }}"

# (event_type, role) -> (title, message)
NOTIFICATION_TEMPLATES: dict[tuple[str, str], tuple[str, str]] = {
    ("order_placed", "customer"): (
        "Order Placed Successfully",
        "Your order {{ order_number }} has been placed successfully",
    ),
    ("order_placed", "operator"): (
        "New Order",
        "Order {{ order_number }} placed for {{ final_amount | currency }}"
        " ({{ payment_method }})",
    ),
    ("order_ready", "customer"): ("Order Update", PREPARING_MESSAGE),
    ("order_ready", "operator"): (
        "Order Ready",
        "Order {{ order_number }} is ready for dispatch",
    ),
    ("order_assigned", "courier"): (
        "New Delivery Order",
        "Order {{ order_number }} has been assigned to you",
    ),
    ("courier_assigned", "customer"): (
        "Delivery Partner Assigned",
        "{{ courier_name }} will deliver your order {{ order_number }}",
    ),
    ("order_out_for_delivery", "customer"): (
        "Order On The Way",
        "{{ courier_name }} is on the way with your order {{ order_number }}",
    ),
    ("order_out_for_delivery", "operator"): (
        "Order Dispatched",
        "Order {{ order_number }} is out for delivery with {{ courier_name }}",
    ),
    ("order_delivered", "customer"): (
        "Order Delivered",
        "Your order {{ order_number }} has been delivered. Enjoy your meal!",
    ),
    ("order_delivered", "operator"): (
        "Order Delivered",
        "Order {{ order_number }} was delivered by {{ courier_name }}",
    ),
    ("order_cancelled", "customer"): (
        "Order Cancelled",
        "Your order {{ order_number }} has been cancelled",
    ),
    ("order_cancelled", "operator"): (
        "Order Cancelled",
        "Order {{ order_number }} has been cancelled",
    ),
    ("dispatch_no_courier", "customer"): ("Order Update", PREPARING_MESSAGE),
    ("dispatch_no_courier", "operator"): (
        "No Courier Available",
        "No courier available for order {{ order_number }}"
        " after {{ candidates_tried }} candidate(s)",
    ),
}

STATUS_MESSAGES: dict[OrderStatus, str] = {
    OrderStatus.PENDING: "Your order {{ order_number }} has been placed successfully",
    OrderStatus.READY: PREPARING_MESSAGE,
    OrderStatus.OUT_FOR_DELIVERY: "Your order {{ order_number }} is out for delivery",
    OrderStatus.DELIVERED: (
        "Your order {{ order_number }} has been delivered. Enjoy your meal!"
    ),
    OrderStatus.CANCELLED: "Your order {{ order_number }} has been cancelled",
}

NEW_ORDER_EMAIL_SUBJECT = "New order {{ order_number }}"

NEW_ORDER_EMAIL_TEXT = """\
Order {{ order_number }} was placed by {{ customer_name }}.

{% for item in items %}
- {{ item.quantity }} x {{ item.name }}: {{ item.subtotal | currency }}
{% endfor %}

Total: {{ final_amount | currency }} ({{ payment_method }})
Deliver to: {{ address }}
"""

NEW_ORDER_EMAIL_HTML = """\
<h2>Order {{ order_number }}</h2>
<p>Placed by {{ customer_name }}</p>
<ul>
{% for item in items %}
  <li>{{ item.quantity }} x {{ item.name }}: {{ item.subtotal | currency }}</li>
{% endfor %}
</ul>
<p><strong>Total: {{ final_amount | currency }}</strong> ({{ payment_method }})</p>
<p>Deliver to: {{ address }}</p>
"""


class TemplateEngineError(Exception):
    """Base exception for template engine errors."""

    def __init__(self, message: str, template_name: Optional[str] = None):
        super().__init__(message)
        self.template_name = template_name


class TemplateNotFoundError(TemplateEngineError):
    """Raised when no template exists for an event and role."""


class TemplateRenderError(TemplateEngineError):
    """Raised when template rendering fails."""


def _template_sources() -> dict[str, str]:
    sources: dict[str, str] = {}
    for (event_type, role), (title, message) in NOTIFICATION_TEMPLATES.items():
        sources[f"{event_type}/{role}/title.txt"] = title
        sources[f"{event_type}/{role}/message.txt"] = message
    for status, message in STATUS_MESSAGES.items():
        sources[f"status/{status.value}.txt"] = message
    sources["email/new_order/subject.txt"] = NEW_ORDER_EMAIL_SUBJECT
    sources["email/new_order/body.txt"] = NEW_ORDER_EMAIL_TEXT
    sources["email/new_order/body.html"] = NEW_ORDER_EMAIL_HTML
    return sources


class TemplateEngine:
    """
    Renders notification titles, messages and emails.

    Attributes:
        currency: ISO currency code used by the ``currency`` filter
        env: Jinja2 environment backed by a DictLoader
    """

    def __init__(self, currency: str = "INR"):
        self.currency = currency
        self.env = Environment(
            loader=DictLoader(_template_sources()),
            autoescape=select_autoescape(["html", "xml"]),
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self.env.filters["currency"] = self._format_currency

    def has_template(self, event_type: str, role: str) -> bool:
        return (event_type, role) in NOTIFICATION_TEMPLATES

    def render_notification(
        self, event_type: str, role: str, context: dict[str, Any]
    ) -> dict[str, str]:
        """
        Render the title and message for an event as seen by a role.

        Returns:
            Dictionary with 'title' and 'message'

        Raises:
            TemplateNotFoundError: If no template exists for the pair
            TemplateRenderError: If rendering fails
        """
        base = f"{event_type}/{role}"
        return {
            "title": self._render(f"{base}/title.txt", context),
            "message": self._render(f"{base}/message.txt", context),
        }

    def render_status_message(self, status: OrderStatus, order_number: str) -> str:
        return self._render(f"status/{status.value}.txt", {"order_number": order_number})

    def render_new_order_email(self, context: dict[str, Any]) -> dict[str, str]:
        """
        Render the operator email for a newly placed order.

        Returns:
            Dictionary with 'subject', 'text_body' and 'html_body'
        """
        return {
            "subject": self._render("email/new_order/subject.txt", context).strip(),
            "text_body": self._render("email/new_order/body.txt", context),
            "html_body": self._render("email/new_order/body.html", context),
        }

    def _render(self, template_name: str, context: dict[str, Any]) -> str:
        try:
            template = self.env.get_template(template_name)
        except TemplateNotFound as e:
            raise TemplateNotFoundError(
                f"Template not found: {template_name}", template_name=template_name
            ) from e

        try:
            return template.render(**context)
        except TemplateError as e:
            logger.error(
                "Template rendering failed",
                template_name=template_name,
                error=str(e),
            )
            raise TemplateRenderError(
                f"Failed to render template {template_name}: {e}",
                template_name=template_name,
            ) from e

    def _format_currency(self, value: Any) -> str:
        amount = Decimal(str(value)).quantize(Decimal("0.01"))
        return f"{self.currency} {amount:,.2f}"


_template_engine: Optional[TemplateEngine] = None


def get_template_engine() -> TemplateEngine:
    """Shared template engine, created on first use."""
    global _template_engine
    if _template_engine is None:
        _template_engine = TemplateEngine(currency=get_settings().currency)
    return _template_engine


def customer_status_message(status: OrderStatus, order_number: str) -> str:
    """Customer-facing message for an order status."""
    return get_template_engine().render_status_message(status, order_number)
