"""Human-readable order numbers.

Format: ``ORD`` + day, hour, minute and second of placement (UTC, two
digits each) + a three digit rolling counter, e.g. ``ORD19143005042``.
"""

import re
from dataclasses import dataclass
from datetime import datetime

ORDER_NUMBER_PREFIX = "ORD"
COUNTER_MODULUS = 1000

_ORDER_NUMBER_RE = re.compile(
    r"^ORD(?P<day>\d{2})(?P<hour>\d{2})(?P<minute>\d{2})(?P<second>\d{2})"
    r"(?P<counter>\d{3})$"
)


@dataclass(frozen=True)
class OrderNumberParts:
    day: int
    hour: int
    minute: int
    second: int
    counter: int


def generate_order_number(placed_at: datetime, existing_count: int) -> str:
    """Build an order number.

    Args:
        placed_at: Placement time in UTC
        existing_count: Number of orders already in the store; the counter
            is ``(existing_count + 1) mod 1000``

    Returns:
        Order number string
    """
    counter = (existing_count + 1) % COUNTER_MODULUS
    return (
        f"{ORDER_NUMBER_PREFIX}{placed_at:%d%H%M%S}{counter:03d}"
    )


def parse_order_number(order_number: str) -> OrderNumberParts:
    """Split an order number into its components.

    Raises:
        ValueError: If the string is not a well-formed order number
    """
    match = _ORDER_NUMBER_RE.match(order_number)
    if match is None:
        raise ValueError(f"Malformed order number: {order_number!r}")
    return OrderNumberParts(**{k: int(v) for k, v in match.groupdict().items()})
