"""Order lifecycle enums and the transition/actor rule tables.

This module defines order status, payment method and actor role enums
together with the static tables the state machine consults: which status
edges exist and which roles may drive each edge.
"""

from enum import Enum
from typing import Dict, FrozenSet, Set, Tuple


class OrderStatus(str, Enum):
    """Order lifecycle status.

    Valid transitions:
    - PENDING -> READY, CANCELLED
    - READY -> OUT_FOR_DELIVERY, CANCELLED
    - OUT_FOR_DELIVERY -> DELIVERED
    - DELIVERED -> (terminal state)
    - CANCELLED -> (terminal state)
    """

    PENDING = "PENDING"
    READY = "READY"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"

    @classmethod
    def from_string(cls, value: str) -> "OrderStatus":
        """Convert string to OrderStatus enum.

        Args:
            value: String representation of status, any case

        Returns:
            OrderStatus enum value

        Raises:
            ValueError: If value is not a valid status
        """
        try:
            return cls(value.strip().upper())
        except ValueError:
            valid_values = ", ".join(s.value for s in cls)
            raise ValueError(
                f"Invalid order status: {value}. Valid values are: {valid_values}"
            )

    def is_terminal(self) -> bool:
        """Check if status is a terminal state (DELIVERED, CANCELLED)."""
        return self in {OrderStatus.DELIVERED, OrderStatus.CANCELLED}

    def can_cancel(self) -> bool:
        """Check if order can be cancelled from current status."""
        return OrderStatus.CANCELLED in ORDER_STATUS_TRANSITIONS[self]

    @property
    def display_name(self) -> str:
        return self.value.replace("_", " ").title()


class PaymentMethod(str, Enum):
    """How the customer pays for the order."""

    PREPAID = "PREPAID"
    CASH_ON_DELIVERY = "CASH_ON_DELIVERY"


class ActorRole(str, Enum):
    """Role under which an actor drives an operation.

    SYSTEM is used by the dispatch coordinator and background sweeps.
    """

    CUSTOMER = "customer"
    COURIER = "courier"
    OPERATOR = "operator"
    SYSTEM = "system"


ORDER_STATUS_TRANSITIONS: Dict[OrderStatus, Set[OrderStatus]] = {
    OrderStatus.PENDING: {
        OrderStatus.READY,
        OrderStatus.CANCELLED,
    },
    OrderStatus.READY: {
        OrderStatus.OUT_FOR_DELIVERY,
        OrderStatus.CANCELLED,
    },
    OrderStatus.OUT_FOR_DELIVERY: {
        OrderStatus.DELIVERED,
    },
    OrderStatus.DELIVERED: set(),  # Terminal
    OrderStatus.CANCELLED: set(),  # Terminal
}

# Customers may only act on their own orders; couriers only on orders
# assigned to them. Ownership is checked by the state machine.
TRANSITION_ACTORS: Dict[Tuple[OrderStatus, OrderStatus], FrozenSet[ActorRole]] = {
    (OrderStatus.PENDING, OrderStatus.READY): frozenset({ActorRole.OPERATOR}),
    (OrderStatus.PENDING, OrderStatus.CANCELLED): frozenset(
        {ActorRole.OPERATOR, ActorRole.CUSTOMER}
    ),
    (OrderStatus.READY, OrderStatus.OUT_FOR_DELIVERY): frozenset(
        {ActorRole.SYSTEM, ActorRole.OPERATOR}
    ),
    (OrderStatus.READY, OrderStatus.CANCELLED): frozenset({ActorRole.OPERATOR}),
    (OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED): frozenset(
        {ActorRole.COURIER}
    ),
}


def validate_order_status_transition(current: OrderStatus, new: OrderStatus) -> bool:
    """Validate if order status transition is allowed.

    Args:
        current: Current order status
        new: Desired new status

    Returns:
        True if the edge exists in the lifecycle graph
    """
    return new in ORDER_STATUS_TRANSITIONS.get(current, set())


def get_allowed_order_transitions(current: OrderStatus) -> Set[OrderStatus]:
    """Get the statuses reachable in one step from ``current``."""
    return set(ORDER_STATUS_TRANSITIONS.get(current, set()))


def get_transition_actors(
    current: OrderStatus, new: OrderStatus
) -> FrozenSet[ActorRole]:
    """Get the roles allowed to drive an edge; empty if the edge does not exist."""
    return TRANSITION_ACTORS.get((current, new), frozenset())
