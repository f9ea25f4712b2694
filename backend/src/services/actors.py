"""Acting identities and role capabilities.

Authentication happens upstream; the engine only receives an actor id and
role. This module defines the ``Actor`` value passed through every
operation and the capability table the API consults before calling a
service.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet

from src.services.orders.enums import ActorRole

SYSTEM_ACTOR_ID = "dispatch-coordinator"


class Capability(str, Enum):
    PLACE_ORDER = "place_order"
    VIEW_OWN_ORDERS = "view_own_orders"
    VIEW_ALL_ORDERS = "view_all_orders"
    CHANGE_ORDER_STATUS = "change_order_status"
    DISPATCH_ORDERS = "dispatch_orders"
    REGISTER_COURIERS = "register_couriers"
    VIEW_COURIERS = "view_couriers"
    REPORT_LOCATION = "report_location"
    RUN_SESSIONS = "run_sessions"
    SETTLE_SESSIONS = "settle_sessions"
    VIEW_SESSIONS = "view_sessions"


ROLE_CAPABILITIES: Dict[ActorRole, FrozenSet[Capability]] = {
    ActorRole.CUSTOMER: frozenset(
        {
            Capability.PLACE_ORDER,
            Capability.VIEW_OWN_ORDERS,
            Capability.CHANGE_ORDER_STATUS,
        }
    ),
    ActorRole.COURIER: frozenset(
        {
            Capability.VIEW_OWN_ORDERS,
            Capability.CHANGE_ORDER_STATUS,
            Capability.REPORT_LOCATION,
            Capability.RUN_SESSIONS,
            Capability.VIEW_SESSIONS,
        }
    ),
    ActorRole.OPERATOR: frozenset(
        {
            Capability.VIEW_ALL_ORDERS,
            Capability.CHANGE_ORDER_STATUS,
            Capability.DISPATCH_ORDERS,
            Capability.REGISTER_COURIERS,
            Capability.VIEW_COURIERS,
            Capability.SETTLE_SESSIONS,
            Capability.VIEW_SESSIONS,
        }
    ),
    ActorRole.SYSTEM: frozenset(
        {
            Capability.VIEW_ALL_ORDERS,
            Capability.CHANGE_ORDER_STATUS,
            Capability.DISPATCH_ORDERS,
        }
    ),
}


@dataclass(frozen=True)
class Actor:
    """Who is performing an operation and under which role."""

    id: str
    role: ActorRole

    @classmethod
    def system(cls) -> "Actor":
        return cls(id=SYSTEM_ACTOR_ID, role=ActorRole.SYSTEM)

    def can(self, capability: Capability) -> bool:
        return capability in ROLE_CAPABILITIES.get(self.role, frozenset())

    @property
    def is_operator(self) -> bool:
        return self.role in (ActorRole.OPERATOR, ActorRole.SYSTEM)

    def as_log_context(self) -> dict[str, str]:
        return {"actor_id": self.id, "actor_role": self.role.value}
