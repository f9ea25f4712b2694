"""Order state machine implementation with transition validation.

This module implements the OrderStateMachine class that validates and
applies order lifecycle transitions in memory: edge checks, actor role
and ownership checks, per-edge guards, the history append and per-status
side effects. Persistence is left to the caller so a transition can share
one store transaction with the settlement ledger.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Set

from src.core.logging import get_logger
from src.database.base import utc_now
from src.database.models.courier import Courier
from src.database.models.delivery_session import DeliverySession
from src.database.models.order import Order, OrderStatusHistory
from src.services.actors import Actor
from src.services.errors import (
    ForbiddenError,
    InvalidTransitionError,
    NoActiveSessionError,
)
from src.services.orders.enums import (
    ActorRole,
    OrderStatus,
    get_allowed_order_transitions,
    get_transition_actors,
    validate_order_status_transition,
)
from src.services.orders.pricing import quantize

logger = get_logger(__name__)

HISTORY_TICK = timedelta(microseconds=1)


class StateTransitionError(InvalidTransitionError):
    """Raised when an invalid state transition is attempted."""

    def __init__(
        self,
        message: str,
        current_state: OrderStatus,
        target_state: OrderStatus,
        **context: Any,
    ):
        super().__init__(
            message,
            current_state=current_state.value,
            target_state=target_state.value,
            **context,
        )
        self.current_state = current_state
        self.target_state = target_state


@dataclass
class TransitionContext:
    """Inputs some transitions need besides the order and actor.

    Attributes:
        courier: Claimed courier, required to enter OUT_FOR_DELIVERY on an
            unassigned order
        active_session: The assigned courier's open delivery session,
            required to deliver a COD order
        collected_amount: Cash actually collected; defaults to the order's
            final amount
    """

    courier: Optional[Courier] = None
    active_session: Optional[DeliverySession] = None
    collected_amount: Optional[Decimal] = None


Guard = Callable[[Order, Actor, TransitionContext], None]
SideEffect = Callable[[Order, Actor, TransitionContext, datetime], None]


class OrderStateMachine:
    """State machine for order lifecycle transitions.

    Guards raise on failure; side effects mutate the order once the new
    status and history entry are in place.
    """

    def __init__(self) -> None:
        self._transition_guards: Dict[tuple[OrderStatus, OrderStatus], Guard] = (
            self._initialize_guards()
        )
        self._side_effects: Dict[OrderStatus, SideEffect] = (
            self._initialize_side_effects()
        )

    def _initialize_guards(self) -> Dict[tuple[OrderStatus, OrderStatus], Guard]:
        return {
            (OrderStatus.READY, OrderStatus.OUT_FOR_DELIVERY): (
                self._guard_courier_assigned
            ),
            (OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED): (
                self._guard_delivery_confirmed
            ),
        }

    def _initialize_side_effects(self) -> Dict[OrderStatus, SideEffect]:
        return {
            OrderStatus.OUT_FOR_DELIVERY: self._effect_out_for_delivery,
            OrderStatus.DELIVERED: self._effect_delivered,
            OrderStatus.CANCELLED: self._effect_cancelled,
        }

    def validate_transition(
        self,
        order: Order,
        target_status: OrderStatus,
        actor: Actor,
        context: Optional[TransitionContext] = None,
    ) -> None:
        """Validate that ``actor`` may move ``order`` to ``target_status``.

        Args:
            order: Order to validate
            target_status: Desired target status
            actor: Actor requesting the transition
            context: Extra inputs needed by guarded edges

        Raises:
            StateTransitionError: If the edge does not exist or a guard fails
            ForbiddenError: If the actor may not drive this edge
            NoActiveSessionError: If a COD delivery has no open session
        """
        context = context or TransitionContext()
        current_status = OrderStatus(order.status)

        if not validate_order_status_transition(current_status, target_status):
            allowed = get_allowed_order_transitions(current_status)
            raise StateTransitionError(
                f"Invalid transition from {current_status.value} to "
                f"{target_status.value}",
                current_state=current_status,
                target_state=target_status,
                order_id=str(order.id),
                allowed_transitions=sorted(s.value for s in allowed),
            )

        allowed_roles = get_transition_actors(current_status, target_status)
        if actor.role not in allowed_roles:
            raise ForbiddenError(
                f"Role {actor.role.value} cannot move an order from "
                f"{current_status.value} to {target_status.value}",
                order_id=str(order.id),
                **actor.as_log_context(),
            )

        if actor.role == ActorRole.CUSTOMER and order.customer_id != actor.id:
            raise ForbiddenError(
                "Customers can only change their own orders",
                order_id=str(order.id),
                **actor.as_log_context(),
            )

        guard = self._transition_guards.get((current_status, target_status))
        if guard is not None:
            guard(order, actor, context)

    def apply_transition(
        self,
        order: Order,
        target_status: OrderStatus,
        actor: Actor,
        note: Optional[str] = None,
        context: Optional[TransitionContext] = None,
    ) -> OrderStatusHistory:
        """Apply a transition to ``order`` in memory.

        Validates, sets the new status, appends exactly one history entry and
        runs the side effect for the target status. Nothing is flushed; the
        caller commits, and the version check happens at that point.

        Args:
            order: Order to transition
            target_status: Target status
            actor: Actor driving the transition
            note: Optional note recorded on the history entry
            context: Extra inputs needed by guarded edges

        Returns:
            The appended history entry
        """
        context = context or TransitionContext()
        self.validate_transition(order, target_status, actor, context)

        old_status = OrderStatus(order.status)
        entry = self.record_status(order, target_status, actor, note)
        order.status = target_status

        side_effect = self._side_effects.get(target_status)
        if side_effect is not None:
            side_effect(order, actor, context, entry.timestamp)

        logger.info(
            "Order transition applied",
            order_id=str(order.id),
            order_number=order.order_number,
            transition=f"{old_status.value}->{target_status.value}",
            **actor.as_log_context(),
        )
        return entry

    def record_status(
        self,
        order: Order,
        status: OrderStatus,
        actor: Actor,
        note: Optional[str] = None,
    ) -> OrderStatusHistory:
        """Append a history entry with a strictly increasing timestamp.

        Also used at placement to record the initial PENDING entry.
        """
        history = order.status_history
        timestamp = utc_now()
        if history and timestamp <= history[-1].timestamp:
            timestamp = history[-1].timestamp + HISTORY_TICK

        entry = OrderStatusHistory(
            sequence=len(history) + 1,
            status=status,
            timestamp=timestamp,
            actor_id=actor.id,
            actor_role=actor.role,
            note=note,
        )
        history.append(entry)
        return entry

    def get_allowed_transitions(self, order: Order) -> Set[OrderStatus]:
        return get_allowed_order_transitions(OrderStatus(order.status))

    def can_cancel(self, order: Order) -> bool:
        return OrderStatus(order.status).can_cancel()

    # Transition Guards

    def _guard_courier_assigned(
        self, order: Order, actor: Actor, context: TransitionContext
    ) -> None:
        if order.courier_id is None and context.courier is None:
            raise StateTransitionError(
                "An order needs an assigned courier before it goes out for delivery",
                current_state=OrderStatus.READY,
                target_state=OrderStatus.OUT_FOR_DELIVERY,
                order_id=str(order.id),
                guard_failed=True,
            )

    def _guard_delivery_confirmed(
        self, order: Order, actor: Actor, context: TransitionContext
    ) -> None:
        if order.courier_id is None or str(order.courier_id) != actor.id:
            raise ForbiddenError(
                "Only the assigned courier can mark an order delivered",
                order_id=str(order.id),
                **actor.as_log_context(),
            )

        if order.is_cash_on_delivery:
            session = context.active_session
            if session is None or not session.is_open:
                raise NoActiveSessionError(
                    "Courier has no active delivery session to record the cash "
                    "collection",
                    order_id=str(order.id),
                    courier_id=actor.id,
                )
            if session.courier_id != order.courier_id:
                raise NoActiveSessionError(
                    "Delivery session does not belong to the assigned courier",
                    order_id=str(order.id),
                    session_id=str(session.id),
                )

    # Side Effects

    def _effect_out_for_delivery(
        self,
        order: Order,
        actor: Actor,
        context: TransitionContext,
        at: datetime,
    ) -> None:
        courier = context.courier
        if courier is not None:
            order.courier_id = courier.id
            order.courier_snapshot = courier.snapshot
            order.assigned_at = at
        order.picked_up_at = at

    def _effect_delivered(
        self,
        order: Order,
        actor: Actor,
        context: TransitionContext,
        at: datetime,
    ) -> None:
        order.delivered_at = at
        if order.is_cash_on_delivery:
            collected = context.collected_amount
            if collected is None:
                collected = order.final_amount
            order.cash_expected_amount = order.final_amount
            order.cash_collected_amount = quantize(collected)
            order.cash_collected_at = at
            order.cash_is_settled = False

    def _effect_cancelled(
        self,
        order: Order,
        actor: Actor,
        context: TransitionContext,
        at: datetime,
    ) -> None:
        order.cancellation_reason = order.status_history[-1].note


def get_order_state_machine() -> OrderStateMachine:
    """Factory function to create an OrderStateMachine instance."""
    return OrderStateMachine()
