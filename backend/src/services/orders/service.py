"""
Order service orchestrating placement and lifecycle transitions.

This module implements the OrderService class: placing orders (numbering,
pricing, initial history), applying state machine transitions with an
optimistic write, recording COD cash collections in the courier's delivery
session within the same transaction, and handing every accepted change to
the notification relay before returning.
"""

import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from src.core.config import Settings, get_settings
from src.core.logging import get_logger, log_performance
from src.database.base import utc_now
from src.database.models.courier import Courier
from src.database.models.order import Order
from src.schemas.orders import OrderCreateRequest
from src.services.actors import Actor
from src.services.couriers.repository import CourierRepository
from src.services.errors import EngineError, ForbiddenError, NotFoundError
from src.services.notifications.templates import customer_status_message
from src.services.orders.enums import ActorRole, OrderStatus
from src.services.orders.numbering import generate_order_number
from src.services.orders.pricing import calculate_pricing, line_subtotal
from src.services.orders.repository import (
    OrderFilters,
    OrderNumberCollisionError,
    OrderRepository,
)
from src.services.orders.state_machine import (
    OrderStateMachine,
    TransitionContext,
    get_order_state_machine,
)
from src.services.persistence import commit_or_conflict
from src.services.settlement.service import CashSettlementLedger

if TYPE_CHECKING:
    from src.services.notifications.relay import NotificationRelay

logger = get_logger(__name__)

MAX_ORDER_NUMBER_ATTEMPTS = 5


@dataclass
class OrderTracking:
    order: Order
    courier: Optional[Courier] = None


def _average(total: Decimal, count: int) -> Decimal:
    if not count:
        return Decimal("0.00")
    return (total / count).quantize(Decimal("0.01"))


class OrderService:
    """
    Order service for placement, reads and lifecycle transitions.

    Attributes:
        session: Async database session; one per request or background task
        repository: Order repository for data access
        state_machine: State machine for order lifecycle rules
        ledger: Cash settlement ledger for COD deliveries
        relay: Notification relay, or None to skip publishing
    """

    def __init__(
        self,
        session: AsyncSession,
        relay: Optional["NotificationRelay"] = None,
        ledger: Optional[CashSettlementLedger] = None,
        state_machine: Optional[OrderStateMachine] = None,
        settings: Optional[Settings] = None,
    ):
        self.session = session
        self.repository = OrderRepository(session)
        self.state_machine = state_machine or get_order_state_machine()
        self.ledger = ledger or CashSettlementLedger(session, relay=relay)
        self.relay = relay
        self.settings = settings or get_settings()

    async def place_order(self, actor: Actor, request: OrderCreateRequest) -> Order:
        """
        Place a new order in PENDING.

        The order number counter is derived from the current order count; a
        collision with a concurrent placement retries with the next counter.

        Args:
            actor: Customer placing the order
            request: Validated placement request

        Returns:
            The persisted order
        """
        pricing = calculate_pricing(
            request.items,
            delivery_fee=self.settings.delivery_fee,
            tax_rate_percent=self.settings.tax_rate_percent,
        )
        items = [
            {**item.model_dump(mode="json"), "subtotal": str(line_subtotal(item))}
            for item in request.items
        ]

        existing = await self.repository.count()
        for attempt in range(MAX_ORDER_NUMBER_ATTEMPTS):
            placed_at = utc_now()
            order = Order(
                order_number=generate_order_number(placed_at, existing + attempt),
                customer_id=actor.id,
                customer=request.customer.model_dump(mode="json"),
                items=items,
                items_total=pricing.items_total,
                delivery_fee=pricing.delivery_fee,
                tax=pricing.tax,
                discount=pricing.discount,
                final_amount=pricing.final_amount,
                delivery_address=request.delivery_address.model_dump(mode="json"),
                status=OrderStatus.PENDING,
                payment_method=request.payment_method,
                special_instructions=request.special_instructions,
            )
            self.state_machine.record_status(
                order, OrderStatus.PENDING, actor, note="Order placed"
            )
            try:
                await self.repository.add(order)
                await self.session.commit()
                break
            except OrderNumberCollisionError:
                if attempt == MAX_ORDER_NUMBER_ATTEMPTS - 1:
                    raise

        logger.info(
            "Order placed",
            order_id=str(order.id),
            order_number=order.order_number,
            final_amount=str(order.final_amount),
            payment_method=order.payment_method.value,
            **actor.as_log_context(),
        )

        if self.relay is not None:
            await self.relay.order_placed(order)
        return order

    async def transition(
        self,
        order_id: uuid.UUID,
        target_status: OrderStatus,
        actor: Actor,
        note: Optional[str] = None,
        collected_amount: Optional[Decimal] = None,
    ) -> Order:
        """
        Move an order to ``target_status``.

        For a COD delivery the courier's open session is loaded first and
        the cash collection is appended to it in the same commit as the
        status change.

        Args:
            order_id: Order to transition
            target_status: Desired status
            actor: Actor driving the change
            note: Optional note stored on the history entry
            collected_amount: Cash collected on a COD delivery

        Returns:
            The updated order

        Raises:
            NotFoundError: If the order does not exist
            InvalidTransitionError: If the edge is not allowed
            ForbiddenError: If the actor may not drive the edge
            NoActiveSessionError: If a COD delivery has no open session
            ConcurrencyConflictError: If another writer changed the order first
        """
        order = await self._get_or_raise(order_id)
        context = TransitionContext(collected_amount=collected_amount)
        if (
            target_status == OrderStatus.DELIVERED
            and order.is_cash_on_delivery
            and order.courier_id is not None
        ):
            context.active_session = await self.ledger.get_active_session(
                order.courier_id
            )
        return await self.apply(order, target_status, actor, note, context)

    async def start_delivery(
        self,
        order: Order,
        courier: Courier,
        actor: Actor,
        note: Optional[str] = None,
    ) -> Order:
        """
        Move a READY order out for delivery with a claimed courier.

        Used by the dispatch coordinator after a successful courier claim.
        """
        return await self.apply(
            order,
            OrderStatus.OUT_FOR_DELIVERY,
            actor,
            note,
            TransitionContext(courier=courier),
        )

    async def apply(
        self,
        order: Order,
        target_status: OrderStatus,
        actor: Actor,
        note: Optional[str],
        context: TransitionContext,
    ) -> Order:
        """Apply, persist and publish one transition of an already loaded order."""
        order_id = str(order.id)
        previous_status = OrderStatus(order.status)
        log_context = {
            "order_id": order_id,
            "target_status": target_status.value,
            **actor.as_log_context(),
        }

        try:
            async with log_performance(logger, "order_transition", **log_context):
                self.state_machine.apply_transition(
                    order, target_status, actor, note, context
                )
                if (
                    target_status == OrderStatus.DELIVERED
                    and order.is_cash_on_delivery
                ):
                    await self.ledger.record_collection(
                        order.courier_id,
                        order,
                        order.cash_collected_amount,
                        delivery_session=context.active_session,
                    )
                await commit_or_conflict(
                    self.session,
                    "Order was modified concurrently; reload and retry",
                    **log_context,
                )
        except EngineError as e:
            if self.session.in_transaction():
                await self.session.rollback()
            logger.warning(
                "Order transition rejected",
                error_kind=e.kind.value,
                error=e.message,
                **log_context,
            )
            raise

        if self.relay is not None:
            await self.relay.order_transitioned(
                order, previous_status, actor, courier=context.courier
            )
        return order

    async def cancel_order(
        self, order_id: uuid.UUID, actor: Actor, reason: Optional[str] = None
    ) -> Order:
        """Cancel an order from PENDING or READY."""
        return await self.transition(
            order_id, OrderStatus.CANCELLED, actor, note=reason or "Cancelled"
        )

    async def get_order(
        self, order_id: uuid.UUID, actor: Optional[Actor] = None
    ) -> Order:
        """
        Get an order, enforcing visibility for customers and couriers.

        Raises:
            NotFoundError: If the order does not exist
            ForbiddenError: If the actor may not see the order
        """
        order = await self._get_or_raise(order_id)
        if actor is not None:
            self._check_visible(order, actor)
        return order

    async def get_order_by_number(
        self, order_number: str, actor: Optional[Actor] = None
    ) -> Order:
        order = await self.repository.get_by_number(order_number)
        if order is None:
            raise NotFoundError(
                f"Order {order_number} not found", order_number=order_number
            )
        if actor is not None:
            self._check_visible(order, actor)
        return order

    async def list_orders(
        self,
        filters: Optional[OrderFilters] = None,
        sort: str = "-created_at",
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[Sequence[Order], int]:
        """
        List orders with the total count for the same filters.

        Returns:
            Tuple of (orders, total_count)
        """
        orders = await self.repository.find(filters, sort=sort, limit=limit, offset=offset)
        total = await self.repository.count(filters)
        return orders, total

    async def count_orders(self, filters: Optional[OrderFilters] = None) -> int:
        return await self.repository.count(filters)

    async def list_assigned_orders(
        self, courier_id: uuid.UUID, include_delivered: bool = False
    ) -> Sequence[Order]:
        """Orders assigned to a courier; by default only those still on the road."""
        filters = OrderFilters(courier_id=courier_id)
        if not include_delivered:
            filters.status = OrderStatus.OUT_FOR_DELIVERY
        return await self.repository.find(filters, sort="-updated_at", limit=100)

    async def track_order(self, order_id: uuid.UUID, actor: Actor) -> OrderTracking:
        """
        Status, history and the assigned courier's last reported position.

        Raises:
            NotFoundError: If the order does not exist
            ForbiddenError: If the actor may not see the order
        """
        order = await self.get_order(order_id, actor)
        courier = None
        if order.courier_id is not None:
            courier = await CourierRepository(self.session).get(order.courier_id)
        return OrderTracking(order=order, courier=courier)

    async def order_stats(self) -> dict[str, Any]:
        """Order counts and revenue overall, per status and per payment method."""
        by_status = await self.repository.totals_by_status()
        by_payment_method = await self.repository.totals_by_payment_method()

        total_orders = sum(count for count, _ in by_status.values())
        total_revenue = sum((revenue for _, revenue in by_status.values()), Decimal("0.00"))
        return {
            "total_orders": total_orders,
            "total_revenue": total_revenue,
            "average_order_value": _average(total_revenue, total_orders),
            "by_status": [
                {
                    "status": status,
                    "count": count,
                    "revenue": revenue,
                    "average_order_value": _average(revenue, count),
                }
                for status, (count, revenue) in sorted(
                    by_status.items(), key=lambda item: item[0].value
                )
            ],
            "by_payment_method": [
                {"payment_method": method, "count": count, "revenue": revenue}
                for method, (count, revenue) in sorted(
                    by_payment_method.items(), key=lambda item: item[0].value
                )
            ],
        }

    def customer_status_message(self, order: Order) -> str:
        """Message shown to the customer for the order's current status."""
        return customer_status_message(OrderStatus(order.status), order.order_number)

    async def _get_or_raise(self, order_id: uuid.UUID) -> Order:
        order = await self.repository.get(order_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found", order_id=str(order_id))
        return order

    def _check_visible(self, order: Order, actor: Actor) -> None:
        if actor.role == ActorRole.CUSTOMER and order.customer_id != actor.id:
            raise ForbiddenError(
                "Customers can only view their own orders",
                order_id=str(order.id),
                **actor.as_log_context(),
            )
        if actor.role == ActorRole.COURIER and str(order.courier_id) != actor.id:
            raise ForbiddenError(
                "Couriers can only view orders assigned to them",
                order_id=str(order.id),
                **actor.as_log_context(),
            )
