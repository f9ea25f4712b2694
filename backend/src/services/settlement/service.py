"""
Cash settlement ledger for courier delivery sessions.

Tracks the cash a courier carries during a shift: the opening float, every
COD collection recorded by a DELIVERED transition, and the final
settlement against the deposited amount. Discrepancies are recorded as-is
and never corrected; a settled session is frozen.
"""

import uuid
from decimal import Decimal
from typing import TYPE_CHECKING, Optional, Sequence

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.logging import get_logger
from src.database.base import utc_now
from src.database.models.delivery_session import DeliverySession
from src.database.models.order import Order
from src.services.actors import Actor
from src.services.couriers.service import CourierService
from src.services.errors import (
    AlreadySettledError,
    NoActiveSessionError,
    NotFoundError,
    SessionAlreadyOpenError,
    SessionNotEndedError,
)
from src.services.orders.enums import OrderStatus
from src.services.orders.pricing import quantize
from src.services.orders.repository import OrderFilters, OrderRepository
from src.services.persistence import commit_or_conflict
from src.services.settlement.repository import (
    DeliverySessionRepository,
    OpenSessionExistsError,
)

if TYPE_CHECKING:
    from src.services.notifications.relay import NotificationRelay

logger = get_logger(__name__)


def recompute_totals(delivery_session: DeliverySession) -> None:
    """Recompute collection totals from the collections list."""
    total = sum(
        (Decimal(str(entry["amount"])) for entry in delivery_session.collections),
        Decimal("0"),
    )
    delivery_session.total_collected = quantize(total)
    delivery_session.total_to_deposit = quantize(
        total - Decimal(delivery_session.opening_float)
    )


class CashSettlementLedger:
    """
    Delivery session bookkeeping.

    Attributes:
        repository: Delivery session repository
        couriers: Courier service used to flip availability at shift
            boundaries
        relay: Notification relay for session events
    """

    def __init__(
        self,
        session: AsyncSession,
        relay: Optional["NotificationRelay"] = None,
        courier_service: Optional[CourierService] = None,
    ):
        self.session = session
        self.repository = DeliverySessionRepository(session)
        self.orders = OrderRepository(session)
        self.couriers = courier_service or CourierService(session, relay=relay)
        self.relay = relay

    async def start_session(
        self,
        courier_id: uuid.UUID,
        opening_float: Decimal = Decimal("0"),
    ) -> DeliverySession:
        """
        Open a delivery session and mark the courier available.

        Raises:
            NotFoundError: If the courier does not exist
            SessionAlreadyOpenError: If the courier already has an open session
        """
        courier = await self.couriers.get_courier(courier_id)

        if await self.repository.get_open_for_courier(courier_id) is not None:
            raise SessionAlreadyOpenError(
                "Courier already has an active delivery session",
                courier_id=str(courier_id),
            )

        now = utc_now()
        delivery_session = DeliverySession(
            courier_id=courier_id,
            courier_name=courier.name,
            session_date=now.date(),
            start_time=now,
            opening_float=quantize(opening_float),
            collections=[],
            total_collected=Decimal("0.00"),
            total_to_deposit=quantize(-opening_float),
            is_settled=False,
        )
        try:
            await self.repository.add(delivery_session)
        except OpenSessionExistsError as e:
            raise SessionAlreadyOpenError(str(e), **e.context) from e
        await self.session.commit()

        logger.info(
            "Delivery session started",
            session_id=str(delivery_session.id),
            courier_id=str(courier_id),
            opening_float=str(delivery_session.opening_float),
        )

        await self.couriers.set_availability(courier_id, True)
        if self.relay is not None:
            await self.relay.session_event("session_started", delivery_session)
        return delivery_session

    async def end_session(self, courier_id: uuid.UUID) -> DeliverySession:
        """
        Close the courier's open session and mark the courier unavailable.

        Raises:
            NoActiveSessionError: If the courier has no open session
        """
        delivery_session = await self.get_active_session(courier_id)
        if delivery_session is None:
            raise NoActiveSessionError(
                "No active delivery session found", courier_id=str(courier_id)
            )

        delivery_session.end_time = utc_now()
        await commit_or_conflict(
            self.session,
            "Delivery session was modified concurrently",
            session_id=str(delivery_session.id),
            courier_id=str(courier_id),
        )

        logger.info(
            "Delivery session ended",
            session_id=str(delivery_session.id),
            courier_id=str(courier_id),
            total_collected=str(delivery_session.total_collected),
            total_to_deposit=str(delivery_session.total_to_deposit),
        )

        await self.couriers.set_availability(courier_id, False)
        if self.relay is not None:
            await self.relay.session_event("session_ended", delivery_session)
        return delivery_session

    async def get_active_session(
        self, courier_id: uuid.UUID
    ) -> Optional[DeliverySession]:
        return await self.repository.get_open_for_courier(courier_id)

    async def record_collection(
        self,
        courier_id: uuid.UUID,
        order: Order,
        amount: Decimal,
        delivery_session: Optional[DeliverySession] = None,
    ) -> DeliverySession:
        """
        Append a cash collection to the courier's open session.

        The change is made in memory only; the caller commits it together
        with the order's DELIVERED transition.

        Raises:
            NoActiveSessionError: If the courier has no open session
        """
        if delivery_session is None:
            delivery_session = await self.get_active_session(courier_id)
        if delivery_session is None or not delivery_session.is_open:
            raise NoActiveSessionError(
                "No active delivery session to record the collection",
                courier_id=str(courier_id),
                order_id=str(order.id),
            )

        entry = {
            "order_id": str(order.id),
            "order_number": order.order_number,
            "amount": str(quantize(amount)),
            "collected_at": (order.cash_collected_at or utc_now()).isoformat(),
        }
        delivery_session.collections = [*delivery_session.collections, entry]
        recompute_totals(delivery_session)

        logger.info(
            "Cash collection recorded",
            session_id=str(delivery_session.id),
            courier_id=str(courier_id),
            order_id=str(order.id),
            amount=entry["amount"],
        )
        return delivery_session

    async def settle_session(
        self,
        session_id: uuid.UUID,
        deposited_amount: Decimal,
        settled_by: Actor,
        discrepancy_reason: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> DeliverySession:
        """
        Settle an ended session against the deposited cash.

        The discrepancy ``total_to_deposit - deposited_amount`` is stored on
        the session and returned through it.

        Raises:
            NotFoundError: If the session does not exist
            AlreadySettledError: If the session was already settled
            SessionNotEndedError: If the session is still open
        """
        delivery_session = await self.repository.get(session_id)
        if delivery_session is None:
            raise NotFoundError(
                f"Delivery session {session_id} not found", session_id=str(session_id)
            )
        if delivery_session.is_settled:
            raise AlreadySettledError(
                "Delivery session is already settled",
                session_id=str(session_id),
            )
        if delivery_session.end_time is None:
            raise SessionNotEndedError(
                "Session must be ended before settlement",
                session_id=str(session_id),
            )

        deposited = quantize(deposited_amount)
        delivery_session.deposited_amount = deposited
        delivery_session.discrepancy = quantize(
            Decimal(delivery_session.total_to_deposit) - deposited
        )
        delivery_session.discrepancy_reason = discrepancy_reason
        delivery_session.notes = notes
        delivery_session.settled_at = utc_now()
        delivery_session.settled_by = settled_by.id
        delivery_session.is_settled = True

        order_ids = [uuid.UUID(entry["order_id"]) for entry in delivery_session.collections]
        if order_ids:
            await self.session.execute(
                update(Order)
                .where(Order.id.in_(order_ids))
                .values(cash_is_settled=True, version=Order.version + 1)
                .execution_options(synchronize_session="fetch")
            )

        await commit_or_conflict(
            self.session,
            "Delivery session was modified concurrently",
            session_id=str(session_id),
        )

        logger.info(
            "Delivery session settled",
            session_id=str(session_id),
            deposited_amount=str(deposited),
            discrepancy=str(delivery_session.discrepancy),
            **settled_by.as_log_context(),
        )
        if delivery_session.discrepancy != 0:
            logger.warning(
                "Settlement discrepancy recorded",
                session_id=str(session_id),
                discrepancy=str(delivery_session.discrepancy),
                discrepancy_reason=discrepancy_reason,
            )

        if self.relay is not None:
            await self.relay.session_event("session_settled", delivery_session)
        return delivery_session

    async def list_sessions(
        self,
        courier_id: Optional[uuid.UUID] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Sequence[DeliverySession]:
        return await self.repository.find(courier_id=courier_id, limit=limit, offset=offset)

    async def list_active_sessions(self) -> Sequence[DeliverySession]:
        return await self.repository.find(open_only=True, limit=500)

    async def list_unsettled_sessions(self) -> Sequence[DeliverySession]:
        return await self.repository.find(unsettled_only=True, limit=500)

    async def delivery_overview(self) -> dict:
        """Courier, session and in-flight order counts for operators."""
        return {
            "couriers": await self.couriers.repository.count_by_state(),
            "sessions": await self.repository.count_by_state(),
            "orders_out_for_delivery": await self.orders.count(
                OrderFilters(status=OrderStatus.OUT_FOR_DELIVERY)
            ),
            "orders_awaiting_courier": await self.orders.count(
                OrderFilters(status=OrderStatus.READY)
            ),
        }
