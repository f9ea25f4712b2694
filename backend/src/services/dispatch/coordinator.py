"""
Dispatch coordinator matching READY orders with available couriers.

A dispatch attempt asks the geo index for the nearest available couriers
and tries to claim them one by one. The first courier whose availability
flips from true to false in the store wins; the order then moves
READY -> OUT_FOR_DELIVERY with that courier. If the transition fails the
claim is released again, and a failed release is escalated as fatal.

Any failure after a successful claim releases it. The claim, transition
and release run shielded from the caller's cancellation: a cancelled
caller waits for the attempt to finish on its still-open session, so a
dropped request can never leave a claimed courier without an order.
"""

import asyncio
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.cache.redis_client import RedisClient
from src.core.config import Settings, get_settings
from src.core.logging import get_logger, log_performance
from src.database.models.courier import Courier
from src.database.models.order import Order
from src.services.actors import Actor
from src.services.couriers.repository import CourierRepository
from src.services.dispatch.geo import GeoPoint, haversine_distance
from src.services.dispatch.geo_index import (
    CourierCandidate,
    GeoIndex,
    build_geo_index,
)
from src.services.errors import (
    CourierRollbackError,
    EngineError,
    InvalidTransitionError,
    NotFoundError,
)
from src.services.orders.enums import OrderStatus
from src.services.orders.service import OrderService

if TYPE_CHECKING:
    from src.services.notifications.relay import NotificationRelay

logger = get_logger(__name__)


class DispatchOutcome(str, Enum):
    ASSIGNED = "ASSIGNED"
    NO_COURIER_AVAILABLE = "NO_COURIER_AVAILABLE"


@dataclass(frozen=True)
class DispatchResult:
    """
    Outcome of one dispatch attempt.

    Attributes:
        outcome: ASSIGNED or NO_COURIER_AVAILABLE
        order_id: Order that was dispatched
        courier_id: Winning courier, None when no courier was available
        distance_meters: Courier distance from the delivery point
        candidates_tried: Candidates whose claim was attempted
        message: Operator-facing description of the outcome
    """

    outcome: DispatchOutcome
    order_id: uuid.UUID
    courier_id: Optional[uuid.UUID] = None
    distance_meters: Optional[float] = None
    candidates_tried: int = 0
    message: Optional[str] = None

    @property
    def assigned(self) -> bool:
        return self.outcome == DispatchOutcome.ASSIGNED


class DispatchCoordinator:
    """
    Courier matching for READY orders.

    Attributes:
        session: Async database session shared with the order service
        geo_index: Nearest-available-courier lookup
        orders: Order service used for the OUT_FOR_DELIVERY transition
        couriers: Courier repository providing the atomic claim
        relay: Notification relay for dispatch outcomes
    """

    def __init__(
        self,
        session: AsyncSession,
        geo_index: GeoIndex,
        relay: Optional["NotificationRelay"] = None,
        order_service: Optional[OrderService] = None,
        settings: Optional[Settings] = None,
    ):
        self.session = session
        self.geo_index = geo_index
        self.relay = relay
        self.settings = settings or get_settings()
        self.orders = order_service or OrderService(
            session, relay=relay, settings=self.settings
        )
        self.couriers = CourierRepository(session)

    async def dispatch_ready(self, order_id: uuid.UUID) -> DispatchResult:
        """
        Try to assign the nearest available courier to a READY order.

        Returns:
            ASSIGNED with the winning courier, or NO_COURIER_AVAILABLE when
            no candidate could be claimed or the geo query timed out

        Raises:
            NotFoundError: If the order does not exist
            InvalidTransitionError: If the order is not READY
            CourierRollbackError: If a failed transition could not release
                the claimed courier
        """
        order = await self._get_ready_order(order_id)
        point = GeoPoint(*order.delivery_point)

        try:
            candidates = await asyncio.wait_for(
                self.geo_index.nearest_available(
                    point,
                    self.settings.dispatch_max_radius_meters,
                    self.settings.dispatch_candidate_limit,
                ),
                timeout=self.settings.geo_query_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Geo query timed out",
                order_id=str(order_id),
                timeout_seconds=self.settings.geo_query_timeout_seconds,
            )
            return await self._no_courier(order, 0, "Courier lookup timed out")

        tried = 0
        for candidate in candidates:
            tried += 1
            courier = await self._claim_and_start(
                order, candidate.courier_id, Actor.system()
            )
            if courier is not None:
                return self._assigned(order, candidate, tried)

        return await self._no_courier(
            order,
            tried,
            "No available courier within range"
            if not candidates
            else "Every nearby courier was claimed by another order",
        )

    async def assign_courier(
        self, order_id: uuid.UUID, courier_id: uuid.UUID, actor: Actor
    ) -> DispatchResult:
        """
        Manually assign a specific courier to a READY order.

        Uses the same claim and rollback path as automatic dispatch.

        Raises:
            NotFoundError: If the order or courier does not exist
            InvalidTransitionError: If the order is not READY
            EngineError: CONFLICT if the courier is not available
        """
        order = await self._get_ready_order(order_id)
        if await self.couriers.get(courier_id) is None:
            raise NotFoundError(
                f"Courier {courier_id} not found", courier_id=str(courier_id)
            )

        courier = await self._claim_and_start(order, courier_id, actor)
        if courier is None:
            raise EngineError(
                "Courier is not available",
                order_id=str(order_id),
                courier_id=str(courier_id),
            )
        return self._assigned(
            order,
            CourierCandidate(courier_id=courier_id, distance_meters=self._distance(order, courier)),
            1,
        )

    async def _claim_and_start(
        self, order: Order, courier_id: uuid.UUID, actor: Actor
    ) -> Optional[Courier]:
        """
        Run one claim attempt to completion even if the caller is cancelled.

        The attempt keeps running on this coordinator's session, so the
        caller is held until it finishes and only then sees the cancellation;
        the session therefore outlives the claim, transition and rollback.
        """
        attempt = asyncio.ensure_future(self._attempt_claim(order, courier_id, actor))
        cancelled = False
        while True:
            try:
                courier = await asyncio.shield(attempt)
                break
            except asyncio.CancelledError:
                if attempt.done():
                    raise
                cancelled = True
                logger.warning(
                    "Dispatch cancelled during courier claim; finishing the attempt",
                    order_id=str(order.id),
                    courier_id=str(courier_id),
                )
        if cancelled:
            raise asyncio.CancelledError()
        return courier

    async def _attempt_claim(
        self, order: Order, courier_id: uuid.UUID, actor: Actor
    ) -> Optional[Courier]:
        """Claim a courier and move the order out for delivery; None if the claim lost."""
        order_key = str(order.id)
        courier_key = str(courier_id)

        claimed = await self.couriers.claim(courier_id)
        await self.session.commit()
        if not claimed:
            logger.debug("Courier claim lost", order_id=order_key, courier_id=courier_key)
            return None

        position: tuple[Optional[float], Optional[float]] = (None, None)
        try:
            courier = await self.couriers.get(courier_id)
            position = (courier.latitude, courier.longitude)
            await self.geo_index.remove(courier_id)
            async with log_performance(
                logger, "dispatch_start_delivery", order_id=order_key, courier_id=courier_key
            ):
                await self.orders.start_delivery(
                    order, courier, actor, note=f"Assigned to {courier.name}"
                )
        except Exception as e:
            await self._release(order_key, courier_id, position, e)
            raise

        return courier

    async def _release(
        self,
        order_key: str,
        courier_id: uuid.UUID,
        position: tuple[Optional[float], Optional[float]],
        cause: Exception,
    ) -> None:
        courier_key = str(courier_id)
        reason = cause.message if isinstance(cause, EngineError) else repr(cause)
        try:
            await self.session.rollback()
            released = await self.couriers.release(courier_id)
            await self.session.commit()
        except Exception as e:
            released = False
            logger.critical(
                "Courier claim rollback raised",
                order_id=order_key,
                courier_id=courier_key,
                error=str(e),
            )

        if not released:
            logger.critical(
                "Courier claim rollback failed; manual reconciliation required",
                order_id=order_key,
                courier_id=courier_key,
                cause=reason,
            )
            raise CourierRollbackError(
                "Failed to release claimed courier after a failed transition",
                order_id=order_key,
                courier_id=courier_key,
                cause=reason,
            ) from cause

        latitude, longitude = position
        if latitude is not None and longitude is not None:
            try:
                await self.geo_index.upsert(courier_id, latitude, longitude)
            except Exception as e:
                logger.error(
                    "Released courier could not be re-indexed",
                    order_id=order_key,
                    courier_id=courier_key,
                    error=str(e),
                )
        logger.warning(
            "Courier claim rolled back",
            order_id=order_key,
            courier_id=courier_key,
            cause=reason,
        )

    async def _get_ready_order(self, order_id: uuid.UUID) -> Order:
        order = await self.orders.get_order(order_id)
        if OrderStatus(order.status) != OrderStatus.READY:
            raise InvalidTransitionError(
                f"Only READY orders can be dispatched; order is {order.status.value}",
                order_id=str(order_id),
                status=order.status.value,
            )
        return order

    def _assigned(
        self, order: Order, candidate: CourierCandidate, tried: int
    ) -> DispatchResult:
        logger.info(
            "Order dispatched",
            order_id=str(order.id),
            courier_id=str(candidate.courier_id),
            distance_meters=round(candidate.distance_meters, 1),
            candidates_tried=tried,
        )
        return DispatchResult(
            outcome=DispatchOutcome.ASSIGNED,
            order_id=order.id,
            courier_id=candidate.courier_id,
            distance_meters=candidate.distance_meters,
            candidates_tried=tried,
            message="Courier assigned",
        )

    async def _no_courier(self, order: Order, tried: int, message: str) -> DispatchResult:
        result = DispatchResult(
            outcome=DispatchOutcome.NO_COURIER_AVAILABLE,
            order_id=order.id,
            candidates_tried=tried,
            message=message,
        )
        logger.info(
            "No courier available",
            order_id=str(order.id),
            candidates_tried=tried,
            reason=message,
        )
        if self.relay is not None:
            await self.relay.dispatch_attempted(order, result)
        return result

    @staticmethod
    def _distance(order: Order, courier: Courier) -> float:
        if not courier.has_location:
            return 0.0
        latitude, longitude = order.delivery_point
        return haversine_distance(
            latitude, longitude, courier.latitude, courier.longitude
        )


class DispatchSweeper:
    """
    Background re-dispatch of READY orders that have no courier.

    Runs every ``dispatch_sweep_interval_seconds`` and immediately when
    triggered, e.g. after a courier becomes available. Each order is
    dispatched in its own session.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        relay: Optional["NotificationRelay"] = None,
        redis_client: Optional[RedisClient] = None,
        settings: Optional[Settings] = None,
    ):
        self.session_factory = session_factory
        self.relay = relay
        self.redis_client = redis_client
        self.settings = settings or get_settings()
        self._wakeup = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    def trigger(self) -> None:
        self._wakeup.set()

    async def sweep_ready_orders(self, limit: Optional[int] = None) -> list[DispatchResult]:
        """
        Dispatch unassigned READY orders, oldest first.

        Orders that changed status meanwhile are skipped.

        Raises:
            CourierRollbackError: If a claimed courier could not be released
        """
        limit = limit or self.settings.dispatch_sweep_batch_size
        async with self.session_factory() as session:
            coordinator = self._coordinator(session)
            order_ids = await coordinator.orders.repository.find_ready_unassigned(limit)

        results = []
        for order_id in order_ids:
            async with self.session_factory() as session:
                coordinator = self._coordinator(session)
                try:
                    results.append(await coordinator.dispatch_ready(order_id))
                except CourierRollbackError:
                    raise
                except EngineError as e:
                    logger.warning(
                        "Sweep dispatch skipped",
                        order_id=str(order_id),
                        error_kind=e.kind.value,
                        error=e.message,
                    )

        assigned = sum(1 for r in results if r.assigned)
        if order_ids:
            logger.info(
                "Dispatch sweep completed",
                orders=len(order_ids),
                assigned=assigned,
            )
        return results

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())
            logger.info(
                "Dispatch sweep started",
                interval_seconds=self.settings.dispatch_sweep_interval_seconds,
            )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Dispatch sweep stopped")

    async def _run(self) -> None:
        while True:
            try:
                await asyncio.wait_for(
                    self._wakeup.wait(),
                    timeout=self.settings.dispatch_sweep_interval_seconds,
                )
            except asyncio.TimeoutError:
                pass
            self._wakeup.clear()

            try:
                await self.sweep_ready_orders()
            except Exception as e:
                logger.exception("Dispatch sweep failed", error=str(e))

    def _coordinator(self, session: AsyncSession) -> DispatchCoordinator:
        return DispatchCoordinator(
            session,
            build_geo_index(session, self.redis_client, self.settings),
            relay=self.relay,
            settings=self.settings,
        )
