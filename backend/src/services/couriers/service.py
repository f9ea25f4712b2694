"""
Courier service for registration, location reports and availability.

Keeps the configured geo index in step with the courier table: a courier
is present in the index exactly while it is available and has a known
position.
"""

import uuid
from typing import TYPE_CHECKING, Any, Callable, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from src.core.config import Settings, get_settings
from src.core.logging import get_logger
from src.database.base import utc_now
from src.database.models.courier import Courier
from src.schemas.couriers import CourierCreateRequest
from src.services.actors import Actor
from src.services.couriers.repository import CourierRepository, DuplicateCourierError
from src.services.dispatch.geo import GeoPoint
from src.services.dispatch.geo_index import DatabaseGeoIndex, GeoIndex
from src.services.errors import ErrorKind, EngineError, NotFoundError
from src.services.orders.enums import OrderStatus
from src.services.orders.repository import OrderFilters, OrderRepository
from src.services.settlement.repository import DeliverySessionRepository

if TYPE_CHECKING:
    from src.services.notifications.relay import NotificationRelay

logger = get_logger(__name__)


class CourierService:
    """
    Courier operations.

    Attributes:
        repository: Courier repository
        geo_index: Geo index kept in sync with availability and location
        relay: Notification relay for courier location fan-out
        on_available: Callback fired when a courier becomes available, used
            to trigger a dispatch sweep
    """

    def __init__(
        self,
        session: AsyncSession,
        geo_index: Optional[GeoIndex] = None,
        relay: Optional["NotificationRelay"] = None,
        on_available: Optional[Callable[[], None]] = None,
        settings: Optional[Settings] = None,
    ):
        self.session = session
        self.repository = CourierRepository(session)
        self.orders = OrderRepository(session)
        self.geo_index = geo_index or DatabaseGeoIndex(session)
        self.relay = relay
        self.on_available = on_available
        self.settings = settings or get_settings()

    async def register_courier(
        self, request: CourierCreateRequest, actor: Actor
    ) -> Courier:
        """
        Register a new courier; couriers start unavailable.

        Raises:
            EngineError: CONFLICT if the phone number is already registered
        """
        courier = Courier(
            name=request.name,
            phone=request.phone,
            email=request.email,
            vehicle_type=request.vehicle_type,
            vehicle_number=request.vehicle_number,
            push_endpoint=request.push_endpoint,
            latitude=request.latitude,
            longitude=request.longitude,
            location_updated_at=utc_now() if request.latitude is not None else None,
            is_active=True,
            available=False,
        )
        try:
            await self.repository.add(courier)
        except DuplicateCourierError as e:
            raise EngineError(str(e), kind=ErrorKind.CONFLICT, **e.context) from e
        await self.session.commit()

        logger.info(
            "Courier registered",
            courier_id=str(courier.id),
            vehicle_type=courier.vehicle_type,
            **actor.as_log_context(),
        )
        return courier

    async def get_courier(self, courier_id: uuid.UUID) -> Courier:
        courier = await self.repository.get(courier_id)
        if courier is None:
            raise NotFoundError(
                f"Courier {courier_id} not found", courier_id=str(courier_id)
            )
        return courier

    async def update_location(
        self, courier_id: uuid.UUID, latitude: float, longitude: float
    ) -> Courier:
        """
        Record a courier's position and relay it to the orders it is carrying.

        Raises:
            NotFoundError: If the courier does not exist
        """
        updated = await self.repository.update_location(
            courier_id, latitude, longitude, utc_now()
        )
        if not updated:
            raise NotFoundError(
                f"Courier {courier_id} not found", courier_id=str(courier_id)
            )
        await self.session.commit()

        courier = await self.get_courier(courier_id)
        await self._sync_geo_index(courier)

        if self.relay is not None:
            active_orders = await self.orders.find(
                OrderFilters(courier_id=courier_id, status=OrderStatus.OUT_FOR_DELIVERY),
                limit=100,
            )
            await self.relay.courier_location(
                courier_id, latitude, longitude, [order.id for order in active_orders]
            )
        return courier

    async def set_availability(self, courier_id: uuid.UUID, available: bool) -> Courier:
        """
        Set whether a courier can be dispatched.

        Raises:
            NotFoundError: If the courier does not exist or is deactivated
        """
        changed = await self.repository.set_availability(courier_id, available)
        if not changed:
            raise NotFoundError(
                f"Active courier {courier_id} not found", courier_id=str(courier_id)
            )
        await self.session.commit()

        courier = await self.get_courier(courier_id)
        await self._sync_geo_index(courier)

        logger.info(
            "Courier availability changed",
            courier_id=str(courier_id),
            available=available,
        )

        if available and self.on_available is not None:
            self.on_available()
        return courier

    async def deactivate_courier(self, courier_id: uuid.UUID, actor: Actor) -> Courier:
        """
        Take a courier out of service for good.

        Raises:
            NotFoundError: If the courier does not exist
            EngineError: CONFLICT while the courier has orders out for delivery
        """
        await self.get_courier(courier_id)
        in_flight = await self.orders.count(
            OrderFilters(courier_id=courier_id, status=OrderStatus.OUT_FOR_DELIVERY)
        )
        if in_flight:
            raise EngineError(
                "Cannot deactivate a courier with orders out for delivery",
                kind=ErrorKind.CONFLICT,
                courier_id=str(courier_id),
                orders_out_for_delivery=in_flight,
            )

        await self.repository.deactivate(courier_id)
        await self.session.commit()
        await self.geo_index.remove(courier_id)

        logger.info(
            "Courier deactivated",
            courier_id=str(courier_id),
            **actor.as_log_context(),
        )
        return await self.get_courier(courier_id)

    async def courier_stats(self, courier_id: uuid.UUID) -> dict[str, Any]:
        """Order counts by status and the open delivery session for one courier."""
        courier = await self.get_courier(courier_id)
        totals = await self.orders.totals_by_status(OrderFilters(courier_id=courier_id))
        sessions = DeliverySessionRepository(self.session)
        open_session = await sessions.get_open_for_courier(courier_id)
        orders_by_status = {
            status.value: count
            for status, (count, _) in sorted(totals.items(), key=lambda item: item[0].value)
        }
        return {
            "courier": courier,
            "orders_by_status": orders_by_status,
            "delivered": orders_by_status.get(OrderStatus.DELIVERED.value, 0),
            "active_session": open_session,
        }

    async def list_available(
        self,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        radius_meters: Optional[float] = None,
        limit: int = 50,
    ) -> list[tuple[Courier, Optional[float]]]:
        """
        Available couriers, nearest first when a point is given.

        Returns:
            List of (courier, distance_meters) pairs; distance is None when
            no point was given
        """
        if latitude is None or longitude is None:
            couriers: Sequence[Courier] = await self.repository.list_available()
            return [(courier, None) for courier in couriers[:limit]]

        candidates = await self.geo_index.nearest_available(
            GeoPoint(latitude, longitude),
            radius_meters or self.settings.dispatch_max_radius_meters,
            limit,
        )
        couriers_by_id = await self.repository.get_many([c.courier_id for c in candidates])
        return [
            (couriers_by_id[c.courier_id], c.distance_meters)
            for c in candidates
            if c.courier_id in couriers_by_id
        ]

    async def _sync_geo_index(self, courier: Courier) -> None:
        if courier.available and courier.is_active and courier.has_location:
            await self.geo_index.upsert(courier.id, courier.latitude, courier.longitude)
        else:
            await self.geo_index.remove(courier.id)
