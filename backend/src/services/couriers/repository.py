"""
Courier data access repository.

Availability changes are issued as conditional UPDATE statements so that
two dispatchers racing for the same courier cannot both win: the claim
only matches a row whose ``available`` flag is still true.
"""

import uuid
from datetime import datetime
from typing import Any, Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.logging import get_logger
from src.database.models.courier import Courier

logger = get_logger(__name__)


class CourierRepositoryError(Exception):
    """Base exception for courier repository errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


class DuplicateCourierError(CourierRepositoryError):
    """Raised when a courier with the same phone number already exists."""


class CourierRepository:
    """Repository for courier records and availability flips."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, courier: Courier) -> Courier:
        """
        Insert a courier.

        Raises:
            DuplicateCourierError: If the phone number is already registered
        """
        try:
            self.session.add(courier)
            await self.session.flush()
            return courier
        except IntegrityError as e:
            await self.session.rollback()
            raise DuplicateCourierError(
                "A courier with this phone number is already registered",
                phone=courier.phone,
            ) from e

    async def get(self, courier_id: uuid.UUID) -> Optional[Courier]:
        try:
            return await self.session.get(Courier, courier_id)
        except SQLAlchemyError as e:
            logger.error(
                "Failed to fetch courier", courier_id=str(courier_id), error=str(e)
            )
            raise CourierRepositoryError(
                "Failed to fetch courier", courier_id=str(courier_id), error=str(e)
            ) from e

    async def get_many(self, courier_ids: Sequence[uuid.UUID]) -> dict[uuid.UUID, Courier]:
        if not courier_ids:
            return {}
        result = await self.session.execute(
            select(Courier).where(Courier.id.in_(courier_ids))
        )
        return {courier.id: courier for courier in result.scalars().all()}

    async def list_available(
        self,
        min_latitude: Optional[float] = None,
        max_latitude: Optional[float] = None,
        min_longitude: Optional[float] = None,
        max_longitude: Optional[float] = None,
    ) -> Sequence[Courier]:
        """
        List active, available couriers with a known location.

        The optional bounds restrict the result to a latitude/longitude box,
        which the database geo index uses as a prefilter.
        """
        stmt = select(Courier).where(
            Courier.available.is_(True),
            Courier.is_active.is_(True),
            Courier.latitude.is_not(None),
            Courier.longitude.is_not(None),
        )
        if min_latitude is not None:
            stmt = stmt.where(Courier.latitude >= min_latitude)
        if max_latitude is not None:
            stmt = stmt.where(Courier.latitude <= max_latitude)
        if min_longitude is not None:
            stmt = stmt.where(Courier.longitude >= min_longitude)
        if max_longitude is not None:
            stmt = stmt.where(Courier.longitude <= max_longitude)

        try:
            result = await self.session.execute(stmt.order_by(Courier.id))
            return result.scalars().all()
        except SQLAlchemyError as e:
            logger.error("Failed to list available couriers", error=str(e))
            raise CourierRepositoryError(
                "Failed to list available couriers", error=str(e)
            ) from e

    async def _flip_availability(
        self, courier_id: uuid.UUID, expected: Optional[bool], available: bool
    ) -> bool:
        stmt = update(Courier).where(Courier.id == courier_id)
        if expected is not None:
            stmt = stmt.where(Courier.available.is_(expected))
        if available:
            stmt = stmt.where(Courier.is_active.is_(True))
        stmt = stmt.values(available=available, version=Courier.version + 1)

        try:
            result = await self.session.execute(
                stmt.execution_options(synchronize_session="fetch")
            )
        except SQLAlchemyError as e:
            logger.error(
                "Failed to change courier availability",
                courier_id=str(courier_id),
                available=available,
                error=str(e),
            )
            raise CourierRepositoryError(
                "Failed to change courier availability",
                courier_id=str(courier_id),
                error=str(e),
            ) from e
        return result.rowcount == 1

    async def claim(self, courier_id: uuid.UUID) -> bool:
        """Atomically flip ``available`` from true to false; False if lost."""
        return await self._flip_availability(courier_id, expected=True, available=False)

    async def release(self, courier_id: uuid.UUID) -> bool:
        """Atomically flip ``available`` from false back to true."""
        return await self._flip_availability(courier_id, expected=False, available=True)

    async def set_availability(self, courier_id: uuid.UUID, available: bool) -> bool:
        """Set ``available`` unconditionally; False if the courier is missing or inactive."""
        return await self._flip_availability(courier_id, expected=None, available=available)

    async def update_location(
        self,
        courier_id: uuid.UUID,
        latitude: float,
        longitude: float,
        at: datetime,
    ) -> bool:
        stmt = (
            update(Courier)
            .where(Courier.id == courier_id)
            .values(
                latitude=latitude,
                longitude=longitude,
                location_updated_at=at,
                version=Courier.version + 1,
            )
            .execution_options(synchronize_session="fetch")
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def count_by_state(self) -> dict[str, int]:
        """Courier counts for the delivery overview."""
        result = await self.session.execute(
            select(
                func.count(),
                func.count().filter(Courier.is_active.is_(True)),
                func.count().filter(
                    Courier.is_active.is_(True), Courier.available.is_(True)
                ),
            ).select_from(Courier)
        )
        total, active, available = result.one()
        return {"total": total, "active": active, "available": available}

    async def deactivate(self, courier_id: uuid.UUID) -> bool:
        """Mark a courier inactive and unavailable; False if it does not exist."""
        stmt = (
            update(Courier)
            .where(Courier.id == courier_id)
            .values(is_active=False, available=False, version=Courier.version + 1)
            .execution_options(synchronize_session="fetch")
        )
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as e:
            logger.error(
                "Failed to deactivate courier", courier_id=str(courier_id), error=str(e)
            )
            raise CourierRepositoryError(
                "Failed to deactivate courier", courier_id=str(courier_id), error=str(e)
            ) from e
        return result.rowcount == 1
