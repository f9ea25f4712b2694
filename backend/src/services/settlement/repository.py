"""
Delivery session data access repository.
"""

import uuid
from typing import Any, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.logging import get_logger
from src.database.models.delivery_session import DeliverySession

logger = get_logger(__name__)


class SessionRepositoryError(Exception):
    """Base exception for delivery session repository errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


class OpenSessionExistsError(SessionRepositoryError):
    """Raised when the open-session unique index rejects a second open session."""


class DeliverySessionRepository:
    """Repository for courier delivery sessions."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, delivery_session: DeliverySession) -> DeliverySession:
        """
        Insert a new open session.

        Raises:
            OpenSessionExistsError: If the courier already has an open session
        """
        try:
            self.session.add(delivery_session)
            await self.session.flush()
            return delivery_session
        except IntegrityError as e:
            await self.session.rollback()
            raise OpenSessionExistsError(
                "Courier already has an open delivery session",
                courier_id=str(delivery_session.courier_id),
            ) from e

    async def get(self, session_id: uuid.UUID) -> Optional[DeliverySession]:
        try:
            return await self.session.get(DeliverySession, session_id)
        except SQLAlchemyError as e:
            logger.error(
                "Failed to fetch delivery session",
                session_id=str(session_id),
                error=str(e),
            )
            raise SessionRepositoryError(
                "Failed to fetch delivery session",
                session_id=str(session_id),
                error=str(e),
            ) from e

    async def get_open_for_courier(
        self, courier_id: uuid.UUID
    ) -> Optional[DeliverySession]:
        result = await self.session.execute(
            select(DeliverySession).where(
                DeliverySession.courier_id == courier_id,
                DeliverySession.end_time.is_(None),
            )
        )
        return result.scalar_one_or_none()

    async def find(
        self,
        courier_id: Optional[uuid.UUID] = None,
        open_only: bool = False,
        unsettled_only: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> Sequence[DeliverySession]:
        """
        List sessions, newest first.

        Args:
            courier_id: Restrict to one courier
            open_only: Only sessions that have not ended
            unsettled_only: Only ended sessions awaiting settlement
            limit: Maximum number of sessions
            offset: Number of sessions to skip
        """
        stmt = select(DeliverySession)
        if courier_id is not None:
            stmt = stmt.where(DeliverySession.courier_id == courier_id)
        if open_only:
            stmt = stmt.where(DeliverySession.end_time.is_(None))
        if unsettled_only:
            stmt = stmt.where(
                DeliverySession.end_time.is_not(None),
                DeliverySession.is_settled.is_(False),
            )
        stmt = (
            stmt.order_by(DeliverySession.start_time.desc(), DeliverySession.id)
            .offset(offset)
            .limit(limit)
        )
        try:
            result = await self.session.execute(stmt)
            return result.scalars().all()
        except SQLAlchemyError as e:
            logger.error("Failed to list delivery sessions", error=str(e))
            raise SessionRepositoryError(
                "Failed to list delivery sessions", error=str(e)
            ) from e

    async def count_by_state(self) -> dict[str, int]:
        """Session counts for the delivery overview."""
        result = await self.session.execute(
            select(
                func.count(),
                func.count().filter(DeliverySession.end_time.is_(None)),
                func.count().filter(
                    DeliverySession.end_time.is_not(None),
                    DeliverySession.is_settled.is_(False),
                ),
                func.count().filter(DeliverySession.is_settled.is_(True)),
            ).select_from(DeliverySession)
        )
        total, active, unsettled, settled = result.one()
        return {
            "total": total,
            "active": active,
            "unsettled": unsettled,
            "settled": settled,
        }
