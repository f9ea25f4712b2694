"""Commit helpers shared by services that write with optimistic concurrency."""

from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from src.core.logging import get_logger
from src.services.errors import ConcurrencyConflictError

logger = get_logger(__name__)


async def commit_or_conflict(session: AsyncSession, message: str, **context: Any) -> None:
    """
    Commit the session, turning a lost optimistic race into a conflict error.

    ``StaleDataError`` means a versioned UPDATE matched no row because
    another writer got there first; ``IntegrityError`` here means a
    concurrent writer appended the same history sequence. Either way the
    transaction is rolled back and nothing is written.

    Raises:
        ConcurrencyConflictError: If the commit lost a race
    """
    try:
        await session.commit()
    except (StaleDataError, IntegrityError) as e:
        await session.rollback()
        logger.warning(
            "Optimistic write lost a race",
            error_type=type(e).__name__,
            **context,
        )
        raise ConcurrencyConflictError(message, **context) from e
