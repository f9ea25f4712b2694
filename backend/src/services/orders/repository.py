"""
Order data access repository.

This module implements the OrderRepository class providing async methods for
inserting orders, loading them with their status history, and filtered
listing and counting. Writes are flushed here and committed by the order
service, so a transition and a settlement ledger update can share one
transaction.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional, Sequence

from sqlalchemy import Select, and_, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.logging import get_logger
from src.database.models.order import Order
from src.services.orders.enums import OrderStatus, PaymentMethod

logger = get_logger(__name__)

SORTABLE_FIELDS = {
    "created_at": Order.created_at,
    "updated_at": Order.updated_at,
    "final_amount": Order.final_amount,
    "order_number": Order.order_number,
}


class OrderRepositoryError(Exception):
    """Base exception for order repository errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


class OrderNumberCollisionError(OrderRepositoryError):
    """Raised when an order number is already taken."""


@dataclass
class OrderFilters:
    """Filters for listing and counting orders."""

    status: Optional[OrderStatus] = None
    customer_id: Optional[str] = None
    courier_id: Optional[uuid.UUID] = None
    payment_method: Optional[PaymentMethod] = None
    created_from: Optional[datetime] = None
    created_to: Optional[datetime] = None

    def conditions(self) -> list[Any]:
        conditions: list[Any] = []
        if self.status is not None:
            conditions.append(Order.status == self.status)
        if self.customer_id is not None:
            conditions.append(Order.customer_id == self.customer_id)
        if self.courier_id is not None:
            conditions.append(Order.courier_id == self.courier_id)
        if self.payment_method is not None:
            conditions.append(Order.payment_method == self.payment_method)
        if self.created_from is not None:
            conditions.append(Order.created_at >= self.created_from)
        if self.created_to is not None:
            conditions.append(Order.created_at <= self.created_to)
        return conditions


class OrderRepository:
    """
    Repository for order data access operations.

    Reads return ORM instances tracked by the session; the version column
    on ``Order`` makes any later flush of those instances conditional on the
    version that was read here.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, order: Order) -> Order:
        """
        Insert a new order and its initial history.

        Args:
            order: Transient order instance

        Returns:
            The flushed order

        Raises:
            OrderNumberCollisionError: If the order number is already used
            OrderRepositoryError: If the insert fails for another reason
        """
        try:
            self.session.add(order)
            await self.session.flush()
            return order
        except IntegrityError as e:
            await self.session.rollback()
            logger.warning(
                "Order number collision",
                order_number=order.order_number,
                error=str(e.orig),
            )
            raise OrderNumberCollisionError(
                "Order number already exists",
                order_number=order.order_number,
            ) from e
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(
                "Failed to insert order",
                order_number=order.order_number,
                error=str(e),
            )
            raise OrderRepositoryError(
                "Failed to insert order",
                order_number=order.order_number,
                error=str(e),
            ) from e

    async def get(self, order_id: uuid.UUID) -> Optional[Order]:
        """
        Get order by ID with its status history.

        Raises:
            OrderRepositoryError: If query fails
        """
        try:
            result = await self.session.execute(
                select(Order).where(Order.id == order_id)
            )
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("Failed to fetch order", order_id=str(order_id), error=str(e))
            raise OrderRepositoryError(
                "Failed to fetch order",
                order_id=str(order_id),
                error=str(e),
            ) from e

    async def get_by_number(self, order_number: str) -> Optional[Order]:
        """
        Get order by order number.

        Raises:
            OrderRepositoryError: If query fails
        """
        try:
            result = await self.session.execute(
                select(Order).where(Order.order_number == order_number)
            )
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(
                "Failed to fetch order by number",
                order_number=order_number,
                error=str(e),
            )
            raise OrderRepositoryError(
                "Failed to fetch order by number",
                order_number=order_number,
                error=str(e),
            ) from e

    def _filtered(self, filters: Optional[OrderFilters]) -> Select:
        stmt = select(Order)
        conditions = filters.conditions() if filters else []
        if conditions:
            stmt = stmt.where(and_(*conditions))
        return stmt

    async def find(
        self,
        filters: Optional[OrderFilters] = None,
        sort: str = "-created_at",
        limit: int = 20,
        offset: int = 0,
    ) -> Sequence[Order]:
        """
        List orders matching filters.

        Args:
            filters: Optional filters
            sort: Field name, prefixed with ``-`` for descending order
            limit: Maximum number of orders
            offset: Number of orders to skip

        Returns:
            Matching orders

        Raises:
            ValueError: If the sort field is not sortable
            OrderRepositoryError: If query fails
        """
        descending = sort.startswith("-")
        field_name = sort.lstrip("-+")
        column = SORTABLE_FIELDS.get(field_name)
        if column is None:
            raise ValueError(
                f"Cannot sort by {field_name}; choose from {sorted(SORTABLE_FIELDS)}"
            )
        order_by = column.desc() if descending else column.asc()

        stmt = (
            self._filtered(filters)
            .order_by(order_by, Order.id)
            .offset(offset)
            .limit(limit)
        )
        try:
            result = await self.session.execute(stmt)
            return result.scalars().all()
        except SQLAlchemyError as e:
            logger.error("Failed to list orders", filters=filters, error=str(e))
            raise OrderRepositoryError("Failed to list orders", error=str(e)) from e

    async def count(self, filters: Optional[OrderFilters] = None) -> int:
        """
        Count orders matching filters.

        Raises:
            OrderRepositoryError: If query fails
        """
        stmt = select(func.count()).select_from(Order)
        conditions = filters.conditions() if filters else []
        if conditions:
            stmt = stmt.where(and_(*conditions))
        try:
            result = await self.session.execute(stmt)
            return result.scalar_one()
        except SQLAlchemyError as e:
            logger.error("Failed to count orders", error=str(e))
            raise OrderRepositoryError("Failed to count orders", error=str(e)) from e

    async def find_ready_unassigned(self, limit: int) -> Sequence[uuid.UUID]:
        """
        Get ids of READY orders with no courier, oldest first.

        Raises:
            OrderRepositoryError: If query fails
        """
        stmt = (
            select(Order.id)
            .where(Order.status == OrderStatus.READY, Order.courier_id.is_(None))
            .order_by(Order.created_at.asc(), Order.id)
            .limit(limit)
        )
        try:
            result = await self.session.execute(stmt)
            return result.scalars().all()
        except SQLAlchemyError as e:
            logger.error("Failed to list READY orders", error=str(e))
            raise OrderRepositoryError(
                "Failed to list READY orders", error=str(e)
            ) from e

    async def totals_by_status(
        self, filters: Optional[OrderFilters] = None
    ) -> dict[OrderStatus, tuple[int, Decimal]]:
        """
        Order count and summed final amount per status.

        Raises:
            OrderRepositoryError: If query fails
        """
        rows = await self._totals(Order.status, filters)
        return {OrderStatus(key): totals for key, totals in rows.items()}

    async def totals_by_payment_method(self) -> dict[PaymentMethod, tuple[int, Decimal]]:
        rows = await self._totals(Order.payment_method, None)
        return {PaymentMethod(key): totals for key, totals in rows.items()}

    async def _totals(
        self, column: Any, filters: Optional[OrderFilters]
    ) -> dict[Any, tuple[int, Decimal]]:
        stmt = select(column, func.count(), func.sum(Order.final_amount)).group_by(column)
        conditions = filters.conditions() if filters else []
        if conditions:
            stmt = stmt.where(and_(*conditions))
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as e:
            logger.error("Failed to aggregate orders", error=str(e))
            raise OrderRepositoryError("Failed to aggregate orders", error=str(e)) from e
        return {
            key: (count, Decimal(str(amount or 0)).quantize(Decimal("0.01")))
            for key, count, amount in result.all()
        }
