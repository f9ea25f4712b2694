"""
Delivery session model for courier cash bookkeeping.

A session spans one courier shift: it opens with a cash float, accumulates
cash collections from delivered COD orders, closes at shift end and is
finally settled by an operator against the deposited amount. A settled
session is immutable.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, validates

from src.database.base import BaseModel, create_table_args, version_column

LEDGER_FIELDS = (
    "end_time",
    "opening_float",
    "collections",
    "total_collected",
    "total_to_deposit",
    "deposited_amount",
    "discrepancy",
    "discrepancy_reason",
    "notes",
    "settled_at",
    "settled_by",
)


class DeliverySession(BaseModel):
    """
    Courier shift with its cash collections and settlement.

    Attributes:
        courier_id: Courier working the shift
        courier_name: Courier name snapshot for reports
        session_date: Calendar date (UTC) the shift started on
        start_time, end_time: Shift boundaries; end_time is null while open
        opening_float: Cash the courier started the shift with
        collections: Ordered list of {order_id, order_number, amount,
            collected_at}
        total_collected: Sum of collection amounts
        total_to_deposit: total_collected - opening_float
        is_settled, settled_at, settled_by: Settlement state
        deposited_amount: Cash actually deposited at settlement
        discrepancy: total_to_deposit - deposited_amount, recorded as-is
        discrepancy_reason, notes: Operator remarks at settlement
    """

    __tablename__ = "delivery_sessions"

    courier_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("couriers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    courier_name: Mapped[str] = mapped_column(String(255), nullable=False)

    session_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)

    start_time: Mapped[datetime] = mapped_column(DateTime(), nullable=False)

    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime(), nullable=True)

    opening_float: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0.00")
    )

    collections: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, nullable=False, default=list
    )

    total_collected: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0.00")
    )

    total_to_deposit: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0.00")
    )

    is_settled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, index=True
    )

    settled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(), nullable=True)

    settled_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    deposited_amount: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(10, 2), nullable=True
    )

    discrepancy: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(10, 2), nullable=True
    )

    discrepancy_reason: Mapped[Optional[str]] = mapped_column(
        String(500), nullable=True
    )

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    version: Mapped[int] = version_column()

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = create_table_args(
        Index(
            "uq_delivery_sessions_open_courier",
            "courier_id",
            unique=True,
            postgresql_where=text("end_time IS NULL"),
            sqlite_where=text("end_time IS NULL"),
        ),
        Index("ix_delivery_sessions_settled_end", "is_settled", "end_time"),
        comment="Courier delivery sessions and cash settlement",
    )

    @validates(*LEDGER_FIELDS)
    def _validate_not_settled(self, key: str, value: Any) -> Any:
        if self.is_settled:
            raise ValueError(f"Delivery session {self.id} is settled; {key} is frozen")
        return value

    @property
    def is_open(self) -> bool:
        return self.end_time is None

    @property
    def settlement(self) -> dict[str, Any]:
        return {
            "is_settled": self.is_settled,
            "settled_at": self.settled_at,
            "settled_by": self.settled_by,
            "deposited_amount": self.deposited_amount,
            "discrepancy": self.discrepancy,
            "discrepancy_reason": self.discrepancy_reason,
            "notes": self.notes,
        }

    def __repr__(self) -> str:
        return (
            f"<DeliverySession(id={self.id}, courier_id={self.courier_id}, "
            f"open={self.is_open}, settled={self.is_settled})>"
        )
