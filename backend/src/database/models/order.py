"""
Order model for the order lifecycle and delivery tracking.

This module defines the Order aggregate (line items, pricing, delivery
address, courier assignment and cash collection) and its append-only
status history. Orders are written with optimistic concurrency: every
update is conditioned on the version that was read.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from src.database.base import Base, BaseModel, UUIDMixin, create_table_args, version_column
from src.services.orders.enums import ActorRole, OrderStatus, PaymentMethod

PRICING_FIELDS = ("items_total", "delivery_fee", "tax", "discount", "final_amount")


class Order(BaseModel):
    """
    Customer order from placement through delivery or cancellation.

    Attributes:
        id: Unique order identifier (UUID)
        order_number: Human-readable order number (ORD + DDHHMMSS + counter)
        customer_id: Identifier of the ordering customer
        customer: Snapshot of customer contact details (name, phone, email,
            push_endpoint)
        items: Ordered line items with price snapshots
        items_total, delivery_fee, tax, discount, final_amount: Pricing,
            computed once at placement
        delivery_address: Delivery address including latitude/longitude
        status: Current lifecycle status
        payment_method: PREPAID or CASH_ON_DELIVERY
        courier_id: Assigned courier, if any
        courier_snapshot: Courier contact details captured at assignment
        assigned_at, picked_up_at, delivered_at: Courier assignment timeline
        cash_*: Cash collection record for COD orders
        version: Optimistic concurrency counter
    """

    __tablename__ = "orders"

    order_number: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        unique=True,
        comment="Human-readable order number",
    )

    customer_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
        comment="Customer who placed the order",
    )

    customer: Mapped[dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
        comment="Customer contact snapshot",
    )

    items: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
        comment="Ordered line items with price snapshots",
    )

    # Pricing
    items_total: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, comment="Sum of line item subtotals"
    )
    delivery_fee: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, comment="Delivery charges"
    )
    tax: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, comment="Tax on items and delivery"
    )
    discount: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0.00"), comment="Discount"
    )
    final_amount: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, comment="Amount payable by the customer"
    )

    delivery_address: Mapped[dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
        comment="Delivery address with coordinates",
    )

    status: Mapped[OrderStatus] = mapped_column(
        SQLEnum(OrderStatus, name="order_status", native_enum=False, length=32),
        nullable=False,
        default=OrderStatus.PENDING,
        index=True,
        comment="Current order status",
    )

    payment_method: Mapped[PaymentMethod] = mapped_column(
        SQLEnum(PaymentMethod, name="payment_method", native_enum=False, length=32),
        nullable=False,
        comment="Payment method",
    )

    special_instructions: Mapped[Optional[str]] = mapped_column(
        Text, nullable=True, comment="Customer instructions for the order"
    )

    cancellation_reason: Mapped[Optional[str]] = mapped_column(
        String(500), nullable=True, comment="Reason given when cancelled"
    )

    # Courier assignment
    courier_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("couriers.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
        comment="Assigned courier",
    )
    courier_snapshot: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSON, nullable=True, comment="Courier contact details at assignment"
    )
    assigned_at: Mapped[Optional[datetime]] = mapped_column(DateTime(), nullable=True)
    picked_up_at: Mapped[Optional[datetime]] = mapped_column(DateTime(), nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(), nullable=True)

    # Cash collection (COD only)
    cash_expected_amount: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(10, 2), nullable=True
    )
    cash_collected_amount: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(10, 2), nullable=True
    )
    cash_collected_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(), nullable=True
    )
    cash_is_settled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )

    status_history: Mapped[list["OrderStatusHistory"]] = relationship(
        "OrderStatusHistory",
        back_populates="order",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="OrderStatusHistory.sequence",
    )

    version: Mapped[int] = version_column()

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = create_table_args(
        Index("ix_orders_status_created", "status", "created_at"),
        Index("ix_orders_courier_status", "courier_id", "status"),
        Index("ix_orders_customer_created", "customer_id", "created_at"),
        CheckConstraint("final_amount >= 0", name="ck_orders_final_amount_positive"),
        comment="Customer orders",
    )

    @validates(*PRICING_FIELDS)
    def _validate_pricing(self, key: str, value: Decimal) -> Decimal:
        status = self.status
        if status is not None and OrderStatus(status).is_terminal():
            raise ValueError(
                f"Cannot change {key} of order {self.order_number}: "
                f"status {OrderStatus(status).value} is terminal"
            )
        return value

    @property
    def pricing(self) -> dict[str, Decimal]:
        return {field: getattr(self, field) for field in PRICING_FIELDS}

    @property
    def is_cash_on_delivery(self) -> bool:
        return self.payment_method == PaymentMethod.CASH_ON_DELIVERY

    @property
    def courier_assignment(self) -> Optional[dict[str, Any]]:
        """Courier assignment view, or None while unassigned."""
        if self.courier_id is None:
            return None
        snapshot = self.courier_snapshot or {}
        return {
            "courier_id": self.courier_id,
            "name": snapshot.get("name"),
            "phone": snapshot.get("phone"),
            "vehicle": snapshot.get("vehicle"),
            "assigned_at": self.assigned_at,
            "picked_up_at": self.picked_up_at,
            "delivered_at": self.delivered_at,
        }

    @property
    def cash_collection(self) -> Optional[dict[str, Any]]:
        """Cash collection view for COD orders once the order is delivered."""
        if self.cash_expected_amount is None:
            return None
        return {
            "expected_amount": self.cash_expected_amount,
            "collected_amount": self.cash_collected_amount,
            "collected_at": self.cash_collected_at,
            "is_settled": self.cash_is_settled,
        }

    @property
    def delivery_point(self) -> tuple[float, float]:
        """Delivery coordinates as (latitude, longitude)."""
        return (
            float(self.delivery_address["latitude"]),
            float(self.delivery_address["longitude"]),
        )

    def __repr__(self) -> str:
        return (
            f"<Order(id={self.id}, order_number={self.order_number}, "
            f"status={OrderStatus(self.status).value if self.status else None})>"
        )


class OrderStatusHistory(Base, UUIDMixin):
    """
    Append-only status history entry.

    Attributes:
        order_id: Parent order
        sequence: Position in the order's history, starting at 1
        status: Status the order entered
        timestamp: When the status was entered; strictly increasing per order
        actor_id: Who drove the change
        actor_role: Role the actor acted under
        note: Free-form note (cancellation reason, dispatch details)
    """

    __tablename__ = "order_status_history"

    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        comment="Parent order identifier",
    )

    sequence: Mapped[int] = mapped_column(Integer, nullable=False)

    status: Mapped[OrderStatus] = mapped_column(
        SQLEnum(OrderStatus, name="order_status", native_enum=False, length=32),
        nullable=False,
    )

    timestamp: Mapped[datetime] = mapped_column(DateTime(), nullable=False)

    actor_id: Mapped[str] = mapped_column(String(64), nullable=False)

    actor_role: Mapped[ActorRole] = mapped_column(
        SQLEnum(ActorRole, name="actor_role", native_enum=False, length=16),
        nullable=False,
    )

    note: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    order: Mapped["Order"] = relationship("Order", back_populates="status_history")

    __table_args__ = create_table_args(
        UniqueConstraint("order_id", "sequence", name="uq_order_status_history_seq"),
        comment="Order status change history",
    )

    def __repr__(self) -> str:
        return (
            f"<OrderStatusHistory(order_id={self.order_id}, "
            f"sequence={self.sequence}, status={self.status})>"
        )
