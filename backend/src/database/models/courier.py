"""
Courier model for availability and location tracking.

Availability is flipped only through conditional UPDATE statements issued
by the courier repository (claim/release/availability), so the ``version``
column here is bumped explicitly by those statements rather than by the
ORM.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Float, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from src.database.base import BaseModel, create_table_args, version_column


class Courier(BaseModel):
    """
    Delivery courier registered by an operator.

    Attributes:
        name, phone: Contact details copied into order assignments
        vehicle_type, vehicle_number: Vehicle details
        push_endpoint: Mobile push endpoint (SNS endpoint ARN)
        is_active: Whether the courier may be dispatched at all
        available: Whether the courier is free to take an order
        latitude, longitude: Last reported position
        location_updated_at: When the position was last reported
    """

    __tablename__ = "couriers"

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    phone: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)

    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    vehicle_type: Mapped[str] = mapped_column(
        String(32), nullable=False, default="bike", comment="bike, scooter or car"
    )

    vehicle_number: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    push_endpoint: Mapped[Optional[str]] = mapped_column(
        String(512), nullable=True, comment="SNS platform endpoint ARN"
    )

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    available: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, index=True
    )

    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    location_updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(), nullable=True
    )

    version: Mapped[int] = version_column()

    __table_args__ = create_table_args(
        Index("ix_couriers_available_active", "available", "is_active"),
        Index("ix_couriers_location", "latitude", "longitude"),
        comment="Delivery couriers",
    )

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    @property
    def snapshot(self) -> dict[str, Optional[str]]:
        """Contact details copied into an order at assignment."""
        vehicle = self.vehicle_type
        if self.vehicle_number:
            vehicle = f"{self.vehicle_type} {self.vehicle_number}"
        return {"name": self.name, "phone": self.phone, "vehicle": vehicle}
