"""
Database models package initialization.

Models are imported here so they are registered with the Base metadata
for Alembic and relationship resolution.
"""

from src.database.base import (
    Base,
    BaseModel,
    TimestampMixin,
    UUIDMixin,
    create_table_args,
    utc_now,
    version_column,
)
from src.database.models.courier import Courier
from src.database.models.delivery_session import DeliverySession
from src.database.models.order import Order, OrderStatusHistory

__all__ = [
    "Base",
    "BaseModel",
    "TimestampMixin",
    "UUIDMixin",
    "create_table_args",
    "utc_now",
    "version_column",
    "Courier",
    "DeliverySession",
    "Order",
    "OrderStatusHistory",
]
