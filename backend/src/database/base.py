"""
SQLAlchemy declarative base and common model mixins.

Provides the async-capable DeclarativeBase plus mixins for UUID primary
keys, timestamps and optimistic-concurrency version counters. All
timestamps are stored as naive UTC so values compare the same way on
PostgreSQL and SQLite.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import DateTime, Integer, Uuid, func
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, declared_attr, mapped_column


def utc_now() -> datetime:
    """Return the current time as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all models with async attribute loading."""

    __abstract__ = True

    def __repr__(self) -> str:
        pk_values = []
        for column in self.__table__.primary_key.columns:
            value = getattr(self, column.name, None)
            if value is not None:
                pk_values.append(f"{column.name}={value!r}")

        pk_str = ", ".join(pk_values) if pk_values else "no primary key"
        return f"<{self.__class__.__name__}({pk_str})>"


class TimestampMixin:
    """
    Mixin for automatic timestamp management.

    Timestamps are assigned in Python on insert and update so that the
    values are present on the instance after flush, without a refresh
    round-trip. The server default covers rows written outside the ORM.
    """

    @declared_attr
    def created_at(cls) -> Mapped[datetime]:
        return mapped_column(
            DateTime(),
            nullable=False,
            default=utc_now,
            server_default=func.now(),
            comment="Timestamp when record was created",
        )

    @declared_attr
    def updated_at(cls) -> Mapped[datetime]:
        return mapped_column(
            DateTime(),
            nullable=False,
            default=utc_now,
            onupdate=utc_now,
            server_default=func.now(),
            comment="Timestamp when record was last updated",
        )


class UUIDMixin:
    """
    Mixin for UUID primary key.

    Uses the generic ``Uuid`` type, which maps to the native UUID type on
    PostgreSQL and to CHAR(32) elsewhere.
    """

    @declared_attr
    def id(cls) -> Mapped[uuid.UUID]:
        return mapped_column(
            Uuid(as_uuid=True),
            primary_key=True,
            default=uuid.uuid4,
            nullable=False,
            comment="Unique identifier for the record",
        )


def version_column() -> Mapped[int]:
    """
    Build an optimistic concurrency counter column.

    Models point ``__mapper_args__["version_id_col"]`` at the returned
    column. Every ORM UPDATE is then conditioned on the version that was
    read, and a lost race surfaces as ``StaleDataError`` at flush time.
    """
    return mapped_column(
        Integer,
        nullable=False,
        default=1,
        server_default="1",
        comment="Optimistic concurrency counter",
    )


class BaseModel(Base, UUIDMixin, TimestampMixin):
    """
    Base model with UUID primary key and timestamps.

    Example:
        class Courier(BaseModel):
            __tablename__ = "couriers"

            name: Mapped[str] = mapped_column(String(255))
    """

    __abstract__ = True


def create_table_args(
    *constraints: Any,
    comment: Optional[str] = None,
    **kwargs: Any,
) -> tuple:
    """
    Create a ``__table_args__`` tuple of constraints plus a keyword dict.

    Args:
        *constraints: Index and constraint objects for the table
        comment: Table comment for documentation
        **kwargs: Additional table keyword arguments

    Returns:
        Tuple suitable for __table_args__
    """
    table_kwargs: Dict[str, Any] = {}
    if comment:
        table_kwargs["comment"] = comment
    table_kwargs.update(kwargs)
    return (*constraints, table_kwargs)
