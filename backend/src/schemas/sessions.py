"""
Delivery session Pydantic schemas for shifts, cash collections and settlement.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class SessionStartRequest(BaseModel):
    opening_float: Decimal = Field(
        default=Decimal("0.00"),
        ge=0,
        description="Cash the courier starts the shift with",
    )


class SessionSettleRequest(BaseModel):
    deposited_amount: Decimal = Field(..., ge=0)
    discrepancy_reason: Optional[str] = Field(None, max_length=500)
    notes: Optional[str] = Field(None, max_length=2000)


class CollectionEntry(BaseModel):
    order_id: UUID
    order_number: str
    amount: Decimal
    collected_at: datetime


class SettlementResponse(BaseModel):
    is_settled: bool
    settled_at: Optional[datetime] = None
    settled_by: Optional[str] = None
    deposited_amount: Optional[Decimal] = None
    discrepancy: Optional[Decimal] = None
    discrepancy_reason: Optional[str] = None
    notes: Optional[str] = None


class DeliverySessionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    courier_id: UUID
    courier_name: str
    session_date: date
    start_time: datetime
    end_time: Optional[datetime] = None
    opening_float: Decimal
    collections: list[CollectionEntry]
    total_collected: Decimal
    total_to_deposit: Decimal
    settlement: SettlementResponse
    version: int


class CourierCounts(BaseModel):
    total: int
    active: int
    available: int


class SessionCounts(BaseModel):
    total: int
    active: int
    unsettled: int
    settled: int


class DeliveryOverviewResponse(BaseModel):
    couriers: CourierCounts
    sessions: SessionCounts
    orders_out_for_delivery: int
    orders_awaiting_courier: int
