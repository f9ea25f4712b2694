"""
Courier Pydantic schemas for registration, location and availability.
"""

from datetime import datetime
from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from src.schemas.sessions import DeliverySessionResponse


class CourierCreateRequest(BaseModel):
    """Request schema for registering a courier."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=1, max_length=255)
    phone: str = Field(..., min_length=5, max_length=32)
    email: Optional[str] = Field(None, max_length=255)
    vehicle_type: Literal["bike", "scooter", "car"] = "bike"
    vehicle_number: Optional[str] = Field(None, max_length=32)
    push_endpoint: Optional[str] = Field(None, max_length=512)
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)

    @model_validator(mode="after")
    def validate_location_pair(self) -> "CourierCreateRequest":
        if (self.latitude is None) != (self.longitude is None):
            raise ValueError("latitude and longitude must be provided together")
        return self


class LocationUpdateRequest(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class AvailabilityUpdateRequest(BaseModel):
    available: bool


class CourierResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    phone: str
    email: Optional[str] = None
    vehicle_type: str
    vehicle_number: Optional[str] = None
    is_active: bool
    available: bool
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    location_updated_at: Optional[datetime] = None
    created_at: datetime


class AvailableCourierResponse(BaseModel):
    courier: CourierResponse
    distance_meters: Optional[float] = None


class CourierStatsResponse(BaseModel):
    """Order counts and current shift for the calling courier."""

    courier: CourierResponse
    orders_by_status: dict[str, int]
    delivered: int
    active_session: Optional[DeliverySessionResponse] = None
