"""
Event and notification payload schemas.

``Event`` is what travels on the in-process event bus and out to WebSocket
clients; ``ExternalNotification`` is the push/email payload contract, whose
camelCase keys are fixed for mobile clients.
"""

from datetime import datetime
from typing import Annotated, Any, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from src.database.base import utc_now


class Event(BaseModel):
    """Immutable event record delivered to topic subscribers."""

    model_config = ConfigDict(frozen=True)

    topic: str
    type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)


class ExternalNotification(BaseModel):
    """Payload handed to push and email senders."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    type: str
    order_id: Optional[str] = Field(None, alias="orderId")
    order_number: Optional[str] = Field(None, alias="orderNumber")
    recipient_id: str = Field(..., alias="recipientId")
    role: str
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)

    def to_payload(self) -> dict[str, Any]:
        """Serialize with the wire key names."""
        return self.model_dump(mode="json", by_alias=True)


class TrackMessage(BaseModel):
    action: Literal["track", "untrack"]
    order_id: UUID


class LocationMessage(BaseModel):
    action: Literal["location"]
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


ClientMessage = Annotated[Union[TrackMessage, LocationMessage], Field(discriminator="action")]
