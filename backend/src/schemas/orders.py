"""
Order Pydantic schemas for API request/response validation.

Defines placement requests (customer snapshot, line items with catalog
price snapshots, delivery address), status change requests and the order
response shape including pricing, courier assignment, cash collection and
status history.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.services.orders.enums import ActorRole, OrderStatus, PaymentMethod


class CustomerInfo(BaseModel):
    """Customer contact snapshot stored with the order."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=1, max_length=255)
    phone: str = Field(..., min_length=5, max_length=32)
    email: Optional[str] = Field(None, max_length=255)
    push_endpoint: Optional[str] = Field(
        None,
        max_length=512,
        description="SNS platform endpoint ARN for mobile push",
    )

    @field_validator("email")
    @classmethod
    def validate_email_format(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        if "@" not in v or "." not in v.split("@")[-1]:
            raise ValueError("Invalid email format")
        return v.lower()


class Customization(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    options: list[str] = Field(default_factory=list)
    additional_price: Decimal = Field(default=Decimal("0.00"), ge=0)


class LineItemCreate(BaseModel):
    """Line item with the catalog name and price captured at placement."""

    menu_item_id: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=255)
    unit_price: Decimal = Field(..., ge=0)
    quantity: int = Field(..., ge=1, le=100)
    customizations: list[Customization] = Field(default_factory=list)


class LineItem(LineItemCreate):
    subtotal: Decimal


class DeliveryAddress(BaseModel):
    """Delivery address with coordinates used for courier matching."""

    model_config = ConfigDict(str_strip_whitespace=True)

    street: str = Field(..., min_length=1, max_length=255)
    apartment: Optional[str] = Field(None, max_length=100)
    city: str = Field(..., min_length=1, max_length=100)
    state: str = Field(..., min_length=1, max_length=100)
    zip_code: str = Field(..., min_length=3, max_length=12)
    landmark: Optional[str] = Field(None, max_length=255)
    instructions: Optional[str] = Field(None, max_length=500)
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class OrderCreateRequest(BaseModel):
    """Request schema for placing an order."""

    customer: CustomerInfo
    items: list[LineItemCreate] = Field(..., min_length=1, max_length=50)
    delivery_address: DeliveryAddress
    payment_method: PaymentMethod
    special_instructions: Optional[str] = Field(None, max_length=1000)


class OrderStatusUpdate(BaseModel):
    """Request schema for changing order status."""

    status: OrderStatus
    note: Optional[str] = Field(None, max_length=500)
    collected_amount: Optional[Decimal] = Field(
        None,
        ge=0,
        description="Cash collected on delivery; defaults to the final amount",
    )

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, v):
        if isinstance(v, str):
            return OrderStatus.from_string(v)
        return v


class OrderCancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class CourierAssignRequest(BaseModel):
    courier_id: UUID


class PricingResponse(BaseModel):
    items_total: Decimal
    delivery_fee: Decimal
    tax: Decimal
    discount: Decimal
    final_amount: Decimal


class CourierAssignmentResponse(BaseModel):
    courier_id: UUID
    name: Optional[str] = None
    phone: Optional[str] = None
    vehicle: Optional[str] = None
    assigned_at: Optional[datetime] = None
    picked_up_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None


class CashCollectionResponse(BaseModel):
    expected_amount: Decimal
    collected_amount: Optional[Decimal] = None
    collected_at: Optional[datetime] = None
    is_settled: bool


class StatusHistoryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    status: OrderStatus
    timestamp: datetime
    actor_id: str
    actor_role: ActorRole
    note: Optional[str] = None


class OrderResponse(BaseModel):
    """Complete order response schema."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_number: str
    customer_id: str
    customer: CustomerInfo
    items: list[LineItem]
    pricing: PricingResponse
    delivery_address: DeliveryAddress
    status: OrderStatus
    payment_method: PaymentMethod
    special_instructions: Optional[str] = None
    cancellation_reason: Optional[str] = None
    courier_assignment: Optional[CourierAssignmentResponse] = None
    cash_collection: Optional[CashCollectionResponse] = None
    status_history: list[StatusHistoryResponse]
    version: int
    created_at: datetime
    updated_at: datetime


class OrderListResponse(BaseModel):
    items: list[OrderResponse]
    total: int
    limit: int
    offset: int


class DispatchResponse(BaseModel):
    """Dispatch attempt outcome."""

    outcome: str
    order_id: UUID
    courier_id: Optional[UUID] = None
    distance_meters: Optional[float] = None
    candidates_tried: int = 0
    message: Optional[str] = None


class CourierLocationResponse(BaseModel):
    latitude: float
    longitude: float
    updated_at: Optional[datetime] = None


class OrderTrackingResponse(BaseModel):
    """Status, history and live courier position for one order."""

    order_id: UUID
    order_number: str
    status: OrderStatus
    status_history: list[StatusHistoryResponse]
    delivery_address: DeliveryAddress
    courier_assignment: Optional[CourierAssignmentResponse] = None
    current_location: Optional[CourierLocationResponse] = None


class StatusTotals(BaseModel):
    status: OrderStatus
    count: int
    revenue: Decimal
    average_order_value: Decimal


class PaymentMethodTotals(BaseModel):
    payment_method: PaymentMethod
    count: int
    revenue: Decimal


class OrderStatsResponse(BaseModel):
    total_orders: int
    total_revenue: Decimal
    average_order_value: Decimal
    by_status: list[StatusTotals]
    by_payment_method: list[PaymentMethodTotals]
