"""
Order lifecycle API endpoints.

Placement, reads, status transitions, cancellation and courier dispatch.
Engine errors raised by the services are converted to JSON responses by the
application's exception handlers.
"""

from datetime import datetime
from typing import Annotated, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from src.api.deps import (
    Coordinator,
    CurrentActor,
    Orders,
    courier_id_of,
    require_capability,
)
from src.core.config import get_settings
from src.core.logging import get_logger
from src.services.actors import Actor, Capability
from src.services.dispatch.coordinator import DispatchCoordinator, DispatchResult
from src.services.errors import CourierRollbackError, EngineError
from src.services.orders.enums import ActorRole, OrderStatus, PaymentMethod
from src.services.orders.repository import OrderFilters
from src.schemas.orders import (
    CourierAssignRequest,
    CourierLocationResponse,
    DispatchResponse,
    OrderCancelRequest,
    OrderCreateRequest,
    OrderListResponse,
    OrderResponse,
    OrderStatsResponse,
    OrderStatusUpdate,
    OrderTrackingResponse,
    StatusHistoryResponse,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])


def _dispatch_response(result: DispatchResult) -> DispatchResponse:
    return DispatchResponse(
        outcome=result.outcome.value,
        order_id=result.order_id,
        courier_id=result.courier_id,
        distance_meters=result.distance_meters,
        candidates_tried=result.candidates_tried,
        message=result.message,
    )


async def _dispatch_after_ready(coordinator: DispatchCoordinator, order_id: UUID) -> None:
    """Best-effort dispatch right after an order became READY; the sweep retries."""
    try:
        await coordinator.dispatch_ready(order_id)
    except CourierRollbackError:
        raise
    except EngineError as e:
        logger.warning(
            "Dispatch after READY failed",
            order_id=str(order_id),
            error_kind=e.kind.value,
            error=e.message,
        )


@router.post(
    "",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Place order",
)
async def place_order(
    request: OrderCreateRequest,
    actor: Annotated[Actor, Depends(require_capability(Capability.PLACE_ORDER))],
    orders: Orders,
) -> OrderResponse:
    """
    Place a new order for the calling customer.

    Pricing, the order number and the initial PENDING history entry are
    computed server side.
    """
    logger.info("Placing order", item_count=len(request.items), **actor.as_log_context())
    order = await orders.place_order(actor, request)
    return OrderResponse.model_validate(order)


@router.get("", response_model=OrderListResponse, summary="List orders")
async def list_orders(
    actor: CurrentActor,
    orders: Orders,
    order_status: Annotated[Optional[OrderStatus], Query(alias="status")] = None,
    customer_id: Optional[str] = None,
    courier_id: Optional[UUID] = None,
    payment_method: Optional[PaymentMethod] = None,
    created_from: Optional[datetime] = None,
    created_to: Optional[datetime] = None,
    sort: str = Query("-created_at", description="Field to sort by, '-' for descending"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
) -> OrderListResponse:
    """
    List orders visible to the caller.

    Customers only see their own orders and couriers only the orders
    assigned to them; operators may filter freely.
    """
    filters = OrderFilters(
        status=order_status,
        customer_id=customer_id,
        courier_id=courier_id,
        payment_method=payment_method,
        created_from=created_from,
        created_to=created_to,
    )
    if actor.role == ActorRole.CUSTOMER:
        filters.customer_id = actor.id
    elif actor.role == ActorRole.COURIER:
        filters.courier_id = courier_id_of(actor)

    try:
        items, total = await orders.list_orders(filters, sort=sort, limit=limit, offset=offset)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return OrderListResponse(
        items=[OrderResponse.model_validate(order) for order in items],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/stats", response_model=OrderStatsResponse, summary="Order counts and revenue")
async def get_order_stats(
    actor: Annotated[Actor, Depends(require_capability(Capability.VIEW_ALL_ORDERS))],
    orders: Orders,
) -> OrderStatsResponse:
    stats = await orders.order_stats()
    return OrderStatsResponse.model_validate(stats)


@router.get(
    "/assigned/me",
    response_model=list[OrderResponse],
    summary="Orders assigned to the calling courier",
)
async def list_my_assigned_orders(
    actor: CurrentActor,
    orders: Orders,
    include_delivered: bool = False,
) -> list[OrderResponse]:
    courier_id = courier_id_of(actor)
    assigned = await orders.list_assigned_orders(courier_id, include_delivered)
    return [OrderResponse.model_validate(order) for order in assigned]


@router.get(
    "/number/{order_number}",
    response_model=OrderResponse,
    summary="Get order by number",
)
async def get_order_by_number(
    order_number: str,
    actor: CurrentActor,
    orders: Orders,
) -> OrderResponse:
    order = await orders.get_order_by_number(order_number.upper(), actor)
    return OrderResponse.model_validate(order)


@router.get("/{order_id}", response_model=OrderResponse, summary="Get order")
async def get_order(order_id: UUID, actor: CurrentActor, orders: Orders) -> OrderResponse:
    order = await orders.get_order(order_id, actor)
    return OrderResponse.model_validate(order)


@router.get(
    "/{order_id}/track",
    response_model=OrderTrackingResponse,
    summary="Track order status and courier position",
)
async def track_order(
    order_id: UUID, actor: CurrentActor, orders: Orders
) -> OrderTrackingResponse:
    tracking = await orders.track_order(order_id, actor)
    order, courier = tracking.order, tracking.courier
    location = None
    if courier is not None and courier.has_location:
        location = CourierLocationResponse(
            latitude=courier.latitude,
            longitude=courier.longitude,
            updated_at=courier.location_updated_at,
        )
    return OrderTrackingResponse(
        order_id=order.id,
        order_number=order.order_number,
        status=order.status,
        status_history=[
            StatusHistoryResponse.model_validate(entry) for entry in order.status_history
        ],
        delivery_address=order.delivery_address,
        courier_assignment=order.courier_assignment,
        current_location=location,
    )


@router.patch(
    "/{order_id}/status",
    response_model=OrderResponse,
    summary="Change order status",
)
async def update_order_status(
    order_id: UUID,
    update: OrderStatusUpdate,
    actor: Annotated[Actor, Depends(require_capability(Capability.CHANGE_ORDER_STATUS))],
    orders: Orders,
    coordinator: Coordinator,
) -> OrderResponse:
    """
    Move an order along its lifecycle.

    An order that becomes READY is offered to the nearest available courier
    right away; if none is available it stays READY for the periodic sweep.
    """
    logger.info(
        "Updating order status",
        order_id=str(order_id),
        target_status=update.status.value,
        **actor.as_log_context(),
    )
    order = await orders.transition(
        order_id,
        update.status,
        actor,
        note=update.note,
        collected_amount=update.collected_amount,
    )

    if update.status == OrderStatus.READY and get_settings().dispatch_on_ready:
        await _dispatch_after_ready(coordinator, order_id)
        order = await orders.get_order(order_id)

    return OrderResponse.model_validate(order)


@router.post("/{order_id}/cancel", response_model=OrderResponse, summary="Cancel order")
async def cancel_order(
    order_id: UUID,
    actor: CurrentActor,
    orders: Orders,
    request: Optional[OrderCancelRequest] = None,
) -> OrderResponse:
    """Cancel a PENDING order (customer or operator) or a READY order (operator)."""
    reason = request.reason if request is not None else None
    order = await orders.cancel_order(order_id, actor, reason)
    return OrderResponse.model_validate(order)


@router.post(
    "/{order_id}/dispatch",
    response_model=DispatchResponse,
    summary="Dispatch READY order to the nearest courier",
    responses={202: {"description": "No courier available; the order stays READY"}},
)
async def dispatch_order(
    order_id: UUID,
    response: Response,
    actor: Annotated[Actor, Depends(require_capability(Capability.DISPATCH_ORDERS))],
    coordinator: Coordinator,
) -> DispatchResponse:
    logger.info("Dispatching order", order_id=str(order_id), **actor.as_log_context())
    result = await coordinator.dispatch_ready(order_id)
    if not result.assigned:
        response.status_code = status.HTTP_202_ACCEPTED
    return _dispatch_response(result)


@router.post(
    "/{order_id}/assign",
    response_model=DispatchResponse,
    summary="Assign a specific courier to a READY order",
)
async def assign_courier(
    order_id: UUID,
    request: CourierAssignRequest,
    actor: Annotated[Actor, Depends(require_capability(Capability.DISPATCH_ORDERS))],
    coordinator: Coordinator,
) -> DispatchResponse:
    result = await coordinator.assign_courier(order_id, request.courier_id, actor)
    return _dispatch_response(result)
