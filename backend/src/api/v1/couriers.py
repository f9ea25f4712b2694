"""
Courier API endpoints: registration, location reports and availability.
"""

from typing import Annotated, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from src.api.deps import Couriers, CurrentActor, courier_id_of, require_capability
from src.core.logging import get_logger
from src.schemas.couriers import (
    AvailabilityUpdateRequest,
    AvailableCourierResponse,
    CourierCreateRequest,
    CourierResponse,
    CourierStatsResponse,
    LocationUpdateRequest,
)
from src.schemas.sessions import DeliverySessionResponse
from src.services.actors import Actor, Capability

logger = get_logger(__name__)

router = APIRouter(prefix="/couriers", tags=["couriers"])


@router.post(
    "",
    response_model=CourierResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register courier",
)
async def register_courier(
    request: CourierCreateRequest,
    actor: Annotated[Actor, Depends(require_capability(Capability.REGISTER_COURIERS))],
    couriers: Couriers,
) -> CourierResponse:
    courier = await couriers.register_courier(request, actor)
    return CourierResponse.model_validate(courier)


@router.get(
    "/available",
    response_model=list[AvailableCourierResponse],
    summary="List available couriers, nearest first when a point is given",
)
async def list_available_couriers(
    actor: Annotated[Actor, Depends(require_capability(Capability.VIEW_COURIERS))],
    couriers: Couriers,
    latitude: Optional[float] = Query(None, ge=-90, le=90),
    longitude: Optional[float] = Query(None, ge=-180, le=180),
    radius_meters: Optional[float] = Query(None, gt=0, le=100_000),
    limit: int = Query(50, ge=1, le=200),
) -> list[AvailableCourierResponse]:
    available = await couriers.list_available(latitude, longitude, radius_meters, limit)
    return [
        AvailableCourierResponse(
            courier=CourierResponse.model_validate(courier),
            distance_meters=distance,
        )
        for courier, distance in available
    ]


@router.get("/me", response_model=CourierResponse, summary="Calling courier's profile")
async def get_my_profile(actor: CurrentActor, couriers: Couriers) -> CourierResponse:
    courier = await couriers.get_courier(courier_id_of(actor))
    return CourierResponse.model_validate(courier)


@router.get(
    "/me/stats",
    response_model=CourierStatsResponse,
    summary="Calling courier's order counts and open shift",
)
async def get_my_stats(actor: CurrentActor, couriers: Couriers) -> CourierStatsResponse:
    stats = await couriers.courier_stats(courier_id_of(actor))
    active_session = stats["active_session"]
    return CourierStatsResponse(
        courier=CourierResponse.model_validate(stats["courier"]),
        orders_by_status=stats["orders_by_status"],
        delivered=stats["delivered"],
        active_session=(
            DeliverySessionResponse.model_validate(active_session)
            if active_session is not None
            else None
        ),
    )


@router.patch(
    "/me/location",
    response_model=CourierResponse,
    summary="Report the calling courier's position",
)
async def update_my_location(
    request: LocationUpdateRequest,
    actor: Annotated[Actor, Depends(require_capability(Capability.REPORT_LOCATION))],
    couriers: Couriers,
) -> CourierResponse:
    courier = await couriers.update_location(
        courier_id_of(actor), request.latitude, request.longitude
    )
    return CourierResponse.model_validate(courier)


@router.patch(
    "/me/availability",
    response_model=CourierResponse,
    summary="Set whether the calling courier can be dispatched",
)
async def update_my_availability(
    request: AvailabilityUpdateRequest,
    actor: Annotated[Actor, Depends(require_capability(Capability.REPORT_LOCATION))],
    couriers: Couriers,
) -> CourierResponse:
    courier = await couriers.set_availability(courier_id_of(actor), request.available)
    return CourierResponse.model_validate(courier)


@router.get("/{courier_id}", response_model=CourierResponse, summary="Get courier")
async def get_courier(
    courier_id: UUID,
    actor: Annotated[Actor, Depends(require_capability(Capability.VIEW_COURIERS))],
    couriers: Couriers,
) -> CourierResponse:
    courier = await couriers.get_courier(courier_id)
    return CourierResponse.model_validate(courier)


@router.delete(
    "/{courier_id}",
    response_model=CourierResponse,
    summary="Deactivate courier",
)
async def deactivate_courier(
    courier_id: UUID,
    actor: Annotated[Actor, Depends(require_capability(Capability.REGISTER_COURIERS))],
    couriers: Couriers,
) -> CourierResponse:
    """Refused while the courier still has orders out for delivery."""
    courier = await couriers.deactivate_courier(courier_id, actor)
    return CourierResponse.model_validate(courier)
