"""
Delivery session API endpoints for courier shifts and cash settlement.
"""

from typing import Annotated, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status

from src.api.deps import CurrentActor, Ledger, courier_id_of, require_capability
from src.core.logging import get_logger
from src.schemas.sessions import (
    DeliveryOverviewResponse,
    DeliverySessionResponse,
    SessionSettleRequest,
    SessionStartRequest,
)
from src.services.actors import Actor, Capability
from src.services.errors import NotFoundError
from src.services.orders.enums import ActorRole

logger = get_logger(__name__)

router = APIRouter(prefix="/sessions", tags=["sessions"])

Operator = Annotated[Actor, Depends(require_capability(Capability.SETTLE_SESSIONS))]


@router.post(
    "/start",
    response_model=DeliverySessionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start the calling courier's delivery session",
)
async def start_session(
    actor: Annotated[Actor, Depends(require_capability(Capability.RUN_SESSIONS))],
    ledger: Ledger,
    request: Optional[SessionStartRequest] = None,
) -> DeliverySessionResponse:
    request = request or SessionStartRequest()
    delivery_session = await ledger.start_session(
        courier_id_of(actor), request.opening_float
    )
    return DeliverySessionResponse.model_validate(delivery_session)


@router.post(
    "/end",
    response_model=DeliverySessionResponse,
    summary="End the calling courier's delivery session",
)
async def end_session(
    actor: Annotated[Actor, Depends(require_capability(Capability.RUN_SESSIONS))],
    ledger: Ledger,
) -> DeliverySessionResponse:
    delivery_session = await ledger.end_session(courier_id_of(actor))
    return DeliverySessionResponse.model_validate(delivery_session)


@router.get("", response_model=list[DeliverySessionResponse], summary="List sessions")
async def list_sessions(
    actor: Annotated[Actor, Depends(require_capability(Capability.VIEW_SESSIONS))],
    ledger: Ledger,
    courier_id: Optional[UUID] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
) -> list[DeliverySessionResponse]:
    """List sessions; couriers only see their own."""
    if actor.role == ActorRole.COURIER:
        courier_id = courier_id_of(actor)
    sessions = await ledger.list_sessions(courier_id=courier_id, limit=limit, offset=offset)
    return [DeliverySessionResponse.model_validate(s) for s in sessions]


@router.get(
    "/active",
    response_model=list[DeliverySessionResponse],
    summary="Open sessions",
)
async def list_active_sessions(
    actor: Annotated[Actor, Depends(require_capability(Capability.VIEW_SESSIONS))],
    ledger: Ledger,
) -> list[DeliverySessionResponse]:
    if actor.role == ActorRole.COURIER:
        active = await ledger.get_active_session(courier_id_of(actor))
        sessions = [active] if active is not None else []
    else:
        sessions = await ledger.list_active_sessions()
    return [DeliverySessionResponse.model_validate(s) for s in sessions]


@router.get(
    "/unsettled",
    response_model=list[DeliverySessionResponse],
    summary="Sessions awaiting settlement",
)
async def list_unsettled_sessions(
    actor: Operator, ledger: Ledger
) -> list[DeliverySessionResponse]:
    sessions = await ledger.list_unsettled_sessions()
    return [DeliverySessionResponse.model_validate(s) for s in sessions]


@router.get(
    "/overview",
    response_model=DeliveryOverviewResponse,
    summary="Courier, session and in-flight order counts",
)
async def delivery_overview(actor: Operator, ledger: Ledger) -> DeliveryOverviewResponse:
    return DeliveryOverviewResponse.model_validate(await ledger.delivery_overview())


@router.get("/{session_id}", response_model=DeliverySessionResponse, summary="Get session")
async def get_session(
    session_id: UUID,
    actor: Annotated[Actor, Depends(require_capability(Capability.VIEW_SESSIONS))],
    ledger: Ledger,
) -> DeliverySessionResponse:
    delivery_session = await ledger.repository.get(session_id)
    if delivery_session is None:
        raise NotFoundError(
            f"Delivery session {session_id} not found", session_id=str(session_id)
        )
    if actor.role == ActorRole.COURIER and delivery_session.courier_id != courier_id_of(actor):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Session belongs to another courier",
        )
    return DeliverySessionResponse.model_validate(delivery_session)


@router.post(
    "/{session_id}/settle",
    response_model=DeliverySessionResponse,
    summary="Settle an ended session against the deposited cash",
)
async def settle_session(
    session_id: UUID,
    request: SessionSettleRequest,
    actor: Operator,
    ledger: Ledger,
) -> DeliverySessionResponse:
    logger.info(
        "Settling delivery session",
        session_id=str(session_id),
        deposited_amount=str(request.deposited_amount),
        **actor.as_log_context(),
    )
    delivery_session = await ledger.settle_session(
        session_id,
        request.deposited_amount,
        actor,
        discrepancy_reason=request.discrepancy_reason,
        notes=request.notes,
    )
    return DeliverySessionResponse.model_validate(delivery_session)
