"""
FastAPI dependencies for actor identity, authorization and services.

Authentication happens upstream: the gateway forwards the caller's identity
in the ``X-Actor-Id`` and ``X-Actor-Role`` headers. These dependencies turn
the headers into an ``Actor``, enforce role capabilities and build the
per-request services on top of the request's database session.
"""

import uuid
from typing import Annotated, Callable, Optional

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.logging import get_logger, set_actor
from src.database.connection import get_db
from src.services.actors import Actor, Capability
from src.services.couriers.service import CourierService
from src.services.dispatch.coordinator import DispatchCoordinator
from src.services.dispatch.geo_index import GeoIndex, build_geo_index
from src.services.notifications.relay import NotificationRelay
from src.services.orders.enums import ActorRole
from src.services.orders.service import OrderService
from src.services.settlement.service import CashSettlementLedger

logger = get_logger(__name__)


def resolve_actor(actor_id: Optional[str], actor_role: Optional[str]) -> Actor:
    """
    Build an actor from forwarded identity values.

    Raises:
        HTTPException: 401 if identity is missing, 400 if the role is unknown
    """
    if not actor_id or not actor_role:
        logger.warning("Request without actor identity")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing actor identity",
        )
    try:
        role = ActorRole(actor_role.strip().lower())
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown actor role: {actor_role}",
        )
    if role == ActorRole.SYSTEM:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="The system role cannot be assumed by API callers",
        )

    actor = Actor(id=actor_id.strip(), role=role)
    set_actor(actor.id, actor.role.value)
    return actor


async def get_current_actor(
    x_actor_id: Annotated[Optional[str], Header()] = None,
    x_actor_role: Annotated[Optional[str], Header()] = None,
) -> Actor:
    return resolve_actor(x_actor_id, x_actor_role)


def require_capability(*capabilities: Capability) -> Callable:
    """
    Create dependency that requires every given capability.

    Args:
        *capabilities: Capabilities the actor's role must grant

    Returns:
        Dependency function returning the actor
    """

    async def capability_checker(
        actor: Annotated[Actor, Depends(get_current_actor)],
    ) -> Actor:
        missing = [c.value for c in capabilities if not actor.can(c)]
        if missing:
            logger.warning(
                "Authorization failed: missing capability",
                required=missing,
                **actor.as_log_context(),
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return actor

    return capability_checker


def get_relay(request: Request) -> Optional[NotificationRelay]:
    return getattr(request.app.state, "relay", None)


def get_geo_index(
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> GeoIndex:
    return build_geo_index(db, getattr(request.app.state, "redis_client", None))


def get_courier_service(
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    geo_index: Annotated[GeoIndex, Depends(get_geo_index)],
    relay: Annotated[Optional[NotificationRelay], Depends(get_relay)],
) -> CourierService:
    sweeper = getattr(request.app.state, "sweeper", None)
    return CourierService(
        db,
        geo_index=geo_index,
        relay=relay,
        on_available=sweeper.trigger if sweeper is not None else None,
    )


def get_ledger(
    db: Annotated[AsyncSession, Depends(get_db)],
    relay: Annotated[Optional[NotificationRelay], Depends(get_relay)],
    courier_service: Annotated[CourierService, Depends(get_courier_service)],
) -> CashSettlementLedger:
    return CashSettlementLedger(db, relay=relay, courier_service=courier_service)


def get_order_service(
    db: Annotated[AsyncSession, Depends(get_db)],
    relay: Annotated[Optional[NotificationRelay], Depends(get_relay)],
    ledger: Annotated[CashSettlementLedger, Depends(get_ledger)],
) -> OrderService:
    return OrderService(db, relay=relay, ledger=ledger)


def get_dispatch_coordinator(
    db: Annotated[AsyncSession, Depends(get_db)],
    geo_index: Annotated[GeoIndex, Depends(get_geo_index)],
    relay: Annotated[Optional[NotificationRelay], Depends(get_relay)],
    order_service: Annotated[OrderService, Depends(get_order_service)],
) -> DispatchCoordinator:
    return DispatchCoordinator(db, geo_index, relay=relay, order_service=order_service)


CurrentActor = Annotated[Actor, Depends(get_current_actor)]
DatabaseSession = Annotated[AsyncSession, Depends(get_db)]
Orders = Annotated[OrderService, Depends(get_order_service)]
Couriers = Annotated[CourierService, Depends(get_courier_service)]
Ledger = Annotated[CashSettlementLedger, Depends(get_ledger)]
Coordinator = Annotated[DispatchCoordinator, Depends(get_dispatch_coordinator)]


def courier_id_of(actor: Actor) -> uuid.UUID:
    """
    Courier id carried by a courier actor.

    Raises:
        HTTPException: 403 for non-courier actors, 400 if the id is not a UUID
    """
    if actor.role != ActorRole.COURIER:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only couriers can use this endpoint",
        )
    try:
        return uuid.UUID(actor.id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Courier actor id must be a UUID",
        )
