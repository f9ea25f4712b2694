"""
WebSocket event stream.

A connection subscribes to the caller's user topic and role topic on the
event bus and forwards every event as JSON. Clients may track individual
orders they are allowed to see, and couriers may stream location reports
over the same socket. Delivery is best effort; clients that need certainty
read the order through the REST API.
"""

import asyncio
import uuid

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect, status
from pydantic import TypeAdapter, ValidationError

from src.api.deps import resolve_actor
from src.core.logging import get_logger
from src.database.connection import get_session_factory
from src.schemas.events import ClientMessage, LocationMessage, TrackMessage
from src.services.actors import Actor
from src.services.couriers.service import CourierService
from src.services.dispatch.geo_index import build_geo_index
from src.services.errors import EngineError
from src.services.events.bus import Subscription, order_topic, role_topic, user_topic
from src.services.orders.enums import ActorRole
from src.services.orders.service import OrderService

logger = get_logger(__name__)

router = APIRouter(tags=["realtime"])

client_message_adapter = TypeAdapter(ClientMessage)


async def _forward_events(websocket: WebSocket, subscription: Subscription) -> None:
    async for event in subscription:
        await websocket.send_json(event.model_dump(mode="json"))


def _session_factory(websocket: WebSocket):
    return getattr(websocket.app.state, "session_factory", None) or get_session_factory()


async def _track(
    websocket: WebSocket, actor: Actor, subscription: Subscription, message: TrackMessage
) -> None:
    topic = order_topic(message.order_id)
    if message.action == "untrack":
        subscription.remove_topic(topic)
        await websocket.send_json({"type": "untracked", "order_id": str(message.order_id)})
        return

    async with _session_factory(websocket)() as session:
        await OrderService(session).get_order(message.order_id, actor)
    subscription.add_topic(topic)
    await websocket.send_json({"type": "tracking", "order_id": str(message.order_id)})


async def _report_location(
    websocket: WebSocket, actor: Actor, message: LocationMessage
) -> None:
    if actor.role != ActorRole.COURIER:
        await websocket.send_json(
            {"type": "error", "message": "Only couriers can report locations"}
        )
        return

    state = websocket.app.state
    async with _session_factory(websocket)() as session:
        couriers = CourierService(
            session,
            geo_index=build_geo_index(session, getattr(state, "redis_client", None)),
            relay=getattr(state, "relay", None),
        )
        await couriers.update_location(
            uuid.UUID(actor.id), message.latitude, message.longitude
        )


@router.websocket("/ws")
async def event_stream(websocket: WebSocket) -> None:
    """
    Stream bus events to a connected client.

    Identity comes from the ``X-Actor-Id``/``X-Actor-Role`` headers or, for
    browser clients, the ``actor_id``/``actor_role`` query parameters.
    """
    try:
        actor = resolve_actor(
            websocket.headers.get("x-actor-id") or websocket.query_params.get("actor_id"),
            websocket.headers.get("x-actor-role")
            or websocket.query_params.get("actor_role"),
        )
    except HTTPException as e:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=e.detail)
        return

    bus = websocket.app.state.bus
    await websocket.accept()
    subscription = bus.subscribe(user_topic(actor.id), role_topic(actor.role))
    forwarder = asyncio.create_task(_forward_events(websocket, subscription))
    logger.info(
        "Event stream connected",
        subscription_id=subscription.id,
        **actor.as_log_context(),
    )

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = client_message_adapter.validate_json(raw)
            except ValidationError as e:
                await websocket.send_json(
                    {
                        "type": "error",
                        "message": "Invalid message",
                        "details": e.errors(include_url=False, include_context=False),
                    }
                )
                continue

            try:
                if isinstance(message, TrackMessage):
                    await _track(websocket, actor, subscription, message)
                else:
                    await _report_location(websocket, actor, message)
            except EngineError as e:
                await websocket.send_json(
                    {"type": "error", "error": e.kind.value, "message": e.message}
                )
    except WebSocketDisconnect:
        logger.info(
            "Event stream disconnected",
            subscription_id=subscription.id,
            dropped=subscription.dropped,
            **actor.as_log_context(),
        )
    finally:
        bus.unsubscribe(subscription)
        forwarder.cancel()
        try:
            await forwarder
        except (asyncio.CancelledError, WebSocketDisconnect, RuntimeError):
            pass
