"""
Notification relay between the engine and its audiences.

Every accepted order transition, dispatch outcome, courier position report
and delivery session change becomes one or more immutable events on the
event bus. Publishing is awaited by the caller, so a state change is not
reported as successful before its events reached the bus. External push and
email deliveries are enqueued as Celery tasks, one per recipient and
channel; a recipient that cannot be queued never stops the rest.
"""

import asyncio
import uuid
from collections import deque
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Iterable, Optional, Sequence

from src.core.config import Settings, get_settings
from src.core.logging import get_logger
from src.database.models.courier import Courier
from src.database.models.delivery_session import DeliverySession
from src.database.models.order import Order
from src.schemas.events import Event, ExternalNotification
from src.services.actors import Actor
from src.services.events.bus import EventBus, order_topic, role_topic, user_topic
from src.services.notifications.senders import Delivery, NotificationSender, Recipient
from src.services.notifications.tasks import send_delivery_task
from src.services.notifications.templates import (
    TemplateEngine,
    customer_status_message,
    get_template_engine,
)
from src.services.orders.enums import ActorRole, OrderStatus

if TYPE_CHECKING:
    from src.services.dispatch.coordinator import DispatchResult

logger = get_logger(__name__)

OPERATORS = role_topic(ActorRole.OPERATOR)

STATUS_EVENTS = {
    OrderStatus.READY: "order_ready",
    OrderStatus.OUT_FOR_DELIVERY: "order_out_for_delivery",
    OrderStatus.DELIVERED: "order_delivered",
    OrderStatus.CANCELLED: "order_cancelled",
}


@dataclass
class DeliveryReport:
    queued: int = 0
    failed: int = 0
    skipped: int = 0


class NotificationRelay:
    """
    Republishes engine state changes to the event bus and external senders.

    Attributes:
        bus: Event bus receiving every event
        senders: Enabled external channels; deliveries they accept are queued
        failures: Most recent deliveries that could not be queued, newest last
    """

    def __init__(
        self,
        bus: EventBus,
        senders: Sequence[NotificationSender] = (),
        settings: Optional[Settings] = None,
        templates: Optional[TemplateEngine] = None,
    ):
        self.bus = bus
        self.senders = list(senders)
        self.settings = settings or get_settings()
        self.templates = templates or get_template_engine()
        self.failures: deque[dict[str, Any]] = deque(maxlen=100)

    async def order_placed(self, order: Order) -> None:
        payload = self._order_payload(order)
        await self._publish_order_event(order, "order_placed", payload)

        deliveries = []
        customer = self._customer_recipient(order)
        if customer is not None:
            deliveries.append(self._render(customer, "order_placed", order, payload))
        deliveries.extend(self._operator_emails(order, payload))
        await self._dispatch_external(deliveries)

    async def order_transitioned(
        self,
        order: Order,
        previous_status: OrderStatus,
        actor: Actor,
        courier: Optional[Courier] = None,
    ) -> None:
        """Publish the events for one accepted status change."""
        status = OrderStatus(order.status)
        event_type = STATUS_EVENTS.get(status)
        if event_type is None:
            return

        payload = {
            **self._order_payload(order),
            "previous_status": previous_status.value,
            "changed_by": {"id": actor.id, "role": actor.role.value},
        }
        await self._publish_order_event(order, event_type, payload)

        deliveries = []
        customer = self._customer_recipient(order)

        if status == OrderStatus.OUT_FOR_DELIVERY and order.courier_id is not None:
            await self._publish(user_topic(order.courier_id), "order_assigned", payload)
            await self._publish(user_topic(order.customer_id), "courier_assigned", payload)
            if courier is not None and courier.push_endpoint:
                recipient = Recipient(
                    id=str(courier.id),
                    role=ActorRole.COURIER,
                    push_endpoint=courier.push_endpoint,
                )
                deliveries.append(self._render(recipient, "order_assigned", order, payload))
            if customer is not None:
                deliveries.append(
                    self._render(customer, "courier_assigned", order, payload)
                )
        elif status in (OrderStatus.DELIVERED, OrderStatus.CANCELLED):
            if customer is not None:
                deliveries.append(self._render(customer, event_type, order, payload))

        await self._dispatch_external(deliveries)

    async def dispatch_attempted(self, order: Order, result: "DispatchResult") -> None:
        """
        Report a dispatch attempt that found no courier.

        Operators get the full outcome; the customer only sees the generic
        preparing message. Successful attempts are reported through the
        OUT_FOR_DELIVERY transition.
        """
        if result.courier_id is not None:
            return

        await self._publish(
            OPERATORS,
            "dispatch_no_courier",
            {
                **self._order_payload(order),
                "candidates_tried": result.candidates_tried,
                "reason": result.message,
            },
        )
        customer_payload = {
            "order_id": str(order.id),
            "order_number": order.order_number,
            "status": OrderStatus(order.status).value,
            "message": customer_status_message(OrderStatus.READY, order.order_number),
        }
        await self._publish(user_topic(order.customer_id), "order_update", customer_payload)
        await self._publish(order_topic(order.id), "order_update", customer_payload)

    async def courier_location(
        self,
        courier_id: uuid.UUID,
        latitude: float,
        longitude: float,
        order_ids: Iterable[uuid.UUID] = (),
    ) -> None:
        """Relay a courier position to everyone tracking its orders."""
        payload = {
            "courier_id": str(courier_id),
            "latitude": latitude,
            "longitude": longitude,
        }
        await self._publish(OPERATORS, "courier_location", payload)
        for order_id in order_ids:
            await self._publish(
                order_topic(order_id),
                "courier_location",
                {**payload, "order_id": str(order_id)},
            )

    async def session_event(
        self, event_type: str, delivery_session: DeliverySession
    ) -> None:
        payload = {
            "session_id": str(delivery_session.id),
            "courier_id": str(delivery_session.courier_id),
            "courier_name": delivery_session.courier_name,
            "start_time": delivery_session.start_time,
            "end_time": delivery_session.end_time,
            "opening_float": str(delivery_session.opening_float),
            "total_collected": str(delivery_session.total_collected),
            "total_to_deposit": str(delivery_session.total_to_deposit),
            "collections": len(delivery_session.collections),
            "is_settled": delivery_session.is_settled,
            "discrepancy": (
                str(delivery_session.discrepancy)
                if delivery_session.discrepancy is not None
                else None
            ),
        }
        await self._publish(user_topic(delivery_session.courier_id), event_type, payload)
        await self._publish(OPERATORS, event_type, payload)

    async def deliver(self, deliveries: Sequence[Delivery]) -> DeliveryReport:
        """Enqueue one task per recipient and channel, capturing enqueue failures."""
        report = DeliveryReport()
        for delivery in deliveries:
            senders = [s for s in self.senders if s.accepts(delivery)]
            if not senders:
                report.skipped += 1
                continue
            payload = delivery.to_task_payload()
            for sender in senders:
                try:
                    await asyncio.to_thread(
                        send_delivery_task.apply_async,
                        kwargs={"channel": sender.channel, "delivery": payload},
                        retry=True,
                    )
                    report.queued += 1
                except Exception as e:
                    report.failed += 1
                    failure = {
                        "channel": sender.channel,
                        "type": delivery.notification.type,
                        "recipient_id": delivery.recipient.id,
                        "order_id": delivery.notification.order_id,
                        "error": str(e),
                    }
                    self.failures.append(failure)
                    logger.error("Failed to queue notification", **failure)
        if report.queued or report.failed:
            logger.info(
                "External notifications queued",
                queued=report.queued,
                failed=report.failed,
                skipped=report.skipped,
            )
        return report

    async def _dispatch_external(self, deliveries: list[Delivery]) -> None:
        if deliveries and self.senders:
            await self.deliver(deliveries)

    async def _publish_order_event(
        self, order: Order, event_type: str, payload: dict[str, Any]
    ) -> None:
        await self._publish(user_topic(order.customer_id), event_type, payload)
        await self._publish(OPERATORS, event_type, payload)
        await self._publish(order_topic(order.id), event_type, payload)

    async def _publish(self, topic: str, event_type: str, payload: dict[str, Any]) -> None:
        event = Event(topic=topic, type=event_type, payload=payload)
        delivered = await self.bus.publish(topic, event)
        logger.debug(
            "Event published", topic=topic, event_type=event_type, subscribers=delivered
        )

    def _order_payload(self, order: Order) -> dict[str, Any]:
        status = OrderStatus(order.status)
        payload: dict[str, Any] = {
            "order_id": str(order.id),
            "order_number": order.order_number,
            "status": status.value,
            "payment_method": order.payment_method.value,
            "final_amount": str(order.final_amount),
            "message": customer_status_message(status, order.order_number),
        }
        assignment = order.courier_assignment
        if assignment is not None:
            payload["courier"] = {
                "courier_id": str(assignment["courier_id"]),
                "name": assignment["name"],
                "phone": assignment["phone"],
                "vehicle": assignment["vehicle"],
            }
        return payload

    def _customer_recipient(self, order: Order) -> Optional[Recipient]:
        endpoint = (order.customer or {}).get("push_endpoint")
        if not endpoint:
            return None
        return Recipient(id=order.customer_id, role=ActorRole.CUSTOMER, push_endpoint=endpoint)

    def _render(
        self,
        recipient: Recipient,
        event_type: str,
        order: Order,
        payload: dict[str, Any],
    ) -> Delivery:
        context = {
            "order_number": order.order_number,
            "final_amount": order.final_amount,
            "payment_method": order.payment_method.value,
            "courier_name": (payload.get("courier") or {}).get("name") or "Your courier",
        }
        rendered = self.templates.render_notification(
            event_type, recipient.role.value, context
        )
        return Delivery(
            recipient=recipient,
            notification=self._notification(recipient, event_type, order, payload),
            title=rendered["title"],
            message=rendered["message"],
        )

    def _operator_emails(self, order: Order, payload: dict[str, Any]) -> list[Delivery]:
        if not self.settings.notification_emails:
            return []

        address = order.delivery_address or {}
        email = self.templates.render_new_order_email(
            {
                "order_number": order.order_number,
                "customer_name": (order.customer or {}).get("name", ""),
                "items": order.items,
                "final_amount": order.final_amount,
                "payment_method": order.payment_method.value,
                "address": ", ".join(
                    str(address[key])
                    for key in ("street", "apartment", "city", "zip_code")
                    if address.get(key)
                ),
            }
        )
        deliveries = []
        for to_address in self.settings.notification_emails:
            recipient = Recipient(id=to_address, role=ActorRole.OPERATOR, email=to_address)
            deliveries.append(
                Delivery(
                    recipient=recipient,
                    notification=self._notification(
                        recipient, "order_placed", order, payload
                    ),
                    title=email["subject"],
                    message=email["text_body"],
                    html=email["html_body"],
                    channels=frozenset({"email"}),
                )
            )
        return deliveries

    @staticmethod
    def _notification(
        recipient: Recipient,
        event_type: str,
        order: Order,
        payload: dict[str, Any],
    ) -> ExternalNotification:
        return ExternalNotification(
            type=event_type,
            order_id=str(order.id),
            order_number=order.order_number,
            recipient_id=recipient.id,
            role=recipient.role.value,
            data=payload,
        )
