"""
External notification senders.

A sender delivers one rendered notification to one recipient over one
channel. Sends are blocking boto3 calls and run inside Celery workers; the
API process only uses ``accepts`` to decide what to enqueue.
"""

from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Optional, Protocol

from src.core.config import Settings, get_settings
from src.schemas.events import ExternalNotification
from src.services.notifications.aws_clients import SESClient, SNSClient
from src.services.orders.enums import ActorRole


@dataclass(frozen=True)
class Recipient:
    """Someone an external notification is addressed to."""

    id: str
    role: ActorRole
    push_endpoint: Optional[str] = None
    email: Optional[str] = None


@dataclass(frozen=True)
class Delivery:
    """
    One notification for one recipient, ready to send.

    Attributes:
        recipient: Addressee
        notification: Payload in the external contract shape
        title: Rendered push title or email subject
        message: Rendered push body or plain text email body
        html: Rendered HTML email body, if any
        channels: Channels this delivery is meant for
    """

    recipient: Recipient
    notification: ExternalNotification
    title: str
    message: str
    html: Optional[str] = None
    channels: frozenset[str] = field(default_factory=lambda: frozenset({"push"}))

    def to_task_payload(self) -> dict[str, Any]:
        """JSON-safe form passed to the delivery task."""
        return {
            "recipient": {
                "id": self.recipient.id,
                "role": self.recipient.role.value,
                "push_endpoint": self.recipient.push_endpoint,
                "email": self.recipient.email,
            },
            "notification": self.notification.to_payload(),
            "title": self.title,
            "message": self.message,
            "html": self.html,
            "channels": sorted(self.channels),
        }

    @classmethod
    def from_task_payload(cls, payload: dict[str, Any]) -> "Delivery":
        recipient = payload["recipient"]
        return cls(
            recipient=Recipient(
                id=recipient["id"],
                role=ActorRole(recipient["role"]),
                push_endpoint=recipient.get("push_endpoint"),
                email=recipient.get("email"),
            ),
            notification=ExternalNotification.model_validate(payload["notification"]),
            title=payload["title"],
            message=payload["message"],
            html=payload.get("html"),
            channels=frozenset(payload.get("channels") or ("push",)),
        )


class NotificationSender(Protocol):
    channel: str

    def accepts(self, delivery: Delivery) -> bool: ...

    def send(self, delivery: Delivery) -> dict[str, Any]: ...


class SnsPushSender:
    """Mobile push through an SNS platform endpoint."""

    channel = "push"

    def __init__(self, client: SNSClient):
        self.client = client

    def accepts(self, delivery: Delivery) -> bool:
        return "push" in delivery.channels and bool(delivery.recipient.push_endpoint)

    def send(self, delivery: Delivery) -> dict[str, Any]:
        return self.client.publish_push(
            delivery.recipient.push_endpoint,
            delivery.title,
            delivery.message,
            delivery.notification.to_payload(),
        )


class SesEmailSender:
    """Email through SES."""

    channel = "email"

    def __init__(self, client: SESClient):
        self.client = client

    def accepts(self, delivery: Delivery) -> bool:
        return "email" in delivery.channels and bool(delivery.recipient.email)

    def send(self, delivery: Delivery) -> dict[str, Any]:
        return self.client.send_email(
            [delivery.recipient.email],
            delivery.title,
            delivery.message,
            delivery.html,
        )


def build_senders(settings: Settings) -> list[NotificationSender]:
    """Senders enabled by configuration."""
    senders: list[NotificationSender] = []
    if settings.push_notifications_enabled:
        senders.append(SnsPushSender(SNSClient(settings)))
    if settings.email_notifications_enabled:
        senders.append(SesEmailSender(SESClient(settings)))
    return senders


@lru_cache
def get_senders() -> dict[str, NotificationSender]:
    """Enabled senders keyed by channel, built once per worker process."""
    return {sender.channel: sender for sender in build_senders(get_settings())}
