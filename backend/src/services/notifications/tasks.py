"""
Celery tasks for external notification delivery.

Each task sends one rendered notification to one recipient over one
channel, so a failing recipient is retried on its own and never holds back
the others. Transient SNS and SES failures are retried with exponential
backoff and jitter; permanent rejections are recorded and not retried.
"""

from typing import Any

from celery import Task, shared_task

from src.core.logging import get_logger
from src.services.notifications.aws_clients import AWSClientError
from src.services.notifications.senders import Delivery, get_senders

logger = get_logger(__name__)


class NotificationTask(Task):
    """
    Base task class for notification deliveries with retry logic.

    Retries transient AWS client errors and logs every task outcome.
    """

    autoretry_for = (AWSClientError,)
    retry_kwargs = {"max_retries": 3}
    retry_backoff = True
    retry_backoff_max = 600
    retry_jitter = True

    def on_failure(
        self,
        exc: Exception,
        task_id: str,
        args: tuple,
        kwargs: dict,
        einfo: Any,
    ) -> None:
        logger.error(
            "Notification task failed",
            task_id=task_id,
            exception=str(exc),
            channel=kwargs.get("channel"),
            exc_info=einfo,
        )

    def on_retry(
        self,
        exc: Exception,
        task_id: str,
        args: tuple,
        kwargs: dict,
        einfo: Any,
    ) -> None:
        logger.warning(
            "Notification task retrying",
            task_id=task_id,
            exception=str(exc),
            retry_count=self.request.retries,
            max_retries=self.max_retries,
        )

    def on_success(
        self,
        retval: Any,
        task_id: str,
        args: tuple,
        kwargs: dict,
    ) -> None:
        logger.info(
            "Notification task completed",
            task_id=task_id,
            result=retval,
        )


@shared_task(
    bind=True,
    base=NotificationTask,
    name="notifications.send_delivery",
    time_limit=120,
    soft_time_limit=90,
)
def send_delivery_task(
    self: Task,
    channel: str,
    delivery: dict[str, Any],
) -> dict[str, Any]:
    """
    Send one delivery over one channel.

    Args:
        self: Task instance
        channel: Sender channel ("push" or "email")
        delivery: Payload from ``Delivery.to_task_payload``

    Returns:
        Dictionary describing the outcome

    Raises:
        AWSClientError: On transient failures, so the task is retried
    """
    parsed = Delivery.from_task_payload(delivery)
    outcome = {
        "channel": channel,
        "type": parsed.notification.type,
        "recipient_id": parsed.recipient.id,
        "order_id": parsed.notification.order_id,
    }

    sender = get_senders().get(channel)
    if sender is None or not sender.accepts(parsed):
        logger.info("Notification channel not available", **outcome)
        return {**outcome, "status": "skipped"}

    try:
        response = sender.send(parsed)
    except AWSClientError as e:
        if not e.permanent:
            raise
        logger.error("Notification rejected", error=str(e), **outcome)
        return {**outcome, "status": "failed", "error": str(e)}

    logger.info(
        "Notification delivered",
        task_id=self.request.id,
        message_id=response.get("message_id"),
        **outcome,
    )
    return {**outcome, "status": "sent"}
