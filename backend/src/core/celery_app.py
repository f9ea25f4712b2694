"""
Celery application for background work.

External push and email deliveries run here so they survive API process
restarts and are retried with backoff. Start a worker with::

    celery -A src.core.celery_app worker --loglevel=info
"""

from celery import Celery

from src.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "order_dispatch",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["src.services.notifications.tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_ignore_result=settings.celery_result_backend is None,
    task_always_eager=settings.celery_task_always_eager,
    task_eager_propagates=False,
    task_default_queue="notifications",
)
