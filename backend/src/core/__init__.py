"""
Core package for shared configuration, logging and the Celery app.

The Celery app is imported here so ``shared_task`` functions bind to it
wherever they are first used.
"""

from src.core.celery_app import celery_app

__all__ = ["celery_app"]
