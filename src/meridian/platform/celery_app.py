"""
Celery application configuration.

Telemetry persistence jobs run on their own queue so a backlog there does
not delay other work.
"""

from typing import Any

import structlog
from celery import Celery
from kombu import Queue

from meridian.platform.settings import settings

# Create Celery application
celery_app = Celery(
    "meridian_platform",
    broker=settings.celery.broker_url,
    backend=settings.celery.result_backend,
    include=[
        "meridian.platform.telemetry.tasks",
    ],
)

# Configure Celery settings
celery_app.conf.update(
    # Task routing
    task_routes={
        "telemetry.*": {"queue": settings.telemetry.queue_name},
    },
    # Queue configuration
    task_default_queue="default",
    task_queues=(
        Queue("default", routing_key="default"),
        Queue(settings.telemetry.queue_name, routing_key=settings.telemetry.queue_name),
    ),
    # Task execution settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_always_eager=settings.celery.task_always_eager,
    # Task result settings
    result_expires=3600,  # 1 hour
    task_time_limit=settings.celery.task_time_limit,
    task_soft_time_limit=settings.celery.task_soft_time_limit,
    # Worker settings
    worker_concurrency=settings.celery.worker_concurrency,
    worker_prefetch_multiplier=settings.celery.worker_prefetch_multiplier,
    task_acks_late=True,
    worker_max_tasks_per_child=1000,
)


@celery_app.on_after_finalize.connect  # type: ignore[misc]
def log_worker_configuration(sender: Any, **kwargs: Any) -> None:
    """Log the queue layout once the app is finalized."""
    logger = structlog.get_logger(__name__)
    logger.info(
        "celery.configured",
        queues=[queue.name for queue in sender.conf.task_queues],
        concurrency=sender.conf.worker_concurrency,
    )


__all__ = ["celery_app"]
