"""
Producer side of the telemetry pipeline.
"""

from typing import Any

from celery import Task
from celery.result import AsyncResult

from ..settings import settings
from .tasks import persist_telemetry


class TelemetryQueue:
    """Submits persistence jobs to the Celery ``telemetry`` queue."""

    def __init__(self, task: Task | None = None, queue_name: str | None = None):
        self.task = task or persist_telemetry
        self.queue_name = queue_name or settings.telemetry.queue_name

    def submit(self, kind: str, data: dict[str, Any]) -> AsyncResult:
        """Enqueue one job. The returned handle may be discarded."""
        return self.task.apply_async(
            args=[{"type": kind, "data": data}],
            queue=self.queue_name,
        )
