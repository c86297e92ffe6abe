"""
Celery worker side of the telemetry pipeline.

One job persists one event or metric. Failed jobs are retried with
exponential backoff; once the attempt budget is spent the payload is parked
on a Redis dead-letter list for manual inspection.
"""

import json
from datetime import UTC, datetime
from typing import Any

import structlog
from celery import Task
from redis import Redis
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from ..celery_app import celery_app
from ..db import get_db
from ..settings import settings
from .models import (
    PerformanceMetric,
    PerformanceMetricData,
    TelemetryEvent,
    TelemetryEventData,
    event_row,
    metric_row,
)

logger = structlog.get_logger(__name__)


def retry_countdown(retries: int, base_seconds: float | None = None) -> float:
    """Delay before the next attempt: base, 2*base, 4*base, ..."""
    base = settings.telemetry.backoff_seconds if base_seconds is None else base_seconds
    return base * (2**retries)


def get_dead_letter_client() -> "Redis[Any]":
    return Redis.from_url(settings.redis.redis_url, decode_responses=True)


def park_dead_letter(
    payload: Any,
    *,
    task_id: str | None,
    error: BaseException,
    client: "Redis[Any] | None" = None,
) -> None:
    """Push an exhausted job onto the dead-letter list."""
    entry = json.dumps(
        {
            "taskId": task_id,
            "payload": payload,
            "error": str(error),
            "failedAt": datetime.now(UTC).isoformat(),
        },
        default=str,
    )
    client = client or get_dead_letter_client()
    try:
        client.lpush(settings.telemetry.dead_letter_key, entry)
    except RedisError as e:
        logger.error(
            "telemetry.dead_letter_failed",
            task_id=task_id,
            error=str(e),
            payload=payload,
        )
        return
    logger.warning("telemetry.job_parked", task_id=task_id, error=str(error))


def persist_payload(payload: dict[str, Any]) -> str:
    """Insert one event or metric. Returns the new row id."""
    kind = payload.get("type")
    data = payload.get("data") or {}

    row: TelemetryEvent | PerformanceMetric
    if kind == "event":
        row = TelemetryEvent(**event_row(TelemetryEventData.model_validate(data)))
    elif kind == "metric":
        row = PerformanceMetric(**metric_row(PerformanceMetricData.model_validate(data)))
    else:
        raise ValueError(f"Unknown telemetry payload type: {kind!r}")

    with get_db() as session:
        session.add(row)
        session.flush()
        row_id = str(row.id)

    logger.debug("telemetry.persisted", kind=kind, id=row_id)
    return row_id


class TelemetryPersistTask(Task):
    """Task base that parks jobs which failed for good."""

    def on_failure(
        self,
        exc: BaseException,
        task_id: str,
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
        einfo: Any,
    ) -> None:
        payload = args[0] if args else kwargs.get("payload")
        park_dead_letter(payload, task_id=task_id, error=exc)


@celery_app.task(
    bind=True,
    base=TelemetryPersistTask,
    name="telemetry.persist",
    max_retries=settings.telemetry.max_attempts - 1,
    ignore_result=True,
)
def persist_telemetry(self: Task, payload: dict[str, Any]) -> str:
    """Persist one tracked event or metric."""
    try:
        return persist_payload(payload)
    except SQLAlchemyError as exc:
        logger.warning(
            "telemetry.persist_failed",
            attempt=self.request.retries + 1,
            max_attempts=settings.telemetry.max_attempts,
            error=str(exc),
        )
        raise self.retry(exc=exc, countdown=retry_countdown(self.request.retries))
