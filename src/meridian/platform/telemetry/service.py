"""
Telemetry ingestion and read APIs.

``track_event``/``track_metric`` enqueue a persistence job and append to the
in-process buffer; neither waits for the durable write. The buffer is
flushed to Redis by a periodic task, or immediately when a category grows
past its threshold.
"""

import asyncio
import contextlib
import csv
import io
from collections.abc import AsyncIterator, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog
from celery.result import AsyncResult
from kombu.exceptions import KombuError
from pydantic import BaseModel
from redis.exceptions import RedisError
from sqlalchemy import and_, desc, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..audit.service import to_utc
from ..settings import Settings, settings
from .buffer import TelemetryBuffer
from .models import (
    EventType,
    ExportType,
    MetricType,
    PerformanceMetric,
    PerformanceMetricData,
    TelemetryCategory,
    TelemetryEvent,
    TelemetryEventData,
)
from .queue import TelemetryQueue
from .realtime import RealtimeStore

logger = structlog.get_logger(__name__)

EVENT_EXPORT_FIELDS = [
    "id",
    "userId",
    "sessionId",
    "eventType",
    "eventName",
    "path",
    "method",
    "statusCode",
    "duration",
    "createdAt",
]

METRIC_EXPORT_FIELDS = [
    "id",
    "userId",
    "metricType",
    "metricName",
    "value",
    "unit",
    "path",
    "sessionId",
    "createdAt",
]


class TelemetryService:
    """Owns the buffer, its flush loop, the job queue and the realtime store."""

    def __init__(
        self,
        *,
        queue: TelemetryQueue | None = None,
        realtime: RealtimeStore | None = None,
        buffer: TelemetryBuffer | None = None,
        session: AsyncSession | None = None,
        config: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.config = config or settings
        self._clock = clock or (lambda: datetime.now(UTC))
        self.queue = queue or TelemetryQueue(queue_name=self.config.telemetry.queue_name)
        self.realtime = realtime or RealtimeStore(
            key_prefix=self.config.telemetry.key_prefix,
            window_hours=self.config.telemetry.realtime_window_hours,
        )
        self.buffer = buffer or TelemetryBuffer(
            max_size=self.config.telemetry.buffer_max_size,
            clock=self._clock,
            max_backlog=self.config.telemetry.buffer_max_backlog,
        )
        self.flush_interval = self.config.telemetry.flush_interval_seconds
        self._session = session
        self._flush_task: asyncio.Task[None] | None = None
        self._pending: set[asyncio.Task[bool]] = set()

    @contextlib.asynccontextmanager
    async def _get_session(self) -> AsyncIterator[AsyncSession]:
        if self._session is not None:
            yield self._session
            return

        from ..db import AsyncSessionLocal

        async with AsyncSessionLocal() as session:
            yield session

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the periodic flush loop."""
        if self._flush_task is not None:
            return
        self._flush_task = asyncio.create_task(self._flush_loop(), name="telemetry-flush")
        logger.info("telemetry.started", flush_interval=self.flush_interval)

    async def shutdown(self) -> None:
        """Stop the flush loop and flush whatever is still buffered."""
        if self._flush_task is not None:
            self._flush_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._flush_task
            self._flush_task = None

        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

        flushed = await self.flush()
        logger.info("telemetry.stopped", final_flush=flushed)

    async def _flush_loop(self) -> None:
        while True:
            await asyncio.sleep(self.flush_interval)
            await self.flush()

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def track_event(self, event: TelemetryEventData | dict[str, Any]) -> AsyncResult | None:
        data = (
            event
            if isinstance(event, TelemetryEventData)
            else TelemetryEventData.model_validate(event)
        )
        return await self._track(TelemetryCategory.EVENTS, "event", data)

    async def track_metric(
        self, metric: PerformanceMetricData | dict[str, Any]
    ) -> AsyncResult | None:
        data = (
            metric
            if isinstance(metric, PerformanceMetricData)
            else PerformanceMetricData.model_validate(metric)
        )
        return await self._track(TelemetryCategory.METRICS, "metric", data)

    async def _track(
        self, category: TelemetryCategory, kind: str, data: BaseModel
    ) -> AsyncResult | None:
        payload = data.model_dump(mode="json")

        handle: AsyncResult | None = None
        try:
            handle = await asyncio.to_thread(self.queue.submit, kind, payload)
        except (KombuError, RedisError, OSError) as e:
            logger.error("telemetry.enqueue_failed", kind=kind, error=str(e))

        batch = self.buffer.append(category.value, payload)
        if batch is not None:
            task = asyncio.create_task(self._write_batch(category.value, batch))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

        return handle

    # ------------------------------------------------------------------
    # Realtime store
    # ------------------------------------------------------------------

    async def _write_batch(self, category: str, batch: list[dict[str, Any]]) -> bool:
        try:
            await self.realtime.write_batch(category, batch)
        except (RedisError, RuntimeError, OSError) as e:
            logger.error(
                "telemetry.flush_failed", category=category, size=len(batch), error=str(e)
            )
            self.buffer.requeue(category, batch)
            return False
        # A failed write keeps the category held until a later write succeeds
        self.buffer.release(category)
        return True

    async def flush(self) -> int:
        """Drain the buffer into the realtime store. Returns entries written.

        A successful write also resumes threshold writes for its category.
        """
        written = 0
        for category, batch in self.buffer.drain().items():
            if await self._write_batch(category, batch):
                written += len(batch)
        return written

    async def get_realtime_metrics(self, minutes: int = 5) -> dict[str, Any]:
        """Recent buffered entries. Empty lists when Redis is unavailable."""
        timestamp = self._clock().isoformat()
        try:
            events = await self.realtime.read_window(TelemetryCategory.EVENTS.value, minutes)
            metrics = await self.realtime.read_window(TelemetryCategory.METRICS.value, minutes)
        except (RedisError, RuntimeError, OSError) as e:
            logger.error("telemetry.realtime_read_failed", error=str(e))
            return {"events": [], "metrics": [], "timestamp": timestamp}
        return {"events": events, "metrics": metrics, "timestamp": timestamp}

    # ------------------------------------------------------------------
    # Durable store
    # ------------------------------------------------------------------

    async def get_aggregated_metrics(self, hours: int = 24) -> dict[str, Any]:
        end = self._clock()
        start = end - timedelta(hours=hours)

        event_window = and_(TelemetryEvent.created_at >= start, TelemetryEvent.created_at <= end)
        metric_window = and_(
            PerformanceMetric.created_at >= start, PerformanceMetric.created_at <= end
        )

        async with self._get_session() as session:
            total_events = (
                await session.execute(select(func.count(TelemetryEvent.id)).where(event_window))
            ).scalar() or 0

            stats = (
                await session.execute(
                    select(
                        func.avg(PerformanceMetric.value),
                        func.min(PerformanceMetric.value),
                        func.max(PerformanceMetric.value),
                    ).where(
                        metric_window,
                        PerformanceMetric.metric_type == MetricType.API_RESPONSE.value,
                    )
                )
            ).one()

            visits = func.count(TelemetryEvent.id).label("visits")
            top_paths = (
                await session.execute(
                    select(TelemetryEvent.path, visits)
                    .where(
                        event_window,
                        TelemetryEvent.event_type == EventType.PAGE_VIEW.value,
                        TelemetryEvent.path.is_not(None),
                    )
                    .group_by(TelemetryEvent.path)
                    .order_by(desc(visits), TelemetryEvent.path)
                    .limit(10)
                )
            ).all()

            by_type = dict(
                (
                    await session.execute(
                        select(TelemetryEvent.event_type, func.count(TelemetryEvent.id))
                        .where(event_window)
                        .group_by(TelemetryEvent.event_type)
                    )
                ).all()
            )

        api_calls = by_type.get(EventType.API_CALL.value, 0)
        errors = by_type.get(EventType.ERROR.value, 0)
        avg_value, min_value, max_value = stats

        return {
            "summary": {
                "totalEvents": total_events,
                "errorRate": (errors / api_calls) * 100 if api_calls else 0,
                "avgResponseTime": float(avg_value or 0),
                "minResponseTime": float(min_value or 0),
                "maxResponseTime": float(max_value or 0),
            },
            "topPaths": [{"path": path, "visits": count} for path, count in top_paths],
            "timeRange": {"start": start.isoformat(), "end": end.isoformat()},
        }

    async def export_telemetry(
        self,
        export_type: ExportType | str = ExportType.EVENTS,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> tuple[str, str, int]:
        """Render stored events or metrics as CSV, newest first.

        Returns ``(filename, csv_text, row_count)``.
        """
        kind = ExportType(export_type)
        model: type[TelemetryEvent] | type[PerformanceMetric] = (
            TelemetryEvent if kind == ExportType.EVENTS else PerformanceMetric
        )

        query = select(model)
        if start is not None:
            query = query.where(model.created_at >= to_utc(start))
        if end is not None:
            query = query.where(model.created_at <= to_utc(end))
        query = query.order_by(desc(model.created_at))

        async with self._get_session() as session:
            rows = list((await session.execute(query)).scalars().all())

        if kind == ExportType.EVENTS:
            fields = EVENT_EXPORT_FIELDS
            records = [self._event_export_row(row) for row in rows]
            prefix = "telemetry-events"
        else:
            fields = METRIC_EXPORT_FIELDS
            records = [self._metric_export_row(row) for row in rows]
            prefix = "performance-metrics"

        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=fields)
        writer.writeheader()
        writer.writerows(records)

        filename = f"{prefix}-{self._clock().strftime('%Y-%m-%d')}.csv"
        return filename, buffer.getvalue(), len(records)

    @staticmethod
    def _event_export_row(row: TelemetryEvent) -> dict[str, Any]:
        return {
            "id": str(row.id),
            "userId": row.user_id or "",
            "sessionId": row.session_id,
            "eventType": row.event_type,
            "eventName": row.event_name,
            "path": row.path or "",
            "method": row.method or "",
            "statusCode": row.status_code if row.status_code is not None else "",
            "duration": row.duration if row.duration is not None else "",
            "createdAt": row.created_at.isoformat(),
        }

    @staticmethod
    def _metric_export_row(row: PerformanceMetric) -> dict[str, Any]:
        return {
            "id": str(row.id),
            "userId": row.user_id or "",
            "metricType": row.metric_type,
            "metricName": row.metric_name,
            "value": row.value,
            "unit": row.unit,
            "path": row.path or "",
            "sessionId": row.session_id or "",
            "createdAt": row.created_at.isoformat(),
        }
