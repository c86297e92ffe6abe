"""
Tests for telemetry ingestion, flushing and aggregation.
"""

import asyncio
import csv
import io
import time
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from kombu.exceptions import OperationalError
from redis.exceptions import RedisError

from meridian.platform.settings import Settings
from meridian.platform.telemetry.buffer import TelemetryBuffer
from meridian.platform.telemetry.models import (
    EventType,
    ExportType,
    MetricType,
    PerformanceMetric,
    PerformanceMetricData,
    TelemetryEvent,
    TelemetryEventData,
)
from meridian.platform.telemetry.queue import TelemetryQueue
from meridian.platform.telemetry.realtime import RealtimeStore
from meridian.platform.telemetry.service import (
    EVENT_EXPORT_FIELDS,
    METRIC_EXPORT_FIELDS,
    TelemetryService,
)

pytestmark = pytest.mark.asyncio


class RecordingQueue:
    """Stands in for the Celery producer."""

    def __init__(self, error: Exception | None = None):
        self.jobs: list[tuple[str, dict]] = []
        self.error = error

    def submit(self, kind, data):
        if self.error is not None:
            raise self.error
        self.jobs.append((kind, data))
        return None


def click(name: str = "place-order") -> TelemetryEventData:
    return TelemetryEventData(
        session_id="s-1", event_type=EventType.CLICK, event_name=name, path="/orders"
    )


@pytest.fixture
def queue():
    return RecordingQueue()


@pytest.fixture
def realtime(redis_client, clock):
    return RealtimeStore(client=redis_client, clock=clock)


@pytest.fixture
def service(queue, realtime, async_db_session, clock):
    return TelemetryService(
        queue=queue,
        realtime=realtime,
        buffer=TelemetryBuffer(max_size=2, clock=clock),
        session=async_db_session,
        clock=clock,
    )


class TestTracking:
    async def test_track_event_enqueues_and_buffers(self, service, queue):
        await service.track_event(click())

        assert queue.jobs[0][0] == "event"
        assert queue.jobs[0][1]["event_name"] == "place-order"
        assert service.buffer.size("events") == 1

    async def test_track_metric_accepts_dict(self, service, queue):
        await service.track_metric(
            {"metricType": "PAGE_LOAD", "metricName": "/dashboard", "value": 812.5}
        )

        kind, payload = queue.jobs[0]
        assert kind == "metric"
        assert payload["metric_type"] == "PAGE_LOAD"
        assert service.buffer.size("metrics") == 1

    async def test_enqueue_failure_is_logged_not_raised(self, queue, realtime, clock):
        service = TelemetryService(
            queue=RecordingQueue(error=OperationalError("broker unreachable")),
            realtime=realtime,
            buffer=TelemetryBuffer(clock=clock),
            clock=clock,
        )

        assert await service.track_event(click()) is None
        assert service.buffer.size("events") == 1

    async def test_track_does_not_wait_for_persistence(self, realtime, clock):
        """A slow durable write must not slow the caller down."""
        persisted = []

        def slow_persist(payload):
            time.sleep(2)
            persisted.append(payload)

        service = TelemetryService(
            queue=TelemetryQueue(),
            realtime=realtime,
            buffer=TelemetryBuffer(clock=clock),
            clock=clock,
        )

        with patch("meridian.platform.telemetry.tasks.persist_payload", side_effect=slow_persist):
            started = time.perf_counter()
            for i in range(5):
                await service.track_event(click(f"click-{i}"))
            elapsed = time.perf_counter() - started

        assert elapsed < 1.0
        assert persisted == []
        assert service.buffer.size("events") == 5


class TestFlushing:
    async def test_threshold_triggers_background_write(self, service, redis_client):
        for i in range(3):
            await service.track_event(click(f"click-{i}"))

        # The write runs as a task; let it finish.
        await asyncio.gather(*service._pending)

        assert await redis_client.zcard("telemetry:events") == 3
        assert service.buffer.size("events") == 0

    async def test_flush_writes_everything_buffered(self, service, redis_client):
        await service.track_event(click())
        await service.track_metric(
            PerformanceMetricData(metric_type=MetricType.RENDER_TIME, metric_name="grid", value=12)
        )

        written = await service.flush()

        assert written == 2
        assert await redis_client.zcard("telemetry:events") == 1
        assert await redis_client.zcard("telemetry:metrics") == 1

    async def test_failed_flush_requeues_batch(self, queue, clock):
        realtime = AsyncMock(spec=RealtimeStore)
        realtime.write_batch.side_effect = RedisError("connection reset")
        service = TelemetryService(
            queue=queue, realtime=realtime, buffer=TelemetryBuffer(clock=clock), clock=clock
        )
        await service.track_event(click())

        assert await service.flush() == 0
        assert service.buffer.size("events") == 1

    async def test_sustained_redis_outage_is_bounded(self, queue, clock):
        realtime = AsyncMock(spec=RealtimeStore)
        realtime.write_batch.side_effect = RedisError("connection refused")
        service = TelemetryService(
            queue=queue,
            realtime=realtime,
            buffer=TelemetryBuffer(max_size=100, max_backlog=300, clock=clock),
            clock=clock,
        )

        for i in range(1000):
            await service.track_event(click(f"click-{i}"))
        await asyncio.gather(*service._pending)

        assert realtime.write_batch.await_count == 1
        assert service.buffer.size("events") == 300
        kept = [entry["event_name"] for entry in service.buffer.drain()["events"]]
        assert kept[0] == "click-700"
        assert kept[-1] == "click-999"

    async def test_threshold_writes_resume_after_recovery(self, queue, clock):
        realtime = AsyncMock(spec=RealtimeStore)
        realtime.write_batch.side_effect = RedisError("connection refused")
        service = TelemetryService(
            queue=queue,
            realtime=realtime,
            buffer=TelemetryBuffer(max_size=2, clock=clock),
            clock=clock,
        )
        for i in range(6):
            await service.track_event(click(f"click-{i}"))
        await asyncio.gather(*service._pending)
        assert realtime.write_batch.await_count == 1

        realtime.write_batch.side_effect = None
        assert await service.flush() == 6

        for i in range(3):
            await service.track_event(click(f"after-{i}"))
        await asyncio.gather(*service._pending)

        assert realtime.write_batch.await_count == 3
        assert service.buffer.size("events") == 0

    async def test_flush_loop_runs_until_shutdown(self, queue, realtime, redis_client, clock):
        config = Settings(telemetry={"flush_interval_seconds": 0.01})
        service = TelemetryService(
            queue=queue,
            realtime=realtime,
            buffer=TelemetryBuffer(clock=clock),
            config=config,
            clock=clock,
        )

        await service.start()
        await service.track_event(click())
        await asyncio.sleep(0.1)

        assert await redis_client.zcard("telemetry:events") == 1

        await service.track_event(click("last"))
        await service.shutdown()

        assert service._flush_task is None
        assert await redis_client.zcard("telemetry:events") == 2


class TestRealtimeMetrics:
    async def test_returns_recent_entries(self, service):
        await service.track_event(click())
        await service.flush()

        result = await service.get_realtime_metrics(minutes=5)

        assert len(result["events"]) == 1
        assert result["metrics"] == []
        assert result["timestamp"]

    async def test_redis_failure_gives_empty_lists(self, queue, clock):
        realtime = AsyncMock(spec=RealtimeStore)
        realtime.read_window.side_effect = RedisError("down")
        service = TelemetryService(queue=queue, realtime=realtime, clock=clock)

        result = await service.get_realtime_metrics()

        assert result["events"] == [] and result["metrics"] == []


@pytest.fixture
async def stored_telemetry(async_db_session, clock):
    at = clock.now - timedelta(hours=1)

    def event(event_type, name, path=None):
        return TelemetryEvent(session_id="s", event_type=event_type, event_name=name, path=path)

    events = (
        [event("API_CALL", "GET /x") for _ in range(4)]
        + [event("ERROR", "GET /x")]
        + [event("PAGE_VIEW", "view", "/dashboard") for _ in range(3)]
        + [event("PAGE_VIEW", "view", "/orders")]
    )
    metrics = [
        PerformanceMetric(metric_type="API_RESPONSE", metric_name="GET /x", value=v)
        for v in (100.0, 200.0, 300.0)
    ] + [PerformanceMetric(metric_type="RENDER_TIME", metric_name="grid", value=5000.0)]
    for row in events + metrics:
        row.created_at = at
    # Outside the 24 hour window
    async_db_session.add(
        TelemetryEvent(
            session_id="s",
            event_type="ERROR",
            event_name="old",
            created_at=clock.now - timedelta(days=3),
        )
    )
    async_db_session.add_all(events + metrics)
    await async_db_session.commit()


class TestAggregation:
    async def test_summary_and_top_paths(self, service, stored_telemetry):
        result = await service.get_aggregated_metrics(hours=24)

        assert result["summary"] == {
            "totalEvents": 9,
            "errorRate": 25.0,
            "avgResponseTime": 200.0,
            "minResponseTime": 100.0,
            "maxResponseTime": 300.0,
        }
        assert result["topPaths"] == [
            {"path": "/dashboard", "visits": 3},
            {"path": "/orders", "visits": 1},
        ]
        assert set(result["timeRange"]) == {"start", "end"}

    async def test_empty_store(self, service):
        result = await service.get_aggregated_metrics()
        assert result["summary"]["totalEvents"] == 0
        assert result["summary"]["errorRate"] == 0
        assert result["topPaths"] == []


class TestExport:
    async def test_events_csv(self, service, stored_telemetry):
        filename, content, count = await service.export_telemetry(ExportType.EVENTS)

        assert filename == "telemetry-events-2024-03-01.csv"
        assert count == 10
        rows = list(csv.DictReader(io.StringIO(content)))
        assert list(rows[0]) == EVENT_EXPORT_FIELDS
        assert rows[-1]["eventName"] == "old"

    async def test_metrics_csv_with_window(self, service, stored_telemetry, clock):
        filename, content, count = await service.export_telemetry(
            "metrics", start=clock.now - timedelta(hours=2), end=clock.now
        )

        assert filename == "performance-metrics-2024-03-01.csv"
        assert count == 4
        header = content.splitlines()[0].split(",")
        assert header == METRIC_EXPORT_FIELDS

    async def test_no_rows(self, service):
        _, _, count = await service.export_telemetry(ExportType.METRICS)
        assert count == 0
