"""
Tests for telemetry API endpoints.
"""

from datetime import UTC, datetime

import pytest

from meridian.platform.telemetry.buffer import TelemetryBuffer
from meridian.platform.telemetry.models import TelemetryEvent
from meridian.platform.telemetry.realtime import RealtimeStore
from meridian.platform.telemetry.service import TelemetryService

pytestmark = pytest.mark.asyncio

BASE = "/api/v1/telemetry"


class RecordingQueue:
    def __init__(self):
        self.jobs: list[tuple[str, dict]] = []

    def submit(self, kind, data):
        self.jobs.append((kind, data))


@pytest.fixture
def queue():
    return RecordingQueue()


@pytest.fixture
def telemetry_service(test_app, queue, redis_client):
    service = TelemetryService(
        queue=queue,
        realtime=RealtimeStore(client=redis_client),
        buffer=TelemetryBuffer(max_size=1000),
    )
    test_app.state.telemetry_service = service
    return service


def jobs_named(queue: RecordingQueue, name: str) -> list[dict]:
    return [data for _, data in queue.jobs if data.get("event_name") == name]


class TestTrack:
    async def test_accepts_events_and_metrics(self, client, telemetry_service, queue):
        response = await client.post(
            f"{BASE}/track",
            json={
                "events": [{"eventType": "CLICK", "eventName": "place-order", "path": "/orders"}],
                "metrics": [{"metricType": "PAGE_LOAD", "metricName": "/orders", "value": 420}],
            },
            headers={"X-Session-Id": "browser-1", "User-Agent": "pytest-browser"},
        )

        assert response.status_code == 200
        assert response.json() == {"success": True}

        [event] = jobs_named(queue, "place-order")
        assert event["session_id"] == "browser-1"
        assert event["user_agent"] == "pytest-browser"
        metrics = [data for kind, data in queue.jobs if data.get("metric_name") == "/orders"]
        assert metrics[0]["session_id"] == "browser-1"
        assert metrics[0]["value"] == 420.0

    async def test_session_falls_back_to_body(self, client, telemetry_service, queue):
        await client.post(
            f"{BASE}/track",
            json={"sessionId": "from-body", "events": [{"eventName": "open-chart"}]},
        )

        [event] = jobs_named(queue, "open-chart")
        assert event["session_id"] == "from-body"
        assert event["event_type"] == "CLICK"

    async def test_needs_no_authentication(self, client, telemetry_service):
        response = await client.post(f"{BASE}/track", json={})
        assert response.status_code == 200

    async def test_unavailable_without_service(self, client):
        response = await client.post(f"{BASE}/track", json={})
        assert response.status_code == 503
        assert response.json() == {"success": False, "error": "Telemetry is not available"}


class TestDashboards:
    @pytest.mark.parametrize("path", ["/realtime", "/aggregated", "/export"])
    async def test_admin_only(self, client, telemetry_service, broker_headers, path):
        response = await client.get(f"{BASE}{path}", headers=broker_headers)
        assert response.status_code == 403

    async def test_realtime(self, client, telemetry_service, admin_headers):
        await telemetry_service.track_event(
            {"sessionId": "s", "eventName": "x", "eventType": "CLICK"}
        )
        await telemetry_service.flush()

        response = await client.get(
            f"{BASE}/realtime", params={"minutes": 5}, headers=admin_headers
        )

        assert response.status_code == 200
        body = response.json()
        assert [e["event_name"] for e in body["events"]] == ["x"]

    async def test_aggregated(self, client, telemetry_service, admin_headers):
        response = await client.get(f"{BASE}/aggregated", headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["summary"]["totalEvents"] == 0

    async def test_export_without_rows(self, client, telemetry_service, admin_headers):
        response = await client.get(f"{BASE}/export", headers=admin_headers)

        assert response.status_code == 200
        assert response.json() == {"message": "No data found for the specified criteria"}

    async def test_export_csv(self, client, telemetry_service, admin_headers, async_db_session):
        async_db_session.add(
            TelemetryEvent(
                session_id="s",
                event_type="CLICK",
                event_name="place-order",
                created_at=datetime(2024, 3, 1, 9, tzinfo=UTC),
            )
        )
        await async_db_session.commit()

        response = await client.get(
            f"{BASE}/export", params={"type": "events"}, headers=admin_headers
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        disposition = response.headers["content-disposition"]
        assert disposition.startswith('attachment; filename="telemetry-events-')
        lines = response.text.strip().splitlines()
        assert lines[0].startswith("id,userId,sessionId,eventType,eventName")
        assert "place-order" in lines[1]

    async def test_export_rejects_unknown_type(self, client, telemetry_service, admin_headers):
        response = await client.get(
            f"{BASE}/export", params={"type": "traces"}, headers=admin_headers
        )
        assert response.status_code == 400
