"""
Tests for request telemetry middleware and tracking helpers.
"""

from unittest.mock import AsyncMock, patch

import pytest
from fastapi import FastAPI, HTTPException
from httpx import ASGITransport, AsyncClient
from starlette.requests import Request

from meridian.platform.telemetry.middleware import (
    SESSION_HEADER,
    SessionRegistry,
    TelemetryMiddleware,
    sanitize,
    track_error,
    track_performance,
    track_websocket_event,
)
from meridian.platform.telemetry.service import TelemetryService

pytestmark = pytest.mark.asyncio


def make_request(headers: dict[str, str] | None = None, client=("10.0.0.7", 4711)) -> Request:
    raw = [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
    return Request(
        {
            "type": "http",
            "method": "POST",
            "path": "/api/v1/orders",
            "query_string": b"",
            "headers": raw,
            "client": client,
        }
    )


@pytest.fixture
def service():
    return AsyncMock(spec=TelemetryService)


@pytest.fixture
async def app_client(service):
    app = FastAPI()
    app.add_middleware(TelemetryMiddleware, service=service)

    @app.get("/ping")
    async def ping():
        return {"ok": True}

    @app.get("/missing")
    async def missing():
        raise HTTPException(status_code=404, detail="nope")

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac


class TestSanitize:
    def test_redacts_credential_keys(self):
        assert sanitize({"apiKey": "k", "Password": "p", "symbol": "BRENT"}) == {
            "apiKey": "[REDACTED]",
            "Password": "[REDACTED]",
            "symbol": "BRENT",
        }

    def test_empty_is_none(self):
        assert sanitize({}) is None
        assert sanitize(None) is None


class TestSessionRegistry:
    def test_header_wins(self):
        registry = SessionRegistry()
        assert registry.resolve(make_request({SESSION_HEADER: "given"})) == "given"

    def test_same_client_reuses_session(self):
        registry = SessionRegistry()
        headers = {"User-Agent": "desk-app/2.1"}

        first = registry.resolve(make_request(headers))

        assert registry.resolve(make_request(headers)) == first
        assert registry.resolve(make_request(headers, client=("10.0.0.8", 1))) != first

    def test_bounded_size(self):
        registry = SessionRegistry(max_size=3)
        for i in range(4):
            registry.resolve(make_request({"User-Agent": f"agent-{i}"}))

        assert len(registry._sessions) <= 3


class TestTelemetryMiddleware:
    async def test_tracks_api_call_and_response_time(self, app_client, service):
        response = await app_client.get("/ping", headers={SESSION_HEADER: "sess-9"})

        assert response.status_code == 200
        assert response.headers[SESSION_HEADER] == "sess-9"

        event = service.track_event.await_args.args[0]
        assert event.event_type == "API_CALL"
        assert event.event_name == "GET /ping"
        assert event.session_id == "sess-9"
        assert event.status_code == 200

        metric = service.track_metric.await_args.args[0]
        assert metric.metric_type == "API_RESPONSE"
        assert metric.metadata == {"statusCode": 200, "method": "GET"}

    async def test_generated_session_header(self, app_client):
        response = await app_client.get("/ping")
        assert response.headers[SESSION_HEADER]

    async def test_client_errors_are_tracked_as_errors(self, app_client, service):
        response = await app_client.get("/missing")

        assert response.status_code == 404
        event = service.track_event.await_args.args[0]
        assert event.event_type == "ERROR"
        assert event.status_code == 404

    async def test_tracking_failure_does_not_break_request(self, app_client, service):
        service.track_event.side_effect = RuntimeError("queue exploded")

        with patch("meridian.platform.telemetry.middleware.logger") as logger:
            response = await app_client.get("/ping")

        assert response.status_code == 200
        assert logger.error.call_args.args[0] == "telemetry.middleware_failed"


class TestHelpers:
    async def test_track_error(self, service):
        await track_error(service, ValueError("bad price"), make_request(), {"orderId": "o-1"})

        event = service.track_event.await_args.args[0]
        assert event.event_type == "ERROR"
        assert event.event_name == "ValueError"
        assert event.status_code == 500
        assert event.session_id == "unknown"
        assert event.ip_address == "10.0.0.7"
        assert event.metadata == {"message": "bad price", "context": {"orderId": "o-1"}}

    async def test_track_error_without_request(self, service):
        await track_error(service, HTTPException(status_code=409))

        event = service.track_event.await_args.args[0]
        assert event.status_code == 409
        assert event.path is None

    async def test_track_websocket_event(self, service):
        await track_websocket_event(service, "subscribe", user_id="u-1", session_id="ws-1")

        event = service.track_event.await_args.args[0]
        assert (event.event_type, event.event_name, event.session_id) == (
            "WEBSOCKET",
            "subscribe",
            "ws-1",
        )

    async def test_track_performance(self, service):
        await track_performance(service, "order-book-render", 16.4)

        metric = service.track_metric.await_args.args[0]
        assert metric.metric_type == "RENDER_TIME"
        assert metric.value == 16.4
