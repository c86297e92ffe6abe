"""
Request telemetry middleware.

Resolves a session id for every request and, once the response is ready,
tracks an API call event and a response-time metric.
"""

import time
from collections import OrderedDict
from typing import Any
from uuid import uuid4

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from ..audit.service import get_client_ip
from ..settings import settings
from .models import (
    UNKNOWN_SESSION,
    EventType,
    MetricType,
    PerformanceMetricData,
    TelemetryEventData,
)
from .service import TelemetryService

logger = structlog.get_logger(__name__)

SESSION_HEADER = "X-Session-Id"
SENSITIVE_FIELDS = ("password", "token", "secret", "key", "authorization")
MAX_TRACKED_SESSIONS = 10000
SESSION_EVICT_BATCH = 1000


def sanitize(values: dict[str, Any] | None) -> dict[str, Any] | None:
    """Redact values whose key names a credential."""
    if not values:
        return None
    return {
        key: "[REDACTED]" if any(field in key.lower() for field in SENSITIVE_FIELDS) else value
        for key, value in values.items()
    }


class SessionRegistry:
    """Client fingerprint to session id, bounded in size."""

    def __init__(self, max_size: int = MAX_TRACKED_SESSIONS):
        self.max_size = max_size
        self._sessions: OrderedDict[str, str] = OrderedDict()

    def resolve(self, request: Request) -> str:
        session_id = request.headers.get(SESSION_HEADER)
        if session_id:
            return session_id

        client_id = f"{get_client_ip(request)}-{request.headers.get('user-agent')}"
        session_id = self._sessions.get(client_id)
        if session_id is None:
            session_id = str(uuid4())
            self._sessions[client_id] = session_id
            if len(self._sessions) > self.max_size:
                for _ in range(min(SESSION_EVICT_BATCH, len(self._sessions) - 1)):
                    self._sessions.popitem(last=False)
        return session_id


class TelemetryMiddleware(BaseHTTPMiddleware):
    """Tracks every API request through the app's ``TelemetryService``."""

    def __init__(self, app: Any, service: TelemetryService | None = None):
        super().__init__(app)
        self._service = service
        self.sessions = SessionRegistry()
        self.slow_threshold_ms = settings.observability.slow_request_threshold_ms

    def _get_service(self, request: Request) -> TelemetryService | None:
        if self._service is not None:
            return self._service
        return getattr(request.app.state, "telemetry_service", None)

    async def dispatch(self, request: Request, call_next: Any) -> Any:
        session_id = self.sessions.resolve(request)
        request.state.session_id = session_id

        started = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - started) * 1000

        response.headers[SESSION_HEADER] = session_id

        service = self._get_service(request)
        if service is not None:
            try:
                await self._track(service, request, response.status_code, duration_ms)
            except Exception as e:
                logger.error("telemetry.middleware_failed", error=str(e), exc_info=True)

        return response

    async def _track(
        self,
        service: TelemetryService,
        request: Request,
        status_code: int,
        duration_ms: float,
    ) -> None:
        method = request.method
        route = request.scope.get("route")
        path = getattr(route, "path", None) or request.url.path
        user_id = getattr(request.state, "user_id", None)
        session_id = getattr(request.state, "session_id", None) or UNKNOWN_SESSION
        name = f"{method} {path}"

        await service.track_event(
            TelemetryEventData(
                user_id=user_id,
                session_id=session_id,
                event_type=EventType.ERROR if status_code >= 400 else EventType.API_CALL,
                event_name=name,
                path=path,
                method=method,
                status_code=status_code,
                duration=round(duration_ms),
                metadata={
                    "query": sanitize(dict(request.query_params)),
                    "params": sanitize(request.path_params),
                },
                user_agent=request.headers.get("user-agent"),
                ip_address=get_client_ip(request),
            )
        )
        await service.track_metric(
            PerformanceMetricData(
                metric_type=MetricType.API_RESPONSE,
                metric_name=name,
                value=duration_ms,
                unit="ms",
                path=path,
                session_id=session_id,
                user_id=user_id,
                metadata={"statusCode": status_code, "method": method},
            )
        )

        if duration_ms > self.slow_threshold_ms:
            logger.warning(
                "telemetry.slow_request",
                method=method,
                path=path,
                duration_ms=round(duration_ms, 1),
                user_id=user_id,
            )


# Helpers for non-HTTP call sites


async def track_websocket_event(
    service: TelemetryService,
    event: str,
    user_id: str | None = None,
    session_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> None:
    await service.track_event(
        TelemetryEventData(
            user_id=user_id,
            session_id=session_id or UNKNOWN_SESSION,
            event_type=EventType.WEBSOCKET,
            event_name=event,
            metadata=metadata,
        )
    )


async def track_error(
    service: TelemetryService,
    error: BaseException,
    request: Request | None = None,
    context: dict[str, Any] | None = None,
) -> None:
    """Record an exception as an ERROR event."""
    await service.track_event(
        TelemetryEventData(
            user_id=getattr(request.state, "user_id", None) if request else None,
            session_id=(getattr(request.state, "session_id", None) if request else None)
            or UNKNOWN_SESSION,
            event_type=EventType.ERROR,
            event_name=type(error).__name__,
            path=request.url.path if request else None,
            method=request.method if request else None,
            status_code=getattr(error, "status_code", 500),
            metadata={"message": str(error), "context": context},
            user_agent=request.headers.get("user-agent") if request else None,
            ip_address=get_client_ip(request),
        )
    )


async def track_performance(
    service: TelemetryService,
    metric_name: str,
    value: float,
    unit: str = "ms",
    metadata: dict[str, Any] | None = None,
) -> None:
    await service.track_metric(
        PerformanceMetricData(
            metric_type=MetricType.RENDER_TIME,
            metric_name=metric_name,
            value=value,
            unit=unit,
            metadata=metadata,
        )
    )
