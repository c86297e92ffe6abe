"""
FastAPI router for telemetry ingestion and admin dashboards.
"""

from datetime import datetime
from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response

from ..audit.service import get_client_ip
from ..auth.core import Role, UserInfo
from ..auth.rbac_dependencies import require_role
from .models import (
    UNKNOWN_SESSION,
    ExportType,
    PerformanceMetricData,
    TelemetryEventData,
    TrackRequest,
)
from .service import TelemetryService

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/telemetry", tags=["Telemetry"])

require_admin = require_role(Role.ADMIN)


def get_telemetry_service(request: Request) -> TelemetryService:
    """The service instance created in the application lifespan."""
    service = getattr(request.app.state, "telemetry_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Telemetry is not available")
    return service


@router.post("/track")
async def track_frontend_telemetry(
    request: Request,
    body: TrackRequest,
    service: TelemetryService = Depends(get_telemetry_service),
) -> dict[str, Any]:
    """Accept a batch of client events and metrics. No authentication."""
    session_id = request.headers.get("x-session-id") or body.session_id or UNKNOWN_SESSION
    user_agent = request.headers.get("user-agent")
    ip_address = get_client_ip(request)

    for event in body.events:
        await service.track_event(
            TelemetryEventData(
                user_id=event.user_id,
                session_id=session_id,
                event_type=event.event_type,
                event_name=event.event_name,
                path=event.path,
                metadata=event.metadata,
                user_agent=user_agent,
                ip_address=ip_address,
            )
        )

    for metric in body.metrics:
        await service.track_metric(
            PerformanceMetricData(
                metric_type=metric.metric_type,
                metric_name=metric.metric_name,
                value=metric.value,
                unit=metric.unit,
                path=metric.path,
                session_id=session_id,
                user_id=metric.user_id,
                metadata=metric.metadata,
            )
        )

    return {"success": True}


@router.get("/realtime")
async def get_realtime_metrics(
    minutes: int = Query(5, ge=1, le=24 * 60),
    service: TelemetryService = Depends(get_telemetry_service),
    current_user: UserInfo = Depends(require_admin),
) -> dict[str, Any]:
    """Buffered events and metrics from the last few minutes."""
    return await service.get_realtime_metrics(minutes)


@router.get("/aggregated")
async def get_aggregated_metrics(
    hours: int = Query(24, ge=1, le=24 * 90),
    service: TelemetryService = Depends(get_telemetry_service),
    current_user: UserInfo = Depends(require_admin),
) -> Any:
    """Totals, error rate, response times and top paths from the durable store."""
    try:
        return await service.get_aggregated_metrics(hours)
    except Exception as e:
        logger.error("telemetry.aggregate_failed", hours=hours, error=str(e), exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "Failed to get aggregated metrics"},
        )


@router.get("/export")
async def export_telemetry(
    export_type: ExportType = Query(ExportType.EVENTS, alias="type"),
    start_date: datetime | None = Query(None, alias="startDate"),
    end_date: datetime | None = Query(None, alias="endDate"),
    service: TelemetryService = Depends(get_telemetry_service),
    current_user: UserInfo = Depends(require_admin),
) -> Any:
    """Download stored events or metrics as CSV."""
    try:
        filename, content, count = await service.export_telemetry(export_type, start_date, end_date)
    except Exception as e:
        logger.error("telemetry.export_failed", type=export_type.value, error=str(e), exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "Failed to export telemetry data"},
        )

    if count == 0:
        return {"message": "No data found for the specified criteria"}

    logger.info(
        "telemetry.exported", type=export_type.value, rows=count, user_id=current_user.user_id
    )
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
