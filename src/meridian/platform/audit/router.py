"""
FastAPI router for audit log search, integrity checks, compliance reports
and archival.
"""

from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy.ext.asyncio import AsyncSession

from ..auth.core import Role, UserInfo
from ..auth.rbac_dependencies import require_any_role, require_role
from ..db import get_async_session
from ..settings import settings
from .exceptions import UnknownReportType, UnsupportedReportFormat
from .models import (
    ArchiveRequest,
    AuditAction,
    AuditLogEntry,
    AuditSearchParams,
    ComplianceReportParams,
    EntityType,
    ReportFormat,
    ReportGenerateRequest,
    ReportType,
    VerifyIntegrityRequest,
)
from .reports import REPORT_CATALOG
from .service import AuditService

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/audit", tags=["Audit"])

require_admin = require_role(Role.ADMIN)
require_compliance = require_any_role(Role.ADMIN, Role.BROKER)


def get_audit_service(session: AsyncSession = Depends(get_async_session)) -> AuditService:
    return AuditService(session)


def _ok(data: Any) -> dict[str, Any]:
    return {"success": True, "data": data}


def _error(status_code: int, message: str, details: list[Any] | None = None) -> JSONResponse:
    body: dict[str, Any] = {"success": False, "error": message}
    if details is not None:
        body["details"] = details
    return JSONResponse(status_code=status_code, content=body)


def _dump(items: list[Any]) -> list[dict[str, Any]]:
    return [item.model_dump(mode="json", by_alias=True) for item in items]


def _can_run_report(user: UserInfo, report_type: ReportType) -> bool:
    if user.has_role(Role.ADMIN):
        return True
    return user.has_role(REPORT_CATALOG[report_type]["requiredRole"])


@router.get("/logs")
async def search_audit_logs(
    request: Request,
    user_id: UUID | None = Query(None, alias="userId"),
    action: AuditAction | None = Query(None),
    entity_type: EntityType | None = Query(None, alias="entityType"),
    entity_id: UUID | None = Query(None, alias="entityId"),
    start_date: datetime | None = Query(None, alias="startDate"),
    end_date: datetime | None = Query(None, alias="endDate"),
    ip_address: str | None = Query(None, alias="ipAddress"),
    page: int = Query(1, ge=1),
    limit: int = Query(
        settings.audit.search_default_limit, ge=1, le=settings.audit.search_max_limit
    ),
    service: AuditService = Depends(get_audit_service),
    current_user: UserInfo = Depends(require_compliance),
) -> Any:
    """Search audit logs. The search is itself recorded as an audit log access."""
    params = AuditSearchParams(
        user_id=str(user_id) if user_id else None,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id else None,
        ip_address=ip_address,
        start_date=start_date,
        end_date=end_date,
        page=page,
        limit=limit,
    )
    try:
        result = await service.search_audit_logs(
            params, actor_id=current_user.user_id, request=request
        )
        return _ok(result.model_dump(mode="json", by_alias=True))
    except Exception as e:
        logger.error("audit.search_failed", error=str(e), exc_info=True)
        return _error(500, "Failed to search audit logs")


@router.get("/users/{user_id}/logs")
async def get_user_audit_logs(
    request: Request,
    user_id: str,
    limit: int = Query(100, ge=1),
    service: AuditService = Depends(get_audit_service),
    current_user: UserInfo = Depends(require_admin),
) -> Any:
    """Audit logs where the given user is the actor."""
    try:
        UUID(user_id)
    except ValueError:
        return _error(400, "Invalid user ID")

    try:
        await service.log(
            AuditLogEntry(
                user_id=current_user.user_id,
                action=AuditAction.AUDIT_LOG_ACCESS,
                entity_type=EntityType.USER,
                entity_id=user_id,
            ),
            request,
        )
        logs = await service.get_user_audit_logs(user_id, limit)
        return _ok(_dump(logs))
    except Exception as e:
        logger.error("audit.user_logs_failed", user_id=user_id, error=str(e), exc_info=True)
        return _error(500, "Failed to fetch user audit logs")


@router.get("/entities/{entity_type}/{entity_id}/logs")
async def get_entity_audit_logs(
    request: Request,
    entity_type: str,
    entity_id: str,
    limit: int = Query(100, ge=1),
    service: AuditService = Depends(get_audit_service),
    current_user: UserInfo = Depends(require_admin),
) -> Any:
    """Audit logs concerning one entity."""
    try:
        kind = EntityType(entity_type)
    except ValueError:
        return _error(400, "Invalid entity type")
    try:
        UUID(entity_id)
    except ValueError:
        return _error(400, "Invalid entity ID")

    try:
        await service.log(
            AuditLogEntry(
                user_id=current_user.user_id,
                action=AuditAction.AUDIT_LOG_ACCESS,
                entity_type=kind,
                entity_id=entity_id,
            ),
            request,
        )
        logs = await service.get_entity_audit_logs(kind, entity_id, limit)
        return _ok(_dump(logs))
    except Exception as e:
        logger.error(
            "audit.entity_logs_failed",
            entity_type=entity_type,
            entity_id=entity_id,
            error=str(e),
            exc_info=True,
        )
        return _error(500, "Failed to fetch entity audit logs")


@router.post("/verify-integrity")
async def verify_integrity(
    request: Request,
    body: VerifyIntegrityRequest,
    service: AuditService = Depends(get_audit_service),
    current_user: UserInfo = Depends(require_admin),
) -> Any:
    """Recompute the checksum of one record and compare it with the stored one."""
    try:
        valid = await service.verify_integrity(body.audit_log_id)
        await service.log(
            AuditLogEntry(
                user_id=current_user.user_id,
                action=AuditAction.AUDIT_LOG_INTEGRITY_CHECK,
                entity_type=EntityType.AUDIT_LOG,
                entity_id=str(body.audit_log_id),
                metadata={"isValid": valid},
            ),
            request,
        )
        return _ok(
            {
                "auditLogId": str(body.audit_log_id),
                "integrityValid": valid,
                "verifiedAt": datetime.now(UTC).isoformat(),
            }
        )
    except Exception as e:
        logger.error("audit.verify_failed", error=str(e), exc_info=True)
        return _error(500, "Failed to verify audit log integrity")


@router.get("/reports/types")
async def get_report_types(
    current_user: UserInfo = Depends(require_compliance),
) -> Any:
    """Report kinds the caller may run."""
    available = [
        {"type": report_type.value, **entry}
        for report_type, entry in REPORT_CATALOG.items()
        if _can_run_report(current_user, report_type)
    ]
    return _ok(available)


@router.post("/reports/generate")
async def generate_report(
    request: Request,
    body: ReportGenerateRequest,
    service: AuditService = Depends(get_audit_service),
    current_user: UserInfo = Depends(require_compliance),
) -> Any:
    """Generate a compliance report as JSON, or as a CSV download."""
    if not _can_run_report(current_user, body.report_type):
        return _error(403, "Insufficient permissions to generate this report")

    params = ComplianceReportParams(
        report_type=body.report_type,
        start_date=body.start_date,
        end_date=body.end_date,
        user_id=str(body.user_id) if body.user_id else None,
        format=body.format,
        requested_by=current_user.user_id,
    )

    try:
        report = await service.generate_compliance_report(params, request)
    except (UnknownReportType, UnsupportedReportFormat) as e:
        return _error(400, str(e))
    except Exception as e:
        logger.error(
            "audit.report_failed", report_type=body.report_type.value, error=str(e), exc_info=True
        )
        return _error(500, "Failed to generate compliance report")

    if body.format == ReportFormat.CSV:
        epoch_ms = int(datetime.now(UTC).timestamp() * 1000)
        filename = f"compliance-report-{body.report_type.value}-{epoch_ms}.csv"
        return Response(
            content=report,
            media_type="text/csv",
            headers={"Content-Disposition": f"attachment; filename={filename}"},
        )

    return _ok(report)


@router.post("/archive")
async def archive_logs(
    body: ArchiveRequest | None = None,
    service: AuditService = Depends(get_audit_service),
    current_user: UserInfo = Depends(require_admin),
) -> Any:
    """Move audit logs older than the retention period to cold storage."""
    days_to_keep = body.days_to_keep if body else ArchiveRequest().days_to_keep
    minimum = settings.audit.min_retention_days

    if days_to_keep < minimum:
        return _error(400, f"Audit logs must be kept for at least {minimum} days")

    try:
        archived = await service.archive_old_logs(days_to_keep, actor_id=current_user.user_id)
        return _ok(
            {
                "archivedCount": archived,
                "daysToKeep": days_to_keep,
                "archivedAt": datetime.now(UTC).isoformat(),
            }
        )
    except Exception as e:
        logger.error("audit.archive_failed", error=str(e), exc_info=True)
        return _error(500, "Failed to archive audit logs")


@router.get("/stats")
async def get_audit_stats(
    start_date: datetime | None = Query(None, alias="startDate"),
    end_date: datetime | None = Query(None, alias="endDate"),
    service: AuditService = Depends(get_audit_service),
    current_user: UserInfo = Depends(require_compliance),
) -> Any:
    """Totals and breakdowns for a window (default: trailing 30 days)."""
    end = end_date or datetime.now(UTC)
    start = start_date or end - timedelta(days=30)
    try:
        return _ok(await service.get_audit_stats(start, end))
    except Exception as e:
        logger.error("audit.stats_failed", error=str(e), exc_info=True)
        return _error(500, "Failed to fetch audit statistics")
