"""
Audit service: tamper-evident record creation, verification, search and
compliance reporting.
"""

import asyncio
import gzip
import ipaddress
import json
import math
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import UUID, uuid4

import structlog
from fastapi import Request
from pydantic import ValidationError

from ..settings import Settings, settings
from .checksum import ChecksumCodec, normalize_metadata, truncate_to_millis
from .escalation import AuditAlerter, CriticalEscalationSink
from .exceptions import AuditStorageError, AuditValidationError, UnsupportedReportFormat
from .models import (
    AuditAction,
    AuditLog,
    AuditLogEntry,
    AuditLogResponse,
    AuditSearchParams,
    AuditSearchResult,
    ComplianceReportParams,
    EntityType,
    Pagination,
    ReportFormat,
    is_critical_action,
)
from .reports import ComplianceReportGenerator, render_report
from .store import AuditStore

logger = structlog.get_logger(__name__)

IP_ADDRESS_MAX_LENGTH = 45


def get_client_ip(request: Request | None) -> str | None:
    """First hop of ``X-Forwarded-For`` if it is an IP address, else the socket peer."""
    if request is None:
        return None
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        try:
            return str(ipaddress.ip_address(first))
        except ValueError:
            logger.debug("audit.forwarded_for_ignored", value=first[:IP_ADDRESS_MAX_LENGTH])
    return request.client.host[:IP_ADDRESS_MAX_LENGTH] if request.client else None


def to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class AuditService:
    """Service for writing and reading audit records.

    Reads go through ``session``. Writes open their own session from
    ``session_factory`` (default ``AsyncSessionLocal``); it must not expire
    objects on commit.
    """

    def __init__(
        self,
        session: Any = None,
        *,
        session_factory: Callable[[], Any] | None = None,
        codec: ChecksumCodec | None = None,
        sink: CriticalEscalationSink | None = None,
        config: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.config = config or settings
        self.store = AuditStore(session, session_factory)
        self.codec = codec or ChecksumCodec.from_settings(self.config)
        self.sink = sink or CriticalEscalationSink.from_settings(self.config)
        self.alerter = AuditAlerter(self.sink)
        self._clock = clock or (lambda: datetime.now(UTC))

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    def _build_record(self, entry: AuditLogEntry, request: Request | None) -> AuditLog:
        created_at = truncate_to_millis(to_utc(self.now()))

        metadata: dict[str, Any] = dict(entry.metadata or {})
        if entry.old_value is not None:
            metadata["oldValue"] = entry.old_value
        if entry.new_value is not None:
            metadata["newValue"] = entry.new_value
        metadata["capturedAt"] = created_at.isoformat()
        details = normalize_metadata(metadata)

        checksum = self.codec.compute_checksum(
            user_id=entry.user_id,
            action=entry.action,
            entity_type=entry.entity_type,
            entity_id=entry.entity_id,
            metadata=details,
            timestamp=created_at,
        )

        user_agent = request.headers.get("user-agent") if request is not None else None

        return AuditLog(
            id=uuid4(),
            user_id=entry.user_id,
            action=entry.action.value,
            entity_type=entry.entity_type.value,
            entity_id=entry.entity_id,
            details=details,
            ip_address=get_client_ip(request),
            user_agent=user_agent[:500] if user_agent else None,
            checksum=checksum,
            created_at=created_at,
        )

    async def log(
        self,
        entry: AuditLogEntry | dict[str, Any],
        request: Request | None = None,
    ) -> AuditLog | None:
        """Write an audit record.

        Critical actions are escalated to the file sink before the primary
        write. Storage failures are alerted and the record is preserved in
        the fallback file; the caller gets ``None`` instead of an exception.

        Raises:
            AuditValidationError: If required fields are missing or invalid
        """
        if not isinstance(entry, AuditLogEntry):
            try:
                entry = AuditLogEntry.model_validate(entry)
            except ValidationError as e:
                raise AuditValidationError(str(e)) from e

        record = self._build_record(entry, request)
        payload = record.to_dict()

        if is_critical_action(entry.action):
            try:
                await self.sink.escalate(payload)
            except OSError as e:
                await self.alerter.write_failed(payload, stage="escalation", error=e)

        try:
            await self.store.add(record)
        except AuditStorageError as e:
            await self.alerter.write_failed(payload, stage="primary", error=e)
            return None

        logger.info(
            "audit.logged",
            audit_log_id=str(record.id),
            action=record.action,
            entity_type=record.entity_type,
            user_id=record.user_id,
        )
        return record

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    def _to_response(self, record: AuditLog) -> AuditLogResponse:
        response = AuditLogResponse.model_validate(record)
        response.integrity_verified = self.codec.verify(record)
        return response

    async def verify_integrity(self, audit_log_id: UUID) -> bool:
        record = await self.store.get(audit_log_id)
        valid = self.codec.verify(record)
        if record is not None and not valid:
            logger.warning("audit.integrity_failed", audit_log_id=str(audit_log_id))
        return valid

    async def search_audit_logs(
        self,
        params: AuditSearchParams,
        actor_id: str | None = None,
        request: Request | None = None,
    ) -> AuditSearchResult:
        """Filtered, paginated search. The search itself is audited."""
        if params.start_date:
            params.start_date = to_utc(params.start_date)
        if params.end_date:
            params.end_date = to_utc(params.end_date)

        records, total = await self.store.search(params)
        logs = [self._to_response(record) for record in records]

        await self.log(
            AuditLogEntry(
                user_id=actor_id,
                action=AuditAction.AUDIT_LOG_ACCESS,
                entity_type=EntityType.AUDIT_LOG,
                metadata={
                    "filters": params.model_dump(mode="json", exclude_none=True),
                    "resultCount": len(logs),
                },
            ),
            request,
        )

        return AuditSearchResult(
            logs=logs,
            pagination=Pagination(
                page=params.page,
                limit=params.limit,
                total=total,
                total_pages=math.ceil(total / params.limit),
            ),
        )

    async def get_user_audit_logs(self, user_id: str, limit: int = 100) -> list[AuditLogResponse]:
        records = await self.store.list_for_user(user_id, limit)
        return [self._to_response(record) for record in records]

    async def get_entity_audit_logs(
        self, entity_type: EntityType, entity_id: str, limit: int = 100
    ) -> list[AuditLogResponse]:
        records = await self.store.list_for_entity(entity_type.value, entity_id, limit)
        return [self._to_response(record) for record in records]

    # ------------------------------------------------------------------
    # Reports, statistics, archival
    # ------------------------------------------------------------------

    async def generate_compliance_report(
        self,
        params: ComplianceReportParams,
        request: Request | None = None,
    ) -> dict[str, Any] | str:
        """Build a report and render it as JSON data or CSV text."""
        if params.format not in (ReportFormat.JSON, ReportFormat.CSV):
            raise UnsupportedReportFormat(f"Report format '{params.format.value}' is not supported")

        start = to_utc(params.start_date)
        end = to_utc(params.end_date)

        generator = ComplianceReportGenerator(
            self.store, self.codec, self.config.audit.suspicious_ip_threshold
        )
        report = await generator.generate(params.report_type, start, end, params.user_id)

        await self.log(
            AuditLogEntry(
                user_id=params.requested_by,
                action=AuditAction.COMPLIANCE_REPORT_ACCESS,
                entity_type=EntityType.REPORT,
                metadata={
                    "reportType": params.report_type.value,
                    "startDate": start.isoformat(),
                    "endDate": end.isoformat(),
                    "userId": params.user_id,
                    "format": params.format.value,
                },
            ),
            request,
        )

        return render_report(report, params.format)

    async def get_audit_stats(self, start: datetime, end: datetime) -> dict[str, Any]:
        start = to_utc(start)
        end = to_utc(end)

        total = await self.store.count_window(start, end)
        by_action = await self.store.grouped_counts([AuditLog.action], start, end)
        by_entity = await self.store.grouped_counts([AuditLog.entity_type], start, end)
        top_users = await self.store.grouped_counts([AuditLog.user_id], start, end, limit=10)

        sample = await self.store.list_window(
            start, end, limit=self.config.audit.stats_sample_limit
        )
        verified = sum(1 for record in sample if self.codec.verify(record))

        return {
            "totalLogs": total,
            "period": {"startDate": start.isoformat(), "endDate": end.isoformat()},
            "actionBreakdown": {action: count for action, count in by_action},
            "entityBreakdown": {entity_type: count for entity_type, count in by_entity},
            "topUsers": [{"userId": uid, "count": count} for uid, count in top_users],
            "integrityChecks": {
                "sampled": len(sample),
                "verified": verified,
                "failed": len(sample) - verified,
            },
        }

    async def archive_old_logs(self, days_to_keep: int, actor_id: str | None = None) -> int:
        """Move records older than ``days_to_keep`` to a gzip JSON-lines archive.

        Raises:
            AuditValidationError: If ``days_to_keep`` is below the retention floor
        """
        minimum = self.config.audit.min_retention_days
        if days_to_keep < minimum:
            raise AuditValidationError(f"Audit logs must be kept for at least {minimum} days")

        now = to_utc(self.now())
        cutoff = now - timedelta(days=days_to_keep)

        archive_dir = Path(self.config.audit.archive_location)
        archive_file = archive_dir / f"audit_logs_{now.strftime('%Y%m%d_%H%M%S')}.jsonl.gz"

        # File IO runs in worker threads
        await asyncio.to_thread(archive_dir.mkdir, parents=True, exist_ok=True)
        archive = await asyncio.to_thread(gzip.open, archive_file, "wt", encoding="utf-8")
        archived = 0
        try:
            async for batch in self.store.iter_older_than(
                cutoff, self.config.audit.archive_batch_size
            ):
                lines = "".join(
                    json.dumps(record.to_dict(), default=str) + "\n" for record in batch
                )
                await asyncio.to_thread(archive.write, lines)
                archived += len(batch)
        finally:
            await asyncio.to_thread(archive.close)

        if archived:
            deleted = await self.store.delete_older_than(cutoff)
            if deleted != archived:
                logger.warning("audit.archive_count_mismatch", archived=archived, deleted=deleted)
        else:
            await asyncio.to_thread(archive_file.unlink, missing_ok=True)

        logger.info(
            "audit.archived",
            archived=archived,
            cutoff=cutoff.isoformat(),
            archive_file=str(archive_file) if archived else None,
        )

        await self.log(
            AuditLogEntry(
                user_id=actor_id,
                action=AuditAction.AUDIT_LOG_ARCHIVE,
                entity_type=EntityType.AUDIT_LOG,
                metadata={
                    "daysToKeep": days_to_keep,
                    "cutoffDate": cutoff.isoformat(),
                    "archivedCount": archived,
                    "archiveFile": archive_file.name if archived else None,
                },
            )
        )
        return archived

