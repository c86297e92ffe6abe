"""
Critical-action escalation and audit write alerting.

Critical audit records are appended to a JSON-lines file that lives outside
the database, so losing the primary store does not lose the evidence.
Records that could not be persisted at all land in a second fallback file.
"""

import asyncio
import json
import os
from pathlib import Path
from typing import Any

import structlog
from prometheus_client import Counter

from ..logging import get_audit_alert_logger
from ..settings import Settings, settings

logger = structlog.get_logger(__name__)

AUDIT_WRITE_FAILURES = Counter(
    "audit_write_failures_total",
    "Audit records that could not be written",
    labelnames=["stage"],
)


class CriticalEscalationSink:
    """Append-only JSON-lines store, fsynced on every write."""

    def __init__(self, critical_path: str | Path, fallback_path: str | Path):
        self.critical_path = Path(critical_path)
        self.fallback_path = Path(fallback_path)

    @classmethod
    def from_settings(cls, config: Settings | None = None) -> "CriticalEscalationSink":
        config = config or settings
        return cls(config.audit.critical_log_path, config.audit.fallback_log_path)

    @staticmethod
    def _append(path: Path, record: dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        line = json.dumps(record, sort_keys=True, default=str)
        with open(path, "a", encoding="utf-8") as f:
            f.write(line + "\n")
            f.flush()
            os.fsync(f.fileno())

    async def escalate(self, record: dict[str, Any]) -> None:
        """Write a critical record. Raises ``OSError`` if the file cannot be written."""
        await asyncio.to_thread(self._append, self.critical_path, record)
        logger.info(
            "audit.critical_escalated",
            action=record.get("action"),
            audit_log_id=record.get("id"),
        )

    async def preserve(self, record: dict[str, Any], *, stage: str, error: str) -> None:
        """Keep a record whose write failed so it can be replayed."""
        entry = {"stage": stage, "error": error, "record": record}
        await asyncio.to_thread(self._append, self.fallback_path, entry)


class AuditAlerter:
    """Makes audit write failures observable without failing the caller."""

    def __init__(self, sink: CriticalEscalationSink):
        self.sink = sink
        self.alert_logger = get_audit_alert_logger()

    async def write_failed(self, record: dict[str, Any], *, stage: str, error: Exception) -> None:
        AUDIT_WRITE_FAILURES.labels(stage=stage).inc()
        self.alert_logger.error(
            "audit.write_failed",
            stage=stage,
            action=record.get("action"),
            entity_type=record.get("entityType"),
            audit_log_id=record.get("id"),
            error=str(error),
        )
        try:
            await self.sink.preserve(record, stage=stage, error=str(error))
        except OSError as e:
            # Nothing left to write to; the alert above is the only trace.
            self.alert_logger.critical(
                "audit.fallback_failed",
                audit_log_id=record.get("id"),
                error=str(e),
            )
