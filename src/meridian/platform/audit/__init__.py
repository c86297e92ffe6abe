"""
Tamper-evident audit logging and compliance reporting.
"""

from .checksum import ChecksumCodec
from .exceptions import (
    AuditConfigurationError,
    AuditError,
    AuditStorageError,
    AuditValidationError,
    UnknownReportType,
    UnsupportedReportFormat,
)
from .models import (
    AuditAction,
    AuditLog,
    AuditLogEntry,
    AuditSearchParams,
    ComplianceReportParams,
    EntityType,
    ReportFormat,
    ReportType,
    is_critical_action,
)
from .service import AuditService

__all__ = [
    "AuditAction",
    "AuditConfigurationError",
    "AuditError",
    "AuditLog",
    "AuditLogEntry",
    "AuditSearchParams",
    "AuditService",
    "AuditStorageError",
    "AuditValidationError",
    "ChecksumCodec",
    "ComplianceReportParams",
    "EntityType",
    "ReportFormat",
    "ReportType",
    "UnknownReportType",
    "UnsupportedReportFormat",
    "is_critical_action",
]
