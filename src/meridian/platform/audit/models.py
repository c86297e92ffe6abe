"""
Audit log models for the Meridian trading platform.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy import JSON, DateTime, Index, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from ..db import Base


class AuditAction(str, Enum):
    """Actions recorded in the audit log."""

    # Account lifecycle
    USER_REGISTER = "USER_REGISTER"
    USER_LOGIN = "USER_LOGIN"
    USER_LOGIN_FAILED = "USER_LOGIN_FAILED"
    USER_LOGOUT = "USER_LOGOUT"
    USER_UPDATE = "USER_UPDATE"
    USER_DELETE = "USER_DELETE"
    USER_ACTIVATE = "USER_ACTIVATE"
    USER_DEACTIVATE = "USER_DEACTIVATE"
    PASSWORD_CHANGE = "PASSWORD_CHANGE"
    PASSWORD_RESET = "PASSWORD_RESET"
    PROFILE_UPDATE = "PROFILE_UPDATE"
    PREFERENCES_UPDATE = "PREFERENCES_UPDATE"
    TRADING_CAPABILITIES_UPDATE = "TRADING_CAPABILITIES_UPDATE"

    # Sessions
    SESSION_CREATE = "SESSION_CREATE"
    SESSION_REVOKE = "SESSION_REVOKE"
    SESSION_TERMINATED = "SESSION_TERMINATED"
    ALL_SESSIONS_TERMINATED = "ALL_SESSIONS_TERMINATED"

    # Authorization
    ROLE_CHANGE = "ROLE_CHANGE"
    PERMISSION_CHANGE = "PERMISSION_CHANGE"

    # RFQs
    RFQ_CREATE = "RFQ_CREATE"
    RFQ_UPDATE = "RFQ_UPDATE"
    RFQ_CANCEL = "RFQ_CANCEL"
    RFQ_EXPIRE = "RFQ_EXPIRE"
    RFQ_RESPONSE_SUBMIT = "RFQ_RESPONSE_SUBMIT"
    RFQ_RESPONSE_ACCEPT = "RFQ_RESPONSE_ACCEPT"
    RFQ_RESPONSE_REJECT = "RFQ_RESPONSE_REJECT"

    # Orders and trades
    ORDER_CREATE = "ORDER_CREATE"
    ORDER_UPDATE = "ORDER_UPDATE"
    ORDER_CANCEL = "ORDER_CANCEL"
    ORDER_EXECUTE = "ORDER_EXECUTE"
    TRADE_CREATE = "TRADE_CREATE"
    TRADE_CONFIRM = "TRADE_CONFIRM"

    # Market broadcasts
    MARKET_BROADCAST_CREATE = "MARKET_BROADCAST_CREATE"
    MARKET_BROADCAST_UPDATE = "MARKET_BROADCAST_UPDATE"
    MARKET_BROADCAST_EXPIRE = "MARKET_BROADCAST_EXPIRE"
    MARKET_BROADCAST_DELETE = "MARKET_BROADCAST_DELETE"

    # Compliance
    DATA_EXPORT = "DATA_EXPORT"
    AUDIT_LOG_ACCESS = "AUDIT_LOG_ACCESS"
    AUDIT_LOG_INTEGRITY_CHECK = "AUDIT_LOG_INTEGRITY_CHECK"
    AUDIT_LOG_ARCHIVE = "AUDIT_LOG_ARCHIVE"
    COMPLIANCE_REPORT_ACCESS = "COMPLIANCE_REPORT_ACCESS"

    # Administration
    ADMIN_ACTION = "ADMIN_ACTION"


class EntityType(str, Enum):
    """Domain object classes an audit record can concern."""

    USER = "USER"
    SESSION = "SESSION"
    RFQ = "RFQ"
    RFQ_RESPONSE = "RFQ_RESPONSE"
    ORDER = "ORDER"
    TRADE = "TRADE"
    MARKET_BROADCAST = "MARKET_BROADCAST"
    REPORT = "REPORT"
    AUDIT_LOG = "AUDIT_LOG"


_CRITICAL_ACTIONS = frozenset(
    {
        AuditAction.USER_DELETE,
        AuditAction.ROLE_CHANGE,
        AuditAction.PERMISSION_CHANGE,
        AuditAction.ORDER_EXECUTE,
        AuditAction.TRADE_CONFIRM,
        AuditAction.AUDIT_LOG_ACCESS,
        AuditAction.COMPLIANCE_REPORT_ACCESS,
    }
)


def is_critical_action(action: AuditAction) -> bool:
    """Critical actions are also written to the escalation sink."""
    return action in _CRITICAL_ACTIONS


class ReportType(str, Enum):
    """Compliance report kinds."""

    DAILY_ACTIVITY = "daily_activity"
    USER_ACCESS = "user_access"
    TRADE_SUMMARY = "trade_summary"
    AUDIT_TRAIL = "audit_trail"
    FAILED_AUTH = "failed_auth"


class ReportFormat(str, Enum):
    """Output formats accepted by the report endpoint."""

    JSON = "json"
    CSV = "csv"
    PDF = "pdf"


class AuditLog(Base):
    """Append-only audit record. Rows are only removed by archival."""

    __tablename__ = "audit_logs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    details: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True, index=True)
    user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)
    checksum: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )

    __table_args__ = (
        Index("ix_audit_logs_user_created", "user_id", "created_at"),
        Index("ix_audit_logs_entity_created", "entity_type", "entity_id", "created_at"),
        Index("ix_audit_logs_action_created", "action", "created_at"),
    )

    def to_dict(self) -> dict[str, Any]:
        """Serialise for archive files and escalation records."""
        return {
            "id": str(self.id),
            "userId": self.user_id,
            "action": self.action,
            "entityType": self.entity_type,
            "entityId": self.entity_id,
            "metadata": self.details,
            "ipAddress": self.ip_address,
            "userAgent": self.user_agent,
            "checksum": self.checksum,
            "createdAt": self.created_at.isoformat(),
        }


# Pydantic models for the service and API


class AuditLogEntry(BaseModel):
    """Input to ``AuditService.log``."""

    model_config = ConfigDict(extra="forbid")

    action: AuditAction
    entity_type: EntityType
    user_id: str | None = None
    entity_id: str | None = None
    metadata: dict[str, Any] | None = None
    old_value: Any = None
    new_value: Any = None

    @field_validator("user_id", "entity_id", mode="before")
    @classmethod
    def stringify_ids(cls, v: Any) -> Any:
        if v is None or isinstance(v, str):
            return v
        return str(v)


class AuditLogResponse(BaseModel):
    """Audit record as returned by the API."""

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: UUID
    user_id: str | None = Field(serialization_alias="userId")
    action: str
    entity_type: str = Field(serialization_alias="entityType")
    entity_id: str | None = Field(serialization_alias="entityId")
    metadata: dict[str, Any] | None = Field(
        default=None, validation_alias="details", serialization_alias="metadata"
    )
    ip_address: str | None = Field(serialization_alias="ipAddress")
    user_agent: str | None = Field(serialization_alias="userAgent")
    checksum: str
    created_at: datetime = Field(serialization_alias="createdAt")
    integrity_verified: bool | None = Field(default=None, serialization_alias="integrityVerified")


class AuditSearchParams(BaseModel):
    """Filters for ``AuditService.search_audit_logs``."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    user_id: str | None = None
    action: AuditAction | None = None
    entity_type: EntityType | None = None
    entity_id: str | None = None
    ip_address: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=50, ge=1)


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int = Field(serialization_alias="totalPages")


class AuditSearchResult(BaseModel):
    logs: list[AuditLogResponse]
    pagination: Pagination


class ComplianceReportParams(BaseModel):
    """Inputs to ``AuditService.generate_compliance_report``."""

    model_config = ConfigDict(extra="forbid")

    report_type: ReportType
    start_date: datetime
    end_date: datetime
    user_id: str | None = None
    format: ReportFormat = ReportFormat.JSON
    requested_by: str | None = None


# Request bodies for the HTTP API


class VerifyIntegrityRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    audit_log_id: UUID = Field(alias="auditLogId")


class ReportGenerateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    report_type: ReportType = Field(alias="reportType")
    start_date: datetime = Field(alias="startDate")
    end_date: datetime = Field(alias="endDate")
    user_id: UUID | None = Field(default=None, alias="userId")
    format: ReportFormat = ReportFormat.JSON


class ArchiveRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    days_to_keep: int = Field(default=365, alias="daysToKeep")
