"""Audit subsystem exceptions."""


class AuditError(Exception):
    """Base class for audit errors."""


class AuditValidationError(AuditError):
    """An audit entry is missing required fields or carries invalid values."""


class AuditConfigurationError(AuditError):
    """The audit subsystem is misconfigured (for example, no hash secret)."""


class AuditStorageError(AuditError):
    """The primary or escalation store could not be written."""


class UnknownReportType(AuditError):
    """Requested compliance report kind does not exist."""


class UnsupportedReportFormat(AuditError):
    """Requested report format has no renderer."""
