"""
Keyed checksums for audit records.

Every audit record carries an HMAC-SHA256 digest over
``{userId, action, entityType, entityId, metadata, timestamp}``. The
serialization is canonical (sorted keys, no whitespace) so the digest can
be recomputed from stored fields at any time.
"""

import hashlib
import hmac
import json
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from ..settings import Settings, settings
from .exceptions import AuditConfigurationError
from .models import AuditLog


def format_timestamp(value: datetime) -> str:
    """ISO-8601 UTC with millisecond precision and a ``Z`` suffix.

    Naive datetimes are treated as UTC; SQLite hands them back that way.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    else:
        value = value.astimezone(UTC)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def truncate_to_millis(value: datetime) -> datetime:
    return value.replace(microsecond=(value.microsecond // 1000) * 1000)


def normalize_metadata(metadata: dict[str, Any] | None) -> dict[str, Any] | None:
    """Round-trip through JSON so the hashed value equals the stored value."""
    if metadata is None:
        return None
    return json.loads(json.dumps(metadata, default=str))


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


def canonical_payload(
    *,
    user_id: str | None,
    action: Any,
    entity_type: Any,
    entity_id: str | None,
    metadata: dict[str, Any] | None,
    timestamp: datetime,
) -> bytes:
    payload = {
        "userId": user_id,
        "action": _plain(action),
        "entityType": _plain(entity_type),
        "entityId": entity_id,
        "metadata": metadata,
        "timestamp": format_timestamp(timestamp),
    }
    return json.dumps(
        payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str
    ).encode("utf-8")


class ChecksumCodec:
    """HMAC-SHA256 over the canonical form of an audit record."""

    def __init__(self, secret: str):
        if not secret:
            raise AuditConfigurationError("Audit hash secret is not configured")
        self._key = secret.encode("utf-8")

    @classmethod
    def from_settings(cls, config: Settings | None = None) -> "ChecksumCodec":
        config = config or settings
        if not config.has_audit_secret and not config.is_testing:
            raise AuditConfigurationError("AUDIT__HASH_SECRET is not set")
        return cls(config.audit.hash_secret)

    def compute_checksum(
        self,
        *,
        user_id: str | None,
        action: Any,
        entity_type: Any,
        entity_id: str | None,
        metadata: dict[str, Any] | None,
        timestamp: datetime,
    ) -> str:
        payload = canonical_payload(
            user_id=user_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            metadata=metadata,
            timestamp=timestamp,
        )
        return hmac.new(self._key, payload, hashlib.sha256).hexdigest()

    def verify(self, record: AuditLog | None) -> bool:
        """Recompute the digest from stored fields and compare."""
        if record is None or not record.checksum:
            return False
        expected = self.compute_checksum(
            user_id=record.user_id,
            action=record.action,
            entity_type=record.entity_type,
            entity_id=record.entity_id,
            metadata=record.details,
            timestamp=record.created_at,
        )
        return hmac.compare_digest(expected, record.checksum)
