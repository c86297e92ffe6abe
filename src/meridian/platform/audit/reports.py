"""
Compliance report generation.

Each report is an aggregation over audit records (or trades and orders)
inside a half-open ``[start, end)`` window.
"""

import csv
import io
from collections import Counter
from datetime import datetime
from decimal import Decimal
from typing import Any

import structlog
from sqlalchemy import and_, desc, func, or_, select

from ..trading.models import Order, Trade
from .checksum import ChecksumCodec
from .exceptions import UnknownReportType, UnsupportedReportFormat
from .models import AuditAction, AuditLog, ReportFormat, ReportType
from .store import AuditStore

logger = structlog.get_logger(__name__)

TOP_N = 10

# name, description, minimum role
REPORT_CATALOG: dict[ReportType, dict[str, str]] = {
    ReportType.DAILY_ACTIVITY: {
        "name": "Daily Activity Report",
        "description": "Summary of all platform activities for a given period",
        "requiredRole": "ADMIN",
    },
    ReportType.USER_ACCESS: {
        "name": "User Access Report",
        "description": "User login/logout activities and session information",
        "requiredRole": "ADMIN",
    },
    ReportType.TRADE_SUMMARY: {
        "name": "Trade Summary Report",
        "description": "Summary of all trades and orders for a given period",
        "requiredRole": "BROKER",
    },
    ReportType.AUDIT_TRAIL: {
        "name": "Audit Trail Report",
        "description": "Complete audit trail for a specific user or all users",
        "requiredRole": "ADMIN",
    },
    ReportType.FAILED_AUTH: {
        "name": "Failed Authentication Report",
        "description": "Failed login attempts and suspicious activities",
        "requiredRole": "ADMIN",
    },
}


def _as_float(value: Any) -> float:
    if value is None:
        return 0.0
    return float(value)


def _period(start: datetime, end: datetime) -> dict[str, str]:
    return {"start": start.isoformat(), "end": end.isoformat()}


class ComplianceReportGenerator:
    """Builds the five compliance report kinds."""

    def __init__(
        self,
        store: AuditStore,
        codec: ChecksumCodec,
        suspicious_ip_threshold: int = 10,
    ):
        self.store = store
        self.codec = codec
        self.suspicious_ip_threshold = suspicious_ip_threshold
        self._builders = {
            ReportType.DAILY_ACTIVITY: self.daily_activity,
            ReportType.USER_ACCESS: self.user_access,
            ReportType.TRADE_SUMMARY: self.trade_summary,
            ReportType.AUDIT_TRAIL: self.audit_trail,
            ReportType.FAILED_AUTH: self.failed_auth,
        }

    async def generate(
        self,
        report_type: ReportType | str,
        start: datetime,
        end: datetime,
        user_id: str | None = None,
    ) -> dict[str, Any]:
        try:
            kind = ReportType(report_type)
        except ValueError as e:
            raise UnknownReportType(f"Unknown report type: {report_type}") from e

        builder = self._builders.get(kind)
        if builder is None:
            raise UnknownReportType(f"Unknown report type: {report_type}")

        report = await builder(start, end, user_id)
        logger.info("audit.report_generated", report_type=kind.value, user_id=user_id)
        return report

    async def daily_activity(
        self, start: datetime, end: datetime, user_id: str | None = None
    ) -> dict[str, Any]:
        breakdown = await self.store.grouped_counts(
            [AuditLog.action, AuditLog.entity_type], start, end, user_id=user_id
        )
        by_user = await self.store.grouped_counts([AuditLog.user_id], start, end, user_id=user_id)

        return {
            "reportType": ReportType.DAILY_ACTIVITY.value,
            "period": _period(start, end),
            "summary": {
                "totalActions": sum(row[2] for row in breakdown),
                "uniqueUsers": len(by_user),
            },
            "activityBreakdown": [
                {"action": action, "entityType": entity_type, "count": count}
                for action, entity_type, count in breakdown
            ],
            "topUsers": [
                {"userId": uid, "actionCount": count} for uid, count in by_user[:TOP_N]
            ],
        }

    async def user_access(
        self, start: datetime, end: datetime, user_id: str | None = None
    ) -> dict[str, Any]:
        records = await self.store.list_window(
            start,
            end,
            user_id=user_id,
            actions=[AuditAction.USER_LOGIN.value, AuditAction.USER_LOGOUT.value],
        )

        logins = [r for r in records if r.action == AuditAction.USER_LOGIN.value]
        logouts = len(records) - len(logins)

        by_hour = Counter(r.created_at.hour for r in logins)
        by_user = Counter(r.user_id for r in logins if r.user_id)

        return {
            "reportType": ReportType.USER_ACCESS.value,
            "period": _period(start, end),
            "summary": {
                "totalLogins": len(logins),
                "totalLogouts": logouts,
                "uniqueUsers": len({r.user_id for r in records if r.user_id}),
            },
            "loginsByHour": [{"hour": hour, "count": by_hour.get(hour, 0)} for hour in range(24)],
            "loginsByUser": [
                {"userId": uid, "count": count} for uid, count in by_user.most_common()
            ],
        }

    async def trade_summary(
        self, start: datetime, end: datetime, user_id: str | None = None
    ) -> dict[str, Any]:
        trade_window = [Trade.created_at >= start, Trade.created_at < end]
        order_window = [Order.created_at >= start, Order.created_at < end]
        if user_id:
            trade_window.append(or_(Trade.buyer_id == user_id, Trade.seller_id == user_id))
            order_window.append(Order.user_id == user_id)

        notional = Trade.execution_price * Trade.execution_quantity

        async with self.store.session_scope() as session:
            trade_count = (
                await session.execute(select(func.count(Trade.id)).where(and_(*trade_window)))
            ).scalar() or 0
            total_volume = (
                await session.execute(select(func.sum(notional)).where(and_(*trade_window)))
            ).scalar()
            order_count = (
                await session.execute(select(func.count(Order.id)).where(and_(*order_window)))
            ).scalar() or 0

            volume = func.sum(notional).label("volume")
            product_rows = (
                await session.execute(
                    select(Trade.product, volume, func.count(Trade.id))
                    .where(and_(*trade_window))
                    .group_by(Trade.product)
                    .order_by(desc(volume))
                )
            ).all()

            traders: Counter[str] = Counter()
            for column in (Trade.buyer_id, Trade.seller_id):
                rows = (
                    await session.execute(
                        select(column, func.sum(notional))
                        .where(and_(*trade_window))
                        .group_by(column)
                    )
                ).all()
                for trader_id, trader_volume in rows:
                    traders[trader_id] += Decimal(str(trader_volume or 0))

        fill_rate = trade_count / order_count if order_count else 0.0

        return {
            "reportType": ReportType.TRADE_SUMMARY.value,
            "period": _period(start, end),
            "summary": {
                "totalTrades": trade_count,
                "totalVolume": _as_float(total_volume),
                "totalOrders": order_count,
                "fillRate": round(fill_rate, 4),
            },
            "volumeByProduct": [
                {"product": product, "volume": _as_float(vol), "tradeCount": count}
                for product, vol, count in product_rows
            ],
            "topTraders": [
                {"userId": trader_id, "volume": _as_float(vol)}
                for trader_id, vol in traders.most_common(TOP_N)
            ],
        }

    async def audit_trail(
        self, start: datetime, end: datetime, user_id: str | None = None
    ) -> dict[str, Any]:
        records = await self.store.list_window(start, end, user_id=user_id)

        logs = []
        failed = 0
        for record in records:
            verified = self.codec.verify(record)
            if not verified:
                failed += 1
            entry = record.to_dict()
            entry["integrityVerified"] = verified
            logs.append(entry)

        return {
            "reportType": ReportType.AUDIT_TRAIL.value,
            "period": _period(start, end),
            "summary": {
                "totalRecords": len(records),
                "integrityVerified": len(records) - failed,
                "integrityFailed": failed,
            },
            "logs": logs,
        }

    async def failed_auth(
        self, start: datetime, end: datetime, user_id: str | None = None
    ) -> dict[str, Any]:
        failed_login = AuditAction.USER_LOGIN_FAILED.value
        reset = AuditAction.PASSWORD_RESET.value

        by_action = dict(
            await self.store.grouped_counts(
                [AuditLog.action], start, end, user_id=user_id, actions=[failed_login, reset]
            )
        )
        by_ip = await self.store.grouped_counts(
            [AuditLog.ip_address], start, end, user_id=user_id, actions=[failed_login]
        )

        return {
            "reportType": ReportType.FAILED_AUTH.value,
            "period": _period(start, end),
            "summary": {
                "failedLogins": by_action.get(failed_login, 0),
                "passwordResets": by_action.get(reset, 0),
            },
            "failedAttemptsByIp": [{"ipAddress": ip, "count": count} for ip, count in by_ip],
            "suspiciousIps": [
                {"ipAddress": ip, "count": count}
                for ip, count in by_ip
                if count > self.suspicious_ip_threshold
            ],
        }


def _flatten(prefix: str, value: Any, rows: list[tuple[str, str, Any]], section: str) -> None:
    if isinstance(value, dict):
        for key, item in value.items():
            _flatten(f"{prefix}.{key}" if prefix else str(key), item, rows, section)
    elif isinstance(value, list):
        for index, item in enumerate(value):
            _flatten(f"{prefix}[{index}]", item, rows, section)
    else:
        rows.append((section, prefix, "" if value is None else value))


def render_csv(report: dict[str, Any]) -> str:
    """Flatten a report into ``section,key,value`` rows."""
    rows: list[tuple[str, str, Any]] = []
    for section, value in report.items():
        if isinstance(value, dict | list):
            _flatten("", value, rows, section)
        else:
            rows.append(("report", section, "" if value is None else value))

    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(["section", "key", "value"])
    writer.writerows(rows)
    return buffer.getvalue()


def render_report(
    report: dict[str, Any], output_format: ReportFormat | str
) -> dict[str, Any] | str:
    try:
        fmt = ReportFormat(output_format)
    except ValueError as e:
        raise UnsupportedReportFormat(f"Report format '{output_format}' is not supported") from e
    if fmt == ReportFormat.JSON:
        return report
    if fmt == ReportFormat.CSV:
        return render_csv(report)
    raise UnsupportedReportFormat(f"Report format '{fmt.value}' is not supported")
