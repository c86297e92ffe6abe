"""
Telemetry events and performance metrics.
"""

from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import JSON, Float, Index, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from ..db import Base, CreatedAtMixin


class EventType(str, Enum):
    PAGE_VIEW = "PAGE_VIEW"
    CLICK = "CLICK"
    API_CALL = "API_CALL"
    WEBSOCKET = "WEBSOCKET"
    ERROR = "ERROR"
    PERFORMANCE = "PERFORMANCE"
    NAVIGATION = "NAVIGATION"
    FORM_SUBMIT = "FORM_SUBMIT"


class MetricType(str, Enum):
    PAGE_LOAD = "PAGE_LOAD"
    API_RESPONSE = "API_RESPONSE"
    WEBSOCKET_LATENCY = "WEBSOCKET_LATENCY"
    RENDER_TIME = "RENDER_TIME"
    MEMORY_USAGE = "MEMORY_USAGE"
    CPU_USAGE = "CPU_USAGE"


class TelemetryCategory(str, Enum):
    """Buffer and realtime-store partitions."""

    EVENTS = "events"
    METRICS = "metrics"


UNKNOWN_SESSION = "unknown"


class TelemetryEvent(Base, CreatedAtMixin):
    """A discrete interaction fact. Write-once."""

    __tablename__ = "telemetry_events"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    session_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    event_name: Mapped[str] = mapped_column(String(255), nullable=False)
    path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    method: Mapped[str | None] = mapped_column(String(10), nullable=True)
    status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    duration: Mapped[int | None] = mapped_column(Integer, nullable=True)
    details: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)

    __table_args__ = (
        Index("ix_telemetry_events_type_created", "event_type", "created_at"),
        Index("ix_telemetry_events_session", "session_id"),
    )


class PerformanceMetric(Base, CreatedAtMixin):
    """A discrete measurement. Write-once."""

    __tablename__ = "performance_metrics"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    session_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    metric_type: Mapped[str] = mapped_column(String(32), nullable=False)
    metric_name: Mapped[str] = mapped_column(String(255), nullable=False)
    value: Mapped[float] = mapped_column(Float, nullable=False)
    unit: Mapped[str] = mapped_column(String(16), nullable=False, default="ms")
    path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    details: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON, nullable=True)

    __table_args__ = (Index("ix_performance_metrics_type_created", "metric_type", "created_at"),)


# Pydantic models


class TelemetryEventData(BaseModel):
    """An event as accepted by ``TelemetryService.track_event``."""

    model_config = ConfigDict(populate_by_name=True, use_enum_values=True)

    user_id: str | None = Field(default=None, alias="userId")
    session_id: str = Field(default=UNKNOWN_SESSION, alias="sessionId")
    event_type: EventType = Field(alias="eventType")
    event_name: str = Field(alias="eventName")
    path: str | None = None
    method: str | None = None
    status_code: int | None = Field(default=None, alias="statusCode")
    duration: int | None = None
    metadata: dict[str, Any] | None = None
    user_agent: str | None = Field(default=None, alias="userAgent")
    ip_address: str | None = Field(default=None, alias="ipAddress")


class PerformanceMetricData(BaseModel):
    """A metric as accepted by ``TelemetryService.track_metric``."""

    model_config = ConfigDict(populate_by_name=True, use_enum_values=True)

    metric_type: MetricType = Field(alias="metricType")
    metric_name: str = Field(alias="metricName")
    value: float
    unit: str = "ms"
    path: str | None = None
    session_id: str | None = Field(default=None, alias="sessionId")
    user_id: str | None = Field(default=None, alias="userId")
    metadata: dict[str, Any] | None = None


class TrackEventItem(BaseModel):
    """Client-submitted event; the server fills in session and client context."""

    model_config = ConfigDict(populate_by_name=True)

    user_id: str | None = Field(default=None, alias="userId")
    event_type: EventType = Field(default=EventType.CLICK, alias="eventType")
    event_name: str = Field(alias="eventName")
    path: str | None = None
    metadata: dict[str, Any] | None = None


class TrackMetricItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str | None = Field(default=None, alias="userId")
    metric_type: MetricType = Field(default=MetricType.RENDER_TIME, alias="metricType")
    metric_name: str = Field(alias="metricName")
    value: float
    unit: str = "ms"
    path: str | None = None
    metadata: dict[str, Any] | None = None


class TrackRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str | None = Field(default=None, alias="sessionId")
    events: list[TrackEventItem] = Field(default_factory=list)
    metrics: list[TrackMetricItem] = Field(default_factory=list)


class ExportType(str, Enum):
    EVENTS = "events"
    METRICS = "metrics"


def event_row(event: TelemetryEventData) -> dict[str, Any]:
    """Column values for a ``TelemetryEvent`` insert."""
    data = event.model_dump(exclude={"metadata"})
    data["details"] = event.metadata
    return data


def metric_row(metric: PerformanceMetricData) -> dict[str, Any]:
    data = metric.model_dump(exclude={"metadata"})
    data["details"] = metric.metadata
    return data
