"""
Telemetry ingestion and aggregation.
"""

from .buffer import TelemetryBuffer
from .models import (
    EventType,
    MetricType,
    PerformanceMetric,
    PerformanceMetricData,
    TelemetryEvent,
    TelemetryEventData,
)
from .queue import TelemetryQueue
from .realtime import RealtimeStore
from .service import TelemetryService

__all__ = [
    "EventType",
    "MetricType",
    "PerformanceMetric",
    "PerformanceMetricData",
    "RealtimeStore",
    "TelemetryBuffer",
    "TelemetryEvent",
    "TelemetryEventData",
    "TelemetryQueue",
    "TelemetryService",
]
