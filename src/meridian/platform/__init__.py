"""
Meridian Platform Services.

Cross-cutting services for the trading platform:
- Tamper-evident audit logging, search and compliance reporting
- Telemetry ingestion, realtime buffering and aggregation
"""

__version__ = "1.0.0"


def get_version() -> str:
    """Get platform services version."""
    return __version__


__all__ = ["__version__", "get_version"]
