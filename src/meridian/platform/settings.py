"""Configuration for the audit and telemetry services.

Loaded from environment variables and an optional .env file. Nested sections
use a double underscore: ``TELEMETRY__BUFFER_MAX_SIZE=200``.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, PostgresDsn, RedisDsn, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

PLACEHOLDER_AUDIT_SECRET = "change-me-audit-hash-secret"


class Environment(str, Enum):
    """Application environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TEST = "test"


class LogLevel(str, Enum):
    """Log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Settings(BaseSettings):
    """Main application settings.

    All settings can be overridden via environment variables.
    For nested settings, use double underscore: AUDIT__HASH_SECRET=...
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore",
    )

    # ============================================================
    # Core Application Settings
    # ============================================================

    app_name: str = Field("meridian-platform", description="Application name")
    app_version: str = Field("1.0.0", description="Application version")
    environment: Environment = Field(Environment.DEVELOPMENT, description="Deployment environment")
    debug: bool = Field(False, description="Debug mode")
    testing: bool = Field(False, description="Testing mode")

    host: str = Field(
        "0.0.0.0", description="Server host"
    )  # nosec B104 - Production deployments use proxy
    port: int = Field(8000, description="Server port")
    api_prefix: str = Field("/api/v1", description="Prefix for all API routers")

    # ============================================================
    # Database Configuration
    # ============================================================

    class DatabaseSettings(BaseModel):
        """Database configuration."""

        url: PostgresDsn | None = Field(None, description="Full database URL")
        host: str = Field("localhost", description="Database host")
        port: int = Field(5432, description="Database port")
        database: str = Field("meridian", description="Database name")
        username: str = Field("meridian", description="Database username")
        password: str = Field("", description="Database password")

        # Connection pool
        pool_size: int = Field(10, description="Connection pool size")
        max_overflow: int = Field(20, description="Max overflow connections")
        pool_timeout: int = Field(30, description="Pool timeout in seconds")
        pool_recycle: int = Field(3600, description="Recycle connections after seconds")
        pool_pre_ping: bool = Field(True, description="Test connections before use")

        echo: bool = Field(False, description="Echo SQL statements")

    database: DatabaseSettings = DatabaseSettings()  # type: ignore[call-arg]

    # ============================================================
    # Redis Configuration
    # ============================================================

    class RedisSettings(BaseModel):
        """Redis configuration."""

        url: RedisDsn | None = Field(None, description="Full Redis URL")
        host: str = Field("localhost", description="Redis host")
        port: int = Field(6379, description="Redis port")
        password: str = Field("", description="Redis password")
        db: int = Field(0, description="Redis database number")

        max_connections: int = Field(50, description="Max connections in pool")
        decode_responses: bool = Field(True, description="Decode responses to strings")

        @property
        def redis_url(self) -> str:
            """Build Redis URL."""
            if self.url:
                return str(self.url)
            if self.password:
                return f"redis://:{self.password}@{self.host}:{self.port}/{self.db}"
            return f"redis://{self.host}:{self.port}/{self.db}"

    redis: RedisSettings = RedisSettings()  # type: ignore[call-arg]

    # ============================================================
    # JWT (tokens are issued by the auth service)
    # ============================================================

    class JWTSettings(BaseModel):
        """JWT verification configuration."""

        secret_key: str = Field("change-me", description="JWT secret key")
        algorithm: str = Field("HS256", description="JWT algorithm")

    jwt: JWTSettings = JWTSettings()  # type: ignore[call-arg]

    # ============================================================
    # Celery & Task Queue
    # ============================================================

    class CelerySettings(BaseModel):
        """Celery configuration."""

        broker_url: str = Field("redis://localhost:6379/0", description="Broker URL")
        result_backend: str = Field("redis://localhost:6379/1", description="Result backend")
        task_always_eager: bool = Field(False, description="Run tasks inline (tests only)")

        worker_concurrency: int = Field(10, description="Worker concurrency")
        worker_prefetch_multiplier: int = Field(1, description="Prefetch multiplier")
        task_soft_time_limit: int = Field(60, description="Soft time limit")
        task_time_limit: int = Field(120, description="Hard time limit")

    celery: CelerySettings = CelerySettings()  # type: ignore[call-arg]

    # ============================================================
    # Observability
    # ============================================================

    class ObservabilitySettings(BaseModel):
        """Logging and metrics configuration."""

        log_level: LogLevel = Field(LogLevel.INFO, description="Log level")
        log_format: str = Field("json", description="Log format (json or text)")
        enable_correlation_ids: bool = Field(True, description="Merge contextvars into logs")
        prometheus_enabled: bool = Field(True, description="Expose /metrics")
        slow_request_threshold_ms: float = Field(
            1000.0, description="Requests slower than this are logged as warnings"
        )

    observability: ObservabilitySettings = ObservabilitySettings()  # type: ignore[call-arg]

    # ============================================================
    # Audit
    # ============================================================

    class AuditSettings(BaseModel):
        """Tamper-evident audit log configuration."""

        hash_secret: str = Field(
            PLACEHOLDER_AUDIT_SECRET,
            description="HMAC key for audit record checksums (must be overridden)",
        )
        critical_log_path: str = Field(
            "/var/audit/critical/critical-actions.jsonl",
            description="Append-only escalation file for critical actions",
        )
        fallback_log_path: str = Field(
            "/var/audit/critical/unpersisted.jsonl",
            description="Records whose primary write failed",
        )
        archive_location: str = Field("/var/audit/archive", description="Cold storage directory")
        archive_batch_size: int = Field(1000, description="Records per archive batch")
        min_retention_days: int = Field(365, description="Minimum days before archival")
        search_default_limit: int = Field(50, description="Default page size")
        search_max_limit: int = Field(100, description="Maximum page size")
        stats_sample_limit: int = Field(1000, description="Records sampled by /audit/stats")
        suspicious_ip_threshold: int = Field(
            10, description="Failed attempts above which an IP is suspicious"
        )

    audit: AuditSettings = AuditSettings()  # type: ignore[call-arg]

    # ============================================================
    # Telemetry
    # ============================================================

    class TelemetrySettings(BaseModel):
        """Telemetry ingestion configuration."""

        enabled: bool = Field(True, description="Enable telemetry ingestion")
        flush_interval_seconds: float = Field(10.0, description="Buffer flush interval")
        buffer_max_size: int = Field(100, description="Per-category auto-flush threshold")
        buffer_max_backlog: int = Field(
            10_000, description="Per-category entries kept while Redis is unavailable"
        )
        realtime_window_hours: int = Field(24, description="Rolling window kept in Redis")
        key_prefix: str = Field("telemetry", description="Redis key prefix")
        queue_name: str = Field("telemetry", description="Celery queue for persistence jobs")
        max_attempts: int = Field(3, description="Attempts per persistence job")
        backoff_seconds: float = Field(2.0, description="Base exponential backoff delay")
        dead_letter_key: str = Field(
            "telemetry:dead_letter", description="Redis list holding exhausted jobs"
        )

    telemetry: TelemetrySettings = TelemetrySettings()  # type: ignore[call-arg]

    # ============================================================
    # Validation & Helpers
    # ============================================================

    @field_validator("environment", mode="before")
    @classmethod
    def validate_environment(cls, v: Any) -> Any:
        """Validate environment."""
        if isinstance(v, str):
            return Environment(v.lower())
        return v

    def validate_security(self) -> None:
        """Reject placeholder secrets.

        The audit secret is checked in every environment but test; the JWT
        secret everywhere outside development and test.
        """
        if self.is_testing:
            return
        if not self.has_audit_secret:
            raise ValueError(f"AUDIT__HASH_SECRET must be set in {self.environment.value}")
        if not self.is_development and self.jwt.secret_key == "change-me":
            raise ValueError(f"JWT__SECRET_KEY must be set in {self.environment.value}")

    @property
    def has_audit_secret(self) -> bool:
        return self.audit.hash_secret not in ("", PLACEHOLDER_AUDIT_SECRET)

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == Environment.PRODUCTION

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.environment == Environment.DEVELOPMENT

    @property
    def is_testing(self) -> bool:
        """Check if running in test mode."""
        return self.testing or self.environment == Environment.TEST


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get global settings instance (singleton)."""
    global _settings
    if _settings is None:
        _settings = Settings()  # type: ignore
    return _settings


settings = get_settings()
