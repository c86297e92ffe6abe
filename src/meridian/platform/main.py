"""
Main FastAPI application entry point for the Meridian audit and telemetry services.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import Response

from meridian.platform.audit.router import router as audit_router
from meridian.platform.db import check_database_health, create_all_tables_async
from meridian.platform.logging import setup_logging
from meridian.platform.redis_client import init_redis, redis_manager, shutdown_redis
from meridian.platform.settings import settings
from meridian.platform.telemetry.middleware import TelemetryMiddleware
from meridian.platform.telemetry.router import router as telemetry_router
from meridian.platform.telemetry.service import TelemetryService

logger = structlog.get_logger(__name__)


async def validation_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Malformed query or body parameters are a 400 with the field errors."""
    if not isinstance(exc, RequestValidationError):
        raise exc
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "error": "Invalid parameters",
            "details": jsonable_errors(exc),
        },
    )


def jsonable_errors(exc: RequestValidationError) -> list[dict[str, Any]]:
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]


async def http_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Render HTTP errors (401, 403, 404, 503) in the API envelope."""
    if not isinstance(exc, StarletteHTTPException):
        raise exc
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Manage application lifecycle events."""
    setup_logging()

    try:
        settings.validate_security()
    except ValueError as e:
        logger.critical(
            "security.validation.failed", error=str(e), environment=settings.environment
        )
        raise RuntimeError(str(e)) from e

    logger.info(
        "service.startup.begin",
        service=settings.app_name,
        version=settings.app_version,
        environment=settings.environment,
    )

    try:
        await create_all_tables_async()
        logger.info("database.init.success")
    except SQLAlchemyError as e:
        logger.error("database.init.failed", error=str(e))
        if settings.is_production:
            raise

    try:
        await init_redis()
        logger.info("redis.init.success")
    except (RedisError, OSError) as e:
        # Realtime reads degrade to empty lists; writes are requeued.
        logger.error("redis.init.failed", error=str(e))
        if settings.is_production:
            raise

    telemetry_service = TelemetryService()
    app.state.telemetry_service = telemetry_service
    if settings.telemetry.enabled:
        await telemetry_service.start()

    logger.info("service.startup.complete")

    yield

    logger.info("service.shutdown.begin")

    await telemetry_service.shutdown()

    try:
        await shutdown_redis()
        logger.info("redis.shutdown.success")
    except (RedisError, OSError) as e:
        logger.error("redis.shutdown.failed", error=str(e))

    logger.info("service.shutdown.complete")


def create_application() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Meridian Platform Services",
        description="Tamper-evident audit logging and telemetry for the trading platform",
        version=settings.app_version,
        lifespan=lifespan,
        docs_url="/docs" if not settings.is_production else None,
        redoc_url="/redoc" if not settings.is_production else None,
    )

    if settings.telemetry.enabled:
        app.add_middleware(TelemetryMiddleware)

    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)

    app.include_router(audit_router, prefix=settings.api_prefix)
    app.include_router(telemetry_router, prefix=settings.api_prefix)

    # Health check endpoint (public - no auth required)
    @app.get("/health")
    async def health_check() -> dict[str, Any]:
        """Health check endpoint for monitoring."""
        return {
            "status": "healthy",
            "version": settings.app_version,
            "environment": settings.environment,
        }

    @app.get("/health/ready")
    async def readiness_check() -> dict[str, Any]:
        """Database and Redis reachability."""
        database_ok = await check_database_health()
        redis_status = await redis_manager.health_check()
        redis_ok = redis_status.get("status") == "healthy"

        return {
            "status": "ready" if database_ok and redis_ok else "not ready",
            "services": {
                "database": "healthy" if database_ok else "unhealthy",
                "redis": redis_status.get("status"),
            },
            "timestamp": datetime.now(UTC).isoformat(),
        }

    if settings.observability.prometheus_enabled:
        from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

        @app.get("/metrics", include_in_schema=False)
        async def metrics_root() -> Response:
            """Serve Prometheus metrics."""
            return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


# Create application instance
app = create_application()


# For development server
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "meridian.platform.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.is_development,
        log_level=settings.observability.log_level.value.lower(),
    )
