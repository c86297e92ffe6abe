"""
SQLAlchemy 2.0 Database Configuration

Async engine for the API, sync engine for Celery workers.
"""

import os
from collections.abc import AsyncIterator, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any
from urllib.parse import quote_plus

from sqlalchemy import DateTime, create_engine, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from meridian.platform.settings import settings

# ==========================================
# Database URLs from settings
# ==========================================


def get_database_url() -> str:
    """Get the sync database URL from settings."""
    override = os.environ.get("MERIDIAN_DATABASE_URL")
    if override:
        return override

    if settings.database.url:
        return str(settings.database.url)

    # In development, use SQLite if PostgreSQL is not configured
    if (settings.is_development or settings.is_testing) and not settings.database.password:
        return "sqlite:///./meridian_dev.sqlite"

    username = quote_plus(settings.database.username)
    password = quote_plus(settings.database.password) if settings.database.password else ""
    host = settings.database.host
    port = settings.database.port
    database = settings.database.database

    return f"postgresql://{username}:{password}" f"@{host}:{port}/{database}"


def get_async_database_url() -> str:
    """Get the async database URL from settings."""
    override = os.environ.get("MERIDIAN_DATABASE_URL_ASYNC")
    if override:
        return override

    sync_url = get_database_url()
    if "postgresql://" in sync_url:
        return sync_url.replace("postgresql://", "postgresql+asyncpg://")
    elif "sqlite://" in sync_url:
        return sync_url.replace("sqlite://", "sqlite+aiosqlite://")
    return sync_url


# ==========================================
# SQLAlchemy 2.0 Declarative Base
# ==========================================


class Base(DeclarativeBase):
    """Base class for all database models using SQLAlchemy 2.0 declarative mapping."""

    pass


class CreatedAtMixin:
    """Adds an immutable created_at timestamp. Write-once records have no updated_at."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), nullable=False, index=True
    )


# ==========================================
# Engine and Session Management
# ==========================================

_sync_engine: Engine | None = None
_async_engine: AsyncEngine | None = None


def _engine_kwargs(url: str) -> dict[str, Any]:
    """Pool options only apply to server databases."""
    if make_url(url).get_backend_name().startswith("sqlite"):
        return {"echo": settings.database.echo}
    return {
        "echo": settings.database.echo,
        "pool_size": settings.database.pool_size,
        "max_overflow": settings.database.max_overflow,
        "pool_timeout": settings.database.pool_timeout,
        "pool_recycle": settings.database.pool_recycle,
        "pool_pre_ping": settings.database.pool_pre_ping,
    }


def get_sync_engine() -> Engine:
    """Get or create the synchronous engine."""
    global _sync_engine
    if _sync_engine is None:
        url = get_database_url()
        _sync_engine = create_engine(url, **_engine_kwargs(url))
    return _sync_engine


def get_async_engine() -> AsyncEngine:
    """Get or create the asynchronous engine."""
    global _async_engine
    if _async_engine is None:
        url = get_async_database_url()
        _async_engine = create_async_engine(url, **_engine_kwargs(url))
    return _async_engine


SyncSessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=get_sync_engine(),
    class_=Session,
)

AsyncSessionLocal = async_sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=get_async_engine(),
    class_=AsyncSession,
    expire_on_commit=False,
)


# ==========================================
# Session Context Managers
# ==========================================


@contextmanager
def get_db() -> Iterator[Session]:
    """Get a synchronous database session."""
    session = SyncSessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


async def get_async_session() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency for getting an async database session."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


# ==========================================
# Database Initialization
# ==========================================


async def create_all_tables_async() -> None:
    """Create all tables in the database asynchronously."""
    engine = get_async_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def check_database_health() -> bool:
    """Check if the database is accessible."""
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
        return True
    except (SQLAlchemyError, OSError):
        return False


__all__ = [
    "Base",
    "CreatedAtMixin",
    "get_db",
    "get_async_session",
    "get_sync_engine",
    "get_async_engine",
    "SyncSessionLocal",
    "AsyncSessionLocal",
    "create_all_tables_async",
    "check_database_health",
]
