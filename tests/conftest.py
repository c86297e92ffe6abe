"""
Global pytest configuration and fixtures for Meridian Platform Services tests.
"""

import os
import sys
import tempfile
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio

# Configure SQLite for all tests by default (unless explicitly overridden).
# A file-based database lets the async API engine and the sync Celery engine
# share one schema.
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("MERIDIAN_DATABASE_URL_ASYNC", "sqlite+aiosqlite:///./pytest.db")
os.environ.setdefault("MERIDIAN_DATABASE_URL", "sqlite:///./pytest.db")
os.environ.setdefault("JWT__SECRET_KEY", "test-jwt-secret")
os.environ.setdefault("AUDIT__HASH_SECRET", "test-audit-hash-secret")
# In-memory broker so nothing tries to reach Redis on import
os.environ.setdefault("CELERY__BROKER_URL", "memory://")
os.environ.setdefault("CELERY__RESULT_BACKEND", "cache+memory://")

_AUDIT_DIR = tempfile.mkdtemp(prefix="meridian-audit-")
os.environ.setdefault("AUDIT__CRITICAL_LOG_PATH", os.path.join(_AUDIT_DIR, "critical.jsonl"))
os.environ.setdefault("AUDIT__FALLBACK_LOG_PATH", os.path.join(_AUDIT_DIR, "unpersisted.jsonl"))
os.environ.setdefault("AUDIT__ARCHIVE_LOCATION", os.path.join(_AUDIT_DIR, "archive"))

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

import fakeredis  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy import update  # noqa: E402
from sqlalchemy.ext.asyncio import async_sessionmaker  # noqa: E402

from meridian.platform.audit.checksum import ChecksumCodec  # noqa: E402
from meridian.platform.audit.escalation import CriticalEscalationSink  # noqa: E402
from meridian.platform.audit.models import AuditLog  # noqa: E402
from meridian.platform.audit.service import AuditService  # noqa: E402
from meridian.platform.auth.core import jwt_service  # noqa: E402
from meridian.platform.db import (  # noqa: E402
    Base,
    get_async_engine,
    get_async_session,
    get_sync_engine,
)
from meridian.platform.settings import settings  # noqa: E402

# Register every table on Base.metadata
import meridian.platform.audit.models  # noqa: E402,F401
import meridian.platform.telemetry.models  # noqa: E402,F401
import meridian.platform.trading.models  # noqa: E402,F401

TEST_HASH_SECRET = "test-audit-hash-secret"


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2024, 3, 1, 12, 0, 0, tzinfo=UTC))


# ==========================================
# Database
# ==========================================


@pytest_asyncio.fixture
async def async_db_engine():
    """Fresh schema on the shared SQLite file for every test."""
    engine = get_async_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()
    get_sync_engine().dispose()


@pytest_asyncio.fixture
async def async_db_session(async_db_engine):
    """Async database session."""
    SessionMaker = async_sessionmaker(async_db_engine, expire_on_commit=False)
    async with SessionMaker() as session:
        try:
            yield session
        finally:
            await session.rollback()
            await session.close()


@pytest.fixture
def session_factory(async_db_engine):
    """Session factory for audit writes, separate from ``async_db_session``."""
    return async_sessionmaker(async_db_engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def tamper(async_db_session):
    """Overwrite stored audit columns behind the service's back."""

    async def _tamper(record_id, **values) -> None:
        await async_db_session.execute(
            update(AuditLog)
            .where(AuditLog.id == record_id)
            .values({getattr(AuditLog, name): value for name, value in values.items()})
            .execution_options(synchronize_session=False)
        )
        await async_db_session.commit()
        async_db_session.expire_all()

    return _tamper


# ==========================================
# Audit
# ==========================================


@pytest.fixture
def codec() -> ChecksumCodec:
    return ChecksumCodec(TEST_HASH_SECRET)


@pytest.fixture
def escalation_sink(tmp_path) -> CriticalEscalationSink:
    return CriticalEscalationSink(tmp_path / "critical.jsonl", tmp_path / "unpersisted.jsonl")


@pytest.fixture
def audit_service(
    async_db_session, session_factory, codec, escalation_sink, clock
) -> AuditService:
    return AuditService(
        async_db_session,
        session_factory=session_factory,
        codec=codec,
        sink=escalation_sink,
        config=settings,
        clock=clock,
    )


# ==========================================
# Redis
# ==========================================


@pytest_asyncio.fixture
async def redis_client():
    client = fakeredis.aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def sync_redis_client():
    client = fakeredis.FakeRedis(decode_responses=True)
    yield client
    client.flushall()
    client.close()


# ==========================================
# Auth & HTTP
# ==========================================


@pytest.fixture
def make_auth_headers() -> Callable[..., dict[str, str]]:
    """Build a Bearer header for a user holding the given roles."""

    def _make(user_id: str, *roles: str) -> dict[str, str]:
        token = jwt_service.create_access_token(user_id, {"roles": list(roles)})
        return {"Authorization": f"Bearer {token}"}

    return _make


@pytest.fixture
def admin_id() -> str:
    return "5b1f3c2e-7a59-4d0e-9a61-0f4f2b8d1a10"


@pytest.fixture
def admin_headers(make_auth_headers, admin_id) -> dict[str, str]:
    return make_auth_headers(admin_id, "ADMIN")


@pytest.fixture
def broker_headers(make_auth_headers) -> dict[str, str]:
    return make_auth_headers("8c0e2d47-3b6a-4f1e-8d2c-6a9b0e4f7c31", "BROKER")


@pytest.fixture
def trader_headers(make_auth_headers) -> dict[str, str]:
    return make_auth_headers("1d7a9e35-0c84-4b2f-a6e3-93f5c8b2d046", "TRADER")


@pytest.fixture
def test_app(async_db_engine):
    """The application with its database dependency bound to the test engine."""
    from meridian.platform.main import create_application

    app = create_application()
    SessionMaker = async_sessionmaker(async_db_engine, expire_on_commit=False)

    async def override_session():
        async with SessionMaker() as session:
            yield session

    app.dependency_overrides[get_async_session] = override_session
    yield app
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(test_app):
    transport = ASGITransport(app=test_app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac
