"""
Persistence for audit records.

Records are inserted and read; the only delete is the archival sweep.
Writes run on a session of their own, so the caller's unit of work is never
committed or rolled back by an audit write.
"""

from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import and_, delete, desc, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .exceptions import AuditStorageError
from .models import AuditLog, AuditSearchParams

logger = structlog.get_logger(__name__)

# Drivers raise OSError (e.g. ConnectionRefusedError) unwrapped when the
# database is unreachable.
STORAGE_ERRORS = (SQLAlchemyError, OSError)


class AuditStore:
    """Async SQLAlchemy access to the ``audit_logs`` table."""

    def __init__(
        self,
        session: AsyncSession | None = None,
        session_factory: Callable[[], AsyncSession] | None = None,
    ):
        self._session = session
        self._session_factory = session_factory

    def session_scope(self) -> Any:
        """Session context for queries that span other tables."""
        return self._get_session()

    def _new_session(self) -> AsyncSession:
        if self._session_factory is not None:
            return self._session_factory()

        from ..db import AsyncSessionLocal

        return AsyncSessionLocal()

    @asynccontextmanager
    async def _get_session(self) -> AsyncIterator[AsyncSession]:
        """Yield the injected session, or open a short-lived one."""
        if self._session is not None:
            yield self._session
            return

        async with self._new_session() as session:
            yield session

    @staticmethod
    def _newest_first(query: Any) -> Any:
        return query.order_by(desc(AuditLog.created_at), desc(AuditLog.id))

    async def add(self, record: AuditLog) -> AuditLog:
        try:
            async with self._new_session() as session:
                session.add(record)
                await session.commit()
        except STORAGE_ERRORS as e:
            raise AuditStorageError(str(e)) from e
        return record

    async def get(self, audit_log_id: UUID) -> AuditLog | None:
        async with self._get_session() as session:
            return await session.get(AuditLog, audit_log_id)

    def _build_conditions(self, filters: AuditSearchParams) -> list:
        conditions = []

        if filters.user_id:
            conditions.append(AuditLog.user_id == filters.user_id)
        if filters.action:
            conditions.append(AuditLog.action == filters.action.value)
        if filters.entity_type:
            conditions.append(AuditLog.entity_type == filters.entity_type.value)
        if filters.entity_id:
            conditions.append(AuditLog.entity_id == filters.entity_id)
        if filters.ip_address:
            conditions.append(AuditLog.ip_address == filters.ip_address)

        if filters.start_date:
            conditions.append(AuditLog.created_at >= filters.start_date)
        if filters.end_date:
            conditions.append(AuditLog.created_at < filters.end_date)

        return conditions

    async def search(self, filters: AuditSearchParams) -> tuple[list[AuditLog], int]:
        """Return one page of matching records and the total match count."""
        async with self._get_session() as session:
            query = select(AuditLog)
            conditions = self._build_conditions(filters)
            if conditions:
                query = query.where(and_(*conditions))

            count_query = select(func.count()).select_from(query.subquery())
            total = (await session.execute(count_query)).scalar() or 0

            offset = (filters.page - 1) * filters.limit
            query = self._newest_first(query).offset(offset).limit(filters.limit)
            result = await session.execute(query)
            return list(result.scalars().all()), total

    async def list_for_user(self, user_id: str, limit: int = 100) -> list[AuditLog]:
        async with self._get_session() as session:
            query = self._newest_first(select(AuditLog).where(AuditLog.user_id == user_id))
            result = await session.execute(query.limit(limit))
            return list(result.scalars().all())

    async def list_for_entity(
        self, entity_type: str, entity_id: str, limit: int = 100
    ) -> list[AuditLog]:
        async with self._get_session() as session:
            query = select(AuditLog).where(
                and_(AuditLog.entity_type == entity_type, AuditLog.entity_id == entity_id)
            )
            result = await session.execute(self._newest_first(query).limit(limit))
            return list(result.scalars().all())

    async def list_window(
        self,
        start: datetime,
        end: datetime,
        *,
        user_id: str | None = None,
        actions: list[str] | None = None,
        limit: int | None = None,
    ) -> list[AuditLog]:
        """Records with ``start <= created_at < end``, newest first."""
        async with self._get_session() as session:
            conditions = [AuditLog.created_at >= start, AuditLog.created_at < end]
            if user_id:
                conditions.append(AuditLog.user_id == user_id)
            if actions:
                conditions.append(AuditLog.action.in_(actions))
            query = self._newest_first(select(AuditLog).where(and_(*conditions)))
            if limit is not None:
                query = query.limit(limit)
            result = await session.execute(query)
            return list(result.scalars().all())

    async def grouped_counts(
        self,
        columns: list[Any],
        start: datetime,
        end: datetime,
        *,
        user_id: str | None = None,
        actions: list[str] | None = None,
        limit: int | None = None,
    ) -> list[tuple[Any, ...]]:
        """``(*columns, count)`` rows for the window, largest count first.

        Rows with a NULL grouping key are dropped.
        """
        async with self._get_session() as session:
            count = func.count(AuditLog.id).label("count")
            conditions = [AuditLog.created_at >= start, AuditLog.created_at < end]
            conditions.extend(column.is_not(None) for column in columns)
            if user_id:
                conditions.append(AuditLog.user_id == user_id)
            if actions:
                conditions.append(AuditLog.action.in_(actions))
            query = (
                select(*columns, count)
                .where(and_(*conditions))
                .group_by(*columns)
                .order_by(desc(count), *columns)
            )
            if limit is not None:
                query = query.limit(limit)
            result = await session.execute(query)
            return [tuple(row) for row in result.all()]

    async def count_window(self, start: datetime, end: datetime) -> int:
        async with self._get_session() as session:
            query = select(func.count(AuditLog.id)).where(
                and_(AuditLog.created_at >= start, AuditLog.created_at < end)
            )
            return (await session.execute(query)).scalar() or 0

    async def iter_older_than(
        self, cutoff: datetime, batch_size: int
    ) -> AsyncIterator[list[AuditLog]]:
        """Yield batches of records created before ``cutoff``, oldest first."""
        async with self._get_session() as session:
            offset = 0
            query = (
                select(AuditLog)
                .where(AuditLog.created_at < cutoff)
                .order_by(AuditLog.created_at, AuditLog.id)
            )
            while True:
                result = await session.execute(query.offset(offset).limit(batch_size))
                batch = list(result.scalars().all())
                if not batch:
                    break
                yield batch
                offset += len(batch)

    async def delete_older_than(self, cutoff: datetime) -> int:
        try:
            async with self._new_session() as session:
                result = await session.execute(
                    delete(AuditLog)
                    .where(AuditLog.created_at < cutoff)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
        except STORAGE_ERRORS as e:
            raise AuditStorageError(str(e)) from e
        return result.rowcount or 0
