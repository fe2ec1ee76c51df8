"""
Source Store — tenant-scoped persistence for knowledge sources.

The orchestrator only speaks the SourceStore interface, so the pipeline
can be exercised against an in-memory store in tests and against
PostgreSQL in production.

Contract (every implementation):
  - Every read/write/delete takes a tenant_id and never touches rows of
    another tenant.
  - update_where() is a conditional write: it applies the patch only if
    the row exists for that tenant AND (when given) its current status is
    one of expected_status. Otherwise it returns None. It never raises for
    a missing row, so a late write to a deleted source is a no-op.
  - find_many() returns newest first.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Any, Callable
from uuid import UUID

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from knowledge_sources.models.sources import KnowledgeSource
from knowledge_sources.schemas.sources import (
    CreateSourceRequest,
    SourceRecord,
    SourceStatus,
    SourceType,
)

logger = logging.getLogger(__name__)

StatusFilter = SourceStatus | Iterable[SourceStatus] | None

# Patch keys accepted by update_where() → ORM attribute names
_PATCH_COLUMNS: dict[str, str] = {
    "status":        "status",
    "raw_content":   "raw_content",
    "chunk_count":   "chunk_count",
    "error_message": "error_message",
    "metadata":      "source_metadata",
}


def _normalize_expected(expected_status: StatusFilter) -> list[SourceStatus] | None:
    if expected_status is None:
        return None
    if isinstance(expected_status, SourceStatus):
        return [expected_status]
    return list(expected_status)


# ---------------------------------------------------------------------------
# Abstract interface
# ---------------------------------------------------------------------------

class SourceStore(ABC):

    @abstractmethod
    async def insert(self, request: CreateSourceRequest) -> SourceRecord | None:
        """Insert a PENDING row and return it with server-generated fields (None if no row came back)."""

    @abstractmethod
    async def update_where(
        self,
        source_id: UUID,
        tenant_id: UUID,
        patch: dict[str, Any],
        expected_status: StatusFilter = None,
    ) -> SourceRecord | None:
        """Conditional update; None when no row matched."""

    @abstractmethod
    async def find_one(self, source_id: UUID, tenant_id: UUID) -> SourceRecord | None:
        ...

    @abstractmethod
    async def find_many(self, tenant_id: UUID, course_id: UUID) -> list[SourceRecord]:
        ...

    @abstractmethod
    async def delete(self, source_id: UUID, tenant_id: UUID) -> int:
        """Return the number of rows deleted (0 or 1)."""

    @abstractmethod
    async def find_stale(
        self,
        status: SourceStatus,
        older_than: datetime,
        limit: int,
    ) -> list[SourceRecord]:
        """Cross-tenant scan for rows stuck in ``status`` since before ``older_than``."""


# ---------------------------------------------------------------------------
# PostgreSQL implementation
# ---------------------------------------------------------------------------

SessionFactory = Callable[[UUID], AbstractAsyncContextManager[AsyncSession]]
AdminSessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]


def _to_record(row: KnowledgeSource) -> SourceRecord:
    return SourceRecord(
        id=row.id,
        tenant_id=row.tenant_id,
        course_id=row.course_id,
        title=row.title,
        source_type=SourceType(row.source_type),
        origin=row.origin,
        status=SourceStatus(row.status),
        raw_content=row.raw_content,
        chunk_count=row.chunk_count,
        error_message=row.error_message,
        metadata=dict(row.source_metadata or {}),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class SqlSourceStore(SourceStore):
    """
    One short transaction per call. Tenant isolation is enforced twice:
    the RLS GUC set by tenant_session() and an explicit tenant_id
    predicate on every statement.
    """

    def __init__(
        self,
        session_factory: SessionFactory | None = None,
        admin_session_factory: AdminSessionFactory | None = None,
    ) -> None:
        if session_factory is None or admin_session_factory is None:
            from knowledge_sources.db.session import get_admin_db, tenant_session
            session_factory = session_factory or tenant_session
            admin_session_factory = admin_session_factory or get_admin_db
        self._session = session_factory
        self._admin_session = admin_session_factory

    async def insert(self, request: CreateSourceRequest) -> SourceRecord | None:
        stmt = (
            insert(KnowledgeSource)
            .values(
                tenant_id=request.tenant_id,
                course_id=request.course_id,
                title=request.title,
                source_type=request.source_type.value,
                origin=request.origin,
                status=SourceStatus.PENDING.value,
                source_metadata=dict(request.metadata),
            )
            .returning(KnowledgeSource)
        )
        async with self._session(request.tenant_id) as db:
            result = await db.execute(stmt)
            row = result.scalars().one_or_none()
            return _to_record(row) if row is not None else None

    async def update_where(
        self,
        source_id: UUID,
        tenant_id: UUID,
        patch: dict[str, Any],
        expected_status: StatusFilter = None,
    ) -> SourceRecord | None:
        values: dict[str, Any] = {}
        for key, value in patch.items():
            column = _PATCH_COLUMNS.get(key)
            if column is None:
                raise ValueError(f"Unknown source field in patch: {key!r}")
            values[column] = value.value if isinstance(value, SourceStatus) else value
        values["updated_at"] = func.now()

        stmt = (
            update(KnowledgeSource)
            .where(
                KnowledgeSource.id == source_id,
                KnowledgeSource.tenant_id == tenant_id,
            )
            .values(**values)
            .returning(KnowledgeSource)
            .execution_options(synchronize_session=False)
        )
        expected = _normalize_expected(expected_status)
        if expected is not None:
            stmt = stmt.where(KnowledgeSource.status.in_([s.value for s in expected]))

        async with self._session(tenant_id) as db:
            result = await db.execute(stmt)
            row = result.scalars().first()

        if row is None:
            logger.debug(
                "Conditional update matched no row | source=%s tenant=%s expected=%s",
                source_id, tenant_id, expected,
            )
            return None
        return _to_record(row)

    async def find_one(self, source_id: UUID, tenant_id: UUID) -> SourceRecord | None:
        stmt = select(KnowledgeSource).where(
            KnowledgeSource.id == source_id,
            KnowledgeSource.tenant_id == tenant_id,
        )
        async with self._session(tenant_id) as db:
            result = await db.execute(stmt)
            row = result.scalars().first()
        return _to_record(row) if row is not None else None

    async def find_many(self, tenant_id: UUID, course_id: UUID) -> list[SourceRecord]:
        stmt = (
            select(KnowledgeSource)
            .where(
                KnowledgeSource.tenant_id == tenant_id,
                KnowledgeSource.course_id == course_id,
            )
            .order_by(KnowledgeSource.created_at.desc())
        )
        async with self._session(tenant_id) as db:
            result = await db.execute(stmt)
            rows = result.scalars().all()
        return [_to_record(row) for row in rows]

    async def delete(self, source_id: UUID, tenant_id: UUID) -> int:
        stmt = delete(KnowledgeSource).where(
            KnowledgeSource.id == source_id,
            KnowledgeSource.tenant_id == tenant_id,
        )
        async with self._session(tenant_id) as db:
            result = await db.execute(stmt)
        return result.rowcount or 0

    async def find_stale(
        self,
        status: SourceStatus,
        older_than: datetime,
        limit: int,
    ) -> list[SourceRecord]:
        stmt = (
            select(KnowledgeSource)
            .where(
                KnowledgeSource.status == status.value,
                KnowledgeSource.updated_at < older_than,
            )
            .order_by(KnowledgeSource.updated_at.asc())
            .limit(limit)
        )
        async with self._admin_session() as db:
            result = await db.execute(stmt)
            rows = result.scalars().all()
        return [_to_record(row) for row in rows]
