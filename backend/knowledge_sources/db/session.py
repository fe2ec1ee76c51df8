"""
Database session management with tenant context injection.

Flow:
  1. The source store opens one short transaction per operation.
  2. tenant_session() sets the PostgreSQL GUC `app.current_tenant_id`
     for the lifetime of that transaction, then yields the session.
  3. The transaction commits on exit (or rolls back on error) and the
     connection returns to the pool; the GUC is transaction-local.

Security guarantee:
  RLS policies on saas.knowledge_sources read the GUC, and the store adds
  an explicit tenant_id predicate on top, so a missing policy still cannot
  leak rows across tenants.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from knowledge_sources.core.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

engine: AsyncEngine = create_async_engine(
    settings.database_url,
    pool_size=settings.db_pool_size,
    max_overflow=settings.db_max_overflow,
    pool_pre_ping=True,          # detect stale connections before use
    pool_recycle=3600,           # recycle connections every hour
    echo=settings.db_echo_sql,
)

# Session factory: expire_on_commit=False keeps ORM objects usable after commit
AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)

# ---------------------------------------------------------------------------
# Tenant context helper
# ---------------------------------------------------------------------------

async def _set_tenant_context(session: AsyncSession, tenant_id: UUID) -> None:
    """
    Set the transaction-local variable that RLS policies read.

    set_config(..., is_local => true) is the bind-parameter-friendly
    equivalent of SET LOCAL; it is cleared when the transaction ends.
    """
    await session.execute(
        text("SELECT set_config('app.current_tenant_id', :tid, true)"),
        {"tid": str(tenant_id)},
    )
    logger.debug("Tenant context set: %s", tenant_id)


# ---------------------------------------------------------------------------
# Tenant-scoped session
# ---------------------------------------------------------------------------

@asynccontextmanager
async def tenant_session(tenant_id: UUID) -> AsyncGenerator[AsyncSession, None]:
    """
    One transaction with RLS scoped to ``tenant_id``.

    Usage:
        async with tenant_session(tenant_id) as db:
            await db.execute(...)
    """
    async with AsyncSessionLocal() as session:
        async with session.begin():
            await _set_tenant_context(session, tenant_id)
            yield session


# ---------------------------------------------------------------------------
# Admin session (NO tenant context: bypasses RLS intentionally)
# ---------------------------------------------------------------------------

@asynccontextmanager
async def get_admin_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Session without RLS tenant context.

    ONLY for background system jobs that operate across tenants
    (the stale-source sweep). Never expose this to request handlers.
    """
    async with AsyncSessionLocal() as session:
        async with session.begin():
            yield session


# ---------------------------------------------------------------------------
# Health check helper
# ---------------------------------------------------------------------------

async def check_db_health() -> dict:
    """Ping the database; used by /ready and at startup."""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        logger.error("DB health check failed: %s", exc)
        return {"status": "error", "detail": str(exc)}
