"""
SQLAlchemy ORM Models — Knowledge Sources

Maps saas.knowledge_sources. Using SQLAlchemy 2.x typed mapped classes
for full async support.

RLS note: Row-Level Security reads the app.current_tenant_id GUC set by
db/session.py. The source store still adds explicit tenant_id predicates.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from knowledge_sources.schemas.sources import SourceStatus, SourceType


def _in_list(column: str, values) -> str:
    quoted = ", ".join(f"'{v.value}'" for v in values)
    return f"{column} IN ({quoted})"


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# KnowledgeSource model: saas.knowledge_sources
# ---------------------------------------------------------------------------

class KnowledgeSource(Base):
    """
    One piece of course content moving through extract → segment → vectorize.

    State machine (status column):
        PENDING: inserted by the API, background run not started
        PROCESSING: claimed by exactly one pipeline run
        READY: raw_content stored; chunk_count = segments indexed
        FAILED: extraction failed; error_message says why

    Column invariants (enforced by the check constraints below):
        PENDING/PROCESSING → raw_content, chunk_count, error_message all NULL
        FAILED             → error_message NOT NULL, raw_content NULL
        READY              → raw_content NOT NULL, chunk_count >= 0
    """

    __tablename__ = "knowledge_sources"
    __table_args__ = (
        CheckConstraint(
            _in_list("status", SourceStatus),
            name="knowledge_sources_status_check",
        ),
        CheckConstraint(
            _in_list("source_type", SourceType),
            name="knowledge_sources_type_check",
        ),
        CheckConstraint(
            "(status <> 'READY') OR (raw_content IS NOT NULL AND chunk_count >= 0 "
            "AND error_message IS NULL)",
            name="knowledge_sources_ready_check",
        ),
        CheckConstraint(
            "(status <> 'FAILED') OR (error_message IS NOT NULL AND raw_content IS NULL "
            "AND chunk_count IS NULL)",
            name="knowledge_sources_failed_check",
        ),
        Index("idx_knowledge_sources_course", "tenant_id", "course_id", "created_at"),
        Index("idx_knowledge_sources_sweep",  "status", "updated_at"),
        {"schema": "saas"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )

    # Tenant scope: never supplied by the client; always taken from JWT
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("saas.tenants.id", ondelete="CASCADE"),
        nullable=False,
    )
    course_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)

    title: Mapped[str] = mapped_column(Text, nullable=False)
    source_type: Mapped[str] = mapped_column(Text, nullable=False)
    origin: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Pasted text, URL, or object key tenants/<tenant_id>/sources/<file>",
    )

    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=SourceStatus.PENDING.value,
        server_default=SourceStatus.PENDING.value,
    )

    raw_content:   Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    chunk_count:   Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    source_metadata: Mapped[dict] = mapped_column(
        "metadata",                 # PostgreSQL column name stays 'metadata'
        JSONB,
        nullable=False,
        default=dict,
        server_default="{}",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<KnowledgeSource id={self.id} tenant={self.tenant_id} "
            f"type={self.source_type} status={self.status}>"
        )
