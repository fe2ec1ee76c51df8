"""
Knowledge Source Service — synchronous half of the orchestrator

create_and_process():
  1. Insert the PENDING row (failures propagate to the caller)
  2. Hand the row to the scheduler (never awaits the pipeline)
  3. Return the PENDING record

A scheduler hand-off failure (broker down) is logged and swallowed: the
row stays PENDING and the stale-source sweep re-queues it.

Lookup, listing and deletion are tenant-scoped; a missing row is always
reported as SourceNotFoundError carrying the requested id.
"""

from __future__ import annotations

import logging
from uuid import UUID

from knowledge_sources.core.errors import SourceCreationError, SourceNotFoundError
from knowledge_sources.db.store import SourceStore
from knowledge_sources.schemas.sources import CreateSourceRequest, SourceRecord
from knowledge_sources.services.scheduling import SourceScheduler

logger = logging.getLogger(__name__)


class KnowledgeSourceService:

    def __init__(self, store: SourceStore, scheduler: SourceScheduler) -> None:
        self._store     = store
        self._scheduler = scheduler

    async def create_and_process(self, request: CreateSourceRequest) -> SourceRecord:
        source = await self._store.insert(request)
        if source is None:
            raise SourceCreationError("Failed to create knowledge source")

        logger.info(
            "Source created | source=%s tenant=%s course=%s type=%s",
            source.id, source.tenant_id, source.course_id, source.source_type.value,
        )

        try:
            await self._scheduler.schedule(source)
        except Exception:
            logger.exception(
                "Could not schedule ingestion, left PENDING for the sweep | source=%s",
                source.id,
            )

        return source

    async def find_by_id(self, source_id: UUID, tenant_id: UUID) -> SourceRecord:
        source = await self._store.find_one(source_id, tenant_id)
        if source is None:
            raise SourceNotFoundError(source_id)
        return source

    async def list_by_course_sources(self, tenant_id: UUID, course_id: UUID) -> list[SourceRecord]:
        return await self._store.find_many(tenant_id, course_id)

    async def delete_source(self, source_id: UUID, tenant_id: UUID) -> None:
        await self.find_by_id(source_id, tenant_id)
        deleted = await self._store.delete(source_id, tenant_id)
        logger.info(
            "Source deleted | source=%s tenant=%s rows=%d",
            source_id, tenant_id, deleted,
        )
