"""
Celery Tasks — Knowledge Source Ingestion

Task: process_source
  Runs SourcePipeline.process_source for one (source_id, tenant_id) pair.
  The pipeline owns every state transition; the task is a thin adapter
  from the broker message to the coroutine. A redelivered message for a
  source that is no longer PENDING is a no-op.

Task: sweep_stale_sources
  Beat task: re-queues sources stuck in PENDING and fails sources stuck
  in PROCESSING (see services.recovery).

Task: health_check
  Broker round-trip probe.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any

from celery import Task

from knowledge_sources.core.config import settings
from knowledge_sources.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Async task helper
# One event loop per worker process: the SQLAlchemy pool and the HTTP
# clients hold connections bound to the loop that opened them.
# ---------------------------------------------------------------------------

_loop: asyncio.AbstractEventLoop | None = None


def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    global _loop
    if _loop is None or _loop.is_closed():
        _loop = asyncio.new_event_loop()
        asyncio.set_event_loop(_loop)
    return _loop.run_until_complete(coro)


# ---------------------------------------------------------------------------
# Main processing task
# ---------------------------------------------------------------------------

# The pipeline bounds extraction and the vectorize fan-out itself; the
# Celery limits sit above both plus a margin for the state writes.
PROCESS_SOFT_TIME_LIMIT = int(
    settings.extract_timeout_seconds + settings.vectorize_budget_seconds
) + 60
PROCESS_TIME_LIMIT = PROCESS_SOFT_TIME_LIMIT + 60


@celery_app.task(
    name="knowledge_sources.workers.tasks.process_source",
    bind=True,
    acks_late=True,
    reject_on_worker_lost=True,
    soft_time_limit=PROCESS_SOFT_TIME_LIMIT,
    time_limit=PROCESS_TIME_LIMIT,
)
def process_source(self: Task, *, source_id: str, tenant_id: str) -> dict[str, Any]:
    """Drive one knowledge source to READY or FAILED."""
    return run_async(
        _process_source_async(uuid.UUID(source_id), uuid.UUID(tenant_id))
    )


async def _process_source_async(source_id: uuid.UUID, tenant_id: uuid.UUID) -> dict[str, Any]:
    from knowledge_sources.services.factory import get_pipeline

    final = await get_pipeline().process_source(source_id, tenant_id)
    if final is None:
        return {"status": "skipped", "source_id": str(source_id)}
    return {
        "status":      final.status.value,
        "source_id":   str(final.id),
        "chunk_count": final.chunk_count,
    }


# ---------------------------------------------------------------------------
# Stale-source sweep: runs every sweep_interval_seconds via Celery Beat
# ---------------------------------------------------------------------------

@celery_app.task(
    name="knowledge_sources.workers.tasks.sweep_stale_sources",
    bind=False,
    acks_late=True,
    soft_time_limit=55,
    time_limit=60,
)
def sweep_stale_sources() -> dict[str, int]:
    return run_async(_sweep_async())


async def _sweep_async() -> dict[str, int]:
    from knowledge_sources.services.factory import build_sweeper

    result = await build_sweeper().sweep()
    return result.as_dict()


# ---------------------------------------------------------------------------
# Health check task
# ---------------------------------------------------------------------------

@celery_app.task(name="knowledge_sources.workers.tasks.health_check")
def health_check() -> dict[str, str]:
    return {"status": "ok", "worker": "healthy"}
