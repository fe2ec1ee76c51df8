"""
Stale-source recovery.

A process restart can strand a source before it reaches a terminal state.
The sweep handles both places it can be stuck:

  PENDING for > stale_pending_minutes
      The hand-off was lost (broker outage, in-process task killed).
      Touch updated_at (guarded on PENDING) and re-queue it, so one row is
      re-sent at most once per stale_pending_minutes. The guarded
      PENDING → PROCESSING claim makes a duplicate message harmless.

  PROCESSING without an update for > stale_processing_minutes
      The run died mid-pipeline. Mark FAILED so the user sees an outcome.
      The write is guarded on PROCESSING, so a slow run that later
      finishes cannot overwrite it (its own terminal write becomes a no-op).
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from knowledge_sources.db.store import SourceStore
from knowledge_sources.schemas.sources import SourceStatus
from knowledge_sources.services.events import SourceEventPublisher
from knowledge_sources.services.scheduling import SourceScheduler

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "Processing was interrupted before completion"


@dataclass
class SweepResult:
    requeued: int = 0
    failed:   int = 0

    def as_dict(self) -> dict[str, int]:
        return {"requeued": self.requeued, "failed": self.failed}


class StaleSourceSweeper:

    def __init__(
        self,
        store: SourceStore,
        scheduler: SourceScheduler,
        pending_after: timedelta = timedelta(minutes=5),
        processing_after: timedelta = timedelta(minutes=30),
        batch_size: int = 50,
        publisher: SourceEventPublisher | None = None,
    ) -> None:
        self._store            = store
        self._scheduler        = scheduler
        self._pending_after    = pending_after
        self._processing_after = processing_after
        self._batch_size       = batch_size
        self._publisher        = publisher

    async def sweep(self, now: datetime | None = None) -> SweepResult:
        now = now or datetime.now(timezone.utc)
        result = SweepResult()

        pending = await self._store.find_stale(
            SourceStatus.PENDING, now - self._pending_after, self._batch_size,
        )
        for source in pending:
            touched = await self._store.update_where(
                source.id, source.tenant_id,
                {"status": SourceStatus.PENDING},
                expected_status=SourceStatus.PENDING,
            )
            if touched is None:
                continue   # claimed or deleted since the scan
            try:
                await self._scheduler.schedule(source)
            except Exception:
                logger.exception("Re-queue failed | source=%s", source.id)
                continue
            result.requeued += 1
            logger.info("Re-queued stale source | source=%s tenant=%s", source.id, source.tenant_id)

        processing = await self._store.find_stale(
            SourceStatus.PROCESSING, now - self._processing_after, self._batch_size,
        )
        for source in processing:
            updated = await self._store.update_where(
                source.id, source.tenant_id,
                {
                    "status":        SourceStatus.FAILED,
                    "error_message": INTERRUPTED_MESSAGE,
                    "raw_content":   None,
                    "chunk_count":   None,
                },
                expected_status=SourceStatus.PROCESSING,
            )
            if updated is not None:
                result.failed += 1
                logger.warning(
                    "Stale source marked failed | source=%s tenant=%s",
                    source.id, source.tenant_id,
                )
                if self._publisher is not None:
                    await self._publisher.publish_terminal(updated)

        if result.requeued or result.failed:
            logger.info("Sweep complete | requeued=%d failed=%d", result.requeued, result.failed)
        return result


async def run_periodic_sweeps(
    build: Callable[[], StaleSourceSweeper],
    interval: float,
) -> None:
    """
    Sweep now, then every ``interval`` seconds, until cancelled.

    Used by the API process when runs are in-process (no Celery Beat).
    A failed pass is logged and the loop carries on.
    """
    while True:
        try:
            await build().sweep()
        except Exception:
            logger.exception("Periodic sweep failed")
        await asyncio.sleep(interval)
