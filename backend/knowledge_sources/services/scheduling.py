"""
Background scheduling for the ingestion pipeline.

The orchestrator never spawns work itself; it hands the freshly inserted
record to a SourceScheduler. schedule() must return without running any
pipeline stage, so the caller always observes the PENDING record first.

  CelerySourceScheduler   production: one broker message per source
  AsyncioSourceScheduler  single-process deployments and local dev
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable
from uuid import UUID

from knowledge_sources.schemas.sources import SourceRecord

logger = logging.getLogger(__name__)

SourceRunner = Callable[[UUID, UUID], Awaitable[Any]]


class SourceScheduler(ABC):

    @abstractmethod
    async def schedule(self, source: SourceRecord) -> None:
        """Queue one background run for ``source``; never awaits the run itself."""


class CelerySourceScheduler(SourceScheduler):
    """
    Publishes process_source to the sources.ingest queue.

    Only ids travel in the payload: the worker re-reads the row, so a
    message for a deleted or already-claimed source is harmless.
    """

    def __init__(self, countdown: int = 0) -> None:
        self._countdown = countdown

    async def schedule(self, source: SourceRecord) -> None:
        from knowledge_sources.workers.tasks import process_source

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None,
            lambda: process_source.apply_async(
                kwargs={
                    "source_id": str(source.id),
                    "tenant_id": str(source.tenant_id),
                },
                countdown=self._countdown,
            ),
        )
        logger.info(
            "Ingestion task queued | source=%s tenant=%s",
            source.id, source.tenant_id,
        )


class AsyncioSourceScheduler(SourceScheduler):
    """
    Runs the pipeline as a detached asyncio.Task on the running loop.

    The task only starts once the caller yields, after create() has
    already returned. Strong references are kept until each task
    finishes so the loop cannot garbage-collect a running pipeline.
    """

    def __init__(self, runner: SourceRunner) -> None:
        self._runner = runner
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def schedule(self, source: SourceRecord) -> None:
        task = asyncio.get_running_loop().create_task(
            self._run(source.id, source.tenant_id),
            name=f"process-source-{source.id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, source_id: UUID, tenant_id: UUID) -> None:
        try:
            await self._runner(source_id, tenant_id)
        except Exception:
            # Terminal state is the only outcome callers see
            logger.exception(
                "Background ingestion crashed | source=%s tenant=%s",
                source_id, tenant_id,
            )

    async def drain(self) -> None:
        """Wait for every in-flight run; used on shutdown."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
