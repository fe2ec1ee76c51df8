"""
Knowledge Source Pipeline — background half of the orchestrator

process_source() runs once per created source, after create has returned:

  1. Claim        PENDING → PROCESSING (conditional write; a miss means the
                  source was deleted or another run owns it → stop)
  2. Extract      bounded by extract_timeout; any failure → FAILED, stop
  3. Segment      total; zero segments just means zero vectorize calls
  4. Vectorize    concurrent fan-out, each call bounded by its own timeout
                  and the whole fan-out by vectorize_budget; failures and
                  segments still unfinished at the budget only lower chunk_count
  5. Finalize     one write PROCESSING → READY with text, count and metadata
  6. Publish      best-effort completion event

Terminal writes are guarded on PROCESSING, so each source reaches a
terminal state exactly once. A write that matches no row (deleted, or
already failed by the stale sweep) is a silent no-op.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol
from uuid import UUID

from knowledge_sources.core.errors import ExtractionError
from knowledge_sources.db.store import SourceStore
from knowledge_sources.processing.chunking import Segment, segment_key
from knowledge_sources.processing.extractor import ExtractionResult
from knowledge_sources.schemas.sources import SourceRecord, SourceStatus
from knowledge_sources.services.events import SourceEventPublisher

logger = logging.getLogger(__name__)


class Extractor(Protocol):
    async def extract(self, source: SourceRecord) -> ExtractionResult: ...


class Segmenter(Protocol):
    def segment(self, text: str) -> list[Segment]: ...


class Vectorizer(Protocol):
    async def vectorize(self, key: str, text: str, tenant_id: UUID) -> Any: ...


class SourcePipeline:

    def __init__(
        self,
        store:      SourceStore,
        extractor:  Extractor,
        segmenter:  Segmenter,
        vectorizer: Vectorizer,
        publisher:  SourceEventPublisher | None = None,
        *,
        extract_timeout:       float = 120.0,
        vectorize_timeout:     float = 30.0,
        vectorize_concurrency: int = 4,
        vectorize_budget:      float | None = None,
    ) -> None:
        self._store       = store
        self._extractor   = extractor
        self._segmenter   = segmenter
        self._vectorizer  = vectorizer
        self._publisher   = publisher
        self._extract_timeout   = extract_timeout
        self._vectorize_timeout = vectorize_timeout
        self._concurrency       = max(1, vectorize_concurrency)
        self._vectorize_budget  = vectorize_budget

    async def process_source(self, source_id: UUID, tenant_id: UUID) -> SourceRecord | None:
        """
        Drive one source to a terminal state.

        Returns the terminal record, or None when this run did nothing
        (source gone, already claimed, or finished by someone else).
        Never raises for pipeline-stage failures.
        """
        # ---- Step 1: claim ----
        source = await self._store.update_where(
            source_id, tenant_id,
            {"status": SourceStatus.PROCESSING},
            expected_status=SourceStatus.PENDING,
        )
        if source is None:
            logger.warning(
                "Source not claimable, skipping | source=%s tenant=%s",
                source_id, tenant_id,
            )
            return None

        logger.info(
            "Pipeline start | source=%s tenant=%s type=%s",
            source.id, tenant_id, source.source_type.value,
        )

        # ---- Step 2: extract ----
        try:
            extracted = await asyncio.wait_for(
                self._extractor.extract(source), timeout=self._extract_timeout,
            )
        except asyncio.TimeoutError:
            return await self._fail(source, f"Extraction timed out after {self._extract_timeout:g}s")
        except ExtractionError as exc:
            return await self._fail(source, exc.reason)
        except Exception as exc:
            logger.exception("Extractor raised unexpectedly | source=%s", source.id)
            return await self._fail(source, str(exc) or type(exc).__name__)

        # ---- Step 3: segment ----
        segments = self._segmenter.segment(extracted.text)

        # ---- Step 4: vectorize fan-out ----
        embedded = await self._vectorize_all(source, segments)

        # ---- Step 5: finalize ----
        metadata = {
            **source.metadata,
            **extracted.metadata,
            "word_count":     extracted.word_count,
            "segment_count":  len(segments),
            "embedded_count": embedded,
        }
        final = await self._store.update_where(
            source.id, tenant_id,
            {
                "status":        SourceStatus.READY,
                "raw_content":   extracted.text,
                "chunk_count":   embedded,
                "error_message": None,
                "metadata":      metadata,
            },
            expected_status=SourceStatus.PROCESSING,
        )
        return await self._finished(source, final)

    async def _vectorize_all(self, source: SourceRecord, segments: list[Segment]) -> int:
        """Attempt every segment once; return how many succeeded."""
        if not segments:
            return 0

        semaphore = asyncio.Semaphore(self._concurrency)

        async def _one(segment: Segment) -> Any:
            key = segment_key(source.id, segment.index)
            async with semaphore:
                return await asyncio.wait_for(
                    self._vectorizer.vectorize(key, segment.text, source.tenant_id),
                    timeout=self._vectorize_timeout,
                )

        tasks = [asyncio.ensure_future(_one(s)) for s in segments]
        try:
            _, unfinished = await asyncio.wait(tasks, timeout=self._vectorize_budget)
        finally:
            # Nothing may outlive this run on a shared worker loop
            for task in tasks:
                if not task.done():
                    task.cancel()
        if unfinished:
            logger.warning(
                "Vectorize budget exhausted | source=%s budget=%gs unfinished=%d",
                source.id, self._vectorize_budget, len(unfinished),
            )
            await asyncio.gather(*unfinished, return_exceptions=True)

        succeeded = 0
        for segment, task in zip(segments, tasks):
            if task.cancelled():
                error = "budget exhausted"
            elif task.exception() is not None:
                exc = task.exception()
                error = "timeout" if isinstance(exc, asyncio.TimeoutError) else repr(exc)
            else:
                succeeded += 1
                continue
            logger.warning(
                "Segment vectorization failed | source=%s index=%d error=%s",
                source.id, segment.index, error,
            )

        logger.info(
            "Vectorized | source=%s segments=%d succeeded=%d",
            source.id, len(segments), succeeded,
        )
        return succeeded

    async def _fail(self, source: SourceRecord, reason: str) -> SourceRecord | None:
        logger.info("Extraction failed | source=%s reason=%s", source.id, reason)
        final = await self._store.update_where(
            source.id, source.tenant_id,
            {
                "status":        SourceStatus.FAILED,
                "error_message": reason,
                "raw_content":   None,
                "chunk_count":   None,
            },
            expected_status=SourceStatus.PROCESSING,
        )
        return await self._finished(source, final)

    async def _finished(self, source: SourceRecord, final: SourceRecord | None) -> SourceRecord | None:
        if final is None:
            logger.warning(
                "Terminal write skipped, source deleted or already finished | source=%s",
                source.id,
            )
            return None

        logger.info(
            "Pipeline end | source=%s status=%s chunks=%s",
            final.id, final.status.value, final.chunk_count,
        )
        if self._publisher is not None:
            await self._publisher.publish_terminal(final)
        return final
