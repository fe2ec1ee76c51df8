"""
Service wiring — the single place that turns settings into objects.

Both the API process and the Celery worker build their collaborators
here, so the pipeline a worker runs is configured exactly like the one
the in-process scheduler runs.
"""

from __future__ import annotations

from datetime import timedelta
from functools import lru_cache

from knowledge_sources.core.config import settings
from knowledge_sources.db.store import SourceStore, SqlSourceStore
from knowledge_sources.processing.chunking import TextSegmenter
from knowledge_sources.processing.embeddings import SegmentVectorizer
from knowledge_sources.processing.extractor import SourceExtractor
from knowledge_sources.services.events import (
    CelerySourceEventPublisher,
    LoggingSourceEventPublisher,
    SourceEventPublisher,
)
from knowledge_sources.services.ingestion import KnowledgeSourceService
from knowledge_sources.services.pipeline import SourcePipeline
from knowledge_sources.services.recovery import StaleSourceSweeper
from knowledge_sources.services.scheduling import (
    AsyncioSourceScheduler,
    CelerySourceScheduler,
    SourceScheduler,
)
from knowledge_sources.storage.s3 import load_source_file


def uses_asyncio_scheduler() -> bool:
    return settings.ingestion_scheduler.lower() == "asyncio"


@lru_cache(maxsize=1)
def get_source_store() -> SourceStore:
    return SqlSourceStore()


@lru_cache(maxsize=1)
def get_event_publisher() -> SourceEventPublisher:
    if uses_asyncio_scheduler():
        return LoggingSourceEventPublisher()
    return CelerySourceEventPublisher()


@lru_cache(maxsize=1)
def get_pipeline() -> SourcePipeline:
    return SourcePipeline(
        store=get_source_store(),
        extractor=SourceExtractor(
            file_loader=load_source_file,
            url_timeout=settings.url_fetch_timeout_seconds,
            transcript_languages=settings.transcript_languages,
        ),
        segmenter=TextSegmenter(
            chunk_size=settings.chunk_size,
            chunk_overlap=settings.chunk_overlap,
        ),
        vectorizer=SegmentVectorizer(),
        publisher=get_event_publisher(),
        extract_timeout=settings.extract_timeout_seconds,
        vectorize_timeout=settings.vectorize_timeout_seconds,
        vectorize_concurrency=settings.vectorize_concurrency,
        vectorize_budget=settings.vectorize_budget_seconds,
    )


@lru_cache(maxsize=1)
def get_scheduler() -> SourceScheduler:
    backend = settings.ingestion_scheduler.lower()
    if backend == "asyncio":
        return AsyncioSourceScheduler(runner=get_pipeline().process_source)
    if backend == "celery":
        return CelerySourceScheduler()
    raise ValueError(
        f"Unknown ingestion scheduler: '{backend}'. Valid options: 'celery', 'asyncio'"
    )


@lru_cache(maxsize=1)
def get_source_service() -> KnowledgeSourceService:
    return KnowledgeSourceService(store=get_source_store(), scheduler=get_scheduler())


def build_sweeper() -> StaleSourceSweeper:
    return StaleSourceSweeper(
        store=get_source_store(),
        scheduler=get_scheduler(),
        pending_after=timedelta(minutes=settings.stale_pending_minutes),
        processing_after=timedelta(minutes=settings.stale_processing_minutes),
        batch_size=settings.sweep_batch_size,
        publisher=get_event_publisher(),
    )
