"""
Completion events for other subsystems.

Subjects:
  knowledge.source.ready
  knowledge.source.failed

Publishing is best-effort: a failed publish is logged and never touches
the source record, which is the durable source of truth.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any

from knowledge_sources.schemas.sources import SourceRecord, SourceStatus

logger = logging.getLogger(__name__)

SOURCE_READY_SUBJECT  = "knowledge.source.ready"
SOURCE_FAILED_SUBJECT = "knowledge.source.failed"

EVENTS_TASK_NAME = "knowledge_sources.events.source_status_changed"
EVENTS_QUEUE     = "sources.events"


def subject_for(record: SourceRecord) -> str:
    if record.status is SourceStatus.READY:
        return SOURCE_READY_SUBJECT
    return SOURCE_FAILED_SUBJECT


def event_payload(record: SourceRecord) -> dict[str, Any]:
    return {
        "source_id":     str(record.id),
        "tenant_id":     str(record.tenant_id),
        "course_id":     str(record.course_id),
        "status":        record.status.value,
        "chunk_count":   record.chunk_count,
        "error_message": record.error_message,
    }


class SourceEventPublisher(ABC):

    async def publish_terminal(self, record: SourceRecord) -> None:
        subject = subject_for(record)
        try:
            await self.publish(subject, event_payload(record))
        except Exception:
            logger.exception(
                "Event publish failed | subject=%s source=%s", subject, record.id,
            )

    @abstractmethod
    async def publish(self, subject: str, payload: dict[str, Any]) -> None:
        ...


class CelerySourceEventPublisher(SourceEventPublisher):
    """Sends a message onto the sources.events queue for downstream consumers."""

    async def publish(self, subject: str, payload: dict[str, Any]) -> None:
        from knowledge_sources.workers.celery_app import celery_app

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None,
            lambda: celery_app.send_task(
                EVENTS_TASK_NAME,
                kwargs={"subject": subject, "payload": payload},
                queue=EVENTS_QUEUE,
            ),
        )
        logger.info("Event published | subject=%s source=%s", subject, payload["source_id"])


class LoggingSourceEventPublisher(SourceEventPublisher):
    """Used when no broker is configured (asyncio scheduler)."""

    async def publish(self, subject: str, payload: dict[str, Any]) -> None:
        logger.info(
            "Event | subject=%s source=%s status=%s chunks=%s",
            subject, payload["source_id"], payload["status"], payload["chunk_count"],
        )
