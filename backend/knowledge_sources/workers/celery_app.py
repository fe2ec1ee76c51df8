"""
Celery Application Factory

Configures the Celery app that runs knowledge-source ingestion in the background.
Broker: RabbitMQ (amqp://) in production; Redis (redis://) works for local dev.
Result backend: Redis (optional: source status is tracked in PostgreSQL).

Queue topology:
  sources.ingest: one message per created source (process_source)
  sources.sweep: Beat-driven stale-source recovery
  sources.events: ready/failed notifications for downstream consumers
  system.health: internal health-check tasks

Task payloads carry ids only. Source text and files are re-read inside the
worker, never shipped through the broker.
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import task_failure, task_postrun, task_prerun
from kombu import Exchange, Queue

from knowledge_sources.core.config import settings
from knowledge_sources.services.events import EVENTS_QUEUE

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Queue and exchange definitions
# ---------------------------------------------------------------------------

SOURCES_EXCHANGE = Exchange("sources", type="direct", durable=True)

TASK_QUEUES = (
    Queue(
        "sources.ingest",
        exchange=SOURCES_EXCHANGE,
        routing_key="sources.ingest",
        queue_arguments={"x-max-priority": 10},
        durable=True,
    ),
    Queue(
        "sources.sweep",
        exchange=SOURCES_EXCHANGE,
        routing_key="sources.sweep",
        durable=True,
    ),
    Queue(
        EVENTS_QUEUE,
        exchange=SOURCES_EXCHANGE,
        routing_key=EVENTS_QUEUE,
        durable=True,
    ),
    Queue(
        "system.health",
        Exchange("system", type="direct"),
        routing_key="system.health",
        durable=True,
    ),
)

TASK_ROUTES = {
    "knowledge_sources.workers.tasks.process_source":       {"queue": "sources.ingest"},
    "knowledge_sources.workers.tasks.sweep_stale_sources":  {"queue": "sources.sweep"},
    "knowledge_sources.workers.tasks.health_check":         {"queue": "system.health"},
}

# ---------------------------------------------------------------------------
# Celery app factory
# ---------------------------------------------------------------------------

def create_celery_app() -> Celery:
    app = Celery("knowledge_sources")

    app.conf.update(
        # --- Broker / Backend ---
        broker_url=settings.celery_broker_url,
        result_backend=settings.celery_result_backend,

        # --- Serialization (reject non-JSON messages) ---
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        event_serializer="json",

        # --- Queues ---
        task_queues=TASK_QUEUES,
        task_routes=TASK_ROUTES,
        task_default_queue="sources.ingest",
        task_default_exchange="sources",
        task_default_routing_key="sources.ingest",

        # --- Reliability ---
        task_acks_late=True,           # ack after the run; a crash redelivers the id
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,

        # --- Timeouts ---
        task_soft_time_limit=300,
        task_time_limit=360,

        # --- Result TTL ---
        result_expires=3600,

        # --- Timezone ---
        timezone="UTC",
        enable_utc=True,

        # --- Beat schedule (stale-source sweep) ---
        beat_schedule={
            "sweep-stale-sources": {
                "task":     "knowledge_sources.workers.tasks.sweep_stale_sources",
                "schedule": settings.sweep_interval_seconds,
                "options":  {"queue": "sources.sweep"},
            },
        },

        # --- Worker ---
        worker_max_tasks_per_child=200,
    )

    app.autodiscover_tasks(["knowledge_sources.workers"])

    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Celery signals: structured task logging
# ---------------------------------------------------------------------------

@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info(
        "Task start | task_id=%s task=%s source=%s tenant=%s",
        task_id, task.name,
        kwargs.get("source_id", "?"),
        kwargs.get("tenant_id", "?"),
    )


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info(
        "Task end | task_id=%s task=%s state=%s source=%s",
        task_id, task.name, state, kwargs.get("source_id", "?"),
    )


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error(
        "Task failed | task_id=%s source=%s error=%s",
        task_id, kwargs.get("source_id", "?"), exception,
        exc_info=True,
    )
