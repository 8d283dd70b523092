"""
Celery Application Factory

Runs training pipeline runs out of the API process.
Broker: RabbitMQ (amqp://) in production; Redis (redis://) for local dev.
Result backend: Redis (optional — run state is tracked in PostgreSQL).

Queue topology:
  training.pipeline  — one message per pipeline run
  system.health      — internal health-check tasks

Runs are long (minutes to hours) and never resumed, so there is no
broker-level retry: a lost or crashed run stays 'running' in the database
and is re-triggered by hand.

Task payloads carry the Graph access token; never log kwargs wholesale.
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import task_failure, task_postrun, task_prerun
from kombu import Exchange, Queue

from legal_kb.core.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Queue and exchange definitions
# ---------------------------------------------------------------------------

TRAINING_EXCHANGE = Exchange("training", type="direct", durable=True)

TASK_QUEUES = (
    Queue(
        "training.pipeline",
        exchange=TRAINING_EXCHANGE,
        routing_key="training.pipeline",
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
    "legal_kb.workers.tasks.run_training_pipeline": {"queue": "training.pipeline"},
    "legal_kb.workers.tasks.health_check":          {"queue": "system.health"},
}

# ---------------------------------------------------------------------------
# Celery app factory
# ---------------------------------------------------------------------------

def create_celery_app() -> Celery:
    app = Celery("legal_kb")

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
        task_default_queue="training.pipeline",
        task_default_exchange="training",
        task_default_routing_key="training.pipeline",

        # --- Delivery ---
        task_acks_late=False,          # a redelivered run would start a second pass on the same run row
        worker_prefetch_multiplier=1,  # one run at a time per worker process

        # --- Timeouts ---
        task_soft_time_limit=6 * 3600,
        task_time_limit=6 * 3600 + 300,

        # --- Result TTL ---
        result_expires=24 * 3600,

        # --- Timezone ---
        timezone="UTC",
        enable_utc=True,

        # --- Worker ---
        worker_max_tasks_per_child=20,   # recycle workers; parsers and numpy hold memory
    )

    app.autodiscover_tasks(["legal_kb.workers"])

    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Celery signals: structured task logging
# ---------------------------------------------------------------------------

@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info(
        "Task start | task_id=%s task=%s run=%s categories=%s",
        task_id, task.name,
        (kwargs or {}).get("run_id", "?"),
        (kwargs or {}).get("categories", "?"),
    )


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info(
        "Task end | task_id=%s task=%s state=%s run=%s",
        task_id, task.name, state, (kwargs or {}).get("run_id", "?"),
    )


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error(
        "Task failed | task_id=%s run=%s error=%s",
        task_id, (kwargs or {}).get("run_id", "?"), exception,
        exc_info=True,
    )
