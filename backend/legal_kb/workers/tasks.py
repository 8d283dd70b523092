"""
Celery Tasks — Training Pipeline

Task: run_training_pipeline
  Executes one already-created pipeline run end to end:
    discovery → batched document processing → pattern mining → template mining
  The run row was inserted by POST /api/v1/training/runs before this task was
  queued; the task only drives it to completed or failed.

Task: health_check
  Trivial liveness task for the system.health queue.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Coroutine, TypeVar

from celery import Task

from legal_kb.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


T = TypeVar("T")


def _inside_event_loop() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


def run_blocking(coro: Coroutine[Any, Any, T]) -> T:
    """
    Drive a pipeline coroutine to completion from a synchronous task body.

    Prefork workers have no running loop, so asyncio.run gives the run its
    own. When the task is applied eagerly from async code a loop is already
    running; the run then gets a fresh loop on a helper thread.
    """
    if not _inside_event_loop():
        return asyncio.run(coro)
    with ThreadPoolExecutor(max_workers=1, thread_name_prefix="training-run") as pool:
        return pool.submit(asyncio.run, coro).result()


# ---------------------------------------------------------------------------
# Pipeline run task
# ---------------------------------------------------------------------------

@celery_app.task(
    name="legal_kb.workers.tasks.run_training_pipeline",
    bind=True,
    max_retries=0,
    acks_late=False,
)
def run_training_pipeline(
    self: Task,
    *,
    run_id:       str,
    categories:   list[str],
    access_token: str,
) -> dict[str, Any]:
    """
    Drive the run to completion. A run-fatal error has already been recorded
    on the run row by the orchestrator when it propagates out of here.
    """
    return run_blocking(
        _run_training_pipeline_async(
            run_id=uuid.UUID(run_id),
            categories=categories,
            access_token=access_token,
        )
    )


async def _run_training_pipeline_async(
    run_id:       uuid.UUID,
    categories:   list[str],
    access_token: str,
) -> dict[str, Any]:
    from legal_kb.db.session import engine, get_session
    from legal_kb.repositories.training import SqlAlchemyTrainingRepository
    from legal_kb.services.orchestrator import TrainingPipelineOrchestrator

    repository   = SqlAlchemyTrainingRepository(get_session)
    orchestrator = TrainingPipelineOrchestrator.from_settings(repository)

    try:
        ctx = await orchestrator.execute(run_id, categories, access_token)
    finally:
        # asyncio.run closes the loop; pooled asyncpg connections must not outlive it
        await engine.dispose()

    return {"status": "completed", "run_id": str(run_id), **ctx.counters()}


# ---------------------------------------------------------------------------
# Health check task
# ---------------------------------------------------------------------------

@celery_app.task(name="legal_kb.workers.tasks.health_check")
def health_check() -> dict[str, str]:
    return {"status": "ok", "worker": "healthy"}
