"""
Training Pipeline API Router
  POST /api/v1/training/runs            start a run (202)
  GET  /api/v1/training/runs/{run_id}   run status + counters
  GET  /api/v1/training/runs?limit=N    most recent runs (default 10, max 50)

Request lifecycle for POST:
  ┌──────────────────────────────────────────────────────────┐
  │ 1. Validate body (non-empty categories, accessToken)     │
  │ 2. Insert training_pipeline_runs row (status=running)    │
  │ 3. Publish run_training_pipeline to Celery → 202 + runId │
  │    Broker failure → run marked failed, 503               │
  └──────────────────────────────────────────────────────────┘

The run row exists before the task is queued, so the returned runId is
always the run this request started and can be polled immediately.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Sequence
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse

from legal_kb.core.exceptions import RunNotFoundError
from legal_kb.repositories.training import SqlAlchemyTrainingRepository, TrainingRepository
from legal_kb.schemas.training import (
    ErrorResponse,
    PipelineRunListResponse,
    PipelineRunResponse,
    PipelineStatus,
    RunType,
    TrainingErrors,
    TrainingTriggerRequest,
    TrainingTriggerResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/training",
    tags=["Training Pipeline"],
)

MAX_LIST_LIMIT = 50


# ---------------------------------------------------------------------------
# Task publisher: thin abstraction over Celery apply_async()
# Injected through Depends so tests can replace it.
# ---------------------------------------------------------------------------

class PipelineTaskPublisher:
    """
    Sends run_training_pipeline to the Celery broker.
    Import is deferred so the broker connection is not required at module load time.
    """

    async def publish_training_run(
        self,
        run_id:       UUID,
        categories:   Sequence[str],
        access_token: str,
    ) -> None:
        from legal_kb.workers.tasks import run_training_pipeline

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None,
            lambda: run_training_pipeline.apply_async(
                kwargs={
                    "run_id":       str(run_id),
                    "categories":   list(categories),
                    "access_token": access_token,
                },
                task_id=str(run_id),
            ),
        )
        logger.info("Training task published | run=%s categories=%d", run_id, len(categories))


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_repository() -> TrainingRepository:
    from legal_kb.db.session import get_session

    return SqlAlchemyTrainingRepository(get_session)


def get_publisher() -> PipelineTaskPublisher:
    return PipelineTaskPublisher()


# ---------------------------------------------------------------------------
# POST /training/runs
# ---------------------------------------------------------------------------

@router.post(
    "/runs",
    response_model=TrainingTriggerResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start a training pipeline run",
    description=(
        "Scans the given category folders in OneDrive, trains on every new "
        "document, then mines patterns and templates. Returns 202 immediately; "
        "poll GET /training/runs/{runId} for progress."
    ),
    responses={
        202: {"model": TrainingTriggerResponse, "description": "Run created and queued"},
        422: {"model": ErrorResponse, "description": "Invalid request body"},
        503: {"model": ErrorResponse, "description": "Message broker unavailable"},
    },
)
async def trigger_training_run(
    body:       TrainingTriggerRequest,
    repository: TrainingRepository    = Depends(get_repository),
    publisher:  PipelineTaskPublisher = Depends(get_publisher),
) -> JSONResponse:
    run = await repository.create_run(RunType.MANUAL, body.categories)
    logger.info(
        "Training run created | run=%s categories=%s",
        run.id, ",".join(body.categories),
    )

    try:
        await publisher.publish_training_run(run.id, body.categories, body.access_token)
    except Exception as exc:
        logger.exception("Failed to queue training run | run=%s", run.id)
        await repository.fail_run(run.id, f"Could not queue run: {exc}")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=TrainingErrors.dispatch_failed(run.id).model_dump(mode="json"),
        )

    result = TrainingTriggerResponse(run_id=run.id, status=PipelineStatus.RUNNING)
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content=result.model_dump(mode="json", by_alias=True),
        headers={"Location": f"/api/v1/training/runs/{run.id}"},
    )


# ---------------------------------------------------------------------------
# GET /training/runs/{run_id}
# ---------------------------------------------------------------------------

@router.get(
    "/runs/{run_id}",
    response_model=PipelineRunResponse,
    response_model_by_alias=True,
    summary="Poll a training run",
    responses={
        200: {"model": PipelineRunResponse},
        404: {"model": ErrorResponse},
    },
)
async def get_training_run(
    run_id:     UUID,
    repository: TrainingRepository = Depends(get_repository),
) -> PipelineRunResponse:
    run = await repository.get_run(run_id)
    if run is None:
        raise RunNotFoundError(run_id)   # rendered as 404 ErrorResponse by the app handler
    return PipelineRunResponse.model_validate(run)


# ---------------------------------------------------------------------------
# GET /training/runs
# ---------------------------------------------------------------------------

@router.get(
    "/runs",
    response_model=PipelineRunListResponse,
    response_model_by_alias=True,
    summary="List recent training runs",
)
async def list_training_runs(
    limit:      int                = Query(10, ge=1, description=f"Number of runs (max {MAX_LIST_LIMIT})"),
    repository: TrainingRepository = Depends(get_repository),
) -> PipelineRunListResponse:
    limit = min(limit, MAX_LIST_LIMIT)
    runs = await repository.list_recent_runs(limit)
    return PipelineRunListResponse(
        runs=[PipelineRunResponse.model_validate(run) for run in runs],
        count=len(runs),
    )
