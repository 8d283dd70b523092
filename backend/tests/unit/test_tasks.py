"""
Unit Tests — Celery task + API publisher
═════════════════════════════════════════
The task is executed eagerly with Task.apply(); the orchestrator and the
engine are patched, so no broker, database or Graph access happens.

Coverage targets:
  ✅ run_training_pipeline drives execute() for the given run and returns counters
  ✅ Engine disposed even when the run fails; the error propagates
  ✅ Eager apply from inside a running event loop still completes the run
  ✅ Publisher sends JSON kwargs with task_id == run id
  ✅ Pipeline task routed to the training.pipeline queue
"""

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest

from legal_kb.api.v1.training import PipelineTaskPublisher
from legal_kb.services.orchestrator import RunContext, TrainingPipelineOrchestrator
from legal_kb.workers import tasks
from legal_kb.workers.celery_app import celery_app


@pytest.fixture
def patched_runtime(monkeypatch):
    """Replace the orchestrator factory and the DB engine used inside the task."""
    import legal_kb.db.session as session_module

    engine = MagicMock()
    engine.dispose = AsyncMock()
    monkeypatch.setattr(session_module, "engine", engine)

    orchestrator = MagicMock()
    monkeypatch.setattr(
        TrainingPipelineOrchestrator, "from_settings", classmethod(lambda cls, repository: orchestrator),
    )
    return orchestrator, engine


@pytest.mark.unit
@pytest.mark.orchestrator
class TestRunTrainingPipelineTask:

    def test_executes_run_and_returns_counters(self, patched_runtime):
        orchestrator, engine = patched_runtime
        run_id = uuid.uuid4()
        ctx = RunContext(run_id=run_id, categories=["Contract"], access_token="t")
        ctx.documents_discovered = ctx.documents_processed = 4
        orchestrator.execute = AsyncMock(return_value=ctx)

        result = tasks.run_training_pipeline.apply(kwargs={
            "run_id": str(run_id), "categories": ["Contract"], "access_token": "graph-token",
        }).get()

        orchestrator.execute.assert_awaited_once_with(run_id, ["Contract"], "graph-token")
        engine.dispose.assert_awaited_once()
        assert result["status"] == "completed"
        assert result["run_id"] == str(run_id)
        assert result["documents_processed"] == 4

    def test_failure_propagates_after_engine_disposal(self, patched_runtime):
        orchestrator, engine = patched_runtime
        orchestrator.execute = AsyncMock(side_effect=RuntimeError("Graph unreachable"))

        eager = tasks.run_training_pipeline.apply(kwargs={
            "run_id": str(uuid.uuid4()), "categories": ["NDA"], "access_token": "t",
        })

        with pytest.raises(RuntimeError, match="Graph unreachable"):
            eager.get()
        engine.dispose.assert_awaited_once()

    async def test_eager_apply_from_running_loop(self, patched_runtime):
        orchestrator, engine = patched_runtime
        run_id = uuid.uuid4()
        orchestrator.execute = AsyncMock(return_value=RunContext(run_id=run_id, categories=["NDA"], access_token="t"))

        result = tasks.run_training_pipeline.apply(kwargs={
            "run_id": str(run_id), "categories": ["NDA"], "access_token": "t",
        }).get()

        assert result["status"] == "completed"
        orchestrator.execute.assert_awaited_once_with(run_id, ["NDA"], "t")
        engine.dispose.assert_awaited_once()


@pytest.mark.unit
class TestPipelineTaskPublisher:

    async def test_publishes_with_run_id_as_task_id(self, monkeypatch):
        apply_async = MagicMock()
        monkeypatch.setattr(tasks.run_training_pipeline, "apply_async", apply_async)
        run_id = uuid.uuid4()

        await PipelineTaskPublisher().publish_training_run(run_id, ("Contract", "NDA"), "graph-token")

        apply_async.assert_called_once_with(
            kwargs={"run_id": str(run_id), "categories": ["Contract", "NDA"], "access_token": "graph-token"},
            task_id=str(run_id),
        )

    def test_pipeline_task_routed_to_training_queue(self):
        routes = celery_app.conf.task_routes
        assert routes[tasks.run_training_pipeline.name] == {"queue": "training.pipeline"}
