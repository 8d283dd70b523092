"""
Training Pipeline Orchestrator

Run lifecycle (linear, no branching back):

  create_run ─► discovery ─► batch processing ─► pattern mining ─► template mining ─► completed
                    │               │                   │                  │
                    └───────────────┴───── any escaping exception ─────────┴─► failed (re-raised)

Batch processing:
  Discovered documents are cut into batches of `batch_size`. Batches run
  strictly one after another; the documents inside a batch run concurrently
  through gather_isolated, so one document's failure never touches its
  siblings. Per document:

      download ─► extract ─► embed ─► persist (document + chunks, one transaction)

  Every step is retried by retry_with_backoff (3 attempts, 1s / 2s delays by
  default). A document whose step exhausts its attempts is counted failed and
  the run moves on. Counters are persisted after every batch so progress is
  visible through GET /training/runs/{id} while the run is in flight.

Per-run state lives in a RunContext created by execute(); the orchestrator
itself holds only injected collaborators and can serve many runs.
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Sequence

from legal_kb.core.concurrency import gather_isolated, retry_with_backoff
from legal_kb.core.exceptions import DuplicateDocumentError
from legal_kb.processing.embeddings import EmbeddingGenerator
from legal_kb.processing.extractor import TextExtractor
from legal_kb.repositories.training import NewTrainingDocument, TrainingRepository
from legal_kb.schemas.training import RunType
from legal_kb.services.discovery import DiscoveredDocument, DocumentDiscoveryService
from legal_kb.services.pattern_miner import PatternMiner
from legal_kb.services.template_extractor import TemplateExtractor
from legal_kb.storage.onedrive import OneDriveClient

logger = logging.getLogger(__name__)

StoreFactory = Callable[[str], AbstractAsyncContextManager[OneDriveClient]]


# ---------------------------------------------------------------------------
# Per-run state
# ---------------------------------------------------------------------------

@dataclass
class RunContext:
    """Mutable state of one pipeline run, threaded through every phase."""
    run_id:       uuid.UUID
    categories:   list[str]
    access_token: str = field(repr=False)

    documents_discovered: int = 0
    documents_processed:  int = 0
    documents_failed:     int = 0
    total_tokens_used:    int = 0
    patterns_identified:  int = 0
    templates_created:    int = 0

    batches_completed: int = 0
    store: OneDriveClient | None = field(default=None, repr=False)

    def counters(self) -> dict[str, int]:
        """Columns persisted on training_pipeline_runs."""
        return {
            "documents_discovered": self.documents_discovered,
            "documents_processed":  self.documents_processed,
            "documents_failed":     self.documents_failed,
            "total_tokens_used":    self.total_tokens_used,
            "patterns_identified":  self.patterns_identified,
            "templates_created":    self.templates_created,
        }


@dataclass
class ProcessedDocument:
    document_id: uuid.UUID
    tokens_used: int
    chunk_count: int


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class TrainingPipelineOrchestrator:
    """
    Usage:
        orchestrator = TrainingPipelineOrchestrator.from_settings(repository)
        run_id = await orchestrator.create_run(["Contract"])
        ctx    = await orchestrator.execute(run_id, ["Contract"], access_token)
    """

    def __init__(
        self,
        repository:         TrainingRepository,
        discovery:          DocumentDiscoveryService,
        extractor:          TextExtractor,
        embedder:           EmbeddingGenerator,
        pattern_miner:      PatternMiner,
        template_extractor: TemplateExtractor,
        store_factory:      StoreFactory = OneDriveClient,
        batch_size:         int   = 10,
        max_attempts:       int   = 3,
        retry_base_delay:   float = 1.0,
        sleep:              Callable[[float], Awaitable[Any]] | None = None,   # injectable for tests
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._repository         = repository
        self._discovery          = discovery
        self._extractor          = extractor
        self._embedder           = embedder
        self._pattern_miner      = pattern_miner
        self._template_extractor = template_extractor
        self._store_factory      = store_factory
        self._batch_size         = batch_size
        self._max_attempts       = max_attempts
        self._retry_base_delay   = retry_base_delay
        self._sleep              = sleep

    @classmethod
    def from_settings(
        cls,
        repository:    TrainingRepository,
        store_factory: StoreFactory = OneDriveClient,
    ) -> "TrainingPipelineOrchestrator":
        from legal_kb.core.config import settings

        return cls(
            repository=repository,
            discovery=DocumentDiscoveryService.from_settings(repository, store_factory),
            extractor=TextExtractor(),
            embedder=EmbeddingGenerator.from_settings(),
            pattern_miner=PatternMiner.from_settings(repository),
            template_extractor=TemplateExtractor.from_settings(repository),
            store_factory=store_factory,
            batch_size=settings.pipeline_batch_size,
            max_attempts=settings.pipeline_max_attempts,
            retry_base_delay=settings.pipeline_retry_base_delay,
        )

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    async def create_run(
        self,
        categories: Sequence[str],
        run_type:   RunType = RunType.MANUAL,
    ) -> uuid.UUID:
        """Record a new run in status 'running' and return its id."""
        if not categories:
            raise ValueError("at least one category is required")
        run = await self._repository.create_run(run_type, categories)
        logger.info(
            "Run created | run=%s type=%s categories=%s",
            run.id, run_type.value, ",".join(categories),
        )
        return run.id

    async def run(
        self,
        categories:   Sequence[str],
        access_token: str,
        run_type:     RunType = RunType.MANUAL,
    ) -> RunContext:
        run_id = await self.create_run(categories, run_type)
        return await self.execute(run_id, categories, access_token)

    async def execute(
        self,
        run_id:       uuid.UUID,
        categories:   Sequence[str],
        access_token: str,
    ) -> RunContext:
        """
        Drive an already-created run through every phase.

        Returns the final RunContext on success. On a run-fatal error the run
        is marked failed (message + timestamp) and the error is re-raised.
        """
        ctx = RunContext(run_id=run_id, categories=list(categories), access_token=access_token)
        t0 = time.monotonic()
        logger.info("Run start | run=%s categories=%s", run_id, ",".join(ctx.categories))

        try:
            async with self._store_factory(access_token) as store:
                ctx.store = store
                documents = await self._discover(ctx)
                await self._process_batches(ctx, documents)
            ctx.store = None

            await self._mine_patterns(ctx)
            await self._extract_templates(ctx)

            await self._repository.complete_run(run_id, **ctx.counters())
        except Exception as exc:
            ctx.store = None
            logger.exception("Run failed | run=%s error=%s", run_id, exc)
            await self._record_failure(ctx, exc)
            raise

        logger.info(
            "Run completed | run=%s discovered=%d processed=%d failed=%d "
            "patterns=%d templates=%d tokens=%d elapsed_s=%.1f",
            run_id, ctx.documents_discovered, ctx.documents_processed,
            ctx.documents_failed, ctx.patterns_identified, ctx.templates_created,
            ctx.total_tokens_used, time.monotonic() - t0,
        )
        return ctx

    # ------------------------------------------------------------------
    # Phase 1: discovery
    # ------------------------------------------------------------------

    async def _discover(self, ctx: RunContext) -> list[DiscoveredDocument]:
        result = await self._discovery.discover(ctx.access_token, ctx.categories, store=ctx.store)
        ctx.documents_discovered = result.total_count
        await self._repository.update_run(ctx.run_id, documents_discovered=ctx.documents_discovered)
        return result.documents

    # ------------------------------------------------------------------
    # Phase 2: batch processing
    # ------------------------------------------------------------------

    async def _process_batches(self, ctx: RunContext, documents: list[DiscoveredDocument]) -> None:
        total_batches = -(-len(documents) // self._batch_size)

        for start in range(0, len(documents), self._batch_size):
            batch = documents[start : start + self._batch_size]
            batch_no = ctx.batches_completed + 1

            outcomes = await gather_isolated(
                (doc, self._process_document(ctx, doc)) for doc in batch
            )

            processed = failed = 0
            for outcome in outcomes:
                doc: DiscoveredDocument = outcome.key
                if outcome.ok:
                    processed += 1
                    ctx.total_tokens_used += outcome.value.tokens_used
                else:
                    failed += 1
                    logger.error(
                        "Document failed | run=%s file=%s name=%s error=%s: %s",
                        ctx.run_id, doc.file_id, doc.filename,
                        type(outcome.error).__name__, outcome.error,
                    )

            ctx.documents_processed += processed
            ctx.documents_failed    += failed
            ctx.batches_completed   += 1

            await self._repository.update_run(
                ctx.run_id,
                documents_processed=ctx.documents_processed,
                documents_failed=ctx.documents_failed,
                total_tokens_used=ctx.total_tokens_used,
            )
            logger.info(
                "Batch done | run=%s batch=%d/%d size=%d processed=%d failed=%d",
                ctx.run_id, batch_no, total_batches, len(batch), processed, failed,
            )

    async def _process_document(self, ctx: RunContext, doc: DiscoveredDocument) -> ProcessedDocument:
        t0 = time.monotonic()

        data = await self._step(
            "download", doc,
            lambda: ctx.store.download(doc.file_id),
        )
        extracted = await self._step(
            "extract", doc,
            lambda: self._extractor.extract(doc.file_id, doc.filename, doc.file_type, data),
        )
        embedded = await self._step(
            "embed", doc,
            lambda: self._embedder.generate(extracted.text),
        )

        record = NewTrainingDocument(
            file_id=doc.file_id,
            category=doc.category,
            filename=doc.filename,
            folder_path=doc.folder_path,
            text=extracted.text,
            language=extracted.language,
            word_count=extracted.word_count,
            metadata=doc.metadata,
            processing_duration_ms=int((time.monotonic() - t0) * 1000),
            chunks=embedded.chunks,
        )
        document_id = await self._step(
            "persist", doc,
            lambda: self._repository.save_training_document(record),
        )

        logger.debug(
            "Document trained | run=%s file=%s doc=%s chunks=%d tokens=%d",
            ctx.run_id, doc.file_id, document_id, len(embedded.chunks), embedded.total_tokens,
        )
        return ProcessedDocument(
            document_id=document_id,
            tokens_used=embedded.total_tokens,
            chunk_count=len(embedded.chunks),
        )

    async def _step(self, name: str, doc: DiscoveredDocument, operation: Callable[[], Awaitable[Any]]) -> Any:
        kwargs: dict[str, Any] = {}
        if self._sleep is not None:
            kwargs["sleep"] = self._sleep
        return await retry_with_backoff(
            operation,
            max_attempts=self._max_attempts,
            base_delay=self._retry_base_delay,
            label=f"{name}:{doc.file_id}",
            give_up_on=(DuplicateDocumentError,),
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Phases 3 + 4: mining, one category at a time
    # ------------------------------------------------------------------

    async def _mine_patterns(self, ctx: RunContext) -> None:
        for category in ctx.categories:
            found = await self._pattern_miner.mine_patterns(category)
            ctx.patterns_identified += found
            logger.info("Patterns mined | run=%s category=%s patterns=%d", ctx.run_id, category, found)
        await self._repository.update_run(ctx.run_id, patterns_identified=ctx.patterns_identified)

    async def _extract_templates(self, ctx: RunContext) -> None:
        for category in ctx.categories:
            created = await self._template_extractor.extract_templates(category)
            ctx.templates_created += created
            logger.info("Templates extracted | run=%s category=%s templates=%d", ctx.run_id, category, created)
        await self._repository.update_run(ctx.run_id, templates_created=ctx.templates_created)

    # ------------------------------------------------------------------
    # Failure path
    # ------------------------------------------------------------------

    async def _record_failure(self, ctx: RunContext, exc: Exception) -> None:
        message = str(exc) or type(exc).__name__
        try:
            await self._repository.fail_run(ctx.run_id, message, **ctx.counters())
        except Exception:
            # The original error is re-raised by the caller either way
            logger.exception("Could not mark run failed | run=%s", ctx.run_id)
