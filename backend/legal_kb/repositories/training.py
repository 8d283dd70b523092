"""
Training Repository — persistence adapter for the pipeline

The services only speak the TrainingRepository interface, so they can be
unit-tested against an in-memory implementation and run in production
against PostgreSQL through SqlAlchemyTrainingRepository.

Unit-of-work rule: every method opens its own session + transaction via
the injected session factory. Concurrent pipeline workers therefore never
share a session, and a failed document write rolls back as a whole
(document row + all of its chunks).
"""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Sequence

from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from legal_kb.core.exceptions import DuplicateDocumentError, RunNotFoundError
from legal_kb.models.training import (
    DocumentEmbedding,
    DocumentPattern,
    DocumentTemplate,
    TrainingDocument,
    TrainingPipelineRun,
)
from legal_kb.processing.embeddings import EmbeddedChunk
from legal_kb.schemas.training import PipelineStatus, RunType, TemplateStructure

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]


# ---------------------------------------------------------------------------
# Value objects crossing the repository boundary
# ---------------------------------------------------------------------------

@dataclass
class NewTrainingDocument:
    """Everything needed to persist one processed file in a single transaction."""
    file_id:                str
    category:               str
    filename:               str
    folder_path:            str
    text:                   str
    language:               str
    word_count:             int
    metadata:               dict[str, Any]
    processing_duration_ms: int
    chunks:                 list[EmbeddedChunk] = field(default_factory=list)


@dataclass
class StoredDocument:
    """Read model used by the miners: text plus the chunk-0 embedding (raw)."""
    id:                    uuid.UUID
    filename:              str
    text_content:          str
    created_at:            datetime
    representative_vector: Any = None


@dataclass
class TemplateDraft:
    category:        str
    name:            str
    base_document_id: uuid.UUID
    structure:       TemplateStructure
    member_ids:      list[uuid.UUID]
    quality_score:   float


@dataclass
class PatternDraft:
    category:     str
    text:         str
    document_ids: list[uuid.UUID]
    confidence:   float
    pattern_type: str = "phrase"


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------

class TrainingRepository(ABC):

    # -- training documents -------------------------------------------------

    @abstractmethod
    async def find_existing_file_ids(self, file_ids: Iterable[str]) -> set[str]:
        """Subset of file_ids already stored as training documents."""

    @abstractmethod
    async def save_training_document(self, doc: NewTrainingDocument) -> uuid.UUID:
        """Insert document + chunks atomically. Raises DuplicateDocumentError."""

    @abstractmethod
    async def count_documents(self, category: str) -> int: ...

    @abstractmethod
    async def list_documents(self, category: str, with_vectors: bool = False) -> list[StoredDocument]:
        """Category documents ordered by (created_at, id)."""

    # -- runs -----------------------------------------------------------------

    @abstractmethod
    async def create_run(self, run_type: RunType, categories: Sequence[str]) -> TrainingPipelineRun: ...

    @abstractmethod
    async def update_run(self, run_id: uuid.UUID, **values: Any) -> None:
        """Set counter / status columns on a run. Raises RunNotFoundError."""

    @abstractmethod
    async def get_run(self, run_id: uuid.UUID) -> TrainingPipelineRun | None: ...

    @abstractmethod
    async def list_recent_runs(self, limit: int) -> list[TrainingPipelineRun]: ...

    # -- mined artefacts ------------------------------------------------------

    @abstractmethod
    async def save_template(self, draft: TemplateDraft) -> uuid.UUID: ...

    @abstractmethod
    async def save_patterns(self, drafts: Sequence[PatternDraft]) -> int: ...

    # -- shared helpers -------------------------------------------------------

    async def complete_run(self, run_id: uuid.UUID, **counters: int) -> None:
        await self.update_run(
            run_id,
            status=PipelineStatus.COMPLETED.value,
            completed_at=datetime.now(timezone.utc),
            **counters,
        )

    async def fail_run(self, run_id: uuid.UUID, message: str, **counters: int) -> None:
        now = datetime.now(timezone.utc)
        await self.update_run(
            run_id,
            status=PipelineStatus.FAILED.value,
            completed_at=now,
            error_log={"message": message, "timestamp": now.isoformat()},
            **counters,
        )


# ---------------------------------------------------------------------------
# PostgreSQL implementation
# ---------------------------------------------------------------------------

_RUN_COLUMNS = frozenset({
    "status", "completed_at", "error_log",
    "documents_discovered", "documents_processed", "documents_failed",
    "patterns_identified", "templates_created", "total_tokens_used",
})


class SqlAlchemyTrainingRepository(TrainingRepository):
    """
    TrainingRepository backed by the async SQLAlchemy session factory.

    Usage:
        from legal_kb.db.session import get_session
        repo = SqlAlchemyTrainingRepository(get_session)
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session = session_factory

    # -- training documents -------------------------------------------------

    async def find_existing_file_ids(self, file_ids: Iterable[str]) -> set[str]:
        ids = list(file_ids)
        if not ids:
            return set()
        async with self._session() as db:
            result = await db.execute(
                select(TrainingDocument.onedrive_file_id).where(
                    TrainingDocument.onedrive_file_id.in_(ids)
                )
            )
            return set(result.scalars().all())

    async def save_training_document(self, doc: NewTrainingDocument) -> uuid.UUID:
        document_id = uuid.uuid4()
        record = TrainingDocument(
            id=document_id,
            onedrive_file_id=doc.file_id,
            category=doc.category,
            original_filename=doc.filename,
            original_folder_path=doc.folder_path,
            text_content=doc.text,
            language=doc.language,
            word_count=doc.word_count,
            doc_metadata=doc.metadata,
            processing_duration_ms=doc.processing_duration_ms,
            embeddings=[
                DocumentEmbedding(
                    chunk_index=chunk.index,
                    chunk_text=chunk.text,
                    embedding=chunk.vector,
                    token_count=chunk.token_count,
                )
                for chunk in doc.chunks
            ],
        )
        try:
            async with self._session() as db:
                db.add(record)
                await db.flush()   # surfaces the UNIQUE violation inside the transaction
        except IntegrityError as exc:
            raise DuplicateDocumentError(doc.file_id) from exc
        return document_id

    async def count_documents(self, category: str) -> int:
        async with self._session() as db:
            result = await db.execute(
                select(func.count()).select_from(TrainingDocument).where(
                    TrainingDocument.category == category
                )
            )
            return int(result.scalar_one())

    async def list_documents(self, category: str, with_vectors: bool = False) -> list[StoredDocument]:
        columns = [
            TrainingDocument.id,
            TrainingDocument.original_filename,
            TrainingDocument.text_content,
            TrainingDocument.created_at,
        ]
        stmt = select(*columns)
        if with_vectors:
            stmt = select(*columns, DocumentEmbedding.embedding).outerjoin(
                DocumentEmbedding,
                and_(
                    DocumentEmbedding.document_id == TrainingDocument.id,
                    DocumentEmbedding.chunk_index == 0,
                ),
            )
        stmt = stmt.where(TrainingDocument.category == category).order_by(
            TrainingDocument.created_at, TrainingDocument.id
        )

        async with self._session() as db:
            rows = (await db.execute(stmt)).all()

        return [
            StoredDocument(
                id=row[0],
                filename=row[1],
                text_content=row[2],
                created_at=row[3],
                representative_vector=row[4] if with_vectors else None,
            )
            for row in rows
        ]

    # -- runs -----------------------------------------------------------------

    async def create_run(self, run_type: RunType, categories: Sequence[str]) -> TrainingPipelineRun:
        run = TrainingPipelineRun(
            id=uuid.uuid4(),
            run_type=run_type.value,
            status=PipelineStatus.RUNNING.value,
            categories=list(categories),
            documents_discovered=0,
            documents_processed=0,
            documents_failed=0,
            patterns_identified=0,
            templates_created=0,
            total_tokens_used=0,
            started_at=datetime.now(timezone.utc),
        )
        async with self._session() as db:
            db.add(run)
            await db.flush()
        return run

    async def update_run(self, run_id: uuid.UUID, **values: Any) -> None:
        unknown = set(values) - _RUN_COLUMNS
        if unknown:
            raise ValueError(f"Unknown run columns: {sorted(unknown)}")
        async with self._session() as db:
            result = await db.execute(
                update(TrainingPipelineRun)
                .where(TrainingPipelineRun.id == run_id)
                .values(**values)
            )
            if result.rowcount == 0:
                raise RunNotFoundError(run_id)

    async def get_run(self, run_id: uuid.UUID) -> TrainingPipelineRun | None:
        async with self._session() as db:
            return await db.get(TrainingPipelineRun, run_id)

    async def list_recent_runs(self, limit: int) -> list[TrainingPipelineRun]:
        async with self._session() as db:
            result = await db.execute(
                select(TrainingPipelineRun)
                .order_by(TrainingPipelineRun.started_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    # -- mined artefacts ------------------------------------------------------

    async def save_template(self, draft: TemplateDraft) -> uuid.UUID:
        template_id = uuid.uuid4()
        async with self._session() as db:
            db.add(DocumentTemplate(
                id=template_id,
                category=draft.category,
                name=draft.name,
                base_document_id=draft.base_document_id,
                structure=draft.structure.model_dump(by_alias=True),
                similar_document_ids=[str(member) for member in draft.member_ids],
                usage_count=0,
                quality_score=draft.quality_score,
            ))
            await db.flush()
        return template_id

    async def save_patterns(self, drafts: Sequence[PatternDraft]) -> int:
        if not drafts:
            return 0
        async with self._session() as db:
            db.add_all([
                DocumentPattern(
                    category=draft.category,
                    pattern_type=draft.pattern_type,
                    pattern_text=draft.text,
                    frequency=len(draft.document_ids),
                    document_ids=[str(doc_id) for doc_id in draft.document_ids],
                    confidence_score=draft.confidence,
                )
                for draft in drafts
            ])
            await db.flush()
        return len(drafts)
