"""
SQLAlchemy ORM Models — Training Knowledge Base

Tables:
  training_documents      one row per discovered OneDrive file (append-only)
  document_embeddings     ordered embedding chunks of a training document
  training_pipeline_runs  one row per pipeline invocation + progress counters
  template_library        structural templates mined from document clusters
  document_patterns       recurring phrases mined per category

Dedup note: onedrive_file_id is UNIQUE. Discovery filters known ids up
front; the constraint is the final guard if two runs race.

Embeddings use the pgvector extension (CREATE EXTENSION vector).
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from legal_kb.core.config import settings


# ---------------------------------------------------------------------------
# Declarative base: shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# TrainingDocument: training_documents
# ---------------------------------------------------------------------------

class TrainingDocument(Base):
    """
    Extracted text of one legal document, created once per discovered file.

    Never updated or deleted by the pipeline. Chunks live in
    document_embeddings and are written in the same transaction.
    """

    __tablename__ = "training_documents"
    __table_args__ = (
        UniqueConstraint("onedrive_file_id", name="uq_training_documents_file_id"),
        Index("idx_training_documents_category", "category"),
        Index("idx_training_documents_created_at", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )

    # Origin: permanent dedup key
    onedrive_file_id: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    original_filename: Mapped[str] = mapped_column(Text, nullable=False)
    original_folder_path: Mapped[str] = mapped_column(Text, nullable=False)

    # Extraction output
    text_content: Mapped[str] = mapped_column(Text, nullable=False)
    language: Mapped[str] = mapped_column(String(10), nullable=False, default="unknown")
    word_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    doc_metadata: Mapped[dict] = mapped_column(
        "metadata",
        JSONB,
        nullable=False,
        default=dict,
        server_default="{}",
        comment="Category descriptor defaults merged with file-specific overrides",
    )
    processing_duration_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    embeddings: Mapped[list["DocumentEmbedding"]] = relationship(
        back_populates="document",
        order_by="DocumentEmbedding.chunk_index",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return (
            f"<TrainingDocument id={self.id} category={self.category!r} "
            f"file={self.original_filename!r}>"
        )


# ---------------------------------------------------------------------------
# DocumentEmbedding: document_embeddings
# ---------------------------------------------------------------------------

class DocumentEmbedding(Base):
    """One chunk of a TrainingDocument with its embedding vector."""

    __tablename__ = "document_embeddings"
    __table_args__ = (
        UniqueConstraint("document_id", "chunk_index", name="uq_document_embeddings_position"),
        CheckConstraint("chunk_index >= 0", name="document_embeddings_index_check"),
        Index("idx_document_embeddings_document_id", "document_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    document_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("training_documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    chunk_text: Mapped[str] = mapped_column(Text, nullable=False)
    embedding: Mapped[Optional[list[float]]] = mapped_column(
        Vector(settings.embedding_dimensions),
        nullable=True,
    )
    token_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    document: Mapped[TrainingDocument] = relationship(back_populates="embeddings")


# ---------------------------------------------------------------------------
# TrainingPipelineRun: training_pipeline_runs
# ---------------------------------------------------------------------------

class TrainingPipelineRun(Base):
    """
    One end-to-end invocation of the training pipeline.

    State machine (status column) — created directly in 'running':
        running   — phases executing; counters updated after every batch
        completed — all phases finished
        failed    — a phase-level error escaped; see error_log
    Transitions are one-way. A failed run is never resumed.
    """

    __tablename__ = "training_pipeline_runs"
    __table_args__ = (
        CheckConstraint(
            "status IN ('running', 'completed', 'failed')",
            name="training_pipeline_runs_status_check",
        ),
        CheckConstraint(
            "run_type IN ('scheduled', 'manual')",
            name="training_pipeline_runs_type_check",
        ),
        Index("idx_training_pipeline_runs_status", "status"),
        Index("idx_training_pipeline_runs_started_at", "started_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    run_type: Mapped[str] = mapped_column(String(20), nullable=False, default="manual")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="running")
    categories: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)

    documents_discovered: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    documents_processed:  Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    documents_failed:     Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    patterns_identified:  Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    templates_created:    Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_tokens_used:    Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    error_log: Mapped[Optional[dict]] = mapped_column(
        JSONB,
        nullable=True,
        comment="{message, timestamp} — populated only when status='failed'",
    )

    def __repr__(self) -> str:
        return f"<TrainingPipelineRun id={self.id} status={self.status}>"


# ---------------------------------------------------------------------------
# DocumentTemplate: template_library
# ---------------------------------------------------------------------------

class DocumentTemplate(Base):
    """Consensus structure of a cluster of structurally similar documents."""

    __tablename__ = "template_library"
    __table_args__ = (
        CheckConstraint(
            "quality_score >= 0 AND quality_score <= 1",
            name="template_library_quality_range",
        ),
        Index("idx_template_library_category", "category"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    base_document_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("training_documents.id", ondelete="SET NULL"),
        nullable=True,
    )
    structure: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    similar_document_ids: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    usage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    quality_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


# ---------------------------------------------------------------------------
# DocumentPattern: document_patterns
# ---------------------------------------------------------------------------

class DocumentPattern(Base):
    """A phrase that recurs across several documents of one category."""

    __tablename__ = "document_patterns"
    __table_args__ = (
        CheckConstraint(
            "pattern_type IN ('phrase', 'clause', 'structure')",
            name="document_patterns_type_check",
        ),
        CheckConstraint(
            "confidence_score >= 0 AND confidence_score <= 1",
            name="document_patterns_confidence_range",
        ),
        Index("idx_document_patterns_category", "category"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    pattern_type: Mapped[str] = mapped_column(String(20), nullable=False, default="phrase")
    pattern_text: Mapped[str] = mapped_column(Text, nullable=False)
    frequency: Mapped[int] = mapped_column(Integer, nullable=False)
    document_ids: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    confidence_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
