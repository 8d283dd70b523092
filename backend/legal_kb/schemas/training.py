"""
Training Pipeline — Pydantic Schemas

Covers:
  - Run lifecycle enums (status, run type)
  - Two-tier document metadata (category descriptor + per-file override)
  - Template structure stored in template_library.structure
  - Request/response bodies for /api/v1/training
  - Structured error envelope used by every 4xx/5xx response

Design decisions:
  - run_id is always server-generated; the trigger never accepts one.
  - Wire format is camelCase (runId, accessToken, documentsProcessed …);
    Python attributes stay snake_case via field aliases.
  - All timestamps are timezone-aware UTC datetimes.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator


# ---------------------------------------------------------------------------
# Supported source formats: discovery ignores everything else
# ---------------------------------------------------------------------------

SUPPORTED_EXTENSIONS: frozenset[str] = frozenset({"pdf", "docx", "doc"})


def file_extension(filename: str) -> str:
    """Return the lowercased extension without the dot ('' if none)."""
    parts = filename.rsplit(".", 1)
    return parts[-1].lower() if len(parts) == 2 else ""


# ---------------------------------------------------------------------------
# Run state machine
# ---------------------------------------------------------------------------

class PipelineStatus(str, Enum):
    """
    Maps to training_pipeline_runs.status.
    Transitions: running → completed | failed  (no pending state)
    """
    RUNNING   = "running"
    COMPLETED = "completed"
    FAILED    = "failed"


class RunType(str, Enum):
    SCHEDULED = "scheduled"
    MANUAL    = "manual"


# ---------------------------------------------------------------------------
# Two-tier document metadata
# ---------------------------------------------------------------------------

class DocumentMetadata(BaseModel):
    """
    Metadata attached to a training document.

    Known fields are typed; anything else a descriptor author adds is kept
    as an extra key so no information is lost.
    """
    model_config = ConfigDict(extra="allow")

    title:         Optional[str]       = None
    document_date: Optional[str]       = None
    client:        Optional[str]       = None
    jurisdiction:  Optional[str]       = None
    language:      Optional[str]       = None
    tags:          Optional[list[str]] = None

    def populated(self) -> dict[str, Any]:
        """Fields that carry a value (None never overrides a lower tier)."""
        return self.model_dump(exclude_none=True)


class CategoryDescriptor(BaseModel):
    """
    Parsed form of the optional per-category descriptor file.

    Accepted layouts:
        {"defaults": {...}, "files": {"a.pdf": {...}}}
        {"a.pdf": {...}, "b.docx": {...}}           (files only)
    """
    defaults: DocumentMetadata            = Field(default_factory=DocumentMetadata)
    files:    dict[str, DocumentMetadata] = Field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Any) -> "CategoryDescriptor":
        """Build a descriptor from decoded JSON; raises ValueError if unusable."""
        if payload is None:
            return cls()
        if not isinstance(payload, dict):
            raise ValueError("descriptor must be a JSON object")
        try:
            if "defaults" in payload or "files" in payload:
                return cls.model_validate(payload)
            return cls(files={
                name: DocumentMetadata.model_validate(entry)
                for name, entry in payload.items()
            })
        except ValidationError as exc:
            raise ValueError(f"invalid descriptor: {exc.error_count()} error(s)") from exc

    def resolve(self, filename: str, base: dict[str, Any]) -> dict[str, Any]:
        """
        Merge metadata for one file. Precedence (lowest → highest):
            base (category-derived fields) → descriptor defaults → file entry
        """
        merged = dict(base)
        merged.update(self.defaults.populated())
        entry = self.files.get(filename)
        if entry is not None:
            merged.update(entry.populated())
        return merged


# ---------------------------------------------------------------------------
# Template structure: template_library.structure
# ---------------------------------------------------------------------------

class TemplateSection(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    heading:        str
    common_phrases: list[str] = Field(default_factory=list, alias="commonPhrases", max_length=4)


class TemplateStructure(BaseModel):
    sections: list[TemplateSection] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Trigger request / response: POST /training/runs
# ---------------------------------------------------------------------------

class TrainingTriggerRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    categories:   list[str] = Field(..., min_length=1, description="Category folder names to scan")
    access_token: str       = Field(..., min_length=1, alias="accessToken",
                                    description="Microsoft Graph bearer token")

    @field_validator("categories")
    @classmethod
    def _clean_categories(cls, value: list[str]) -> list[str]:
        cleaned: list[str] = []
        for name in value:
            name = name.strip()
            if not name:
                raise ValueError("category names must be non-empty")
            if "/" in name or "\\" in name:
                raise ValueError(f"category '{name}' cannot contain path separators")
            if name not in cleaned:
                cleaned.append(name)
        return cleaned


class TrainingTriggerResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    run_id: UUID           = Field(..., alias="runId")
    status: PipelineStatus = PipelineStatus.RUNNING


# ---------------------------------------------------------------------------
# Run status: GET /training/runs/{id}, GET /training/runs
# ---------------------------------------------------------------------------

class RunError(BaseModel):
    message:   str
    timestamp: datetime


class PipelineRunResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, from_attributes=True)

    id:                   UUID
    run_type:             RunType            = Field(..., alias="runType")
    status:               PipelineStatus
    categories:           list[str]          = Field(default_factory=list)
    documents_discovered: int                = Field(0, alias="documentsDiscovered")
    documents_processed:  int                = Field(0, alias="documentsProcessed")
    documents_failed:     int                = Field(0, alias="documentsFailed")
    patterns_identified:  int                = Field(0, alias="patternsIdentified")
    templates_created:    int                = Field(0, alias="templatesCreated")
    total_tokens_used:    int                = Field(0, alias="totalTokensUsed")
    started_at:           datetime           = Field(..., alias="startedAt")
    completed_at:         Optional[datetime] = Field(None, alias="completedAt")
    error_log:            Optional[RunError] = Field(None, alias="errorLog")


class PipelineRunListResponse(BaseModel):
    runs:  list[PipelineRunResponse]
    count: int


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error — may appear in a list."""
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str         = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all 4xx/5xx responses.
    Clients should check `error_code` for programmatic handling.
    """
    error_code: str               = Field(..., description="Stable machine-readable code")
    message:    str               = Field(..., description="Human-readable summary")
    details:    list[ErrorDetail] = Field(default_factory=list)
    request_id: str | None        = Field(None, description="Trace ID for log correlation")


class TrainingErrors:
    """Factories for every documented error case."""

    @staticmethod
    def run_not_found(run_id: UUID) -> ErrorResponse:
        return ErrorResponse(
            error_code="RUN_NOT_FOUND",
            message=f"Pipeline run '{run_id}' was not found.",
        )

    @staticmethod
    def dispatch_failed(run_id: UUID) -> ErrorResponse:
        return ErrorResponse(
            error_code="QUEUE_ERROR",
            message="The run was created but could not be queued for execution.",
            details=[
                ErrorDetail(
                    field=None,
                    message=f"Run '{run_id}' has been marked failed. Trigger a new run to retry.",
                    code="QUEUE_ERROR",
                )
            ],
        )

    @staticmethod
    def internal_error(request_id: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="An unexpected error occurred.",
            request_id=request_id,
        )
