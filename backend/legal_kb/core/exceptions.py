"""
Domain exceptions for the training pipeline.

Step-level errors (RemoteStoreError, ExtractionError, EmbeddingError) are
retried by the orchestrator and, once retries are exhausted, only counted —
they never fail a run. Anything else escaping a phase is run-fatal.
"""

from __future__ import annotations

from uuid import UUID


class TrainingPipelineError(Exception):
    """Base class for all pipeline errors."""


class RemoteStoreError(TrainingPipelineError):
    """A Microsoft Graph call failed (HTTP error, transport error, bad payload)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class DiscoveryError(TrainingPipelineError):
    """Discovery could not scan a category."""

    def __init__(self, category: str, message: str) -> None:
        super().__init__(f"{category}: {message}")
        self.category = category


class ExtractionError(TrainingPipelineError):
    """Text could not be extracted from a document's bytes."""


class EmbeddingError(TrainingPipelineError):
    """The embedding backend rejected or failed a request."""


class DuplicateDocumentError(TrainingPipelineError):
    """The origin file was persisted concurrently by another run."""

    def __init__(self, file_id: str) -> None:
        super().__init__(f"File '{file_id}' already exists as a training document")
        self.file_id = file_id


class RunNotFoundError(TrainingPipelineError):
    def __init__(self, run_id: UUID) -> None:
        super().__init__(f"Pipeline run '{run_id}' not found")
        self.run_id = run_id
