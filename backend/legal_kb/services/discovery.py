"""
Document Discovery Service

For each requested category:
  1. Get-or-create <training_root_folder>/<category> in OneDrive
  2. Read the optional per-category descriptor (_metadata.json)
  3. List files (paginated), keeping only pdf / docx / doc
  4. Drop files whose OneDrive id is already a TrainingDocument
  5. Emit one DiscoveredDocument per remaining file, with merged metadata

Failure model:
  A category that cannot be scanned is logged and skipped; the other
  categories still contribute. A malformed descriptor is NOT a category
  failure: the category is scanned with an empty descriptor.
"""

from __future__ import annotations

import logging
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Sequence

from legal_kb.core.exceptions import DiscoveryError
from legal_kb.repositories.training import TrainingRepository
from legal_kb.schemas.training import SUPPORTED_EXTENSIONS, CategoryDescriptor
from legal_kb.storage.onedrive import OneDriveClient, RemoteFile

logger = logging.getLogger(__name__)

StoreFactory = Callable[[str], AbstractAsyncContextManager[OneDriveClient]]


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class DiscoveredDocument:
    file_id:      str
    filename:     str
    category:     str
    folder_path:  str
    size:         int
    file_type:    str
    download_url: str | None     = None
    metadata:     dict[str, Any] = field(default_factory=dict)


@dataclass
class DiscoveryResult:
    documents:   list[DiscoveredDocument] = field(default_factory=list)
    total_count: int = 0
    errors:      list[DiscoveryError] = field(default_factory=list)

    @property
    def skipped_categories(self) -> list[str]:
        return [error.category for error in self.errors]


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class DocumentDiscoveryService:
    """
    Usage:
        discovery = DocumentDiscoveryService(repository, OneDriveClient)
        result    = await discovery.discover(access_token, ["Contract", "NDA"])
    """

    def __init__(
        self,
        repository:        TrainingRepository,
        store_factory:     StoreFactory = OneDriveClient,
        root_folder:       str = "AI-Training",
        metadata_filename: str = "_metadata.json",
    ) -> None:
        self._repository        = repository
        self._store_factory     = store_factory
        self._root_folder       = root_folder.strip("/")
        self._metadata_filename = metadata_filename

    @classmethod
    def from_settings(
        cls,
        repository:    TrainingRepository,
        store_factory: StoreFactory = OneDriveClient,
    ) -> "DocumentDiscoveryService":
        from legal_kb.core.config import settings

        return cls(
            repository,
            store_factory,
            root_folder=settings.training_root_folder,
            metadata_filename=settings.metadata_filename,
        )

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    async def discover(
        self,
        access_token: str,
        categories:   Sequence[str],
        *,
        store:        OneDriveClient | None = None,
    ) -> DiscoveryResult:
        """
        Scan every category and return the documents not yet trained on.

        Pass `store` to reuse an open client (the orchestrator does, so the
        same connection pool serves the downloads); otherwise one is opened
        from access_token for the duration of the scan.
        """
        if not categories:
            raise ValueError("at least one category is required")

        result = DiscoveryResult()
        async with self._open_store(access_token, store) as client:
            for category in categories:
                try:
                    documents = await self._discover_category(client, category)
                except Exception as exc:
                    logger.exception("Category skipped | category=%s error=%s", category, exc)
                    result.errors.append(DiscoveryError(category, str(exc)))
                    continue
                result.documents.extend(documents)

        result.total_count = len(result.documents)
        logger.info(
            "Discovery done | categories=%d new_documents=%d skipped=%s",
            len(categories), result.total_count, result.skipped_categories or "-",
        )
        return result

    # ------------------------------------------------------------------
    # Per-category scan
    # ------------------------------------------------------------------

    async def _discover_category(
        self,
        client:   OneDriveClient,
        category: str,
    ) -> list[DiscoveredDocument]:
        folder_path = f"{self._root_folder}/{category}"
        folder = await client.get_or_create_folder(folder_path)

        descriptor = await self._load_descriptor(client, folder.id, category)
        files = await client.list_files(folder.id, SUPPORTED_EXTENSIONS)

        known = await self._repository.find_existing_file_ids(f.id for f in files)
        fresh = [f for f in files if f.id not in known]

        logger.info(
            "Category scanned | category=%s listed=%d already_trained=%d new=%d",
            category, len(files), len(known), len(fresh),
        )
        base = {"category": category, "folder_path": folder_path}
        return [self._to_document(f, category, folder_path, descriptor, base) for f in fresh]

    async def _load_descriptor(
        self,
        client:    OneDriveClient,
        folder_id: str,
        category:  str,
    ) -> CategoryDescriptor:
        try:
            payload = await client.read_json(folder_id, self._metadata_filename)
            return CategoryDescriptor.from_payload(payload)
        except ValueError as exc:
            logger.warning(
                "Descriptor ignored | category=%s file=%s error=%s",
                category, self._metadata_filename, exc,
            )
            return CategoryDescriptor()

    @staticmethod
    def _to_document(
        remote:      RemoteFile,
        category:    str,
        folder_path: str,
        descriptor:  CategoryDescriptor,
        base:        dict[str, Any],
    ) -> DiscoveredDocument:
        return DiscoveredDocument(
            file_id=remote.id,
            filename=remote.name,
            category=category,
            folder_path=folder_path,
            size=remote.size,
            file_type=remote.extension,
            download_url=remote.web_url,
            metadata=descriptor.resolve(remote.name, base),
        )

    # ------------------------------------------------------------------
    # Store lifecycle
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _open_store(
        self,
        access_token: str,
        store:        OneDriveClient | None,
    ) -> AsyncIterator[OneDriveClient]:
        if store is not None:
            yield store
            return
        async with self._store_factory(access_token) as client:
            yield client
