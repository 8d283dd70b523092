"""
OneDrive Storage Client — Microsoft Graph (delegated bearer token)

Operations used by the training pipeline:
  get_or_create_folder(path)    idempotent; walks the path segment by segment
  list_files(folder_id, exts)   follows @odata.nextLink until exhausted
  read_json(folder_id, name)    optional descriptor file; None when absent
  download(file_id)             raw bytes (Graph answers with a 302 to the CDN)

Error model:
  Any non-2xx answer (other than the handled 404 / 409 cases) or transport
  failure is raised as RemoteStoreError carrying the HTTP status, so the
  orchestrator can retry the step and discovery can skip the category.

One client instance per pipeline run; the underlying httpx.AsyncClient is
safe for the concurrent downloads of one batch.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Iterable
from urllib.parse import quote

import httpx

from legal_kb.core.config import settings
from legal_kb.core.exceptions import RemoteStoreError
from legal_kb.schemas.training import file_extension

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RemoteFolder:
    id:   str
    path: str


@dataclass(frozen=True)
class RemoteFile:
    id:            str
    name:          str
    size:          int = 0
    last_modified: str | None = None
    web_url:       str | None = None

    @property
    def extension(self) -> str:
        return file_extension(self.name)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class OneDriveClient:
    """
    Async Microsoft Graph client for the signed-in user's drive.

    Usage:
        async with OneDriveClient(access_token) as store:
            folder = await store.get_or_create_folder("AI-Training/Contract")
            files  = await store.list_files(folder.id, {"pdf", "docx", "doc"})
    """

    def __init__(
        self,
        access_token: str,
        *,
        base_url:  str | None = None,
        page_size: int | None = None,
        timeout:   float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,   # httpx.MockTransport in tests
    ) -> None:
        if not access_token:
            raise ValueError("access_token is required")
        self._page_size = page_size or settings.graph_page_size
        self._http = httpx.AsyncClient(
            base_url=(base_url or settings.graph_api_base_url).rstrip("/"),
            headers={
                "Authorization": f"Bearer {access_token}",
                "Accept":        "application/json",
            },
            timeout=timeout or settings.graph_timeout_seconds,
            follow_redirects=True,
            transport=transport,
        )

    async def __aenter__(self) -> "OneDriveClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self._http.request(method, url, **kwargs)
        except httpx.RequestError as exc:
            raise RemoteStoreError(f"Graph {method} {url} failed: {exc}") from exc
        return response

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        if response.is_success:
            return
        code = ""
        try:
            code = response.json().get("error", {}).get("code", "")
        except (ValueError, AttributeError):
            pass   # non-JSON or non-Graph error body
        raise RemoteStoreError(
            f"Graph {response.request.method} {response.request.url.path} "
            f"returned {response.status_code} {code}".rstrip(),
            status_code=response.status_code,
        )

    @staticmethod
    def _children_path(parent_id: str | None) -> str:
        return "/me/drive/root/children" if parent_id is None else f"/me/drive/items/{parent_id}/children"

    # ------------------------------------------------------------------
    # Folders
    # ------------------------------------------------------------------

    async def get_or_create_folder(self, path: str) -> RemoteFolder:
        """Create every missing segment of path; existing folders are reused."""
        segments = [segment for segment in path.strip("/").split("/") if segment]
        if not segments:
            raise ValueError("folder path must contain at least one segment")

        parent_id: str | None = None
        for segment in segments:
            parent_id = await self._get_or_create_child(parent_id, segment)

        return RemoteFolder(id=parent_id, path="/".join(segments))

    async def _get_or_create_child(self, parent_id: str | None, name: str) -> str:
        children = self._children_path(parent_id)
        response = await self._request(
            "POST",
            children,
            json={
                "name": name,
                "folder": {},
                "@microsoft.graph.conflictBehavior": "fail",
            },
        )
        if response.status_code == 409:
            # Already exists: look it up by name
            escaped = name.replace("'", "''")
            lookup = await self._request(
                "GET", children, params={"$filter": f"name eq '{escaped}'"},
            )
            self._raise_for_status(lookup)
            for item in lookup.json().get("value", []):
                if item.get("name") == name and "folder" in item:
                    return item["id"]
            raise RemoteStoreError(f"Folder '{name}' reported as existing but not found", 409)

        self._raise_for_status(response)
        folder_id = response.json()["id"]
        logger.info("Created OneDrive folder | name=%s id=%s", name, folder_id)
        return folder_id

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    async def list_files(
        self,
        folder_id:  str,
        extensions: Iterable[str] | None = None,
    ) -> list[RemoteFile]:
        """All files in folder_id (sub-folders skipped), optionally filtered by extension."""
        wanted = {ext.lower().lstrip(".") for ext in extensions} if extensions else None
        url: str | None = f"/me/drive/items/{folder_id}/children"
        params: dict[str, Any] | None = {"$top": self._page_size}
        files: list[RemoteFile] = []
        pages = 0

        while url:
            response = await self._request("GET", url, params=params)
            self._raise_for_status(response)
            payload = response.json()
            pages += 1

            for item in payload.get("value", []):
                if "folder" in item or "id" not in item or "name" not in item:
                    continue
                remote = RemoteFile(
                    id=item["id"],
                    name=item["name"],
                    size=int(item.get("size", 0)),
                    last_modified=item.get("lastModifiedDateTime"),
                    web_url=item.get("webUrl"),
                )
                if wanted is None or remote.extension in wanted:
                    files.append(remote)

            # nextLink is an absolute URL that already carries the query string
            url = payload.get("@odata.nextLink")
            params = None

        logger.debug("Listed folder | id=%s pages=%d files=%d", folder_id, pages, len(files))
        return files

    async def read_json(self, folder_id: str, filename: str) -> Any | None:
        """
        Decode a JSON file stored in folder_id.

        Returns None when the file does not exist.
        Raises ValueError when the file exists but is not valid JSON.
        """
        response = await self._request(
            "GET", f"/me/drive/items/{folder_id}:/{quote(filename)}:/content",
        )
        if response.status_code == 404:
            return None
        self._raise_for_status(response)
        try:
            return json.loads(response.content.decode("utf-8-sig"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ValueError(f"{filename} is not valid JSON: {exc}") from exc

    async def download(self, file_id: str) -> bytes:
        response = await self._request("GET", f"/me/drive/items/{file_id}/content")
        self._raise_for_status(response)
        return response.content
