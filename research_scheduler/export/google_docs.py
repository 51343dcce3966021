from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

from research_scheduler.errors import ExternalAPIError
from research_scheduler.export.formatting import build_document_requests
from research_scheduler.storage.types import ScheduledQuery
from research_scheduler.utils import now_utc


logger = logging.getLogger(__name__)


DOCS_API = "https://docs.googleapis.com/v1/documents"
DRIVE_FILES_API = "https://www.googleapis.com/drive/v3/files"
FOLDER_MIME = "application/vnd.google-apps.folder"


@dataclass(frozen=True)
class ExportedDocument:
    document_id: str
    title: str
    url: str


def load_access_token(explicit: str, token_path: Path) -> str:
    """Access token from config, else from a saved OAuth token file."""
    if explicit:
        return explicit
    if not token_path.exists():
        return ""
    try:
        with token_path.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError):
        logger.warning("unreadable token file %s", token_path)
        return ""
    return str(data.get("access_token") or "") if isinstance(data, dict) else ""


def document_title(query_text: str) -> str:
    return f"{query_text} - {now_utc().date().isoformat()}"


class GoogleDocsExporter:
    """Writes execution results into Google Docs inside a results folder."""

    def __init__(
        self,
        access_token: str,
        folder_name: str,
        timeout_seconds: int = 60,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._access_token = access_token
        self._folder_name = folder_name
        self._folder_id: str | None = None
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds),
            headers={"Authorization": f"Bearer {access_token}"},
            transport=transport,
        )

    @property
    def enabled(self) -> bool:
        return bool(self._access_token)

    @property
    def folder_id(self) -> str | None:
        return self._folder_id

    async def aclose(self) -> None:
        await self._client.aclose()

    @retry(
        retry=retry_if_exception_type((httpx.TransportError, httpx.ReadTimeout)),
        stop=stop_after_attempt(3),
        wait=wait_exponential_jitter(initial=1, max=10),
        reraise=True,
    )
    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        return await self._client.request(method, url, **kwargs)

    async def _request(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        if not self.enabled:
            raise ExternalAPIError("document export is not configured")
        try:
            resp = await self._send(method, url, **kwargs)
        except httpx.TransportError as e:
            raise ExternalAPIError(str(e) or type(e).__name__) from e

        if resp.status_code >= 400:
            raise ExternalAPIError(
                f"{method} {url} failed: HTTP {resp.status_code}",
                status_code=resp.status_code,
            )
        try:
            data = resp.json()
        except ValueError as e:
            raise ExternalAPIError(f"{method} {url}: invalid JSON") from e
        if not isinstance(data, dict):
            raise ExternalAPIError(f"{method} {url}: unexpected body")
        return data

    async def initialize(self) -> str:
        """Find or create the results folder; returns its id."""
        query = f"name='{self._folder_name}' and mimeType='{FOLDER_MIME}' and trashed=false"
        data = await self._request(
            "GET",
            DRIVE_FILES_API,
            params={"q": query, "fields": "files(id, name)"},
        )
        files = data.get("files") or []
        if files:
            self._folder_id = str(files[0]["id"])
            logger.info("using existing export folder %s", self._folder_id)
            return self._folder_id

        created = await self._request(
            "POST",
            DRIVE_FILES_API,
            json={"name": self._folder_name, "mimeType": FOLDER_MIME},
        )
        self._folder_id = str(created["id"])
        logger.info("created export folder %s", self._folder_id)
        return self._folder_id

    async def create_document(self, title: str) -> str:
        data = await self._request("POST", DOCS_API, json={"title": title})
        document_id = data.get("documentId")
        if not document_id:
            raise ExternalAPIError("create document: no documentId in response")
        return str(document_id)

    async def batch_update(self, document_id: str, requests: list[dict[str, Any]]) -> None:
        if not requests:
            return
        await self._request(
            "POST",
            f"{DOCS_API}/{document_id}:batchUpdate",
            json={"requests": requests},
        )

    async def move_to_folder(self, document_id: str, folder_id: str) -> None:
        await self._request(
            "PATCH",
            f"{DRIVE_FILES_API}/{document_id}",
            params={"addParents": folder_id, "fields": "id, parents"},
            json={},
        )

    async def export(self, query: ScheduledQuery, payload: dict[str, Any]) -> ExportedDocument:
        title = document_title(query.query_text)
        document_id = await self.create_document(title)
        await self.batch_update(document_id, build_document_requests(payload))

        folder_id = query.google_folder_id or self._folder_id
        if folder_id is None:
            folder_id = await self.initialize()
        await self.move_to_folder(document_id, folder_id)

        logger.info("exported query_id=%s to document %s", query.id, document_id)
        return ExportedDocument(
            document_id=document_id,
            title=title,
            url=f"https://docs.google.com/document/d/{document_id}/edit",
        )

    async def check_connection(self) -> bool:
        try:
            await self._request("GET", DRIVE_FILES_API, params={"pageSize": 1, "fields": "files(id, name)"})
        except ExternalAPIError as e:
            logger.warning("document API connection failed: %s", e)
            return False
        logger.info("document API connected")
        return True
