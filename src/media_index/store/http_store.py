from __future__ import annotations

import asyncio
import logging
import posixpath
from typing import Any, Optional, Sequence

import aiohttp

from media_index.config.models import StoreSettings
from media_index.errors import ContentNotFoundError, ContentStoreError
from media_index.store.interfaces import StoreEntry
from media_index.utils import from_epoch_millis

logger = logging.getLogger(__name__)


def _content_type_for(path: str) -> str:
    ext = posixpath.splitext(path)[1].lower()
    if ext == ".json":
        return "application/json"
    if ext in (".html", ".htm"):
        return "text/html"
    return "text/plain"


def _parse_entry(item: dict[str, Any]) -> Optional[StoreEntry]:
    path = str(item.get("path") or "").strip()
    if not path:
        return None
    ext = str(item.get("ext") or "").strip().lower()
    name = str(item.get("name") or posixpath.basename(path))
    return StoreEntry(
        name=name,
        path=path,
        kind="file" if ext else "folder",
        ext=ext,
        last_modified_at=from_epoch_millis(item.get("lastModified")),
    )


class HttpContentStore:
    """
    Content store backed by a document-authoring admin API.

    `GET {base}/list{path}` lists a folder, `GET|POST|HEAD {base}/source{path}`
    reads, writes and checks for a file. Paths include the `/{org}/{repo}` prefix.
    """

    def __init__(self, settings: StoreSettings) -> None:
        self._settings = settings
        self._base_url = settings.base_url.rstrip("/")
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> HttpContentStore:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    async def start(self) -> None:
        if self._session and not self._session.closed:
            return
        timeout = aiohttp.ClientTimeout(total=self._settings.request_timeout_seconds)
        headers = {}
        if self._settings.token:
            headers["Authorization"] = f"Bearer {self._settings.token}"
        self._session = aiohttp.ClientSession(timeout=timeout, headers=headers)

    async def stop(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    def _require_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            raise RuntimeError("HttpContentStore is not started. Use 'async with' or call start().")
        return self._session

    async def list(self, path: str) -> Sequence[StoreEntry]:
        url = f"{self._base_url}/list{path}"
        data = await self._request_json("GET", url, path=path)
        items = data if isinstance(data, list) else (data or {}).get("items", [])
        entries: list[StoreEntry] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            entry = _parse_entry(item)
            if entry is not None:
                entries.append(entry)
        logger.debug("store.list path=%s entries=%d", path, len(entries))
        return entries

    async def read(self, path: str) -> str:
        url = f"{self._base_url}/source{path}"
        session = self._require_session()
        try:
            async with session.get(url) as response:
                if response.status == 404:
                    raise ContentNotFoundError(path)
                if response.status != 200:
                    body = await response.text()
                    raise ContentStoreError(f"HTTP {response.status}: {body[:200]}", path=path, status=response.status)
                return await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ContentStoreError(f"Read failed: {e}", path=path) from e

    async def write(self, path: str, content: str) -> None:
        url = f"{self._base_url}/source{path}"
        session = self._require_session()
        form = aiohttp.FormData()
        form.add_field(
            "data",
            content.encode("utf-8"),
            filename=posixpath.basename(path),
            content_type=_content_type_for(path),
        )
        try:
            async with session.post(url, data=form) as response:
                if response.status not in (200, 201, 204):
                    body = await response.text()
                    raise ContentStoreError(f"HTTP {response.status}: {body[:200]}", path=path, status=response.status)
                response.release()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ContentStoreError(f"Write failed: {e}", path=path) from e
        logger.debug("store.write path=%s bytes=%d", path, len(content))

    async def exists(self, path: str) -> bool:
        url = f"{self._base_url}/source{path}"
        session = self._require_session()
        try:
            async with session.head(url) as response:
                return response.status == 200
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ContentStoreError(f"Existence check failed: {e}", path=path) from e

    async def _request_json(self, method: str, url: str, *, path: str) -> Any:
        session = self._require_session()
        try:
            async with session.request(method, url) as response:
                if response.status == 404:
                    raise ContentNotFoundError(path)
                if response.status != 200:
                    body = await response.text()
                    raise ContentStoreError(f"HTTP {response.status}: {body[:200]}", path=path, status=response.status)
                return await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ContentStoreError(f"Request failed: {e}", path=path) from e
