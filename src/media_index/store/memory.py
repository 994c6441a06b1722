from __future__ import annotations

import asyncio
import posixpath
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Sequence

from media_index.errors import ContentNotFoundError, ContentStoreError
from media_index.store.interfaces import StoreEntry
from media_index.utils import utc_now


@dataclass(slots=True)
class _StoredFile:
    content: str
    last_modified_at: datetime


@dataclass
class InMemoryContentStore:
    """
    A deterministic in-process content store for tests and dry runs.

    Folders are implied by file paths. Paths listed in `failing_lists` or
    `failing_reads` raise `ContentStoreError`, which lets callers exercise
    their error paths without a network.
    """

    files: dict[str, _StoredFile] = field(default_factory=dict)
    failing_lists: set[str] = field(default_factory=set)
    failing_reads: set[str] = field(default_factory=set)
    write_count: int = 0

    def put(self, path: str, content: str, *, last_modified_at: Optional[datetime] = None) -> None:
        self.files[path] = _StoredFile(content=content, last_modified_at=last_modified_at or utc_now())

    def get(self, path: str) -> Optional[str]:
        stored = self.files.get(path)
        return stored.content if stored else None

    async def list(self, path: str) -> Sequence[StoreEntry]:
        await asyncio.sleep(0)
        folder = path.rstrip("/")
        if folder in self.failing_lists:
            raise ContentStoreError("Simulated listing failure", path=folder, status=503)
        prefix = folder + "/"
        files: list[StoreEntry] = []
        folders: dict[str, StoreEntry] = {}
        for file_path, stored in self.files.items():
            if not file_path.startswith(prefix):
                continue
            remainder = file_path[len(prefix) :]
            head, sep, _ = remainder.partition("/")
            if sep:
                child = prefix + head
                folders.setdefault(child, StoreEntry(name=head, path=child, kind="folder"))
                continue
            stem, ext = posixpath.splitext(head)
            files.append(
                StoreEntry(
                    name=stem,
                    path=file_path,
                    kind="file",
                    ext=ext.lstrip(".").lower(),
                    last_modified_at=stored.last_modified_at,
                )
            )
        if not files and not folders and not self._is_known_folder(folder):
            raise ContentNotFoundError(folder)
        return sorted(folders.values(), key=lambda e: e.path) + sorted(files, key=lambda e: e.path)

    async def read(self, path: str) -> str:
        await asyncio.sleep(0)
        if path in self.failing_reads:
            raise ContentStoreError("Simulated read failure", path=path, status=500)
        stored = self.files.get(path)
        if stored is None:
            raise ContentNotFoundError(path)
        return stored.content

    async def write(self, path: str, content: str) -> None:
        await asyncio.sleep(0)
        self.write_count += 1
        self.put(path, content)

    async def exists(self, path: str) -> bool:
        await asyncio.sleep(0)
        return path in self.files or self._is_known_folder(path.rstrip("/"))

    def _is_known_folder(self, folder: str) -> bool:
        prefix = folder + "/"
        return any(p.startswith(prefix) for p in self.files)
