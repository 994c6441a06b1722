from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Callable

from media_index.errors import ContentStoreError
from media_index.events import FolderDiscoveryError, FolderProgress, FolderScanError, Publish
from media_index.models import DocumentDescriptor
from media_index.store.interfaces import ContentStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class FolderWalkResult:
    folder_path: str
    documents: list[DocumentDescriptor] = field(default_factory=list)
    # Found since the last progress report.
    unreported: list[DocumentDescriptor] = field(default_factory=list)
    folders_listed: int = 0
    errors: int = 0
    failed: bool = False


class FolderDiscoveryTask:
    """
    Breadth-first walk of one subtree.

    Documents are reported in `FolderProgress` batches every `progress_every`
    finds. A failed listing below the subtree root is reported and skipped; a
    failure on the subtree root itself ends the walk.
    """

    def __init__(
        self,
        *,
        store: ContentStore,
        folder_path: str,
        document_extension: str,
        progress_every: int,
        publish: Publish,
        is_running: Callable[[], bool],
        skip_paths: frozenset[str] = frozenset(),
    ) -> None:
        self._store = store
        self._folder_path = folder_path
        self._document_extension = document_extension.lower().lstrip(".")
        self._progress_every = max(1, int(progress_every))
        self._publish = publish
        self._is_running = is_running
        self._skip_paths = skip_paths

    async def run(self) -> FolderWalkResult:
        result = FolderWalkResult(folder_path=self._folder_path)
        pending_folders: deque[str] = deque([self._folder_path])

        while pending_folders:
            if not self._is_running():
                logger.info("Folder walk stopped. folder=%s documents=%s", self._folder_path, len(result.documents))
                break

            current = pending_folders.popleft()
            try:
                entries = await self._store.list(current)
            except ContentStoreError as e:
                if result.folders_listed == 0:
                    logger.warning("Folder discovery failed. folder=%s error=%s", current, e)
                    result.failed = True
                    await self._publish(FolderDiscoveryError(folder_path=current, error=str(e)))
                    return result
                logger.warning("Folder listing failed, continuing. folder=%s error=%s", current, e)
                result.errors += 1
                await self._publish(FolderScanError(folder_path=current, error=str(e)))
                continue
            result.folders_listed += 1

            for entry in entries:
                if entry.path in self._skip_paths:
                    continue
                if entry.kind == "folder":
                    pending_folders.append(entry.path)
                    continue
                if entry.ext != self._document_extension:
                    continue
                document = DocumentDescriptor(
                    path=entry.path,
                    name=entry.name,
                    last_modified_at=entry.last_modified_at,
                )
                result.documents.append(document)
                result.unreported.append(document)
                if len(result.unreported) >= self._progress_every:
                    await self._report_progress(result, current, len(pending_folders))

        logger.debug(
            "Folder walk finished. folder=%s documents=%s folders_listed=%s errors=%s",
            self._folder_path,
            len(result.documents),
            result.folders_listed,
            result.errors,
        )
        return result

    async def _report_progress(self, result: FolderWalkResult, current: str, folders_remaining: int) -> None:
        if not self._is_running():
            return
        batch = tuple(result.unreported)
        result.unreported.clear()
        await self._publish(
            FolderProgress(
                folder_path=self._folder_path,
                current_folder=current,
                documents_found=len(result.documents),
                folders_remaining=folders_remaining,
                documents=batch,
            )
        )
