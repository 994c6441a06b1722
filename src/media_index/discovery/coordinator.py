from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Sequence

from media_index.config.models import ScanSettings
from media_index.discovery.folder_task import FolderDiscoveryTask, FolderWalkResult
from media_index.errors import ContentStoreError
from media_index.events import (
    DiscoveryComplete,
    DiscoveryError,
    DiscoveryStarted,
    DocumentsDiscovered,
    FolderComplete,
    FolderDiscoveryError,
    FolderProgress,
    Publish,
    ScanEvent,
)
from media_index.models import DocumentDescriptor
from media_index.store.interfaces import ContentStore, StoreEntry

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class DiscoverySummary:
    total_documents: int
    total_folders: int
    completed_folders: int
    errors: int
    stopped: bool = False


class DiscoveryCoordinator:
    """
    Fans the content tree out into one walk per top-level folder.

    Root documents are published as a single batch, then folders are walked in
    batches of `discovery_workers`, each batch awaited before the next starts.
    """

    def __init__(
        self,
        *,
        store: ContentStore,
        root_path: str,
        scan_settings: ScanSettings,
        publish: Publish,
    ) -> None:
        self._store = store
        self._root_path = root_path.rstrip("/")
        self._settings = scan_settings
        self._publish = publish
        self._skip_paths = frozenset({f"{self._root_path}/{scan_settings.state_dir.strip('/')}"})
        self._document_extension = scan_settings.document_extension.lower().lstrip(".")

        self._running = False
        self._total_documents = 0

    @property
    def is_running(self) -> bool:
        return self._running

    def stop_discovery(self) -> None:
        if self._running:
            logger.info("Stopping discovery. root=%s", self._root_path)
        self._running = False

    async def start_discovery(self) -> DiscoverySummary:
        self._running = True
        self._total_documents = 0
        try:
            return await self._run()
        except Exception as e:
            logger.exception("Discovery failed. root=%s", self._root_path)
            await self._publish(DiscoveryError(error=str(e)))
            return DiscoverySummary(
                total_documents=self._total_documents,
                total_folders=0,
                completed_folders=0,
                errors=1,
                stopped=not self._running,
            )
        finally:
            self._running = False

    async def _run(self) -> DiscoverySummary:
        try:
            entries = await self._store.list(self._root_path)
        except ContentStoreError as e:
            logger.error("Failed to list content root. root=%s error=%s", self._root_path, e)
            await self._publish(DiscoveryError(error=str(e)))
            return DiscoverySummary(total_documents=0, total_folders=0, completed_folders=0, errors=1)

        folders, root_documents = self._partition(entries)
        max_workers = self._settings.discovery_workers
        total_folders = len(folders) + (1 if root_documents else 0)

        logger.info(
            "Discovery started. root=%s folders=%s root_documents=%s max_workers=%s",
            self._root_path,
            len(folders),
            len(root_documents),
            max_workers,
        )
        await self._publish(DiscoveryStarted(total_folders=total_folders, max_workers=max_workers))

        completed = 0
        errors = 0
        if root_documents and self._running:
            await self._emit_documents(root_documents, folder=self._root_path)
            completed += 1

        for start in range(0, len(folders), max_workers):
            if not self._running:
                break
            batch = folders[start : start + max_workers]
            results = await asyncio.gather(*(self._walk_folder(folder) for folder in batch))
            for result in results:
                if result.failed:
                    errors += 1
                else:
                    completed += 1

        stopped = not self._running
        summary = DiscoverySummary(
            total_documents=self._total_documents,
            total_folders=total_folders,
            completed_folders=completed,
            errors=errors,
            stopped=stopped,
        )
        if stopped:
            logger.info("Discovery stopped before completion. documents=%s", self._total_documents)
            return summary

        logger.info(
            "Discovery complete. documents=%s folders=%s completed=%s errors=%s",
            summary.total_documents,
            total_folders,
            completed,
            errors,
        )
        await self._publish(
            DiscoveryComplete(
                total_documents=summary.total_documents,
                total_folders=total_folders,
                completed_folders=completed,
                errors=errors,
            )
        )
        return summary

    def _partition(self, entries: Sequence[StoreEntry]) -> tuple[list[str], list[DocumentDescriptor]]:
        folders: list[str] = []
        documents: list[DocumentDescriptor] = []
        for entry in entries:
            if entry.path in self._skip_paths:
                continue
            if entry.kind == "folder":
                folders.append(entry.path)
            elif entry.ext == self._document_extension:
                documents.append(
                    DocumentDescriptor(path=entry.path, name=entry.name, last_modified_at=entry.last_modified_at)
                )
        return folders, documents

    async def _walk_folder(self, folder_path: str) -> FolderWalkResult:
        task = FolderDiscoveryTask(
            store=self._store,
            folder_path=folder_path,
            document_extension=self._document_extension,
            progress_every=self._settings.discovery_progress_every,
            publish=self._relay,
            is_running=lambda: self._running,
            skip_paths=self._skip_paths,
        )
        try:
            result = await task.run()
        except Exception as e:
            logger.exception("Folder walk crashed. folder=%s", folder_path)
            await self._publish(FolderDiscoveryError(folder_path=folder_path, error=str(e)))
            return FolderWalkResult(folder_path=folder_path, failed=True)

        if result.failed or not self._running:
            return result
        if result.unreported:
            await self._emit_documents(result.unreported, folder=folder_path)
            result.unreported = []
        await self._publish(
            FolderComplete(
                folder_path=folder_path,
                documents=tuple(result.documents),
                document_count=len(result.documents),
            )
        )
        return result

    async def _relay(self, event: ScanEvent) -> None:
        await self._publish(event)
        if isinstance(event, FolderProgress) and event.documents:
            await self._emit_documents(event.documents, folder=event.folder_path)

    async def _emit_documents(self, documents: Sequence[DocumentDescriptor], *, folder: str) -> None:
        if not self._running:
            return
        self._total_documents += len(documents)
        await self._publish(DocumentsDiscovered(documents=tuple(documents), folder=folder))
