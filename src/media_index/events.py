"""Typed scan events and the observer bus that delivers them."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, Optional, Union

from media_index.models import AssetFragment, DocumentDescriptor, ScanStats

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ScanEvent:
    pass


# --- Discovery ---


@dataclass(frozen=True, slots=True)
class DiscoveryStarted(ScanEvent):
    total_folders: int
    max_workers: int


@dataclass(frozen=True, slots=True)
class FolderProgress(ScanEvent):
    folder_path: str
    current_folder: str
    documents_found: int
    folders_remaining: int
    documents: tuple[DocumentDescriptor, ...] = ()


@dataclass(frozen=True, slots=True)
class FolderComplete(ScanEvent):
    folder_path: str
    documents: tuple[DocumentDescriptor, ...]
    document_count: int


@dataclass(frozen=True, slots=True)
class FolderScanError(ScanEvent):
    """One listing inside a subtree failed; the walk continued."""

    folder_path: str
    error: str


@dataclass(frozen=True, slots=True)
class FolderDiscoveryError(ScanEvent):
    """The subtree could not be walked at all."""

    folder_path: str
    error: str


@dataclass(frozen=True, slots=True)
class DocumentsDiscovered(ScanEvent):
    documents: tuple[DocumentDescriptor, ...]
    folder: str


@dataclass(frozen=True, slots=True)
class DiscoveryComplete(ScanEvent):
    total_documents: int
    total_folders: int = 0
    completed_folders: int = 0
    errors: int = 0


@dataclass(frozen=True, slots=True)
class DiscoveryError(ScanEvent):
    error: str


# --- Scanning ---


@dataclass(frozen=True, slots=True)
class PageScanned(ScanEvent):
    path: str
    assets: tuple[AssetFragment, ...]
    asset_count: int
    scan_duration_ms: int
    checksum: Optional[str] = None


@dataclass(frozen=True, slots=True)
class PageScanError(ScanEvent):
    page: str
    error: str


@dataclass(frozen=True, slots=True)
class BatchComplete(ScanEvent):
    processed_count: int


# --- Queue manager ---


@dataclass(frozen=True, slots=True)
class ScanningStarted(ScanEvent):
    session_id: str
    force_rescan: bool


@dataclass(frozen=True, slots=True)
class ScanningStopped(ScanEvent):
    persisted: bool
    stats: ScanStats = field(default_factory=ScanStats)


@dataclass(frozen=True, slots=True)
class QueueSizeUpdate(ScanEvent):
    queue_size: int


@dataclass(frozen=True, slots=True)
class ResumingFromQueue(ScanEvent):
    queue_size: int


@dataclass(frozen=True, slots=True)
class DocumentsSkipped(ScanEvent):
    documents: tuple[DocumentDescriptor, ...]
    reason: str


@dataclass(frozen=True, slots=True)
class DocumentsError(ScanEvent):
    documents: tuple[DocumentDescriptor, ...]
    error: str


@dataclass(frozen=True, slots=True)
class WorkerError(ScanEvent):
    worker: str
    error: str


ERROR_EVENTS: tuple[type[ScanEvent], ...] = (
    FolderScanError,
    FolderDiscoveryError,
    DiscoveryError,
    PageScanError,
    DocumentsError,
    WorkerError,
)

Listener = Callable[[ScanEvent], Union[Awaitable[None], None]]
Publish = Callable[[ScanEvent], Awaitable[None]]


class EventBus:
    """
    One-to-many delivery of scan events.

    Listeners are called in subscription order and awaited when they return an
    awaitable. A failing listener is logged and never breaks delivery to the rest.
    """

    def __init__(self) -> None:
        self._listeners: list[Listener] = []
        self._streams: list[asyncio.Queue[ScanEvent]] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    async def publish(self, event: ScanEvent) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Event listener failed. event=%s", type(event).__name__)
        for queue in list(self._streams):
            queue.put_nowait(event)

    async def stream(self) -> AsyncIterator[ScanEvent]:
        queue: asyncio.Queue[ScanEvent] = asyncio.Queue()
        self._streams.append(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._streams.remove(queue)
