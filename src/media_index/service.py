from __future__ import annotations

import logging
from typing import AsyncIterator, Callable, Optional

from media_index.config.models import AppConfig
from media_index.errors import ScanConflictError
from media_index.events import EventBus, Listener, ScanEvent
from media_index.index.merger import AssetIndexMerger
from media_index.models import PersistentStats, ScanStats
from media_index.queue_manager import QueueManager
from media_index.scanning.extraction import MediaExtractor
from media_index.state.state_store import StateStore
from media_index.store.http_store import HttpContentStore
from media_index.store.interfaces import ContentStore

logger = logging.getLogger(__name__)


class MediaIndexService:
    """
    Composition root for one client session.

    Builds every component from `AppConfig`. When no store is passed an
    `HttpContentStore` is created and owned by the service, so use the service
    as an async context manager or call `start()`/`stop()`.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        store: Optional[ContentStore] = None,
        session_id: Optional[str] = None,
    ) -> None:
        self._config = config
        self._owned_store: Optional[HttpContentStore] = None
        if store is None:
            self._owned_store = HttpContentStore(config.store)
            store = self._owned_store
        self._store = store

        self._bus = EventBus()
        self._state_store = StateStore(
            store=store,
            store_settings=config.store,
            scan_settings=config.scan,
            session_id=session_id,
        )
        self._merger = AssetIndexMerger(state_store=self._state_store)
        self._extractor = MediaExtractor(
            internal_hosts=config.scan.internal_hosts,
            image_service_patterns=config.scan.image_service_patterns,
        )
        self._queue_manager = QueueManager(
            store=store,
            store_settings=config.store,
            scan_settings=config.scan,
            state_store=self._state_store,
            merger=self._merger,
            extractor=self._extractor,
            bus=self._bus,
        )
        self._initialized = False

    async def __aenter__(self) -> MediaIndexService:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    @property
    def session_id(self) -> str:
        return self._state_store.session_id

    @property
    def state_store(self) -> StateStore:
        return self._state_store

    @property
    def merger(self) -> AssetIndexMerger:
        return self._merger

    async def start(self) -> None:
        if self._owned_store is not None:
            await self._owned_store.start()
        if not self._initialized:
            await self._queue_manager.init()
            self._initialized = True

    async def stop(self) -> None:
        """Persist and release an active scan, then close the owned store."""
        try:
            if self._queue_manager.is_active:
                await self._queue_manager.stop_queue_scanning(persist=True)
        finally:
            if self._owned_store is not None:
                await self._owned_store.stop()

    async def start_scan(self, *, force_rescan: bool = False) -> None:
        if not self._initialized:
            await self.start()
        await self._queue_manager.start_queue_scanning(force_rescan=force_rescan)

    async def stop_scan(self, *, persist: bool = True) -> None:
        await self._queue_manager.stop_queue_scanning(persist=persist)

    async def wait_until_stopped(self) -> None:
        await self._queue_manager.wait_until_stopped()

    async def is_scan_active(self) -> bool:
        return await self._queue_manager.is_scan_active()

    def get_stats(self) -> ScanStats:
        return self._queue_manager.get_stats()

    async def get_persistent_stats(self) -> PersistentStats:
        return await self._queue_manager.get_persistent_stats()

    async def force_release(self) -> None:
        await self._queue_manager.force_release()

    async def clear_index(self) -> None:
        """Empty the asset index and the scan results so the next scan reindexes every document."""
        await self._ensure_idle()
        await self._merger.clear()
        await self._state_store.clear_scan_results()

    async def export_index(self) -> str:
        return await self._merger.export_index()

    async def import_index(self, raw: str, *, source: str = "<import>") -> int:
        await self._ensure_idle()
        return await self._merger.import_index(raw, source=source)

    async def _ensure_idle(self) -> None:
        if await self._queue_manager.is_scan_active():
            lease = await self._state_store.load_lease()
            raise ScanConflictError(lease.session_id or self.session_id)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        return self._bus.subscribe(listener)

    def events(self) -> AsyncIterator[ScanEvent]:
        return self._bus.stream()
