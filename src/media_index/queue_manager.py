from __future__ import annotations

import asyncio
import logging
from typing import Optional, Sequence

from media_index.config.models import ScanSettings, StoreSettings
from media_index.discovery.coordinator import DiscoveryCoordinator
from media_index.errors import ContentStoreError, ScanConflictError
from media_index.events import (
    ERROR_EVENTS,
    DiscoveryComplete,
    DocumentsDiscovered,
    DocumentsError,
    DocumentsSkipped,
    EventBus,
    PageScanError,
    PageScanned,
    QueueSizeUpdate,
    ResumingFromQueue,
    ScanEvent,
    ScanningStarted,
    ScanningStopped,
    WorkerError,
)
from media_index.index.merger import AssetIndexMerger
from media_index.models import DocumentDescriptor, PersistentStats, ScanStats
from media_index.scanning.extraction import MediaExtractor
from media_index.scanning.scan_task import ScanTask
from media_index.state.state_store import StateStore
from media_index.store.interfaces import ContentStore

logger = logging.getLogger(__name__)


class QueueManager:
    """
    Orchestrates one scan session.

    Discovery and scanning run as two tasks. Discovered documents are filtered
    through the state store, appended to the persisted queue and pulled by the
    scan loop in batches. The session ends when discovery has finished and the
    queue is drained, or when `stop_queue_scanning` is called.

    Statistics are only mutated by this class's own event handlers.
    """

    def __init__(
        self,
        *,
        store: ContentStore,
        store_settings: StoreSettings,
        scan_settings: ScanSettings,
        state_store: StateStore,
        merger: AssetIndexMerger,
        extractor: MediaExtractor,
        bus: EventBus,
    ) -> None:
        self._settings = scan_settings
        self._state_store = state_store
        self._merger = merger
        self._bus = bus

        self._discovery = DiscoveryCoordinator(
            store=store,
            root_path=store_settings.root_path,
            scan_settings=scan_settings,
            publish=self._on_discovery_event,
        )
        self._scanner = ScanTask(
            store=store,
            extractor=extractor,
            concurrency=scan_settings.scan_concurrency,
            publish=self._on_scan_event,
            is_running=lambda: self._active and not self._lease_lost,
        )

        self._stats = ScanStats()
        self._active = False
        self._lease_lost = False
        self._force_rescan = False
        self._discovery_done = False
        self._in_flight = 0
        self._work: asyncio.Queue[DocumentDescriptor] = asyncio.Queue()
        self._pending_paths: set[str] = set()

        self._discovery_task: Optional[asyncio.Task] = None
        self._scan_loop_task: Optional[asyncio.Task] = None
        self._stop_task: Optional[asyncio.Task] = None
        self._stopped = asyncio.Event()
        self._stopped.set()

    @property
    def session_id(self) -> str:
        return self._state_store.session_id

    @property
    def is_active(self) -> bool:
        return self._active

    async def init(self) -> None:
        try:
            await self._state_store.ensure_state_files()
        except ContentStoreError as e:
            logger.error("Failed to create initial state files. session_id=%s error=%s", self.session_id, e)
            await self._emit(WorkerError(worker="init", error=str(e)))

    async def start_queue_scanning(self, *, force_rescan: bool = False) -> None:
        if self._active:
            raise ScanConflictError(self.session_id)
        if await self._state_store.is_locked_by_other():
            lease = await self._state_store.load_lease()
            raise ScanConflictError(lease.session_id)

        await self._state_store.acquire_lease(
            "force" if force_rescan else "incremental",
            on_lost=self._on_lease_lost,
            on_heartbeat_error=self._on_heartbeat_error,
        )

        self._stats = ScanStats()
        self._active = True
        self._lease_lost = False
        self._force_rescan = force_rescan
        self._discovery_done = False
        self._in_flight = 0
        self._work = asyncio.Queue()
        self._pending_paths = set()
        self._merger.reset()
        self._stopped.clear()

        try:
            await self._emit(ScanningStarted(session_id=self.session_id, force_rescan=force_rescan))
            if force_rescan:
                await self._state_store.clear_discovery_queue()
            else:
                await self._resume_queue()
        except Exception:
            logger.exception("Failed to start scanning. session_id=%s", self.session_id)
            self._active = False
            await self._state_store.release_lease(status="error")
            self._stopped.set()
            raise

        logger.info("Scanning started. session_id=%s force_rescan=%s", self.session_id, force_rescan)
        self._scan_loop_task = asyncio.create_task(self._scan_loop())
        self._discovery_task = asyncio.create_task(self._run_discovery())

    async def _resume_queue(self) -> None:
        documents = await self._state_store.load_discovery_queue()
        if not documents:
            return
        logger.info("Resuming from persisted queue. session_id=%s queue_size=%s", self.session_id, len(documents))
        self._enqueue(documents)
        await self._emit(ResumingFromQueue(queue_size=len(documents)))

    async def stop_queue_scanning(self, *, persist: bool = True) -> None:
        """
        Stop the session. With `persist` the pending queue is kept for the next
        start; without it the queue is cleared. The lease is released either way,
        unless another session has taken it over.
        """
        if not self._active:
            return
        self._active = False
        self._discovery.stop_discovery()
        logger.info("Stopping scanning. session_id=%s persist=%s", self.session_id, persist)

        current = asyncio.current_task()
        for task in (self._discovery_task, self._scan_loop_task):
            if task is not None and task is not current and not task.done():
                await task

        try:
            # After a takeover the queue and progress belong to the new holder.
            if not self._lease_lost and await self._state_store.verify_lease():
                if persist:
                    await self._state_store.update_progress(
                        total_documents=self._stats.total_pages,
                        scanned_documents=self._stats.scanned_pages,
                        total_assets=self._stats.total_assets,
                    )
                else:
                    await self._state_store.clear_discovery_queue()
            await self._state_store.release_lease(status="error" if self._stats.errors else "completed")
        except ContentStoreError as e:
            logger.error("Failed to finalize scan state. session_id=%s error=%s", self.session_id, e)
            await self._emit(WorkerError(worker="finalize", error=str(e)))
        finally:
            logger.info(
                "Scanning stopped. session_id=%s persisted=%s stats=%s",
                self.session_id,
                persist,
                self._stats.as_dict(),
            )
            await self._emit(ScanningStopped(persisted=persist, stats=self._stats.copy()))
            self._stopped.set()

    async def wait_until_stopped(self) -> None:
        await self._stopped.wait()

    async def force_release(self) -> None:
        if self._active:
            await self.stop_queue_scanning(persist=False)
        await self._state_store.force_release()

    def get_stats(self) -> ScanStats:
        return self._stats.copy()

    async def is_scan_active(self) -> bool:
        if self._active:
            return True
        return await self._state_store.is_scan_active()

    async def get_persistent_stats(self) -> PersistentStats:
        scan_statistics = await self._state_store.get_scan_statistics()
        asset_statistics = await self._merger.statistics()
        return PersistentStats(
            session=self.get_stats(),
            is_active=await self.is_scan_active(),
            current_session=self._active,
            total_documents=scan_statistics["total_documents"],
            total_assets=asset_statistics["total_assets"],
            last_scan_time=scan_statistics["last_scan_time"],
            oldest_scan=scan_statistics["oldest_scan"],
            newest_scan=scan_statistics["newest_scan"],
            assets_by_type=asset_statistics["assets_by_type"],
            external_assets=asset_statistics["external_assets"],
            unused_assets=asset_statistics["unused_assets"],
            most_used_assets=asset_statistics["most_used_assets"],
        )

    # --- Tasks ---

    async def _run_discovery(self) -> None:
        try:
            if self._active:
                await self._discovery.start_discovery()
        finally:
            self._discovery_done = True
        await self._check_completion()

    async def _scan_loop(self) -> None:
        while self._active:
            batch = await self._next_batch()
            if not batch:
                await self._check_completion()
                continue

            self._in_flight += len(batch)
            try:
                await self._scanner.process_batch(batch)
            except Exception as e:
                logger.exception("Scan batch failed. session_id=%s batch_size=%s", self.session_id, len(batch))
                await self._emit(WorkerError(worker="scan", error=str(e)))
            finally:
                self._in_flight -= len(batch)
            await self._check_completion()

    async def _next_batch(self) -> list[DocumentDescriptor]:
        try:
            first = await asyncio.wait_for(self._work.get(), timeout=self._settings.batch_poll_seconds)
        except asyncio.TimeoutError:
            return []
        batch = [first]
        while len(batch) < self._settings.scan_batch_size and not self._work.empty():
            batch.append(self._work.get_nowait())
        return batch

    async def _check_completion(self) -> None:
        if not self._active or not self._discovery_done:
            return
        if not self._work.empty() or self._in_flight:
            return
        logger.info("Discovery complete and queue drained. session_id=%s", self.session_id)
        await self.stop_queue_scanning(persist=False)

    def _enqueue(self, documents: Sequence[DocumentDescriptor]) -> None:
        for document in documents:
            self._pending_paths.add(document.path)
            self._work.put_nowait(document)
        self._stats.queued_pages += len(documents)

    # --- Event handlers ---

    async def _emit(self, event: ScanEvent) -> None:
        if isinstance(event, ERROR_EVENTS):
            self._stats.errors += 1
        await self._bus.publish(event)

    async def _on_discovery_event(self, event: ScanEvent) -> None:
        await self._emit(event)
        if isinstance(event, DocumentsDiscovered):
            await self._handle_discovered(event)
        elif isinstance(event, DiscoveryComplete):
            self._stats.total_pages = event.total_documents

    async def _on_lease_lost(self, holder: Optional[str]) -> None:
        if self._lease_lost:
            return
        self._lease_lost = True
        logger.error("Scan lease taken over, stopping. session_id=%s holder=%s", self.session_id, holder)
        await self._emit(WorkerError(worker="lease", error=f"Scan lease is now held by session {holder}"))
        if self._active:
            # Stopping awaits the scan tasks, which may be the caller.
            self._stop_task = asyncio.create_task(self.stop_queue_scanning(persist=True))

    async def _on_heartbeat_error(self, error: Exception) -> None:
        await self._emit(WorkerError(worker="heartbeat", error=str(error)))

    async def _handle_discovered(self, event: DocumentsDiscovered) -> None:
        self._stats.total_pages += len(event.documents)
        if not self._active or self._lease_lost:
            return

        fresh = [document for document in event.documents if document.path not in self._pending_paths]
        if len(fresh) < len(event.documents):
            queued = tuple(document for document in event.documents if document.path in self._pending_paths)
            await self._emit(DocumentsSkipped(documents=queued, reason="already_queued"))

        try:
            to_scan = await self._state_store.get_documents_to_scan(fresh, force_rescan=self._force_rescan)
        except Exception as e:
            logger.exception("Failed to filter discovered documents. folder=%s", event.folder)
            await self._emit(DocumentsError(documents=tuple(fresh), error=str(e)))
            return

        scan_paths = {document.path for document in to_scan}
        skipped = tuple(document for document in fresh if document.path not in scan_paths)
        if skipped:
            await self._emit(DocumentsSkipped(documents=skipped, reason="already_scanned"))
        if not to_scan:
            return

        try:
            queue_size = await self._state_store.append_to_queue(to_scan)
        except ContentStoreError as e:
            logger.error("Failed to persist discovered documents. folder=%s error=%s", event.folder, e)
            await self._emit(DocumentsError(documents=tuple(to_scan), error=str(e)))
            return

        self._enqueue(to_scan)
        await self._emit(QueueSizeUpdate(queue_size=queue_size))

    async def _on_scan_event(self, event: ScanEvent) -> None:
        if isinstance(event, PageScanned):
            await self._handle_page_scanned(event)
        elif isinstance(event, PageScanError):
            await self._handle_page_error(event)
        else:
            await self._emit(event)

    async def _handle_page_scanned(self, event: PageScanned) -> None:
        # Lease check, then the index, the result record and the queue entry, in that order.
        try:
            if self._lease_lost or not await self._state_store.verify_lease():
                logger.info("Dropping scan result after losing the lease. path=%s", event.path)
                return
            await self._merger.merge(event.path, event.assets, replace=self._force_rescan)
            await self._state_store.save_document_result(
                path=event.path,
                assets=event.assets,
                checksum=event.checksum,
                scan_duration_ms=event.scan_duration_ms,
            )
            queue_size = await self._state_store.remove_from_queue([event.path])
        except Exception as e:
            logger.exception("Failed to record scanned document. path=%s", event.path)
            self._pending_paths.discard(event.path)
            await self._emit(WorkerError(worker="recorder", error=str(e)))
            return

        self._pending_paths.discard(event.path)
        self._stats.scanned_pages += 1
        self._stats.total_assets += event.asset_count

        try:
            await self._state_store.update_progress(
                total_documents=self._stats.total_pages,
                scanned_documents=self._stats.scanned_pages,
                total_assets=self._stats.total_assets,
            )
        except ContentStoreError as e:
            logger.warning("Failed to update scan progress. session_id=%s error=%s", self.session_id, e)
            await self._emit(WorkerError(worker="progress", error=str(e)))

        await self._emit(event)
        await self._emit(QueueSizeUpdate(queue_size=queue_size))

    async def _handle_page_error(self, event: PageScanError) -> None:
        self._pending_paths.discard(event.page)
        await self._emit(event)
        if self._lease_lost:
            return
        try:
            await self._state_store.remove_from_queue([event.page])
        except ContentStoreError as e:
            logger.warning("Failed to drop failed document from queue. path=%s error=%s", event.page, e)
            await self._emit(WorkerError(worker="queue", error=str(e)))
