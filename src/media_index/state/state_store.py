from __future__ import annotations

import asyncio
import json
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Iterable, Optional, Sequence, TypeVar

from media_index.config.models import ScanSettings, StoreSettings
from media_index.errors import ContentNotFoundError, ContentStoreError, ScanConflictError
from media_index.models import AssetFragment, DocumentDescriptor, ScanType
from media_index.state.io import (
    INDEX_KIND,
    LEASE_KIND,
    QUEUE_KIND,
    RESULTS_KIND,
    decode_index,
    decode_lease,
    decode_queue,
    decode_results,
    dump_state_file,
    encode_index,
    encode_lease,
    encode_queue,
    encode_results,
    parse_state_file,
)
from media_index.state.models import (
    INDEX_FILE,
    LEASE_FILE,
    QUEUE_FILE,
    RESULTS_FILE,
    IndexState,
    LeaseStatus,
    QueueState,
    ResultsState,
    ScanLease,
    ScanResultRecord,
)
from media_index.store.interfaces import ContentStore
from media_index.utils import utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")

LeaseLostCallback = Callable[[Optional[str]], Awaitable[None]]
HeartbeatErrorCallback = Callable[[Exception], Awaitable[None]]


def generate_session_id() -> str:
    return uuid.uuid4().hex


def needs_scan(
    document: DocumentDescriptor,
    record: Optional[ScanResultRecord],
    *,
    force_rescan: bool = False,
    now: Optional[datetime] = None,
    rescan_after: Optional[timedelta] = None,
) -> bool:
    """
    Decide whether a discovered document must be (re)scanned.

    True when forced, when there is no prior result, or when the document changed
    after its last scan. An unknown modification time never counts as a change.
    """
    if force_rescan or record is None:
        return True
    if document.last_modified_at is not None and document.last_modified_at > record.last_scanned_at:
        return True
    if rescan_after is not None and now is not None:
        return record.last_scanned_at < now - rescan_after
    return False


class StateStore:
    """
    Durable scan state kept in the content store: the tree-wide lease, the
    discovery queue, per-document scan results and the asset index.

    Every mutation is scoped to this instance's session id. The queue and
    results are only written by the lease holder, so the lease protects them.
    """

    def __init__(
        self,
        *,
        store: ContentStore,
        store_settings: StoreSettings,
        scan_settings: ScanSettings,
        session_id: Optional[str] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._scan_settings = scan_settings
        self._session_id = session_id or generate_session_id()
        self._clock = clock

        self._max_retries = max(0, int(store_settings.max_retries))
        self._retry_base_delay = store_settings.retry_base_delay_seconds
        self._lease_timeout = timedelta(seconds=scan_settings.lease_timeout_seconds)

        self._state_dir = f"{store_settings.root_path}/{scan_settings.state_dir.strip('/')}"

        self._heartbeat_task: Optional[asyncio.Task] = None
        self._heartbeat_stop = asyncio.Event()
        self._lease_lock = asyncio.Lock()
        self._on_lease_lost: Optional[LeaseLostCallback] = None
        self._on_heartbeat_error: Optional[HeartbeatErrorCallback] = None

        self._queue: Optional[dict[str, DocumentDescriptor]] = None
        self._queue_lock = asyncio.Lock()
        self._results: Optional[ResultsState] = None
        self._results_lock = asyncio.Lock()

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def state_dir(self) -> str:
        return self._state_dir

    def _path(self, filename: str) -> str:
        return f"{self._state_dir}/{filename}"

    async def ensure_state_files(self) -> None:
        """Create any missing state file with an empty payload. Store failures propagate."""
        initial: Sequence[tuple[str, str, dict[str, Any]]] = (
            (LEASE_FILE, LEASE_KIND, encode_lease(ScanLease())),
            (QUEUE_FILE, QUEUE_KIND, encode_queue(QueueState(documents=[]))),
            (RESULTS_FILE, RESULTS_KIND, encode_results(ResultsState(documents={}))),
            (INDEX_FILE, INDEX_KIND, encode_index(IndexState(assets={}))),
        )
        for filename, kind, body in initial:
            path = self._path(filename)
            if await self._with_retry(lambda: self._store.exists(path), path=path, operation="exists"):
                continue
            await self._write_state(filename, kind, body)
            logger.info("Created initial state file. path=%s", path)

    # --- Lease ---

    async def load_lease(self) -> ScanLease:
        lease = await self._read_state(LEASE_FILE, LEASE_KIND, decode_lease)
        return lease if lease is not None else ScanLease()

    def _is_abandoned(self, lease: ScanLease, now: datetime) -> bool:
        if lease.last_heartbeat_at is None:
            return True
        return now - lease.last_heartbeat_at > self._lease_timeout

    async def _live_lease(self) -> Optional[ScanLease]:
        """The active lease if someone still holds it; an abandoned lease is force-cleared."""
        lease = await self.load_lease()
        if not lease.is_active:
            return None
        if self._is_abandoned(lease, self._clock()):
            logger.warning(
                "Scan lease abandoned, reclaiming. session_id=%s last_heartbeat_at=%s",
                lease.session_id,
                lease.last_heartbeat_at,
            )
            await self._clear_lease(lease, status="error")
            return None
        return lease

    async def is_scan_active(self) -> bool:
        return await self._live_lease() is not None

    async def is_locked_by_other(self) -> bool:
        lease = await self._live_lease()
        return lease is not None and lease.session_id != self._session_id

    async def acquire_lease(
        self,
        scan_type: ScanType = "full",
        *,
        on_lost: Optional[LeaseLostCallback] = None,
        on_heartbeat_error: Optional[HeartbeatErrorCallback] = None,
    ) -> ScanLease:
        """
        Take the tree-wide lease and start the heartbeat.

        `on_lost` is awaited once, with the new holder, when a heartbeat or a
        progress update finds the lease taken over. `on_heartbeat_error` is
        awaited for every heartbeat write that fails.
        """
        async with self._lease_lock:
            current = await self._live_lease()
            if current is not None and current.session_id != self._session_id:
                raise ScanConflictError(current.session_id)

            now = self._clock()
            lease = ScanLease(
                is_active=True,
                session_id=self._session_id,
                scan_type=scan_type,
                started_at=now,
                last_heartbeat_at=now,
                status="running",
            )
            await self._write_state(LEASE_FILE, LEASE_KIND, encode_lease(lease))

            # The store has no compare-and-swap: let concurrent writers land, then check who won.
            await asyncio.sleep(self._scan_settings.lease_settle_seconds)
            confirmed = await self.load_lease()
            if confirmed.session_id != self._session_id:
                logger.warning(
                    "Lost scan lease race. session_id=%s winner=%s",
                    self._session_id,
                    confirmed.session_id,
                )
                raise ScanConflictError(confirmed.session_id)

            self._queue = None
            self._results = None
            self._on_lease_lost = on_lost
            self._on_heartbeat_error = on_heartbeat_error
            self._start_heartbeat()
            logger.info("Scan lease acquired. session_id=%s scan_type=%s", self._session_id, scan_type)
            return confirmed

    async def release_lease(self, *, status: LeaseStatus = "completed") -> None:
        await self._stop_heartbeat()
        self._on_lease_lost = None
        self._on_heartbeat_error = None
        async with self._lease_lock:
            lease = await self.load_lease()
            if lease.session_id != self._session_id:
                logger.warning(
                    "Not releasing scan lease held by another session. session_id=%s holder=%s",
                    self._session_id,
                    lease.session_id,
                )
                return
            await self._clear_lease(lease, status=status)
        logger.info("Scan lease released. session_id=%s status=%s", self._session_id, status)

    async def force_release(self) -> None:
        """Clear the discovery queue and the lease whoever holds it."""
        await self._stop_heartbeat()
        self._on_lease_lost = None
        self._on_heartbeat_error = None
        await self.clear_discovery_queue()
        async with self._lease_lock:
            lease = await self.load_lease()
            previous = lease.session_id
            await self._clear_lease(lease, status="error" if lease.is_active else lease.status)
        logger.warning("Scan lease force-released. previous_session_id=%s", previous)

    async def _clear_lease(self, lease: ScanLease, *, status: Optional[LeaseStatus]) -> None:
        lease.is_active = False
        lease.session_id = None
        lease.last_heartbeat_at = None
        lease.status = status
        await self._write_state(LEASE_FILE, LEASE_KIND, encode_lease(lease))

    async def update_progress(
        self,
        *,
        total_documents: Optional[int] = None,
        scanned_documents: Optional[int] = None,
        total_assets: Optional[int] = None,
    ) -> bool:
        """Merge progress into the lease and refresh its heartbeat. Only the holder may do this."""
        async with self._lease_lock:
            lease = await self.load_lease()
            held = self._holds(lease)
            if held:
                if total_documents is not None:
                    lease.progress.total_documents = total_documents
                if scanned_documents is not None:
                    lease.progress.scanned_documents = scanned_documents
                if total_assets is not None:
                    lease.progress.total_assets = total_assets
                lease.last_heartbeat_at = self._clock()
                await self._write_state(LEASE_FILE, LEASE_KIND, encode_lease(lease))
        if held:
            return True
        logger.warning(
            "Cannot update progress, not the lease owner. session_id=%s holder=%s",
            self._session_id,
            lease.session_id,
        )
        await self._notify_lease_lost(lease.session_id)
        return False

    async def verify_lease(self) -> bool:
        """True while this session holds the lease. Otherwise the lost-lease callback fires."""
        lease = await self.load_lease()
        if self._holds(lease):
            return True
        logger.warning(
            "Scan lease no longer held. session_id=%s holder=%s",
            self._session_id,
            lease.session_id,
        )
        await self._notify_lease_lost(lease.session_id)
        return False

    def _holds(self, lease: ScanLease) -> bool:
        return lease.is_active and lease.session_id == self._session_id

    async def _notify_lease_lost(self, holder: Optional[str]) -> None:
        callback, self._on_lease_lost = self._on_lease_lost, None
        if callback is not None:
            await callback(holder)

    def _start_heartbeat(self) -> None:
        if self._heartbeat_task and not self._heartbeat_task.done():
            return
        self._heartbeat_stop.clear()
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    async def _stop_heartbeat(self) -> None:
        if not self._heartbeat_task:
            return
        self._heartbeat_stop.set()
        if self._heartbeat_task is not asyncio.current_task():
            await self._heartbeat_task
        self._heartbeat_task = None

    async def _heartbeat_loop(self) -> None:
        interval = self._scan_settings.heartbeat_interval_seconds
        while not self._heartbeat_stop.is_set():
            try:
                await asyncio.wait_for(self._heartbeat_stop.wait(), timeout=interval)
                return
            except asyncio.TimeoutError:
                pass
            try:
                if not await self._beat():
                    return
            except Exception as e:
                logger.exception("Scan lease heartbeat failed. session_id=%s", self._session_id)
                if self._on_heartbeat_error is not None:
                    await self._on_heartbeat_error(e)

    async def _beat(self) -> bool:
        async with self._lease_lock:
            lease = await self.load_lease()
            held = self._holds(lease)
            if held:
                lease.last_heartbeat_at = self._clock()
                await self._write_state(LEASE_FILE, LEASE_KIND, encode_lease(lease))
                logger.debug("Scan lease heartbeat. session_id=%s", self._session_id)
        if held:
            return True
        logger.warning(
            "Scan lease no longer held, stopping heartbeat. session_id=%s holder=%s",
            self._session_id,
            lease.session_id,
        )
        await self._notify_lease_lost(lease.session_id)
        return False

    # --- Discovery queue ---

    async def _ensure_queue(self) -> dict[str, DocumentDescriptor]:
        if self._queue is None:
            state = await self._read_state(QUEUE_FILE, QUEUE_KIND, decode_queue)
            if state is None:
                state = QueueState(documents=[])
            self._queue = {document.path: document for document in state.documents}
        return self._queue

    async def load_discovery_queue(self) -> list[DocumentDescriptor]:
        async with self._queue_lock:
            queue = await self._ensure_queue()
            return list(queue.values())

    async def append_to_queue(self, documents: Iterable[DocumentDescriptor]) -> int:
        """Append documents not already pending. Returns the new queue size."""
        async with self._queue_lock:
            queue = await self._ensure_queue()
            added = 0
            for document in documents:
                if document.path in queue:
                    continue
                queue[document.path] = document
                added += 1
            if added:
                await self._persist_queue(queue)
            return len(queue)

    async def remove_from_queue(self, paths: Iterable[str]) -> int:
        async with self._queue_lock:
            queue = await self._ensure_queue()
            removed = 0
            for path in paths:
                if queue.pop(path, None) is not None:
                    removed += 1
            if removed:
                await self._persist_queue(queue)
            return len(queue)

    async def clear_discovery_queue(self) -> None:
        async with self._queue_lock:
            self._queue = {}
            await self._persist_queue(self._queue)

    async def _persist_queue(self, queue: dict[str, DocumentDescriptor]) -> None:
        state = QueueState(documents=list(queue.values()), session_id=self._session_id, updated_at=self._clock())
        await self._write_state(QUEUE_FILE, QUEUE_KIND, encode_queue(state))

    # --- Scan results ---

    async def _ensure_results(self) -> ResultsState:
        if self._results is None:
            results = await self._read_state(RESULTS_FILE, RESULTS_KIND, decode_results)
            self._results = results if results is not None else ResultsState(documents={})
        return self._results

    async def load_scan_results(self) -> ResultsState:
        async with self._results_lock:
            return await self._ensure_results()

    async def get_documents_to_scan(
        self,
        documents: Sequence[DocumentDescriptor],
        *,
        force_rescan: bool = False,
    ) -> list[DocumentDescriptor]:
        if force_rescan:
            return list(documents)
        results = await self.load_scan_results()
        rescan_hours = self._scan_settings.rescan_after_hours
        rescan_after = timedelta(hours=rescan_hours) if rescan_hours else None
        now = self._clock()
        return [
            document
            for document in documents
            if needs_scan(
                document,
                results.documents.get(document.path),
                now=now,
                rescan_after=rescan_after,
            )
        ]

    async def save_document_result(
        self,
        *,
        path: str,
        assets: Sequence[AssetFragment],
        checksum: Optional[str] = None,
        scan_duration_ms: int = 0,
    ) -> ScanResultRecord:
        async with self._results_lock:
            results = await self._ensure_results()
            now = self._clock()
            record = ScanResultRecord(
                path=path,
                last_scanned_at=now,
                asset_count=len(assets),
                assets=list(assets),
                checksum=checksum,
                scan_duration_ms=scan_duration_ms,
            )
            results.documents[path] = record
            results.updated_at = now
            await self._write_state(RESULTS_FILE, RESULTS_KIND, encode_results(results))
            return record

    async def clear_scan_results(self) -> None:
        async with self._results_lock:
            self._results = ResultsState(documents={}, updated_at=self._clock())
            await self._write_state(RESULTS_FILE, RESULTS_KIND, encode_results(self._results))

    # --- Asset index ---

    async def load_asset_index(self) -> IndexState:
        index = await self._read_state(INDEX_FILE, INDEX_KIND, decode_index)
        return index if index is not None else IndexState(assets={})

    async def save_asset_index(self, index: IndexState) -> None:
        index.updated_at = self._clock()
        await self._write_state(INDEX_FILE, INDEX_KIND, encode_index(index))

    # --- Statistics ---

    async def get_scan_statistics(self) -> dict[str, Any]:
        results = await self.load_scan_results()
        documents = list(results.documents.values())
        scanned_at = [record.last_scanned_at for record in documents]
        return {
            "total_documents": len(documents),
            "total_assets": sum(record.asset_count for record in documents),
            "last_scan_time": results.updated_at,
            "oldest_scan": min(scanned_at) if scanned_at else None,
            "newest_scan": max(scanned_at) if scanned_at else None,
        }

    # --- I/O ---

    async def _read_state(self, filename: str, kind: str, decode: Callable[[dict[str, Any]], T]) -> Optional[T]:
        """Read and decode one state file. Missing, foreign or malformed files yield None."""
        path = self._path(filename)
        try:
            raw = await self._with_retry(lambda: self._store.read(path), path=path, operation="read")
        except ContentNotFoundError:
            return None
        try:
            payload = parse_state_file(raw, kind=kind, path=path)
            if payload is None:
                return None
            return decode(payload)
        except (json.JSONDecodeError, AttributeError, KeyError, TypeError, ValueError):
            logger.exception("Failed to parse state file, starting fresh. path=%s", path)
            return None

    async def _write_state(self, filename: str, kind: str, body: dict[str, Any]) -> None:
        path = self._path(filename)
        content = dump_state_file(kind, body)
        await self._with_retry(lambda: self._store.write(path, content), path=path, operation="write")

    async def _with_retry(self, action: Callable[[], Awaitable[T]], *, path: str, operation: str) -> T:
        last_error: Optional[ContentStoreError] = None
        for attempt in range(self._max_retries + 1):
            try:
                return await action()
            except ContentNotFoundError:
                raise
            except ContentStoreError as e:
                if not e.retryable:
                    logger.error(
                        "State %s failed with a non-retryable status. path=%s status=%s",
                        operation,
                        path,
                        e.status,
                    )
                    raise
                logger.warning(
                    "State %s failed and will be retried. path=%s error=%s attempt=%s",
                    operation,
                    path,
                    e,
                    attempt + 1,
                )
                last_error = e

            if attempt < self._max_retries:
                await asyncio.sleep(self._retry_base_delay * (2**attempt))

        assert last_error is not None
        raise last_error
