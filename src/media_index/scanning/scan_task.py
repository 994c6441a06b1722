from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Sequence

from media_index.errors import ContentStoreError
from media_index.events import BatchComplete, PageScanError, PageScanned, Publish
from media_index.models import DocumentDescriptor
from media_index.scanning.extraction import MediaExtractor
from media_index.store.interfaces import ContentStore
from media_index.utils import hash_text

logger = logging.getLogger(__name__)


class ScanTask:
    """Fetches and extracts a batch of documents with bounded concurrency."""

    def __init__(
        self,
        *,
        store: ContentStore,
        extractor: MediaExtractor,
        concurrency: int,
        publish: Publish,
        is_running: Callable[[], bool],
    ) -> None:
        self._store = store
        self._extractor = extractor
        self._publish = publish
        self._is_running = is_running
        self._semaphore = asyncio.Semaphore(max(1, int(concurrency)))

    async def process_batch(self, documents: Sequence[DocumentDescriptor]) -> int:
        """Scan every document in the batch. Returns how many were attempted."""
        outcomes = await asyncio.gather(*(self._scan_one(document) for document in documents))
        processed = sum(1 for attempted in outcomes if attempted)
        await self._publish(BatchComplete(processed_count=processed))
        return processed

    async def _scan_one(self, document: DocumentDescriptor) -> bool:
        async with self._semaphore:
            if not self._is_running():
                return False

            started = time.perf_counter()
            try:
                content = await self._store.read(document.path)
                fragments = self._extractor.extract(content, document.path)
            except ContentStoreError as e:
                logger.warning("Failed to fetch document. path=%s error=%s", document.path, e)
                await self._publish(PageScanError(page=document.path, error=str(e)))
                return True
            except Exception as e:
                logger.exception("Failed to scan document. path=%s", document.path)
                await self._publish(PageScanError(page=document.path, error=str(e)))
                return True

            duration_ms = int((time.perf_counter() - started) * 1000)
            logger.debug(
                "Document scanned. path=%s assets=%s duration_ms=%s",
                document.path,
                len(fragments),
                duration_ms,
            )
            await self._publish(
                PageScanned(
                    path=document.path,
                    assets=tuple(fragments),
                    asset_count=len(fragments),
                    scan_duration_ms=duration_ms,
                    checksum=hash_text(content),
                )
            )
            return True
