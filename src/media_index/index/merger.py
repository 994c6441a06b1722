from __future__ import annotations

import asyncio
import logging
from collections import Counter
from datetime import datetime
from typing import Any, Callable, Optional, Sequence

from media_index.models import AssetFragment, AssetRecord
from media_index.scanning.extraction import asset_name_for, asset_type_for
from media_index.state.io import INDEX_KIND, dump_state_file, encode_index, read_index_export
from media_index.state.models import IndexState
from media_index.state.state_store import StateStore
from media_index.utils import stable_asset_id, utc_now

logger = logging.getLogger(__name__)

MOST_USED_LIMIT = 10


def merge_fragments(
    index: IndexState,
    fragments: Sequence[AssetFragment],
    *,
    path: str,
    now: datetime,
    replace: bool = False,
) -> int:
    """
    Merge one document's fragments into the index in place. Returns the number of new assets.

    `used_in` is only ever unioned, except with `replace=True` where `path` is first
    dropped from assets the document no longer references.
    """
    if replace:
        referenced = {fragment.src for fragment in fragments}
        for asset in index.assets.values():
            if asset.src not in referenced and path in asset.used_in:
                asset.used_in.remove(path)

    added = 0
    for fragment in fragments:
        usages = list(dict.fromkeys((*fragment.used_in, path)))
        existing = index.assets.get(fragment.src)
        if existing is None:
            index.assets[fragment.src] = AssetRecord(
                id=stable_asset_id(fragment.src),
                src=fragment.src,
                name=asset_name_for(fragment.src),
                type=asset_type_for(fragment.src),
                alt=fragment.alt,
                used_in=usages,
                is_external=fragment.is_external,
                context=fragment.context,
                last_seen_at=now,
                dimensions=fragment.dimensions,
            )
            added += 1
            continue

        for usage in usages:
            if usage not in existing.used_in:
                existing.used_in.append(usage)
        if now > existing.last_seen_at:
            existing.last_seen_at = now
        if not existing.alt and fragment.alt:
            existing.alt = fragment.alt
        if existing.dimensions is None and fragment.dimensions is not None:
            existing.dimensions = fragment.dimensions
        existing.is_external = existing.is_external or fragment.is_external
    return added


def summarize_assets(index: IndexState) -> dict[str, Any]:
    assets = list(index.assets.values())
    by_type = Counter(asset.type for asset in assets)
    most_used = sorted(
        (asset for asset in assets if asset.used_in),
        key=lambda a: (-len(a.used_in), a.src),
    )[:MOST_USED_LIMIT]
    return {
        "total_assets": len(assets),
        "assets_by_type": dict(sorted(by_type.items())),
        "external_assets": sum(1 for asset in assets if asset.is_external),
        "unused_assets": sum(1 for asset in assets if not asset.used_in),
        "most_used_assets": [asset.src for asset in most_used],
    }


class AssetIndexMerger:
    """Keeps the cumulative asset index in memory and writes it back whole after every merge."""

    def __init__(self, *, state_store: StateStore, clock: Callable[[], datetime] = utc_now) -> None:
        self._state_store = state_store
        self._clock = clock
        self._index: Optional[IndexState] = None
        self._lock = asyncio.Lock()

    def reset(self) -> None:
        self._index = None

    async def load(self) -> IndexState:
        async with self._lock:
            return await self._ensure_index()

    async def _ensure_index(self) -> IndexState:
        if self._index is None:
            self._index = await self._state_store.load_asset_index()
        return self._index

    async def merge(self, path: str, fragments: Sequence[AssetFragment], *, replace: bool = False) -> int:
        async with self._lock:
            index = await self._ensure_index()
            added = merge_fragments(index, fragments, path=path, now=self._clock(), replace=replace)
            await self._state_store.save_asset_index(index)
            logger.debug(
                "Merged document assets into index. path=%s fragments=%s added=%s total=%s",
                path,
                len(fragments),
                added,
                len(index.assets),
            )
            return added

    async def clear(self) -> None:
        """Replace the index with an empty one. The only way `used_in` lists shrink wholesale."""
        async with self._lock:
            previous = len(self._index.assets) if self._index is not None else None
            self._index = IndexState(assets={})
            await self._state_store.save_asset_index(self._index)
        logger.info("Asset index cleared. previous_assets=%s", previous)

    async def export_index(self) -> str:
        index = await self.load()
        return dump_state_file(INDEX_KIND, encode_index(index))

    async def import_index(self, raw: str, *, source: str = "<import>") -> int:
        """Validate an exported index and make it the current one. Returns the asset count."""
        index = read_index_export(raw, source=source)
        async with self._lock:
            self._index = index
            await self._state_store.save_asset_index(index)
        logger.info("Asset index imported. source=%s assets=%s", source, len(index.assets))
        return len(index.assets)

    async def statistics(self) -> dict[str, Any]:
        return summarize_assets(await self.load())
