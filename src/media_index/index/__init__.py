"""Cumulative, deduplicated asset index."""

from media_index.index.merger import AssetIndexMerger, merge_fragments, summarize_assets

__all__ = ["AssetIndexMerger", "merge_fragments", "summarize_assets"]
