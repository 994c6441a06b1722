"""Discovers documents in a remote content tree and maintains a deduplicated media asset index."""

from media_index.errors import ContentNotFoundError, ContentStoreError, ScanConflictError
from media_index.models import AssetFragment, AssetRecord, DocumentDescriptor, PersistentStats, ScanStats
from media_index.service import MediaIndexService

__all__ = [
    "AssetFragment",
    "AssetRecord",
    "ContentNotFoundError",
    "ContentStoreError",
    "DocumentDescriptor",
    "MediaIndexService",
    "PersistentStats",
    "ScanConflictError",
    "ScanStats",
]
