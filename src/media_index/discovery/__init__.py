"""Concurrent discovery of documents in the content tree."""

from media_index.discovery.coordinator import DiscoveryCoordinator, DiscoverySummary
from media_index.discovery.folder_task import FolderDiscoveryTask, FolderWalkResult

__all__ = ["DiscoveryCoordinator", "DiscoverySummary", "FolderDiscoveryTask", "FolderWalkResult"]
