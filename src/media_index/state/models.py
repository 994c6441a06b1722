from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal, Optional

from media_index.models import AssetFragment, AssetRecord, DocumentDescriptor, ScanType

SchemaVersion = 1

LeaseStatus = Literal["running", "completed", "error"]

LEASE_FILE = "media-scan-state.json"
QUEUE_FILE = "media-discovery-queue.json"
RESULTS_FILE = "media-scan-results.json"
INDEX_FILE = "media-index.json"


@dataclass(slots=True)
class LeaseProgress:
    total_documents: int = 0
    scanned_documents: int = 0
    total_assets: int = 0


@dataclass(slots=True)
class ScanLease:
    """The single tree-wide scan lock record."""

    is_active: bool = False
    session_id: Optional[str] = None
    scan_type: Optional[ScanType] = None
    started_at: Optional[datetime] = None
    last_heartbeat_at: Optional[datetime] = None
    status: Optional[LeaseStatus] = None
    progress: LeaseProgress = field(default_factory=LeaseProgress)


@dataclass(slots=True)
class ScanResultRecord:
    path: str
    last_scanned_at: datetime
    asset_count: int
    assets: list[AssetFragment] = field(default_factory=list)
    checksum: Optional[str] = None
    scan_duration_ms: int = 0


@dataclass(slots=True)
class QueueState:
    documents: list[DocumentDescriptor]
    session_id: Optional[str] = None
    updated_at: Optional[datetime] = None


@dataclass(slots=True)
class ResultsState:
    documents: dict[str, ScanResultRecord]
    updated_at: Optional[datetime] = None


@dataclass(slots=True)
class IndexState:
    assets: dict[str, AssetRecord]
    updated_at: Optional[datetime] = None
