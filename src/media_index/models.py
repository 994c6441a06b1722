from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal, Optional

AssetType = Literal["image", "video", "document", "unknown"]
ScanType = Literal["full", "incremental", "force"]


@dataclass(frozen=True, slots=True)
class DocumentDescriptor:
    """A document found by discovery. Identity is `path`."""

    path: str
    name: str
    last_modified_at: Optional[datetime] = None


@dataclass(frozen=True, slots=True)
class Dimensions:
    width: Optional[int] = None
    height: Optional[int] = None


@dataclass(frozen=True, slots=True)
class AssetFragment:
    """One media reference found in one document by one extraction rule."""

    src: str
    used_in: tuple[str, ...]
    alt: str = ""
    dimensions: Optional[Dimensions] = None
    context: str = ""
    is_external: bool = False


@dataclass(slots=True)
class AssetRecord:
    """An entry of the cumulative asset index. Identity is the normalized `src`."""

    id: str
    src: str
    name: str
    type: AssetType
    alt: str
    used_in: list[str]
    is_external: bool
    context: str
    last_seen_at: datetime
    dimensions: Optional[Dimensions] = None


@dataclass(slots=True)
class ScanStats:
    total_pages: int = 0
    queued_pages: int = 0
    scanned_pages: int = 0
    total_assets: int = 0
    errors: int = 0

    def copy(self) -> "ScanStats":
        return ScanStats(
            total_pages=self.total_pages,
            queued_pages=self.queued_pages,
            scanned_pages=self.scanned_pages,
            total_assets=self.total_assets,
            errors=self.errors,
        )

    def as_dict(self) -> dict[str, int]:
        return {
            "total_pages": self.total_pages,
            "queued_pages": self.queued_pages,
            "scanned_pages": self.scanned_pages,
            "total_assets": self.total_assets,
            "errors": self.errors,
        }


@dataclass(slots=True)
class PersistentStats:
    """Live session statistics merged with what the state files record."""

    session: ScanStats
    is_active: bool
    current_session: bool
    total_documents: int = 0
    total_assets: int = 0
    last_scan_time: Optional[datetime] = None
    oldest_scan: Optional[datetime] = None
    newest_scan: Optional[datetime] = None
    assets_by_type: dict[str, int] = field(default_factory=dict)
    external_assets: int = 0
    unused_assets: int = 0
    most_used_assets: list[str] = field(default_factory=list)
