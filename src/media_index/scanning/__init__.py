"""Document fetching and media reference extraction."""

from media_index.scanning.extraction import (
    DOCUMENT_EXTENSIONS,
    IMAGE_EXTENSIONS,
    MEDIA_EXTENSIONS,
    VIDEO_EXTENSIONS,
    MediaExtractor,
    asset_name_for,
    asset_type_for,
    is_valid_media_src,
)
from media_index.scanning.scan_task import ScanTask

__all__ = [
    "DOCUMENT_EXTENSIONS",
    "IMAGE_EXTENSIONS",
    "MEDIA_EXTENSIONS",
    "VIDEO_EXTENSIONS",
    "MediaExtractor",
    "ScanTask",
    "asset_name_for",
    "asset_type_for",
    "is_valid_media_src",
]
