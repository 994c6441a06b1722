from __future__ import annotations

import json
import logging
from typing import Any, Optional

from media_index.models import AssetFragment, AssetRecord, Dimensions, DocumentDescriptor
from media_index.state.models import (
    IndexState,
    LeaseProgress,
    QueueState,
    ResultsState,
    ScanLease,
    ScanResultRecord,
    SchemaVersion,
)
from media_index.utils import format_optional, format_rfc3339, parse_optional, parse_rfc3339, utc_now

logger = logging.getLogger(__name__)

LEASE_KIND = "scan-lease"
QUEUE_KIND = "discovery-queue"
RESULTS_KIND = "scan-results"
INDEX_KIND = "asset-index"


def dump_state_file(kind: str, body: dict[str, Any]) -> str:
    payload = {
        "schema_version": SchemaVersion,
        "kind": kind,
        "generated_at": format_rfc3339(utc_now()),
        **body,
    }
    return json.dumps(payload, indent=2, sort_keys=True)


def parse_state_file(raw: str, *, kind: str, path: str) -> Optional[dict[str, Any]]:
    """Return the payload, or None when the file is empty, foreign or from another schema version."""
    if not raw.strip():
        return None
    payload = json.loads(raw)
    if not isinstance(payload, dict):
        logger.warning("State file is not a JSON object, starting fresh. path=%s", path)
        return None
    if payload.get("kind") != kind:
        logger.warning(
            "State file kind mismatch, starting fresh. path=%s expected=%s actual=%s",
            path,
            kind,
            payload.get("kind"),
        )
        return None
    version = int(payload.get("schema_version", -1))
    if version != SchemaVersion:
        logger.warning(
            "State file schema version mismatch, starting fresh. path=%s expected=%s actual=%s",
            path,
            SchemaVersion,
            version,
        )
        return None
    return payload


def _encode_dimensions(dimensions: Optional[Dimensions]) -> Optional[dict]:
    if dimensions is None:
        return None
    return {"width": dimensions.width, "height": dimensions.height}


def _decode_dimensions(payload: Optional[dict]) -> Optional[Dimensions]:
    if not payload:
        return None
    width = payload.get("width")
    height = payload.get("height")
    return Dimensions(
        width=int(width) if width is not None else None,
        height=int(height) if height is not None else None,
    )


def encode_document(document: DocumentDescriptor) -> dict:
    return {
        "path": document.path,
        "name": document.name,
        "last_modified_at": format_optional(document.last_modified_at),
    }


def decode_document(payload: dict) -> DocumentDescriptor:
    return DocumentDescriptor(
        path=payload["path"],
        name=payload.get("name", ""),
        last_modified_at=parse_optional(payload.get("last_modified_at")),
    )


def encode_fragment(fragment: AssetFragment) -> dict:
    return {
        "src": fragment.src,
        "alt": fragment.alt,
        "used_in": list(fragment.used_in),
        "dimensions": _encode_dimensions(fragment.dimensions),
        "context": fragment.context,
        "is_external": fragment.is_external,
    }


def decode_fragment(payload: dict) -> AssetFragment:
    return AssetFragment(
        src=payload["src"],
        used_in=tuple(payload.get("used_in", [])),
        alt=payload.get("alt", ""),
        dimensions=_decode_dimensions(payload.get("dimensions")),
        context=payload.get("context", ""),
        is_external=bool(payload.get("is_external", False)),
    )


# --- Lease ---


def encode_lease(lease: ScanLease) -> dict:
    return {
        "is_active": lease.is_active,
        "session_id": lease.session_id,
        "scan_type": lease.scan_type,
        "started_at": format_optional(lease.started_at),
        "last_heartbeat_at": format_optional(lease.last_heartbeat_at),
        "status": lease.status,
        "progress": {
            "total_documents": lease.progress.total_documents,
            "scanned_documents": lease.progress.scanned_documents,
            "total_assets": lease.progress.total_assets,
        },
    }


def decode_lease(payload: dict) -> ScanLease:
    progress = payload.get("progress") or {}
    return ScanLease(
        is_active=bool(payload.get("is_active", False)),
        session_id=payload.get("session_id"),
        scan_type=payload.get("scan_type"),
        started_at=parse_optional(payload.get("started_at")),
        last_heartbeat_at=parse_optional(payload.get("last_heartbeat_at")),
        status=payload.get("status"),
        progress=LeaseProgress(
            total_documents=int(progress.get("total_documents", 0)),
            scanned_documents=int(progress.get("scanned_documents", 0)),
            total_assets=int(progress.get("total_assets", 0)),
        ),
    )


# --- Queue ---


def encode_queue(queue: QueueState) -> dict:
    return {
        "session_id": queue.session_id,
        "updated_at": format_optional(queue.updated_at),
        "queue": [encode_document(document) for document in queue.documents],
    }


def decode_queue(payload: dict) -> QueueState:
    return QueueState(
        documents=[decode_document(item) for item in payload.get("queue", [])],
        session_id=payload.get("session_id"),
        updated_at=parse_optional(payload.get("updated_at")),
    )


# --- Scan results ---


def _encode_result(record: ScanResultRecord) -> dict:
    return {
        "path": record.path,
        "last_scanned_at": format_rfc3339(record.last_scanned_at),
        "asset_count": record.asset_count,
        "assets": [encode_fragment(fragment) for fragment in record.assets],
        "checksum": record.checksum,
        "scan_duration_ms": record.scan_duration_ms,
    }


def _decode_result(payload: dict) -> ScanResultRecord:
    return ScanResultRecord(
        path=payload["path"],
        last_scanned_at=parse_rfc3339(payload["last_scanned_at"]),
        asset_count=int(payload.get("asset_count", 0)),
        assets=[decode_fragment(item) for item in payload.get("assets", [])],
        checksum=payload.get("checksum"),
        scan_duration_ms=int(payload.get("scan_duration_ms", 0)),
    )


def encode_results(results: ResultsState) -> dict:
    records = sorted(results.documents.values(), key=lambda r: r.path)
    return {
        "updated_at": format_optional(results.updated_at),
        "results": [_encode_result(record) for record in records],
    }


def decode_results(payload: dict) -> ResultsState:
    documents: dict[str, ScanResultRecord] = {}
    for item in payload.get("results", []):
        record = _decode_result(item)
        documents[record.path] = record
    return ResultsState(documents=documents, updated_at=parse_optional(payload.get("updated_at")))


# --- Asset index ---


def _encode_asset(asset: AssetRecord) -> dict:
    return {
        "id": asset.id,
        "src": asset.src,
        "name": asset.name,
        "type": asset.type,
        "alt": asset.alt,
        "used_in": list(asset.used_in),
        "is_external": asset.is_external,
        "dimensions": _encode_dimensions(asset.dimensions),
        "context": asset.context,
        "last_seen_at": format_rfc3339(asset.last_seen_at),
    }


def _decode_asset(payload: dict) -> AssetRecord:
    return AssetRecord(
        id=payload["id"],
        src=payload["src"],
        name=payload.get("name", ""),
        type=payload.get("type", "unknown"),
        alt=payload.get("alt", ""),
        used_in=list(payload.get("used_in", [])),
        is_external=bool(payload.get("is_external", False)),
        dimensions=_decode_dimensions(payload.get("dimensions")),
        context=payload.get("context", ""),
        last_seen_at=parse_rfc3339(payload["last_seen_at"]),
    )


def encode_index(index: IndexState) -> dict:
    assets = sorted(index.assets.values(), key=lambda a: a.src)
    return {
        "updated_at": format_optional(index.updated_at),
        "assets": [_encode_asset(asset) for asset in assets],
    }


def decode_index(payload: dict) -> IndexState:
    assets: dict[str, AssetRecord] = {}
    for item in payload.get("assets", []):
        asset = _decode_asset(item)
        assets[asset.src] = asset
    return IndexState(assets=assets, updated_at=parse_optional(payload.get("updated_at")))


def read_index_export(raw: str, *, source: str) -> IndexState:
    """Decode an exported asset index. Raises ValueError when `raw` is not one."""
    try:
        payload = parse_state_file(raw, kind=INDEX_KIND, path=source)
        if payload is None:
            raise ValueError(f"Not an asset index export of schema version {SchemaVersion}: {source}")
        if not isinstance(payload.get("assets", []), list):
            raise ValueError(f"Asset index export has no asset list: {source}")
        return decode_index(payload)
    except (json.JSONDecodeError, AttributeError, KeyError, TypeError) as e:
        raise ValueError(f"Malformed asset index export: {source}: {e}") from e
