from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from media_index.config import YamlConfigLoader
from media_index.config.models import AppConfig, ConfigLoadRequest
from media_index.errors import ContentStoreError, ScanConflictError
from media_index.events import (
    ERROR_EVENTS,
    DiscoveryComplete,
    DiscoveryStarted,
    ResumingFromQueue,
    ScanEvent,
    ScanningStopped,
)
from media_index.logging import init_logging
from media_index.models import PersistentStats
from media_index.service import MediaIndexService
from media_index.utils import format_optional

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="media-index", description="Media asset index scanner")
    parser.add_argument(
        "--config",
        default="data/config/config.yaml",
        help="Path to config.yaml (default: data/config/config.yaml)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True, help="Command to run")

    # Command: scan
    scan_parser = subparsers.add_parser("scan", help="Discover and scan documents until the queue is drained")
    scan_parser.add_argument(
        "--force",
        action="store_true",
        help="Rescan every document and rebuild each document's index entries.",
    )

    # Command: status
    subparsers.add_parser("status", help="Print live and persistent scan statistics as JSON")

    # Command: release
    subparsers.add_parser("release", help="Force-clear the scan lease and the persisted queue")

    # Command: clear
    subparsers.add_parser("clear", help="Empty the asset index and scan results so the next scan reindexes everything")

    # Command: export
    export_parser = subparsers.add_parser("export", help="Write the asset index as JSON")
    export_parser.add_argument("output", nargs="?", default="-", help="Output file (default: stdout)")

    # Command: import
    import_parser = subparsers.add_parser("import", help="Replace the asset index with a previously exported one")
    import_parser.add_argument("input", help="File written by the export command")

    return parser


def _stats_payload(stats: PersistentStats) -> dict[str, Any]:
    return {
        "is_active": stats.is_active,
        "current_session": stats.current_session,
        "session": stats.session.as_dict(),
        "total_documents": stats.total_documents,
        "total_assets": stats.total_assets,
        "last_scan_time": format_optional(stats.last_scan_time),
        "oldest_scan": format_optional(stats.oldest_scan),
        "newest_scan": format_optional(stats.newest_scan),
        "assets_by_type": stats.assets_by_type,
        "external_assets": stats.external_assets,
        "unused_assets": stats.unused_assets,
        "most_used_assets": stats.most_used_assets,
    }


def _log_event(event: ScanEvent) -> None:
    if isinstance(event, ERROR_EVENTS):
        logger.warning("Scan error event. event=%s detail=%s", type(event).__name__, event)
    elif isinstance(event, DiscoveryStarted):
        logger.info("Discovery started. folders=%s workers=%s", event.total_folders, event.max_workers)
    elif isinstance(event, ResumingFromQueue):
        logger.info("Resuming persisted queue. queue_size=%s", event.queue_size)
    elif isinstance(event, DiscoveryComplete):
        logger.info("Discovery finished. documents=%s errors=%s", event.total_documents, event.errors)
    elif isinstance(event, ScanningStopped):
        logger.info("Scan finished. persisted=%s stats=%s", event.persisted, event.stats.as_dict())


async def _load_config(args: argparse.Namespace) -> AppConfig:
    loader = YamlConfigLoader()
    request = ConfigLoadRequest(
        yaml_path=args.config,
    )
    return await loader.load(request)


async def _scan(config: AppConfig, args: argparse.Namespace) -> int:
    async with MediaIndexService(config) as service:
        service.subscribe(_log_event)
        try:
            await service.start_scan(force_rescan=args.force)
        except ScanConflictError as e:
            logger.error("Cannot start scan. holder=%s error=%s", e.session_id, e)
            return 1
        await service.wait_until_stopped()
        return 1 if service.get_stats().errors else 0


async def _status(config: AppConfig) -> int:
    async with MediaIndexService(config) as service:
        stats = await service.get_persistent_stats()
    print(json.dumps(_stats_payload(stats), indent=2, sort_keys=True))
    return 0


async def _release(config: AppConfig) -> int:
    async with MediaIndexService(config) as service:
        await service.force_release()
    logger.info("Scan lease and queue released.")
    return 0


async def _clear(config: AppConfig) -> int:
    async with MediaIndexService(config) as service:
        try:
            await service.clear_index()
        except ScanConflictError as e:
            logger.error("Cannot clear the index while a scan is running. holder=%s", e.session_id)
            return 1
    logger.info("Asset index and scan results cleared.")
    return 0


async def _export(config: AppConfig, args: argparse.Namespace) -> int:
    async with MediaIndexService(config) as service:
        content = await service.export_index()
    if args.output == "-":
        print(content)
    else:
        Path(args.output).write_text(content, encoding="utf-8")
        logger.info("Asset index exported. path=%s", args.output)
    return 0


async def _import(config: AppConfig, args: argparse.Namespace) -> int:
    try:
        raw = Path(args.input).read_text(encoding="utf-8")
    except OSError as e:
        logger.error("Cannot read asset index export. path=%s error=%s", args.input, e)
        return 1
    async with MediaIndexService(config) as service:
        try:
            count = await service.import_index(raw, source=args.input)
        except ScanConflictError as e:
            logger.error("Cannot import the index while a scan is running. holder=%s", e.session_id)
            return 1
        except ValueError as e:
            logger.error("Rejected asset index import. path=%s error=%s", args.input, e)
            return 1
    logger.info("Asset index imported. path=%s assets=%s", args.input, count)
    return 0


async def _main_async() -> int:
    parser = _build_parser()
    args = parser.parse_args()

    try:
        config = await _load_config(args)
    except (ValidationError, ValueError, FileNotFoundError) as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2
    init_logging(config.logging)

    try:
        if args.command == "scan":
            return await _scan(config, args)
        if args.command == "status":
            return await _status(config)
        if args.command == "release":
            return await _release(config)
        if args.command == "clear":
            return await _clear(config)
        if args.command == "export":
            return await _export(config, args)
        if args.command == "import":
            return await _import(config, args)
    except ContentStoreError as e:
        logger.error("Content store request failed. path=%s status=%s error=%s", e.path, e.status, e)
        return 1
    return 2


def main() -> None:
    try:
        code = asyncio.run(_main_async())
    except KeyboardInterrupt:
        logger.info("Interrupted by user.")
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    main()
