from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_rfc3339(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_rfc3339(value: str) -> datetime:
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_optional(dt: Optional[datetime]) -> Optional[str]:
    return format_rfc3339(dt) if dt is not None else None


def parse_optional(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return parse_rfc3339(value)


def from_epoch_millis(value: object) -> Optional[datetime]:
    """Convert the store's epoch-millisecond timestamps, tolerating strings and blanks."""
    if value is None or value == "":
        return None
    try:
        millis = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    return datetime.fromtimestamp(millis / 1000.0, tz=timezone.utc)


def normalize_text(text: str) -> str:
    normalized = text.replace("\r\n", "\n").replace("\r", "\n")
    lines = [line.rstrip() for line in normalized.split("\n")]
    while lines and lines[0] == "":
        lines.pop(0)
    while lines and lines[-1] == "":
        lines.pop()
    return "\n".join(lines)


def hash_text(text: str) -> str:
    normalized = normalize_text(text)
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def stable_asset_id(src: str) -> str:
    return hashlib.sha256(src.encode("utf-8")).hexdigest()[:16]
