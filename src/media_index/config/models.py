from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional, Sequence

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

DEFAULT_IMAGE_SERVICE_PATTERNS: tuple[str, ...] = (
    "scene7.com",
    "akamai.net",
    "cloudfront.net",
    "s3.amazonaws.com",
    "cdn.",
    "static.",
    "media.",
)


class FileRotationSettings(BaseModel):
    """
    Date-based rotation settings (daily).

    This maps cleanly to Python's standard library TimedRotatingFileHandler behavior.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    backup_count: int = 7


class FileLoggingSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    path: str = ""
    rotation: FileRotationSettings = FileRotationSettings()


class LoggingSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    level: str = "INFO"
    file: FileLoggingSettings = FileLoggingSettings()
    # Per-logger overrides, applied after the root level.
    logger_levels: dict[str, str] = {"aiohttp": "INFO"}


class StoreSettings(BaseModel):
    """Connection parameters for the remote content store."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    base_url: str
    org: str
    repo: str
    token: str = ""

    request_timeout_seconds: float = 30.0
    max_retries: int = 3
    retry_base_delay_seconds: float = 0.5

    @field_validator("base_url", "org", "repo")
    @classmethod
    def _require_non_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("must not be empty")
        return value.strip()

    @property
    def root_path(self) -> str:
        return f"/{self.org.strip('/')}/{self.repo.strip('/')}"


class ScanSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    state_dir: str = ".da"
    document_extension: str = "html"

    # Lease coordination
    lease_timeout_seconds: float = 300.0
    heartbeat_interval_seconds: float = 30.0
    lease_settle_seconds: float = 1.0

    # Discovery
    max_discovery_workers: Optional[int] = None
    discovery_progress_every: int = 50

    # Scanning
    scan_batch_size: int = 5
    scan_concurrency: int = 3
    batch_poll_seconds: float = 1.0
    rescan_after_hours: Optional[float] = None

    # Extraction
    internal_hosts: Sequence[str] = ()
    image_service_patterns: Sequence[str] = DEFAULT_IMAGE_SERVICE_PATTERNS

    @model_validator(mode="after")
    def _check_lease_timing(self) -> "ScanSettings":
        if self.heartbeat_interval_seconds <= 0:
            raise ValueError("heartbeat_interval_seconds must be positive")
        # Reclamation must need at least three missed heartbeats.
        if self.lease_timeout_seconds < 3 * self.heartbeat_interval_seconds:
            raise ValueError(
                "lease_timeout_seconds must be at least 3x heartbeat_interval_seconds "
                f"(got {self.lease_timeout_seconds} and {self.heartbeat_interval_seconds})"
            )
        return self

    @property
    def discovery_workers(self) -> int:
        if self.max_discovery_workers is not None:
            return max(1, int(self.max_discovery_workers))
        return max(1, os.cpu_count() or 4)


class AppConfig(BaseModel):
    """Effective runtime configuration after applying all precedence rules."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    logging: LoggingSettings = LoggingSettings()
    store: StoreSettings
    scan: ScanSettings = ScanSettings()


@dataclass(frozen=True, slots=True)
class ConfigLoadRequest:
    """
    Optional inputs for a configuration loader.

    Implementations may use these to control where configuration is read from.
    """

    yaml_path: str = "data/config/config.yaml"
    env_prefix: str = "MEDIA_INDEX__"
    dotenv_path: Optional[str] = "data/.env"
