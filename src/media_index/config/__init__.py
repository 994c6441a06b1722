"""Configuration models and loaders."""

from media_index.config.loader import YamlConfigLoader, load_config_dict
from media_index.config.models import (
    AppConfig,
    ConfigLoadRequest,
    LoggingSettings,
    ScanSettings,
    StoreSettings,
)

__all__ = [
    "AppConfig",
    "ConfigLoadRequest",
    "LoggingSettings",
    "ScanSettings",
    "StoreSettings",
    "YamlConfigLoader",
    "load_config_dict",
]
