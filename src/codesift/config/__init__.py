"""Config module exports."""

from codesift.config.loader import CodeSiftSettings, load_config
from codesift.config.models import (
    CodeSiftConfig,
    IngestConfig,
    LoggingConfig,
    LogOutputConfig,
    SearchConfig,
    StoreConfig,
)

__all__ = [
    "load_config",
    "CodeSiftConfig",
    "CodeSiftSettings",
    "IngestConfig",
    "LoggingConfig",
    "LogOutputConfig",
    "SearchConfig",
    "StoreConfig",
]
