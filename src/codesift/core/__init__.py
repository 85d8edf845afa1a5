"""Core module exports."""

from codesift.core.errors import (
    CodeSiftError,
    ConcurrentOpen,
    ConfigError,
    DimensionMismatch,
    EmbeddingFailure,
    ErrorCode,
    InternalError,
    InvalidInput,
    StorageIOFailure,
    StoreClosed,
)
from codesift.core.logging import (
    clear_run_id,
    configure_logging,
    get_logger,
    get_run_id,
    set_run_id,
)

__all__ = [
    # Errors
    "CodeSiftError",
    "ConcurrentOpen",
    "ConfigError",
    "DimensionMismatch",
    "EmbeddingFailure",
    "ErrorCode",
    "InternalError",
    "InvalidInput",
    "StorageIOFailure",
    "StoreClosed",
    # Logging
    "clear_run_id",
    "configure_logging",
    "get_logger",
    "get_run_id",
    "set_run_id",
]
