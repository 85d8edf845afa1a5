"""CodeSift error types with typed error codes.

Error code ranges:
- 2xxx: Config
- 3xxx: Store / ingestion
- 9xxx: Internal
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any


class ErrorCode(IntEnum):
    """Typed error codes for programmatic handling."""

    # Config (2xxx)
    CONFIG_PARSE_ERROR = 2001
    CONFIG_INVALID_VALUE = 2002
    CONFIG_MISSING_REQUIRED = 2003
    CONFIG_FILE_NOT_FOUND = 2004

    # Store (3xxx)
    INVALID_INPUT = 3001
    DIMENSION_MISMATCH = 3002
    STORE_CLOSED = 3003
    CONCURRENT_OPEN = 3004
    STORAGE_IO_FAILURE = 3005
    EMBEDDING_FAILURE = 3006

    # Internal (9xxx)
    INTERNAL_ERROR = 9001


@dataclass(frozen=True, slots=True)
class CodeSiftError(Exception):
    """Base error with structured context."""

    code: ErrorCode
    message: str
    retryable: bool = False
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def error_name(self) -> str:
        """String identifier for logging (e.g., 'DIMENSION_MISMATCH')."""
        return self.code.name

    def to_dict(self) -> dict[str, Any]:
        """Serialize for JSON responses."""
        return {
            "code": self.code.value,
            "error": self.error_name,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }

    def __str__(self) -> str:
        return f"[{self.code.value}] {self.error_name}: {self.message}"


class ConfigError(CodeSiftError):
    """Configuration-related errors."""

    @classmethod
    def parse_error(cls, path: str, reason: str) -> "ConfigError":
        return cls(
            code=ErrorCode.CONFIG_PARSE_ERROR,
            message=f"Failed to parse config at {path}: {reason}",
            details={"path": path, "reason": reason},
        )

    @classmethod
    def invalid_value(cls, field: str, value: Any, reason: str) -> "ConfigError":
        return cls(
            code=ErrorCode.CONFIG_INVALID_VALUE,
            message=f"Invalid value for '{field}': {reason}",
            details={"field": field, "value": str(value), "reason": reason},
        )

    @classmethod
    def missing_required(cls, field: str) -> "ConfigError":
        return cls(
            code=ErrorCode.CONFIG_MISSING_REQUIRED,
            message=f"Missing required config field: {field}",
            details={"field": field},
        )


class InvalidInput(CodeSiftError):
    """Malformed caller input: bad path, empty id, non-positive k."""

    @classmethod
    def create(cls, reason: str, /, **details: Any) -> "InvalidInput":
        return cls(
            code=ErrorCode.INVALID_INPUT,
            message=reason,
            details=details,
        )

    @classmethod
    def empty_id(cls) -> "InvalidInput":
        return cls.create("Entry id must be a non-empty string")

    @classmethod
    def bad_root(cls, path: str, reason: str) -> "InvalidInput":
        return cls.create(f"Cannot ingest {path}: {reason}", path=path, reason=reason)


class DimensionMismatch(CodeSiftError):
    """Vector dimension differs from the store's established dimension."""

    @classmethod
    def create(cls, expected: int, got: int, entry_id: str | None = None) -> "DimensionMismatch":
        details: dict[str, Any] = {"expected": expected, "got": got}
        if entry_id is not None:
            details["id"] = entry_id
        return cls(
            code=ErrorCode.DIMENSION_MISMATCH,
            message=f"Expected vector dimension {expected}, got {got}",
            details=details,
        )


class StoreClosed(CodeSiftError):
    """Operation attempted on a closed store."""

    @classmethod
    def create(cls, project_id: str) -> "StoreClosed":
        return cls(
            code=ErrorCode.STORE_CLOSED,
            message=f"Store for project '{project_id}' is closed",
            details={"project_id": project_id},
        )


class ConcurrentOpen(CodeSiftError):
    """The project's store directory is already owned by another instance."""

    @classmethod
    def create(cls, project_id: str, path: str) -> "ConcurrentOpen":
        return cls(
            code=ErrorCode.CONCURRENT_OPEN,
            message=f"Store for project '{project_id}' is already open ({path})",
            details={"project_id": project_id, "path": path},
        )


class StorageIOFailure(CodeSiftError):
    """Disk error while reading or persisting the store."""

    @classmethod
    def create(cls, path: str, reason: str) -> "StorageIOFailure":
        return cls(
            code=ErrorCode.STORAGE_IO_FAILURE,
            message=f"Storage I/O failed at {path}: {reason}",
            retryable=True,
            details={"path": path, "reason": reason},
        )


class EmbeddingFailure(CodeSiftError):
    """The external embedding function failed."""

    @classmethod
    def create(cls, reason: str, **details: Any) -> "EmbeddingFailure":
        return cls(
            code=ErrorCode.EMBEDDING_FAILURE,
            message=f"Embedding failed: {reason}",
            retryable=True,
            details=details,
        )


class InternalError(CodeSiftError):
    """Internal/unexpected errors."""

    @classmethod
    def unexpected(cls, reason: str, **details: Any) -> "InternalError":
        return cls(
            code=ErrorCode.INTERNAL_ERROR,
            message=f"Internal error: {reason}",
            details=details,
        )
