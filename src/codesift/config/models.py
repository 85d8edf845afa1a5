"""Pydantic configuration models with env var support.

Configuration Hierarchy (highest to lowest precedence):
1. Direct kwargs to load_config()
2. Environment variables (CODESIFT__SECTION__KEY)
3. Repo YAML (.codesift/config.yaml)
4. Global YAML (~/.config/codesift/config.yaml)
5. Built-in defaults (this file)

Environment Variable Format:
    CODESIFT__<SECTION>__<KEY>=<VALUE>

Examples:
    CODESIFT__LOGGING__LEVEL=DEBUG
    CODESIFT__STORE__ROOT=/var/cache/codesift
    CODESIFT__INGEST__MAX_BATCH_CHUNKS=50
    CODESIFT__SEARCH__DEFAULT_K=20
"""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from codesift.config.constants import SEARCH_MAX_K

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class LogOutputConfig(BaseModel):
    """Single logging output configuration.

    Env vars: Not directly configurable via env (use YAML for multi-output).
    """

    format: Literal["json", "console"] = "console"
    destination: str = "stderr"  # stderr, stdout, or absolute file path
    level: LogLevel | None = None  # Inherits from parent if None

    @field_validator("destination")
    @classmethod
    def validate_destination(cls, v: str) -> str:
        if v in ("stderr", "stdout"):
            return v
        path = Path(v).expanduser()
        if not path.is_absolute():
            raise ValueError(f"File destination must be absolute path: {v}")
        return str(path)


class LoggingConfig(BaseModel):
    """Logging configuration.

    Env vars:
        CODESIFT__LOGGING__LEVEL: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """

    level: LogLevel = Field(
        default="INFO",
        description="Root log level. DEBUG logs every file visited during ingestion.",
    )
    outputs: list[LogOutputConfig] = Field(default_factory=lambda: [LogOutputConfig()])


class StoreConfig(BaseModel):
    """Embedding store location.

    Env vars:
        CODESIFT__STORE__ROOT: Directory holding one sub-directory per project
    """

    root: str = Field(
        default="~/.codesift",
        description="Root directory for per-project stores. "
        "Each project lives in <root>/<project>/knowledge_index/.",
    )
    lock_file_name: str = Field(
        default=".lock",
        description="Name of the exclusive lock file inside a project's store directory.",
    )

    @property
    def root_path(self) -> Path:
        return Path(self.root).expanduser()


class IngestConfig(BaseModel):
    """Ingestion, chunking and batching configuration.

    Env vars:
        CODESIFT__INGEST__MAX_CHUNK_CHARS: Max characters per chunk
        CODESIFT__INGEST__OVERLAP_CHARS: Characters shared by consecutive chunks
        CODESIFT__INGEST__MAX_BATCH_CHUNKS: Max chunks handed to one sink call
        CODESIFT__INGEST__MAX_BATCH_BYTES: Max cumulative chunk bytes per sink call
        CODESIFT__INGEST__MAX_WORKERS: Parallel file readers
        CODESIFT__INGEST__MAX_FILES: Max files indexed per project
    """

    max_chunk_chars: int = Field(
        default=1500,
        description="Max characters per chunk. Should fit the embedding model's context window.",
    )
    overlap_chars: int = Field(
        default=200,
        description="Characters repeated at the start of the next chunk. "
        "Must be < max_chunk_chars.",
    )
    max_batch_chunks: int = Field(
        default=100,
        description="Flush a batch once it holds this many chunks.",
    )
    max_batch_bytes: int = Field(
        default=1_048_576,
        description="Flush a batch once its chunk texts reach this many UTF-8 bytes. "
        "TRADEOFF: Larger batches use more memory while embedding.",
    )
    max_file_size_mb: int = Field(
        default=10,
        description="Skip files larger than this (MB).",
    )
    include_patterns: list[str] = Field(
        default_factory=list,
        description="Glob patterns a file must match to be indexed. Empty means everything.",
    )
    exclude_patterns: list[str] = Field(
        default_factory=list,
        description="Extra gitignore-style exclude patterns. Prefix with ! to opt-in.",
    )
    respect_ignore_files: bool = Field(
        default=True,
        description="Load .siftignore files found in the project tree.",
    )
    skip_unchanged: bool = Field(
        default=False,
        description="Skip files whose content hash matches the indexed copy.",
    )
    max_workers: int = Field(
        default=1,
        description="Threads reading and chunking files. 1 means sequential.",
    )
    deterministic: bool = Field(
        default=True,
        description="Keep batch boundaries identical across runs when max_workers > 1.",
    )
    max_files: int = Field(
        default=5000,
        description="Stop the walk after this many matching files. "
        "Files past the limit are not indexed and a warning is logged.",
    )

    @field_validator(
        "max_chunk_chars", "max_batch_chunks", "max_batch_bytes", "max_workers", "max_files"
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"Must be >= 1, got {v}")
        return v

    @model_validator(mode="after")
    def validate_overlap(self) -> "IngestConfig":
        if not (0 <= self.overlap_chars < self.max_chunk_chars):
            raise ValueError(
                f"overlap_chars must be in [0, max_chunk_chars), got {self.overlap_chars}"
            )
        return self

    @property
    def max_file_size_bytes(self) -> int:
        return self.max_file_size_mb * 1024 * 1024


class SearchConfig(BaseModel):
    """Search defaults.

    Env vars:
        CODESIFT__SEARCH__DEFAULT_K: Results returned when k is not given
        CODESIFT__SEARCH__SCORE_THRESHOLD: Minimum cosine similarity
    """

    default_k: int = Field(
        default=10,
        description="Default number of results. Hard maximum is constants.SEARCH_MAX_K.",
    )
    score_threshold: float | None = Field(
        default=None,
        description="Drop results below this cosine similarity (-1.0 to 1.0).",
    )

    @field_validator("default_k")
    @classmethod
    def validate_default_k(cls, v: int) -> int:
        if not (1 <= v <= SEARCH_MAX_K):
            raise ValueError(f"default_k must be 1-{SEARCH_MAX_K}, got {v}")
        return v

    @field_validator("score_threshold")
    @classmethod
    def validate_threshold(cls, v: float | None) -> float | None:
        if v is not None and not (-1.0 <= v <= 1.0):
            raise ValueError(f"score_threshold must be within [-1, 1], got {v}")
        return v


class CodeSiftConfig(BaseModel):
    """Root configuration for CodeSift."""

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    ingest: IngestConfig = Field(default_factory=IngestConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
