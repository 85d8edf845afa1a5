"""Data model for the embedding store and ingestion pipeline."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True, slots=True)
class Chunk:
    """A bounded segment of one source file, the unit of embedding.

    ``id`` is derived from (project id, source path, chunk index), so
    re-chunking an unchanged file reproduces the same ids.
    """

    id: str
    text: str
    source_path: str
    index: int
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def size_bytes(self) -> int:
        return len(self.text.encode("utf-8"))


@dataclass(frozen=True, slots=True)
class IndexEntry:
    """Persisted unit: (id, vector, text, metadata)."""

    id: str
    vector: Sequence[float]
    text: str = ""
    metadata: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_chunk(cls, chunk: Chunk, vector: Sequence[float]) -> IndexEntry:
        return cls(id=chunk.id, vector=vector, text=chunk.text, metadata=dict(chunk.metadata))

    @property
    def source_path(self) -> str | None:
        return self.metadata.get("source_path")


@dataclass(frozen=True, slots=True)
class SearchResult:
    """One similarity hit. Lists of results sort by score desc, then id asc."""

    id: str
    score: float
    text: str
    metadata: dict[str, str]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "score": self.score,
            "text": self.text,
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True, slots=True)
class SkippedFile:
    """A file that produced no chunks (binary, undecodable, too large, unreadable)."""

    source_path: str
    reason: str


@dataclass
class IngestSummary:
    """Per-run ingestion report.

    ``indexed_paths`` lists files that produced chunks this run;
    ``unchanged_paths`` lists files skipped because their content hash matched.
    ``limit_reached`` is set when the walk stopped at ``max_files``.
    """

    project_id: str
    files_scanned: int = 0
    files_skipped: int = 0
    files_unchanged: int = 0
    chunks_indexed: int = 0
    batches: int = 0
    failures: list[tuple[str, str]] = field(default_factory=list)
    indexed_paths: list[str] = field(default_factory=list)
    unchanged_paths: list[str] = field(default_factory=list)
    limit_reached: bool = False
    elapsed_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "files_scanned": self.files_scanned,
            "files_skipped": self.files_skipped,
            "files_unchanged": self.files_unchanged,
            "chunks_indexed": self.chunks_indexed,
            "batches": self.batches,
            "failures": [list(f) for f in self.failures],
            "limit_reached": self.limit_reached,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
        }
