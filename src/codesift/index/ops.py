"""High-level orchestration of ingestion, embedding and search.

KnowledgeIndex is the entry point for callers. It wires the StoreRegistry,
the BatchIngestor and a caller-supplied embedding function:

    walk + chunk (BatchIngestor) -> embed (caller) -> persist (EmbeddingStore)

Serialization invariant: only ONE ``index_project`` run per project at a
time. Searches never wait on an indexing run.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog

from codesift.config.constants import SEARCH_MAX_K
from codesift.config.models import CodeSiftConfig
from codesift.core.errors import CodeSiftError, EmbeddingFailure, InvalidInput
from codesift.core.logging import clear_run_id, get_run_id, set_run_id
from codesift.index.filter import PathFilter
from codesift.index.ingest import BatchIngestor, Sink, SkipCallback
from codesift.index.models import Chunk, IndexEntry, IngestSummary, SearchResult
from codesift.index.registry import StoreRegistry
from codesift.index.store import EmbeddingStore

log = structlog.get_logger()

__all__ = ["EmbedFn", "IndexResult", "KnowledgeIndex"]

EmbedFn = Callable[[str], Sequence[float]]


def _under_failure(source_path: str, failed: Iterable[str]) -> bool:
    """True if *source_path* is a failed entry or lies in a directory that failed."""
    for entry in failed:
        if entry == "." or source_path == entry or source_path.startswith(entry + "/"):
            return True
    return False


@dataclass
class IndexResult:
    """Result of one ``index_project`` run."""

    project_id: str
    summary: IngestSummary
    stale_removed: int = 0
    entries: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.summary.to_dict(),
            "stale_removed": self.stale_removed,
            "entries": self.entries,
        }


class KnowledgeIndex:
    """Ingestion and search facade over per-project embedding stores."""

    def __init__(
        self,
        embed: EmbedFn,
        *,
        config: CodeSiftConfig | None = None,
        registry: StoreRegistry | None = None,
    ) -> None:
        self._config = config or CodeSiftConfig()
        self._embed = embed
        self._registry = registry or StoreRegistry.from_config(self._config.store)
        self._ingestor = BatchIngestor.from_config(self._config.ingest)
        self._index_locks: dict[str, threading.Lock] = {}
        self._index_locks_guard = threading.Lock()

    @property
    def config(self) -> CodeSiftConfig:
        return self._config

    @property
    def registry(self) -> StoreRegistry:
        return self._registry

    @property
    def ingestor(self) -> BatchIngestor:
        return self._ingestor

    def store(self, project_id: str) -> EmbeddingStore:
        return self._registry.get(project_id)

    def path_filter(self, root: Path | str) -> PathFilter:
        """PathFilter for *root* built from the ingest configuration."""
        return PathFilter.from_config(Path(root), self._config.ingest)

    # =========================================================================
    # Ingestion
    # =========================================================================

    def batch(
        self,
        project_id: str,
        root: Path | str,
        path_filter: PathFilter | None,
        consumer: Sink,
        *,
        on_skip: SkipCallback | None = None,
    ) -> IngestSummary:
        """Walk *root* and hand raw chunk batches to *consumer*."""
        path_filter = path_filter or self.path_filter(root)
        return self._ingestor.ingest(project_id, root, path_filter, consumer, on_skip=on_skip)

    def embed_chunks(self, chunks: Iterable[Chunk]) -> list[IndexEntry]:
        """Embed every chunk. Any embedder error aborts the whole batch.

        Raises:
            EmbeddingFailure: the embedding function raised or returned no vector.
        """
        entries: list[IndexEntry] = []
        for chunk in chunks:
            vector = self._embed_text(chunk.text, chunk_id=chunk.id, source_path=chunk.source_path)
            entries.append(IndexEntry.from_chunk(chunk, vector))
        return entries

    def index_project(
        self,
        project_id: str,
        root: Path | str,
        path_filter: PathFilter | None = None,
        *,
        on_skip: SkipCallback | None = None,
    ) -> IndexResult:
        """Index every matching file under *root* into the project's store.

        Chunks of re-indexed files replace their previous chunks. Files that
        vanished, became excluded or stopped producing chunks are removed from
        the store once the walk completes; entries under a file or directory
        that could not be read are kept. On success the project is marked
        indexed.
        """
        root = Path(root)
        path_filter = path_filter or self.path_filter(root)
        owns_run = get_run_id() is None
        if owns_run:
            set_run_id()
        started = time.perf_counter()

        try:
            with self._index_lock(project_id):
                store = self.store(project_id)
                known = store.source_hashes() if self._config.ingest.skip_unchanged else None
                replaced: set[str] = set()

                def sink(batch: list[Chunk]) -> None:
                    entries = self.embed_chunks(batch)
                    fresh = {chunk.source_path for chunk in batch} - replaced
                    store.replace_sources(fresh, entries)
                    replaced.update(fresh)

                summary = self._ingestor.ingest(
                    project_id,
                    root,
                    path_filter,
                    sink,
                    on_skip=on_skip,
                    known_hashes=known,
                )

                keep = replaced | set(summary.unchanged_paths)
                failed = [p for p, _ in summary.failures]
                stale = {
                    p for p in store.source_paths() - keep if not _under_failure(p, failed)
                }
                stale_removed = store.remove_sources(stale) if stale else 0
                self._registry.mark_indexed(project_id)
                result = IndexResult(
                    project_id=project_id,
                    summary=summary,
                    stale_removed=stale_removed,
                    entries=len(store),
                )
            log.info(
                "index.project_indexed",
                project_id=project_id,
                chunks=summary.chunks_indexed,
                stale_removed=stale_removed,
                entries=result.entries,
                elapsed_ms=round((time.perf_counter() - started) * 1000),
            )
        finally:
            if owns_run:
                clear_run_id()
        return result

    # =========================================================================
    # Search
    # =========================================================================

    def search(
        self,
        project_id: str,
        query_text: str,
        k: int | None = None,
        score_threshold: float | None = None,
    ) -> list[SearchResult]:
        """Embed *query_text* and return the k most similar chunks.

        ``k`` defaults to ``search.default_k`` and is capped at SEARCH_MAX_K;
        ``score_threshold`` defaults to ``search.score_threshold``.
        """
        if not query_text or not query_text.strip():
            raise InvalidInput.create("query_text must be a non-empty string")
        if k is None:
            k = self._config.search.default_k
        elif k > SEARCH_MAX_K:
            k = SEARCH_MAX_K
        if score_threshold is None:
            score_threshold = self._config.search.score_threshold

        store = self.store(project_id)
        vector = self._embed_text(query_text)
        results = store.search(vector, k, score_threshold)
        log.debug("index.searched", project_id=project_id, k=k, hits=len(results))
        return results

    # =========================================================================
    # Maintenance
    # =========================================================================

    def remove_files(self, project_id: str, paths: Iterable[str]) -> int:
        """Remove every chunk of the given root-relative source paths."""
        removed = self.store(project_id).remove_sources(paths)
        log.info("index.files_removed", project_id=project_id, removed=removed)
        return removed

    def clear(self, project_id: str) -> None:
        """Empty the project's store and forget that it was indexed."""
        with self._index_lock(project_id):
            self.store(project_id).remove_all()
            self._registry.unmark_indexed(project_id)

    def is_indexed(self, project_id: str) -> bool:
        return self._registry.is_indexed(project_id)

    def close(self) -> None:
        """Close every store opened through this index."""
        self._registry.close_all()

    def __enter__(self) -> KnowledgeIndex:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # =========================================================================
    # Internals
    # =========================================================================

    def _index_lock(self, project_id: str) -> threading.Lock:
        with self._index_locks_guard:
            lock = self._index_locks.get(project_id)
            if lock is None:
                lock = threading.Lock()
                self._index_locks[project_id] = lock
            return lock

    def _embed_text(self, text: str, **details: Any) -> Sequence[float]:
        try:
            vector = self._embed(text)
        except CodeSiftError:
            raise
        except Exception as e:
            raise EmbeddingFailure.create(str(e) or type(e).__name__, **details) from e
        if vector is None or len(vector) == 0:
            raise EmbeddingFailure.create("embedding function returned no vector", **details)
        return vector
