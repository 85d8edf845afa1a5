"""Directory walk and bounded batching of chunks.

Files are visited in lexicographic order of their root-relative POSIX path,
so an unchanged tree always produces the same batch boundaries. Directory
symlinks are not followed. Per-entry errors are logged, recorded in the
summary and skipped; a sink exception halts the walk and propagates.
"""

from __future__ import annotations

import os
import time
from collections import deque
from collections.abc import Callable, Iterator, Mapping
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from codesift.core.errors import InvalidInput
from codesift.core.logging import clear_run_id, get_run_id, set_run_id
from codesift.index.chunking import Chunker, content_hash
from codesift.index.models import Chunk, IngestSummary, SkippedFile

if TYPE_CHECKING:
    from codesift.config.models import IngestConfig
    from codesift.index.filter import PathFilter

log = structlog.get_logger()

__all__ = ["BatchIngestor", "IngestBatches", "Sink", "SkipCallback"]

Sink = Callable[[list[Chunk]], None]
SkipCallback = Callable[[SkippedFile], None]


@dataclass
class _FileResult:
    """Outcome of reading and chunking one file."""

    rel_path: str
    chunks: list[Chunk] = field(default_factory=list)
    skipped: SkippedFile | None = None
    unchanged: bool = False
    failure: str | None = None


def _sort_key(entry: os.DirEntry[str]) -> str:
    # Directories sort as "name/" so the walk matches full-path ordering
    try:
        is_dir = entry.is_dir(follow_symlinks=False)
    except OSError:
        is_dir = False
    return f"{entry.name}/" if is_dir else entry.name


class IngestBatches:
    """Lazy, finite, restartable iterable of chunk batches.

    Each ``iter()`` re-walks the tree. ``summary`` describes the most recent
    (possibly still running) pass.
    """

    def __init__(
        self,
        ingestor: BatchIngestor,
        project_id: str,
        root: Path,
        path_filter: PathFilter,
        on_skip: SkipCallback | None = None,
        known_hashes: Mapping[str, str] | None = None,
    ) -> None:
        self._ingestor = ingestor
        self._project_id = project_id
        self._root = root
        self._filter = path_filter
        self._on_skip = on_skip
        self._known_hashes = known_hashes
        self.summary = IngestSummary(project_id=project_id)

    def __iter__(self) -> Iterator[list[Chunk]]:
        summary = IngestSummary(project_id=self._project_id)
        self.summary = summary
        started = time.perf_counter()
        try:
            yield from self._ingestor._iter_batches(
                self._project_id,
                self._root,
                self._filter,
                summary,
                self._on_skip,
                self._known_hashes,
            )
        finally:
            summary.elapsed_seconds = time.perf_counter() - started


class BatchIngestor:
    """Walks a project tree and groups its chunks into bounded batches.

    A batch is flushed once it holds ``max_batch_chunks`` chunks or its chunk
    texts reach ``max_batch_bytes`` UTF-8 bytes, whichever comes first. A
    batch never exceeds ``max_batch_bytes`` unless it is a single chunk larger
    than the bound. The trailing partial batch is flushed after the walk; an
    empty batch never is.

    With ``max_workers > 1`` files are read and chunked on a thread pool, at
    most ``2 * max_workers`` files ahead of the consumer. In deterministic
    mode results are consumed in walk order, otherwise in completion order.

    ``max_files`` caps how many matching files one walk visits; the rest of
    the tree is ignored and ``IngestSummary.limit_reached`` is set.
    """

    def __init__(
        self,
        chunker: Chunker | None = None,
        *,
        max_batch_chunks: int = 100,
        max_batch_bytes: int = 1_048_576,
        max_file_size_bytes: int = 10 * 1024 * 1024,
        max_workers: int = 1,
        deterministic: bool = True,
        max_files: int | None = None,
    ) -> None:
        if max_batch_chunks < 1:
            raise InvalidInput.create(
                "max_batch_chunks must be >= 1", max_batch_chunks=max_batch_chunks
            )
        if max_batch_bytes < 1:
            raise InvalidInput.create(
                "max_batch_bytes must be >= 1", max_batch_bytes=max_batch_bytes
            )
        if max_workers < 1:
            raise InvalidInput.create("max_workers must be >= 1", max_workers=max_workers)
        if max_files is not None and max_files < 1:
            raise InvalidInput.create("max_files must be >= 1", max_files=max_files)
        self.chunker = chunker or Chunker()
        self.max_batch_chunks = max_batch_chunks
        self.max_batch_bytes = max_batch_bytes
        self.max_file_size_bytes = max_file_size_bytes
        self.max_workers = max_workers
        self.deterministic = deterministic
        self.max_files = max_files

    @classmethod
    def from_config(cls, config: IngestConfig, chunker: Chunker | None = None) -> BatchIngestor:
        return cls(
            chunker or Chunker.from_config(config),
            max_batch_chunks=config.max_batch_chunks,
            max_batch_bytes=config.max_batch_bytes,
            max_file_size_bytes=config.max_file_size_bytes,
            max_workers=config.max_workers,
            deterministic=config.deterministic,
            max_files=config.max_files,
        )

    # =========================================================================
    # Public API
    # =========================================================================

    def ingest(
        self,
        project_id: str,
        root_path: Path | str,
        path_filter: PathFilter,
        sink: Sink,
        *,
        on_skip: SkipCallback | None = None,
        known_hashes: Mapping[str, str] | None = None,
    ) -> IngestSummary:
        """Walk *root_path* and hand every batch to *sink* synchronously.

        Args:
            project_id: Scope for chunk ids. Must be non-empty.
            root_path: Existing directory to walk.
            path_filter: Decides which files are indexed. Paths are handed to it
                relative to root_path, so its root should be root_path.
            sink: Called once per non-empty batch. Exceptions propagate.
            on_skip: Receives files that produced no chunks.
            known_hashes: ``source_path -> content_hash`` of indexed files;
                files whose hash still matches are not chunked again.

        Raises:
            InvalidInput: Empty project id or unusable root, before any sink call.
        """
        root = self._validate(project_id, root_path)
        owns_run = get_run_id() is None
        if owns_run:
            set_run_id()

        summary = IngestSummary(project_id=project_id)
        log.info("ingest.started", project_id=project_id, root=str(root))
        started = time.perf_counter()
        batches = self._iter_batches(project_id, root, path_filter, summary, on_skip, known_hashes)
        try:
            for batch in batches:
                try:
                    sink(batch)
                except Exception:
                    log.warning(
                        "ingest.sink_failed",
                        project_id=project_id,
                        batch_size=len(batch),
                        batches_done=summary.batches,
                    )
                    raise
            summary.elapsed_seconds = time.perf_counter() - started
            log.info("ingest.completed", **summary.to_dict())
        finally:
            batches.close()
            if owns_run:
                clear_run_id()
        return summary

    def batches(
        self,
        project_id: str,
        root_path: Path | str,
        path_filter: PathFilter,
        *,
        on_skip: SkipCallback | None = None,
        known_hashes: Mapping[str, str] | None = None,
    ) -> IngestBatches:
        """Same walk as ``ingest`` exposed as a restartable iterable of batches."""
        root = self._validate(project_id, root_path)
        return IngestBatches(self, project_id, root, path_filter, on_skip, known_hashes)

    # =========================================================================
    # Internals
    # =========================================================================

    @staticmethod
    def _validate(project_id: str, root_path: Path | str) -> Path:
        if not isinstance(project_id, str) or not project_id.strip():
            raise InvalidInput.create("project_id must be a non-empty string")
        root = Path(root_path)
        if not root.exists():
            raise InvalidInput.bad_root(str(root), "path does not exist")
        if not root.is_dir():
            raise InvalidInput.bad_root(str(root), "not a directory")
        return root

    def _iter_batches(
        self,
        project_id: str,
        root: Path,
        path_filter: PathFilter,
        summary: IngestSummary,
        on_skip: SkipCallback | None,
        known_hashes: Mapping[str, str] | None,
    ) -> Iterator[list[Chunk]]:
        def record_failure(rel_path: str, reason: str) -> None:
            log.warning("ingest.entry_failed", path=rel_path, reason=reason)
            summary.files_skipped += 1
            summary.failures.append((rel_path, reason))
            if on_skip is not None:
                on_skip(SkippedFile(source_path=rel_path, reason="unreadable"))

        def record_batch(batch: list[Chunk], size: int) -> None:
            # Counted only once the consumer has accepted the batch
            summary.batches += 1
            summary.chunks_indexed += len(batch)
            log.debug("ingest.batch_flushed", size=len(batch), bytes=size)

        pending: list[Chunk] = []
        pending_bytes = 0
        files = self._walk(root, path_filter, record_failure)
        if self.max_files is not None:
            files = self._capped(files, summary, self.max_files)

        for result in self._results(project_id, files, known_hashes):
            summary.files_scanned += 1
            if result.failure is not None:
                record_failure(result.rel_path, result.failure)
                continue
            if result.skipped is not None:
                log.debug("ingest.file_skipped", path=result.rel_path, reason=result.skipped.reason)
                summary.files_skipped += 1
                if on_skip is not None:
                    on_skip(result.skipped)
                continue
            if result.unchanged:
                summary.files_unchanged += 1
                summary.unchanged_paths.append(result.rel_path)
                continue
            if result.chunks:
                summary.indexed_paths.append(result.rel_path)

            for chunk in result.chunks:
                # A chunk that would overflow the byte bound starts a new batch
                if pending and pending_bytes + chunk.size_bytes > self.max_batch_bytes:
                    yield pending
                    record_batch(pending, pending_bytes)
                    pending, pending_bytes = [], 0
                pending.append(chunk)
                pending_bytes += chunk.size_bytes
                if len(pending) >= self.max_batch_chunks or pending_bytes >= self.max_batch_bytes:
                    yield pending
                    record_batch(pending, pending_bytes)
                    pending, pending_bytes = [], 0

        if pending:
            yield pending
            record_batch(pending, pending_bytes)

    def _capped(
        self, files: Iterator[tuple[str, str]], summary: IngestSummary, limit: int
    ) -> Iterator[tuple[str, str]]:
        """Pass through at most *limit* files; flag the summary if more exist."""
        for count, item in enumerate(files):
            if count >= limit:
                summary.limit_reached = True
                log.warning(
                    "ingest.limit_reached",
                    project_id=summary.project_id,
                    max_files=limit,
                )
                return
            yield item

    def _results(
        self,
        project_id: str,
        files: Iterator[tuple[str, str]],
        known_hashes: Mapping[str, str] | None,
    ) -> Iterator[_FileResult]:
        if self.max_workers <= 1:
            for rel_path, abs_path in files:
                yield self._process_file(project_id, rel_path, abs_path, known_hashes)
            return

        # At most `window` files are read ahead of the consumer
        window = 2 * self.max_workers
        in_flight: deque[Future[_FileResult]] = deque()
        executor = ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="codesift-ingest"
        )
        try:
            for rel_path, abs_path in files:
                in_flight.append(
                    executor.submit(
                        self._process_file, project_id, rel_path, abs_path, known_hashes
                    )
                )
                if len(in_flight) >= window:
                    yield from self._drain(in_flight)
            while in_flight:
                yield from self._drain(in_flight)
        finally:
            executor.shutdown(wait=True, cancel_futures=True)

    def _drain(self, in_flight: deque[Future[_FileResult]]) -> Iterator[_FileResult]:
        """Yield at least one finished result, in walk or completion order."""
        if self.deterministic:
            yield in_flight.popleft().result()
            return
        done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
        finished = [f for f in in_flight if f in done]
        for future in finished:
            in_flight.remove(future)
        for future in finished:
            yield future.result()

    def _walk(
        self,
        root: Path,
        path_filter: PathFilter,
        on_error: Callable[[str, str], None],
        rel_dir: str = "",
    ) -> Iterator[tuple[str, str]]:
        """Yield (rel_path, abs_path) of matching files in lexicographic order."""
        abs_dir = os.path.join(root, rel_dir) if rel_dir else str(root)
        try:
            with os.scandir(abs_dir) as it:
                entries = sorted(it, key=_sort_key)
        except OSError as e:
            on_error(rel_dir or ".", f"cannot list directory: {e.strerror or e}")
            return

        for entry in entries:
            rel_path = f"{rel_dir}/{entry.name}" if rel_dir else entry.name
            try:
                is_dir = entry.is_dir(follow_symlinks=False)
                is_file = entry.is_file()
                is_link = entry.is_symlink()
            except OSError as e:
                on_error(rel_path, f"cannot stat: {e.strerror or e}")
                continue

            if is_dir:
                if not path_filter.should_prune_dir(entry.name, rel_path):
                    yield from self._walk(root, path_filter, on_error, rel_path)
                continue
            if is_link and not is_file and not os.path.exists(entry.path):
                on_error(rel_path, "broken symlink")
                continue
            if is_file and path_filter.matches(rel_path):
                yield rel_path, entry.path

    def _process_file(
        self,
        project_id: str,
        rel_path: str,
        abs_path: str,
        known_hashes: Mapping[str, str] | None,
    ) -> _FileResult:
        try:
            stat = os.stat(abs_path)
            if stat.st_size > self.max_file_size_bytes:
                return _FileResult(rel_path, skipped=SkippedFile(rel_path, "too_large"))
            with open(abs_path, "rb") as fh:
                content = fh.read()
        except OSError as e:
            return _FileResult(rel_path, failure=f"cannot read: {e.strerror or e}")

        if known_hashes is not None and known_hashes.get(rel_path) == content_hash(content):
            return _FileResult(rel_path, unchanged=True)

        last_modified = datetime.fromtimestamp(stat.st_mtime, tz=UTC).isoformat()
        sequence = self.chunker.chunk_bytes(
            project_id, rel_path, content, metadata={"last_modified": last_modified}
        )
        if sequence.skipped is not None:
            return _FileResult(rel_path, skipped=sequence.skipped)
        return _FileResult(rel_path, chunks=list(sequence))
