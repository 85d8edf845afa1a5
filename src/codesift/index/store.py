"""Durable, project-scoped embedding store.

Storage layout (one directory per project)::

    <dir>/embeddings.npz   float32 matrix, ids, texts, JSON metadata per row
    <dir>/metadata.json    format version, dimension, count
    <dir>/.lock            exclusive OS lock held while the store is open

Readers never take a lock: every mutation builds a new immutable snapshot,
persists it, and only then publishes it with a single reference swap. A
search therefore sees either all of a batch or none of it, and a failed
persist leaves the visible state untouched.
"""

from __future__ import annotations

import contextlib
import json
import os
import sys
import threading
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any

import numpy as np
import structlog

from codesift.config.constants import EMBEDDINGS_FILE, METADATA_FILE, STORE_FORMAT_VERSION
from codesift.core.errors import (
    ConcurrentOpen,
    DimensionMismatch,
    InvalidInput,
    StorageIOFailure,
    StoreClosed,
)
from codesift.index.models import IndexEntry, SearchResult
from codesift.index.similarity import as_vector, cosine_scores, row_norms, top_k

if sys.platform == "win32":
    import msvcrt
else:
    import fcntl

log = structlog.get_logger()

__all__ = ["EmbeddingStore"]


def _as_id_set(values: Iterable[str], name: str) -> set[str]:
    # A bare string would otherwise be split into characters
    if isinstance(values, str):
        raise InvalidInput.create(f"{name} must be an iterable of strings, not a str", value=values)
    return set(values)


@dataclass(frozen=True, slots=True)
class _Snapshot:
    """Immutable view of the store contents. Rows are parallel across fields."""

    matrix: np.ndarray
    norms: np.ndarray
    ids: tuple[str, ...] = ()
    texts: tuple[str, ...] = ()
    metadata: tuple[dict[str, str], ...] = ()
    dimension: int | None = None
    rows: dict[str, int] = field(default_factory=dict)

    @classmethod
    def empty(cls, dimension: int | None = None) -> _Snapshot:
        return cls(
            matrix=np.zeros((0, dimension or 0), dtype=np.float32),
            norms=np.zeros(0, dtype=np.float64),
            dimension=dimension,
        )

    @classmethod
    def build(
        cls,
        matrix: np.ndarray,
        ids: Sequence[str],
        texts: Sequence[str],
        metadata: Sequence[dict[str, str]],
        dimension: int | None,
    ) -> _Snapshot:
        return cls(
            matrix=matrix,
            norms=row_norms(matrix),
            ids=tuple(ids),
            texts=tuple(texts),
            metadata=tuple(metadata),
            dimension=dimension,
            rows={entry_id: row for row, entry_id in enumerate(ids)},
        )

    def __len__(self) -> int:
        return len(self.ids)

    def keep(self, mask: np.ndarray) -> _Snapshot:
        """New snapshot holding only rows where *mask* is True."""
        kept = np.flatnonzero(mask)
        return _Snapshot.build(
            self.matrix[kept],
            [self.ids[i] for i in kept],
            [self.texts[i] for i in kept],
            [self.metadata[i] for i in kept],
            self.dimension,
        )


class _DirectoryLock:
    """Non-blocking exclusive lock on a file, held for the store's lifetime."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._fh: IO[bytes] | None = None

    def acquire(self) -> bool:
        fh = self.path.open("a+b")
        try:
            if sys.platform == "win32":
                fh.seek(0)
                msvcrt.locking(fh.fileno(), msvcrt.LK_NBLCK, 1)
            else:
                fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            fh.close()
            return False
        self._fh = fh
        return True

    def release(self) -> None:
        if self._fh is None:
            return
        try:
            if sys.platform == "win32":
                self._fh.seek(0)
                msvcrt.locking(self._fh.fileno(), msvcrt.LK_UNLCK, 1)
            else:
                fcntl.flock(self._fh.fileno(), fcntl.LOCK_UN)
        finally:
            self._fh.close()
            self._fh = None


class EmbeddingStore:
    """Vectors plus source text and metadata for one project.

    Ids are unique; ``add`` with an existing id overwrites it. The first
    vector added to an empty store fixes the dimension until ``remove_all``.
    All mutations are persisted before they return.

    Thread safety: mutations are serialized by one writer lock; ``search``
    and the read accessors run lock-free against the published snapshot.
    """

    def __init__(self, project_id: str, directory: Path, *, lock_file_name: str = ".lock") -> None:
        if not project_id:
            raise InvalidInput.create("project_id must be a non-empty string")
        self.project_id = project_id
        self._dir = Path(directory)
        self._npz_path = self._dir / EMBEDDINGS_FILE
        self._meta_path = self._dir / METADATA_FILE
        self._write_lock = threading.Lock()
        self._closed = False

        try:
            self._dir.mkdir(parents=True, exist_ok=True)
            self._lock = _DirectoryLock(self._dir / lock_file_name)
            acquired = self._lock.acquire()
        except OSError as e:
            raise StorageIOFailure.create(str(self._dir), str(e)) from e
        if not acquired:
            raise ConcurrentOpen.create(project_id, str(self._dir))

        self._snapshot = self._load()
        log.info(
            "store.opened",
            project_id=project_id,
            path=str(self._dir),
            count=len(self._snapshot),
            dim=self._snapshot.dimension,
        )

    # =========================================================================
    # Read API
    # =========================================================================

    @property
    def directory(self) -> Path:
        return self._dir

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def dimension(self) -> int | None:
        """Established vector dimension, None while unset."""
        return self._current().dimension

    def __len__(self) -> int:
        return len(self._current())

    def ids(self) -> list[str]:
        return list(self._current().ids)

    def get(self, entry_id: str) -> IndexEntry | None:
        snap = self._current()
        row = snap.rows.get(entry_id)
        if row is None:
            return None
        return IndexEntry(
            id=entry_id,
            vector=tuple(float(v) for v in snap.matrix[row]),
            text=snap.texts[row],
            metadata=dict(snap.metadata[row]),
        )

    def source_hashes(self) -> dict[str, str]:
        """Map ``source_path -> content_hash`` for every indexed file."""
        hashes: dict[str, str] = {}
        for meta in self._current().metadata:
            path = meta.get("source_path")
            digest = meta.get("content_hash")
            if path is not None and digest is not None:
                hashes[path] = digest
        return hashes

    def source_paths(self) -> set[str]:
        return {
            meta["source_path"] for meta in self._current().metadata if "source_path" in meta
        }

    def search(
        self,
        query_vector: Sequence[float] | np.ndarray,
        k: int,
        score_threshold: float | None = None,
    ) -> list[SearchResult]:
        """Top-k entries by cosine similarity, score desc then id asc.

        Raises:
            InvalidInput: k is not a positive integer.
            DimensionMismatch: query length differs from the store dimension.
            StoreClosed: the store was closed.
        """
        snap = self._current()
        if isinstance(k, bool) or not isinstance(k, int) or k <= 0:
            raise InvalidInput.create("k must be a positive integer", k=k)
        query = as_vector(query_vector)
        if snap.dimension is not None and query.shape[0] != snap.dimension:
            raise DimensionMismatch.create(snap.dimension, int(query.shape[0]))
        if len(snap) == 0:
            return []

        scores = cosine_scores(snap.matrix, snap.norms, query)
        hits = top_k(snap.ids, scores, k, score_threshold)
        return [
            SearchResult(
                id=snap.ids[row],
                score=score,
                text=snap.texts[row],
                metadata=dict(snap.metadata[row]),
            )
            for row, score in hits
        ]

    # =========================================================================
    # Write API
    # =========================================================================

    def add(self, entries: Iterable[IndexEntry]) -> None:
        """Upsert *entries*. Within one call a repeated id keeps the last entry.

        Raises:
            InvalidInput: empty id or non-finite vector values.
            DimensionMismatch: a vector's length differs from the store's.
            StorageIOFailure: persisting failed; contents are unchanged.
        """
        with self._write_lock:
            snap = self._current()
            latest, vectors, dimension = self._validate_entries(snap, entries)
            if not latest:
                return
            new = self._upsert(snap, latest, vectors, dimension)
            self._publish(new)
            log.debug(
                "store.added",
                project_id=self.project_id,
                upserted=len(latest),
                count=len(new),
            )

    def replace_sources(self, paths: Iterable[str], entries: Iterable[IndexEntry]) -> int:
        """Drop every entry of *paths*, then upsert *entries*, as one mutation.

        Entries are validated before anything is dropped, and the result is
        published once, so a failure leaves the previous chunks of *paths* in
        place and a concurrent search never sees the sources missing.

        Returns:
            Number of previously stored entries dropped.

        Raises:
            Same as ``add``.
        """
        targets = _as_id_set(paths, "paths")
        with self._write_lock:
            snap = self._current()
            latest, vectors, dimension = self._validate_entries(snap, entries)
            removed = 0
            base = snap
            if targets and len(snap):
                mask = np.array(
                    [meta.get("source_path") not in targets for meta in snap.metadata], dtype=bool
                )
                removed = int(len(snap) - mask.sum())
                if removed:
                    base = snap.keep(mask)
            if not latest and not removed:
                return 0
            new = self._upsert(base, latest, vectors, dimension) if latest else base
            self._publish(new)
            log.debug(
                "store.sources_replaced",
                project_id=self.project_id,
                sources=len(targets),
                removed=removed,
                upserted=len(latest),
                count=len(new),
            )
            return removed

    def remove(self, ids: Iterable[str]) -> int:
        """Delete entries by id. Returns how many existed; unknown ids are ignored."""
        targets = _as_id_set(ids, "ids")
        with self._write_lock:
            snap = self._current()
            rows = {snap.rows[i] for i in targets if i in snap.rows}
            if not rows:
                return 0
            mask = np.ones(len(snap), dtype=bool)
            mask[list(rows)] = False
            self._publish(snap.keep(mask))
            log.debug("store.removed", project_id=self.project_id, removed=len(rows))
            return len(rows)

    def remove_sources(self, paths: Iterable[str]) -> int:
        """Delete every entry whose ``source_path`` metadata is in *paths*."""
        targets = _as_id_set(paths, "paths")
        with self._write_lock:
            snap = self._current()
            if not targets or len(snap) == 0:
                return 0
            mask = np.array(
                [meta.get("source_path") not in targets for meta in snap.metadata], dtype=bool
            )
            removed = int(len(snap) - mask.sum())
            if removed == 0:
                return 0
            self._publish(snap.keep(mask))
            log.debug(
                "store.sources_removed",
                project_id=self.project_id,
                sources=len(targets),
                removed=removed,
            )
            return removed

    def remove_all(self) -> None:
        """Drop every entry and the dimension constraint."""
        with self._write_lock:
            self._current()
            self._publish(_Snapshot.empty())
            log.info("store.cleared", project_id=self.project_id)

    def close(self) -> None:
        """Release the directory lock and in-memory state. Idempotent."""
        with self._write_lock:
            if self._closed:
                return
            self._closed = True
            self._snapshot = _Snapshot.empty()
            self._lock.release()
            log.info("store.closed", project_id=self.project_id)

    def __enter__(self) -> EmbeddingStore:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # =========================================================================
    # Internals
    # =========================================================================

    def _current(self) -> _Snapshot:
        if self._closed:
            raise StoreClosed.create(self.project_id)
        return self._snapshot

    @staticmethod
    def _validate_entries(
        snap: _Snapshot, entries: Iterable[IndexEntry]
    ) -> tuple[dict[str, IndexEntry], dict[str, np.ndarray], int | None]:
        """Check ids, dimension and values; later duplicates replace earlier ones."""
        latest: dict[str, IndexEntry] = {}
        vectors: dict[str, np.ndarray] = {}
        dimension = snap.dimension
        for entry in entries:
            if not isinstance(entry.id, str) or not entry.id:
                raise InvalidInput.empty_id()
            vec = as_vector(entry.vector)
            if dimension is None:
                dimension = int(vec.shape[0])
                if dimension == 0:
                    raise InvalidInput.create("vector must not be empty", id=entry.id)
            if vec.shape[0] != dimension:
                raise DimensionMismatch.create(dimension, int(vec.shape[0]), entry.id)
            if not np.all(np.isfinite(vec)):
                raise InvalidInput.create("vector contains non-finite values", id=entry.id)
            latest[entry.id] = entry
            vectors[entry.id] = vec
        return latest, vectors, dimension

    @staticmethod
    def _upsert(
        snap: _Snapshot,
        latest: dict[str, IndexEntry],
        vectors: dict[str, np.ndarray],
        dimension: int | None,
    ) -> _Snapshot:
        ids = list(snap.ids)
        texts = list(snap.texts)
        metadata = list(snap.metadata)
        matrix = snap.matrix.copy() if len(snap) else np.zeros((0, dimension), np.float32)
        appended: list[np.ndarray] = []
        for entry_id, entry in latest.items():
            row = snap.rows.get(entry_id)
            if row is None:
                ids.append(entry_id)
                texts.append(entry.text)
                metadata.append(dict(entry.metadata))
                appended.append(vectors[entry_id])
            else:
                matrix[row] = vectors[entry_id]
                texts[row] = entry.text
                metadata[row] = dict(entry.metadata)
        if appended:
            matrix = np.vstack([matrix, np.stack(appended)]).astype(np.float32, copy=False)
        return _Snapshot.build(matrix, ids, texts, metadata, dimension)

    def _publish(self, snap: _Snapshot) -> None:
        """Persist *snap*, then make it visible. Caller holds the writer lock."""
        self._persist(snap)
        self._snapshot = snap

    def _persist(self, snap: _Snapshot) -> None:
        npz_tmp = self._npz_path.with_name(self._npz_path.name + ".tmp")
        meta_tmp = self._meta_path.with_name(self._meta_path.name + ".tmp")
        try:
            if snap.dimension is None:
                self._npz_path.unlink(missing_ok=True)
                self._meta_path.unlink(missing_ok=True)
                return

            with npz_tmp.open("wb") as f:
                np.savez_compressed(
                    f,
                    matrix=snap.matrix.astype(np.float32, copy=False),
                    ids=np.array(snap.ids, dtype="U"),
                    texts=np.array(snap.texts, dtype="U"),
                    metadata=np.array(
                        [json.dumps(m, sort_keys=True) for m in snap.metadata], dtype="U"
                    ),
                )
                f.flush()
                os.fsync(f.fileno())
            os.replace(npz_tmp, self._npz_path)

            meta: dict[str, Any] = {
                "version": STORE_FORMAT_VERSION,
                "project_id": self.project_id,
                "dim": snap.dimension,
                "count": len(snap),
            }
            with meta_tmp.open("w", encoding="utf-8") as f:
                json.dump(meta, f, indent=2)
            os.replace(meta_tmp, self._meta_path)
        except OSError as e:
            for tmp in (npz_tmp, meta_tmp):
                with contextlib.suppress(OSError):
                    tmp.unlink(missing_ok=True)
            log.error("store.persist_failed", project_id=self.project_id, error=str(e))
            raise StorageIOFailure.create(str(self._dir), str(e)) from e

        log.debug("store.persisted", project_id=self.project_id, count=len(snap))

    def _load(self) -> _Snapshot:
        """Read the persisted snapshot; unreadable or foreign data yields an empty store."""
        if not self._npz_path.exists():
            return _Snapshot.empty()

        try:
            meta: dict[str, Any] = {}
            if self._meta_path.exists():
                with self._meta_path.open(encoding="utf-8") as f:
                    meta = json.load(f)
            if meta.get("version") != STORE_FORMAT_VERSION:
                log.warning(
                    "store.version_mismatch",
                    project_id=self.project_id,
                    expected=STORE_FORMAT_VERSION,
                    got=meta.get("version"),
                )
                return _Snapshot.empty()

            with np.load(self._npz_path, allow_pickle=False) as data:
                matrix = np.asarray(data["matrix"], dtype=np.float32)
                ids = [str(s) for s in data["ids"]]
                texts = [str(s) for s in data["texts"]]
                metadata = [json.loads(str(s)) for s in data["metadata"]]

            if matrix.ndim != 2 or not (matrix.shape[0] == len(ids) == len(texts) == len(metadata)):
                raise ValueError(
                    f"inconsistent array shapes: matrix={matrix.shape}, ids={len(ids)}"
                )
            if len(set(ids)) != len(ids):
                raise ValueError("duplicate ids in stored data")
        except Exception:
            log.warning("store.load_failed", project_id=self.project_id, exc_info=True)
            return _Snapshot.empty()

        dimension = int(matrix.shape[1]) if matrix.shape[1] else None
        snap = _Snapshot.build(matrix, ids, texts, metadata, dimension)
        log.info("store.loaded", project_id=self.project_id, count=len(snap), dim=dimension)
        return snap
