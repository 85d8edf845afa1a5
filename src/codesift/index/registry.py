"""Process-wide registry of open project stores.

Stores are opened lazily on first ``get`` and torn down only by an explicit
``close``/``close_all``; nothing relies on finalizers. The registry also
keeps the list of projects that completed an indexing run in
``<root>/indexed_projects.json``.
"""

from __future__ import annotations

import contextlib
import hashlib
import json
import os
import re
import shutil
import threading
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from codesift.config.constants import INDEXED_PROJECTS_FILE, STORE_SUBDIR
from codesift.core.errors import InvalidInput, StorageIOFailure
from codesift.index.store import EmbeddingStore

if TYPE_CHECKING:
    from codesift.config.models import StoreConfig

log = structlog.get_logger()

__all__ = [
    "StoreRegistry",
    "get_registry",
    "sanitize_project_id",
    "shutdown_registry",
    "store_path",
]

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def sanitize_project_id(project_id: str) -> str:
    """Directory-safe name for *project_id*.

    Characters outside ``[A-Za-z0-9._-]`` become ``_``. When that changes the
    id, a short hash of the raw id is appended so distinct ids never collide.
    """
    if not project_id:
        raise InvalidInput.create("project_id must be a non-empty string")
    safe = _UNSAFE_CHARS.sub("_", project_id)
    if safe != project_id or safe in (".", ".."):
        digest = hashlib.sha256(project_id.encode("utf-8")).hexdigest()[:8]
        safe = f"{safe}-{digest}"
    return safe


def store_path(root: Path, project_id: str) -> Path:
    return Path(root) / sanitize_project_id(project_id) / STORE_SUBDIR


class StoreRegistry:
    """Maps project ids to open ``EmbeddingStore`` instances under one root."""

    def __init__(self, root: Path, *, lock_file_name: str = ".lock") -> None:
        self._root = Path(root).expanduser()
        self._lock_file_name = lock_file_name
        self._stores: dict[str, EmbeddingStore] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: StoreConfig) -> StoreRegistry:
        return cls(config.root_path, lock_file_name=config.lock_file_name)

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, project_id: str) -> Path:
        return store_path(self._root, project_id)

    # -------------------------------------------------------------------------
    # Store lifecycle
    # -------------------------------------------------------------------------

    def get(self, project_id: str) -> EmbeddingStore:
        """Return the open store for *project_id*, opening it on first use."""
        with self._lock:
            store = self._stores.get(project_id)
            if store is None or store.closed:
                store = EmbeddingStore(
                    project_id,
                    self.path_for(project_id),
                    lock_file_name=self._lock_file_name,
                )
                self._stores[project_id] = store
            return store

    def is_open(self, project_id: str) -> bool:
        with self._lock:
            store = self._stores.get(project_id)
            return store is not None and not store.closed

    def open_projects(self) -> list[str]:
        with self._lock:
            return sorted(pid for pid, store in self._stores.items() if not store.closed)

    def close(self, project_id: str) -> None:
        with self._lock:
            store = self._stores.pop(project_id, None)
        if store is not None:
            store.close()

    def close_all(self) -> None:
        with self._lock:
            stores = list(self._stores.values())
            self._stores.clear()
        for store in stores:
            store.close()
        if stores:
            log.info("registry.closed_all", count=len(stores))

    def drop(self, project_id: str) -> None:
        """Close the project's store and delete its directory and registration."""
        self.close(project_id)
        project_dir = self.path_for(project_id).parent
        try:
            if project_dir.exists():
                shutil.rmtree(project_dir)
        except OSError as e:
            raise StorageIOFailure.create(str(project_dir), str(e)) from e
        self.unmark_indexed(project_id)
        log.info("registry.dropped", project_id=project_id, path=str(project_dir))

    # -------------------------------------------------------------------------
    # Indexed projects
    # -------------------------------------------------------------------------

    def indexed_projects(self) -> list[str]:
        with self._lock:
            return sorted(self._read_indexed())

    def is_indexed(self, project_id: str) -> bool:
        with self._lock:
            return project_id in self._read_indexed()

    def mark_indexed(self, project_id: str) -> None:
        with self._lock:
            projects = self._read_indexed()
            if project_id not in projects:
                projects.add(project_id)
                self._write_indexed(projects)

    def unmark_indexed(self, project_id: str) -> None:
        with self._lock:
            projects = self._read_indexed()
            if project_id in projects:
                projects.discard(project_id)
                self._write_indexed(projects)

    def _read_indexed(self) -> set[str]:
        path = self._root / INDEXED_PROJECTS_FILE
        if not path.exists():
            return set()
        try:
            with path.open(encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError):
            log.warning("registry.indexed_projects_unreadable", path=str(path), exc_info=True)
            return set()
        if not isinstance(data, list):
            log.warning("registry.indexed_projects_malformed", path=str(path))
            return set()
        return {str(p) for p in data}

    def _write_indexed(self, projects: set[str]) -> None:
        path = self._root / INDEXED_PROJECTS_FILE
        tmp = path.with_name(path.name + ".tmp")
        try:
            self._root.mkdir(parents=True, exist_ok=True)
            with tmp.open("w", encoding="utf-8") as f:
                json.dump(sorted(projects), f, indent=2)
            os.replace(tmp, path)
        except OSError as e:
            with contextlib.suppress(OSError):
                tmp.unlink(missing_ok=True)
            raise StorageIOFailure.create(str(path), str(e)) from e


_registry: StoreRegistry | None = None
_registry_lock = threading.Lock()


def get_registry(root: Path | None = None) -> StoreRegistry:
    """Process-wide registry, created on first call.

    *root* only applies to the first call; later calls return the existing
    registry until ``shutdown_registry`` runs.
    """
    global _registry
    with _registry_lock:
        if _registry is None:
            if root is None:
                from codesift.config.models import StoreConfig

                root = StoreConfig().root_path
            _registry = StoreRegistry(root)
        return _registry


def shutdown_registry() -> None:
    """Close every store of the process-wide registry and forget it."""
    global _registry
    with _registry_lock:
        registry, _registry = _registry, None
    if registry is not None:
        registry.close_all()
