"""Shared fixtures for index tests."""

from __future__ import annotations

import hashlib
from collections.abc import Callable, Generator
from pathlib import Path

import pytest

from codesift.index.store import EmbeddingStore

WriteFile = Callable[[str, str | bytes], Path]


def _hash_embed(text: str, dim: int = 8) -> list[float]:
    """Deterministic pseudo-embedding derived from the text's digest."""
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    return [(digest[i] - 127.5) / 127.5 for i in range(dim)]


@pytest.fixture
def embed() -> Callable[[str], list[float]]:
    """8-dimensional deterministic embedding function."""
    return _hash_embed


@pytest.fixture
def project_root(tmp_path: Path) -> Path:
    """Empty project directory."""
    root = tmp_path / "project"
    root.mkdir()
    return root


@pytest.fixture
def write_file(project_root: Path) -> WriteFile:
    """Write a file relative to the project root, creating parent dirs."""

    def _write(rel_path: str, content: str | bytes) -> Path:
        path = project_root / rel_path
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            path.write_bytes(content)
        else:
            path.write_text(content, encoding="utf-8")
        return path

    return _write


@pytest.fixture
def store_dir(tmp_path: Path) -> Path:
    return tmp_path / "stores" / "demo" / "knowledge_index"


@pytest.fixture
def store(store_dir: Path) -> Generator[EmbeddingStore, None, None]:
    """Open store for project 'demo', closed after the test."""
    s = EmbeddingStore("demo", store_dir)
    yield s
    s.close()
