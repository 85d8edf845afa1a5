"""Tests for EmbeddingStore - durable per-project vectors with cosine search."""

from __future__ import annotations

import json
import threading
from collections.abc import Callable
from pathlib import Path
from unittest.mock import patch

import numpy as np
import pytest

from codesift.config.constants import EMBEDDINGS_FILE, METADATA_FILE
from codesift.core.errors import (
    ConcurrentOpen,
    DimensionMismatch,
    InvalidInput,
    StorageIOFailure,
    StoreClosed,
)
from codesift.index.models import IndexEntry
from codesift.index.store import EmbeddingStore


def _entry(entry_id: str, vector: list[float], source: str = "a.txt", **meta: str) -> IndexEntry:
    return IndexEntry(
        id=entry_id,
        vector=vector,
        text=f"text of {entry_id}",
        metadata={"source_path": source, **meta},
    )


class TestAddAndSearch:
    """Core add/search semantics."""

    def test_self_similarity_is_one(self, store: EmbeddingStore) -> None:
        vector = [0.12, -0.5, 3.3, 0.0]
        store.add([_entry("x", vector)])

        results = store.search(vector, 1)

        assert [r.id for r in results] == ["x"]
        assert results[0].score == pytest.approx(1.0)

    def test_two_axis_scenario(self, store: EmbeddingStore) -> None:
        """Orthogonal unit vectors; a diagonal query ties and orders by id."""
        store.add([_entry("a", [1.0, 0.0]), _entry("b", [0.0, 1.0])])

        top = store.search([1.0, 0.0], 1)
        assert [(r.id, r.score) for r in top] == [("a", pytest.approx(1.0))]

        tied = store.search([0.7, 0.7], 2)
        assert [r.id for r in tied] == ["a", "b"]
        assert tied[0].score == pytest.approx(0.70710678, abs=1e-6)
        assert tied[0].score == pytest.approx(tied[1].score)

    def test_results_carry_text_and_metadata(self, store: EmbeddingStore) -> None:
        store.add([_entry("a", [1.0, 0.0], source="src/a.py", chunk_index="0")])

        result = store.search([1.0, 0.0], 1)[0]

        assert result.text == "text of a"
        assert result.metadata == {"source_path": "src/a.py", "chunk_index": "0"}

    def test_results_are_at_most_k_and_sorted(self, store: EmbeddingStore) -> None:
        rng = np.random.default_rng(7)
        store.add([_entry(f"e{i:02d}", rng.normal(size=6).tolist()) for i in range(30)])

        results = store.search(rng.normal(size=6).tolist(), 5)

        assert len(results) == 5
        keys = [(-r.score, r.id) for r in results]
        assert keys == sorted(keys)

    def test_score_threshold_excludes_lower(self, store: EmbeddingStore) -> None:
        store.add([_entry("near", [1.0, 0.1]), _entry("far", [-1.0, 0.0])])

        results = store.search([1.0, 0.0], 10, score_threshold=0.5)

        assert [r.id for r in results] == ["near"]

    def test_empty_store_search_returns_empty(self, store: EmbeddingStore) -> None:
        assert store.search([1.0, 2.0, 3.0], 3) == []

    def test_upsert_is_idempotent(self, store: EmbeddingStore) -> None:
        """Re-adding the same ids overwrites instead of duplicating."""
        store.add([_entry("a", [1.0, 0.0]), _entry("b", [0.0, 1.0])])
        store.add([_entry("a", [1.0, 0.0]), _entry("b", [0.0, 1.0])])

        assert len(store) == 2
        assert store.ids() == ["a", "b"]

    def test_upsert_overwrites_vector_and_text(self, store: EmbeddingStore) -> None:
        store.add([_entry("a", [1.0, 0.0])])
        store.add([IndexEntry(id="a", vector=[0.0, 1.0], text="new", metadata={})])

        entry = store.get("a")
        assert entry is not None
        assert list(entry.vector) == [0.0, 1.0]
        assert entry.text == "new"

    def test_duplicate_ids_in_one_call_last_wins(self, store: EmbeddingStore) -> None:
        store.add(
            [
                IndexEntry(id="a", vector=[1.0, 0.0], text="first"),
                IndexEntry(id="a", vector=[0.0, 1.0], text="second"),
            ]
        )

        assert len(store) == 1
        entry = store.get("a")
        assert entry is not None
        assert entry.text == "second"

    def test_zero_vector_scores_zero(self, store: EmbeddingStore) -> None:
        store.add([_entry("zero", [0.0, 0.0]), _entry("one", [1.0, 0.0])])

        results = store.search([1.0, 0.0], 2)

        assert [(r.id, r.score) for r in results] == [
            ("one", pytest.approx(1.0)),
            ("zero", 0.0),
        ]

    def test_empty_add_is_noop(self, store: EmbeddingStore, store_dir: Path) -> None:
        store.add([])
        assert len(store) == 0
        assert store.dimension is None
        assert not (store_dir / EMBEDDINGS_FILE).exists()


class TestValidation:
    """Rejected inputs leave the store unchanged."""

    def test_first_add_establishes_dimension(self, store: EmbeddingStore) -> None:
        assert store.dimension is None
        store.add([_entry("a", [1.0, 2.0, 3.0])])
        assert store.dimension == 3

    def test_wrong_dimension_add_fails_without_change(self, store: EmbeddingStore) -> None:
        store.add([_entry("a", [1.0, 0.0, 0.0])])

        with pytest.raises(DimensionMismatch):
            store.add([_entry("b", [1.0, 0.0, 0.0]), _entry("c", [1.0, 0.0])])

        assert store.ids() == ["a"]
        assert [r.id for r in store.search([1.0, 0.0, 0.0], 10)] == ["a"]

    def test_mixed_dimensions_on_empty_store_fail(self, store: EmbeddingStore) -> None:
        with pytest.raises(DimensionMismatch):
            store.add([_entry("a", [1.0, 0.0]), _entry("b", [1.0, 0.0, 0.0])])
        assert len(store) == 0
        assert store.dimension is None

    def test_wrong_dimension_query(self, store: EmbeddingStore) -> None:
        store.add([_entry("a", [1.0, 0.0])])
        with pytest.raises(DimensionMismatch):
            store.search([1.0, 0.0, 0.0], 1)

    @pytest.mark.parametrize("k", [0, -3])
    def test_non_positive_k(self, store: EmbeddingStore, k: int) -> None:
        store.add([_entry("a", [1.0, 0.0])])
        with pytest.raises(InvalidInput):
            store.search([1.0, 0.0], k)

    def test_empty_id(self, store: EmbeddingStore) -> None:
        with pytest.raises(InvalidInput):
            store.add([_entry("", [1.0, 0.0])])

    def test_non_finite_vector(self, store: EmbeddingStore) -> None:
        with pytest.raises(InvalidInput):
            store.add([_entry("a", [float("nan"), 1.0])])
        assert len(store) == 0


class TestRemoval:
    """remove, remove_sources and remove_all."""

    def test_removed_id_never_returned(self, store: EmbeddingStore) -> None:
        store.add([_entry("a", [1.0, 0.0]), _entry("b", [0.9, 0.1])])

        assert store.remove(["a"]) == 1

        assert "a" not in [r.id for r in store.search([1.0, 0.0], 10)]
        assert store.get("a") is None

    def test_remove_counts_only_existing(self, store: EmbeddingStore) -> None:
        store.add([_entry("a", [1.0, 0.0])])
        assert store.remove(["a", "ghost", "a"]) == 1
        assert store.remove(["a"]) == 0

    def test_remove_keeps_dimension(self, store: EmbeddingStore) -> None:
        store.add([_entry("a", [1.0, 0.0])])
        store.remove(["a"])
        assert store.dimension == 2
        with pytest.raises(DimensionMismatch):
            store.add([_entry("b", [1.0, 0.0, 0.0])])

    def test_remove_all_empties_and_resets_dimension(
        self, store: EmbeddingStore, store_dir: Path
    ) -> None:
        store.add([_entry("a", [1.0, 0.0]), _entry("b", [0.0, 1.0])])

        store.remove_all()

        assert store.search([1.0, 0.0], 5) == []
        assert store.dimension is None
        assert not (store_dir / EMBEDDINGS_FILE).exists()
        store.add([_entry("c", [1.0, 0.0, 0.0])])
        assert store.dimension == 3

    def test_remove_sources(self, store: EmbeddingStore) -> None:
        store.add(
            [
                _entry("a0", [1.0, 0.0], source="a.py"),
                _entry("a1", [0.5, 0.5], source="a.py"),
                _entry("b0", [0.0, 1.0], source="b.py"),
            ]
        )

        assert store.remove_sources(["a.py", "missing.py"]) == 2

        assert store.ids() == ["b0"]
        assert store.source_paths() == {"b.py"}

    def test_source_hashes(self, store: EmbeddingStore) -> None:
        store.add(
            [
                _entry("a0", [1.0, 0.0], source="a.py", content_hash="h1"),
                _entry("b0", [0.0, 1.0], source="b.py"),
            ]
        )
        assert store.source_hashes() == {"a.py": "h1"}

    @pytest.mark.parametrize("method", ["remove", "remove_sources"])
    def test_bare_string_rejected(self, store: EmbeddingStore, method: str) -> None:
        store.add([_entry("a", [1.0, 0.0], source="a")])

        with pytest.raises(InvalidInput):
            getattr(store, method)("a")

        assert store.ids() == ["a"]


class TestReplaceSources:
    """replace_sources swaps a file's chunks in one mutation."""

    def test_replaces_chunks_of_given_sources(self, store: EmbeddingStore) -> None:
        store.add(
            [
                _entry("a0", [1.0, 0.0], source="a.py"),
                _entry("a1", [0.5, 0.5], source="a.py"),
                _entry("b0", [0.0, 1.0], source="b.py"),
            ]
        )

        removed = store.replace_sources(["a.py"], [_entry("a0", [0.9, 0.1], source="a.py")])

        assert removed == 2
        assert sorted(store.ids()) == ["a0", "b0"]
        entry = store.get("a0")
        assert entry is not None
        assert entry.vector == pytest.approx((0.9, 0.1))

    def test_wrong_dimension_keeps_previous_chunks(
        self, store: EmbeddingStore, store_dir: Path
    ) -> None:
        store.add([_entry("a0", [1.0, 0.0], source="a.py")])

        with pytest.raises(DimensionMismatch):
            store.replace_sources(["a.py"], [_entry("a0", [1.0, 0.0, 0.0], source="a.py")])

        assert store.ids() == ["a0"]
        meta = json.loads((store_dir / METADATA_FILE).read_text())
        assert meta["count"] == 1

    def test_persist_failure_keeps_previous_chunks(self, store: EmbeddingStore) -> None:
        store.add([_entry("a0", [1.0, 0.0], source="a.py")])

        with (
            patch("codesift.index.store.np.savez_compressed", side_effect=OSError("disk full")),
            pytest.raises(StorageIOFailure),
        ):
            store.replace_sources(["a.py"], [_entry("a1", [0.0, 1.0], source="a.py")])

        assert store.ids() == ["a0"]

    def test_published_once(self, store: EmbeddingStore) -> None:
        store.add([_entry("a0", [1.0, 0.0], source="a.py")])

        with patch.object(store, "_publish", wraps=store._publish) as publish:
            store.replace_sources(["a.py"], [_entry("a1", [0.0, 1.0], source="a.py")])

        assert publish.call_count == 1
        assert store.ids() == ["a1"]

    def test_no_sources_behaves_like_add(self, store: EmbeddingStore) -> None:
        assert store.replace_sources([], [_entry("a", [1.0, 0.0])]) == 0
        assert store.ids() == ["a"]
        assert store.replace_sources([], []) == 0


class TestPersistence:
    """Durability across close/reopen."""

    def test_reopen_restores_entries(self, store_dir: Path) -> None:
        with EmbeddingStore("demo", store_dir) as store:
            store.add([_entry("a", [1.0, 0.0], chunk_index="0"), _entry("b", [0.0, 1.0])])
            store.remove(["b"])

        with EmbeddingStore("demo", store_dir) as reopened:
            assert reopened.ids() == ["a"]
            assert reopened.dimension == 2
            result = reopened.search([1.0, 0.0], 1)[0]
            assert result.id == "a"
            assert result.text == "text of a"
            assert result.metadata["chunk_index"] == "0"

    def test_metadata_file_describes_store(
        self, store: EmbeddingStore, store_dir: Path
    ) -> None:
        store.add([_entry("a", [1.0, 0.0, 0.0])])

        meta = json.loads((store_dir / METADATA_FILE).read_text())

        assert meta["dim"] == 3
        assert meta["count"] == 1
        assert meta["project_id"] == "demo"

    def test_version_mismatch_starts_empty(self, store_dir: Path) -> None:
        with EmbeddingStore("demo", store_dir) as store:
            store.add([_entry("a", [1.0, 0.0])])
        meta_path = store_dir / METADATA_FILE
        meta = json.loads(meta_path.read_text())
        meta["version"] = 999
        meta_path.write_text(json.dumps(meta))

        with EmbeddingStore("demo", store_dir) as reopened:
            assert len(reopened) == 0
            assert reopened.dimension is None

    def test_corrupt_file_starts_empty(self, store_dir: Path) -> None:
        with EmbeddingStore("demo", store_dir) as store:
            store.add([_entry("a", [1.0, 0.0])])
        (store_dir / EMBEDDINGS_FILE).write_bytes(b"not a zip archive")

        with EmbeddingStore("demo", store_dir) as reopened:
            assert len(reopened) == 0

    def test_persist_failure_leaves_state_unchanged(self, store: EmbeddingStore) -> None:
        store.add([_entry("a", [1.0, 0.0])])

        with (
            patch("codesift.index.store.np.savez_compressed", side_effect=OSError("disk full")),
            pytest.raises(StorageIOFailure) as exc_info,
        ):
            store.add([_entry("b", [0.0, 1.0])])

        assert exc_info.value.retryable
        assert store.ids() == ["a"]
        assert [r.id for r in store.search([0.0, 1.0], 5)] == ["a"]
        assert not list(store.directory.glob("*.tmp"))


class TestLifecycle:
    """Exclusive ownership and close semantics."""

    def test_second_open_raises_concurrent_open(
        self, store: EmbeddingStore, store_dir: Path
    ) -> None:
        with pytest.raises(ConcurrentOpen):
            EmbeddingStore("demo", store_dir)

    def test_reopen_after_close(self, store_dir: Path) -> None:
        first = EmbeddingStore("demo", store_dir)
        first.close()

        second = EmbeddingStore("demo", store_dir)
        second.close()

    def test_close_is_idempotent(self, store: EmbeddingStore) -> None:
        store.close()
        store.close()
        assert store.closed

    @pytest.mark.parametrize(
        "operation",
        [
            lambda s: s.add([_entry("a", [1.0])]),
            lambda s: s.search([1.0], 1),
            lambda s: s.remove(["a"]),
            lambda s: s.remove_sources(["a.txt"]),
            lambda s: s.remove_all(),
            lambda s: len(s),
            lambda s: s.get("a"),
        ],
    )
    def test_operations_after_close_raise(
        self, store: EmbeddingStore, operation: Callable[[EmbeddingStore], object]
    ) -> None:
        store.close()
        with pytest.raises(StoreClosed):
            operation(store)

    def test_empty_project_id_rejected(self, store_dir: Path) -> None:
        with pytest.raises(InvalidInput):
            EmbeddingStore("", store_dir)


class TestSnapshotIsolation:
    def test_readers_never_see_partial_batches(self, store: EmbeddingStore) -> None:
        """Each add of 10 entries becomes visible all at once."""
        stop = threading.Event()
        observed: list[int] = []

        def reader() -> None:
            while not stop.is_set():
                observed.append(len(store))
                store.search([1.0, 0.0, 0.0], 3)

        thread = threading.Thread(target=reader)
        thread.start()
        try:
            for batch in range(20):
                store.add(
                    [_entry(f"b{batch}-{i}", [1.0, float(i), float(batch)]) for i in range(10)]
                )
        finally:
            stop.set()
            thread.join()

        assert observed
        assert all(count % 10 == 0 for count in observed)
