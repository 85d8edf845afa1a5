"""Exact cosine top-K over a dense matrix.

Pure functions: nothing here mutates its inputs. The store keeps row norms
next to the float32 matrix so a query costs one matrix-vector product.

Zero-magnitude vectors, stored or query, score 0.0 against everything.
Ties are broken by ascending id so results are reproducible.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import numpy as np

__all__ = ["as_vector", "cosine_scores", "row_norms", "top_k"]

Matrix = np.ndarray[Any, np.dtype[np.float32]]


def as_vector(values: Sequence[float] | np.ndarray) -> np.ndarray:
    """Coerce a sequence of floats to a 1-D float32 array."""
    vec = np.asarray(values, dtype=np.float32)
    if vec.ndim != 1:
        vec = vec.reshape(-1)
    return vec


def row_norms(matrix: Matrix) -> np.ndarray:
    """L2 norm of every row, computed in float64."""
    if matrix.size == 0:
        return np.zeros(matrix.shape[0], dtype=np.float64)
    return np.linalg.norm(matrix.astype(np.float64), axis=1)


def cosine_scores(matrix: Matrix, norms: np.ndarray, query: np.ndarray) -> np.ndarray:
    """Cosine similarity of *query* against every row of *matrix*.

    Returns a float64 array clipped to [-1, 1]; rows or queries with zero
    magnitude get 0.0 instead of NaN.
    """
    n = matrix.shape[0]
    if n == 0:
        return np.zeros(0, dtype=np.float64)

    q = query.astype(np.float64)
    q_norm = float(np.linalg.norm(q))
    if q_norm == 0.0:
        return np.zeros(n, dtype=np.float64)

    dots = matrix.astype(np.float64) @ q
    denom = norms * q_norm
    scores = np.zeros(n, dtype=np.float64)
    nonzero = denom > 0.0
    scores[nonzero] = dots[nonzero] / denom[nonzero]
    return np.clip(scores, -1.0, 1.0)


def top_k(
    ids: Sequence[str],
    scores: np.ndarray,
    k: int,
    threshold: float | None = None,
) -> list[tuple[int, float]]:
    """Select the k best rows as (row, score), score desc then id asc.

    Rows scoring below *threshold* are dropped even when fewer than k remain.
    """
    if k <= 0 or len(ids) == 0:
        return []

    candidates = np.arange(len(ids))
    if threshold is not None:
        candidates = candidates[scores >= threshold]
        if candidates.size == 0:
            return []

    cand_scores = scores[candidates]
    # Narrow to the k-th best score first; keep every row tied with it so the
    # id tie-break below sees the full tie group.
    if candidates.size > k:
        kth = np.partition(cand_scores, candidates.size - k)[candidates.size - k]
        keep = cand_scores >= kth
        candidates = candidates[keep]
        cand_scores = cand_scores[keep]

    order = sorted(
        range(candidates.size),
        key=lambda i: (-cand_scores[i], ids[int(candidates[i])]),
    )
    return [(int(candidates[i]), float(cand_scores[i])) for i in order[:k]]
