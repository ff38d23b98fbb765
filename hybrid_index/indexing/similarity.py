"""
Vector math shared by the LSH index, the cluster index and the store.
All helpers accept lists or NumPy arrays and never raise on malformed input.
"""

from __future__ import annotations
from typing import Any, Optional, Sequence
import math
import numpy as np


def as_vector(v: Any) -> Optional[np.ndarray]:
    """Convert to a 1-D float64 array, or None if that is impossible."""
    if v is None:
        return None
    try:
        arr = np.asarray(v, dtype=np.float64)
    except (TypeError, ValueError):
        return None
    if arr.ndim != 1:
        return None
    return arr


def is_valid_embedding(v: Any, dimensions: Optional[int] = None) -> bool:
    """Non-empty, finite, and of the expected dimension when one is given."""
    arr = as_vector(v)
    if arr is None or arr.size == 0:
        return False
    if dimensions is not None and arr.shape[0] != dimensions:
        return False
    return bool(np.all(np.isfinite(arr)))


def _dot(a: np.ndarray, b: np.ndarray) -> float:
    return float(a @ b)


def cosine_similarity(a: Any, b: Any) -> float:
    """
    dot(a, b) / (|a| * |b|).
    Returns 0.0 for missing vectors, dimension mismatch, zero norms or non-finite results.
    """
    va, vb = as_vector(a), as_vector(b)
    if va is None or vb is None or va.shape != vb.shape or va.size == 0:
        return 0.0
    na = float(np.linalg.norm(va))
    nb = float(np.linalg.norm(vb))
    if na == 0.0 or nb == 0.0:
        return 0.0
    sim = _dot(va, vb) / (na * nb)
    return sim if math.isfinite(sim) else 0.0


def cosine_scores(matrix: np.ndarray, query: np.ndarray) -> np.ndarray:
    """Cosine similarity of every row of `matrix` against `query` (zero-norm rows score 0)."""
    if matrix.size == 0:
        return np.zeros(0)
    qn = float(np.linalg.norm(query))
    if qn == 0.0:
        return np.zeros(matrix.shape[0])
    norms = np.linalg.norm(matrix, axis=1)
    dots = matrix @ query
    with np.errstate(divide="ignore", invalid="ignore"):
        scores = np.where(norms > 0, dots / (norms * qn), 0.0)
    return np.nan_to_num(scores, nan=0.0, posinf=0.0, neginf=0.0)


def squared_distances(points: np.ndarray, centers: np.ndarray) -> np.ndarray:
    """
    Pairwise squared Euclidean distances, shape (n_points, n_centers).
    Uses |x|^2 - 2x.c + |c|^2 and clips tiny negatives from rounding.
    """
    p2 = np.einsum("ij,ij->i", points, points)[:, None]
    c2 = np.einsum("ij,ij->i", centers, centers)[None, :]
    d = p2 - 2.0 * (points @ centers.T) + c2
    return np.maximum(d, 0.0)


def stack(vectors: Sequence[np.ndarray], dimensions: int = 0) -> np.ndarray:
    """Stack 1-D vectors into an (n, d) matrix; empty input gives shape (0, dimensions)."""
    if len(vectors) == 0:
        return np.zeros((0, dimensions))
    return np.vstack(vectors)
