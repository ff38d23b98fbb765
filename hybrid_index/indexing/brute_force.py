from __future__ import annotations
from typing import AbstractSet, List, Optional, Sequence
import numpy as np

from .base import Row, Index, ScoredId
from .similarity import as_vector, cosine_scores, stack


class BruteForceIndex(Index):
    """
    Exact cosine similarity search using NumPy.
    Build  : O(ND)   (normalization)
    Search : O(ND)   (one matrix-vector product)
    Space  : O(ND)

    The store uses it as the recall safety net when approximate candidates
    fall short of k, and tests use it as ground truth.
    """

    def __init__(self, rows: Sequence[Row]) -> None:
        self.ids: List[str] = [r.document_id for r in rows]
        self._dim = len(rows[0].embedding) if rows else 0
        self._matrix = stack([np.asarray(r.embedding, dtype=float) for r in rows], self._dim)

    def __len__(self) -> int:
        return len(self.ids)

    def search(
        self,
        query: np.ndarray,
        k: int,
        exclude: Optional[AbstractSet[str]] = None,
    ) -> List[ScoredId]:
        q = as_vector(query)
        if k <= 0 or not self.ids or q is None or q.shape[0] != self._dim:
            return []

        scores = cosine_scores(self._matrix, q)
        if exclude:
            mask = np.fromiter((i in exclude for i in self.ids), dtype=bool, count=len(self.ids))
            scores = np.where(mask, -np.inf, scores)

        k_eff = min(k, len(scores))
        # top-k: partial selection then sort the survivors
        top = np.argpartition(-scores, k_eff - 1)[:k_eff]
        top = top[np.argsort(-scores[top], kind="stable")]
        return [(self.ids[i], float(scores[i])) for i in top if np.isfinite(scores[i])]
