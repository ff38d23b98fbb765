from __future__ import annotations
from dataclasses import dataclass
from typing import AbstractSet, List, Protocol, Tuple
import numpy as np

# (document_id, cosine similarity)
ScoredId = Tuple[str, float]


@dataclass(frozen=True)
class Row:
    """A document id paired with its embedding, as fed to the exact index."""
    document_id: str
    embedding: np.ndarray


class Index(Protocol):
    """
    Interface for all vector searchers.
    Implementations return top-k (document_id, score) pairs, best first.
    """
    def search(self, query: np.ndarray, k: int) -> List[ScoredId]:
        ...


class CandidateIndex(Protocol):
    """
    Interface for approximate pre-filters that propose ids for exact re-scoring.
    """
    def add_vector(self, vector: np.ndarray, document_id: str) -> bool:
        ...

    def remove_vector(self, document_id: str) -> bool:
        ...

    def get_candidates(self, query: np.ndarray) -> AbstractSet[str]:
        ...
