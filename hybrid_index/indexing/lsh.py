from __future__ import annotations
from typing import AbstractSet, Any, Dict, List, Optional, Sequence, Set
import logging
import numpy as np

from .base import CandidateIndex
from .similarity import as_vector
from hybrid_index.models.snapshot import LSHSnapshot

logger = logging.getLogger(__name__)


class LSHIndex(CandidateIndex):
    """
    Random-hyperplane LSH for cosine similarity.
    - Build: sample T tables, each with P Gaussian random hyperplanes in R^D
    - Hash: sign(dot(v, plane)) -> '1'/'0'; concat P bits -> bucket key
    - Store: tables[t][key] = set of document ids
    - Query: hash(q) in each table -> union of matching buckets (OR-construction)

    More planes per table narrow each bucket (precision); more tables give a
    document more chances to collide with its neighbours (recall).

    Space:  O(N·T) for buckets + O(T·P·D) for planes
    Add:    O(T·P·D)
    Query:  O(T·P·D + C)  (C = candidates from matched buckets), independent of N
    Remove: O(total buckets)
    """

    def __init__(
        self,
        dimensions: int = 1024,
        num_hash_tables: int = 16,
        num_hash_functions: int = 8,
        seed: Optional[int] = None,
        random_vectors: Optional[np.ndarray] = None,
    ) -> None:
        if dimensions <= 0 or num_hash_tables <= 0 or num_hash_functions <= 0:
            raise ValueError("dimensions, num_hash_tables and num_hash_functions must be positive")
        self.dimensions = dimensions
        self.num_hash_tables = num_hash_tables
        self.num_hash_functions = num_hash_functions

        if random_vectors is not None:
            planes = np.asarray(random_vectors, dtype=float)
            expected = (num_hash_tables, num_hash_functions, dimensions)
            if planes.shape != expected:
                raise ValueError(f"random_vectors shape {planes.shape} != {expected}")
            self.random_vectors = planes
        else:
            # planes[t, p] is a standard-normal hyperplane normal of shape (D,)
            rng = np.random.default_rng(seed)
            self.random_vectors = rng.standard_normal(
                (num_hash_tables, num_hash_functions, dimensions)
            )

        # Buckets per table: List[Dict[bitstring, Set[document_id]]]
        self.hash_tables: List[Dict[str, Set[str]]] = [dict() for _ in range(num_hash_tables)]
        logger.debug(
            "LSH index initialised: %d tables x %d hash functions, dim=%d",
            num_hash_tables, num_hash_functions, dimensions,
        )

    def _vector(self, v: Any) -> Optional[np.ndarray]:
        arr = as_vector(v)
        if arr is None or arr.shape[0] != self.dimensions:
            return None
        return arr

    @staticmethod
    def _keys(bits: np.ndarray) -> List[str]:
        # bits: (..., P) booleans -> one '0'/'1' string per row, first function first
        flat = bits.reshape(-1, bits.shape[-1])
        chars = np.where(flat, "1", "0")
        return ["".join(row) for row in chars]

    def compute_hashes(self, vector: Any) -> List[str]:
        """One P-bit key per table; empty list when the vector does not fit the index."""
        v = self._vector(vector)
        if v is None:
            return []
        bits = np.einsum("tpd,d->tp", self.random_vectors, v) >= 0.0
        return self._keys(bits)

    def compute_hash(self, vector: Any, table_index: int) -> str:
        v = self._vector(vector)
        if v is None:
            return ""
        bits = self.random_vectors[table_index] @ v >= 0.0
        return self._keys(bits[None, :])[0]

    def add_vector(self, vector: Any, document_id: str) -> bool:
        keys = self.compute_hashes(vector)
        if not keys:
            logger.warning("LSH: skipping %s, vector does not match dim=%d", document_id, self.dimensions)
            return False
        for table, key in zip(self.hash_tables, keys):
            table.setdefault(key, set()).add(document_id)
        return True

    def add_vectors(self, document_ids: Sequence[str], vectors: np.ndarray) -> int:
        """Bulk insert of an (n, D) matrix; hashes every row against every table at once."""
        if len(document_ids) == 0:
            return 0
        matrix = np.asarray(vectors, dtype=float)
        if matrix.ndim != 2 or matrix.shape != (len(document_ids), self.dimensions):
            raise ValueError(f"vectors shape {matrix.shape} does not match ({len(document_ids)}, {self.dimensions})")
        bits = np.einsum("tpd,nd->ntp", self.random_vectors, matrix) >= 0.0
        keys = self._keys(bits)
        t_count = self.num_hash_tables
        for i, doc_id in enumerate(document_ids):
            row = keys[i * t_count:(i + 1) * t_count]
            for table, key in zip(self.hash_tables, row):
                table.setdefault(key, set()).add(doc_id)
        return len(document_ids)

    def get_candidates(self, query_vector: Any) -> Set[str]:
        candidates: Set[str] = set()
        for table, key in zip(self.hash_tables, self.compute_hashes(query_vector)):
            bucket = table.get(key)
            if bucket:
                candidates.update(bucket)
        return candidates

    def remove_vector(self, document_id: str) -> bool:
        return self.remove_vectors({document_id}) > 0

    def remove_vectors(self, document_ids: AbstractSet[str]) -> int:
        """Scan every bucket once, dropping the ids and any bucket left empty."""
        if not document_ids:
            return 0
        removed: Set[str] = set()
        for table in self.hash_tables:
            empty = []
            for key, bucket in table.items():
                hit = bucket & document_ids
                if hit:
                    bucket -= hit
                    removed |= hit
                if not bucket:
                    empty.append(key)
            for key in empty:
                del table[key]
        return len(removed)

    def get_stats(self) -> Dict[str, Any]:
        sizes = [len(b) for table in self.hash_tables for b in table.values()]
        total_buckets = len(sizes)
        total_documents = sum(sizes)
        return {
            "numHashTables": self.num_hash_tables,
            "numHashFunctions": self.num_hash_functions,
            "totalBuckets": total_buckets,
            "totalDocuments": total_documents,
            "avgBucketSize": (total_documents / total_buckets) if total_buckets else 0.0,
            "maxBucketSize": max(sizes, default=0),
            "minBucketSize": min(sizes, default=0),
        }

    # --------------- persistence ---------------
    def to_dict(self) -> dict:
        return LSHSnapshot(
            dimensions=self.dimensions,
            num_hash_tables=self.num_hash_tables,
            num_hash_functions=self.num_hash_functions,
            random_vectors=self.random_vectors.tolist(),
            hash_tables=[
                [(key, sorted(bucket)) for key, bucket in table.items()]
                for table in self.hash_tables
            ],
        ).to_dict()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LSHIndex":
        snap = LSHSnapshot.model_validate(data)
        lsh = cls(
            dimensions=snap.dimensions,
            num_hash_tables=snap.num_hash_tables,
            num_hash_functions=snap.num_hash_functions,
            random_vectors=np.asarray(snap.random_vectors, dtype=float),
        )
        for i, entries in enumerate(snap.hash_tables[: snap.num_hash_tables]):
            lsh.hash_tables[i] = {key: set(ids) for key, ids in entries if ids}
        return lsh
