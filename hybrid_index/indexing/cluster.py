from __future__ import annotations
from dataclasses import dataclass, field
from typing import AbstractSet, Any, Dict, List, Mapping, NamedTuple, Optional, Sequence, Set, Union
import logging
import math
import numpy as np

from .base import Index, ScoredId
from .similarity import as_vector, cosine_scores, squared_distances, stack
from hybrid_index.concurrency.cancellation import CancellationToken
from hybrid_index.models.snapshot import ClusterMembersSnapshot, ClusterSnapshot

logger = logging.getLogger(__name__)

MAX_TUNED_CLUSTERS = 128
TUNING_MAX_ITERATIONS = 30


def heuristic_num_clusters(num_documents: int) -> int:
    """Size heuristic: one cluster per ~20 documents, between 1 and 128."""
    return max(1, min(MAX_TUNED_CLUSTERS, math.ceil(num_documents / 20)))


class ClusterHit(NamedTuple):
    document_id: str
    similarity: float
    embedding: np.ndarray


@dataclass
class ClusterMembers:
    document_ids: List[str] = field(default_factory=list)
    embeddings: List[np.ndarray] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.document_ids)


class ClusterIndex(Index):
    """
    K-means partition of the embedding space.

    - fit(): K-means++ seeding followed by Lloyd iterations (Euclidean distance)
      until every center moves less than `tolerance` or `max_iterations` is hit.
    - search_in_cluster(): exact cosine top-k inside one cluster, O(cluster size).
    - add_document()/remove_document(): online membership changes that only
      recompute the touched centroid; a full fit() later corrects the drift.
    - tune(): elbow method over within-cluster sum of squares (WCSS).

    `cluster_assignments` (id -> cluster) and `clusters` (cluster -> members)
    always agree in both directions.
    """

    def __init__(
        self,
        num_clusters: int = 128,
        max_iterations: int = 50,
        tolerance: float = 1e-6,
        seed: Optional[int] = None,
    ) -> None:
        self.num_clusters = max(0, int(num_clusters))
        self.max_iterations = max(1, int(max_iterations))
        self.tolerance = tolerance
        self.seed = seed
        self._rng = np.random.default_rng(seed)

        self.cluster_centers: List[np.ndarray] = []
        self.cluster_assignments: Dict[str, int] = {}
        self.clusters: Dict[int, ClusterMembers] = {}
        self.dimensions: Optional[int] = None

        # Filled by fit(): WCSS after each assignment step, non-increasing.
        self.inertia_history: List[float] = []
        self.iterations_run = 0
        self.converged = False

    # --------------- fitting ---------------
    def _initialize_centers(self, points: np.ndarray, k: int) -> np.ndarray:
        """K-means++: first center uniform, then proportional to D^2 to the nearest chosen center."""
        n = points.shape[0]
        centers = [points[int(self._rng.integers(n))]]
        d2 = squared_distances(points, centers[0][None, :])[:, 0]
        while len(centers) < k:
            total = float(d2.sum())
            if total <= 0.0:
                # every remaining point coincides with a chosen center
                break
            idx = int(self._rng.choice(n, p=d2 / total))
            centers.append(points[idx])
            d2 = np.minimum(d2, squared_distances(points, points[idx][None, :])[:, 0])
        return np.vstack(centers)

    def fit(
        self,
        document_ids: Sequence[str],
        embeddings: Union[Sequence[Any], np.ndarray],
    ) -> Dict[str, Any]:
        """Run full K-means over the given members, replacing any previous state."""
        self.cluster_centers = []
        self.cluster_assignments = {}
        self.clusters = {}
        self.inertia_history = []
        self.iterations_run = 0
        self.converged = False

        if len(embeddings) == 0:
            return self.get_stats()
        points = np.asarray(embeddings, dtype=float)
        if points.ndim != 2 or points.shape[0] != len(document_ids):
            raise ValueError("embeddings must be an (n, d) matrix aligned with document_ids")

        self.dimensions = points.shape[1]
        distinct = np.unique(points, axis=0).shape[0]
        k = max(1, min(self.num_clusters or 1, distinct))
        centers = self._initialize_centers(points, k)
        k = centers.shape[0]

        for iteration in range(self.max_iterations):
            d2 = squared_distances(points, centers)
            labels = np.argmin(d2, axis=1)
            self.inertia_history.append(float(d2[np.arange(points.shape[0]), labels].sum()))

            new_centers = centers.copy()
            for c in range(k):
                members = points[labels == c]
                if len(members):
                    new_centers[c] = members.mean(axis=0)
                # empty clusters keep their previous center

            shift = float(np.max(np.linalg.norm(new_centers - centers, axis=1)))
            centers = new_centers
            self.iterations_run = iteration + 1
            if shift < self.tolerance:
                self.converged = True
                break

        # members follow the final centers so every point sits in its nearest cluster
        labels = np.argmin(squared_distances(points, centers), axis=1)
        self.cluster_centers = [c for c in centers]
        for i, (doc_id, label) in enumerate(zip(document_ids, labels)):
            self._assign(doc_id, points[i], int(label))

        logger.info(
            "K=%d clustering finished after %d iterations (%s)",
            k, self.iterations_run, "converged" if self.converged else "max iterations reached",
        )
        return self.get_stats()

    def _assign(self, document_id: str, embedding: np.ndarray, cluster_id: int) -> None:
        self.cluster_assignments[document_id] = cluster_id
        members = self.clusters.setdefault(cluster_id, ClusterMembers())
        members.document_ids.append(document_id)
        members.embeddings.append(embedding)

    def update_cluster_center(self, cluster_id: int) -> None:
        members = self.clusters.get(cluster_id)
        if members and members.embeddings:
            self.cluster_centers[cluster_id] = np.mean(np.vstack(members.embeddings), axis=0)

    def inertia(self) -> float:
        """Within-cluster sum of squared distances (WCSS) for the current state."""
        wcss = 0.0
        for cluster_id, members in self.clusters.items():
            if cluster_id >= len(self.cluster_centers) or not members.embeddings:
                continue
            diff = np.vstack(members.embeddings) - self.cluster_centers[cluster_id]
            wcss += float(np.einsum("ij,ij->", diff, diff))
        return wcss

    # --------------- lookup ---------------
    def _query(self, embedding: Any) -> Optional[np.ndarray]:
        v = as_vector(embedding)
        if v is None or self.dimensions is None or v.shape[0] != self.dimensions:
            return None
        return v

    def find_closest_cluster(self, embedding: Any) -> int:
        """Nearest center by Euclidean distance, or -1 when there is none."""
        v = self._query(embedding)
        if v is None or not self.cluster_centers:
            return -1
        d2 = squared_distances(v[None, :], stack(self.cluster_centers))[0]
        return int(np.argmin(d2))

    def find_top_clusters(self, query: Any, top_n: int) -> List[int]:
        """Ids of the `top_n` centers most cosine-similar to the query."""
        v = self._query(query)
        if v is None or not self.cluster_centers or top_n <= 0:
            return []
        scores = cosine_scores(stack(self.cluster_centers), v)
        order = np.argsort(-scores, kind="stable")[:top_n]
        return [int(i) for i in order]

    def search_in_cluster(self, cluster_id: int, query: Any, k: int) -> List[ClusterHit]:
        members = self.clusters.get(cluster_id)
        v = self._query(query)
        if not members or v is None or k <= 0:
            return []
        scores = cosine_scores(stack(members.embeddings), v)
        order = np.argsort(-scores, kind="stable")[:k]
        return [
            ClusterHit(members.document_ids[i], float(scores[i]), members.embeddings[i])
            for i in order
        ]

    def search(self, query: np.ndarray, k: int, top_clusters: int = 3) -> List[ScoredId]:
        hits: List[ScoredId] = []
        for cluster_id in self.find_top_clusters(query, top_clusters):
            hits.extend((h.document_id, h.similarity) for h in self.search_in_cluster(cluster_id, query, k))
        hits.sort(key=lambda t: t[1], reverse=True)
        return hits[:k]

    # --------------- online updates ---------------
    def add_document(self, document_id: str, embedding: Any) -> int:
        """
        Assign to the nearest existing center and refresh that centroid.
        Returns -1 when there are no centers yet (defer to the next fit()).
        """
        v = self._query(embedding)
        if v is None or not self.cluster_centers:
            return -1
        if document_id in self.cluster_assignments:
            self.remove_document(document_id)
        cluster_id = self.find_closest_cluster(v)
        self._assign(document_id, v, cluster_id)
        self.update_cluster_center(cluster_id)
        return cluster_id

    def remove_document(self, document_id: str) -> bool:
        return self.remove_documents({document_id}) == 1

    def remove_documents(self, document_ids: AbstractSet[str]) -> int:
        """Bulk removal; each touched centroid is recomputed once."""
        touched: Dict[int, Set[str]] = {}
        for doc_id in document_ids:
            cluster_id = self.cluster_assignments.pop(doc_id, None)
            if cluster_id is not None:
                touched.setdefault(cluster_id, set()).add(doc_id)
        removed = 0
        for cluster_id, ids in touched.items():
            members = self.clusters.get(cluster_id)
            if members is None:
                continue
            keep = [i for i, d in enumerate(members.document_ids) if d not in ids]
            removed += len(members) - len(keep)
            members.document_ids = [members.document_ids[i] for i in keep]
            members.embeddings = [members.embeddings[i] for i in keep]
            if members.embeddings:
                self.update_cluster_center(cluster_id)
            else:
                del self.clusters[cluster_id]
        return removed

    # --------------- tuning ---------------
    def tune(
        self,
        embeddings: Union[Sequence[Any], np.ndarray],
        min_k: int = 5,
        max_k: int = 150,
        step: int = 10,
        cancel_token: Optional[CancellationToken] = None,
    ) -> int:
        """
        Elbow method: fit each K on the grid, record WCSS, pick the K farthest
        from the chord joining the first and last (K, WCSS) points.
        Always returns 1 <= K <= min(128, len(embeddings)).
        """
        n = len(embeddings)
        cap = max(1, min(MAX_TUNED_CLUSTERS, n))
        if n < max(2, min_k):
            logger.warning("Too few embeddings (%d) for elbow tuning, using size heuristic", n)
            return min(cap, heuristic_num_clusters(n))

        points = np.asarray(embeddings, dtype=float)
        dummy_ids = [f"tune_{i}" for i in range(n)]
        actual_max_k = min(max_k, n - 1, MAX_TUNED_CLUSTERS)
        logger.info("Elbow tuning: K from %d to %d, step %d", min_k, actual_max_k, step)

        k_values: List[int] = []
        wcss_values: List[float] = []
        for k in range(min_k, actual_max_k + 1, max(1, step)):
            if cancel_token is not None:
                cancel_token.raise_if_cancelled("K-means tuning")
            trial = ClusterIndex(
                num_clusters=k,
                max_iterations=TUNING_MAX_ITERATIONS,
                tolerance=self.tolerance,
                seed=self.seed,
            )
            trial.fit(dummy_ids, points)
            wcss = trial.inertia()
            if math.isfinite(wcss) and wcss > 0:
                k_values.append(k)
                wcss_values.append(wcss)
                logger.debug("  K = %d, WCSS = %.4f", k, wcss)
            else:
                logger.debug("  K = %d, WCSS invalid (%s), skipped", k, wcss)

        if len(k_values) < 2:
            logger.warning("Not enough WCSS points for an elbow, using size heuristic")
            return min(cap, heuristic_num_clusters(n))

        return max(1, min(cap, self.find_elbow_point(k_values, wcss_values)))

    @staticmethod
    def find_elbow_point(k_values: Sequence[int], wcss_values: Sequence[float]) -> int:
        """Point of maximum distance to the first-last chord on the min-max normalized curve."""
        n = len(k_values)
        if n == 0:
            return 1
        if n < 3:
            return int(k_values[0])

        def normalize(values: Sequence[float]) -> np.ndarray:
            arr = np.asarray(values, dtype=float)
            lo, hi = float(arr.min()), float(arr.max())
            if hi == lo:
                return np.full(arr.shape, 0.5)
            return (arr - lo) / (hi - lo)

        pts = np.column_stack([normalize(k_values), normalize(wcss_values)])
        p1, p2 = pts[0], pts[-1]
        chord = p2 - p1
        len_sq = float(chord @ chord)

        best_idx, best_dist = 0, -1.0
        for i in range(1, n - 1):
            t = 0.0 if len_sq == 0.0 else float((pts[i] - p1) @ chord) / len_sq
            foot = p1 + min(1.0, max(0.0, t)) * chord
            dist = float(np.linalg.norm(pts[i] - foot))
            if dist > best_dist:
                best_idx, best_dist = i, dist

        if best_dist <= 0.0 or best_idx == 0:
            logger.warning("No clear elbow found, using the middle K")
            return int(k_values[n // 2])
        logger.info("Elbow found at K = %d (distance %.4f)", k_values[best_idx], best_dist)
        return int(k_values[best_idx])

    # --------------- stats & persistence ---------------
    def get_stats(self) -> Dict[str, Any]:
        sizes = [len(m) for m in self.clusters.values()]
        active = len(sizes)
        total = sum(sizes)
        return {
            "numClusters": self.num_clusters,
            "totalClusters": len(self.cluster_centers),
            "activeClusters": active,
            "clusterSizes": sizes,
            "avgClusterSize": (total / active) if active else 0.0,
            "totalDocuments": total,
        }

    def to_dict(self) -> dict:
        return ClusterSnapshot(
            num_clusters=self.num_clusters,
            cluster_centers=[c.tolist() for c in self.cluster_centers],
            cluster_assignments=dict(self.cluster_assignments),
            clusters={
                str(cid): ClusterMembersSnapshot(documents=list(m.document_ids))
                for cid, m in self.clusters.items()
            },
            dimensions=self.dimensions,
        ).to_dict()

    @classmethod
    def from_dict(
        cls,
        data: Dict[str, Any],
        embeddings_by_id: Optional[Mapping[str, np.ndarray]] = None,
        **kwargs: Any,
    ) -> "ClusterIndex":
        """
        Restore a fitted index. Members are re-attached to their embeddings
        through `embeddings_by_id`; legacy snapshots that carry member
        embeddings inline are used as-is. Unresolvable members are dropped.
        """
        snap = ClusterSnapshot.model_validate(data)
        index = cls(num_clusters=snap.num_clusters, **kwargs)
        index.cluster_centers = [np.asarray(c, dtype=float) for c in snap.cluster_centers]
        index.dimensions = snap.dimensions or (len(snap.cluster_centers[0]) if snap.cluster_centers else None)
        lookup = embeddings_by_id or {}

        for raw_id, members in snap.clusters.items():
            cluster_id = int(raw_id)
            if cluster_id >= len(index.cluster_centers):
                continue
            inline = members.embeddings if members.embeddings and len(members.embeddings) == len(members.documents) else None
            for i, entry in enumerate(members.documents):
                doc_id = entry if isinstance(entry, str) else str(entry.get("id", ""))
                if inline is not None:
                    emb = np.asarray(inline[i], dtype=float)
                else:
                    emb = lookup.get(doc_id)
                if not doc_id or emb is None:
                    continue
                index._assign(doc_id, emb, cluster_id)
        return index
