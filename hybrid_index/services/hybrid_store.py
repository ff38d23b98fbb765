"""
HybridVectorStore: the single owner of the document/embedding arrays and of the
two approximate indices built over them.

Query pipeline (similarity_search):
  1. LSH candidates (OR over hash tables) once the corpus is large enough
  2. members of the clusters nearest to the query
  3. exact linear-scan top-up when the pool holds fewer than k documents
  4. dedupe, exact cosine re-score, top-k

Concurrency: one writer at a time (re-entrant writer mutex) and many readers
(ReadWriteLock). Full rebuilds and tuning build new indices off to the side and
swap them in under the exclusive lock, so searches never see a half-built index.
"""

from __future__ import annotations
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union
import json
import logging
import threading
import time

import numpy as np
from pydantic import ValidationError

from hybrid_index.concurrency.cancellation import CancellationToken
from hybrid_index.concurrency.read_write_lock import ReadWriteLock
from hybrid_index.core.errors import SnapshotError
from hybrid_index.indexing.base import Row
from hybrid_index.indexing.brute_force import BruteForceIndex
from hybrid_index.indexing.cluster import ClusterIndex, heuristic_num_clusters
from hybrid_index.indexing.lsh import LSHIndex
from hybrid_index.indexing.similarity import as_vector, cosine_scores, is_valid_embedding, stack
from hybrid_index.models.document import Document, DocumentId, FileId, SearchHit, as_file_id
from hybrid_index.models.snapshot import (
    PERSISTED_CONFIG_FIELDS,
    SNAPSHOT_VERSION,
    SearchStats,
    StoreConfig,
    StoreSnapshot,
    TunedLSHConfig,
)
from hybrid_index.repositories.base import SnapshotRepo

logger = logging.getLogger(__name__)

LSH_TABLE_OPTIONS = (8, 16, 32, 48)
LSH_FUNCTION_OPTIONS = (6, 10, 14, 18, 22)
CLUSTER_CANDIDATE_FACTOR = 10


class HybridVectorStore:
    """
    LSH + K-means hybrid ANN store with soft delete, persistence and self-tuning.
    Documents are addressed by id externally; positions are internal.
    """

    def __init__(
        self,
        config: Optional[StoreConfig] = None,
        repo: Optional[SnapshotRepo] = None,
        key: str = "vector-store",
    ) -> None:
        self.config = config or StoreConfig()
        self.repo = repo
        self.key = key
        self.dimensions: Optional[int] = self.config.dimensions

        # Primary store, index-aligned
        self.documents: List[Document] = []
        self.embeddings: List[np.ndarray] = []
        self.document_map: Dict[DocumentId, int] = {}
        self.deleted_documents: Set[DocumentId] = set()
        self.file_document_map: Dict[FileId, Set[DocumentId]] = {}

        self.lsh_index: Optional[LSHIndex] = None
        self.cluster_index: Optional[ClusterIndex] = None
        self.rebuild_counter = 0
        self.tuned_k_value: Optional[int] = None
        self.search_stats = SearchStats()
        self._reset_indices()

        self._rw = ReadWriteLock()
        self._writer = threading.RLock()
        self._stats_lock = threading.Lock()
        # snapshot capture and write happen as one step so saves land in capture order
        self._save_lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._pending_rebuild: Optional[Future] = None

    # --------------- helpers ---------------
    def _new_lsh(self, tables: Optional[int] = None, funcs: Optional[int] = None) -> Optional[LSHIndex]:
        if not self.config.enable_lsh or not self.dimensions:
            return None
        if tables is None or funcs is None:
            tuned = self.config.tuned_lsh_config
            if tuned is not None:
                tables, funcs = tuned.num_hash_tables, tuned.num_hash_functions
            elif self.lsh_index is not None:
                tables, funcs = self.lsh_index.num_hash_tables, self.lsh_index.num_hash_functions
            else:
                tables, funcs = self.config.num_hash_tables, self.config.num_hash_functions
        return LSHIndex(self.dimensions, tables, funcs, seed=self.config.seed)

    def _new_cluster_index(self, num_clusters: int) -> ClusterIndex:
        return ClusterIndex(
            num_clusters=num_clusters,
            max_iterations=self.config.max_iterations,
            tolerance=self.config.tolerance,
            seed=self.config.seed,
        )

    def _reset_indices(self) -> None:
        self.lsh_index = self._new_lsh()
        self.cluster_index = (
            self._new_cluster_index(self.config.default_num_clusters)
            if self.config.enable_clustering else None
        )

    def _reset(self) -> None:
        self.documents = []
        self.embeddings = []
        self.document_map = {}
        self.deleted_documents = set()
        self.file_document_map = {}
        self.rebuild_counter = 0
        self.tuned_k_value = None
        self.config.tuned_lsh_config = None
        self.dimensions = self.config.dimensions
        self._reset_indices()

    def _active(self) -> Tuple[List[str], np.ndarray]:
        ids: List[str] = []
        vecs: List[np.ndarray] = []
        for doc, emb in zip(self.documents, self.embeddings):
            if doc.id not in self.deleted_documents:
                ids.append(doc.id)
                vecs.append(emb)
        return ids, stack(vecs, self.dimensions or 0)

    def _ids_for_file(self, file_id: Any) -> Set[DocumentId]:
        fid = as_file_id(file_id)
        if fid is None:
            return set()
        return set(self.file_document_map.get(fid, set()))

    def _compact(self, drop: Set[DocumentId]) -> int:
        """Physically remove `drop` from the primary arrays and every map."""
        if not drop:
            return 0
        new_docs: List[Document] = []
        new_embs: List[np.ndarray] = []
        new_map: Dict[DocumentId, int] = {}
        removed = 0
        for doc, emb in zip(self.documents, self.embeddings):
            if doc.id in drop:
                removed += 1
                fid = doc.file_id
                if fid is not None and fid in self.file_document_map:
                    self.file_document_map[fid].discard(DocumentId(doc.id))
                    if not self.file_document_map[fid]:
                        del self.file_document_map[fid]
                continue
            new_map[DocumentId(doc.id)] = len(new_docs)
            new_docs.append(doc)
            new_embs.append(emb)
        self.documents = new_docs
        self.embeddings = new_embs
        self.document_map = new_map
        self.deleted_documents -= drop
        return removed

    def _coerce_document(self, document: Union[Document, Dict[str, Any]]) -> Document:
        if isinstance(document, Document):
            return document
        return Document.model_validate(document)

    def _check_embedding(self, embedding: Any) -> Optional[np.ndarray]:
        vec = as_vector(embedding)
        if not is_valid_embedding(vec, self.dimensions):
            return None
        return vec

    # --------------- mutation ---------------
    def add_document(self, document: Union[Document, Dict[str, Any]], embedding: Any) -> int:
        """
        Append one document and feed both indices online.
        Returns its position, or -1 when the embedding is invalid and the document was skipped.
        """
        doc = self._coerce_document(document)
        with self._writer, self._rw.write_lock():
            return self._add_locked(doc, embedding)

    def _add_locked(self, doc: Document, embedding: Any) -> int:
        vec = self._check_embedding(embedding)
        if vec is None:
            logger.warning("Skipping document %s: missing or malformed embedding", doc.id)
            return -1
        if self.dimensions is None:
            self.dimensions = int(vec.shape[0])
            if self.lsh_index is None:
                self.lsh_index = self._new_lsh()
        if doc.id in self.document_map:
            # ids are unique: a re-added id replaces the stored document
            self._drop_from_indices({DocumentId(doc.id)})
            self._compact({DocumentId(doc.id)})

        position = len(self.documents)
        doc_id = DocumentId(doc.id)
        self.documents.append(doc)
        self.embeddings.append(vec)
        self.document_map[doc_id] = position
        fid = doc.file_id
        if fid is not None:
            self.file_document_map.setdefault(fid, set()).add(doc_id)

        if self.config.enable_lsh and self.lsh_index is not None:
            self.lsh_index.add_vector(vec, doc_id)
        if self.config.enable_clustering and self.cluster_index is not None:
            self.cluster_index.add_document(doc_id, vec)
        self.rebuild_counter += 1
        return position

    def add_documents(
        self,
        documents: Sequence[Union[Document, Dict[str, Any]]],
        embeddings: Sequence[Any],
    ) -> int:
        """
        Add a batch. Files present in the batch are treated as full replacements:
        their previously stored chunks are hard-removed first. Invalid embeddings
        are skipped. Large batches (or a high mutation count) schedule a rebuild.
        """
        if len(documents) != len(embeddings):
            raise ValueError(
                f"documents ({len(documents)}) and embeddings ({len(embeddings)}) differ in length"
            )
        docs = [self._coerce_document(d) for d in documents]
        added = 0
        with self._writer:
            for fid in sorted({d.file_id for d in docs if d.file_id is not None}):
                if fid in self.file_document_map:
                    logger.info("Replacing existing chunks of file %s", fid)
                    self.remove_documents_by_file_id(fid)
            with self._rw.write_lock():
                for doc, emb in zip(docs, embeddings):
                    if self._add_locked(doc, emb) >= 0:
                        added += 1
            skipped = len(docs) - added
            if skipped:
                logger.warning("Skipped %d of %d documents with invalid embeddings", skipped, len(docs))
            logger.info("Added %d documents to the vector store", added)

            if len(docs) > self.config.large_batch_size or self.rebuild_counter > self.config.auto_rebuild_threshold:
                logger.info(
                    "Rebuild threshold reached (batch: %d, counter: %d)", len(docs), self.rebuild_counter
                )
                self._schedule_rebuild()
        return added

    def _drop_from_indices(self, ids: Set[DocumentId]) -> None:
        if self.lsh_index is not None:
            self.lsh_index.remove_vectors(ids)
        if self.cluster_index is not None:
            self.cluster_index.remove_documents(ids)

    def remove_documents_by_file_id(self, file_id: Any) -> int:
        """Hard delete every chunk of one file. O(corpus size)."""
        fid = as_file_id(file_id)
        if fid is None:
            return 0
        with self._writer, self._rw.write_lock():
            ids = self._ids_for_file(fid)
            # documents whose metadata names the file but missed the map (legacy snapshots)
            ids |= {DocumentId(d.id) for d in self.documents if d.file_id == fid}
            if not ids:
                return 0
            self._drop_from_indices(ids)
            removed = self._compact(ids)
            self.file_document_map.pop(fid, None)
        logger.info("Hard-deleted %d documents of file %s", removed, fid)
        return removed

    def mark_documents_as_deleted(self, file_id: Any) -> int:
        """Tombstone every chunk of a file. Idempotent; indices are left untouched."""
        with self._writer, self._rw.write_lock():
            ids = self._ids_for_file(file_id) - self.deleted_documents
            self.deleted_documents |= ids
        logger.info("Marked %d documents of file %s as deleted", len(ids), file_id)
        return len(ids)

    def restore_documents(self, file_id: Any) -> int:
        """Lift tombstones for every chunk of a file. Idempotent."""
        with self._writer, self._rw.write_lock():
            ids = self._ids_for_file(file_id) & self.deleted_documents
            self.deleted_documents -= ids
        logger.info("Restored %d documents of file %s", len(ids), file_id)
        return len(ids)

    def purge_deleted_documents(self) -> int:
        """Physically remove all tombstoned documents, then rebuild the indices."""
        with self._writer:
            if not self.deleted_documents:
                logger.info("No tombstoned documents to purge")
                return 0
            with self._rw.write_lock():
                purged = self._compact(set(self.deleted_documents))
                self.deleted_documents.clear()
            self.rebuild_indices(False)
        logger.info("Purged %d documents", purged)
        return purged

    # --------------- rebuild & tuning ---------------
    def _schedule_rebuild(self) -> None:
        if not self.config.background_rebuild:
            self.rebuild_indices(False)
            return
        if self._pending_rebuild is not None and not self._pending_rebuild.done():
            return
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="hybrid-rebuild")
        self._pending_rebuild = self._executor.submit(self._background_rebuild)

    def _background_rebuild(self) -> None:
        if self.rebuild_indices(False) and self.repo is not None:
            try:
                self.save()
            except Exception:
                logger.warning("Snapshot not refreshed after background rebuild of %s", self.key)

    def wait_for_rebuild(self, timeout: Optional[float] = None) -> bool:
        """Block until a scheduled background rebuild has finished. Returns False on timeout."""
        pending = self._pending_rebuild
        if pending is None:
            return True
        try:
            pending.result(timeout=timeout)
        except FutureTimeout:
            return False
        return True

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def _choose_num_clusters(self, active: np.ndarray, force_tune: bool) -> int:
        n = active.shape[0]
        if self.tuned_k_value is not None and not force_tune:
            logger.info("Using tuned K = %d", self.tuned_k_value)
            return max(1, self.tuned_k_value)
        if (
            not force_tune
            and not self.config.enable_auto_tune
            and self.cluster_index is not None
            and self.cluster_index.num_clusters > 0
        ):
            logger.info("Using existing K = %d (auto-tune disabled)", self.cluster_index.num_clusters)
            return self.cluster_index.num_clusters
        if (force_tune or self.config.enable_auto_tune) and n >= self.config.min_docs_for_tuning:
            logger.info("Tuning K with the elbow method (force_tune=%s)", force_tune)
            try:
                return self._new_cluster_index(0).tune(active)
            except Exception:
                logger.error("K-means tuning failed, using size heuristic", exc_info=True)
                return heuristic_num_clusters(n)
        logger.info("Using size heuristic for K (%d active documents)", n)
        return heuristic_num_clusters(n)

    def _build_indices(
        self, ids: List[str], active: np.ndarray, force_tune: bool
    ) -> Tuple[Optional[LSHIndex], Optional[ClusterIndex]]:
        new_lsh: Optional[LSHIndex] = None
        if self.config.enable_lsh and self.dimensions:
            new_lsh = self._new_lsh()
            if new_lsh is not None and ids:
                new_lsh.add_vectors(ids, active)
            logger.info(
                "LSH index rebuilt (%d tables x %d functions)",
                new_lsh.num_hash_tables, new_lsh.num_hash_functions,
            )

        new_cluster: Optional[ClusterIndex] = None
        if self.config.enable_clustering:
            if ids:
                k = self._choose_num_clusters(active, force_tune)
                new_cluster = self._new_cluster_index(k)
                new_cluster.fit(ids, active)
                logger.info("Cluster index rebuilt with %d clusters", len(new_cluster.cluster_centers))
            else:
                new_cluster = self._new_cluster_index(0)
        return new_lsh, new_cluster

    def rebuild_indices(self, force_tune: bool = False) -> bool:
        """
        Rebuild both indices from scratch over the non-tombstoned documents.
        Atomic: on failure the previous indices stay in place and False is returned.
        """
        with self._writer:
            logger.info("Rebuilding hybrid indices (force_tune=%s)", force_tune)
            start = time.perf_counter()
            ids, active = self._active()
            try:
                new_lsh, new_cluster = self._build_indices(ids, active, force_tune)
            except Exception:
                logger.error("Index rebuild failed, keeping previous indices", exc_info=True)
                return False
            with self._rw.write_lock():
                self.lsh_index = new_lsh
                self.cluster_index = new_cluster
                self.rebuild_counter = 0
            logger.info(
                "Index rebuild finished in %.1fms, %d active documents",
                (time.perf_counter() - start) * 1000.0, len(ids),
            )
            return True

    def _tune_lsh(
        self,
        ids: List[str],
        active: np.ndarray,
        k_hint: int,
        cancel_token: Optional[CancellationToken],
    ) -> Tuple[Optional[TunedLSHConfig], float]:
        n = len(ids)
        sample_size = max(1, min(100, int(n * 0.1), 300))
        rng = np.random.default_rng(self.config.seed)
        sample = active[rng.choice(n, size=min(sample_size, n), replace=False)]

        target_min = max(10, int(n * 0.005), k_hint)
        target_max = min(300, int(n * 0.08), k_hint * 10)
        if target_min > target_max:
            target_min = max(10, target_max // 2)
        logger.info("LSH tuning target candidate window: [%d, %d]", target_min, target_max)

        def distance(avg: float) -> float:
            if avg < target_min:
                return target_min - avg
            if avg > target_max:
                return avg - target_max
            return 0.0

        best: Optional[Tuple[float, float, TunedLSHConfig]] = None
        for tables in LSH_TABLE_OPTIONS:
            for funcs in LSH_FUNCTION_OPTIONS:
                if tables * funcs > 256 and tables * funcs > n * 0.5:
                    continue
                if cancel_token is not None:
                    cancel_token.raise_if_cancelled("LSH tuning")
                trial = LSHIndex(self.dimensions or active.shape[1], tables, funcs, seed=self.config.seed)
                trial.add_vectors(ids, active)
                avg = float(np.mean([len(trial.get_candidates(q)) for q in sample]))
                logger.debug("  LSH tables=%d functions=%d: %.2f candidates/query", tables, funcs, avg)
                key = (distance(avg), avg)
                if best is None or key < best[:2]:
                    best = (key[0], key[1], TunedLSHConfig(num_hash_tables=tables, num_hash_functions=funcs))
        if best is None:
            return None, 0.0
        return best[2], best[1]

    def tune(self, cancel_token: Optional[CancellationToken] = None) -> Dict[str, Any]:
        """
        Corpus-wide parameter search: elbow-tuned K for clustering and a grid
        search over LSH (tables, functions), then a rebuild with the winners.
        Cancellation leaves the current parameters and indices untouched.
        """
        with self._writer:
            logger.info("Starting forced tuning")
            ids, active = self._active()
            n = len(ids)
            if n < self.config.min_docs_for_tuning:
                logger.warning(
                    "Too few active documents (%d < %d) to tune, rebuilding with defaults",
                    n, self.config.min_docs_for_tuning,
                )
                self.tuned_k_value = heuristic_num_clusters(n) if self.config.enable_clustering else None
                self.config.tuned_lsh_config = None
                self.rebuild_indices(False)
                return {"tuned": False, "numClusters": self.tuned_k_value, "lshConfig": None}

            k = self.cluster_index.num_clusters if self.cluster_index else self.config.default_num_clusters
            if self.config.enable_clustering:
                k = self._new_cluster_index(0).tune(active, cancel_token=cancel_token)
                logger.info("K-means tuning finished, best K = %d", k)

            lsh_config: Optional[TunedLSHConfig] = None
            avg_candidates = 0.0
            if self.config.enable_lsh and n > 0:
                lsh_config, avg_candidates = self._tune_lsh(ids, active, max(1, k), cancel_token)
                if lsh_config is not None:
                    logger.info(
                        "LSH tuning finished: tables=%d functions=%d (%.2f candidates/query)",
                        lsh_config.num_hash_tables, lsh_config.num_hash_functions, avg_candidates,
                    )

            if self.config.enable_clustering:
                self.tuned_k_value = k
            if lsh_config is not None:
                self.config.tuned_lsh_config = lsh_config
            self.rebuild_indices(False)
            logger.info("Tuning complete")
            return {
                "tuned": True,
                "numClusters": self.tuned_k_value,
                "lshConfig": lsh_config.to_dict() if lsh_config else None,
                "avgCandidates": avg_candidates,
            }

    # --------------- search ---------------
    def similarity_search(self, query_embedding: Any, k: int = 5) -> List[SearchHit]:
        """Top-k documents by cosine similarity, best first. Never raises on bad input."""
        start = time.perf_counter()
        q = as_vector(query_embedding)
        if q is None or k <= 0 or not np.all(np.isfinite(q)):
            return []

        lsh_count = 0
        with self._rw.read_lock():
            if not self.documents or (self.dimensions is not None and q.shape[0] != self.dimensions):
                return []

            # insertion-ordered pool of candidate ids
            pool: Dict[str, None] = {}
            lsh = self.lsh_index
            if self.config.enable_lsh and lsh is not None and len(self.documents) > self.config.lsh_min_documents:
                candidates = lsh.get_candidates(q)
                lsh_count = len(candidates)
                pool.update(dict.fromkeys(sorted(candidates)))
                logger.debug("LSH proposed %d candidates", lsh_count)

            clusters = self.cluster_index
            if self.config.enable_clustering and clusters is not None and clusters.cluster_centers:
                n_top = min(self.config.top_clusters_to_search, len(clusters.cluster_centers))
                top = clusters.find_top_clusters(q, n_top)
                closest = clusters.find_closest_cluster(q)
                if closest >= 0 and closest not in top:
                    top.append(closest)
                for cluster_id in top:
                    for hit in clusters.search_in_cluster(cluster_id, q, k * CLUSTER_CANDIDATE_FACTOR):
                        pool.setdefault(hit.document_id, None)
                logger.debug("Searched %d clusters, pool size %d", len(top), len(pool))

            # tombstoned and purged ids are dropped here
            live = [
                doc_id for doc_id in pool
                if doc_id in self.document_map and doc_id not in self.deleted_documents
            ]

            if len(live) < k:
                seen = set(live)
                rows = [
                    Row(doc.id, emb)
                    for doc, emb in zip(self.documents, self.embeddings)
                    if doc.id not in seen and doc.id not in self.deleted_documents
                ]
                if rows:
                    extra = BruteForceIndex(rows).search(q, k - len(live))
                    logger.debug("Linear scan topped up %d results", len(extra))
                    live.extend(doc_id for doc_id, _ in extra)

            positions = [self.document_map[doc_id] for doc_id in live]
            if not positions:
                results: List[SearchHit] = []
            else:
                scores = cosine_scores(stack([self.embeddings[p] for p in positions]), q)
                order = np.argsort(-scores, kind="stable")[:k]
                results = [
                    SearchHit(document=self.documents[positions[i]], similarity=float(scores[i]))
                    for i in order
                ]

        elapsed = (time.perf_counter() - start) * 1000.0
        with self._stats_lock:
            stats = self.search_stats
            stats.total_searches += 1
            stats.lsh_candidates += lsh_count
            stats.avg_candidates = stats.lsh_candidates / stats.total_searches
            stats.search_time += elapsed
        logger.debug("Hybrid search finished in %.2fms with %d results", elapsed, len(results))
        return results

    # --------------- introspection ---------------
    @property
    def active_count(self) -> int:
        return len(self.documents) - len(self.deleted_documents)

    def get_document(self, document_id: str) -> Optional[Document]:
        with self._rw.read_lock():
            pos = self.document_map.get(DocumentId(document_id))
            return self.documents[pos] if pos is not None else None

    def document_ids_for_file(self, file_id: Any) -> Set[DocumentId]:
        with self._rw.read_lock():
            return self._ids_for_file(file_id)

    def get_stats(self) -> Dict[str, Any]:
        with self._rw.read_lock():
            lsh_stats = (
                self.lsh_index.get_stats()
                if self.config.enable_lsh and self.lsh_index is not None
                else {"note": "LSH disabled or not initialized"}
            )
            cluster_stats = (
                self.cluster_index.get_stats()
                if self.config.enable_clustering and self.cluster_index is not None
                else {"note": "Clustering disabled or not initialized"}
            )
            config = self.config.to_snapshot()
            config["numClusters"] = self.cluster_index.num_clusters if self.cluster_index else 0
            with self._stats_lock:
                search_stats = self.search_stats.to_dict()
            return {
                "version": SNAPSHOT_VERSION,
                "totalDocuments": len(self.documents),
                "activeDocuments": self.active_count,
                "deletedDocuments": len(self.deleted_documents),
                "filesCount": len(self.file_document_map),
                "dimensions": self.dimensions,
                "rebuildCounter": self.rebuild_counter,
                "lshStats": lsh_stats,
                "clusterStats": cluster_stats,
                "config": config,
                "searchStats": search_stats,
            }

    # --------------- persistence ---------------
    def to_snapshot(self) -> StoreSnapshot:
        with self._rw.read_lock():
            with self._stats_lock:
                stats = self.search_stats.model_copy()
            return StoreSnapshot(
                documents=list(self.documents),
                embeddings=[e.tolist() for e in self.embeddings],
                deleted_documents=sorted(self.deleted_documents),
                file_document_map=[(fid, sorted(ids)) for fid, ids in self.file_document_map.items()],
                lsh_index=self.lsh_index.to_dict() if self.config.enable_lsh and self.lsh_index else None,
                cluster_index=(
                    self.cluster_index.to_dict()
                    if self.config.enable_clustering and self.cluster_index else None
                ),
                config=self.config.to_snapshot(),
                stats=stats,
            )

    def save(self) -> None:
        if self.repo is None:
            raise RuntimeError("HybridVectorStore has no snapshot repository configured")
        with self._save_lock:
            payload = json.dumps(self.to_snapshot().to_dict()).encode("utf-8")
            try:
                self.repo.write(self.key, payload)
            except Exception:
                logger.error("Failed to save vector store %s", self.key, exc_info=True)
                raise
        logger.info("Vector store %s saved (%d documents)", self.key, len(self.documents))

    @staticmethod
    def decode_snapshot(data: bytes) -> StoreSnapshot:
        try:
            return StoreSnapshot.model_validate(json.loads(data.decode("utf-8")))
        except (UnicodeDecodeError, ValueError, ValidationError) as exc:
            raise SnapshotError(str(exc)) from exc

    def load(self) -> bool:
        """
        Replace the in-memory state with the persisted snapshot.
        A missing or corrupt snapshot leaves an empty, usable store and returns False.
        """
        if self.repo is None:
            return False
        with self._writer:
            raw = self.repo.read(self.key)
            if raw is None:
                logger.info("No snapshot for %s, starting with an empty store", self.key)
                with self._rw.write_lock():
                    self._reset()
                return False
            try:
                snap = self.decode_snapshot(raw)
            except SnapshotError:
                logger.warning("Corrupt snapshot for %s, starting with an empty store", self.key, exc_info=True)
                with self._rw.write_lock():
                    self._reset()
                return False

            with self._rw.write_lock():
                needs_rebuild = self._restore(snap)
            if needs_rebuild:
                self.rebuild_indices(False)
        logger.info(
            "Loaded %d documents (%d tombstoned) for %s",
            len(self.documents), len(self.deleted_documents), self.key,
        )
        return True

    def _restore(self, snap: StoreSnapshot) -> bool:
        self._reset()
        if snap.config is not None:
            try:
                parsed = StoreConfig.model_validate(snap.config)
            except ValidationError:
                logger.warning("Ignoring unreadable config block in snapshot", exc_info=True)
            else:
                for name in PERSISTED_CONFIG_FIELDS:
                    setattr(self.config, name, getattr(parsed, name))
        self.search_stats = snap.stats

        if len(snap.documents) != len(snap.embeddings):
            logger.warning(
                "Snapshot has %d documents but %d embeddings, truncating",
                len(snap.documents), len(snap.embeddings),
            )
        for doc, emb in zip(snap.documents, snap.embeddings):
            vec = self._check_embedding(emb)
            if vec is None or doc.id in self.document_map:
                logger.warning("Dropping document %s from snapshot: invalid embedding or duplicate id", doc.id)
                continue
            if self.dimensions is None:
                self.dimensions = int(vec.shape[0])
            self.document_map[DocumentId(doc.id)] = len(self.documents)
            self.documents.append(doc)
            self.embeddings.append(vec)

        self.deleted_documents = {DocumentId(i) for i in snap.deleted_documents if i in self.document_map}
        if snap.file_document_map is not None:
            for fid, ids in snap.file_document_map:
                kept = {DocumentId(i) for i in ids if i in self.document_map}
                if kept:
                    self.file_document_map[FileId(str(fid))] = kept
        else:
            self.rebuild_file_document_map()

        needs_rebuild = False
        self.lsh_index = None
        if self.config.enable_lsh:
            if snap.lsh_index is not None:
                try:
                    lsh = LSHIndex.from_dict(snap.lsh_index)
                    if self.dimensions is not None and lsh.dimensions != self.dimensions:
                        raise ValueError("LSH dimension does not match embeddings")
                    self.lsh_index = lsh
                except (ValueError, ValidationError):
                    logger.warning("Discarding unreadable LSH index from snapshot", exc_info=True)
                    needs_rebuild = bool(self.documents)
            else:
                needs_rebuild = bool(self.documents)
            if self.lsh_index is None:
                self.lsh_index = self._new_lsh()

        self.cluster_index = None
        if self.config.enable_clustering:
            if snap.cluster_index is not None:
                try:
                    by_id = {doc.id: emb for doc, emb in zip(self.documents, self.embeddings)}
                    self.cluster_index = ClusterIndex.from_dict(
                        snap.cluster_index,
                        embeddings_by_id=by_id,
                        max_iterations=self.config.max_iterations,
                        tolerance=self.config.tolerance,
                        seed=self.config.seed,
                    )
                except (ValueError, ValidationError):
                    logger.warning("Discarding unreadable cluster index from snapshot", exc_info=True)
                    needs_rebuild = bool(self.documents)
            else:
                needs_rebuild = needs_rebuild or bool(self.documents)
            if self.cluster_index is None:
                self.cluster_index = self._new_cluster_index(self.config.default_num_clusters)
            elif not self.cluster_index.cluster_centers and self.documents:
                # saved before the first full build
                needs_rebuild = True
        return needs_rebuild

    def rebuild_file_document_map(self) -> None:
        self.file_document_map = {}
        for doc in self.documents:
            fid = doc.file_id
            if fid is not None:
                self.file_document_map.setdefault(fid, set()).add(DocumentId(doc.id))
        logger.info("Rebuilt file map: %d files", len(self.file_document_map))

    def replace_corpus(self, documents: Iterable[Document], embeddings: Iterable[Any]) -> int:
        """
        Swap in a whole new corpus (full re-ingestion). Indices are reset and
        must be rebuilt or tuned afterwards.
        """
        with self._writer, self._rw.write_lock():
            self._reset()
            added = 0
            for doc, emb in zip(documents, embeddings):
                if self._add_locked(self._coerce_document(doc), emb) >= 0:
                    added += 1
            return added
