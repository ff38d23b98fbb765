"""
Tests for HybridVectorStore: mutation, search, rebuild and tuning.
"""
import math

import numpy as np
import pytest

from hybrid_index.concurrency.cancellation import CancellationToken
from hybrid_index.core.errors import OperationCancelled
from hybrid_index.indexing.brute_force import BruteForceIndex
from hybrid_index.indexing.base import Row
from hybrid_index.models.document import Document
from hybrid_index.services.hybrid_store import HybridVectorStore

from conftest import DIM, make_config, make_corpus


def _assert_invariants(store: HybridVectorStore):
    assert len(store.documents) == len(store.embeddings) == len(store.document_map)
    assert store.active_count + len(store.deleted_documents) == len(store.documents)
    for pos, doc in enumerate(store.documents):
        assert store.document_map[doc.id] == pos
    for fid, ids in store.file_document_map.items():
        for doc_id in ids:
            assert store.get_document(doc_id).file_id == fid


class TestScenarios:
    def test_three_document_ranking(self):
        """[1,0], [0,1], [0.9,0.1]: querying [1,0] with k=2 returns the first and third."""
        store = HybridVectorStore(make_config())
        store.add_documents(
            [Document(id="first"), Document(id="second"), Document(id="third")],
            [[1.0, 0.0], [0.0, 1.0], [0.9, 0.1]],
        )
        hits = store.similarity_search([1.0, 0.0], 2)
        assert [h.document.id for h in hits] == ["first", "third"]
        assert math.isclose(hits[0].similarity, 1.0)

    def test_remove_500_documents_of_one_file(self, store):
        docs, embs = make_corpus(500, file_id="42", prefix="f42")
        other, other_embs = make_corpus(120, seed=1, file_id="7", prefix="f7")
        store.add_documents(docs, embs)
        store.add_documents(other, other_embs)
        before = len(store.documents)

        removed = store.remove_documents_by_file_id(42)
        assert removed == 500
        assert len(store.documents) == before - 500
        assert not any(d.file_id == "42" for d in store.documents)
        assert "42" not in store.file_document_map
        _assert_invariants(store)


class TestMutation:
    def test_add_document_returns_position(self, store):
        assert store.add_document(Document(id="a"), np.ones(DIM)) == 0
        assert store.add_document({"id": "b", "content": "x"}, np.ones(DIM)) == 1
        assert store.dimensions == DIM

    def test_generated_ids(self, store):
        store.add_document(Document(content="no id"), np.ones(DIM))
        assert store.documents[0].id.startswith("doc_")

    def test_invalid_embeddings_are_skipped(self, store):
        store.add_document(Document(id="ok"), np.ones(DIM))
        assert store.add_document(Document(id="nan"), [float("nan")] * DIM) == -1
        assert store.add_document(Document(id="short"), [1.0, 2.0]) == -1
        assert store.add_document(Document(id="none"), None) == -1
        added = store.add_documents(
            [Document(id="x"), Document(id="y")],
            [np.ones(DIM), []],
        )
        assert added == 1
        assert [d.id for d in store.documents] == ["ok", "x"]
        _assert_invariants(store)

    def test_length_mismatch_raises(self, store):
        with pytest.raises(ValueError):
            store.add_documents([Document(id="a")], [])

    def test_duplicate_id_replaces(self, store):
        store.add_document(Document(id="a", content="old"), np.ones(DIM))
        store.add_document(Document(id="a", content="new"), -np.ones(DIM))
        assert len(store.documents) == 1
        assert store.get_document("a").content == "new"
        _assert_invariants(store)

    def test_file_batch_replaces_previous_chunks(self, store):
        docs, embs = make_corpus(10, file_id="f1", prefix="v1")
        store.add_documents(docs, embs)
        docs2, embs2 = make_corpus(4, seed=3, file_id="f1", prefix="v2")
        store.add_documents(docs2, embs2)
        assert sorted(store.document_ids_for_file("f1")) == [f"v2_{i}" for i in range(4)]
        assert len(store.documents) == 4
        _assert_invariants(store)

    def test_numeric_and_string_file_ids_match(self, store):
        docs = [Document(id=f"d{i}", metadata={"fileId": 42}) for i in range(3)]
        store.add_documents(docs, np.eye(DIM)[:3])
        assert store.mark_documents_as_deleted("42") == 3
        assert store.restore_documents(42) == 3


class TestSoftDelete:
    def _loaded(self, store):
        a, a_embs = make_corpus(30, file_id="A", prefix="a")
        b, b_embs = make_corpus(30, seed=1, file_id="B", prefix="b")
        store.add_documents(a, a_embs)
        store.add_documents(b, b_embs)
        store.rebuild_indices()
        return a_embs, b_embs

    def test_tombstones_excluded_from_search(self, store):
        a_embs, _ = self._loaded(store)
        store.mark_documents_as_deleted("A")
        hits = store.similarity_search(a_embs[0], 60)
        assert hits
        assert all(h.document.file_id == "B" for h in hits)
        _assert_invariants(store)

    def test_delete_and_restore_idempotent(self, store):
        a_embs, _ = self._loaded(store)
        assert store.mark_documents_as_deleted("A") == 30
        assert store.mark_documents_as_deleted("A") == 0
        assert store.active_count == 30
        assert store.restore_documents("A") == 30
        assert store.restore_documents("A") == 0
        assert store.active_count == 60
        assert store.similarity_search(a_embs[0], 1)[0].document.id == "a_0"

    def test_unknown_file_is_noop(self, store):
        self._loaded(store)
        assert store.mark_documents_as_deleted("missing") == 0
        assert store.restore_documents(None) == 0
        assert store.remove_documents_by_file_id("missing") == 0

    def test_purge(self, store):
        self._loaded(store)
        store.mark_documents_as_deleted("A")
        before = len(store.documents)
        assert store.purge_deleted_documents() == 30
        assert len(store.documents) == before - 30
        assert store.deleted_documents == set()
        assert "A" not in store.file_document_map
        assert not any(doc_id.startswith("a_") for doc_id in store.cluster_index.cluster_assignments)
        for table in store.lsh_index.hash_tables:
            for bucket in table.values():
                assert not any(doc_id.startswith("a_") for doc_id in bucket)
        assert store.purge_deleted_documents() == 0
        _assert_invariants(store)

    def test_hard_delete_then_purge(self, store):
        self._loaded(store)
        before = len(store.documents)
        removed = store.remove_documents_by_file_id("B")
        store.purge_deleted_documents()
        assert removed == 30
        assert len(store.documents) == before - 30


class TestSearch:
    def test_exact_match_recall(self, store):
        docs, embs = make_corpus(300, seed=9)
        store.add_documents(docs, embs)
        store.rebuild_indices()
        for i in (0, 123, 299):
            hits = store.similarity_search(embs[i], 5)
            assert hits[0].document.id == f"doc_{i}"
            assert math.isclose(hits[0].similarity, 1.0, rel_tol=1e-9)

    def test_sorted_and_bounded(self, store):
        docs, embs = make_corpus(200, seed=10)
        store.add_documents(docs, embs)
        store.rebuild_indices()
        q = np.random.default_rng(99).standard_normal(DIM)
        for k in (1, 7, 50):
            hits = store.similarity_search(q, k)
            assert len(hits) <= k
            sims = [h.similarity for h in hits]
            assert sims == sorted(sims, reverse=True)
            assert len({h.document.id for h in hits}) == len(hits)

    def test_top_hit_matches_exact_search(self, store):
        docs, embs = make_corpus(250, seed=12)
        store.add_documents(docs, embs)
        store.rebuild_indices()
        exact = BruteForceIndex([Row(d.id, e) for d, e in zip(docs, embs)])
        q = embs[40] + 0.01 * np.random.default_rng(1).standard_normal(DIM)
        assert store.similarity_search(q, 1)[0].document.id == exact.search(q, 1)[0][0]

    def test_malformed_queries_return_empty(self, store):
        docs, embs = make_corpus(10)
        store.add_documents(docs, embs)
        assert store.similarity_search(None, 3) == []
        assert store.similarity_search([1.0, 2.0], 3) == []
        assert store.similarity_search([float("nan")] * DIM, 3) == []
        assert store.similarity_search("text", 3) == []
        assert store.similarity_search(embs[0], 0) == []

    def test_empty_store(self, store):
        assert store.similarity_search(np.ones(DIM), 3) == []

    def test_search_stats(self, store):
        docs, embs = make_corpus(20)
        store.add_documents(docs, embs)
        store.similarity_search(embs[0], 3)
        store.similarity_search(embs[1], 3)
        stats = store.get_stats()["searchStats"]
        assert stats["totalSearches"] == 2
        assert stats["searchTime"] >= 0.0
        assert stats["avgCandidates"] == stats["lshCandidates"] / 2

    def test_indices_disabled(self):
        store = HybridVectorStore(make_config(enable_lsh=False, enable_clustering=False))
        docs, embs = make_corpus(40)
        store.add_documents(docs, embs)
        assert store.rebuild_indices() is True
        assert store.similarity_search(embs[5], 1)[0].document.id == "doc_5"
        stats = store.get_stats()
        assert "note" in stats["lshStats"]
        assert "note" in stats["clusterStats"]


class TestRebuild:
    def test_heuristic_k_below_tuning_threshold(self, store):
        docs, embs = make_corpus(60)
        store.add_documents(docs, embs)
        assert store.rebuild_indices() is True
        assert len(store.cluster_index.cluster_centers) == 3
        assert store.rebuild_counter == 0

    def test_every_active_document_indexed(self, store):
        docs, embs = make_corpus(80)
        store.add_documents(docs, embs)
        store.rebuild_indices()
        assert set(store.cluster_index.cluster_assignments) == {d.id for d in docs}
        assert store.lsh_index.get_stats()["totalDocuments"] == 80 * store.lsh_index.num_hash_tables

    def test_rebuild_skips_tombstones(self, store):
        docs, embs = make_corpus(40, file_id="gone")
        more, more_embs = make_corpus(40, seed=2, prefix="keep")
        store.add_documents(docs, embs)
        store.add_documents(more, more_embs)
        store.mark_documents_as_deleted("gone")
        store.rebuild_indices()
        assert set(store.cluster_index.cluster_assignments) == {d.id for d in more}

    def test_failed_rebuild_keeps_previous_indices(self, store, monkeypatch):
        docs, embs = make_corpus(50)
        store.add_documents(docs, embs)
        store.rebuild_indices()
        lsh, clusters = store.lsh_index, store.cluster_index

        def boom(*args, **kwargs):
            raise RuntimeError("clustering failed")

        monkeypatch.setattr("hybrid_index.indexing.cluster.ClusterIndex.fit", boom)
        assert store.rebuild_indices() is False
        assert store.lsh_index is lsh
        assert store.cluster_index is clusters
        assert store.similarity_search(embs[3], 1)[0].document.id == "doc_3"

    def test_large_batch_triggers_rebuild(self):
        store = HybridVectorStore(make_config(large_batch_size=10))
        docs, embs = make_corpus(30)
        store.add_documents(docs, embs)
        assert store.rebuild_counter == 0
        assert store.cluster_index.cluster_centers

    def test_background_rebuild(self):
        store = HybridVectorStore(make_config(large_batch_size=10, background_rebuild=True))
        try:
            docs, embs = make_corpus(30)
            store.add_documents(docs, embs)
            assert store.wait_for_rebuild(timeout=30) is True
            assert store.rebuild_counter == 0
            assert len(store.cluster_index.cluster_assignments) == 30
        finally:
            store.close()


class TestTune:
    def test_tune_below_threshold_uses_defaults(self, store):
        docs, embs = make_corpus(40)
        store.add_documents(docs, embs)
        result = store.tune()
        assert result["tuned"] is False
        assert store.tuned_k_value == 2
        assert store.config.tuned_lsh_config is None
        assert len(store.cluster_index.cluster_centers) == 2

    def test_tune_bounds_and_lsh_config(self):
        store = HybridVectorStore(make_config(min_docs_for_tuning=50, max_iterations=10))
        docs, embs = make_corpus(160, dim=8)
        store.add_documents(docs, embs)
        result = store.tune()
        assert result["tuned"] is True
        assert 1 <= store.tuned_k_value <= min(128, 160)
        tuned = store.config.tuned_lsh_config
        assert tuned is not None
        assert store.lsh_index.num_hash_tables == tuned.num_hash_tables
        assert store.lsh_index.num_hash_functions == tuned.num_hash_functions
        assert len(store.cluster_index.cluster_centers) <= store.tuned_k_value

        # a later rebuild keeps the tuned values
        store.rebuild_indices()
        assert store.lsh_index.num_hash_tables == tuned.num_hash_tables

    def test_cancelled_tune_leaves_state(self):
        store = HybridVectorStore(make_config(min_docs_for_tuning=50))
        docs, embs = make_corpus(120, dim=8)
        store.add_documents(docs, embs)
        store.rebuild_indices()
        lsh, clusters = store.lsh_index, store.cluster_index

        token = CancellationToken()
        token.cancel()
        with pytest.raises(OperationCancelled):
            store.tune(token)
        assert store.tuned_k_value is None
        assert store.config.tuned_lsh_config is None
        assert store.lsh_index is lsh
        assert store.cluster_index is clusters

    def test_force_tune_rebuild(self):
        store = HybridVectorStore(make_config(min_docs_for_tuning=50, enable_auto_tune=False))
        docs, embs = make_corpus(150, dim=8)
        store.add_documents(docs, embs)
        # auto-tune off: the existing cluster count is reused
        assert store.cluster_index.num_clusters == 128
        assert store.rebuild_indices(force_tune=True) is True
        assert 1 <= store.cluster_index.num_clusters < 128
        assert store.tuned_k_value is None


class TestStats:
    def test_counts(self, store):
        docs, embs = make_corpus(25, file_id="f")
        store.add_documents(docs, embs)
        store.add_document(Document(id="loose"), np.ones(DIM))
        store.mark_documents_as_deleted("f")
        stats = store.get_stats()
        assert stats["totalDocuments"] == 26
        assert stats["activeDocuments"] == 1
        assert stats["deletedDocuments"] == 25
        assert stats["filesCount"] == 1
        assert stats["config"]["enableLSH"] is True
        assert "numClusters" in stats["config"]
