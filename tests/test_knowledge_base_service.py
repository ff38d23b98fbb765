"""
Tests for KnowledgeBaseService: ingestion, deletion lifecycle and maintenance.
"""
from typing import List

import pytest

from hybrid_index.adapters.embedding_providers.hashing_provider import HashingProvider
from hybrid_index.core.errors import EmbeddingError, KnowledgeBaseNotFound
from hybrid_index.models.knowledge_base import ChunkIn, FileSource
from hybrid_index.repositories.memory.snapshot_repo import MemorySnapshotRepo
from hybrid_index.services.knowledge_base_service import KnowledgeBaseService
from hybrid_index.temporal_workflows.maintenance_workflow import MaintenanceRequest, perform_maintenance

from conftest import make_config

TEXTS = [
    "Introduction to machine learning and neural networks",
    "Organic chemistry laboratory safety rules",
    "Medieval European history and feudal society",
    "Linear algebra: eigenvalues and eigenvectors",
    "Course enrollment deadlines for the spring semester",
]


def _chunks(texts: List[str]) -> List[ChunkIn]:
    return [ChunkIn(content=t, metadata={"page": i + 1}) for i, t in enumerate(texts)]


class FlakyEmbedder(HashingProvider):
    """Fails whole batches and any text containing 'broken'."""

    def embed_batch(self, texts):
        raise EmbeddingError("batch endpoint unavailable")

    def embed_text(self, text):
        if "broken" in text:
            raise EmbeddingError("cannot embed")
        return super().embed_text(text)


class TestIngestion:
    def test_index_file_stamps_metadata(self, kb_service):
        assert kb_service.index_file("kb1", "42", "notes.pdf", _chunks(TEXTS)) == 5
        store = kb_service.get_store("kb1")
        doc = store.get_document("file_42_chunk_1")
        assert doc.content == TEXTS[1]
        assert doc.metadata.file_id == "42"
        assert doc.metadata.file_name == "notes.pdf"
        assert doc.metadata.chunk_index == 1
        assert doc.metadata.total_chunks == 5
        # extractor metadata is kept
        assert doc.to_dict()["metadata"]["page"] == 2

    def test_index_file_saves_snapshot(self, kb_service):
        kb_service.index_file("kb1", "1", "a.txt", _chunks(TEXTS))
        assert kb_service.repo.read("kb_kb1") is not None
        assert kb_service.exists("kb1")
        assert kb_service.list_knowledge_bases() == ["kb1"]

    def test_reupload_replaces_chunks(self, kb_service):
        kb_service.index_file("kb1", "1", "a.txt", _chunks(TEXTS))
        kb_service.index_file("kb1", "1", "a.txt", _chunks(TEXTS[:2]))
        store = kb_service.get_store("kb1")
        assert sorted(store.document_ids_for_file("1")) == ["file_1_chunk_0", "file_1_chunk_1"]
        assert len(store.documents) == 2

    def test_failed_embeddings_are_skipped(self):
        svc = KnowledgeBaseService(
            repo=MemorySnapshotRepo(), embedder=FlakyEmbedder(64), config=make_config(dimensions=64)
        )
        texts = ["good text one", "broken text", "good text two"]
        assert svc.index_file("kb", "9", "f.txt", _chunks(texts)) == 2
        ids = {d.id for d in svc.get_store("kb").documents}
        assert ids == {"file_9_chunk_0", "file_9_chunk_2"}

    def test_empty_file(self, kb_service):
        assert kb_service.index_file("kb1", "1", "empty.txt", []) == 0


class TestLifecycle:
    def _setup(self, svc):
        svc.index_file("kb1", "1", "ml.txt", _chunks(TEXTS[:3]))
        svc.index_file("kb1", "2", "math.txt", _chunks(TEXTS[3:]))

    def test_search_by_text(self, kb_service):
        self._setup(kb_service)
        hits = kb_service.search("kb1", query_text=TEXTS[3], k=2)
        assert hits[0].document.id == "file_2_chunk_0"
        assert hits[0].similarity == pytest.approx(1.0)

    def test_search_requires_query(self, kb_service):
        self._setup(kb_service)
        with pytest.raises(ValueError):
            kb_service.search("kb1", k=2)

    def test_unknown_knowledge_base(self, kb_service):
        with pytest.raises(KnowledgeBaseNotFound):
            kb_service.search("nope", query_text="x")
        with pytest.raises(KnowledgeBaseNotFound):
            kb_service.get_stats("nope")

    def test_soft_delete_restore_purge(self, kb_service):
        self._setup(kb_service)
        assert kb_service.mark_file_deleted("kb1", "1") == 3
        hits = kb_service.search("kb1", query_text=TEXTS[0], k=5)
        assert all(h.document.metadata.file_id == "2" for h in hits)

        assert kb_service.restore_file("kb1", "1") == 3
        assert kb_service.search("kb1", query_text=TEXTS[0], k=1)[0].document.id == "file_1_chunk_0"

        kb_service.mark_file_deleted("kb1", "1")
        assert kb_service.purge_deleted("kb1") == 3
        stats = kb_service.get_stats("kb1")
        assert stats["totalDocuments"] == 2
        assert stats["deletedDocuments"] == 0

    def test_purge_file(self, kb_service):
        self._setup(kb_service)
        assert kb_service.purge_file("kb1", "2") == 2
        assert kb_service.get_stats("kb1")["totalDocuments"] == 3

    def test_state_survives_new_service(self, kb_service):
        self._setup(kb_service)
        kb_service.mark_file_deleted("kb1", "2")
        other = KnowledgeBaseService(
            repo=kb_service.repo, embedder=HashingProvider(64), config=make_config(dimensions=64)
        )
        stats = other.get_stats("kb1")
        assert stats["totalDocuments"] == 5
        assert stats["deletedDocuments"] == 2
        other.close()

    def test_delete_knowledge_base(self, kb_service):
        self._setup(kb_service)
        assert kb_service.delete_knowledge_base("kb1") is True
        assert kb_service.repo.read("kb_kb1") is None
        assert kb_service.delete_knowledge_base("kb1") is False
        assert not kb_service.exists("kb1")


class TestMaintenance:
    def test_rebuild_and_tune(self, kb_service):
        kb_service.index_file("kb1", "1", "a.txt", _chunks(TEXTS))
        assert kb_service.rebuild_index("kb1") is True
        result = kb_service.tune("kb1")
        assert result["tuned"] is False  # below the tuning threshold
        assert kb_service.get_stats("kb1")["clusterStats"]["totalClusters"] == 1

    def test_reindex(self, kb_service):
        kb_service.index_file("kb1", "old", "old.txt", _chunks(["stale content"]))
        files = [
            FileSource(file_id="1", file_name="a.txt", chunks=_chunks(TEXTS[:2])),
            FileSource(file_id="2", file_name="b.txt", chunks=_chunks(TEXTS[2:])),
            FileSource(file_id="3", file_name="empty.txt", chunks=[]),
        ]
        result = kb_service.reindex("kb1", files)
        assert result["indexed"] == 5
        assert result["skipped"] == 0
        store = kb_service.get_store("kb1")
        assert "old" not in store.file_document_map
        assert set(store.file_document_map) == {"1", "2"}
        assert store.rebuild_counter == 0

    def test_evict_picks_up_worker_maintenance(self, kb_service):
        kb_service.index_file("kb1", "1", "a.txt", _chunks(TEXTS))
        kb_service.index_file("kb1", "2", "b.txt", _chunks(TEXTS))
        kb_service.mark_file_deleted("kb1", "1")
        worker = KnowledgeBaseService(
            repo=kb_service.repo, embedder=HashingProvider(64), config=make_config(dimensions=64)
        )
        assert perform_maintenance(worker, MaintenanceRequest(kb_id="kb1", action="purge")) == {"purged": 5}
        worker.close()

        assert kb_service.evict("kb1") is True
        assert kb_service.evict("kb1") is False
        # the next mutation starts from the worker's snapshot, not the stale copy
        kb_service.mark_file_deleted("kb1", "2")
        reader = KnowledgeBaseService(
            repo=kb_service.repo, embedder=HashingProvider(64), config=make_config(dimensions=64)
        )
        stats = reader.get_stats("kb1")
        assert stats["totalDocuments"] == 5
        assert stats["deletedDocuments"] == 5
        reader.close()
