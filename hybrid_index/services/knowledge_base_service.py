from __future__ import annotations
from typing import Any, Dict, List, Optional, Sequence
import logging
import threading

from hybrid_index.adapters.embedding_providers.base import EmbeddingProvider
from hybrid_index.adapters.embedding_providers.cohere_provider import CohereProvider
from hybrid_index.adapters.embedding_providers.hashing_provider import HashingProvider
from hybrid_index.concurrency.cancellation import CancellationToken
from hybrid_index.core.config import Settings, settings
from hybrid_index.core.errors import EmbeddingError, KnowledgeBaseNotFound
from hybrid_index.models.document import Document, SearchHit
from hybrid_index.models.knowledge_base import ChunkIn, FileSource
from hybrid_index.models.snapshot import StoreConfig
from hybrid_index.repositories.base import SnapshotRepo
from hybrid_index.repositories.factory import build_snapshot_repo
from hybrid_index.services.hybrid_store import HybridVectorStore

logger = logging.getLogger(__name__)


def default_embedder(s: Settings) -> EmbeddingProvider:
    if s.COHERE_API_KEY:
        return CohereProvider(api_key=s.COHERE_API_KEY, model=s.COHERE_MODEL, dimensions=s.EMBEDDING_DIM)
    logger.warning("COHERE_API_KEY not configured, using the local hashing embedder")
    return HashingProvider(s.EMBEDDING_DIM)


def chunk_document_id(file_id: str, index: int) -> str:
    return f"file_{file_id}_chunk_{index}"


class KnowledgeBaseService:
    """
    One HybridVectorStore per knowledge base, loaded lazily from the snapshot
    repository and saved after every successful mutation.
    """

    def __init__(
        self,
        repo: Optional[SnapshotRepo] = None,
        embedder: Optional[EmbeddingProvider] = None,
        config: Optional[StoreConfig] = None,
    ) -> None:
        self.repo = repo or build_snapshot_repo(settings)
        self.embedder = embedder or default_embedder(settings)
        self.config = config or StoreConfig.from_settings(settings)
        self._stores: Dict[str, HybridVectorStore] = {}
        self._lock = threading.Lock()

    @staticmethod
    def store_key(kb_id: str) -> str:
        return f"kb_{kb_id}"

    def get_store(self, kb_id: str, create: bool = False) -> HybridVectorStore:
        """
        Return the knowledge base's store, loading its snapshot on first use.
        Raises KnowledgeBaseNotFound unless it exists or `create` is set.
        """
        with self._lock:
            store = self._stores.get(kb_id)
            if store is not None:
                return store
            key = self.store_key(kb_id)
            if not create and self.repo.read(key) is None:
                raise KnowledgeBaseNotFound(kb_id)
            store = HybridVectorStore(self.config.model_copy(deep=True), repo=self.repo, key=key)
            store.load()
            self._stores[kb_id] = store
            return store

    def exists(self, kb_id: str) -> bool:
        with self._lock:
            return kb_id in self._stores or self.repo.read(self.store_key(kb_id)) is not None

    def evict(self, kb_id: str) -> bool:
        """
        Drop the cached store so the next access reloads the snapshot.
        Call after another process (the maintenance worker) has saved the knowledge base.
        """
        with self._lock:
            store = self._stores.pop(kb_id, None)
        if store is None:
            return False
        store.close()
        logger.info("Evicted cached store for knowledge base %s", kb_id)
        return True

    def list_knowledge_bases(self) -> List[str]:
        with self._lock:
            ids = {key[len("kb_"):] for key in self.repo.keys() if key.startswith("kb_")}
            ids.update(self._stores)
        return sorted(ids)

    # --------------- ingestion ---------------
    def _embed_chunks(self, chunks: Sequence[ChunkIn]) -> List[Optional[List[float]]]:
        texts = [c.content for c in chunks]
        try:
            return list(self.embedder.embed_batch(texts))
        except EmbeddingError:
            logger.warning("Batch embedding failed, embedding %d chunks one by one", len(texts), exc_info=True)
        embeddings: List[Optional[List[float]]] = []
        for i, text in enumerate(texts):
            try:
                embeddings.append(self.embedder.embed_text(text))
            except EmbeddingError as e:
                logger.warning("Skipping chunk %d: %s", i, e)
                embeddings.append(None)
        return embeddings

    def _file_documents(self, file_id: str, file_name: Optional[str], chunks: Sequence[ChunkIn]) -> List[Document]:
        docs = []
        for i, chunk in enumerate(chunks):
            metadata: Dict[str, Any] = dict(chunk.metadata)
            metadata.update(
                fileId=str(file_id),
                fileName=file_name,
                chunkIndex=i,
                totalChunks=len(chunks),
            )
            docs.append(Document(id=chunk_document_id(file_id, i), content=chunk.content, metadata=metadata))
        return docs

    def index_file(self, kb_id: str, file_id: str, file_name: Optional[str], chunks: Sequence[ChunkIn]) -> int:
        """Embed and index one file's chunks, replacing any earlier version of the file."""
        store = self.get_store(kb_id, create=True)
        if not chunks:
            logger.warning("File %s has no chunks, nothing to index", file_id)
            return 0
        docs = self._file_documents(file_id, file_name, chunks)
        embeddings = self._embed_chunks(chunks)
        added = store.add_documents(docs, embeddings)
        store.save()
        logger.info("Indexed %d/%d chunks of file %s into knowledge base %s", added, len(docs), file_id, kb_id)
        return added

    def reindex(self, kb_id: str, files: Sequence[FileSource]) -> Dict[str, Any]:
        """Re-ingest every file of a knowledge base from scratch, tune, and save."""
        store = self.get_store(kb_id, create=True)
        all_docs: List[Document] = []
        all_embeddings: List[Optional[List[float]]] = []
        for f in files:
            if not f.chunks:
                logger.warning("File %s has no chunks, skipped during re-index", f.file_id)
                continue
            all_docs.extend(self._file_documents(f.file_id, f.file_name, f.chunks))
            all_embeddings.extend(self._embed_chunks(f.chunks))

        added = store.replace_corpus(all_docs, all_embeddings)
        logger.info("Re-index of %s: %d/%d chunks from %d files", kb_id, added, len(all_docs), len(files))
        tuning = store.tune()
        store.save()
        return {"indexed": added, "skipped": len(all_docs) - added, "tuning": tuning}

    # --------------- deletion ---------------
    def mark_file_deleted(self, kb_id: str, file_id: str) -> int:
        store = self.get_store(kb_id)
        n = store.mark_documents_as_deleted(file_id)
        if n:
            store.save()
        return n

    def restore_file(self, kb_id: str, file_id: str) -> int:
        store = self.get_store(kb_id)
        n = store.restore_documents(file_id)
        if n:
            store.save()
        return n

    def purge_file(self, kb_id: str, file_id: str) -> int:
        store = self.get_store(kb_id)
        n = store.remove_documents_by_file_id(file_id)
        if n:
            store.save()
        return n

    def purge_deleted(self, kb_id: str) -> int:
        store = self.get_store(kb_id)
        n = store.purge_deleted_documents()
        if n:
            store.save()
        return n

    def delete_knowledge_base(self, kb_id: str) -> bool:
        with self._lock:
            store = self._stores.pop(kb_id, None)
            key = self.store_key(kb_id)
            existed = store is not None or self.repo.read(key) is not None
            if store is not None:
                store.close()
            self.repo.delete(key)
        if existed:
            logger.info("Deleted knowledge base %s", kb_id)
        return existed

    # --------------- search & maintenance ---------------
    def search(
        self,
        kb_id: str,
        query_text: Optional[str] = None,
        query_embedding: Optional[Sequence[float]] = None,
        k: int = 5,
    ) -> List[SearchHit]:
        store = self.get_store(kb_id)
        if query_embedding is None:
            if not query_text:
                raise ValueError("Provide query_text or query_embedding")
            query_embedding = self.embedder.embed_text(query_text)
        return store.similarity_search(query_embedding, k)

    def rebuild_index(self, kb_id: str, force_tune: bool = False) -> bool:
        store = self.get_store(kb_id)
        ok = store.rebuild_indices(force_tune)
        if ok:
            store.save()
        return ok

    def tune(self, kb_id: str, cancel_token: Optional[CancellationToken] = None) -> Dict[str, Any]:
        store = self.get_store(kb_id)
        result = store.tune(cancel_token)
        store.save()
        return result

    def get_stats(self, kb_id: str) -> Dict[str, Any]:
        return self.get_store(kb_id).get_stats()

    def close(self) -> None:
        with self._lock:
            for store in self._stores.values():
                store.close()
            self._stores.clear()
