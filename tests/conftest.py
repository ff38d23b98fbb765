from typing import List, Optional, Tuple

import numpy as np
import pytest

from hybrid_index.adapters.embedding_providers.hashing_provider import HashingProvider
from hybrid_index.models.document import Document
from hybrid_index.models.snapshot import StoreConfig
from hybrid_index.repositories.memory.snapshot_repo import MemorySnapshotRepo
from hybrid_index.services.hybrid_store import HybridVectorStore
from hybrid_index.services.knowledge_base_service import KnowledgeBaseService

DIM = 16


def make_config(**overrides) -> StoreConfig:
    """Small, deterministic, synchronous store configuration for tests."""
    values = dict(
        dimensions=None,
        seed=7,
        background_rebuild=False,
        lsh_min_documents=0,
        num_hash_tables=8,
        num_hash_functions=4,
        min_docs_for_tuning=100,
        max_iterations=25,
        top_clusters_to_search=3,
    )
    values.update(overrides)
    return StoreConfig(**values)


def make_corpus(
    n: int,
    dim: int = DIM,
    seed: int = 0,
    file_id: Optional[str] = None,
    prefix: str = "doc",
) -> Tuple[List[Document], np.ndarray]:
    rng = np.random.default_rng(seed)
    embeddings = rng.standard_normal((n, dim))
    metadata = {"fileId": file_id} if file_id is not None else {}
    docs = [Document(id=f"{prefix}_{i}", content=f"chunk {i}", metadata=metadata) for i in range(n)]
    return docs, embeddings


@pytest.fixture
def store() -> HybridVectorStore:
    s = HybridVectorStore(make_config(), repo=MemorySnapshotRepo(), key="test-store")
    yield s
    s.close()


@pytest.fixture
def kb_service() -> KnowledgeBaseService:
    svc = KnowledgeBaseService(
        repo=MemorySnapshotRepo(),
        embedder=HashingProvider(64),
        config=make_config(dimensions=64),
    )
    yield svc
    svc.close()
