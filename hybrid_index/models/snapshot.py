"""
Snapshot schema for HybridVectorStore persistence.

The wire format is camelCase JSON so snapshots written by older versions of the
store (before soft-delete, before LSH tuning) still load: every field has a safe
default and missing blocks are treated as empty.
"""

from __future__ import annotations
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

from hybrid_index.core.config import Settings
from hybrid_index.models.document import Document

SNAPSHOT_VERSION = "2.3.0"


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class TunedLSHConfig(_CamelModel):
    num_hash_tables: int = Field(alias="numHashTables", ge=1)
    num_hash_functions: int = Field(alias="numHashFunctions", ge=1)


# Fields of StoreConfig that are written to the snapshot "config" block.
PERSISTED_CONFIG_FIELDS = {
    "enable_lsh",
    "enable_clustering",
    "auto_rebuild_threshold",
    "enable_auto_tune",
    "min_docs_for_tuning",
    "tuned_lsh_config",
}


class StoreConfig(_CamelModel):
    """
    Explicit configuration of one HybridVectorStore.
    Only PERSISTED_CONFIG_FIELDS travel with the snapshot; the rest are
    process-level knobs taken from Settings.
    """
    enable_lsh: bool = Field(default=True, alias="enableLSH")
    enable_clustering: bool = Field(default=True, alias="enableClustering")
    auto_rebuild_threshold: int = Field(default=1000, alias="autoRebuildThreshold", ge=1)
    enable_auto_tune: bool = Field(default=True, alias="enableAutoTune")
    min_docs_for_tuning: int = Field(default=100, alias="minDocsForTuning", ge=1)
    tuned_lsh_config: Optional[TunedLSHConfig] = Field(default=None, alias="tunedLSHConfig")

    dimensions: Optional[int] = None
    num_hash_tables: int = 16
    num_hash_functions: int = 8
    lsh_min_documents: int = 100
    default_num_clusters: int = 128
    max_iterations: int = 50
    tolerance: float = 1e-6
    top_clusters_to_search: int = 10
    large_batch_size: int = 50
    background_rebuild: bool = True
    seed: Optional[int] = None

    @classmethod
    def from_settings(cls, s: Settings, **overrides: Any) -> "StoreConfig":
        values: Dict[str, Any] = dict(
            enable_lsh=s.ENABLE_LSH,
            enable_clustering=s.ENABLE_CLUSTERING,
            auto_rebuild_threshold=s.AUTO_REBUILD_THRESHOLD,
            enable_auto_tune=s.ENABLE_AUTO_TUNE,
            min_docs_for_tuning=s.MIN_DOCS_FOR_TUNING,
            dimensions=s.EMBEDDING_DIM,
            num_hash_tables=s.LSH_NUM_HASH_TABLES,
            num_hash_functions=s.LSH_NUM_HASH_FUNCTIONS,
            lsh_min_documents=s.LSH_MIN_DOCUMENTS,
            default_num_clusters=s.DEFAULT_NUM_CLUSTERS,
            max_iterations=s.KMEANS_MAX_ITERATIONS,
            tolerance=s.KMEANS_TOLERANCE,
            top_clusters_to_search=s.TOP_CLUSTERS_TO_SEARCH,
            large_batch_size=s.LARGE_BATCH_SIZE,
            background_rebuild=s.BACKGROUND_REBUILD,
            seed=s.RANDOM_SEED,
        )
        values.update(overrides)
        return cls(**values)

    def to_snapshot(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, include=PERSISTED_CONFIG_FIELDS)


class SearchStats(_CamelModel):
    total_searches: int = Field(default=0, alias="totalSearches")
    lsh_candidates: int = Field(default=0, alias="lshCandidates")
    avg_candidates: float = Field(default=0.0, alias="avgCandidates")
    search_time: float = Field(default=0.0, alias="searchTime")  # cumulative ms


class LSHSnapshot(_CamelModel):
    dimensions: int
    num_hash_tables: int = Field(alias="numHashTables")
    num_hash_functions: int = Field(alias="numHashFunctions")
    random_vectors: List[List[List[float]]] = Field(alias="randomVectors")
    hash_tables: List[List[Tuple[str, List[str]]]] = Field(default_factory=list, alias="hashTables")


class ClusterMembersSnapshot(_CamelModel):
    # Current snapshots store member ids only; older ones embedded whole documents.
    documents: List[Union[str, Dict[str, Any]]] = Field(default_factory=list)
    embeddings: Optional[List[List[float]]] = None


class ClusterSnapshot(_CamelModel):
    num_clusters: int = Field(default=0, alias="numClusters")
    cluster_centers: List[List[float]] = Field(default_factory=list, alias="clusterCenters")
    cluster_assignments: Dict[str, int] = Field(default_factory=dict, alias="clusterAssignments")
    clusters: Dict[str, ClusterMembersSnapshot] = Field(default_factory=dict)
    dimensions: Optional[int] = None


class StoreSnapshot(_CamelModel):
    version: str = SNAPSHOT_VERSION
    documents: List[Document] = Field(default_factory=list)
    embeddings: List[List[float]] = Field(default_factory=list)
    deleted_documents: List[str] = Field(default_factory=list, alias="deletedDocuments")
    file_document_map: Optional[List[Tuple[str, List[str]]]] = Field(default=None, alias="fileDocumentMap")
    # Sub-indices are validated separately so a damaged index never discards the documents.
    lsh_index: Optional[Dict[str, Any]] = Field(default=None, alias="lshIndex")
    cluster_index: Optional[Dict[str, Any]] = Field(default=None, alias="clusterIndex")
    config: Optional[Dict[str, Any]] = None
    stats: SearchStats = Field(default_factory=SearchStats)
    saved_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), alias="savedAt")
