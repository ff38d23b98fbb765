from __future__ import annotations

from hybrid_index.core.config import Settings
from hybrid_index.repositories.base import SnapshotRepo
from hybrid_index.repositories.file.snapshot_repo import FileSnapshotRepo
from hybrid_index.repositories.memory.snapshot_repo import MemorySnapshotRepo


def build_snapshot_repo(s: Settings) -> SnapshotRepo:
    """Pick the snapshot transport named by STORE_BACKEND."""
    if s.STORE_BACKEND == "redis":
        # imported lazily so file/memory deployments don't need a Redis server
        from hybrid_index.repositories.redis import RedisSnapshotRepo
        return RedisSnapshotRepo(s.REDIS_URL)
    if s.STORE_BACKEND == "memory":
        return MemorySnapshotRepo()
    return FileSnapshotRepo(s.STORE_DIR)
