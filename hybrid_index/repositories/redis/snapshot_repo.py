"""
Redis-based snapshot store.
Snapshots survive worker restarts and are shared by the API process and the
Temporal maintenance worker.
"""

from __future__ import annotations
from typing import List, Optional
import redis


class RedisSnapshotRepo:
    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        client: "redis.Redis | None" = None,
        key_prefix: str = "vector_db:snapshot:",
    ) -> None:
        self.redis_client = client or redis.from_url(redis_url, decode_responses=False)
        self._key_prefix = key_prefix

    def _key(self, key: str) -> str:
        return f"{self._key_prefix}{key}"

    def read(self, key: str) -> Optional[bytes]:
        data = self.redis_client.get(self._key(key))
        if data is None:
            return None
        return data if isinstance(data, bytes) else str(data).encode("utf-8")

    def write(self, key: str, data: bytes) -> None:
        # SET replaces the value atomically
        self.redis_client.set(self._key(key), data)

    def delete(self, key: str) -> bool:
        return bool(self.redis_client.delete(self._key(key)))

    def keys(self) -> List[str]:
        found = []
        for raw in self.redis_client.scan_iter(match=f"{self._key_prefix}*"):
            name = raw.decode("utf-8") if isinstance(raw, bytes) else raw
            found.append(name[len(self._key_prefix):])
        return sorted(found)
