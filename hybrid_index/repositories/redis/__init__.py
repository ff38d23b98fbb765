"""
Redis repositories package.
"""

from .snapshot_repo import RedisSnapshotRepo

__all__ = ["RedisSnapshotRepo"]
