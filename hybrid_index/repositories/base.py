from __future__ import annotations
from typing import List, Optional, Protocol


class SnapshotRepo(Protocol):
    """
    Byte-level persistence for store snapshots, addressed by a key
    (one key per knowledge base). Implementations must make write() atomic:
    a reader sees either the old or the new snapshot, never a torn one.
    """
    def read(self, key: str) -> Optional[bytes]:
        ...

    def write(self, key: str, data: bytes) -> None:
        ...

    def delete(self, key: str) -> bool:
        ...

    def keys(self) -> List[str]:
        ...
