from __future__ import annotations
from typing import List, Protocol, Sequence


class EmbeddingProvider(Protocol):
    """Turns text into fixed-dimension vectors. Raises EmbeddingError on failure."""
    dimensions: int

    def embed_text(self, text: str) -> List[float]: ...

    def embed_batch(self, texts: Sequence[str]) -> List[List[float]]: ...
