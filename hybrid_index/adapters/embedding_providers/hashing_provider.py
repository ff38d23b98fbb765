from __future__ import annotations
from typing import List, Sequence
import re
import numpy as np

_PUNCTUATION = re.compile(r"[.,/#!$%^&*;:{}=\-_`~()]")


class HashingProvider:
    """
    Deterministic bag-of-character-features embedder.
    Not semantic, but needs no network: texts sharing words share dimensions.
    Used for local runs and tests.
    """
    def __init__(self, dimensions: int = 1024) -> None:
        if dimensions <= 0:
            raise ValueError("dimensions must be positive")
        self.dimensions = dimensions

    def embed_text(self, text: str) -> List[float]:
        vec = np.zeros(self.dimensions)
        for word in _PUNCTUATION.sub("", text.lower()).split():
            for i, ch in enumerate(word):
                vec[(ord(ch) * 11 + i * 7) % self.dimensions] += 1.0
            vec[(len(word) * 17) % self.dimensions] += 1.0
        norm = float(np.linalg.norm(vec))
        if norm > 0:
            vec /= norm
        return vec.tolist()

    def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        return [self.embed_text(t) for t in texts]
