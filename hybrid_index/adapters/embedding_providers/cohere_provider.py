from __future__ import annotations
from collections import OrderedDict
from typing import Dict, List, Optional, Sequence
import logging
import threading
import httpx

from hybrid_index.core.config import settings
from hybrid_index.core.errors import EmbeddingError

logger = logging.getLogger(__name__)

COHERE_EMBED_URL = "https://api.cohere.ai/v1/embed"
MAX_TEXTS_PER_REQUEST = 96


class CohereProvider:
    """Cohere embedder with a small in-process LRU cache keyed by text."""
    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        dimensions: int | None = None,
        cache_size: int = 1024,
        client: Optional[httpx.Client] = None,
        input_type: str = "search_document",
    ) -> None:
        self.api_key = api_key or settings.COHERE_API_KEY
        self.model = model or settings.COHERE_MODEL
        self.dimensions = dimensions or settings.EMBEDDING_DIM
        self.input_type = input_type  # required for v3.0 models
        self.cache_size = cache_size
        self._cache: "OrderedDict[str, List[float]]" = OrderedDict()
        self._lock = threading.Lock()
        self._client = client or httpx.Client(timeout=10.0)

    def _cached(self, text: str) -> Optional[List[float]]:
        with self._lock:
            emb = self._cache.get(text)
            if emb is not None:
                self._cache.move_to_end(text)
            return emb

    def _remember(self, text: str, emb: List[float]) -> None:
        if self.cache_size <= 0:
            return
        with self._lock:
            self._cache[text] = emb
            self._cache.move_to_end(text)
            while len(self._cache) > self.cache_size:
                self._cache.popitem(last=False)

    def _request(self, texts: List[str]) -> List[List[float]]:
        if not self.api_key:
            raise EmbeddingError("COHERE_API_KEY not configured")
        try:
            r = self._client.post(
                COHERE_EMBED_URL,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json={"texts": texts, "model": self.model, "input_type": self.input_type},
            )
            r.raise_for_status()
            embeddings = r.json()["embeddings"]
        except httpx.HTTPError as e:
            raise EmbeddingError(f"Cohere request failed: {e}") from e
        except (KeyError, ValueError) as e:
            raise EmbeddingError(f"Unexpected Cohere response: {e}") from e
        if len(embeddings) != len(texts):
            raise EmbeddingError(f"Cohere returned {len(embeddings)} embeddings for {len(texts)} texts")
        return embeddings

    def embed_text(self, text: str) -> List[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        found: Dict[str, List[float]] = {}
        missing: List[str] = []
        for t in texts:
            if t in found or t in missing:
                continue
            emb = self._cached(t)
            if emb is None:
                missing.append(t)
            else:
                found[t] = emb

        for start in range(0, len(missing), MAX_TEXTS_PER_REQUEST):
            batch = missing[start:start + MAX_TEXTS_PER_REQUEST]
            logger.debug("Embedding %d texts with %s", len(batch), self.model)
            for t, emb in zip(batch, self._request(batch)):
                found[t] = emb
                self._remember(t, emb)
        return [found[t] for t in texts]

    def close(self) -> None:
        self._client.close()
