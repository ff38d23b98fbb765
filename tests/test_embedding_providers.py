"""
Tests for the embedding adapters. Cohere is exercised through httpx.MockTransport.
"""
import json

import httpx
import numpy as np
import pytest

from hybrid_index.adapters.embedding_providers.cohere_provider import CohereProvider
from hybrid_index.adapters.embedding_providers.hashing_provider import HashingProvider
from hybrid_index.core.errors import EmbeddingError


def _cohere(handler, **kwargs):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return CohereProvider(api_key="test-key", model="embed-english-v3.0", dimensions=3, client=client, **kwargs)


class TestCohereProvider:
    def test_batch_request_and_cache(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            payload = json.loads(request.content)
            calls.append(payload["texts"])
            assert request.headers["Authorization"] == "Bearer test-key"
            assert payload["model"] == "embed-english-v3.0"
            return httpx.Response(200, json={"embeddings": [[float(len(t)), 0.0, 1.0] for t in payload["texts"]]})

        provider = _cohere(handler)
        assert provider.embed_batch(["ab", "abc", "ab"]) == [[2.0, 0.0, 1.0], [3.0, 0.0, 1.0], [2.0, 0.0, 1.0]]
        assert calls == [["ab", "abc"]]
        assert provider.embed_text("abc") == [3.0, 0.0, 1.0]
        assert len(calls) == 1

    def test_cache_is_bounded(self):
        def handler(request):
            texts = json.loads(request.content)["texts"]
            return httpx.Response(200, json={"embeddings": [[1.0, 2.0, 3.0] for _ in texts]})

        provider = _cohere(handler, cache_size=2)
        provider.embed_batch(["a", "b", "c"])
        assert list(provider._cache) == ["b", "c"]

    def test_http_error_raises_embedding_error(self):
        provider = _cohere(lambda request: httpx.Response(500, json={"message": "boom"}))
        with pytest.raises(EmbeddingError):
            provider.embed_text("hello")

    def test_malformed_response(self):
        provider = _cohere(lambda request: httpx.Response(200, json={"unexpected": True}))
        with pytest.raises(EmbeddingError):
            provider.embed_text("hello")

    def test_missing_api_key(self):
        provider = CohereProvider(api_key=None, client=httpx.Client())
        provider.api_key = None
        with pytest.raises(EmbeddingError):
            provider.embed_text("hello")


class TestHashingProvider:
    def test_deterministic_unit_vectors(self):
        provider = HashingProvider(32)
        a = provider.embed_text("Hello, world!")
        assert a == provider.embed_text("hello world")
        assert len(a) == 32
        assert np.isclose(np.linalg.norm(a), 1.0)

    def test_empty_text_is_zero_vector(self):
        assert HashingProvider(8).embed_text("") == [0.0] * 8

    def test_batch(self):
        provider = HashingProvider(16)
        assert provider.embed_batch(["x", "y"]) == [provider.embed_text("x"), provider.embed_text("y")]

    def test_invalid_dimensions(self):
        with pytest.raises(ValueError):
            HashingProvider(0)
