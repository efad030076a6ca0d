"""Tests for the embedding providers, service and /embeddings endpoints.

The remote provider talks to an ``httpx.MockTransport``; the local provider
gets a fake ``sentence_transformers`` module, so neither network access nor
model weights are needed.
"""
import json
import sys
import types

import httpx
import numpy as np
import pytest

from repospector.config import AppConfig
from repospector.embeddings.cache import EmbeddingCache
from repospector.embeddings.errors import (
    EmbeddingAuthenticationError,
    EmbeddingConfigurationError,
    EmbeddingProviderError,
    LocalProviderUnavailableError,
)
from repospector.embeddings.local import LocalEmbeddingProvider
from repospector.embeddings.provider import EmbeddingProvider
from repospector.embeddings.remote import RemoteEmbeddingProvider
from repospector.embeddings.schemas import MAX_BATCH
from repospector.embeddings.service import (
    EmbeddingService,
    build_embedding_service,
    build_provider,
    set_embedding_service,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

DIM = 3
SAMPLE_VECTOR = [0.1, -0.2, 0.3]


def _data_response(vectors: list[list[float]]) -> httpx.Response:
    return httpx.Response(
        200,
        json={"data": [{"index": i, "embedding": v} for i, v in enumerate(vectors)]},
    )


def _remote(handler, max_attempts: int = 3) -> tuple[RemoteEmbeddingProvider, list[float]]:
    """Build a remote provider over a mock transport, recording backoff delays."""
    delays: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        delays.append(seconds)

    provider = RemoteEmbeddingProvider(
        api_key="sk-test",
        model="text-embedding-3-small",
        base_url="https://embeddings.test/v1",
        dim=DIM,
        max_attempts=max_attempts,
        transport=httpx.MockTransport(handler),
        sleep=fake_sleep,
    )
    return provider, delays


class FakeProvider(EmbeddingProvider):
    """Deterministic in-memory provider that counts calls."""

    def __init__(self, name: str = "fake", dim: int = DIM, max_batch_size: int = 8, error=None):
        self._name = name
        self._dim = dim
        self.max_batch_size = max_batch_size
        self.error = error
        self.calls: list[list[str]] = []

    @property
    def name(self) -> str:
        return self._name

    @property
    def model_id(self) -> str:
        return f"{self._name}-model"

    @property
    def dim(self) -> int:
        return self._dim

    async def embed(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        if self.error is not None:
            raise self.error
        return [[float(len(t)), 1.0, 0.0][: self._dim] for t in texts]


# ---------------------------------------------------------------------------
# RemoteEmbeddingProvider
# ---------------------------------------------------------------------------

class TestRemoteEmbeddingProvider:
    def test_requires_api_key(self):
        with pytest.raises(EmbeddingConfigurationError):
            RemoteEmbeddingProvider(api_key="")

    def test_properties(self):
        provider, _ = _remote(lambda request: _data_response([]))
        assert provider.name == "remote"
        assert provider.model_id == "text-embedding-3-small"
        assert provider.dim == DIM
        assert provider.max_batch_size == 96

    @pytest.mark.asyncio
    async def test_embed_sends_model_and_input(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return _data_response([SAMPLE_VECTOR, SAMPLE_VECTOR])

        provider, _ = _remote(handler)
        result = await provider.embed(["a", "b"])

        assert result == [SAMPLE_VECTOR, SAMPLE_VECTOR]
        request = seen[0]
        assert str(request.url) == "https://embeddings.test/v1/embeddings"
        assert request.headers["Authorization"] == "Bearer sk-test"
        assert json.loads(request.content) == {
            "model": "text-embedding-3-small",
            "input": ["a", "b"],
        }

    @pytest.mark.asyncio
    async def test_embed_orders_by_index(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"data": [
                {"index": 1, "embedding": [2.0, 2.0, 2.0]},
                {"index": 0, "embedding": [1.0, 1.0, 1.0]},
            ]})

        provider, _ = _remote(handler)
        assert await provider.embed(["first", "second"]) == [[1.0, 1.0, 1.0], [2.0, 2.0, 2.0]]

    @pytest.mark.asyncio
    async def test_retries_transient_failures_then_succeeds(self):
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            if calls["n"] < 3:
                return httpx.Response(503)
            return _data_response([SAMPLE_VECTOR])

        provider, delays = _remote(handler)
        assert await provider.embed(["x"]) == [SAMPLE_VECTOR]
        assert calls["n"] == 3
        assert delays == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_auth_failure_not_retried(self):
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            return httpx.Response(401, json={"error": {"message": "Incorrect API key provided"}})

        provider, delays = _remote(handler)
        with pytest.raises(EmbeddingAuthenticationError, match="Incorrect API key provided") as excinfo:
            await provider.embed(["x"])
        assert excinfo.value.status_code == 401
        assert calls["n"] == 1
        assert delays == []

    @pytest.mark.asyncio
    async def test_last_error_propagates_after_attempts(self):
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            return httpx.Response(500)

        provider, delays = _remote(handler)
        with pytest.raises(EmbeddingProviderError, match="Internal Server Error") as excinfo:
            await provider.embed(["x"])
        assert excinfo.value.status_code == 500
        assert calls["n"] == 3
        assert delays == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_rate_limit_message_from_body(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(429, json={"error": {"message": "Rate limit reached"}})

        provider, _ = _remote(handler, max_attempts=1)
        with pytest.raises(EmbeddingProviderError, match="Rate limit reached"):
            await provider.embed(["x"])

    @pytest.mark.asyncio
    async def test_network_error_retried(self):
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            if calls["n"] == 1:
                raise httpx.ConnectError("connection refused", request=request)
            return _data_response([SAMPLE_VECTOR])

        provider, delays = _remote(handler)
        assert await provider.embed(["x"]) == [SAMPLE_VECTOR]
        assert delays == [0.5]

    @pytest.mark.asyncio
    async def test_malformed_response(self):
        provider, _ = _remote(lambda request: httpx.Response(200, json={"unexpected": 1}), max_attempts=2)
        with pytest.raises(EmbeddingProviderError, match="'data' key missing"):
            await provider.embed(["x"])

    @pytest.mark.asyncio
    async def test_malformed_items_retried_then_succeeds(self):
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            if calls["n"] < 3:
                return httpx.Response(200, json={"data": [[0.1, 0.2]]})
            return _data_response([SAMPLE_VECTOR])

        provider, delays = _remote(handler)
        assert await provider.embed(["x"]) == [SAMPLE_VECTOR]
        assert calls["n"] == 3
        assert delays == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_malformed_items_error_after_attempts(self):
        provider, delays = _remote(
            lambda request: httpx.Response(200, json={"data": [{"index": 0}]}), max_attempts=2,
        )
        with pytest.raises(EmbeddingProviderError, match="item without 'embedding'"):
            await provider.embed(["x"])
        assert delays == [0.5]

    @pytest.mark.asyncio
    async def test_retry_logged_before_each_wait(self, caplog):
        responses = iter([httpx.Response(503), _data_response([SAMPLE_VECTOR])])
        provider, _ = _remote(lambda request: next(responses))
        with caplog.at_level("INFO", logger="repospector.embeddings.remote"):
            await provider.embed(["x"])
        assert "Embedding retry 1/3 in 0.50s" in caplog.text

    @pytest.mark.asyncio
    async def test_count_mismatch(self):
        provider, _ = _remote(lambda request: _data_response([SAMPLE_VECTOR]), max_attempts=1)
        with pytest.raises(EmbeddingProviderError, match="1 vectors for 2 texts"):
            await provider.embed(["a", "b"])


# ---------------------------------------------------------------------------
# LocalEmbeddingProvider
# ---------------------------------------------------------------------------

class _FakeSentenceTransformer:
    loaded: list[str] = []

    def __init__(self, model_name: str) -> None:
        self.loaded.append(model_name)

    def encode(self, texts, normalize_embeddings=False, show_progress_bar=True):
        return np.array([[1.0, 0.0, 0.0] for _ in texts], dtype=np.float32)


@pytest.fixture()
def fake_sentence_transformers(monkeypatch):
    module = types.ModuleType("sentence_transformers")
    module.SentenceTransformer = _FakeSentenceTransformer
    _FakeSentenceTransformer.loaded = []
    monkeypatch.setitem(sys.modules, "sentence_transformers", module)
    return module


class TestLocalEmbeddingProvider:
    def test_properties(self):
        provider = LocalEmbeddingProvider("all-MiniLM-L6-v2", dim=384)
        assert provider.name == "local"
        assert provider.model_id == "all-MiniLM-L6-v2"
        assert provider.dim == 384
        assert not provider.is_ready

    @pytest.mark.asyncio
    async def test_embed_loads_model_once(self, fake_sentence_transformers):
        provider = LocalEmbeddingProvider("all-MiniLM-L6-v2", dim=3)
        assert await provider.embed(["a", "b"]) == [[1.0, 0.0, 0.0], [1.0, 0.0, 0.0]]
        await provider.embed(["c"])
        assert _FakeSentenceTransformer.loaded == ["all-MiniLM-L6-v2"]
        assert provider.is_ready

    @pytest.mark.asyncio
    async def test_missing_library_is_recoverable(self, monkeypatch):
        monkeypatch.setitem(sys.modules, "sentence_transformers", None)
        provider = LocalEmbeddingProvider()
        with pytest.raises(LocalProviderUnavailableError, match="remote") as excinfo:
            await provider.init()
        assert excinfo.value.recoverable is True
        assert not provider.is_ready


# ---------------------------------------------------------------------------
# EmbeddingService
# ---------------------------------------------------------------------------

class TestEmbeddingService:
    @pytest.mark.asyncio
    async def test_single_text_cached(self):
        provider = FakeProvider()
        service = EmbeddingService(provider, EmbeddingCache())
        first = await service.embed(["query"])
        second = await service.embed(["query"])
        assert first == second
        assert provider.calls == [["query"]]

    @pytest.mark.asyncio
    async def test_cache_expiry_calls_provider_again(self):
        now = {"t": 0.0}
        provider = FakeProvider()
        service = EmbeddingService(provider, EmbeddingCache(ttl=10, clock=lambda: now["t"]))
        await service.embed(["query"])
        now["t"] = 11.0
        await service.embed(["query"])
        assert len(provider.calls) == 2

    @pytest.mark.asyncio
    async def test_batches_bypass_cache(self):
        provider = FakeProvider()
        service = EmbeddingService(provider)
        await service.embed(["a", "b"])
        await service.embed(["a", "b"])
        assert len(provider.calls) == 2
        assert len(service.cache) == 0

    @pytest.mark.asyncio
    async def test_rejects_empty_batch(self):
        with pytest.raises(ValueError, match="empty"):
            await EmbeddingService(FakeProvider()).embed([])

    @pytest.mark.asyncio
    async def test_rejects_batch_over_provider_cap(self):
        service = EmbeddingService(FakeProvider(max_batch_size=2))
        with pytest.raises(ValueError, match="exceeds maximum of 2"):
            await service.embed(["a", "b", "c"])

    @pytest.mark.asyncio
    async def test_switch_provider_clears_cache(self):
        service = EmbeddingService(FakeProvider(name="local"))
        await service.embed(["query"])
        replacement = FakeProvider(name="remote")
        service.switch_provider(replacement)

        assert len(service.cache) == 0
        await service.embed(["query"])
        assert replacement.calls == [["query"]]
        assert service.provider_info() == {
            "provider": "remote",
            "model": "remote-model",
            "dimension": DIM,
        }


class TestFactory:
    def test_local_is_default(self):
        provider = build_provider(AppConfig())
        assert isinstance(provider, LocalEmbeddingProvider)
        assert provider.dim == 384

    def test_remote_requires_key(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        config = AppConfig(embedding={"provider": "remote"})
        with pytest.raises(EmbeddingConfigurationError):
            build_provider(config)

    def test_remote_key_from_secrets(self):
        config = AppConfig(
            embedding={"provider": "remote", "remote_dim": 256},
            secrets={"embedding": {"api_key": "sk-secret"}},
        )
        service = build_embedding_service(config)
        assert service.provider_name == "remote"
        assert service.dim == 256

    def test_cache_sized_from_rag_settings(self):
        config = AppConfig(rag={"cache_max_size": 7, "cache_ttl_seconds": 42})
        service = build_embedding_service(config)
        assert service.cache.capacity == 7
        assert service.cache.ttl == 42


# ---------------------------------------------------------------------------
# /embeddings endpoints
# ---------------------------------------------------------------------------

class TestEmbeddingsEndpoint:
    def test_returns_503_without_service(self, api_client):
        set_embedding_service(None)
        resp = api_client.post("/embeddings", json={"texts": ["hello"]})
        assert resp.status_code == 503
        assert "error" in resp.json()

    def test_returns_vectors(self, api_client):
        set_embedding_service(EmbeddingService(FakeProvider()))
        resp = api_client.post("/embeddings", json={"texts": ["hello", "hi"]})
        assert resp.status_code == 200
        data = resp.json()
        assert data["vectors"] == [[5.0, 1.0, 0.0], [2.0, 1.0, 0.0]]
        assert data["model"] == "fake-model"
        assert data["dim"] == DIM

    def test_empty_texts_rejected(self, api_client):
        set_embedding_service(EmbeddingService(FakeProvider()))
        resp = api_client.post("/embeddings", json={"texts": []})
        assert resp.status_code == 422

    def test_batch_over_provider_cap(self, api_client):
        set_embedding_service(EmbeddingService(FakeProvider(max_batch_size=2)))
        resp = api_client.post("/embeddings", json={"texts": ["a", "b", "c"]})
        assert resp.status_code == 400

    def test_local_failure_is_recoverable_503(self, api_client):
        error = LocalProviderUnavailableError("Local embedding initialization failed")
        set_embedding_service(EmbeddingService(FakeProvider(error=error)))
        resp = api_client.post("/embeddings", json={"texts": ["hello"]})
        assert resp.status_code == 503
        assert resp.json()["recoverable"] is True

    def test_auth_failure_returns_401(self, api_client):
        error = EmbeddingAuthenticationError("bad key", status_code=401)
        set_embedding_service(EmbeddingService(FakeProvider(error=error)))
        resp = api_client.post("/embeddings", json={"texts": ["hello"]})
        assert resp.status_code == 401

    def test_provider_error_returns_500(self, api_client):
        error = EmbeddingProviderError("upstream down", status_code=502)
        set_embedding_service(EmbeddingService(FakeProvider(error=error)))
        resp = api_client.post("/embeddings", json={"texts": ["hello"]})
        assert resp.status_code == 500
        assert "upstream down" in resp.json()["error"]

    def test_config_from_service(self, api_client):
        set_embedding_service(EmbeddingService(FakeProvider(name="remote")))
        resp = api_client.get("/embeddings/config")
        assert resp.status_code == 200
        assert resp.json() == {"model": "remote-model", "dim": DIM, "provider": "remote"}

    def test_config_falls_back_to_settings(self, api_client, monkeypatch):
        set_embedding_service(None)
        monkeypatch.setattr("repospector.config._config", AppConfig())
        resp = api_client.get("/embeddings/config")
        assert resp.status_code == 200
        assert resp.json() == {
            "model": "sentence-transformers/all-MiniLM-L6-v2",
            "dim": 384,
            "provider": "local",
        }

    def test_schema_rejects_batch_above_remote_cap(self, api_client):
        set_embedding_service(EmbeddingService(FakeProvider()))
        resp = api_client.post("/embeddings", json={"texts": ["x"] * (MAX_BATCH + 1)})
        assert resp.status_code == 422

    def test_error_body_documented(self, api_client):
        schema = api_client.get("/openapi.json").json()
        responses = schema["paths"]["/embeddings"]["post"]["responses"]
        for status in ("400", "401", "500", "503"):
            ref = responses[status]["content"]["application/json"]["schema"]["$ref"]
            assert ref.endswith("/EmbedErrorResponse")
