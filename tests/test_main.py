"""Tests for application startup wiring."""
from fastapi.testclient import TestClient

from repospector.config import AppConfig
from repospector.embeddings.service import get_embedding_service
from repospector.main import app, build_chunk_store
from repospector.rag.router import get_indexer
from repospector.rag.storage import DuckDBChunkStore, MemoryChunkStore


class TestBuildChunkStore:
    def test_memory_backend(self):
        assert isinstance(build_chunk_store(AppConfig(storage={"backend": "memory"})), MemoryChunkStore)

    def test_duckdb_backend(self, tmp_path):
        path = str(tmp_path / "v.duckdb")
        store = build_chunk_store(AppConfig(storage={"backend": "duckdb", "db_path": path}))
        assert isinstance(store, DuckDBChunkStore)
        assert store.db_path == path


class TestLifespan:
    def test_startup_installs_services(self, monkeypatch):
        monkeypatch.setattr(
            "repospector.config._config",
            AppConfig(storage={"backend": "memory"}, logging={"level": "warning"}),
        )
        with TestClient(app) as client:
            service = get_embedding_service()
            assert service is not None
            assert service.provider_name == "local"
            assert get_indexer() is not None

            resp = client.get("/rag/quality", params={"repo_id": "unknown"})
            assert resp.status_code == 200
            assert resp.json()["quality"] == "none"

        assert get_indexer() is None

    def test_rag_disabled(self, monkeypatch):
        monkeypatch.setattr(
            "repospector.config._config",
            AppConfig(storage={"backend": "memory"}, rag={"enabled": False}),
        )
        with TestClient(app) as client:
            assert get_indexer() is None
            assert client.post("/rag/search", json={"repo_id": "r", "query": "q"}).status_code == 503

    def test_server_address_logged_at_startup(self, monkeypatch, caplog):
        monkeypatch.setattr(
            "repospector.config._config",
            AppConfig(
                server={"host": "127.0.0.1", "port": 9100},
                storage={"backend": "memory"},
                rag={"enabled": False},
            ),
        )
        with caplog.at_level("INFO", logger="repospector.main"):
            with TestClient(app):
                pass
        assert "Server running on http://127.0.0.1:9100" in caplog.text
