"""Tests for the RAG API endpoints: indexing, search, context, quality and index management.

The RagIndexer is mocked so no embedding model or database is needed.
"""
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from repospector.embeddings.errors import EmbeddingAuthenticationError, LocalProviderUnavailableError
from repospector.rag.indexer import (
    BatchResult,
    ContextWithDocs,
    IndexQuality,
    IndexResult,
    RepositoryDocs,
)
from repospector.rag.router import set_indexer
from repospector.rag.vector_store import SearchResult


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

SAMPLE_RESULT = SearchResult(
    chunk_id="repo:src/main.py:0",
    file_path="src/main.py",
    content="def main(): ...",
    chunk_index=0,
    score=0.95,
)


@pytest.fixture()
def mock_indexer() -> MagicMock:
    """Install a mock RagIndexer as the global singleton."""
    indexer = MagicMock()
    indexer.index_repository = AsyncMock(return_value=IndexResult(
        success=True,
        chunks_indexed=8,
        chunks_total=10,
        files_indexed=2,
        batches=[
            BatchResult(batch_number=1, size=8, inserted=8),
            BatchResult(batch_number=2, size=2, error="Embedding API error (500)"),
        ],
    ))
    indexer.retrieve_context = AsyncMock(return_value=[SAMPLE_RESULT])
    indexer.retrieve_context_with_docs = AsyncMock(return_value=ContextWithDocs(
        results=[SAMPLE_RESULT],
        documentation=None,
        combined_context="def main(): ...",
    ))
    indexer.check_index_quality = AsyncMock(return_value=IndexQuality(
        is_indexed=True, chunks_count=12, files_count=3, quality="fair",
    ))
    indexer.is_indexed = AsyncMock(return_value=True)
    indexer.get_index_stats = AsyncMock(return_value={"total_vectors": 42})
    indexer.clear_index = AsyncMock(return_value=7)
    set_indexer(indexer)
    return indexer


# ---------------------------------------------------------------------------
# POST /rag/index
# ---------------------------------------------------------------------------

class TestRagIndex:
    def test_returns_503_when_indexer_not_configured(self, api_client: TestClient):
        set_indexer(None)
        resp = api_client.post("/rag/index", json={
            "repo_id": "org/repo",
            "files": [{"path": "a.py", "content": "x = 1"}],
        })
        assert resp.status_code == 503

    def test_successful_index(self, api_client: TestClient, mock_indexer: MagicMock):
        resp = api_client.post("/rag/index", json={
            "repo_id": "org/repo",
            "files": [
                {"path": "a.py", "content": "def foo(): pass"},
                {"path": "b.py", "content": "x = 1"},
            ],
        })
        assert resp.status_code == 200
        data = resp.json()
        assert data["success"] is True
        assert data["chunks_indexed"] == 8
        assert data["chunks_total"] == 10
        assert data["files_indexed"] == 2
        assert data["failed_batches"] == [
            {"batch_number": 2, "size": 2, "error": "Embedding API error (500)"},
        ]
        mock_indexer.index_repository.assert_awaited_once()
        repo_id, files = mock_indexer.index_repository.await_args.args
        assert repo_id == "org/repo"
        assert files[0] == {"path": "a.py", "content": "def foo(): pass"}

    def test_local_provider_unavailable(self, api_client: TestClient, mock_indexer: MagicMock):
        mock_indexer.index_repository.side_effect = LocalProviderUnavailableError("no model")
        resp = api_client.post("/rag/index", json={"repo_id": "r", "files": []})
        assert resp.status_code == 503
        assert resp.json()["recoverable"] is True

    def test_auth_error(self, api_client: TestClient, mock_indexer: MagicMock):
        mock_indexer.index_repository.side_effect = EmbeddingAuthenticationError("bad key", 401)
        resp = api_client.post("/rag/index", json={"repo_id": "r", "files": []})
        assert resp.status_code == 401

    def test_unexpected_error(self, api_client: TestClient, mock_indexer: MagicMock):
        mock_indexer.index_repository.side_effect = RuntimeError("disk full")
        resp = api_client.post("/rag/index", json={"repo_id": "r", "files": []})
        assert resp.status_code == 500
        assert "disk full" in resp.json()["error"]

    def test_validation_error(self, api_client: TestClient, mock_indexer: MagicMock):
        resp = api_client.post("/rag/index", json={"files": []})
        assert resp.status_code == 422


# ---------------------------------------------------------------------------
# POST /rag/search
# ---------------------------------------------------------------------------

class TestRagSearch:
    def test_returns_503_when_indexer_not_configured(self, api_client: TestClient):
        set_indexer(None)
        resp = api_client.post("/rag/search", json={"repo_id": "r", "query": "main"})
        assert resp.status_code == 503

    def test_successful_search(self, api_client: TestClient, mock_indexer: MagicMock):
        resp = api_client.post("/rag/search", json={
            "repo_id": "r",
            "query": "entry point",
            "limit": 5,
            "min_score": 0.3,
            "max_chunks_per_file": 2,
        })
        assert resp.status_code == 200
        data = resp.json()
        assert data["query"] == "entry point"
        assert data["repo_id"] == "r"
        assert data["results"] == [{
            "chunk_id": "repo:src/main.py:0",
            "file_path": "src/main.py",
            "content": "def main(): ...",
            "chunk_index": 0,
            "score": 0.95,
        }]
        mock_indexer.retrieve_context.assert_awaited_once_with(
            "r", "entry point", 5, min_score=0.3, max_chunks_per_file=2,
            hybrid=None, rerank=None, expand_query=None,
        )

    @pytest.mark.parametrize("flag", ["hybrid", "rerank", "expand_query"])
    def test_ranking_options_forwarded(self, api_client: TestClient, mock_indexer: MagicMock, flag: str):
        resp = api_client.post("/rag/search", json={"repo_id": "r", "query": "main", flag: True})
        assert resp.status_code == 200
        kwargs = mock_indexer.retrieve_context.await_args.kwargs
        assert kwargs[flag] is True

    def test_empty_query_rejected(self, api_client: TestClient, mock_indexer: MagicMock):
        resp = api_client.post("/rag/search", json={"repo_id": "r", "query": ""})
        assert resp.status_code == 422


# ---------------------------------------------------------------------------
# POST /rag/context
# ---------------------------------------------------------------------------

class TestRagContext:
    def test_formatted_context(self, api_client: TestClient, mock_indexer: MagicMock):
        resp = api_client.post("/rag/context", json={"repo_id": "r", "query": "main"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["chunks"] == "// File: src/main.py (Relevance: HIGH)\ndef main(): ...\n"
        assert data["sources"] == ["src/main.py"]
        assert data["total_chunks"] == 1
        assert data["documentation"] is None

    def test_includes_documentation(self, api_client: TestClient, mock_indexer: MagicMock):
        mock_indexer.retrieve_context_with_docs.return_value = ContextWithDocs(
            results=[],
            documentation=RepositoryDocs(
                found=True, content="// From: README.md\n# Hi", sources=["README.md"], chunks_count=1,
            ),
            combined_context="",
        )
        resp = api_client.post("/rag/context", json={
            "repo_id": "r", "query": "main", "include_documentation": True,
        })
        data = resp.json()
        assert data["documentation"] == "// From: README.md\n# Hi"
        assert data["documentation_sources"] == ["README.md"]
        assert data["total_chunks"] == 0
        kwargs = mock_indexer.retrieve_context_with_docs.await_args.kwargs
        assert kwargs["include_documentation"] is True


# ---------------------------------------------------------------------------
# GET /rag/quality and /health
# ---------------------------------------------------------------------------

class TestRagQuality:
    def test_quality_report(self, api_client: TestClient, mock_indexer: MagicMock):
        resp = api_client.get("/rag/quality", params={"repo_id": "r"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["quality"] == "fair"
        assert data["chunks_count"] == 12
        mock_indexer.check_index_quality.assert_awaited_once_with("r")

    def test_repo_id_required(self, api_client: TestClient, mock_indexer: MagicMock):
        assert api_client.get("/rag/quality").status_code == 422


# ---------------------------------------------------------------------------
# GET /rag/status, GET /rag/stats, DELETE /rag/index
# ---------------------------------------------------------------------------

class TestIndexManagement:
    def test_status(self, api_client: TestClient, mock_indexer: MagicMock):
        resp = api_client.get("/rag/status", params={"repo_id": "org/repo"})
        assert resp.status_code == 200
        assert resp.json() == {"repo_id": "org/repo", "is_indexed": True}
        mock_indexer.is_indexed.assert_awaited_once_with("org/repo")

    def test_stats(self, api_client: TestClient, mock_indexer: MagicMock):
        resp = api_client.get("/rag/stats")
        assert resp.status_code == 200
        assert resp.json() == {"total_vectors": 42}

    def test_clear(self, api_client: TestClient, mock_indexer: MagicMock):
        resp = api_client.delete("/rag/index", params={"repo_id": "org/repo"})
        assert resp.status_code == 200
        assert resp.json() == {"repo_id": "org/repo", "chunks_removed": 7}
        mock_indexer.clear_index.assert_awaited_once_with("org/repo")

    def test_clear_failure(self, api_client: TestClient, mock_indexer: MagicMock):
        mock_indexer.clear_index.side_effect = RuntimeError("locked")
        resp = api_client.delete("/rag/index", params={"repo_id": "r"})
        assert resp.status_code == 500
        assert "locked" in resp.json()["error"]

    @pytest.mark.parametrize("method, path", [
        ("get", "/rag/status?repo_id=r"),
        ("get", "/rag/stats"),
        ("delete", "/rag/index?repo_id=r"),
    ])
    def test_503_without_indexer(self, api_client: TestClient, method: str, path: str):
        set_indexer(None)
        assert getattr(api_client, method)(path).status_code == 503


def test_health(api_client: TestClient):
    resp = api_client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}
