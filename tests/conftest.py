"""Shared test fixtures and configuration for backend tests."""
import pytest
from fastapi.testclient import TestClient

from repospector.embeddings.service import get_embedding_service, set_embedding_service
from repospector.main import app
from repospector.rag.router import get_indexer, set_indexer


@pytest.fixture
def api_client():
    """Provide a TestClient for the main FastAPI app.

    The client is not entered as a context manager, so the application
    lifespan (config loading, DuckDB file) does not run; tests install the
    singletons they need.
    """
    return TestClient(app)


@pytest.fixture(autouse=True)
def reset_singletons():
    """Restore the embedding service and indexer singletons after each test."""
    service = get_embedding_service()
    indexer = get_indexer()
    yield
    set_embedding_service(service)
    set_indexer(indexer)
