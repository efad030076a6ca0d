"""RepoSpector Backend Application.

Main entry point for the RepoSpector retrieval service.  RepoSpector indexes
repository source code into embedding vectors and serves the most relevant
chunks for a natural-language or code query, ready to be placed in an LLM
prompt.

Modules:
    - embeddings: local (sentence-transformers) and remote (OpenAI-compatible)
      embedding providers, cache and /embeddings endpoints
    - rag: chunking, vector store, indexing/retrieval pipeline and /rag
      endpoints
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from repospector.config import AppConfig, get_config
from repospector.embeddings.router import router as embeddings_router
from repospector.embeddings.service import (
    build_embedding_service,
    get_embedding_service,
    set_embedding_service,
)
from repospector.rag.indexer import RagIndexer
from repospector.rag.router import get_indexer, router as rag_router, set_indexer
from repospector.rag.storage import ChunkStore, DuckDBChunkStore, MemoryChunkStore
from repospector.rag.vector_store import VectorStore

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
# httpx/httpcore log every request and connection; sentence-transformers and
# filelock report each model file they touch while loading.
for _noisy in (
    "urllib3",
    "urllib3.connectionpool",
    "httpx",
    "httpcore",
    "httpcore.http11",
    "httpcore.connection",
    "sentence_transformers",
    "filelock",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


def build_chunk_store(config: AppConfig) -> ChunkStore:
    """Create the storage backend selected by ``storage.backend``."""
    if config.storage.backend == "memory":
        return MemoryChunkStore()
    return DuckDBChunkStore(config.storage.db_path)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in repospector.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    # The embedding provider is selected once here.  The local model is only
    # loaded on first use, so a missing sentence-transformers install surfaces
    # as a recoverable error on the first request, not at startup.
    try:
        service = build_embedding_service(config)
        set_embedding_service(service)
        logger.info(
            "Embedding service ready: provider=%s model=%s dim=%d",
            service.provider_name,
            service.model_id,
            service.dim,
        )
    except Exception as exc:
        logger.warning("Failed to initialise embedding service: %s", exc)

    # Initialise RAG indexer if enabled and embedding service is available.
    store = None
    rag_cfg = config.rag
    if rag_cfg.enabled and get_embedding_service() is not None:
        try:
            store = VectorStore(build_chunk_store(config))
            await store.init()
            set_indexer(RagIndexer(store, get_embedding_service(), rag_cfg))
            logger.info(
                "RAG indexer ready: storage=%s batch_size=%d",
                config.storage.backend,
                rag_cfg.batch_size,
            )
        except Exception as exc:
            logger.warning("Failed to initialise RAG indexer: %s", exc)
            store = None
    elif rag_cfg.enabled:
        logger.info("RAG enabled but no embedding service available; indexer disabled.")
    else:
        logger.info("RAG disabled in config.")

    logger.info("Server running on http://%s:%s", config.server.host, config.server.port)

    yield  # Application runs here

    # Shutdown
    if get_indexer() is not None:
        set_indexer(None)
    if store is not None:
        await store.close()
    service = get_embedding_service()
    if service is not None:
        await service.provider.aclose()
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="RepoSpector API",
    description="Repository indexing and semantic code retrieval for LLM prompts",
    version="0.1.0",
    lifespan=lifespan,
)

# Register all routers
app.include_router(embeddings_router)
app.include_router(rag_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running.
    """
    return {"status": "ok"}
