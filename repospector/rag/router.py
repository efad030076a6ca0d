"""RAG router — repository indexing and retrieval endpoints.

Endpoints:
    POST /rag/index    — Full repository (re)index
    POST /rag/search   — Semantic code search
    POST /rag/context  — Search results formatted as a prompt context block
    GET  /rag/quality  — Index quality report for a repository
    GET  /rag/status   — Whether a repository has an index
    GET  /rag/stats    — Vector totals across repositories
    DELETE /rag/index  — Drop a repository's index
"""
import logging
from typing import Optional

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse

from repospector.embeddings.errors import (
    EmbeddingAuthenticationError,
    LocalProviderUnavailableError,
)

from .formatter import format_retrieved_context
from .indexer import RagIndexer
from .schemas import (
    ClearIndexResponse,
    ContextResponse,
    FailedBatch,
    IndexQualityResponse,
    IndexRequest,
    IndexResponse,
    IndexStatsResponse,
    IndexStatusResponse,
    SearchRequest,
    SearchResponse,
    SearchResultItem,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/rag", tags=["rag"])

# ---------------------------------------------------------------------------
# Singleton indexer management
# ---------------------------------------------------------------------------

_indexer: Optional[RagIndexer] = None


def get_indexer() -> Optional[RagIndexer]:
    """Return the global RagIndexer, or None if not configured."""
    return _indexer


def set_indexer(indexer: Optional[RagIndexer]) -> None:
    """Set (or clear) the global RagIndexer."""
    global _indexer
    _indexer = indexer


def _not_configured() -> JSONResponse:
    return JSONResponse({"error": "RAG indexer not configured"}, status_code=503)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post("/index", response_model=IndexResponse)
async def index_repository(request: IndexRequest) -> IndexResponse | JSONResponse:
    """Clear and rebuild the index for a repository."""
    logger.info(
        "[rag/index] Received: repo=%s files=%d total_content=%d chars",
        request.repo_id,
        len(request.files),
        sum(len(f.content) for f in request.files),
    )
    indexer = get_indexer()
    if indexer is None:
        logger.warning("[rag/index] Indexer not configured, returning 503")
        return _not_configured()

    try:
        files = [f.model_dump() for f in request.files]
        result = await indexer.index_repository(request.repo_id, files)
    except LocalProviderUnavailableError as exc:
        logger.warning("[rag/index] Local provider unavailable: %s", exc)
        return JSONResponse({"error": str(exc), "recoverable": True}, status_code=503)
    except EmbeddingAuthenticationError as exc:
        logger.error("[rag/index] Provider rejected credentials: %s", exc)
        return JSONResponse({"error": str(exc)}, status_code=401)
    except Exception as exc:
        logger.exception("[rag/index] Indexing failed: %s", exc)
        return JSONResponse({"error": f"Indexing failed: {exc}"}, status_code=500)

    logger.info(
        "[rag/index] Done: repo=%s indexed=%d/%d failed_batches=%d",
        request.repo_id, result.chunks_indexed, result.chunks_total, len(result.failed_batches),
    )
    return IndexResponse(
        success=result.success,
        chunks_indexed=result.chunks_indexed,
        chunks_total=result.chunks_total,
        files_indexed=result.files_indexed,
        failed_batches=[
            FailedBatch(batch_number=b.batch_number, size=b.size, error=b.error)
            for b in result.failed_batches
        ],
        cancelled=result.cancelled,
    )


@router.post("/search", response_model=SearchResponse)
async def search_code(request: SearchRequest) -> SearchResponse | JSONResponse:
    """Search the indexed repository for chunks relevant to a query."""
    indexer = get_indexer()
    if indexer is None:
        return _not_configured()

    results = await indexer.retrieve_context(
        request.repo_id,
        request.query,
        request.limit,
        min_score=request.min_score,
        max_chunks_per_file=request.max_chunks_per_file,
        hybrid=request.hybrid,
        rerank=request.rerank,
        expand_query=request.expand_query,
    )
    return SearchResponse(
        results=[
            SearchResultItem(
                chunk_id=r.chunk_id,
                file_path=r.file_path,
                content=r.content,
                chunk_index=r.chunk_index,
                score=r.score,
            )
            for r in results
        ],
        query=request.query,
        repo_id=request.repo_id,
    )


@router.post("/context", response_model=ContextResponse)
async def retrieve_context(request: SearchRequest) -> ContextResponse | JSONResponse:
    """Return relevant chunks grouped by file, ready to paste into a prompt."""
    indexer = get_indexer()
    if indexer is None:
        return _not_configured()

    with_docs = await indexer.retrieve_context_with_docs(
        request.repo_id,
        request.query,
        request.limit,
        include_documentation=request.include_documentation,
        min_score=request.min_score,
        max_chunks_per_file=request.max_chunks_per_file,
        hybrid=request.hybrid,
        rerank=request.rerank,
        expand_query=request.expand_query,
    )
    context = format_retrieved_context(with_docs.results)
    docs = with_docs.documentation
    return ContextResponse(
        chunks=context.chunks,
        sources=context.sources,
        total_chunks=context.total_chunks,
        avg_score=context.avg_score,
        documentation=docs.content if docs else None,
        documentation_sources=docs.sources if docs else [],
    )


@router.get("/quality", response_model=IndexQualityResponse)
async def index_quality(repo_id: str = Query(..., min_length=1)) -> IndexQualityResponse | JSONResponse:
    """Report how well a repository is indexed."""
    indexer = get_indexer()
    if indexer is None:
        return _not_configured()

    quality = await indexer.check_index_quality(repo_id)
    return IndexQualityResponse(
        is_indexed=quality.is_indexed,
        chunks_count=quality.chunks_count,
        files_count=quality.files_count,
        quality=quality.quality,
        recommendation=quality.recommendation,
        error=quality.error,
    )


@router.get("/status", response_model=IndexStatusResponse)
async def index_status(repo_id: str = Query(..., min_length=1)) -> IndexStatusResponse | JSONResponse:
    """Tell whether a repository has any indexed chunks."""
    indexer = get_indexer()
    if indexer is None:
        return _not_configured()

    return IndexStatusResponse(repo_id=repo_id, is_indexed=await indexer.is_indexed(repo_id))


@router.get("/stats", response_model=IndexStatsResponse)
async def index_stats() -> IndexStatsResponse | JSONResponse:
    """Report totals across every indexed repository."""
    indexer = get_indexer()
    if indexer is None:
        return _not_configured()

    stats = await indexer.get_index_stats()
    return IndexStatsResponse(total_vectors=stats["total_vectors"])


@router.delete("/index", response_model=ClearIndexResponse)
async def clear_index(repo_id: str = Query(..., min_length=1)) -> ClearIndexResponse | JSONResponse:
    """Drop every indexed chunk of a repository."""
    indexer = get_indexer()
    if indexer is None:
        return _not_configured()

    try:
        removed = await indexer.clear_index(repo_id)
    except Exception as exc:
        logger.exception("[rag/index] Clearing repo=%s failed: %s", repo_id, exc)
        return JSONResponse({"error": f"Clearing index failed: {exc}"}, status_code=500)

    logger.info("[rag/index] Cleared repo=%s removed=%d", repo_id, removed)
    return ClearIndexResponse(repo_id=repo_id, chunks_removed=removed)
