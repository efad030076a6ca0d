"""Pydantic schemas for the RAG (codebase retrieval) API."""
from typing import List, Optional

from pydantic import BaseModel, Field


class FileInput(BaseModel):
    """A single file to index."""

    path: str = Field(..., description="Repository-relative file path")
    content: str = Field(..., description="Full file content")


class IndexRequest(BaseModel):
    """Request body for POST /rag/index (full repository index)."""

    repo_id: str = Field(..., min_length=1, description="Unique repository identifier")
    files: List[FileInput] = Field(..., description="All repository files to index")


class FailedBatch(BaseModel):
    batch_number: int
    size: int
    error: str


class IndexResponse(BaseModel):
    """Response for POST /rag/index."""

    success: bool
    chunks_indexed: int
    chunks_total: int
    files_indexed: int
    failed_batches: List[FailedBatch] = Field(default_factory=list)
    cancelled: bool = False


class SearchRequest(BaseModel):
    """Request body for POST /rag/search and POST /rag/context."""

    repo_id: str = Field(..., min_length=1, description="Unique repository identifier")
    query: str = Field(..., min_length=1, description="Natural language or code query")
    limit: Optional[int] = Field(default=None, ge=1, le=100, description="Max results to return")
    min_score: Optional[float] = Field(default=None, description="Drop results scoring below this")
    max_chunks_per_file: Optional[int] = Field(default=None, ge=1, description="Per-file result cap")
    include_documentation: bool = Field(
        default=False, description="Attach README/docs chunks (context endpoint only)"
    )
    hybrid: Optional[bool] = Field(
        default=None, description="Fuse BM25 keyword ranking with cosine ranking (rag.hybrid_search)"
    )
    rerank: Optional[bool] = Field(
        default=None, description="Re-order by multi-signal relevance (rag.rerank)"
    )
    expand_query: Optional[bool] = Field(
        default=None, description="Add code synonyms and abbreviations to the query (rag.query_expansion)"
    )


class SearchResultItem(BaseModel):
    """A single search result."""

    chunk_id: str
    file_path: str
    content: str
    chunk_index: int
    score: float


class SearchResponse(BaseModel):
    """Response for POST /rag/search."""

    results: List[SearchResultItem]
    query: str
    repo_id: str


class ContextResponse(BaseModel):
    """Response for POST /rag/context."""

    chunks: str
    sources: List[str]
    total_chunks: int
    avg_score: float
    documentation: Optional[str] = None
    documentation_sources: List[str] = Field(default_factory=list)


class IndexQualityResponse(BaseModel):
    """Response for GET /rag/quality."""

    is_indexed: bool
    chunks_count: int
    files_count: int
    quality: str
    recommendation: Optional[str] = None
    error: Optional[str] = None


class IndexStatusResponse(BaseModel):
    """Response for GET /rag/status."""

    repo_id: str
    is_indexed: bool


class IndexStatsResponse(BaseModel):
    """Response for GET /rag/stats."""

    total_vectors: int


class ClearIndexResponse(BaseModel):
    """Response for DELETE /rag/index."""

    repo_id: str
    chunks_removed: int
