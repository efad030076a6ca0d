"""Per-repository vector index over a ``ChunkStore``.

Similarity is cosine, computed with numpy over every chunk of the queried
repository.  A full scan is fast enough for the expected scale (tens of
thousands of chunks per repository) and keeps ranking exact: results are
sorted by score with a stable sort, so equal scores keep insertion order.

All methods are coroutines; the store never hands work to a thread.
"""
import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

from .storage import ChunkStore, MemoryChunkStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass
class Chunk:
    """One indexed piece of a file."""

    id: str
    repo_id: str
    file_path: str
    content: str
    chunk_index: int
    token_count: int
    kind: str = "block"  # function | class | method | module | block | lines
    language: str = ""
    embedding: Optional[list[float]] = None


@dataclass
class SearchResult:
    chunk_id: str
    file_path: str
    content: str
    chunk_index: int
    score: float


@dataclass
class RepoStats:
    chunks_count: int
    files_count: int


# ---------------------------------------------------------------------------
# Vector store
# ---------------------------------------------------------------------------

class VectorStore:
    """Search and maintain chunk embeddings, grouped by repository.

    Args:
        backend: Where chunks are persisted.  Defaults to an in-memory store.
    """

    def __init__(self, backend: Optional[ChunkStore] = None) -> None:
        self._backend = backend if backend is not None else MemoryChunkStore()

    @property
    def backend(self) -> ChunkStore:
        return self._backend

    async def init(self) -> None:
        await self._backend.init()

    async def close(self) -> None:
        await self._backend.close()

    # ------------------------------------------------------------------
    # Write operations
    # ------------------------------------------------------------------

    async def clear_repo(self, repo_id: str) -> int:
        """Remove every chunk of *repo_id*.  Returns the number removed."""
        removed = await self._backend.delete_repo(repo_id)
        logger.info("[VectorStore] Cleared repo=%s removed=%d", repo_id, removed)
        return removed

    async def add_vectors(self, chunks: list[Chunk]) -> int:
        """Insert embedded chunks.

        The whole batch is validated before anything is written: every chunk
        needs an embedding, all of one dimension, matching any vectors
        already stored for the same repository.

        Returns:
            Number of chunks inserted.

        Raises:
            ValueError: On a missing embedding or a dimension mismatch.
        """
        if not chunks:
            return 0

        dims: dict[str, int] = {}
        for chunk in chunks:
            if not chunk.embedding:
                raise ValueError(f"Chunk {chunk.id} has no embedding")
            dim = len(chunk.embedding)
            expected = dims.setdefault(chunk.repo_id, dim)
            if dim != expected:
                raise ValueError(
                    f"Embedding dimension mismatch in batch: {dim} != {expected} (chunk {chunk.id})"
                )

        for repo_id, dim in dims.items():
            stored_dim = await self._backend.embedding_dim(repo_id)
            if stored_dim is not None and stored_dim != dim:
                raise ValueError(
                    f"Embedding dimension {dim} does not match the {stored_dim}-dim "
                    f"vectors already indexed for repo {repo_id}"
                )

        for chunk in chunks:
            await self._backend.insert(chunk)
        return len(chunks)

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def search(
        self,
        repo_id: str,
        query_vector: list[float],
        limit: int = 5,
        *,
        min_score: Optional[float] = None,
        deduplicate: bool = False,
        max_chunks_per_file: int = 2,
    ) -> list[SearchResult]:
        """Rank the repository's chunks by cosine similarity to *query_vector*.

        Args:
            repo_id:             Repository to search.
            query_vector:        Query embedding.
            limit:               Maximum results to return.
            min_score:           Drop results scoring below this value.
            deduplicate:         Cap results per file at *max_chunks_per_file*.
            max_chunks_per_file: Per-file cap when deduplicating.

        Returns:
            Results sorted by score descending; ties keep insertion order.
        """
        if limit <= 0:
            return []

        chunks = [
            c for c in await self._backend.list_repo(repo_id)
            if c.embedding
        ]
        query = np.asarray(query_vector, dtype=np.float32)
        usable = [c for c in chunks if len(c.embedding) == query.shape[0]]
        if len(usable) != len(chunks):
            logger.warning(
                "[VectorStore] repo=%s: skipped %d vector(s) with dimension != %d",
                repo_id, len(chunks) - len(usable), query.shape[0],
            )
        if not usable:
            return []

        matrix = np.asarray([c.embedding for c in usable], dtype=np.float32)
        scores = self._cosine(matrix, query)
        order = np.argsort(-scores, kind="stable")

        per_file: dict[str, int] = {}
        results: list[SearchResult] = []
        for idx in order:
            score = float(scores[idx])
            if min_score is not None and score < min_score:
                # Sorted descending: nothing further can pass.
                break
            chunk = usable[idx]
            if deduplicate:
                seen = per_file.get(chunk.file_path, 0)
                if seen >= max_chunks_per_file:
                    continue
                per_file[chunk.file_path] = seen + 1
            results.append(SearchResult(
                chunk_id=chunk.id,
                file_path=chunk.file_path,
                content=chunk.content,
                chunk_index=chunk.chunk_index,
                score=score,
            ))
            if len(results) >= limit:
                break

        return results

    @staticmethod
    def _cosine(matrix: np.ndarray, query: np.ndarray) -> np.ndarray:
        """Cosine similarity of each row with *query*; zero vectors score 0."""
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        dots = matrix @ query
        with np.errstate(divide="ignore", invalid="ignore"):
            scores = np.where(norms > 0, dots / norms, 0.0)
        return scores.astype(np.float64)

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    async def get_repo_stats(self, repo_id: str) -> RepoStats:
        chunks, files = await self._backend.count_repo(repo_id)
        return RepoStats(chunks_count=chunks, files_count=files)

    async def is_indexed(self, repo_id: str) -> bool:
        stats = await self.get_repo_stats(repo_id)
        return stats.chunks_count > 0

    async def get_stats(self) -> dict:
        return {"total_vectors": await self._backend.count_all()}

    async def get_repo_chunks(self, repo_id: str) -> list[Chunk]:
        return await self._backend.list_repo(repo_id)
