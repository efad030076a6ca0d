"""Indexing and retrieval pipeline for repository code.

``RagIndexer`` ties the pieces together:

* indexing: clear the repository, chunk every file, embed chunks in
  sequential batches and insert them into the ``VectorStore``;
* retrieval: embed the query, search, and optionally format the results
  into a context block.

Indexing is best-effort: a batch whose embedding or insert fails is logged,
recorded in the returned ``IndexResult`` and skipped.  Retrieval never
raises; failures degrade to an empty result.
"""
import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Optional, Union

from repospector.config import RagSettings
from repospector.embeddings.provider import EmbeddingProvider
from repospector.embeddings.service import EmbeddingService

from . import ranking
from .chunker import CodeChunker
from .formatter import RetrievedContext, deduplicate_results, format_retrieved_context
from .vector_store import Chunk, SearchResult, VectorStore

logger = logging.getLogger(__name__)

MAX_DOCUMENTATION_CHUNKS = 25
CANDIDATE_POOL_SIZE = 50

# Language detection from file extension
_EXT_TO_LANG: dict[str, str] = {
    ".py": "python",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".java": "java",
    ".kt": "kotlin",
    ".cs": "csharp",
    ".go": "go",
    ".rs": "rust",
    ".rb": "ruby",
    ".php": "php",
    ".md": "markdown",
    ".rst": "restructuredtext",
}

_DOC_FILE_NAMES = {
    "readme.md", "readme.txt", "readme", "contributing.md", "architecture.md",
    "overview.md", "getting-started.md", "quickstart",
}


# ---------------------------------------------------------------------------
# Result records
# ---------------------------------------------------------------------------

@dataclass
class IndexProgress:
    status: str  # clearing | chunking | embedding | complete | cancelled
    message: str
    current: int = 0
    total: int = 0


@dataclass
class BatchResult:
    batch_number: int
    size: int
    inserted: int = 0
    error: str = ""

    @property
    def ok(self) -> bool:
        return not self.error


@dataclass
class IndexResult:
    success: bool
    chunks_indexed: int
    chunks_total: int
    files_indexed: int
    batches: list[BatchResult] = field(default_factory=list)
    cancelled: bool = False

    @property
    def failed_batches(self) -> list[BatchResult]:
        return [b for b in self.batches if not b.ok]


@dataclass
class IndexQuality:
    is_indexed: bool
    chunks_count: int
    files_count: int
    quality: str  # good | fair | limited | none
    recommendation: Optional[str] = None
    error: Optional[str] = None


@dataclass
class RepositoryDocs:
    found: bool
    content: str = ""
    sources: list[str] = field(default_factory=list)
    chunks_count: int = 0


@dataclass
class ContextWithDocs:
    results: list[SearchResult]
    documentation: Optional[RepositoryDocs]
    combined_context: str


ProgressCallback = Callable[[IndexProgress], Union[None, Awaitable[None]]]


# ---------------------------------------------------------------------------
# Indexer
# ---------------------------------------------------------------------------

class RagIndexer:
    """Index repositories and retrieve relevant chunks for queries.

    Args:
        vector_store:      Where chunk embeddings live.
        embedding_service: Embeds chunks and queries.
        settings:          ``rag`` section of the application config.
        chunker:           Custom chunker; built from *settings* if omitted.
    """

    def __init__(
        self,
        vector_store: VectorStore,
        embedding_service: EmbeddingService,
        settings: Optional[RagSettings] = None,
        chunker: Optional[CodeChunker] = None,
    ) -> None:
        self._store = vector_store
        self._embeddings = embedding_service
        self._settings = settings or RagSettings()
        self._chunker = chunker or CodeChunker(
            tokens_per_char=self._settings.tokens_per_char,
            overlap_tokens=self._settings.overlap_tokens,
            reserved_tokens=self._settings.reserved_tokens,
            max_chunk_tokens=self._settings.max_chunk_tokens,
        )

    @property
    def vector_store(self) -> VectorStore:
        return self._store

    @property
    def embedding_service(self) -> EmbeddingService:
        return self._embeddings

    @property
    def chunker(self) -> CodeChunker:
        return self._chunker

    # ------------------------------------------------------------------
    # Indexing
    # ------------------------------------------------------------------

    async def index_repository(
        self,
        repo_id: str,
        files: list[dict],
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> IndexResult:
        """Replace the index of *repo_id* with chunks of *files*.

        Args:
            repo_id:      Repository identifier.
            files:        Dicts with ``path`` and ``content``.
            on_progress:  Called (or awaited) with an ``IndexProgress`` at
                          every stage and after every batch.
            cancel_event: When set, indexing stops before the next batch.

        Returns:
            Summary with per-batch outcomes.  ``chunks_indexed`` counts only
            chunks that reached the store.

        Raises:
            LocalProviderUnavailableError: The local model could not load;
                switch to the remote provider and retry.
        """
        logger.info("[RagIndexer] index_repository: repo=%s files=%d", repo_id, len(files))

        await self._embeddings.ensure_ready()

        await self._report(on_progress, IndexProgress("clearing", f"Clearing index for {repo_id}"))
        await self._store.clear_repo(repo_id)

        await self._report(on_progress, IndexProgress("chunking", f"Chunking {len(files)} files", 0, len(files)))
        chunks = self._chunk_files(repo_id, files)
        files_indexed = len({c.file_path for c in chunks})
        logger.info(
            "[RagIndexer] Chunked %d files into %d chunks", len(files), len(chunks),
        )

        batch_size = max(1, min(self._settings.batch_size, self._embeddings.max_batch_size))
        total_batches = (len(chunks) + batch_size - 1) // batch_size
        batches: list[BatchResult] = []
        inserted = 0
        cancelled = False

        for number, offset in enumerate(range(0, len(chunks), batch_size), start=1):
            if cancel_event is not None and cancel_event.is_set():
                cancelled = True
                break

            batch = chunks[offset:offset + batch_size]
            result = await self._index_batch(batch, number, total_batches)
            batches.append(result)
            inserted += result.inserted

            await self._report(on_progress, IndexProgress(
                "embedding",
                f"Embedded batch {number}/{total_batches}",
                min(offset + len(batch), len(chunks)),
                len(chunks),
            ))

        if cancelled:
            logger.info(
                "[RagIndexer] Indexing cancelled: repo=%s inserted=%d/%d",
                repo_id, inserted, len(chunks),
            )
            await self._report(on_progress, IndexProgress(
                "cancelled", "Indexing cancelled", inserted, len(chunks),
            ))
        else:
            failed = sum(1 for b in batches if not b.ok)
            logger.info(
                "[RagIndexer] Indexed repo=%s chunks=%d/%d failed_batches=%d",
                repo_id, inserted, len(chunks), failed,
            )
            await self._report(on_progress, IndexProgress(
                "complete", f"Indexed {inserted} chunks", inserted, len(chunks),
            ))

        return IndexResult(
            success=not cancelled,
            chunks_indexed=inserted,
            chunks_total=len(chunks),
            files_indexed=files_indexed,
            batches=batches,
            cancelled=cancelled,
        )

    def _chunk_files(self, repo_id: str, files: list[dict]) -> list[Chunk]:
        budget = self._chunker.token_budget_for_model(self._settings.target_model)
        chunks: list[Chunk] = []
        for f in files:
            path = f["path"]
            language = _detect_language(path)
            for index, piece in enumerate(self._chunker.chunk(f.get("content") or "", budget)):
                chunks.append(Chunk(
                    id=_generate_chunk_id(repo_id, path, index),
                    repo_id=repo_id,
                    file_path=path,
                    content=piece.content,
                    chunk_index=index,
                    token_count=piece.tokens,
                    kind=piece.kind,
                    language=language,
                ))
        return chunks

    async def _index_batch(self, batch: list[Chunk], number: int, total: int) -> BatchResult:
        """Embed and store one batch; failures are recorded, not raised."""
        try:
            logger.info(
                "[RagIndexer] Embedding batch %d/%d (%d chunks)", number, total, len(batch),
            )
            vectors = await self._embeddings.embed([c.content for c in batch])
            for chunk, vector in zip(batch, vectors):
                chunk.embedding = vector
            inserted = await self._store.add_vectors(batch)
            return BatchResult(batch_number=number, size=len(batch), inserted=inserted)
        except Exception as exc:
            logger.error(
                "[RagIndexer] Batch %d/%d failed, skipping: %s", number, total, exc,
            )
            return BatchResult(batch_number=number, size=len(batch), error=str(exc) or type(exc).__name__)

    @staticmethod
    async def _report(callback: Optional[ProgressCallback], progress: IndexProgress) -> None:
        if callback is None:
            return
        outcome = callback(progress)
        if inspect.isawaitable(outcome):
            await outcome

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    async def retrieve_context(
        self,
        repo_id: str,
        query: str,
        limit: Optional[int] = None,
        *,
        min_score: Optional[float] = None,
        max_chunks_per_file: Optional[int] = None,
        format_output: bool = False,
        hybrid: Optional[bool] = None,
        rerank: Optional[bool] = None,
        expand_query: Optional[bool] = None,
    ) -> Union[list[SearchResult], RetrievedContext]:
        """Find the chunks of *repo_id* most relevant to *query*.

        Args:
            repo_id:             Repository to search.
            query:               Natural language or code query.
            limit:               Max results (``rag.default_limit`` if omitted).
            min_score:           Score floor (``rag.min_score`` if omitted).
            max_chunks_per_file: Per-file cap (``rag.max_chunks_per_file``).
            format_output:       Return a ``RetrievedContext`` instead of the
                                 raw results.
            hybrid:              Fuse BM25 keyword ranking with the cosine
                                 ranking (``rag.hybrid_search``).
            rerank:              Re-order by multi-signal relevance
                                 (``rag.rerank``).
            expand_query:        Add synonyms and abbreviations to the query
                                 before searching (``rag.query_expansion``).

        Returns:
            Ranked results, or a formatted context.  Empty on any failure.
            Each result's ``score`` is its cosine similarity to the query.
        """
        limit = limit if limit is not None else self._settings.default_limit
        min_score = min_score if min_score is not None else self._settings.min_score
        per_file = max_chunks_per_file if max_chunks_per_file is not None else self._settings.max_chunks_per_file
        hybrid = self._settings.hybrid_search if hybrid is None else hybrid
        rerank = self._settings.rerank if rerank is None else rerank
        expand_query = self._settings.query_expansion if expand_query is None else expand_query

        try:
            await self._embeddings.ensure_ready()
            search_query = ranking.expand_query(query) if expand_query else query
            query_vector = (await self._embeddings.embed([search_query]))[0]
            if hybrid or rerank:
                results = await self._ranked_search(
                    repo_id, query, search_query, query_vector, limit,
                    min_score=min_score, max_chunks_per_file=per_file,
                    hybrid=hybrid, rerank=rerank,
                )
            else:
                results = await self._store.search(
                    repo_id,
                    query_vector,
                    limit,
                    min_score=min_score,
                    deduplicate=True,
                    max_chunks_per_file=per_file,
                )
        except Exception as exc:
            logger.warning(
                "[RagIndexer] Retrieval failed for repo=%s, returning empty context: %s",
                repo_id, exc,
            )
            results = []

        logger.debug(
            "[RagIndexer] retrieve_context repo=%s hybrid=%s rerank=%s results=%d",
            repo_id, hybrid, rerank, len(results),
        )
        if format_output:
            return format_retrieved_context(results)
        return results

    async def _ranked_search(
        self,
        repo_id: str,
        query: str,
        search_query: str,
        query_vector: list[float],
        limit: int,
        *,
        min_score: float,
        max_chunks_per_file: int,
        hybrid: bool,
        rerank: bool,
    ) -> list[SearchResult]:
        """Candidate pool from cosine (and keyword) ranking, then re-ordered.

        Chunks below *min_score* enter the pool only through a keyword match.
        """
        chunks = await self._store.get_repo_chunks(repo_id)
        if not chunks or limit <= 0:
            return []
        by_id = {c.id: c for c in chunks}
        pool = max(CANDIDATE_POOL_SIZE, limit * 2)

        scored = await self._store.search(repo_id, query_vector, len(chunks))
        cosine = {r.chunk_id: r.score for r in scored}
        semantic = [
            (by_id[r.chunk_id], r.score)
            for r in scored
            if r.score >= min_score and r.chunk_id in by_id
        ][:pool]

        if hybrid:
            index = ranking.BM25Index()
            for chunk in chunks:
                index.add_document(chunk.id, chunk.content)
            keyword = [(by_id[doc_id], score) for doc_id, score in index.search(search_query, pool)]
            candidates = ranking.fuse_rankings(search_query, semantic, keyword, cosine)
        else:
            candidates = [
                ranking.Candidate(chunk=chunk, semantic_score=score, semantic_rank=rank)
                for rank, (chunk, score) in enumerate(semantic, start=1)
            ]

        if rerank:
            candidates = ranking.RelevanceScorer().rerank(candidates, query)

        results = deduplicate_results(
            [c.to_result() for c in candidates], max_chunks_per_file, preserve_order=True,
        )
        return results[:limit]

    async def check_index_quality(self, repo_id: str) -> IndexQuality:
        """Summarise how well *repo_id* is indexed."""
        try:
            stats = await self._store.get_repo_stats(repo_id)
        except Exception as exc:
            logger.warning("[RagIndexer] Could not read stats for repo=%s: %s", repo_id, exc)
            return IndexQuality(
                is_indexed=False, chunks_count=0, files_count=0, quality="none", error=str(exc),
            )

        count = stats.chunks_count
        if count > 50:
            quality = "good"
        elif count > 10:
            quality = "fair"
        elif count > 0:
            quality = "limited"
        else:
            quality = "none"

        recommendation = None
        if count < 10:
            recommendation = "Re-index the repository for better retrieval quality"

        return IndexQuality(
            is_indexed=count > 0,
            chunks_count=count,
            files_count=stats.files_count,
            quality=quality,
            recommendation=recommendation,
        )

    async def get_repository_documentation(
        self,
        repo_id: str,
        max_chunks: int = MAX_DOCUMENTATION_CHUNKS,
    ) -> RepositoryDocs:
        """Collect README and documentation chunks describing *repo_id*.

        README files come first, then other documentation by path and chunk
        position.
        """
        try:
            chunks = await self._store.get_repo_chunks(repo_id)
        except Exception as exc:
            logger.warning("[RagIndexer] Failed to read documentation for repo=%s: %s", repo_id, exc)
            return RepositoryDocs(found=False)

        docs = [c for c in chunks if _is_documentation(c.file_path)]
        docs.sort(key=lambda c: (
            "readme" not in c.file_path.lower(),
            c.file_path.lower(),
            c.chunk_index,
        ))
        docs = docs[:max_chunks]
        if not docs:
            return RepositoryDocs(found=False)

        sources = list(dict.fromkeys(c.file_path for c in docs))
        content = "\n\n---\n\n".join(f"// From: {c.file_path}\n{c.content}" for c in docs)
        return RepositoryDocs(found=True, content=content, sources=sources, chunks_count=len(docs))

    async def retrieve_context_with_docs(
        self,
        repo_id: str,
        query: str,
        limit: Optional[int] = None,
        *,
        include_documentation: bool = True,
        documentation_first: bool = False,
        min_score: Optional[float] = None,
        max_chunks_per_file: Optional[int] = None,
        hybrid: Optional[bool] = None,
        rerank: Optional[bool] = None,
        expand_query: Optional[bool] = None,
    ) -> ContextWithDocs:
        """Retrieve code for *query* together with the repository's docs."""
        results = await self.retrieve_context(
            repo_id,
            query,
            limit,
            min_score=min_score,
            max_chunks_per_file=max_chunks_per_file,
            hybrid=hybrid,
            rerank=rerank,
            expand_query=expand_query,
        )
        code = "\n\n".join(r.content for r in results)

        if include_documentation:
            docs = await self.get_repository_documentation(repo_id)
            if docs.found:
                code_section = f"## Relevant Code\n{code}"
                docs_section = f"## Repository Documentation\n{docs.content}"
                sections = [docs_section, code_section] if documentation_first else [code_section, docs_section]
                return ContextWithDocs(
                    results=results,
                    documentation=docs,
                    combined_context="\n\n".join(sections),
                )

        return ContextWithDocs(results=results, documentation=None, combined_context=code)

    # ------------------------------------------------------------------
    # Index management
    # ------------------------------------------------------------------

    async def is_indexed(self, repo_id: str) -> bool:
        return await self._store.is_indexed(repo_id)

    async def get_index_stats(self) -> dict:
        """Totals across every indexed repository."""
        return await self._store.get_stats()

    async def clear_index(self, repo_id: str) -> int:
        """Drop the index of *repo_id*; returns the number of chunks removed."""
        return await self._store.clear_repo(repo_id)

    # ------------------------------------------------------------------
    # Provider management
    # ------------------------------------------------------------------

    def get_provider_info(self) -> dict:
        return self._embeddings.provider_info()

    def switch_provider(self, provider: EmbeddingProvider) -> None:
        """Use *provider* for future indexing and retrieval.

        Existing indexes were built with the old provider's vectors and
        should be rebuilt.
        """
        self._embeddings.switch_provider(provider)


def _detect_language(file_path: str) -> str:
    """Detect language from file extension."""
    ext = Path(file_path).suffix.lower()
    return _EXT_TO_LANG.get(ext, "")


def _is_documentation(file_path: str) -> bool:
    path = file_path.lower()
    name = path.rsplit("/", 1)[-1]
    return (
        name in _DOC_FILE_NAMES
        or name.endswith((".md", ".rst"))
        or "getting-started" in name
        or path.startswith(("docs/", "documentation/"))
        or "/docs/" in path
        or "/documentation/" in path
    )


def _generate_chunk_id(repo_id: str, file_path: str, index: int) -> str:
    """Generate a deterministic chunk ID."""
    return f"{repo_id}:{file_path}:{index}"
