"""Backing stores for indexed chunks.

``VectorStore`` does not care where chunks live; it talks to a ``ChunkStore``:

* ``MemoryChunkStore`` — process-local dicts, used by tests and ephemeral
  deployments.
* ``DuckDBChunkStore`` — a single DuckDB file, one row per chunk.

Database Schema:
    rag_chunks table:
        - seq: Insertion sequence (ties in search keep this order)
        - id: ``repo_id:file_path:chunk_index``
        - repo_id, file_path, content, chunk_index, token_count, kind, language
        - embedding: DOUBLE[] vector

Every insert runs in its own transaction.  Chunks written before a failure
part-way through a batch stay in place, and a failed replace keeps the
previous row.
"""
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Optional

import duckdb

if TYPE_CHECKING:
    from .vector_store import Chunk

logger = logging.getLogger(__name__)


class ChunkStore(ABC):
    """Persistence contract used by ``VectorStore``."""

    @abstractmethod
    async def init(self) -> None:
        """Prepare the store.  Safe to call more than once."""

    @abstractmethod
    async def delete_repo(self, repo_id: str) -> int:
        """Delete every chunk of *repo_id*; returns the number removed."""

    @abstractmethod
    async def insert(self, chunk: "Chunk") -> None:
        """Persist one chunk, replacing any chunk with the same id."""

    @abstractmethod
    async def list_repo(self, repo_id: str) -> list["Chunk"]:
        """All chunks of *repo_id* in insertion order."""

    @abstractmethod
    async def embedding_dim(self, repo_id: str) -> Optional[int]:
        """Length of the first stored embedding of *repo_id*, or None."""

    @abstractmethod
    async def count_repo(self, repo_id: str) -> tuple[int, int]:
        """``(chunks, distinct files)`` for *repo_id*."""

    @abstractmethod
    async def count_all(self) -> int:
        """Number of chunks across all repositories."""

    async def close(self) -> None:
        return None


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------

class MemoryChunkStore(ChunkStore):

    def __init__(self) -> None:
        self._repos: dict[str, dict[str, "Chunk"]] = {}

    async def init(self) -> None:
        return None

    async def delete_repo(self, repo_id: str) -> int:
        removed = self._repos.pop(repo_id, {})
        return len(removed)

    async def insert(self, chunk: "Chunk") -> None:
        repo = self._repos.setdefault(chunk.repo_id, {})
        # Re-inserting an id moves it to the end of the insertion order.
        repo.pop(chunk.id, None)
        repo[chunk.id] = chunk

    async def list_repo(self, repo_id: str) -> list["Chunk"]:
        return list(self._repos.get(repo_id, {}).values())

    async def embedding_dim(self, repo_id: str) -> Optional[int]:
        for chunk in self._repos.get(repo_id, {}).values():
            if chunk.embedding:
                return len(chunk.embedding)
        return None

    async def count_repo(self, repo_id: str) -> tuple[int, int]:
        chunks = self._repos.get(repo_id, {})
        return len(chunks), len({c.file_path for c in chunks.values()})

    async def count_all(self) -> int:
        return sum(len(chunks) for chunks in self._repos.values())


# ---------------------------------------------------------------------------
# DuckDB store
# ---------------------------------------------------------------------------

class DuckDBChunkStore(ChunkStore):
    """Chunk storage in an embedded DuckDB database.

    The DuckDB connection is not shared across threads; all calls come from
    the event loop that owns the store.

    Args:
        db_path: Path to the DuckDB file (``":memory:"`` for a private
                 in-process database).
    """

    def __init__(self, db_path: str = "repospector_vectors.duckdb") -> None:
        self._db_path = db_path
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialized = False

    @property
    def db_path(self) -> str:
        return self._db_path

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        """Create the sequence and table if they don't exist."""
        conn = self._get_connection()
        conn.execute("CREATE SEQUENCE IF NOT EXISTS rag_chunks_seq START 1")
        conn.execute("""
            CREATE TABLE IF NOT EXISTS rag_chunks (
                seq BIGINT DEFAULT nextval('rag_chunks_seq'),
                id VARCHAR PRIMARY KEY,
                repo_id VARCHAR NOT NULL,
                file_path VARCHAR NOT NULL,
                content VARCHAR NOT NULL,
                chunk_index INTEGER NOT NULL,
                token_count INTEGER NOT NULL,
                kind VARCHAR NOT NULL,
                language VARCHAR,
                embedding DOUBLE[]
            )
        """)

    async def init(self) -> None:
        if self._initialized:
            return
        self._initialize_db()
        self._initialized = True
        logger.info("[DuckDBChunkStore] Ready at %s", self._db_path)

    async def delete_repo(self, repo_id: str) -> int:
        conn = self._get_connection()
        count = conn.execute(
            "SELECT COUNT(*) FROM rag_chunks WHERE repo_id = ?", [repo_id]
        ).fetchone()[0]
        conn.execute("DELETE FROM rag_chunks WHERE repo_id = ?", [repo_id])
        return int(count)

    async def insert(self, chunk: "Chunk") -> None:
        conn = self._get_connection()
        conn.begin()
        try:
            conn.execute("DELETE FROM rag_chunks WHERE id = ?", [chunk.id])
            conn.execute(
                """
                INSERT INTO rag_chunks
                    (id, repo_id, file_path, content, chunk_index, token_count, kind, language, embedding)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    chunk.id,
                    chunk.repo_id,
                    chunk.file_path,
                    chunk.content,
                    chunk.chunk_index,
                    chunk.token_count,
                    chunk.kind,
                    chunk.language,
                    chunk.embedding,
                ],
            )
        except Exception:
            conn.rollback()
            raise
        conn.commit()

    async def embedding_dim(self, repo_id: str) -> Optional[int]:
        row = self._get_connection().execute(
            """
            SELECT len(embedding)
            FROM rag_chunks
            WHERE repo_id = ? AND embedding IS NOT NULL AND len(embedding) > 0
            ORDER BY seq
            LIMIT 1
            """,
            [repo_id],
        ).fetchone()
        return int(row[0]) if row else None

    async def list_repo(self, repo_id: str) -> list["Chunk"]:
        from .vector_store import Chunk

        rows = self._get_connection().execute(
            """
            SELECT id, repo_id, file_path, content, chunk_index, token_count, kind, language, embedding
            FROM rag_chunks
            WHERE repo_id = ?
            ORDER BY seq
            """,
            [repo_id],
        ).fetchall()
        return [
            Chunk(
                id=row[0],
                repo_id=row[1],
                file_path=row[2],
                content=row[3],
                chunk_index=row[4],
                token_count=row[5],
                kind=row[6],
                language=row[7] or "",
                embedding=list(row[8]) if row[8] is not None else None,
            )
            for row in rows
        ]

    async def count_repo(self, repo_id: str) -> tuple[int, int]:
        row = self._get_connection().execute(
            "SELECT COUNT(*), COUNT(DISTINCT file_path) FROM rag_chunks WHERE repo_id = ?",
            [repo_id],
        ).fetchone()
        return int(row[0]), int(row[1])

    async def count_all(self) -> int:
        return int(self._get_connection().execute("SELECT COUNT(*) FROM rag_chunks").fetchone()[0])

    async def close(self) -> None:
        if self._connection is not None:
            self._connection.close()
            self._connection = None
            self._initialized = False
