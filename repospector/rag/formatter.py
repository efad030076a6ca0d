"""Turn ranked search results into a prompt-ready context block."""
from dataclasses import dataclass, field

from .vector_store import SearchResult

HIGH_RELEVANCE = 0.7
MEDIUM_RELEVANCE = 0.5


@dataclass
class RetrievedContext:
    chunks: str = ""
    sources: list[str] = field(default_factory=list)
    total_chunks: int = 0
    avg_score: float = 0.0


def relevance_tier(score: float) -> str:
    if score > HIGH_RELEVANCE:
        return "HIGH"
    if score > MEDIUM_RELEVANCE:
        return "MEDIUM"
    return "LOW"


def deduplicate_results(
    results: list[SearchResult],
    max_chunks_per_file: int = 2,
    *,
    preserve_order: bool = False,
) -> list[SearchResult]:
    """Keep at most *max_chunks_per_file* results per file, best scores first.

    The output is ordered by score descending (stable for ties).  With
    *preserve_order* the input is taken as already ranked and keeps its order.
    """
    ranked = list(results) if preserve_order else sorted(results, key=lambda r: r.score, reverse=True)
    per_file: dict[str, int] = {}
    kept: list[SearchResult] = []
    for result in ranked:
        seen = per_file.get(result.file_path, 0)
        if seen < max_chunks_per_file:
            per_file[result.file_path] = seen + 1
            kept.append(result)
    return kept


def format_retrieved_context(results: list[SearchResult]) -> RetrievedContext:
    """Group results by file and render them under a relevance header.

    Files appear in the order they are first seen in *results*; chunks within
    a file are ordered by position in the file.  Each file is rendered as::

        // File: src/app.js (Relevance: HIGH)
        <chunk contents>

    Empty input gives an empty context.
    """
    if not results:
        return RetrievedContext()

    by_file: dict[str, list[SearchResult]] = {}
    for result in results:
        by_file.setdefault(result.file_path, []).append(result)

    lines: list[str] = []
    for file_path, file_results in by_file.items():
        file_results.sort(key=lambda r: r.chunk_index)
        avg = sum(r.score for r in file_results) / len(file_results)
        lines.append(f"// File: {file_path} (Relevance: {relevance_tier(avg)})")
        lines.extend(r.content for r in file_results)
        lines.append("")

    return RetrievedContext(
        chunks="\n".join(lines),
        sources=list(by_file),
        total_chunks=len(results),
        avg_score=sum(r.score for r in results) / len(results),
    )
