"""Keyword scoring, rank fusion and re-ranking for retrieval.

Optional steps layered over plain cosine search (all off by default, see
``rag.hybrid_search``, ``rag.rerank`` and ``rag.query_expansion``):

* ``expand_query`` appends code synonyms and spelled-out abbreviations to
  the query before it is embedded and keyword-scored.
* ``BM25Index`` ranks chunks by keyword overlap (BM25+).  ``fuse_rankings``
  merges that ranking with the cosine ranking by weighted reciprocal rank
  fusion and applies match boosts.
* ``RelevanceScorer`` re-orders candidates by a weighted mix of signals.

The keyword index is built per query from the repository's stored chunks;
nothing here is persisted.  Every sort is stable, so equal scores keep the
order candidates arrived in.
"""
import logging
import math
import re
from collections import Counter
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Iterable, Optional

from .vector_store import Chunk, SearchResult

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Tokenization
# ---------------------------------------------------------------------------

MIN_TOKEN_LENGTH = 2
MAX_TOKEN_LENGTH = 50

STOP_WORDS = frozenset({
    "a", "an", "and", "are", "as", "at", "be", "by", "for", "from",
    "has", "he", "in", "is", "it", "its", "of", "on", "that", "the",
    "to", "was", "were", "will", "with", "this", "but", "they",
    "have", "had", "what", "when", "where", "who", "which", "why", "how",
    "or", "if", "then", "else", "do", "does", "did", "can", "could",
    "would", "should", "may", "might", "must", "shall", "not",
    "no", "yes", "all", "any", "both", "each", "few", "more", "most",
    "other", "some", "such", "only", "own", "same", "so", "than", "too",
    "very", "just", "also", "now", "here", "there", "new", "old",
})

CODE_STOP_WORDS = frozenset({
    "const", "let", "var", "function", "return", "if", "else", "for",
    "while", "do", "switch", "case", "break", "continue", "default",
    "try", "catch", "finally", "throw", "class", "extends", "new",
    "this", "super", "import", "export", "from", "async", "await",
    "true", "false", "null", "undefined", "typeof", "instanceof",
    "void", "delete", "in", "of", "with", "yield", "static", "public",
    "private", "protected", "interface", "type", "enum", "implements",
})

_CAMEL_CASE = re.compile(r"([a-z])([A-Z])")
_CODE_SEPARATORS = re.compile(r"[{}()\[\];:,._]")


def stem(word: str) -> str:
    """Strip one common English suffix (a much simplified Porter step)."""
    n = len(word)
    if n > 7 and word.endswith("ization"):
        return word[:-7] + "ize"
    if n > 5 and word.endswith("ation"):
        return word[:-5] + "ate"
    if n > 4 and word.endswith("ing") and len(word[:-3]) >= 3:
        return word[:-3]
    if n > 4 and word.endswith("ies"):
        return word[:-3] + "y"
    if n > 3 and word.endswith("es"):
        base = word[:-2]
        if len(base) >= 2 and not re.search(r"[sxz]$|[cs]h$", base):
            return base
    if n > 3 and word.endswith("ed") and len(word[:-2]) >= 2:
        return word[:-2]
    if n > 3 and word.endswith("ly"):
        return word[:-2]
    if n > 4 and (word.endswith("ness") or word.endswith("ment")):
        return word[:-4]
    if n > 3 and word.endswith("s") and not word.endswith("ss"):
        return word[:-1]
    return word


def tokenize(text: str, is_code: bool = True) -> list[str]:
    """Lowercased, stemmed terms of *text* without stop words or numbers.

    With *is_code*, camelCase and snake_case identifiers and dotted names are
    split into their parts and language keywords are dropped.
    """
    if not text:
        return []
    if is_code:
        text = _CAMEL_CASE.sub(r"\1 \2", text)
        text = _CODE_SEPARATORS.sub(" ", text)

    terms: list[str] = []
    for token in text.lower().split():
        if not MIN_TOKEN_LENGTH <= len(token) <= MAX_TOKEN_LENGTH:
            continue
        if token.isdigit():
            continue
        if token in STOP_WORDS or (is_code and token in CODE_STOP_WORDS):
            continue
        terms.append(stem(token))
    return terms


# ---------------------------------------------------------------------------
# BM25 keyword index
# ---------------------------------------------------------------------------

class BM25Index:
    """In-memory inverted index scored with BM25+.

    Args:
        k1:    Term frequency saturation.
        b:     Document length normalisation.
        delta: BM25+ floor added per matching term, so long documents that
               contain a term still outrank documents that do not.
    """

    def __init__(self, k1: float = 1.5, b: float = 0.75, delta: float = 0.5) -> None:
        self.k1 = k1
        self.b = b
        self.delta = delta
        self._term_freqs: dict[str, Counter] = {}
        self._lengths: dict[str, int] = {}
        self._postings: dict[str, list[str]] = {}
        self._total_tokens = 0

    def __len__(self) -> int:
        return len(self._term_freqs)

    @property
    def average_length(self) -> float:
        return self._total_tokens / len(self._term_freqs) if self._term_freqs else 0.0

    def add_document(self, doc_id: str, content: str, is_code: bool = True) -> None:
        """Index *content* under *doc_id*.  Documents without terms are skipped."""
        if doc_id in self._term_freqs:
            raise ValueError(f"Document {doc_id} is already indexed")
        terms = tokenize(content, is_code=is_code)
        if not terms:
            return
        freqs = Counter(terms)
        self._term_freqs[doc_id] = freqs
        self._lengths[doc_id] = len(terms)
        self._total_tokens += len(terms)
        for term in freqs:
            self._postings.setdefault(term, []).append(doc_id)

    def idf(self, term: str) -> float:
        df = len(self._postings.get(term, ()))
        if df == 0:
            return 0.0
        n = len(self._term_freqs)
        return math.log((n - df + 0.5) / (df + 0.5) + 1)

    def score(self, doc_id: str, query_terms: Iterable[str]) -> float:
        freqs = self._term_freqs.get(doc_id)
        if freqs is None:
            return 0.0
        length_norm = 1 - self.b + self.b * (self._lengths[doc_id] / self.average_length)
        total = 0.0
        for term in query_terms:
            tf = freqs.get(term, 0)
            if not tf:
                continue
            tf_norm = ((self.k1 + 1) * tf) / (self.k1 * length_norm + tf)
            total += self.idf(term) * (tf_norm + self.delta)
        return total

    def search(self, query: str, limit: int = 50) -> list[tuple[str, float]]:
        """``(doc_id, score)`` for documents sharing a term with *query*.

        Sorted by score descending; ties keep indexing order.
        """
        query_terms = tokenize(query, is_code=True)
        if not query_terms or limit <= 0:
            return []

        matching = set()
        for term in query_terms:
            matching.update(self._postings.get(term, ()))

        hits = [
            (doc_id, self.score(doc_id, query_terms))
            for doc_id in self._term_freqs
            if doc_id in matching
        ]
        hits.sort(key=lambda hit: hit[1], reverse=True)
        return hits[:limit]


# ---------------------------------------------------------------------------
# Candidates and rank fusion
# ---------------------------------------------------------------------------

RRF_K = 60
SEMANTIC_WEIGHT = 0.6
KEYWORD_WEIGHT = 0.4

EXACT_MATCH_BOOST = 1.5
FILENAME_MATCH_BOOST = 1.3
STRUCTURE_BOOST = 1.2

_DECLARATION_START = re.compile(r"^(class|function|def|const|export)\s")


@dataclass
class Candidate:
    """A chunk under consideration, with the evidence gathered for it."""

    chunk: Chunk
    semantic_score: float = 0.0
    keyword_score: float = 0.0
    semantic_rank: Optional[int] = None
    keyword_rank: Optional[int] = None
    fused_score: float = 0.0
    relevance_score: float = 0.0

    def to_result(self) -> SearchResult:
        """Search result carrying the chunk's cosine similarity as its score."""
        return SearchResult(
            chunk_id=self.chunk.id,
            file_path=self.chunk.file_path,
            content=self.chunk.content,
            chunk_index=self.chunk.chunk_index,
            score=self.semantic_score,
        )


def _file_name(path: str) -> str:
    return PurePosixPath(path).name.lower()


def _match_boost(candidate: Candidate, query: str) -> float:
    chunk = candidate.chunk
    content = chunk.content.lower()
    query_lower = query.lower()
    factor = 1.0
    if query_lower and query_lower in content:
        factor *= EXACT_MATCH_BOOST
    name = _file_name(chunk.file_path)
    if any(term in name for term in query_lower.split()):
        factor *= FILENAME_MATCH_BOOST
    if chunk.kind in ("class", "function", "method") or _DECLARATION_START.match(chunk.content):
        factor *= STRUCTURE_BOOST
    return factor


def fuse_rankings(
    query: str,
    semantic: list[tuple[Chunk, float]],
    keyword: list[tuple[Chunk, float]],
    cosine_scores: Optional[dict[str, float]] = None,
) -> list[Candidate]:
    """Merge a cosine ranking and a keyword ranking into one.

    Each list contributes ``weight / (RRF_K + rank)`` to a chunk's fused
    score, which is then multiplied by the match boosts.  A chunk found only
    by keyword takes its cosine similarity from *cosine_scores*.

    Returns:
        Candidates sorted by fused score descending.  Ties keep first-seen
        order, semantic hits before keyword-only hits.
    """
    cosine_scores = cosine_scores or {}
    merged: dict[str, Candidate] = {}

    for rank, (chunk, score) in enumerate(semantic, start=1):
        merged[chunk.id] = Candidate(chunk=chunk, semantic_score=score, semantic_rank=rank)

    for rank, (chunk, score) in enumerate(keyword, start=1):
        candidate = merged.get(chunk.id)
        if candidate is None:
            candidate = Candidate(chunk=chunk, semantic_score=cosine_scores.get(chunk.id, 0.0))
            merged[chunk.id] = candidate
        candidate.keyword_rank = rank
        candidate.keyword_score = score

    for candidate in merged.values():
        fused = 0.0
        if candidate.semantic_rank is not None:
            fused += SEMANTIC_WEIGHT / (RRF_K + candidate.semantic_rank)
        if candidate.keyword_rank is not None:
            fused += KEYWORD_WEIGHT / (RRF_K + candidate.keyword_rank)
        candidate.fused_score = fused * _match_boost(candidate, query)

    return sorted(merged.values(), key=lambda c: c.fused_score, reverse=True)


# ---------------------------------------------------------------------------
# Relevance re-ranking
# ---------------------------------------------------------------------------

DEFAULT_WEIGHTS = {
    "semantic": 0.35,
    "keyword": 0.25,
    "exact_match": 0.15,
    "structure": 0.10,
    "file_relevance": 0.05,
}

STRUCTURE_SCORES = {
    "class": 1.0,
    "interface": 0.9,
    "function": 0.85,
    "method": 0.8,
    "constant": 0.6,
    "variable": 0.4,
    "import": 0.3,
    "comment": 0.2,
    "other": 0.1,
}

FILE_TYPE_SCORES = {
    "js": 1.0, "ts": 1.0, "jsx": 1.0, "tsx": 1.0, "py": 1.0,
    "java": 1.0, "go": 1.0, "rs": 1.0, "cpp": 1.0, "c": 1.0,
    "vue": 0.9, "svelte": 0.9, "html": 0.7, "css": 0.6, "scss": 0.6,
    "json": 0.5, "yaml": 0.5, "yml": 0.5, "toml": 0.4, "xml": 0.4,
    "md": 0.3, "txt": 0.2,
}

# BM25 scores are unbounded; a strong match lands around this value.
KEYWORD_SCORE_CEILING = 15.0

_STRUCTURE_PATTERNS = [
    ("class", re.compile(r"^(export\s+)?(abstract\s+)?class\s+\w+", re.M)),
    ("interface", re.compile(r"^(export\s+)?interface\s+\w+", re.M)),
    ("function", re.compile(
        r"^(export\s+)?(async\s+)?(function|def)\s+\w+"
        r"|^(export\s+)?const\s+\w+\s*=\s*(async\s+)?\([^)]*\)\s*=>",
        re.M,
    )),
    ("method", re.compile(r"^\s*(public|private|protected|async)?\s*\w+\s*\([^)]*\)\s*[:{]", re.M)),
    ("constant", re.compile(r"^(export\s+)?const\s+[A-Z_]+\s*=", re.M)),
    ("import", re.compile(r"^import\s+", re.M)),
    ("comment", re.compile(r"^(//|/\*|\*|#)", re.M)),
]


def detect_structure_type(content: str) -> str:
    text = content.strip()
    for name, pattern in _STRUCTURE_PATTERNS:
        if pattern.search(text):
            return name
    return "other"


class RelevanceScorer:
    """Score candidates on several signals and sort by the weighted sum.

    Signals, each in ``[0, 1]``: cosine similarity, normalised keyword score,
    exact query match, code structure of the chunk and file relevance.
    Weights are normalised to sum to 1.  Query-dependent boosts (test files
    for test queries, component files for component queries) are applied on
    top and the total is capped at 1.
    """

    def __init__(self, weights: Optional[dict[str, float]] = None) -> None:
        merged = {**DEFAULT_WEIGHTS, **(weights or {})}
        total = sum(merged.values())
        self.weights = {k: v / total for k, v in merged.items()} if total > 0 else merged

    # -- individual signals ------------------------------------------------

    @staticmethod
    def semantic(candidate: Candidate) -> float:
        return max(0.0, min(1.0, candidate.semantic_score))

    @staticmethod
    def keyword(candidate: Candidate) -> float:
        return max(0.0, min(candidate.keyword_score / KEYWORD_SCORE_CEILING, 1.0))

    @staticmethod
    def exact_match(candidate: Candidate, query: str) -> float:
        content = candidate.chunk.content
        if not content or not query.strip():
            return 0.0
        lowered = content.lower()
        query_lower = query.lower()
        if query_lower in lowered:
            return 1.0 if query in content else 0.8
        terms = query_lower.split()
        matched = [
            t for t in terms
            if t in lowered or re.sub(r"[_-]", "", t) in lowered
        ]
        return len(matched) / len(terms)

    @staticmethod
    def structure(candidate: Candidate) -> float:
        kind = candidate.chunk.kind
        if kind not in STRUCTURE_SCORES:
            kind = detect_structure_type(candidate.chunk.content)
        return STRUCTURE_SCORES[kind]

    @staticmethod
    def file_relevance(candidate: Candidate, query: str) -> float:
        path = candidate.chunk.file_path
        name = _file_name(path)
        ext = name.rsplit(".", 1)[-1] if "." in name else ""

        score = FILE_TYPE_SCORES.get(ext, 0.2) * 0.4
        terms = query.lower().split()
        if terms:
            score += 0.4 * sum(1 for t in terms if t in name) / len(terms)

        path_lower = path.lower()
        if any(marker in path_lower for marker in ("node_modules", "dist/", "build/", ".min.")):
            score *= 0.3
        if any(marker in path_lower for marker in ("/src/", "/lib/", "/app/")):
            score += 0.2
        return min(1.0, score)

    # -- aggregate ---------------------------------------------------------

    def score(self, candidate: Candidate, query: str) -> float:
        signals = {
            "semantic": self.semantic(candidate),
            "keyword": self.keyword(candidate),
            "exact_match": self.exact_match(candidate, query),
            "structure": self.structure(candidate),
            "file_relevance": self.file_relevance(candidate, query),
        }
        total = sum(signals.get(name, 0.0) * weight for name, weight in self.weights.items())

        query_lower = query.lower()
        path = candidate.chunk.file_path.lower()
        if ("test" in query_lower or "spec" in query_lower) and (
            ".test." in path or ".spec." in path or "__tests__" in path or "/tests/" in path
        ):
            total *= 1.2
        if "component" in query_lower and (
            "component" in path or path.endswith(".jsx") or path.endswith(".tsx")
        ):
            total *= 1.15
        return min(1.0, total)

    def rerank(self, candidates: list[Candidate], query: str) -> list[Candidate]:
        """Set ``relevance_score`` on each candidate and sort by it."""
        for candidate in candidates:
            candidate.relevance_score = self.score(candidate, query)
        return sorted(candidates, key=lambda c: c.relevance_score, reverse=True)


# ---------------------------------------------------------------------------
# Query expansion
# ---------------------------------------------------------------------------

CODE_SYNONYMS = {
    "function": ["method", "func", "fn", "procedure", "routine", "handler"],
    "method": ["function", "func", "procedure", "operation"],
    "class": ["type", "struct", "interface", "model", "entity"],
    "variable": ["var", "const", "let", "field", "property", "attribute"],
    "constant": ["const", "static", "final", "immutable"],
    "array": ["list", "collection", "slice", "vector", "items"],
    "object": ["dict", "dictionary", "map", "hash", "record", "struct"],
    "string": ["str", "text", "char"],
    "number": ["int", "integer", "float", "double", "num", "digit"],
    "boolean": ["bool", "flag", "toggle"],
    "create": ["make", "build", "construct", "generate", "initialize", "init", "new"],
    "delete": ["remove", "destroy", "dispose", "clear", "drop", "purge"],
    "update": ["modify", "change", "edit", "set", "alter", "patch"],
    "read": ["get", "fetch", "retrieve", "load", "find", "query"],
    "send": ["emit", "dispatch", "post", "publish", "transmit"],
    "receive": ["get", "accept", "handle", "consume", "subscribe"],
    "validate": ["check", "verify", "ensure", "assert", "confirm"],
    "parse": ["extract", "decode", "deserialize", "convert"],
    "format": ["serialize", "encode", "stringify", "render"],
    "log": ["print", "debug", "trace", "output", "console"],
    "error": ["exception", "failure", "fault", "issue", "problem"],
    "handler": ["listener", "callback", "hook", "subscriber", "observer"],
    "config": ["configuration", "settings", "options", "preferences", "params"],
    "auth": ["authentication", "authorization", "security", "login"],
    "user": ["account", "profile", "member", "client", "customer"],
    "api": ["endpoint", "service", "route", "controller"],
    "database": ["db", "store", "repository", "persistence", "storage"],
    "cache": ["memo", "buffer", "store", "memory"],
    "async": ["asynchronous", "promise", "await", "concurrent"],
    "sync": ["synchronous", "blocking", "sequential"],
    "test": ["spec", "unittest", "suite", "case"],
    "mock": ["stub", "fake", "spy", "double"],
    "assert": ["expect", "verify", "should", "check"],
    "request": ["req", "call", "query", "fetch"],
    "response": ["res", "reply", "result", "output"],
    "route": ["path", "endpoint", "url", "uri"],
    "component": ["widget", "element", "module", "view"],
    "state": ["store", "data", "context", "model"],
    "prop": ["property", "attribute", "param", "arg"],
    "event": ["action", "trigger", "signal", "notification"],
}

ABBREVIATIONS = {
    "fn": "function", "func": "function", "auth": "authentication",
    "config": "configuration", "db": "database", "err": "error",
    "msg": "message", "req": "request", "res": "response", "ctx": "context",
    "env": "environment", "id": "identifier", "idx": "index", "val": "value",
    "var": "variable", "num": "number", "str": "string", "obj": "object",
    "arr": "array", "param": "parameter", "arg": "argument",
    "args": "arguments", "util": "utility", "utils": "utilities",
    "lib": "library", "pkg": "package", "dep": "dependency",
    "deps": "dependencies", "init": "initialize", "impl": "implementation",
    "tmp": "temporary", "prev": "previous", "curr": "current",
    "max": "maximum", "min": "minimum", "src": "source",
    "dest": "destination", "ref": "reference", "doc": "document",
    "docs": "documentation",
}

_CONTEXT_PATTERNS = [
    (re.compile(r"how\s+to\s+(\w+)", re.I), lambda w: CODE_SYNONYMS.get(w, [])),
    (re.compile(r"where\s+is\s+(\w+)", re.I),
     lambda w: ["define", "implement", "class", "function", w]),
    (re.compile(r"(\w+)\s+error", re.I),
     lambda w: ["error", "exception", "catch", "throw", "handle", w]),
    (re.compile(r"test\s+(\w+)", re.I),
     lambda w: ["test", "spec", "mock", "assert", "expect", w]),
]


def expand_query(query: str, max_expansions: int = 3) -> str:
    """Return *query* followed by related terms, without duplicates.

    Adds terms implied by the phrasing ("how to X", "where is X", "X error",
    "test X"), the spelled-out form of abbreviations and back, and up to
    *max_expansions* synonyms per word.
    """
    tokens = [t for t in query.lower().split() if len(t) >= 2]
    terms: dict[str, None] = dict.fromkeys(tokens)

    for pattern, related in _CONTEXT_PATTERNS:
        match = pattern.search(query)
        if match:
            terms.update(dict.fromkeys(related(match.group(1).lower())))
            break

    for token in tokens:
        if token in ABBREVIATIONS:
            terms[ABBREVIATIONS[token]] = None
        for synonym in CODE_SYNONYMS.get(token, [])[:max_expansions]:
            terms[synonym] = None
        for abbreviation, full in ABBREVIATIONS.items():
            if full == token:
                terms[abbreviation] = None

    expanded = " ".join(terms)
    if expanded != query.lower():
        logger.debug("[ranking] Query expanded: %r -> %r", query, expanded)
    return expanded or query
