"""Boundary-aware code chunking for the RAG pipeline.

Splits a source file into token-budgeted chunks that follow the structure of
the code: functions, classes and methods are kept whole, consecutive chunks
share a short overlap window so the embedding model sees some context across
the cut.

Structure is detected heuristically (regex for declarations across several
language families, then brace matching or indentation tracking to find where
each declaration ends).  When unsure, a rule picks the longer span:
overlapping spans are merged, a span that stops short splits a function.

Token counts are estimated as ``ceil(chars * tokens_per_char)``; with the
default 0.25 this slightly over-counts dense code, which keeps chunks on the
safe side of model limits without depending on a real tokenizer.
"""
import logging
import math
import re
from dataclasses import dataclass
from typing import List

logger = logging.getLogger(__name__)

# Context windows of the models retrieved context is typically sent to.
MODEL_TOKEN_LIMITS: dict[str, int] = {
    "gpt-4.1":      128000,
    "gpt-4.1-mini": 128000,
    "gpt-4o":       128000,
    "gpt-4o-mini":  128000,
    "o3":           200000,
    "o3-mini":      200000,
}
DEFAULT_MODEL_TOKEN_LIMIT = 8000

# How many lines a declaration header may span before its body must start.
MAX_HEADER_LINES = 8


@dataclass
class Boundary:
    """A span ``[start, end)`` of the file treated as one indivisible unit."""

    start: int
    end: int
    kind: str  # function | class | method | module | block | lines
    name: str = ""

    @property
    def structural(self) -> bool:
        return self.kind not in ("block", "lines")


@dataclass
class TextChunk:
    """A chunk of a file.

    ``content == text[start - overlap:end]``: the first ``overlap`` characters
    repeat the tail of the previous chunk, the rest is new text.
    """

    content: str
    start: int
    end: int
    overlap: int
    tokens: int
    kind: str

    @property
    def new_content(self) -> str:
        """Content without the overlap copied from the previous chunk."""
        return self.content[self.overlap:]


# ---------------------------------------------------------------------------
# Declaration patterns
# ---------------------------------------------------------------------------

_BOUNDARY_PATTERNS: list[tuple[re.Pattern, str]] = [
    # JavaScript / TypeScript: functions, classes, function-valued bindings
    (re.compile(
        r"^(?:export[ \t]+)?(?:default[ \t]+)?(?:async[ \t]+)?"
        r"(?:function[ \t]*\*?[ \t]*[\w$]+"
        r"|(?:abstract[ \t]+)?class[ \t]+[\w$]+"
        r"|(?:const|let|var)[ \t]+[\w$]+[ \t]*=[ \t]*(?:async[ \t]+)?"
        r"(?:function\b|\([^)\n]*\)[ \t]*=>|[\w$]+[ \t]*=>))",
        re.M,
    ), "function"),
    # Methods: ``name(args) {`` with optional modifiers and return type
    (re.compile(
        r"^[ \t]*(?:(?:public|private|protected|static|async|get|set|override)[ \t]+)*"
        r"(?!(?:if|for|while|switch|catch|with|return|function|else|do)\b)"
        r"[A-Za-z_$][\w$]*[ \t]*\([^)\n]*\)[ \t]*(?::[ \t]*[^{\n]+)?\{",
        re.M,
    ), "method"),
    # Python
    (re.compile(r"^(?:async[ \t]+)?def[ \t]+\w+|^class[ \t]+\w+", re.M), "function"),
    # Java / C# / Kotlin declarations introduced by an access modifier
    (re.compile(
        r"^[ \t]*(?:public|private|protected|internal)[ \t]+"
        r"(?:(?:static|final|abstract|sealed|override|virtual|async|synchronized|partial|readonly)[ \t]+)*"
        r"(?:class|interface|enum|record|struct|[\w<>\[\],.?]+)[ \t]+\w+",
        re.M,
    ), "method"),
    # Go
    (re.compile(
        r"^func[ \t]+(?:\([^)\n]*\)[ \t]*)?\w+|^type[ \t]+\w+[ \t]+(?:struct|interface)\b",
        re.M,
    ), "function"),
    # Rust
    (re.compile(
        r"^[ \t]*(?:pub(?:\([^)\n]*\))?[ \t]+)?(?:async[ \t]+)?(?:unsafe[ \t]+)?"
        r"(?:fn|struct|enum|trait|impl|mod)\b",
        re.M,
    ), "function"),
    # Module / namespace blocks
    (re.compile(r"^(?:module|namespace)[ \t]+[\w.]+", re.M), "module"),
]

_TYPE_KEYWORDS = re.compile(r"\b(?:class|interface|struct|enum|trait|record|type|impl)\b")
_TRAILING_COMMENT = re.compile(r"\s+(?:#|//).*$")
_BLOCK_CLOSE_TAIL = re.compile(r"^[\s;,)]*$")


def _kind_for(declaration: str, default: str) -> str:
    """Classify a matched declaration as ``class`` or the pattern default."""
    return "class" if _TYPE_KEYWORDS.search(declaration) else default


def _indent_width(line: str) -> int:
    return len(line) - len(line.lstrip(" \t"))


def _line_end(text: str, pos: int) -> int:
    """Index of the newline ending the line at *pos* (or ``len(text)``)."""
    end = text.find("\n", pos)
    return len(text) if end == -1 else end


def _find_unquoted(line: str, char: str) -> int:
    """Index of the first *char* in *line* outside string literals, or -1."""
    quote = ""
    i = 0
    while i < len(line):
        ch = line[i]
        if quote:
            if ch == "\\":
                i += 2
                continue
            if ch == quote:
                quote = ""
        elif ch in "\"'`":
            quote = ch
        elif ch == char:
            return i
        i += 1
    return -1


def _starts_declaration(text: str, pos: int) -> bool:
    return any(pattern.match(text, pos) for pattern, _ in _BOUNDARY_PATTERNS)


def _next_declaration(text: str, pos: int) -> int:
    """Start of the first declaration at or after *pos*, or ``len(text)``."""
    starts = [m.start() for m in (p.search(text, pos) for p, _ in _BOUNDARY_PATTERNS) if m]
    return min(starts) if starts else len(text)


# ---------------------------------------------------------------------------
# Block end detection
# ---------------------------------------------------------------------------

def _find_matching_brace(text: str, open_pos: int) -> int:
    """Return the index just past the brace closing the one at *open_pos*.

    String literals (``'``, ``"``, backtick) and ``//`` / ``/* */`` comments
    are skipped so braces inside them are not counted.  A quote left open at
    the end of a line is dropped, except for template literals which may span
    lines.  Unbalanced input runs to the end of the text.
    """
    n = len(text)
    depth = 0
    quote = ""
    i = open_pos
    while i < n:
        ch = text[i]
        if quote:
            if ch == "\\":
                i += 2
                continue
            if ch == quote or (ch == "\n" and quote != "`"):
                quote = ""
            i += 1
            continue

        if ch in "\"'`":
            quote = ch
        elif text.startswith("//", i):
            i = _line_end(text, i)
            continue
        elif text.startswith("/*", i):
            close = text.find("*/", i + 2)
            i = n if close == -1 else close + 2
            continue
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return _absorb_line_tail(text, i + 1)
        i += 1
    return n


def _absorb_line_tail(text: str, pos: int) -> int:
    """Extend *pos* over the rest of its line when only ``;``/``)``/``,`` remain."""
    end = _line_end(text, pos)
    if _BLOCK_CLOSE_TAIL.match(text[pos:end]):
        return min(end + 1, len(text))
    return pos


def _find_indent_end(text: str, decl_start: int, header_end: int) -> int:
    """End of an indentation-delimited block.

    The block runs until the first non-blank line indented no deeper than
    the declaration line itself.
    """
    line_start = text.rfind("\n", 0, decl_start) + 1
    base = _indent_width(text[line_start:_line_end(text, line_start)])

    pos = header_end + 1
    while pos < len(text):
        end = _line_end(text, pos)
        line = text[pos:end]
        if line.strip() and _indent_width(line) <= base:
            return pos
        pos = end + 1
    return len(text)


def _find_block_end(text: str, start: int) -> int:
    """Find where the declaration starting at *start* ends.

    The header (up to ``MAX_HEADER_LINES`` lines) decides the block model:

    * a line ending in ``:`` → indentation-delimited body (Python);
    * a ``{`` outside strings → brace-delimited body;
    * a line ending in ``;`` → single-statement declaration;
    * a new declaration before any of these → the header stands alone.

    If none applies the span runs to the next declaration or EOF.
    """
    pos = start
    for line_no in range(MAX_HEADER_LINES):
        if pos >= len(text):
            return len(text)
        if line_no > 0 and _starts_declaration(text, pos):
            return pos

        end = _line_end(text, pos)
        line = text[pos:end]
        code = _TRAILING_COMMENT.sub("", line).rstrip()

        if code.endswith(":"):
            return _find_indent_end(text, start, end)

        brace = _find_unquoted(line, "{")
        if brace != -1:
            return _find_matching_brace(text, pos + brace)

        if code.endswith(";"):
            return min(end + 1, len(text))

        pos = end + 1

    return _next_declaration(text, _line_end(text, start) + 1)


# ---------------------------------------------------------------------------
# Chunker
# ---------------------------------------------------------------------------

class CodeChunker:
    """Split source text into overlapping, structure-aligned chunks.

    Args:
        tokens_per_char:  Token estimate per character (0.25 ≈ 4 chars/token).
        overlap_tokens:   Size of the overlap window carried into the next
                          chunk.
        reserved_tokens:  Tokens kept free for prompt and response when
                          deriving a budget from a model's context window.
        max_chunk_tokens: Upper bound on a chunk's budget, matching the input
                          size an embedding request accepts.
    """

    def __init__(
        self,
        tokens_per_char: float = 0.25,
        overlap_tokens: int = 200,
        reserved_tokens: int = 2000,
        max_chunk_tokens: int = 1000,
    ) -> None:
        if tokens_per_char <= 0:
            raise ValueError("tokens_per_char must be positive")
        self.tokens_per_char = tokens_per_char
        self.overlap_tokens = overlap_tokens
        self.reserved_tokens = reserved_tokens
        self.max_chunk_tokens = max_chunk_tokens

    # ------------------------------------------------------------------
    # Token arithmetic
    # ------------------------------------------------------------------

    def estimate_tokens(self, text: str) -> int:
        return self._tokens_for(len(text))

    def _tokens_for(self, n_chars: int) -> int:
        return math.ceil(n_chars * self.tokens_per_char)

    def _chars_for(self, tokens: int) -> int:
        return int(tokens / self.tokens_per_char)

    @property
    def overlap_chars(self) -> int:
        return self._chars_for(self.overlap_tokens)

    def token_budget_for_model(self, model: str) -> int:
        """Tokens available for one chunk when targeting *model*."""
        limit = MODEL_TOKEN_LIMITS.get(model, DEFAULT_MODEL_TOKEN_LIMIT)
        return max(1, limit - self.reserved_tokens)

    def effective_budget(self, token_budget: int) -> int:
        if token_budget <= 0:
            raise ValueError("token_budget must be positive")
        return min(token_budget, self.max_chunk_tokens)

    # ------------------------------------------------------------------
    # Boundaries
    # ------------------------------------------------------------------

    def find_code_boundaries(self, text: str, token_budget: int) -> List[Boundary]:
        """Cover *text* with ascending, non-overlapping boundaries.

        Structural declarations are merged when their spans overlap; the text
        between them becomes ``block`` boundaries.  Without any declaration
        the whole file is cut into evenly sized ``lines`` boundaries.
        Non-structural boundaries never exceed the budget.
        """
        if not text:
            return []

        budget = self.effective_budget(token_budget)

        found: List[Boundary] = []
        for pattern, default_kind in _BOUNDARY_PATTERNS:
            for match in pattern.finditer(text):
                start = match.start()
                end = max(_find_block_end(text, start), start + 1)
                found.append(Boundary(
                    start=start,
                    end=min(end, len(text)),
                    kind=_kind_for(match.group(0), default_kind),
                    name=match.group(0).strip(),
                ))

        if not found:
            return self._split_plain(text, 0, len(text), "lines", budget)

        found.sort(key=lambda b: (b.start, -b.end))
        merged: List[Boundary] = []
        for boundary in found:
            if merged and boundary.start < merged[-1].end:
                merged[-1].end = max(merged[-1].end, boundary.end)
            else:
                merged.append(boundary)

        covered: List[Boundary] = []
        pos = 0
        for boundary in merged:
            if boundary.start > pos:
                covered.extend(self._split_plain(text, pos, boundary.start, "block", budget))
            covered.append(boundary)
            pos = boundary.end
        if pos < len(text):
            covered.extend(self._split_plain(text, pos, len(text), "block", budget))

        return covered

    def _split_plain(self, text: str, start: int, end: int, kind: str, budget: int) -> List[Boundary]:
        """Cut ``text[start:end]`` into evenly sized pieces on line breaks.

        Pieces leave room for the overlap window (up to half the budget) so
        consecutive chunks of unstructured text still share context.  Lines
        longer than a piece are cut at character positions.
        """
        budget_chars = max(1, self._chars_for(budget))
        piece_chars = max(1, budget_chars - min(self.overlap_chars, budget_chars // 2))
        span = end - start
        if span <= piece_chars:
            return [Boundary(start, end, kind)]

        target = math.ceil(span / math.ceil(span / piece_chars))
        pieces: List[Boundary] = []
        piece_start = start
        pos = start
        while pos < end:
            line_end = min(_line_end(text, pos) + 1, end)
            if line_end - pos > piece_chars:
                if pos > piece_start:
                    pieces.append(Boundary(piece_start, pos, kind))
                for cut in range(pos, line_end, piece_chars):
                    pieces.append(Boundary(cut, min(cut + piece_chars, line_end), kind))
                piece_start = line_end
            elif line_end - piece_start > target and pos > piece_start:
                pieces.append(Boundary(piece_start, pos, kind))
                piece_start = pos
            pos = line_end
        if piece_start < end:
            pieces.append(Boundary(piece_start, end, kind))
        return pieces

    # ------------------------------------------------------------------
    # Chunking
    # ------------------------------------------------------------------

    def chunk(self, text: str, token_budget: int) -> List[TextChunk]:
        """Split *text* into chunks of at most *token_budget* tokens.

        The budget is capped at ``max_chunk_tokens``.  A structural boundary
        larger than the budget is emitted whole rather than cut.

        Args:
            text:         Full file text.
            token_budget: Target chunk size in estimated tokens.

        Returns:
            Chunks in file order.  Empty text yields no chunks.
        """
        if not text:
            return []

        budget = self.effective_budget(token_budget)
        budget_chars = self._chars_for(budget)
        boundaries = self.find_code_boundaries(text, budget)

        chunks: List[TextChunk] = []
        kinds: List[str] = []
        cur_start = 0
        cur_end = 0
        cur_overlap = 0

        for boundary in boundaries:
            seg_len = boundary.end - boundary.start
            cur_len = cur_end - cur_start + cur_overlap

            if cur_end > cur_start and self._tokens_for(cur_len + seg_len) > budget:
                chunks.append(self._make_chunk(text, cur_start, cur_end, cur_overlap, kinds))
                cur_overlap = min(self.overlap_chars, cur_len, max(0, budget_chars - seg_len))
                cur_start = boundary.start
                kinds = []

            kinds.append(boundary.kind)
            cur_end = boundary.end

        if cur_end > cur_start:
            chunks.append(self._make_chunk(text, cur_start, cur_end, cur_overlap, kinds))

        logger.debug(
            "[CodeChunker] %d chars -> %d boundaries -> %d chunks (budget=%d)",
            len(text), len(boundaries), len(chunks), budget,
        )
        return chunks

    def _make_chunk(self, text: str, start: int, end: int, overlap: int, kinds: List[str]) -> TextChunk:
        content = text[start - overlap:end]
        kind = next((k for k in kinds if k not in ("block", "lines")), kinds[0] if kinds else "block")
        return TextChunk(
            content=content,
            start=start,
            end=end,
            overlap=overlap,
            tokens=self.estimate_tokens(content),
            kind=kind,
        )
