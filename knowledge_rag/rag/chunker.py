"""Chunker for the RAG Knowledge Base

Splits normalized text into overlapping, token-bounded chunks on natural
boundaries. Tokens are whitespace-delimited words. Every chunk is an exact
substring of the input text and records its character offsets, so the same
(text, chunk_size, chunk_overlap, min_chunk_size) always yields the same list.
"""

from typing import Dict, List, Optional, Tuple
import re

import structlog

from knowledge_rag.config.settings import get_settings
from knowledge_rag.core.exceptions import ValidationError
from knowledge_rag.rag.models import TextChunk

logger = structlog.get_logger(__name__)
settings = get_settings()

TOKEN_RE = re.compile(r"\S+")
_SENTENCE_END_RE = re.compile(r"[.!?][\"')\]]*$")

# (first token index, end token index exclusive)
Span = Tuple[int, int]


def count_tokens(text: str) -> int:
    """Count whitespace-delimited tokens."""
    return len(TOKEN_RE.findall(text))


def _validate(chunk_size: int, chunk_overlap: int, min_chunk_size: int) -> None:
    if chunk_size <= 0:
        raise ValidationError("chunk_size must be positive", details={"chunk_size": chunk_size})
    if chunk_overlap < 0 or chunk_overlap >= chunk_size:
        raise ValidationError(
            "chunk_overlap must be >= 0 and smaller than chunk_size",
            details={"chunk_size": chunk_size, "chunk_overlap": chunk_overlap},
        )
    if min_chunk_size < 0 or min_chunk_size > chunk_size:
        raise ValidationError(
            "min_chunk_size must be between 0 and chunk_size",
            details={"chunk_size": chunk_size, "min_chunk_size": min_chunk_size},
        )


def _split_spans(tokens: List[Tuple[int, int]], text: str, start: int, end: int, is_boundary) -> List[Span]:
    spans = []
    span_start = start
    for i in range(start, end - 1):
        gap = text[tokens[i][1]:tokens[i + 1][0]]
        if is_boundary(i, gap):
            spans.append((span_start, i + 1))
            span_start = i + 1
    spans.append((span_start, end))
    return spans


def _build_units(tokens: List[Tuple[int, int]], text: str, chunk_size: int) -> List[Span]:
    """Paragraphs that fit, else their sentences, else hard splits of chunk_size tokens."""
    paragraphs = _split_spans(tokens, text, 0, len(tokens), lambda i, gap: "\n\n" in gap)

    units: List[Span] = []
    for p_start, p_end in paragraphs:
        if p_end - p_start <= chunk_size:
            units.append((p_start, p_end))
            continue

        sentences = _split_spans(
            tokens, text, p_start, p_end,
            lambda i, gap: "\n" in gap or bool(_SENTENCE_END_RE.search(text[tokens[i][0]:tokens[i][1]])),
        )
        for s_start, s_end in sentences:
            for h_start in range(s_start, s_end, chunk_size):
                units.append((h_start, min(h_start + chunk_size, s_end)))
    return units


def chunk_text(
    text: str,
    chunk_size: int,
    chunk_overlap: int,
    min_chunk_size: int = 0,
) -> List[TextChunk]:
    """Split text into chunks.

    Whole units are accumulated until the next one would exceed the budget
    (``chunk_size`` for the first chunk, ``chunk_size - chunk_overlap`` after
    that). Each later chunk is prefixed with up to ``chunk_overlap`` tokens
    that precede its first new unit, never growing past ``chunk_size``.

    Args:
        text: Normalized text
        chunk_size: Maximum tokens per chunk
        chunk_overlap: Tokens carried over from the preceding content
        min_chunk_size: Chunks with fewer tokens are dropped, unless only one chunk exists

    Returns:
        Ordered chunks with contiguous indices from 0

    Raises:
        ValidationError: If the size parameters are inconsistent
    """
    _validate(chunk_size, chunk_overlap, min_chunk_size)

    tokens = [(m.start(), m.end()) for m in TOKEN_RE.finditer(text)]
    if not tokens:
        return []

    units = _build_units(tokens, text, chunk_size)

    # Group units into the new-content span of each chunk
    groups: List[Span] = []
    group_start, group_end = units[0]
    for unit_start, unit_end in units[1:]:
        budget = chunk_size if not groups else chunk_size - chunk_overlap
        if unit_end - group_start <= budget:
            group_end = unit_end
        else:
            groups.append((group_start, group_end))
            group_start, group_end = unit_start, unit_end
    groups.append((group_start, group_end))

    chunks: List[TextChunk] = []
    for new_start, end in groups:
        overlap = min(chunk_overlap, chunk_size - (end - new_start), new_start)
        start = new_start - max(overlap, 0)
        start_offset = tokens[start][0]
        end_offset = tokens[end - 1][1]
        chunks.append(TextChunk(
            content=text[start_offset:end_offset],
            chunk_index=len(chunks),
            start_offset=start_offset,
            end_offset=end_offset,
            token_count=end - start,
        ))

    if len(chunks) > 1:
        kept = [c for c in chunks if c.token_count >= min_chunk_size]
        dropped = len(chunks) - len(kept)
        if dropped and kept:
            logger.debug("Dropped undersized chunks", dropped=dropped, min_chunk_size=min_chunk_size)
            chunks = [c.model_copy(update={"chunk_index": i}) for i, c in enumerate(kept)]

    return chunks


def chunking_stats(chunks: List[TextChunk]) -> Dict[str, float]:
    """Summary statistics over a chunk list."""
    if not chunks:
        return {"total_chunks": 0, "average_tokens": 0.0, "min_tokens": 0, "max_tokens": 0}
    counts = [c.token_count for c in chunks]
    return {
        "total_chunks": len(chunks),
        "average_tokens": sum(counts) / len(counts),
        "min_tokens": min(counts),
        "max_tokens": max(counts),
    }


class Chunker:
    """Chunker bound to configured defaults."""

    def __init__(
        self,
        chunk_size: Optional[int] = None,
        chunk_overlap: Optional[int] = None,
        min_chunk_size: Optional[int] = None,
    ):
        self.chunk_size = chunk_size if chunk_size is not None else settings.rag.chunk_size
        self.chunk_overlap = chunk_overlap if chunk_overlap is not None else settings.rag.chunk_overlap
        self.min_chunk_size = min_chunk_size if min_chunk_size is not None else settings.rag.min_chunk_size

    def chunk(
        self,
        text: str,
        chunk_size: Optional[int] = None,
        chunk_overlap: Optional[int] = None,
    ) -> List[TextChunk]:
        """Chunk text, with optional per-call size overrides."""
        size = chunk_size if chunk_size is not None else self.chunk_size
        overlap = chunk_overlap if chunk_overlap is not None else self.chunk_overlap
        # An override below the configured overlap would otherwise be rejected
        if chunk_size is not None and chunk_overlap is None:
            overlap = min(overlap, size // 5)
        return chunk_text(text, size, overlap, min(self.min_chunk_size, size))
