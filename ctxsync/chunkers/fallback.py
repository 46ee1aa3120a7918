"""
Fallback chunking strategy for files without a usable grammar.

Splits content into consecutive, non-overlapping windows of at most
max_tokens tokens, breaking at line ends where possible.
"""

import logging
from typing import Optional

from ..grammars import SyntaxTree
from ..models import Chunk
from .base import ChunkStrategy, LineIndex, count_tokens, token_offsets

logger = logging.getLogger(__name__)


def window_spans(source: bytes, start: int, end: int, max_tokens: int) -> list[tuple[int, int]]:
    """
    Split the byte range [start, end) into token-bounded windows.

    Lines are packed greedily; a single line longer than max_tokens is cut
    at token starts. Trailing token-free text joins the previous window so
    every byte is covered exactly once.

    Returns:
        List of (start, end) byte spans in source order
    """
    spans: list[tuple[int, int]] = []
    window_start = start
    window_tokens = 0
    pos = start

    while pos < end:
        newline = source.find(b"\n", pos, end)
        line_end = end if newline == -1 else newline + 1
        line_tokens = count_tokens(source[pos:line_end].decode("utf8", errors="replace"))

        if line_tokens > max_tokens:
            pieces = _split_long_line(source, pos, line_end, max_tokens)
            if window_tokens:
                spans.append((window_start, pos))
            else:
                # Blank lines before the long line belong to its first piece
                pieces[0] = (window_start, pieces[0][1])
            spans.extend(pieces)
            window_start = line_end
            window_tokens = 0
        elif window_tokens + line_tokens > max_tokens and pos > window_start:
            spans.append((window_start, pos))
            window_start = pos
            window_tokens = line_tokens
        else:
            window_tokens += line_tokens
        pos = line_end

    if window_start < end:
        if window_tokens == 0 and spans:
            last_start, _ = spans.pop()
            spans.append((last_start, end))
        else:
            spans.append((window_start, end))
    return spans


def _split_long_line(source: bytes, start: int, end: int, max_tokens: int) -> list[tuple[int, int]]:
    """Cut one line into pieces of max_tokens tokens, at token starts."""
    text = source[start:end].decode("utf8", errors="replace")
    offsets = token_offsets(text)
    cut_chars = offsets[max_tokens::max_tokens]

    spans = []
    piece_start = start
    for char_offset in cut_chars:
        cut = start + len(text[:char_offset].encode("utf8"))
        spans.append((piece_start, cut))
        piece_start = cut
    spans.append((piece_start, end))
    return spans


class TokenWindowChunker(ChunkStrategy):
    """
    Token-window chunking for plain text, unknown languages and parse failures.
    """

    def __init__(self, max_tokens: int = 500):
        """
        Initialize the fallback chunker.

        Args:
            max_tokens: Maximum tokens per window
        """
        if max_tokens < 1:
            raise ValueError("max_tokens must be positive")
        self.max_tokens = max_tokens

    def chunk(
        self,
        content: str,
        path: str,
        language: str,
        tree: Optional[SyntaxTree] = None,
    ) -> list[Chunk]:
        if not content.strip():
            return []

        source = content.encode("utf8")
        lines = LineIndex(source)
        chunks = [
            self.make_chunk(source, lines, start, end, path, language, kind="window")
            for start, end in window_spans(source, 0, len(source), self.max_tokens)
        ]
        logger.debug(f"Chunked {path} into {len(chunks)} windows using fallback strategy")
        return chunks
