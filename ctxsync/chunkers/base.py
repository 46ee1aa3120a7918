"""
Base chunking strategy interface for ctxsync.

Defines the abstract base class that all chunking strategies implement,
plus the token counting and byte/line bookkeeping they share.
"""

import bisect
import re
from abc import ABC, abstractmethod
from typing import Optional

from ..grammars import SyntaxTree
from ..models import Chunk
from ..utils import content_hash

_TOKEN_RE = re.compile(r"\w+|[^\w\s]")


def count_tokens(text: str) -> int:
    """
    Estimate the token count of text.

    Words and individual punctuation marks count as one token each, which
    tracks code tokenizers closely enough for budgeting.
    """
    return len(_TOKEN_RE.findall(text))


def token_offsets(text: str) -> list[int]:
    """Character offsets at which each token starts."""
    return [m.start() for m in _TOKEN_RE.finditer(text)]


class LineIndex:
    """Maps byte offsets in a source buffer to 1-indexed line numbers."""

    def __init__(self, source: bytes):
        self.source = source
        self._newlines = [i for i, b in enumerate(source) if b == 0x0A]

    def line_of(self, offset: int) -> int:
        return bisect.bisect_left(self._newlines, offset) + 1

    def line_range(self, start: int, end: int) -> tuple[int, int]:
        """Line numbers of the first and last byte of [start, end)."""
        start_line = self.line_of(start)
        end_line = self.line_of(max(start, end - 1))
        return start_line, end_line


class ChunkStrategy(ABC):
    """
    Abstract base class for chunking strategies.

    Implementations must be deterministic: the same content and language
    always produce the same chunk sequence. Chunks are ordered, do not
    overlap, and together cover every byte of a non-blank file.
    """

    @abstractmethod
    def chunk(
        self,
        content: str,
        path: str,
        language: str,
        tree: Optional[SyntaxTree] = None,
    ) -> list[Chunk]:
        """
        Split content into semantic chunks.

        Args:
            content: The file content to chunk
            path: File path relative to the project root
            language: Detected language
            tree: Parsed syntax tree, or None when no grammar applies

        Returns:
            Ordered list of Chunk objects
        """

    @staticmethod
    def make_chunk(
        source: bytes,
        lines: LineIndex,
        start: int,
        end: int,
        path: str,
        language: str,
        kind: str,
        name: Optional[str] = None,
        symbol_path: str = "",
    ) -> Chunk:
        text = source[start:end].decode("utf8", errors="replace")
        start_line, end_line = lines.line_range(start, end)
        return Chunk(
            path=path,
            start_byte=start,
            end_byte=end,
            start_line=start_line,
            end_line=end_line,
            language=language,
            kind=kind,
            name=name,
            symbol_path=symbol_path,
            content_hash=content_hash(text),
            text=text,
        )
