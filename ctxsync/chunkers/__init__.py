"""
Chunking strategies for ctxsync.

Provides different strategies for splitting files into semantic chunks:
- SyntaxChunker: syntax-tree chunking for every language with a grammar
- TokenWindowChunker: token windows for grammar-less files and parse failures
"""

from .base import ChunkStrategy, count_tokens
from .treesitter import SyntaxChunker
from .fallback import TokenWindowChunker

__all__ = [
    "ChunkStrategy",
    "SyntaxChunker",
    "TokenWindowChunker",
    "count_tokens",
]
