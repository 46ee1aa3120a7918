"""
ctxsync - Incremental semantic code index with symbol-graph retrieval.

This package provides:
- Syntax-aware chunking with tree-sitter grammars and a token-window fallback
- A content-addressed embedding cache shared across files and sync passes
- Crash-safe incremental sync against a LanceDB vector index
- A cross-file symbol graph used to expand query results
- File watching for continuous sync
"""

__version__ = "0.1.0"

from .models import (
    Chunk,
    FileSnapshot,
    IndexEntry,
    IndexFilter,
    IndexStats,
    QueryResult,
    RetrievedChunk,
    SyncReport,
)
from .config import Config
from .errors import (
    CtxsyncError,
    EmbeddingExhausted,
    EmbeddingTransient,
    IndexWriteFailed,
    ParseDegraded,
    QueryCancelled,
    SyncStateUnavailable,
)
from .grammars import GrammarRegistry
from .cache import EmbeddingCache
from .embeddings import EmbeddingEngine, HttpEmbeddingBackend, SentenceTransformerBackend
from .store import VectorIndex
from .graph import SymbolGraph
from .indexer import SyncOrchestrator
from .retrieval import RetrievalService
from .service import CodeIndex
from .watcher import FileWatcher
from .chunkers import ChunkStrategy, SyntaxChunker, TokenWindowChunker

__all__ = [
    # Models
    "Chunk",
    "FileSnapshot",
    "IndexEntry",
    "IndexFilter",
    "IndexStats",
    "QueryResult",
    "RetrievedChunk",
    "SyncReport",
    # Errors
    "CtxsyncError",
    "EmbeddingExhausted",
    "EmbeddingTransient",
    "IndexWriteFailed",
    "ParseDegraded",
    "QueryCancelled",
    "SyncStateUnavailable",
    # Core components
    "Config",
    "GrammarRegistry",
    "EmbeddingCache",
    "EmbeddingEngine",
    "SentenceTransformerBackend",
    "HttpEmbeddingBackend",
    "VectorIndex",
    "SymbolGraph",
    "SyncOrchestrator",
    "RetrievalService",
    "CodeIndex",
    "FileWatcher",
    # Chunkers
    "ChunkStrategy",
    "SyntaxChunker",
    "TokenWindowChunker",
]
