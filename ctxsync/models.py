"""
Data models for ctxsync.

Defines Pydantic models for file snapshots, chunks, embedding records,
index entries, symbol graph records, sync state and reports, plus the
LanceDB schema factory for index entries.
"""

import datetime
import hashlib
import time
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, create_model
from lancedb.pydantic import LanceModel, Vector


class FileSnapshot(BaseModel):
    """State of one tracked file as seen by a committed sync pass."""
    model_config = ConfigDict(frozen=True)

    path: str = Field(description="File path relative to project root (POSIX separators)")
    content_hash: str = Field(description="SHA256 of the raw file content")
    language: str
    revision: Optional[str] = Field(default=None, description="Git HEAD when the file was seen")
    size_bytes: int = 0


class Chunk(BaseModel):
    """
    A syntactically bounded slice of a file.

    Chunks are produced deterministically by the chunkers and never mutated.
    Two chunks with the same content_hash are interchangeable for embedding.
    """
    model_config = ConfigDict(frozen=True)

    path: str
    start_byte: int = Field(ge=0)
    end_byte: int = Field(ge=0)
    start_line: int = Field(ge=1)
    end_line: int = Field(ge=1)
    language: str
    kind: str = Field(description="function, class, method, module, block, window, ...")
    name: Optional[str] = None
    symbol_path: str = Field(default="", description="Dotted path of the enclosing symbol")
    content_hash: str
    text: str

    @property
    def external_id(self) -> str:
        """Reproducible index ID derived from path, range and content hash."""
        return make_external_id(self.path, self.start_byte, self.end_byte, self.content_hash)


def make_external_id(path: str, start_byte: int, end_byte: int, content_hash: str) -> str:
    key = f"{path}\x00{start_byte}:{end_byte}\x00{content_hash}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()[:32]


class EmbeddingRecord(BaseModel):
    """A cached embedding, keyed by chunk content hash and model."""
    content_hash: str
    vector: list[float]
    model: str
    created_at: float = Field(default_factory=time.time)
    last_seen_at: float = Field(default_factory=time.time)


class IndexEntry(BaseModel):
    """
    One row of the external vector index.

    The id is reproducible from the chunk it was built from, so upserting an
    unchanged chunk again replaces the row with identical values.
    """
    id: str = Field(description="External ID (see make_external_id)")
    vector: list[float] = Field(default_factory=list)
    text: str
    path: str
    start_line: int = Field(ge=1)
    end_line: int = Field(ge=1)
    start_byte: int = Field(ge=0)
    end_byte: int = Field(ge=0)
    language: str
    kind: str
    name: Optional[str] = None
    symbol_path: str = ""
    content_hash: str
    indexed_at: float = Field(default_factory=time.time)

    @classmethod
    def from_chunk(cls, chunk: Chunk, vector: list[float]) -> "IndexEntry":
        return cls(
            id=chunk.external_id,
            vector=vector,
            text=chunk.text,
            path=chunk.path,
            start_line=chunk.start_line,
            end_line=chunk.end_line,
            start_byte=chunk.start_byte,
            end_byte=chunk.end_byte,
            language=chunk.language,
            kind=chunk.kind,
            name=chunk.name,
            symbol_path=chunk.symbol_path,
            content_hash=chunk.content_hash,
        )


def index_entry_model(dimension: int) -> type[LanceModel]:
    """
    Build the LanceDB schema model for index entries of a given dimension.

    The vector width is a property of the embedding model, so the schema
    cannot be a static class like the other models.
    """
    fields = {
        name: (info.annotation, info)
        for name, info in IndexEntry.model_fields.items()
        if name != "vector"
    }
    fields["vector"] = (Vector(dimension), Field(description="Embedding vector"))
    return create_model(f"IndexEntryRecord{dimension}", __base__=LanceModel, **fields)


def embedding_record_model(dimension: int) -> type[LanceModel]:
    """Build the LanceDB schema model for cached embeddings."""
    fields = {
        name: (info.annotation, info)
        for name, info in EmbeddingRecord.model_fields.items()
        if name != "vector"
    }
    fields["vector"] = (Vector(dimension), Field(description="Embedding vector"))
    return create_model(f"EmbeddingRecord{dimension}", __base__=LanceModel, **fields)


class IndexFilter(BaseModel):
    """Metadata filter for index search and delete calls. Empty matches everything."""
    paths: Optional[list[str]] = None
    path_prefixes: Optional[list[str]] = None
    languages: Optional[list[str]] = None
    kinds: Optional[list[str]] = None
    ids: Optional[list[str]] = None
    exclude_ids: Optional[list[str]] = None

    def is_empty(self) -> bool:
        return not any(
            value is not None
            for value in (self.paths, self.path_prefixes, self.languages,
                          self.kinds, self.ids, self.exclude_ids)
        )


class SearchHit(BaseModel):
    """A vector search result: an index entry and its similarity score."""
    entry: IndexEntry
    score: float = Field(description="Similarity score (0-1)", ge=0, le=1)

    def __str__(self) -> str:
        return (
            f"{self.entry.path}:{self.entry.start_line}-{self.entry.end_line} "
            f"({self.score:.3f})\n{self.entry.text[:100]}..."
        )


class RetrievedChunk(BaseModel):
    """A chunk returned by the retrieval service."""
    entry: IndexEntry
    score: float = Field(ge=0, le=1)
    origin: Literal["direct", "expanded"] = "direct"
    via: Optional[str] = Field(default=None, description="Symbol edge that pulled an expanded chunk in")


class QueryResult(BaseModel):
    """Ranked retrieval results. degraded is set when graph expansion failed."""
    query: str
    results: list[RetrievedChunk] = Field(default_factory=list)
    degraded: bool = False
    degraded_reason: Optional[str] = None

    @property
    def direct(self) -> list[RetrievedChunk]:
        return [r for r in self.results if r.origin == "direct"]

    @property
    def expanded(self) -> list[RetrievedChunk]:
        return [r for r in self.results if r.origin == "expanded"]


# ===== Symbol graph =====


class SymbolDefinition(BaseModel):
    """A symbol defined in a file."""
    symbol_path: str
    name: str
    kind: str
    start_line: int
    end_line: int


class SymbolReference(BaseModel):
    """A syntactic reference from a symbol (or module scope) to a name."""
    source: str = Field(description="Symbol path of the referencing scope ('' for module)")
    name: str
    relation: Literal["call", "import", "type"] = "call"
    line: int = 1


class FileSymbols(BaseModel):
    """Graph delta for one file, computed by a worker and applied serially."""
    path: str
    language: str
    definitions: list[SymbolDefinition] = Field(default_factory=list)
    references: list[SymbolReference] = Field(default_factory=list)


class SymbolNode(BaseModel):
    id: int
    path: str
    symbol_path: str = Field(description="'' denotes the file's module scope")
    name: Optional[str] = None
    kind: str = "module"
    start_line: int = 1
    end_line: int = 1


class SymbolEdge(BaseModel):
    source: int
    target: int
    relation: Literal["defines", "references"]
    via: Optional[str] = Field(default=None, description="call, import or type for references")


# ===== Sync =====


class FileFailure(BaseModel):
    """A file that could not be processed during a sync pass."""
    path: str
    stage: str = Field(description="chunking, embedding, indexing, graph or delete")
    error_type: str
    reason: str


class SyncReport(BaseModel):
    """Outcome of one sync pass."""
    added: int = 0
    modified: int = 0
    removed: int = 0
    failed: int = 0
    failures: list[FileFailure] = Field(default_factory=list)
    unchanged: int = 0
    chunks_upserted: int = 0
    chunks_deleted: int = 0
    embeddings_computed: int = 0
    cache_hits: int = 0
    full_rebuild: bool = False
    cancelled: bool = False
    committed: bool = False
    duration_seconds: float = 0.0

    @property
    def failed_paths(self) -> list[str]:
        return [f.path for f in self.failures]

    def __str__(self) -> str:
        lines = [
            f"Added: {self.added}",
            f"Modified: {self.modified}",
            f"Removed: {self.removed}",
            f"Failed: {self.failed}",
            f"Unchanged: {self.unchanged}",
            f"Chunks upserted: {self.chunks_upserted}",
            f"Chunks deleted: {self.chunks_deleted}",
            f"Embeddings computed: {self.embeddings_computed} (cache hits: {self.cache_hits})",
        ]
        if self.full_rebuild:
            lines.append("Full rebuild: yes")
        if self.cancelled:
            lines.append("Cancelled: yes")
        for failure in self.failures:
            lines.append(f"  FAILED {failure.path} [{failure.stage}] {failure.error_type}: {failure.reason}")
        return "\n".join(lines)


class SyncState(BaseModel):
    """Persisted outcome of the last committed sync pass."""
    pipeline_version: str
    embedding_model: str
    last_sync_at: Optional[float] = None
    snapshots: dict[str, FileSnapshot] = Field(default_factory=dict)
    pending: list[str] = Field(
        default_factory=list,
        description="Paths a pass started changing before it committed; reprocessed next pass",
    )


class IndexStats(BaseModel):
    """Statistics about the indexed codebase."""
    total_files: int = 0
    total_chunks: int = 0
    total_size_bytes: int = 0
    languages: dict[str, int] = Field(default_factory=dict)
    last_indexed: Optional[float] = None
    cache_entries: int = 0
    graph_nodes: int = 0
    graph_edges: int = 0
    dangling_references: int = 0
    last_sync: Optional[float] = None

    def __str__(self) -> str:
        """Format stats for display."""
        lines = [
            f"Total files: {self.total_files}",
            f"Total chunks: {self.total_chunks}",
            f"Index size: {self.total_size_bytes / 1024 / 1024:.2f} MB",
            f"Cached embeddings: {self.cache_entries}",
            f"Symbol graph: {self.graph_nodes} nodes, {self.graph_edges} edges, "
            f"{self.dangling_references} dangling",
        ]
        if self.languages:
            lines.append("Languages:")
            for lang, count in sorted(self.languages.items(), key=lambda x: -x[1]):
                lines.append(f"  {lang}: {count}")
        if self.last_sync:
            dt = datetime.datetime.fromtimestamp(self.last_sync)
            lines.append(f"Last sync: {dt.strftime('%Y-%m-%d %H:%M:%S')}")
        return "\n".join(lines)
