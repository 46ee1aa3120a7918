"""
Consumer API for ctxsync.

CodeIndex wires the configured components together for one project and
exposes sync, query and status. Transport layers (CLI, watchers, servers)
call this instead of assembling the pipeline themselves.
"""

import logging
import threading
from pathlib import Path
from typing import Callable, Optional

from .cache import EmbeddingCache
from .chunkers import SyntaxChunker
from .config import Config
from .embeddings import EmbeddingBackend, EmbeddingEngine
from .errors import CtxsyncError, SyncStateUnavailable
from .filetree import DirectoryFileTree, FileTree
from .graph import SymbolGraph
from .indexer import SyncOrchestrator
from .models import IndexFilter, IndexStats, QueryResult, SyncReport
from .progress import ProgressEvent
from .retrieval import RetrievalService
from .store import VectorIndex
from .sync_state import PIPELINE_VERSION, SyncStateStore

logger = logging.getLogger(__name__)


class CodeIndex:
    """
    A project's semantic code index.

    Example:
        with CodeIndex.open(Path(".")) as code_index:
            code_index.sync()
            result = code_index.query("parse config file", k=5)
    """

    def __init__(
        self,
        config: Config,
        tree: Optional[FileTree] = None,
        backend: Optional[EmbeddingBackend] = None,
        progress_callback: Optional[Callable[[ProgressEvent], None]] = None,
    ):
        """
        Initialize the index for config.project_root.

        Args:
            config: Project configuration
            tree: File tree to index (the project directory if omitted)
            backend: Embedding backend (built from the [embeddings] section if omitted)
            progress_callback: Optional callback receiving per-file ProgressEvents
        """
        self.config = config
        self.engine = EmbeddingEngine.from_config(config.embeddings, backend=backend)
        dimension = self.engine.dimension

        self.index = VectorIndex(
            config.db_path,
            dimension,
            table_name=config.get("store", "table_name", default="code_chunks"),
            write_retries=config.get("store", "write_retries", default=3),
            retry_delay=config.get("store", "retry_delay", default=0.2),
        )
        self.cache = EmbeddingCache(config.db_path, self.engine.model_id, dimension)
        self.cache.load()
        self.graph = SymbolGraph.load(config.graph_path)
        self.state_store = SyncStateStore(config.sync_state_path)
        self.tree = tree or DirectoryFileTree.from_config(config.project_root, config.indexer)

        self.orchestrator = SyncOrchestrator(
            tree=self.tree,
            index=self.index,
            cache=self.cache,
            engine=self.engine,
            graph=self.graph,
            state_store=self.state_store,
            graph_path=config.graph_path,
            chunker=SyntaxChunker(
                max_tokens=config.get("chunking", "max_tokens", default=500),
                min_tokens=config.get("chunking", "min_tokens", default=40),
            ),
            max_workers=config.get("sync", "max_workers", default=4),
            pipeline_version=str(config.get("sync", "pipeline_version", default=PIPELINE_VERSION)),
            retention_days=config.get("cache", "retention_days", default=0),
            progress_callback=progress_callback,
        )
        self.retrieval = RetrievalService.from_config(
            config.search,
            self.index,
            self.engine,
            graph=self.graph,
            cache=self.cache,
            reuse_cache=config.get("cache", "reuse_for_queries", default=True),
        )

    @classmethod
    def open(cls, project_root: Optional[Path] = None, **kwargs) -> "CodeIndex":
        """Open the index of a project directory using its .ctxsync/config.toml."""
        return cls(Config(project_root), **kwargs)

    def sync(self, force: bool = False) -> SyncReport:
        """Bring the index up to date with the file tree."""
        return self.orchestrator.sync(force=force)

    def cancel_sync(self) -> None:
        self.orchestrator.cancel()

    def query(
        self,
        text: str,
        k: Optional[int] = None,
        filters: Optional[IndexFilter] = None,
        expand: Optional[bool] = None,
        cancel: Optional[threading.Event] = None,
    ) -> QueryResult:
        """Retrieve ranked chunks for a text or code query."""
        return self.retrieval.query(text, k=k, filters=filters, expand=expand, cancel=cancel)

    def status(self) -> IndexStats:
        """Index, cache and graph statistics plus the last committed sync time."""
        stats = self.index.get_stats()
        stats.cache_entries = self.cache.count()
        stats.graph_nodes = self.graph.node_count
        stats.graph_edges = self.graph.edge_count
        stats.dangling_references = len(self.graph.dangling_references())
        try:
            state = self.state_store.load()
        except SyncStateUnavailable as e:
            logger.warning(str(e))
            state = None
        if state is not None:
            stats.last_sync = state.last_sync_at
        return stats

    def clear(self) -> None:
        """Remove all indexed data, cached embeddings and sync state."""
        self.index.clear_all()
        self.cache.invalidate_model(self.engine.model_id)
        self.graph.clear()
        self.graph.save(self.config.graph_path)
        self.state_store.clear()
        logger.info(f"Cleared index for {self.config.project_root}")

    def close(self) -> None:
        try:
            self.cache.flush()
        except CtxsyncError as e:
            logger.warning(f"Failed to flush embedding cache on close: {e}")
        self.engine.close()

    def __enter__(self) -> "CodeIndex":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"CodeIndex(project_root={self.config.project_root})"
