"""
Sync orchestration for ctxsync.

Drives one sync pass over a file tree: scan, diff against the last
committed snapshots, process dirty files on a bounded worker pool (chunk,
embed through the cache, write the vector index), apply symbol graph
deltas serially, and commit the new sync state only once every per-file
outcome is known.
"""

import concurrent.futures
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from .cache import EmbeddingCache
from .chunkers import SyntaxChunker
from .embeddings import EmbeddingEngine
from .errors import CtxsyncError, SyncStateUnavailable
from .filetree import FileTree
from .grammars import GrammarRegistry
from .graph import SymbolGraph
from .models import FileFailure, FileSnapshot, FileSymbols, IndexEntry, SyncReport, SyncState
from .progress import ProgressEvent, ProgressReporter
from .store import VectorIndex
from .symbols import SymbolExtractor
from .sync_state import PIPELINE_VERSION, SyncStateStore
from .utils import file_hash

logger = logging.getLogger(__name__)


class SyncPhase(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    DIFFING = "diffing"
    PROCESSING = "processing"
    COMMITTING = "committing"


@dataclass
class ScannedFile:
    path: str
    content: str
    content_hash: str
    language: str


@dataclass
class FileOutcome:
    """Result of running one dirty file through the per-file pipeline."""
    path: str
    change: str  # "added" or "modified"
    snapshot: Optional[FileSnapshot] = None
    symbols: Optional[FileSymbols] = None
    chunks_upserted: int = 0
    chunks_deleted: int = 0
    embeddings_computed: int = 0
    cache_hits: int = 0
    failure: Optional[FileFailure] = None
    skipped: bool = False


@dataclass
class SyncPlan:
    added: list[str] = field(default_factory=list)
    modified: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    unchanged: int = 0

    @property
    def dirty(self) -> list[str]:
        return self.added + self.modified


class SyncOrchestrator:
    """
    Keeps the vector index and symbol graph consistent with a file tree.

    Features:
    - Content-hash diffing against the last committed FileSnapshot set
    - Bounded worker pool for dirty files
    - Cache-first embedding
    - Per-file failure isolation
    - Single-writer symbol graph updates
    - Atomic commit of sync state
    - Cooperative cancellation between files
    """

    def __init__(
        self,
        tree: FileTree,
        index: VectorIndex,
        cache: EmbeddingCache,
        engine: EmbeddingEngine,
        graph: SymbolGraph,
        state_store: SyncStateStore,
        graph_path: Optional[Path] = None,
        grammars: Optional[GrammarRegistry] = None,
        chunker: Optional[SyntaxChunker] = None,
        extractor: Optional[SymbolExtractor] = None,
        max_workers: int = 4,
        pipeline_version: str = PIPELINE_VERSION,
        retention_days: float = 0,
        progress_callback: Optional[Callable[[ProgressEvent], None]] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            tree: File-tree collaborator listing (path, content) pairs
            index: VectorIndex the chunks are written to
            cache: Embedding cache bound to engine's model
            engine: Embedding engine
            graph: Symbol graph shared with the retrieval service
            state_store: Persisted sync state
            graph_path: Where the symbol graph is saved at commit (None skips saving)
            grammars: Grammar registry (a default registry if omitted)
            chunker: Syntax chunker (default budgets if omitted)
            extractor: Symbol extractor
            max_workers: Size of the worker pool for dirty files
            pipeline_version: Version recorded in sync state; a mismatch forces a rebuild
            retention_days: Age sweep window for the embedding cache (0 disables)
            progress_callback: Optional callback receiving a ProgressEvent per file
        """
        if cache.model_id != engine.model_id:
            raise ValueError(
                f"Cache is bound to {cache.model_id} but the engine uses {engine.model_id}"
            )
        self.tree = tree
        self.index = index
        self.cache = cache
        self.engine = engine
        self.graph = graph
        self.state_store = state_store
        self.graph_path = graph_path
        self.grammars = grammars or GrammarRegistry()
        self.chunker = chunker or SyntaxChunker()
        self.extractor = extractor or SymbolExtractor()
        self.max_workers = max(1, max_workers)
        self.pipeline_version = pipeline_version
        self.retention_days = retention_days
        self.progress_callback = progress_callback

        self._phase = SyncPhase.IDLE
        self._cancel = threading.Event()
        self._sync_lock = threading.Lock()

    @property
    def state(self) -> SyncPhase:
        return self._phase

    def _set_phase(self, phase: SyncPhase) -> None:
        logger.debug(f"Sync phase: {self._phase.value} -> {phase.value}")
        self._phase = phase

    def cancel(self) -> None:
        """Stop the running pass before its next file; in-flight files finish."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    # ===== Sync pass =====

    def sync(self, force: bool = False) -> SyncReport:
        """
        Run one sync pass.

        Args:
            force: Ignore the persisted state and rebuild everything

        Returns:
            SyncReport with per-change counts and the failed-file list

        Raises:
            SyncStateUnavailable: Persisted state cannot be read or written
        """
        with self._sync_lock:
            self._cancel.clear()
            start_time = time.time()
            try:
                report = self._run(force)
            finally:
                self._set_phase(SyncPhase.IDLE)
            report.duration_seconds = time.time() - start_time
            logger.info(
                f"Sync finished: {report.added} added, {report.modified} modified, "
                f"{report.removed} removed, {report.failed} failed "
                f"in {ProgressReporter.format_duration(report.duration_seconds)}"
            )
            return report

    def _run(self, force: bool) -> SyncReport:
        report = SyncReport()

        if force:
            try:
                previous = self.state_store.load()
            except SyncStateUnavailable as e:
                logger.warning(f"Ignoring unreadable sync state for forced rebuild: {e}")
                previous = None
        else:
            previous = self.state_store.load()
        rebuild_reason = self._rebuild_reason(previous, force)
        if rebuild_reason:
            logger.info(f"Full rebuild: {rebuild_reason}")
            self._reset(previous)
            previous = SyncState(pipeline_version=self.pipeline_version, embedding_model=self.engine.model_id)
            report.full_rebuild = True

        self._set_phase(SyncPhase.SCANNING)
        scanned = self._scan()
        revision = self.tree.revision()

        self._set_phase(SyncPhase.DIFFING)
        plan = self._diff(scanned, previous)
        report.unchanged = plan.unchanged
        logger.info(
            f"Sync plan: {len(plan.added)} added, {len(plan.modified)} modified, "
            f"{len(plan.removed)} removed, {plan.unchanged} unchanged"
        )

        snapshots = dict(previous.snapshots)
        in_flight = sorted(set(plan.dirty) | set(plan.removed))
        if in_flight:
            # Recorded so a crash before commit reprocesses these paths
            self.state_store.save(previous.model_copy(update={"pending": in_flight}))

        self._set_phase(SyncPhase.PROCESSING)
        reporter = ProgressReporter(len(plan.dirty) + len(plan.removed), self.progress_callback)
        unfinished = set(in_flight)

        for path in plan.removed:
            if self.cancelled:
                report.cancelled = True
                break
            failure = self._remove_file(path, report)
            reporter.update(path, failed=failure is not None)
            if failure is None:
                snapshots.pop(path, None)
                unfinished.discard(path)
                report.removed += 1
            else:
                self._record_failure(report, failure)

        if not report.cancelled:
            for outcome in self._process_dirty(plan, scanned, revision, reporter):
                if outcome.skipped:
                    report.cancelled = True
                    continue
                if outcome.failure is None:
                    outcome.failure = self._apply_graph(outcome)
                report.chunks_upserted += outcome.chunks_upserted
                report.chunks_deleted += outcome.chunks_deleted
                report.embeddings_computed += outcome.embeddings_computed
                report.cache_hits += outcome.cache_hits
                if outcome.failure is not None:
                    self._record_failure(report, outcome.failure)
                    continue
                snapshots[outcome.path] = outcome.snapshot
                unfinished.discard(outcome.path)
                if outcome.change == "added":
                    report.added += 1
                else:
                    report.modified += 1

        self._set_phase(SyncPhase.COMMITTING)
        self._commit(snapshots, sorted(unfinished), report)
        return report

    def _rebuild_reason(self, previous: Optional[SyncState], force: bool) -> Optional[str]:
        if force:
            return "forced"
        if previous is None:
            return "no committed sync state"
        if previous.pipeline_version != self.pipeline_version:
            return f"pipeline version {previous.pipeline_version} -> {self.pipeline_version}"
        if previous.embedding_model != self.engine.model_id:
            return f"embedding model {previous.embedding_model} -> {self.engine.model_id}"
        return None

    def _reset(self, previous: Optional[SyncState]) -> None:
        """Drop derived data before a full rebuild."""
        # Mark the rebuild durably first so a crash cannot resurrect the old snapshot set
        self.state_store.save(SyncState(
            pipeline_version=self.pipeline_version,
            embedding_model=self.engine.model_id,
        ))
        if previous is not None and previous.embedding_model != self.engine.model_id:
            self.cache.invalidate_model(previous.embedding_model)
        self.index.clear_all()
        self.graph.clear()
        self._save_graph()

    def _scan(self) -> dict[str, ScannedFile]:
        scanned = {}
        for path, content in self.tree.list_tracked_files():
            scanned[path] = ScannedFile(
                path=path,
                content=content,
                content_hash=file_hash(content),
                language=self.grammars.detect_language(path, content),
            )
        logger.debug(f"Scanned {len(scanned)} files")
        return scanned

    def _diff(self, scanned: dict[str, ScannedFile], previous: SyncState) -> SyncPlan:
        """
        Split the scan into added, modified and removed paths.

        Paths left pending by an uncommitted pass, and committed files the
        symbol graph does not know, are reprocessed even if unchanged.
        """
        plan = SyncPlan()
        pending = set(previous.pending)
        graph_files = self.graph.files

        for path in sorted(scanned):
            snapshot = previous.snapshots.get(path)
            if snapshot is None:
                plan.added.append(path)
            elif (
                snapshot.content_hash != scanned[path].content_hash
                or path in pending
                or path not in graph_files
            ):
                plan.modified.append(path)
            else:
                plan.unchanged += 1

        known = set(previous.snapshots) | pending
        plan.removed = sorted(path for path in known if path not in scanned)
        return plan

    def _remove_file(self, path: str, report: SyncReport) -> Optional[FileFailure]:
        try:
            report.chunks_deleted += self.index.delete_paths([path])
            self.graph.prune_file(path)
        except CtxsyncError as e:
            logger.error(f"Failed to remove {path}: {e}")
            return FileFailure(path=path, stage="delete", error_type=type(e).__name__, reason=str(e))
        logger.debug(f"Removed {path} from index")
        return None

    def _process_dirty(
        self,
        plan: SyncPlan,
        scanned: dict[str, ScannedFile],
        revision: Optional[str],
        reporter: ProgressReporter,
    ):
        """Yield FileOutcomes as workers finish, in completion order."""
        changes = [(path, "added") for path in plan.added] + [(path, "modified") for path in plan.modified]
        if not changes:
            return

        logger.info(f"Processing {len(changes)} files with {self.max_workers} workers")
        with concurrent.futures.ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            future_to_path = {
                executor.submit(self._process_file, scanned[path], change, revision): path
                for path, change in changes
            }
            for future in concurrent.futures.as_completed(future_to_path):
                outcome = future.result()
                if not outcome.skipped:
                    reporter.update(outcome.path, failed=outcome.failure is not None)
                yield outcome

    def _process_file(self, file: ScannedFile, change: str, revision: Optional[str]) -> FileOutcome:
        """
        Chunk, embed and index one file. Runs on a worker thread.

        Never raises: failures are returned in the outcome.
        """
        outcome = FileOutcome(path=file.path, change=change)
        if self.cancelled:
            outcome.skipped = True
            return outcome

        stage = "chunking"
        try:
            grammar = self.grammars.for_language(file.language)
            chunks, tree = self.chunker.chunk_file(file.content, file.path, file.language, grammar)
            if tree is not None:
                outcome.symbols = self.extractor.extract(tree, file.path)
            else:
                outcome.symbols = FileSymbols(path=file.path, language=file.language)

            stage = "embedding"
            computed = 0

            def embed_misses(texts: list[str]) -> list[list[float]]:
                nonlocal computed
                computed += len(texts)
                return self.engine.embed(texts)

            vectors = self.cache.get_or_compute_many(
                [(chunk.content_hash, chunk.text) for chunk in chunks], embed_misses
            )
            outcome.embeddings_computed = computed
            outcome.cache_hits = len(chunks) - computed

            stage = "indexing"
            entries = [IndexEntry.from_chunk(chunk, vector) for chunk, vector in zip(chunks, vectors)]
            new_ids = {entry.id for entry in entries}
            existing = self.index.ids_for_path(file.path)
            outcome.chunks_deleted = self.index.delete_ids(existing - new_ids)
            outcome.chunks_upserted = self.index.upsert([e for e in entries if e.id not in existing])

        except Exception as e:
            logger.error(f"Failed to process {file.path} during {stage}: {e}")
            logger.debug("Traceback:", exc_info=True)
            outcome.failure = FileFailure(
                path=file.path, stage=stage, error_type=type(e).__name__, reason=str(e),
            )
            return outcome

        outcome.snapshot = FileSnapshot(
            path=file.path,
            content_hash=file.content_hash,
            language=file.language,
            revision=revision,
            size_bytes=len(file.content.encode("utf-8", errors="surrogatepass")),
        )
        logger.debug(
            f"Indexed {file.path}: {len(chunks)} chunks, {outcome.chunks_upserted} upserted, "
            f"{outcome.chunks_deleted} deleted, {outcome.cache_hits} cache hits"
        )
        return outcome

    def _apply_graph(self, outcome: FileOutcome) -> Optional[FileFailure]:
        """Apply a worker's graph delta on the orchestrator thread."""
        try:
            self.graph.apply(outcome.symbols)
        except Exception as e:
            logger.error(f"Failed to update symbol graph for {outcome.path}: {e}")
            return FileFailure(path=outcome.path, stage="graph", error_type=type(e).__name__, reason=str(e))
        return None

    @staticmethod
    def _record_failure(report: SyncReport, failure: FileFailure) -> None:
        report.failed += 1
        report.failures.append(failure)

    def _save_graph(self) -> None:
        if self.graph_path is None:
            return
        try:
            self.graph.save(self.graph_path)
        except OSError as e:
            raise SyncStateUnavailable(str(self.graph_path), f"cannot write symbol graph: {e}") from e

    def _commit(self, snapshots: dict[str, FileSnapshot], unfinished: list[str], report: SyncReport) -> None:
        """Persist graph, cache and sync state once all outcomes are known."""
        try:
            self.cache.flush()
        except CtxsyncError as e:
            # Vectors are already in the index; lost cache rows are only recomputed later
            logger.warning(f"Embedding cache flush failed: {e}")

        self._save_graph()
        self.state_store.save(SyncState(
            pipeline_version=self.pipeline_version,
            embedding_model=self.engine.model_id,
            last_sync_at=time.time(),
            snapshots=dict(sorted(snapshots.items())),
            pending=unfinished,
        ))
        report.committed = True

        if self.retention_days > 0:
            try:
                # Unchanged files never reach the cache, so their chunks are refreshed here
                self.cache.touch(self.index.content_hashes())
                self.cache.sweep(self.retention_days)
            except Exception as e:
                logger.warning(f"Embedding cache sweep failed: {e}")

    def __repr__(self) -> str:
        return f"SyncOrchestrator(tree={self.tree!r}, phase={self._phase.value})"
