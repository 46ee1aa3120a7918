"""
Tests for the sync orchestrator.

Covers change detection, incremental updates, failure isolation, crash
recovery and cancellation over an in-memory file tree.
"""

import time

import pytest

from ctxsync.cache import SECONDS_PER_DAY, EmbeddingCache
from ctxsync.embeddings import EmbeddingEngine
from ctxsync.errors import SyncStateUnavailable
from ctxsync.filetree import InMemoryFileTree
from ctxsync.graph import SymbolGraph
from ctxsync.indexer import SyncOrchestrator, SyncPhase

from conftest import DIMENSION, UTILS_SOURCE, FlakyBackend, HashingBackend

ALL_PATHS = {"sample.py", "src/utils.py", "src/main.py", "notes.txt"}


class CancellingBackend(HashingBackend):
    """Runs a hook on every encode call."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.on_encode = None

    def encode(self, texts):
        if self.on_encode is not None:
            self.on_encode()
        return super().encode(texts)


def make_orchestrator(tree, index, cache, backend, state_store, graph=None, **kwargs):
    engine = EmbeddingEngine(backend, batch_size=8, max_retries=1, retry_delay=0.0)
    kwargs.setdefault("max_workers", 2)
    return SyncOrchestrator(
        tree=tree,
        index=index,
        cache=cache,
        engine=engine,
        graph=graph if graph is not None else SymbolGraph(),
        state_store=state_store,
        **kwargs,
    )


class TestInitialSync:
    """First pass over an empty index."""

    def test_indexes_all_files(self, orchestrator, vector_index, state_store, graph, graph_path, backend):
        report = orchestrator.sync()

        assert report.added == 4
        assert report.failed == 0
        assert report.committed
        assert report.full_rebuild
        assert report.embeddings_computed == len(backend.texts_encoded)
        assert report.chunks_upserted == vector_index.count()

        assert vector_index.indexed_paths() == ALL_PATHS
        assert graph.files == ALL_PATHS
        assert graph_path.exists()

        state = state_store.load()
        assert set(state.snapshots) == ALL_PATHS
        assert state.pending == []
        assert state.snapshots["sample.py"].revision == "abc123"
        assert state.snapshots["sample.py"].language == "python"
        assert state.last_sync_at is not None

    def test_second_sync_is_noop(self, orchestrator, backend, vector_index):
        orchestrator.sync()
        count = vector_index.count()
        calls = len(backend.calls)

        report = orchestrator.sync()

        assert (report.added, report.modified, report.removed) == (0, 0, 0)
        assert report.unchanged == 4
        assert report.embeddings_computed == 0
        assert not report.full_rebuild
        assert len(backend.calls) == calls
        assert vector_index.count() == count

    def test_cross_file_references(self, orchestrator, graph):
        orchestrator.sync()

        parse_config = graph.find("src/utils.py", "parse_config")
        assert parse_config is not None
        assert graph.reference_count(parse_config.id) >= 1

    def test_empty_tree(self, vector_index, cache, backend, state_store):
        orchestrator = make_orchestrator(InMemoryFileTree(), vector_index, cache, backend, state_store)

        report = orchestrator.sync()

        assert report.added == 0
        assert report.committed
        assert state_store.load().snapshots == {}

    def test_phase_returns_to_idle(self, orchestrator):
        assert orchestrator.state == SyncPhase.IDLE
        orchestrator.sync()
        assert orchestrator.state == SyncPhase.IDLE

    def test_progress_events(self, file_tree, vector_index, cache, backend, state_store):
        events = []
        orchestrator = make_orchestrator(
            file_tree, vector_index, cache, backend, state_store, progress_callback=events.append,
        )

        orchestrator.sync()

        assert len(events) == 4
        assert {e.filename for e in events} == ALL_PATHS
        assert events[-1].current == 4
        assert all(e.total == 4 for e in events)
        assert all(e.status == "done" for e in events)

    def test_cache_model_mismatch(self, file_tree, vector_index, db_path, backend, state_store):
        other_cache = EmbeddingCache(db_path, "other-model", DIMENSION)
        with pytest.raises(ValueError):
            make_orchestrator(file_tree, vector_index, other_cache, backend, state_store)


class TestIncrementalSync:
    """Adds, modifications and removals after a committed pass."""

    def test_modified_file(self, orchestrator, file_tree, vector_index):
        orchestrator.sync()
        file_tree.write("src/utils.py", UTILS_SOURCE + '''

def summarize_totals(rows):
    """Sum the numeric column of every row."""
    return sum(row.amount for row in rows)
''')

        report = orchestrator.sync()

        assert report.modified == 1
        assert report.unchanged == 3
        assert report.embeddings_computed >= 1
        texts = [e.text for e in vector_index.entries_for_path("src/utils.py")]
        assert any("summarize_totals" in text for text in texts)

    def test_modified_file_replaces_stale_chunks(self, orchestrator, file_tree, vector_index):
        orchestrator.sync()
        file_tree.write("notes.txt", "Rotate the database credentials monthly.\n")

        report = orchestrator.sync()

        assert report.modified == 1
        assert report.chunks_deleted >= 1
        texts = [e.text for e in vector_index.entries_for_path("notes.txt")]
        assert texts == ["Rotate the database credentials monthly.\n"]

    def test_added_file(self, orchestrator, file_tree, graph):
        orchestrator.sync()
        file_tree.write("src/extra.py", "def extra_helper():\n    return parse_config('x')\n")

        report = orchestrator.sync()

        assert report.added == 1
        assert report.unchanged == 4
        assert graph.find("src/extra.py", "extra_helper") is not None

    def test_removed_file(self, orchestrator, file_tree, vector_index, graph, state_store):
        orchestrator.sync()
        file_tree.remove("src/utils.py")

        report = orchestrator.sync()

        assert report.removed == 1
        assert report.chunks_deleted >= 1
        assert vector_index.ids_for_path("src/utils.py") == set()
        assert "src/utils.py" not in graph.files
        assert "src/utils.py" not in state_store.load().snapshots
        # main.py's calls into utils are now unresolved
        assert "parse_config" in {gap.name for gap in graph.dangling_references("src/main.py")}

    def test_identical_content_embedded_once(self, vector_index, cache, backend, state_store):
        tree = InMemoryFileTree({"a/utils.py": UTILS_SOURCE, "b/utils.py": UTILS_SOURCE})
        orchestrator = make_orchestrator(tree, vector_index, cache, backend, state_store)

        report = orchestrator.sync()

        texts = backend.texts_encoded
        assert len(texts) == len(set(texts))
        assert report.embeddings_computed == len(texts)
        assert report.chunks_upserted == 2 * len(texts)
        assert vector_index.ids_for_path("a/utils.py").isdisjoint(vector_index.ids_for_path("b/utils.py"))

    def test_rename_reuses_embeddings(self, orchestrator, file_tree, backend):
        orchestrator.sync()
        calls = len(backend.calls)
        file_tree.remove("src/utils.py")
        file_tree.write("lib/utils.py", UTILS_SOURCE)

        report = orchestrator.sync()

        assert report.added == 1
        assert report.removed == 1
        assert report.embeddings_computed == 0
        assert report.cache_hits >= 1
        assert len(backend.calls) == calls


class TestFailures:
    """Per-file failure isolation."""

    def test_embedding_failure_fails_only_that_file(self, file_tree, vector_index, cache, state_store):
        backend = FlakyBackend(poison=("POISON",))
        file_tree.write("bad.py", "POISON_MARKER = 1\n")
        events = []
        orchestrator = make_orchestrator(
            file_tree, vector_index, cache, backend, state_store, progress_callback=events.append,
        )

        report = orchestrator.sync()

        assert report.added == 4
        assert report.failed == 1
        assert report.committed
        [failure] = report.failures
        assert failure.path == "bad.py"
        assert failure.stage == "embedding"
        assert failure.error_type == "EmbeddingExhausted"
        assert report.failed_paths == ["bad.py"]
        assert [e.status for e in events if e.filename == "bad.py"] == ["failed"]

        state = state_store.load()
        assert "bad.py" not in state.snapshots
        assert state.pending == ["bad.py"]
        assert vector_index.ids_for_path("bad.py") == set()

    def test_failed_file_retried_next_pass(self, file_tree, vector_index, cache, state_store):
        backend = FlakyBackend(poison=("POISON",))
        file_tree.write("bad.py", "POISON_MARKER = 1\n")
        orchestrator = make_orchestrator(file_tree, vector_index, cache, backend, state_store)
        orchestrator.sync()

        backend.poison = ()
        report = orchestrator.sync()

        assert report.added == 1
        assert report.failed == 0
        assert report.unchanged == 4
        assert state_store.load().pending == []
        assert vector_index.ids_for_path("bad.py")


class TestRebuilds:
    """Full rebuilds and recovery from interrupted passes."""

    def test_pipeline_version_change(self, orchestrator, file_tree, vector_index, cache, backend, state_store):
        orchestrator.sync()

        upgraded = make_orchestrator(
            file_tree, vector_index, cache, backend, state_store, pipeline_version="next",
        )
        report = upgraded.sync()

        assert report.full_rebuild
        assert report.added == 4
        assert report.embeddings_computed == 0  # cache survives a pipeline change
        assert state_store.load().pipeline_version == "next"

    def test_model_change(self, orchestrator, file_tree, vector_index, db_path, state_store):
        orchestrator.sync()

        new_backend = HashingBackend(model_id="other-model")
        new_cache = EmbeddingCache(db_path, "other-model", DIMENSION)
        new_cache.load()
        switched = make_orchestrator(file_tree, vector_index, new_cache, new_backend, state_store)

        report = switched.sync()

        assert report.full_rebuild
        assert report.added == 4
        assert report.embeddings_computed == len(new_backend.texts_encoded)
        assert state_store.load().embedding_model == "other-model"
        assert EmbeddingCache(db_path, "test-hashing", DIMENSION).load() == 0

    def test_force_rebuild(self, orchestrator, vector_index):
        orchestrator.sync()
        count = vector_index.count()

        report = orchestrator.sync(force=True)

        assert report.full_rebuild
        assert report.added == 4
        assert report.embeddings_computed == 0
        assert vector_index.count() == count

    def test_corrupt_state_requires_force(self, orchestrator, state_store):
        orchestrator.sync()
        state_store.path.write_text("not json")

        with pytest.raises(SyncStateUnavailable):
            orchestrator.sync()

        report = orchestrator.sync(force=True)
        assert report.added == 4
        assert report.committed

    def test_pending_paths_are_reprocessed(self, orchestrator, state_store, backend):
        orchestrator.sync()
        state = state_store.load()
        state_store.save(state.model_copy(update={"pending": ["src/utils.py"]}))

        report = orchestrator.sync()

        assert report.modified == 1
        assert report.unchanged == 3
        assert report.embeddings_computed == 0
        assert state_store.load().pending == []

    def test_pending_removed_path_is_cleaned(self, orchestrator, state_store, vector_index):
        orchestrator.sync()
        state = state_store.load()
        state_store.save(state.model_copy(update={"pending": ["gone.py"]}))

        report = orchestrator.sync()

        assert report.removed == 1
        assert state_store.load().pending == []

    def test_files_missing_from_graph_are_reprocessed(
        self, orchestrator, file_tree, vector_index, cache, backend, state_store,
    ):
        orchestrator.sync()

        fresh_graph = SymbolGraph()
        restarted = make_orchestrator(file_tree, vector_index, cache, backend, state_store, graph=fresh_graph)
        report = restarted.sync()

        assert report.modified == 4
        assert report.embeddings_computed == 0
        assert fresh_graph.files == ALL_PATHS


class TestCancellation:
    """Cooperative cancellation between files."""

    def test_cancel_stops_before_next_file(self, file_tree, vector_index, cache, state_store):
        backend = CancellingBackend()
        orchestrator = make_orchestrator(file_tree, vector_index, cache, backend, state_store, max_workers=1)
        backend.on_encode = orchestrator.cancel

        report = orchestrator.sync()

        assert report.cancelled
        assert report.committed
        assert report.added == 1
        state = state_store.load()
        assert list(state.snapshots) == ["notes.txt"]
        assert set(state.pending) == ALL_PATHS - {"notes.txt"}

        backend.on_encode = None
        report = orchestrator.sync()

        assert not report.cancelled
        assert report.added == 3
        assert state_store.load().pending == []


class TestCacheRetention:
    """Age sweep of the embedding cache at commit."""

    def test_unchanged_files_keep_their_embeddings(self, file_tree, vector_index, cache, backend, state_store):
        orchestrator = make_orchestrator(file_tree, vector_index, cache, backend, state_store, retention_days=1)
        orchestrator.sync()
        cached = cache.count()
        live = vector_index.content_hashes()

        stale = time.time() - 10 * SECONDS_PER_DAY
        for h in list(cache._last_seen):
            cache._last_seen[h] = stale
        cache.get_or_compute("orphan", lambda: backend._vector("no longer in any file"))
        cache._last_seen["orphan"] = stale

        report = orchestrator.sync()

        assert report.unchanged == 4
        assert cache.count() == cached
        assert all(cache.lookup(h) is not None for h in live)
        assert cache.lookup("orphan") is None
