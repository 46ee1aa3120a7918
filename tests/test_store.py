"""
Unit tests for the vector index client.

Tests upsert, filtered delete and search over LanceDB.
"""

import pytest

from ctxsync.errors import IndexWriteFailed
from ctxsync.models import IndexEntry, IndexFilter
from ctxsync.store import VectorIndex, build_where, entry_matches

from conftest import DIMENSION


def unit(i: int) -> list[float]:
    vector = [0.0] * DIMENSION
    vector[i] = 1.0
    return vector


def make_entry(
    entry_id: str,
    path: str = "test.py",
    vector=None,
    language: str = "python",
    kind: str = "function",
    start_line: int = 1,
    end_line: int = 5,
    name=None,
) -> IndexEntry:
    return IndexEntry(
        id=entry_id,
        vector=vector or unit(0),
        text=f"def {entry_id}(): pass",
        path=path,
        start_line=start_line,
        end_line=end_line,
        start_byte=(start_line - 1) * 10,
        end_byte=end_line * 10,
        language=language,
        kind=kind,
        name=name or entry_id,
        content_hash=f"hash-{entry_id}",
    )


class FailingTable:
    """Delegates to a real table but fails the first n merge_insert calls."""

    def __init__(self, table, failures: int):
        self._table = table
        self.failures = failures
        self.attempts = 0

    def merge_insert(self, on):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise OSError("disk full")
        return self._table.merge_insert(on)

    def __getattr__(self, name):
        return getattr(self._table, name)


def test_store_initialization(vector_index, db_path):
    """Test that the index connects and creates its table lazily."""
    assert vector_index.count() == 0
    assert db_path.exists()


class TestUpsert:
    """Idempotent writes keyed by external ID."""

    def test_upsert_and_get(self, vector_index):
        written = vector_index.upsert([make_entry("a"), make_entry("b", vector=unit(1))])

        assert written == 2
        assert vector_index.count() == 2
        entries = vector_index.get(["b", "a", "missing"])
        assert [e.id for e in entries] == ["a", "b"]
        assert entries[1].vector == unit(1)

    def test_upsert_is_idempotent(self, vector_index):
        entries = [make_entry("a"), make_entry("b")]
        vector_index.upsert(entries)
        vector_index.upsert(entries)

        assert vector_index.count() == 2

    def test_reupsert_keeps_metadata(self, vector_index):
        first = make_entry("a")
        vector_index.upsert([first])
        rebuilt = first.model_copy(update={"indexed_at": first.indexed_at + 60})

        vector_index.upsert([rebuilt])

        [entry] = vector_index.get(["a"])
        assert entry.indexed_at == first.indexed_at
        assert entry.model_dump(exclude={"vector"}) == first.model_dump(exclude={"vector"})

    def test_upsert_replaces_row(self, vector_index):
        vector_index.upsert([make_entry("a", start_line=1)])
        vector_index.upsert([make_entry("a", start_line=3, end_line=9)])

        [entry] = vector_index.get(["a"])
        assert entry.start_line == 3
        assert vector_index.count() == 1

    def test_duplicate_ids_in_one_call(self, vector_index):
        written = vector_index.upsert([make_entry("a"), make_entry("a", start_line=2)])
        assert written == 1
        assert vector_index.count() == 1

    def test_empty_upsert(self, vector_index):
        assert vector_index.upsert([]) == 0

    def test_dimension_mismatch(self, vector_index):
        with pytest.raises(ValueError):
            vector_index.upsert([make_entry("a", vector=[1.0, 0.0])])

    def test_write_retried_then_succeeds(self, db_path):
        index = VectorIndex(db_path, DIMENSION, write_retries=2, retry_delay=0.0)
        failing = FailingTable(index.table, failures=1)
        index._table = failing

        assert index.upsert([make_entry("a")]) == 1
        assert failing.attempts == 2
        assert index.count() == 1

    def test_write_failure_after_retries(self, db_path):
        index = VectorIndex(db_path, DIMENSION, write_retries=2, retry_delay=0.0)
        failing = FailingTable(index.table, failures=10)
        index._table = failing

        with pytest.raises(IndexWriteFailed) as exc_info:
            index.upsert([make_entry("a")])
        assert exc_info.value.operation == "upsert"
        assert failing.attempts == 3


class TestDelete:
    """Filtered deletes."""

    def test_delete_by_path(self, vector_index):
        vector_index.upsert([
            make_entry("a", path="file1.py"),
            make_entry("b", path="file1.py"),
            make_entry("c", path="file2.py"),
        ])

        assert vector_index.delete_paths(["file1.py"]) == 2
        assert vector_index.indexed_paths() == {"file2.py"}

    def test_delete_ids(self, vector_index):
        vector_index.upsert([make_entry("a"), make_entry("b")])

        assert vector_index.delete_ids(["a", "zzz"]) == 1
        assert [e.id for e in vector_index.get(["a", "b"])] == ["b"]
        assert vector_index.delete_ids([]) == 0

    def test_delete_by_language(self, vector_index):
        vector_index.upsert([make_entry("a", language="python"), make_entry("b", language="go")])

        assert vector_index.delete(IndexFilter(languages=["go"])) == 1
        assert vector_index.count() == 1

    def test_delete_nothing_matching(self, vector_index):
        vector_index.upsert([make_entry("a")])
        assert vector_index.delete_paths(["other.py"]) == 0
        assert vector_index.count() == 1

    def test_delete_empty_filter_removes_all(self, vector_index):
        vector_index.upsert([make_entry("a"), make_entry("b")])
        assert vector_index.delete(IndexFilter()) == 2
        assert vector_index.count() == 0

    def test_paths_with_quotes(self, vector_index):
        vector_index.upsert([make_entry("a", path="it's.py")])

        assert vector_index.ids_for_path("it's.py") == {"a"}
        assert vector_index.delete_paths(["it's.py"]) == 1


class TestSearch:
    """Similarity search ordering and filters."""

    def test_search_orders_by_score(self, vector_index):
        vector_index.upsert([
            make_entry("a", vector=unit(0)),
            make_entry("b", vector=unit(1)),
            make_entry("c", vector=[0.8] + [0.6] + [0.0] * (DIMENSION - 2)),
        ])

        hits = vector_index.search(unit(0), k=3)

        assert [h.entry.id for h in hits] == ["a", "c", "b"]
        assert hits[0].score == pytest.approx(1.0)
        assert all(0.0 <= h.score <= 1.0 for h in hits)

    def test_ties_broken_by_id(self, vector_index):
        vector_index.upsert([make_entry(entry_id, vector=unit(2)) for entry_id in ("m", "b", "x", "a")])

        hits = vector_index.search(unit(2), k=3)
        assert [h.entry.id for h in hits] == ["a", "b", "m"]

    def test_search_limit(self, vector_index):
        vector_index.upsert([make_entry(f"e{i}", vector=unit(i)) for i in range(10)])

        assert len(vector_index.search(unit(0), k=4)) == 4
        assert vector_index.search(unit(0), k=0) == []

    def test_search_empty_index(self, vector_index):
        assert vector_index.search(unit(0), k=5) == []

    def test_min_score(self, vector_index):
        vector_index.upsert([make_entry("a", vector=unit(0)), make_entry("b", vector=unit(1))])

        hits = vector_index.search(unit(0), k=5, min_score=0.9)
        assert [h.entry.id for h in hits] == ["a"]

    def test_language_filter(self, vector_index):
        vector_index.upsert([
            make_entry("py", language="python"),
            make_entry("go", language="go"),
        ])

        hits = vector_index.search(unit(0), k=5, filter=IndexFilter(languages=["go"]))
        assert [h.entry.id for h in hits] == ["go"]

    def test_kind_filter(self, vector_index):
        vector_index.upsert([make_entry("f", kind="function"), make_entry("c", kind="class")])

        hits = vector_index.search(unit(0), k=5, filter=IndexFilter(kinds=["class"]))
        assert [h.entry.id for h in hits] == ["c"]

    def test_path_prefix_is_literal(self, vector_index):
        vector_index.upsert([
            make_entry("a", path="src_a/one.py"),
            make_entry("b", path="srcXa/two.py"),
            make_entry("c", path="lib/three.py"),
        ])

        hits = vector_index.search(unit(0), k=5, filter=IndexFilter(path_prefixes=["src_a/"]))
        assert [h.entry.id for h in hits] == ["a"]

    def test_exclude_ids(self, vector_index):
        vector_index.upsert([make_entry("a"), make_entry("b")])

        hits = vector_index.search(unit(0), k=5, filter=IndexFilter(exclude_ids=["a"]))
        assert [h.entry.id for h in hits] == ["b"]

    def test_empty_list_filter_matches_nothing(self, vector_index):
        vector_index.upsert([make_entry("a")])
        assert vector_index.search(unit(0), k=5, filter=IndexFilter(languages=[])) == []


class TestReads:
    """Path and range lookups and statistics."""

    def test_content_hashes(self, vector_index):
        assert vector_index.content_hashes() == set()
        vector_index.upsert([make_entry("a"), make_entry("b", path="other.py")])

        assert vector_index.content_hashes() == {"hash-a", "hash-b"}

    def test_entries_for_path(self, vector_index):
        vector_index.upsert([
            make_entry("late", path="f.py", start_line=10, end_line=12),
            make_entry("early", path="f.py", start_line=1, end_line=4),
            make_entry("other", path="g.py"),
        ])

        assert [e.id for e in vector_index.entries_for_path("f.py")] == ["early", "late"]
        assert vector_index.ids_for_path("f.py") == {"early", "late"}
        assert vector_index.ids_for_path("missing.py") == set()

    def test_find_containing(self, vector_index):
        vector_index.upsert([
            make_entry("first", path="f.py", start_line=1, end_line=4),
            make_entry("second", path="f.py", start_line=5, end_line=12),
        ])

        assert [e.id for e in vector_index.find_containing("f.py", 6)] == ["second"]
        assert [e.id for e in vector_index.find_containing("f.py", 3, 6)] == ["first", "second"]
        assert vector_index.find_containing("f.py", 40) == []

    def test_get_stats(self, vector_index):
        vector_index.upsert([
            make_entry("a", path="a.py", language="python"),
            make_entry("b", path="a.py", language="python"),
            make_entry("c", path="b.go", language="go"),
        ])

        stats = vector_index.get_stats()

        assert stats.total_files == 2
        assert stats.total_chunks == 3
        assert stats.languages == {"python": 2, "go": 1}
        assert stats.total_size_bytes > 0
        assert stats.last_indexed is not None

    def test_get_stats_empty(self, vector_index):
        stats = vector_index.get_stats()
        assert stats.total_chunks == 0
        assert stats.languages == {}

    def test_clear_all(self, vector_index):
        vector_index.upsert([make_entry("a")])
        vector_index.clear_all()

        assert vector_index.count() == 0
        vector_index.upsert([make_entry("b")])
        assert vector_index.count() == 1

    def test_dimension_change_recreates_table(self, vector_index, db_path):
        vector_index.upsert([make_entry("a")])

        narrower = VectorIndex(db_path, 8)
        assert narrower.count() == 0


class TestFilters:
    """Filter translation and in-process evaluation."""

    def test_build_where_empty(self):
        assert build_where(None) is None
        assert build_where(IndexFilter()) is None

    def test_build_where_combines_conditions(self):
        where = build_where(IndexFilter(paths=["a.py"], languages=["python", "go"], exclude_ids=["x"]))

        assert "path IN ('a.py')" in where
        assert "language IN ('python', 'go')" in where
        assert "id NOT IN ('x')" in where
        assert where.count(" AND ") == 2

    def test_build_where_escapes_quotes(self):
        assert build_where(IndexFilter(paths=["it's.py"])) == "path IN ('it''s.py')"

    def test_build_where_empty_list(self):
        assert build_where(IndexFilter(kinds=[])) == "false"

    def test_entry_matches(self):
        entry = make_entry("a", path="src/a.py", language="python", kind="function")

        assert entry_matches(entry, None)
        assert entry_matches(entry, IndexFilter(path_prefixes=["src/"], kinds=["function"]))
        assert not entry_matches(entry, IndexFilter(languages=["go"]))
        assert not entry_matches(entry, IndexFilter(exclude_ids=["a"]))
        assert not entry_matches(entry, IndexFilter(paths=[]))
