"""
Vector index client for ctxsync.

Provides upsert, filtered delete and similarity search over a LanceDB
table of IndexEntry rows. This module is the only code that reads or
writes the chunk table.
"""

import logging
import threading
from pathlib import Path
from typing import Any, Iterable, Optional

import lancedb
import pyarrow as pa
from lancedb.table import Table

from .errors import IndexWriteFailed
from .models import IndexEntry, IndexFilter, IndexStats, SearchHit, index_entry_model
from .utils import retry_on_failure, sql_string

logger = logging.getLogger(__name__)

# Extra rows fetched past k so equal-score neighbors can be ordered by ID
TIE_MARGIN = 8


def _write_failed(operation: str):
    return lambda e: IndexWriteFailed(operation, str(e))


def _in_list(column: str, values: Iterable[str], negate: bool = False) -> str:
    items = ", ".join(sql_string(v) for v in values)
    return f"{column} {'NOT IN' if negate else 'IN'} ({items})"


def build_where(filter: Optional[IndexFilter]) -> Optional[str]:
    """
    Translate an IndexFilter into a LanceDB SQL predicate.

    Returns:
        The predicate, or None when the filter matches everything
    """
    if filter is None or filter.is_empty():
        return None

    conditions = []
    if filter.paths is not None:
        conditions.append(_in_list("path", filter.paths) if filter.paths else "false")
    if filter.path_prefixes:
        prefix_conditions = " OR ".join(
            f"path LIKE {sql_string(prefix + '%')}" for prefix in filter.path_prefixes
        )
        conditions.append(f"({prefix_conditions})")
    if filter.languages is not None:
        conditions.append(_in_list("language", filter.languages) if filter.languages else "false")
    if filter.kinds is not None:
        conditions.append(_in_list("kind", filter.kinds) if filter.kinds else "false")
    if filter.ids is not None:
        conditions.append(_in_list("id", filter.ids) if filter.ids else "false")
    if filter.exclude_ids:
        conditions.append(_in_list("id", filter.exclude_ids, negate=True))

    return " AND ".join(conditions) if conditions else None


def entry_matches(entry: IndexEntry, filter: Optional[IndexFilter]) -> bool:
    """Evaluate an IndexFilter against an entry in Python."""
    if filter is None:
        return True
    if filter.paths is not None and entry.path not in filter.paths:
        return False
    if filter.path_prefixes and not any(entry.path.startswith(p) for p in filter.path_prefixes):
        return False
    if filter.languages is not None and entry.language not in filter.languages:
        return False
    if filter.kinds is not None and entry.kind not in filter.kinds:
        return False
    if filter.ids is not None and entry.id not in filter.ids:
        return False
    if filter.exclude_ids and entry.id in filter.exclude_ids:
        return False
    return True


class VectorIndex:
    """
    LanceDB-backed vector index keyed by external chunk ID.

    Features:
    - Idempotent upsert keyed by external ID
    - Delete by metadata filter, returning the number of removed rows
    - Similarity search ordered by descending score, ties broken by ID
    - Write retries with bounded backoff; exhausted retries raise IndexWriteFailed
    """

    def __init__(
        self,
        db_path: Path,
        dimension: int,
        table_name: str = "code_chunks",
        write_retries: int = 3,
        retry_delay: float = 0.2,
    ):
        """
        Initialize the vector index.

        Args:
            db_path: Path to the LanceDB database directory
            dimension: Vector width of the embedding model
            table_name: Name of the chunk table
            write_retries: Retries after a failed write (0 disables retrying)
            retry_delay: Initial delay between write attempts in seconds
        """
        self.db_path = db_path
        self.dimension = dimension
        self.table_name = table_name
        self.retry_attempts = write_retries + 1
        self.retry_delay = retry_delay
        self.max_retry_delay = 5.0
        self._db: Optional[lancedb.DBConnection] = None
        self._table: Optional[Table] = None
        self._write_lock = threading.Lock()

    @property
    def db(self) -> lancedb.DBConnection:
        """Lazy-load the database connection."""
        if self._db is None:
            self.db_path.mkdir(parents=True, exist_ok=True)
            self._db = lancedb.connect(str(self.db_path))
            logger.info(f"Connected to LanceDB at {self.db_path}")
        return self._db

    @property
    def table(self) -> Table:
        """Get or create the chunk table."""
        if self._table is None:
            if self.table_name in self.db.table_names():
                table = self.db.open_table(self.table_name)
                width = table.schema.field("vector").type.list_size
                if width == self.dimension:
                    self._table = table
                    logger.debug(f"Opened existing table: {self.table_name}")
                    return table
                logger.warning(
                    f"Table {self.table_name} holds {width}-dim vectors, expected "
                    f"{self.dimension}; dropping it"
                )
                self.db.drop_table(self.table_name)
            try:
                self._table = self.db.create_table(
                    self.table_name,
                    schema=index_entry_model(self.dimension),
                    mode="create",
                )
                logger.info(f"Created new table: {self.table_name}")
            except Exception as e:
                # Another handle created it between the check and the create
                if "already exists" not in str(e):
                    raise
                self._table = self.db.open_table(self.table_name)
        return self._table

    # ===== Writes =====

    def upsert(self, entries: list[IndexEntry]) -> int:
        """
        Insert or replace entries keyed by their external ID.

        Re-upserting an unchanged entry leaves the row as it was, so the
        call is safe to repeat on retry.

        Returns:
            Number of entries written

        Raises:
            IndexWriteFailed: If all retry attempts fail
        """
        if not entries:
            return 0
        unique = {entry.id: entry for entry in entries}
        for entry in unique.values():
            if len(entry.vector) != self.dimension:
                raise ValueError(
                    f"Entry {entry.id} has a {len(entry.vector)}-dim vector, expected {self.dimension}"
                )
        rows = [entry.model_dump() for entry in unique.values()]
        with self._write_lock:
            stored = {
                row["id"]: row
                for row in self._query_rows(_in_list("id", unique), columns=["id", "content_hash", "indexed_at"])
            }
            for row in rows:
                previous = stored.get(row["id"])
                if previous is not None and previous["content_hash"] == row["content_hash"]:
                    row["indexed_at"] = previous["indexed_at"]
            self._merge(rows)
        logger.debug(f"Upserted {len(rows)} entries into {self.table_name}")
        return len(rows)

    @retry_on_failure(max_attempts=4, delay=0.2, exceptions=(Exception,), on_exhausted=_write_failed("upsert"))
    def _merge(self, rows: list[dict[str, Any]]) -> None:
        data = pa.Table.from_pylist(rows, schema=self.table.schema)
        (
            self.table.merge_insert("id")
            .when_matched_update_all()
            .when_not_matched_insert_all()
            .execute(data)
        )

    def delete(self, filter: Optional[IndexFilter] = None) -> int:
        """
        Delete every entry matching filter (all entries when filter is empty).

        Returns:
            Number of entries deleted

        Raises:
            IndexWriteFailed: If all retry attempts fail
        """
        where = build_where(filter) or "true"
        with self._write_lock:
            deleted = self._delete(where)
        if deleted > 0:
            logger.debug(f"Deleted {deleted} entries matching {where[:120]}")
        return deleted

    @retry_on_failure(max_attempts=4, delay=0.2, exceptions=(Exception,), on_exhausted=_write_failed("delete"))
    def _delete(self, where: str) -> int:
        count = self.table.count_rows(where)
        if count:
            self.table.delete(where)
        return count

    def delete_ids(self, ids: Iterable[str]) -> int:
        ids = sorted(set(ids))
        if not ids:
            return 0
        return self.delete(IndexFilter(ids=ids))

    def delete_paths(self, paths: Iterable[str]) -> int:
        paths = sorted(set(paths))
        if not paths:
            return 0
        return self.delete(IndexFilter(paths=paths))

    # ===== Reads =====

    def search(
        self,
        vector: list[float],
        k: int = 10,
        filter: Optional[IndexFilter] = None,
        min_score: float = 0.0,
    ) -> list[SearchHit]:
        """
        Find the k entries most similar to vector.

        Args:
            vector: Query embedding
            k: Maximum number of results
            filter: Optional metadata filter applied before ranking
            min_score: Minimum similarity score (0-1)

        Returns:
            Hits ordered by descending score, then ascending external ID
        """
        if k <= 0 or self.table.count_rows() == 0:
            return []

        query = self.table.search(vector).limit(k + TIE_MARGIN)
        where = build_where(filter)
        if where:
            query = query.where(where, prefilter=True)
        rows = query.to_list()

        hits = []
        for row in rows:
            # For L2 distance: similarity = 1 / (1 + distance)
            score = 1.0 / (1.0 + max(0.0, float(row.get("_distance", 0.0))))
            if score < min_score:
                continue
            entry = self._entry(row)
            # LIKE treats "_" as a wildcard, so prefix matches are re-checked exactly
            if not entry_matches(entry, filter):
                continue
            hits.append(SearchHit(entry=entry, score=score))

        hits.sort(key=lambda hit: (-hit.score, hit.entry.id))
        logger.debug(f"Search returned {min(k, len(hits))} of {len(rows)} candidates")
        return hits[:k]

    def _query_rows(self, where: str, columns: Optional[list[str]] = None) -> list[dict[str, Any]]:
        count = self.table.count_rows(where)
        if count == 0:
            return []
        query = self.table.search().where(where)
        if columns:
            query = query.select(columns)
        return query.limit(count).to_list()

    @staticmethod
    def _entry(row: dict[str, Any]) -> IndexEntry:
        data = {k: v for k, v in row.items() if not k.startswith("_")}
        data["vector"] = [float(x) for x in data.get("vector", [])]
        return IndexEntry(**data)

    def get(self, ids: Iterable[str]) -> list[IndexEntry]:
        """Fetch entries by external ID, ordered by ID."""
        ids = sorted(set(ids))
        if not ids:
            return []
        rows = self._query_rows(_in_list("id", ids))
        return sorted((self._entry(row) for row in rows), key=lambda e: e.id)

    def ids_for_path(self, path: str) -> set[str]:
        """External IDs currently stored for a file."""
        rows = self._query_rows(f"path = {sql_string(path)}", columns=["id"])
        return {row["id"] for row in rows}

    def entries_for_path(self, path: str) -> list[IndexEntry]:
        rows = self._query_rows(f"path = {sql_string(path)}")
        return sorted((self._entry(row) for row in rows), key=lambda e: (e.start_byte, e.id))

    def find_containing(self, path: str, start_line: int, end_line: Optional[int] = None) -> list[IndexEntry]:
        """
        Entries of a file overlapping a line range.

        Args:
            path: File path
            start_line: First line (1-indexed)
            end_line: Last line, defaults to start_line
        """
        end_line = start_line if end_line is None else end_line
        where = (
            f"path = {sql_string(path)} AND start_line <= {int(end_line)} "
            f"AND end_line >= {int(start_line)}"
        )
        rows = self._query_rows(where)
        return sorted((self._entry(row) for row in rows), key=lambda e: (e.start_byte, e.id))

    def indexed_paths(self) -> set[str]:
        """Set of all file paths currently indexed."""
        if self.table.count_rows() == 0:
            return set()
        df = self.table.to_pandas()
        return set(df["path"].unique())

    def content_hashes(self) -> set[str]:
        """Distinct chunk content hashes referenced by any entry."""
        if self.table.count_rows() == 0:
            return set()
        df = self.table.to_pandas()
        return set(df["content_hash"].unique())

    def count(self, filter: Optional[IndexFilter] = None) -> int:
        where = build_where(filter)
        return self.table.count_rows(where) if where else self.table.count_rows()

    def get_stats(self) -> IndexStats:
        """
        Get statistics about the indexed content.

        Returns:
            IndexStats object with counts and metadata
        """
        total_chunks = self.table.count_rows()
        if total_chunks == 0:
            return IndexStats()

        all_chunks = self.table.to_pandas()
        return IndexStats(
            total_files=int(all_chunks["path"].nunique()),
            total_chunks=total_chunks,
            total_size_bytes=int(all_chunks["text"].str.len().sum()),
            languages={k: int(v) for k, v in all_chunks["language"].value_counts().to_dict().items()},
            last_indexed=float(all_chunks["indexed_at"].max()),
        )

    def clear_all(self) -> None:
        """Drop the chunk table; it is recreated empty on next use."""
        with self._write_lock:
            if self.table_name in self.db.table_names():
                self.db.drop_table(self.table_name)
            self._table = None
        logger.info(f"Cleared all data from {self.table_name}")

    def __repr__(self) -> str:
        return f"VectorIndex(db_path={self.db_path}, table={self.table_name})"
