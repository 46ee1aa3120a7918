"""
Content-addressed embedding cache for ctxsync.

Maps the content hash of normalized chunk text to its embedding vector for
one embedding model. Entries live in memory after load() and are persisted
to a LanceDB table on flush(). Concurrent requests for the same hash share
one in-flight computation.
"""

import logging
import threading
import time
from concurrent.futures import Future
from pathlib import Path
from typing import Callable, Iterable, Optional, Sequence

import lancedb
import pyarrow as pa
from lancedb.table import Table

from .errors import EmbeddingExhausted, IndexWriteFailed
from .models import EmbeddingRecord, embedding_record_model
from .utils import sql_string

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400


class EmbeddingCache:
    """
    Durable content hash -> vector mapping bound to one model identifier.

    Lifecycle: load() once, then any number of concurrent get_or_compute*
    calls, then flush() to persist new entries and refresh last_seen_at.
    Entries are never evicted by size; sweep() removes entries unseen for a
    retention window.
    """

    def __init__(
        self,
        db_path: Path,
        model_id: str,
        dimension: int,
        table_name: str = "embedding_cache",
    ):
        self.db_path = db_path
        self.model_id = model_id
        self.dimension = dimension
        self.table_name = table_name
        self._db: Optional[lancedb.DBConnection] = None
        self._table: Optional[Table] = None

        self._lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._entries: dict[str, list[float]] = {}
        self._created: dict[str, float] = {}
        self._last_seen: dict[str, float] = {}
        self._inflight: dict[str, Future] = {}
        self._pending: set[str] = set()  # new or touched since the last flush
        self._loaded = False

    @property
    def db(self) -> lancedb.DBConnection:
        if self._db is None:
            self.db_path.mkdir(parents=True, exist_ok=True)
            self._db = lancedb.connect(str(self.db_path))
        return self._db

    @property
    def table(self) -> Table:
        """Open or create the cache table, recreating it if the vector width changed."""
        if self._table is None:
            schema = embedding_record_model(self.dimension)
            if self.table_name in self.db.table_names():
                table = self.db.open_table(self.table_name)
                width = table.schema.field("vector").type.list_size
                if width == self.dimension:
                    self._table = table
                    return table
                logger.warning(
                    f"Embedding cache has dimension {width}, model {self.model_id} "
                    f"produces {self.dimension}; recreating cache table"
                )
                self.db.drop_table(self.table_name)
            try:
                self._table = self.db.create_table(self.table_name, schema=schema, mode="create")
                logger.info(f"Created embedding cache table: {self.table_name}")
            except Exception as e:
                if "already exists" not in str(e):
                    raise
                self._table = self.db.open_table(self.table_name)
        return self._table

    def load(self) -> int:
        """
        Load all persisted entries for this model into memory.

        Returns:
            Number of entries loaded
        """
        df = self.table.to_pandas()
        entries: dict[str, list[float]] = {}
        created: dict[str, float] = {}
        last_seen: dict[str, float] = {}
        if not df.empty:
            df = df[df["model"] == self.model_id]
            for h, vector, created_at, seen_at in zip(
                df["content_hash"], df["vector"], df["created_at"], df["last_seen_at"]
            ):
                entries[h] = [float(x) for x in vector]
                created[h] = float(created_at)
                last_seen[h] = float(seen_at)

        with self._lock:
            # Entries computed before load() was called take precedence
            for h, vector in entries.items():
                if h not in self._entries:
                    self._entries[h] = vector
                    self._created[h] = created[h]
                    self._last_seen[h] = last_seen[h]
            self._loaded = True

        logger.info(f"Loaded {len(entries)} cached embeddings for {self.model_id}")
        return len(entries)

    def lookup(self, h: str) -> Optional[list[float]]:
        """Read-only lookup; does not refresh last_seen_at."""
        with self._lock:
            return self._entries.get(h)

    def __contains__(self, h: str) -> bool:
        with self._lock:
            return h in self._entries

    def get_or_compute(self, h: str, compute_fn: Callable[[], Sequence[float]]) -> list[float]:
        """
        Return the vector for h, computing it with compute_fn on a miss.

        At most one computation per hash runs at a time: concurrent callers
        for the same hash wait on the in-flight computation and observe its
        result (or its exception).
        """
        with self._lock:
            vector = self._entries.get(h)
            if vector is not None:
                self._touch(h)
                return vector
            future = self._inflight.get(h)
            owner = future is None
            if owner:
                future = Future()
                self._inflight[h] = future

        if not owner:
            return future.result()

        try:
            vector = [float(x) for x in compute_fn()]
        except BaseException as e:
            self._fail([h], e)
            raise
        self._complete({h: vector})
        return vector

    def get_or_compute_many(
        self,
        items: Sequence[tuple[str, str]],
        batch_fn: Callable[[list[str]], list[list[float]]],
    ) -> list[list[float]]:
        """
        Resolve vectors for (content_hash, text) pairs with one batched call for misses.

        Duplicate hashes in items are computed once. Hashes already being
        computed by another caller are awaited instead of recomputed.

        Raises:
            EmbeddingExhausted: Some misses could not be embedded; vectors
                that were computed are cached before the error propagates
        """
        resolved: dict[str, list[float]] = {}
        owned: dict[str, str] = {}
        waiting: dict[str, Future] = {}

        with self._lock:
            for h, text in items:
                if h in resolved or h in owned or h in waiting:
                    continue
                vector = self._entries.get(h)
                if vector is not None:
                    self._touch(h)
                    resolved[h] = vector
                elif h in self._inflight:
                    waiting[h] = self._inflight[h]
                else:
                    self._inflight[h] = Future()
                    owned[h] = text

        if owned:
            hashes = list(owned)
            try:
                vectors = batch_fn([owned[h] for h in hashes])
            except EmbeddingExhausted as e:
                done = {
                    h: [float(x) for x in vector]
                    for h, vector in zip(hashes, e.partial)
                    if vector is not None
                }
                self._complete(done)
                self._fail([h for h in hashes if h not in done], e)
                raise
            except BaseException as e:
                self._fail(hashes, e)
                raise
            if len(vectors) != len(hashes):
                error = EmbeddingExhausted(
                    f"Embedding backend returned {len(vectors)} vectors for {len(hashes)} texts",
                    failed_indices=range(len(hashes)),
                )
                self._fail(hashes, error)
                raise error
            computed = {h: [float(x) for x in vector] for h, vector in zip(hashes, vectors)}
            self._complete(computed)
            resolved.update(computed)

        for h, future in waiting.items():
            resolved[h] = future.result()

        return [resolved[h] for h, _ in items]

    def touch(self, hashes: Iterable[str]) -> int:
        """
        Mark cached hashes as still in use so the age sweep keeps them.

        Returns:
            Number of hashes refreshed
        """
        now = time.time()
        refreshed = 0
        with self._lock:
            for h in hashes:
                if h in self._entries:
                    self._last_seen[h] = now
                    self._pending.add(h)
                    refreshed += 1
        return refreshed

    def _touch(self, h: str) -> None:
        # Caller holds self._lock
        self._last_seen[h] = time.time()
        self._pending.add(h)

    def _complete(self, vectors: dict[str, list[float]]) -> None:
        now = time.time()
        with self._lock:
            futures = []
            for h, vector in vectors.items():
                self._entries[h] = vector
                self._created.setdefault(h, now)
                self._last_seen[h] = now
                self._pending.add(h)
                future = self._inflight.pop(h, None)
                if future is not None:
                    futures.append((future, vector))
        for future, vector in futures:
            future.set_result(vector)

    def _fail(self, hashes: list[str], error: BaseException) -> None:
        with self._lock:
            futures = [self._inflight.pop(h, None) for h in hashes]
        for future in futures:
            if future is not None:
                future.set_exception(error)

    def flush(self) -> int:
        """
        Persist new entries and refreshed last_seen_at values.

        Returns:
            Number of rows written

        Raises:
            IndexWriteFailed: The cache table could not be written; the
                rows stay pending for the next flush
        """
        with self._lock:
            hashes = sorted(self._pending)
            self._pending.clear()
            rows = [
                EmbeddingRecord(
                    content_hash=h,
                    vector=self._entries[h],
                    model=self.model_id,
                    created_at=self._created[h],
                    last_seen_at=self._last_seen[h],
                ).model_dump()
                for h in hashes
                if h in self._entries
            ]
        if not rows:
            return 0

        try:
            with self._write_lock:
                data = pa.Table.from_pylist(rows, schema=self.table.schema)
                (
                    self.table.merge_insert(["content_hash", "model"])
                    .when_matched_update_all()
                    .when_not_matched_insert_all()
                    .execute(data)
                )
        except Exception as e:
            with self._lock:
                self._pending.update(hashes)
            logger.error(f"Failed to flush embedding cache: {e}")
            raise IndexWriteFailed("cache flush", str(e)) from e

        logger.debug(f"Flushed {len(rows)} cache entries")
        return len(rows)

    def sweep(self, retention_days: float) -> int:
        """
        Remove entries of any model unseen for retention_days.

        A retention of 0 or less disables the sweep.

        Returns:
            Number of persisted rows removed
        """
        if retention_days <= 0:
            return 0
        self.flush()
        cutoff = time.time() - retention_days * SECONDS_PER_DAY

        where = f"last_seen_at < {cutoff}"
        with self._write_lock:
            removed = self.table.count_rows(where)
            if removed:
                self.table.delete(where)

        with self._lock:
            for h in [h for h, seen in self._last_seen.items() if seen < cutoff]:
                self._entries.pop(h, None)
                self._created.pop(h, None)
                self._last_seen.pop(h, None)

        if removed:
            logger.info(f"Swept {removed} embeddings unseen for {retention_days} days")
        return removed

    def invalidate_model(self, model_id: str) -> int:
        """
        Remove every persisted entry produced by model_id.

        Returns:
            Number of rows removed
        """
        where = f"model = {sql_string(model_id)}"
        with self._write_lock:
            removed = self.table.count_rows(where)
            if removed:
                self.table.delete(where)

        if model_id == self.model_id:
            with self._lock:
                self._entries.clear()
                self._created.clear()
                self._last_seen.clear()
                self._pending.clear()

        logger.info(f"Invalidated {removed} cached embeddings for model {model_id}")
        return removed

    def count(self) -> int:
        """Number of persisted entries for this model."""
        return self.table.count_rows(f"model = {sql_string(self.model_id)}")

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __repr__(self) -> str:
        return f"EmbeddingCache(model={self.model_id}, entries={len(self)})"
