"""
Error types for ctxsync.

Per-file errors are caught by the orchestrator and reported; only
SyncStateUnavailable is fatal to a sync pass.
"""

from dataclasses import dataclass
from typing import Optional, Sequence


class CtxsyncError(Exception):
    """Base class for ctxsync errors."""


class ParseDegraded(CtxsyncError):
    """A registered grammar failed to parse a file; callers fall back to token windows."""

    def __init__(self, path: str, language: str, reason: str):
        super().__init__(f"Parse of {path} ({language}) degraded: {reason}")
        self.path = path
        self.language = language
        self.reason = reason


class EmbeddingTransient(CtxsyncError):
    """A retryable embedding backend failure (timeout, rate limit, 5xx)."""


class EmbeddingExhausted(CtxsyncError):
    """
    One or more embedding batches failed after all retries.

    partial holds the vectors of the input texts in order, with None at
    every index listed in failed_indices.
    """

    def __init__(
        self,
        message: str,
        failed_indices: Sequence[int] = (),
        partial: Optional[list[Optional[list[float]]]] = None,
    ):
        super().__init__(message)
        self.failed_indices = list(failed_indices)
        self.partial = partial if partial is not None else []


class IndexWriteFailed(CtxsyncError):
    """A vector index write (upsert or delete) failed after retries."""

    def __init__(self, operation: str, reason: str):
        super().__init__(f"Index {operation} failed: {reason}")
        self.operation = operation
        self.reason = reason


class QueryCancelled(CtxsyncError):
    """A query was cancelled at one of its suspension points."""


class SyncStateUnavailable(CtxsyncError):
    """Persisted sync state cannot be read or written; the dirty set is unknown."""

    def __init__(self, path: str, reason: str):
        super().__init__(
            f"Sync state at {path} is unavailable ({reason}). "
            f"Run a forced sync to rebuild the index from scratch."
        )
        self.path = path
        self.reason = reason


@dataclass(frozen=True)
class GraphResolutionGap:
    """
    A reference that did not resolve to a known symbol.

    Not an error: the reference is kept as a dangling edge and may resolve
    once the defining file is indexed.
    """
    path: str
    source: str
    name: str
    relation: str
