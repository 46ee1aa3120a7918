"""
Query-time retrieval for ctxsync.

Embeds a query, searches the vector index, optionally boosts hits whose
symbols are widely referenced, and expands the result set one hop through
the symbol graph. Never writes to the index, graph or cache.
"""

import logging
import threading
from typing import Optional

from .cache import EmbeddingCache
from .embeddings import EmbeddingEngine
from .errors import QueryCancelled
from .graph import SymbolGraph
from .models import IndexEntry, IndexFilter, QueryResult, RetrievedChunk, SymbolNode
from .store import VectorIndex, entry_matches
from .utils import content_hash

logger = logging.getLogger(__name__)


class RetrievalService:
    """
    Read-only query API over the vector index and symbol graph.

    Direct hits come from vector search; expanded hits are chunks that
    define or use a symbol of a direct hit. Expanded scores are the
    originating hit's score times expanded_score_decay.
    """

    def __init__(
        self,
        index: VectorIndex,
        engine: EmbeddingEngine,
        graph: Optional[SymbolGraph] = None,
        cache: Optional[EmbeddingCache] = None,
        reuse_cache: bool = True,
        default_limit: int = 10,
        min_score: float = 0.0,
        expand: bool = True,
        expand_limit: int = 5,
        expanded_score_decay: float = 0.5,
        reference_weight: float = 0.0,
    ):
        self.index = index
        self.engine = engine
        self.graph = graph
        self.cache = cache if reuse_cache else None
        self.default_limit = default_limit
        self.min_score = min_score
        self.expand = expand
        self.expand_limit = expand_limit
        self.expanded_score_decay = expanded_score_decay
        self.reference_weight = reference_weight

    @classmethod
    def from_config(
        cls,
        settings: dict,
        index: VectorIndex,
        engine: EmbeddingEngine,
        graph: Optional[SymbolGraph] = None,
        cache: Optional[EmbeddingCache] = None,
        reuse_cache: bool = True,
    ) -> "RetrievalService":
        return cls(
            index,
            engine,
            graph=graph,
            cache=cache,
            reuse_cache=reuse_cache,
            default_limit=settings.get("default_limit", 10),
            min_score=settings.get("min_score", 0.0),
            expand=settings.get("expand", True),
            expand_limit=settings.get("expand_limit", 5),
            expanded_score_decay=settings.get("expanded_score_decay", 0.5),
            reference_weight=settings.get("reference_weight", 0.0),
        )

    def query(
        self,
        text: str,
        k: Optional[int] = None,
        filters: Optional[IndexFilter] = None,
        expand: Optional[bool] = None,
        min_score: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> QueryResult:
        """
        Retrieve chunks relevant to a text or code query.

        Args:
            text: Natural language or code snippet
            k: Number of direct results (defaults to default_limit)
            filters: Metadata filter applied to direct and expanded results
            expand: Override graph expansion for this query
            min_score: Minimum similarity for direct results
            cancel: Optional event checked before embedding, search and expansion

        Returns:
            QueryResult with direct results first, then expanded results

        Raises:
            ValueError: If text is blank
            QueryCancelled: If cancel was set at a suspension point
        """
        if not text or not text.strip():
            raise ValueError("Query text must not be empty")
        k = self.default_limit if k is None else k
        expand = self.expand if expand is None else expand
        min_score = self.min_score if min_score is None else min_score

        _check_cancel(cancel)
        vector = self._embed_query(text)

        _check_cancel(cancel)
        hits = self.index.search(vector, k=k, filter=filters, min_score=min_score)
        direct = [RetrievedChunk(entry=hit.entry, score=hit.score) for hit in hits]
        result = QueryResult(query=text, results=direct)

        if self.graph is None or not direct:
            return result

        _check_cancel(cancel)
        try:
            if self.reference_weight > 0:
                direct = self.rerank_by_references(direct)
            expanded = self._expand(direct, filters) if expand and self.expand_limit > 0 else []
        except Exception as e:
            logger.warning(f"Graph expansion failed, returning direct results only: {e}")
            result.degraded = True
            result.degraded_reason = f"{type(e).__name__}: {e}"
            return result

        result.results = direct + expanded
        logger.debug(f"Query returned {len(direct)} direct and {len(expanded)} expanded results")
        return result

    def _embed_query(self, text: str) -> list[float]:
        """Embed the query, reusing a cached chunk vector when the normalized text matches."""
        if self.cache is not None:
            vector = self.cache.lookup(content_hash(text))
            if vector is not None:
                logger.debug("Query embedding served from cache")
                return vector
        return self.engine.embed_query(text)

    def _symbols_of(self, entry: IndexEntry) -> list[SymbolNode]:
        """Graph nodes a chunk defines, or the symbol enclosing it."""
        nodes = self.graph.nodes_in_range(entry.path, entry.start_line, entry.end_line)
        if not nodes and entry.symbol_path:
            enclosing = self.graph.find(entry.path, entry.symbol_path)
            if enclosing is not None:
                nodes = [enclosing]
        return nodes

    def rerank_by_references(self, results: list[RetrievedChunk]) -> list[RetrievedChunk]:
        """
        Boost results whose symbols are referenced from many places.

        final_score = similarity + (reference_weight * normalized_reference_count),
        capped at 1.0. Ties keep the index's ID ordering.
        """
        counts = []
        for result in results:
            nodes = self._symbols_of(result.entry)
            counts.append(max((self.graph.reference_count(n.id) for n in nodes), default=0))

        max_count = max(counts, default=0)
        if max_count == 0:
            return results

        reranked = [
            result.model_copy(update={
                "score": min(1.0, result.score + self.reference_weight * count / max_count)
            })
            for result, count in zip(results, counts)
        ]
        reranked.sort(key=lambda r: (-r.score, r.entry.id))
        return reranked

    def _expand(self, direct: list[RetrievedChunk], filters: Optional[IndexFilter]) -> list[RetrievedChunk]:
        """Walk one hop from each direct hit's symbols and collect the chunks found there."""
        seen = {r.entry.id for r in direct}
        candidates: dict[str, RetrievedChunk] = {}

        for hit in direct:
            # Scores only decrease down the ranked list
            if len(candidates) >= self.expand_limit:
                break
            score = hit.score * self.expanded_score_decay
            for node in self._symbols_of(hit.entry):
                for neighbor, direction in self.graph.neighbors(node.id):
                    if not neighbor.symbol_path:
                        continue  # whole-module neighbors are too broad to expand into
                    entry = self._chunk_for(neighbor)
                    if entry is None or entry.id in seen or not entry_matches(entry, filters):
                        continue
                    if direction == "references":
                        via = f"{node.symbol_path} references {neighbor.symbol_path}"
                    else:
                        via = f"{neighbor.symbol_path} references {node.symbol_path}"
                    current = candidates.get(entry.id)
                    if current is None or current.score < score:
                        candidates[entry.id] = RetrievedChunk(
                            entry=entry, score=score, origin="expanded", via=via,
                        )

        expanded = sorted(candidates.values(), key=lambda r: (-r.score, r.entry.id))
        return expanded[:self.expand_limit]

    def _chunk_for(self, node: SymbolNode) -> Optional[IndexEntry]:
        """The indexed chunk holding a symbol's definition line."""
        entries = self.index.find_containing(node.path, node.start_line)
        return entries[0] if entries else None

    def __repr__(self) -> str:
        return f"RetrievalService(index={self.index!r}, expand={self.expand})"


def _check_cancel(cancel: Optional[threading.Event]) -> None:
    if cancel is not None and cancel.is_set():
        raise QueryCancelled("Query cancelled")
