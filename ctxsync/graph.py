"""
Symbol graph for ctxsync.

Nodes are (file, symbol path) pairs addressed by stable integer IDs; edges
are "defines" (scope -> nested symbol) and "references" (using scope ->
definition). References that resolve to nothing are kept as dangling
entries on their source node and are re-resolved when a matching
definition appears. The graph is persisted as JSON next to the sync state.
"""

import logging
import os
import threading
from pathlib import Path, PurePosixPath
from typing import Optional

import networkx as nx
from pydantic import BaseModel, Field, ValidationError

from .errors import GraphResolutionGap
from .models import FileSymbols, SymbolEdge, SymbolNode

logger = logging.getLogger(__name__)

GRAPH_FORMAT_VERSION = 1


class DanglingReference(BaseModel):
    source: int
    name: str
    via: str


class GraphSnapshot(BaseModel):
    """On-disk form of the symbol graph."""
    format_version: int = GRAPH_FORMAT_VERSION
    next_id: int = 0
    nodes: list[SymbolNode] = Field(default_factory=list)
    edges: list[SymbolEdge] = Field(default_factory=list)
    dangling: list[DanglingReference] = Field(default_factory=list)


def module_name(path: str) -> str:
    """Name a file's module node resolves under ("pkg/utils.py" -> "utils")."""
    return PurePosixPath(path).stem


class SymbolGraph:
    """
    Incremental cross-file symbol graph.

    Mutations (apply, prune_file) are expected from one writer at a time;
    the internal lock keeps concurrent readers consistent.
    """

    def __init__(self):
        self._graph = nx.MultiDiGraph()
        self._next_id = 0
        self._ids: dict[tuple[str, str], int] = {}
        self._by_name: dict[str, set[int]] = {}
        self._by_file: dict[str, set[int]] = {}
        self._dangling: dict[int, set[tuple[str, str]]] = {}  # source -> {(name, via)}
        self._lock = threading.RLock()

    # ===== Mutation =====

    def apply(self, delta: FileSymbols) -> list[GraphResolutionGap]:
        """
        Replace everything known about delta.path with the delta's contents.

        Returns:
            References from this file that could not be resolved
        """
        with self._lock:
            self._remove_file_nodes(delta.path)

            module_id = self._add_node(SymbolNode(
                id=-1, path=delta.path, symbol_path="",
                name=module_name(delta.path), kind="module",
            ))

            new_names = {module_name(delta.path)}
            for definition in delta.definitions:
                if (delta.path, definition.symbol_path) in self._ids:
                    continue  # redefinition in the same file: first wins
                node_id = self._add_node(SymbolNode(
                    id=-1,
                    path=delta.path,
                    symbol_path=definition.symbol_path,
                    name=definition.name,
                    kind=definition.kind,
                    start_line=definition.start_line,
                    end_line=definition.end_line,
                ))
                parent_path = definition.symbol_path.rpartition(".")[0]
                parent_id = self._ids.get((delta.path, parent_path), module_id)
                self._graph.add_edge(parent_id, node_id, key="defines", relation="defines")
                new_names.add(definition.name)

            gaps = []
            for ref in delta.references:
                source_id = self._ids.get((delta.path, ref.source), module_id)
                targets = self._resolve(ref.name, delta.path)
                if targets:
                    for target in targets:
                        self._add_reference(source_id, target, ref.relation)
                else:
                    self._dangling.setdefault(source_id, set()).add((ref.name, ref.relation))
                    gaps.append(GraphResolutionGap(delta.path, ref.source, ref.name, ref.relation))

            self._resolve_dangling(new_names, exclude_file=delta.path)

            if gaps:
                logger.debug(f"{len(gaps)} unresolved references in {delta.path}")
            return gaps

    def prune_file(self, path: str) -> int:
        """
        Remove all nodes owned by a file.

        References from other files into the removed nodes become dangling.

        Returns:
            Number of nodes removed
        """
        with self._lock:
            return self._remove_file_nodes(path)

    def clear(self) -> None:
        with self._lock:
            self._graph.clear()
            self._next_id = 0
            self._ids.clear()
            self._by_name.clear()
            self._by_file.clear()
            self._dangling.clear()

    def _add_node(self, node: SymbolNode) -> int:
        node_id = self._next_id
        self._next_id += 1
        node = node.model_copy(update={"id": node_id})
        self._graph.add_node(node_id, data=node)
        self._ids[(node.path, node.symbol_path)] = node_id
        self._by_file.setdefault(node.path, set()).add(node_id)
        if node.name:
            self._by_name.setdefault(node.name, set()).add(node_id)
        return node_id

    def _add_reference(self, source: int, target: int, via: str) -> None:
        key = f"references:{via}"
        if not self._graph.has_edge(source, target, key=key):
            self._graph.add_edge(source, target, key=key, relation="references", via=via)

    def _remove_file_nodes(self, path: str) -> int:
        node_ids = self._by_file.pop(path, set())
        for node_id in node_ids:
            node: SymbolNode = self._graph.nodes[node_id]["data"]
            for source, _, attrs in list(self._graph.in_edges(node_id, data=True)):
                if attrs["relation"] != "references" or source in node_ids:
                    continue
                if not self._still_resolves(source, node.name, attrs["via"], node_ids):
                    self._dangling.setdefault(source, set()).add((node.name or "", attrs["via"]))
            self._ids.pop((node.path, node.symbol_path), None)
            if node.name and node.name in self._by_name:
                self._by_name[node.name].discard(node_id)
                if not self._by_name[node.name]:
                    del self._by_name[node.name]
            self._dangling.pop(node_id, None)
        self._graph.remove_nodes_from(node_ids)
        if node_ids:
            logger.debug(f"Pruned {len(node_ids)} symbol nodes for {path}")
        return len(node_ids)

    def _still_resolves(self, source: int, name: Optional[str], via: str, removed: set[int]) -> bool:
        """Whether source keeps a reference to another definition of name."""
        key = f"references:{via}"
        for _, target, edge_key in self._graph.out_edges(source, keys=True):
            if edge_key == key and target not in removed and self._graph.nodes[target]["data"].name == name:
                return True
        return False

    def _resolve(self, name: str, from_path: str) -> list[int]:
        """Definitions a name refers to: same-file matches win, else all matches."""
        candidates = self._by_name.get(name)
        if not candidates:
            return []
        local = [c for c in candidates if self._graph.nodes[c]["data"].path == from_path]
        return sorted(local or candidates)

    def _resolve_dangling(self, names: set[str], exclude_file: str) -> None:
        for source, pending in list(self._dangling.items()):
            source_node: SymbolNode = self._graph.nodes[source]["data"]
            if source_node.path == exclude_file:
                continue
            resolved = set()
            for name, via in pending:
                if name not in names:
                    continue
                targets = self._resolve(name, source_node.path)
                for target in targets:
                    self._add_reference(source, target, via)
                if targets:
                    resolved.add((name, via))
            if resolved:
                pending -= resolved
                if not pending:
                    del self._dangling[source]

    # ===== Queries =====

    def node(self, node_id: int) -> Optional[SymbolNode]:
        with self._lock:
            if node_id not in self._graph:
                return None
            return self._graph.nodes[node_id]["data"]

    def find(self, path: str, symbol_path: str = "") -> Optional[SymbolNode]:
        with self._lock:
            node_id = self._ids.get((path, symbol_path))
            return self._graph.nodes[node_id]["data"] if node_id is not None else None

    def nodes_for_file(self, path: str) -> list[SymbolNode]:
        with self._lock:
            ids = sorted(self._by_file.get(path, ()))
            return [self._graph.nodes[i]["data"] for i in ids]

    def nodes_in_range(self, path: str, start_line: int, end_line: int) -> list[SymbolNode]:
        """Definition nodes of a file whose definition starts within the line range."""
        return [
            node for node in self.nodes_for_file(path)
            if node.symbol_path and start_line <= node.start_line <= end_line
        ]

    def neighbors(self, node_id: int) -> list[tuple[SymbolNode, str]]:
        """
        One-hop reference neighbors of a node.

        Returns:
            (node, direction) pairs where direction is "references" for
            definitions this node uses and "referenced_by" for its users
        """
        with self._lock:
            if node_id not in self._graph:
                return []
            found: dict[tuple[int, str], SymbolNode] = {}
            for _, target, attrs in self._graph.out_edges(node_id, data=True):
                if attrs["relation"] == "references" and target != node_id:
                    found[(target, "references")] = self._graph.nodes[target]["data"]
            for source, _, attrs in self._graph.in_edges(node_id, data=True):
                if attrs["relation"] == "references" and source != node_id:
                    found[(source, "referenced_by")] = self._graph.nodes[source]["data"]
            return [(node, direction) for (_, direction), node in sorted(found.items())]

    def reference_count(self, node_id: int) -> int:
        """Number of distinct nodes referencing node_id."""
        with self._lock:
            if node_id not in self._graph:
                return 0
            return len({
                source for source, _, attrs in self._graph.in_edges(node_id, data=True)
                if attrs["relation"] == "references" and source != node_id
            })

    def dangling_references(self, path: Optional[str] = None) -> list[GraphResolutionGap]:
        with self._lock:
            gaps = []
            for source, pending in sorted(self._dangling.items()):
                node: SymbolNode = self._graph.nodes[source]["data"]
                if path is not None and node.path != path:
                    continue
                for name, via in sorted(pending):
                    gaps.append(GraphResolutionGap(node.path, node.symbol_path, name, via))
            return gaps

    @property
    def node_count(self) -> int:
        return self._graph.number_of_nodes()

    @property
    def edge_count(self) -> int:
        return self._graph.number_of_edges()

    @property
    def files(self) -> set[str]:
        with self._lock:
            return set(self._by_file)

    # ===== Persistence =====

    def to_snapshot(self) -> GraphSnapshot:
        with self._lock:
            nodes = [self._graph.nodes[i]["data"] for i in sorted(self._graph.nodes)]
            edges = [
                SymbolEdge(source=s, target=t, relation=attrs["relation"], via=attrs.get("via"))
                for s, t, attrs in sorted(
                    self._graph.edges(data=True), key=lambda e: (e[0], e[1], e[2]["relation"], e[2].get("via") or "")
                )
            ]
            dangling = [
                DanglingReference(source=source, name=name, via=via)
                for source, pending in sorted(self._dangling.items())
                for name, via in sorted(pending)
            ]
            return GraphSnapshot(next_id=self._next_id, nodes=nodes, edges=edges, dangling=dangling)

    @classmethod
    def from_snapshot(cls, snapshot: GraphSnapshot) -> "SymbolGraph":
        graph = cls()
        for node in snapshot.nodes:
            graph._graph.add_node(node.id, data=node)
            graph._ids[(node.path, node.symbol_path)] = node.id
            graph._by_file.setdefault(node.path, set()).add(node.id)
            if node.name:
                graph._by_name.setdefault(node.name, set()).add(node.id)
        for edge in snapshot.edges:
            if edge.relation == "defines":
                graph._graph.add_edge(edge.source, edge.target, key="defines", relation="defines")
            else:
                graph._add_reference(edge.source, edge.target, edge.via or "call")
        for ref in snapshot.dangling:
            graph._dangling.setdefault(ref.source, set()).add((ref.name, ref.via))
        graph._next_id = max(snapshot.next_id, max((n.id for n in snapshot.nodes), default=-1) + 1)
        return graph

    def save(self, path: Path) -> None:
        """Write the graph atomically to path."""
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_text(self.to_snapshot().model_dump_json(), encoding="utf-8")
        os.replace(tmp_path, path)
        logger.debug(f"Saved symbol graph ({self.node_count} nodes) to {path}")

    @classmethod
    def load(cls, path: Path) -> "SymbolGraph":
        """
        Load a graph saved by save().

        A missing or unreadable file yields an empty graph; the orchestrator
        rebuilds graph contents when the sync state does not match.
        """
        if not path.exists():
            return cls()
        try:
            snapshot = GraphSnapshot.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            logger.warning(f"Failed to load symbol graph from {path}: {e}. Starting empty")
            return cls()
        if snapshot.format_version != GRAPH_FORMAT_VERSION:
            logger.info("Symbol graph format changed, starting empty")
            return cls()
        return cls.from_snapshot(snapshot)

    def __repr__(self) -> str:
        return f"SymbolGraph(nodes={self.node_count}, edges={self.edge_count})"
