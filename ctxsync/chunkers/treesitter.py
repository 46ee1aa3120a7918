"""
Tree-sitter based chunking strategy for multiple languages.

Chunk boundaries snap to syntax node boundaries. A node larger than the
token budget is split at its children, recursively; runs of small sibling
units within the same scope are merged until they reach the minimum budget.
Supports every language registered in grammars.LANGUAGE_SPECS.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from tree_sitter import Node

from ..errors import ParseDegraded
from ..grammars import Grammar, SyntaxTree
from ..models import Chunk
from .base import ChunkStrategy, LineIndex, count_tokens
from .fallback import TokenWindowChunker, window_spans

logger = logging.getLogger(__name__)


@dataclass
class _Unit:
    """A candidate chunk before merging."""
    start: int
    end: int
    tokens: int
    scope: str
    kind: str
    name: Optional[str] = None
    symbol_path: str = ""
    is_definition: bool = False


def _join_symbol(scope: str, name: Optional[str]) -> str:
    if not name:
        return scope
    return f"{scope}.{name}" if scope else name


class SyntaxChunker(ChunkStrategy):
    """
    AST-aware chunking strategy using tree-sitter syntax trees.

    Files without a tree are handed to the token-window fallback.
    """

    def __init__(self, max_tokens: int = 500, min_tokens: int = 40):
        """
        Initialize the syntax chunker.

        Args:
            max_tokens: A unit above this budget is split at its children
            min_tokens: Adjacent units in one scope merge until they reach this budget
        """
        if min_tokens > max_tokens:
            raise ValueError("min_tokens cannot exceed max_tokens")
        self.max_tokens = max_tokens
        self.min_tokens = min_tokens
        self.fallback_chunker = TokenWindowChunker(max_tokens=max_tokens)

    def chunk(
        self,
        content: str,
        path: str,
        language: str,
        tree: Optional[SyntaxTree] = None,
    ) -> list[Chunk]:
        """
        Split code into syntax-aligned chunks.

        Args:
            content: The source code
            path: File path relative to the project root
            language: Detected language
            tree: Syntax tree parsed from content, or None

        Returns:
            Ordered list of Chunk objects covering the file
        """
        if not content.strip():
            return []
        if tree is None:
            return self.fallback_chunker.chunk(content, path, language)

        source = tree.source
        units = self._split_range(tree, tree.root, 0, len(source), scope="", in_class=False)
        units = self._merge(units)

        lines = LineIndex(source)
        chunks = [
            self.make_chunk(
                source, lines, unit.start, unit.end, path, language,
                kind=unit.kind, name=unit.name, symbol_path=unit.symbol_path,
            )
            for unit in units
        ]
        logger.debug(f"Extracted {len(chunks)} chunks from {path} using tree-sitter ({language})")
        return chunks

    def chunk_file(
        self,
        content: str,
        path: str,
        language: str,
        grammar: Grammar,
    ) -> tuple[list[Chunk], Optional[SyntaxTree]]:
        """
        Parse content with grammar and chunk it.

        A ParseDegraded failure falls back to token windows instead of
        failing the file.

        Returns:
            (chunks, tree) where tree is None when no usable tree was produced
        """
        try:
            tree = grammar.parse(content, path)
        except ParseDegraded as e:
            logger.debug(f"{e}; using token windows")
            tree = None
        return self.chunk(content, path, language, tree), tree

    def _split_range(
        self,
        tree: SyntaxTree,
        node: Node,
        start: int,
        end: int,
        scope: str,
        in_class: bool,
    ) -> list[_Unit]:
        """
        Cover [start, end) with units derived from node's children.

        Text between children is attached to the following child; text after
        the last child is attached to it.
        """
        children = [c for c in node.children if c.end_byte > c.start_byte]
        if not children:
            return self._window_units(tree.source, start, end, scope)

        units: list[_Unit] = []
        cursor = start
        for i, child in enumerate(children):
            segment_end = end if i == len(children) - 1 else min(child.end_byte, end)
            if segment_end <= cursor:
                continue
            units.extend(self._segment(tree, child, cursor, segment_end, scope, in_class))
            cursor = segment_end
        return units

    def _segment(
        self,
        tree: SyntaxTree,
        node: Node,
        start: int,
        end: int,
        scope: str,
        in_class: bool,
    ) -> list[_Unit]:
        """Turn one child (plus its attached gap) into one or more units."""
        tokens = count_tokens(tree.source[start:end].decode("utf8", errors="replace"))
        definition = tree.definition_of(node)

        if definition is not None:
            name = tree.definition_name(definition)
            kind = tree.definition_kind(definition, in_class=in_class)
            symbol_path = _join_symbol(scope, name)
        else:
            name = None
            kind = "module" if not scope else "block"
            symbol_path = scope

        if tokens <= self.max_tokens:
            return [_Unit(start, end, tokens, scope, kind, name, symbol_path, definition is not None)]

        # Too large: split at the next-smaller syntactic boundary
        if definition is not None:
            inner_scope = symbol_path
            inner_in_class = kind in tree.spec.class_kinds
        else:
            inner_scope = scope
            inner_in_class = in_class

        if node.child_count > 0:
            units = self._split_range(tree, node, start, end, inner_scope, inner_in_class)
            if len(units) > 1:
                return units

        return self._window_units(tree.source, start, end, inner_scope)

    def _window_units(self, source: bytes, start: int, end: int, scope: str) -> list[_Unit]:
        units = []
        for span_start, span_end in window_spans(source, start, end, self.max_tokens):
            tokens = count_tokens(source[span_start:span_end].decode("utf8", errors="replace"))
            units.append(_Unit(span_start, span_end, tokens, scope, "block", None, scope))
        return units

    def _merge(self, units: list[_Unit]) -> list[_Unit]:
        """
        Merge adjacent small units in source order.

        A group grows while it is below min_tokens, the next unit shares its
        scope, and the result stays within max_tokens.
        """
        merged: list[_Unit] = []
        group: list[_Unit] = []
        group_tokens = 0

        for unit in units:
            if (
                group
                and group_tokens < self.min_tokens
                and unit.scope == group[0].scope
                and group_tokens + unit.tokens <= self.max_tokens
            ):
                group.append(unit)
                group_tokens += unit.tokens
                continue
            if group:
                merged.append(self._combine(group, group_tokens))
            group = [unit]
            group_tokens = unit.tokens

        if group:
            merged.append(self._combine(group, group_tokens))
        return merged

    @staticmethod
    def _combine(group: list[_Unit], tokens: int) -> _Unit:
        if len(group) == 1:
            return group[0]

        definitions = [u for u in group if u.is_definition]
        if len(definitions) == 1:
            main = definitions[0]
            return _Unit(
                group[0].start, group[-1].end, tokens, main.scope,
                main.kind, main.name, main.symbol_path, True,
            )

        scope = group[0].scope
        kind = "module" if not scope else "block"
        return _Unit(group[0].start, group[-1].end, tokens, scope, kind, None, scope)
