"""
Symbol extraction for ctxsync.

Walks a syntax tree and collects the symbols a file defines and the names
it references (calls, imports, type references). The result is a
FileSymbols delta that the symbol graph applies; extraction itself touches
no shared state, so it runs inside indexing workers.
"""

import logging
from typing import Iterator, Optional

from tree_sitter import Node

from .grammars import SyntaxTree
from .models import FileSymbols, SymbolDefinition, SymbolReference

logger = logging.getLogger(__name__)

_IDENTIFIER_TYPES = {"identifier", "property_identifier", "field_identifier", "type_identifier"}
_MEMBER_FIELDS = ("attribute", "property", "field", "name")


class SymbolExtractor:
    """Extracts definitions and references from syntax trees."""

    def extract(self, tree: SyntaxTree, path: str) -> FileSymbols:
        """
        Extract the symbol delta for one file.

        Args:
            tree: Parsed syntax tree
            path: File path relative to the project root

        Returns:
            FileSymbols with definitions in source order and de-duplicated references
        """
        definitions: list[SymbolDefinition] = []
        references: list[SymbolReference] = []
        self._visit(tree, tree.root, "", False, definitions, references)

        seen = set()
        unique_refs = []
        for ref in references:
            key = (ref.source, ref.name, ref.relation)
            if key in seen:
                continue
            seen.add(key)
            unique_refs.append(ref)

        logger.debug(
            f"Extracted {len(definitions)} definitions and {len(unique_refs)} references from {path}"
        )
        return FileSymbols(
            path=path,
            language=tree.language,
            definitions=definitions,
            references=unique_refs,
        )

    def _visit(
        self,
        tree: SyntaxTree,
        node: Node,
        scope: str,
        in_class: bool,
        definitions: list[SymbolDefinition],
        references: list[SymbolReference],
    ) -> None:
        spec = tree.spec

        if node.type in spec.definitions and tree.definition_of(node) is not None:
            name = tree.definition_name(node)
            if name:
                kind = tree.definition_kind(node, in_class=in_class)
                symbol_path = f"{scope}.{name}" if scope else name
                definitions.append(SymbolDefinition(
                    symbol_path=symbol_path,
                    name=name,
                    kind=kind,
                    start_line=node.start_point[0] + 1,
                    end_line=node.end_point[0] + 1,
                ))
                if tree.language == "python":
                    for base in self._python_bases(tree, node):
                        references.append(SymbolReference(
                            source=symbol_path, name=base, relation="type",
                            line=node.start_point[0] + 1,
                        ))
                for child in node.children:
                    self._visit(tree, child, symbol_path, kind in spec.class_kinds,
                                definitions, references)
                return

        line = node.start_point[0] + 1

        if node.type in spec.imports:
            for name in self._import_names(tree, node):
                references.append(SymbolReference(source=scope, name=name, relation="import", line=line))
            return

        if node.type in spec.calls:
            callee = self._callee_name(tree, node, spec.calls[node.type])
            if callee:
                references.append(SymbolReference(source=scope, name=callee, relation="call", line=line))

        if node.type in spec.type_identifiers and not self._is_declared_name(node):
            references.append(SymbolReference(
                source=scope, name=tree.text_of(node), relation="type", line=line,
            ))

        if tree.language == "python" and node.type == "type":
            for ident in _descendants(node, "identifier"):
                references.append(SymbolReference(
                    source=scope, name=tree.text_of(ident), relation="type", line=line,
                ))

        for child in node.children:
            self._visit(tree, child, scope, in_class, definitions, references)

    @staticmethod
    def _callee_name(tree: SyntaxTree, node: Node, field: str) -> Optional[str]:
        """Resolve the called name: foo(), obj.foo(), pkg.Foo{}, Type::foo()."""
        target = node.child_by_field_name(field)
        while target is not None:
            if target.type in _IDENTIFIER_TYPES:
                return tree.text_of(target)
            for member_field in _MEMBER_FIELDS:
                member = target.child_by_field_name(member_field)
                if member is not None:
                    target = member
                    break
            else:
                return None
        return None

    @staticmethod
    def _is_declared_name(node: Node) -> bool:
        """True when a type identifier is the name being declared, not a use."""
        parent = node.parent
        if parent is None:
            return False
        for field in ("name", "type"):
            declared = parent.child_by_field_name(field)
            if (
                declared is not None
                and declared.start_byte == node.start_byte
                and declared.end_byte == node.end_byte
                and (field == "name" or parent.type == "impl_item")
            ):
                return True
        return False

    def _python_bases(self, tree: SyntaxTree, node: Node) -> list[str]:
        if node.type != "class_definition":
            return []
        superclasses = node.child_by_field_name("superclasses")
        if superclasses is None:
            return []
        names = []
        for child in superclasses.named_children:
            if child.type == "identifier":
                names.append(tree.text_of(child))
            elif child.type == "attribute":
                attr = child.child_by_field_name("attribute")
                if attr is not None:
                    names.append(tree.text_of(attr))
        return names

    def _import_names(self, tree: SyntaxTree, node: Node) -> list[str]:
        """Names an import statement brings into scope (last path component)."""
        language = tree.language
        names: list[str] = []

        if language == "python":
            for name_node in node.children_by_field_name("name"):
                if name_node.type == "aliased_import":
                    name_node = name_node.child_by_field_name("name")
                if name_node is None:
                    continue
                parts = tree.text_of(name_node).split(".")
                names.append(parts[-1])

        elif language in ("javascript", "typescript", "tsx"):
            for spec_node in _descendants(node, "import_specifier"):
                name_node = spec_node.child_by_field_name("name")
                if name_node is not None:
                    names.append(tree.text_of(name_node))
            for clause in _descendants(node, "import_clause"):
                for child in clause.named_children:
                    if child.type == "identifier":
                        names.append(tree.text_of(child))

        elif language == "go":
            for spec_node in _descendants(node, "import_spec"):
                path_node = spec_node.child_by_field_name("path")
                if path_node is not None:
                    names.append(tree.text_of(path_node).strip("\"`").rsplit("/", 1)[-1])

        elif language == "rust":
            argument = node.child_by_field_name("argument")
            if argument is not None:
                names.extend(self._rust_use_names(tree, argument))

        return [n for n in names if n]

    def _rust_use_names(self, tree: SyntaxTree, node: Node) -> list[str]:
        if node.type == "identifier":
            return [tree.text_of(node)]
        if node.type == "scoped_identifier":
            name = node.child_by_field_name("name")
            return [tree.text_of(name)] if name is not None else []
        if node.type == "scoped_use_list":
            inner = node.child_by_field_name("list")
            return self._rust_use_names(tree, inner) if inner is not None else []
        if node.type == "use_list":
            names = []
            for child in node.named_children:
                names.extend(self._rust_use_names(tree, child))
            return names
        if node.type == "use_as_clause":
            path = node.child_by_field_name("path")
            return self._rust_use_names(tree, path) if path is not None else []
        return []


def _descendants(node: Node, node_type: str) -> Iterator[Node]:
    for child in node.children:
        if child.type == node_type:
            yield child
        yield from _descendants(child, node_type)
