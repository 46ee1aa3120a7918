"""
Grammar registry for ctxsync.

Maps files to languages and languages to grammars. Every grammar exposes
the same capability, parse(text) -> SyntaxTree; languages without a
registered tree-sitter grammar get NoGrammar, whose parse returns None so
callers use token-window chunking instead.
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Any, Optional

from tree_sitter import Language, Node, Parser, Tree

from .errors import ParseDegraded

logger = logging.getLogger(__name__)


EXTENSION_MAP = {
    ".py": "python",
    ".pyi": "python",
    ".js": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".jsx": "javascript",
    ".ts": "typescript",
    ".mts": "typescript",
    ".tsx": "tsx",
    ".go": "go",
    ".rs": "rust",
    ".java": "java",
    ".c": "c",
    ".cpp": "cpp",
    ".h": "c",
    ".hpp": "cpp",
    ".md": "markdown",
    ".txt": "text",
    ".json": "json",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".toml": "toml",
    ".sh": "shell",
}

SHEBANG_MAP = {
    "python": "python",
    "node": "javascript",
    "deno": "typescript",
    "bash": "shell",
    "sh": "shell",
}


@dataclass(frozen=True)
class LanguageSpec:
    """
    Syntax node vocabulary for one language.

    definitions maps definition node types to chunk/symbol kinds. wrappers
    are node types that carry a single definition (decorators, exports).
    """
    definitions: dict[str, str]
    wrappers: frozenset[str]
    calls: dict[str, str]  # call node type -> field holding the callee
    imports: frozenset[str]
    type_identifiers: frozenset[str]
    class_kinds: frozenset[str] = frozenset({"class", "struct", "interface", "trait", "impl", "enum"})


_JS_DEFINITIONS = {
    "function_declaration": "function",
    "generator_function_declaration": "function",
    "class_declaration": "class",
    "method_definition": "method",
    "variable_declarator": "function",  # only when bound to a function value
}

_TS_DEFINITIONS = {
    **_JS_DEFINITIONS,
    "abstract_class_declaration": "class",
    "interface_declaration": "interface",
    "type_alias_declaration": "type",
    "enum_declaration": "enum",
}

_JS_CALLS = {"call_expression": "function", "new_expression": "constructor"}

LANGUAGE_SPECS: dict[str, LanguageSpec] = {
    "python": LanguageSpec(
        definitions={"function_definition": "function", "class_definition": "class"},
        wrappers=frozenset({"decorated_definition"}),
        calls={"call": "function"},
        imports=frozenset({"import_statement", "import_from_statement"}),
        type_identifiers=frozenset(),
    ),
    "javascript": LanguageSpec(
        definitions=_JS_DEFINITIONS,
        wrappers=frozenset({"export_statement", "lexical_declaration", "variable_declaration"}),
        calls=_JS_CALLS,
        imports=frozenset({"import_statement"}),
        type_identifiers=frozenset(),
    ),
    "typescript": LanguageSpec(
        definitions=_TS_DEFINITIONS,
        wrappers=frozenset({"export_statement", "lexical_declaration", "variable_declaration"}),
        calls=_JS_CALLS,
        imports=frozenset({"import_statement"}),
        type_identifiers=frozenset({"type_identifier"}),
    ),
    "tsx": LanguageSpec(
        definitions=_TS_DEFINITIONS,
        wrappers=frozenset({"export_statement", "lexical_declaration", "variable_declaration"}),
        calls=_JS_CALLS,
        imports=frozenset({"import_statement"}),
        type_identifiers=frozenset({"type_identifier"}),
    ),
    "go": LanguageSpec(
        definitions={
            "function_declaration": "function",
            "method_declaration": "method",
            "type_spec": "type",
        },
        wrappers=frozenset({"type_declaration"}),
        calls={"call_expression": "function"},
        imports=frozenset({"import_declaration"}),
        type_identifiers=frozenset({"type_identifier"}),
    ),
    "rust": LanguageSpec(
        definitions={
            "function_item": "function",
            "struct_item": "struct",
            "enum_item": "enum",
            "trait_item": "trait",
            "impl_item": "impl",
            "mod_item": "module",
        },
        wrappers=frozenset(),
        calls={"call_expression": "function"},
        imports=frozenset({"use_declaration"}),
        type_identifiers=frozenset({"type_identifier"}),
    ),
}

_FUNCTION_VALUE_TYPES = {"arrow_function", "function", "function_expression", "generator_function"}
_NAME_TYPES = {"identifier", "property_identifier", "type_identifier", "field_identifier"}


@dataclass
class SyntaxTree:
    """A parsed file: the tree-sitter tree plus the exact bytes it was parsed from."""
    language: str
    source: bytes
    tree: Tree

    @property
    def root(self) -> Node:
        return self.tree.root_node

    @property
    def spec(self) -> LanguageSpec:
        return LANGUAGE_SPECS[self.language]

    def text_of(self, node: Node) -> str:
        return self.source[node.start_byte:node.end_byte].decode("utf8", errors="replace")

    def definition_of(self, node: Node) -> Optional[Node]:
        """
        Return the definition node a top-level node stands for, if any.

        Wrappers (decorators, exports, const declarations) resolve to the
        single definition they carry.
        """
        spec = self.spec
        if node.type in spec.definitions:
            if node.type == "variable_declarator" and not self._binds_function(node):
                return None
            return node
        if node.type in spec.wrappers:
            found = [d for d in (self.definition_of(c) for c in node.named_children) if d is not None]
            if len(found) == 1:
                return found[0]
        return None

    def definition_kind(self, node: Node, in_class: bool = False) -> str:
        kind = self.spec.definitions.get(node.type, "block")
        if kind == "function" and in_class:
            return "method"
        return kind

    def definition_name(self, node: Node) -> Optional[str]:
        """Extract the declared name of a definition node."""
        if node.type == "impl_item":
            target = node.child_by_field_name("type")
            return self.text_of(target) if target is not None else None

        name_node = node.child_by_field_name("name")
        if name_node is not None:
            return self.text_of(name_node)

        # Fall back to the first identifier-like child, then one level deeper
        for child in node.children:
            if child.type in _NAME_TYPES:
                return self.text_of(child)
        for child in node.children:
            for grandchild in child.children:
                if grandchild.type in _NAME_TYPES:
                    return self.text_of(grandchild)
        return None

    def _binds_function(self, node: Node) -> bool:
        value = node.child_by_field_name("value")
        if value is not None:
            return value.type in _FUNCTION_VALUE_TYPES
        return any(child.type in _FUNCTION_VALUE_TYPES for child in node.children)


class Grammar(ABC):
    """Capability interface: turn file text into a syntax tree."""

    language: str

    @abstractmethod
    def parse(self, text: str, path: str = "") -> Optional[SyntaxTree]:
        """
        Parse text into a syntax tree.

        Returns None when the language has no grammar. Raises ParseDegraded
        when a grammar exists but cannot produce a usable tree.
        """


class NoGrammar(Grammar):
    """Placeholder grammar for languages without a registered parser."""

    def __init__(self, language: str):
        self.language = language

    def parse(self, text: str, path: str = "") -> Optional[SyntaxTree]:
        return None

    def __repr__(self) -> str:
        return f"NoGrammar({self.language})"


class TreeSitterGrammar(Grammar):
    """
    Tree-sitter backed grammar for one language.

    Language objects are loaded lazily and shared; parsers are not thread-safe,
    so each thread gets its own.
    """

    # Class-level cache for lazy-loaded languages
    _languages: dict[str, Language] = {}
    _languages_lock = threading.Lock()

    def __init__(self, language: str, max_error_ratio: float = 0.5):
        if language not in LANGUAGE_SPECS:
            raise ValueError(
                f"Unsupported language: {language}. "
                f"Supported: {sorted(LANGUAGE_SPECS)}"
            )
        self.language = language
        self.max_error_ratio = max_error_ratio
        self._ts_language = self._get_language(language)
        self._local = threading.local()

    @classmethod
    def _get_language(cls, lang: str) -> Language:
        """Lazy-load the tree-sitter language module."""
        with cls._languages_lock:
            if lang not in cls._languages:
                logger.debug(f"Lazy-loading tree-sitter language: {lang}")
                cls._languages[lang] = Language(cls._load_language_capsule(lang))
            return cls._languages[lang]

    @staticmethod
    def _load_language_capsule(lang: str) -> Any:
        if lang == "python":
            import tree_sitter_python as ts
            return ts.language()
        if lang == "javascript":
            import tree_sitter_javascript as ts
            return ts.language()
        if lang == "typescript":
            import tree_sitter_typescript as ts
            return ts.language_typescript()
        if lang == "tsx":
            import tree_sitter_typescript as ts
            return ts.language_tsx()
        if lang == "go":
            import tree_sitter_go as ts
            return ts.language()
        if lang == "rust":
            import tree_sitter_rust as ts
            return ts.language()
        raise ValueError(f"Unsupported language: {lang}")

    @property
    def parser(self) -> Parser:
        parser = getattr(self._local, "parser", None)
        if parser is None:
            parser = Parser(self._ts_language)
            self._local.parser = parser
        return parser

    def parse(self, text: str, path: str = "") -> Optional[SyntaxTree]:
        source = text.encode("utf8")
        try:
            tree = self.parser.parse(source)
        except (ValueError, RuntimeError) as e:
            raise ParseDegraded(path, self.language, str(e)) from e

        root = tree.root_node
        if root.type == "ERROR":
            raise ParseDegraded(path, self.language, "root node is an error node")

        if root.has_error and source:
            ratio = _error_bytes(root) / len(source)
            if ratio > self.max_error_ratio:
                raise ParseDegraded(
                    path, self.language, f"{ratio:.0%} of the file failed to parse"
                )
            # Minor errors are common in real code; definitions are still usable
            logger.debug(f"Parse warnings in {path} ({self.language}), using partial tree")

        return SyntaxTree(language=self.language, source=source, tree=tree)

    def __repr__(self) -> str:
        return f"TreeSitterGrammar({self.language})"


def _error_bytes(node: Node) -> int:
    """Total size of the outermost ERROR/MISSING nodes below node."""
    if node.type == "ERROR" or node.is_missing:
        return node.end_byte - node.start_byte
    if not node.has_error:
        return 0
    return sum(_error_bytes(child) for child in node.children)


class GrammarRegistry:
    """
    Selects a grammar for a file by extension, falling back to shebang sniffing.
    """

    def __init__(self, max_error_ratio: float = 0.5):
        self.max_error_ratio = max_error_ratio
        self._grammars: dict[str, Grammar] = {}
        self._lock = threading.Lock()

    @staticmethod
    def detect_language(path: str, content: Optional[str] = None) -> str:
        """
        Detect the language of a file.

        Args:
            path: File path (only the suffix is used)
            content: Optional file content for shebang sniffing

        Returns:
            Language name (lowercase), "unknown" if undetectable
        """
        ext = PurePosixPath(path).suffix.lower()
        language = EXTENSION_MAP.get(ext)
        if language:
            return language

        if content and content.startswith("#!"):
            first_line = content.split("\n", 1)[0]
            words = first_line[2:].replace("/", " ").split()
            # "#!/usr/bin/env python3" -> ["usr", "bin", "env", "python3"]
            for word in reversed(words):
                interpreter = word.rstrip("0123456789.")
                if interpreter in SHEBANG_MAP:
                    return SHEBANG_MAP[interpreter]

        return "unknown"

    @staticmethod
    def has_grammar(language: str) -> bool:
        return language in LANGUAGE_SPECS

    def for_language(self, language: str) -> Grammar:
        """Get (and cache) the grammar for a language."""
        with self._lock:
            grammar = self._grammars.get(language)
            if grammar is None:
                if self.has_grammar(language):
                    grammar = TreeSitterGrammar(language, max_error_ratio=self.max_error_ratio)
                else:
                    grammar = NoGrammar(language)
                self._grammars[language] = grammar
            return grammar

    def for_path(self, path: str, content: Optional[str] = None) -> Grammar:
        return self.for_language(self.detect_language(path, content))

    def __repr__(self) -> str:
        return f"GrammarRegistry(loaded={sorted(self._grammars)})"
