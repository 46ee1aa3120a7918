"""
Tests for symbol extraction.
"""

import pytest

from ctxsync.grammars import GrammarRegistry
from ctxsync.symbols import SymbolExtractor

from conftest import MAIN_SOURCE, PYTHON_SOURCE


def extract(content: str, path: str):
    registry = GrammarRegistry()
    language = registry.detect_language(path)
    tree = registry.for_language(language).parse(content, path)
    return SymbolExtractor().extract(tree, path)


def refs(symbols, relation=None):
    return {
        (r.source, r.name, r.relation)
        for r in symbols.references
        if relation is None or r.relation == relation
    }


class TestPythonSymbols:
    """Definitions and references in Python sources."""

    def test_definitions(self):
        symbols = extract(PYTHON_SOURCE, "sample.py")
        defs = {d.symbol_path: d.kind for d in symbols.definitions}

        assert defs == {
            "hello_world": "function",
            "Calculator": "class",
            "Calculator.add": "method",
            "Calculator.subtract": "method",
            "compute_total": "function",
        }
        assert symbols.path == "sample.py"
        assert symbols.language == "python"

    def test_definition_lines(self):
        symbols = extract(PYTHON_SOURCE, "sample.py")
        calc = next(d for d in symbols.definitions if d.symbol_path == "Calculator")
        add = next(d for d in symbols.definitions if d.symbol_path == "Calculator.add")

        assert calc.start_line < add.start_line <= add.end_line <= calc.end_line

    def test_call_references(self):
        symbols = extract(PYTHON_SOURCE, "sample.py")
        calls = refs(symbols, "call")

        assert ("hello_world", "print", "call") in calls
        assert ("compute_total", "Calculator", "call") in calls
        assert ("compute_total", "add", "call") in calls

    def test_import_references(self):
        symbols = extract(MAIN_SOURCE, "src/main.py")
        imports = refs(symbols, "import")

        assert ("", "parse_config", "import") in imports
        assert ("", "format_report", "import") in imports

    def test_module_scope_calls(self):
        symbols = extract(MAIN_SOURCE, "src/main.py")
        assert ("", "main", "call") in refs(symbols, "call")

    def test_base_classes_are_type_references(self):
        content = "class Animal:\n    pass\n\n\nclass Dog(Animal):\n    pass\n"
        symbols = extract(content, "pets.py")
        assert ("Dog", "Animal", "type") in refs(symbols, "type")

    def test_annotations_are_type_references(self):
        content = "def load(path: Path) -> Config:\n    return Config(path)\n"
        symbols = extract(content, "loader.py")
        types = refs(symbols, "type")

        assert ("load", "Path", "type") in types
        assert ("load", "Config", "type") in types

    def test_references_are_deduplicated(self):
        content = "def f():\n    g()\n    g()\n    g()\n"
        symbols = extract(content, "dup.py")
        assert [r.name for r in symbols.references] == ["g"]


class TestOtherLanguageSymbols:
    """Symbol extraction for JavaScript, TypeScript, Go and Rust."""

    def test_javascript_imports_and_calls(self):
        content = '''import { parse } from "./parser";
import render from "./render";

function run(input) {
  return render(parse(input));
}
'''
        symbols = extract(content, "run.js")

        assert ("", "parse", "import") in refs(symbols)
        assert ("", "render", "import") in refs(symbols)
        assert ("run", "parse", "call") in refs(symbols)
        assert ("run", "render", "call") in refs(symbols)

    def test_typescript_type_references(self):
        content = '''interface User {
  id: number;
}

function show(user: User): string {
  return String(user.id);
}
'''
        symbols = extract(content, "show.ts")
        defs = {d.symbol_path: d.kind for d in symbols.definitions}

        assert defs["User"] == "interface"
        assert defs["show"] == "function"
        assert ("show", "User", "type") in refs(symbols, "type")
        # The declared name itself is not a reference
        assert ("", "User", "type") not in refs(symbols, "type")

    def test_go_selector_calls(self):
        content = '''package main

import "fmt"

func main() {
	fmt.Println("hi")
}
'''
        symbols = extract(content, "main.go")

        assert ("", "fmt", "import") in refs(symbols)
        assert ("main", "Println", "call") in refs(symbols)

    def test_rust_use_and_impl(self):
        content = '''use std::collections::HashMap;

struct Point {
    x: i32,
}

impl Point {
    fn new() -> Point {
        Point { x: 0 }
    }
}
'''
        symbols = extract(content, "src/point.rs")
        defs = [(d.symbol_path, d.kind) for d in symbols.definitions]

        assert ("", "HashMap", "import") in refs(symbols)
        assert ("Point", "struct") in defs
        assert ("Point", "impl") in defs
        assert ("Point.new", "method") in defs
        assert ("Point.new", "Point", "type") in refs(symbols, "type")


@pytest.mark.parametrize("path", ["empty.py", "empty.ts", "empty.go"])
def test_empty_file(path):
    symbols = extract("", path)
    assert symbols.definitions == []
    assert symbols.references == []
