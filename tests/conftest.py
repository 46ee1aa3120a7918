"""
Pytest fixtures for ctxsync tests.

Provides reusable fixtures for temporary directories, sample sources,
deterministic embedding backends and fully wired sync components.
"""

import hashlib
import math
import re
import shutil
import tempfile
import threading
from pathlib import Path

import pytest

from ctxsync.cache import EmbeddingCache
from ctxsync.config import Config
from ctxsync.embeddings import EmbeddingBackend, EmbeddingEngine
from ctxsync.errors import EmbeddingTransient
from ctxsync.filetree import InMemoryFileTree
from ctxsync.graph import SymbolGraph
from ctxsync.indexer import SyncOrchestrator
from ctxsync.retrieval import RetrievalService
from ctxsync.store import VectorIndex
from ctxsync.sync_state import SyncStateStore

DIMENSION = 64

_WORD_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


class HashingBackend(EmbeddingBackend):
    """
    Deterministic bag-of-words embedding.

    Each identifier is hashed into one of DIMENSION buckets, so texts that
    share words are close in L2 distance.
    """

    def __init__(self, model_id: str = "test-hashing", dimension: int = DIMENSION):
        self.model_id = model_id
        self._dimension = dimension
        self.calls: list[list[str]] = []
        self._lock = threading.Lock()

    @property
    def dimension(self) -> int:
        return self._dimension

    def encode(self, texts: list[str]) -> list[list[float]]:
        with self._lock:
            self.calls.append(list(texts))
        return [self._vector(text) for text in texts]

    def _vector(self, text: str) -> list[float]:
        vector = [0.0] * self._dimension
        for word in _WORD_RE.findall(text.lower()):
            bucket = int(hashlib.md5(word.encode()).hexdigest(), 16) % self._dimension
            vector[bucket] += 1.0
        norm = math.sqrt(sum(x * x for x in vector))
        if norm == 0:
            vector[0] = 1.0
            return vector
        return [x / norm for x in vector]

    @property
    def texts_encoded(self) -> list[str]:
        return [text for call in self.calls for text in call]


class FlakyBackend(HashingBackend):
    """
    HashingBackend that fails on selected texts.

    Any batch containing a text with one of the poison markers raises
    EmbeddingTransient; the first fail_first calls fail unconditionally.
    """

    def __init__(self, poison: tuple[str, ...] = (), fail_first: int = 0, **kwargs):
        super().__init__(**kwargs)
        self.poison = poison
        self.fail_first = fail_first
        self.attempts = 0

    def encode(self, texts: list[str]) -> list[list[float]]:
        with self._lock:
            self.attempts += 1
            attempt = self.attempts
        if attempt <= self.fail_first:
            raise EmbeddingTransient(f"simulated outage on attempt {attempt}")
        if any(marker in text for text in texts for marker in self.poison):
            raise EmbeddingTransient("simulated rate limit")
        return super().encode(texts)


PYTHON_SOURCE = '''"""Sample Python module for testing."""

import os


def hello_world():
    """Print hello world."""
    print("Hello, World!")
    return "Hello"


class Calculator:
    """A simple calculator class."""

    def add(self, a, b):
        """Add two numbers."""
        return a + b

    def subtract(self, a, b):
        """Subtract b from a."""
        return a - b


def compute_total(values):
    calc = Calculator()
    total = 0
    for value in values:
        total = calc.add(total, value)
    return total
'''

UTILS_SOURCE = '''def parse_config(path):
    """Read a configuration file into a dictionary."""
    with open(path) as handle:
        return dict(line.split("=", 1) for line in handle if "=" in line)


def format_report(rows):
    """Format report rows as text."""
    return "\\n".join(str(row) for row in rows)
'''

MAIN_SOURCE = '''from utils import parse_config, format_report


def main():
    """Main entry point."""
    config = parse_config("settings.ini")
    print(format_report(config.items()))


if __name__ == "__main__":
    main()
'''


@pytest.fixture
def temp_dir():
    """Create a temporary directory for testing."""
    temp_path = Path(tempfile.mkdtemp())
    yield temp_path
    # Cleanup
    if temp_path.exists():
        shutil.rmtree(temp_path)


@pytest.fixture
def sample_python_file(temp_dir):
    """Create a sample Python file with functions and classes."""
    file_path = temp_dir / "sample.py"
    file_path.write_text(PYTHON_SOURCE)
    return file_path


@pytest.fixture
def sample_gitignore(temp_dir):
    """Create a sample .gitignore file."""
    gitignore_content = '''# Python
__pycache__/
*.pyc
.venv/

# Node
node_modules/
dist/
'''
    file_path = temp_dir / ".gitignore"
    file_path.write_text(gitignore_content)
    return file_path


@pytest.fixture
def sample_codebase(temp_dir, sample_python_file):
    """Create a small sample codebase with multiple files."""
    src_dir = temp_dir / "src"
    src_dir.mkdir()
    (src_dir / "utils.py").write_text(UTILS_SOURCE)
    (src_dir / "main.py").write_text(MAIN_SOURCE)
    (temp_dir / "README.md").write_text("# Sample\n\nA sample project for testing.\n")
    return temp_dir


@pytest.fixture
def sample_files():
    """In-memory project: three Python files and a text file."""
    return {
        "sample.py": PYTHON_SOURCE,
        "src/utils.py": UTILS_SOURCE,
        "src/main.py": MAIN_SOURCE,
        "notes.txt": "Remember to rotate the API keys every quarter.\n",
    }


@pytest.fixture
def config(temp_dir):
    """Create a test configuration with fast retries."""
    config = Config(project_root=temp_dir)
    config.set("embeddings", "retry_delay", value=0.0)
    config.set("embeddings", "max_retries", value=1)
    config.set("store", "retry_delay", value=0.0)
    config.set("sync", "max_workers", value=2)
    return config


@pytest.fixture
def backend():
    return HashingBackend()


@pytest.fixture
def engine(backend):
    return EmbeddingEngine(backend, batch_size=8, max_retries=1, retry_delay=0.0)


@pytest.fixture
def db_path(temp_dir):
    return temp_dir / ".ctxsync" / "data.lance"


@pytest.fixture
def vector_index(db_path):
    """Create a vector index for testing."""
    return VectorIndex(db_path, DIMENSION, write_retries=1, retry_delay=0.0)


@pytest.fixture
def cache(db_path, backend):
    cache = EmbeddingCache(db_path, backend.model_id, DIMENSION)
    cache.load()
    return cache


@pytest.fixture
def graph():
    return SymbolGraph()


@pytest.fixture
def state_store(temp_dir):
    return SyncStateStore(temp_dir / ".ctxsync" / "sync_state.json")


@pytest.fixture
def file_tree(sample_files):
    return InMemoryFileTree(sample_files, revision="abc123")


@pytest.fixture
def graph_path(temp_dir):
    return temp_dir / ".ctxsync" / "symbol_graph.json"


@pytest.fixture
def orchestrator(file_tree, vector_index, cache, engine, graph, state_store, graph_path):
    """Create a fully wired orchestrator over the in-memory tree."""
    return SyncOrchestrator(
        tree=file_tree,
        index=vector_index,
        cache=cache,
        engine=engine,
        graph=graph,
        state_store=state_store,
        graph_path=graph_path,
        max_workers=2,
    )


@pytest.fixture
def retrieval(vector_index, engine, graph, cache):
    return RetrievalService(vector_index, engine, graph=graph, cache=cache, expand_limit=5)


@pytest.fixture
def sample_embeddings():
    """Sample unit vectors for testing."""
    vectors = []
    for i in range(3):
        vector = [0.0] * DIMENSION
        vector[i] = 1.0
        vectors.append(vector)
    return vectors
