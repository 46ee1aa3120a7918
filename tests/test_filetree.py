"""
Tests for file trees and git utilities.
"""

import subprocess

from ctxsync.filetree import DirectoryFileTree, InMemoryFileTree
from ctxsync.git_utils import GitUtils


def init_repo(path):
    subprocess.run(["git", "init"], cwd=path, check=True, capture_output=True)
    subprocess.run(["git", "config", "user.email", "test@test.com"], cwd=path, check=True, capture_output=True)
    subprocess.run(["git", "config", "user.name", "Test User"], cwd=path, check=True, capture_output=True)


class TestDirectoryFileTree:
    """Discovery and filtering of files on disk."""

    def test_lists_relative_posix_paths(self, sample_codebase):
        tree = DirectoryFileTree(sample_codebase)
        files = dict(tree.list_tracked_files())

        assert set(files) == {"sample.py", "src/utils.py", "src/main.py", "README.md"}
        assert "def parse_config" in files["src/utils.py"]

    def test_discover_is_sorted(self, sample_codebase):
        tree = DirectoryFileTree(sample_codebase)
        files = tree.discover()
        assert files == sorted(files)

    def test_respects_gitignore(self, temp_dir, sample_gitignore):
        (temp_dir / "__pycache__").mkdir()
        (temp_dir / "__pycache__" / "mod.pyc").write_text("bytecode")
        (temp_dir / "node_modules").mkdir()
        (temp_dir / "node_modules" / "package.json").write_text("{}")
        (temp_dir / "app.py").write_text("print('hi')\n")

        tree = DirectoryFileTree(temp_dir)
        paths = {path for path, _ in tree.list_tracked_files()}

        assert "app.py" in paths
        assert "__pycache__/mod.pyc" not in paths
        assert "node_modules/package.json" not in paths

    def test_gitignore_can_be_disabled(self, temp_dir, sample_gitignore):
        (temp_dir / "dist").mkdir()
        (temp_dir / "dist" / "bundle.js").write_text("var x = 1;\n")

        tree = DirectoryFileTree(temp_dir, respect_gitignore=False)
        assert "dist/bundle.js" in {path for path, _ in tree.list_tracked_files()}

    def test_exclude_patterns(self, sample_codebase):
        tree = DirectoryFileTree(sample_codebase, exclude=["src/"])
        paths = {path for path, _ in tree.list_tracked_files()}
        assert paths == {"sample.py", "README.md"}

    def test_include_patterns(self, sample_codebase):
        tree = DirectoryFileTree(sample_codebase, include=["*.md"])
        paths = {path for path, _ in tree.list_tracked_files()}
        assert paths == {"README.md"}

    def test_skips_large_files(self, temp_dir):
        (temp_dir / "large.txt").write_text("x" * 2048)
        (temp_dir / "small.txt").write_text("small")

        tree = DirectoryFileTree(temp_dir, max_file_size=1024)
        assert {path for path, _ in tree.list_tracked_files()} == {"small.txt"}

    def test_skips_binary_files(self, temp_dir):
        (temp_dir / "image.png").write_bytes(b"\x89PNG\x00\x00\x01")
        (temp_dir / "text.txt").write_text("plain")

        tree = DirectoryFileTree(temp_dir)
        assert {path for path, _ in tree.list_tracked_files()} == {"text.txt"}

    def test_invalid_utf8_is_replaced(self, temp_dir):
        (temp_dir / "latin1.txt").write_bytes(b"caf\xe9 au lait\n")

        tree = DirectoryFileTree(temp_dir)
        [(path, content)] = list(tree.list_tracked_files())
        assert path == "latin1.txt"
        assert content == "caf� au lait\n"

    def test_from_config(self, temp_dir):
        tree = DirectoryFileTree.from_config(temp_dir, {"exclude": ["*.log"], "max_file_size": 10})
        assert tree.max_file_size == 10
        assert tree.is_excluded("debug.log")
        assert not tree.is_excluded("main.py")

    def test_revision_outside_git(self, temp_dir):
        assert DirectoryFileTree(temp_dir).revision() is None


class TestInMemoryFileTree:
    def test_write_and_remove(self):
        tree = InMemoryFileTree({"b.py": "b", "a.py": "a"}, revision="r1")
        tree.write("c.py", "c")
        tree.remove("b.py")
        tree.remove("missing.py")

        assert list(tree.list_tracked_files()) == [("a.py", "a"), ("c.py", "c")]
        assert tree.revision() == "r1"


class TestGitUtils:
    """Test suite for GitUtils class."""

    def test_get_head_revision(self, tmp_path):
        """Detect the HEAD commit of a repository."""
        init_repo(tmp_path)
        (tmp_path / "test.txt").write_text("test")
        subprocess.run(["git", "add", "."], cwd=tmp_path, check=True, capture_output=True)
        subprocess.run(["git", "commit", "-m", "Initial commit"], cwd=tmp_path, check=True, capture_output=True)

        expected = subprocess.run(
            ["git", "rev-parse", "HEAD"], cwd=tmp_path, check=True, capture_output=True, text=True,
        ).stdout.strip()

        assert GitUtils.get_head_revision(tmp_path) == expected
        assert DirectoryFileTree(tmp_path).revision() == expected

    def test_get_head_revision_without_commits(self, tmp_path):
        init_repo(tmp_path)
        assert GitUtils.get_head_revision(tmp_path) is None

    def test_get_head_revision_non_git_repo(self, tmp_path):
        """Return None for non-git directories."""
        assert GitUtils.get_head_revision(tmp_path) is None

    def test_load_nested_gitignore(self, tmp_path):
        """Nested .gitignore patterns are scoped to their directory."""
        (tmp_path / ".gitignore").write_text("*.log\n")
        subdir = tmp_path / "subdir"
        subdir.mkdir()
        (subdir / ".gitignore").write_text("*.tmp\n!keep.tmp\n")

        spec = GitUtils.load_nested_gitignore(tmp_path)

        assert spec is not None
        assert spec.match_file("app.log")
        assert spec.match_file("subdir/app.log")
        assert spec.match_file("subdir/cache.tmp")
        assert spec.match_file("subdir/deeper/cache.tmp")
        assert not spec.match_file("cache.tmp")
        assert not spec.match_file("subdir/keep.tmp")

    def test_load_nested_gitignore_none(self, tmp_path):
        assert GitUtils.load_nested_gitignore(tmp_path) is None
