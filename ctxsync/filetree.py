"""
File-tree collaborators for ctxsync.

A file tree enumerates the files to index as (path, content) pairs with
POSIX-style paths relative to the tree root, already filtered by ignore
rules. Content hashing is done by the orchestrator, not here.
"""

import logging
from pathlib import Path
from typing import Iterator, Optional, Protocol

import pathspec

from .git_utils import GitUtils

logger = logging.getLogger(__name__)

BINARY_SNIFF_BYTES = 8192


class FileTree(Protocol):
    """The set of files a sync pass indexes."""

    def list_tracked_files(self) -> Iterator[tuple[str, str]]:
        """Yield (relative path, text content) for every indexable file."""
        ...

    def revision(self) -> Optional[str]:
        """Revision marker for the current tree (e.g. git HEAD), if any."""
        ...


class DirectoryFileTree:
    """
    Files under a directory on disk.

    Honors nested .gitignore files, configured exclude patterns and an
    optional include list, skips oversized and binary files, and decodes
    content as UTF-8 with replacement characters.
    """

    def __init__(
        self,
        root: Path,
        exclude: Optional[list[str]] = None,
        include: Optional[list[str]] = None,
        max_file_size: int = 1048576,
        respect_gitignore: bool = True,
    ):
        self.root = Path(root).resolve()
        self.max_file_size = max_file_size
        self.respect_gitignore = respect_gitignore
        self._exclude = pathspec.PathSpec.from_lines("gitwildmatch", exclude or [])
        self._include = pathspec.PathSpec.from_lines("gitwildmatch", include) if include else None

    @classmethod
    def from_config(cls, root: Path, settings: dict) -> "DirectoryFileTree":
        return cls(
            root,
            exclude=settings.get("exclude", []),
            include=settings.get("include", []),
            max_file_size=settings.get("max_file_size", 1048576),
            respect_gitignore=settings.get("respect_gitignore", True),
        )

    def discover(self) -> list[Path]:
        """
        Discover indexable files in the directory tree.

        Respects .gitignore patterns and configuration exclusions.

        Returns:
            Sorted list of absolute file paths
        """
        gitignore_spec = GitUtils.load_nested_gitignore(self.root) if self.respect_gitignore else None

        files = []
        for file_path in self.root.rglob("*"):
            if not file_path.is_file() or file_path.is_symlink():
                continue
            rel_path = file_path.relative_to(self.root).as_posix()
            if self.is_excluded(rel_path, gitignore_spec):
                continue
            files.append(file_path)
        return sorted(files)

    def is_excluded(self, rel_path: str, gitignore_spec: Optional[pathspec.PathSpec] = None) -> bool:
        """Check a relative path against gitignore, exclude and include patterns."""
        if gitignore_spec is not None and gitignore_spec.match_file(rel_path):
            return True
        if self._exclude.match_file(rel_path):
            return True
        if self._include is not None and not self._include.match_file(rel_path):
            return True
        return False

    def should_index_file(self, file_path: Path) -> bool:
        """
        Check if a file should be indexed.

        Args:
            file_path: Path to check

        Returns:
            True if the file is within the size limit and looks like text
        """
        try:
            file_size = file_path.stat().st_size
        except OSError as e:
            logger.debug(f"Cannot stat file {file_path}: {e}")
            return False
        if file_size > self.max_file_size:
            logger.warning(
                f"Skipping large file: {file_path} "
                f"({file_size / 1024 / 1024:.1f}MB > {self.max_file_size / 1024 / 1024:.1f}MB limit)"
            )
            return False

        try:
            with open(file_path, "rb") as f:
                head = f.read(BINARY_SNIFF_BYTES)
        except OSError as e:
            logger.debug(f"Cannot read file {file_path}: {e}")
            return False
        if b"\x00" in head:
            logger.debug(f"Skipping binary file: {file_path}")
            return False
        return True

    def list_tracked_files(self) -> Iterator[tuple[str, str]]:
        for file_path in self.discover():
            if not self.should_index_file(file_path):
                continue
            try:
                content = file_path.read_bytes().decode("utf-8", errors="replace")
            except OSError as e:
                # Vanished or unreadable between discovery and read
                logger.warning(f"Cannot read {file_path}: {e}")
                continue
            yield file_path.relative_to(self.root).as_posix(), content

    def revision(self) -> Optional[str]:
        return GitUtils.get_head_revision(self.root)

    def __repr__(self) -> str:
        return f"DirectoryFileTree(root={self.root})"


class InMemoryFileTree:
    """A mutable in-memory file tree, used for embedding and tests."""

    def __init__(self, files: Optional[dict[str, str]] = None, revision: Optional[str] = None):
        self.files: dict[str, str] = dict(files or {})
        self._revision = revision

    def write(self, path: str, content: str) -> None:
        self.files[path] = content

    def remove(self, path: str) -> None:
        self.files.pop(path, None)

    def list_tracked_files(self) -> Iterator[tuple[str, str]]:
        for path in sorted(self.files):
            yield path, self.files[path]

    def revision(self) -> Optional[str]:
        return self._revision

    def __repr__(self) -> str:
        return f"InMemoryFileTree(files={len(self.files)})"
