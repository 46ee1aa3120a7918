"""
Git integration utilities for ctxsync.

Only the pieces the file tree needs: nested .gitignore loading and the
HEAD revision marker recorded in file snapshots.
"""

import logging
import subprocess
from pathlib import Path
from typing import Optional
import pathspec

logger = logging.getLogger(__name__)


class GitUtils:
    """
    Git integration utilities.

    Provides methods for:
    - Reading the HEAD commit of a checkout
    - Loading nested .gitignore files
    """

    @staticmethod
    def get_head_revision(repo_path: Path) -> Optional[str]:
        """
        Detect the current HEAD commit using subprocess.

        Args:
            repo_path: Path to check for git repository

        Returns:
            Full commit SHA if in a git repo with commits, None otherwise
        """
        try:
            result = subprocess.run(
                ["git", "rev-parse", "HEAD"],
                cwd=repo_path,
                capture_output=True,
                text=True,
                timeout=5,
                check=True
            )
            revision = result.stdout.strip()
            logger.debug(f"Detected git revision: {revision}")
            return revision or None
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, FileNotFoundError):
            logger.debug(f"Not a git repository or git not available: {repo_path}")
            return None
        except OSError as e:
            logger.warning(f"Failed to detect git revision: {e}")
            return None

    @staticmethod
    def load_nested_gitignore(root_path: Path) -> Optional[pathspec.PathSpec]:
        """
        Load and merge all .gitignore files in directory tree.

        Patterns from a nested .gitignore are scoped to its directory.

        Args:
            root_path: Root directory to search for .gitignore files

        Returns:
            PathSpec object with merged patterns, or None if no .gitignore files found
        """
        all_patterns = []
        gitignore_files = sorted(p for p in root_path.rglob(".gitignore") if p.is_file())

        if not gitignore_files:
            logger.debug("No .gitignore files found")
            return None

        for gitignore_path in gitignore_files:
            try:
                patterns = gitignore_path.read_text(encoding="utf-8").splitlines()
            except (OSError, UnicodeDecodeError) as e:
                logger.warning(f"Failed to parse {gitignore_path}: {e}")
                continue

            gitignore_dir = gitignore_path.parent.relative_to(root_path).as_posix()
            if gitignore_dir == ".":
                all_patterns.extend(patterns)
                continue

            for pattern in patterns:
                stripped = pattern.strip()
                if not stripped or stripped.startswith("#"):
                    continue
                negate = stripped.startswith("!")
                body = stripped[1:] if negate else stripped
                # A pattern without an inner slash matches at any depth below its directory
                if "/" in body.rstrip("/"):
                    scoped = f"{gitignore_dir}/{body.lstrip('/')}"
                else:
                    scoped = f"{gitignore_dir}/**/{body}"
                all_patterns.append(f"!{scoped}" if negate else scoped)

        if not all_patterns:
            return None

        spec = pathspec.PathSpec.from_lines("gitwildmatch", all_patterns)
        logger.debug(f"Loaded {len(all_patterns)} patterns from {len(gitignore_files)} .gitignore files")
        return spec
