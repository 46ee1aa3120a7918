"""
Configuration management for ctxsync.

Provides default configuration and loading from .ctxsync/config.toml.
"""

import copy
import logging
from pathlib import Path
from typing import Any, Optional
try:
    import tomllib  # Python 3.11+
except ImportError:
    import tomli as tomllib  # Fallback for older Python versions

logger = logging.getLogger(__name__)

STATE_DIR_NAME = ".ctxsync"

DEFAULT_CONFIG = {
    "indexer": {
        "exclude": [
            "node_modules",
            "*.min.js",
            "dist",
            "build",
            ".venv",
            "venv",
            "__pycache__",
            "*.pyc",
            ".git",
            STATE_DIR_NAME,
            "target",
        ],
        "include": [],
        "max_file_size": 1048576,  # 1MB
        "respect_gitignore": True,
    },
    "chunking": {
        "max_tokens": 500,
        "min_tokens": 40,
    },
    "embeddings": {
        "backend": "sentence-transformers",  # or "http"
        "model": "all-MiniLM-L6-v2",
        "device": None,
        "batch_size": 32,
        "max_batch_chars": 200_000,
        "base_url": "http://127.0.0.1:8000/v1",
        "api_key_env": "CTXSYNC_EMBEDDINGS_API_KEY",
        "timeout": 60.0,
        "max_retries": 4,
        "retry_delay": 0.5,
        "max_retry_delay": 10.0,
        "requests_per_second": 0.0,
    },
    "cache": {
        "retention_days": 30,
        "reuse_for_queries": True,
    },
    "store": {
        "table_name": "code_chunks",
        "write_retries": 3,
        "retry_delay": 0.2,
    },
    "sync": {
        "max_workers": 4,
    },
    "search": {
        "default_limit": 10,
        "min_score": 0.0,
        "expand": True,
        "expand_limit": 5,
        "expanded_score_decay": 0.5,
        "reference_weight": 0.05,
    },
    "logging": {
        "level": "INFO",
        "file": "ctxsync.log",  # relative to .ctxsync/
        "json": False,
        "max_size_mb": 10,
        "backups": 5,
    },
}


class Config:
    """
    Configuration manager for ctxsync.

    Loads configuration from .ctxsync/config.toml if it exists,
    otherwise uses defaults.
    """

    def __init__(self, project_root: Optional[Path] = None):
        """
        Initialize configuration.

        Args:
            project_root: Root directory of the project (defaults to current directory)
        """
        self.project_root = Path(project_root or Path.cwd())
        self.state_dir = self.project_root / STATE_DIR_NAME
        self.config_path = self.state_dir / "config.toml"
        self._config = self._load_config()

    def _load_config(self) -> dict[str, Any]:
        """Load configuration from file or use defaults."""
        if self.config_path.exists():
            try:
                with open(self.config_path, "rb") as f:
                    user_config = tomllib.load(f)
                logger.info(f"Loaded config from {self.config_path}")
                # Merge with defaults (user config takes precedence)
                return self._merge_configs(DEFAULT_CONFIG, user_config)
            except (OSError, tomllib.TOMLDecodeError) as e:
                logger.warning(f"Failed to load config from {self.config_path}: {e}")
                logger.warning("Using default configuration")
                return copy.deepcopy(DEFAULT_CONFIG)
        else:
            logger.debug("No config file found, using defaults")
            return copy.deepcopy(DEFAULT_CONFIG)

    def _merge_configs(self, default: dict, user: dict) -> dict:
        """
        Recursively merge user config with defaults.

        User values take precedence, but missing keys use defaults.
        """
        merged = copy.deepcopy(default)
        for key, value in user.items():
            if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
                merged[key] = self._merge_configs(merged[key], value)
            else:
                merged[key] = value
        return merged

    def get(self, *keys: str, default: Any = None) -> Any:
        """
        Get a configuration value by nested keys.

        Examples:
            config.get("chunking", "max_tokens")
            config.get("embeddings", "model")

        Args:
            *keys: Nested keys to traverse
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        value = self._config
        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default
        return default if value is None else value

    def set(self, *keys: str, value: Any) -> None:
        """
        Set a configuration value by nested keys.

        Args:
            *keys: Nested keys to traverse
            value: Value to set
        """
        if not keys:
            return

        current = self._config
        for key in keys[:-1]:
            if key not in current:
                current[key] = {}
            current = current[key]

        current[keys[-1]] = value

    @property
    def db_path(self) -> Path:
        """LanceDB database directory."""
        return self.state_dir / "data.lance"

    @property
    def sync_state_path(self) -> Path:
        return self.state_dir / "sync_state.json"

    @property
    def graph_path(self) -> Path:
        return self.state_dir / "symbol_graph.json"

    @property
    def indexer(self) -> dict[str, Any]:
        """Get indexer configuration."""
        return self._config.get("indexer", {})

    @property
    def embeddings(self) -> dict[str, Any]:
        """Get embeddings configuration."""
        return self._config.get("embeddings", {})

    @property
    def search(self) -> dict[str, Any]:
        """Get search configuration."""
        return self._config.get("search", {})

    def __repr__(self) -> str:
        """String representation."""
        return f"Config(project_root={self.project_root})"
