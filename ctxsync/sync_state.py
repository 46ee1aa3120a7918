"""
Persisted sync state for ctxsync.

The state file holds the FileSnapshot set of the last committed sync pass,
its timestamp, the pipeline version and the embedding model. It is read
once when a pass starts and replaced atomically when the pass commits.
"""

import logging
import os
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from .errors import SyncStateUnavailable
from .models import SyncState

logger = logging.getLogger(__name__)

# Bump whenever chunking, hashing or ID derivation changes; a mismatch
# forces a full rebuild on the next sync.
PIPELINE_VERSION = "1"


class SyncStateStore:
    """Load and atomically save SyncState as JSON."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> Optional[SyncState]:
        """
        Read the last committed state.

        Returns:
            The state, or None when no pass has ever committed

        Raises:
            SyncStateUnavailable: The file exists but cannot be read or parsed
        """
        if not self.path.exists():
            return None
        try:
            raw = self.path.read_text(encoding="utf-8")
        except OSError as e:
            raise SyncStateUnavailable(str(self.path), str(e)) from e
        try:
            state = SyncState.model_validate_json(raw)
        except ValidationError as e:
            raise SyncStateUnavailable(str(self.path), f"corrupt state file: {e.error_count()} errors") from e
        logger.debug(f"Loaded sync state with {len(state.snapshots)} snapshots")
        return state

    def save(self, state: SyncState) -> None:
        """
        Replace the state file atomically.

        Raises:
            SyncStateUnavailable: The state could not be written
        """
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                f.write(state.model_dump_json(indent=1))
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise SyncStateUnavailable(str(self.path), str(e)) from e
        logger.debug(f"Committed sync state with {len(state.snapshots)} snapshots")

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)

    def __repr__(self) -> str:
        return f"SyncStateStore(path={self.path})"
