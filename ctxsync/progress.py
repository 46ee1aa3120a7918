"""
Per-file progress for sync passes.

Worker threads report each finished file; the reporter keeps the counts
and hands a ProgressEvent to the caller's callback.
"""

import threading
import time
from dataclasses import dataclass
from typing import Optional, Callable


@dataclass
class ProgressEvent:
    """Snapshot taken when one file of a sync pass finishes ("done" or "failed")."""
    current: int
    total: int
    filename: str
    elapsed_seconds: float
    status: str = "done"
    eta_seconds: Optional[float] = None
    files_per_second: float = 0.0


def _hms(seconds: float) -> tuple[int, int, int]:
    minutes, secs = divmod(int(seconds), 60)
    hours, minutes = divmod(minutes, 60)
    return hours, minutes, secs


class ProgressReporter:
    """Thread-safe counter of finished and failed files for one sync pass."""

    def __init__(self, total_files: int, callback: Optional[Callable[[ProgressEvent], None]] = None):
        self.total_files = total_files
        self.callback = callback
        self.current_file = 0
        self.failed_files = 0
        self.start_time = time.time()
        self._lock = threading.Lock()

    def _rate(self, done: int, elapsed: float) -> float:
        return done / elapsed if elapsed > 0 else 0.0

    def update(self, filename: str, failed: bool = False) -> ProgressEvent:
        """Count filename as finished and notify the callback."""
        with self._lock:
            self.current_file += 1
            self.failed_files += int(failed)
            done = self.current_file

        elapsed = time.time() - self.start_time
        rate = self._rate(done, elapsed)
        event = ProgressEvent(
            current=done,
            total=self.total_files,
            filename=filename,
            elapsed_seconds=elapsed,
            status="failed" if failed else "done",
            eta_seconds=(self.total_files - done) / rate if rate else None,
            files_per_second=rate,
        )
        if self.callback:
            self.callback(event)
        return event

    @staticmethod
    def format_eta(seconds: Optional[float]) -> str:
        """Coarse remaining time: "1h 15m", "2m 30s", "45s" or "unknown"."""
        if seconds is None:
            return "unknown"
        hours, minutes, secs = _hms(seconds)
        if hours:
            return f"{hours}h {minutes}m"
        return f"{minutes}m {secs}s" if minutes else f"{secs}s"

    @staticmethod
    def format_duration(seconds: float) -> str:
        """Like format_eta, but sub-minute durations keep one decimal."""
        if seconds < 60:
            return f"{seconds:.1f}s"
        return ProgressReporter.format_eta(seconds)

    def get_summary(self) -> str:
        elapsed = time.time() - self.start_time
        with self._lock:
            done, failed = self.current_file, self.failed_files
        return (
            f"Processed {done}/{self.total_files} files ({failed} failed) "
            f"in {self.format_duration(elapsed)} ({self._rate(done, elapsed):.1f} files/sec)"
        )
