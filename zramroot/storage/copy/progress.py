"""Copy progress monitoring and formatting."""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional

from zramroot.logging import EventLogger

BAR_WIDTH = 50
MONITOR_INTERVAL = 2.0


def compute_percent(dest_kib: int, source_kib: int) -> int:
    """Progress percentage, capped at 99 until the copy has finished."""
    if source_kib <= 0:
        return 0
    return max(0, min(99, dest_kib * 100 // source_kib))


def render_progress_bar(percent: int, active_workers: int, total_workers: int) -> str:
    """Format a 50-column bar, e.g. ``[#####-----]  10% [2/4 threads]``."""
    percent = max(0, min(100, percent))
    filled = percent * BAR_WIDTH // 100
    bar = "#" * filled + "-" * (BAR_WIDTH - filled)
    return f"[{bar}] {percent:3d}% [{active_workers}/{total_workers} threads] Copying..."


class ProgressMonitor:
    """Report destination size as a percentage of the source size.

    Updates are emitted only when the integer percentage changes.
    """

    def __init__(
        self,
        dest: Path,
        source_kib: int,
        total_workers: int,
        log,
        *,
        measure: Callable[[str], int],
        debug: bool = False,
    ):
        self.dest = Path(dest)
        self.source_kib = source_kib
        self.total_workers = total_workers
        self.log = log
        self.debug = debug
        self._measure = measure
        self.last_percent: Optional[int] = None
        self.history: list[int] = []

    def _emit(self, percent: int, active_workers: int) -> None:
        self.last_percent = percent
        self.history.append(percent)
        bar = render_progress_bar(percent, active_workers, self.total_workers)
        self.log.info(bar)
        if self.debug:
            EventLogger.log_copy_progress(self.log, percent, active_workers, self.total_workers)

    def start(self) -> None:
        self._emit(0, self.total_workers)

    def poll(self, active_workers: int) -> Optional[int]:
        """Measure once; return the new percentage if it changed."""
        percent = compute_percent(self._measure(str(self.dest)), self.source_kib)
        if percent == self.last_percent:
            return None
        self._emit(percent, active_workers)
        return percent

    def finish(self) -> None:
        self._emit(100, 0)
